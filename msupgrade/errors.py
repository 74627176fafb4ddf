from __future__ import annotations


class UpgradeError(Exception):
    """Base class for errors raised by the upgrade engine."""


class InvalidRangeError(UpgradeError):
    pass


class RegistryError(UpgradeError):
    """Exchange request failed (transport or protocol)."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class StoreError(UpgradeError):
    pass


class ConversionError(UpgradeError):
    pass


class PolicyCompileError(UpgradeError):
    pass


class PolicyFileError(UpgradeError):
    pass


class InvalidTransitionError(UpgradeError):
    pass
