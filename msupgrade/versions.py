from __future__ import annotations

import re
from dataclasses import dataclass

from packaging.version import InvalidVersion, Version

from .errors import InvalidRangeError
from .settings import settings

INFINITY = "INFINITY"

_VERSION_RE = re.compile(r"^[0-9]+(\.[0-9]+){0,2}$")


def is_version_string(value: str) -> bool:
    return bool(_VERSION_RE.match(value or ""))


def compare_versions(a: str, b: str, mode: str | None = None) -> int:
    """Return -1, 0 or 1 comparing version a to version b.

    mode "ordinal" compares the raw strings, so "9" sorts after "10".
    mode "semver" uses numeric precedence; if either side is not a valid
    version it falls back to ordinal.
    """
    mode = (mode or settings.version_compare).lower()
    if mode == "semver":
        try:
            va, vb = Version(a), Version(b)
        except InvalidVersion:
            pass
        else:
            return (va > vb) - (va < vb)
    return (a > b) - (a < b)


@dataclass(frozen=True)
class VersionRange:
    """A version range such as "1.0.0" (meaning [1.0.0,INFINITY)) or "(1.0,2.0]"."""

    start: str
    end: str = INFINITY
    start_inclusive: bool = True
    end_inclusive: bool = False

    @classmethod
    def parse(cls, expr: str) -> "VersionRange":
        raw = (expr or "").strip().replace(" ", "")
        if is_version_string(raw):
            return cls(start=raw)

        if len(raw) < 5 or raw[0] not in "[(" or raw[-1] not in "])":
            raise InvalidRangeError(f"Unable to convert {expr!r} to a version expression")
        parts = raw[1:-1].split(",")
        if len(parts) != 2:
            raise InvalidRangeError(f"Version expression {expr!r} must have a start and an end version")
        start, end = parts
        if not is_version_string(start):
            raise InvalidRangeError(f"Start of version expression {expr!r} is not a version")
        if end != INFINITY and not is_version_string(end):
            raise InvalidRangeError(f"End of version expression {expr!r} is not a version or {INFINITY}")
        if end != INFINITY and compare_versions(start, end, mode="semver") > 0:
            raise InvalidRangeError(f"Start of version expression {expr!r} is greater than its end")
        return cls(start=start, end=end, start_inclusive=raw[0] == "[", end_inclusive=raw[-1] == "]")

    @property
    def expression(self) -> str:
        left = "[" if self.start_inclusive else "("
        right = "]" if self.end_inclusive and self.end != INFINITY else ")"
        return f"{left}{self.start},{self.end}{right}"

    def contains(self, version: str) -> bool:
        if not is_version_string(version):
            return False
        lo = compare_versions(version, self.start, mode="semver")
        if lo < 0 or (lo == 0 and not self.start_inclusive):
            return False
        if self.end == INFINITY:
            return True
        hi = compare_versions(version, self.end, mode="semver")
        return hi < 0 or (hi == 0 and self.end_inclusive)
