from __future__ import annotations

import os
from dataclasses import dataclass


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    # Core
    db_path: str = os.getenv("MSU_DB_PATH", "msupgrade.db")
    poll_interval_s: int = _env_int("MSU_POLL_INTERVAL_S", 60)
    # Max seconds between the start of an upgrade and its containers coming up.
    exec_timeout_s: int = _env_int("MSU_EXEC_TIMEOUT_S", 180)
    # "semver" (numeric precedence) or "ordinal" (plain string comparison)
    version_compare: str = os.getenv("MSU_VERSION_COMPARE", "semver")

    # Exchange
    exchange_url: str = os.getenv("MSU_EXCHANGE_URL", "http://localhost:8080/v1/")
    node_id: str | None = os.getenv("MSU_NODE_ID")
    node_token: str | None = os.getenv("MSU_NODE_TOKEN")
    exchange_timeout_s: int = _env_int("MSU_EXCHANGE_TIMEOUT_S", 20)
    exchange_retry_delay_s: int = _env_int("MSU_EXCHANGE_RETRY_DELAY_S", 10)

    # Policy
    policy_path: str = os.getenv("MSU_POLICY_PATH", "policy.d")
    device_org: str = os.getenv("MSU_DEVICE_ORG", "")

    # Run the reconciler loop when the API starts.
    enable_reconciler: bool = _env_bool("MSU_ENABLE_RECONCILER", True)


settings = Settings()
