from __future__ import annotations

from dataclasses import dataclass, field
from threading import Lock, RLock

from .models import utc_now


@dataclass
class UpgradeStatus:
    msdef_id: str
    spec_ref: str
    from_version: str
    to_version: str
    state: str  # started|done|rolled_back|failed
    message: str
    started_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)


class RuntimeState:
    """In-memory state shared by the reconciler and the API."""

    def __init__(self) -> None:
        self.lock = Lock()
        self.key_locks: dict[tuple[str, str, str], RLock] = {}  # (spec_ref, org, arch) -> lock
        self.upgrades: dict[str, UpgradeStatus] = {}  # spec_ref -> latest status

    def lock_for(self, key: tuple[str, str, str]) -> RLock:
        """Lock serializing upgrade decisions for one (spec_ref, org, arch)."""
        with self.lock:
            lk = self.key_locks.get(key)
            if lk is None:
                lk = self.key_locks[key] = RLock()
            return lk

    def upsert_upgrade(self, st: UpgradeStatus) -> None:
        with self.lock:
            prev = self.upgrades.get(st.spec_ref)
            if prev is not None and prev.msdef_id == st.msdef_id:
                st.started_at = prev.started_at
            st.updated_at = utc_now()
            self.upgrades[st.spec_ref] = st

    def get_upgrade(self, spec_ref: str) -> UpgradeStatus | None:
        with self.lock:
            return self.upgrades.get(spec_ref)

    def list_upgrades(self) -> list[UpgradeStatus]:
        with self.lock:
            return list(self.upgrades.values())
