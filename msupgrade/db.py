from __future__ import annotations

import json
import os
import sqlite3
import threading
from contextlib import contextmanager
from typing import Any, Callable, Iterable, Iterator

from .errors import StoreError
from .models import Attribute, MicroserviceDefinition, MicroserviceInstance, utc_now
from .settings import settings

DefFilter = Callable[[MicroserviceDefinition], bool]
InstFilter = Callable[[MicroserviceInstance], bool]


# --- Filters ---


def unarchived() -> Callable[[Any], bool]:
    return lambda rec: not rec.archived


def archived() -> Callable[[Any], bool]:
    return lambda rec: rec.archived


def by_url(spec_ref: str) -> DefFilter:
    return lambda d: d.spec_ref == spec_ref


def by_url_version(spec_ref: str, version: str) -> DefFilter:
    return lambda d: d.spec_ref == spec_ref and d.version == version


def by_key(key: tuple[str, str, str]) -> DefFilter:
    """Match definitions of the same (spec_ref, org, arch)."""
    return lambda d: d.key == key


def all_instances(spec_ref: str, version: str) -> InstFilter:
    return lambda i: i.spec_ref == spec_ref and i.version == version


def _resolve_db_path(path: str) -> str:
    """Return a file path usable by sqlite.

    If the configured path is a directory (for example a bind mount that
    docker created for a missing file), the DB file is placed inside it.
    """
    if path == ":memory:":
        return path

    p = os.path.abspath(path)
    if os.path.isdir(p):
        p = os.path.join(p, "msupgrade.db")

    parent = os.path.dirname(p)
    if parent and not os.path.exists(parent):
        os.makedirs(parent, exist_ok=True)

    return p


_DEF_JSON_FIELDS = ("match_hardware", "user_inputs", "workloads")
_DEF_BOOL_FIELDS = ("auto_upgrade", "active_upgrade", "archived")

_DEF_COLUMNS = (
    "id",
    "spec_ref",
    "org",
    "version",
    "arch",
    "owner",
    "label",
    "description",
    "download_url",
    "sharable",
    "match_hardware",
    "user_inputs",
    "workloads",
    "last_updated",
    "metadata_hash",
    "name",
    "upgrade_version_range",
    "auto_upgrade",
    "active_upgrade",
    "upgrade_start_time",
    "upgrade_ms_unregistered_time",
    "upgrade_agreements_cleared_time",
    "upgrade_execution_start_time",
    "upgrade_ms_reregistered_time",
    "upgrade_failed_time",
    "upgrade_failure_reason",
    "upgrade_failure_description",
    "upgrade_state",
    "upgrade_new_ms_id",
    "upgrade_prev_ms_id",
    "archived",
)


def _def_to_row(d: MicroserviceDefinition) -> tuple[Any, ...]:
    values = d.to_dict()
    out: list[Any] = []
    for col in _DEF_COLUMNS:
        v = values[col]
        if col in _DEF_JSON_FIELDS:
            v = json.dumps(v)
        elif col in _DEF_BOOL_FIELDS:
            v = int(bool(v))
        out.append(v)
    return tuple(out)


def _row_to_def(row: sqlite3.Row) -> MicroserviceDefinition:
    data = {k: row[k] for k in row.keys() if k != "updated_at"}
    for col in _DEF_JSON_FIELDS:
        data[col] = json.loads(data[col] or "null") or ({} if col == "match_hardware" else [])
    for col in _DEF_BOOL_FIELDS:
        data[col] = bool(data[col])
    return MicroserviceDefinition(**data)


def _row_to_instance(row: sqlite3.Row) -> MicroserviceInstance:
    data = dict(row)
    data["associated_agreements"] = json.loads(data["associated_agreements"] or "[]")
    data["archived"] = bool(data["archived"])
    return MicroserviceInstance(**data)


def _row_to_attribute(row: sqlite3.Row) -> Attribute:
    data = dict(row)
    data["values"] = json.loads(data["values_json"] or "{}")
    data["service_urls"] = json.loads(data["service_urls"] or "[]")
    del data["values_json"]
    return Attribute(**data)


class Store:
    """SQLite backed store for definitions, instances, attributes and events."""

    def __init__(self, path: str | None = None):
        self.path = _resolve_db_path(path or settings.db_path)
        self._local = threading.local()
        self._memory_conn: sqlite3.Connection | None = None
        if self.path == ":memory:":
            self._memory_conn = self._open()

    def _open(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _conn(self) -> Iterator[sqlite3.Connection]:
        tx = getattr(self._local, "conn", None)
        try:
            if tx is not None:
                yield tx
            elif self._memory_conn is not None:
                with self._memory_conn:
                    yield self._memory_conn
            else:
                conn = self._open()
                try:
                    with conn:
                        yield conn
                finally:
                    conn.close()
        except sqlite3.Error as e:
            raise StoreError(f"Store operation failed on {self.path}: {e}") from e

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Run the enclosed reads and writes in one IMMEDIATE transaction.

        Nested calls join the outer transaction.
        """
        if getattr(self._local, "conn", None) is not None:
            yield
            return
        try:
            conn = self._memory_conn or self._open()
            prev_isolation = conn.isolation_level
            conn.isolation_level = None
            conn.execute("BEGIN IMMEDIATE")
        except sqlite3.Error as e:
            raise StoreError(f"Unable to start transaction on {self.path}: {e}") from e
        self._local.conn = conn
        try:
            yield
        except BaseException:
            try:
                conn.execute("ROLLBACK")
            except sqlite3.Error as e:
                raise StoreError(f"Unable to roll back transaction on {self.path}: {e}") from e
            raise
        else:
            try:
                conn.execute("COMMIT")
            except sqlite3.Error as e:
                raise StoreError(f"Unable to commit transaction on {self.path}: {e}") from e
        finally:
            self._local.conn = None
            conn.isolation_level = prev_isolation
            if conn is not self._memory_conn:
                conn.close()

    def init_db(self) -> None:
        """Create tables if they do not exist."""
        with self._conn() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS microservice_defs (
                  id TEXT PRIMARY KEY,
                  spec_ref TEXT NOT NULL,
                  org TEXT NOT NULL,
                  version TEXT NOT NULL,
                  arch TEXT NOT NULL,
                  owner TEXT NOT NULL DEFAULT '',
                  label TEXT NOT NULL DEFAULT '',
                  description TEXT NOT NULL DEFAULT '',
                  download_url TEXT NOT NULL DEFAULT '',
                  sharable TEXT NOT NULL,
                  match_hardware TEXT,
                  user_inputs TEXT,
                  workloads TEXT,
                  last_updated TEXT NOT NULL DEFAULT '',
                  metadata_hash TEXT NOT NULL DEFAULT '',
                  name TEXT NOT NULL DEFAULT '',
                  upgrade_version_range TEXT NOT NULL DEFAULT '0.0.0',
                  auto_upgrade INTEGER NOT NULL DEFAULT 0,
                  active_upgrade INTEGER NOT NULL DEFAULT 1,
                  upgrade_start_time INTEGER NOT NULL DEFAULT 0,
                  upgrade_ms_unregistered_time INTEGER NOT NULL DEFAULT 0,
                  upgrade_agreements_cleared_time INTEGER NOT NULL DEFAULT 0,
                  upgrade_execution_start_time INTEGER NOT NULL DEFAULT 0,
                  upgrade_ms_reregistered_time INTEGER NOT NULL DEFAULT 0,
                  upgrade_failed_time INTEGER NOT NULL DEFAULT 0,
                  upgrade_failure_reason INTEGER NOT NULL DEFAULT 0,
                  upgrade_failure_description TEXT NOT NULL DEFAULT '',
                  upgrade_state TEXT NOT NULL, -- stable|started|...|reregistered|failed
                  upgrade_new_ms_id TEXT NOT NULL DEFAULT '',
                  upgrade_prev_ms_id TEXT NOT NULL DEFAULT '',
                  archived INTEGER NOT NULL DEFAULT 0,
                  updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS microservice_instances (
                  id TEXT PRIMARY KEY,
                  spec_ref TEXT NOT NULL,
                  version TEXT NOT NULL,
                  microservice_def_id TEXT NOT NULL,
                  instance_key TEXT NOT NULL,
                  associated_agreements TEXT NOT NULL DEFAULT '[]',
                  archived INTEGER NOT NULL DEFAULT 0,
                  created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS attributes (
                  id TEXT PRIMARY KEY,
                  kind TEXT NOT NULL,
                  label TEXT NOT NULL DEFAULT '',
                  service_urls TEXT NOT NULL DEFAULT '[]',
                  values_json TEXT NOT NULL DEFAULT '{}'
                );

                CREATE TABLE IF NOT EXISTS events (
                  id INTEGER PRIMARY KEY AUTOINCREMENT,
                  ts TEXT NOT NULL,
                  level TEXT NOT NULL,
                  spec_ref TEXT,
                  version TEXT,
                  message TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_events_ts ON events(ts);
                CREATE INDEX IF NOT EXISTS idx_defs_spec_ref ON microservice_defs(spec_ref);
                CREATE INDEX IF NOT EXISTS idx_instances_spec_ref ON microservice_instances(spec_ref, version);
                """
            )

    # --- Events ---

    def log_event(self, level: str, message: str, spec_ref: str | None = None, version: str | None = None) -> None:
        with self._conn() as conn:
            conn.execute(
                "INSERT INTO events (ts, level, spec_ref, version, message) VALUES (?, ?, ?, ?, ?)",
                (utc_now(), level.upper(), spec_ref, version, message),
            )

    def latest_events(self, limit: int = 100) -> list[dict[str, Any]]:
        with self._conn() as conn:
            rows = conn.execute("SELECT * FROM events ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
            return [dict(r) for r in rows]

    # --- Microservice definitions ---

    def put_definition(self, msdef: MicroserviceDefinition) -> MicroserviceDefinition:
        cols = ", ".join(_DEF_COLUMNS + ("updated_at",))
        marks = ", ".join("?" for _ in range(len(_DEF_COLUMNS) + 1))
        updates = ", ".join(f"{c}=excluded.{c}" for c in _DEF_COLUMNS[1:] + ("updated_at",))
        with self._conn() as conn:
            conn.execute(
                f"INSERT INTO microservice_defs ({cols}) VALUES ({marks}) ON CONFLICT(id) DO UPDATE SET {updates}",
                _def_to_row(msdef) + (utc_now(),),
            )
        return msdef

    def get_definition(self, msdef_id: str) -> MicroserviceDefinition | None:
        with self._conn() as conn:
            row = conn.execute("SELECT * FROM microservice_defs WHERE id=?", (msdef_id,)).fetchone()
            return _row_to_def(row) if row else None

    def find_definitions(self, filters: Iterable[DefFilter] = ()) -> list[MicroserviceDefinition]:
        filters = list(filters)
        with self._conn() as conn:
            rows = conn.execute("SELECT * FROM microservice_defs ORDER BY rowid").fetchall()
        out = [_row_to_def(r) for r in rows]
        return [d for d in out if all(f(d) for f in filters)]

    # --- Microservice instances ---

    def put_instance(self, inst: MicroserviceInstance) -> MicroserviceInstance:
        with self._conn() as conn:
            conn.execute(
                """
                INSERT INTO microservice_instances (id, spec_ref, version, microservice_def_id, instance_key, associated_agreements, archived, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                  associated_agreements=excluded.associated_agreements,
                  archived=excluded.archived
                """,
                (
                    inst.id,
                    inst.spec_ref,
                    inst.version,
                    inst.microservice_def_id,
                    inst.instance_key,
                    json.dumps(list(inst.associated_agreements)),
                    int(inst.archived),
                    inst.created_at,
                ),
            )
        return inst

    def find_instances(self, filters: Iterable[InstFilter] = ()) -> list[MicroserviceInstance]:
        filters = list(filters)
        with self._conn() as conn:
            rows = conn.execute("SELECT * FROM microservice_instances ORDER BY rowid").fetchall()
        out = [_row_to_instance(r) for r in rows]
        return [i for i in out if all(f(i) for f in filters)]

    # --- Attributes ---

    def put_attribute(self, attr: Attribute) -> Attribute:
        with self._conn() as conn:
            conn.execute(
                """
                INSERT INTO attributes (id, kind, label, service_urls, values_json)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                  kind=excluded.kind,
                  label=excluded.label,
                  service_urls=excluded.service_urls,
                  values_json=excluded.values_json
                """,
                (attr.id, attr.kind, attr.label, json.dumps(attr.service_urls), json.dumps(attr.values)),
            )
        return attr

    def find_applicable_attributes(self, spec_ref: str) -> list[Attribute]:
        with self._conn() as conn:
            rows = conn.execute("SELECT * FROM attributes ORDER BY rowid").fetchall()
        return [a for a in (_row_to_attribute(r) for r in rows) if a.applies_to(spec_ref)]
