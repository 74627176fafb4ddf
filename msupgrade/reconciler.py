from __future__ import annotations

import dataclasses
import time
from contextlib import contextmanager
from threading import Event, Thread
from typing import Callable, Iterator

from . import db
from .db import Store
from .errors import InvalidTransitionError, PolicyCompileError, UpgradeError
from .exchange import ExchangeClient
from .models import MicroserviceDefinition
from .phases import IN_PROGRESS_STATES, MS_EXEC_FAILED, UpgradeState, needs_rollback, transition
from .policy import PendingPolicySink, PolicyFileWriter, QueuePolicySink, compile_policy
from .runtime import RuntimeState, UpgradeStatus
from .settings import settings
from .upgrade import can_upgrade, find_rollback_target, resolve_upgrade_candidate


class UpgradeReconciler:
    """Periodically checks installed microservices for rollbacks and upgrades."""

    def __init__(
        self,
        store: Store,
        registry: ExchangeClient,
        sink: QueuePolicySink,
        runtime: RuntimeState | None = None,
        writer: PolicyFileWriter | None = None,
        now_fn: Callable[[], float] = time.time,
        exec_timeout_s: int | None = None,
        poll_interval_s: int | None = None,
    ):
        self.store = store
        self.registry = registry
        self.sink = sink
        self.runtime = runtime or RuntimeState()
        self.writer = writer
        self.now_fn = now_fn
        self.exec_timeout_s = settings.exec_timeout_s if exec_timeout_s is None else exec_timeout_s
        self.poll_interval_s = settings.poll_interval_s if poll_interval_s is None else poll_interval_s
        self._stop = Event()
        self._thr: Thread | None = None

    def start(self) -> None:
        if self._thr and self._thr.is_alive():
            if not self._stop.is_set():
                return
            self._thr.join()
        self._stop.clear()
        self.registry.reset()
        self._thr = Thread(target=self._loop, daemon=True)
        self._thr.start()

    def stop(self) -> None:
        self._stop.set()
        self.registry.cancel()

    def _loop(self) -> None:
        self.store.log_event("INFO", "Upgrade reconciler started")
        while not self._stop.is_set():
            try:
                self.tick()
            except Exception as e:
                self.store.log_event("ERROR", f"Reconciler tick failed: {type(e).__name__}: {e}")
            self._stop.wait(max(1, self.poll_interval_s))

    def _now(self) -> int:
        return int(self.now_fn())

    @contextmanager
    def _changing(self, key: tuple[str, str, str]) -> Iterator[PendingPolicySink]:
        """Lock key and open a transaction; policy changes reach the sink only after commit."""
        pending = PendingPolicySink()
        with self.runtime.lock_for(key):
            with self.store.transaction():
                yield pending
            pending.flush(self.sink)

    def tick(self) -> None:
        for msdef in self.store.find_definitions([db.unarchived()]):
            try:
                self._reconcile(msdef)
            except UpgradeError as e:
                self.store.log_event(
                    "ERROR",
                    f"Upgrade check failed for {msdef.org}/{msdef.spec_ref} version {msdef.version}: {type(e).__name__}: {e}",
                    spec_ref=msdef.spec_ref,
                    version=msdef.version,
                )
        if self.writer is not None:
            self.writer.drain()

    def _reconcile(self, msdef: MicroserviceDefinition) -> None:
        with self.runtime.lock_for(msdef.key):
            if needs_rollback(msdef, self.now_fn, self.exec_timeout_s):
                self.store.log_event(
                    "WARN",
                    f"Upgrade did not start executing within {self.exec_timeout_s}s, rolling back",
                    spec_ref=msdef.spec_ref,
                    version=msdef.version,
                )
                self.rollback(msdef.id, reason=MS_EXEC_FAILED, description="Upgrade timed out before execution started")
                return
            if not can_upgrade(msdef, self.store):
                return

        # No lock is held across the exchange call.
        candidate = resolve_upgrade_candidate(msdef, self.registry, self.store)
        if candidate is None:
            return

        with self._changing(msdef.key) as pending:
            current = self.store.get_definition(msdef.id)
            if current is None or current.version != msdef.version or not can_upgrade(current, self.store):
                return
            self._begin_upgrade(current, candidate, pending)

    def _begin_upgrade(
        self,
        old: MicroserviceDefinition,
        candidate: MicroserviceDefinition,
        pending: PendingPolicySink,
    ) -> MicroserviceDefinition:
        candidate.upgrade_prev_ms_id = old.id
        new = transition(candidate, UpgradeState.STARTED, now=self._now())
        old = dataclasses.replace(old, upgrade_new_ms_id=new.id, archived=True)

        self.store.put_definition(old)
        self.store.put_definition(new)
        pending.remove(old.spec_ref, old.org, old.version, old.id)

        msg = f"Upgrade started from version {old.version} to {new.version}"
        self.runtime.upsert_upgrade(UpgradeStatus(new.id, new.spec_ref, old.version, new.version, "started", msg))
        self.store.log_event("INFO", msg, spec_ref=new.spec_ref, version=new.version)
        return new

    def record_phase(
        self,
        msdef_id: str,
        state: UpgradeState,
        reason: int = 0,
        description: str = "",
    ) -> MicroserviceDefinition:
        """Advance an upgrading definition, as reported by the execution side."""
        msdef = self.store.get_definition(msdef_id)
        if msdef is None:
            raise KeyError(msdef_id)

        with self._changing(msdef.key) as pending:
            current = self.store.get_definition(msdef_id)
            if current is None:
                raise KeyError(msdef_id)
            updated = transition(current, state, now=self._now(), reason=reason, description=description)
            self.store.put_definition(updated)
            self.store.log_event("INFO", f"Upgrade phase {updated.upgrade_state.value}", spec_ref=updated.spec_ref, version=updated.version)

            if updated.upgrade_state == UpgradeState.REREGISTERED:
                compile_policy(updated, self.store, pending)
                prev = find_rollback_target(updated, self.store)
                msg = f"Upgrade to version {updated.version} completed"
                self.runtime.upsert_upgrade(
                    UpgradeStatus(updated.id, updated.spec_ref, prev.version if prev else "", updated.version, "done", msg)
                )
                self.store.log_event("INFO", msg, spec_ref=updated.spec_ref, version=updated.version)
            elif updated.upgrade_state == UpgradeState.FAILED:
                self._rollback_locked(updated, reason, description, pending)
        return updated

    def rollback(self, msdef_id: str, reason: int = 0, description: str = "") -> MicroserviceDefinition | None:
        """Fail the upgrade of msdef_id and reactivate its predecessor.

        Returns the reactivated definition, or None if there is none.
        """
        msdef = self.store.get_definition(msdef_id)
        if msdef is None:
            raise KeyError(msdef_id)
        with self._changing(msdef.key) as pending:
            current = self.store.get_definition(msdef_id)
            if current is None:
                raise KeyError(msdef_id)
            restored = self._rollback_locked(current, reason, description, pending)
        return restored

    def _rollback_locked(
        self,
        msdef: MicroserviceDefinition,
        reason: int,
        description: str,
        pending: PendingPolicySink,
    ) -> MicroserviceDefinition | None:
        if msdef.upgrade_state in IN_PROGRESS_STATES:
            msdef = transition(msdef, UpgradeState.FAILED, now=self._now(), reason=reason, description=description)
        elif msdef.upgrade_state != UpgradeState.FAILED:
            raise InvalidTransitionError(
                f"Cannot roll back {msdef.spec_ref} version {msdef.version} in state {msdef.upgrade_state.value}"
            )

        target = find_rollback_target(msdef, self.store)
        failed = dataclasses.replace(msdef, archived=True)

        if target is None:
            self.store.put_definition(failed)
            pending.remove(failed.spec_ref, failed.org, failed.version, failed.id)
            msg = f"Upgrade to version {failed.version} failed ({failed.upgrade_failure_description}); nothing to roll back to"
            self.runtime.upsert_upgrade(UpgradeStatus(failed.id, failed.spec_ref, "", failed.version, "failed", msg))
            self.store.log_event("ERROR", msg, spec_ref=failed.spec_ref, version=failed.version)
            return None

        # upgrade_new_ms_id stays set so the same definition is not retried.
        restored = dataclasses.replace(
            target,
            archived=False,
            upgrade_failed_time=0,
            upgrade_failure_reason=0,
            upgrade_failure_description="",
            upgrade_state=None,
        )
        # A policy that does not compile must not keep the failed version active.
        try:
            doc = compile_policy(restored, self.store, PendingPolicySink())
        except PolicyCompileError as e:
            doc = None
            self.store.log_event(
                "ERROR",
                f"Could not compile the policy for restored version {restored.version}: {e}",
                spec_ref=restored.spec_ref,
                version=restored.version,
            )

        self.store.put_definition(failed)
        self.store.put_definition(restored)
        pending.remove(failed.spec_ref, failed.org, failed.version, failed.id)
        if doc is not None:
            pending.publish(doc)

        msg = f"Rolled back from version {failed.version} to {restored.version}: {failed.upgrade_failure_description}"
        self.runtime.upsert_upgrade(UpgradeStatus(failed.id, failed.spec_ref, restored.version, failed.version, "rolled_back", msg))
        self.store.log_event("WARN", msg, spec_ref=restored.spec_ref, version=restored.version)
        return restored

    def unregister_from_exchange(self, msdef_id: str) -> MicroserviceDefinition:
        """Remove the microservice from the node's exchange registration and
        record the unregistered phase."""
        msdef = self.store.get_definition(msdef_id)
        if msdef is None:
            raise KeyError(msdef_id)
        if not self.registry.node_id:
            raise UpgradeError("Could not unregister microservice because no node id is configured")
        self.registry.unregister_microservice(self.registry.node_id, msdef.spec_ref)
        return self.record_phase(msdef_id, UpgradeState.UNREGISTERED)
