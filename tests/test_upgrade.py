import pytest

from conftest import ARCH, ORG, SPEC_REF, FakeRegistry, exchange_def, local_def
from msupgrade.db import Store
from msupgrade.errors import InvalidRangeError, RegistryError, StoreError
from msupgrade.models import MicroserviceInstance
from msupgrade.upgrade import (
    can_upgrade,
    convert_to_persistent,
    find_rollback_target,
    metadata_hash,
    resolve_upgrade_candidate,
)


class BrokenInstanceStore(Store):
    def find_instances(self, filters=()):
        raise StoreError("disk on fire")


# --- conversion ---


@pytest.mark.parametrize("raw,expected", [("SINGLE", "single"), ("Multiple", "multiple"), ("", "exclusive"), ("shared", "exclusive")])
def test_sharable_is_normalized(raw, expected):
    assert convert_to_persistent(exchange_def("1.0.0", sharable=raw), ORG).sharable == expected


def test_conversion_sets_defaults_and_hash():
    msdef = convert_to_persistent(exchange_def("1.0.0"), ORG)
    assert msdef.org == ORG
    assert msdef.upgrade_version_range == "0.0.0"
    assert msdef.auto_upgrade is False
    assert msdef.active_upgrade is True
    assert msdef.upgrade_start_time == 0
    assert len(msdef.metadata_hash) == 64
    assert msdef.metadata_hash == metadata_hash(exchange_def("1.0.0"))
    assert msdef.metadata_hash != metadata_hash(exchange_def("1.0.0", description="changed"))


# --- eligibility ---


def test_archived_is_never_eligible(store):
    assert can_upgrade(local_def(archived=True), store) is False


def test_manual_only_is_never_eligible(store):
    assert can_upgrade(local_def(auto_upgrade=False), store) is False


def test_upgrade_in_progress_is_not_eligible(store):
    assert can_upgrade(local_def(upgrade_start_time=10), store) is False
    assert can_upgrade(local_def(upgrade_start_time=10, upgrade_ms_reregistered_time=20), store) is True
    assert can_upgrade(local_def(upgrade_start_time=10, upgrade_failed_time=20), store) is True


def test_inactive_upgrade_blocked_by_live_agreement(store):
    msdef = local_def(active_upgrade=False)
    store.put_instance(MicroserviceInstance(SPEC_REF, msdef.version, msdef.id, associated_agreements=["ag1"]))
    assert can_upgrade(msdef, store) is False


def test_inactive_upgrade_ignores_other_definitions_and_idle_instances(store):
    msdef = local_def(active_upgrade=False)
    store.put_instance(MicroserviceInstance(SPEC_REF, msdef.version, "someone-else", associated_agreements=["ag1"]))
    store.put_instance(MicroserviceInstance(SPEC_REF, msdef.version, msdef.id))
    store.put_instance(MicroserviceInstance(SPEC_REF, msdef.version, msdef.id, associated_agreements=["ag2"], archived=True))
    assert can_upgrade(msdef, store) is True


def test_active_upgrade_ignores_agreements(store):
    msdef = local_def(active_upgrade=True)
    store.put_instance(MicroserviceInstance(SPEC_REF, msdef.version, msdef.id, associated_agreements=["ag1"]))
    assert can_upgrade(msdef, store) is True


def test_store_error_fails_closed(tmp_path):
    broken = BrokenInstanceStore(str(tmp_path / "broken.db"))
    broken.init_db()
    assert can_upgrade(local_def(active_upgrade=False), broken) is False
    assert broken.latest_events(1)[0]["level"] == "ERROR"


def test_store_error_fails_closed_when_logging_fails_too(tmp_path):
    # no init_db: neither the instances nor the events table exists
    empty = Store(str(tmp_path / "empty.db"))
    assert can_upgrade(local_def(active_upgrade=False), empty) is False


# --- version resolution ---


def test_identical_definition_is_not_an_upgrade(store):
    msdef = local_def("1.0.0")
    registry = FakeRegistry(exchange_def("1.0.0"))
    assert resolve_upgrade_candidate(msdef, registry, store) is None


def test_same_version_with_new_content_is_an_upgrade(store):
    msdef = local_def("1.0.0")
    registry = FakeRegistry(exchange_def("1.0.0", description="republished"))
    candidate = resolve_upgrade_candidate(msdef, registry, store)
    assert candidate is not None
    assert candidate.version == "1.0.0"
    assert candidate.metadata_hash != msdef.metadata_hash


def test_newer_version_copies_node_local_settings(store):
    msdef = local_def("1.0.0", name="gps1", upgrade_version_range="[1.0.0,3.0.0)", active_upgrade=False)
    registry = FakeRegistry(exchange_def("1.0.0"), exchange_def("2.0.0"))
    candidate = resolve_upgrade_candidate(msdef, registry, store)
    assert candidate.version == "2.0.0"
    assert candidate.name == "gps1"
    assert candidate.upgrade_version_range == "[1.0.0,3.0.0)"
    assert candidate.auto_upgrade is True
    assert candidate.active_upgrade is False
    assert candidate.id != msdef.id
    assert candidate.upgrade_start_time == 0


def test_older_version_is_not_a_downgrade_target(store):
    msdef = local_def("2.0.0")
    registry = FakeRegistry(exchange_def("1.5.0"))
    assert resolve_upgrade_candidate(msdef, registry, store) is None


def test_multi_digit_versions_use_numeric_precedence(store):
    msdef = local_def("9.0.0")
    registry = FakeRegistry(exchange_def("10.0.0"))
    assert resolve_upgrade_candidate(msdef, registry, store).version == "10.0.0"


def test_previously_failed_upgrade_is_not_retried(store):
    failed = convert_to_persistent(exchange_def("2.0.0"), ORG)
    failed.archived = True
    store.put_definition(failed)

    msdef = local_def("1.0.0", upgrade_new_ms_id=failed.id)
    registry = FakeRegistry(exchange_def("2.0.0"))
    assert resolve_upgrade_candidate(msdef, registry, store) is None

    # a republished 2.0.0 is a different upgrade
    registry = FakeRegistry(exchange_def("2.0.0", description="fixed"))
    assert resolve_upgrade_candidate(msdef, registry, store) is not None


def test_resolution_is_idempotent(store):
    msdef = local_def("1.0.0")
    registry = FakeRegistry(exchange_def("2.0.0"))
    first = resolve_upgrade_candidate(msdef, registry, store)
    assert first is not None
    assert resolve_upgrade_candidate(first, registry, store) is None
    assert resolve_upgrade_candidate(first, registry, store) is None


def test_invalid_range_raises_before_calling_exchange(store):
    registry = FakeRegistry(exchange_def("2.0.0"))
    with pytest.raises(InvalidRangeError):
        resolve_upgrade_candidate(local_def(upgrade_version_range="[bogus"), registry, store)
    assert registry.calls == 0


def test_registry_errors_propagate(store):
    registry = FakeRegistry()
    registry.error = RegistryError("exchange down", status_code=503)
    with pytest.raises(RegistryError):
        resolve_upgrade_candidate(local_def(), registry, store)


# --- rollback target ---


def test_rollback_target_via_predecessor_link(store):
    old = local_def("1.0.0", archived=True)
    new = local_def("2.0.0", upgrade_prev_ms_id=old.id)
    old.upgrade_new_ms_id = new.id
    store.put_definition(old)
    store.put_definition(new)
    assert find_rollback_target(new, store).id == old.id


def test_rollback_target_by_scanning_archive(store):
    old = local_def("1.0.0", archived=True)
    other = local_def("0.9.0", archived=True, upgrade_new_ms_id="unrelated")
    new = local_def("2.0.0")
    old.upgrade_new_ms_id = new.id
    for d in (other, old, new):
        store.put_definition(d)
    found = find_rollback_target(new, store)
    assert found.id == old.id
    assert found.version == "1.0.0"


def test_rollback_target_ignores_unarchived_records(store):
    old = local_def("1.0.0")
    new = local_def("2.0.0", upgrade_prev_ms_id=old.id)
    old.upgrade_new_ms_id = new.id
    store.put_definition(old)
    assert find_rollback_target(new, store) is None


def test_no_rollback_target_for_first_install(store):
    first = local_def("1.0.0")
    store.put_definition(first)
    assert find_rollback_target(first, store) is None


def test_store_round_trip_keeps_fields(store):
    msdef = local_def("1.2.3", name="gps", upgrade_start_time=7, upgrade_new_ms_id="x")
    store.put_definition(msdef)
    loaded = store.get_definition(msdef.id)
    assert loaded == msdef
    assert loaded.key == (SPEC_REF, ORG, ARCH)
