from __future__ import annotations

import hashlib
import json
from typing import TYPE_CHECKING

from . import db
from .api_models import ExchangeMicroserviceDefinition
from .errors import ConversionError, StoreError
from .models import MicroserviceDefinition, normalize_sharable
from .phases import upgrade_in_progress
from .versions import VersionRange, compare_versions

if TYPE_CHECKING:
    from .db import Store
    from .exchange import ExchangeClient


def metadata_hash(ems: ExchangeMicroserviceDefinition) -> str:
    """SHA3-256 over the canonical JSON form of an exchange definition."""
    try:
        serial = json.dumps(ems.model_dump(by_alias=True), sort_keys=True, separators=(",", ":"))
    except (TypeError, ValueError) as e:
        raise ConversionError(f"Failed to marshal microservice metadata for {ems.spec_ref}: {e}") from e
    return hashlib.sha3_256(serial.encode("utf-8")).hexdigest()


def convert_to_persistent(ems: ExchangeMicroserviceDefinition, org: str) -> MicroserviceDefinition:
    """Build a local record from an exchange definition.

    Upgrade fields start out cleared and the node-local settings get their
    defaults; callers copy those over from an existing record when needed.
    """
    return MicroserviceDefinition(
        spec_ref=ems.spec_ref,
        org=org,
        version=ems.version,
        arch=ems.arch,
        owner=ems.owner,
        label=ems.label,
        description=ems.description,
        download_url=ems.download_url,
        sharable=normalize_sharable(ems.sharable),
        match_hardware={"usb_device_ids": ems.match_hardware.usb_device_ids, "devfiles": ems.match_hardware.devfiles},
        user_inputs=[ui.model_dump() for ui in ems.user_inputs],
        workloads=[wl.model_dump() for wl in ems.workloads],
        last_updated=ems.last_updated,
        metadata_hash=metadata_hash(ems),
        name="",
        upgrade_version_range="0.0.0",
        auto_upgrade=False,
        active_upgrade=True,
    )


def _log_quietly(store: "Store", message: str, msdef: MicroserviceDefinition) -> None:
    # the store may be the thing that is failing
    try:
        store.log_event("ERROR", message, spec_ref=msdef.spec_ref, version=msdef.version)
    except StoreError:
        pass


def can_upgrade(msdef: MicroserviceDefinition, store: "Store") -> bool:
    """Check if the given definition may start an upgrade now."""
    if msdef.archived:
        return False

    # user does not want upgrades
    if not msdef.auto_upgrade:
        return False

    # in the middle of an upgrade, do not disturb
    if upgrade_in_progress(msdef):
        return False

    # upgrading without evacuating first: no agreements may be running on it
    if not msdef.active_upgrade:
        try:
            instances = store.find_instances([db.all_instances(msdef.spec_ref, msdef.version), db.unarchived()])
        except StoreError as e:
            _log_quietly(
                store,
                f"Error retrieving microservice instances for {msdef.spec_ref} version {msdef.version}: {e}",
                msdef,
            )
            return False
        for inst in instances:
            if inst.microservice_def_id == msdef.id and inst.associated_agreements:
                return False

    return True


def resolve_upgrade_candidate(
    msdef: MicroserviceDefinition,
    registry: "ExchangeClient",
    store: "Store",
) -> MicroserviceDefinition | None:
    """Return the definition msdef should upgrade to, or None.

    The highest version in msdef's range is fetched from the exchange. None is
    returned when it is older, identical in version and content, or is the
    same content as an upgrade that was already attempted and rolled back.
    """
    vrange = VersionRange.parse(msdef.upgrade_version_range)
    ems = registry.get_highest_matching_version(msdef.spec_ref, msdef.org, vrange.expression, msdef.arch)
    candidate = convert_to_persistent(ems, msdef.org)

    cmp = compare_versions(candidate.version, msdef.version)
    if cmp < 0:
        return None
    if cmp == 0 and candidate.metadata_hash == msdef.metadata_hash:
        return None
    if msdef.upgrade_new_ms_id:
        try:
            attempted = store.get_definition(msdef.upgrade_new_ms_id)
        except StoreError as e:
            raise StoreError(
                f"Failed to get archived microservice definition for {msdef.spec_ref} org {msdef.org} version {msdef.version}: {e}"
            ) from e
        if attempted is not None and attempted.archived and attempted.metadata_hash == candidate.metadata_hash:
            # this upgrade failed before
            return None

    candidate.name = msdef.name
    candidate.upgrade_version_range = msdef.upgrade_version_range
    candidate.auto_upgrade = msdef.auto_upgrade
    candidate.active_upgrade = msdef.active_upgrade
    return candidate


def find_rollback_target(msdef: MicroserviceDefinition, store: "Store") -> MicroserviceDefinition | None:
    """Find the archived definition that msdef replaced, if any."""
    if msdef.upgrade_prev_ms_id:
        prev = store.get_definition(msdef.upgrade_prev_ms_id)
        if prev is not None and prev.archived and prev.spec_ref == msdef.spec_ref and prev.upgrade_new_ms_id == msdef.id:
            return prev

    # records without a predecessor link
    for ms in store.find_definitions([db.by_url(msdef.spec_ref), db.archived()]):
        if ms.upgrade_new_ms_id == msdef.id:
            return ms
    return None
