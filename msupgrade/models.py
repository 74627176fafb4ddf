from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import Any, Mapping

from .phases import UpgradeState, state_from_timestamps


SHARING_MODE_EXCLUSIVE = "exclusive"
SHARING_MODE_SINGLE = "single"
SHARING_MODE_MULTIPLE = "multiple"
SHARING_MODES = {SHARING_MODE_EXCLUSIVE, SHARING_MODE_SINGLE, SHARING_MODE_MULTIPLE}


def utc_now() -> str:
    return datetime.utcnow().strftime("%Y-%m-%dT%H:%M:%SZ")


def new_id() -> str:
    return uuid.uuid4().hex


def normalize_sharable(value: str | None) -> str:
    mode = (value or "").strip().lower()
    return mode if mode in SHARING_MODES else SHARING_MODE_EXCLUSIVE


@dataclass
class MicroserviceDefinition:
    spec_ref: str
    org: str
    version: str
    arch: str
    id: str = field(default_factory=new_id)

    # Copied from the exchange
    owner: str = ""
    label: str = ""
    description: str = ""
    download_url: str = ""
    sharable: str = SHARING_MODE_EXCLUSIVE
    match_hardware: dict[str, Any] = field(default_factory=dict)
    user_inputs: list[dict[str, Any]] = field(default_factory=list)
    workloads: list[dict[str, Any]] = field(default_factory=list)
    last_updated: str = ""
    metadata_hash: str = ""

    # Node-local upgrade configuration
    name: str = ""
    upgrade_version_range: str = "0.0.0"
    auto_upgrade: bool = False
    active_upgrade: bool = True

    # Upgrade audit timestamps, epoch seconds, 0 = not reached
    upgrade_start_time: int = 0
    upgrade_ms_unregistered_time: int = 0
    upgrade_agreements_cleared_time: int = 0
    upgrade_execution_start_time: int = 0
    upgrade_ms_reregistered_time: int = 0
    upgrade_failed_time: int = 0
    upgrade_failure_reason: int = 0
    upgrade_failure_description: str = ""
    upgrade_state: UpgradeState | None = None

    upgrade_new_ms_id: str = ""
    upgrade_prev_ms_id: str = ""
    archived: bool = False

    def __post_init__(self) -> None:
        self.sharable = normalize_sharable(self.sharable)
        if self.upgrade_state is None:
            self.upgrade_state = state_from_timestamps(self)
        else:
            self.upgrade_state = UpgradeState(self.upgrade_state)

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.spec_ref, self.org, self.arch)

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["upgrade_state"] = self.upgrade_state.value
        return d


@dataclass
class MicroserviceInstance:
    spec_ref: str
    version: str
    microservice_def_id: str
    instance_key: str = field(default_factory=new_id)
    id: str = field(default_factory=new_id)
    associated_agreements: list[str] = field(default_factory=list)
    archived: bool = False
    created_at: str = field(default_factory=utc_now)


@dataclass
class Attribute:
    """A node attribute; with no service urls it applies to every microservice."""

    kind: str
    values: dict[str, Any] = field(default_factory=dict)
    service_urls: list[str] = field(default_factory=list)
    label: str = ""
    id: str = field(default_factory=new_id)

    @property
    def is_common(self) -> bool:
        return not self.service_urls

    def applies_to(self, spec_ref: str) -> bool:
        return self.is_common or spec_ref in self.service_urls


@dataclass(frozen=True)
class Meter:
    tokens: int = 0
    per_time_unit: str = ""
    notification_interval_s: int = 0


@dataclass(frozen=True)
class AgreementProtocol:
    name: str
    protocol_version: int = 1
    blockchains: tuple[dict[str, Any], ...] = ()


@dataclass(frozen=True)
class PolicyDocument:
    spec_ref: str
    org: str
    name: str
    version: str
    arch: str
    properties: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    ha_partners: tuple[str, ...] = ()
    meter: Meter = field(default_factory=Meter)
    counterparty_properties: dict[str, Any] = field(default_factory=dict)
    agreement_protocols: tuple[AgreementProtocol, ...] = ()
    max_agreements: int = 1
    device_org: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "header": {"name": self.name or self.spec_ref, "version": "2.0"},
            "apiSpec": [{"specRef": self.spec_ref, "organization": self.org, "version": self.version, "exclusive": self.max_agreements == 1, "arch": self.arch}],
            "agreementProtocols": [
                {"name": p.name, "protocolVersion": p.protocol_version, "blockchains": list(p.blockchains)}
                for p in self.agreement_protocols
            ],
            "maxAgreements": self.max_agreements,
            "properties": [{"name": k, "value": v} for k, v in self.properties.items()],
            "counterPartyProperties": self.counterparty_properties,
            "ha_group": {"partners": list(self.ha_partners)},
            "meterPolicy": {
                "tokens": self.meter.tokens,
                "perTimeUnit": self.meter.per_time_unit,
                "notificationInterval": self.meter.notification_interval_s,
            },
            "deviceOrg": self.device_org,
        }
