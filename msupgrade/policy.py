from __future__ import annotations

import json
import os
import queue
from dataclasses import dataclass
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Iterable

from .errors import PolicyCompileError, PolicyFileError, StoreError
from .models import (
    SHARING_MODE_MULTIPLE,
    SHARING_MODE_SINGLE,
    AgreementProtocol,
    Attribute,
    Meter,
    MicroserviceDefinition,
    PolicyDocument,
)
from .settings import settings

if TYPE_CHECKING:
    from .db import Store


SUPPORTED_AGREEMENT_PROTOCOLS = {"Basic", "Citizen Scientist"}


def convert_agreement_protocols(raw: Any) -> tuple[AgreementProtocol, ...]:
    """Validate an agreement protocol attribute value."""
    if raw is None:
        return ()
    if not isinstance(raw, list):
        raise PolicyCompileError(f"Agreement protocol list must be a list, got {type(raw).__name__}: {raw!r}")

    out: list[AgreementProtocol] = []
    for item in raw:
        if not isinstance(item, dict):
            raise PolicyCompileError(f"Agreement protocol {item!r} must be an object")
        name = item.get("name")
        if not isinstance(name, str) or not name:
            raise PolicyCompileError(f"Agreement protocol {item!r} has no name")
        if name not in SUPPORTED_AGREEMENT_PROTOCOLS:
            raise PolicyCompileError(f"Agreement protocol {name!r} is not supported")
        version = item.get("protocolVersion", 1)
        if isinstance(version, bool) or not isinstance(version, int) or version < 1:
            raise PolicyCompileError(f"Agreement protocol {name!r} has invalid protocolVersion {version!r}")
        chains = item.get("blockchains", [])
        if not isinstance(chains, list) or not all(isinstance(c, dict) for c in chains):
            raise PolicyCompileError(f"Agreement protocol {name!r} has invalid blockchains {chains!r}")
        out.append(AgreementProtocol(name=name, protocol_version=version, blockchains=tuple(chains)))
    return tuple(out)


def _as_int(attr: Attribute, key: str) -> int:
    v = attr.values.get(key, 0)
    if isinstance(v, bool):
        raise PolicyCompileError(f"Attribute {attr.kind} {attr.id}: {key} must be an integer, got {v!r}")
    try:
        return int(v)
    except (TypeError, ValueError) as e:
        raise PolicyCompileError(f"Attribute {attr.kind} {attr.id}: {key} must be an integer, got {v!r}") from e


def _fold(attributes: Iterable[Attribute], store: "Store | None" = None) -> dict[str, Any]:
    """Fold one group of attributes into the policy fields they set.

    Free-form property mappings are applied after the typed fields of the
    group, so they win over cpus/ram from the same group.
    """
    fields: dict[str, Any] = {}
    props: dict[str, Any] = {}
    mappings: dict[str, Any] = {}

    for attr in attributes:
        kind = attr.kind.lower()
        if kind == "compute":
            props["cpus"] = str(_as_int(attr, "cpus"))
            props["ram"] = str(_as_int(attr, "ram"))
        elif kind == "architecture":
            fields["arch"] = str(attr.values.get("architecture", ""))
        elif kind == "ha":
            fields["ha_partners"] = tuple(attr.values.get("partners") or ())
        elif kind == "metering":
            fields["meter"] = Meter(
                tokens=_as_int(attr, "tokens"),
                per_time_unit=str(attr.values.get("perTimeUnit", "")),
                notification_interval_s=_as_int(attr, "notificationInterval"),
            )
        elif kind == "counterpartyproperty":
            fields["counterparty_properties"] = dict(attr.values.get("expression") or {})
        elif kind == "property":
            mappings.update(attr.values)
        elif kind == "agreementprotocol":
            fields["agreement_protocols"] = attr.values.get("protocols")
        elif store is not None:
            store.log_event("DEBUG", f"Unhandled attribute kind {attr.kind!r} ({attr.id}) ignored")

    props.update(mappings)
    fields["properties"] = props
    return fields


def merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Merge two folded groups; fields set by override win."""
    out = {**base, **{k: v for k, v in override.items() if k != "properties"}}
    out["properties"] = MappingProxyType({**base.get("properties", {}), **override.get("properties", {})})
    return out


def max_agreements_for(sharable: str) -> int:
    # single/multiple are capped at 2 until per-mode limits exist
    if sharable in (SHARING_MODE_SINGLE, SHARING_MODE_MULTIPLE):
        return 2
    return 1


def compile_policy(
    msdef: MicroserviceDefinition,
    attribute_store: "Store",
    sink: "QueuePolicySink | PendingPolicySink",
    device_org: str | None = None,
) -> PolicyDocument:
    """Compile the node attributes for msdef into a policy document and publish it.

    Attributes scoped to the microservice override the common ones.
    """
    try:
        attributes = attribute_store.find_applicable_attributes(msdef.spec_ref)
    except StoreError as e:
        raise StoreError(f"Failed to get the microservice attributes for {msdef.spec_ref} version {msdef.version}: {e}") from e

    common = [a for a in attributes if a.is_common]
    specific = [a for a in attributes if not a.is_common]
    fields = merge(_fold(common, attribute_store), _fold(specific, attribute_store))

    protocols = convert_agreement_protocols(fields.get("agreement_protocols"))

    doc = PolicyDocument(
        spec_ref=msdef.spec_ref,
        org=msdef.org,
        name=msdef.name,
        version=msdef.version,
        arch=fields.get("arch", ""),
        properties=fields["properties"],
        ha_partners=fields.get("ha_partners", ()),
        meter=fields.get("meter", Meter()),
        counterparty_properties=fields.get("counterparty_properties", {}),
        agreement_protocols=protocols,
        max_agreements=max_agreements_for(msdef.sharable),
        device_org=settings.device_org if device_org is None else device_org,
    )
    sink.publish(doc)
    return doc


# --- Policy sink ---


@dataclass(frozen=True)
class PolicyMessage:
    kind: str  # created|removed
    spec_ref: str
    org: str
    version: str
    document: PolicyDocument | None = None
    msdef_id: str = ""


class QueuePolicySink:
    """Hands policy changes to a queue; a PolicyFileWriter persists them."""

    def __init__(self, q: "queue.Queue[PolicyMessage] | None" = None):
        self.queue: "queue.Queue[PolicyMessage]" = q if q is not None else queue.Queue()

    def publish(self, doc: PolicyDocument) -> None:
        self.queue.put_nowait(PolicyMessage("created", doc.spec_ref, doc.org, doc.version, document=doc))

    def remove(self, spec_ref: str, org: str, version: str, msdef_id: str) -> None:
        self.queue.put_nowait(PolicyMessage("removed", spec_ref, org, version, msdef_id=msdef_id))


class PendingPolicySink:
    """Holds policy changes made inside a store transaction.

    Nothing reaches the real sink until flush() runs after the commit.
    """

    def __init__(self):
        self.messages: list[PolicyMessage] = []

    def publish(self, doc: PolicyDocument) -> None:
        self.messages.append(PolicyMessage("created", doc.spec_ref, doc.org, doc.version, document=doc))

    def remove(self, spec_ref: str, org: str, version: str, msdef_id: str) -> None:
        self.messages.append(PolicyMessage("removed", spec_ref, org, version, msdef_id=msdef_id))

    def flush(self, sink: QueuePolicySink) -> int:
        n = len(self.messages)
        for msg in self.messages:
            sink.queue.put_nowait(msg)
        self.messages.clear()
        return n


def policy_file_name(spec_ref: str) -> str:
    return spec_ref.rstrip("/").split("/")[-1] + ".policy"


class PolicyFileWriter:
    """Persists policy documents as <policy_path>/<org>/<name>.policy files."""

    def __init__(self, sink: QueuePolicySink, policy_path: str | None = None, store: "Store | None" = None):
        self.sink = sink
        self.policy_path = policy_path or settings.policy_path
        self.store = store

    def _path(self, spec_ref: str, org: str) -> str:
        return os.path.join(self.policy_path, org, policy_file_name(spec_ref))

    def drain(self) -> int:
        """Process every queued message. Returns how many were handled."""
        n = 0
        while True:
            try:
                msg = self.sink.queue.get_nowait()
            except queue.Empty:
                return n
            try:
                if msg.kind == "created" and msg.document is not None:
                    path = self.write_policy(msg.document)
                    self._log("INFO", f"Wrote policy file {path}", msg)
                elif msg.kind == "removed":
                    if self.remove_policy(msg.spec_ref, msg.org, msg.version, msg.msdef_id):
                        self._log("INFO", f"Archived policy file for key {msg.msdef_id}", msg)
            except PolicyFileError as e:
                self._log("ERROR", str(e), msg)
            finally:
                self.sink.queue.task_done()
            n += 1

    def _log(self, level: str, message: str, msg: PolicyMessage) -> None:
        if self.store is not None:
            self.store.log_event(level, message, spec_ref=msg.spec_ref, version=msg.version)

    def write_policy(self, doc: PolicyDocument) -> str:
        path = self._path(doc.spec_ref, doc.org)
        try:
            os.makedirs(os.path.dirname(path), exist_ok=True)
            with open(path, "w", encoding="utf-8") as f:
                json.dump(doc.to_dict(), f, indent=2, sort_keys=True)
        except OSError as e:
            raise PolicyFileError(f"Failed to write policy file {path}: {e}") from e
        return path

    def remove_policy(self, spec_ref: str, org: str, version: str, msdef_id: str) -> bool:
        """Move the policy for spec_ref/version aside as <name>.policy.<msdef_id>."""
        path = self._path(spec_ref, org)
        if not os.path.exists(path):
            return False
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            raise PolicyFileError(f"Failed to read policy file {path}: {e}") from e

        specs = data.get("apiSpec") or [{}]
        spec = specs[0]
        if spec.get("specRef") != spec_ref or spec.get("organization") != org or spec.get("version") != version:
            return False
        try:
            os.replace(path, f"{path}.{msdef_id}")
        except OSError as e:
            raise PolicyFileError(f"Failed to rename policy file {path}: {e}") from e
        return True

    def restore_policy_file(self, spec_ref: str, org: str, msdef_id: str) -> str:
        """Rename an archived policy file back in place and return its path."""
        path = self._path(spec_ref, org)
        archived_path = f"{path}.{msdef_id}"
        try:
            os.replace(archived_path, path)
        except OSError as e:
            raise PolicyFileError(f"Failed to rename the policy file {archived_path} to {path}: {e}") from e
        return path
