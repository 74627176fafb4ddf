import os
import sys

import pytest

# Ensure project root is importable (so `import msupgrade` works without installing)
_project_root = os.path.dirname(os.path.dirname(__file__))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from msupgrade.api_models import ExchangeMicroserviceDefinition  # noqa: E402
from msupgrade.db import Store  # noqa: E402
from msupgrade.errors import RegistryError  # noqa: E402
from msupgrade.upgrade import convert_to_persistent  # noqa: E402
from msupgrade.versions import VersionRange, compare_versions  # noqa: E402

SPEC_REF = "https://bluehorizon.network/microservices/gps"
ORG = "IBM"
ARCH = "amd64"


def exchange_def(version: str, description: str = "gps location", **kw) -> ExchangeMicroserviceDefinition:
    data = {
        "owner": "IBM/admin",
        "label": "GPS",
        "description": description,
        "specRef": SPEC_REF,
        "version": version,
        "arch": ARCH,
        "sharable": "single",
        "downloadUrl": "",
        "matchHardware": {"usbDeviceIds": "1546:01a7", "devFiles": "/dev/ttyACM*"},
        "userInput": [{"name": "foo", "label": "Foo", "type": "string", "defaultValue": "bar"}],
        "workloads": [{"deployment": "{}", "deployment_signature": "sig", "torrent": "{}"}],
        "lastUpdated": "2017-08-01T12:00:00Z",
    }
    data.update(kw)
    return ExchangeMicroserviceDefinition.model_validate(data)


def local_def(version: str = "1.0.0", **kw):
    msdef = convert_to_persistent(exchange_def(version), ORG)
    msdef.auto_upgrade = True
    for k, v in kw.items():
        setattr(msdef, k, v)
    return msdef


class FakeRegistry:
    """In-memory stand-in for the exchange client."""

    def __init__(self, *defs: ExchangeMicroserviceDefinition):
        self.defs = list(defs)
        self.calls = 0
        self.node_id = "IBM/node1"
        self.error: Exception | None = None
        self.unregistered: list[str] = []
        self.cancelled = False

    def get_highest_matching_version(self, spec_ref, org, range_expr, arch):
        self.calls += 1
        if self.error is not None:
            raise self.error
        vrange = VersionRange.parse(range_expr)
        matches = [d for d in self.defs if d.spec_ref == spec_ref and d.arch == arch and vrange.contains(d.version)]
        if not matches:
            raise RegistryError(f"no match for {spec_ref} {range_expr}")
        best = matches[0]
        for d in matches[1:]:
            if compare_versions(d.version, best.version) > 0:
                best = d
        return best

    def unregister_microservice(self, node_id, spec_ref, node_name=""):
        self.unregistered.append(spec_ref)
        return True

    def cancel(self):
        self.cancelled = True

    def reset(self):
        self.cancelled = False


@pytest.fixture
def store(tmp_path):
    s = Store(str(tmp_path / "msupgrade.db"))
    s.init_db()
    return s
