from __future__ import annotations

import threading
from typing import TYPE_CHECKING, Any

import httpx
from pydantic import ValidationError

from .api_models import ExchangeMicroserviceDefinition, ExchangeNode, GetMicroservicesResponse
from .errors import RegistryError
from .settings import settings
from .versions import VersionRange, compare_versions

if TYPE_CHECKING:
    from .db import Store


def split_node_id(node_id: str) -> tuple[str, str]:
    """Split an exchange node id "org/id" into its parts."""
    org, sep, short_id = node_id.partition("/")
    if not sep or not org or not short_id:
        raise RegistryError(f"Node id {node_id!r} is not of the form org/id")
    return org, short_id


class _Transient(Exception):
    pass


class ExchangeClient:
    """Small client for the exchange REST API.

    Transient failures (connection errors, timeouts, 429 and 5xx responses)
    are retried after a fixed delay until the call succeeds or cancel() is
    called. Everything else raises RegistryError right away.
    """

    def __init__(
        self,
        base_url: str | None = None,
        node_id: str | None = None,
        node_token: str | None = None,
        timeout_s: float | None = None,
        retry_delay_s: float | None = None,
        transport: httpx.BaseTransport | None = None,
        store: "Store | None" = None,
    ):
        base = base_url or settings.exchange_url
        self.base_url = base if base.endswith("/") else base + "/"
        self.node_id = node_id if node_id is not None else settings.node_id
        self.node_token = node_token if node_token is not None else settings.node_token
        self.timeout_s = settings.exchange_timeout_s if timeout_s is None else timeout_s
        self.retry_delay_s = settings.exchange_retry_delay_s if retry_delay_s is None else retry_delay_s
        self.transport = transport
        self.store = store
        self._cancelled = threading.Event()

    def cancel(self) -> None:
        """Abort pending retries; calls fail until reset() is called."""
        self._cancelled.set()

    def reset(self) -> None:
        self._cancelled.clear()

    def _client(self) -> httpx.Client:
        auth = (self.node_id, self.node_token) if self.node_id and self.node_token else None
        return httpx.Client(timeout=self.timeout_s, auth=auth, transport=self.transport, follow_redirects=False)

    def _attempt(self, method: str, url: str, params: dict[str, Any] | None, body: Any) -> Any:
        try:
            with self._client() as client:
                resp = client.request(method, url, params=params, json=body)
        except (httpx.ConnectError, httpx.TimeoutException, httpx.RemoteProtocolError) as e:
            raise _Transient(f"{type(e).__name__}: {e}") from e
        except httpx.HTTPError as e:
            raise RegistryError(f"{method} {url} failed: {type(e).__name__}: {e}") from e

        if resp.status_code == 429 or resp.status_code >= 500:
            raise _Transient(f"HTTP {resp.status_code} from {method} {url}")
        if resp.status_code >= 400:
            raise RegistryError(f"HTTP {resp.status_code} from {method} {url}: {resp.text[:200]}", status_code=resp.status_code)
        if not resp.content:
            return None
        try:
            return resp.json()
        except ValueError as e:
            raise RegistryError(f"Invalid JSON from {method} {url}", status_code=resp.status_code) from e

    def invoke(self, method: str, path: str, params: dict[str, Any] | None = None, body: Any = None) -> Any:
        url = self.base_url + path.lstrip("/")
        while True:
            if self._cancelled.is_set():
                raise RegistryError(f"{method} {url} cancelled")
            try:
                return self._attempt(method, url, params, body)
            except _Transient as e:
                if self.store is not None:
                    self.store.log_event("WARN", f"Transient exchange error, retrying in {self.retry_delay_s}s: {e}")
                if self._cancelled.wait(self.retry_delay_s):
                    raise RegistryError(f"{method} {url} cancelled while retrying: {e}") from e

    def get_highest_matching_version(self, spec_ref: str, org: str, range_expr: str, arch: str) -> ExchangeMicroserviceDefinition:
        """Return the highest version of spec_ref/arch within the version range."""
        vrange = VersionRange.parse(range_expr)
        data = self.invoke("GET", f"orgs/{org}/microservices", params={"specRef": spec_ref, "arch": arch})
        try:
            resp = GetMicroservicesResponse.model_validate(data or {})
        except ValidationError as e:
            raise RegistryError(f"Unexpected microservices response for {org}/{spec_ref}: {e}") from e

        best: ExchangeMicroserviceDefinition | None = None
        for ms in resp.microservices.values():
            if ms.spec_ref != spec_ref or (arch and ms.arch != arch):
                continue
            if not vrange.contains(ms.version):
                continue
            if best is None or compare_versions(ms.version, best.version) > 0:
                best = ms
        if best is None:
            raise RegistryError(f"No microservice {org}/{spec_ref} for arch {arch} in version range {range_expr}")
        return best

    def get_node(self, node_id: str) -> ExchangeNode:
        org, short_id = split_node_id(node_id)
        data = self.invoke("GET", f"orgs/{org}/nodes/{short_id}") or {}
        nodes = data.get("nodes") or {}
        if node_id not in nodes:
            raise RegistryError(f"Node {node_id} not in GET response {list(nodes)} as expected")
        try:
            return ExchangeNode.model_validate(nodes[node_id])
        except ValidationError as e:
            raise RegistryError(f"Unexpected node payload for {node_id}: {e}") from e

    def put_node(self, node_id: str, body: dict[str, Any]) -> Any:
        org, short_id = split_node_id(node_id)
        return self.invoke("PUT", f"orgs/{org}/nodes/{short_id}", body=body)

    def unregister_microservice(self, node_id: str, spec_ref: str, node_name: str = "") -> bool:
        """Remove spec_ref from the node's registered microservices.

        Returns False when nothing was registered.
        """
        node = self.get_node(node_id)
        if not node.registered_microservices:
            return False
        keep = [ms for ms in node.registered_microservices if ms.url != spec_ref]
        body = {
            "token": self.node_token or node.token,
            "name": node_name or node.name,
            "registeredMicroservices": [ms.model_dump(by_alias=True) for ms in keep],
            "msgEndPoint": node.msg_end_point,
            "softwareVersions": node.software_versions,
            "publicKey": node.public_key,
        }
        self.put_node(node_id, body)
        return True
