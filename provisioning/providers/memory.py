"""Provider that keeps resources in memory, for dry runs and tests."""
import hashlib
import threading
import time
from typing import Any, Mapping, Optional

from provisioning.errors import ProviderError
from provisioning.model import ResourceKind, Stack
from provisioning.providers.base import (
    ProviderResult,
    ResourceHandle,
    ResourceProvider,
    ResourceRequest,
)

DEFAULT_ACCOUNT_ID = "123456789012"


class InMemoryProvider(ResourceProvider):
    """Creates fake but realistic identifiers derived from the node's location.

    Creating the same (stack, node) twice converges to the new properties and
    returns the original identifier. Failures and delays can be injected per
    node to exercise the engine.
    """

    def __init__(self, account_id: str = DEFAULT_ACCOUNT_ID) -> None:
        self.account_id = account_id
        self.resources: dict[tuple[str, str], dict[str, Any]] = {}
        self.outputs: dict[tuple[str, str], Any] = {}
        self.output_descriptions: dict[tuple[str, str], str] = {}
        self.calls: list[tuple[str, str, Optional[str]]] = []
        self._failures: dict[tuple[str, str], Exception] = {}
        self._delays: dict[tuple[str, str], float] = {}
        self._lock = threading.Lock()

    def fail_on(self, stack: str, node: str, error: Optional[Exception] = None) -> None:
        self._failures[(stack, node)] = error or ProviderError(
            "InjectedFailure", f"{stack}/{node} refused", 500
        )

    def delay_on(self, stack: str, node: str, seconds: float) -> None:
        self._delays[(stack, node)] = seconds

    def created(self) -> list[tuple[str, str]]:
        """(stack, node) pairs in the order create was called for them."""
        return [(stack, node) for op, stack, node in self.calls if op == "create"]

    def begin_stack(self, stack: Stack, dependencies: frozenset[str]) -> None:
        self._record("begin_stack", stack.name, None)

    def publish_output(
        self, stack: str, name: str, value: Any, description: str = ""
    ) -> None:
        with self._lock:
            self.outputs[(stack, name)] = value
            if description:
                self.output_descriptions[(stack, name)] = description

    def create(self, request: ResourceRequest) -> ProviderResult:
        key = (request.stack, request.node_id)
        self._record("create", *key)
        if key in self._delays:
            time.sleep(self._delays[key])
        if key in self._failures:
            raise self._failures[key]

        with self._lock:
            existing = self.resources.get(key)
            if existing is not None and existing["kind"] is request.kind:
                existing["properties"] = dict(request.properties)
                return ProviderResult(existing["identifier"], existing["attributes"])

            identifier, attributes = self._materialize(request)
            self.resources[key] = {
                "kind": request.kind,
                "identifier": identifier,
                "properties": dict(request.properties),
                "attributes": attributes,
            }
        return ProviderResult(identifier, attributes)

    def describe(self, handle: ResourceHandle) -> ProviderResult:
        record = self._find(handle)
        return ProviderResult(record["identifier"], record["attributes"])

    def update(
        self, handle: ResourceHandle, properties: Mapping[str, Any]
    ) -> ProviderResult:
        self._record("update", handle.stack, handle.node_id)
        record = self._find(handle)
        with self._lock:
            record["properties"] = dict(properties)
        return ProviderResult(record["identifier"], record["attributes"])

    def delete(self, handle: ResourceHandle) -> None:
        self._record("delete", handle.stack, handle.node_id)
        self._find(handle)
        with self._lock:
            del self.resources[(handle.stack, handle.node_id)]

    def properties_of(self, stack: str, node: str) -> dict[str, Any]:
        return self.resources[(stack, node)]["properties"]

    def _record(self, operation: str, stack: str, node: Optional[str]) -> None:
        with self._lock:
            self.calls.append((operation, stack, node))

    def _find(self, handle: ResourceHandle) -> dict[str, Any]:
        with self._lock:
            record = self.resources.get((handle.stack, handle.node_id))
        if record is None or record["identifier"] != handle.identifier:
            raise ProviderError(
                "NotFound", f"{handle.kind.value} {handle.identifier} does not exist", 404
            )
        return record

    def _materialize(self, request: ResourceRequest) -> tuple[str, dict[str, Any]]:
        properties = request.properties
        digest = hashlib.sha1(
            f"{request.stack}/{request.node_id}".encode()
        ).hexdigest()[:17]

        if request.kind is ResourceKind.NETWORK:
            identifier = f"vpc-{digest}"
            attributes = {"cidr_block": properties.get("cidr_block")}
            if properties.get("internet_gateway"):
                attributes["internet_gateway_id"] = f"igw-{digest}"
            return identifier, attributes
        if request.kind is ResourceKind.SUBNET:
            attributes = {
                "availability_zone": properties.get("availability_zone"),
                "vpc_id": properties.get("vpc_id"),
            }
            if properties.get("internet_gateway_id") or properties.get("nat_gateway_id"):
                attributes["route_table_id"] = f"rtb-{digest}"
                if properties.get("nat_gateway"):
                    attributes["nat_gateway_id"] = f"nat-{digest}"
            return f"subnet-{digest}", attributes
        if request.kind is ResourceKind.SECURITY_GROUP:
            identifier = f"sg-{digest}"
            return identifier, {"group_id": identifier, "vpc_id": properties.get("vpc_id")}
        if request.kind is ResourceKind.SECURITY_RULE:
            identifier = f"sgr-{digest}"
            return identifier, {"group_id": properties.get("group_id"), "rule_id": identifier}

        iam_path = {
            ResourceKind.IAM_ROLE: ("role", "role_name"),
            ResourceKind.IAM_POLICY: ("policy", "policy_name"),
            ResourceKind.IAM_GROUP: ("group", "group_name"),
        }
        resource_type, name_property = iam_path[request.kind]
        name = properties.get(name_property) or request.node_id
        arn = f"arn:aws:iam::{self.account_id}:{resource_type}/{name}"
        if request.kind is ResourceKind.IAM_POLICY:
            return arn, {"arn": arn, "name": name}
        return name, {"name": name, "arn": arn}
