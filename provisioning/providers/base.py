from abc import ABC, abstractmethod
from types import MappingProxyType
from typing import Any, Mapping

from attrs import define, field
from attrs.validators import instance_of

from provisioning.model import ResourceKind, Stack


@define(slots=True, frozen=True)
class ResourceRequest:
    """A node with every reference already resolved to a concrete value."""

    stack: str = field(validator=instance_of(str))
    node_id: str = field(validator=instance_of(str))
    kind: ResourceKind = field(converter=ResourceKind)
    properties: Mapping[str, Any] = field(factory=dict)


@define(slots=True, frozen=True)
class ResourceHandle:
    """A resource that already exists, as recorded after its creation."""

    stack: str = field(validator=instance_of(str))
    node_id: str = field(validator=instance_of(str))
    kind: ResourceKind = field(converter=ResourceKind)
    identifier: str = field(validator=instance_of(str))
    attributes: Mapping[str, Any] = field(factory=dict, converter=MappingProxyType)


@define(slots=True, frozen=True)
class ProviderResult:
    identifier: str = field(validator=instance_of(str))
    attributes: Mapping[str, Any] = field(factory=dict)


class ResourceProvider(ABC):
    """Cloud-specific adapter that creates, inspects and removes resources.

    Failures are raised as ``ProviderError``. Providers that cannot be called
    from worker threads set ``supports_concurrency`` to False; the engine then
    calls them inline on the event loop thread.
    """

    supports_concurrency: bool = True

    def begin_stack(self, stack: Stack, dependencies: frozenset[str]) -> None:
        """Called once before the first node of ``stack`` is created."""

    def publish_output(
        self, stack: str, name: str, value: Any, description: str = ""
    ) -> None:
        """Called when a stack output becomes known."""

    @abstractmethod
    def create(self, request: ResourceRequest) -> ProviderResult:
        ...

    @abstractmethod
    def describe(self, handle: ResourceHandle) -> ProviderResult:
        ...

    @abstractmethod
    def update(
        self, handle: ResourceHandle, properties: Mapping[str, Any]
    ) -> ProviderResult:
        ...

    @abstractmethod
    def delete(self, handle: ResourceHandle) -> None:
        ...
