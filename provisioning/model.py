"""Declaration model: resource nodes, references, stacks and security intents.

Everything here is built once from static declarations and never mutated
afterwards; helpers that "change" a declaration return a new instance.
"""
from enum import Enum
from fnmatch import fnmatchcase
from types import MappingProxyType
from typing import Any, Iterator, Mapping, Optional, Union

from attrs import define, evolve, field
from attrs.validators import instance_of, optional

from provisioning.errors import DeclarationError


class ResourceKind(str, Enum):
    NETWORK = "Network"
    SUBNET = "Subnet"
    SECURITY_GROUP = "SecurityGroup"
    SECURITY_RULE = "SecurityRule"
    IAM_ROLE = "IamRole"
    IAM_POLICY = "IamPolicy"
    IAM_GROUP = "IamGroup"


def _not_blank(instance, attribute, value) -> None:
    if not isinstance(value, str) or not value.strip():
        raise DeclarationError(f"{attribute.name} must be a non-empty string")


def _no_slash(instance, attribute, value) -> None:
    if "/" in value:
        raise DeclarationError(f"{attribute.name} {value!r} must not contain '/'")


def _freeze(value: Any) -> Any:
    if isinstance(value, Mapping):
        return MappingProxyType({key: _freeze(item) for key, item in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(_freeze(item) for item in value)
    return value


@define(slots=True, frozen=True)
class Reference:
    """Points at an output attribute of another declared node."""

    stack: str = field(validator=_not_blank)
    node: str = field(validator=_not_blank)
    attribute: str = field(default="id", validator=_not_blank)

    def __str__(self) -> str:
        return f"{self.stack}/{self.node}.{self.attribute}"


@define(slots=True, frozen=True)
class ExportReference:
    """Points at a named output exported by a stack."""

    stack: str = field(validator=_not_blank)
    output: str = field(validator=_not_blank)

    def __str__(self) -> str:
        return f"{self.stack}:{self.output}"


AnyReference = Union[Reference, ExportReference]


def iter_references(value: Any) -> Iterator[AnyReference]:
    """Yield every reference nested in a property value."""
    if isinstance(value, (Reference, ExportReference)):
        yield value
    elif isinstance(value, Mapping):
        for item in value.values():
            yield from iter_references(item)
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from iter_references(item)


@define(slots=True, frozen=True)
class ResourceNode:
    id: str = field(validator=[_not_blank, _no_slash])
    kind: ResourceKind = field(converter=ResourceKind)
    properties: Mapping[str, Any] = field(factory=dict, converter=_freeze)
    owner_stack: Optional[str] = field(default=None, validator=optional(instance_of(str)))

    def references(self) -> tuple[AnyReference, ...]:
        return tuple(iter_references(self.properties))

    def ref(self, attribute: str = "id") -> Reference:
        if self.owner_stack is None:
            raise DeclarationError(f"Node {self.id} is not attached to a stack")
        return Reference(self.owner_stack, self.id, attribute)


def _output_value(value: Any) -> Any:
    if isinstance(value, (list, tuple)):
        return tuple(value)
    return value


def _freeze_outputs(outputs: Mapping[str, Any]) -> Mapping[str, Any]:
    return MappingProxyType({name: _output_value(value) for name, value in outputs.items()})


@define(slots=True, frozen=True)
class Stack:
    """An ordered set of resource nodes provisioned as one unit.

    ``depends_on`` holds the explicitly declared dependencies only; the full
    dependency set, including stacks pointed at by references, is
    ``dependencies``.
    """

    name: str = field(validator=[_not_blank, _no_slash])
    nodes: tuple[ResourceNode, ...] = field(factory=tuple, converter=tuple)
    outputs: Mapping[str, Any] = field(factory=dict, converter=_freeze_outputs)
    depends_on: frozenset[str] = field(factory=frozenset, converter=frozenset)
    description: str = field(default="", validator=instance_of(str))
    output_descriptions: Mapping[str, str] = field(factory=dict, converter=MappingProxyType)

    def __attrs_post_init__(self) -> None:
        unknown = sorted(set(self.output_descriptions) - set(self.outputs))
        if unknown:
            raise DeclarationError(f"Stack {self.name} describes unknown outputs {unknown}")
        owned = []
        for node in self.nodes:
            if not isinstance(node, ResourceNode):
                raise DeclarationError(f"Stack {self.name} holds a non-node {node!r}")
            if node.owner_stack not in (None, self.name):
                raise DeclarationError(
                    f"Node {node.id} already belongs to stack {node.owner_stack}"
                )
            owned.append(evolve(node, owner_stack=self.name))
        object.__setattr__(self, "nodes", tuple(owned))

    @property
    def node_ids(self) -> tuple[str, ...]:
        return tuple(node.id for node in self.nodes)

    def node(self, node_id: str) -> ResourceNode:
        for node in self.nodes:
            if node.id == node_id:
                return node
        raise KeyError(f"{self.name}/{node_id}")

    def output_references(self, name: str) -> tuple[AnyReference, ...]:
        return tuple(iter_references(self.outputs[name]))

    @property
    def referenced_stacks(self) -> frozenset[str]:
        names = set()
        for node in self.nodes:
            names.update(reference.stack for reference in node.references())
        for value in self.outputs.values():
            names.update(reference.stack for reference in iter_references(value))
        names.discard(self.name)
        return frozenset(names)

    @property
    def dependencies(self) -> frozenset[str]:
        return self.depends_on | self.referenced_stacks

    def with_dependency(self, *stacks: Union[str, "Stack"]) -> "Stack":
        names = {stack.name if isinstance(stack, Stack) else stack for stack in stacks}
        return evolve(self, depends_on=self.depends_on | names)

    def with_nodes(self, *nodes: ResourceNode) -> "Stack":
        return evolve(self, nodes=self.nodes + tuple(nodes))


@define(slots=True, frozen=True)
class Selector:
    """Selects security groups by id pattern, owning stack and labels."""

    pattern: str = field(validator=_not_blank)
    stack: Optional[str] = field(default=None, validator=optional(instance_of(str)))
    labels: Mapping[str, str] = field(factory=dict, converter=_freeze)

    @classmethod
    def parse(cls, value: Union[str, "Selector"]) -> "Selector":
        if isinstance(value, Selector):
            return value
        if not isinstance(value, str):
            raise DeclarationError(f"Cannot build a selector from {value!r}")
        stack, _, pattern = value.rpartition("/")
        return cls(pattern=pattern, stack=stack or None)

    def matches(self, node: ResourceNode) -> bool:
        if node.kind is not ResourceKind.SECURITY_GROUP:
            return False
        if self.stack is not None and node.owner_stack != self.stack:
            return False
        if not fnmatchcase(node.id, self.pattern):
            return False
        labels = node.properties.get("labels") or {}
        return all(labels.get(key) == value for key, value in self.labels.items())

    def __str__(self) -> str:
        text = f"{self.stack}/{self.pattern}" if self.stack else self.pattern
        if self.labels:
            text += "[" + ",".join(f"{k}={v}" for k, v in sorted(self.labels.items())) + "]"
        return text


def _valid_port(instance, attribute, value) -> None:
    if isinstance(value, bool) or not isinstance(value, int) or not 0 <= value <= 65535:
        raise DeclarationError(f"{attribute.name} must be a port number, got {value!r}")


def _one_of(*choices: str):
    def validate(instance, attribute, value) -> None:
        if value not in choices:
            raise DeclarationError(
                f"{attribute.name} must be one of {', '.join(choices)}, got {value!r}"
            )

    return validate


@define(slots=True, frozen=True)
class SecurityIntent:
    source: Selector = field(converter=Selector.parse)
    destination: Selector = field(converter=Selector.parse)
    port: int = field(validator=_valid_port)
    protocol: str = field(default="tcp", validator=_one_of("tcp", "udp", "icmp", "-1"))
    description: str = field(default="", validator=instance_of(str))
    direction: str = field(default="ingress", validator=_one_of("ingress", "egress"))


@define(slots=True, frozen=True)
class Declarations:
    stacks: tuple[Stack, ...] = field(factory=tuple, converter=tuple)
    intents: tuple[SecurityIntent, ...] = field(factory=tuple, converter=tuple)

    def stack(self, name: str) -> Stack:
        for stack in self.stacks:
            if stack.name == name:
                return stack
        raise KeyError(name)
