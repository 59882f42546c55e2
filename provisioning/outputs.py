import threading
from types import MappingProxyType
from typing import Any, Mapping

from attrs import define, field
from attrs.validators import instance_of

from provisioning.errors import OutputAlreadyRecorded
from provisioning.model import ExportReference, Reference


@define(slots=True, frozen=True)
class ProvisionedOutput:
    stack_name: str = field(validator=instance_of(str))
    output_name: str = field(validator=instance_of(str))
    value: Any = None


class OutputTable:
    """Run-scoped, append-only record of everything provisioned so far.

    Two namespaces share one lock: the attributes of every created node, keyed
    by ``(stack, node)``, and the named stack outputs, keyed by
    ``(stack, output)``. Both are write-once. A node's attributes are stored as
    a single read-only mapping so a reader sees all of them or none.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._nodes: dict[tuple[str, str], Mapping[str, Any]] = {}
        self._outputs: dict[tuple[str, str], ProvisionedOutput] = {}

    def record_node(
        self, stack: str, node: str, identifier: str, attributes: Mapping[str, Any]
    ) -> Mapping[str, Any]:
        record = MappingProxyType({**attributes, "id": identifier})
        with self._lock:
            if (stack, node) in self._nodes:
                raise OutputAlreadyRecorded(stack, node)
            self._nodes[(stack, node)] = record
        return record

    def publish(self, stack: str, name: str, value: Any) -> ProvisionedOutput:
        output = ProvisionedOutput(stack, name, value)
        with self._lock:
            if (stack, name) in self._outputs:
                raise OutputAlreadyRecorded(stack, name)
            self._outputs[(stack, name)] = output
        return output

    def has_node(self, stack: str, node: str) -> bool:
        with self._lock:
            return (stack, node) in self._nodes

    def has_output(self, stack: str, name: str) -> bool:
        with self._lock:
            return (stack, name) in self._outputs

    def node(self, stack: str, node: str) -> Mapping[str, Any]:
        with self._lock:
            return self._nodes[(stack, node)]

    def lookup(self, reference: Any) -> Any:
        """Return the value a reference points at; ``KeyError`` if not yet known."""
        if isinstance(reference, ExportReference):
            with self._lock:
                return self._outputs[(reference.stack, reference.output)].value
        if isinstance(reference, Reference):
            attributes = self.node(reference.stack, reference.node)
            return attributes[reference.attribute]
        raise TypeError(f"Not a reference: {reference!r}")

    def outputs(self) -> list[ProvisionedOutput]:
        with self._lock:
            return list(self._outputs.values())

    def snapshot(self) -> dict[str, dict[str, Any]]:
        """``{stack: {output: value}}`` as of now."""
        report: dict[str, dict[str, Any]] = {}
        for output in self.outputs():
            report.setdefault(output.stack_name, {})[output.output_name] = output.value
        return report
