"""Stack dependency graph: validation and deterministic ordering."""
import heapq
from collections import defaultdict
from types import MappingProxyType
from typing import Iterable, Mapping

from attrs import define, field
from aws_lambda_powertools import Logger

from provisioning.errors import CyclicDependency, DeclarationError, UnresolvedReference
from provisioning.model import AnyReference, ExportReference, Reference, Stack

logger = Logger(service="provisioning", child=True)


@define(slots=True, frozen=True)
class ProvisioningPlan:
    order: tuple[str, ...] = field(converter=tuple)
    stacks: Mapping[str, Stack] = field(converter=MappingProxyType)
    dependencies: Mapping[str, frozenset[str]] = field(converter=MappingProxyType)
    references: Mapping[tuple[str, str], tuple[AnyReference, ...]] = field(
        converter=MappingProxyType
    )

    def references_of(self, stack: str) -> dict[str, tuple[AnyReference, ...]]:
        return {
            node: references
            for (owner, node), references in self.references.items()
            if owner == stack
        }


class DependencyGraphBuilder:
    """Validates declared stacks and orders them dependencies-first.

    An edge ``T -> S`` exists when ``S`` references a node or output of ``T``
    or lists ``T`` in ``depends_on``. Ties are broken by stack name so the same
    declarations always produce the same order.
    """

    def build(self, stacks: Iterable[Stack]) -> ProvisioningPlan:
        index = self._index(stacks)
        references: dict[tuple[str, str], tuple[AnyReference, ...]] = {}
        for stack in index.values():
            references.update(self._check_stack(stack, index))

        dependencies = {}
        for stack in index.values():
            for name in sorted(stack.depends_on):
                if name not in index:
                    raise UnresolvedReference(stack.name, None, name, "unknown stack")
            dependencies[stack.name] = stack.dependencies

        order = self._sort(dependencies)
        logger.debug("Computed stack order", order=order)
        return ProvisioningPlan(
            order=order,
            stacks=index,
            dependencies=dependencies,
            references=references,
        )

    @staticmethod
    def _index(stacks: Iterable[Stack]) -> dict[str, Stack]:
        index: dict[str, Stack] = {}
        for stack in stacks:
            if stack.name in index:
                raise DeclarationError(f"Duplicate stack name {stack.name}")
            index[stack.name] = stack
        return index

    def _check_stack(
        self, stack: Stack, index: Mapping[str, Stack]
    ) -> dict[tuple[str, str], tuple[AnyReference, ...]]:
        positions: dict[str, int] = {}
        for position, node in enumerate(stack.nodes):
            if node.id in positions:
                raise DeclarationError(f"Duplicate node id {stack.name}/{node.id}")
            positions[node.id] = position

        references = {}
        for position, node in enumerate(stack.nodes):
            node_references = node.references()
            for reference in node_references:
                self._check_reference(stack, node.id, position, reference, index)
            references[(stack.name, node.id)] = node_references

        for name, value in stack.outputs.items():
            targets = value if isinstance(value, tuple) else (value,)
            if not targets:
                raise DeclarationError(f"Output {stack.name}/{name} references nothing")
            for reference in targets:
                if not isinstance(reference, Reference) or reference.stack != stack.name:
                    raise DeclarationError(
                        f"Output {stack.name}/{name} must reference a node of {stack.name}"
                    )
                if reference.node not in positions:
                    raise UnresolvedReference(stack.name, None, reference, "unknown node")
        return references

    def _check_reference(
        self,
        stack: Stack,
        node_id: str,
        position: int,
        reference: AnyReference,
        index: Mapping[str, Stack],
    ) -> None:
        target = index.get(reference.stack)
        if target is None:
            raise UnresolvedReference(stack.name, node_id, reference, "unknown stack")

        if isinstance(reference, ExportReference):
            if reference.output not in target.outputs:
                raise UnresolvedReference(stack.name, node_id, reference, "unknown output")
            if target is stack:
                for inner in target.output_references(reference.output):
                    self._check_local(stack, node_id, position, inner, reference)
            return

        if reference.node not in target.node_ids:
            raise UnresolvedReference(stack.name, node_id, reference, "unknown node")
        if target is stack:
            self._check_local(stack, node_id, position, reference, reference)

    @staticmethod
    def _check_local(
        stack: Stack,
        node_id: str,
        position: int,
        target: Reference,
        reported: AnyReference,
    ) -> None:
        if stack.node_ids.index(target.node) >= position:
            raise UnresolvedReference(
                stack.name, node_id, reported, "forward reference within stack"
            )

    def _sort(self, dependencies: Mapping[str, frozenset[str]]) -> list[str]:
        indegree = {name: len(deps) for name, deps in dependencies.items()}
        dependents: dict[str, set[str]] = defaultdict(set)
        for name, deps in dependencies.items():
            for dependency in deps:
                dependents[dependency].add(name)

        ready = [name for name, degree in indegree.items() if degree == 0]
        heapq.heapify(ready)
        order = []
        while ready:
            name = heapq.heappop(ready)
            order.append(name)
            for dependent in dependents[name]:
                indegree[dependent] -= 1
                if indegree[dependent] == 0:
                    heapq.heappush(ready, dependent)

        if len(order) != len(dependencies):
            remaining = set(dependencies) - set(order)
            raise CyclicDependency(self._cycle_members(remaining, dependencies))
        return order

    @staticmethod
    def _cycle_members(
        remaining: set[str], dependencies: Mapping[str, frozenset[str]]
    ) -> set[str]:
        """Stacks that sit on a cycle, as opposed to merely downstream of one."""
        counter = 0
        indices: dict[str, int] = {}
        lowlinks: dict[str, int] = {}
        stack: list[str] = []
        on_stack: set[str] = set()
        members: set[str] = set()

        def visit(name: str) -> None:
            nonlocal counter
            indices[name] = lowlinks[name] = counter
            counter += 1
            stack.append(name)
            on_stack.add(name)
            for dependency in sorted(dependencies[name] & remaining):
                if dependency not in indices:
                    visit(dependency)
                    lowlinks[name] = min(lowlinks[name], lowlinks[dependency])
                elif dependency in on_stack:
                    lowlinks[name] = min(lowlinks[name], indices[dependency])
            if lowlinks[name] == indices[name]:
                component = []
                while True:
                    member = stack.pop()
                    on_stack.discard(member)
                    component.append(member)
                    if member == name:
                        break
                if len(component) > 1 or name in dependencies[name]:
                    members.update(component)

        for name in sorted(remaining):
            if name not in indices:
                visit(name)
        return members

