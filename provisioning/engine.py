"""Provisioning engine: walks the stack plan and records created outputs.

Each stack runs as an asyncio task that waits for its dependencies to finish.
Stacks with no path between them run concurrently (bounded by
``EngineSettings.max_concurrency``); nodes within a stack are created one at a
time in declaration order. Provider calls run in a per-run thread pool so a
per-call timeout can be applied; a call that outlives its timeout is left
running in the background and the run does not wait for it.
"""
import asyncio
import functools
import os
import threading
from collections import defaultdict
from concurrent.futures import Future, ThreadPoolExecutor, wait
from enum import Enum
from types import MappingProxyType
from typing import Any, Callable, Mapping, Optional

from attrs import define, field
from aws_lambda_powertools import Logger

from provisioning.composer import SecurityRuleComposer
from provisioning.config import EngineSettings
from provisioning.errors import (
    Cancelled,
    DependencyFailed,
    ProviderError,
    ProvisioningError,
    ProvisioningFailed,
    ProvisioningTimeout,
    UnresolvedReference,
)
from provisioning.graph import DependencyGraphBuilder, ProvisioningPlan
from provisioning.model import (
    Declarations,
    ExportReference,
    Reference,
    ResourceNode,
    Stack,
    iter_references,
)
from provisioning.outputs import OutputTable
from provisioning.providers.base import ResourceHandle, ResourceProvider, ResourceRequest

logger = Logger(service="provisioning", level=os.getenv("LOG_LEVEL", "INFO").upper())


class StackState(str, Enum):
    PENDING = "Pending"
    RESOLVING = "Resolving"
    PROVISIONING = "Provisioning"
    PROVISIONED = "Provisioned"
    FAILED = "Failed"


class CancellationToken:
    """Run-level cancellation signal, safe to trigger from any thread."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


@define(slots=True, frozen=True)
class StackFailure:
    stack: str
    error: str
    message: str
    node: Optional[str] = None
    cause: Optional[str] = None


@define(slots=True, frozen=True, eq=False)
class AbandonedCreate:
    """A create call that timed out but may still finish at the provider."""

    request: ResourceRequest
    future: Future

    def handle(self, timeout: Optional[float] = 0) -> Optional[ResourceHandle]:
        """The resource the call created, waiting up to ``timeout`` seconds for it.

        ``None`` when the call is still running, was never started, or failed.
        """
        done, _ = wait([self.future], timeout=timeout)
        if not done or self.future.cancelled() or self.future.exception() is not None:
            return None
        result = self.future.result()
        return ResourceHandle(
            stack=self.request.stack,
            node_id=self.request.node_id,
            kind=self.request.kind,
            identifier=result.identifier,
            attributes={**result.attributes, "id": result.identifier},
        )


@define(slots=True, frozen=True)
class RunResult:
    order: tuple[str, ...] = field(converter=tuple)
    outputs: Mapping[str, Mapping[str, Any]]
    failures: tuple[StackFailure, ...] = field(converter=tuple)
    states: Mapping[str, StackState] = field(converter=MappingProxyType)
    resources: tuple[ResourceHandle, ...] = field(default=(), converter=tuple)
    cancelled: bool = False
    abandoned: tuple[AbandonedCreate, ...] = field(default=(), converter=tuple)

    @property
    def orphans(self) -> list[ResourceHandle]:
        """Resources that abandoned creates have produced so far."""
        handles = []
        for call in self.abandoned:
            handle = call.handle()
            if handle is not None:
                handles.append(handle)
        return handles

    @property
    def succeeded(self) -> bool:
        return all(state is StackState.PROVISIONED for state in self.states.values())

    def stacks_in(self, state: StackState) -> list[str]:
        return [name for name in self.order if self.states[name] is state]

    @property
    def never_attempted(self) -> list[str]:
        return self.stacks_in(StackState.PENDING)

    def failure_for(self, stack: str) -> Optional[StackFailure]:
        for failure in self.failures:
            if failure.stack == stack:
                return failure
        return None

    def report(self) -> dict[str, dict[str, Any]]:
        report = {}
        for name in self.order:
            failure = self.failure_for(name)
            report[name] = {
                "state": self.states[name].value,
                "outputs": dict(self.outputs.get(name, {})),
                "failure": None
                if failure is None
                else {
                    "error": failure.error,
                    "node": failure.node,
                    "message": failure.message,
                    "cause": failure.cause,
                },
            }
        return report


class _Run:
    """Mutable bookkeeping for one provisioning run."""

    def __init__(
        self,
        plan: ProvisioningPlan,
        timeout: Optional[float],
        token: CancellationToken,
        max_workers: int,
    ) -> None:
        self.plan = plan
        self.timeout = timeout
        self.token = token
        self.max_workers = max_workers
        self.table = OutputTable()
        self.states = {name: StackState.PENDING for name in plan.order}
        self.done = {name: asyncio.Event() for name in plan.order}
        self.failures: list[StackFailure] = []
        self.resources: dict[str, list[ResourceHandle]] = defaultdict(list)
        self.abandoned: list[AbandonedCreate] = []
        self.halted = False
        self._executor: Optional[ThreadPoolExecutor] = None

    @property
    def stopped(self) -> bool:
        return self.halted or self.token.cancelled

    def submit(self, func: Callable[..., Any], *args: Any) -> Future:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=self.max_workers, thread_name_prefix="provisioning"
            )
        return self._executor.submit(func, *args)

    def retire_executor(self) -> None:
        """Leave the pool holding a timed-out call behind; later calls get a new one."""
        if self._executor is not None:
            self._executor.shutdown(wait=False)
            self._executor = None

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = None

    def abandon(self, request: ResourceRequest, future: Future) -> None:
        self.abandoned.append(AbandonedCreate(request, future))

    def fail(self, stack: str, error: ProvisioningError) -> None:
        self.states[stack] = StackState.FAILED
        cause = getattr(error, "cause", None)
        self.failures.append(
            StackFailure(
                stack=stack,
                error=type(error).__name__,
                message=str(error),
                node=getattr(error, "node", None),
                cause=None if cause is None else str(cause),
            )
        )

    def result(self) -> RunResult:
        return RunResult(
            order=self.plan.order,
            outputs=self.table.snapshot(),
            failures=self.failures,
            states=self.states,
            resources=[
                handle for name in self.plan.order for handle in self.resources[name]
            ],
            cancelled=self.token.cancelled,
            abandoned=self.abandoned,
        )


class ProvisioningEngine:
    def __init__(
        self,
        provider: ResourceProvider,
        settings: Optional[EngineSettings] = None,
        builder: Optional[DependencyGraphBuilder] = None,
        composer: Optional[SecurityRuleComposer] = None,
    ) -> None:
        self.provider = provider
        self.settings = settings or EngineSettings.from_env()
        self.builder = builder or DependencyGraphBuilder()
        self.composer = composer or SecurityRuleComposer()
        logger.setLevel(self.settings.log_level)

    def plan(self, declarations: Declarations) -> ProvisioningPlan:
        """Expand intents and order stacks; raises before touching the provider."""
        composed = self.composer.compose(declarations)
        return self.builder.build(composed.stacks)

    def run(
        self,
        declarations: Declarations,
        timeout: Optional[float] = None,
        cancellation_token: Optional[CancellationToken] = None,
    ) -> RunResult:
        return asyncio.run(self.run_async(declarations, timeout, cancellation_token))

    async def run_async(
        self,
        declarations: Declarations,
        timeout: Optional[float] = None,
        cancellation_token: Optional[CancellationToken] = None,
    ) -> RunResult:
        plan = self.plan(declarations)
        run = _Run(
            plan,
            timeout if timeout is not None else self.settings.call_timeout,
            cancellation_token or CancellationToken(),
            self.settings.max_concurrency,
        )
        logger.info("Starting provisioning run", order=list(plan.order))
        semaphore = asyncio.Semaphore(self.settings.max_concurrency)
        try:
            await asyncio.gather(
                *(self._schedule(run, plan.stacks[name], semaphore) for name in plan.order)
            )
        finally:
            run.close()
        result = run.result()
        logger.info(
            "Provisioning run finished",
            provisioned=result.stacks_in(StackState.PROVISIONED),
            failed=result.stacks_in(StackState.FAILED),
            not_attempted=result.never_attempted,
            abandoned=[call.request.node_id for call in result.abandoned],
        )
        return result

    def resolve_properties(
        self, node: ResourceNode, table: OutputTable
    ) -> dict[str, Any]:
        """Replace every reference in the node's properties with its recorded value."""

        def resolve(value: Any) -> Any:
            if isinstance(value, (Reference, ExportReference)):
                return self._lookup(table, node.owner_stack, node.id, value)
            if isinstance(value, Mapping):
                return {key: resolve(item) for key, item in value.items()}
            if isinstance(value, (list, tuple)):
                return [resolve(item) for item in value]
            return value

        return resolve(node.properties)

    def teardown(
        self, result: RunResult, wait_for_abandoned: Optional[float] = None
    ) -> list[ResourceHandle]:
        """Delete what ``result`` created, dependents before their dependencies.

        Creates that timed out are waited on for up to ``wait_for_abandoned``
        seconds (the call timeout when not given) and whatever they produced is
        deleted first. One still running after that is logged and left alone.
        """
        limit = (
            wait_for_abandoned
            if wait_for_abandoned is not None
            else self.settings.call_timeout
        )
        handles = list(result.resources)
        for call in result.abandoned:
            handle = call.handle(limit)
            if handle is None:
                if not call.future.done():
                    logger.warning(
                        "Abandoned create still running",
                        stack=call.request.stack,
                        node=call.request.node_id,
                    )
                continue
            handles.append(handle)

        deleted = []
        for handle in reversed(handles):
            logger.info(
                "Deleting resource",
                stack=handle.stack,
                node=handle.node_id,
                kind=handle.kind.value,
            )
            try:
                self.provider.delete(handle)
            except ProviderError as err:
                logger.error(
                    "Teardown stopped", stack=handle.stack, node=handle.node_id
                )
                raise ProvisioningFailed(handle.stack, handle.node_id, err) from err
            deleted.append(handle)
        return deleted

    # Scheduling

    async def _schedule(
        self, run: _Run, stack: Stack, semaphore: asyncio.Semaphore
    ) -> None:
        dependencies = run.plan.dependencies[stack.name]
        try:
            for dependency in sorted(dependencies):
                await run.done[dependency].wait()

            if run.token.cancelled:
                logger.info("Stack not attempted", stack=stack.name)
                return
            failed = sorted(
                name for name in dependencies if run.states[name] is StackState.FAILED
            )
            if failed:
                logger.warning(
                    "Skipping stack after dependency failure",
                    stack=stack.name,
                    failed=failed,
                )
                run.fail(stack.name, DependencyFailed(stack.name, failed))
                return
            if run.stopped or any(
                run.states[name] is not StackState.PROVISIONED for name in dependencies
            ):
                logger.info("Stack not attempted", stack=stack.name)
                return

            async with semaphore:
                if run.stopped:
                    logger.info("Stack not attempted", stack=stack.name)
                    return
                await self._provision_stack(run, stack)
        finally:
            run.done[stack.name].set()

    async def _provision_stack(self, run: _Run, stack: Stack) -> None:
        name = stack.name
        run.states[name] = StackState.RESOLVING
        logger.info("Provisioning stack", stack=name)
        try:
            self._check_resolvable(run, stack)
            run.states[name] = StackState.PROVISIONING
            await self._call(
                run,
                name,
                None,
                self.provider.begin_stack,
                stack,
                run.plan.dependencies[name],
            )
            for node in stack.nodes:
                if run.token.cancelled:
                    raise Cancelled(name, node.id)
                await self._provision_node(run, stack, node)
        except ProvisioningError as err:
            logger.error("Stack failed", stack=name, error=str(err))
            run.fail(name, err)
            if self.settings.halt_on_failure:
                run.halted = True
            return
        run.states[name] = StackState.PROVISIONED
        logger.info("Stack provisioned", stack=name)

    async def _provision_node(self, run: _Run, stack: Stack, node: ResourceNode) -> None:
        request = ResourceRequest(
            stack=stack.name,
            node_id=node.id,
            kind=node.kind,
            properties=self.resolve_properties(node, run.table),
        )
        logger.debug(
            "Creating resource", stack=stack.name, node=node.id, kind=node.kind.value
        )
        result = await self._call(
            run,
            stack.name,
            node.id,
            self.provider.create,
            request,
            on_timeout=functools.partial(run.abandon, request),
        )
        attributes = run.table.record_node(
            stack.name, node.id, result.identifier, result.attributes
        )
        run.resources[stack.name].append(
            ResourceHandle(
                stack=stack.name,
                node_id=node.id,
                kind=node.kind,
                identifier=result.identifier,
                attributes=attributes,
            )
        )
        logger.info(
            "Created resource",
            stack=stack.name,
            node=node.id,
            identifier=result.identifier,
        )
        for output_name, value in stack.outputs.items():
            if run.table.has_output(stack.name, output_name):
                continue
            references = list(iter_references(value))
            if not all(run.table.has_node(ref.stack, ref.node) for ref in references):
                continue
            resolved = [
                self._lookup(run.table, stack.name, None, ref) for ref in references
            ]
            published = resolved if isinstance(value, tuple) else resolved[0]
            run.table.publish(stack.name, output_name, published)
            await self._call(
                run,
                stack.name,
                node.id,
                self.provider.publish_output,
                stack.name,
                output_name,
                published,
                stack.output_descriptions.get(output_name, ""),
            )

    def _check_resolvable(self, run: _Run, stack: Stack) -> None:
        for node_id, references in run.plan.references_of(stack.name).items():
            for reference in references:
                if reference.stack != stack.name:
                    self._lookup(run.table, stack.name, node_id, reference)

    @staticmethod
    def _lookup(
        table: OutputTable, stack: str, node: Optional[str], reference: Any
    ) -> Any:
        try:
            return table.lookup(reference)
        except KeyError:
            raise UnresolvedReference(stack, node, reference, "no such output yet") from None

    async def _call(
        self,
        run: _Run,
        stack: str,
        node: Optional[str],
        func: Callable[..., Any],
        *args: Any,
        on_timeout: Optional[Callable[[Future], None]] = None,
    ) -> Any:
        future = None
        try:
            if not self.provider.supports_concurrency:
                return func(*args)
            future = run.submit(func, *args)
            return await asyncio.wait_for(asyncio.wrap_future(future), run.timeout)
        except asyncio.TimeoutError:
            run.retire_executor()
            if on_timeout is not None and future is not None:
                on_timeout(future)
            raise ProvisioningTimeout(stack, node, run.timeout) from None
        except ProviderError as err:
            raise ProvisioningFailed(stack, node, err) from err
        except ProvisioningError:
            raise
        except Exception as err:
            logger.exception("Unexpected provider failure", stack=stack, node=node)
            raise ProvisioningFailed(stack, node, err) from err
