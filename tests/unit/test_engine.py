import time

import pytest
from engine_test_helpers import (
    FailureCase,
    StackCase,
    create_index,
    engine,
    lambda_db_declarations,
    provider,
    role,
    security_group,
    settings,
    stacks_from_cases,
    vpc,
)
from provisioning import (
    CancellationToken,
    CyclicDependency,
    Declarations,
    EngineSettings,
    ExportReference,
    OutputTable,
    ProvisioningEngine,
    ProvisioningFailed,
    Reference,
    SecurityIntent,
    Stack,
    StackState,
    UnresolvedReference,
)
from provisioning.providers import InMemoryProvider, ResourceRequest

# ------------------------------ Ordering ---------------------------------------


def test_dependency_nodes_created_first(engine: ProvisioningEngine, provider: InMemoryProvider):
    iam = Stack(name="IAM", nodes=[role("RoleA"), role("RoleB")])
    network = Stack(name="Network", nodes=[vpc()], depends_on={"IAM"})

    result = engine.run(Declarations([network, iam]))

    assert result.succeeded
    assert list(result.order) == ["IAM", "Network"]
    created = create_index(provider)
    assert created[("IAM", "RoleB")] < created[("Network", "Vpc")]


def test_runs_are_deterministic(settings: EngineSettings):
    declarations = Declarations(
        stacks_from_cases(
            [StackCase("C", ("B",)), StackCase("B", ("A",)), StackCase("A")]
        )
    )
    runs = []
    for _ in range(3):
        memory = InMemoryProvider()
        result = ProvisioningEngine(memory, settings).run(declarations)
        runs.append((result.order, memory.created(), result.outputs))

    assert runs[0] == runs[1] == runs[2]


def test_nodes_created_in_declaration_order(
    engine: ProvisioningEngine, provider: InMemoryProvider
):
    stack = Stack(
        name="Network",
        nodes=[
            vpc(),
            security_group("lambda-sg", vpc_id=Reference("Network", "Vpc")),
            security_group("db-sg", vpc_id=Reference("Network", "Vpc")),
        ],
    )

    engine.run(Declarations([stack]))

    assert provider.created() == [
        ("Network", "Vpc"),
        ("Network", "lambda-sg"),
        ("Network", "db-sg"),
    ]


# --------------------------- Structural errors ---------------------------------


def test_unresolved_reference_never_reaches_provider(
    engine: ProvisioningEngine, provider: InMemoryProvider
):
    network = Stack(
        name="Network",
        nodes=[security_group("sg", role_arn=ExportReference("IAM", "Missing"))],
    )

    with pytest.raises(UnresolvedReference):
        engine.run(Declarations([Stack(name="IAM", nodes=[role("Role")]), network]))

    assert provider.calls == []


def test_cycle_never_reaches_provider(engine: ProvisioningEngine, provider: InMemoryProvider):
    declarations = Declarations(
        stacks_from_cases([StackCase("A", ("B",)), StackCase("B", ("A",))])
    )

    with pytest.raises(CyclicDependency):
        engine.run(declarations)

    assert provider.calls == []


# ------------------------------ Failures ---------------------------------------

FAILURE_STACKS = [
    StackCase("A"),
    StackCase("B", ("A",)),
    StackCase("C", ("B",)),
    StackCase("D"),
]

FAILURE_CASES = [
    FailureCase(
        id="dependents_fail_independent_finish",
        failing_stack="A",
        expected_failed=("A", "B", "C"),
        expected_provisioned=("D",),
    ),
    FailureCase(
        id="leaf_failure_is_contained",
        failing_stack="C",
        expected_failed=("C",),
        expected_provisioned=("A", "B", "D"),
    ),
    FailureCase(
        id="halt_on_failure_stops_new_stacks",
        failing_stack="A",
        expected_failed=("A", "B", "C"),
        expected_provisioned=(),
        expected_pending=("D",),
        halt_on_failure=True,
    ),
]


@pytest.mark.parametrize("case", FAILURE_CASES, ids=lambda case: case.id)
def test_failure_propagation(provider: InMemoryProvider, case: FailureCase):
    provider.fail_on(case.failing_stack, "Vpc")
    engine = ProvisioningEngine(
        provider, EngineSettings(max_concurrency=1, halt_on_failure=case.halt_on_failure)
    )

    result = engine.run(Declarations(stacks_from_cases(FAILURE_STACKS)))

    assert not result.succeeded
    assert tuple(result.stacks_in(StackState.FAILED)) == case.expected_failed
    assert tuple(result.stacks_in(StackState.PROVISIONED)) == case.expected_provisioned
    assert tuple(result.never_attempted) == case.expected_pending
    attempted = {stack for stack, _ in provider.created()}
    assert attempted.isdisjoint(set(case.expected_failed) - {case.failing_stack})


def test_failure_reports_stack_node_and_provider_message(
    engine: ProvisioningEngine, provider: InMemoryProvider
):
    provider.fail_on("A", "Vpc")

    result = engine.run(
        Declarations(stacks_from_cases([StackCase("A"), StackCase("B", ("A",))]))
    )

    failure = result.failure_for("A")
    assert failure.error == "ProvisioningFailed"
    assert failure.node == "Vpc"
    assert "InjectedFailure" in failure.cause
    dependent = result.failure_for("B")
    assert dependent.error == "DependencyFailed"
    assert dependent.node is None


def test_unexpected_provider_exception_is_wrapped(
    engine: ProvisioningEngine, provider: InMemoryProvider
):
    provider.fail_on("A", "Vpc", RuntimeError("connection reset"))

    result = engine.run(Declarations(stacks_from_cases([StackCase("A")])))

    failure = result.failure_for("A")
    assert failure.error == "ProvisioningFailed"
    assert failure.cause == "connection reset"


def test_timeout_fails_only_the_slow_stack(
    engine: ProvisioningEngine, provider: InMemoryProvider
):
    provider.delay_on("Slow", "Vpc", 0.5)

    result = engine.run(
        Declarations(stacks_from_cases([StackCase("Slow"), StackCase("Fast")])),
        timeout=0.05,
    )

    assert result.failure_for("Slow").error == "ProvisioningTimeout"
    assert result.states["Fast"] is StackState.PROVISIONED


def test_timed_out_call_does_not_hold_up_the_run(provider: InMemoryProvider):
    provider.delay_on("Slow", "Vpc", 3.0)
    engine = ProvisioningEngine(provider, EngineSettings(max_concurrency=1))

    started = time.monotonic()
    result = engine.run(
        Declarations(stacks_from_cases([StackCase("Slow"), StackCase("Tail")])),
        timeout=0.1,
    )
    elapsed = time.monotonic() - started

    assert result.failure_for("Slow").error == "ProvisioningTimeout"
    assert result.states["Tail"] is StackState.PROVISIONED
    assert elapsed < 1.0


def test_teardown_removes_resource_created_after_timeout(
    engine: ProvisioningEngine, provider: InMemoryProvider
):
    provider.delay_on("Slow", "Vpc", 0.3)

    result = engine.run(Declarations(stacks_from_cases([StackCase("Slow")])), timeout=0.05)

    assert result.resources == ()
    assert [call.request.node_id for call in result.abandoned] == ["Vpc"]

    deleted = engine.teardown(result)

    assert [(h.stack, h.node_id) for h in deleted] == [("Slow", "Vpc")]
    assert deleted[0].identifier.startswith("vpc-")
    assert provider.resources == {}


# ------------------------------ Cancellation -----------------------------------


def test_cancelled_before_start_attempts_nothing(
    engine: ProvisioningEngine, provider: InMemoryProvider
):
    token = CancellationToken()
    token.cancel()

    result = engine.run(
        Declarations(stacks_from_cases([StackCase("A"), StackCase("B", ("A",))])),
        cancellation_token=token,
    )

    assert result.cancelled
    assert result.never_attempted == ["A", "B"]
    assert provider.created() == []


class CancellingProvider(InMemoryProvider):
    """Cancels the run as soon as one particular node has been created."""

    def __init__(self, token: CancellationToken, trigger: tuple[str, str]) -> None:
        super().__init__()
        self.token = token
        self.trigger = trigger

    def create(self, request: ResourceRequest):
        result = super().create(request)
        if (request.stack, request.node_id) == self.trigger:
            self.token.cancel()
        return result


def test_cancel_mid_run_keeps_created_resources(settings: EngineSettings):
    token = CancellationToken()
    memory = CancellingProvider(token, ("First", "Vpc"))
    first = Stack(name="First", nodes=[vpc(), security_group("sg")])
    second = Stack(name="Second", nodes=[vpc()], depends_on={"First"})

    result = ProvisioningEngine(memory, settings).run(
        Declarations([first, second]), cancellation_token=token
    )

    assert result.cancelled
    assert result.failure_for("First").error == "Cancelled"
    assert result.never_attempted == ["Second"]
    assert memory.created() == [("First", "Vpc")]
    assert ("First", "Vpc") in memory.resources


# ------------------------------ Outputs ----------------------------------------


def test_cross_stack_output_resolved_before_dependent(
    engine: ProvisioningEngine, provider: InMemoryProvider
):
    iam = Stack(
        name="IAM",
        nodes=[role("LambdaExecutionRole")],
        outputs={"roleArn": Reference("IAM", "LambdaExecutionRole", "arn")},
    )
    network = Stack(
        name="Network",
        nodes=[
            vpc(),
            security_group(
                "lambda-sg",
                vpc_id=Reference("Network", "Vpc"),
                execution_role=ExportReference("IAM", "roleArn"),
            ),
        ],
        outputs={"LambdaSecurityGroupId": Reference("Network", "lambda-sg")},
    )

    result = engine.run(Declarations([network, iam]))

    role_arn = "arn:aws:iam::123456789012:role/LambdaExecutionRole"
    assert result.outputs["IAM"] == {"roleArn": role_arn}
    assert provider.properties_of("Network", "lambda-sg")["execution_role"] == role_arn
    assert provider.outputs[("Network", "LambdaSecurityGroupId")].startswith("sg-")


def test_dependent_outputs_absent_when_source_fails(
    engine: ProvisioningEngine, provider: InMemoryProvider
):
    iam = Stack(
        name="IAM",
        nodes=[role("LambdaExecutionRole")],
        outputs={"roleArn": Reference("IAM", "LambdaExecutionRole", "arn")},
    )
    network = Stack(
        name="Network",
        nodes=[vpc(execution_role=ExportReference("IAM", "roleArn"))],
        outputs={"VpcId": Reference("Network", "Vpc")},
    )
    provider.fail_on("IAM", "LambdaExecutionRole")

    result = engine.run(Declarations([iam, network]))

    assert "IAM" not in result.outputs
    assert "Network" not in result.outputs
    assert result.states["Network"] is StackState.FAILED


def test_list_output_published_as_list(engine: ProvisioningEngine):
    stack = Stack(
        name="Network",
        nodes=[vpc("VpcA"), vpc("VpcB")],
        outputs={"VpcIds": [Reference("Network", "VpcA"), Reference("Network", "VpcB")]},
    )

    result = engine.run(Declarations([stack]))

    vpc_ids = result.outputs["Network"]["VpcIds"]
    assert isinstance(vpc_ids, list)
    assert [vpc_id[:4] for vpc_id in vpc_ids] == ["vpc-", "vpc-"]


def test_intents_provisioned_as_rules(engine: ProvisioningEngine, provider: InMemoryProvider):
    intent = SecurityIntent(source="lambda-sg", destination="db-sg", port=5432)

    result = engine.run(lambda_db_declarations(intent))

    assert result.succeeded
    rule = provider.properties_of("Network", "db-sgIngressTcp5432Fromlambda-sg")
    assert rule["group_id"] == provider.resources[("Network", "db-sg")]["identifier"]
    assert rule["peer_group_id"] == provider.resources[("Network", "lambda-sg")]["identifier"]


def test_resolve_properties_returns_plain_values(engine: ProvisioningEngine):
    stack = Stack(
        name="Network",
        nodes=[vpc(), security_group("sg", vpc_id=Reference("Network", "Vpc"), ports=[1, 2])],
    )
    table = OutputTable()
    table.record_node("Network", "Vpc", "vpc-0123", {"cidr_block": "10.0.0.0/16"})

    resolved = engine.resolve_properties(stack.node("sg"), table)

    assert resolved == {
        "group_name": "sg",
        "labels": {},
        "vpc_id": "vpc-0123",
        "ports": [1, 2],
    }
    assert type(resolved["labels"]) is dict


# ------------------------------ Teardown & report ------------------------------


def test_teardown_deletes_in_reverse(engine: ProvisioningEngine, provider: InMemoryProvider):
    declarations = Declarations(
        stacks_from_cases([StackCase("IAM"), StackCase("Network", ("IAM",))])
    )
    result = engine.run(declarations)

    deleted = engine.teardown(result)

    assert [(h.stack, h.node_id) for h in deleted] == [("Network", "Vpc"), ("IAM", "Vpc")]
    assert provider.resources == {}


def test_teardown_failure_names_resource(
    engine: ProvisioningEngine, provider: InMemoryProvider
):
    result = engine.run(Declarations(stacks_from_cases([StackCase("IAM")])))
    del provider.resources[("IAM", "Vpc")]

    with pytest.raises(ProvisioningFailed) as excinfo:
        engine.teardown(result)

    assert (excinfo.value.stack, excinfo.value.node) == ("IAM", "Vpc")


def test_report_lists_every_stack(engine: ProvisioningEngine, provider: InMemoryProvider):
    provider.fail_on("A", "Vpc")
    stacks = [
        Stack(name="A", nodes=[vpc()]),
        Stack(name="B", nodes=[vpc()], outputs={"VpcId": Reference("B", "Vpc")}),
    ]

    report = engine.run(Declarations(stacks)).report()

    assert report["A"]["state"] == "Failed"
    assert report["A"]["failure"]["node"] == "Vpc"
    assert report["B"] == {
        "state": "Provisioned",
        "outputs": {"VpcId": provider.resources[("B", "Vpc")]["identifier"]},
        "failure": None,
    }
