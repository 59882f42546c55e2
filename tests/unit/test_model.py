import pytest
from engine_test_helpers import role, security_group, vpc
from provisioning import (
    DeclarationError,
    ExportReference,
    Reference,
    ResourceKind,
    ResourceNode,
    SecurityIntent,
    Selector,
    Stack,
)
from provisioning.model import iter_references

# ------------------------------ Resource nodes ---------------------------------


@pytest.mark.parametrize("node_id", ["", "   ", "Network/Vpc"])
def test_node_rejects_invalid_id(node_id: str):
    with pytest.raises(DeclarationError):
        ResourceNode(id=node_id, kind=ResourceKind.NETWORK)


def test_node_kind_accepts_plain_string():
    node = ResourceNode(id="Vpc", kind="Network")

    assert node.kind is ResourceKind.NETWORK


def test_node_properties_are_read_only():
    node = vpc(tags={"team": "platform"}, zones=["a", "c"])

    with pytest.raises(TypeError):
        node.properties["cidr_block"] = "10.1.0.0/16"
    with pytest.raises(TypeError):
        node.properties["tags"]["team"] = "other"
    assert node.properties["zones"] == ("a", "c")


def test_node_ref_requires_owner_stack():
    with pytest.raises(DeclarationError):
        vpc().ref()


def test_iter_references_walks_nested_values():
    role_arn = Reference("IAM", "Role", "arn")
    export = ExportReference("IAM", "RoleArn")
    value = {"a": [role_arn, {"b": export}], "c": "plain"}

    assert list(iter_references(value)) == [role_arn, export]


def test_reference_string_form():
    assert str(Reference("IAM", "LambdaExecutionRole", "arn")) == "IAM/LambdaExecutionRole.arn"
    assert str(ExportReference("IAM", "LambdaExecutionRoleArn")) == "IAM:LambdaExecutionRoleArn"


# ---------------------------------- Stacks -------------------------------------


def test_stack_takes_ownership_of_its_nodes():
    stack = Stack(name="Network", nodes=[vpc(), security_group("db-sg")])

    assert {node.owner_stack for node in stack.nodes} == {"Network"}
    assert stack.node("db-sg").ref() == Reference("Network", "db-sg", "id")


def test_stack_rejects_node_owned_elsewhere():
    owned = Stack(name="IAM", nodes=[role("Role")]).node("Role")

    with pytest.raises(DeclarationError):
        Stack(name="Network", nodes=[owned])


def test_stack_dependencies_include_explicit_and_referenced():
    stack = Stack(
        name="Network",
        nodes=[vpc(role_arn=ExportReference("IAM", "RoleArn"))],
        depends_on={"Base"},
    )

    assert stack.depends_on == frozenset({"Base"})
    assert stack.referenced_stacks == frozenset({"IAM"})
    assert stack.dependencies == frozenset({"Base", "IAM"})


def test_stack_reference_to_itself_is_not_a_dependency():
    stack = Stack(
        name="Network",
        nodes=[vpc(), security_group("sg", vpc_id=Reference("Network", "Vpc"))],
    )

    assert stack.dependencies == frozenset()


def test_with_dependency_accepts_stacks_and_names():
    iam = Stack(name="IAM")
    network = Stack(name="Network").with_dependency(iam, "Base")

    assert network.depends_on == frozenset({"IAM", "Base"})


def test_list_outputs_become_tuples():
    stack = Stack(
        name="Network",
        nodes=[vpc()],
        outputs={"Ids": [Reference("Network", "Vpc")]},
    )

    assert stack.outputs["Ids"] == (Reference("Network", "Vpc"),)


def test_output_descriptions_must_name_declared_outputs():
    with pytest.raises(DeclarationError):
        Stack(
            name="Network",
            nodes=[vpc()],
            outputs={"VpcId": Reference("Network", "Vpc")},
            output_descriptions={"SubnetIds": "IDs of subnets"},
        )


# ------------------------------ Selectors & intents ---------------------------

SELECTOR_CASES = [
    ("db-sg", None, "db-sg"),
    ("Network/db-sg", "Network", "db-sg"),
    ("Network/*-sg", "Network", "*-sg"),
]


@pytest.mark.parametrize("text,stack,pattern", SELECTOR_CASES)
def test_selector_parse(text: str, stack, pattern: str):
    selector = Selector.parse(text)

    assert selector.stack == stack
    assert selector.pattern == pattern
    assert str(selector) == text


def test_selector_matches_security_groups_only():
    stack = Stack(
        name="Network",
        nodes=[vpc(), security_group("db-sg", labels={"tier": "database"})],
    )
    selector = Selector(pattern="*", labels={"tier": "database"})

    assert [node.id for node in stack.nodes if selector.matches(node)] == ["db-sg"]
    assert not Selector(pattern="*", stack="IAM").matches(stack.node("db-sg"))


@pytest.mark.parametrize("port", [-1, 65536, True, "5432"])
def test_intent_rejects_invalid_port(port):
    with pytest.raises(DeclarationError):
        SecurityIntent(source="lambda-sg", destination="db-sg", port=port)


@pytest.mark.parametrize(
    "overrides", [{"protocol": "sctp"}, {"direction": "sideways"}], ids=["protocol", "direction"]
)
def test_intent_rejects_unknown_choices(overrides):
    with pytest.raises(DeclarationError):
        SecurityIntent(source="lambda-sg", destination="db-sg", port=5432, **overrides)


def test_intent_defaults():
    intent = SecurityIntent(source="lambda-sg", destination="db-sg", port=5432)

    assert intent.protocol == "tcp"
    assert intent.direction == "ingress"
    assert intent.destination == Selector(pattern="db-sg")
