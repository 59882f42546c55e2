import hashlib

import pytest
from engine_test_helpers import IntentCase, lambda_db_declarations, security_group, vpc
from provisioning import (
    Declarations,
    DependencyGraphBuilder,
    EmptySelector,
    Reference,
    ResourceKind,
    SecurityIntent,
    SecurityRuleComposer,
    Selector,
    Stack,
)


def rules_of(declarations: Declarations, stack: str = "Network"):
    return [
        node
        for node in declarations.stack(stack).nodes
        if node.kind is ResourceKind.SECURITY_RULE
    ]


def test_lambda_to_database_intent_expands_to_one_ingress_rule():
    intent = SecurityIntent(source="lambda-sg", destination="db-sg", port=5432)

    rules = rules_of(SecurityRuleComposer().compose(lambda_db_declarations(intent)))

    assert len(rules) == 1
    rule = rules[0]
    assert rule.id == "db-sgIngressTcp5432Fromlambda-sg"
    assert rule.owner_stack == "Network"
    assert dict(rule.properties) == {
        "group_id": Reference("Network", "db-sg"),
        "direction": "ingress",
        "protocol": "tcp",
        "from_port": 5432,
        "to_port": 5432,
        "peer_group_id": Reference("Network", "lambda-sg"),
        "description": "",
    }


def test_duplicate_intents_collapse_to_one_rule():
    intent = SecurityIntent(source="lambda-sg", destination="db-sg", port=5432)

    composed = SecurityRuleComposer().compose(lambda_db_declarations(intent, intent))

    assert len(rules_of(composed)) == 1


def test_compose_is_idempotent():
    intent = SecurityIntent(source="lambda-sg", destination="db-sg", port=5432)
    composer = SecurityRuleComposer()

    once = composer.compose(lambda_db_declarations(intent))
    twice = composer.compose(once)

    assert rules_of(once) == rules_of(twice)


def test_compose_without_intents_returns_declarations_unchanged():
    declarations = lambda_db_declarations()

    assert SecurityRuleComposer().compose(declarations) is declarations


INTENT_CASES = [
    IntentCase(
        id="egress_owned_by_source",
        intent_args={"direction": "egress", "port": 443},
        expected_rule_ids=("lambda-sgEgressTcp443Todb-sg",),
    ),
    IntentCase(
        id="udp_protocol_label",
        intent_args={"protocol": "udp", "port": 53},
        expected_rule_ids=("db-sgIngressUdp53Fromlambda-sg",),
    ),
    IntentCase(
        id="all_traffic_label",
        intent_args={"protocol": "-1", "port": 0},
        expected_rule_ids=("db-sgIngressAll0Fromlambda-sg",),
    ),
]


@pytest.mark.parametrize("case", INTENT_CASES, ids=lambda case: case.id)
def test_intent_variants(case: IntentCase):
    intent = SecurityIntent(source="lambda-sg", destination="db-sg", **case.intent_args)

    composed = SecurityRuleComposer().compose(lambda_db_declarations(intent))

    assert tuple(rule.id for rule in rules_of(composed, case.expected_owner)) == (
        case.expected_rule_ids
    )


def test_selector_matching_several_groups_fans_out():
    network = Stack(
        name="Network",
        nodes=[
            vpc(),
            security_group("api-sg", labels={"tier": "lambda"}),
            security_group("worker-sg", labels={"tier": "lambda"}),
            security_group("db-sg", labels={"tier": "database"}),
        ],
    )
    intent = SecurityIntent(
        source=Selector(pattern="*", labels={"tier": "lambda"}),
        destination="db-sg",
        port=5432,
    )

    composed = SecurityRuleComposer().compose(Declarations([network], [intent]))

    assert [rule.id for rule in rules_of(composed)] == [
        "db-sgIngressTcp5432Fromapi-sg",
        "db-sgIngressTcp5432Fromworker-sg",
    ]


def test_rule_in_other_stack_names_peer_stack():
    app = Stack(name="App", nodes=[vpc(), security_group("lambda-sg")])
    data = Stack(name="Data", nodes=[vpc(), security_group("db-sg")])
    intent = SecurityIntent(source="App/lambda-sg", destination="Data/db-sg", port=5432)

    composed = SecurityRuleComposer().compose(Declarations([app, data], [intent]))

    digest = hashlib.sha1(b"App/lambda-sg").hexdigest()[:8]
    rules = rules_of(composed, "Data")
    assert [rule.id for rule in rules] == [f"db-sgIngressTcp5432FromApplambda-sg{digest}"]
    assert composed.stack("Data").dependencies == frozenset({"App"})
    assert rules_of(composed, "App") == []


@pytest.mark.parametrize(
    "source,destination,role",
    [("missing-sg", "db-sg", "source"), ("lambda-sg", "Other/db-sg", "destination")],
)
def test_empty_selector_is_an_error(source: str, destination: str, role: str):
    intent = SecurityIntent(source=source, destination=destination, port=5432)

    with pytest.raises(EmptySelector) as excinfo:
        SecurityRuleComposer().compose(lambda_db_declarations(intent))

    assert excinfo.value.role == role


def test_fan_out_across_stacks_with_run_together_names():
    first = Stack(name="A", nodes=[vpc(), security_group("Bsg", labels={"tier": "lambda"})])
    second = Stack(name="AB", nodes=[vpc(), security_group("sg", labels={"tier": "lambda"})])
    data = Stack(name="C", nodes=[vpc(), security_group("db", labels={"tier": "database"})])
    intent = SecurityIntent(
        source=Selector(pattern="*", labels={"tier": "lambda"}),
        destination=Selector(pattern="*", labels={"tier": "database"}),
        port=5432,
    )

    composed = SecurityRuleComposer().compose(Declarations([first, second, data], [intent]))

    rules = rules_of(composed, "C")
    assert len({rule.id for rule in rules}) == 2
    assert [rule.properties["peer_group_id"] for rule in rules] == [
        Reference("A", "Bsg"),
        Reference("AB", "sg"),
    ]
    assert DependencyGraphBuilder().build(composed.stacks).order == ("A", "AB", "C")
