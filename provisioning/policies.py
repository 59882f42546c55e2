"""IAM document helpers shared by declarations and providers.

Declarations describe permissions as plain statement dicts
(``{"effect", "actions", "resources"}``) and trust as a list of service
principals; providers turn them into IAM JSON documents with these helpers.
"""
from typing import Any, Iterable, Sequence, Union

POLICY_VERSION = "2012-10-17"


def statement(
    actions: Sequence[str], resources: Sequence[str], effect: str = "Allow"
) -> dict[str, Any]:
    if effect not in ("Allow", "Deny"):
        raise ValueError(f"effect must be Allow or Deny, got {effect!r}")
    return {"effect": effect, "actions": list(actions), "resources": list(resources)}


def policy_document(statements: Iterable[dict[str, Any]]) -> dict[str, Any]:
    return {
        "Version": POLICY_VERSION,
        "Statement": [
            {
                "Effect": item.get("effect", "Allow"),
                "Action": list(item["actions"]),
                "Resource": list(item["resources"]),
            }
            for item in statements
        ],
    }


def trust_policy(services: Union[str, Sequence[str]]) -> dict[str, Any]:
    principals = [services] if isinstance(services, str) else list(services)
    return {
        "Version": POLICY_VERSION,
        "Statement": [
            {
                "Effect": "Allow",
                "Principal": {"Service": principals if len(principals) > 1 else principals[0]},
                "Action": "sts:AssumeRole",
            }
        ],
    }


def aws_managed_policy_arn(name: str, partition: str = "aws") -> str:
    return f"arn:{partition}:iam::aws:policy/{name}"
