import hashlib
from collections import defaultdict
from typing import Any, Sequence

from aws_lambda_powertools import Logger

from provisioning.errors import EmptySelector
from provisioning.model import (
    Declarations,
    ResourceKind,
    ResourceNode,
    SecurityIntent,
    Selector,
)

logger = Logger(service="provisioning", child=True)

PROTOCOL_LABELS = {"tcp": "Tcp", "udp": "Udp", "icmp": "Icmp", "-1": "All"}


def rule_key(node: ResourceNode) -> tuple[Any, ...]:
    """Identity of a security rule: two rules with the same key are the same rule."""
    properties = node.properties
    return (
        properties.get("group_id"),
        properties.get("direction", "ingress"),
        properties.get("protocol"),
        properties.get("from_port"),
        properties.get("to_port"),
        properties.get("peer_group_id"),
    )


class SecurityRuleComposer:
    """Expands security intents into concrete SecurityRule nodes.

    Ingress rules are attached to the destination group's stack and name the
    source group as their peer; egress rules are attached to the source
    group's stack and name the destination as their peer. Selectors matching
    several groups fan out to one rule per pair.
    """

    def compose(self, declarations: Declarations) -> Declarations:
        if not declarations.intents:
            return declarations

        groups = [
            node
            for stack in declarations.stacks
            for node in stack.nodes
            if node.kind is ResourceKind.SECURITY_GROUP
        ]
        seen = {
            rule_key(node)
            for stack in declarations.stacks
            for node in stack.nodes
            if node.kind is ResourceKind.SECURITY_RULE
        }

        additions: dict[str, list[ResourceNode]] = defaultdict(list)
        for intent in declarations.intents:
            sources = self._select(intent.source, groups, "source")
            destinations = self._select(intent.destination, groups, "destination")
            for destination in destinations:
                for source in sources:
                    rule = self.expand(intent, source, destination)
                    key = rule_key(rule)
                    if key in seen:
                        logger.debug("Skipping duplicate security rule", rule=rule.id)
                        continue
                    seen.add(key)
                    additions[rule.owner_stack].append(rule)

        stacks = tuple(
            stack.with_nodes(*additions[stack.name]) if additions.get(stack.name) else stack
            for stack in declarations.stacks
        )
        logger.info(
            "Composed security rules",
            rules=sum(len(rules) for rules in additions.values()),
        )
        return Declarations(stacks=stacks, intents=declarations.intents)

    @staticmethod
    def _select(
        selector: Selector, groups: Sequence[ResourceNode], role: str
    ) -> list[ResourceNode]:
        matches = [node for node in groups if selector.matches(node)]
        if not matches:
            raise EmptySelector(selector, role)
        return matches

    @staticmethod
    def expand(
        intent: SecurityIntent, source: ResourceNode, destination: ResourceNode
    ) -> ResourceNode:
        if intent.direction == "ingress":
            owner, peer, joiner = destination, source, "From"
        else:
            owner, peer, joiner = source, destination, "To"

        peer_label = peer.id
        if peer.owner_stack != owner.owner_stack:
            # "A" + "Bsg" and "AB" + "sg" read alike; the digest of the path does not
            digest = hashlib.sha1(f"{peer.owner_stack}/{peer.id}".encode()).hexdigest()[:8]
            peer_label = f"{peer.owner_stack}{peer.id}{digest}"
        rule_id = (
            f"{owner.id}{intent.direction.capitalize()}"
            f"{PROTOCOL_LABELS[intent.protocol]}{intent.port}{joiner}{peer_label}"
        )
        return ResourceNode(
            id=rule_id,
            kind=ResourceKind.SECURITY_RULE,
            owner_stack=owner.owner_stack,
            properties={
                "group_id": owner.ref(),
                "direction": intent.direction,
                "protocol": intent.protocol,
                "from_port": intent.port,
                "to_port": intent.port,
                "peer_group_id": peer.ref(),
                "description": intent.description,
            },
        )
