"""Provider that materializes declarations as CloudFormation through AWS CDK.

Every declared stack becomes a ``cdk.Stack`` in the given app and every node
an L1 (``Cfn*``) construct. Identifiers handed back to the engine are CDK
tokens, so a reference between stacks turns into a CloudFormation export and
import when the app is synthesized.
"""
from typing import Any, Callable, Mapping, Optional

from aws_cdk import (
    App,
    CfnOutput,
    CfnTag,
    Environment,
    Fn,
    Stack as CdkStack,
    aws_ec2 as ec2,
    aws_iam as iam,
)
from aws_lambda_powertools import Logger
from constructs import Construct

from provisioning.errors import ProviderError
from provisioning.model import ResourceKind, Stack
from provisioning.policies import policy_document, trust_policy
from provisioning.providers.base import (
    ProviderResult,
    ResourceHandle,
    ResourceProvider,
    ResourceRequest,
)

logger = Logger(service="provisioning", child=True)

ANY_IPV4_CIDR = "0.0.0.0/0"


def _name_tags(name: Optional[str]) -> Optional[list[CfnTag]]:
    return [CfnTag(key="Name", value=name)] if name else None


class CdkStackProvider(ResourceProvider):
    # jsii calls must stay on the thread that started the kernel
    supports_concurrency = False

    def __init__(
        self,
        app: App,
        env: Optional[Environment] = None,
        stack_id: Callable[[str], str] = str,
    ) -> None:
        self.app = app
        self.env = env
        self._stack_id = stack_id
        self._stacks: dict[str, CdkStack] = {}
        self._constructs: dict[tuple[str, str], Construct] = {}
        self._results: dict[tuple[str, str], ProviderResult] = {}
        self._extras: dict[tuple[str, str], list[str]] = {}
        self._attachments: dict[str, ec2.CfnVPCGatewayAttachment] = {}
        self._builders: dict[
            ResourceKind, Callable[..., tuple[Construct, ProviderResult]]
        ] = {
            ResourceKind.NETWORK: self._build_vpc,
            ResourceKind.SUBNET: self._build_subnet,
            ResourceKind.SECURITY_GROUP: self._build_security_group,
            ResourceKind.SECURITY_RULE: self._build_security_rule,
            ResourceKind.IAM_ROLE: self._build_role,
            ResourceKind.IAM_POLICY: self._build_managed_policy,
            ResourceKind.IAM_GROUP: self._build_group,
        }

    def stack(self, name: str) -> CdkStack:
        return self._stacks[name]

    def begin_stack(self, stack: Stack, dependencies: frozenset[str]) -> None:
        cdk_stack = self._stacks.get(stack.name)
        if cdk_stack is None:
            cdk_stack = CdkStack(
                self.app,
                self._stack_id(stack.name),
                env=self.env,
                description=stack.description or None,
            )
            self._stacks[stack.name] = cdk_stack
        for name in sorted(dependencies):
            cdk_stack.add_dependency(self._stacks[name])
        logger.debug("Started CDK stack", stack=stack.name, stack_id=cdk_stack.stack_name)

    def publish_output(
        self, stack: str, name: str, value: Any, description: str = ""
    ) -> None:
        if isinstance(value, (list, tuple)):
            value = Fn.join(",", list(value))
        CfnOutput(self._stacks[stack], name, value=value, description=description or None)

    def create(self, request: ResourceRequest) -> ProviderResult:
        scope = self._stacks.get(request.stack)
        if scope is None:
            raise ProviderError("StackNotStarted", f"{request.stack} has no CDK stack", 400)
        key = (request.stack, request.node_id)
        if key in self._constructs:
            raise ProviderError(
                "AlreadyExists", f"{request.stack}/{request.node_id} already synthesized", 409
            )
        construct, result = self._builders[request.kind](
            scope, request.node_id, request.properties
        )
        self._constructs[key] = construct
        self._results[key] = result
        return result

    def describe(self, handle: ResourceHandle) -> ProviderResult:
        key = (handle.stack, handle.node_id)
        if key not in self._results:
            raise ProviderError("NotFound", f"{handle.stack}/{handle.node_id} not synthesized", 404)
        return self._results[key]

    def update(
        self, handle: ResourceHandle, properties: Mapping[str, Any]
    ) -> ProviderResult:
        raise ProviderError(
            "UnsupportedOperation", "synthesized resources change by redeploying", 400
        )

    def delete(self, handle: ResourceHandle) -> None:
        key = (handle.stack, handle.node_id)
        if key not in self._constructs:
            raise ProviderError("NotFound", f"{handle.stack}/{handle.node_id} not synthesized", 404)
        scope = self._stacks[handle.stack]
        for construct_id in self._extras.pop((scope.node.id, handle.node_id), []):
            scope.node.try_remove_child(construct_id)
        scope.node.try_remove_child(handle.node_id)
        del self._constructs[key]
        del self._results[key]

    # ---------- network ----------

    def _build_vpc(self, scope: CdkStack, node_id: str, properties: Mapping[str, Any]):
        vpc = ec2.CfnVPC(
            scope,
            node_id,
            cidr_block=properties["cidr_block"],
            enable_dns_hostnames=properties.get("enable_dns_hostnames", True),
            enable_dns_support=properties.get("enable_dns_support", True),
            tags=_name_tags(properties.get("name")),
        )
        attributes = {"cidr_block": vpc.attr_cidr_block}
        if properties.get("internet_gateway"):
            igw = ec2.CfnInternetGateway(
                scope, f"{node_id}InternetGateway", tags=_name_tags(properties.get("name"))
            )
            attachment = ec2.CfnVPCGatewayAttachment(
                scope,
                f"{node_id}GatewayAttachment",
                vpc_id=vpc.ref,
                internet_gateway_id=igw.ref,
            )
            self._attachments[igw.ref] = attachment
            self._extras[(scope.node.id, node_id)] = [igw.node.id, attachment.node.id]
            attributes["internet_gateway_id"] = igw.ref
        return vpc, ProviderResult(vpc.ref, attributes)

    def _build_subnet(self, scope: CdkStack, node_id: str, properties: Mapping[str, Any]):
        subnet = ec2.CfnSubnet(
            scope,
            node_id,
            vpc_id=properties["vpc_id"],
            cidr_block=properties["cidr_block"],
            availability_zone=properties.get("availability_zone"),
            map_public_ip_on_launch=bool(properties.get("public", False)),
            tags=_name_tags(properties.get("name")),
        )
        attributes = {
            "availability_zone": subnet.attr_availability_zone,
            "vpc_id": subnet.attr_vpc_id,
        }
        attributes.update(self._build_routing(scope, node_id, subnet, properties))
        return subnet, ProviderResult(subnet.ref, attributes)

    def _build_routing(
        self,
        scope: CdkStack,
        node_id: str,
        subnet: ec2.CfnSubnet,
        properties: Mapping[str, Any],
    ) -> dict[str, Any]:
        """Route table with a default route, plus a NAT gateway when asked for."""
        gateway_id = properties.get("internet_gateway_id")
        nat_gateway_id = properties.get("nat_gateway_id")
        if gateway_id is None and nat_gateway_id is None:
            return {}

        table = ec2.CfnRouteTable(
            scope,
            f"{node_id}RouteTable",
            vpc_id=properties["vpc_id"],
            tags=_name_tags(properties.get("name")),
        )
        association = ec2.CfnSubnetRouteTableAssociation(
            scope,
            f"{node_id}RouteTableAssociation",
            subnet_id=subnet.ref,
            route_table_id=table.ref,
        )
        target = (
            {"gateway_id": gateway_id}
            if gateway_id is not None
            else {"nat_gateway_id": nat_gateway_id}
        )
        route = ec2.CfnRoute(
            scope,
            f"{node_id}DefaultRoute",
            route_table_id=table.ref,
            destination_cidr_block=ANY_IPV4_CIDR,
            **target,
        )
        attachment = self._attachments.get(gateway_id)
        if attachment is not None:
            route.node.add_dependency(attachment)
        extras = [table.node.id, association.node.id, route.node.id]
        attributes = {"route_table_id": table.ref}

        if properties.get("nat_gateway"):
            eip = ec2.CfnEIP(scope, f"{node_id}EIP", domain="vpc")
            nat = ec2.CfnNatGateway(
                scope,
                f"{node_id}NATGateway",
                subnet_id=subnet.ref,
                allocation_id=eip.attr_allocation_id,
                tags=_name_tags(properties.get("name")),
            )
            nat.node.add_dependency(route)
            extras.extend([eip.node.id, nat.node.id])
            attributes["nat_gateway_id"] = nat.ref

        self._extras[(scope.node.id, node_id)] = extras
        return attributes

    def _build_security_group(
        self, scope: CdkStack, node_id: str, properties: Mapping[str, Any]
    ):
        if properties.get("allow_all_outbound", True):
            egress = ec2.CfnSecurityGroup.EgressProperty(
                ip_protocol="-1",
                cidr_ip=ANY_IPV4_CIDR,
                description="Allow all outbound traffic by default",
            )
        else:
            # Same placeholder rule CDK's SecurityGroup uses to block all egress
            egress = ec2.CfnSecurityGroup.EgressProperty(
                ip_protocol="icmp",
                cidr_ip="255.255.255.255/32",
                from_port=252,
                to_port=86,
                description="Disallow all traffic",
            )
        group = ec2.CfnSecurityGroup(
            scope,
            node_id,
            group_description=properties.get("description") or node_id,
            group_name=properties.get("group_name"),
            vpc_id=properties["vpc_id"],
            security_group_egress=[egress],
        )
        return group, ProviderResult(
            group.attr_group_id,
            {"group_id": group.attr_group_id, "vpc_id": group.attr_vpc_id},
        )

    def _build_security_rule(
        self, scope: CdkStack, node_id: str, properties: Mapping[str, Any]
    ):
        common = {
            "group_id": properties["group_id"],
            "ip_protocol": properties["protocol"],
            "from_port": properties.get("from_port"),
            "to_port": properties.get("to_port"),
            "description": properties.get("description") or None,
        }
        if properties.get("direction", "ingress") == "ingress":
            rule = ec2.CfnSecurityGroupIngress(
                scope, node_id, source_security_group_id=properties["peer_group_id"], **common
            )
        else:
            rule = ec2.CfnSecurityGroupEgress(
                scope,
                node_id,
                destination_security_group_id=properties["peer_group_id"],
                **common,
            )
        return rule, ProviderResult(
            rule.ref, {"group_id": properties["group_id"], "rule_id": rule.ref}
        )

    # ---------- iam ----------

    def _build_role(self, scope: CdkStack, node_id: str, properties: Mapping[str, Any]):
        policies = None
        if properties.get("statements"):
            policies = [
                iam.CfnRole.PolicyProperty(
                    policy_name=f"{node_id}DefaultPolicy",
                    policy_document=policy_document(properties["statements"]),
                )
            ]
        role = iam.CfnRole(
            scope,
            node_id,
            assume_role_policy_document=trust_policy(properties["assumed_by"]),
            role_name=properties.get("role_name"),
            description=properties.get("description"),
            managed_policy_arns=list(properties.get("managed_policy_arns", [])) or None,
            policies=policies,
        )
        return role, ProviderResult(role.ref, {"name": role.ref, "arn": role.attr_arn})

    def _build_managed_policy(
        self, scope: CdkStack, node_id: str, properties: Mapping[str, Any]
    ):
        policy = iam.CfnManagedPolicy(
            scope,
            node_id,
            policy_document=policy_document(properties["statements"]),
            managed_policy_name=properties.get("policy_name"),
            description=properties.get("description"),
            groups=list(properties.get("groups", [])) or None,
            roles=list(properties.get("roles", [])) or None,
        )
        return policy, ProviderResult(policy.ref, {"arn": policy.ref})

    def _build_group(self, scope: CdkStack, node_id: str, properties: Mapping[str, Any]):
        group = iam.CfnGroup(
            scope,
            node_id,
            group_name=properties.get("group_name"),
            managed_policy_arns=list(properties.get("managed_policy_arns", [])) or None,
        )
        return group, ProviderResult(group.ref, {"name": group.ref, "arn": group.attr_arn})
