"""Provider that creates resources directly through the EC2 and IAM APIs."""
import json
import os
from typing import Any, Callable, Mapping, Optional

import boto3
from aws_lambda_powertools import Logger
from botocore.exceptions import ClientError

from provisioning.errors import ProviderError
from provisioning.model import ResourceKind
from provisioning.policies import policy_document, trust_policy
from provisioning.providers.base import (
    ProviderResult,
    ResourceHandle,
    ResourceProvider,
    ResourceRequest,
)

logger = Logger(service="provisioning", child=True)

ANY_IPV4_CIDR = "0.0.0.0/0"


def provider_error(e: ClientError) -> ProviderError:
    response = e.response or {}
    error_info = response.get("Error", {})
    code = error_info.get("Code", "Unknown")
    message = error_info.get("Message", "Unknown")
    meta_data = response.get("ResponseMetadata", {})
    status = meta_data.get("HTTPStatusCode", 500)
    return ProviderError(code, message, status)


def _tags(resource_type: str, name: str) -> list[dict[str, Any]]:
    return [{"ResourceType": resource_type, "Tags": [{"Key": "Name", "Value": name}]}]


def _permission(properties: Mapping[str, Any]) -> dict[str, Any]:
    pair = {"GroupId": properties["peer_group_id"]}
    if properties.get("description"):
        pair["Description"] = properties["description"]
    permission = {"IpProtocol": properties["protocol"], "UserIdGroupPairs": [pair]}
    if properties["protocol"] != "-1":
        permission["FromPort"] = properties["from_port"]
        permission["ToPort"] = properties["to_port"]
    return permission


class AwsResourceProvider(ResourceProvider):
    """Maps each resource kind onto EC2/IAM calls made with boto3.

    boto3 clients are thread safe, so the engine may call this provider from
    several worker threads at once.
    """

    def __init__(
        self,
        session: Optional[boto3.session.Session] = None,
        region_name: Optional[str] = None,
        endpoint_url: Optional[str] = None,
    ) -> None:
        session = session or boto3.session.Session(
            region_name=region_name or os.getenv("AWS_REGION")
        )
        endpoint_url = endpoint_url or os.getenv("AWS_ENDPOINT_URL")
        self.ec2 = session.client("ec2", endpoint_url=endpoint_url)
        self.iam = session.client("iam", endpoint_url=endpoint_url)
        self._creators: dict[ResourceKind, Callable[..., ProviderResult]] = {
            ResourceKind.NETWORK: self._create_network,
            ResourceKind.SUBNET: self._create_subnet,
            ResourceKind.SECURITY_GROUP: self._create_security_group,
            ResourceKind.SECURITY_RULE: self._create_security_rule,
            ResourceKind.IAM_ROLE: self._create_role,
            ResourceKind.IAM_POLICY: self._create_policy,
            ResourceKind.IAM_GROUP: self._create_group,
        }
        self._deleters: dict[ResourceKind, Callable[[ResourceHandle], None]] = {
            ResourceKind.NETWORK: self._delete_network,
            ResourceKind.SUBNET: self._delete_subnet,
            ResourceKind.SECURITY_GROUP: lambda h: self.ec2.delete_security_group(
                GroupId=h.identifier
            ),
            ResourceKind.SECURITY_RULE: self._delete_security_rule,
            ResourceKind.IAM_ROLE: self._delete_role,
            ResourceKind.IAM_POLICY: self._delete_policy,
            ResourceKind.IAM_GROUP: self._delete_group,
        }

    def create(self, request: ResourceRequest) -> ProviderResult:
        try:
            return self._creators[request.kind](request.node_id, request.properties)
        except ClientError as e:
            logger.error(
                "AWS create call failed",
                stack=request.stack,
                node=request.node_id,
                kind=request.kind.value,
            )
            raise provider_error(e) from e

    def describe(self, handle: ResourceHandle) -> ProviderResult:
        try:
            return self._describe(handle)
        except ClientError as e:
            raise provider_error(e) from e

    def update(
        self, handle: ResourceHandle, properties: Mapping[str, Any]
    ) -> ProviderResult:
        try:
            if handle.kind is ResourceKind.NETWORK:
                self._set_dns_attributes(handle.identifier, properties)
            elif handle.kind is ResourceKind.SUBNET:
                self._set_public(handle.identifier, properties.get("public", False))
            elif handle.kind is ResourceKind.SECURITY_RULE:
                self._update_rule_description(handle, properties)
            elif handle.kind is ResourceKind.IAM_ROLE and properties.get("description"):
                self.iam.update_role(
                    RoleName=handle.identifier, Description=properties["description"]
                )
            elif handle.kind is ResourceKind.IAM_POLICY:
                self.iam.create_policy_version(
                    PolicyArn=handle.identifier,
                    PolicyDocument=json.dumps(policy_document(properties["statements"])),
                    SetAsDefault=True,
                )
            return self._describe(handle)
        except ClientError as e:
            raise provider_error(e) from e

    def delete(self, handle: ResourceHandle) -> None:
        try:
            self._deleters[handle.kind](handle)
        except ClientError as e:
            logger.error(
                "AWS delete call failed",
                stack=handle.stack,
                node=handle.node_id,
                kind=handle.kind.value,
            )
            raise provider_error(e) from e

    # ---------- network ----------

    def _create_network(self, node_id: str, properties: Mapping[str, Any]) -> ProviderResult:
        name = properties.get("name") or node_id
        response = self.ec2.create_vpc(
            CidrBlock=properties["cidr_block"],
            TagSpecifications=_tags("vpc", name),
        )
        vpc = response["Vpc"]
        self._set_dns_attributes(vpc["VpcId"], properties)
        attributes = {"cidr_block": vpc["CidrBlock"]}
        if properties.get("internet_gateway"):
            igw_id = self.ec2.create_internet_gateway(
                TagSpecifications=_tags("internet-gateway", name)
            )["InternetGateway"]["InternetGatewayId"]
            self.ec2.attach_internet_gateway(InternetGatewayId=igw_id, VpcId=vpc["VpcId"])
            attributes["internet_gateway_id"] = igw_id
        return ProviderResult(vpc["VpcId"], attributes)

    def _delete_network(self, handle: ResourceHandle) -> None:
        igw_id = handle.attributes.get("internet_gateway_id")
        if igw_id:
            self.ec2.detach_internet_gateway(InternetGatewayId=igw_id, VpcId=handle.identifier)
            self.ec2.delete_internet_gateway(InternetGatewayId=igw_id)
        self.ec2.delete_vpc(VpcId=handle.identifier)

    def _set_dns_attributes(self, vpc_id: str, properties: Mapping[str, Any]) -> None:
        # EC2 accepts a single attribute per call
        self.ec2.modify_vpc_attribute(
            VpcId=vpc_id,
            EnableDnsSupport={"Value": properties.get("enable_dns_support", True)},
        )
        self.ec2.modify_vpc_attribute(
            VpcId=vpc_id,
            EnableDnsHostnames={"Value": properties.get("enable_dns_hostnames", True)},
        )

    def _create_subnet(self, node_id: str, properties: Mapping[str, Any]) -> ProviderResult:
        arguments = {
            "VpcId": properties["vpc_id"],
            "CidrBlock": properties["cidr_block"],
            "TagSpecifications": _tags("subnet", properties.get("name") or node_id),
        }
        if properties.get("availability_zone"):
            arguments["AvailabilityZone"] = properties["availability_zone"]
        subnet = self.ec2.create_subnet(**arguments)["Subnet"]
        if properties.get("public"):
            self._set_public(subnet["SubnetId"], True)
        attributes = {
            "availability_zone": subnet["AvailabilityZone"],
            "vpc_id": subnet["VpcId"],
        }
        attributes.update(self._create_routing(subnet["SubnetId"], node_id, properties))
        return ProviderResult(subnet["SubnetId"], attributes)

    def _create_routing(
        self, subnet_id: str, node_id: str, properties: Mapping[str, Any]
    ) -> dict[str, Any]:
        """Own route table with a default route, plus a NAT gateway when asked for."""
        gateway_id = properties.get("internet_gateway_id")
        nat_gateway_id = properties.get("nat_gateway_id")
        if not gateway_id and not nat_gateway_id:
            return {}

        name = properties.get("name") or node_id
        table_id = self.ec2.create_route_table(
            VpcId=properties["vpc_id"], TagSpecifications=_tags("route-table", name)
        )["RouteTable"]["RouteTableId"]
        target = {"GatewayId": gateway_id} if gateway_id else {"NatGatewayId": nat_gateway_id}
        self.ec2.create_route(
            RouteTableId=table_id, DestinationCidrBlock=ANY_IPV4_CIDR, **target
        )
        association_id = self.ec2.associate_route_table(
            RouteTableId=table_id, SubnetId=subnet_id
        )["AssociationId"]
        attributes = {"route_table_id": table_id, "route_table_association_id": association_id}

        if properties.get("nat_gateway"):
            allocation_id = self.ec2.allocate_address(Domain="vpc")["AllocationId"]
            nat_id = self.ec2.create_nat_gateway(
                SubnetId=subnet_id,
                AllocationId=allocation_id,
                TagSpecifications=_tags("natgateway", name),
            )["NatGateway"]["NatGatewayId"]
            self.ec2.get_waiter("nat_gateway_available").wait(NatGatewayIds=[nat_id])
            attributes["nat_gateway_id"] = nat_id
            attributes["allocation_id"] = allocation_id
        return attributes

    def _delete_subnet(self, handle: ResourceHandle) -> None:
        attributes = handle.attributes
        if attributes.get("nat_gateway_id"):
            self.ec2.delete_nat_gateway(NatGatewayId=attributes["nat_gateway_id"])
            self.ec2.get_waiter("nat_gateway_deleted").wait(
                NatGatewayIds=[attributes["nat_gateway_id"]]
            )
            self.ec2.release_address(AllocationId=attributes["allocation_id"])
        if attributes.get("route_table_id"):
            self.ec2.disassociate_route_table(
                AssociationId=attributes["route_table_association_id"]
            )
            self.ec2.delete_route_table(RouteTableId=attributes["route_table_id"])
        self.ec2.delete_subnet(SubnetId=handle.identifier)

    def _set_public(self, subnet_id: str, public: bool) -> None:
        self.ec2.modify_subnet_attribute(
            SubnetId=subnet_id, MapPublicIpOnLaunch={"Value": bool(public)}
        )

    def _create_security_group(
        self, node_id: str, properties: Mapping[str, Any]
    ) -> ProviderResult:
        group_id = self.ec2.create_security_group(
            GroupName=properties.get("group_name") or node_id,
            Description=properties.get("description") or node_id,
            VpcId=properties["vpc_id"],
        )["GroupId"]
        if not properties.get("allow_all_outbound", True):
            # Drop the default allow-all egress rule EC2 adds to every new group
            self.ec2.revoke_security_group_egress(
                GroupId=group_id,
                IpPermissions=[{"IpProtocol": "-1", "IpRanges": [{"CidrIp": ANY_IPV4_CIDR}]}],
            )
        return ProviderResult(group_id, {"group_id": group_id, "vpc_id": properties["vpc_id"]})

    def _create_security_rule(
        self, node_id: str, properties: Mapping[str, Any]
    ) -> ProviderResult:
        direction = properties.get("direction", "ingress")
        authorize = (
            self.ec2.authorize_security_group_ingress
            if direction == "ingress"
            else self.ec2.authorize_security_group_egress
        )
        response = authorize(
            GroupId=properties["group_id"], IpPermissions=[_permission(properties)]
        )
        rules = response.get("SecurityGroupRules") or []
        rule_id = (
            rules[0]["SecurityGroupRuleId"]
            if rules
            else "-".join(
                str(part)
                for part in (
                    properties["group_id"],
                    direction,
                    properties["protocol"],
                    properties["from_port"],
                    properties["peer_group_id"],
                )
            )
        )
        return ProviderResult(
            rule_id,
            {
                "rule_id": rule_id,
                "group_id": properties["group_id"],
                "direction": direction,
                "protocol": properties["protocol"],
                "from_port": properties["from_port"],
                "to_port": properties["to_port"],
                "peer_group_id": properties["peer_group_id"],
                "description": properties.get("description", ""),
            },
        )

    def _delete_security_rule(self, handle: ResourceHandle) -> None:
        revoke = (
            self.ec2.revoke_security_group_ingress
            if handle.attributes.get("direction", "ingress") == "ingress"
            else self.ec2.revoke_security_group_egress
        )
        revoke(
            GroupId=handle.attributes["group_id"],
            IpPermissions=[_permission(handle.attributes)],
        )

    def _update_rule_description(
        self, handle: ResourceHandle, properties: Mapping[str, Any]
    ) -> None:
        update = (
            self.ec2.update_security_group_rule_descriptions_ingress
            if handle.attributes.get("direction", "ingress") == "ingress"
            else self.ec2.update_security_group_rule_descriptions_egress
        )
        update(
            GroupId=handle.attributes["group_id"],
            IpPermissions=[_permission({**handle.attributes, **properties})],
        )

    # ---------- iam ----------

    def _create_role(self, node_id: str, properties: Mapping[str, Any]) -> ProviderResult:
        name = properties.get("role_name") or node_id
        arguments = {
            "RoleName": name,
            "AssumeRolePolicyDocument": json.dumps(trust_policy(properties["assumed_by"])),
        }
        if properties.get("description"):
            arguments["Description"] = properties["description"]
        role = self.iam.create_role(**arguments)["Role"]
        for arn in properties.get("managed_policy_arns", ()):
            self.iam.attach_role_policy(RoleName=name, PolicyArn=arn)
        if properties.get("statements"):
            self.iam.put_role_policy(
                RoleName=name,
                PolicyName=f"{name}-inline",
                PolicyDocument=json.dumps(policy_document(properties["statements"])),
            )
        return ProviderResult(name, {"name": name, "arn": role["Arn"]})

    def _create_policy(self, node_id: str, properties: Mapping[str, Any]) -> ProviderResult:
        name = properties.get("policy_name") or node_id
        arguments = {
            "PolicyName": name,
            "PolicyDocument": json.dumps(policy_document(properties["statements"])),
        }
        if properties.get("description"):
            arguments["Description"] = properties["description"]
        arn = self.iam.create_policy(**arguments)["Policy"]["Arn"]
        for group in properties.get("groups", ()):
            self.iam.attach_group_policy(GroupName=group, PolicyArn=arn)
        for role in properties.get("roles", ()):
            self.iam.attach_role_policy(RoleName=role, PolicyArn=arn)
        return ProviderResult(arn, {"arn": arn, "name": name})

    def _create_group(self, node_id: str, properties: Mapping[str, Any]) -> ProviderResult:
        name = properties.get("group_name") or node_id
        group = self.iam.create_group(GroupName=name)["Group"]
        for arn in properties.get("managed_policy_arns", ()):
            self.iam.attach_group_policy(GroupName=name, PolicyArn=arn)
        return ProviderResult(name, {"name": name, "arn": group["Arn"]})

    def _delete_role(self, handle: ResourceHandle) -> None:
        name = handle.identifier
        attached = self.iam.list_attached_role_policies(RoleName=name)["AttachedPolicies"]
        for policy in attached:
            self.iam.detach_role_policy(RoleName=name, PolicyArn=policy["PolicyArn"])
        for policy_name in self.iam.list_role_policies(RoleName=name)["PolicyNames"]:
            self.iam.delete_role_policy(RoleName=name, PolicyName=policy_name)
        self.iam.delete_role(RoleName=name)

    def _delete_policy(self, handle: ResourceHandle) -> None:
        arn = handle.identifier
        entities = self.iam.list_entities_for_policy(PolicyArn=arn)
        for group in entities.get("PolicyGroups", []):
            self.iam.detach_group_policy(GroupName=group["GroupName"], PolicyArn=arn)
        for role in entities.get("PolicyRoles", []):
            self.iam.detach_role_policy(RoleName=role["RoleName"], PolicyArn=arn)
        self.iam.delete_policy(PolicyArn=arn)

    def _delete_group(self, handle: ResourceHandle) -> None:
        name = handle.identifier
        attached = self.iam.list_attached_group_policies(GroupName=name)["AttachedPolicies"]
        for policy in attached:
            self.iam.detach_group_policy(GroupName=name, PolicyArn=policy["PolicyArn"])
        self.iam.delete_group(GroupName=name)

    def _describe(self, handle: ResourceHandle) -> ProviderResult:
        identifier = handle.identifier
        if handle.kind is ResourceKind.NETWORK:
            vpc = self.ec2.describe_vpcs(VpcIds=[identifier])["Vpcs"][0]
            return ProviderResult(
                identifier, {**handle.attributes, "cidr_block": vpc["CidrBlock"]}
            )
        if handle.kind is ResourceKind.SUBNET:
            subnet = self.ec2.describe_subnets(SubnetIds=[identifier])["Subnets"][0]
            return ProviderResult(
                identifier,
                {
                    **handle.attributes,
                    "availability_zone": subnet["AvailabilityZone"],
                    "vpc_id": subnet["VpcId"],
                },
            )
        if handle.kind is ResourceKind.SECURITY_GROUP:
            group = self.ec2.describe_security_groups(GroupIds=[identifier])[
                "SecurityGroups"
            ][0]
            return ProviderResult(identifier, {"group_id": identifier, "vpc_id": group["VpcId"]})
        if handle.kind is ResourceKind.IAM_ROLE:
            role = self.iam.get_role(RoleName=identifier)["Role"]
            return ProviderResult(identifier, {"name": identifier, "arn": role["Arn"]})
        if handle.kind is ResourceKind.IAM_POLICY:
            policy = self.iam.get_policy(PolicyArn=identifier)["Policy"]
            return ProviderResult(identifier, {"arn": identifier, "name": policy["PolicyName"]})
        if handle.kind is ResourceKind.IAM_GROUP:
            group = self.iam.get_group(GroupName=identifier)["Group"]
            return ProviderResult(identifier, {"name": identifier, "arn": group["Arn"]})
        # Rules are tracked through the attributes recorded when they were created
        return ProviderResult(identifier, dict(handle.attributes))
