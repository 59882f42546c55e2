from typing import Any, Iterable

from provisioning.model import (
    Reference,
    ResourceKind,
    ResourceNode,
    SecurityIntent,
    Selector,
    Stack,
)

import common.constants as constants
from common.stack_context import StackContext


class NetworkingStack:
    """VPC, subnets and the security groups guarding the database tier.

    Lambda-to-database access is declared as security intents; the composer
    turns them into ingress rules on the database group.
    """

    def __init__(
        self,
        context: StackContext,
        name: str = constants.NETWORK_STACK,
        depends_on: Iterable[str] = (),
    ) -> None:
        self.context = context
        self.name = name
        self.depends_on = frozenset(depends_on)

        self.vpc = self.create_vpc()
        self.public_subnets, self.private_subnets = self.create_subnets()
        self.lambda_security_group = self.create_lambda_sg()
        self.database_security_group = self.create_database_sg()

    def declare(self) -> Stack:
        return Stack(
            name=self.name,
            description=constants.NETWORK_STACK_DESCRIPTION,
            depends_on=self.depends_on,
            nodes=[
                self.vpc,
                *self.public_subnets,
                *self.private_subnets,
                self.lambda_security_group,
                self.database_security_group,
            ],
            outputs={
                "VpcId": self.ref(self.vpc),
                "PublicSubnets": [self.ref(subnet) for subnet in self.public_subnets],
                "PrivateSubnets": [self.ref(subnet) for subnet in self.private_subnets],
                "LambdaSecurityGroupId": self.ref(self.lambda_security_group),
                "DatabaseSecurityGroupId": self.ref(self.database_security_group),
            },
            output_descriptions={
                "VpcId": "ID of the VPC",
                "PublicSubnets": "IDs of public subnets",
                "PrivateSubnets": "IDs of private subnets",
                "LambdaSecurityGroupId": "ID of the Lambda security group",
                "DatabaseSecurityGroupId": "ID of the database security group",
            },
        )

    def intents(self) -> list[SecurityIntent]:
        lambdas = Selector(pattern="*", stack=self.name, labels={"tier": "lambda"})
        databases = Selector(pattern="*", stack=self.name, labels={"tier": "database"})
        return [
            SecurityIntent(
                source=lambdas,
                destination=databases,
                port=constants.POSTGRES_PORT,
                description="Allow access from Lambda functions to PostgreSQL",
            ),
            SecurityIntent(
                source=lambdas,
                destination=databases,
                port=constants.MONGODB_PORT,
                description="Allow access from Lambda functions to MongoDB",
            ),
        ]

    def ref(self, node: ResourceNode, attribute: str = "id") -> Reference:
        return Reference(self.name, node.id, attribute)

    def create_vpc(self) -> ResourceNode:
        return ResourceNode(
            id="RealWorldVpc",
            kind=ResourceKind.NETWORK,
            properties={
                "name": self.context.build_resource_name("vpc"),
                "cidr_block": constants.VPC_CIDR,
                "enable_dns_hostnames": True,
                "enable_dns_support": True,
                "internet_gateway": True,
            },
        )

    def create_subnets(self) -> tuple[list[ResourceNode], list[ResourceNode]]:
        """One public and one private subnet per availability zone.

        Public subnets route to the internet gateway and the first
        ``NAT_GATEWAYS`` of them host a NAT gateway; private subnets send their
        outbound traffic through those NAT gateways in turn.
        """
        zones = self.context.availability_zones()
        cidrs = iter(self.context.subnet_cidrs(2 * len(zones)))
        public = [
            self._subnet(
                "public",
                index,
                zone,
                next(cidrs),
                internet_gateway_id=self.ref(self.vpc, "internet_gateway_id"),
                nat_gateway=index <= constants.NAT_GATEWAYS,
            )
            for index, zone in enumerate(zones, start=1)
        ]
        nat_hosts = public[: constants.NAT_GATEWAYS]
        private = [
            self._subnet(
                "private",
                index,
                zone,
                next(cidrs),
                nat_gateway_id=self.ref(
                    nat_hosts[(index - 1) % len(nat_hosts)], "nat_gateway_id"
                ),
            )
            for index, zone in enumerate(zones, start=1)
        ]
        return public, private

    def _subnet(
        self, tier: str, index: int, zone: str, cidr: str, **routing: Any
    ) -> ResourceNode:
        return ResourceNode(
            id=f"{tier.capitalize()}Subnet{index}",
            kind=ResourceKind.SUBNET,
            properties={
                "name": self.context.build_resource_name(f"subnet-{index}", action=tier),
                "vpc_id": self.ref(self.vpc),
                "cidr_block": cidr,
                "availability_zone": zone,
                "public": tier == "public",
                **routing,
            },
        )

    def create_lambda_sg(self) -> ResourceNode:
        return ResourceNode(
            id="LambdaSecurityGroup",
            kind=ResourceKind.SECURITY_GROUP,
            properties={
                "group_name": self.context.build_resource_name("sg", action="lambda"),
                "vpc_id": self.ref(self.vpc),
                "description": "Security group for Lambda functions",
                "allow_all_outbound": True,
                "labels": {"tier": "lambda"},
            },
        )

    def create_database_sg(self) -> ResourceNode:
        return ResourceNode(
            id="DatabaseSecurityGroup",
            kind=ResourceKind.SECURITY_GROUP,
            properties={
                "group_name": self.context.build_resource_name("sg", action="database"),
                "vpc_id": self.ref(self.vpc),
                "description": "Security group for databases",
                "allow_all_outbound": False,
                "labels": {"tier": "database"},
            },
        )
