import ipaddress
import os
from typing import Optional

from attrs import define, field

import common.constants as constants


@define(slots=True, frozen=True)
class StackContext:
    env: str = field(
        default=constants.DEFAULT_ENV,
        metadata={"description": "Deployment environment (dev, staging, prod)"},
    )
    service: str = field(default=constants.SERVICE_NAME, init=False)
    stack_prefix: str = field(default=constants.STACK_PREFIX)
    region: str = field(default=constants.DEFAULT_REGION)
    account: Optional[str] = field(default=None)

    @classmethod
    def from_env(cls) -> "StackContext":
        return cls(
            env=os.getenv("DEPLOY_ENV", constants.DEFAULT_ENV),
            region=os.getenv("CDK_DEFAULT_REGION") or constants.DEFAULT_REGION,
            account=os.getenv("CDK_DEFAULT_ACCOUNT"),
        )

    # ---------- placement ----------
    def availability_zones(self) -> list[str]:
        if not self.region:
            raise ValueError("AWS region is not set, unable to resolve availability zones")
        return [f"{self.region}{suffix}" for suffix in constants.AVAILABILITY_ZONE_SUFFIXES]

    def subnet_cidrs(self, count: int) -> list[str]:
        """First ``count`` subnets of the VPC range, in order."""
        network = ipaddress.ip_network(constants.VPC_CIDR)
        subnets = network.subnets(new_prefix=constants.CIDR_MASK)
        return [str(next(subnets)) for _ in range(count)]

    # ---------- naming ----------
    def build_stack_id(self, stack_name: str) -> str:
        """Build the deployed stack id, e.g. RealWorldServerless-IAM."""
        return f"{self.stack_prefix}-{stack_name}"

    def build_resource_name(
        self, resource_type: str, action: Optional[str] = None
    ) -> str:
        """Build resource name with optional action.

        Examples:
            - Without action: realworld-vpc-dev
            - With action: realworld-lambda-execution-role-dev
        """
        if action:
            return f"{self.service}-{action}-{resource_type}-{self.env}".lower()
        return f"{self.service}-{resource_type}-{self.env}".lower()
