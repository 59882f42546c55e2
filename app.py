#!/usr/bin/env python3
"""AWS CDK entrypoint for the RealWorld serverless infrastructure.

The declared IAM and Network stacks are walked by the provisioning engine with
the CDK provider, which turns each declared stack into a CloudFormation stack.
Both share a single deployment environment sourced from the CDK CLI defaults.
Update or override the environment variables to target a different account or
region.
"""
import json
import sys

import aws_cdk as cdk
from aws_cdk import Environment, Tags

import common.constants as constants
from common.stack_context import StackContext
from common.topology import realworld_declarations
from provisioning import EngineSettings, ProvisioningEngine
from provisioning.providers.cdk import CdkStackProvider

app = cdk.App()
context = StackContext.from_env()

env = Environment(account=context.account, region=context.region)

provider = CdkStackProvider(app, env=env, stack_id=context.build_stack_id)
result = ProvisioningEngine(provider, EngineSettings.from_env()).run(
    realworld_declarations(context)
)
if not result.succeeded:
    print(json.dumps(result.report(), indent=2, default=str), file=sys.stderr)
    sys.exit(1)

for key, value in constants.TAGS.items():
    Tags.of(app).add(key, value)

app.synth()
