from provisioning.model import ExportReference, Reference, ResourceKind, ResourceNode, Stack
from provisioning.policies import aws_managed_policy_arn, statement

import common.constants as constants
from common.stack_context import StackContext


class IamStack:
    """Developer access and the service roles of the RealWorld backend.

    Role ARNs are exported as stack outputs so other stacks can reference
    them through ``ExportReference`` instead of reaching into this object.
    """

    def __init__(self, context: StackContext, name: str = constants.IAM_STACK) -> None:
        self.context = context
        self.name = name

        # Developers group with read access plus service administration
        self.developers_group = self._build_developers_group()
        self.developer_policy = self._build_developer_policy()

        # Roles assumed by the application services
        self.lambda_execution_role = self._build_lambda_execution_role()
        self.dynamodb_access_role = self._build_dynamodb_access_role()
        self.api_gateway_role = self._build_api_gateway_role()

    def declare(self) -> Stack:
        return Stack(
            name=self.name,
            description=constants.IAM_STACK_DESCRIPTION,
            nodes=[
                self.developers_group,
                self.developer_policy,
                self.lambda_execution_role,
                self.dynamodb_access_role,
                self.api_gateway_role,
            ],
            outputs={
                "DevelopersGroupName": self.ref(self.developers_group, "name"),
                "LambdaExecutionRoleArn": self.ref(self.lambda_execution_role, "arn"),
                "DynamoDbAccessRoleArn": self.ref(self.dynamodb_access_role, "arn"),
                "ApiGatewayRoleArn": self.ref(self.api_gateway_role, "arn"),
            },
            output_descriptions={
                "DevelopersGroupName": "Name of the developers IAM group",
                "LambdaExecutionRoleArn": "ARN of the Lambda execution role",
                "DynamoDbAccessRoleArn": "ARN of the DynamoDB access role",
                "ApiGatewayRoleArn": "ARN of the API Gateway role",
            },
        )

    def ref(self, node: ResourceNode, attribute: str = "id") -> Reference:
        return Reference(self.name, node.id, attribute)

    @property
    def lambda_execution_role_arn(self) -> ExportReference:
        return ExportReference(self.name, "LambdaExecutionRoleArn")

    # Resource creation

    def _build_developers_group(self) -> ResourceNode:
        return ResourceNode(
            id="DevelopersGroup",
            kind=ResourceKind.IAM_GROUP,
            properties={
                "group_name": constants.DEVELOPERS_GROUP_NAME,
                "managed_policy_arns": [
                    aws_managed_policy_arn(name)
                    for name in constants.DEVELOPER_MANAGED_POLICIES
                ],
            },
        )

    def _build_developer_policy(self) -> ResourceNode:
        """Custom policy attached to the developers group."""
        return ResourceNode(
            id="DeveloperPolicy",
            kind=ResourceKind.IAM_POLICY,
            properties={
                "policy_name": self.context.build_resource_name("policy", action="developer"),
                "statements": [
                    statement(
                        [
                            "cloudformation:Describe*",
                            "cloudformation:List*",
                            "cloudformation:Get*",
                            "cloudformation:ValidateTemplate",
                        ],
                        ["*"],
                    ),
                    statement(
                        [
                            "logs:DescribeLogGroups",
                            "logs:DescribeLogStreams",
                            "logs:GetLogEvents",
                            "logs:FilterLogEvents",
                        ],
                        ["*"],
                    ),
                ],
                "groups": [self.ref(self.developers_group, "name")],
            },
        )

    def _build_lambda_execution_role(self) -> ResourceNode:
        return ResourceNode(
            id="LambdaExecutionRole",
            kind=ResourceKind.IAM_ROLE,
            properties={
                "role_name": self.context.build_resource_name("role", action="lambda-execution"),
                "assumed_by": constants.LAMBDA_SERVICE_PRINCIPAL,
                "description": "Role for RealWorld Serverless Lambda functions execution",
                "managed_policy_arns": [
                    aws_managed_policy_arn(constants.LAMBDA_BASIC_EXECUTION_POLICY)
                ],
                "statements": [
                    statement(
                        ["logs:CreateLogGroup", "logs:CreateLogStream", "logs:PutLogEvents"],
                        [constants.LOGS_ARN],
                    )
                ],
            },
        )

    def _build_dynamodb_access_role(self) -> ResourceNode:
        return ResourceNode(
            id="DynamoDbAccessRole",
            kind=ResourceKind.IAM_ROLE,
            properties={
                "role_name": self.context.build_resource_name("role", action="dynamodb-access"),
                "assumed_by": constants.LAMBDA_SERVICE_PRINCIPAL,
                "description": "Role for accessing DynamoDB tables in RealWorld Serverless application",
                "statements": [
                    statement(
                        [
                            "dynamodb:GetItem",
                            "dynamodb:PutItem",
                            "dynamodb:UpdateItem",
                            "dynamodb:DeleteItem",
                            "dynamodb:Query",
                            "dynamodb:Scan",
                            "dynamodb:BatchGetItem",
                            "dynamodb:BatchWriteItem",
                        ],
                        [constants.DYNAMODB_TABLES_ARN],
                    )
                ],
            },
        )

    def _build_api_gateway_role(self) -> ResourceNode:
        return ResourceNode(
            id="ApiGatewayRole",
            kind=ResourceKind.IAM_ROLE,
            properties={
                "role_name": self.context.build_resource_name("role", action="api-gateway"),
                "assumed_by": constants.API_GATEWAY_SERVICE_PRINCIPAL,
                "description": "Role for API Gateway to invoke Lambda functions in RealWorld Serverless application",
                "statements": [
                    statement(
                        [
                            "logs:CreateLogGroup",
                            "logs:CreateLogStream",
                            "logs:DescribeLogGroups",
                            "logs:DescribeLogStreams",
                            "logs:PutLogEvents",
                        ],
                        [constants.LOGS_ARN],
                    ),
                    statement(["lambda:InvokeFunction"], [constants.LAMBDA_FUNCTIONS_ARN]),
                ],
            },
        )
