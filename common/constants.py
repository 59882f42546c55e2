DEFAULT_ENV = "dev"
DEFAULT_REGION = "ap-northeast-1"

# Naming convention components
SERVICE_NAME = "realworld"  # The application name
STACK_PREFIX = "RealWorldServerless"  # Prefix of every deployed stack id

# Declared stack names
IAM_STACK = "IAM"
NETWORK_STACK = "Network"

IAM_STACK_DESCRIPTION = "IAM resources for RealWorld Serverless Backend Application"
NETWORK_STACK_DESCRIPTION = (
    "Network infrastructure for RealWorld Serverless Backend Application"
)

VPC_CIDR = "10.0.0.0/16"
CIDR_MASK = 24
# One NAT gateway shared by every private subnet
NAT_GATEWAYS = 1
# Zone suffixes available in every supported region, ap-northeast-1 has no "b"
AVAILABILITY_ZONE_SUFFIXES = ("a", "c")

POSTGRES_PORT = 5432
MONGODB_PORT = 27017

DEVELOPERS_GROUP_NAME = "RealWorldDevelopers"
DEVELOPER_MANAGED_POLICIES = (
    "ReadOnlyAccess",
    "AmazonDynamoDBFullAccess",
    "AWSLambda_FullAccess",
    "AmazonAPIGatewayAdministrator",
)
LAMBDA_BASIC_EXECUTION_POLICY = "service-role/AWSLambdaBasicExecutionRole"

LAMBDA_SERVICE_PRINCIPAL = "lambda.amazonaws.com"
API_GATEWAY_SERVICE_PRINCIPAL = "apigateway.amazonaws.com"

LOGS_ARN = "arn:aws:logs:*:*:*"
DYNAMODB_TABLES_ARN = "arn:aws:dynamodb:*:*:table/RealWorld*"
LAMBDA_FUNCTIONS_ARN = "arn:aws:lambda:*:*:function:RealWorld*"

TAGS = {
    "Project": "RealWorldServerless",
    "Environment": "Development",
    "ManagedBy": "AWS-CDK",
}
