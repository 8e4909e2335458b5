"""
GitHub OIDC Deploy Constants
Fixed literals describing the deploy stack
"""

# Repository allowed to assume the deploy role
GITHUB_OWNER = "ryosuke-horie"
GITHUB_REPO = "identiface-poc"
GITHUB_BRANCH = "main"

# CDK bootstrap qualifier (default value, works unchanged)
CDK_QUALIFIER = "hnb659fds"

# Deploy targets, created outside this stack
S3_BUCKET_NAME = "infrastack-idenfifaces3bucket83b79824-6ttlx45xmxw0"
CLOUDFRONT_DISTRIBUTION_ID = "E1PPUO0EHG05SG"

# OIDC Configuration
GITHUB_OIDC_PROVIDER_URL = "https://token.actions.githubusercontent.com"
DEFAULT_AUDIENCE = "sts.amazonaws.com"
GITHUB_OIDC_THUMBPRINTS = [
    "6938fd4d98bab03faadb97b34396831e3780aea1",
    "1c58a3a8518e8759bf075b76b750d4f2df264fcd",
]

# IAM naming
ROLE_NAME = "GitHubOidcRole"
POLICY_NAME = "CdkDeployPolicy"
POLICY_VERSION = "2012-10-17"

# Pulumi resource names, unique within the stack
PROVIDER_RESOURCE_NAME = "GitHubOidcProvider"
ROLE_RESOURCE_NAME = "GitHubOidcRole"
POLICY_RESOURCE_NAME = "CdkDeployPolicy"

# Pulumi project
PROJECT_NAME = "gh-oidc-deploy"
STATE_DIR_NAME = ".pulumi-state"

# Default tags applied to the tagged IAM resources
DEFAULT_TAGS = {
    "ManagedBy": "GH-OIDC-Deploy",
    "Tool": "Pulumi",
    "Purpose": "OIDC-GitHub-CdkDeploy"
}

# Placeholders used when rendering documents without a target account
PLACEHOLDER_ACCOUNT_ID = "123456789012"
PLACEHOLDER_REGION = "us-east-1"
