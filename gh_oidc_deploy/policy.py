"""
Policy document rendering for the GitHub OIDC deploy stack.

Everything here is pure: the same inputs always render the same documents,
so the stack can be synthesised and reviewed without touching AWS.
"""

import logging
from typing import NamedTuple

from gh_oidc_deploy import constants
from gh_oidc_deploy.config_loader import StackConfig

logger = logging.getLogger(__name__)

WEB_IDENTITY_ACTION = "sts:AssumeRoleWithWebIdentity"

CLOUDFORMATION_DEPLOY_ACTIONS = [
    "cloudformation:CreateStack",
    "cloudformation:CreateChangeSet",
    "cloudformation:DeleteChangeSet",
    "cloudformation:DescribeChangeSet",
    "cloudformation:DescribeStacks",
    "cloudformation:DescribeStackEvents",
    "cloudformation:ExecuteChangeSet",
    "cloudformation:GetTemplate",
]


class ScopeFinding(NamedTuple):
    """A statement (or trust condition) broader than a single target."""
    statement_index: int
    kind: str
    detail: str


def _statement(actions: list[str], resources: list[str]) -> dict:
    return {
        "Effect": "Allow",
        "Action": list(actions),
        "Resource": list(resources),
    }


def generate_trust_policy(oidc_provider_arn: str, oidc_url_no_scheme: str,
                          subject_claim: str, audience: str) -> dict:
    """Generates the role's assume role policy document for GitHub OIDC.

    Both claims sit in one StringEquals block, so a token must match the
    audience AND the subject. The action must be the web-identity variant;
    plain sts:AssumeRole would not honour the federated principal.
    """
    policy = {
        "Version": constants.POLICY_VERSION,
        "Statement": [
            {
                "Effect": "Allow",
                "Principal": {
                    "Federated": oidc_provider_arn
                },
                "Action": WEB_IDENTITY_ACTION,
                "Condition": {
                    "StringEquals": {
                        f"{oidc_url_no_scheme}:aud": audience,
                        f"{oidc_url_no_scheme}:sub": subject_claim
                    }
                }
            }
        ]
    }
    logger.debug(f"Generated assume role policy document for OIDC provider ARN: {oidc_provider_arn}")
    return policy


def build_deploy_policy_statements(config: StackConfig, account_id: str, region: str) -> list[dict]:
    """Returns the six ordered allow statements a CDK deploy from CI needs."""
    qualifier = config.cdk_qualifier
    statements = [
        # Bucket discovery
        _statement(
            ["s3:getBucketLocation", "s3:List*"],
            ["arn:aws:s3:::*"],
        ),
        # CloudFormation stack lifecycle
        _statement(
            CLOUDFORMATION_DEPLOY_ACTIONS,
            [f"arn:aws:cloudformation:{region}:{account_id}:stack/*/*"],
        ),
        # Deploy bucket objects
        _statement(
            ["s3:PutObject", "s3:GetObject", "s3:DeleteObject"],
            [f"arn:aws:s3:::{config.bucket_name}/*"],
        ),
        # Bootstrap version marker
        _statement(
            ["ssm:GetParameter"],
            [f"arn:aws:ssm:{region}:{account_id}:parameter/cdk-bootstrap/{qualifier}/version"],
        ),
        # Bootstrap CloudFormation execution role
        _statement(
            ["iam:PassRole"],
            [f"arn:aws:iam::{account_id}:role/cdk-{qualifier}-cfn-exec-role-{account_id}-{region}"],
        ),
        # CloudFront distribution
        _statement(
            ["cloudfront:*"],
            [f"arn:aws:cloudfront::{account_id}:distribution/{config.distribution_id}"],
        ),
    ]
    logger.debug(f"Built {len(statements)} deploy policy statements for account {account_id} in {region}")
    return statements


def build_deploy_policy_document(config: StackConfig, account_id: str, region: str) -> dict:
    """Wraps the deploy statements in a policy document."""
    return {
        "Version": constants.POLICY_VERSION,
        "Statement": build_deploy_policy_statements(config, account_id, region),
    }


def _as_list(value) -> list:
    if isinstance(value, list):
        return value
    return [value]


def _is_service_wide_resource(resource: str) -> bool:
    if resource == "*":
        return True
    parts = resource.split(":", 5)
    return len(parts) == 6 and parts[5] == "*"


def review_policy_scope(document: dict) -> list[ScopeFinding]:
    """Flags statements granting more than one named target.

    Only reports; the document is never narrowed here, since whether the
    breadth is intended is for the stack owner to decide.
    """
    findings = []
    for index, statement in enumerate(document.get("Statement", [])):
        for resource in _as_list(statement.get("Resource", [])):
            if _is_service_wide_resource(resource):
                findings.append(ScopeFinding(index, "wildcard-resource",
                                             f"resource '{resource}' covers every resource of the service"))
        for action in _as_list(statement.get("Action", [])):
            if action == "*" or action.endswith(":*"):
                findings.append(ScopeFinding(index, "wildcard-action",
                                             f"action '{action}' grants every action of the service"))
    logger.debug(f"Policy scope review produced {len(findings)} finding(s)")
    return findings


def review_trust_scope(document: dict) -> list[ScopeFinding]:
    """Flags trust statements that are not pinned to exact audience and subject claims."""
    findings = []
    for index, statement in enumerate(document.get("Statement", [])):
        if statement.get("Action") != WEB_IDENTITY_ACTION:
            findings.append(ScopeFinding(index, "assume-action",
                                         f"action '{statement.get('Action')}' is not {WEB_IDENTITY_ACTION}"))
        conditions = statement.get("Condition", {})
        exact = conditions.get("StringEquals", {})
        for claim in ("aud", "sub"):
            matches = [v for k, v in exact.items() if k.endswith(f":{claim}")]
            if not matches:
                findings.append(ScopeFinding(index, f"unpinned-{claim}",
                                             f"no exact-match condition on the '{claim}' claim"))
            elif any("*" in str(v) for v in matches):
                findings.append(ScopeFinding(index, f"wildcard-{claim}",
                                             f"'{claim}' condition contains a wildcard"))
    return findings


def trust_notes(config: StackConfig) -> list[str]:
    """Informational notes on what the trust subject admits. Never counted as findings."""
    return [
        f"subject pins branch ref refs/heads/{config.branch}; "
        f"not limited to pull request triggers"
    ]
