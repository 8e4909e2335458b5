import json
import logging

import pulumi
import pulumi_aws as aws

from gh_oidc_deploy import constants, policy
from gh_oidc_deploy.config_loader import StackConfig

logger = logging.getLogger(__name__)

def _prepare_tags(config: StackConfig) -> dict:
    """Merges default tags with configured tags and adds traceability tags."""
    current_tags = constants.DEFAULT_TAGS.copy()
    current_tags.update(config.tags)
    current_tags["Repository"] = config.repository
    current_tags["Branch"] = config.branch
    logger.debug(f"Prepared tags for stack {config.role_name}: {current_tags}")
    return current_tags

def _render_trust_policy(oidc_provider_arn: str, config: StackConfig) -> str:
    """Serialises the trust policy once the provider ARN is known."""
    return json.dumps(policy.generate_trust_policy(
        oidc_provider_arn,
        config.oidc_url_no_scheme,
        config.subject_claim,
        config.audience
    ))

def create_oidc_provider(config: StackConfig, tags: dict,
                         opts: pulumi.ResourceOptions | None) -> aws.iam.OpenIdConnectProvider:
    """Registers the GitHub token issuer as a trust anchor. One per issuer per account."""
    oidc_provider = aws.iam.OpenIdConnectProvider(constants.PROVIDER_RESOURCE_NAME,
                                                  url=config.oidc_provider_url,
                                                  client_id_lists=[config.audience],
                                                  thumbprint_lists=constants.GITHUB_OIDC_THUMBPRINTS,
                                                  tags=tags,
                                                  opts=opts)
    logger.info(f"Defined aws.iam.OpenIdConnectProvider for {config.oidc_url_no_scheme}")
    return oidc_provider

def create_deploy_role(config: StackConfig, oidc_provider_arn: pulumi.Output[str], tags: dict,
                       opts: pulumi.ResourceOptions | None) -> aws.iam.Role:
    """Creates the role assumable only through the OIDC provider."""
    # NOTE: the subject pins the configured branch ref, not pull request triggers
    assume_role_policy_doc = oidc_provider_arn.apply(
        lambda arn: _render_trust_policy(arn, config)
    )
    iam_role = aws.iam.Role(constants.ROLE_RESOURCE_NAME,
                            name=config.role_name,
                            assume_role_policy=assume_role_policy_doc,
                            tags=tags,
                            opts=opts)
    logger.info(f"Defined aws.iam.Role: {config.role_name} (Pulumi name: {constants.ROLE_RESOURCE_NAME})")
    return iam_role

def attach_deploy_policy(config: StackConfig, policy_doc: dict, iam_role_name: pulumi.Output[str],
                         opts: pulumi.ResourceOptions | None) -> aws.iam.RolePolicy:
    """Binds the deploy policy to the role as an inline policy."""
    role_policy = aws.iam.RolePolicy(constants.POLICY_RESOURCE_NAME,
                                     role=iam_role_name,
                                     name=config.policy_name, # Actual AWS Inline Policy Name
                                     policy=json.dumps(policy_doc),
                                     opts=opts)
    logger.debug(f"Attaching inline policy '{config.policy_name}' to role {config.role_name} "
                 f"(Pulumi name: {constants.POLICY_RESOURCE_NAME})")
    return role_policy

def _safe_export(key: str, value) -> None:
    """Safely export a value, only if we're in a valid Pulumi stack context."""
    try:
        pulumi.export(key, value)
        logger.debug(f"Exported: {key}")
    except Exception as e:
        # This happens when not running in a Pulumi stack context (e.g., CLI validation)
        logger.debug(f"Skipping export '{key}' - not in Pulumi stack context: {e}")

def create_gh_oidc_deploy_stack(config: StackConfig, account_id: str, region: str,
                                pulumi_provider: aws.Provider = None) -> dict:
    """
    Declares the OIDC provider, the federated role and its inline deploy policy.
    Optionally uses a specific Pulumi AWS provider.
    """
    logger.info(f"--- Defining GitHub OIDC deploy stack for {config.repository} in account {account_id} ---")

    tags = _prepare_tags(config)
    opts = pulumi.ResourceOptions(provider=pulumi_provider) if pulumi_provider else None

    oidc_provider = create_oidc_provider(config, tags, opts)

    iam_role = create_deploy_role(
        config,
        oidc_provider_arn=oidc_provider.arn,
        tags=tags,
        opts=opts
    )

    policy_doc = policy.build_deploy_policy_document(config, account_id, region)
    role_policy = attach_deploy_policy(
        config,
        policy_doc=policy_doc,
        iam_role_name=iam_role.name, # Pass the Output[str] name
        opts=opts
    )

    _safe_export("oidc_provider_arn", oidc_provider.arn)
    _safe_export("role_arn", iam_role.arn)
    _safe_export("role_name", iam_role.name)
    _safe_export("policy_name", role_policy.name)

    logger.info(f"--- Successfully defined GitHub OIDC deploy stack for role: {config.role_name} ---")
    return {
        "oidc_provider": oidc_provider,
        "role": iam_role,
        "role_policy": role_policy,
    }
