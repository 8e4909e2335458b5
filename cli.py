#!/usr/bin/env python3
"""
GitHub OIDC Deploy CLI
Manages the GitHub Actions OIDC deploy role for AWS using Pulumi
"""

import json
import logging
import sys
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from gh_oidc_deploy import __version__, config_loader, constants, policy
from gh_oidc_deploy.pulumi_manager import PulumiStackManager

console = Console()

# Exit codes for CI/CD systems
class ExitCodes:
    SUCCESS = 0
    GENERAL_ERROR = 1
    CONFIG_ERROR = 2
    VALIDATION_ERROR = 3
    AWS_ERROR = 4


def setup_logging(log_level: str, json_output: bool = False) -> logging.Logger:
    """Configure logging with optional JSON output for CI systems."""
    logger = logging.getLogger()
    logger.handlers.clear()

    if json_output:
        # Structured logging for CI/CD
        formatter = logging.Formatter(
            '{"timestamp":"%(asctime)s","level":"%(levelname)s","module":"%(name)s","message":"%(message)s"}'
        )
        handler = logging.StreamHandler()
        handler.setFormatter(formatter)
    else:
        handler = RichHandler(console=console, show_time=True, show_path=False)

    logger.addHandler(handler)
    logger.setLevel(getattr(logging, log_level.upper()))

    # Suppress verbose library logs
    logging.getLogger("pulumi").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)

    return logger


def validate_aws_account_id(ctx, param, value: str) -> str:
    """Validate AWS account ID format."""
    if not value:
        raise click.BadParameter("AWS Account ID is required")

    if not (value.isdigit() and len(value) == 12):
        raise click.BadParameter(
            f"Invalid AWS Account ID format: {value}. Must be exactly 12 digits."
        )
    return value


def validate_config_file(ctx, param, value: Optional[str]) -> Optional[Path]:
    """Validate the optional stack config file exists."""
    if value is None:
        return None
    path = Path(value)
    if not path.exists():
        raise click.BadParameter(f"Config file does not exist: {value}")
    if not path.is_file():
        raise click.BadParameter(f"Path is not a file: {value}")
    return path


def _load_config(config_path: Optional[Path], logger: logging.Logger) -> config_loader.StackConfig:
    try:
        return config_loader.load_stack_config(str(config_path) if config_path else None)
    except config_loader.ConfigError as e:
        logger.error(f"Configuration error: {e}")
        sys.exit(ExitCodes.CONFIG_ERROR)


def _emit_json(payload: dict) -> None:
    # Plain echo: rich would wrap long lines and parse brackets as markup
    click.echo(json.dumps(payload, indent=2, default=str))


def _print_outputs(outputs: dict, title: str) -> None:
    console.print(f"\n📤 {title}:", style="bold")
    table = Table()
    table.add_column("Output", style="cyan")
    table.add_column("Value", style="green")

    for key, output in outputs.items():
        table.add_row(key, str(output.value))

    console.print(table)


config_option = click.option(
    "--config",
    "config_path",
    callback=validate_config_file,
    envvar="GH_OIDC_CONFIG",
    help="JSON file overriding the built-in stack literals (env: GH_OIDC_CONFIG)"
)

account_id_option = click.option(
    "--account-id",
    required=True,
    callback=validate_aws_account_id,
    envvar="AWS_ACCOUNT_ID",
    help="Target AWS Account ID (env: AWS_ACCOUNT_ID)"
)

stack_name_option = click.option(
    "--stack-name",
    default="dev",
    envvar="PULUMI_STACK_NAME",
    help="Base stack name (will be combined with account ID) (env: PULUMI_STACK_NAME)"
)


@click.group()
@click.version_option(version=__version__, prog_name="gh-oidc-deploy")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"], case_sensitive=False),
    default="INFO",
    envvar="GH_OIDC_LOG_LEVEL",
    help="Set logging level (env: GH_OIDC_LOG_LEVEL)"
)
@click.option(
    "--json-output",
    is_flag=True,
    envvar="GH_OIDC_JSON_OUTPUT",
    help="Output structured JSON logs for CI/CD (env: GH_OIDC_JSON_OUTPUT)"
)
@click.pass_context
def cli(ctx, log_level: str, json_output: bool):
    """GitHub OIDC Deploy: federated GitHub Actions deploy role for AWS."""
    ctx.ensure_object(dict)
    ctx.obj["logger"] = setup_logging(log_level, json_output)
    ctx.obj["json_output"] = json_output


@cli.command()
@account_id_option
@click.option(
    "--aws-region",
    required=True,
    envvar="AWS_REGION",
    help="AWS region for resource creation (env: AWS_REGION)"
)
@click.option(
    "--aws-profile",
    envvar="AWS_PROFILE",
    help="AWS profile to use (env: AWS_PROFILE)"
)
@click.option(
    "--assume-role-arn",
    envvar="GH_OIDC_ASSUME_ROLE_ARN",
    help="Role to assume in the target account (env: GH_OIDC_ASSUME_ROLE_ARN)"
)
@click.option(
    "--external-id",
    envvar="GH_OIDC_EXTERNAL_ID",
    help="External ID for the assumed role (env: GH_OIDC_EXTERNAL_ID)"
)
@stack_name_option
@config_option
@click.option(
    "--dry-run",
    is_flag=True,
    help="Preview changes without applying them"
)
@click.option(
    "--auto-approve",
    is_flag=True,
    envvar="GH_OIDC_AUTO_APPROVE",
    help="Automatically approve deployment without confirmation (env: GH_OIDC_AUTO_APPROVE)"
)
@click.pass_context
def deploy(ctx, account_id: str, aws_region: str, aws_profile: Optional[str],
           assume_role_arn: Optional[str], external_id: Optional[str], stack_name: str,
           config_path: Optional[Path], dry_run: bool, auto_approve: bool):
    """Deploy the OIDC provider, deploy role and policy to an AWS account."""
    logger = ctx.obj["logger"]
    json_output = ctx.obj["json_output"]

    # Create account-specific stack name
    account_stack_name = f"{stack_name}-{account_id}"

    try:
        deployment_info = {
            "account_id": account_id,
            "aws_region": aws_region,
            "aws_profile": aws_profile,
            "assume_role_arn": assume_role_arn,
            "stack_name": account_stack_name,
            "config": str(config_path) if config_path else None,
            "dry_run": dry_run
        }

        if json_output:
            logger.info(f"Starting deployment: {json.dumps(deployment_info)}")
        else:
            console.print("🚀 Starting GitHub OIDC deploy stack deployment", style="bold green")
            console.print(f"📋 Account ID: {account_id}")
            console.print(f"🌍 Region: {aws_region}")
            console.print(f"📦 Stack: {account_stack_name}")
            if assume_role_arn:
                console.print(f"🔑 Assuming role: {assume_role_arn}")
            if dry_run:
                console.print("🔍 Preview Mode: Showing changes without applying", style="yellow")

        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            console=console,
            disable=json_output
        ) as progress:
            progress.add_task("Loading stack configuration...", total=None)
            stack_config = _load_config(config_path, logger)

        pulumi_manager = PulumiStackManager(
            stack_name=account_stack_name,
            aws_region=aws_region,
            aws_profile=aws_profile,
            assume_role_arn=assume_role_arn,
            external_id=external_id
        )

        if dry_run:
            if not json_output:
                console.print("🔍 Generating deployment preview...", style="bold blue")

            try:
                preview_result = pulumi_manager.preview_deployment(stack_config, account_id)
            except Exception as e:
                logger.error(f"Preview failed: {e}")
                sys.exit(ExitCodes.AWS_ERROR)

            if json_output:
                changes_summary = {}
                if isinstance(getattr(preview_result, 'change_summary', None), dict):
                    changes_summary = {
                        str(k): v for k, v in preview_result.change_summary.items()
                    }
                result = {
                    "status": "success",
                    "deployment_mode": "preview",
                    "account_id": account_id,
                    "stack_name": account_stack_name,
                    "repository": stack_config.repository,
                    "changes_summary": changes_summary
                }
                _emit_json(result)
            else:
                console.print("\n📊 Preview Summary:", style="bold")
                console.print(f"🏦 Account: {account_id}")
                console.print(f"👤 Role: {stack_config.role_name}")
                console.print(f"🔗 Trusted subject: {stack_config.subject_claim}")
                console.print("\n✅ Dry run preview completed. No changes were applied.", style="green")

            sys.exit(ExitCodes.SUCCESS)

        if not auto_approve and not json_output:
            console.print("\n📋 About to deploy:", style="bold")
            console.print(f"🏦 Account: {account_id}")
            console.print(f"👤 Role: {stack_config.role_name}")
            console.print(f"🔗 Trusted subject: {stack_config.subject_claim}")

            if not click.confirm("\nProceed with deployment?"):
                console.print("Deployment cancelled by user", style="yellow")
                sys.exit(ExitCodes.SUCCESS)

        if not json_output:
            console.print("🚀 Deploying resources...", style="bold green")

        try:
            up_result = pulumi_manager.deploy(stack_config, account_id)
            outputs = pulumi_manager.get_outputs()
        except Exception as e:
            logger.error(f"Deployment failed: {e}")
            sys.exit(ExitCodes.AWS_ERROR)

        if json_output:
            result = {
                "status": "success",
                "deployment_mode": "deploy",
                "account_id": account_id,
                "stack_name": account_stack_name,
                "outputs": {k: v.value for k, v in outputs.items()},
                "summary": up_result.summary.message if up_result.summary else None
            }
            _emit_json(result)
        else:
            console.print("\n🎉 Deployment successful!", style="bold green")
            console.print(f"🏦 Account: {account_id}")
            if outputs:
                _print_outputs(outputs, "Stack Outputs")

        sys.exit(ExitCodes.SUCCESS)

    except KeyboardInterrupt:
        logger.warning("Deployment interrupted by user")
        sys.exit(ExitCodes.GENERAL_ERROR)
    except Exception as e:
        logger.error(f"Unexpected error: {e}")
        if logger.level == logging.DEBUG:
            import traceback
            traceback.print_exc()
        sys.exit(ExitCodes.GENERAL_ERROR)


@cli.command()
@account_id_option
@stack_name_option
@click.option(
    "--auto-approve",
    is_flag=True,
    envvar="GH_OIDC_AUTO_APPROVE",
    help="Automatically approve destruction without confirmation (env: GH_OIDC_AUTO_APPROVE)"
)
@click.pass_context
def destroy(ctx, account_id: str, stack_name: str, auto_approve: bool):
    """Destroy the deployed OIDC provider, role and policy for an account."""
    logger = ctx.obj["logger"]
    json_output = ctx.obj["json_output"]

    account_stack_name = f"{stack_name}-{account_id}"

    try:
        pulumi_manager = PulumiStackManager(stack_name=account_stack_name)

        stack_info = pulumi_manager.get_stack_info()
        if not stack_info:
            if json_output:
                _emit_json({
                    "status": "error",
                    "message": "Stack not found",
                    "account_id": account_id,
                    "stack_name": account_stack_name
                })
            else:
                console.print(f"❌ Stack '{account_stack_name}' not found", style="red")
                console.print(f"💡 No resources deployed for account {account_id}", style="blue")
            sys.exit(ExitCodes.CONFIG_ERROR)

        if not auto_approve and not json_output:
            console.print(f"⚠️  About to destroy stack: {account_stack_name}", style="bold red")
            console.print(f"🏦 Account: {account_id}")
            console.print("GitHub Actions will no longer be able to deploy to this account!")

            if not click.confirm("Are you sure you want to proceed?"):
                console.print("Destruction cancelled by user", style="yellow")
                sys.exit(ExitCodes.SUCCESS)

        if not json_output:
            console.print("🗑️  Destroying resources...", style="bold red")

        pulumi_manager.destroy()

        if json_output:
            _emit_json({
                "status": "success",
                "message": "Stack destroyed successfully",
                "account_id": account_id,
                "stack_name": account_stack_name
            })
        else:
            console.print("✅ Stack destroyed successfully!", style="green")

        sys.exit(ExitCodes.SUCCESS)

    except Exception as e:
        logger.error(f"Destroy failed: {e}")
        sys.exit(ExitCodes.GENERAL_ERROR)


@cli.command()
@account_id_option
@stack_name_option
@click.pass_context
def status(ctx, account_id: str, stack_name: str):
    """Show deployment status and outputs for an account."""
    logger = ctx.obj["logger"]
    json_output = ctx.obj["json_output"]

    account_stack_name = f"{stack_name}-{account_id}"

    try:
        pulumi_manager = PulumiStackManager(stack_name=account_stack_name)

        stack_info = pulumi_manager.get_stack_info()
        if not stack_info:
            if json_output:
                _emit_json({
                    "status": "not_found",
                    "account_id": account_id,
                    "stack_name": account_stack_name
                })
            else:
                console.print(f"❌ Stack '{account_stack_name}' not found", style="red")
                console.print(f"💡 No resources deployed for account {account_id}", style="blue")
            sys.exit(ExitCodes.CONFIG_ERROR)

        outputs = pulumi_manager.get_outputs()
        update_time = getattr(stack_info, 'end_time', None)

        if json_output:
            _emit_json({
                "status": "found",
                "account_id": account_id,
                "stack_name": account_stack_name,
                "outputs": {k: v.value for k, v in outputs.items()},
                "update_time": str(update_time) if update_time else None
            })
        else:
            console.print(f"📦 Stack: {account_stack_name}", style="bold")
            console.print(f"🏦 Account: {account_id}")
            console.print(f"🕐 Last Update: {update_time or 'Unknown'}")

            if outputs:
                _print_outputs(outputs, "Outputs")
            else:
                console.print("No outputs available")

        sys.exit(ExitCodes.SUCCESS)

    except Exception as e:
        logger.error(f"Status check failed: {e}")
        sys.exit(ExitCodes.GENERAL_ERROR)


@cli.command()
@account_id_option
@click.option(
    "--aws-region",
    required=True,
    envvar="AWS_REGION",
    help="AWS region the policy ARNs are rendered for (env: AWS_REGION)"
)
@config_option
@click.pass_context
def synth(ctx, account_id: str, aws_region: str, config_path: Optional[Path]):
    """Print the rendered trust and deploy policy documents without calling AWS."""
    logger = ctx.obj["logger"]
    stack_config = _load_config(config_path, logger)

    provider_arn = f"arn:aws:iam::{account_id}:oidc-provider/{stack_config.oidc_url_no_scheme}"
    documents = {
        "roleName": stack_config.role_name,
        "policyName": stack_config.policy_name,
        "trustPolicy": policy.generate_trust_policy(
            provider_arn,
            stack_config.oidc_url_no_scheme,
            stack_config.subject_claim,
            stack_config.audience
        ),
        "deployPolicy": policy.build_deploy_policy_document(stack_config, account_id, aws_region),
    }
    _emit_json(documents)
    sys.exit(ExitCodes.SUCCESS)


@cli.command()
@config_option
@click.option(
    "--strict",
    is_flag=True,
    help="Fail when the review finds statements broader than a single target"
)
@click.pass_context
def validate(ctx, config_path: Optional[Path], strict: bool):
    """Validate the stack configuration and review the policy scope."""
    logger = ctx.obj["logger"]
    json_output = ctx.obj["json_output"]

    stack_config = _load_config(config_path, logger)

    try:
        account_id = constants.PLACEHOLDER_ACCOUNT_ID
        region = constants.PLACEHOLDER_REGION
        provider_arn = f"arn:aws:iam::{account_id}:oidc-provider/{stack_config.oidc_url_no_scheme}"

        trust_doc = policy.generate_trust_policy(
            provider_arn,
            stack_config.oidc_url_no_scheme,
            stack_config.subject_claim,
            stack_config.audience
        )
        deploy_doc = policy.build_deploy_policy_document(stack_config, account_id, region)

        findings = [("trust", f) for f in policy.review_trust_scope(trust_doc)]
        findings += [("deploy", f) for f in policy.review_policy_scope(deploy_doc)]
        notes = policy.trust_notes(stack_config)
    except Exception as e:
        logger.error(f"Validation failed: {e}")
        sys.exit(ExitCodes.GENERAL_ERROR)

    if json_output:
        _emit_json({
            "status": "findings" if findings else "clean",
            "repository": stack_config.repository,
            "subject_claim": stack_config.subject_claim,
            "statements": len(deploy_doc["Statement"]),
            "findings": [
                {"document": doc, "statement": f.statement_index, "kind": f.kind, "detail": f.detail}
                for doc, f in findings
            ],
            "notes": notes,
        })
    else:
        console.print(f"🔍 Validating stack for {stack_config.repository}")
        console.print(f"🔗 Trusted subject: {stack_config.subject_claim}")
        console.print(f"✅ Deploy policy has {len(deploy_doc['Statement'])} statement(s)")
        for note in notes:
            console.print(f"ℹ️  Note: {note}", style="dim")

        if findings:
            table = Table(title="Scope review")
            table.add_column("Document", style="cyan")
            table.add_column("Statement", style="blue")
            table.add_column("Kind", style="yellow")
            table.add_column("Detail")
            for doc, f in findings:
                table.add_row(doc, str(f.statement_index), f.kind, f.detail)
            console.print(table)
        else:
            console.print("✅ No over-broad statements found", style="green")

    if findings and strict:
        if not json_output:
            console.print(f"\n❌ Scope review reported {len(findings)} finding(s)", style="red")
        sys.exit(ExitCodes.VALIDATION_ERROR)

    sys.exit(ExitCodes.SUCCESS)


if __name__ == "__main__":
    cli()
