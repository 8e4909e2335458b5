"""
Pulumi Automation API Manager
Handles programmatic Pulumi stack management and deployment
"""

import logging
import os
from pathlib import Path
from typing import Callable, Dict, Optional

from pulumi import automation as auto

from gh_oidc_deploy import constants, iam_resources
from gh_oidc_deploy.config_loader import StackConfig

logger = logging.getLogger(__name__)

# Plugin download progress and section headers carry no status
_NOISE_PREFIXES = ("Downloading", "Installing", "Diagnostics:", "diagnostic:")


class PulumiStackManager:
    """Manages Pulumi stack operations using the Automation API."""

    def __init__(self, project_name: str = constants.PROJECT_NAME,
                 stack_name: str = "dev",
                 aws_region: Optional[str] = None,
                 aws_profile: Optional[str] = None,
                 backend_url: Optional[str] = None,
                 assume_role_arn: Optional[str] = None,
                 external_id: Optional[str] = None):
        self.project_name = project_name
        self.stack_name = stack_name
        self.aws_region = aws_region
        self.aws_profile = aws_profile
        self.assume_role_arn = assume_role_arn
        self.external_id = external_id
        self.work_dir = Path.cwd()
        self._current_stack = None

        # Explicit URL wins over the environment; local file backend otherwise
        self.backend_url = backend_url or os.getenv("PULUMI_BACKEND_URL")
        if not self.backend_url:
            state_dir = self.work_dir / constants.STATE_DIR_NAME
            state_dir.mkdir(exist_ok=True)
            self.backend_url = f"file://{state_dir}"

    def _create_pulumi_program(self, config: StackConfig, account_id: str) -> Callable[[], dict]:
        """Create the Pulumi program function that defines all resources."""
        if not self.aws_region:
            raise ValueError("An AWS region is required to render the deploy policy ARNs")

        def pulumi_program():
            import pulumi_aws as aws

            provider_opts = {"region": self.aws_region}
            if self.aws_profile:
                provider_opts["profile"] = self.aws_profile
            if self.assume_role_arn:
                assume_role = {
                    "role_arn": self.assume_role_arn,
                    "session_name": f"{self.project_name}-{self.stack_name}",
                }
                if self.external_id:
                    assume_role["external_id"] = self.external_id
                provider_opts["assume_role"] = assume_role
                logger.info(f"Assuming role {self.assume_role_arn} for deployment")

            aws_provider = aws.Provider("aws-provider", **provider_opts)
            logger.info(f"Configured AWS provider for region {self.aws_region}")

            try:
                return iam_resources.create_gh_oidc_deploy_stack(
                    config, account_id, self.aws_region, aws_provider
                )
            except Exception as e:
                logger.error(f"Failed to define resources for {config.repository}: {e}")
                raise

        return pulumi_program

    def _get_stack_config(self) -> Dict[str, str]:
        """Get stack configuration."""
        config = {}

        # AWS configuration
        if self.aws_region:
            config["aws:region"] = self.aws_region
        if self.aws_profile:
            config["aws:profile"] = self.aws_profile

        return config

    def _create_workspace_settings(self) -> auto.LocalWorkspaceOptions:
        """Create workspace settings for the configured backend."""
        return auto.LocalWorkspaceOptions(
            work_dir=str(self.work_dir),
            env_vars={
                "PULUMI_BACKEND_URL": self.backend_url,
                "PULUMI_SKIP_UPDATE_CHECK": "true",
                # Local file backends encrypt secrets with a passphrase
                "PULUMI_CONFIG_PASSPHRASE": os.getenv("PULUMI_CONFIG_PASSPHRASE", "dev-passphrase-123"),
            }
        )

    def _select_stack(self, program: Callable) -> auto.Stack:
        """Create or select the stack and apply its configuration."""
        stack = auto.create_or_select_stack(
            stack_name=self.stack_name,
            project_name=self.project_name,
            program=program,
            opts=self._create_workspace_settings()
        )
        for key, value in self._get_stack_config().items():
            stack.set_config(key, auto.ConfigValue(value=value))
        return stack

    def preview_deployment(self, config: StackConfig, account_id: str) -> auto.PreviewResult:
        """Preview the deployment without making changes."""
        logger.info("Creating deployment preview...")

        try:
            stack = self._select_stack(self._create_pulumi_program(config, account_id))

            logger.info("Refreshing stack state...")
            stack.refresh(on_output=self._output_handler)

            logger.info("Generating preview...")
            return stack.preview(on_output=self._output_handler)

        except Exception as e:
            logger.error(f"Failed to create preview: {e}")
            raise

    def deploy(self, config: StackConfig, account_id: str) -> auto.UpResult:
        """Deploy the resources to AWS."""
        logger.info("Starting deployment...")

        try:
            stack = self._select_stack(self._create_pulumi_program(config, account_id))

            logger.info("Refreshing stack state...")
            stack.refresh(on_output=self._output_handler)

            logger.info("Applying changes...")
            up_result = stack.up(on_output=self._output_handler)

            logger.info("Deployment completed successfully!")
            self._current_stack = stack

            return up_result

        except Exception as e:
            logger.error(f"Deployment failed: {e}")
            raise

    def destroy(self) -> auto.DestroyResult:
        """Destroy all resources in the stack."""
        logger.warning("Starting resource destruction...")

        try:
            stack = self._select_stack(_empty_program)
            destroy_result = stack.destroy(on_output=self._output_handler)

            logger.info("Resources destroyed successfully!")
            return destroy_result

        except Exception as e:
            logger.error(f"Destruction failed: {e}")
            raise

    def get_outputs(self) -> Dict[str, auto.OutputValue]:
        """Get stack outputs."""
        # Use stored stack from recent deployment if available
        if self._current_stack:
            try:
                return self._current_stack.outputs()
            except Exception as e:
                logger.debug(f"Failed to get outputs from current stack: {e}")

        try:
            return self._select_stack(_empty_program).outputs()
        except Exception as e:
            logger.error(f"Failed to get outputs: {e}")
            raise

    def get_stack_info(self) -> Optional[auto.UpdateSummary]:
        """Get the summary of the stack's latest update, None if the stack is missing."""
        try:
            return self._select_stack(_empty_program).info()
        except Exception as e:
            logger.debug(f"Stack not found or error getting info: {e}")
            return None

    def _output_handler(self, output: str) -> None:
        """Route Automation API output lines to the module logger by severity."""
        line = output.strip()
        if not line or line.startswith(_NOISE_PREFIXES):
            return

        lowered = line.lower()
        if "error:" in lowered or "failed" in lowered:
            logger.error(f"Pulumi: {line}")
        elif lowered.startswith("warning:"):
            logger.warning(f"Pulumi: {line}")
        else:
            logger.debug(f"Pulumi: {line}")


def _empty_program():
    """Program used when only the stack's state is needed."""
    pass
