"""
Tests for pulumi_manager module
"""

import pytest
import os
from pathlib import Path
from unittest.mock import patch, MagicMock, call, ANY

from gh_oidc_deploy.config_loader import StackConfig
from gh_oidc_deploy.pulumi_manager import PulumiStackManager

ACCOUNT_ID = "123456789012"


@pytest.fixture(autouse=True)
def isolated_cwd(tmp_path, monkeypatch):
    """Keep the local state directory out of the source tree."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("PULUMI_BACKEND_URL", raising=False)
    return tmp_path


@pytest.mark.unit
class TestPulumiStackManagerInit:
    """Test cases for PulumiStackManager initialization."""

    def test_init_with_defaults(self, isolated_cwd):
        """Test initialization with default parameters."""
        manager = PulumiStackManager()

        assert manager.project_name == "gh-oidc-deploy"
        assert manager.stack_name == "dev"
        assert manager.aws_region is None
        assert manager.aws_profile is None
        assert manager.assume_role_arn is None
        assert manager.external_id is None
        assert manager.work_dir == Path.cwd()
        assert manager.backend_url == f"file://{Path.cwd() / '.pulumi-state'}"
        assert (isolated_cwd / '.pulumi-state').is_dir()

    def test_init_with_custom_parameters(self):
        """Test initialization with custom parameters."""
        manager = PulumiStackManager(
            project_name="custom-project",
            stack_name="production",
            aws_region="us-east-1",
            aws_profile="my-profile",
            backend_url="s3://my-bucket/pulumi-state",
            assume_role_arn="arn:aws:iam::123456789012:role/CrossAccountRole",
            external_id="unique-external-id"
        )

        assert manager.project_name == "custom-project"
        assert manager.stack_name == "production"
        assert manager.aws_region == "us-east-1"
        assert manager.aws_profile == "my-profile"
        assert manager.backend_url == "s3://my-bucket/pulumi-state"
        assert manager.assume_role_arn == "arn:aws:iam::123456789012:role/CrossAccountRole"
        assert manager.external_id == "unique-external-id"

    @pytest.mark.backend
    def test_init_with_environment_backend_url(self, monkeypatch):
        """Test initialization with backend URL from environment variable."""
        monkeypatch.setenv("PULUMI_BACKEND_URL", "s3://env-bucket/state")
        manager = PulumiStackManager()
        assert manager.backend_url == "s3://env-bucket/state"

    @pytest.mark.backend
    def test_init_explicit_backend_url_overrides_env(self, monkeypatch):
        """Test that explicit backend URL parameter overrides environment variable."""
        monkeypatch.setenv("PULUMI_BACKEND_URL", "s3://env-bucket/state")
        manager = PulumiStackManager(backend_url="s3://explicit-bucket/state")
        assert manager.backend_url == "s3://explicit-bucket/state"

    @pytest.mark.backend
    def test_init_does_not_create_directory_for_remote_backend(self, isolated_cwd):
        """Test that initialization doesn't create directory for remote backends."""
        PulumiStackManager(backend_url="s3://my-bucket/state")
        assert not (isolated_cwd / '.pulumi-state').exists()


@pytest.mark.unit
class TestCreatePulumiProgram:
    """Test cases for _create_pulumi_program method."""

    def setup_method(self):
        self.config = StackConfig()

    def test_region_required(self):
        manager = PulumiStackManager()
        with pytest.raises(ValueError, match="AWS region is required"):
            manager._create_pulumi_program(self.config, ACCOUNT_ID)

    @patch('gh_oidc_deploy.pulumi_manager.iam_resources.create_gh_oidc_deploy_stack')
    def test_program_with_region_and_profile(self, mock_create_stack):
        """Test Pulumi program builds a provider and declares the stack."""
        manager = PulumiStackManager(aws_region="us-west-2", aws_profile="my-profile")
        mock_create_stack.return_value = {"role": MagicMock()}

        with patch('pulumi_aws.Provider') as mock_provider_class:
            mock_provider = MagicMock()
            mock_provider_class.return_value = mock_provider

            program = manager._create_pulumi_program(self.config, ACCOUNT_ID)
            result = program()

            mock_provider_class.assert_called_once_with(
                "aws-provider",
                region="us-west-2",
                profile="my-profile"
            )
            mock_create_stack.assert_called_once_with(self.config, ACCOUNT_ID, "us-west-2", mock_provider)
            assert result == mock_create_stack.return_value

    @pytest.mark.cross_account
    @patch('gh_oidc_deploy.pulumi_manager.iam_resources.create_gh_oidc_deploy_stack')
    def test_program_with_cross_account_role_assumption(self, mock_create_stack):
        """Test Pulumi program creation with cross-account role assumption."""
        manager = PulumiStackManager(
            stack_name="dev-123456789012",
            aws_region="us-west-2",
            assume_role_arn="arn:aws:iam::123456789012:role/CrossAccountRole",
            external_id="unique-external-id"
        )

        with patch('pulumi_aws.Provider') as mock_provider_class:
            manager._create_pulumi_program(self.config, ACCOUNT_ID)()

            mock_provider_class.assert_called_once_with(
                "aws-provider",
                region="us-west-2",
                assume_role={
                    "role_arn": "arn:aws:iam::123456789012:role/CrossAccountRole",
                    "session_name": "gh-oidc-deploy-dev-123456789012",
                    "external_id": "unique-external-id"
                }
            )

    @pytest.mark.cross_account
    @patch('gh_oidc_deploy.pulumi_manager.iam_resources.create_gh_oidc_deploy_stack')
    def test_program_with_role_assumption_no_external_id(self, mock_create_stack):
        """Test role assumption without an external ID."""
        manager = PulumiStackManager(
            aws_region="us-west-2",
            assume_role_arn="arn:aws:iam::123456789012:role/CrossAccountRole"
        )

        with patch('pulumi_aws.Provider') as mock_provider_class:
            manager._create_pulumi_program(self.config, ACCOUNT_ID)()

            assume_role = mock_provider_class.call_args[1]["assume_role"]
            assert "external_id" not in assume_role

    @patch('gh_oidc_deploy.pulumi_manager.iam_resources.create_gh_oidc_deploy_stack')
    def test_program_propagates_definition_errors(self, mock_create_stack):
        """Test Pulumi program re-raises resource definition errors."""
        manager = PulumiStackManager(aws_region="us-west-2")
        mock_create_stack.side_effect = Exception("Role creation failed")

        with patch('pulumi_aws.Provider'):
            program = manager._create_pulumi_program(self.config, ACCOUNT_ID)
            with pytest.raises(Exception, match="Role creation failed"):
                program()


@pytest.mark.unit
class TestGetStackConfig:
    """Test cases for _get_stack_config method."""

    def test_get_stack_config_empty(self):
        assert PulumiStackManager()._get_stack_config() == {}

    def test_get_stack_config_with_both(self):
        manager = PulumiStackManager(aws_region="us-west-2", aws_profile="my-profile")
        assert manager._get_stack_config() == {
            "aws:region": "us-west-2",
            "aws:profile": "my-profile"
        }


@pytest.mark.unit
@pytest.mark.backend
class TestCreateWorkspaceSettings:
    """Test cases for _create_workspace_settings method."""

    def test_create_workspace_settings(self, isolated_cwd):
        manager = PulumiStackManager()
        settings = manager._create_workspace_settings()

        assert settings.work_dir == str(Path.cwd())
        assert settings.env_vars["PULUMI_BACKEND_URL"] == manager.backend_url
        assert settings.env_vars["PULUMI_SKIP_UPDATE_CHECK"] == "true"
        assert "PULUMI_CONFIG_PASSPHRASE" in settings.env_vars

    @patch.dict(os.environ, {'PULUMI_CONFIG_PASSPHRASE': 'existing-passphrase'})
    def test_create_workspace_settings_with_existing_passphrase(self):
        settings = PulumiStackManager()._create_workspace_settings()
        assert settings.env_vars["PULUMI_CONFIG_PASSPHRASE"] == "existing-passphrase"


@pytest.mark.integration
@patch('gh_oidc_deploy.pulumi_manager.auto.create_or_select_stack')
class TestStackOperations:
    """Test cases for the Automation API operations."""

    def setup_method(self):
        self.config = StackConfig()

    def test_preview_deployment_success(self, mock_create_stack):
        manager = PulumiStackManager(aws_region="us-west-2", aws_profile="my-profile")
        mock_stack = MagicMock()
        mock_create_stack.return_value = mock_stack

        result = manager.preview_deployment(self.config, ACCOUNT_ID)

        mock_create_stack.assert_called_once_with(
            stack_name="dev",
            project_name="gh-oidc-deploy",
            program=ANY,
            opts=ANY
        )
        mock_stack.set_config.assert_has_calls([
            call("aws:region", ANY),
            call("aws:profile", ANY)
        ], any_order=True)
        mock_stack.refresh.assert_called_once()
        mock_stack.preview.assert_called_once()
        mock_stack.up.assert_not_called()
        assert result == mock_stack.preview.return_value

    def test_preview_deployment_error(self, mock_create_stack):
        mock_create_stack.side_effect = Exception("Preview failed")
        manager = PulumiStackManager(aws_region="us-west-2")

        with pytest.raises(Exception, match="Preview failed"):
            manager.preview_deployment(self.config, ACCOUNT_ID)

    def test_deploy_success(self, mock_create_stack):
        manager = PulumiStackManager(aws_region="us-west-2")
        mock_stack = MagicMock()
        mock_create_stack.return_value = mock_stack

        result = manager.deploy(self.config, ACCOUNT_ID)

        mock_stack.refresh.assert_called_once()
        mock_stack.up.assert_called_once()
        assert result == mock_stack.up.return_value
        # Outputs come from the deployed stack without reselecting
        manager.get_outputs()
        mock_stack.outputs.assert_called_once()
        assert mock_create_stack.call_count == 1

    def test_deploy_error(self, mock_create_stack):
        mock_stack = MagicMock()
        mock_stack.up.side_effect = Exception("Deployment failed")
        mock_create_stack.return_value = mock_stack

        with pytest.raises(Exception, match="Deployment failed"):
            PulumiStackManager(aws_region="us-west-2").deploy(self.config, ACCOUNT_ID)

    def test_destroy(self, mock_create_stack):
        mock_stack = MagicMock()
        mock_create_stack.return_value = mock_stack

        result = PulumiStackManager().destroy()

        mock_stack.destroy.assert_called_once()
        assert result == mock_stack.destroy.return_value

    def test_destroy_error(self, mock_create_stack):
        mock_create_stack.side_effect = Exception("Destroy failed")
        with pytest.raises(Exception, match="Destroy failed"):
            PulumiStackManager().destroy()

    def test_get_outputs_selects_stack(self, mock_create_stack):
        mock_stack = MagicMock()
        mock_stack.outputs.return_value = {"role_arn": MagicMock()}
        mock_create_stack.return_value = mock_stack

        outputs = PulumiStackManager().get_outputs()

        assert outputs == mock_stack.outputs.return_value

    def test_get_stack_info(self, mock_create_stack):
        mock_stack = MagicMock()
        mock_create_stack.return_value = mock_stack

        assert PulumiStackManager().get_stack_info() == mock_stack.info.return_value

    def test_get_stack_info_returns_none_on_error(self, mock_create_stack):
        mock_create_stack.side_effect = Exception("no stack")
        assert PulumiStackManager().get_stack_info() is None


@pytest.mark.unit
class TestOutputHandler:
    """Test cases for _output_handler method."""

    def setup_method(self):
        self.manager = PulumiStackManager(backend_url="s3://bucket/state")

    @patch('gh_oidc_deploy.pulumi_manager.logger')
    def test_noise_filtered(self, mock_logger):
        self.manager._output_handler("Downloading plugin aws")
        mock_logger.error.assert_not_called()
        mock_logger.warning.assert_not_called()
        mock_logger.debug.assert_not_called()

    @patch('gh_oidc_deploy.pulumi_manager.logger')
    def test_errors_logged_as_errors(self, mock_logger):
        self.manager._output_handler("error: creating IAM Role failed\n")
        mock_logger.error.assert_called_once_with("Pulumi: error: creating IAM Role failed")

    @patch('gh_oidc_deploy.pulumi_manager.logger')
    def test_warnings_logged_as_warnings(self, mock_logger):
        self.manager._output_handler("warning: deprecated argument")
        mock_logger.warning.assert_called_once_with("Pulumi: warning: deprecated argument")

    @patch('gh_oidc_deploy.pulumi_manager.logger')
    def test_other_output_logged_at_debug(self, mock_logger):
        self.manager._output_handler("  + aws:iam:Role GitHubOidcRole create")
        mock_logger.debug.assert_called_once_with("Pulumi: + aws:iam:Role GitHubOidcRole create")

    @pytest.mark.parametrize("line, level", [
        ("Updating (dev-123456789012)\n", "debug"),
        ("    + aws:iam:OpenIdConnectProvider github-oidc-provider creating (0s) \n", "debug"),
        ("    + aws:iam:RolePolicy cdk-deploy-policy created (1s) \n", "debug"),
        ("Resources:\n", "debug"),
        ("    error: 1 error occurred:\n", "error"),
        (" +  aws:iam:Role github-oidc-role **creating failed** 1 error\n", "error"),
        ("warning: A new version of Pulumi is available. To upgrade from version '3.100.0' to '3.130.0', run \n", "warning"),
        ("    Warning: Deprecated argument\n", "warning"),
        ("Downloading plugin: 15.21 MiB / 188.43 MiB [==>------] 7.94%\n", None),
        ("Installing plugin aws-6.18.0\n", None),
        ("Diagnostics:\n", None),
        ("\n", None),
    ])
    def test_pulumi_lines_routed_by_severity(self, line, level):
        with patch('gh_oidc_deploy.pulumi_manager.logger') as mock_logger:
            self.manager._output_handler(line)

        for name in ("error", "warning", "debug"):
            method = getattr(mock_logger, name)
            if name == level:
                method.assert_called_once_with(f"Pulumi: {line.strip()}")
            else:
                method.assert_not_called()
