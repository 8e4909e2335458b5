import os
import json
import logging

from gh_oidc_deploy import constants

logger = logging.getLogger(__name__)

# JSON key -> StackConfig attribute
_FIELD_MAP = {
    "githubOwner": "github_owner",
    "githubRepo": "github_repo",
    "branch": "branch",
    "cdkQualifier": "cdk_qualifier",
    "bucketName": "bucket_name",
    "distributionId": "distribution_id",
    "roleName": "role_name",
    "policyName": "policy_name",
    "oidcProviderUrl": "oidc_provider_url",
    "audience": "audience",
}


class ConfigError(Exception):
    """Custom exception for configuration loading errors."""
    pass


class StackConfig:
    """The literal values the deploy stack is declared from."""
    def __init__(self, github_owner: str = constants.GITHUB_OWNER,
                 github_repo: str = constants.GITHUB_REPO,
                 branch: str = constants.GITHUB_BRANCH,
                 cdk_qualifier: str = constants.CDK_QUALIFIER,
                 bucket_name: str = constants.S3_BUCKET_NAME,
                 distribution_id: str = constants.CLOUDFRONT_DISTRIBUTION_ID,
                 role_name: str = constants.ROLE_NAME,
                 policy_name: str = constants.POLICY_NAME,
                 oidc_provider_url: str = constants.GITHUB_OIDC_PROVIDER_URL,
                 audience: str = constants.DEFAULT_AUDIENCE,
                 tags: dict | None = None,
                 source: str | None = None):
        self.github_owner = github_owner
        self.github_repo = github_repo
        self.branch = branch
        self.cdk_qualifier = cdk_qualifier
        self.bucket_name = bucket_name
        self.distribution_id = distribution_id
        self.role_name = role_name
        self.policy_name = policy_name
        self.oidc_provider_url = oidc_provider_url
        self.audience = audience
        self.tags = dict(tags) if tags else {}
        self.source = source # Config file path, None for the built-in literals

    @property
    def repository(self) -> str:
        return f"{self.github_owner}/{self.github_repo}"

    @property
    def subject_claim(self) -> str:
        # Pins assumption to a single branch ref; no wildcard
        return f"repo:{self.repository}:ref:refs/heads/{self.branch}"

    @property
    def oidc_url_no_scheme(self) -> str:
        if self.oidc_provider_url.startswith("https://"):
            return self.oidc_provider_url[len("https://"):]
        return self.oidc_provider_url

    def __eq__(self, other):
        if not isinstance(other, StackConfig):
            return NotImplemented
        return vars(self) == vars(other)

    def __str__(self):
        return f"StackConfig(repository={self.repository}, branch={self.branch}, role={self.role_name})"


def _load_json_file(file_path: str) -> dict:
    """Helper to load and validate a JSON object file."""
    if not os.path.exists(file_path):
        raise ConfigError(f"Required config file not found: {file_path}")
    try:
        with open(file_path, 'r', encoding='utf-8') as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigError(f"Error decoding JSON from {file_path}: {e}")
    except UnicodeDecodeError as e:
        raise ConfigError(f"Config file {file_path} is not valid UTF-8: {e}")
    except OSError as e:
        raise ConfigError(f"Error reading file {file_path}: {e}")
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {file_path} is not a valid JSON object.")
    logger.debug(f"Successfully loaded config file: {file_path}")
    return data


def _validate_overrides(data: dict, file_path: str) -> dict:
    """Maps JSON keys onto StackConfig keyword arguments, rejecting bad values."""
    kwargs = {}
    for key, value in data.items():
        if key == "tags":
            if not isinstance(value, dict):
                raise ConfigError(f"'tags' in '{file_path}' must be a JSON object.")
            bad_tags = [k for k, v in value.items() if not isinstance(v, str)]
            if bad_tags:
                raise ConfigError(f"Tag values in '{file_path}' must be strings: {bad_tags}")
            kwargs["tags"] = value
            continue
        if key not in _FIELD_MAP:
            logger.warning(f"Ignoring unknown config key '{key}' in '{file_path}'.")
            continue
        if not isinstance(value, str):
            raise ConfigError(f"Field '{key}' in '{file_path}' must be a string.")
        if not value.strip():
            raise ConfigError(f"Field '{key}' in '{file_path}' must not be empty.")
        kwargs[_FIELD_MAP[key]] = value
    return kwargs


def load_stack_config(config_path: str | None = None) -> StackConfig:
    """Loads the stack configuration, overriding the built-in literals from a JSON file if given."""
    if not config_path:
        logger.debug("No config file given, using built-in stack literals.")
        return StackConfig()

    logger.info(f"Loading stack configuration from '{config_path}'.")
    data = _load_json_file(config_path)
    kwargs = _validate_overrides(data, config_path)
    config = StackConfig(source=config_path, **kwargs)
    logger.info(f"Loaded configuration: {config}")
    return config
