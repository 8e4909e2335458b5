"""
GitHub OIDC Deploy - federated CI deploy access for AWS

This package declares the GitHub Actions OIDC provider, the role it may
assume and the role's CDK deploy policy, and manages them with the Pulumi
Automation API.
"""

__version__ = "1.0.0"

# Core components
from . import config_loader
from . import constants
from . import policy
from . import iam_resources
from . import pulumi_manager

__all__ = [
    "config_loader",
    "constants",
    "policy",
    "iam_resources",
    "pulumi_manager",
]
