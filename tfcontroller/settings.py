"""
Controller Settings - Configuration management using Pydantic Settings.

Loads configuration from environment variables and .env files.
"""

import json
import logging
from pathlib import Path
from typing import Dict

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

# Find project root (where .env file is located)
PROJECT_ROOT = Path(__file__).parent.parent


class ControllerSettings(BaseSettings):
    """
    Terraform controller configuration settings.

    Settings are loaded from:
    1. Environment variables (highest priority)
    2. .env file in current directory
    3. Default values (lowest priority)

    Controller-specific knobs use the TFC_ prefix; the environment-style inputs
    shared with the executor images keep their historical unprefixed names.
    """

    model_config = SettingsConfigDict(
        env_file=str(PROJECT_ROOT / ".env"),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        env_prefix="TFC_",
        populate_by_name=True,
    )

    # Backend Configuration
    terraform_backend_namespace: str = Field(
        default="vela-system",
        description="Namespace of the default Kubernetes state backend (env: TERRAFORM_BACKEND_NAMESPACE)",
        validation_alias=AliasChoices("TERRAFORM_BACKEND_NAMESPACE", "TFC_TERRAFORM_BACKEND_NAMESPACE"),
    )

    controller_namespace: str = Field(
        default="",
        description="Shared namespace for Jobs, ConfigMaps and Secrets (env: CONTROLLER_NAMESPACE)",
        validation_alias=AliasChoices("CONTROLLER_NAMESPACE", "TFC_CONTROLLER_NAMESPACE"),
    )

    # Job Configuration
    job_node_selector: str = Field(
        default="",
        description="JSON object used as the node selector of executor Jobs (env: JOB_NODE_SELECTOR)",
        validation_alias=AliasChoices("JOB_NODE_SELECTOR", "TFC_JOB_NODE_SELECTOR"),
    )

    github_blocked: str = Field(
        default="false",
        description="Mirror GitHub sources to Gitee when GitHub is unreachable (env: GITHUB_BLOCKED)",
        validation_alias=AliasChoices("GITHUB_BLOCKED", "TFC_GITHUB_BLOCKED"),
    )

    terraform_image: str = Field(
        default="oamdev/docker-terraform:1.1.2",
        description="Image that runs terraform init/apply/destroy (env: TERRAFORM_IMAGE)",
        validation_alias=AliasChoices("TERRAFORM_IMAGE", "TFC_TERRAFORM_IMAGE"),
    )

    busybox_image: str = Field(
        default="busybox:latest",
        description="Image that stages the input configuration (env: BUSYBOX_IMAGE)",
        validation_alias=AliasChoices("BUSYBOX_IMAGE", "TFC_BUSYBOX_IMAGE"),
    )

    git_image: str = Field(
        default="alpine/git:latest",
        description="Image that clones remote configurations (env: GIT_IMAGE)",
        validation_alias=AliasChoices("GIT_IMAGE", "TFC_GIT_IMAGE"),
    )

    job_backoff_limit: int = Field(
        default=2,
        description="Retries of the apply Job before it is marked failed (env: JOB_BACKOFF_LIMIT)",
        validation_alias=AliasChoices("JOB_BACKOFF_LIMIT", "TFC_JOB_BACKOFF_LIMIT"),
    )

    # Resource Quota Configuration
    resources_limits_cpu: str = Field(
        default="",
        validation_alias=AliasChoices("RESOURCES_LIMITS_CPU", "TFC_RESOURCES_LIMITS_CPU"),
        description="CPU limit of the Terraform executor container (env: RESOURCES_LIMITS_CPU)",
    )
    resources_limits_memory: str = Field(
        default="",
        validation_alias=AliasChoices("RESOURCES_LIMITS_MEMORY", "TFC_RESOURCES_LIMITS_MEMORY"),
        description="Memory limit of the Terraform executor container (env: RESOURCES_LIMITS_MEMORY)",
    )
    resources_requests_cpu: str = Field(
        default="",
        validation_alias=AliasChoices("RESOURCES_REQUESTS_CPU", "TFC_RESOURCES_REQUESTS_CPU"),
        description="CPU request of the Terraform executor container (env: RESOURCES_REQUESTS_CPU)",
    )
    resources_requests_memory: str = Field(
        default="",
        validation_alias=AliasChoices("RESOURCES_REQUESTS_MEMORY", "TFC_RESOURCES_REQUESTS_MEMORY"),
        description="Memory request of the Terraform executor container (env: RESOURCES_REQUESTS_MEMORY)",
    )

    # Scheduling Configuration
    requeue_seconds: float = Field(
        default=3.0,
        description="Fixed delay before re-checking a configuration (env: TFC_REQUEUE_SECONDS)",
    )

    sync_interval_seconds: float = Field(
        default=30.0,
        description="Interval between two full passes of the reconcile loop (env: TFC_SYNC_INTERVAL_SECONDS)",
    )

    max_parallel_reconciles: int = Field(
        default=4,
        description="Configurations reconciled in parallel by the loop (env: TFC_MAX_PARALLEL_RECONCILES)",
    )

    kubeconfig: str | None = Field(
        default=None,
        description="Path to a kubeconfig file; in-cluster config is used when unset (env: KUBECONFIG)",
        validation_alias=AliasChoices("KUBECONFIG", "TFC_KUBECONFIG"),
    )

    # Logging Configuration
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR) (env: TFC_LOG_LEVEL)",
    )

    def node_selector(self) -> Dict[str, str]:
        """
        Parse the Job node selector.

        Returns:
            Mapping of node labels, empty when unset or not a JSON object
        """
        if not self.job_node_selector:
            return {}
        try:
            selector = json.loads(self.job_node_selector)
        except json.JSONDecodeError as e:
            logger.warning(f"The value of JOB_NODE_SELECTOR is not a json string: {e}")
            return {}
        if not isinstance(selector, dict):
            logger.warning("The value of JOB_NODE_SELECTOR is not a json object")
            return {}
        return {str(k): str(v) for k, v in selector.items()}


# Global settings instance
_settings: ControllerSettings | None = None


def get_settings() -> ControllerSettings:
    """
    Get the global settings instance.

    Creates the settings instance on first call, then returns cached instance.

    Returns:
        ControllerSettings instance
    """
    global _settings
    if _settings is None:
        _settings = ControllerSettings()
    return _settings


def reload_settings() -> ControllerSettings:
    """
    Reload settings from environment/files.

    Useful for testing or when .env file changes.

    Returns:
        Fresh ControllerSettings instance
    """
    global _settings
    _settings = ControllerSettings()
    return _settings
