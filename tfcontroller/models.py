"""
Centralized Pydantic models for the Terraform controller.

This module contains the data models shared by the controller:
- Configuration custom resource (spec, status, metadata)
- Backend declarations (inline, kubernetes, s3)
- Provider custom resource used to look up credentials
- State machine enums and the Terraform state document
"""

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .errors import ConfigurationError


# =============================================================================
# Core Enums
# =============================================================================

class ConfigurationState(str, Enum):
    """States of the apply and destroy life-cycles."""
    VALIDATING = "Validating"
    PROVISIONING = "Provisioning"
    AVAILABLE = "Available"
    UNAVAILABLE = "Unavailable"
    GENERATING_OUTPUTS = "GeneratingOutputs"
    DESTROY_PENDING = "DestroyPending"
    DESTROYED = "Destroyed"


class ExecutionType(str, Enum):
    """Direction of a Terraform execution Job."""
    APPLY = "apply"
    DESTROY = "destroy"


class ConfigurationType(str, Enum):
    """Where the Terraform code of a Configuration comes from."""
    HCL = "HCL"
    REMOTE = "Remote"


# =============================================================================
# Constants
# =============================================================================

CONFIGURATION_GROUP = "terraform.core.oam.dev"
CONFIGURATION_VERSION = "v1beta2"
CONFIGURATION_PLURAL = "configurations"
PROVIDER_VERSION = "v1beta1"
PROVIDER_PLURAL = "providers"

CONFIGURATION_FINALIZER = "configuration.finalizers.terraform-controller"

DEFAULT_NAMESPACE = "default"
DEFAULT_PROVIDER_NAME = "default"

TF_INPUT_CONFIGMAP_NAME = "tf-{}"
TF_VARIABLE_SECRET_NAME = "variable-{}"
TERRAFORM_HCL_CONFIGURATION_NAME = "main.tf"
TERRAFORM_REMOTE_BACKEND_NAME = "terraform-backend.tf"

LABEL_CREATED_BY = "terraform.core.oam.dev/created-by"
LABEL_OWNED_BY = "terraform.core.oam.dev/owned-by"
LABEL_OWNED_NAMESPACE = "terraform.core.oam.dev/owned-namespace"
CREATED_BY_VALUE = "terraform-controller"

MESSAGE_VALIDATING = "Configuration is being validated"
MESSAGE_PROVISIONING = "Cloud resources are being provisioned and provisioning status is checking..."
MESSAGE_DEPLOYED = "Cloud resources are deployed and ready to use"
MESSAGE_DESTROYING = "Cloud resources are being destroyed..."
MESSAGE_DESTROYED = "Cloud resources are destroyed"
MESSAGE_RELOADING_HCL = "Configuration's HCL has changed, and starts reloading"
MESSAGE_RELOADING_VARIABLE = "Configuration's variable has changed, and starts reloading"
ERR_GENERATE_OUTPUTS = "Hit an issue to generate outputs"


class _CamelModel(BaseModel):
    """Base for models read from API server JSON."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


# =============================================================================
# Object References
# =============================================================================

class SecretReference(_CamelModel):
    """Reference to a Secret or ConfigMap by name and namespace."""
    name: str = ""
    namespace: str = ""


class SecretKeyReference(SecretReference):
    """Reference to one key of a Secret."""
    key: str = ""


class Reference(_CamelModel):
    """Reference to a Provider."""
    name: str = ""
    namespace: str = ""


class GitRef(_CamelModel):
    """Git reference to check out; commit wins over tag, tag over branch."""
    branch: str = ""
    tag: str = ""
    commit: str = ""

    def checkout_object(self) -> str:
        """Return the object `git checkout` should use."""
        return self.commit or self.tag or self.branch


# =============================================================================
# Backend Declarations
# =============================================================================

class KubernetesBackendConf(_CamelModel):
    """Options of the Terraform `kubernetes` backend type."""
    secret_suffix: str = ""
    namespace: Optional[str] = None


class S3BackendConf(_CamelModel):
    """Options of the Terraform `s3` backend type."""
    region: Optional[str] = None
    bucket: str = ""
    key: str = ""


class Backend(_CamelModel):
    """Terraform backend declaration of a Configuration."""
    secret_suffix: str = Field(default="", alias="secretSuffix")
    in_cluster_config: bool = Field(default=False, alias="inClusterConfig")
    inline: str = ""
    backend_type: str = Field(default="", alias="backendType")
    kubernetes: Optional[KubernetesBackendConf] = None
    s3: Optional[S3BackendConf] = None


# =============================================================================
# Configuration
# =============================================================================

class ObjectMeta(_CamelModel):
    """The subset of Kubernetes object metadata the controller relies on."""
    name: str
    namespace: str = DEFAULT_NAMESPACE
    uid: str = ""
    generation: int = 0
    resource_version: str = Field(default="", alias="resourceVersion")
    deletion_timestamp: Optional[str] = Field(default=None, alias="deletionTimestamp")
    finalizers: List[str] = Field(default_factory=list)
    labels: Dict[str, str] = Field(default_factory=dict)


class ConfigurationSpec(_CamelModel):
    """Desired state of a Configuration."""
    hcl: str = ""
    remote: str = ""
    path: str = ""
    git_ref: GitRef = Field(default_factory=GitRef, alias="gitRef")
    variable: Optional[Dict[str, Any]] = None
    backend: Optional[Backend] = None
    write_connection_secret_to_reference: Optional[SecretReference] = Field(
        default=None, alias="writeConnectionSecretToRef"
    )
    provider_reference: Optional[Reference] = Field(default=None, alias="providerRef")
    job_env: Optional[Dict[str, Any]] = Field(default=None, alias="jobEnv")
    inline_credentials: bool = Field(default=False, alias="inlineCredentials")
    delete_resource: bool = Field(default=True, alias="deleteResource")
    force_delete: bool = Field(default=False, alias="forceDelete")
    region: str = Field(default="", alias="customRegion")
    git_credentials_secret_reference: Optional[SecretReference] = Field(
        default=None, alias="gitCredentialsSecretReference"
    )
    terraform_credentials_secret_reference: Optional[SecretReference] = Field(
        default=None, alias="terraformCredentialsSecretReference"
    )
    terraform_rc_config_map_reference: Optional[SecretReference] = Field(
        default=None, alias="terraformRCConfigMapReference"
    )
    terraform_credentials_helper_config_map_reference: Optional[SecretReference] = Field(
        default=None, alias="terraformCredentialsHelperConfigMapReference"
    )


class Property(_CamelModel):
    """A published output value."""
    value: str = ""


class ConfigurationApplyStatus(_CamelModel):
    """Status of the apply life-cycle."""
    state: Optional[ConfigurationState] = None
    message: str = ""
    outputs: Dict[str, Property] = Field(default_factory=dict)
    region: str = ""


class ConfigurationDestroyStatus(_CamelModel):
    """Status of the destroy life-cycle."""
    state: Optional[ConfigurationState] = None
    message: str = ""


class ConfigurationStatus(_CamelModel):
    """Observed state of a Configuration."""
    observed_generation: int = Field(default=0, alias="observedGeneration")
    apply: ConfigurationApplyStatus = Field(default_factory=ConfigurationApplyStatus)
    destroy: ConfigurationDestroyStatus = Field(default_factory=ConfigurationDestroyStatus)


class Configuration(_CamelModel):
    """The Configuration custom resource."""
    metadata: ObjectMeta
    spec: ConfigurationSpec = Field(default_factory=ConfigurationSpec)
    status: ConfigurationStatus = Field(default_factory=ConfigurationStatus)

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> str:
        return self.metadata.namespace

    @property
    def is_deleting(self) -> bool:
        return self.metadata.deletion_timestamp is not None

    def configuration_type(self) -> ConfigurationType:
        """
        Determine where the Terraform code comes from.

        Raises:
            ConfigurationError: If neither or both of hcl and remote are set
        """
        if not self.spec.hcl and not self.spec.remote:
            raise ConfigurationError("spec.hcl or spec.remote should be set")
        if self.spec.hcl and self.spec.remote:
            raise ConfigurationError("spec.hcl and spec.remote cannot be set at the same time")
        if self.spec.hcl:
            return ConfigurationType.HCL
        return ConfigurationType.REMOTE

    def provider_namespaced_name(self) -> Reference:
        """Return the referenced Provider, defaulting to default/default."""
        ref = self.spec.provider_reference
        if ref is not None and ref.name:
            return Reference(name=ref.name, namespace=ref.namespace or DEFAULT_NAMESPACE)
        return Reference(name=DEFAULT_PROVIDER_NAME, namespace=DEFAULT_NAMESPACE)

    @classmethod
    def from_object(cls, obj: Dict[str, Any]) -> "Configuration":
        """Build a Configuration from the API server's JSON dict."""
        return cls.model_validate(obj)


# =============================================================================
# Provider
# =============================================================================

class ProviderCredentials(_CamelModel):
    """Where a Provider keeps its credentials."""
    source: str = "Secret"
    secret_ref: Optional[SecretKeyReference] = Field(default=None, alias="secretRef")


class ProviderSpec(_CamelModel):
    """Desired state of a Provider."""
    provider: str = ""
    region: str = ""
    credentials: ProviderCredentials = Field(default_factory=ProviderCredentials)


class ProviderStatus(_CamelModel):
    """Observed state of a Provider."""
    state: str = ""
    message: str = ""


class Provider(_CamelModel):
    """The Provider custom resource."""
    metadata: ObjectMeta
    spec: ProviderSpec = Field(default_factory=ProviderSpec)
    status: ProviderStatus = Field(default_factory=ProviderStatus)

    @property
    def name(self) -> str:
        return self.metadata.name

    @classmethod
    def from_object(cls, obj: Dict[str, Any]) -> "Provider":
        """Build a Provider from the API server's JSON dict."""
        return cls.model_validate(obj)


# =============================================================================
# Terraform State
# =============================================================================

class StateOutput(BaseModel):
    """One entry of the `outputs` map of a Terraform state document."""
    model_config = ConfigDict(extra="ignore")

    value: Any = None
    type: Any = None


class TerraformState(BaseModel):
    """Terraform state document; tool-defined fields other than outputs are ignored."""
    model_config = ConfigDict(extra="ignore")

    outputs: Dict[str, StateOutput] = Field(default_factory=dict)


class ResourceQuota(BaseModel):
    """Compute resources of the Terraform executor container."""
    limits_cpu: str = ""
    limits_memory: str = ""
    requests_cpu: str = ""
    requests_memory: str = ""

    def is_empty(self) -> bool:
        return not (self.limits_cpu or self.limits_memory or self.requests_cpu or self.requests_memory)
