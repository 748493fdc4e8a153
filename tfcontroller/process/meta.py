"""
ExecutionMeta - everything needed to submit or evaluate an executor Job.

An ExecutionMeta is rebuilt from the Configuration and the cluster on every
reconciliation and never persisted. It renders the Terraform configuration,
detects whether the live Job is stale, and (re)submits it together with its
input ConfigMap and variable Secret.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

from kubernetes import client

from ..backend import Backend, BackendResolver
from ..cluster import ClusterClient, ConfigMapObject, SecretObject
from ..convert import interface_to_string
from ..errors import AlreadyExistsError, ConfigurationError, CredentialResolutionError, NotFoundError
from ..models import (
    TERRAFORM_HCL_CONFIGURATION_NAME,
    TERRAFORM_REMOTE_BACKEND_NAME,
    TF_INPUT_CONFIGMAP_NAME,
    TF_VARIABLE_SECRET_NAME,
    Configuration,
    ConfigurationType,
    ExecutionType,
    Provider,
    Reference,
    ResourceQuota,
    SecretReference,
)
from ..provider import ERR_CREDENTIALS_NOT_RETRIEVED, get_provider_credentials, resolve_region
from ..settings import ControllerSettings
from .assembler import SERVICE_ACCOUNT_NAME, SSH_AUTH_PRIVATE_KEY, GitSource, JobAssembler

logger = logging.getLogger(__name__)

GITHUB_PREFIX = "https://github.com/"
GITHUB_KUBEVELA_CONTRIB_PREFIX = "https://github.com/kubevela-contrib"
GITEE_PREFIX = "https://gitee.com/"
GITEE_TERRAFORM_SOURCE_ORG = "https://gitee.com/kubevela-terraform-source"

GIT_CREDS_KNOWN_HOSTS = "known_hosts"
TERRAFORM_CREDENTIALS = "credentials.tfrc.json"
TERRAFORM_REGISTRY_CONFIG = ".terraformrc"

_TRUE_STRINGS = {"1", "t", "true"}
_FALSE_STRINGS = {"0", "f", "false"}


def parse_bool(value: str) -> Optional[bool]:
    """Parse a boolean flag; None when the value is not a boolean."""
    lowered = value.strip().lower()
    if lowered in _TRUE_STRINGS:
        return True
    if lowered in _FALSE_STRINGS:
        return False
    return None


def replace_terraform_source(remote: str, github_blocked: str) -> str:
    """
    Mirror a GitHub source to Gitee when GitHub is blocked in the cluster.

    Repositories of kubevela-contrib keep their path; any other owner/repo is
    looked up in the kubevela-terraform-source Gitee organization.
    """
    blocked = parse_bool(github_blocked)
    if blocked is None:
        logger.warning(f"The value of GITHUB_BLOCKED is not a boolean: {github_blocked!r}")
        return remote
    if not blocked or not remote:
        return remote
    if not remote.startswith(GITHUB_PREFIX):
        return remote

    if remote.startswith(GITHUB_KUBEVELA_CONTRIB_PREFIX):
        repo = remote.replace(GITHUB_PREFIX, GITEE_PREFIX, 1)
    else:
        parts = remote[len(GITHUB_PREFIX):].split("/")
        repo = f"{GITEE_TERRAFORM_SOURCE_ORG}/{parts[1]}" if len(parts) == 2 else ""
    logger.info(f"GitHub is blocked, use the mirrored source {repo!r} instead of {remote}")
    return repo


class ExecutionMeta:
    """Per-reconcile view of one Configuration's execution."""

    def __init__(
        self,
        configuration: Configuration,
        cluster: ClusterClient,
        settings: ControllerSettings,
        resolver: BackendResolver,
    ):
        """
        Derive names, images and flags from a Configuration and the settings.

        Args:
            configuration: The Configuration being reconciled
            cluster: Cluster client
            settings: Controller settings
            resolver: Backend resolver used while rendering
        """
        spec = configuration.spec
        self.cluster = cluster
        self.resolver = resolver

        self.name = configuration.name
        self.namespace = configuration.namespace
        self.controller_namespace = configuration.namespace
        self.configuration_cm_name = TF_INPUT_CONFIGMAP_NAME.format(self.name)
        self.variable_secret_name = TF_VARIABLE_SECRET_NAME.format(self.name)
        self.apply_job_name = f"{self.name}-{ExecutionType.APPLY.value}"
        self.destroy_job_name = f"{self.name}-{ExecutionType.DESTROY.value}"

        # A shared controller namespace holds the objects of every Configuration
        if settings.controller_namespace:
            uid = configuration.metadata.uid
            self.controller_namespace = settings.controller_namespace
            self.configuration_cm_name = TF_INPUT_CONFIGMAP_NAME.format(uid)
            self.variable_secret_name = TF_VARIABLE_SECRET_NAME.format(uid)
            self.apply_job_name = f"{uid}-{ExecutionType.APPLY.value}"
            self.destroy_job_name = f"{uid}-{ExecutionType.DESTROY.value}"

        self.configuration_type: Optional[ConfigurationType] = None
        self.complete_configuration = ""
        self.backend: Optional[Backend] = None

        self.git = GitSource(
            url=replace_terraform_source(spec.remote, settings.github_blocked),
            path=spec.path or ".",
            ref=spec.git_ref,
        )
        self.delete_resource = spec.delete_resource
        self.force_delete = spec.force_delete
        self.inline_credentials = spec.inline_credentials
        self.provider_reference: Optional[Reference] = (
            None if spec.inline_credentials else configuration.provider_namespaced_name()
        )
        self.credentials: Optional[Dict[str, str]] = None
        self.region = spec.region
        self.job_env: Dict[str, Any] = dict(spec.job_env or {})

        self.git_credentials_secret_reference = spec.git_credentials_secret_reference
        self.terraform_credentials_secret_reference = spec.terraform_credentials_secret_reference
        self.terraform_rc_config_map_reference = spec.terraform_rc_config_map_reference
        self.terraform_credentials_helper_config_map_reference = spec.terraform_credentials_helper_config_map_reference

        self.envs: List[client.V1EnvVar] = []
        self.variable_secret_data: Dict[str, bytes] = {}
        self.configuration_changed = False
        self.env_changed = False

        self.terraform_image = settings.terraform_image
        self.busybox_image = settings.busybox_image
        self.git_image = settings.git_image
        self.backoff_limit = settings.job_backoff_limit
        self.resource_quota = ResourceQuota(
            limits_cpu=settings.resources_limits_cpu,
            limits_memory=settings.resources_limits_memory,
            requests_cpu=settings.resources_requests_cpu,
            requests_memory=settings.resources_requests_memory,
        )
        self.job_node_selector = settings.node_selector()

    def job_name(self, execution_type: ExecutionType) -> str:
        return self.apply_job_name if execution_type == ExecutionType.APPLY else self.destroy_job_name

    # =========================================================================
    # Credentials and references
    # =========================================================================

    def get_credentials(self, configuration: Configuration, provider: Provider) -> None:
        """Resolve the region and read the credentials of the Provider."""
        region = resolve_region(configuration, provider)
        credentials = get_provider_credentials(self.cluster, provider, region)
        if credentials is None:
            raise CredentialResolutionError(ERR_CREDENTIALS_NOT_RETRIEVED)
        self.credentials = credentials
        self.region = region

    def validate_references(self) -> None:
        """
        Check the Secrets and ConfigMaps mounted into the executor Pod.

        Raises:
            ConfigurationError: If a referenced object or one of its keys is
                missing, or it lives outside the namespace of the Job
        """
        checks = [
            (self.git_credentials_secret_reference, True, (GIT_CREDS_KNOWN_HOSTS, SSH_AUTH_PRIVATE_KEY),
             "git credentials"),
            (self.terraform_credentials_secret_reference, True, (TERRAFORM_CREDENTIALS,), "terraform credentials"),
            (self.terraform_rc_config_map_reference, False, (TERRAFORM_REGISTRY_CONFIG,), "terraformrc configuration"),
            (self.terraform_credentials_helper_config_map_reference, False, (), "terraform credentials helper"),
        ]
        for ref, is_secret, needed_keys, what in checks:
            if ref is None:
                continue
            self._validate_reference(ref, is_secret, needed_keys, what)

    def _validate_reference(self, ref: SecretReference, is_secret: bool, needed_keys, what: str) -> None:
        kind = "secret" if is_secret else "configmap"
        namespace = ref.namespace or self.controller_namespace
        try:
            if is_secret:
                keys = set(self.cluster.get_secret(namespace, ref.name).data)
            else:
                keys = set(self.cluster.get_config_map(namespace, ref.name).data)
        except NotFoundError as e:
            raise ConfigurationError(f"Failed to get {what} {kind}: {e}") from e

        for key in needed_keys:
            if key not in keys:
                raise ConfigurationError(f"'{key}' not in {what} {kind}")

        if namespace != self.controller_namespace:
            raise ConfigurationError(
                f"Invalid {kind} '{namespace}/{ref.name}', whose namespace '{namespace}' is different from the "
                f"Configuration, cannot mount the volume, you can fix this issue by creating the {kind} in the "
                f"'{self.controller_namespace}' namespace."
            )

    # =========================================================================
    # Rendering and change detection
    # =========================================================================

    def render_configuration(self, configuration: Configuration) -> Tuple[str, Backend]:
        """
        Compose the Terraform configuration with its backend block.

        HCL configurations render the user code, a newline and the backend
        block; remote configurations render the backend block alone.

        Returns:
            Tuple of (rendered text, backend driver)
        """
        configuration_type = configuration.configuration_type()
        backend = self.resolver.resolve(configuration, self.credentials)

        if configuration_type == ConfigurationType.HCL:
            text = configuration.spec.hcl + "\n" + backend.hcl()
        else:
            text = backend.hcl()

        self.configuration_type = configuration_type
        self.complete_configuration = text
        self.backend = backend
        return text, backend

    def _configuration_data_name(self) -> str:
        if self.configuration_type == ConfigurationType.REMOTE:
            return TERRAFORM_REMOTE_BACKEND_NAME
        return TERRAFORM_HCL_CONFIGURATION_NAME

    def check_whether_configuration_changes(self) -> bool:
        """Compare the rendered text with the last applied snapshot."""
        if self.configuration_type != ConfigurationType.HCL:
            self.configuration_changed = False
            return False
        try:
            cm = self.cluster.get_config_map(self.controller_namespace, self.configuration_cm_name)
        except NotFoundError:
            self.configuration_changed = False
            return False

        self.configuration_changed = cm.data.get(TERRAFORM_HCL_CONFIGURATION_NAME) != self.complete_configuration
        if self.configuration_changed:
            logger.info(f"Configuration HCL of {self.namespace}/{self.name} changed")
        return self.configuration_changed

    def prepare_variables(self, configuration: Configuration) -> None:
        """
        Build the variable Secret data and the env vars referencing it.

        Raises:
            CredentialResolutionError: If credentials are required but missing
        """
        if not self.inline_credentials and self.provider_reference is None:
            raise CredentialResolutionError("The referenced provider could not be retrieved")

        data: Dict[str, bytes] = {}
        for key, value in (configuration.spec.variable or {}).items():
            data[f"TF_VAR_{key}"] = interface_to_string(value).encode("utf-8")

        if not self.inline_credentials and self.credentials is None:
            raise CredentialResolutionError(ERR_CREDENTIALS_NOT_RETRIEVED)
        for key, value in (self.credentials or {}).items():
            data[key] = value.encode("utf-8")

        for key, value in self.job_env.items():
            data[key] = interface_to_string(value).encode("utf-8")

        self.variable_secret_data = data
        self.envs = [
            client.V1EnvVar(
                name=key,
                value_from=client.V1EnvVarSource(
                    secret_key_ref=client.V1SecretKeySelector(name=self.variable_secret_name, key=key)
                ),
            )
            for key in sorted(data)
        ]

    def check_whether_env_changes(self) -> bool:
        """Compare the variable data with the existing variable Secret."""
        try:
            secret = self.cluster.get_secret(self.controller_namespace, self.variable_secret_name)
        except NotFoundError:
            self.env_changed = False
            return False
        self.env_changed = secret.data != self.variable_secret_data
        if self.env_changed:
            logger.info(f"Variables of {self.namespace}/{self.name} changed")
        return self.env_changed

    # =========================================================================
    # Submission
    # =========================================================================

    def update_job_if_needed(self, job_name: str) -> bool:
        """
        Delete a stale Job and its variable Secret.

        Returns:
            True when the Job had to go
        """
        if not (self.configuration_changed or self.env_changed):
            return False

        logger.info(f"About to delete Job {self.controller_namespace}/{job_name}")
        try:
            self.cluster.delete_job(self.controller_namespace, job_name)
        except NotFoundError:
            pass
        try:
            self.cluster.delete_secret(self.controller_namespace, self.variable_secret_name)
        except NotFoundError:
            pass
        return True

    def store_configuration(self) -> None:
        """Create or update the input ConfigMap, which is also the applied snapshot."""
        data = {self._configuration_data_name(): self.complete_configuration}
        try:
            cm = self.cluster.get_config_map(self.controller_namespace, self.configuration_cm_name)
        except NotFoundError:
            self.cluster.create_config_map(
                ConfigMapObject(name=self.configuration_cm_name, namespace=self.controller_namespace, data=data)
            )
            return
        if cm.data != data:
            cm.data = data
            self.cluster.update_config_map(cm)

    def store_variables(self) -> None:
        """Create or update the variable Secret."""
        try:
            secret = self.cluster.get_secret(self.controller_namespace, self.variable_secret_name)
        except NotFoundError:
            self.cluster.create_secret(
                SecretObject(
                    name=self.variable_secret_name,
                    namespace=self.controller_namespace,
                    data=dict(self.variable_secret_data),
                )
            )
            return
        if secret.data != self.variable_secret_data:
            secret.data = dict(self.variable_secret_data)
            self.cluster.update_secret(secret)

    def assembler(self) -> JobAssembler:
        return JobAssembler(
            name=self.name,
            terraform_image=self.terraform_image,
            busybox_image=self.busybox_image,
            git_image=self.git_image,
            git=self.git,
            envs=self.envs,
            git_credentials=self.git_credentials_secret_reference,
            terraform_credentials=self.terraform_credentials_secret_reference,
            terraform_rc=self.terraform_rc_config_map_reference,
            terraform_credentials_helper=self.terraform_credentials_helper_config_map_reference,
        )

    def assemble_terraform_job(self, execution_type: ExecutionType) -> client.V1Job:
        return self.assembler().build_job(
            job_name=self.job_name(execution_type),
            namespace=self.controller_namespace,
            execution_type=execution_type,
            configuration_cm_name=self.configuration_cm_name,
            quota=self.resource_quota,
            backoff_limit=self.backoff_limit,
            node_selector=self.job_node_selector,
        )

    def assemble_and_trigger_job(self, execution_type: ExecutionType) -> bool:
        """
        Create the executor Job; an existing Job is left alone.

        Returns:
            True when a Job was created
        """
        self.cluster.ensure_service_account(self.controller_namespace, SERVICE_ACCOUNT_NAME)
        job = self.assemble_terraform_job(execution_type)
        try:
            self.cluster.create_job(job)
        except AlreadyExistsError:
            logger.debug(f"Job {self.controller_namespace}/{job.metadata.name} already exists")
            return False
        logger.info(f"Created {execution_type.value} Job {self.controller_namespace}/{job.metadata.name}")
        return True

    def get_job(self, execution_type: ExecutionType) -> Optional[client.V1Job]:
        try:
            return self.cluster.get_job(self.controller_namespace, self.job_name(execution_type))
        except NotFoundError:
            return None

    def delete_apply_resources(self) -> None:
        """Remove the input ConfigMap, the apply Job and the variable Secret."""
        deletions = [
            (self.cluster.delete_config_map, self.configuration_cm_name),
            (self.cluster.delete_job, self.apply_job_name),
            (self.cluster.delete_secret, self.variable_secret_name),
        ]
        for delete, name in deletions:
            try:
                delete(self.controller_namespace, name)
            except NotFoundError:
                logger.debug(f"{self.controller_namespace}/{name} is already gone")
