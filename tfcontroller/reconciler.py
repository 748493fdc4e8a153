"""
Configuration Reconciler - the apply/destroy state machine.

Apply path:   Validating -> Provisioning -> Available
              (Unavailable on fatal errors, GeneratingOutputs when outputs fail)
Destroy path: DestroyPending -> Destroyed, then the finalizer is removed

Every call re-fetches the Configuration and derives an ExecutionMeta from it.
A Job that has not finished yet raises NotCompletedError, which turns into a
fixed-delay requeue instead of a failure.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Optional

from pydantic import ValidationError

from .backend import DEFAULT_BACKEND_FACTORIES, BackendResolver
from .cluster import ClusterClient
from .errors import (
    ClusterError,
    ConfigurationError,
    CredentialResolutionError,
    NotCompletedError,
    NotFoundError,
    ReconcileError,
    TFControllerError,
)
from .models import (
    CONFIGURATION_FINALIZER,
    ERR_GENERATE_OUTPUTS,
    MESSAGE_DEPLOYED,
    MESSAGE_DESTROYED,
    MESSAGE_DESTROYING,
    MESSAGE_PROVISIONING,
    MESSAGE_RELOADING_HCL,
    MESSAGE_RELOADING_VARIABLE,
    MESSAGE_VALIDATING,
    Configuration,
    ConfigurationApplyStatus,
    ConfigurationDestroyStatus,
    ConfigurationState,
    ExecutionType,
    Property,
)
from .process import ExecutionMeta, JobPhase, collect_outputs, failure_message, job_phase
from .provider import get_provider, is_provider_ready
from .settings import ControllerSettings, get_settings

logger = logging.getLogger(__name__)

MESSAGE_APPLY_JOB_NOT_COMPLETED = "cloud resources are not created completed"
MESSAGE_DESTROY_JOB_NOT_COMPLETED = "Configuration deletion isn't completed"
MESSAGE_WAIT_FOR_PROVISION = (
    "Destroy could not complete and needs to wait for Provision to complete first: " + MESSAGE_PROVISIONING
)
ERR_PROVIDER_NOT_FOUND = "provider not found"
ERR_PROVIDER_NOT_READY = "Provider is not ready"

# Apply states in which no cloud resource can exist yet
_NOTHING_PROVISIONED_STATES = {None, ConfigurationState.VALIDATING, ConfigurationState.UNAVAILABLE}


@dataclass
class ReconcileResult:
    """Outcome of one reconciliation; requeue_after is set when a re-check is due."""
    requeue_after: Optional[float] = None

    @property
    def requeue(self) -> bool:
        return self.requeue_after is not None


class ConfigurationReconciler:
    """Reconciles Configuration objects one identity at a time."""

    def __init__(
        self,
        cluster: ClusterClient,
        settings: ControllerSettings | None = None,
        resolver: BackendResolver | None = None,
    ):
        """
        Initialize the reconciler.

        Args:
            cluster: Cluster client
            settings: Controller settings (global settings when omitted)
            resolver: Backend resolver (built from the default registry when omitted)
        """
        self.cluster = cluster
        self.settings = settings or get_settings()
        self.resolver = resolver or BackendResolver(
            cluster, self.settings.terraform_backend_namespace, DEFAULT_BACKEND_FACTORIES
        )

    def reconcile(self, namespace: str, name: str) -> ReconcileResult:
        """
        Reconcile one Configuration.

        Args:
            namespace: Namespace of the Configuration
            name: Name of the Configuration

        Returns:
            ReconcileResult, with requeue_after set while a Job is running

        Raises:
            ReconcileError: On any fatal error; once the object parses, the error is
                also written to its status
        """
        logger.info(f"Reconciling Terraform Configuration {namespace}/{name}")
        try:
            obj = self.cluster.get_configuration(namespace, name)
        except NotFoundError:
            logger.info(f"Configuration {namespace}/{name} no longer exists")
            return ReconcileResult()
        except ClusterError as e:
            raise ReconcileError(namespace, name, "get", e) from e

        # No status can be written for an object that does not parse
        try:
            configuration = Configuration.from_object(obj)
        except ValidationError as e:
            cause = ConfigurationError(f"invalid Configuration: {e}")
            raise ReconcileError(namespace, name, "parse", cause) from e

        meta = ExecutionMeta(configuration, self.cluster, self.settings, self.resolver)
        operation = "destroy" if configuration.is_deleting else "apply"

        try:
            if configuration.is_deleting:
                self._destroy(configuration, meta)
            else:
                self._ensure_finalizer(configuration)
                self._apply(configuration, meta)
            return ReconcileResult()
        except NotCompletedError as e:
            logger.info(f"Configuration {namespace}/{name}: {e}, check again in {self.settings.requeue_seconds}s")
            return ReconcileResult(requeue_after=self.settings.requeue_seconds)
        except ReconcileError:
            raise
        except Exception as e:
            self._record_failure(configuration, meta, e)
            raise ReconcileError(namespace, name, operation, e) from e

    # =========================================================================
    # Apply
    # =========================================================================

    def _apply(self, configuration: Configuration, meta: ExecutionMeta) -> None:
        if configuration.status.apply.state is None:
            self._update_apply_status(configuration, meta, ConfigurationState.VALIDATING, MESSAGE_VALIDATING)

        self._pre_check(configuration, meta)

        if meta.update_job_if_needed(meta.apply_job_name):
            message = MESSAGE_RELOADING_HCL if meta.configuration_changed else MESSAGE_RELOADING_VARIABLE
            self._update_apply_status(configuration, meta, ConfigurationState.PROVISIONING, message)

        meta.store_configuration()
        meta.store_variables()
        meta.assemble_and_trigger_job(ExecutionType.APPLY)

        job = meta.get_job(ExecutionType.APPLY)
        phase = job_phase(job) if job is not None else JobPhase.RUNNING

        if phase == JobPhase.RUNNING:
            self._update_apply_status(configuration, meta, ConfigurationState.PROVISIONING, MESSAGE_PROVISIONING)
            raise NotCompletedError(MESSAGE_APPLY_JOB_NOT_COMPLETED)

        if phase == JobPhase.FAILED:
            _, message = failure_message(self.cluster, meta.controller_namespace, meta.apply_job_name)
            logger.warning(f"Apply Job of {configuration.namespace}/{configuration.name} failed: {message}")
            self._update_apply_status(configuration, meta, ConfigurationState.UNAVAILABLE, message)
            return

        try:
            outputs = collect_outputs(self.cluster, meta.backend, configuration)
        except TFControllerError as e:
            logger.warning(f"Failed to get outputs of {configuration.namespace}/{configuration.name}: {e}")
            self._update_apply_status(
                configuration, meta, ConfigurationState.GENERATING_OUTPUTS, f"{ERR_GENERATE_OUTPUTS}: {e}"
            )
            raise ReconcileError(configuration.namespace, configuration.name, "generate outputs of", e) from e

        self._update_apply_status(configuration, meta, ConfigurationState.AVAILABLE, MESSAGE_DEPLOYED, outputs)
        logger.info(f"Configuration {configuration.namespace}/{configuration.name} is available")

    def _pre_check(self, configuration: Configuration, meta: ExecutionMeta) -> None:
        """Validate the spec, resolve credentials and the backend, then detect changes."""
        configuration.configuration_type()
        meta.validate_references()

        if not meta.inline_credentials:
            provider = get_provider(self.cluster, configuration)
            if provider is None:
                raise CredentialResolutionError(ERR_PROVIDER_NOT_FOUND)
            if not is_provider_ready(provider):
                raise CredentialResolutionError(ERR_PROVIDER_NOT_READY)
            meta.get_credentials(configuration, provider)

        meta.render_configuration(configuration)
        meta.check_whether_configuration_changes()
        meta.prepare_variables(configuration)
        meta.check_whether_env_changes()

    def _ensure_finalizer(self, configuration: Configuration) -> None:
        finalizers = configuration.metadata.finalizers
        if CONFIGURATION_FINALIZER in finalizers:
            return
        self.cluster.patch_configuration_finalizers(
            configuration.namespace,
            configuration.name,
            finalizers + [CONFIGURATION_FINALIZER],
            configuration.metadata.resource_version,
        )
        logger.debug(f"Added finalizer to Configuration {configuration.namespace}/{configuration.name}")

    # =========================================================================
    # Destroy
    # =========================================================================

    def _destroy(self, configuration: Configuration, meta: ExecutionMeta) -> None:
        if CONFIGURATION_FINALIZER not in configuration.metadata.finalizers:
            return

        self._update_destroy_status(configuration, ConfigurationState.DESTROY_PENDING, MESSAGE_DESTROYING)

        skip_destroy = not meta.delete_resource or meta.force_delete or self._nothing_provisioned(configuration, meta)
        if skip_destroy:
            logger.info(f"Skipping the destroy Job of Configuration {configuration.namespace}/{configuration.name}")
            self._resolve_backend_for_cleanup(configuration, meta)
        else:
            self._run_destroy_job(configuration, meta)

        self._update_destroy_status(configuration, ConfigurationState.DESTROYED, MESSAGE_DESTROYED)
        if meta.backend is not None and meta.delete_resource:
            meta.backend.cleanup()
        meta.delete_apply_resources()
        self._remove_finalizer(configuration)
        logger.info(f"Configuration {configuration.namespace}/{configuration.name} is destroyed")

    def _nothing_provisioned(self, configuration: Configuration, meta: ExecutionMeta) -> bool:
        """True when no cloud resource can have been created for the Configuration."""
        if not meta.inline_credentials:
            provider = get_provider(self.cluster, configuration)
            if provider is None or not is_provider_ready(provider):
                return True
        return (
            configuration.status.apply.state in _NOTHING_PROVISIONED_STATES
            and meta.get_job(ExecutionType.APPLY) is None
        )

    def _run_destroy_job(self, configuration: Configuration, meta: ExecutionMeta) -> None:
        apply_job = meta.get_job(ExecutionType.APPLY)
        if (
            configuration.status.apply.state == ConfigurationState.PROVISIONING
            and apply_job is not None
            and job_phase(apply_job) == JobPhase.RUNNING
        ):
            logger.warning(MESSAGE_WAIT_FOR_PROVISION)
            raise NotCompletedError(MESSAGE_WAIT_FOR_PROVISION)

        self._pre_check(configuration, meta)
        meta.store_configuration()
        meta.store_variables()
        meta.assemble_and_trigger_job(ExecutionType.DESTROY)

        job = meta.get_job(ExecutionType.DESTROY)
        phase = job_phase(job) if job is not None else JobPhase.RUNNING
        if phase == JobPhase.RUNNING:
            raise NotCompletedError(MESSAGE_DESTROY_JOB_NOT_COMPLETED)
        if phase == JobPhase.FAILED:
            _, message = failure_message(self.cluster, meta.controller_namespace, meta.destroy_job_name)
            raise TFControllerError(f"the destroy Job failed: {message}")

    def _resolve_backend_for_cleanup(self, configuration: Configuration, meta: ExecutionMeta) -> None:
        """Resolve the backend so its state can be removed; nothing was provisioned with it."""
        if not meta.delete_resource:
            return
        try:
            meta.backend = self.resolver.resolve(configuration, meta.credentials)
        except TFControllerError as e:
            logger.warning(
                f"Cannot resolve the backend of {configuration.namespace}/{configuration.name}, "
                f"its state is left in place: {e}"
            )

    def _remove_finalizer(self, configuration: Configuration) -> None:
        # status writes bumped the resourceVersion, the precondition needs the latest one
        latest = Configuration.from_object(self.cluster.get_configuration(configuration.namespace, configuration.name))
        finalizers = [f for f in latest.metadata.finalizers if f != CONFIGURATION_FINALIZER]
        self.cluster.patch_configuration_finalizers(
            latest.namespace, latest.name, finalizers, latest.metadata.resource_version
        )

    # =========================================================================
    # Status
    # =========================================================================

    def _patch_status(self, configuration: Configuration) -> None:
        self.cluster.patch_configuration_status(
            configuration.namespace,
            configuration.name,
            configuration.status.model_dump(by_alias=True, mode="json", exclude_none=True),
        )

    def _update_apply_status(
        self,
        configuration: Configuration,
        meta: ExecutionMeta,
        state: ConfigurationState,
        message: str,
        outputs: Dict[str, Property] | None = None,
    ) -> None:
        configuration.status.apply = ConfigurationApplyStatus(
            state=state,
            message=message,
            region=meta.region,
            outputs=outputs if outputs is not None else configuration.status.apply.outputs,
        )
        configuration.status.observed_generation = configuration.metadata.generation
        self._patch_status(configuration)

    def _update_destroy_status(self, configuration: Configuration, state: ConfigurationState, message: str) -> None:
        configuration.status.destroy = ConfigurationDestroyStatus(state=state, message=message)
        self._patch_status(configuration)

    def _record_failure(self, configuration: Configuration, meta: ExecutionMeta, error: Exception) -> None:
        """Write a fatal error to the status message."""
        try:
            if configuration.is_deleting:
                self._update_destroy_status(configuration, ConfigurationState.DESTROY_PENDING, str(error))
            else:
                self._update_apply_status(configuration, meta, ConfigurationState.UNAVAILABLE, str(error))
        except ClusterError as e:
            logger.error(f"Failed to record the error of {configuration.namespace}/{configuration.name}: {e}")
