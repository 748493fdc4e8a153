"""
Cluster access - Kubernetes objects addressed by (kind, namespace, name).

Every reconciliation re-fetches what it needs through ClusterClient; nothing is
cached between calls. ApiException is translated into the controller's
NotFoundError / AlreadyExistsError / ConflictError at this seam so the rest of
the code never imports the kubernetes exception types.
"""

import base64
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional

from kubernetes import client, config
from kubernetes.client.rest import ApiException

from .errors import AlreadyExistsError, ClusterError, ConflictError, NotFoundError
from .models import (
    CONFIGURATION_GROUP,
    CONFIGURATION_PLURAL,
    CONFIGURATION_VERSION,
    PROVIDER_PLURAL,
    PROVIDER_VERSION,
)

logger = logging.getLogger(__name__)


@dataclass
class SecretObject:
    """A Secret with its data already base64-decoded."""
    name: str
    namespace: str
    data: Dict[str, bytes] = field(default_factory=dict)
    labels: Dict[str, str] = field(default_factory=dict)
    resource_version: str = ""


@dataclass
class ConfigMapObject:
    """A ConfigMap."""
    name: str
    namespace: str
    data: Dict[str, str] = field(default_factory=dict)
    resource_version: str = ""


@contextmanager
def _api_call(action: str, kind: str, namespace: str, name: str) -> Iterator[None]:
    """Translate ApiException raised inside the block."""
    try:
        yield
    except ApiException as e:
        target = f"{kind} {namespace}/{name}"
        if e.status == 404:
            raise NotFoundError(f"{target} not found", status=404) from e
        if e.status == 409 and action == "create":
            raise AlreadyExistsError(f"{target} already exists", status=409) from e
        if e.status == 409:
            raise ConflictError(f"failed to {action} {target}: {e.reason}", status=409) from e
        raise ClusterError(f"failed to {action} {target}: {e.reason}", status=e.status) from e


def _decode_data(data: Optional[Dict[str, str]]) -> Dict[str, bytes]:
    return {k: base64.b64decode(v) for k, v in (data or {}).items()}


def _encode_data(data: Dict[str, bytes]) -> Dict[str, str]:
    return {k: base64.b64encode(v).decode("ascii") for k, v in data.items()}


class ClusterClient:
    """Thin synchronous facade over the Kubernetes API used by the controller."""

    def __init__(
        self,
        core_api: client.CoreV1Api | None = None,
        batch_api: client.BatchV1Api | None = None,
        custom_api: client.CustomObjectsApi | None = None,
        kubeconfig: str | None = None,
    ):
        """
        Initialize the cluster client.

        Args:
            core_api: Pre-built CoreV1Api (loads cluster config when omitted)
            batch_api: Pre-built BatchV1Api
            custom_api: Pre-built CustomObjectsApi
            kubeconfig: Path to a kubeconfig file; in-cluster config otherwise
        """
        if core_api is None or batch_api is None or custom_api is None:
            self._load_config(kubeconfig)
        self.core = core_api or client.CoreV1Api()
        self.batch = batch_api or client.BatchV1Api()
        self.custom = custom_api or client.CustomObjectsApi()

    @staticmethod
    def _load_config(kubeconfig: str | None) -> None:
        if kubeconfig:
            config.load_kube_config(config_file=kubeconfig)
            logger.debug(f"Loaded kubeconfig from {kubeconfig}")
            return
        try:
            config.load_incluster_config()
            logger.debug("Loaded in-cluster Kubernetes config")
        except config.ConfigException:
            config.load_kube_config()
            logger.debug("Loaded default kubeconfig")

    # =========================================================================
    # Configurations and Providers
    # =========================================================================

    def get_configuration(self, namespace: str, name: str) -> Dict[str, Any]:
        with _api_call("get", "Configuration", namespace, name):
            return self.custom.get_namespaced_custom_object(
                CONFIGURATION_GROUP, CONFIGURATION_VERSION, namespace, CONFIGURATION_PLURAL, name
            )

    def list_configurations(self) -> List[Dict[str, Any]]:
        with _api_call("list", "Configuration", "*", "*"):
            result = self.custom.list_cluster_custom_object(
                CONFIGURATION_GROUP, CONFIGURATION_VERSION, CONFIGURATION_PLURAL
            )
        return result.get("items", [])

    def patch_configuration_status(self, namespace: str, name: str, status: Dict[str, Any]) -> None:
        with _api_call("update status of", "Configuration", namespace, name):
            self.custom.patch_namespaced_custom_object_status(
                CONFIGURATION_GROUP, CONFIGURATION_VERSION, namespace, CONFIGURATION_PLURAL, name,
                {"status": status},
            )

    def patch_configuration_finalizers(
        self, namespace: str, name: str, finalizers: List[str], resource_version: str
    ) -> None:
        """Set the finalizers; the resourceVersion makes the write conditional."""
        body: Dict[str, Any] = {"metadata": {"finalizers": finalizers}}
        if resource_version:
            body["metadata"]["resourceVersion"] = resource_version
        with _api_call("update finalizers of", "Configuration", namespace, name):
            self.custom.patch_namespaced_custom_object(
                CONFIGURATION_GROUP, CONFIGURATION_VERSION, namespace, CONFIGURATION_PLURAL, name, body
            )

    def get_provider(self, namespace: str, name: str) -> Dict[str, Any]:
        with _api_call("get", "Provider", namespace, name):
            return self.custom.get_namespaced_custom_object(
                CONFIGURATION_GROUP, PROVIDER_VERSION, namespace, PROVIDER_PLURAL, name
            )

    # =========================================================================
    # Secrets
    # =========================================================================

    def get_secret(self, namespace: str, name: str) -> SecretObject:
        with _api_call("get", "Secret", namespace, name):
            secret = self.core.read_namespaced_secret(name, namespace)
        return SecretObject(
            name=secret.metadata.name,
            namespace=secret.metadata.namespace,
            data=_decode_data(secret.data),
            labels=dict(secret.metadata.labels or {}),
            resource_version=secret.metadata.resource_version or "",
        )

    def create_secret(self, secret: SecretObject) -> None:
        body = client.V1Secret(
            metadata=client.V1ObjectMeta(name=secret.name, namespace=secret.namespace, labels=secret.labels or None),
            data=_encode_data(secret.data),
        )
        with _api_call("create", "Secret", secret.namespace, secret.name):
            self.core.create_namespaced_secret(secret.namespace, body)

    def update_secret(self, secret: SecretObject) -> None:
        body = client.V1Secret(
            metadata=client.V1ObjectMeta(
                name=secret.name,
                namespace=secret.namespace,
                labels=secret.labels or None,
                resource_version=secret.resource_version or None,
            ),
            data=_encode_data(secret.data),
        )
        with _api_call("update", "Secret", secret.namespace, secret.name):
            self.core.replace_namespaced_secret(secret.name, secret.namespace, body)

    def delete_secret(self, namespace: str, name: str) -> None:
        with _api_call("delete", "Secret", namespace, name):
            self.core.delete_namespaced_secret(name, namespace)

    # =========================================================================
    # ConfigMaps
    # =========================================================================

    def get_config_map(self, namespace: str, name: str) -> ConfigMapObject:
        with _api_call("get", "ConfigMap", namespace, name):
            cm = self.core.read_namespaced_config_map(name, namespace)
        return ConfigMapObject(
            name=cm.metadata.name,
            namespace=cm.metadata.namespace,
            data=dict(cm.data or {}),
            resource_version=cm.metadata.resource_version or "",
        )

    def create_config_map(self, config_map: ConfigMapObject) -> None:
        body = client.V1ConfigMap(
            metadata=client.V1ObjectMeta(name=config_map.name, namespace=config_map.namespace),
            data=config_map.data,
        )
        with _api_call("create", "ConfigMap", config_map.namespace, config_map.name):
            self.core.create_namespaced_config_map(config_map.namespace, body)

    def update_config_map(self, config_map: ConfigMapObject) -> None:
        body = client.V1ConfigMap(
            metadata=client.V1ObjectMeta(
                name=config_map.name,
                namespace=config_map.namespace,
                resource_version=config_map.resource_version or None,
            ),
            data=config_map.data,
        )
        with _api_call("update", "ConfigMap", config_map.namespace, config_map.name):
            self.core.replace_namespaced_config_map(config_map.name, config_map.namespace, body)

    def delete_config_map(self, namespace: str, name: str) -> None:
        with _api_call("delete", "ConfigMap", namespace, name):
            self.core.delete_namespaced_config_map(name, namespace)

    # =========================================================================
    # Jobs, Pods and ServiceAccounts
    # =========================================================================

    def get_job(self, namespace: str, name: str) -> client.V1Job:
        with _api_call("get", "Job", namespace, name):
            return self.batch.read_namespaced_job(name, namespace)

    def create_job(self, job: client.V1Job) -> None:
        namespace, name = job.metadata.namespace, job.metadata.name
        with _api_call("create", "Job", namespace, name):
            self.batch.create_namespaced_job(namespace, job)

    def delete_job(self, namespace: str, name: str) -> None:
        with _api_call("delete", "Job", namespace, name):
            self.batch.delete_namespaced_job(
                name, namespace, body=client.V1DeleteOptions(propagation_policy="Background")
            )

    def get_job_logs(self, namespace: str, job_name: str, container: str) -> str:
        """Return the logs of one container of the newest Pod of a Job."""
        with _api_call("list pods of", "Job", namespace, job_name):
            pods = self.core.list_namespaced_pod(namespace, label_selector=f"job-name={job_name}")
        if not pods.items:
            return ""
        pod = sorted(pods.items, key=lambda p: str(p.metadata.creation_timestamp or ""))[-1]
        with _api_call("read logs of", "Pod", namespace, pod.metadata.name):
            return self.core.read_namespaced_pod_log(pod.metadata.name, namespace, container=container)

    def ensure_service_account(self, namespace: str, name: str) -> None:
        try:
            with _api_call("get", "ServiceAccount", namespace, name):
                self.core.read_namespaced_service_account(name, namespace)
            return
        except NotFoundError:
            pass
        body = client.V1ServiceAccount(metadata=client.V1ObjectMeta(name=name, namespace=namespace))
        try:
            with _api_call("create", "ServiceAccount", namespace, name):
                self.core.create_namespaced_service_account(namespace, body)
            logger.info(f"Created ServiceAccount {namespace}/{name} for the Terraform executor")
        except AlreadyExistsError:
            logger.debug(f"ServiceAccount {namespace}/{name} was created concurrently")
