"""
Pytest configuration and fixtures for tfcontroller tests.

FakeCluster keeps Configurations, Providers, Secrets, ConfigMaps and Jobs in
memory behind the same surface as ClusterClient, and records every mutating
call so tests can assert on ordering.
"""

import copy
import gzip
import json
from typing import Any, Dict, List, Optional, Tuple

import pytest
from kubernetes import client

from tfcontroller.cluster import ConfigMapObject, SecretObject
from tfcontroller.errors import AlreadyExistsError, ConflictError, NotFoundError
from tfcontroller.settings import ControllerSettings

Key = Tuple[str, str]

PROVIDER_SECRET_NAMESPACE = "vela-system"
PROVIDER_SECRET_NAME = "aws-account-creds"
AWS_CREDENTIALS_YAML = "awsAccessKeyID: ak\nawsSecretAccessKey: sk\n"


class FakeCluster:
    """In-memory stand-in for ClusterClient."""

    def __init__(self):
        self.configurations: Dict[Key, Dict[str, Any]] = {}
        self.providers: Dict[Key, Dict[str, Any]] = {}
        self.secrets: Dict[Key, SecretObject] = {}
        self.config_maps: Dict[Key, ConfigMapObject] = {}
        self.jobs: Dict[Key, client.V1Job] = {}
        self.service_accounts: set = set()
        self.job_logs: Dict[Tuple[str, str, str], str] = {}
        self.calls: List[Tuple[str, str, str, str]] = []
        self._rv = 0

    def _record(self, action: str, kind: str, namespace: str, name: str) -> None:
        self.calls.append((action, kind, namespace, name))

    def _next_rv(self) -> str:
        self._rv += 1
        return str(self._rv)

    # Configurations and Providers

    def add_configuration(self, obj: Dict[str, Any]) -> None:
        obj = copy.deepcopy(obj)
        obj["metadata"]["resourceVersion"] = self._next_rv()
        self.configurations[(obj["metadata"]["namespace"], obj["metadata"]["name"])] = obj

    def mark_deleting(self, namespace: str, name: str) -> None:
        obj = self.configurations[(namespace, name)]
        obj["metadata"]["deletionTimestamp"] = "2024-01-01T00:00:00Z"
        obj["metadata"]["resourceVersion"] = self._next_rv()

    def get_configuration(self, namespace: str, name: str) -> Dict[str, Any]:
        try:
            return copy.deepcopy(self.configurations[(namespace, name)])
        except KeyError:
            raise NotFoundError(f"Configuration {namespace}/{name} not found", status=404)

    def list_configurations(self) -> List[Dict[str, Any]]:
        return [copy.deepcopy(obj) for obj in self.configurations.values()]

    def patch_configuration_status(self, namespace: str, name: str, status: Dict[str, Any]) -> None:
        obj = self.configurations.get((namespace, name))
        if obj is None:
            raise NotFoundError(f"Configuration {namespace}/{name} not found", status=404)
        self._record("patch-status", "Configuration", namespace, name)
        obj["status"] = copy.deepcopy(status)
        obj["metadata"]["resourceVersion"] = self._next_rv()

    def patch_configuration_finalizers(
        self, namespace: str, name: str, finalizers: List[str], resource_version: str
    ) -> None:
        obj = self.configurations.get((namespace, name))
        if obj is None:
            raise NotFoundError(f"Configuration {namespace}/{name} not found", status=404)
        if resource_version and resource_version != obj["metadata"]["resourceVersion"]:
            raise ConflictError(f"Configuration {namespace}/{name} was modified", status=409)
        self._record("patch-finalizers", "Configuration", namespace, name)
        obj["metadata"]["finalizers"] = list(finalizers)
        obj["metadata"]["resourceVersion"] = self._next_rv()
        if obj["metadata"].get("deletionTimestamp") and not finalizers:
            del self.configurations[(namespace, name)]

    def add_provider(self, obj: Dict[str, Any]) -> None:
        self.providers[(obj["metadata"]["namespace"], obj["metadata"]["name"])] = copy.deepcopy(obj)

    def get_provider(self, namespace: str, name: str) -> Dict[str, Any]:
        try:
            return copy.deepcopy(self.providers[(namespace, name)])
        except KeyError:
            raise NotFoundError(f"Provider {namespace}/{name} not found", status=404)

    # Secrets

    def get_secret(self, namespace: str, name: str) -> SecretObject:
        try:
            return copy.deepcopy(self.secrets[(namespace, name)])
        except KeyError:
            raise NotFoundError(f"Secret {namespace}/{name} not found", status=404)

    def create_secret(self, secret: SecretObject) -> None:
        key = (secret.namespace, secret.name)
        if key in self.secrets:
            raise AlreadyExistsError(f"Secret {secret.namespace}/{secret.name} already exists", status=409)
        self._record("create", "Secret", secret.namespace, secret.name)
        stored = copy.deepcopy(secret)
        stored.resource_version = self._next_rv()
        self.secrets[key] = stored

    def update_secret(self, secret: SecretObject) -> None:
        key = (secret.namespace, secret.name)
        if key not in self.secrets:
            raise NotFoundError(f"Secret {secret.namespace}/{secret.name} not found", status=404)
        self._record("update", "Secret", secret.namespace, secret.name)
        stored = copy.deepcopy(secret)
        stored.resource_version = self._next_rv()
        self.secrets[key] = stored

    def delete_secret(self, namespace: str, name: str) -> None:
        if (namespace, name) not in self.secrets:
            raise NotFoundError(f"Secret {namespace}/{name} not found", status=404)
        self._record("delete", "Secret", namespace, name)
        del self.secrets[(namespace, name)]

    # ConfigMaps

    def get_config_map(self, namespace: str, name: str) -> ConfigMapObject:
        try:
            return copy.deepcopy(self.config_maps[(namespace, name)])
        except KeyError:
            raise NotFoundError(f"ConfigMap {namespace}/{name} not found", status=404)

    def create_config_map(self, config_map: ConfigMapObject) -> None:
        key = (config_map.namespace, config_map.name)
        if key in self.config_maps:
            raise AlreadyExistsError(f"ConfigMap {config_map.namespace}/{config_map.name} already exists", status=409)
        self._record("create", "ConfigMap", config_map.namespace, config_map.name)
        self.config_maps[key] = copy.deepcopy(config_map)

    def update_config_map(self, config_map: ConfigMapObject) -> None:
        key = (config_map.namespace, config_map.name)
        if key not in self.config_maps:
            raise NotFoundError(f"ConfigMap {config_map.namespace}/{config_map.name} not found", status=404)
        self._record("update", "ConfigMap", config_map.namespace, config_map.name)
        self.config_maps[key] = copy.deepcopy(config_map)

    def delete_config_map(self, namespace: str, name: str) -> None:
        if (namespace, name) not in self.config_maps:
            raise NotFoundError(f"ConfigMap {namespace}/{name} not found", status=404)
        self._record("delete", "ConfigMap", namespace, name)
        del self.config_maps[(namespace, name)]

    # Jobs, Pods and ServiceAccounts

    def get_job(self, namespace: str, name: str) -> client.V1Job:
        try:
            return self.jobs[(namespace, name)]
        except KeyError:
            raise NotFoundError(f"Job {namespace}/{name} not found", status=404)

    def create_job(self, job: client.V1Job) -> None:
        key = (job.metadata.namespace, job.metadata.name)
        if key in self.jobs:
            raise AlreadyExistsError(f"Job {key[0]}/{key[1]} already exists", status=409)
        self._record("create", "Job", key[0], key[1])
        self.jobs[key] = job

    def delete_job(self, namespace: str, name: str) -> None:
        if (namespace, name) not in self.jobs:
            raise NotFoundError(f"Job {namespace}/{name} not found", status=404)
        self._record("delete", "Job", namespace, name)
        del self.jobs[(namespace, name)]

    def get_job_logs(self, namespace: str, job_name: str, container: str) -> str:
        return self.job_logs.get((namespace, job_name, container), "")

    def ensure_service_account(self, namespace: str, name: str) -> None:
        if (namespace, name) not in self.service_accounts:
            self._record("create", "ServiceAccount", namespace, name)
            self.service_accounts.add((namespace, name))

    # Test helpers

    def set_job_succeeded(self, namespace: str, name: str) -> None:
        self.jobs[(namespace, name)].status = client.V1JobStatus(succeeded=1)

    def set_job_failed(self, namespace: str, name: str) -> None:
        self.jobs[(namespace, name)].status = client.V1JobStatus(
            failed=3,
            conditions=[client.V1JobCondition(type="Failed", status="True")],
        )

    def put_state(self, namespace: str, suffix: str, state: Dict[str, Any]) -> None:
        """Write a state document as ClusterClient returns it: gzip bytes under `tfstate`."""
        self.secrets[(namespace, f"tfstate-default-{suffix}")] = SecretObject(
            name=f"tfstate-default-{suffix}",
            namespace=namespace,
            data={"tfstate": gzip.compress(json.dumps(state).encode("utf-8"))},
        )

    def actions(self, kind: Optional[str] = None) -> List[Tuple[str, str, str, str]]:
        return [call for call in self.calls if kind is None or call[1] == kind]


def make_configuration(
    name: str = "sample",
    namespace: str = "default",
    uid: str = "11111111-2222-3333-4444-555555555555",
    **spec: Any,
) -> Dict[str, Any]:
    """Build a Configuration object as the API server returns it."""
    if "hcl" not in spec and "remote" not in spec:
        spec["hcl"] = 'output "x" {\n  value = "1"\n}\n'
    return {
        "apiVersion": "terraform.core.oam.dev/v1beta2",
        "kind": "Configuration",
        "metadata": {
            "name": name,
            "namespace": namespace,
            "uid": uid,
            "generation": 1,
            "finalizers": [],
        },
        "spec": spec,
    }


def make_provider(
    name: str = "default",
    namespace: str = "default",
    vendor: str = "aws",
    region: str = "us-east-1",
    state: str = "ready",
) -> Dict[str, Any]:
    return {
        "apiVersion": "terraform.core.oam.dev/v1beta1",
        "kind": "Provider",
        "metadata": {"name": name, "namespace": namespace},
        "spec": {
            "provider": vendor,
            "region": region,
            "credentials": {
                "source": "Secret",
                "secretRef": {
                    "name": PROVIDER_SECRET_NAME,
                    "namespace": PROVIDER_SECRET_NAMESPACE,
                    "key": "credentials",
                },
            },
        },
        "status": {"state": state},
    }


_SETTINGS_ENV = (
    "TERRAFORM_BACKEND_NAMESPACE",
    "CONTROLLER_NAMESPACE",
    "JOB_NODE_SELECTOR",
    "GITHUB_BLOCKED",
    "TERRAFORM_IMAGE",
    "BUSYBOX_IMAGE",
    "GIT_IMAGE",
    "JOB_BACKOFF_LIMIT",
    "RESOURCES_LIMITS_CPU",
    "RESOURCES_LIMITS_MEMORY",
    "RESOURCES_REQUESTS_CPU",
    "RESOURCES_REQUESTS_MEMORY",
    "KUBECONFIG",
    "TFC_REQUEUE_SECONDS",
    "TFC_SYNC_INTERVAL_SECONDS",
    "TFC_MAX_PARALLEL_RECONCILES",
    "TFC_LOG_LEVEL",
)


@pytest.fixture
def clean_env(monkeypatch):
    """Remove controller environment variables inherited from the shell."""
    for name in _SETTINGS_ENV:
        monkeypatch.delenv(name, raising=False)
        monkeypatch.delenv(f"TFC_{name}", raising=False)
    return monkeypatch


@pytest.fixture
def make_settings(clean_env):
    """Build ControllerSettings from the given environment variables."""
    def _make(**env: str) -> ControllerSettings:
        for name, value in env.items():
            clean_env.setenv(name, value)
        return ControllerSettings(_env_file=None)
    return _make


@pytest.fixture
def settings(make_settings):
    return make_settings(TERRAFORM_BACKEND_NAMESPACE="vela-system")


@pytest.fixture
def cluster():
    """FakeCluster holding the default aws Provider and its credentials."""
    fake = FakeCluster()
    fake.add_provider(make_provider())
    fake.secrets[(PROVIDER_SECRET_NAMESPACE, PROVIDER_SECRET_NAME)] = SecretObject(
        name=PROVIDER_SECRET_NAME,
        namespace=PROVIDER_SECRET_NAMESPACE,
        data={"credentials": AWS_CREDENTIALS_YAML.encode("utf-8")},
    )
    return fake
