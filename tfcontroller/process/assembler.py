"""
Job assembly - the containers and volumes of a Terraform executor Job.

Containers run in a fixed order: the input staging step, the git fetch step
(remote configurations only), `terraform init`, then the main apply or destroy
container.
"""

import os
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from kubernetes import client

from ..models import ExecutionType, GitRef, ResourceQuota, SecretReference

WORKING_VOLUME_MOUNT_PATH = "/data"
INPUT_TF_CONFIGURATION_VOLUME_NAME = "tf-input-configuration"
INPUT_TF_CONFIGURATION_VOLUME_MOUNT_PATH = "/opt/tf-configuration"
BACKEND_VOLUME_NAME = "tf-backend"
BACKEND_VOLUME_MOUNT_PATH = "/opt/tf-backend"

GIT_AUTH_CONFIG_VOLUME_NAME = "git-auth-configuration"
GIT_AUTH_CONFIG_VOLUME_MOUNT_PATH = "/root/.ssh"
TERRAFORM_CREDENTIALS_VOLUME_NAME = "terraform-credentials-configuration"
TERRAFORM_CREDENTIALS_VOLUME_MOUNT_PATH = "/root/.terraform.d"
TERRAFORM_RC_VOLUME_NAME = "terraform-rc-configuration"
TERRAFORM_RC_VOLUME_MOUNT_PATH = "/root"
TERRAFORM_CREDENTIALS_HELPER_VOLUME_NAME = "terraform-credentials-helper-configuration"
TERRAFORM_CREDENTIALS_HELPER_VOLUME_MOUNT_PATH = "/root/.terraform.d/plugins"

INPUT_CONTAINER_NAME = "prepare-input-terraform-configurations"
GIT_CONTAINER_NAME = "git-configuration"
TERRAFORM_INIT_CONTAINER_NAME = "terraform-init"
TERRAFORM_CONTAINER_NAME = "terraform-executor"

SERVICE_ACCOUNT_NAME = "tf-executor-service-account"
SSH_AUTH_PRIVATE_KEY = "ssh-privatekey"

SECRET_VOLUME_DEFAULT_MODE = 0o400


@dataclass
class GitSource:
    """Remote source of a Configuration."""
    url: str = ""
    path: str = "."
    ref: GitRef = field(default_factory=GitRef)


@dataclass
class JobAssembler:
    """Builds the executor Job of one Configuration."""

    name: str
    terraform_image: str
    busybox_image: str
    git_image: str
    git: GitSource = field(default_factory=GitSource)
    envs: List[client.V1EnvVar] = field(default_factory=list)
    git_credentials: Optional[SecretReference] = None
    terraform_credentials: Optional[SecretReference] = None
    terraform_rc: Optional[SecretReference] = None
    terraform_credentials_helper: Optional[SecretReference] = None

    def _working_mount(self) -> client.V1VolumeMount:
        return client.V1VolumeMount(name=self.name, mount_path=WORKING_VOLUME_MOUNT_PATH)

    # =========================================================================
    # Containers
    # =========================================================================

    def input_container(self) -> client.V1Container:
        """Copy the staged .tf files into the working directory."""
        return client.V1Container(
            name=INPUT_CONTAINER_NAME,
            image=self.busybox_image,
            image_pull_policy="IfNotPresent",
            command=["sh", "-c", f"cp {INPUT_TF_CONFIGURATION_VOLUME_MOUNT_PATH}/* {WORKING_VOLUME_MOUNT_PATH}"],
            volume_mounts=[
                self._working_mount(),
                client.V1VolumeMount(
                    name=INPUT_TF_CONFIGURATION_VOLUME_NAME,
                    mount_path=INPUT_TF_CONFIGURATION_VOLUME_MOUNT_PATH,
                ),
            ],
        )

    def clone_command(self) -> str:
        hcl_path = os.path.join(BACKEND_VOLUME_MOUNT_PATH, self.git.path or ".")
        command = f"git clone {self.git.url} {BACKEND_VOLUME_MOUNT_PATH}"
        checkout = self.git.ref.checkout_object()
        if checkout:
            command += f" && git -C {BACKEND_VOLUME_MOUNT_PATH} checkout {checkout}"
        command += f" && cp -r {hcl_path}/* {WORKING_VOLUME_MOUNT_PATH}"
        if self.git_credentials is not None:
            ssh = f"eval `ssh-agent` && ssh-add {GIT_AUTH_CONFIG_VOLUME_MOUNT_PATH}/{SSH_AUTH_PRIVATE_KEY}"
            command = f"{ssh} && {command}"
        return command

    def git_container(self) -> client.V1Container:
        """Clone the remote source and copy the module into the working directory."""
        mounts = [
            self._working_mount(),
            client.V1VolumeMount(name=BACKEND_VOLUME_NAME, mount_path=BACKEND_VOLUME_MOUNT_PATH),
        ]
        if self.git_credentials is not None:
            mounts.append(
                client.V1VolumeMount(name=GIT_AUTH_CONFIG_VOLUME_NAME, mount_path=GIT_AUTH_CONFIG_VOLUME_MOUNT_PATH)
            )
        return client.V1Container(
            name=GIT_CONTAINER_NAME,
            image=self.git_image,
            image_pull_policy="IfNotPresent",
            command=["sh", "-c", self.clone_command()],
            volume_mounts=mounts,
        )

    def init_container(self) -> client.V1Container:
        """Run `terraform init` with the optional registry credentials mounted."""
        mounts = [self._working_mount()]
        if self.terraform_credentials is not None:
            mounts.append(client.V1VolumeMount(
                name=TERRAFORM_CREDENTIALS_VOLUME_NAME,
                mount_path=TERRAFORM_CREDENTIALS_VOLUME_MOUNT_PATH,
            ))
        if self.terraform_rc is not None:
            mounts.append(client.V1VolumeMount(
                name=TERRAFORM_RC_VOLUME_NAME,
                mount_path=TERRAFORM_RC_VOLUME_MOUNT_PATH,
            ))
        if self.terraform_credentials_helper is not None:
            mounts.append(client.V1VolumeMount(
                name=TERRAFORM_CREDENTIALS_HELPER_VOLUME_NAME,
                mount_path=TERRAFORM_CREDENTIALS_HELPER_VOLUME_MOUNT_PATH,
            ))
        return client.V1Container(
            name=TERRAFORM_INIT_CONTAINER_NAME,
            image=self.terraform_image,
            image_pull_policy="IfNotPresent",
            command=["sh", "-c", "terraform init"],
            volume_mounts=mounts,
            env=self.envs or None,
        )

    def apply_container(self, execution_type: ExecutionType, quota: ResourceQuota) -> client.V1Container:
        """The main container running `terraform apply` or `terraform destroy`."""
        container = client.V1Container(
            name=TERRAFORM_CONTAINER_NAME,
            image=self.terraform_image,
            image_pull_policy="IfNotPresent",
            command=["bash", "-c", f"terraform {execution_type.value} -lock=false -auto-approve"],
            volume_mounts=[
                self._working_mount(),
                client.V1VolumeMount(
                    name=INPUT_TF_CONFIGURATION_VOLUME_NAME,
                    mount_path=INPUT_TF_CONFIGURATION_VOLUME_MOUNT_PATH,
                ),
            ],
            env=self.envs or None,
        )
        if not quota.is_empty():
            container.resources = resource_requirements(quota)
        return container

    # =========================================================================
    # Volumes
    # =========================================================================

    def volumes(self, configuration_cm_name: str) -> List[client.V1Volume]:
        volumes = [
            client.V1Volume(name=self.name, empty_dir=client.V1EmptyDirVolumeSource()),
            client.V1Volume(
                name=INPUT_TF_CONFIGURATION_VOLUME_NAME,
                config_map=client.V1ConfigMapVolumeSource(name=configuration_cm_name),
            ),
            client.V1Volume(name=BACKEND_VOLUME_NAME, empty_dir=client.V1EmptyDirVolumeSource()),
        ]
        references = [
            (self.git_credentials, GIT_AUTH_CONFIG_VOLUME_NAME, True),
            (self.terraform_credentials, TERRAFORM_CREDENTIALS_VOLUME_NAME, True),
            (self.terraform_rc, TERRAFORM_RC_VOLUME_NAME, False),
            (self.terraform_credentials_helper, TERRAFORM_CREDENTIALS_HELPER_VOLUME_NAME, False),
        ]
        for ref, volume_name, is_secret in references:
            if ref is None:
                continue
            if is_secret:
                volumes.append(client.V1Volume(
                    name=volume_name,
                    secret=client.V1SecretVolumeSource(
                        secret_name=ref.name, default_mode=SECRET_VOLUME_DEFAULT_MODE
                    ),
                ))
            else:
                volumes.append(client.V1Volume(
                    name=volume_name,
                    config_map=client.V1ConfigMapVolumeSource(
                        name=ref.name, default_mode=SECRET_VOLUME_DEFAULT_MODE
                    ),
                ))
        return volumes

    # =========================================================================
    # Job
    # =========================================================================

    def build_job(
        self,
        job_name: str,
        namespace: str,
        execution_type: ExecutionType,
        configuration_cm_name: str,
        quota: ResourceQuota,
        backoff_limit: int,
        node_selector: Dict[str, str] | None = None,
    ) -> client.V1Job:
        """
        Assemble the executor Job.

        Args:
            job_name: Name of the Job
            namespace: Namespace the Job runs in
            execution_type: apply or destroy
            configuration_cm_name: ConfigMap holding the rendered configuration
            quota: Compute resources of the main container
            backoff_limit: Retries before the Job is marked failed
            node_selector: Optional node selector of the Pod

        Returns:
            The Job, ready to be created
        """
        init_containers = [self.input_container()]
        if self.git.url:
            init_containers.append(self.git_container())
        init_containers.append(self.init_container())

        return client.V1Job(
            api_version="batch/v1",
            kind="Job",
            metadata=client.V1ObjectMeta(name=job_name, namespace=namespace),
            spec=client.V1JobSpec(
                parallelism=1,
                completions=1,
                backoff_limit=backoff_limit,
                template=client.V1PodTemplateSpec(
                    # an injected istio-proxy sidecar would keep the Job running forever
                    metadata=client.V1ObjectMeta(annotations={"sidecar.istio.io/inject": "false"}),
                    spec=client.V1PodSpec(
                        init_containers=init_containers,
                        containers=[self.apply_container(execution_type, quota)],
                        service_account_name=SERVICE_ACCOUNT_NAME,
                        volumes=self.volumes(configuration_cm_name),
                        restart_policy="OnFailure",
                        node_selector=node_selector or None,
                    ),
                ),
            ),
        )


def resource_requirements(quota: ResourceQuota) -> client.V1ResourceRequirements:
    """Limits and requests holding only the non-empty quota values."""
    limits = {}
    if quota.limits_cpu:
        limits["cpu"] = quota.limits_cpu
    if quota.limits_memory:
        limits["memory"] = quota.limits_memory
    requests = {}
    if quota.requests_cpu:
        requests["cpu"] = quota.requests_cpu
    if quota.requests_memory:
        requests["memory"] = quota.requests_memory
    return client.V1ResourceRequirements(limits=limits or None, requests=requests or None)
