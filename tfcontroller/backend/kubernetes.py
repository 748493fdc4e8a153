"""
Terraform `kubernetes` backend - state kept in a Secret.

Only the `default` Terraform workspace is supported, so the Secret is always
named tfstate-default-<suffix>.
"""

import logging
from typing import Any, Dict

from ..cluster import ClusterClient
from ..errors import ConfigurationError, NotFoundError, StorageNotFoundError
from .base import Backend, BackendContext
from .state import decompress_state

logger = logging.getLogger(__name__)

TERRAFORM_WORKSPACE = "default"
TFSTATE_KEY = "tfstate"

BACKEND_HCL_TEMPLATE = """
terraform {{
  backend "kubernetes" {{
    secret_suffix     = "{suffix}"
    in_cluster_config = true
    namespace         = "{namespace}"
  }}
}}
"""


def render_kubernetes_backend_hcl(suffix: str, namespace: str) -> str:
    return BACKEND_HCL_TEMPLATE.format(suffix=suffix, namespace=namespace)


class KubernetesBackend(Backend):
    """State stored in the Secret tfstate-default-<suffix> of one namespace."""

    backend_type = "kubernetes"

    def __init__(self, cluster: ClusterClient, secret_suffix: str, secret_namespace: str):
        """
        Initialize the kubernetes backend driver.

        Args:
            cluster: Cluster client used to read and delete the state Secret
            secret_suffix: Suffix of the state Secret name
            secret_namespace: Namespace holding the state Secret
        """
        if not secret_suffix:
            raise ConfigurationError("secret_suffix of the kubernetes backend must not be empty")
        self.cluster = cluster
        self.secret_suffix = secret_suffix
        self.secret_namespace = secret_namespace

    @property
    def secret_name(self) -> str:
        return f"tfstate-{TERRAFORM_WORKSPACE}-{self.secret_suffix}"

    def hcl(self) -> str:
        return render_kubernetes_backend_hcl(self.secret_suffix, self.secret_namespace)

    def fetch_state(self) -> bytes | None:
        try:
            secret = self.cluster.get_secret(self.secret_namespace, self.secret_name)
        except NotFoundError:
            logger.debug(f"State Secret {self.secret_namespace}/{self.secret_name} does not exist yet")
            return None

        data = secret.data.get(TFSTATE_KEY)
        if data is None:
            raise StorageNotFoundError(
                f"failed to get {TFSTATE_KEY} from Terraform state Secret {self.secret_namespace}/{self.secret_name}"
            )
        return decompress_state(data)

    def cleanup(self) -> None:
        logger.info(f"Deleting the Secret {self.secret_namespace}/{self.secret_name} which stores Terraform state")
        try:
            self.cluster.delete_secret(self.secret_namespace, self.secret_name)
        except NotFoundError:
            logger.debug(f"State Secret {self.secret_name} is already gone")

    def __repr__(self) -> str:
        return f"KubernetesBackend(secret={self.secret_namespace}/{self.secret_name})"


def new_kubernetes_backend(conf: Dict[str, Any], ctx: BackendContext) -> KubernetesBackend:
    """
    Build a kubernetes backend from parsed inline HCL or the explicit spec block.

    Args:
        conf: Backend attributes (`secret_suffix`, optional `namespace`)
        ctx: Resolution context
    """
    suffix = conf.get("secret_suffix") or ""
    if not suffix:
        raise ConfigurationError("cannot find attr secret_suffix in the kubernetes backend configuration")
    namespace = conf.get("namespace") or ctx.default_backend_namespace
    return KubernetesBackend(ctx.cluster, str(suffix), str(namespace))
