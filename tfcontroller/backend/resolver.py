"""
Backend Resolver - turns a Configuration's backend declaration into a driver.

Exactly one of three paths is taken per call:
- no declaration (or no type and no inline code): the default kubernetes backend
- `inline`: free-form HCL, parsed with python-hcl2
- `backendType`: the matching structured sub-block of the declaration

The factory registry is an immutable mapping handed to the resolver, so tests
can resolve against a reduced set of backend types.
"""

import logging
from types import MappingProxyType
from typing import Any, Callable, Dict, Mapping, Tuple

import hcl2
from pydantic import BaseModel

from ..cluster import ClusterClient
from ..errors import ConfigurationError, ParseError
from ..models import Configuration
from .base import Backend, BackendContext
from .kubernetes import KubernetesBackend, new_kubernetes_backend
from .s3 import new_s3_backend

logger = logging.getLogger(__name__)

BackendFactory = Callable[[Dict[str, Any], BackendContext], Backend]

DEFAULT_BACKEND_FACTORIES: Mapping[str, BackendFactory] = MappingProxyType({
    "kubernetes": new_kubernetes_backend,
    "s3": new_s3_backend,
})

# Attributes that point at local files, which do not exist inside the executor Pod
LOCAL_FILE_ATTRIBUTES: Mapping[str, Tuple[str, ...]] = MappingProxyType({
    "azurerm": ("client_certificate_path",),
    "consul": ("ca_file", "cert_file", "key_file"),
    "etcdv3": ("cacert_path", "cert_path", "key_path"),
    "gcs": ("credentials",),
    "kubernetes": ("config_path", "config_paths"),
    "oss": ("shared_credentials_file",),
    "s3": ("shared_credentials_file",),
    "swift": ("cacert_file", "cert", "key"),
})


def _unquote(value: Any) -> Any:
    """Strip the quotes some python-hcl2 releases keep around strings and labels."""
    if isinstance(value, str) and len(value) >= 2 and value[0] == value[-1] == '"':
        return value[1:-1]
    return value


def _first_block(blocks: Any) -> Dict[str, Any]:
    """python-hcl2 returns every block as a list of dicts."""
    if isinstance(blocks, list):
        return blocks[0] if blocks and isinstance(blocks[0], dict) else {}
    return blocks if isinstance(blocks, dict) else {}


def _strip_meta(block: Dict[str, Any]) -> Dict[str, Any]:
    """Drop bookkeeping keys such as __is_block__ or __start_line__."""
    return {k: v for k, v in block.items() if not (k.startswith("__") and k.endswith("__"))}


def _labelled_block(backend_blocks: Any) -> Tuple[str, Dict[str, Any]]:
    """Return (label, attributes) of a parsed `backend "<label>" {}` block."""
    block = _strip_meta(_first_block(backend_blocks))
    if len(block) != 1:
        return "", {}
    label, body = next(iter(block.items()))
    attrs = _strip_meta(_first_block(body))
    return str(_unquote(label)), {k: _unquote(v) for k, v in attrs.items()}


def parse_inline_backend(code: str) -> Tuple[str, Dict[str, Any]]:
    """
    Parse inline backend HCL.

    The code is first read as a full `terraform { backend "x" { ... } }` file;
    when that yields no backend type it is read as a bare `backend "x" { ... }`
    block.

    Args:
        code: Inline HCL from spec.backend.inline

    Returns:
        Tuple of (backend type, backend attributes)

    Raises:
        ParseError: If the code is not valid HCL or holds no backend block
    """
    try:
        parsed = hcl2.loads(code)
    except Exception as e:
        raise ParseError(
            f"there are syntax errors in the inline backend hcl code: {e}", "spec.backend.inline"
        ) from e

    terraform_block = _first_block(parsed.get("terraform"))
    name, attrs = _labelled_block(terraform_block.get("backend"))
    if not name:
        name, attrs = _labelled_block(parsed.get("backend"))
    if not name:
        raise ParseError(
            "the inline backend hcl code is not valid Terraform backend configuration",
            "spec.backend.inline",
        )
    return name, attrs


class BackendResolver:
    """Resolves the backend driver of a Configuration; never touches storage."""

    def __init__(
        self,
        cluster: ClusterClient,
        default_backend_namespace: str,
        factories: Mapping[str, BackendFactory] = DEFAULT_BACKEND_FACTORIES,
    ):
        """
        Initialize the resolver.

        Args:
            cluster: Cluster client handed to drivers that keep state in the cluster
            default_backend_namespace: Namespace of the default kubernetes backend
            factories: Backend type to factory registry
        """
        self.cluster = cluster
        self.default_backend_namespace = default_backend_namespace
        self.factories = MappingProxyType(dict(factories))

    def resolve(self, configuration: Configuration, credentials: Dict[str, str] | None = None) -> Backend:
        """
        Resolve the backend of a Configuration.

        Args:
            configuration: Configuration whose spec.backend is resolved
            credentials: Provider credentials, used by cloud storage backends

        Returns:
            Backend driver

        Raises:
            ConfigurationError: On conflicting, unsupported or incomplete declarations
            ParseError: On malformed inline HCL
        """
        ctx = BackendContext(
            cluster=self.cluster,
            default_backend_namespace=self.default_backend_namespace,
            credentials=dict(credentials or {}),
        )
        backend = configuration.spec.backend

        if backend is None or (not backend.inline and not backend.backend_type):
            if backend is not None:
                logger.warning(
                    f"spec.backend.backendType of Configuration {configuration.namespace}/{configuration.name} "
                    "is empty, use the default kubernetes backend"
                )
            return self._default_backend(configuration)

        if backend.inline and backend.backend_type:
            raise ConfigurationError("spec.backend.inline and spec.backend.backendType are mutually exclusive")

        if backend.inline:
            backend_type, conf = parse_inline_backend(backend.inline)
            backend_type = backend_type.lower()
            self._check_local_file_attributes(backend_type, conf)
        else:
            backend_type = backend.backend_type.lower()
            block = getattr(backend, backend_type, None) if backend_type in type(backend).model_fields else None
            if not isinstance(block, BaseModel):
                raise ConfigurationError(f"there is no configuration for backendType {backend.backend_type}")
            conf = block.model_dump()

        factory = self.factories.get(backend_type)
        if factory is None:
            raise ConfigurationError(f"{backend_type} is unsupported backendType")

        driver = factory(conf, ctx)
        logger.debug(f"Resolved backend {driver!r} for Configuration {configuration.namespace}/{configuration.name}")
        return driver

    def _default_backend(self, configuration: Configuration) -> KubernetesBackend:
        backend = configuration.spec.backend
        suffix = backend.secret_suffix if backend is not None and backend.secret_suffix else configuration.name
        return KubernetesBackend(self.cluster, suffix, self.default_backend_namespace)

    @staticmethod
    def _check_local_file_attributes(backend_type: str, conf: Dict[str, Any]) -> None:
        for attr in LOCAL_FILE_ATTRIBUTES.get(backend_type, ()):
            if attr in conf:
                raise ConfigurationError(
                    f"{attr} is not supported in the inline backend hcl code as we cannot use "
                    "local file paths in the kubernetes cluster"
                )
