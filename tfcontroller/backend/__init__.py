"""
Terraform state backends and the resolver that picks one per Configuration.
"""

from .base import Backend, BackendContext
from .kubernetes import KubernetesBackend, new_kubernetes_backend
from .resolver import DEFAULT_BACKEND_FACTORIES, BackendResolver, parse_inline_backend
from .s3 import S3Backend, new_s3_backend
from .state import compress_state, decompress_state

__all__ = [
    "Backend",
    "BackendContext",
    "BackendResolver",
    "DEFAULT_BACKEND_FACTORIES",
    "KubernetesBackend",
    "S3Backend",
    "compress_state",
    "decompress_state",
    "new_kubernetes_backend",
    "new_s3_backend",
    "parse_inline_backend",
]
