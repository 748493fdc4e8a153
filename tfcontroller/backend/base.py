"""
Base class for Terraform state backends.

A backend driver knows three things: the backend block to embed in the
rendered Terraform configuration, how to read the state Terraform wrote, and
how to remove that state once the Configuration is gone.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict

from ..cluster import ClusterClient


@dataclass(frozen=True)
class BackendContext:
    """What a backend factory may use besides the backend attributes."""
    cluster: ClusterClient
    default_backend_namespace: str
    credentials: Dict[str, str] = field(default_factory=dict)


class Backend(ABC):
    """Uniform capability over one Terraform state storage technology."""

    #: Terraform backend type name, e.g. "kubernetes" or "s3"
    backend_type: str = ""

    @abstractmethod
    def hcl(self) -> str:
        """Return the `terraform { backend ... }` block to embed in the configuration."""

    @abstractmethod
    def fetch_state(self) -> bytes | None:
        """
        Read the raw Terraform state JSON.

        Returns:
            The state document, or None when no state has been written yet
        """

    @abstractmethod
    def cleanup(self) -> None:
        """Delete the stored state; an already missing state is not an error."""

    def __repr__(self) -> str:
        return f"{type(self).__name__}(type={self.backend_type!r})"
