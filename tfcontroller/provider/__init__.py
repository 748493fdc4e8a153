"""
Provider lookup and credential mapping.
"""

from .credentials import (
    ERR_CREDENTIALS_NOT_RETRIEVED,
    get_provider,
    get_provider_credentials,
    is_provider_ready,
    resolve_region,
)

__all__ = [
    "ERR_CREDENTIALS_NOT_RETRIEVED",
    "get_provider",
    "get_provider_credentials",
    "is_provider_ready",
    "resolve_region",
]
