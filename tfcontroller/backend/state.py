"""
Codec for state stored by the Terraform kubernetes backend.

Terraform gzips the state JSON and stores the result in the `tfstate` key of
the backend Secret. The only base64 layer is the API server's encoding of
Secret data, which ClusterClient strips, so the codec works on raw gzip bytes.
"""

import gzip
import zlib

from ..errors import StateDecodeError


def compress_state(state: bytes) -> bytes:
    """Encode a state document the way the kubernetes backend stores it."""
    return gzip.compress(state)


def decompress_state(data: bytes) -> bytes:
    """
    Decode state read from the kubernetes backend Secret.

    Raises:
        StateDecodeError: If the payload is not gzip data
    """
    try:
        return gzip.decompress(data)
    except (OSError, EOFError, zlib.error) as e:
        raise StateDecodeError(f"failed to decompress state payload: {e}") from e
