"""
Terraform `s3` backend - state kept as a plain JSON object in a bucket.
"""

import logging
from typing import Any, Dict

import boto3
from botocore.exceptions import ClientError

from ..errors import ConfigurationError, CredentialResolutionError
from .base import Backend, BackendContext

logger = logging.getLogger(__name__)

ENV_AWS_ACCESS_KEY_ID = "AWS_ACCESS_KEY_ID"
ENV_AWS_SECRET_ACCESS_KEY = "AWS_SECRET_ACCESS_KEY"
ENV_AWS_SESSION_TOKEN = "AWS_SESSION_TOKEN"
ENV_AWS_DEFAULT_REGION = "AWS_DEFAULT_REGION"

_ALREADY_CLEAN_CODES = {"NoSuchBucket", "NoSuchKey", "404"}

BACKEND_HCL_TEMPLATE = """
terraform {{
  backend "s3" {{
    bucket = "{bucket}"
    key    = "{key}"
    region = "{region}"
  }}
}}
"""


def _error_code(error: ClientError) -> str:
    return str(error.response.get("Error", {}).get("Code", ""))


class S3Backend(Backend):
    """State stored uncompressed at (bucket, key)."""

    backend_type = "s3"

    def __init__(self, client: Any, bucket: str, key: str, region: str):
        """
        Initialize the s3 backend driver.

        Args:
            client: boto3 S3 client
            bucket: Bucket holding the state
            key: Object key of the state
            region: AWS region of the bucket
        """
        self.client = client
        self.bucket = bucket
        self.key = key
        self.region = region

    def hcl(self) -> str:
        return BACKEND_HCL_TEMPLATE.format(bucket=self.bucket, key=self.key, region=self.region)

    def fetch_state(self) -> bytes | None:
        try:
            response = self.client.get_object(Bucket=self.bucket, Key=self.key)
        except ClientError as e:
            if _error_code(e) == "NoSuchKey":
                logger.debug(f"State object s3://{self.bucket}/{self.key} does not exist yet")
                return None
            raise
        body = response["Body"]
        try:
            return body.read()
        finally:
            body.close()

    def cleanup(self) -> None:
        logger.info(f"Deleting the state object s3://{self.bucket}/{self.key}")
        try:
            self.client.head_object(Bucket=self.bucket, Key=self.key)
            self.client.delete_object(Bucket=self.bucket, Key=self.key)
        except ClientError as e:
            if _error_code(e) in _ALREADY_CLEAN_CODES:
                logger.debug(f"State object s3://{self.bucket}/{self.key} is already gone ({_error_code(e)})")
                return
            raise

    def __repr__(self) -> str:
        return f"S3Backend(bucket={self.bucket!r}, key={self.key!r}, region={self.region!r})"


def new_s3_backend(conf: Dict[str, Any], ctx: BackendContext) -> S3Backend:
    """
    Build an s3 backend from parsed inline HCL or the explicit spec block.

    Credentials come from the Provider of the Configuration; the region falls
    back to the Provider's AWS_DEFAULT_REGION.

    Raises:
        ConfigurationError: If bucket or key is missing
        CredentialResolutionError: If the access key pair is missing
    """
    bucket = conf.get("bucket") or ""
    key = conf.get("key") or ""
    if not bucket or not key:
        raise ConfigurationError("bucket and key are required by the s3 backend")

    credentials = ctx.credentials
    access_key = credentials.get(ENV_AWS_ACCESS_KEY_ID, "")
    secret_key = credentials.get(ENV_AWS_SECRET_ACCESS_KEY, "")
    if not access_key or not secret_key:
        raise CredentialResolutionError("fail to get credentials when build s3 backend")

    region = conf.get("region") or credentials.get(ENV_AWS_DEFAULT_REGION, "")
    client = boto3.client(
        "s3",
        aws_access_key_id=access_key,
        aws_secret_access_key=secret_key,
        aws_session_token=credentials.get(ENV_AWS_SESSION_TOKEN) or None,
        region_name=region or None,
    )
    return S3Backend(client, str(bucket), str(key), str(region))
