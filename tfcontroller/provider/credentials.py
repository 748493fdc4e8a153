"""
Provider credentials - turns the Secret referenced by a Provider into the
environment variables the Terraform provider plugins read.
"""

import logging
from types import MappingProxyType
from typing import Dict, Mapping, Tuple

import yaml

from ..cluster import ClusterClient
from ..convert import interface_to_string
from ..errors import CredentialResolutionError, NotFoundError
from ..models import Configuration, Provider

logger = logging.getLogger(__name__)

ERR_CONVERT_CREDENTIALS = "failed to convert the credentials of Secret from Provider"
ERR_CREDENTIALS_NOT_RETRIEVED = "Credentials are not retrieved from referenced Provider"
PROVIDER_NOT_READY = "ProviderNotReady"

# vendor -> ((yaml key, env name), ...)
_VENDOR_KEYS: Mapping[str, Tuple[Tuple[str, str], ...]] = MappingProxyType({
    "alibaba": (
        ("accessKeyID", "ALICLOUD_ACCESS_KEY"),
        ("accessKeySecret", "ALICLOUD_SECRET_KEY"),
        ("securityToken", "ALICLOUD_SECURITY_TOKEN"),
    ),
    "aws": (
        ("awsAccessKeyID", "AWS_ACCESS_KEY_ID"),
        ("awsSecretAccessKey", "AWS_SECRET_ACCESS_KEY"),
        ("awsSessionToken", "AWS_SESSION_TOKEN"),
    ),
    "gcp": (
        ("gcpCredentialsJSON", "GOOGLE_CREDENTIALS"),
        ("gcpProject", "GOOGLE_PROJECT"),
    ),
    "tencent": (
        ("secretID", "TENCENTCLOUD_SECRET_ID"),
        ("secretKey", "TENCENTCLOUD_SECRET_KEY"),
    ),
    "azure": (
        ("armClientID", "ARM_CLIENT_ID"),
        ("armClientSecret", "ARM_CLIENT_SECRET"),
        ("armSubscriptionID", "ARM_SUBSCRIPTION_ID"),
        ("armTenantID", "ARM_TENANT_ID"),
    ),
    "ucloud": (
        ("publicKey", "UCLOUD_PUBLIC_KEY"),
        ("privateKey", "UCLOUD_PRIVATE_KEY"),
        ("region", "UCLOUD_REGION"),
        ("projectID", "UCLOUD_PROJECT_ID"),
    ),
    "vsphere": (
        ("vSphereUser", "VSPHERE_USER"),
        ("vSpherePassword", "VSPHERE_PASSWORD"),
        ("vSphereServer", "VSPHERE_SERVER"),
        ("vSphereAllowUnverifiedSSL", "VSPHERE_ALLOW_UNVERIFIED_SSL"),
    ),
    "ec": (
        ("ecApiKey", "EC_API_KEY"),
    ),
})

# vendor -> env name carrying the resolved region
_REGION_ENV: Mapping[str, str] = MappingProxyType({
    "alibaba": "ALICLOUD_REGION",
    "aws": "AWS_DEFAULT_REGION",
    "gcp": "GOOGLE_REGION",
    "tencent": "TENCENTCLOUD_REGION",
})

CUSTOM_PROVIDER = "custom"


def get_provider(cluster: ClusterClient, configuration: Configuration) -> Provider | None:
    """
    Fetch the Provider referenced by a Configuration.

    Returns:
        The Provider, or None when it does not exist
    """
    ref = configuration.provider_namespaced_name()
    try:
        return Provider.from_object(cluster.get_provider(ref.namespace, ref.name))
    except NotFoundError:
        logger.info(f"Provider {ref.namespace}/{ref.name} referenced by {configuration.name} not found")
        return None


def is_provider_ready(provider: Provider) -> bool:
    return provider.status.state != PROVIDER_NOT_READY


def resolve_region(configuration: Configuration, provider: Provider) -> str:
    """customRegion of the Configuration wins over the Provider region."""
    return configuration.spec.region or provider.spec.region


def get_provider_credentials(cluster: ClusterClient, provider: Provider, region: str) -> Dict[str, str]:
    """
    Read the credentials of a Provider.

    Args:
        cluster: Cluster client
        provider: Provider whose credentials Secret is read
        region: Region exported next to the credentials

    Returns:
        Environment variable name to value

    Raises:
        CredentialResolutionError: If the Secret, its key, or the vendor is unusable
    """
    credentials = provider.spec.credentials
    if credentials.source != "Secret":
        raise CredentialResolutionError(f"the credentials type {credentials.source} is not supported")

    ref = credentials.secret_ref
    if ref is None or not ref.name:
        raise CredentialResolutionError(f"the provider {provider.name} does not reference a credentials Secret")

    try:
        secret = cluster.get_secret(ref.namespace or provider.metadata.namespace, ref.name)
    except NotFoundError as e:
        raise CredentialResolutionError(f"failed to get the Secret from Provider: {e}") from e

    raw = secret.data.get(ref.key)
    if raw is None:
        raise CredentialResolutionError(
            f"in the provider {provider.name}, the key {ref.key} not found in the referenced secret {ref.name}"
        )

    try:
        document = yaml.safe_load(raw.decode("utf-8")) or {}
    except (yaml.YAMLError, UnicodeDecodeError) as e:
        logger.error(f"{ERR_CONVERT_CREDENTIALS}: {ref.namespace}/{ref.name}: {e}")
        raise CredentialResolutionError(f"{ERR_CONVERT_CREDENTIALS}: {e}") from e
    if not isinstance(document, dict):
        raise CredentialResolutionError(f"{ERR_CONVERT_CREDENTIALS}: expected a mapping")

    vendor = provider.spec.provider
    if vendor == CUSTOM_PROVIDER:
        return {str(k): interface_to_string(v) for k, v in document.items()}

    keys = _VENDOR_KEYS.get(vendor)
    if keys is None:
        raise CredentialResolutionError(f"unsupported provider {vendor}")

    env = {env_name: interface_to_string(document.get(yaml_key)) for yaml_key, env_name in keys}
    region_env = _REGION_ENV.get(vendor)
    if region_env:
        env[region_env] = region
    return env
