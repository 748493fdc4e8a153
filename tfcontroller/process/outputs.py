"""
State Reader / Output Publisher.

Reads the Terraform state through the resolved backend, stringifies its
outputs and writes them to the Secret named by writeConnectionSecretToRef.
That Secret has a single owner, recorded in its labels.
"""

import logging
from typing import Dict

from pydantic import ValidationError

from ..backend import Backend
from ..cluster import ClusterClient, SecretObject
from ..convert import interface_to_string
from ..errors import AlreadyExistsError, NoBackendError, NotFoundError, OwnershipConflictError, StateDecodeError
from ..models import (
    CREATED_BY_VALUE,
    DEFAULT_NAMESPACE,
    LABEL_CREATED_BY,
    LABEL_OWNED_BY,
    LABEL_OWNED_NAMESPACE,
    Configuration,
    Property,
    TerraformState,
)

logger = logging.getLogger(__name__)


def parse_state(raw: bytes) -> TerraformState:
    """
    Parse a Terraform state document.

    Raises:
        StateDecodeError: If the document is not a JSON object
    """
    try:
        return TerraformState.model_validate_json(raw)
    except ValidationError as e:
        raise StateDecodeError(f"failed to parse Terraform state: {e}") from e


def read_outputs(backend: Backend | None) -> Dict[str, Property]:
    """
    Fetch the state and stringify its outputs.

    Returns:
        Output name to Property, empty while no state exists

    Raises:
        NoBackendError: If no backend was resolved
    """
    if backend is None:
        raise NoBackendError("no backend resolved, cannot read the Terraform state")
    raw = backend.fetch_state()
    if raw is None:
        logger.debug(f"No Terraform state in {backend!r} yet")
        return {}
    state = parse_state(raw)
    return {name: Property(value=interface_to_string(output.value)) for name, output in state.outputs.items()}


def _owner_conflict(secret: SecretObject, configuration: Configuration) -> bool:
    owner_name = secret.labels.get(LABEL_OWNED_BY, "")
    owner_namespace = secret.labels.get(LABEL_OWNED_NAMESPACE, "")
    return bool(
        (owner_name and owner_name != configuration.name)
        or (owner_namespace and owner_namespace != configuration.namespace)
    )


def publish_outputs(cluster: ClusterClient, configuration: Configuration, outputs: Dict[str, Property]) -> None:
    """
    Write outputs to the connection Secret of a Configuration.

    Raises:
        OwnershipConflictError: If the Secret belongs to another Configuration,
            or appeared between the read and the create
    """
    ref = configuration.spec.write_connection_secret_to_reference
    if ref is None or not ref.name:
        return

    name = ref.name
    namespace = ref.namespace or DEFAULT_NAMESPACE
    data = {k: v.value.encode("utf-8") for k, v in outputs.items()}

    try:
        existing = cluster.get_secret(namespace, name)
    except NotFoundError:
        secret = SecretObject(
            name=name,
            namespace=namespace,
            data=data,
            labels={
                LABEL_CREATED_BY: CREATED_BY_VALUE,
                LABEL_OWNED_BY: configuration.name,
                LABEL_OWNED_NAMESPACE: configuration.namespace,
            },
        )
        try:
            cluster.create_secret(secret)
        except AlreadyExistsError as e:
            raise OwnershipConflictError(f"secret({name}) already exists") from e
        logger.info(f"Created output Secret {namespace}/{name} for {configuration.namespace}/{configuration.name}")
        return

    if _owner_conflict(existing, configuration):
        raise OwnershipConflictError(
            f"configuration(namespace: {configuration.namespace} ; name: {configuration.name}) cannot update "
            f"secret(namespace: {namespace} ; name: {name}) whose owner is configuration("
            f"namespace: {existing.labels.get(LABEL_OWNED_NAMESPACE, '')} ; "
            f"name: {existing.labels.get(LABEL_OWNED_BY, '')})"
        )

    existing.data = data
    cluster.update_secret(existing)
    logger.debug(f"Updated output Secret {namespace}/{name}")


def collect_outputs(cluster: ClusterClient, backend: Backend | None, configuration: Configuration) -> Dict[str, Property]:
    """
    Read the outputs of a Configuration and publish them.

    Args:
        cluster: Cluster client
        backend: The resolved backend of the Configuration
        configuration: Configuration whose outputs are collected

    Returns:
        Output name to Property
    """
    outputs = read_outputs(backend)
    publish_outputs(cluster, configuration, outputs)
    return outputs
