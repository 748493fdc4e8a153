"""Tests for reading Terraform outputs and publishing them to a Secret."""

import json
from unittest.mock import Mock, patch

import pytest

from tfcontroller.cluster import SecretObject
from tfcontroller.errors import NoBackendError, NotFoundError, OwnershipConflictError, StateDecodeError
from tfcontroller.models import Configuration, Property
from tfcontroller.process import collect_outputs, interface_to_string, publish_outputs, read_outputs

from tests.conftest import FakeCluster, make_configuration

OWNER_LABELS = {
    "terraform.core.oam.dev/created-by": "terraform-controller",
    "terraform.core.oam.dev/owned-by": "config-a",
    "terraform.core.oam.dev/owned-namespace": "default",
}


def configuration(name="config-a", namespace="default", secret_ref=None) -> Configuration:
    spec = {}
    if secret_ref is not None:
        spec["writeConnectionSecretToRef"] = secret_ref
    return Configuration.from_object(make_configuration(name=name, namespace=namespace, **spec))


def backend_with_state(state) -> Mock:
    backend = Mock()
    backend.fetch_state.return_value = None if state is None else json.dumps(state).encode()
    return backend


class TestInterfaceToString:
    """Tests for stringifying output and variable values."""

    def test_string_unchanged(self):
        assert interface_to_string("hello") == "hello"
        assert interface_to_string("") == ""

    def test_numbers(self):
        assert interface_to_string(1) == "1"
        assert interface_to_string(1.0) == "1"
        assert interface_to_string(2.5) == "2.5"

    def test_booleans(self):
        assert interface_to_string(True) == "true"
        assert interface_to_string(False) == "false"

    def test_null_is_empty(self):
        assert interface_to_string(None) == ""

    def test_collections_are_compact_sorted_json(self):
        assert interface_to_string({"b": 1, "a": [1, "x"]}) == '{"a":[1,"x"],"b":1}'
        assert interface_to_string(["a", "b"]) == '["a","b"]'


class TestReadOutputs:
    """Tests for read_outputs."""

    def test_no_backend(self):
        with pytest.raises(NoBackendError):
            read_outputs(None)

    def test_no_state_yet(self):
        """Outputs are empty until Terraform writes a state."""
        assert read_outputs(backend_with_state(None)) == {}

    def test_outputs_are_stringified(self):
        state = {
            "version": 4,
            "resources": [{"type": "null_resource"}],
            "outputs": {
                "x": {"value": "1", "type": "string"},
                "port": {"value": 5432, "type": "number"},
                "tags": {"value": {"env": "prod"}, "type": ["map", "string"]},
                "empty": {"value": None, "type": "string"},
            },
        }
        outputs = read_outputs(backend_with_state(state))
        assert {k: v.value for k, v in outputs.items()} == {
            "x": "1",
            "port": "5432",
            "tags": '{"env":"prod"}',
            "empty": "",
        }

    def test_state_without_outputs(self):
        assert read_outputs(backend_with_state({"version": 4})) == {}

    def test_corrupt_state(self):
        backend = Mock()
        backend.fetch_state.return_value = b"{not json"
        with pytest.raises(StateDecodeError):
            read_outputs(backend)


class TestPublishOutputs:
    """Tests for writing outputs to the connection Secret."""

    def test_no_reference_writes_nothing(self):
        fake = FakeCluster()
        publish_outputs(fake, configuration(), {"x": Property(value="1")})
        assert fake.calls == []

    def test_creates_secret_with_owner_labels(self):
        fake = FakeCluster()
        publish_outputs(fake, configuration(secret_ref={"name": "conn", "namespace": "apps"}), {"x": Property(value="1")})

        secret = fake.secrets[("apps", "conn")]
        assert secret.data == {"x": b"1"}
        assert secret.labels == OWNER_LABELS

    def test_namespace_defaults_to_default(self):
        fake = FakeCluster()
        publish_outputs(fake, configuration(secret_ref={"name": "conn"}), {})
        assert ("default", "conn") in fake.secrets

    def test_owner_updates_its_secret(self):
        fake = FakeCluster()
        fake.secrets[("default", "conn")] = SecretObject(
            name="conn", namespace="default", data={"x": b"old"}, labels=dict(OWNER_LABELS)
        )
        publish_outputs(fake, configuration(secret_ref={"name": "conn"}), {"x": Property(value="new")})
        assert fake.secrets[("default", "conn")].data == {"x": b"new"}

    @pytest.mark.parametrize("name,namespace", [("config-b", "default"), ("config-a", "other")])
    def test_other_owner_conflicts_and_data_is_untouched(self, name, namespace):
        """A Configuration with a different name or namespace cannot overwrite the Secret."""
        fake = FakeCluster()
        fake.secrets[("default", "conn")] = SecretObject(
            name="conn", namespace="default", data={"x": b"owned"}, labels=dict(OWNER_LABELS)
        )
        intruder = configuration(name=name, namespace=namespace, secret_ref={"name": "conn", "namespace": "default"})

        with pytest.raises(OwnershipConflictError):
            publish_outputs(fake, intruder, {"x": Property(value="stolen")})

        assert fake.secrets[("default", "conn")].data == {"x": b"owned"}
        assert fake.actions("Secret") == []

    def test_unlabelled_secret_is_adopted(self):
        """A Secret without owner labels can be written by anyone."""
        fake = FakeCluster()
        fake.secrets[("default", "conn")] = SecretObject(name="conn", namespace="default", data={"y": b"2"})
        publish_outputs(fake, configuration(secret_ref={"name": "conn"}), {"x": Property(value="1")})
        assert fake.secrets[("default", "conn")].data == {"x": b"1"}

    def test_secret_created_concurrently(self):
        """A Secret appearing between the read and the create is a conflict."""
        fake = FakeCluster()
        fake.secrets[("default", "conn")] = SecretObject(name="conn", namespace="default")
        with patch.object(fake, "get_secret", side_effect=NotFoundError("gone", status=404)):
            with pytest.raises(OwnershipConflictError, match=r"secret\(conn\) already exists"):
                publish_outputs(fake, configuration(secret_ref={"name": "conn"}), {})


class TestCollectOutputs:
    """Tests for collect_outputs."""

    def test_reads_and_publishes(self):
        fake = FakeCluster()
        outputs = collect_outputs(
            fake,
            backend_with_state({"outputs": {"x": {"value": "1"}}}),
            configuration(secret_ref={"name": "conn"}),
        )
        assert outputs == {"x": Property(value="1")}
        assert fake.secrets[("default", "conn")].data == {"x": b"1"}
