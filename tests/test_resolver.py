"""Tests for backend resolution.

This module covers the three resolution paths:
- no declaration: the default kubernetes backend keyed by the Configuration name
- inline HCL, parsed as a full terraform block or a bare backend block
- explicit backendType with its structured sub-block
and the injected factory registry.
"""

from types import MappingProxyType
from unittest.mock import Mock

import pytest

from tfcontroller.backend import BackendResolver, KubernetesBackend, parse_inline_backend
from tfcontroller.errors import ConfigurationError, ParseError
from tfcontroller.models import Configuration

from tests.conftest import FakeCluster, make_configuration


def configuration(**spec) -> Configuration:
    return Configuration.from_object(make_configuration(**spec))


@pytest.fixture
def fake():
    return FakeCluster()


@pytest.fixture
def recording_factory():
    """A factory registry entry that records what it was asked to build."""
    factory = Mock(name="factory")
    factory.return_value = Mock(name="backend")
    return factory


class TestDefaultBackend:
    """Tests for configurations without a usable backend declaration."""

    def test_no_declaration_uses_configuration_name(self, fake):
        """The state Secret suffix equals the Configuration name."""
        backend = BackendResolver(fake, "vela-system").resolve(configuration(name="my-db"))
        assert isinstance(backend, KubernetesBackend)
        assert backend.secret_suffix == "my-db"
        assert backend.secret_namespace == "vela-system"

    def test_secret_suffix_override(self, fake):
        backend = BackendResolver(fake, "vela-system").resolve(
            configuration(name="my-db", backend={"secretSuffix": "shared"})
        )
        assert backend.secret_suffix == "shared"

    def test_declaration_without_type_falls_back(self, fake):
        """A backend with neither inline code nor backendType is the default backend."""
        backend = BackendResolver(fake, "vela-system").resolve(
            configuration(name="my-db", backend={"inClusterConfig": True})
        )
        assert isinstance(backend, KubernetesBackend)
        assert backend.secret_suffix == "my-db"

    def test_resolution_does_not_touch_storage(self, fake):
        BackendResolver(fake, "vela-system").resolve(configuration())
        assert fake.calls == []


class TestMutualExclusivity:
    """inline and backendType cannot be combined."""

    def test_both_declarations_rejected(self, fake, recording_factory):
        """An error is returned and no driver is built."""
        resolver = BackendResolver(
            fake, "vela-system", MappingProxyType({"kubernetes": recording_factory, "s3": recording_factory})
        )
        spec_backend = {
            "inline": 'terraform {\n  backend "kubernetes" {\n    secret_suffix = "a"\n  }\n}\n',
            "backendType": "kubernetes",
            "kubernetes": {"secret_suffix": "a"},
        }
        with pytest.raises(ConfigurationError, match="mutually exclusive"):
            resolver.resolve(configuration(backend=spec_backend))
        recording_factory.assert_not_called()


class TestInlineBackend:
    """Tests for inline backend HCL."""

    def test_full_terraform_block(self, fake):
        inline = (
            'terraform {\n'
            '  backend "kubernetes" {\n'
            '    secret_suffix = "inline-state"\n'
            '    namespace     = "tf-states"\n'
            '  }\n'
            '}\n'
        )
        backend = BackendResolver(fake, "vela-system").resolve(configuration(backend={"inline": inline}))
        assert isinstance(backend, KubernetesBackend)
        assert backend.secret_suffix == "inline-state"
        assert backend.secret_namespace == "tf-states"

    def test_bare_backend_block(self):
        """A backend block without the surrounding terraform block is accepted."""
        name, attrs = parse_inline_backend(
            'backend "s3" {\n  bucket = "states"\n  key    = "app.tfstate"\n  region = "us-east-1"\n}\n'
        )
        assert name == "s3"
        assert attrs == {"bucket": "states", "key": "app.tfstate", "region": "us-east-1"}

    def test_inline_goes_through_registry(self, fake, recording_factory):
        resolver = BackendResolver(fake, "vela-system", MappingProxyType({"s3": recording_factory}))
        inline = 'backend "s3" {\n  bucket = "states"\n  key    = "app.tfstate"\n}\n'

        backend = resolver.resolve(configuration(backend={"inline": inline}), {"AWS_ACCESS_KEY_ID": "ak"})

        assert backend is recording_factory.return_value
        conf, ctx = recording_factory.call_args[0]
        assert conf == {"bucket": "states", "key": "app.tfstate"}
        assert ctx.credentials == {"AWS_ACCESS_KEY_ID": "ak"}
        assert ctx.default_backend_namespace == "vela-system"

    def test_invalid_hcl(self, fake):
        with pytest.raises(ParseError, match="syntax errors"):
            BackendResolver(fake, "vela-system").resolve(configuration(backend={"inline": "terraform {"}))

    def test_hcl_without_backend_block(self, fake):
        with pytest.raises(ParseError, match="not valid Terraform backend configuration"):
            BackendResolver(fake, "vela-system").resolve(
                configuration(backend={"inline": 'variable "region" {\n  default = "a"\n}\n'})
            )

    def test_unsupported_type(self, fake):
        inline = 'backend "consul" {\n  path = "state"\n}\n'
        with pytest.raises(ConfigurationError, match="consul is unsupported backendType"):
            BackendResolver(fake, "vela-system").resolve(configuration(backend={"inline": inline}))

    def test_local_file_attribute_rejected(self, fake):
        """Paths on the controller's disk do not exist inside the executor Pod."""
        inline = (
            'backend "s3" {\n'
            '  bucket                  = "states"\n'
            '  key                     = "app.tfstate"\n'
            '  shared_credentials_file = "/root/.aws/credentials"\n'
            '}\n'
        )
        with pytest.raises(ConfigurationError, match="shared_credentials_file"):
            BackendResolver(fake, "vela-system").resolve(configuration(backend={"inline": inline}))


class TestExplicitBackend:
    """Tests for backendType with a structured sub-block."""

    def test_kubernetes_block(self, fake):
        backend = BackendResolver(fake, "vela-system").resolve(
            configuration(backend={"backendType": "kubernetes", "kubernetes": {"secret_suffix": "explicit"}})
        )
        assert backend.secret_suffix == "explicit"
        assert backend.secret_namespace == "vela-system"

    def test_type_is_case_insensitive(self, fake, recording_factory):
        """backendType S3 selects the s3 sub-block."""
        resolver = BackendResolver(fake, "vela-system", MappingProxyType({"s3": recording_factory}))
        resolver.resolve(
            configuration(backend={"backendType": "S3", "s3": {"bucket": "b", "key": "k", "region": "r"}})
        )
        conf, _ = recording_factory.call_args[0]
        assert conf == {"bucket": "b", "key": "k", "region": "r"}

    def test_missing_block(self, fake):
        with pytest.raises(ConfigurationError, match="there is no configuration for backendType kubernetes"):
            BackendResolver(fake, "vela-system").resolve(configuration(backend={"backendType": "kubernetes"}))

    def test_unknown_type_has_no_block(self, fake):
        with pytest.raises(ConfigurationError, match="there is no configuration for backendType gcs"):
            BackendResolver(fake, "vela-system").resolve(configuration(backend={"backendType": "gcs"}))

    def test_reduced_registry(self, fake):
        """A type missing from the injected registry is unsupported."""
        resolver = BackendResolver(fake, "vela-system", MappingProxyType({"kubernetes": Mock()}))
        with pytest.raises(ConfigurationError, match="s3 is unsupported backendType"):
            resolver.resolve(configuration(backend={"backendType": "s3", "s3": {"bucket": "b", "key": "k"}}))

    def test_registry_is_read_only(self, fake):
        resolver = BackendResolver(fake, "vela-system")
        with pytest.raises(TypeError):
            resolver.factories["gcs"] = Mock()
