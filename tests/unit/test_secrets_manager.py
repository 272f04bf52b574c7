"""Unit tests for the Secrets Manager store, stubbed with botocore's Stubber."""

from __future__ import annotations

import pytest
from botocore.stub import Stubber

from provisioner.backends.aws.secrets import SecretsManagerSecretStore
from provisioner.core.errors import SecretAlreadyExistsError


@pytest.fixture
def store(monkeypatch):
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "test")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "test")
    return SecretsManagerSecretStore(region_name="us-east-1")


def test_get_secret_drops_non_string_values(store):
    with Stubber(store._client) as stub:
        stub.add_response(
            "get_secret_value",
            {"Name": "ssh", "SecretString": '{"id_rsa": 123, "note": "kept"}'},
            {"SecretId": "ssh"},
        )
        assert store.get_secret("ssh") == {"note": "kept"}


def test_get_secret_non_object_payload_reads_as_empty(store):
    with Stubber(store._client) as stub:
        stub.add_response("get_secret_value", {"Name": "ssh", "SecretString": '["pem"]'}, {"SecretId": "ssh"})
        assert store.get_secret("ssh") == {}


def test_missing_secret_reads_as_none(store):
    with Stubber(store._client) as stub:
        stub.add_client_error("get_secret_value", service_error_code="ResourceNotFoundException")
        assert store.get_secret("ssh") is None


def test_create_secret_maps_existing(store):
    with Stubber(store._client) as stub:
        stub.add_client_error("create_secret", service_error_code="ResourceExistsException")
        with pytest.raises(SecretAlreadyExistsError):
            store.create_secret("ssh", {"id_rsa": "pem"})
