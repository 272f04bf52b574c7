"""LocalStack-backed Secrets Manager E2E tests."""

from __future__ import annotations

import boto3
import pytest

from provisioner.backends.aws.secrets import SecretsManagerSecretStore
from provisioner.core.errors import KeypairCorruptError, SecretAlreadyExistsError
from provisioner.core.keypair import PRIVATE_KEY_DATA_KEY, encode_private_key, ensure_keypair, fingerprint


def _store(localstack_env):
    return SecretsManagerSecretStore(
        endpoint_url=localstack_env["endpoint_url"],
        region_name=localstack_env["region"],
    )


def test_missing_secret_reads_as_none(localstack_env, secret_name):
    assert _store(localstack_env).get_secret(secret_name) is None


def test_create_secret_is_conditional(localstack_env, secret_name):
    store = _store(localstack_env)

    store.create_secret(secret_name, {"id_rsa": "first"})

    with pytest.raises(SecretAlreadyExistsError):
        store.create_secret(secret_name, {"id_rsa": "second"})
    assert store.create_secret_if_absent(secret_name, {"id_rsa": "third"}) is False
    assert store.get_secret(secret_name) == {"id_rsa": "first"}


def test_ensure_keypair_generates_once_and_reuses(localstack_env, secret_name):
    store = _store(localstack_env)

    first = ensure_keypair(store, secret_name)
    second = ensure_keypair(_store(localstack_env), secret_name)

    assert fingerprint(first) == fingerprint(second)
    assert store.get_secret(secret_name) == {PRIVATE_KEY_DATA_KEY: encode_private_key(first)}


def test_ensure_keypair_rejects_corrupt_secret(localstack_env, secret_name):
    client = boto3.client(
        "secretsmanager",
        endpoint_url=localstack_env["endpoint_url"],
        region_name=localstack_env["region"],
    )
    client.create_secret(Name=secret_name, SecretString='{"id_rsa": "not a pem"}')

    with pytest.raises(KeypairCorruptError) as exc_info:
        ensure_keypair(_store(localstack_env), secret_name)

    assert exc_info.value.secret_name == secret_name
