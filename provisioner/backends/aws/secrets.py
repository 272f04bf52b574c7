"""Secrets Manager-backed secret store."""

from __future__ import annotations

import json

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from provisioner.core.errors import BackendTransportError, SecretAlreadyExistsError
from provisioner.shared.config import AWS_REGION


class SecretsManagerSecretStore:
    """Each secret is stored as a JSON object of strings in SecretString."""

    def __init__(
        self,
        endpoint_url: str | None = None,
        region_name: str | None = None,
    ):
        kwargs = {}
        if endpoint_url:
            kwargs["endpoint_url"] = endpoint_url
        region_name = region_name or AWS_REGION()
        if region_name:
            kwargs["region_name"] = region_name
        self._client = boto3.client("secretsmanager", **kwargs)

    def get_secret(self, name: str) -> dict[str, str] | None:
        try:
            resp = self._client.get_secret_value(SecretId=name)
        except self._client.exceptions.ResourceNotFoundException:
            return None
        except (ClientError, BotoCoreError) as exc:
            raise BackendTransportError(
                f"failed to read secret {name!r}: {exc}", resource=name, cause=exc
            ) from exc

        try:
            data = json.loads(resp.get("SecretString") or "{}")
        except ValueError:
            # Surfaces as a corrupt keypair to the caller.
            return {}
        if not isinstance(data, dict):
            return {}
        return {k: v for k, v in data.items() if isinstance(v, str)}

    def create_secret(self, name: str, data: dict[str, str]) -> None:
        try:
            self._client.create_secret(Name=name, SecretString=json.dumps(data))
        except self._client.exceptions.ResourceExistsException as exc:
            raise SecretAlreadyExistsError(
                f"secret {name!r} already exists", resource=name, cause=exc
            ) from exc
        except (ClientError, BotoCoreError) as exc:
            raise BackendTransportError(
                f"failed to create secret {name!r}: {exc}", resource=name, cause=exc
            ) from exc

    def create_secret_if_absent(self, name: str, data: dict[str, str]) -> bool:
        try:
            self.create_secret(name, data)
            return True
        except SecretAlreadyExistsError:
            return False
