"""Abstract interfaces for provisioner backends.

Core logic depends only on these protocols, never on cloud-specific SDKs
like boto3. To add a new cloud backend, implement ``Provider`` and register
it in ``provisioner.core.registry``.
"""

from __future__ import annotations

import threading
from typing import ClassVar, Protocol

import paramiko

from provisioner.core.instance import Instance, MachineSpec


class SecretStore(Protocol):
    """Key-value store holding control-plane secrets."""

    def get_secret(self, name: str) -> dict[str, str] | None:
        """Get a secret's data, or None if it does not exist."""
        ...

    def create_secret(self, name: str, data: dict[str, str]) -> None:
        """Create a secret. Raises SecretAlreadyExistsError if present."""
        ...

    def create_secret_if_absent(self, name: str, data: dict[str, str]) -> bool:
        """Create a secret unless it exists. Returns False if it existed."""
        ...


class KeyRegistry(Protocol):
    """A backend's registry of SSH public keys."""

    def get_key(self, fingerprint: str) -> str | None:
        """Return the backend's reference for a registered key, or None."""
        ...

    def create_key(self, name: str, public_key: str, fingerprint: str) -> str:
        """Register a public key and return its reference.

        Raises KeyAlreadyExistsError if the backend already has it.
        """
        ...


class Provider(Protocol):
    """Lifecycle contract every cloud backend implements."""

    name: ClassVar[str]
    config_class: ClassVar[type]
    supported_operating_systems: ClassVar[frozenset[str]]

    def validate(self, spec: MachineSpec) -> None:
        """Raise InvalidSpecError if the machine cannot be provisioned as described."""
        ...

    def create(
        self,
        spec: MachineSpec,
        userdata: str,
        public_key: paramiko.PKey,
        cancel: threading.Event | None = None,
    ) -> Instance:
        """Create the instance and wait until it is identifiable by uid."""
        ...

    def get(self, spec: MachineSpec) -> Instance:
        """Return the instance, or raise InstanceNotFoundError."""
        ...

    def delete(self, spec: MachineSpec) -> None:
        """Delete the instance. Succeeds if it is already gone."""
        ...

    def describe_bootstrap_config(self, spec: MachineSpec) -> tuple[str, str]:
        """Return (cloud_config, cloud_provider_name) for the bootstrap renderer."""
        ...
