"""Error taxonomy shared by every provider backend.

Callers branch on the exception class, never on the message text. Every
error carries the backend name and the resource it concerns so it can be
logged without re-deriving context.
"""

from __future__ import annotations


class ProvisionerError(Exception):
    def __init__(
        self,
        message: str,
        *,
        backend: str | None = None,
        resource: str | None = None,
        cause: BaseException | None = None,
    ):
        super().__init__(message)
        self.backend = backend
        self.resource = resource
        self.cause = cause


class ConfigDecodeError(ProvisionerError):
    """The provider config blob is malformed or names an unknown backend."""


class InvalidSpecError(ProvisionerError):
    """The spec decoded fine but its values cannot be provisioned."""

    def __init__(self, reason: str, **kwargs):
        super().__init__(reason, **kwargs)
        self.reason = reason


class InstanceNotFoundError(ProvisionerError):
    """No remote instance carries the machine's name and uid tag."""


class CreateRejectedError(ProvisionerError):
    """The backend refused the create request (quota, bad parameter, ...)."""


class CreationConfirmationTimeoutError(ProvisionerError):
    """The instance was accepted but never became identifiable in time.

    The outcome is ambiguous: run ``get`` before retrying ``create``.
    """

    def __init__(self, instance_id: str, timeout: float, **kwargs):
        super().__init__(
            f"instance {instance_id!r} was not confirmed within {timeout:g}s",
            resource=instance_id,
            **kwargs,
        )
        self.instance_id = instance_id
        self.timeout = timeout


class CreationCancelledError(ProvisionerError):
    """The caller abandoned the wait for creation confirmation."""


class KeypairCorruptError(ProvisionerError):
    """The stored SSH private key cannot be decoded.

    Not retryable: the secret must be deleted so a new key is generated.
    """

    def __init__(self, secret_name: str, **kwargs):
        super().__init__(
            f"ssh key secret {secret_name!r} does not hold a valid RSA private key; "
            "remove it and a new one will be created",
            resource=secret_name,
            **kwargs,
        )
        self.secret_name = secret_name


class BackendTransportError(ProvisionerError):
    """Network or API fault talking to a backend."""


class SecretAlreadyExistsError(ProvisionerError):
    """A secret with the requested name was created concurrently."""


class KeyAlreadyExistsError(ProvisionerError):
    """The backend key registry already holds the public key."""
