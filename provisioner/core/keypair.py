"""Control-plane SSH keypair bootstrap.

One RSA keypair grants the control plane access to every instance it
creates. The private half lives in the shared secret store; the public half
is registered with each backend's key registry on demand. Both steps treat
"already exists" as success so concurrent first callers converge on a single
key.
"""

from __future__ import annotations

import io
import logging

import paramiko

from provisioner.core.errors import (
    BackendTransportError,
    KeyAlreadyExistsError,
    KeypairCorruptError,
)
from provisioner.core.interfaces import KeyRegistry, SecretStore
from provisioner.shared.config import SSH_KEY_SECRET_NAME

logger = logging.getLogger(__name__)

PRIVATE_KEY_DATA_KEY = "id_rsa"
KEY_BITS = 2048
REGISTERED_KEY_NAME = "machine-controller"


def generate_private_key(bits: int = KEY_BITS) -> paramiko.RSAKey:
    return paramiko.RSAKey.generate(bits=bits)


def encode_private_key(key: paramiko.RSAKey) -> str:
    """PEM-encode a private key (PKCS#1, ``RSA PRIVATE KEY``)."""
    buf = io.StringIO()
    key.write_private_key(buf)
    return buf.getvalue()


def decode_private_key(pem: str) -> paramiko.RSAKey:
    return paramiko.RSAKey.from_private_key(io.StringIO(pem))


def fingerprint(key: paramiko.PKey) -> str:
    """Colon-separated MD5 fingerprint of the public half, e.g. ``ab:cd:...``."""
    return ":".join(f"{b:02x}" for b in key.get_fingerprint())


def authorized_key(key: paramiko.PKey) -> str:
    """OpenSSH ``authorized_keys`` line for the public half."""
    return f"{key.get_name()} {key.get_base64()}"


def _key_from_secret(name: str, data: dict[str, str]) -> paramiko.RSAKey:
    pem = data.get(PRIVATE_KEY_DATA_KEY)
    if not pem or not isinstance(pem, str):
        raise KeypairCorruptError(name)
    try:
        return decode_private_key(pem)
    except (paramiko.SSHException, ValueError) as exc:
        raise KeypairCorruptError(name, cause=exc) from exc


def ensure_keypair(store: SecretStore, secret_name: str | None = None) -> paramiko.RSAKey:
    """Return the control-plane private key, generating and storing it if absent.

    If another caller stores a key between our read and our write, their key
    wins and is returned instead of ours.
    """
    name = secret_name or SSH_KEY_SECRET_NAME()

    data = store.get_secret(name)
    if data is not None:
        return _key_from_secret(name, data)

    logger.info("Generating control-plane ssh keypair %s", name)
    key = generate_private_key()
    if store.create_secret_if_absent(name, {PRIVATE_KEY_DATA_KEY: encode_private_key(key)}):
        return key

    logger.info("ssh key secret %s was created concurrently, using the stored key", name)
    data = store.get_secret(name)
    if data is None:
        raise BackendTransportError(
            f"ssh key secret {name!r} reported as existing but could not be read",
            resource=name,
        )
    return _key_from_secret(name, data)


def ensure_registered(
    registry: KeyRegistry,
    public_key: paramiko.PKey,
    name: str = REGISTERED_KEY_NAME,
) -> str:
    """Make sure the backend knows the public key; return its reference.

    Lookup errors other than "not found" propagate. A duplicate reported by
    the backend on create means a concurrent caller registered it first, so
    the authoritative reference is fetched again.
    """
    fp = fingerprint(public_key)

    ref = registry.get_key(fp)
    if ref is not None:
        return ref

    logger.info("Registering ssh key %s as %s", fp, name)
    try:
        return registry.create_key(name, authorized_key(public_key), fp)
    except KeyAlreadyExistsError:
        logger.info("ssh key %s was registered concurrently", fp)

    ref = registry.get_key(fp)
    if ref is None:
        raise BackendTransportError(
            f"ssh key {fp} reported as registered but not found", resource=fp
        )
    return ref
