"""Provider config decoding.

A machine's provider config is an opaque JSON envelope::

    {
        "cloudProvider": "digitalocean",
        "cloudProviderSpec": {"token": "...", "region": "fra1", "size": "s-1vcpu-1gb"},
        "operatingSystem": "ubuntu",
        "operatingSystemSpec": {}
    }

The envelope is decoded first; its ``cloudProvider`` selects the backend
whose config class decodes ``cloudProviderSpec``. Decoding checks shapes
and types only. Whether a region or size is usable is for the provider's
``validate`` to decide.
"""

from __future__ import annotations

import dataclasses
import json
import typing
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from provisioner.core.errors import ConfigDecodeError

OS_UBUNTU = "ubuntu"
OS_CENTOS = "centos"
OS_COREOS = "coreos"


class BackendConfig:
    """Mixin for backend config dataclasses.

    Each field's JSON key is taken from ``metadata["json"]`` and defaults to
    the attribute name. Missing keys and JSON nulls take the field default.
    """

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]):
        if not isinstance(raw, Mapping):
            raise ConfigDecodeError(
                f"cloudProviderSpec must be an object, got {type(raw).__name__}"
            )
        hints = typing.get_type_hints(cls)
        values = {}
        for f in dataclasses.fields(cls):
            key = f.metadata.get("json", f.name)
            value = raw.get(key)
            if value is None:
                continue
            values[f.name] = _check_type(key, value, hints[f.name])
        return cls(**values)

    def to_dict(self) -> dict[str, Any]:
        return {
            f.metadata.get("json", f.name): _copy(getattr(self, f.name))
            for f in dataclasses.fields(self)
        }


def _check_type(key: str, value: Any, hint: Any) -> Any:
    origin = typing.get_origin(hint)
    if origin is list:
        if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
            raise ConfigDecodeError(f"{key} must be a list of strings")
        return list(value)
    if origin is dict:
        if not isinstance(value, dict) or not all(
            isinstance(k, str) and isinstance(v, str) for k, v in value.items()
        ):
            raise ConfigDecodeError(f"{key} must be an object of strings")
        return dict(value)
    if hint is bool:
        if not isinstance(value, bool):
            raise ConfigDecodeError(f"{key} must be a boolean")
        return value
    if hint is int:
        if isinstance(value, bool) or not isinstance(value, int):
            raise ConfigDecodeError(f"{key} must be an integer")
        return value
    if not isinstance(value, str):
        # Never echo the value: it may be a credential.
        raise ConfigDecodeError(f"{key} must be a string")
    return value


def _copy(value: Any) -> Any:
    if isinstance(value, (list, dict)):
        return type(value)(value)
    return value


@dataclass
class ProviderConfig:
    cloud_provider: str
    operating_system: str
    cloud_provider_spec: BackendConfig
    operating_system_spec: dict[str, Any] = field(default_factory=dict)


def _load_envelope(raw: str | bytes | Mapping[str, Any]) -> Mapping[str, Any]:
    if isinstance(raw, Mapping):
        return raw
    try:
        envelope = json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigDecodeError("provider config is not valid JSON", cause=exc) from exc
    if not isinstance(envelope, dict):
        raise ConfigDecodeError("provider config must be a JSON object")
    return envelope


def decode_provider_config(raw: str | bytes | Mapping[str, Any]) -> ProviderConfig:
    """Decode the envelope, then the backend-specific payload it names."""
    from provisioner.core.registry import get_provider_class

    envelope = _load_envelope(raw)

    cloud_provider = envelope.get("cloudProvider")
    if not isinstance(cloud_provider, str) or not cloud_provider:
        raise ConfigDecodeError("cloudProvider must be a non-empty string")

    operating_system = envelope.get("operatingSystem") or ""
    if not isinstance(operating_system, str):
        raise ConfigDecodeError("operatingSystem must be a string", backend=cloud_provider)

    os_spec = envelope.get("operatingSystemSpec")
    if os_spec is None:
        os_spec = {}
    if not isinstance(os_spec, dict):
        raise ConfigDecodeError("operatingSystemSpec must be an object", backend=cloud_provider)

    provider_class = get_provider_class(cloud_provider)
    try:
        raw_spec = envelope.get("cloudProviderSpec")
        spec = provider_class.config_class.from_dict({} if raw_spec is None else raw_spec)
    except ConfigDecodeError as exc:
        exc.backend = cloud_provider
        raise

    return ProviderConfig(
        cloud_provider=cloud_provider,
        operating_system=operating_system,
        cloud_provider_spec=spec,
        operating_system_spec=dict(os_spec),
    )


def decode_for_backend(raw: str | bytes | Mapping[str, Any], backend: str) -> ProviderConfig:
    """Decode a config and check that it targets ``backend``."""
    config = decode_provider_config(raw)
    if config.cloud_provider != backend:
        raise ConfigDecodeError(
            f"provider config is for {config.cloud_provider!r}, not {backend!r}",
            backend=backend,
        )
    return config


def encode_provider_config(config: ProviderConfig) -> str:
    """Inverse of decode_provider_config."""
    return json.dumps(
        {
            "cloudProvider": config.cloud_provider,
            "cloudProviderSpec": config.cloud_provider_spec.to_dict(),
            "operatingSystem": config.operating_system,
            "operatingSystemSpec": config.operating_system_spec,
        },
        sort_keys=True,
    )
