"""Backend registry: maps cloud provider names to Provider classes.

Built-in backends are imported lazily on first lookup so that using one
backend never requires the SDK of another. Additional backends can be
added at runtime with ``register_provider``.
"""

from __future__ import annotations

import importlib
import logging

from provisioner.core.errors import ConfigDecodeError

logger = logging.getLogger(__name__)

BUILTIN_PROVIDERS = {
    "digitalocean": ("provisioner.backends.digitalocean.provider", "DigitalOceanProvider"),
    "aws": ("provisioner.backends.aws.provider", "EC2Provider"),
}

_providers: dict[str, type] = {}


def register_provider(provider_class: type) -> None:
    """Register a Provider class under its ``name`` attribute."""
    name = getattr(provider_class, "name", "")
    if not name:
        raise ValueError(f"{provider_class.__name__} must set a 'name' class attribute")
    if not hasattr(provider_class, "config_class"):
        raise ValueError(f"{provider_class.__name__} must set a 'config_class' class attribute")

    existing = _providers.get(name)
    if existing is not None and existing is not provider_class:
        logger.warning("Replacing provider %s: %s -> %s", name, existing.__name__, provider_class.__name__)
    _providers[name] = provider_class


def unregister_provider(name: str) -> bool:
    """Remove a provider. Returns True if it was registered."""
    return _providers.pop(name, None) is not None


def get_provider_class(name: str) -> type:
    """Resolve a cloud provider name. Raises ConfigDecodeError if unknown."""
    provider_class = _providers.get(name)
    if provider_class is not None:
        return provider_class

    builtin = BUILTIN_PROVIDERS.get(name)
    if builtin is None:
        raise ConfigDecodeError(f"unknown cloud provider {name!r}", backend=name)

    module_name, class_name = builtin
    provider_class = getattr(importlib.import_module(module_name), class_name)
    register_provider(provider_class)
    return provider_class


def new_provider(name: str, **kwargs):
    """Instantiate the provider registered under ``name``."""
    return get_provider_class(name)(**kwargs)


def provider_names() -> list[str]:
    return sorted(set(BUILTIN_PROVIDERS) | set(_providers))
