"""Configuration helpers, read from environment variables."""

from __future__ import annotations

import os


def get_env(name: str, default: str | None = None) -> str:
    """Get an environment variable, raising if missing and no default."""
    value = os.environ.get(name, default)
    if value is None:
        raise RuntimeError(f"Missing required environment variable: {name}")
    return value


# Secret store
SSH_KEY_SECRET_NAME = lambda: get_env("SSH_KEY_SECRET_NAME", "machine-controller-ssh-key")
AWS_REGION = lambda: get_env("AWS_REGION", "") or None

# Backend endpoints
DIGITALOCEAN_API_URL = lambda: get_env("DIGITALOCEAN_API_URL", "https://api.digitalocean.com")
HTTP_TIMEOUT = 30
