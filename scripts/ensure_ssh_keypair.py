#!/usr/bin/env python3
"""Ensure the control-plane SSH keypair exists in Secrets Manager.

Prints the OpenSSH public key and its fingerprint; the private key never
leaves the secret store.
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from pathlib import Path

# Ensure repository root is importable when running from a checkout.
REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))


def _env_name_for_option(option: str) -> str:
    return option.lstrip("-").replace("-", "_").upper()


def _resolve_opt(action: argparse.Action, cli_value: str | None, required: bool = True) -> str | None:
    if cli_value:
        return cli_value
    long_opts = [opt for opt in action.option_strings if opt.startswith("--")]
    canonical_opt = long_opts[0] if long_opts else action.option_strings[0]
    env_name = _env_name_for_option(canonical_opt)
    env_value = os.environ.get(env_name)
    if env_value:
        return env_value
    if required:
        raise RuntimeError(f"Missing {canonical_opt}. Provide {canonical_opt} or set {env_name}.")
    return None


def main() -> None:
    parser = argparse.ArgumentParser(description="Ensure the control-plane SSH keypair")
    secret_action = parser.add_argument(
        "--ssh-key-secret-name", help="Secret name (or use SSH_KEY_SECRET_NAME)"
    )
    region_action = parser.add_argument(
        "--aws-region",
        "--region",
        dest="aws_region",
        help="AWS region (or use AWS_REGION)",
    )
    endpoint_action = parser.add_argument(
        "--secrets-endpoint-url", help="Secrets Manager endpoint override"
    )
    parser.add_argument("-v", "--verbose", action="store_true")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    secret_name = _resolve_opt(secret_action, args.ssh_key_secret_name, required=False)
    region = _resolve_opt(region_action, args.aws_region, required=False)
    endpoint_url = _resolve_opt(endpoint_action, args.secrets_endpoint_url, required=False)

    from provisioner.backends.aws.secrets import SecretsManagerSecretStore
    from provisioner.core.keypair import authorized_key, ensure_keypair, fingerprint

    store = SecretsManagerSecretStore(endpoint_url=endpoint_url, region_name=region)
    key = ensure_keypair(store, secret_name=secret_name)
    print(
        json.dumps(
            {"public_key": authorized_key(key), "fingerprint": fingerprint(key)},
            indent=2,
        )
    )


if __name__ == "__main__":
    main()
