"""Shared fixtures for unit tests. Mock backends only, no network needed."""

import json
import os
import sys

import pytest

# Add project root to path so provisioner is importable
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", ".."))

from provisioner.backends.digitalocean.provider import DigitalOceanProvider
from provisioner.backends.mock.compute import FakeDigitalOceanAPI
from provisioner.backends.mock.secrets import InMemorySecretStore
from provisioner.core.instance import MachineSpec
from provisioner.core.keypair import generate_private_key


SAMPLE_DO_SPEC = {
    "token": "do-secret-token",
    "region": "fra1",
    "size": "s-1vcpu-1gb",
    "ipv6": True,
    "tags": ["cluster-a"],
}


def do_machine(name="node-1", uid="0b8f6a5e-5d1c-4b53-9d8e-1f0e7e9a2c11", os_name="ubuntu", **overrides):
    spec = dict(SAMPLE_DO_SPEC, **overrides)
    config = {
        "cloudProvider": "digitalocean",
        "cloudProviderSpec": spec,
        "operatingSystem": os_name,
        "operatingSystemSpec": {},
    }
    return MachineSpec(name=name, uid=uid, provider_config=json.dumps(config))


@pytest.fixture
def secrets():
    return InMemorySecretStore()


@pytest.fixture(scope="session")
def private_key():
    return generate_private_key()


@pytest.fixture
def do_api():
    return FakeDigitalOceanAPI()


@pytest.fixture
def do_provider(do_api):
    return DigitalOceanProvider(
        client_factory=do_api,
        check_period=0.01,
        check_timeout=1,
        failed_wait=0.01,
    )


@pytest.fixture
def make_machine():
    return do_machine


@pytest.fixture
def machine():
    return do_machine()
