"""E2E test fixtures: mock DigitalOcean API plus optional LocalStack-backed Secrets Manager."""

from __future__ import annotations

import os
import sys
import uuid

import pytest
from botocore.exceptions import BotoCoreError

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", ".."))

from tests.e2e.mock_digitalocean import MockDigitalOceanServer


@pytest.fixture
def mock_digitalocean():
    """Start a mock DigitalOcean API on a random port."""
    server = MockDigitalOceanServer()
    server.start()
    yield server
    server.stop()


@pytest.fixture(scope="session")
def localstack_env():
    """Start LocalStack with Secrets Manager enabled."""
    try:
        from testcontainers.core.exceptions import ContainerStartException
        from testcontainers.localstack import LocalStackContainer
    except ModuleNotFoundError as exc:
        pytest.skip(f"LocalStack tests require testcontainers dependency: {exc}")

    container = LocalStackContainer(image="localstack/localstack:3.0").with_services("secretsmanager")

    try:
        container.start()
    except (ContainerStartException, BotoCoreError, OSError) as exc:
        pytest.skip(f"LocalStack unavailable in this environment: {exc}")

    endpoint_url = container.get_url()
    region = "us-east-1"

    os.environ.setdefault("AWS_ACCESS_KEY_ID", "test")
    os.environ.setdefault("AWS_SECRET_ACCESS_KEY", "test")
    os.environ.setdefault("AWS_DEFAULT_REGION", region)

    yield {"endpoint_url": endpoint_url, "region": region}

    container.stop()


@pytest.fixture
def secret_name():
    return f"machine-controller-ssh-key-e2e-{uuid.uuid4().hex[:8]}"
