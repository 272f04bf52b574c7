"""DigitalOcean droplet provider."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field

import paramiko

from provisioner.backends.digitalocean.client import DigitalOceanAPIError, DigitalOceanClient
from provisioner.core import confirm
from provisioner.core.config import OS_CENTOS, OS_UBUNTU, BackendConfig, decode_for_backend
from provisioner.core.errors import (
    CreateRejectedError,
    InstanceNotFoundError,
    InvalidSpecError,
    KeyAlreadyExistsError,
)
from provisioner.core.instance import Instance, InstanceState, MachineSpec, normalize_state
from provisioner.core.keypair import ensure_registered

logger = logging.getLogger(__name__)

DROPLET_STATES = {
    "new": InstanceState.STARTING,
    "active": InstanceState.RUNNING,
    "off": InstanceState.STOPPED,
    "archive": InstanceState.STOPPED,
}

OS_IMAGES = {
    OS_UBUNTU: "ubuntu-22-04-x64",
    OS_CENTOS: "centos-stream-9-x64",
}


@dataclass
class DigitalOceanConfig(BackendConfig):
    token: str = field(default="", repr=False)
    region: str = ""
    size: str = ""
    backups: bool = False
    ipv6: bool = False
    private_networking: bool = False
    monitoring: bool = False
    tags: list[str] = field(default_factory=list)


class DropletKeyRegistry:
    """KeyRegistry over the account's SSH keys. References are fingerprints."""

    def __init__(self, client: DigitalOceanClient):
        self._client = client

    def get_key(self, fingerprint: str) -> str | None:
        try:
            return self._client.get_key(fingerprint)["fingerprint"]
        except DigitalOceanAPIError as exc:
            if exc.status_code == 404:
                return None
            raise

    def create_key(self, name: str, public_key: str, fingerprint: str) -> str:
        try:
            key = self._client.create_key(name, public_key)
        except DigitalOceanAPIError as exc:
            if exc.status_code == 422 and "already" in exc.api_message.lower():
                raise KeyAlreadyExistsError(
                    exc.api_message, backend="digitalocean", resource=fingerprint, cause=exc
                ) from exc
            raise
        return key.get("fingerprint") or fingerprint


def _droplet_tags(droplet: dict) -> list[str]:
    return droplet.get("tags") or []


def droplet_to_instance(droplet: dict) -> Instance:
    networks = droplet.get("networks") or {}
    addresses = [n["ip_address"] for n in networks.get("v4") or [] if n.get("ip_address")]
    addresses += [n["ip_address"] for n in networks.get("v6") or [] if n.get("ip_address")]
    return Instance(
        id=str(droplet["id"]),
        name=droplet.get("name", ""),
        status=normalize_state(droplet.get("status"), DROPLET_STATES),
        addresses=addresses,
    )


class DigitalOceanProvider:
    name = "digitalocean"
    config_class = DigitalOceanConfig
    supported_operating_systems = frozenset(OS_IMAGES)

    def __init__(
        self,
        client_factory: Callable[[str], DigitalOceanClient] = DigitalOceanClient,
        check_period: float = confirm.CREATE_CHECK_PERIOD,
        check_timeout: float = confirm.CREATE_CHECK_TIMEOUT,
        failed_wait: float = confirm.CREATE_CHECK_FAILED_WAIT_PERIOD,
    ):
        self._client_factory = client_factory
        self._check_period = check_period
        self._check_timeout = check_timeout
        self._failed_wait = failed_wait

    def _decode(self, spec: MachineSpec) -> tuple[DigitalOceanConfig, str]:
        config = decode_for_backend(spec.provider_config, self.name)
        return config.cloud_provider_spec, config.operating_system

    def _invalid(self, spec: MachineSpec, reason: str) -> InvalidSpecError:
        return InvalidSpecError(reason, backend=self.name, resource=spec.name)

    def _image_for(self, spec: MachineSpec, operating_system: str) -> str:
        image = OS_IMAGES.get(operating_system)
        if image is None:
            raise self._invalid(spec, f"operating system {operating_system!r} is not supported")
        return image

    def validate(self, spec: MachineSpec) -> None:
        cfg, operating_system = self._decode(spec)

        if not cfg.token:
            raise self._invalid(spec, "token is missing")
        if not cfg.region:
            raise self._invalid(spec, "region is missing")
        if not cfg.size:
            raise self._invalid(spec, "size is missing")
        self._image_for(spec, operating_system)

        client = self._client_factory(cfg.token)

        region = next((r for r in client.list_regions() if r.get("slug") == cfg.region), None)
        if region is None:
            raise self._invalid(spec, f"region {cfg.region!r} not found")
        if not region.get("available", True):
            raise self._invalid(spec, f"region {cfg.region!r} is not available")

        size = next((s for s in client.list_sizes() if s.get("slug") == cfg.size), None)
        if size is None:
            raise self._invalid(spec, f"size {cfg.size!r} not found")
        if not size.get("available", False):
            raise self._invalid(spec, f"size {cfg.size!r} is not available")
        if cfg.region not in (size.get("regions") or []):
            raise self._invalid(spec, f"size {cfg.size!r} is not available in region {cfg.region!r}")

    def create(
        self,
        spec: MachineSpec,
        userdata: str,
        public_key: paramiko.PKey,
        cancel: threading.Event | None = None,
    ) -> Instance:
        cfg, operating_system = self._decode(spec)
        image = self._image_for(spec, operating_system)
        client = self._client_factory(cfg.token)

        fingerprint = ensure_registered(DropletKeyRegistry(client), public_key)

        tags = list(cfg.tags)
        if spec.uid not in tags:
            tags.append(spec.uid)

        body = {
            "name": spec.name,
            "region": cfg.region,
            "size": cfg.size,
            "image": image,
            "backups": cfg.backups,
            "ipv6": cfg.ipv6,
            "private_networking": cfg.private_networking,
            "monitoring": cfg.monitoring,
            "user_data": userdata,
            "ssh_keys": [fingerprint],
            "tags": tags,
        }
        try:
            droplet = client.create_droplet(body)
        except DigitalOceanAPIError as exc:
            if 400 <= exc.status_code < 500 and exc.status_code != 429:
                raise CreateRejectedError(
                    f"digitalocean rejected droplet {spec.name!r}: {exc.api_message}",
                    backend=self.name,
                    resource=spec.name,
                    cause=exc,
                ) from exc
            raise

        droplet_id = droplet["id"]
        logger.info("Created droplet %s (id=%s), waiting for confirmation", spec.name, droplet_id)

        confirmed = confirm.wait_for_creation(
            lambda: client.get_droplet(droplet_id),
            str(droplet_id),
            spec.uid,
            _droplet_tags,
            period=self._check_period,
            timeout=self._check_timeout,
            failed_wait=self._failed_wait,
            cancel=cancel,
            backend=self.name,
        )
        return droplet_to_instance(confirmed)

    def _find(self, client: DigitalOceanClient, spec: MachineSpec) -> dict:
        # The uid tag is the only reliable key; names are not unique.
        matches = [
            d
            for d in client.list_droplets(tag_name=spec.uid)
            if d.get("name") == spec.name and spec.uid in _droplet_tags(d)
        ]
        if not matches:
            raise InstanceNotFoundError(
                f"droplet {spec.name!r} with uid {spec.uid} not found",
                backend=self.name,
                resource=spec.name,
            )
        if len(matches) > 1:
            logger.warning(
                "Found %d droplets named %s with uid %s, using id=%s",
                len(matches),
                spec.name,
                spec.uid,
                matches[0]["id"],
            )
        return matches[0]

    def get(self, spec: MachineSpec) -> Instance:
        cfg, _ = self._decode(spec)
        client = self._client_factory(cfg.token)
        return droplet_to_instance(self._find(client, spec))

    def delete(self, spec: MachineSpec) -> None:
        cfg, _ = self._decode(spec)
        client = self._client_factory(cfg.token)
        try:
            droplet = self._find(client, spec)
        except InstanceNotFoundError:
            logger.info("Droplet %s already deleted", spec.name)
            return

        try:
            client.delete_droplet(droplet["id"])
        except DigitalOceanAPIError as exc:
            if exc.status_code != 404:
                raise
            logger.info("Droplet %s (id=%s) vanished before delete", spec.name, droplet["id"])
            return
        logger.info("Deleted droplet %s (id=%s)", spec.name, droplet["id"])

    def describe_bootstrap_config(self, spec: MachineSpec) -> tuple[str, str]:
        return "", ""
