"""EC2 provider: launches and terminates instances tagged with the machine uid."""

from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field

import boto3
import paramiko
from botocore.exceptions import BotoCoreError, ClientError

from provisioner.core import confirm
from provisioner.core.config import OS_CENTOS, OS_UBUNTU, BackendConfig, decode_for_backend
from provisioner.core.errors import (
    BackendTransportError,
    CreateRejectedError,
    InstanceNotFoundError,
    InvalidSpecError,
    KeyAlreadyExistsError,
)
from provisioner.core.instance import Instance, InstanceState, MachineSpec, normalize_state
from provisioner.core.keypair import ensure_registered

logger = logging.getLogger(__name__)

UID_TAG = "machine-uid"
FINGERPRINT_TAG = "ssh-fingerprint"

INSTANCE_STATES = {
    "pending": InstanceState.STARTING,
    "running": InstanceState.RUNNING,
    "stopping": InstanceState.STOPPED,
    "stopped": InstanceState.STOPPED,
    "shutting-down": InstanceState.STOPPED,
    "terminated": InstanceState.STOPPED,
}

# Terminating and terminated instances stay visible for a while; they no longer count.
LIVE_STATES = ["pending", "running", "stopping", "stopped"]

# (owner account, image name pattern)
OS_IMAGES = {
    OS_UBUNTU: ("099720109477", "ubuntu/images/hvm-ssd/ubuntu-jammy-22.04-amd64-server-*"),
    OS_CENTOS: ("125523088429", "CentOS Stream 9 x86_64*"),
}

THROTTLING_CODES = {"RequestLimitExceeded", "Throttling", "ThrottlingException"}

DEFAULT_ROOT_DEVICE = "/dev/sda1"


@dataclass
class EC2Config(BackendConfig):
    access_key_id: str = field(default="", repr=False, metadata={"json": "accessKeyId"})
    secret_access_key: str = field(default="", repr=False, metadata={"json": "secretAccessKey"})
    region: str = ""
    availability_zone: str = field(default="", metadata={"json": "availabilityZone"})
    instance_type: str = field(default="", metadata={"json": "instanceType"})
    ami: str = ""
    vpc_id: str = field(default="", metadata={"json": "vpcId"})
    subnet_id: str = field(default="", metadata={"json": "subnetId"})
    security_group_ids: list[str] = field(default_factory=list, metadata={"json": "securityGroupIds"})
    disk_size: int = field(default=0, metadata={"json": "diskSize"})
    tags: dict[str, str] = field(default_factory=dict)


class EC2APIError(BackendTransportError):
    """ClientError from EC2, with the AWS error code preserved."""

    def __init__(self, code: str, status_code: int, message: str, **kwargs):
        super().__init__(f"ec2 returned {code}: {message}", **kwargs)
        self.code = code
        self.status_code = status_code


def _call(operation, **kwargs) -> dict:
    """Invoke a boto3 operation, translating botocore errors."""
    try:
        return operation(**kwargs)
    except ClientError as exc:
        error = exc.response.get("Error", {})
        raise EC2APIError(
            error.get("Code", ""),
            exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0),
            error.get("Message", ""),
            backend="aws",
            cause=exc,
        ) from exc
    except BotoCoreError as exc:
        raise BackendTransportError(f"ec2 request failed: {exc}", backend="aws", cause=exc) from exc


def ec2_client(cfg: EC2Config, endpoint_url: str | None = None):
    kwargs = {"region_name": cfg.region}
    if cfg.access_key_id:
        kwargs["aws_access_key_id"] = cfg.access_key_id
        kwargs["aws_secret_access_key"] = cfg.secret_access_key
    if endpoint_url:
        kwargs["endpoint_url"] = endpoint_url
    return boto3.client("ec2", **kwargs)


class EC2KeyRegistry:
    """KeyRegistry over EC2 key pairs. References are key pair names.

    Imported keys are tagged with their MD5 fingerprint and looked up by that
    tag, since EC2 computes its own fingerprint differently.
    """

    def __init__(self, client):
        self._ec2 = client

    def get_key(self, fingerprint: str) -> str | None:
        resp = _call(
            self._ec2.describe_key_pairs,
            Filters=[{"Name": f"tag:{FINGERPRINT_TAG}", "Values": [fingerprint]}],
        )
        pairs = resp.get("KeyPairs", [])
        return pairs[0]["KeyName"] if pairs else None

    def create_key(self, name: str, public_key: str, fingerprint: str) -> str:
        key_name = f"{name}-{fingerprint.replace(':', '')}"
        try:
            resp = _call(
                self._ec2.import_key_pair,
                KeyName=key_name,
                PublicKeyMaterial=public_key.encode("utf-8"),
                TagSpecifications=[
                    {
                        "ResourceType": "key-pair",
                        "Tags": [{"Key": FINGERPRINT_TAG, "Value": fingerprint}],
                    }
                ],
            )
        except EC2APIError as exc:
            if exc.code == "InvalidKeyPair.Duplicate":
                raise KeyAlreadyExistsError(
                    str(exc), backend="aws", resource=key_name, cause=exc
                ) from exc
            raise
        return resp.get("KeyName", key_name)


def _tag(instance: dict, key: str) -> str | None:
    for tag in instance.get("Tags", []):
        if tag.get("Key") == key:
            return tag.get("Value")
    return None


def _uid_tags(instance: dict) -> list[str]:
    return [t["Value"] for t in instance.get("Tags", []) if t.get("Key") == UID_TAG]


def ec2_to_instance(instance: dict) -> Instance:
    addresses = []
    for key in ("PublicIpAddress", "PrivateIpAddress"):
        if instance.get(key):
            addresses.append(instance[key])
    for iface in instance.get("NetworkInterfaces", []):
        addresses += [a["Ipv6Address"] for a in iface.get("Ipv6Addresses", []) if a.get("Ipv6Address")]
    return Instance(
        id=instance["InstanceId"],
        name=_tag(instance, "Name") or "",
        status=normalize_state(instance.get("State", {}).get("Name"), INSTANCE_STATES),
        addresses=addresses,
    )


class EC2Provider:
    name = "aws"
    config_class = EC2Config
    supported_operating_systems = frozenset(OS_IMAGES)

    def __init__(
        self,
        client_factory: Callable[[EC2Config], object] | None = None,
        endpoint_url: str | None = None,
        check_period: float = confirm.CREATE_CHECK_PERIOD,
        check_timeout: float = confirm.CREATE_CHECK_TIMEOUT,
        failed_wait: float = confirm.CREATE_CHECK_FAILED_WAIT_PERIOD,
    ):
        self._client_factory = client_factory or (lambda cfg: ec2_client(cfg, endpoint_url))
        self._check_period = check_period
        self._check_timeout = check_timeout
        self._failed_wait = failed_wait

    def _decode(self, spec: MachineSpec) -> tuple[EC2Config, str]:
        config = decode_for_backend(spec.provider_config, self.name)
        return config.cloud_provider_spec, config.operating_system

    def _invalid(self, spec: MachineSpec, reason: str) -> InvalidSpecError:
        return InvalidSpecError(reason, backend=self.name, resource=spec.name)

    def _resolve_image(self, client, spec: MachineSpec, cfg: EC2Config, operating_system: str) -> dict:
        if operating_system not in OS_IMAGES:
            raise self._invalid(spec, f"operating system {operating_system!r} is not supported")

        if cfg.ami:
            try:
                images = _call(client.describe_images, ImageIds=[cfg.ami]).get("Images", [])
            except EC2APIError as exc:
                if exc.code.startswith("InvalidAMIID"):
                    raise self._invalid(spec, f"ami {cfg.ami!r} not found") from exc
                raise
            if not images:
                raise self._invalid(spec, f"ami {cfg.ami!r} not found")
            return images[0]

        owner, pattern = OS_IMAGES[operating_system]
        images = _call(
            client.describe_images,
            Owners=[owner],
            Filters=[
                {"Name": "name", "Values": [pattern]},
                {"Name": "state", "Values": ["available"]},
            ],
        ).get("Images", [])
        if not images:
            raise self._invalid(
                spec, f"no image found for {operating_system!r} in region {cfg.region!r}"
            )
        return max(images, key=lambda img: img.get("CreationDate", ""))

    def validate(self, spec: MachineSpec) -> None:
        cfg, operating_system = self._decode(spec)

        if not cfg.region:
            raise self._invalid(spec, "region is missing")
        if not cfg.instance_type:
            raise self._invalid(spec, "instanceType is missing")
        if bool(cfg.access_key_id) != bool(cfg.secret_access_key):
            raise self._invalid(spec, "accessKeyId and secretAccessKey must be set together")
        if cfg.disk_size < 0:
            raise self._invalid(spec, "diskSize must not be negative")
        if operating_system not in OS_IMAGES:
            raise self._invalid(spec, f"operating system {operating_system!r} is not supported")
        client = self._client_factory(cfg)

        regions = _call(client.describe_regions, AllRegions=True).get("Regions", [])
        if cfg.region not in {r.get("RegionName") for r in regions}:
            raise self._invalid(spec, f"region {cfg.region!r} not found")

        offerings = _call(
            client.describe_instance_type_offerings,
            LocationType="region",
            Filters=[{"Name": "instance-type", "Values": [cfg.instance_type]}],
        ).get("InstanceTypeOfferings", [])
        if not offerings:
            raise self._invalid(
                spec, f"instance type {cfg.instance_type!r} is not available in region {cfg.region!r}"
            )

        self._resolve_image(client, spec, cfg, operating_system)

    def create(
        self,
        spec: MachineSpec,
        userdata: str,
        public_key: paramiko.PKey,
        cancel: threading.Event | None = None,
    ) -> Instance:
        cfg, operating_system = self._decode(spec)
        client = self._client_factory(cfg)

        image = self._resolve_image(client, spec, cfg, operating_system)
        key_name = ensure_registered(EC2KeyRegistry(client), public_key)

        tags = [{"Key": k, "Value": v} for k, v in cfg.tags.items() if k not in ("Name", UID_TAG)]
        tags += [{"Key": "Name", "Value": spec.name}, {"Key": UID_TAG, "Value": spec.uid}]

        kwargs = {
            "ImageId": image["ImageId"],
            "InstanceType": cfg.instance_type,
            "MinCount": 1,
            "MaxCount": 1,
            "KeyName": key_name,
            "UserData": userdata,
            # Unique per call. EC2 replays a repeated token with the original,
            # possibly terminated, instance. The uid tag stays the idempotency key.
            "ClientToken": f"{spec.uid[:31]}-{uuid.uuid4().hex}",
            "TagSpecifications": [{"ResourceType": "instance", "Tags": tags}],
        }
        if cfg.subnet_id:
            kwargs["SubnetId"] = cfg.subnet_id
        if cfg.security_group_ids:
            kwargs["SecurityGroupIds"] = cfg.security_group_ids
        if cfg.availability_zone:
            kwargs["Placement"] = {"AvailabilityZone": cfg.availability_zone}
        if cfg.disk_size:
            kwargs["BlockDeviceMappings"] = [
                {
                    "DeviceName": image.get("RootDeviceName") or DEFAULT_ROOT_DEVICE,
                    "Ebs": {"VolumeSize": cfg.disk_size, "DeleteOnTermination": True},
                }
            ]

        try:
            resp = _call(client.run_instances, **kwargs)
        except EC2APIError as exc:
            if 400 <= exc.status_code < 500 and exc.code not in THROTTLING_CODES:
                raise CreateRejectedError(
                    f"ec2 rejected instance {spec.name!r}: {exc.code}",
                    backend=self.name,
                    resource=spec.name,
                    cause=exc,
                ) from exc
            raise

        launched = resp["Instances"][0]
        instance_id = launched["InstanceId"]
        self._check_alive(spec, launched)
        logger.info("Launched instance %s (id=%s), waiting for confirmation", spec.name, instance_id)

        def describe() -> dict:
            reservations = _call(client.describe_instances, InstanceIds=[instance_id]).get(
                "Reservations", []
            )
            for reservation in reservations:
                for instance in reservation.get("Instances", []):
                    self._check_alive(spec, instance)
                    return instance
            raise BackendTransportError(
                f"instance {instance_id} not visible yet", backend=self.name, resource=instance_id
            )

        confirmed = confirm.wait_for_creation(
            describe,
            instance_id,
            spec.uid,
            _uid_tags,
            period=self._check_period,
            timeout=self._check_timeout,
            failed_wait=self._failed_wait,
            cancel=cancel,
            backend=self.name,
        )
        return ec2_to_instance(confirmed)

    def _check_alive(self, spec: MachineSpec, instance: dict) -> None:
        state = instance.get("State", {}).get("Name")
        if state in ("shutting-down", "terminated"):
            raise CreateRejectedError(
                f"instance {instance['InstanceId']} for {spec.name!r} is {state}",
                backend=self.name,
                resource=spec.name,
            )

    def _find(self, client, spec: MachineSpec) -> dict:
        filters = [
            {"Name": "tag:Name", "Values": [spec.name]},
            {"Name": f"tag:{UID_TAG}", "Values": [spec.uid]},
            {"Name": "instance-state-name", "Values": LIVE_STATES},
        ]
        matches = []
        token = None
        while True:
            kwargs = {"Filters": filters}
            if token:
                kwargs["NextToken"] = token
            resp = _call(client.describe_instances, **kwargs)
            for reservation in resp.get("Reservations", []):
                matches += [
                    i
                    for i in reservation.get("Instances", [])
                    if _tag(i, "Name") == spec.name and spec.uid in _uid_tags(i)
                ]
            token = resp.get("NextToken")
            if not token:
                break

        if not matches:
            raise InstanceNotFoundError(
                f"instance {spec.name!r} with uid {spec.uid} not found",
                backend=self.name,
                resource=spec.name,
            )
        if len(matches) > 1:
            logger.warning(
                "Found %d instances named %s with uid %s, using %s",
                len(matches),
                spec.name,
                spec.uid,
                matches[0]["InstanceId"],
            )
        return matches[0]

    def get(self, spec: MachineSpec) -> Instance:
        cfg, _ = self._decode(spec)
        return ec2_to_instance(self._find(self._client_factory(cfg), spec))

    def delete(self, spec: MachineSpec) -> None:
        cfg, _ = self._decode(spec)
        client = self._client_factory(cfg)
        try:
            instance = self._find(client, spec)
        except InstanceNotFoundError:
            logger.info("Instance %s already deleted", spec.name)
            return

        instance_id = instance["InstanceId"]
        try:
            _call(client.terminate_instances, InstanceIds=[instance_id])
        except EC2APIError as exc:
            if exc.code != "InvalidInstanceID.NotFound":
                raise
            logger.info("Instance %s (id=%s) vanished before terminate", spec.name, instance_id)
            return
        logger.info("Terminated instance %s (id=%s)", spec.name, instance_id)

    def describe_bootstrap_config(self, spec: MachineSpec) -> tuple[str, str]:
        cfg, _ = self._decode(spec)
        lines = ["[global]", f"Zone={cfg.availability_zone or cfg.region + 'a'}"]
        if cfg.vpc_id:
            lines.append(f"VPC={cfg.vpc_id}")
        if cfg.subnet_id:
            lines.append(f"SubnetID={cfg.subnet_id}")
        return "\n".join(lines) + "\n", "aws"
