"""Unit tests for the EC2 provider against the mock EC2 client."""

from __future__ import annotations

import json

import pytest

from provisioner.backends.aws.provider import EC2KeyRegistry, EC2Provider
from provisioner.backends.mock.ec2 import FakeEC2Client, client_error
from provisioner.core.errors import (
    BackendTransportError,
    CreateRejectedError,
    CreationConfirmationTimeoutError,
    InstanceNotFoundError,
    InvalidSpecError,
)
from provisioner.core.instance import InstanceState, MachineSpec
from provisioner.core.keypair import ensure_registered, fingerprint

SAMPLE_EC2_SPEC = {
    "accessKeyId": "AKIAEXAMPLE",
    "secretAccessKey": "aws-secret",
    "region": "eu-central-1",
    "instanceType": "t3.small",
    "subnetId": "subnet-1",
    "vpcId": "vpc-1",
    "securityGroupIds": ["sg-1"],
    "tags": {"team": "infra"},
}


def ec2_machine(name="node-1", uid="uid-a", os_name="ubuntu", **overrides):
    config = {
        "cloudProvider": "aws",
        "cloudProviderSpec": dict(SAMPLE_EC2_SPEC, **overrides),
        "operatingSystem": os_name,
    }
    return MachineSpec(name=name, uid=uid, provider_config=json.dumps(config))


@pytest.fixture
def ec2():
    return FakeEC2Client()


@pytest.fixture
def provider(ec2):
    return EC2Provider(client_factory=ec2, check_period=0.01, check_timeout=1, failed_wait=0.01)


def test_validate_accepts_offered_instance_type(provider):
    provider.validate(ec2_machine())


@pytest.mark.parametrize(
    "overrides,os_name,reason",
    [
        ({"region": ""}, "ubuntu", "region is missing"),
        ({"instanceType": ""}, "ubuntu", "instanceType is missing"),
        ({"secretAccessKey": ""}, "ubuntu", "accessKeyId and secretAccessKey must be set together"),
        ({}, "coreos", "operating system 'coreos' is not supported"),
        ({"region": "mars-north-1"}, "ubuntu", "region 'mars-north-1' not found"),
        ({"instanceType": "p5.48xlarge"}, "ubuntu", "instance type 'p5.48xlarge' is not available in region 'eu-central-1'"),
        ({"ami": "ami-missing"}, "ubuntu", "ami 'ami-missing' not found"),
        ({"diskSize": -1}, "ubuntu", "diskSize must not be negative"),
    ],
)
def test_validate_rejects_bad_specs(provider, overrides, os_name, reason):
    with pytest.raises(InvalidSpecError) as exc_info:
        provider.validate(ec2_machine(os_name=os_name, **overrides))

    assert exc_info.value.reason == reason
    assert exc_info.value.backend == "aws"


def test_validate_fails_when_no_image_matches_os(provider):
    with pytest.raises(InvalidSpecError):
        provider.validate(ec2_machine(os_name="centos"))


def test_create_tags_instance_and_uses_latest_image(provider, ec2, private_key):
    instance = provider.create(ec2_machine(), "#!/bin/bash\n", private_key)

    call = ec2.run_calls[0]
    assert call["ImageId"] == "ami-new"
    assert call["InstanceType"] == "t3.small"
    assert call["UserData"] == "#!/bin/bash\n"
    assert call["ClientToken"].startswith("uid-a-")
    assert len(call["ClientToken"]) <= 64
    assert call["SubnetId"] == "subnet-1"
    assert call["SecurityGroupIds"] == ["sg-1"]
    tags = {t["Key"]: t["Value"] for t in call["TagSpecifications"][0]["Tags"]}
    assert tags == {"team": "infra", "Name": "node-1", "machine-uid": "uid-a"}
    assert call["KeyName"] == f"machine-controller-{fingerprint(private_key).replace(':', '')}"

    assert instance.status is InstanceState.RUNNING
    assert instance.addresses == ["203.0.113.20"]


def test_create_uses_explicit_ami(provider, ec2, private_key):
    provider.create(ec2_machine(ami="ami-old"), "", private_key)

    assert ec2.run_calls[0]["ImageId"] == "ami-old"
    assert "BlockDeviceMappings" not in ec2.run_calls[0]


def test_create_sizes_root_volume(provider, ec2, private_key):
    provider.create(ec2_machine(diskSize=50), "", private_key)

    assert ec2.run_calls[0]["BlockDeviceMappings"] == [
        {"DeviceName": "/dev/sda1", "Ebs": {"VolumeSize": 50, "DeleteOnTermination": True}}
    ]


def test_create_confirms_after_tags_appear(private_key):
    ec2 = FakeEC2Client(tag_delay=2)
    provider = EC2Provider(client_factory=ec2, check_period=0.01, check_timeout=1, failed_wait=0.01)

    instance = provider.create(ec2_machine(), "", private_key)

    assert instance.name == "node-1"


def test_create_times_out_without_tags(private_key):
    ec2 = FakeEC2Client(tag_delay=10**6)
    provider = EC2Provider(client_factory=ec2, check_period=0.01, check_timeout=0.1, failed_wait=0.01)

    with pytest.raises(CreationConfirmationTimeoutError):
        provider.create(ec2_machine(), "", private_key)


def test_create_rejection(provider, ec2, private_key):
    ec2.reject_run = client_error("InstanceLimitExceeded", "RunInstances")

    with pytest.raises(CreateRejectedError) as exc_info:
        provider.create(ec2_machine(), "", private_key)

    assert "InstanceLimitExceeded" in str(exc_info.value)


def test_create_throttling_is_a_transport_error(provider, ec2, private_key):
    ec2.reject_run = client_error("RequestLimitExceeded", "RunInstances", status=503)

    with pytest.raises(BackendTransportError) as exc_info:
        provider.create(ec2_machine(), "", private_key)

    assert not isinstance(exc_info.value, CreateRejectedError)


def test_key_registration_is_idempotent(ec2, private_key):
    registry = EC2KeyRegistry(ec2)

    first = ensure_registered(registry, private_key)
    second = ensure_registered(registry, private_key)

    assert first == second
    assert list(ec2.key_pairs) == [first]


def test_duplicate_import_without_visible_key_is_a_transport_error(ec2, private_key):
    registry = EC2KeyRegistry(ec2)
    name = ensure_registered(registry, private_key)
    ec2.key_pairs[name]["Tags"] = []

    with pytest.raises(BackendTransportError):
        ensure_registered(registry, private_key)


def test_get_distinguishes_uid(provider, ec2):
    ec2.add_instance("node-1", "uid-b", ip="198.51.100.2")
    mine = ec2.add_instance("node-1", "uid-a", ip="198.51.100.1")

    instance = provider.get(ec2_machine(uid="uid-a"))

    assert instance.id == mine["InstanceId"]


def test_get_reads_every_page_and_warns_on_duplicates(provider, ec2, caplog):
    ec2.page_size = 1
    first = ec2.add_instance("node-1", "uid-a")
    ec2.add_instance("node-1", "uid-a")

    with caplog.at_level("WARNING"):
        instance = provider.get(ec2_machine(uid="uid-a"))

    assert instance.id == first["InstanceId"]
    assert "Found 2 instances" in caplog.text


def test_get_ignores_terminated_instances(provider, ec2):
    ec2.add_instance("node-1", "uid-a", state="terminated")

    with pytest.raises(InstanceNotFoundError):
        provider.get(ec2_machine(uid="uid-a"))


def test_delete_is_idempotent(provider, ec2):
    mine = ec2.add_instance("node-1", "uid-a")
    machine = ec2_machine(uid="uid-a")

    provider.delete(machine)
    provider.delete(machine)

    assert ec2.terminated == [mine["InstanceId"]]


def test_delete_of_missing_instance_makes_no_calls(provider, ec2):
    provider.delete(ec2_machine())

    assert ec2.terminated == []


def test_describe_bootstrap_config(provider):
    config, name = provider.describe_bootstrap_config(ec2_machine())

    assert name == "aws"
    assert config == "[global]\nZone=eu-central-1a\nVPC=vpc-1\nSubnetID=subnet-1\n"


def test_create_after_external_termination_launches_a_new_instance(provider, ec2, private_key):
    machine = ec2_machine(uid="uid-a")
    first = provider.create(machine, "", private_key)
    provider.delete(machine)
    ec2.finish_termination(first.id)

    second = provider.create(machine, "", private_key)

    assert second.id != first.id
    assert second.status is InstanceState.RUNNING
    assert provider.get(machine).id == second.id
    assert ec2.run_calls[0]["ClientToken"] != ec2.run_calls[1]["ClientToken"]


def test_create_refuses_a_terminated_instance_from_run(private_key):
    class ReplayingEC2(FakeEC2Client):
        def run_instances(self, **kwargs):
            dead = self.add_instance("node-1", "uid-a", state="terminated")
            return {"Instances": [{"InstanceId": dead["InstanceId"], "State": {"Name": "terminated"}}]}

    provider = EC2Provider(client_factory=ReplayingEC2(), check_period=0.01, check_timeout=1, failed_wait=0.01)

    with pytest.raises(CreateRejectedError):
        provider.create(ec2_machine(), "", private_key)


def test_confirmation_refuses_an_instance_terminated_meanwhile(private_key):
    class TerminatingEC2(FakeEC2Client):
        def describe_instances(self, InstanceIds=None, Filters=None, NextToken=None):
            for instance_id in InstanceIds or []:
                self.finish_termination(instance_id)
            return super().describe_instances(InstanceIds=InstanceIds, Filters=Filters, NextToken=NextToken)

    ec2 = TerminatingEC2()
    provider = EC2Provider(client_factory=ec2, check_period=0.01, check_timeout=1, failed_wait=0.01)

    with pytest.raises(CreateRejectedError):
        provider.create(ec2_machine(), "", private_key)

    assert len(ec2.run_calls) == 1


def test_validate_checks_region_against_the_api(provider, ec2):
    ec2.regions.append("ap-future-9")

    provider.validate(ec2_machine(region="ap-future-9"))
