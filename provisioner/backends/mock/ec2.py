"""Mock EC2 client for testing.

Implements the handful of boto3 EC2 operations the provider calls, raising
botocore ClientErrors the way the real service does.
"""

from __future__ import annotations

import itertools

from botocore.exceptions import ClientError

UBUNTU_IMAGES = [
    {"ImageId": "ami-old", "CreationDate": "2023-01-01T00:00:00.000Z", "OwnerId": "099720109477"},
    {"ImageId": "ami-new", "CreationDate": "2024-06-01T00:00:00.000Z", "OwnerId": "099720109477"},
]


def client_error(code: str, operation: str, status: int = 400, message: str = "") -> ClientError:
    return ClientError(
        {
            "Error": {"Code": code, "Message": message or code},
            "ResponseMetadata": {"HTTPStatusCode": status},
        },
        operation,
    )


class FakeEC2Client:
    """``tag_delay``: describe-by-ID calls on a new instance before its tags show."""

    def __init__(self, tag_delay: int = 0, offered_types: tuple[str, ...] = ("t3.small",)):
        self.tag_delay = tag_delay
        self.offered_types = set(offered_types)
        self.images = {img["ImageId"]: img for img in UBUNTU_IMAGES}
        self.instances: dict[str, dict] = {}
        self.key_pairs: dict[str, dict] = {}
        self.run_calls: list[dict] = []
        self.terminated: list[str] = []
        self.reject_run: ClientError | None = None
        self.page_size = 50
        self.regions = ["eu-central-1", "eu-west-1", "us-east-1"]

        self._pending_tags: dict[str, int] = {}
        self._client_tokens: dict[str, str] = {}
        self._ids = itertools.count(1)

    def __call__(self, cfg) -> FakeEC2Client:
        return self

    # --- Test helpers ---

    def add_instance(self, name: str, uid: str, state: str = "running", ip: str = "198.51.100.1") -> dict:
        instance_id = f"i-{next(self._ids):08x}"
        instance = {
            "InstanceId": instance_id,
            "State": {"Name": state},
            "PublicIpAddress": ip,
            "Tags": [{"Key": "Name", "Value": name}, {"Key": "machine-uid", "Value": uid}],
        }
        self.instances[instance_id] = instance
        return instance

    def _view(self, instance: dict) -> dict:
        if self._pending_tags.get(instance["InstanceId"], 0) > 0:
            return dict(instance, Tags=[], State={"Name": "pending"})
        return dict(instance)

    def finish_termination(self, instance_id: str) -> None:
        self.instances[instance_id]["State"] = {"Name": "terminated"}

    # --- Catalog ---

    def describe_regions(self, AllRegions=False):
        return {"Regions": [{"RegionName": r, "OptInStatus": "opt-in-not-required"} for r in self.regions]}

    def describe_instance_type_offerings(self, LocationType, Filters):
        wanted = Filters[0]["Values"][0]
        offerings = [{"InstanceType": wanted, "LocationType": LocationType}] if wanted in self.offered_types else []
        return {"InstanceTypeOfferings": offerings}

    def describe_images(self, ImageIds=None, Owners=None, Filters=None):
        if ImageIds is not None:
            missing = [i for i in ImageIds if i not in self.images]
            if missing:
                raise client_error("InvalidAMIID.NotFound", "DescribeImages")
            return {"Images": [self.images[i] for i in ImageIds]}
        return {"Images": [img for img in self.images.values() if img["OwnerId"] in (Owners or [])]}

    # --- Key pairs ---

    def describe_key_pairs(self, Filters):
        tag_key = Filters[0]["Name"].split(":", 1)[1]
        values = set(Filters[0]["Values"])
        return {
            "KeyPairs": [
                kp
                for kp in self.key_pairs.values()
                if any(t["Key"] == tag_key and t["Value"] in values for t in kp["Tags"])
            ]
        }

    def import_key_pair(self, KeyName, PublicKeyMaterial, TagSpecifications):
        if KeyName in self.key_pairs:
            raise client_error("InvalidKeyPair.Duplicate", "ImportKeyPair")
        self.key_pairs[KeyName] = {
            "KeyName": KeyName,
            "PublicKey": PublicKeyMaterial.decode(),
            "Tags": TagSpecifications[0]["Tags"],
        }
        return {"KeyName": KeyName}

    # --- Instances ---

    def run_instances(self, **kwargs):
        if self.reject_run is not None:
            raise self.reject_run
        self.run_calls.append(kwargs)
        token = kwargs.get("ClientToken")
        if token in self._client_tokens:
            # EC2 answers a repeated token with the original instance, whatever its state.
            original = self.instances[self._client_tokens[token]]
            return {"Instances": [{"InstanceId": original["InstanceId"], "State": dict(original["State"])}]}
        tags = kwargs["TagSpecifications"][0]["Tags"]
        name = next(t["Value"] for t in tags if t["Key"] == "Name")
        uid = next(t["Value"] for t in tags if t["Key"] == "machine-uid")
        instance = self.add_instance(name, uid, state="running", ip="203.0.113.20")
        instance["Tags"] = list(tags)
        self._pending_tags[instance["InstanceId"]] = self.tag_delay
        if token:
            self._client_tokens[token] = instance["InstanceId"]
        return {"Instances": [{"InstanceId": instance["InstanceId"], "State": {"Name": "pending"}}]}

    def describe_instances(self, InstanceIds=None, Filters=None, NextToken=None):
        if InstanceIds is not None:
            found = []
            for instance_id in InstanceIds:
                instance = self.instances.get(instance_id)
                if instance is None:
                    raise client_error("InvalidInstanceID.NotFound", "DescribeInstances")
                found.append(self._view(instance))
                pending = self._pending_tags.get(instance_id, 0)
                if pending > 0:
                    self._pending_tags[instance_id] = pending - 1
            return {"Reservations": [{"Instances": found}]}

        matches = [self._view(i) for i in self.instances.values()]
        for f in Filters or []:
            values = set(f["Values"])
            if f["Name"] == "instance-state-name":
                matches = [i for i in matches if i["State"]["Name"] in values]
            elif f["Name"].startswith("tag:"):
                key = f["Name"][4:]
                matches = [
                    i for i in matches if any(t["Key"] == key and t["Value"] in values for t in i["Tags"])
                ]

        start = int(NextToken or 0)
        page = matches[start : start + self.page_size]
        resp = {"Reservations": [{"Instances": [i]} for i in page]}
        if start + self.page_size < len(matches):
            resp["NextToken"] = str(start + self.page_size)
        return resp

    def terminate_instances(self, InstanceIds):
        for instance_id in InstanceIds:
            instance = self.instances.get(instance_id)
            if instance is None:
                raise client_error("InvalidInstanceID.NotFound", "TerminateInstances")
            instance["State"] = {"Name": "shutting-down"}
            self.terminated.append(instance_id)
        return {"TerminatingInstances": [{"InstanceId": i} for i in InstanceIds]}
