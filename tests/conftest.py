import io
from datetime import datetime, timezone

import pytest
from botocore.exceptions import ClientError

from automationlab.clients import ResourceClient, ResourceClientRegistry
from automationlab.config import AutomationLabConfig, RetryPolicy
from automationlab.locks import InMemoryLock
from automationlab.orchestrator import Orchestrator
from automationlab.schemas import (
    BucketRecord,
    EnvironmentInfo,
    InstanceRecord,
    KeyPairRecord,
    NamingConfig,
    ResourceKind,
    SecurityGroupRecord,
)
from automationlab.state_store import InMemoryStateBackend, StateStore


ACCOUNT_ID = "123456789012"


def client_error(code: str, operation: str = "Operation", message: str = "boom") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": message}}, operation)


# =============================================================================
# Fake resource clients
# =============================================================================

def _security_group(n, params):
    return SecurityGroupRecord(id=f"sg-{n:08x}", name="automationlab-sg", vpc_id="vpc-0abc1234")


def _key_pair(n, params):
    return KeyPairRecord(name="automationlab-key", credential_file_ref="./automationlab-key.pem")


def _instance(n, params):
    return InstanceRecord(
        id=f"i-{n:08x}",
        image_id="ami-0abc1234",
        key_name=params["key_name"],
        security_group_id=params["security_group_id"],
        instance_type="t3.micro",
        public_address="203.0.113.10",
    )


def _bucket(n, params):
    return BucketRecord(name=f"automationlab-bucket-{n}", region="us-east-1", objects=("welcome.txt",))


LIVE_ATTRIBUTES = {
    ResourceKind.SECURITY_GROUP: {"name": "automationlab-sg", "ports": [22, 80]},
    ResourceKind.KEY_PAIR: {"name": "automationlab-key"},
    ResourceKind.EC2_INSTANCE: {"state": "running", "public_address": "203.0.113.10"},
    ResourceKind.S3_BUCKET: {"versioning": "Enabled", "objects": ["welcome.txt"]},
}

FACTORIES = {
    ResourceKind.SECURITY_GROUP: _security_group,
    ResourceKind.KEY_PAIR: _key_pair,
    ResourceKind.EC2_INSTANCE: _instance,
    ResourceKind.S3_BUCKET: _bucket,
}


class FakeResourceClient(ResourceClient):
    """
    In-memory resource client.

    Every call is appended to the shared `calls` list as (operation, kind, identifier)
    so tests can assert on ordering across kinds. Queue exceptions in
    create_errors / delete_errors to make the next calls fail.
    """

    def __init__(self, kind: ResourceKind, calls: list):
        self.kind = kind
        self.calls = calls
        self.live: dict[str, dict] = {}
        self.tagged: set[str] = set()
        self.create_errors: list[Exception] = []
        self.delete_errors: list[Exception] = []
        self.discover_error = None
        self._counter = 0

    def add_live(self, identifier: str, tagged: bool = True, **attributes) -> None:
        self.live[identifier] = {**LIVE_ATTRIBUTES[self.kind], **attributes}
        if tagged:
            self.tagged.add(identifier)

    def create(self, **params):
        self.calls.append(("create", self.kind, None))
        if self.create_errors:
            raise self.create_errors.pop(0)
        self._counter += 1
        record = FACTORIES[self.kind](self._counter, params)
        self.add_live(record.identifier)
        return record

    def describe(self, identifier):
        self.calls.append(("describe", self.kind, identifier))
        attrs = self.live.get(identifier)
        return dict(attrs) if attrs is not None else None

    def prepare_delete(self, identifier):
        self.calls.append(("prepare_delete", self.kind, identifier))

    def delete(self, identifier):
        self.calls.append(("delete", self.kind, identifier))
        if self.delete_errors:
            raise self.delete_errors.pop(0)
        self.live.pop(identifier, None)
        self.tagged.discard(identifier)

    def wait_deleted(self, identifier):
        self.calls.append(("wait_deleted", self.kind, identifier))

    def discover(self, tag_key, project_tag, name_prefix):
        self.calls.append(("discover", self.kind, None))
        if self.discover_error is not None:
            raise self.discover_error
        return sorted(i for i in self.tagged if i in self.live)


@pytest.fixture
def calls():
    return []


@pytest.fixture
def fake_clients(calls):
    return {kind: FakeResourceClient(kind, calls) for kind in ResourceKind}


@pytest.fixture
def registry(fake_clients):
    return ResourceClientRegistry.of(*fake_clients.values())


# =============================================================================
# Config, store, orchestrator
# =============================================================================

@pytest.fixture
def test_config(tmp_path):
    return AutomationLabConfig(
        workspace="test",
        state_dir=str(tmp_path / ".state"),
        key_dir=str(tmp_path),
        retry=RetryPolicy(
            lock_timeout=2.0,
            lock_poll_interval=0.01,
            sg_delete_attempts=5,
            sg_delete_backoff=0.0,
        ),
    )


@pytest.fixture
def environment():
    return EnvironmentInfo(account_id=ACCOUNT_ID, region="us-east-1", profile="default")


@pytest.fixture
def state_backend():
    return InMemoryStateBackend("test")


@pytest.fixture
def lock_registry():
    return {}


@pytest.fixture
def store(state_backend, lock_registry, environment):
    return StateStore(
        state_backend,
        InMemoryLock("test", registry=lock_registry),
        workspace="test",
        environment=environment,
        naming=NamingConfig(),
        lock_timeout=1.0,
    )


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def orchestrator(store, registry, test_config, environment, sleeps):
    return Orchestrator(
        store,
        registry,
        test_config,
        environment=environment,
        sleep=sleeps.append,
    )


# =============================================================================
# Fake S3
# =============================================================================

class FakePaginator:
    def __init__(self, pages_fn):
        self._pages_fn = pages_fn

    def paginate(self, **kwargs):
        return self._pages_fn(**kwargs)


class FakeS3:
    """
    Minimal in-memory S3 client.

    Buckets hold versioned objects; put_object honours IfNoneMatch="*".
    Every call is recorded in `calls` as (method, kwargs).
    """

    def __init__(self):
        self.buckets: dict[str, dict] = {}
        self.calls: list[tuple[str, dict]] = []
        self._version = 0

    def _bucket(self, name):
        if name not in self.buckets:
            raise client_error("NoSuchBucket")
        return self.buckets[name]

    def create_bucket(self, **kwargs):
        self.calls.append(("create_bucket", kwargs))
        self.buckets.setdefault(kwargs["Bucket"], {"objects": {}, "versions": [], "config": {}})
        return {}

    def head_bucket(self, Bucket):
        self.calls.append(("head_bucket", {"Bucket": Bucket}))
        if Bucket not in self.buckets:
            raise client_error("404", "HeadBucket")
        return {}

    def _put_config(self, name, **kwargs):
        self.calls.append((name, kwargs))
        self._bucket(kwargs["Bucket"])["config"][name] = kwargs

    def put_bucket_versioning(self, **kwargs):
        self._put_config("put_bucket_versioning", **kwargs)

    def put_bucket_encryption(self, **kwargs):
        self._put_config("put_bucket_encryption", **kwargs)

    def put_public_access_block(self, **kwargs):
        self._put_config("put_public_access_block", **kwargs)

    def put_bucket_tagging(self, **kwargs):
        self._put_config("put_bucket_tagging", **kwargs)

    def put_object(self, **kwargs):
        self.calls.append(("put_object", kwargs))
        bucket = self._bucket(kwargs["Bucket"])
        key = kwargs["Key"]
        if kwargs.get("IfNoneMatch") == "*" and key in bucket["objects"]:
            raise client_error("PreconditionFailed", "PutObject")
        self._version += 1
        bucket["objects"][key] = {
            "Body": kwargs["Body"],
            "Metadata": kwargs.get("Metadata", {}),
            "LastModified": datetime.now(timezone.utc),
        }
        bucket["versions"].append({"Key": key, "VersionId": f"v{self._version}"})
        return {"ETag": f'"{self._version}"'}

    def get_object(self, Bucket, Key):
        self.calls.append(("get_object", {"Bucket": Bucket, "Key": Key}))
        obj = self._bucket(Bucket)["objects"].get(Key)
        if obj is None:
            raise client_error("NoSuchKey", "GetObject")
        return {"Body": io.BytesIO(obj["Body"])}

    def head_object(self, Bucket, Key):
        self.calls.append(("head_object", {"Bucket": Bucket, "Key": Key}))
        obj = self._bucket(Bucket)["objects"].get(Key)
        if obj is None:
            raise client_error("404", "HeadObject")
        return {"Metadata": obj["Metadata"], "LastModified": obj["LastModified"]}

    def delete_object(self, Bucket, Key):
        self.calls.append(("delete_object", {"Bucket": Bucket, "Key": Key}))
        self._bucket(Bucket)["objects"].pop(Key, None)
        return {}

    def get_paginator(self, name):
        assert name == "list_object_versions"

        def pages(Bucket):
            versions = list(self._bucket(Bucket)["versions"])
            yield {"Versions": versions[:2], "DeleteMarkers": []}
            yield {"Versions": versions[2:], "DeleteMarkers": []}

        return FakePaginator(pages)

    def delete_objects(self, Bucket, Delete):
        self.calls.append(("delete_objects", {"Bucket": Bucket, "Delete": Delete}))
        bucket = self._bucket(Bucket)
        gone = {(o["Key"], o["VersionId"]) for o in Delete["Objects"]}
        bucket["versions"] = [v for v in bucket["versions"] if (v["Key"], v["VersionId"]) not in gone]
        return {}

    def delete_bucket(self, Bucket):
        self.calls.append(("delete_bucket", {"Bucket": Bucket}))
        bucket = self._bucket(Bucket)
        if bucket["versions"]:
            raise client_error("BucketNotEmpty", "DeleteBucket")
        del self.buckets[Bucket]
        return {}


@pytest.fixture
def fake_s3():
    return FakeS3()


@pytest.fixture
def make_client_error():
    return client_error
