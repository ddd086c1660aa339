"""
AWS resource clients backed by boto3.

Every botocore failure leaves this module as TransientError or
PermanentError. botocore's own retry handler ("standard" mode) already
absorbs short throttling bursts; what reaches the caller as
TransientError is worth a longer, caller-driven retry.
"""

import logging
import os
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Optional

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectTimeoutError,
    EndpointConnectionError,
    NoCredentialsError,
    ReadTimeoutError,
    WaiterError,
)

from automationlab.clients.base import ResourceClient
from automationlab.clients.registry import ResourceClientRegistry
from automationlab.config import AutomationLabConfig
from automationlab.errors import PermanentError, TransientError
from automationlab.schemas import (
    BucketRecord,
    EnvironmentInfo,
    InstanceRecord,
    KeyPairRecord,
    NOT_AVAILABLE,
    ResourceKind,
    SecurityGroupRecord,
)
from automationlab.validation import (
    sanitize_bucket_name,
    validate_ami_id,
    validate_bucket_name,
    validate_instance_id,
    validate_security_group_id,
)


logger = logging.getLogger(__name__)


TRANSIENT_CODES = {
    "Throttling",
    "ThrottlingException",
    "RequestLimitExceeded",
    "TooManyRequestsException",
    "SlowDown",
    "ServiceUnavailable",
    "InternalError",
    "RequestTimeout",
    "RequestTimeoutException",
    "DependencyViolation",
    "InvalidGroup.InUse",
    "IncorrectInstanceState",
    "OperationAborted",
}

NOT_FOUND_CODES = {
    "404",
    "NotFound",
    "NoSuchKey",
    "NoSuchBucket",
    "InvalidGroup.NotFound",
    "InvalidGroupId.NotFound",
    "InvalidInstanceID.NotFound",
    "InvalidKeyPair.NotFound",
    "ParameterNotFound",
}

GONE_INSTANCE_STATES = ("shutting-down", "terminated")
LIVE_INSTANCE_STATES = ["pending", "running", "stopping", "stopped"]

DELETE_BATCH_SIZE = 1000


def error_code(err: ClientError) -> str:
    return err.response.get("Error", {}).get("Code", "")


def is_not_found(err: Exception) -> bool:
    return isinstance(err, ClientError) and error_code(err) in NOT_FOUND_CODES


def classify_client_error(err: ClientError, operation: str) -> Exception:
    """Map a ClientError to TransientError or PermanentError."""
    code = error_code(err)
    message = err.response.get("Error", {}).get("Message", str(err))
    text = f"{operation}: {code}: {message}"
    if code in TRANSIENT_CODES or "throttl" in code.lower():
        return TransientError(text)
    return PermanentError(text)


@contextmanager
def aws_errors(operation: str) -> Iterator[None]:
    """Translate botocore exceptions raised inside the block."""
    try:
        yield
    except ClientError as e:
        raise classify_client_error(e, operation) from e
    except WaiterError as e:
        raise PermanentError(f"{operation}: gave up waiting ({e})") from e
    except (EndpointConnectionError, ConnectTimeoutError, ReadTimeoutError) as e:
        raise TransientError(f"{operation}: {e}") from e
    except NoCredentialsError as e:
        raise PermanentError(f"{operation}: no AWS credentials found ({e})") from e
    except BotoCoreError as e:
        raise PermanentError(f"{operation}: {e}") from e


def create_session(profile: Optional[str], region: str) -> boto3.Session:
    # "default" is left to the credential chain so environment credentials still work
    if profile and profile != "default":
        return boto3.Session(profile_name=profile, region_name=region)
    return boto3.Session(region_name=region)


def make_client(session: boto3.Session, service: str, max_attempts: int = 3):
    return session.client(
        service,
        config=BotoConfig(retries={"max_attempts": max_attempts, "mode": "standard"}),
    )


def get_environment(session: boto3.Session, region: str, profile: str = "default") -> EnvironmentInfo:
    """Resolve the account behind the current credentials via STS."""
    with aws_errors("get caller identity"):
        identity = session.client("sts").get_caller_identity()
    return EnvironmentInfo(account_id=identity["Account"], region=region, profile=profile)


def project_tags(config: AutomationLabConfig, name: Optional[str] = None) -> list[dict[str, str]]:
    tags = [{"Key": config.tag_key, "Value": config.project_tag}]
    if name:
        tags.append({"Key": "Name", "Value": name})
    return tags


def purge_bucket_versions(s3_client: Any, bucket: str) -> int:
    """Delete every object version and delete marker. Returns how many were removed."""
    removed = 0
    with aws_errors(f"empty bucket {bucket}"):
        paginator = s3_client.get_paginator("list_object_versions")
        pending: list[dict[str, str]] = []
        for page in paginator.paginate(Bucket=bucket):
            for entry in page.get("Versions", []) + page.get("DeleteMarkers", []):
                pending.append({"Key": entry["Key"], "VersionId": entry["VersionId"]})
        for start in range(0, len(pending), DELETE_BATCH_SIZE):
            batch = pending[start:start + DELETE_BATCH_SIZE]
            resp = s3_client.delete_objects(Bucket=bucket, Delete={"Objects": batch, "Quiet": True})
            errors = resp.get("Errors") or []
            if errors:
                first = errors[0]
                raise PermanentError(
                    f"empty bucket {bucket}: {len(errors)} objects not deleted "
                    f"(first: {first.get('Key')}: {first.get('Message')})"
                )
            removed += len(batch)
    if removed:
        logger.info(f"Removed {removed} object versions and delete markers from {bucket}")
    return removed


class KeyPairClient(ResourceClient):
    """EC2 key pair; the private key is written next to the project with mode 0600."""

    kind = ResourceKind.KEY_PAIR

    def __init__(self, ec2_client: Any, config: AutomationLabConfig):
        self._ec2 = ec2_client
        self.config = config

    def key_file(self, name: str) -> Path:
        return Path(self.config.key_dir).expanduser() / f"{name}.pem"

    def create(self, **params: Any) -> KeyPairRecord:
        name = params.get("name") or self.config.key_name
        key_file = self.key_file(name)

        if self.describe(name) is not None:
            logger.info(f"Key pair {name} already exists, reusing it")
            if not key_file.exists():
                logger.warning(f"Private key {key_file} not found; you may need to delete the key pair and recreate it")
            return KeyPairRecord(name=name, credential_file_ref=str(key_file))

        with aws_errors(f"create key pair {name}"):
            resp = self._ec2.create_key_pair(
                KeyName=name,
                TagSpecifications=[{"ResourceType": "key-pair", "Tags": project_tags(self.config)}],
            )
        key_file.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(key_file, os.O_CREAT | os.O_WRONLY | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w") as f:
            f.write(resp["KeyMaterial"])
        os.chmod(key_file, 0o600)
        logger.info(f"Key pair {name} created, private key saved to {key_file}")
        return KeyPairRecord(name=name, credential_file_ref=str(key_file))

    def describe(self, identifier: str) -> Optional[dict[str, Any]]:
        try:
            resp = self._ec2.describe_key_pairs(KeyNames=[identifier])
        except ClientError as e:
            if is_not_found(e):
                return None
            raise classify_client_error(e, f"describe key pair {identifier}") from e
        pairs = resp.get("KeyPairs", [])
        if not pairs:
            return None
        return {"name": pairs[0]["KeyName"], "key_pair_id": pairs[0].get("KeyPairId", "")}

    def delete(self, identifier: str) -> None:
        with aws_errors(f"delete key pair {identifier}"):
            self._ec2.delete_key_pair(KeyName=identifier)
        key_file = self.key_file(identifier)
        if key_file.exists():
            key_file.unlink()
            logger.info(f"Removed private key {key_file}")

    def discover(self, tag_key: str, project_tag: str, name_prefix: str) -> list[str]:
        with aws_errors("list key pairs"):
            pairs = self._ec2.describe_key_pairs().get("KeyPairs", [])
        found = []
        for pair in pairs:
            tags = {t["Key"]: t["Value"] for t in pair.get("Tags", [])}
            if pair["KeyName"].startswith(name_prefix) or tags.get(tag_key) == project_tag:
                found.append(pair["KeyName"])
        return found


class SecurityGroupClient(ResourceClient):
    """Security group in the configured (or default) VPC with ingress on the configured ports."""

    kind = ResourceKind.SECURITY_GROUP

    def __init__(self, ec2_client: Any, config: AutomationLabConfig):
        self._ec2 = ec2_client
        self.config = config

    def default_vpc(self) -> str:
        with aws_errors("find default VPC"):
            vpcs = self._ec2.describe_vpcs(Filters=[{"Name": "isDefault", "Values": ["true"]}]).get("Vpcs", [])
        if not vpcs:
            raise PermanentError(f"No default VPC in {self.config.region}; set vpc_id in config.yaml")
        return vpcs[0]["VpcId"]

    def _find_existing(self, name: str, vpc_id: str) -> Optional[str]:
        with aws_errors(f"find security group {name}"):
            groups = self._ec2.describe_security_groups(
                Filters=[
                    {"Name": "group-name", "Values": [name]},
                    {"Name": "vpc-id", "Values": [vpc_id]},
                ]
            ).get("SecurityGroups", [])
        return groups[0]["GroupId"] if groups else None

    def _ensure_ingress(self, group_id: str, port: int) -> None:
        try:
            self._ec2.authorize_security_group_ingress(
                GroupId=group_id,
                IpPermissions=[{
                    "IpProtocol": "tcp",
                    "FromPort": port,
                    "ToPort": port,
                    "IpRanges": [{"CidrIp": self.config.ingress_cidr}],
                }],
            )
            logger.info(f"Added ingress rule: port {port}/tcp from {self.config.ingress_cidr}")
        except ClientError as e:
            if error_code(e) == "InvalidPermission.Duplicate":
                logger.info(f"Port {port} ingress rule already exists")
                return
            raise classify_client_error(e, f"authorize ingress on {group_id}") from e

    def create(self, **params: Any) -> SecurityGroupRecord:
        name = self.config.security_group_name
        vpc_id = self.config.vpc_id or self.default_vpc()
        logger.info(f"Using VPC: {vpc_id}")

        group_id = self._find_existing(name, vpc_id)
        if group_id:
            logger.info(f"Security group '{name}' already exists: {group_id}, reusing it")
        else:
            with aws_errors(f"create security group {name}"):
                resp = self._ec2.create_security_group(
                    GroupName=name,
                    Description=self.config.security_group_description,
                    VpcId=vpc_id,
                    TagSpecifications=[{"ResourceType": "security-group", "Tags": project_tags(self.config, name)}],
                )
            group_id = resp["GroupId"]
            logger.info(f"Created security group: {group_id}")
        group_id = validate_security_group_id(group_id)

        for port in self.config.ingress_ports:
            self._ensure_ingress(group_id, int(port))

        return SecurityGroupRecord(
            id=group_id,
            name=name,
            vpc_id=vpc_id,
            ports=tuple(int(p) for p in self.config.ingress_ports),
        )

    def describe(self, identifier: str) -> Optional[dict[str, Any]]:
        try:
            resp = self._ec2.describe_security_groups(GroupIds=[identifier])
        except ClientError as e:
            if is_not_found(e):
                return None
            raise classify_client_error(e, f"describe security group {identifier}") from e
        groups = resp.get("SecurityGroups", [])
        if not groups:
            return None
        group = groups[0]
        ports = sorted({p["FromPort"] for p in group.get("IpPermissions", []) if "FromPort" in p})
        return {"name": group.get("GroupName"), "vpc_id": group.get("VpcId"), "ports": ports}

    def delete(self, identifier: str) -> None:
        with aws_errors(f"delete security group {identifier}"):
            self._ec2.delete_security_group(GroupId=identifier)

    def discover(self, tag_key: str, project_tag: str, name_prefix: str) -> list[str]:
        found = []
        with aws_errors("list security groups"):
            paginator = self._ec2.get_paginator("describe_security_groups")
            for page in paginator.paginate(Filters=[{"Name": f"tag:{tag_key}", "Values": [project_tag]}]):
                for group in page.get("SecurityGroups", []):
                    if group.get("GroupName") != "default":
                        found.append(group["GroupId"])
        return found


class InstanceClient(ResourceClient):
    """EC2 instance launched from the AMI published in an SSM parameter."""

    kind = ResourceKind.EC2_INSTANCE

    def __init__(self, ec2_client: Any, ssm_client: Any, config: AutomationLabConfig):
        self._ec2 = ec2_client
        self._ssm = ssm_client
        self.config = config

    def _waiter_config(self) -> dict[str, int]:
        return {"Delay": self.config.retry.waiter_delay, "MaxAttempts": self.config.retry.waiter_max_attempts}

    def resolve_ami(self) -> str:
        with aws_errors(f"resolve AMI from {self.config.ami_ssm_parameter}"):
            resp = self._ssm.get_parameter(Name=self.config.ami_ssm_parameter)
        return validate_ami_id(resp["Parameter"]["Value"])

    def create(self, **params: Any) -> InstanceRecord:
        security_group_id = params["security_group_id"]
        key_name = params["key_name"]
        image_id = self.resolve_ami()
        logger.info(f"Launching {self.config.instance_type} instance from {image_id}")

        with aws_errors("run instance"):
            resp = self._ec2.run_instances(
                ImageId=image_id,
                InstanceType=self.config.instance_type,
                KeyName=key_name,
                SecurityGroupIds=[security_group_id],
                MinCount=1,
                MaxCount=1,
                TagSpecifications=[{
                    "ResourceType": "instance",
                    "Tags": project_tags(self.config, self.config.instance_name),
                }],
            )
        instance_id = validate_instance_id(resp["Instances"][0]["InstanceId"])
        logger.info(f"Instance {instance_id} launched, waiting for it to run")

        with aws_errors(f"wait for instance {instance_id} running"):
            self._ec2.get_waiter("instance_running").wait(
                InstanceIds=[instance_id], WaiterConfig=self._waiter_config()
            )

        details = self.describe(instance_id) or {}
        return InstanceRecord(
            id=instance_id,
            image_id=image_id,
            key_name=key_name,
            security_group_id=security_group_id,
            instance_type=self.config.instance_type,
            public_address=details.get("public_address") or NOT_AVAILABLE,
        )

    def describe(self, identifier: str) -> Optional[dict[str, Any]]:
        try:
            resp = self._ec2.describe_instances(InstanceIds=[identifier])
        except ClientError as e:
            if is_not_found(e):
                return None
            raise classify_client_error(e, f"describe instance {identifier}") from e
        instances = [i for r in resp.get("Reservations", []) for i in r.get("Instances", [])]
        if not instances:
            return None
        instance = instances[0]
        state = instance.get("State", {}).get("Name", "unknown")
        if state in GONE_INSTANCE_STATES:
            return None
        return {
            "state": state,
            "public_address": instance.get("PublicIpAddress") or NOT_AVAILABLE,
            "instance_type": instance.get("InstanceType"),
        }

    def delete(self, identifier: str) -> None:
        with aws_errors(f"terminate instance {identifier}"):
            self._ec2.terminate_instances(InstanceIds=[identifier])

    def wait_deleted(self, identifier: str) -> None:
        logger.info(f"Waiting for instance {identifier} to terminate")
        with aws_errors(f"wait for instance {identifier} terminated"):
            self._ec2.get_waiter("instance_terminated").wait(
                InstanceIds=[identifier], WaiterConfig=self._waiter_config()
            )

    def discover(self, tag_key: str, project_tag: str, name_prefix: str) -> list[str]:
        found = []
        with aws_errors("list instances"):
            paginator = self._ec2.get_paginator("describe_instances")
            pages = paginator.paginate(Filters=[
                {"Name": f"tag:{tag_key}", "Values": [project_tag]},
                {"Name": "instance-state-name", "Values": LIVE_INSTANCE_STATES},
            ])
            for page in pages:
                for reservation in page.get("Reservations", []):
                    found.extend(i["InstanceId"] for i in reservation.get("Instances", []))
        return found


class BucketClient(ResourceClient):
    """Versioned, tagged S3 bucket seeded with a sample object."""

    kind = ResourceKind.S3_BUCKET

    def __init__(self, s3_client: Any, config: AutomationLabConfig, protected: tuple[str, ...] = ()):
        self._s3 = s3_client
        self.config = config
        # Buckets never touched by discovery (the remote state bucket)
        self.protected = set(protected)

    def new_bucket_name(self) -> str:
        return validate_bucket_name(sanitize_bucket_name(f"{self.config.bucket_prefix}-{int(time.time())}"))

    def create(self, **params: Any) -> BucketRecord:
        name = params.get("name") or self.new_bucket_name()
        region = self.config.region

        with aws_errors(f"create bucket {name}"):
            if region == "us-east-1":
                self._s3.create_bucket(Bucket=name)
            else:
                self._s3.create_bucket(
                    Bucket=name,
                    CreateBucketConfiguration={"LocationConstraint": region},
                )
            logger.info(f"Created bucket {name} in {region}")

            self._s3.put_bucket_versioning(
                Bucket=name, VersioningConfiguration={"Status": "Enabled"}
            )
            self._s3.put_bucket_tagging(
                Bucket=name, Tagging={"TagSet": project_tags(self.config)}
            )
            self._s3.put_object(
                Bucket=name,
                Key=self.config.sample_object_key,
                Body=self.config.sample_object_body.encode("utf-8"),
                ContentType="text/plain",
            )
            logger.info(f"Uploaded {self.config.sample_object_key} to {name}")

        return BucketRecord(
            name=name,
            region=region,
            versioning="Enabled",
            objects=(self.config.sample_object_key,),
        )

    def describe(self, identifier: str) -> Optional[dict[str, Any]]:
        try:
            self._s3.head_bucket(Bucket=identifier)
        except ClientError as e:
            if is_not_found(e):
                return None
            raise classify_client_error(e, f"head bucket {identifier}") from e
        with aws_errors(f"describe bucket {identifier}"):
            versioning = self._s3.get_bucket_versioning(Bucket=identifier).get("Status", "Disabled")
            listing = self._s3.list_objects_v2(Bucket=identifier, MaxKeys=100)
        return {
            "versioning": versioning,
            "objects": [obj["Key"] for obj in listing.get("Contents", [])],
        }

    def prepare_delete(self, identifier: str) -> None:
        purge_bucket_versions(self._s3, identifier)

    def delete(self, identifier: str) -> None:
        with aws_errors(f"delete bucket {identifier}"):
            self._s3.delete_bucket(Bucket=identifier)

    def discover(self, tag_key: str, project_tag: str, name_prefix: str) -> list[str]:
        with aws_errors("list buckets"):
            buckets = self._s3.list_buckets().get("Buckets", [])
        return [
            b["Name"] for b in buckets
            if b["Name"].startswith(name_prefix) and b["Name"] not in self.protected
        ]


def build_registry(
    session: boto3.Session,
    config: AutomationLabConfig,
    protected_buckets: tuple[str, ...] = (),
) -> ResourceClientRegistry:
    """All four AWS clients sharing one session."""
    attempts = config.retry.aws_max_attempts
    ec2 = make_client(session, "ec2", attempts)
    return ResourceClientRegistry.of(
        KeyPairClient(ec2, config),
        SecurityGroupClient(ec2, config),
        InstanceClient(ec2, make_client(session, "ssm", attempts), config),
        BucketClient(make_client(session, "s3", attempts), config, protected=protected_buckets),
    )
