"""
Input validation for AWS identifiers and names.

Every validator returns the normalized value on success and raises
ValidationError otherwise. Identifiers read back from AWS are stripped of
surrounding whitespace before matching.
"""

import ipaddress
import logging
import re

from automationlab.errors import ValidationError


logger = logging.getLogger(__name__)


KNOWN_REGIONS = (
    "us-east-1", "us-east-2", "us-west-1", "us-west-2",
    "af-south-1",
    "ap-east-1", "ap-south-1", "ap-south-2",
    "ap-southeast-1", "ap-southeast-2", "ap-southeast-3", "ap-southeast-4",
    "ap-northeast-1", "ap-northeast-2", "ap-northeast-3",
    "ca-central-1", "ca-west-1",
    "eu-central-1", "eu-central-2",
    "eu-west-1", "eu-west-2", "eu-west-3",
    "eu-south-1", "eu-south-2", "eu-north-1",
    "il-central-1", "me-south-1", "me-central-1",
    "sa-east-1",
)

FREE_TIER_INSTANCE_TYPES = ("t3.micro",)

_REGION_SHAPE = re.compile(r"^[a-z]{2}-[a-z]+-[0-9]+$")
_BUCKET_SHAPE = re.compile(r"^[a-z0-9][a-z0-9.-]*[a-z0-9]$")
_IP_SHAPE = re.compile(r"^[0-9]+\.[0-9]+\.[0-9]+\.[0-9]+$")
_SG_NAME = re.compile(r"^[a-zA-Z0-9 ._:/@#,\[\]+=&;{}!$*-]+$")
_SG_ID = re.compile(r"^sg-[a-f0-9]{8,17}$")
_INSTANCE_ID = re.compile(r"^i-[a-f0-9]{8,17}$")
_AMI_ID = re.compile(r"^ami-[a-f0-9]{8,17}$")
_VPC_ID = re.compile(r"^vpc-[a-f0-9]{8,17}$")
_INSTANCE_TYPE = re.compile(r"^[a-z][a-z0-9]*\.[a-z0-9]+$")
_KEY_NAME = re.compile(r"^[a-zA-Z0-9._-]+$")
_WORKSPACE = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9_-]{0,63}$")


def _require(field: str, value) -> str:
    if value is None or str(value).strip() == "":
        raise ValidationError(field, value, "cannot be empty")
    return str(value)


def validate_region(region: str) -> str:
    region = _require("region", region)
    if region in KNOWN_REGIONS:
        return region
    if _REGION_SHAPE.match(region):
        logger.warning(f"Region '{region}' not in known list but format is valid")
        return region
    raise ValidationError("region", region, "must be a valid AWS region (e.g. us-east-1, eu-west-2)")


def validate_bucket_name(name: str) -> str:
    name = _require("bucket name", name)
    if not 3 <= len(name) <= 63:
        raise ValidationError("bucket name", name, f"must be 3-63 characters long (got {len(name)})")
    if name != name.lower():
        raise ValidationError("bucket name", name, f"must be lowercase (suggested: {name.lower()})")
    if "_" in name:
        raise ValidationError("bucket name", name, f"cannot contain underscores (suggested: {name.replace('_', '-')})")
    if not _BUCKET_SHAPE.match(name):
        raise ValidationError(
            "bucket name", name,
            "must start and end with a letter or number and contain only lowercase letters, numbers, hyphens and dots",
        )
    if ".." in name:
        raise ValidationError("bucket name", name, "cannot contain consecutive dots")
    if _IP_SHAPE.match(name):
        raise ValidationError("bucket name", name, "cannot be formatted as an IP address")
    return name


def sanitize_bucket_name(name: str) -> str:
    """Coerce an arbitrary string toward a legal bucket name."""
    name = name.lower().replace("_", "-")
    name = re.sub(r"[^a-z0-9.-]", "", name)
    name = name.replace("..", "-").replace("--", "-")
    name = re.sub(r"^[^a-z0-9]*", "", name)
    name = re.sub(r"[^a-z0-9]*$", "", name)
    return name[:63]


def validate_security_group_name(name: str) -> str:
    name = _require("security group name", name)
    if len(name) > 255:
        raise ValidationError("security group name", name, "must be 255 characters or less")
    if not _SG_NAME.match(name):
        raise ValidationError("security group name", name, "contains invalid characters")
    return name


def _validate_id(field: str, value: str, pattern: re.Pattern, example: str) -> str:
    value = "".join(_require(field, value).split())
    if not pattern.match(value):
        raise ValidationError(field, value, f"expected format {example}")
    return value


def validate_security_group_id(sg_id: str) -> str:
    return _validate_id("security group id", sg_id, _SG_ID, "sg-xxxxxxxx")


def validate_instance_id(instance_id: str) -> str:
    return _validate_id("instance id", instance_id, _INSTANCE_ID, "i-xxxxxxxx")


def validate_ami_id(ami_id: str) -> str:
    return _validate_id("AMI id", ami_id, _AMI_ID, "ami-xxxxxxxx")


def validate_vpc_id(vpc_id: str) -> str:
    return _validate_id("VPC id", vpc_id, _VPC_ID, "vpc-xxxxxxxx")


def validate_instance_type(instance_type: str) -> str:
    instance_type = _require("instance type", instance_type)
    if not _INSTANCE_TYPE.match(instance_type):
        raise ValidationError("instance type", instance_type, "expected format family.size (e.g. t3.micro)")
    if instance_type not in FREE_TIER_INSTANCE_TYPES:
        logger.warning(
            f"Instance type '{instance_type}' may not be free-tier eligible "
            f"(free tier: {', '.join(FREE_TIER_INSTANCE_TYPES)})"
        )
    return instance_type


def validate_key_pair_name(name: str) -> str:
    name = _require("key pair name", name)
    if len(name) > 255:
        raise ValidationError("key pair name", name, "must be 255 characters or less")
    if not _KEY_NAME.match(name):
        raise ValidationError("key pair name", name, "allowed: letters, numbers, dots, underscores, hyphens")
    return name


def validate_cidr(cidr: str) -> str:
    cidr = _require("CIDR", cidr)
    if "/" not in cidr:
        raise ValidationError("CIDR", cidr, "expected format x.x.x.x/y")
    try:
        ipaddress.IPv4Network(cidr, strict=False)
    except ValueError as e:
        raise ValidationError("CIDR", cidr, str(e)) from e
    return cidr


def validate_port(port, name: str = "port") -> int:
    try:
        value = int(str(port))
    except ValueError:
        raise ValidationError(name, port, "must be a number")
    if not 1 <= value <= 65535:
        raise ValidationError(name, port, "must be between 1 and 65535")
    return value


def validate_workspace_name(workspace: str) -> str:
    workspace = _require("workspace", workspace)
    if not _WORKSPACE.match(workspace):
        raise ValidationError(
            "workspace", workspace,
            "use up to 64 letters, numbers, hyphens or underscores, starting with a letter or number",
        )
    return workspace
