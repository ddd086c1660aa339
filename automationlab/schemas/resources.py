"""
Resource schemas - per-kind records kept in the state document.

Each slot in the state document holds at most one record. A record is
written with status=created once its resource exists and moves to
status=destroyed when the resource is deleted. A destroyed record is
never revived; the next apply writes a fresh record into the slot.
"""

from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


class ResourceKind(str, Enum):
    """The four resource slots, named as they appear in the state document."""
    KEY_PAIR = "key_pair"
    SECURITY_GROUP = "security_group"
    EC2_INSTANCE = "ec2_instance"
    S3_BUCKET = "s3_bucket"


class ResourceStatus(str, Enum):
    CREATED = "created"
    DESTROYED = "destroyed"


# Reverse dependency order: nothing is deleted while something still uses it
DESTROY_ORDER = (
    ResourceKind.S3_BUCKET,
    ResourceKind.EC2_INSTANCE,
    ResourceKind.SECURITY_GROUP,
    ResourceKind.KEY_PAIR,
)

NOT_AVAILABLE = "N/A"


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(microsecond=0)


def format_timestamp(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_timestamp(value: Any) -> datetime:
    if not isinstance(value, str):
        raise ValueError(f"timestamp must be a string, got {type(value).__name__}")
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class _Record:
    """Shared lifecycle and serialization for resource records."""

    kind: ResourceKind
    identifier_field: str = "id"

    @property
    def identifier(self) -> str:
        return getattr(self, self.identifier_field)

    @property
    def is_created(self) -> bool:
        return self.status == ResourceStatus.CREATED

    def mark_destroyed(self, at: Optional[datetime] = None):
        """Return a copy marked destroyed; already destroyed records are unchanged."""
        if self.status == ResourceStatus.DESTROYED:
            return self
        return replace(self, status=ResourceStatus.DESTROYED, destroyed_at=at or utcnow())

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        result: dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if f.name == "destroyed_at" and value is None:
                continue
            if isinstance(value, Enum):
                value = value.value
            elif isinstance(value, datetime):
                value = format_timestamp(value)
            elif isinstance(value, tuple):
                value = list(value)
            result[f.name] = value
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]):
        """Deserialize from dictionary; raises ValueError on missing or bad fields."""
        kwargs: dict[str, Any] = {}
        for f in fields(cls):
            if f.name not in data:
                continue
            value = data[f.name]
            if f.name == "status":
                value = ResourceStatus(value)
            elif f.name in ("created_at", "destroyed_at") and value is not None:
                try:
                    value = parse_timestamp(value)
                except ValueError as e:
                    raise ValueError(f"{cls.kind.value}.{f.name}: {e}") from e
            elif isinstance(value, list):
                value = tuple(value)
            kwargs[f.name] = value
        try:
            return cls(**kwargs)
        except TypeError as e:
            raise ValueError(f"{cls.kind.value} record is missing fields: {e}") from e


@dataclass(frozen=True)
class KeyPairRecord(_Record):
    """
    SSH key pair registered with EC2.

    Attributes:
        name: Key pair name
        credential_file_ref: Local path of the private key file
    """
    name: str
    credential_file_ref: str
    status: ResourceStatus = ResourceStatus.CREATED
    created_at: datetime = field(default_factory=utcnow)
    destroyed_at: Optional[datetime] = None

    kind = ResourceKind.KEY_PAIR
    identifier_field = "name"


@dataclass(frozen=True)
class SecurityGroupRecord(_Record):
    id: str
    name: str
    vpc_id: str
    ports: tuple[int, ...] = (22, 80)
    status: ResourceStatus = ResourceStatus.CREATED
    created_at: datetime = field(default_factory=utcnow)
    destroyed_at: Optional[datetime] = None

    kind = ResourceKind.SECURITY_GROUP


@dataclass(frozen=True)
class InstanceRecord(_Record):
    """
    EC2 compute instance.

    public_address is "N/A" when the instance has no public IPv4 address.
    """
    id: str
    image_id: str
    key_name: str
    security_group_id: str
    instance_type: str
    public_address: str = NOT_AVAILABLE
    status: ResourceStatus = ResourceStatus.CREATED
    created_at: datetime = field(default_factory=utcnow)
    destroyed_at: Optional[datetime] = None

    kind = ResourceKind.EC2_INSTANCE


@dataclass(frozen=True)
class BucketRecord(_Record):
    name: str
    region: str
    versioning: str = "Enabled"
    objects: tuple[str, ...] = ()
    status: ResourceStatus = ResourceStatus.CREATED
    created_at: datetime = field(default_factory=utcnow)
    destroyed_at: Optional[datetime] = None

    kind = ResourceKind.S3_BUCKET
    identifier_field = "name"


RECORD_TYPES = {
    ResourceKind.KEY_PAIR: KeyPairRecord,
    ResourceKind.SECURITY_GROUP: SecurityGroupRecord,
    ResourceKind.EC2_INSTANCE: InstanceRecord,
    ResourceKind.S3_BUCKET: BucketRecord,
}


def record_from_dict(kind: ResourceKind, data: Any):
    """Build the record for a slot; raises ValueError on structural problems."""
    if not isinstance(data, dict):
        raise ValueError(f"{kind.value} slot must be an object or null")
    if "status" not in data:
        raise ValueError(f"{kind.value} record has no status")
    try:
        return RECORD_TYPES[kind].from_dict(data)
    except (KeyError, TypeError) as e:
        raise ValueError(f"{kind.value} record is invalid: {e}") from e
