"""
State document schema.

The state document is the single JSON object persisted per workspace:

    {
      "schema_version": "1.0",
      "metadata": {workspace, created_at, updated_at, aws_account_id, aws_region, aws_profile},
      "config": {project_tag, name_prefix},
      "resources": {key_pair, security_group, ec2_instance, s3_bucket}
    }

Documents are immutable values; every mutation returns a new document
with metadata.updated_at bumped (never moving backwards).
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Optional

from .resources import (
    ResourceKind,
    ResourceStatus,
    format_timestamp,
    parse_timestamp,
    record_from_dict,
    utcnow,
)


SCHEMA_VERSION = "1.0"
SUPPORTED_SCHEMA_VERSIONS = ("1.0",)
UNKNOWN_ACCOUNT = "unknown"


def _string_field(data: dict[str, Any], section: str, key: str, required: bool = False) -> Optional[str]:
    value = data[key] if required else data.get(key)
    if value is not None and not isinstance(value, str):
        raise ValueError(f"{section}.{key} must be a string, got {type(value).__name__}")
    return value


@dataclass(frozen=True)
class StateMetadata:
    """
    Attributes:
        workspace: Workspace the document belongs to
        created_at: When the document was first written
        updated_at: Last mutation time, monotonically non-decreasing
        aws_account_id: Account of the credentials that created it, or "unknown"
        aws_region: Region resources were created in
        aws_profile: Credential profile in use at creation
    """
    workspace: str
    created_at: datetime
    updated_at: datetime
    aws_account_id: str = UNKNOWN_ACCOUNT
    aws_region: str = "us-east-1"
    aws_profile: str = "default"

    def to_dict(self) -> dict[str, Any]:
        return {
            "workspace": self.workspace,
            "created_at": format_timestamp(self.created_at),
            "updated_at": format_timestamp(self.updated_at),
            "aws_account_id": self.aws_account_id,
            "aws_region": self.aws_region,
            "aws_profile": self.aws_profile,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StateMetadata":
        def timestamp(key: str) -> datetime:
            try:
                return parse_timestamp(data[key])
            except ValueError as e:
                raise ValueError(f"metadata.{key}: {e}") from e

        return cls(
            workspace=_string_field(data, "metadata", "workspace", required=True),
            created_at=timestamp("created_at"),
            updated_at=timestamp("updated_at"),
            aws_account_id=_string_field(data, "metadata", "aws_account_id") or UNKNOWN_ACCOUNT,
            aws_region=_string_field(data, "metadata", "aws_region") or "",
            aws_profile=_string_field(data, "metadata", "aws_profile") or "default",
        )


@dataclass(frozen=True)
class NamingConfig:
    """Naming and tagging convention captured when the document was created."""
    project_tag: str = "AutomationLab"
    name_prefix: str = "automationlab"

    def to_dict(self) -> dict[str, Any]:
        return {"project_tag": self.project_tag, "name_prefix": self.name_prefix}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "NamingConfig":
        return cls(
            project_tag=_string_field(data, "config", "project_tag") or cls.project_tag,
            name_prefix=_string_field(data, "config", "name_prefix") or cls.name_prefix,
        )


@dataclass(frozen=True)
class StateDocument:
    metadata: StateMetadata
    config: NamingConfig = field(default_factory=NamingConfig)
    resources: dict[ResourceKind, Any] = field(default_factory=dict)
    schema_version: str = SCHEMA_VERSION

    @classmethod
    def new(
        cls,
        workspace: str,
        account_id: Optional[str] = None,
        region: str = "us-east-1",
        profile: str = "default",
        naming: Optional[NamingConfig] = None,
        at: Optional[datetime] = None,
    ) -> "StateDocument":
        """Default document: all four slots empty."""
        now = at or utcnow()
        return cls(
            metadata=StateMetadata(
                workspace=workspace,
                created_at=now,
                updated_at=now,
                aws_account_id=account_id or UNKNOWN_ACCOUNT,
                aws_region=region,
                aws_profile=profile,
            ),
            config=naming or NamingConfig(),
            resources={kind: None for kind in ResourceKind},
        )

    def get(self, kind: ResourceKind):
        return self.resources.get(ResourceKind(kind))

    def with_resource(self, kind: ResourceKind, record, at: Optional[datetime] = None) -> "StateDocument":
        """Return a copy with one slot replaced (record may be None to clear it)."""
        kind = ResourceKind(kind)
        resources = dict(self.resources)
        resources[kind] = record
        return replace(self, resources=resources, metadata=self._touched(at))

    def _touched(self, at: Optional[datetime]) -> StateMetadata:
        now = at or utcnow()
        return replace(self.metadata, updated_at=max(now, self.metadata.updated_at))

    def created_kinds(self) -> list[ResourceKind]:
        return [kind for kind in ResourceKind if self._has_status(kind, ResourceStatus.CREATED)]

    def kinds_with_status(self, status: ResourceStatus) -> list[ResourceKind]:
        return [kind for kind in ResourceKind if self._has_status(kind, status)]

    def _has_status(self, kind: ResourceKind, status: ResourceStatus) -> bool:
        record = self.resources.get(kind)
        return record is not None and record.status == status

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        return {
            "schema_version": self.schema_version,
            "metadata": self.metadata.to_dict(),
            "config": self.config.to_dict(),
            "resources": {
                kind.value: (self.resources.get(kind).to_dict() if self.resources.get(kind) else None)
                for kind in ResourceKind
            },
        }

    @classmethod
    def from_dict(cls, data: Any) -> "StateDocument":
        """
        Deserialize and structurally validate a document.

        Raises:
            ValueError: If the document is not a well-formed state document.
                The caller turns this into StateCorruptError with the path.
        """
        if not isinstance(data, dict):
            raise ValueError("top level must be an object")
        version = data.get("schema_version")
        if version not in SUPPORTED_SCHEMA_VERSIONS:
            raise ValueError(f"unsupported schema_version {version!r}")
        if not isinstance(data.get("metadata"), dict):
            raise ValueError("metadata must be an object")
        raw_resources = data.get("resources")
        if not isinstance(raw_resources, dict):
            raise ValueError("resources must be an object")
        raw_config = data.get("config")
        if raw_config is not None and not isinstance(raw_config, dict):
            raise ValueError("config must be an object")
        unknown = set(raw_resources) - {kind.value for kind in ResourceKind}
        if unknown:
            raise ValueError(f"unknown resource slots: {', '.join(sorted(unknown))}")

        try:
            metadata = StateMetadata.from_dict(data["metadata"])
        except KeyError as e:
            raise ValueError(f"metadata is missing {e}") from e

        resources = {}
        for kind in ResourceKind:
            raw = raw_resources.get(kind.value)
            resources[kind] = None if raw is None else record_from_dict(kind, raw)

        return cls(
            metadata=metadata,
            config=NamingConfig.from_dict(raw_config or {}),
            resources=resources,
            schema_version=version,
        )


@dataclass(frozen=True)
class EnvironmentInfo:
    """Account and region of the credentials currently in use."""
    account_id: Optional[str]
    region: str
    profile: str = "default"
