"""
automationlab.schemas - Data structures persisted in the state document.

StateDocument -> resources[kind] -> {KeyPair,SecurityGroup,Instance,Bucket}Record

Lifecycle of a slot: absent (null) -> created -> destroyed. A destroyed
slot is replaced by a fresh record on the next apply.
"""

from .resources import (
    ResourceKind,
    ResourceStatus,
    DESTROY_ORDER,
    NOT_AVAILABLE,
    KeyPairRecord,
    SecurityGroupRecord,
    InstanceRecord,
    BucketRecord,
    RECORD_TYPES,
    record_from_dict,
    utcnow,
    format_timestamp,
    parse_timestamp,
)
from .state_document import (
    StateDocument,
    StateMetadata,
    NamingConfig,
    EnvironmentInfo,
    SCHEMA_VERSION,
    UNKNOWN_ACCOUNT,
)

__all__ = [
    # Resources
    "ResourceKind",
    "ResourceStatus",
    "DESTROY_ORDER",
    "NOT_AVAILABLE",
    "KeyPairRecord",
    "SecurityGroupRecord",
    "InstanceRecord",
    "BucketRecord",
    "RECORD_TYPES",
    "record_from_dict",
    "utcnow",
    "format_timestamp",
    "parse_timestamp",
    # State document
    "StateDocument",
    "StateMetadata",
    "NamingConfig",
    "EnvironmentInfo",
    "SCHEMA_VERSION",
    "UNKNOWN_ACCOUNT",
]
