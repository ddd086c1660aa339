"""
StateStore - the per-workspace record of provisioned resources.

The store owns one state document. Every mutation re-reads the document
under the workspace lock, applies a single slot change and writes the
whole document back atomically, so concurrent invocations never lose
each other's updates.

Storage backends:
- File-based (local .state/<workspace>.json)
- In-memory (for testing)
- S3 object (see automationlab.remote)
"""

import json
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Callable, Optional

from automationlab.errors import (
    EnvironmentMismatchError,
    StateCorruptError,
    StateNotFoundError,
)
from automationlab.locks import LockManager
from automationlab.schemas import (
    EnvironmentInfo,
    NamingConfig,
    ResourceKind,
    ResourceStatus,
    StateDocument,
    UNKNOWN_ACCOUNT,
)


logger = logging.getLogger(__name__)


class StateBackend(ABC):
    """Byte storage for a single state document."""

    @property
    @abstractmethod
    def location(self) -> str:
        pass

    @abstractmethod
    def read_bytes(self) -> Optional[bytes]:
        """Document contents, or None if it does not exist."""
        pass

    @abstractmethod
    def write_bytes(self, data: bytes) -> None:
        """Replace the document; readers see the old or the new bytes, never a mix."""
        pass

    @abstractmethod
    def delete(self) -> None:
        pass

    def exists(self) -> bool:
        return self.read_bytes() is not None


class InMemoryStateBackend(StateBackend):
    """In-memory backend for testing."""

    def __init__(self, name: str = "memory", data: Optional[bytes] = None):
        self.name = name
        self.data = data
        self.writes = 0

    @property
    def location(self) -> str:
        return f"memory://{self.name}"

    def read_bytes(self) -> Optional[bytes]:
        return self.data

    def write_bytes(self, data: bytes) -> None:
        self.data = data
        self.writes += 1

    def delete(self) -> None:
        self.data = None


class FileStateBackend(StateBackend):
    """Local JSON file written via temp file, fsync and os.replace."""

    def __init__(self, path: Path):
        self.path = Path(path)

    @property
    def location(self) -> str:
        return str(self.path)

    def read_bytes(self) -> Optional[bytes]:
        try:
            return self.path.read_bytes()
        except FileNotFoundError:
            return None

    def exists(self) -> bool:
        return self.path.exists()

    def write_bytes(self, data: bytes) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(
            dir=str(self.path.parent),
            prefix=f".{self.path.name}.",
            suffix=".tmp",
        )
        try:
            with os.fdopen(fd, "wb") as tmp_handle:
                tmp_handle.write(data)
                tmp_handle.flush()
                os.fsync(tmp_handle.fileno())
            os.replace(tmp_path, self.path)
        except BaseException:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise

    def delete(self) -> None:
        self.path.unlink(missing_ok=True)


def encode_document(doc: StateDocument) -> bytes:
    return (json.dumps(doc.to_dict(), indent=2) + "\n").encode("utf-8")


def decode_document(data: bytes, location: str) -> StateDocument:
    """Parse document bytes; raises StateCorruptError naming the location."""
    try:
        raw = json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise StateCorruptError(location, f"not valid JSON ({e})") from e
    try:
        return StateDocument.from_dict(raw)
    except (ValueError, TypeError, AttributeError) as e:
        raise StateCorruptError(location, str(e)) from e


class StateStore:
    """
    Read and mutate the state document of one workspace.

    Args:
        backend: Where the document bytes live
        lock: Workspace lock held for the duration of each mutation
        workspace: Workspace name recorded in new documents
        environment: Account/region/profile recorded in new documents
        naming: Naming convention recorded in new documents
        lock_timeout: Seconds to wait for the lock on each mutation
    """

    def __init__(
        self,
        backend: StateBackend,
        lock: LockManager,
        workspace: str = "default",
        environment: Optional[EnvironmentInfo] = None,
        naming: Optional[NamingConfig] = None,
        lock_timeout: float = 30.0,
    ):
        self.backend = backend
        self.lock = lock
        self.workspace = workspace
        self.environment = environment
        self.naming = naming or NamingConfig()
        self.lock_timeout = lock_timeout

    @property
    def location(self) -> str:
        return self.backend.location

    def exists(self) -> bool:
        return self.backend.exists()

    def _default_document(self) -> StateDocument:
        env = self.environment
        return StateDocument.new(
            workspace=self.workspace,
            account_id=env.account_id if env else None,
            region=env.region if env else "us-east-1",
            profile=env.profile if env else "default",
            naming=self.naming,
        )

    def init(self) -> StateDocument:
        """Create the document if absent. An existing document is left untouched."""
        with self.lock.held(self.lock_timeout):
            data = self.backend.read_bytes()
            if data is not None:
                logger.debug(f"State document already exists: {self.location}")
                return decode_document(data, self.location)
            doc = self._default_document()
            self.backend.write_bytes(encode_document(doc))
            logger.info(f"Initialized state document {self.location}")
            return doc

    def read(self, required: bool = False) -> StateDocument:
        """
        Read the document.

        A missing document yields the default document (not persisted),
        unless required=True.

        Raises:
            StateNotFoundError: If required and the document does not exist
            StateCorruptError: If the document cannot be parsed
        """
        data = self.backend.read_bytes()
        if data is None:
            if required:
                raise StateNotFoundError(self.location)
            return self._default_document()
        return decode_document(data, self.location)

    def get_resource(self, kind: ResourceKind):
        return self.read().get(kind)

    def _mutate(self, kind: ResourceKind, change: Callable[[Any], Any]) -> StateDocument:
        with self.lock.held(self.lock_timeout):
            doc = self.read()
            current = doc.get(kind)
            updated = change(current)
            if updated is current:
                return doc
            doc = doc.with_resource(kind, updated)
            self.backend.write_bytes(encode_document(doc))
            return doc

    def set_resource(self, kind: ResourceKind, record) -> StateDocument:
        """Replace one slot with a record (status=created)."""
        kind = ResourceKind(kind)
        if record.kind != kind:
            raise ValueError(f"{record.kind.value} record cannot be stored in the {kind.value} slot")
        doc = self._mutate(kind, lambda current: record)
        logger.info(f"Recorded {kind.value} {record.identifier} in {self.location}")
        return doc

    def destroy_resource(self, kind: ResourceKind) -> StateDocument:
        """Mark the slot destroyed. An empty slot is left empty."""
        kind = ResourceKind(kind)

        def change(current):
            if current is None:
                return None
            return current.mark_destroyed()

        doc = self._mutate(kind, change)
        logger.info(f"Marked {kind.value} destroyed in {self.location}")
        return doc

    def clear_resource(self, kind: ResourceKind) -> StateDocument:
        """Empty the slot entirely."""
        return self._mutate(ResourceKind(kind), lambda current: None)

    def has_resource(self, kind: ResourceKind) -> bool:
        """True when the slot holds a record, created or destroyed."""
        return self.get_resource(kind) is not None

    def has_any_created_resource(self) -> bool:
        return bool(self.read().created_kinds())

    def get_by_status(self, status: ResourceStatus) -> list[ResourceKind]:
        return self.read().kinds_with_status(ResourceStatus(status))

    def verify_environment(self, current: EnvironmentInfo, force: bool = False) -> None:
        """
        Check the document was recorded against the current account and region.

        Region is compared whenever the document records one. Account is
        compared only when both sides are known.

        Raises:
            EnvironmentMismatchError: On mismatch, unless force is set
        """
        if not self.exists():
            return
        meta = self.read().metadata
        mismatches = []
        if meta.aws_region and current.region and meta.aws_region != current.region:
            mismatches.append(("region", meta.aws_region, current.region))
        if (
            meta.aws_account_id != UNKNOWN_ACCOUNT
            and current.account_id
            and meta.aws_account_id != current.account_id
        ):
            mismatches.append(("account", meta.aws_account_id, current.account_id))

        for field_name, recorded, now in mismatches:
            if force:
                logger.warning(
                    f"{field_name} mismatch ignored (--force): state has {recorded}, current is {now}"
                )
            else:
                raise EnvironmentMismatchError(field_name, recorded, now, self.location)

    def summary(self) -> list[dict[str, str]]:
        """Rows describing each slot, for display."""
        doc = self.read()
        rows = []
        for kind in ResourceKind:
            record = doc.get(kind)
            rows.append({
                "kind": kind.value,
                "status": record.status.value if record else "absent",
                "identifier": record.identifier if record else "",
            })
        return rows
