"""
Advisory locks around state document mutation.

One lock per workspace. Acquisition is exclusive-create; a lock older
than the staleness threshold is assumed abandoned and reclaimed. This is
a liveness heuristic, not fencing: a holder that runs longer than the
threshold can lose its lock to a second process.

Implementations:
- FileLock: exclusive-create of <state_dir>/<workspace>.lock
- S3Lock: conditional put (If-None-Match: *) of a lock object
- InMemoryLock: shared dict registry (for testing)
- NullLock: used when the remote backend is disabled
"""

import json
import logging
import os
import socket
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Iterator, Optional

from botocore.exceptions import ClientError

from automationlab.errors import LockContentionError, RemoteBackendError
from automationlab.schemas import format_timestamp, utcnow


logger = logging.getLogger(__name__)


def lock_owner() -> str:
    """Identity written into a lock: pid, host and acquisition time."""
    return f"pid={os.getpid()} host={socket.gethostname()} at={format_timestamp(utcnow())}"


@dataclass(frozen=True)
class LockInfo:
    owner: str
    acquired_at: float
    location: str


@dataclass(frozen=True)
class LockHolder:
    owner: str
    age: float


class LockManager(ABC):
    """
    Base class for workspace locks.

    Subclasses implement the three storage primitives; the polling,
    staleness reclamation and timeout handling live here.
    """

    def __init__(
        self,
        stale_after: float = 30.0,
        poll_interval: float = 1.0,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.stale_after = stale_after
        self.poll_interval = poll_interval
        self._clock = clock
        self._sleep = sleep
        self._owner: Optional[str] = None

    @property
    @abstractmethod
    def location(self) -> str:
        """Human-readable lock location for messages."""
        pass

    @abstractmethod
    def _try_create(self, owner: str) -> bool:
        """Create the lock record; False if one already exists."""
        pass

    @abstractmethod
    def _read_holder(self) -> Optional[LockHolder]:
        """Current holder, or None if no lock record exists."""
        pass

    @abstractmethod
    def _remove(self) -> None:
        pass

    @property
    def is_held(self) -> bool:
        return self._owner is not None

    def acquire(self, timeout: float = 30.0) -> LockInfo:
        """
        Acquire the lock, polling until timeout.

        Raises:
            LockContentionError: If a live holder keeps the lock past timeout
        """
        owner = lock_owner()
        deadline = self._clock() + timeout
        while True:
            if self._try_create(owner):
                self._owner = owner
                logger.debug(f"Acquired lock {self.location}")
                return LockInfo(owner=owner, acquired_at=self._clock(), location=self.location)

            holder = self._read_holder()
            if holder is not None and holder.age > self.stale_after:
                logger.warning(
                    f"Removing stale lock {self.location} held by {holder.owner} "
                    f"({holder.age:.0f}s old)"
                )
                self._remove()
                continue

            if self._clock() >= deadline:
                raise LockContentionError(self.location, holder.owner if holder else None, timeout)

            logger.debug(f"Waiting for lock {self.location}")
            self._sleep(self.poll_interval)

    def release(self) -> None:
        """Release the lock if this manager holds it; otherwise do nothing."""
        if self._owner is None:
            return
        holder = self._read_holder()
        if holder is not None and holder.owner != self._owner:
            logger.warning(f"Lock {self.location} was taken over by {holder.owner}; leaving it in place")
        elif holder is not None:
            self._remove()
            logger.debug(f"Released lock {self.location}")
        self._owner = None

    def force_release(self) -> bool:
        """Remove the lock regardless of holder. Returns True if one existed."""
        holder = self._read_holder()
        if holder is None:
            return False
        logger.warning(f"Force-releasing lock {self.location} held by {holder.owner}")
        self._remove()
        self._owner = None
        return True

    def holder(self) -> Optional[str]:
        holder = self._read_holder()
        return holder.owner if holder else None

    @contextmanager
    def held(self, timeout: float = 30.0) -> Iterator[LockInfo]:
        info = self.acquire(timeout)
        try:
            yield info
        finally:
            self.release()


class FileLock(LockManager):
    """Lock file on the local filesystem; age comes from the file mtime."""

    def __init__(self, path: Path, **kwargs):
        super().__init__(**kwargs)
        self.path = Path(path)

    @property
    def location(self) -> str:
        return str(self.path)

    def _try_create(self, owner: str) -> bool:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        with os.fdopen(fd, "w") as f:
            f.write(owner + "\n")
        return True

    def _read_holder(self) -> Optional[LockHolder]:
        try:
            owner = self.path.read_text().strip()
            age = self._clock() - self.path.stat().st_mtime
        except FileNotFoundError:
            return None
        return LockHolder(owner=owner or "unknown", age=age)

    def _remove(self) -> None:
        self.path.unlink(missing_ok=True)


class S3Lock(LockManager):
    """
    Lock object in the remote state bucket.

    Creation uses a conditional put so only one writer can succeed; age
    comes from the object's LastModified.
    """

    def __init__(self, s3_client: Any, bucket: str, key: str, **kwargs):
        super().__init__(**kwargs)
        self._s3 = s3_client
        self.bucket = bucket
        self.key = key

    @property
    def location(self) -> str:
        return f"s3://{self.bucket}/{self.key}"

    def _try_create(self, owner: str) -> bool:
        try:
            self._s3.put_object(
                Bucket=self.bucket,
                Key=self.key,
                Body=json.dumps({"owner": owner}).encode("utf-8"),
                ContentType="application/json",
                Metadata={"owner": owner},
                ServerSideEncryption="AES256",
                IfNoneMatch="*",
            )
            return True
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code", "")
            if code in {"PreconditionFailed", "412", "ConditionalRequestConflict", "409"}:
                return False
            raise RemoteBackendError("lock", self.location, str(e)) from e

    def _read_holder(self) -> Optional[LockHolder]:
        try:
            resp = self._s3.head_object(Bucket=self.bucket, Key=self.key)
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code", "")
            if code in {"NoSuchKey", "404", "NotFound"}:
                return None
            raise RemoteBackendError("lock", self.location, str(e)) from e
        owner = resp.get("Metadata", {}).get("owner", "unknown")
        modified = resp.get("LastModified")
        age = self._clock() - modified.timestamp() if modified is not None else 0.0
        return LockHolder(owner=owner, age=age)

    def _remove(self) -> None:
        try:
            self._s3.delete_object(Bucket=self.bucket, Key=self.key)
        except ClientError as e:
            raise RemoteBackendError("unlock", self.location, str(e)) from e


class InMemoryLock(LockManager):
    """
    In-memory lock for testing.

    Locks constructed with the same registry and name contend with each
    other, which stands in for two processes sharing one lock file.
    """

    def __init__(self, name: str = "default", registry: Optional[dict] = None, **kwargs):
        super().__init__(**kwargs)
        self.name = name
        self._registry = registry if registry is not None else {}

    @property
    def location(self) -> str:
        return f"memory://{self.name}"

    def _try_create(self, owner: str) -> bool:
        if self.name in self._registry:
            return False
        self._registry[self.name] = (owner, self._clock())
        return True

    def _read_holder(self) -> Optional[LockHolder]:
        entry = self._registry.get(self.name)
        if entry is None:
            return None
        owner, created = entry
        return LockHolder(owner=owner, age=self._clock() - created)

    def _remove(self) -> None:
        self._registry.pop(self.name, None)


class NullLock(LockManager):
    """Lock that always succeeds; stands in for the remote lock when remote state is off."""

    @property
    def location(self) -> str:
        return "none"

    def _try_create(self, owner: str) -> bool:
        return True

    def _read_holder(self) -> Optional[LockHolder]:
        return None

    def _remove(self) -> None:
        pass
