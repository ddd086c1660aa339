"""
Remote state synchronization over S3.

When the remote backend is enabled, every mutating command runs inside
RemoteSync.session():

    remote lock -> pull -> (local lock -> mutate -> local unlock)* -> push -> remote unlock

The local file stays the working copy; the bucket is the shared copy.
When the remote backend is disabled every method here is a no-op, so
callers never branch on the backend kind.
"""

import logging
from contextlib import contextmanager
from typing import Any, Iterator, Optional

from botocore.exceptions import ClientError

from automationlab.clients.aws import error_code, is_not_found, purge_bucket_versions
from automationlab.errors import AutomationLabError, RemoteBackendError
from automationlab.locks import LockManager, NullLock
from automationlab.schemas import NamingConfig
from automationlab.state_store import InMemoryStateBackend, StateBackend, decode_document
from automationlab.validation import sanitize_bucket_name


logger = logging.getLogger(__name__)


def default_state_bucket(name_prefix: str, account_id: Optional[str], region: str) -> str:
    """Bucket name used when none is configured: <prefix>-state-<account>-<region>."""
    return sanitize_bucket_name(f"{name_prefix}-state-{account_id or 'unknown'}-{region}")


class S3StateBackend(StateBackend):
    """State document stored as one S3 object, encrypted at rest."""

    def __init__(self, s3_client: Any, bucket: str, key: str):
        self._s3 = s3_client
        self.bucket = bucket
        self.key = key

    @property
    def location(self) -> str:
        return f"s3://{self.bucket}/{self.key}"

    def read_bytes(self) -> Optional[bytes]:
        try:
            resp = self._s3.get_object(Bucket=self.bucket, Key=self.key)
            return resp["Body"].read()
        except ClientError as e:
            if error_code(e) in {"NoSuchKey", "404", "NotFound"}:
                return None
            raise RemoteBackendError("read", self.location, str(e)) from e

    def write_bytes(self, data: bytes) -> None:
        try:
            self._s3.put_object(
                Bucket=self.bucket,
                Key=self.key,
                Body=data,
                ContentType="application/json",
                ServerSideEncryption="AES256",
            )
        except ClientError as e:
            raise RemoteBackendError("write", self.location, str(e)) from e

    def exists(self) -> bool:
        try:
            self._s3.head_object(Bucket=self.bucket, Key=self.key)
            return True
        except ClientError as e:
            if is_not_found(e):
                return False
            raise RemoteBackendError("head", self.location, str(e)) from e

    def delete(self) -> None:
        try:
            self._s3.delete_object(Bucket=self.bucket, Key=self.key)
        except ClientError as e:
            raise RemoteBackendError("delete", self.location, str(e)) from e


class RemoteSync:
    """
    Pull/push the local state document to and from the remote store.

    Args:
        local: The local working copy
        remote: Remote backend, or None when remote state is disabled
        lock: Remote lock (NullLock when disabled)
        s3_client: Client used for bucket administration
        region: Region the state bucket lives in
        naming: Tags applied to the state bucket
        lock_timeout: Seconds to wait for the remote lock
    """

    def __init__(
        self,
        local: StateBackend,
        remote: Optional[S3StateBackend] = None,
        lock: Optional[LockManager] = None,
        s3_client: Any = None,
        region: str = "us-east-1",
        naming: Optional[NamingConfig] = None,
        lock_timeout: float = 30.0,
    ):
        self.local = local
        self.remote = remote
        self.lock = lock or NullLock()
        self._s3 = s3_client
        self.region = region
        self.naming = naming or NamingConfig()
        self.lock_timeout = lock_timeout

    @property
    def enabled(self) -> bool:
        return self.remote is not None

    @property
    def bucket(self) -> Optional[str]:
        return self.remote.bucket if self.remote else None

    def _bucket_exists(self) -> bool:
        try:
            self._s3.head_bucket(Bucket=self.bucket)
            return True
        except ClientError as e:
            if is_not_found(e):
                return False
            raise RemoteBackendError("head bucket", self.bucket, str(e)) from e

    def backend_init(self) -> bool:
        """
        Create or converge the state bucket: versioning, encryption,
        public access block and project tags. Safe to run repeatedly.

        Returns:
            False when remote state is disabled, True otherwise
        """
        if not self.enabled:
            return False
        bucket = self.bucket
        try:
            if self._bucket_exists():
                logger.info(f"State bucket {bucket} already exists")
            else:
                if self.region == "us-east-1":
                    self._s3.create_bucket(Bucket=bucket)
                else:
                    self._s3.create_bucket(
                        Bucket=bucket,
                        CreateBucketConfiguration={"LocationConstraint": self.region},
                    )
                logger.info(f"Created state bucket {bucket}")

            self._s3.put_bucket_versioning(
                Bucket=bucket, VersioningConfiguration={"Status": "Enabled"}
            )
            self._s3.put_bucket_encryption(
                Bucket=bucket,
                ServerSideEncryptionConfiguration={
                    "Rules": [{"ApplyServerSideEncryptionByDefault": {"SSEAlgorithm": "AES256"}}]
                },
            )
            self._s3.put_public_access_block(
                Bucket=bucket,
                PublicAccessBlockConfiguration={
                    "BlockPublicAcls": True,
                    "IgnorePublicAcls": True,
                    "BlockPublicPolicy": True,
                    "RestrictPublicBuckets": True,
                },
            )
            self._s3.put_bucket_tagging(
                Bucket=bucket,
                Tagging={"TagSet": [
                    {"Key": "Project", "Value": self.naming.project_tag},
                    {"Key": "Purpose", "Value": "automationlab-state"},
                ]},
            )
        except ClientError as e:
            raise RemoteBackendError("init", f"s3://{bucket}", str(e)) from e
        return True

    def pull(self) -> bool:
        """
        Copy the remote document over the local one.

        A remote that has no document yet leaves the local copy alone.
        A remote document that does not parse is rejected before the
        local copy is touched.

        Returns:
            True if a document was pulled
        """
        if not self.enabled:
            return False
        data = self.remote.read_bytes()
        if data is None:
            logger.info(f"No remote state at {self.remote.location} yet")
            return False
        decode_document(data, self.remote.location)
        self.local.write_bytes(data)
        logger.info(f"Pulled state from {self.remote.location}")
        return True

    def push(self) -> bool:
        """
        Copy the local document to the remote store.

        Returns:
            True if a document was pushed
        """
        if not self.enabled:
            return False
        data = self.local.read_bytes()
        if data is None:
            logger.debug("No local state to push")
            return False
        decode_document(data, self.local.location)
        self.remote.write_bytes(data)
        logger.info(f"Pushed state to {self.remote.location}")
        return True

    @contextmanager
    def session(self) -> Iterator[None]:
        """
        Hold the remote lock around a pull, the caller's work and a push.

        The push runs even when the work fails so partial progress is
        shared; a push failure after a work failure is logged and the
        original error propagates.
        """
        if not self.enabled:
            yield
            return
        with self.lock.held(self.lock_timeout):
            self.pull()
            try:
                yield
            except BaseException:
                try:
                    self.push()
                except AutomationLabError as push_error:
                    logger.error(f"Could not push partial state: {push_error}")
                raise
            self.push()

    def refresh(self) -> bool:
        """Pull under the remote lock, for commands that only read state."""
        if not self.enabled:
            return False
        with self.lock.held(self.lock_timeout):
            return self.pull()

    def snapshot(self) -> StateBackend:
        """
        Read-only view of the shared document, for dry runs.

        Returns the remote document held in memory when there is one,
        otherwise the local backend. The local copy is never written.
        """
        if not self.enabled:
            return self.local
        data = self.remote.read_bytes()
        if data is None:
            return self.local
        decode_document(data, self.remote.location)
        return InMemoryStateBackend(f"snapshot/{self.remote.key}", data)

    def status(self) -> dict[str, Any]:
        info: dict[str, Any] = {
            "backend": "s3" if self.enabled else "local",
            "local": self.local.location,
            "local_exists": self.local.exists(),
        }
        if self.enabled:
            info["remote"] = self.remote.location
            info["remote_exists"] = self.remote.exists()
            info["lock_holder"] = self.lock.holder()
        return info

    def destroy_backend(self) -> bool:
        """Delete the state bucket with every version in it."""
        if not self.enabled:
            return False
        if not self._bucket_exists():
            logger.info(f"State bucket {self.bucket} does not exist")
            return False
        purge_bucket_versions(self._s3, self.bucket)
        try:
            self._s3.delete_bucket(Bucket=self.bucket)
        except ClientError as e:
            raise RemoteBackendError("destroy", f"s3://{self.bucket}", str(e)) from e
        logger.info(f"Deleted state bucket {self.bucket}")
        return True
