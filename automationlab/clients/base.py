"""
Base ResourceClient interface.

A ResourceClient is the orchestrator's only way to touch a cloud
resource. Each client handles one ResourceKind and raises
TransientError or PermanentError on failure; the orchestrator decides
what to retry and what to record.
"""

from abc import ABC, abstractmethod
from typing import Any, Optional

from automationlab.schemas import ResourceKind


class ResourceClient(ABC):
    """
    Abstract base class for per-kind resource clients.

    Implementations must provide:
    - create: provision the resource and return its record
    - describe: live lookup, None when the resource does not exist
    - delete: remove the resource
    - discover: identifiers carrying the project tag or name prefix
    """

    kind: ResourceKind

    @abstractmethod
    def create(self, **params: Any):
        """
        Create the resource.

        Args:
            **params: Kind-specific inputs (e.g. security_group_id and
                key_name for an instance)

        Returns:
            The record describing the new resource (status=created)

        Raises:
            TransientError: Retryable provider failure
            PermanentError: Non-retryable provider failure
        """
        pass

    @abstractmethod
    def describe(self, identifier: str) -> Optional[dict[str, Any]]:
        """
        Look the resource up.

        Returns:
            Provider attributes, or None when the resource does not exist
            (including instances that are terminated or shutting down)
        """
        pass

    @abstractmethod
    def delete(self, identifier: str) -> None:
        pass

    @abstractmethod
    def discover(self, tag_key: str, project_tag: str, name_prefix: str) -> list[str]:
        """Identifiers of live resources carrying the project tag or name prefix."""
        pass

    def prepare_delete(self, identifier: str) -> None:
        """Hook run before delete (buckets empty themselves here)."""
        pass

    def wait_deleted(self, identifier: str) -> None:
        """Hook run after delete (instances wait for termination here)."""
        pass
