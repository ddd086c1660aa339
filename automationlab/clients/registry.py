"""
ResourceClientRegistry - one client per resource kind.

The orchestrator looks clients up by kind, which lets tests swap the
AWS clients for in-memory fakes.
"""

from automationlab.clients.base import ResourceClient
from automationlab.schemas import ResourceKind


class ResourceClientRegistry:
    """
    Registry mapping ResourceKind to ResourceClient.

    Usage:
        registry = ResourceClientRegistry()
        registry.register(SecurityGroupClient(ec2, settings))
        registry.get(ResourceKind.SECURITY_GROUP).describe("sg-123")
    """

    def __init__(self) -> None:
        self._clients: dict[ResourceKind, ResourceClient] = {}

    def register(self, client: ResourceClient) -> None:
        """Register a client under its own kind, replacing any previous one."""
        self._clients[ResourceKind(client.kind)] = client

    def get(self, kind: ResourceKind) -> ResourceClient:
        """
        Get the client for a kind.

        Raises:
            KeyError: If no client is registered for this kind
        """
        kind = ResourceKind(kind)
        if kind not in self._clients:
            registered = [k.value for k in self._clients]
            raise KeyError(
                f"No client registered for resource kind: {kind.value}. "
                f"Registered: {registered}"
            )
        return self._clients[kind]

    def has(self, kind: ResourceKind) -> bool:
        return ResourceKind(kind) in self._clients

    def kinds(self) -> list[ResourceKind]:
        return list(self._clients.keys())

    @classmethod
    def of(cls, *clients: ResourceClient) -> "ResourceClientRegistry":
        registry = cls()
        for client in clients:
            registry.register(client)
        return registry
