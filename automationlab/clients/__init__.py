"""
automationlab.clients - Resource clients used by the orchestrator.

The orchestrator only sees ResourceClient; the AWS implementations live
in automationlab.clients.aws.
"""

from .base import ResourceClient
from .registry import ResourceClientRegistry

__all__ = ["ResourceClient", "ResourceClientRegistry"]
