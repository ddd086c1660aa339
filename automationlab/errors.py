"""
Error classes for automationlab.

Provisioning errors carry a retry classification:
- TransientError: Safe to retry (throttling, request limits, dependency still in use)
- PermanentError: Do not retry (invalid parameters, authorization, missing resources)

Everything else in this module is a prerequisite failure: bad input, bad
configuration, an unreadable state document, a lock held by someone else,
or a state document that belongs to a different account or region.

Error handling contract:
- Operation results are success-only, except the aggregated apply/destroy results
- Errors are exceptions, not values
- Every message names the workspace or state location where one applies
"""

from typing import Optional


class AutomationLabError(Exception):
    """Base exception for automationlab."""
    pass


class TransientError(AutomationLabError):
    """
    Transient error - safe to retry.

    Examples:
    - Throttling / RequestLimitExceeded
    - Service temporarily unavailable
    - Security group still referenced by a terminating instance

    Security group deletion retries TransientError with backoff.
    """
    pass


class PermanentError(AutomationLabError):
    """
    Permanent error - do not retry.

    Examples:
    - Invalid parameters
    - Authorization failed
    - Resource not found where one was required
    """
    pass


class ValidationError(AutomationLabError):
    """Malformed user input."""

    def __init__(self, field: str, value, reason: str):
        self.field = field
        self.value = value
        self.reason = reason
        super().__init__(f"Invalid {field} {value!r}: {reason}")


class ConfigError(AutomationLabError):
    """Configuration could not be loaded or is invalid."""
    pass


class StateError(AutomationLabError):
    """Base class for state document problems."""

    def __init__(self, path: str, message: str):
        self.path = path
        super().__init__(message)


class StateNotFoundError(StateError):
    def __init__(self, path: str):
        super().__init__(path, f"No state document at {path}. Run 'automationlab state init' or 'automationlab apply' first.")


class StateCorruptError(StateError):
    """
    The state document exists but cannot be parsed or is structurally invalid.

    The document is never overwritten with defaults when this is raised;
    the operator must repair or remove it.
    """

    def __init__(self, path: str, reason: str):
        self.reason = reason
        super().__init__(path, f"State document at {path} is corrupt: {reason}")


class LockContentionError(AutomationLabError):
    """Lock could not be acquired before the timeout expired."""

    def __init__(self, lock_path: str, holder: Optional[str], waited: float):
        self.lock_path = lock_path
        self.holder = holder
        self.waited = waited
        who = holder or "unknown holder"
        super().__init__(
            f"Could not acquire lock {lock_path} after {waited:.0f}s (held by {who}). "
            f"If the holder is gone, run 'automationlab state unlock'."
        )


class EnvironmentMismatchError(AutomationLabError):
    """State was recorded against a different account or region."""

    def __init__(self, field: str, recorded: str, current: str, state_path: str):
        self.field = field
        self.recorded = recorded
        self.current = current
        self.state_path = state_path
        super().__init__(
            f"{field} mismatch for {state_path}: state has {recorded!r}, "
            f"current credentials use {current!r}"
        )


class RemoteBackendError(AutomationLabError):
    """Remote state store operation failed."""

    def __init__(self, operation: str, location: str, reason: str):
        self.operation = operation
        self.location = location
        super().__init__(f"Remote state {operation} failed for {location}: {reason}")


class ProvisioningError(AutomationLabError):
    """A resource client call failed during apply or destroy."""

    def __init__(self, kind: str, operation: str, cause: Exception):
        self.kind = kind
        self.operation = operation
        self.cause = cause
        super().__init__(f"{operation} {kind} failed: {cause}")

    @property
    def transient(self) -> bool:
        return isinstance(self.cause, TransientError)
