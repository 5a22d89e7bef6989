"""
Error classes for encwheel orchestration.

These error types enable retry classification at orchestration boundaries:
- TransientError: Safe to retry (material not yet propagated, connection reset)
- PermanentError: Do not retry (malformed input, aborted computation)

Idempotency-class errors (AlreadyExistsError, AlreadyFinalizedError) are raised
by the ledger boundary and absorbed by the lifecycle manager as success.

Error handling contract:
- Results are success-only
- Errors are exceptions, not values
- Transport exceptions are wrapped before they reach the caller
"""

from enum import Enum
from typing import Any, Optional


class EncwheelError(Exception):
    """Base exception for encwheel."""
    pass


class TransientError(EncwheelError):
    """
    Transient error - safe to retry.

    Examples:
    - Cluster public key not yet propagated
    - RPC node temporarily unavailable
    - Connection reset
    """
    pass


class PermanentError(EncwheelError):
    """
    Permanent error - do not retry.

    Examples:
    - Invalid parameters
    - Computation aborted by the cluster
    - Definition missing when a request is submitted
    """
    pass


class NotYetAvailableError(TransientError):
    """Queried cluster material exists conceptually but has not propagated yet."""
    pass


class AlreadyExistsError(EncwheelError):
    """A create-if-absent write lost the race: the resource already exists."""

    def __init__(self, message: str, resource_id: Any = None):
        super().__init__(message)
        self.resource_id = resource_id


class AlreadyFinalizedError(EncwheelError):
    """The resource was already finalized by an earlier (or concurrent) call."""

    def __init__(self, message: str, resource_id: Any = None):
        super().__init__(message)
        self.resource_id = resource_id


class OperationCancelledError(PermanentError):
    """A retry loop observed its cancel signal before sleeping."""

    def __init__(self, message: str, attempts: int = 0, last_error: Optional[BaseException] = None):
        super().__init__(message)
        self.attempts = attempts
        self.last_error = last_error


class ExhaustedError(EncwheelError):
    """
    Retry budget exhausted.

    Attributes:
        attempts: Number of invocations performed
        last_error: The last transient failure observed
    """

    def __init__(self, message: str, attempts: int, last_error: Optional[BaseException] = None):
        super().__init__(message)
        self.attempts = attempts
        self.last_error = last_error


class InvalidSeedsError(EncwheelError, ValueError):
    """Seeds cannot be used to derive a resource address."""
    pass


class NonceReuseError(PermanentError):
    """A nonce was offered twice for the same public key."""
    pass


class ConfigError(EncwheelError):
    """Configuration validation error."""
    pass


class LifecycleErrorKind(str, Enum):
    """Why a computation definition could not be made ready."""
    CORRUPTED = "corrupted"
    QUERY_FAILED = "query_failed"
    REGISTRATION_FAILED = "registration_failed"
    UPLOAD_FAILED = "upload_failed"
    FINALIZE_FAILED = "finalize_failed"


class LifecycleError(EncwheelError):
    """
    A computation definition could not be brought to the finalized state.

    CORRUPTED is fatal for the definition identity: the partial state cannot be
    overwritten safely, so a fresh definition name must be deployed.
    """

    def __init__(
        self,
        kind: LifecycleErrorKind,
        message: str,
        *,
        definition: Optional[str] = None,
        last_state: Any = None,
        resources: Optional[dict[str, str]] = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.definition = definition
        self.last_state = last_state
        self.resources = dict(resources or {})

    def __str__(self) -> str:
        base = super().__str__()
        state = getattr(self.last_state, "value", self.last_state)
        return f"[{self.kind.value}] {base} (definition={self.definition}, last_state={state})"


class RequestErrorKind(str, Enum):
    """Why a computation request did not produce a result."""
    TIMEOUT = "timeout"
    SUBMIT_FAILED = "submit_failed"
    ABORTED = "aborted"
    INVALID = "invalid"


class RequestError(EncwheelError):
    """
    A computation request failed or its outcome is unknown.

    TIMEOUT means "unknown outcome": the computation may still complete later.
    Callers must not resubmit under the same offset.
    """

    def __init__(
        self,
        kind: RequestErrorKind,
        message: str,
        *,
        offset: Optional[int] = None,
        resources: Optional[dict[str, str]] = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.offset = offset
        self.resources = dict(resources or {})

    @property
    def outcome_unknown(self) -> bool:
        return self.kind == RequestErrorKind.TIMEOUT

    def __str__(self) -> str:
        return f"[{self.kind.value}] {super().__str__()} (offset={self.offset})"
