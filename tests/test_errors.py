"""Tests for encwheel error classes.

Tests cover:
- Retry classification hierarchy (TransientError / PermanentError)
- Idempotency-class errors carry the resource involved
- Typed LifecycleError / RequestError context
"""

import pytest

from encwheel.errors import (
    AlreadyExistsError,
    EncwheelError,
    ExhaustedError,
    InvalidSeedsError,
    LifecycleError,
    LifecycleErrorKind,
    NonceReuseError,
    NotYetAvailableError,
    OperationCancelledError,
    PermanentError,
    RequestError,
    RequestErrorKind,
    TransientError,
)


class TestHierarchy:
    """Classification used by the retry loop."""

    def test_transient_and_permanent_are_encwheel_errors(self):
        assert issubclass(TransientError, EncwheelError)
        assert issubclass(PermanentError, EncwheelError)

    def test_not_yet_available_is_transient(self):
        """Cluster material that has not propagated is worth retrying."""
        with pytest.raises(TransientError):
            raise NotYetAvailableError("mxe key")

    def test_cancellation_and_nonce_reuse_are_permanent(self):
        assert issubclass(OperationCancelledError, PermanentError)
        assert issubclass(NonceReuseError, PermanentError)

    def test_invalid_seeds_is_value_error(self):
        with pytest.raises(ValueError):
            raise InvalidSeedsError("seed too long")

    def test_idempotency_errors_are_neither_transient_nor_permanent(self):
        assert not issubclass(AlreadyExistsError, (TransientError, PermanentError))


class TestContext:
    """Errors carry enough context to diagnose without retrying."""

    def test_already_exists_keeps_resource(self):
        error = AlreadyExistsError("exists", resource_id="abc")
        assert error.resource_id == "abc"
        assert str(error) == "exists"

    def test_exhausted_keeps_last_error(self):
        last = NotYetAvailableError("still missing")
        error = ExhaustedError("gave up", attempts=3, last_error=last)
        assert error.attempts == 3
        assert error.last_error is last

    def test_lifecycle_error_str_includes_kind_and_state(self):
        error = LifecycleError(
            LifecycleErrorKind.CORRUPTED,
            "stalled upload",
            definition="spin",
            last_state="partially_uploaded",
            resources={"definition": "xyz"},
        )
        text = str(error)
        assert "[corrupted]" in text
        assert "definition=spin" in text
        assert error.resources == {"definition": "xyz"}

    def test_request_timeout_means_unknown_outcome(self):
        error = RequestError(RequestErrorKind.TIMEOUT, "no result", offset=42)
        assert error.outcome_unknown
        assert "offset=42" in str(error)
        assert not RequestError(RequestErrorKind.ABORTED, "aborted").outcome_unknown
