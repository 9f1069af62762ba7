"""
Typed failures of the dispatch layer.

Every failure the orchestrator can surface derives from ``DispatchError``.
Callers distinguish retryable from terminal failures by type, never by
message text.
"""
from typing import List, Optional


class DispatchError(Exception):
    """
    Base class for dispatch failures.

    Attributes:
        backend: Backend id involved in the failure, if any
        instruction: Localised customer-facing instruction ("call the business
            directly"), attached by the orchestrator on terminal failures
    """

    error_type = "dispatch_error"

    def __init__(
        self,
        message: str,
        backend: Optional[str] = None,
        instruction: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.backend = backend
        self.instruction = instruction


class UnknownBackend(DispatchError):
    """The capability registry was asked for an id it does not know."""

    error_type = "unknown_backend"


class CapabilityMismatch(DispatchError):
    """No backend satisfies the turn's requirements. Never retried."""

    error_type = "capability_mismatch"

    def __init__(self, issues: List[str], message: Optional[str] = None, **kwargs):
        super().__init__(message or "No backend can serve this turn: " + "; ".join(issues), **kwargs)
        self.issues = list(issues)


class TransientDispatchFailure(DispatchError):
    """Timeout, network error, 5xx/408/429, open circuit or a cut stream. Retried."""

    error_type = "transient_failure"

    def __init__(
        self,
        message: str,
        reason: str = "network",
        status_code: Optional[int] = None,
        **kwargs,
    ):
        super().__init__(message, **kwargs)
        self.reason = reason
        self.status_code = status_code


class BackendRejected(DispatchError):
    """The provider refused the request (4xx, missing credentials). Not retried."""

    error_type = "backend_rejected"

    def __init__(self, message: str, status_code: Optional[int] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.status_code = status_code


class ParseFailure(DispatchError):
    """
    Structured output could not be used.

    Recovered locally into a fallback result unless ``escalated`` is set,
    which means the stream produced nothing usable at all.
    """

    error_type = "parse_failure"

    def __init__(self, message: str, escalated: bool = False, **kwargs):
        super().__init__(message, **kwargs)
        self.escalated = escalated


class ExhaustedRetries(DispatchError):
    """The attempt budget ran out on transient failures."""

    error_type = "exhausted_retries"

    def __init__(self, attempts: int, last_error: Optional[BaseException] = None, **kwargs):
        detail = f": {last_error}" if last_error is not None else ""
        super().__init__(f"Backend unavailable after {attempts} attempts{detail}", **kwargs)
        self.attempts = attempts
        self.last_error = last_error


class StreamProtocolError(DispatchError):
    """A fragment arrived after the stream had already ended."""

    error_type = "stream_protocol_error"


class InvalidTransition(DispatchError):
    """A turn lifecycle was moved along an edge it does not have."""

    error_type = "invalid_transition"


class WorkOrderFailed(DispatchError):
    """The reasoning backend returned no usable work order. No heuristic fallback exists."""

    error_type = "work_order_failed"

    def __init__(self, message: str = "Werkorder generatie gefaald. Handmatig aanmaken vereist.", **kwargs):
        super().__init__(message, **kwargs)
