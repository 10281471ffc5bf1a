"""Pipeline error taxonomy.

Every failure that can end a run maps to one ``error_type`` on the wire:
affordability, validation, truncation, transport, policy, plus the
bookkeeping types cancelled, storage, bad_request and internal. Runtime
crashes in the preview are not errors here; they are the input to healing.
"""


class PipelineError(Exception):
    error_type = "internal"
    retryable = False

    def __init__(self, message, details=None, retryable=None):
        super().__init__(message)
        self.message = message
        self.details = dict(details or {})
        if retryable is not None:
            self.retryable = retryable

    def to_payload(self):
        payload = {
            "message": self.message,
            "errorType": self.error_type,
            "retryable": self.retryable,
        }
        if self.details:
            payload["details"] = self.details
        return payload


class BadRequest(PipelineError):
    error_type = "bad_request"


class AffordabilityError(PipelineError):
    """Cost exceeds balance. Raised before any billable work."""

    error_type = "affordability"

    def __init__(self, required, balance):
        super().__init__(
            f"Insufficient credits. Need {required}, have {balance}.",
            details={"required": required, "balance": balance},
        )
        self.required = required
        self.balance = balance


class PolicyViolation(PipelineError):
    error_type = "policy"

    def __init__(self, message, rule=None, pattern=None, path=None):
        details = {}
        if rule:
            details["rule"] = rule
        if pattern:
            details["pattern"] = pattern
        if path:
            details["path"] = path
        super().__init__(message, details=details)
        self.rule = rule
        self.pattern = pattern


class ValidationFailed(PipelineError):
    error_type = "validation"
    retryable = True


class TruncationError(PipelineError):
    error_type = "truncation"
    retryable = True


class TransportError(PipelineError):
    error_type = "transport"
    retryable = True


class RateLimited(TransportError):
    def __init__(self, message="Rate limit exceeded. Please try again in a moment.", retry_after=None):
        details = {"reason": "rate_limited"}
        if retry_after is not None:
            details["retryAfter"] = retry_after
        super().__init__(message, details=details)
        self.retry_after = retry_after


class StreamEndedUnexpectedly(TransportError):
    def __init__(self, message="Generation ended unexpectedly. Please retry."):
        super().__init__(message, details={"reason": "ended_unexpectedly"})


class MalformedFrame(TransportError):
    def __init__(self, message, line=None):
        super().__init__(message, details={"reason": "malformed_frame"})
        self.line = line


class StageError(PipelineError):
    """A stage answered with a non-success status or an error event."""

    error_type = "transport"
    retryable = True

    def __init__(self, stage, message, status=None):
        details = {"stage": stage}
        if status is not None:
            details["status"] = status
        super().__init__(message, details=details)
        self.stage = stage
        self.status = status


class ContinuationError(PipelineError):
    """A continuation call itself failed. Not the same as still being truncated."""

    error_type = "truncation"
    retryable = True

    def __init__(self, message, attempt):
        super().__init__(message, details={"attempt": attempt})
        self.attempt = attempt


class StorageError(PipelineError):
    error_type = "storage"
    retryable = True


class RunCancelled(PipelineError):
    error_type = "cancelled"

    def __init__(self, message="Run cancelled"):
        super().__init__(message)
