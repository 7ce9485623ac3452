"""
Error taxonomy for the generation pipeline.

Each error knows the HTTP status and machine-readable code the routers
report it with. Refundable failures are the only ones that can follow a
debit; the orchestrator credits the stage cost back before re-raising them
and stamps the refunded balance on ``credits_left``.
"""

from typing import Optional


class PipelineError(Exception):
    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str = "", *, credits_left: Optional[int] = None):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        self.credits_left = credits_left

    def to_detail(self) -> dict:
        detail = {"error": self.message, "code": self.code}
        if self.credits_left is not None:
            detail["creditsLeft"] = self.credits_left
        return detail


# ── User-correctable, no ledger impact ───────────────────────────────────────

class ValidationError(PipelineError):
    status_code = 400
    code = "VALIDATION_ERROR"


class InsufficientFunds(PipelineError):
    status_code = 400
    code = "INSUFFICIENT_CREDITS"

    def __init__(self, required: int, balance: int):
        super().__init__(
            f"Insufficient credits: {required} required, {balance} available.",
            credits_left=balance,
        )
        self.required = required
        self.balance = balance


class Unauthenticated(PipelineError):
    status_code = 401
    code = "UNAUTHENTICATED"


class Forbidden(PipelineError):
    status_code = 403
    code = "FORBIDDEN"


class NotFound(PipelineError):
    status_code = 404
    code = "NOT_FOUND"


class Conflict(PipelineError):
    status_code = 409
    code = "STAGE_IN_PROGRESS"


class RateLimited(PipelineError):
    status_code = 429
    code = "RATE_LIMITED"

    def __init__(self, retry_after: int):
        super().__init__(f"Rate limit exceeded. Try again in {retry_after}s.")
        self.retry_after = retry_after


# ── Refundable failures ──────────────────────────────────────────────────────

class RefundableFailure(PipelineError):
    """A stage failed after (possibly) being paid for; the debit is returned."""

    status_code = 500
    code = "GENERATION_FAILED"


class ProviderUnavailable(RefundableFailure):
    code = "PROVIDER_UNAVAILABLE"


class MalformedResponse(RefundableFailure):
    code = "MALFORMED_RESPONSE"


class JobTimeout(RefundableFailure):
    code = "TIMEOUT"


class ArtifactMissing(RefundableFailure):
    code = "ARTIFACT_MISSING"


class ArtifactUnavailable(RefundableFailure):
    code = "ARTIFACT_UNAVAILABLE"
