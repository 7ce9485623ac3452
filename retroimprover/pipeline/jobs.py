"""
External Job Client — one submit/poll contract over the three provider calls.

  submit(kind, payload) -> JobHandle
  poll(handle)          -> Pending | Done | Failed

Restoration and prompt generation are synchronous: submit() waits for the
provider and returns an already-resolved handle. Video generation is
asynchronous: submit() starts a remote operation and poll() must be called
until it settles. wait() polls at a fixed interval up to a fixed number of
attempts, then gives up with Failed(TIMEOUT).

Provider errors never leak out of this module raw; they are classified so
the orchestrator can decide about refunds without knowing provider shapes.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Union

import httpx

from .. import config, metrics
from .errors import JobTimeout, MalformedResponse, ProviderUnavailable, RefundableFailure

logger = logging.getLogger(__name__)

POLL_INTERVAL = config.VIDEO_POLL_INTERVAL
MAX_POLL_ATTEMPTS = config.VIDEO_MAX_POLL_ATTEMPTS

# Poll responses that mean "try again next tick" rather than "job is dead"
TRANSIENT_STATUS_CODES = {408, 429, 500, 502, 503, 504}


class JobKind(str, Enum):
    RESTORE = "restore"
    PROMPTS = "prompts"
    VIDEO = "video"


class FailureReason(str, Enum):
    PROVIDER_UNAVAILABLE = "PROVIDER_UNAVAILABLE"
    MALFORMED_RESPONSE = "MALFORMED_RESPONSE"
    TIMEOUT = "TIMEOUT"


# ── Results ──────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Pending:
    detail: str = ""


@dataclass(frozen=True)
class Done:
    """
    A finished job. Artifacts come back either as raw bytes or as a URI
    (plus any headers needed to fetch it); prompt jobs carry ``value``.
    """

    data: Optional[bytes] = None
    uri: Optional[str] = None
    mime_type: str = "application/octet-stream"
    headers: dict = field(default_factory=dict)
    value: Any = None


@dataclass(frozen=True)
class Failed:
    reason: FailureReason
    detail: str = ""

    def as_error(self) -> RefundableFailure:
        if self.reason == FailureReason.TIMEOUT:
            return JobTimeout(self.detail or "Generation timed out")
        if self.reason == FailureReason.MALFORMED_RESPONSE:
            return MalformedResponse(self.detail or "Provider returned an unusable response")
        return ProviderUnavailable(self.detail or "Provider unavailable")


JobResult = Union[Pending, Done, Failed]


@dataclass
class JobHandle:
    kind: JobKind
    job_id: str
    submitted_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    result: Optional[JobResult] = None  # set at submit time for synchronous kinds
    polls: int = 0


# ── Provider contracts ───────────────────────────────────────────────────────

class RestorationProvider:
    async def restore(self, image: bytes, mime_type: str) -> Done:
        raise NotImplementedError


class PromptProvider:
    async def generate(self, image: bytes, mime_type: str) -> Done:
        """Done.value is a list of exactly PROMPT_COUNT BilingualPrompt."""
        raise NotImplementedError


class VideoProvider:
    async def start(self, prompt: str, image: bytes, mime_type: str, image_url: Optional[str]) -> str:
        """Start the remote operation, return its id."""
        raise NotImplementedError

    async def check(self, operation_id: str) -> JobResult:
        raise NotImplementedError


# ── Classification ───────────────────────────────────────────────────────────

def classify(exc: Exception) -> Failed:
    if isinstance(exc, MalformedResponse):
        return Failed(FailureReason.MALFORMED_RESPONSE, exc.message)
    if isinstance(exc, JobTimeout):
        return Failed(FailureReason.TIMEOUT, exc.message)
    if isinstance(exc, httpx.TimeoutException):
        return Failed(FailureReason.PROVIDER_UNAVAILABLE, f"Provider timed out: {exc}")
    if isinstance(exc, httpx.HTTPStatusError):
        return Failed(
            FailureReason.PROVIDER_UNAVAILABLE,
            f"Provider returned HTTP {exc.response.status_code}",
        )
    if isinstance(exc, (httpx.HTTPError, ProviderUnavailable)):
        return Failed(FailureReason.PROVIDER_UNAVAILABLE, str(exc))
    if isinstance(exc, (KeyError, IndexError, TypeError, ValueError)):
        return Failed(FailureReason.MALFORMED_RESPONSE, f"Unexpected provider payload: {exc}")
    return Failed(FailureReason.PROVIDER_UNAVAILABLE, str(exc))


def _is_transient(exc: Exception) -> bool:
    if isinstance(exc, httpx.TransportError):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code in TRANSIENT_STATUS_CODES
    return False


# ═════════════════════════════════════════════════════════════════════════════
# Job Client
# ═════════════════════════════════════════════════════════════════════════════

class JobClient:
    def __init__(
        self,
        restorer: RestorationProvider,
        prompter: PromptProvider,
        animator: VideoProvider,
        poll_interval: float = POLL_INTERVAL,
        max_poll_attempts: int = MAX_POLL_ATTEMPTS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.restorer = restorer
        self.prompter = prompter
        self.animator = animator
        self.poll_interval = poll_interval
        self.max_poll_attempts = max_poll_attempts
        self._sleep = sleep

    async def submit(self, kind: JobKind, payload: dict) -> JobHandle:
        """
        payload keys:
          restore / prompts:  image, mime_type
          video:              prompt, image, mime_type, image_url (optional)
        """
        metrics.inc_counter(f"jobs.{kind.value}.submitted")
        handle = JobHandle(kind=kind, job_id=uuid.uuid4().hex)

        if kind == JobKind.VIDEO:
            try:
                handle.job_id = await self.animator.start(
                    payload["prompt"],
                    payload["image"],
                    payload.get("mime_type", "image/png"),
                    payload.get("image_url"),
                )
            except Exception as e:
                handle.result = self._fail(kind, e)
                return handle
            logger.info(f"Video job submitted: {handle.job_id}")
            return handle

        try:
            if kind == JobKind.RESTORE:
                handle.result = await self.restorer.restore(payload["image"], payload["mime_type"])
            else:
                handle.result = await self.prompter.generate(payload["image"], payload["mime_type"])
            metrics.inc_counter(f"jobs.{kind.value}.done")
        except Exception as e:
            handle.result = self._fail(kind, e)
        return handle

    async def poll(self, handle: JobHandle) -> JobResult:
        if handle.result is not None:
            return handle.result

        handle.polls += 1
        metrics.inc_counter(f"jobs.{handle.kind.value}.polls")
        try:
            result = await self.animator.check(handle.job_id)
        except Exception as e:
            if _is_transient(e):
                logger.warning(f"Poll #{handle.polls} for {handle.job_id} hit a transient error: {e}")
                return Pending(str(e))
            result = self._fail(handle.kind, e)

        if not isinstance(result, Pending):
            handle.result = result
            if isinstance(result, Done):
                metrics.inc_counter(f"jobs.{handle.kind.value}.done")
        return result

    async def wait(self, handle: JobHandle) -> Union[Done, Failed]:
        """Poll at a fixed interval until the job settles or attempts run out."""
        if handle.result is not None:
            return handle.result

        for attempt in range(self.max_poll_attempts):
            await self._sleep(self.poll_interval)
            result = await self.poll(handle)
            logger.info(f"Video poll #{attempt + 1}/{self.max_poll_attempts} for {handle.job_id}: {type(result).__name__}")
            if not isinstance(result, Pending):
                return result

        total = self.poll_interval * self.max_poll_attempts
        metrics.inc_counter(f"jobs.{handle.kind.value}.timeout")
        handle.result = Failed(
            FailureReason.TIMEOUT,
            f"Video generation did not finish after {self.max_poll_attempts} polls ({total:.0f}s)",
        )
        return handle.result

    def _fail(self, kind: JobKind, exc: Exception) -> Failed:
        failed = classify(exc)
        logger.error(f"{kind.value} job failed ({failed.reason.value}): {failed.detail}")
        metrics.inc_counter(f"jobs.{kind.value}.failed")
        metrics.record_error("jobs", failed.reason.value, failed.detail)
        return failed
