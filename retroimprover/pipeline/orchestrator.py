"""
PipelineService — the restoration pipeline orchestrator.

Chains the three stages with credit accounting:
  Stage 1: Restore  (1 credit)  — Gemini image restoration
  Stage 2: Prompts  (free)      — Gemini Flash bilingual animation prompts
  Stage 3: Video    (3 credits) — Veo 3.1 Fast, submitted then polled

Paid stages debit before the external call and refund on every failure
path, so the balance returned with an error already includes the refund.
Only this class touches the ledger.

Each stage runs in its own task shielded from request cancellation: a client
that disconnects mid-generation does not abort a job we are paying for, and
the project record is still updated for the next page load.
"""

import asyncio
import logging
import secrets
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from .. import config, metrics
from .errors import (
    Conflict,
    NotFound,
    PipelineError,
    RefundableFailure,
    ValidationError,
)
from .jobs import Failed, JobClient, JobKind
from .ledger import REASON_RESTORE, REASON_VIDEO, Ledger
from .models import (
    ArtifactRef,
    BilingualPrompt,
    LikedMediaItem,
    PipelineStage,
    Project,
)
from .animate import build_video_prompt
from .project_service import ProjectStore
from .storage import ArtifactStore, artifact_name, content_type_for, extension_for
from .uploads import ImageUpload

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class SpeculativeRestore:
    """A restoration started before the visitor signed in."""

    pending_id: str
    created_at: datetime
    expires_at: datetime
    task: asyncio.Task  # resolves to (original_ref, restored_ref)


class PipelineService:
    """
    Usage:
        service = PipelineService(ledger, projects, jobs, store)

        project, credits = await service.restore(user_id, upload)
        project = await service.generate_prompts(user_id, project.id)
        project, credits = await service.generate_video(user_id, project.id, ["..."])
    """

    def __init__(
        self,
        ledger: Ledger,
        projects: ProjectStore,
        jobs: JobClient,
        store: ArtifactStore,
        restore_cost: int = config.RESTORE_COST,
        video_cost: int = config.VIDEO_COST,
        speculative_ttl: int = config.SPECULATIVE_TTL_SECONDS,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.ledger = ledger
        self.projects = projects
        self.jobs = jobs
        self.store = store
        self.restore_cost = restore_cost
        self.video_cost = video_cost
        self.speculative_ttl = timedelta(seconds=speculative_ttl)
        self._clock = clock

        self._active: dict[str, PipelineStage] = {}
        self._pending: dict[str, SpeculativeRestore] = {}
        self._tasks: set[asyncio.Task] = set()

    # ── Bookkeeping ──────────────────────────────────────────────────────

    def stage_of(self, project: Project) -> PipelineStage:
        return self._active.get(project.id, project.stage)

    def in_flight(self) -> int:
        return len(self._tasks)

    @contextmanager
    def _stage(self, project_id: str, stage: PipelineStage):
        """Hold the project's single in-flight slot for the duration of a stage."""
        current = self._active.get(project_id)
        if current is not None:
            raise Conflict(f"Project {project_id} is busy ({current.value}).")
        self._active[project_id] = stage
        logger.info(f"[{project_id}] → {stage.value}")
        try:
            yield
        finally:
            self._active.pop(project_id, None)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _shielded(self, coro):
        task = self._spawn(coro)
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            # Nobody awaits the result any more
            task.add_done_callback(self._log_detached_outcome)
            raise

    @staticmethod
    def _log_detached_outcome(task: asyncio.Task):
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning(f"Stage failed after the client disconnected: {exc}")
            metrics.inc_counter("stages.detached.failed")
        else:
            logger.info("Stage finished after the client disconnected")

    async def _refund(self, user_id: str, amount: int, project_id: Optional[str], cause: Exception) -> Optional[int]:
        logger.warning(f"Refunding {amount} credit(s) to {user_id} after failure: {cause}")
        metrics.inc_counter("stages.refunded")
        metrics.record_error("pipeline", type(cause).__name__, str(cause), user_id)
        try:
            return await self.ledger.refund(user_id, amount, project_id)
        except Exception as e:
            logger.critical(
                f"REFUND FAILED for {user_id}: {amount} credit(s), project {project_id}: {e}",
                exc_info=True,
            )
            metrics.inc_counter("ledger.refund.failed")
            return None

    @staticmethod
    def _surface(exc: Exception, credits_left: Optional[int]) -> PipelineError:
        if isinstance(exc, PipelineError):
            exc.credits_left = credits_left
            return exc
        logger.error(f"Unexpected stage failure: {exc}", exc_info=exc)
        err = RefundableFailure(f"Generation failed: {exc}", credits_left=credits_left)
        err.__cause__ = exc
        return err

    def public_url(self, ref: Optional[ArtifactRef]) -> Optional[str]:
        return self.store.public_url(ref)

    # ═════════════════════════════════════════════════════════════════════
    # Stage 1: Restore
    # ═════════════════════════════════════════════════════════════════════

    async def _run_restoration(self, owner: str, upload: ImageUpload) -> tuple[ArtifactRef, ArtifactRef]:
        """
        Persist the upload, restore it, persist the result. Cleans up its own
        artifacts if anything fails.
        """
        original_ref: Optional[ArtifactRef] = None
        try:
            original_ref = await self.store.persist(
                upload.data, artifact_name("originals", owner, upload.extension)
            )
            handle = await self.jobs.submit(
                JobKind.RESTORE, {"image": upload.data, "mime_type": upload.mime_type}
            )
            result = await self.jobs.wait(handle)
            if isinstance(result, Failed):
                raise result.as_error()

            restored_ref = await self.store.ingest(
                result, artifact_name("restored", owner, extension_for(result.mime_type, ".png"))
            )
            return original_ref, restored_ref
        except Exception:
            await self.store.release(original_ref)
            raise

    async def restore(self, user_id: str, upload: ImageUpload) -> tuple[Project, int]:
        """
        Idle → Restoring → Restored.

        Returns:
            The new project and the balance after the 1-credit charge.

        Raises:
            InsufficientFunds: before any external call.
            RefundableFailure: the stage failed and the credit was returned.
        """
        return await self._shielded(self._paid_restore(user_id, upload))

    async def _paid_restore(self, user_id: str, upload: ImageUpload) -> tuple[Project, int]:
        project_id = str(uuid.uuid4())
        balance = await self.ledger.debit(user_id, self.restore_cost, REASON_RESTORE, project_id)

        refs: tuple = ()
        try:
            refs = await self._run_restoration(user_id, upload)
            project = await self.projects.create(Project(
                id=project_id,
                user_id=user_id,
                original_ref=refs[0],
                restored_ref=refs[1],
                created_at=self._clock(),
            ))
        except Exception as e:
            balance = await self._refund(user_id, self.restore_cost, project_id, e)
            for ref in refs:
                await self.store.release(ref)
            raise self._surface(e, balance)

        metrics.inc_counter("stages.restore.completed")
        logger.info(f"[{project_id}] {PipelineStage.RESTORED.value} for {user_id}, balance {balance}")
        return project, balance

    # ── Deferred charge: restore before sign-in ──────────────────────────

    def start_speculative_restore(self, upload: ImageUpload) -> SpeculativeRestore:
        """
        Kick off an uncharged restoration for a visitor who has not signed in
        yet. Nothing is shown and no project exists until the visitor claims
        it with the returned token.
        """
        pending_id = secrets.token_urlsafe(24)
        now = self._clock()
        task = self._spawn(self._run_restoration("pending", upload))
        task.add_done_callback(self._log_speculative_outcome)

        entry = SpeculativeRestore(
            pending_id=pending_id,
            created_at=now,
            expires_at=now + self.speculative_ttl,
            task=task,
        )
        self._pending[pending_id] = entry
        metrics.inc_counter("stages.speculative.started")
        metrics.set_gauge("speculative_pending", len(self._pending))
        logger.info(f"Speculative restore started ({pending_id[:8]}…)")
        return entry

    @staticmethod
    def _log_speculative_outcome(task: asyncio.Task):
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning(f"Speculative restore failed: {exc}")

    async def claim_speculative_restore(self, user_id: str, pending_id: str) -> tuple[Project, int]:
        """
        Attach a speculative restoration to a now-authenticated user, charging
        the 1 credit at this point. A token can be claimed once.
        """
        return await self._shielded(self._claim(user_id, pending_id))

    async def _claim(self, user_id: str, pending_id: str) -> tuple[Project, int]:
        entry = self._pending.pop(pending_id, None)
        if entry is None:
            raise NotFound("Pending restoration not found or already claimed.")
        if self._clock() >= entry.expires_at:
            if entry.task.done():
                await self._discard(entry)
            else:
                # Still running; the sweep releases it once it finishes
                self._pending[pending_id] = entry
            raise NotFound("Pending restoration expired.")

        try:
            original_ref, restored_ref = await entry.task
        except PipelineError:
            metrics.inc_counter("stages.speculative.failed")
            raise
        except Exception as e:
            metrics.inc_counter("stages.speculative.failed")
            raise self._surface(e, None)

        project_id = str(uuid.uuid4())
        try:
            balance = await self.ledger.debit(user_id, self.restore_cost, REASON_RESTORE, project_id)
        except Exception:
            # Keep the result claimable, e.g. after buying credits
            self._pending[pending_id] = entry
            raise

        try:
            project = await self.projects.create(Project(
                id=project_id,
                user_id=user_id,
                original_ref=original_ref,
                restored_ref=restored_ref,
                created_at=self._clock(),
            ))
        except Exception as e:
            balance = await self._refund(user_id, self.restore_cost, project_id, e)
            self._pending[pending_id] = entry
            raise self._surface(e, balance)

        metrics.inc_counter("stages.speculative.claimed")
        metrics.set_gauge("speculative_pending", len(self._pending))
        logger.info(f"[{project_id}] speculative restore claimed by {user_id}, balance {balance}")
        return project, balance

    async def _discard(self, entry: SpeculativeRestore):
        if entry.task.done() and not entry.task.cancelled() and entry.task.exception() is None:
            for ref in entry.task.result():
                await self.store.release(ref)

    async def purge_expired(self) -> int:
        """Release artifacts of speculative restorations nobody claimed in time."""
        now = self._clock()
        purged = 0
        for pending_id, entry in list(self._pending.items()):
            if now < entry.expires_at or not entry.task.done():
                continue
            if self._pending.pop(pending_id, None) is None:
                continue
            await self._discard(entry)
            purged += 1

        metrics.set_gauge("speculative_pending", len(self._pending))
        if purged:
            metrics.inc_counter("stages.speculative.expired", purged)
            logger.info(f"Purged {purged} unclaimed speculative restore(s)")
        return purged

    # ═════════════════════════════════════════════════════════════════════
    # Stage 2: Prompts
    # ═════════════════════════════════════════════════════════════════════

    async def generate_prompts(self, user_id: str, project_id: str) -> Project:
        """
        Restored → PromptsPending → PromptsReady. Free; a failure leaves the
        project where it was.
        """
        project = await self.projects.get(project_id, user_id)
        if project.restored_ref is None:
            raise NotFound("Project has no restored image yet.")
        return await self._shielded(self._run_prompts(project))

    async def _run_prompts(self, project: Project) -> Project:
        with self._stage(project.id, PipelineStage.PROMPTS_PENDING):
            image = await self.store.read_bytes(project.restored_ref)
            handle = await self.jobs.submit(JobKind.PROMPTS, {
                "image": image,
                "mime_type": content_type_for(project.restored_ref.location),
            })
            result = await self.jobs.wait(handle)
            if isinstance(result, Failed):
                metrics.inc_counter("stages.prompts.failed")
                raise result.as_error()
            updated = await self.projects.update(project.id, prompts=result.value)

        metrics.inc_counter("stages.prompts.completed")
        return updated

    # ═════════════════════════════════════════════════════════════════════
    # Stage 3: Video
    # ═════════════════════════════════════════════════════════════════════

    @staticmethod
    def english_prompts(prompts: list[BilingualPrompt], selected: list[str]) -> list[str]:
        """
        Map the user's selection (in either display language) back to the
        English phrasing of the same entry.
        """
        english: list[str] = []
        for text in selected:
            text = (text or "").strip()
            match = next((p for p in prompts if text in (p.en, p.ru)), None)
            if match is None:
                raise ValidationError(f"Selected prompt is not one of this project's prompts: {text[:80]!r}")
            if match.en not in english:
                english.append(match.en)
        return english

    async def generate_video(self, user_id: str, project_id: str, selected_prompts: list[str]) -> tuple[Project, int]:
        """
        PromptsReady → VideoPending → VideoReady.

        Returns:
            The updated project and the balance after the 3-credit charge.

        Raises:
            ValidationError:   nothing selected, prompts missing, unknown prompt.
            NotFound:          not the caller's project, or not restored yet.
            Conflict:          another stage is in flight for this project.
            InsufficientFunds: before any external call.
            RefundableFailure: the job failed or timed out; credits returned.
        """
        if not selected_prompts:
            raise ValidationError("Select at least one prompt.")
        project = await self.projects.get(project_id, user_id)
        if project.restored_ref is None:
            raise NotFound("Project has no restored image yet.")
        if not project.prompts:
            raise ValidationError("Generate prompts before requesting a video.")
        english = self.english_prompts(project.prompts, selected_prompts)

        return await self._shielded(self._paid_video(user_id, project, english))

    async def _paid_video(self, user_id: str, project: Project, english: list[str]) -> tuple[Project, int]:
        with self._stage(project.id, PipelineStage.VIDEO_PENDING):
            balance = await self.ledger.debit(user_id, self.video_cost, REASON_VIDEO, project.id)

            video_ref: Optional[ArtifactRef] = None
            try:
                image = await self.store.read_bytes(project.restored_ref)
                handle = await self.jobs.submit(JobKind.VIDEO, {
                    "prompt": build_video_prompt(english),
                    "image": image,
                    "mime_type": content_type_for(project.restored_ref.location),
                    "image_url": self.public_url(project.restored_ref),
                })
                result = await self.jobs.wait(handle)
                if isinstance(result, Failed):
                    raise result.as_error()

                video_ref = await self.store.ingest(result, artifact_name("videos", user_id, ".mp4"))
                updated = await self.projects.update(project.id, video_ref=video_ref)
            except Exception as e:
                balance = await self._refund(user_id, self.video_cost, project.id, e)
                await self.store.release(video_ref)
                raise self._surface(e, balance)

        # A regenerated video replaces the previous one
        if project.video_ref is not None and project.video_ref != video_ref:
            await self.store.release(project.video_ref)

        metrics.inc_counter("stages.video.completed")
        logger.info(f"[{project.id}] {PipelineStage.VIDEO_READY.value}, balance {balance}")
        return updated, balance

    # ═════════════════════════════════════════════════════════════════════
    # Project mutations
    # ═════════════════════════════════════════════════════════════════════

    async def get_project(self, user_id: str, project_id: str) -> Project:
        return await self.projects.get(project_id, user_id)

    async def list_projects(self, user_id: str, liked_only: bool = False) -> list[Project]:
        return await self.projects.list_for_user(user_id, liked_only)

    async def liked_media(self, user_id: str) -> list[LikedMediaItem]:
        items: list[LikedMediaItem] = []
        for project in await self.projects.list_for_user(user_id, liked_only=True):
            for kind, ref in (("video", project.video_ref), ("restored", project.restored_ref)):
                if ref is not None:
                    items.append(LikedMediaItem(
                        project_id=project.id,
                        kind=kind,
                        url=self.public_url(ref),
                        created_at=project.created_at,
                    ))
        return items

    async def toggle_like(self, user_id: str, project_id: str, liked: Optional[bool] = None) -> Project:
        """Flip the like flag, or set it explicitly when ``liked`` is given."""
        project = await self.projects.get(project_id, user_id)
        target = (not project.is_liked) if liked is None else liked
        if target == project.is_liked:
            return project
        return await self.projects.update(project_id, is_liked=target)

    async def delete_project(self, user_id: str, project_id: str):
        """Delete the record, then release every artifact it referenced."""
        project = await self.projects.get(project_id, user_id)
        if project.id in self._active:
            raise Conflict(f"Project {project_id} is busy ({self._active[project.id].value}).")
        await self.projects.delete(project_id)
        for ref in project.artifact_refs():
            await self.store.release(ref)
        logger.info(f"Project {project_id} deleted by {user_id}")

    async def shutdown(self):
        """Let in-flight stages finish before the process exits."""
        if self._tasks:
            logger.info(f"Waiting for {len(self._tasks)} in-flight stage(s)")
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
