"""
FastAPI routes for the restoration pipeline.

AI Endpoints:
  POST /ai/restore              — Stage 1: restore a photo (1 credit)
  POST /ai/restore/speculative  — Stage 1 before sign-in (charged on claim)
  POST /ai/restore/claim        — Attach a speculative restore to the caller
  POST /ai/prompts              — Stage 2: bilingual animation prompts (free)
  POST /ai/video                — Stage 3: animate the restored photo (3 credits)

Project Endpoints:
  GET    /projects                        — List the caller's projects (?liked=true)
  GET    /projects/liked-media            — Liked restored images and videos
  GET    /projects/{id}                   — Get / resume project
  POST   /projects/{id}/like              — Toggle (or set) the like flag
  DELETE /projects/{id}                   — Delete project and its artifacts
  GET    /projects/{id}/download/{kind}   — Attachment download (original|restored|video)
"""

import logging
from typing import Literal, Optional

from fastapi import APIRouter, Depends, File, HTTPException, Request, UploadFile
from fastapi.responses import FileResponse
from starlette.background import BackgroundTask

from ..auth import current_user
from .errors import ArtifactMissing, NotFound, PipelineError, RateLimited
from .models import (
    ClaimRequest,
    LikedMediaItem,
    LikeRequest,
    LANGUAGES,
    Project,
    ProjectResponse,
    PromptsRequest,
    PromptsResponse,
    RestoreResponse,
    SpeculativeRestoreResponse,
    User,
    VideoRequest,
    VideoResponse,
)
from .orchestrator import PipelineService
from .storage import content_type_for
from .uploads import validate_image

logger = logging.getLogger(__name__)


def get_pipeline(request: Request) -> PipelineService:
    return request.app.state.pipeline


def _http_error(e: PipelineError) -> HTTPException:
    headers = None
    if isinstance(e, RateLimited):
        headers = {"Retry-After": str(e.retry_after)}
    return HTTPException(status_code=e.status_code, detail=e.to_detail(), headers=headers)


def _unexpected(action: str, e: Exception) -> HTTPException:
    logger.error(f"{action} failed: {e}", exc_info=True)
    return HTTPException(status_code=500, detail={"error": str(e), "code": "INTERNAL_ERROR"})


def project_response(service: PipelineService, project: Project) -> ProjectResponse:
    return ProjectResponse(
        id=project.id,
        original_ref=service.public_url(project.original_ref),
        restored_ref=service.public_url(project.restored_ref),
        video_ref=service.public_url(project.video_ref),
        prompts=project.prompts,
        is_liked=project.is_liked,
        stage=service.stage_of(project),
        created_at=project.created_at,
    )


# ═════════════════════════════════════════════════════════════════════════════
# AI Router — the three paid/free generation stages
# ═════════════════════════════════════════════════════════════════════════════

ai_router = APIRouter(prefix="/ai", tags=["ai"])


# ── A. Restore ───────────────────────────────────────────────────────────────

@ai_router.post("/restore", response_model=RestoreResponse)
async def restore_photo(
    file: UploadFile = File(...),
    user: User = Depends(current_user),
    service: PipelineService = Depends(get_pipeline),
):
    """
    Pay 1 credit → restore → create project.

    Errors:
      - 400: Invalid upload, or INSUFFICIENT_CREDITS
      - 500: Restoration failed (credit already refunded, see creditsLeft)
    """
    try:
        upload = validate_image(await file.read())
        project, credits_left = await service.restore(user.id, upload)
        return RestoreResponse(project=project_response(service, project), credits_left=credits_left)
    except PipelineError as e:
        raise _http_error(e)
    except Exception as e:
        raise _unexpected("Restore", e)


@ai_router.post("/restore/speculative", status_code=202, response_model=SpeculativeRestoreResponse)
async def restore_speculative(
    request: Request,
    file: UploadFile = File(...),
    service: PipelineService = Depends(get_pipeline),
):
    """Start restoring before sign-in. Nothing is charged until the claim."""
    client_key = request.client.host if request.client else "unknown"
    allowed, _, retry_after = request.app.state.limiter.check(client_key)
    if not allowed:
        raise _http_error(RateLimited(retry_after))

    try:
        upload = validate_image(await file.read())
        pending = service.start_speculative_restore(upload)
        return SpeculativeRestoreResponse(pending_id=pending.pending_id, expires_at=pending.expires_at)
    except PipelineError as e:
        raise _http_error(e)
    except Exception as e:
        raise _unexpected("Speculative restore", e)


@ai_router.post("/restore/claim", response_model=RestoreResponse)
async def claim_restore(
    body: ClaimRequest,
    user: User = Depends(current_user),
    service: PipelineService = Depends(get_pipeline),
):
    """
    Errors:
      - 404: Unknown, expired or already-claimed pendingId
      - 400: INSUFFICIENT_CREDITS (the result stays claimable)
    """
    if not body.pending_id:
        raise HTTPException(status_code=400, detail={"error": "pendingId is required", "code": "VALIDATION_ERROR"})
    try:
        project, credits_left = await service.claim_speculative_restore(user.id, body.pending_id)
        return RestoreResponse(project=project_response(service, project), credits_left=credits_left)
    except PipelineError as e:
        raise _http_error(e)
    except Exception as e:
        raise _unexpected("Claim", e)


# ── B. Prompts ───────────────────────────────────────────────────────────────

@ai_router.post("/prompts", response_model=PromptsResponse)
async def generate_prompts(
    body: PromptsRequest,
    user: User = Depends(current_user),
    service: PipelineService = Depends(get_pipeline),
):
    """Four animation prompts, displayed in the caller's language."""
    if not body.project_id:
        raise HTTPException(status_code=400, detail={"error": "projectId is required", "code": "VALIDATION_ERROR"})
    language = body.language if body.language in LANGUAGES else user.language

    try:
        project = await service.generate_prompts(user.id, body.project_id)
        return PromptsResponse(
            prompts=[p.display(language) for p in project.prompts],
            bilingual_prompts=project.prompts,
        )
    except PipelineError as e:
        raise _http_error(e)
    except Exception as e:
        raise _unexpected("Prompt generation", e)


# ── C. Video ─────────────────────────────────────────────────────────────────

@ai_router.post("/video", response_model=VideoResponse)
async def generate_video(
    body: VideoRequest,
    user: User = Depends(current_user),
    service: PipelineService = Depends(get_pipeline),
):
    """
    Pay 3 credits → animate → attach the video to the project.

    Errors:
      - 400: No/unknown prompts selected, or INSUFFICIENT_CREDITS
      - 404: Not your project, or not restored yet
      - 409: A stage is already running for this project
      - 500: Generation failed or timed out (credits already refunded)
    """
    if not body.project_id:
        raise HTTPException(status_code=400, detail={"error": "projectId is required", "code": "VALIDATION_ERROR"})
    try:
        project, credits_left = await service.generate_video(user.id, body.project_id, body.selected_prompts)
        return VideoResponse(video_url=service.public_url(project.video_ref), credits_left=credits_left)
    except PipelineError as e:
        raise _http_error(e)
    except Exception as e:
        raise _unexpected("Video generation", e)


# ═════════════════════════════════════════════════════════════════════════════
# Project Router — listing, likes, deletion, downloads
# ═════════════════════════════════════════════════════════════════════════════

project_router = APIRouter(prefix="/projects", tags=["projects"])


@project_router.get("", response_model=list[ProjectResponse])
async def list_projects(
    liked: bool = False,
    user: User = Depends(current_user),
    service: PipelineService = Depends(get_pipeline),
):
    """List the caller's projects, newest first."""
    try:
        projects = await service.list_projects(user.id, liked_only=liked)
        return [project_response(service, p) for p in projects]
    except PipelineError as e:
        raise _http_error(e)
    except Exception as e:
        raise _unexpected("List projects", e)


@project_router.get("/liked-media", response_model=list[LikedMediaItem])
async def liked_media(
    user: User = Depends(current_user),
    service: PipelineService = Depends(get_pipeline),
):
    try:
        return await service.liked_media(user.id)
    except PipelineError as e:
        raise _http_error(e)
    except Exception as e:
        raise _unexpected("Liked media", e)


@project_router.get("/{project_id}", response_model=ProjectResponse)
async def get_project(
    project_id: str,
    user: User = Depends(current_user),
    service: PipelineService = Depends(get_pipeline),
):
    """
    Full project state for resuming.

    Frontend Instructions:
      - RESTORED → offer prompt generation
      - PROMPTS_PENDING / VIDEO_PENDING → show progress, poll this endpoint
      - PROMPTS_READY → show prompt picker
      - VIDEO_READY → show video player
    """
    try:
        project = await service.get_project(user.id, project_id)
        return project_response(service, project)
    except PipelineError as e:
        raise _http_error(e)
    except Exception as e:
        raise _unexpected("Get project", e)


@project_router.post("/{project_id}/like", response_model=ProjectResponse)
async def like_project(
    project_id: str,
    body: Optional[LikeRequest] = None,
    user: User = Depends(current_user),
    service: PipelineService = Depends(get_pipeline),
):
    try:
        project = await service.toggle_like(user.id, project_id, body.liked if body else None)
        return project_response(service, project)
    except PipelineError as e:
        raise _http_error(e)
    except Exception as e:
        raise _unexpected("Like", e)


@project_router.delete("/{project_id}")
async def delete_project(
    project_id: str,
    user: User = Depends(current_user),
    service: PipelineService = Depends(get_pipeline),
):
    """
    Errors:
      - 404: Not your project
      - 409: A stage is still running for this project
    """
    try:
        await service.delete_project(user.id, project_id)
        return {"status": "deleted", "projectId": project_id}
    except PipelineError as e:
        raise _http_error(e)
    except Exception as e:
        raise _unexpected("Delete project", e)


@project_router.get("/{project_id}/download/{kind}")
async def download_artifact(
    project_id: str,
    kind: Literal["original", "restored", "video"],
    user: User = Depends(current_user),
    service: PipelineService = Depends(get_pipeline),
):
    """Serve one of the project's artifacts as an attachment."""
    try:
        project = await service.get_project(user.id, project_id)
        ref = {
            "original": project.original_ref,
            "restored": project.restored_ref,
            "video": project.video_ref,
        }[kind]
        if ref is None:
            raise NotFound(f"Project has no {kind} artifact.")
        path = await service.store.resolve_to_local(ref)
    except ArtifactMissing as e:
        raise HTTPException(status_code=404, detail=NotFound(e.message).to_detail())
    except PipelineError as e:
        raise _http_error(e)
    except Exception as e:
        raise _unexpected("Download", e)

    cleanup = None if ref.is_local else BackgroundTask(path.unlink, missing_ok=True)
    return FileResponse(
        path,
        media_type=content_type_for(path.name),
        filename=f"retroimprover-{kind}-{project_id[:8]}{path.suffix}",
        background=cleanup,
    )
