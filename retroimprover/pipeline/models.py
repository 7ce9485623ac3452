"""
Pydantic models and enums for the restoration pipeline.
"""

from datetime import datetime
from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


# ── Pipeline Stage ───────────────────────────────────────────────────────────

class PipelineStage(str, Enum):
    IDLE = "IDLE"
    RESTORING = "RESTORING"
    RESTORED = "RESTORED"
    PROMPTS_PENDING = "PROMPTS_PENDING"
    PROMPTS_READY = "PROMPTS_READY"
    VIDEO_PENDING = "VIDEO_PENDING"
    VIDEO_READY = "VIDEO_READY"


TRANSIENT_STAGES = {
    PipelineStage.RESTORING,
    PipelineStage.PROMPTS_PENDING,
    PipelineStage.VIDEO_PENDING,
}


# ── Artifact Reference ───────────────────────────────────────────────────────

class ArtifactRef(BaseModel):
    """Where an artifact lives: a path under the upload dir, or a remote URL."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["local", "remote"]
    location: str

    @classmethod
    def local(cls, path: str) -> "ArtifactRef":
        return cls(kind="local", location=str(path))

    @classmethod
    def remote(cls, url: str) -> "ArtifactRef":
        return cls(kind="remote", location=url)

    @classmethod
    def parse(cls, value) -> Optional["ArtifactRef"]:
        """Decode a stored column. Accepts the tagged dict or a legacy bare string."""
        if value is None or value == "":
            return None
        if isinstance(value, ArtifactRef):
            return value
        if isinstance(value, dict):
            return cls(**value)
        text = str(value)
        if text.startswith(("http://", "https://")):
            return cls.remote(text)
        return cls.local(text)

    @property
    def is_local(self) -> bool:
        return self.kind == "local"

    def to_row(self) -> dict:
        return {"kind": self.kind, "location": self.location}


# ── Prompts ──────────────────────────────────────────────────────────────────

PROMPT_COUNT = 4
LANGUAGES = ("en", "ru")


class BilingualPrompt(BaseModel):
    en: str
    ru: str

    def display(self, language: str) -> str:
        return self.ru if language == "ru" else self.en


# ── Users ────────────────────────────────────────────────────────────────────

class User(BaseModel):
    id: str
    email: Optional[str] = None
    credits: int = 0
    language: str = "en"
    is_subscribed: bool = False
    has_password: bool = False


# ── Project Record ───────────────────────────────────────────────────────────

class Project(BaseModel):
    id: str
    user_id: str
    original_ref: ArtifactRef
    restored_ref: Optional[ArtifactRef] = None
    video_ref: Optional[ArtifactRef] = None
    prompts: Optional[list[BilingualPrompt]] = None
    is_liked: bool = False
    created_at: datetime

    @property
    def stage(self) -> PipelineStage:
        """The stable rest state implied by the record."""
        if self.video_ref is not None:
            return PipelineStage.VIDEO_READY
        if self.prompts:
            return PipelineStage.PROMPTS_READY
        if self.restored_ref is not None:
            return PipelineStage.RESTORED
        return PipelineStage.IDLE

    def artifact_refs(self) -> list[ArtifactRef]:
        return [r for r in (self.original_ref, self.restored_ref, self.video_ref) if r is not None]


# ── API Models ───────────────────────────────────────────────────────────────

class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ProjectResponse(ApiModel):
    id: str
    original_ref: Optional[str] = None
    restored_ref: Optional[str] = None
    video_ref: Optional[str] = None
    prompts: Optional[list[BilingualPrompt]] = None
    is_liked: bool = False
    stage: PipelineStage = PipelineStage.RESTORED
    created_at: datetime


class RestoreResponse(ApiModel):
    project: ProjectResponse
    credits_left: int


class SpeculativeRestoreResponse(ApiModel):
    pending_id: str
    expires_at: datetime


class ClaimRequest(ApiModel):
    pending_id: str = ""


class PromptsRequest(ApiModel):
    project_id: str = ""
    language: Optional[str] = None


class PromptsResponse(ApiModel):
    prompts: list[str]
    bilingual_prompts: list[BilingualPrompt]


class VideoRequest(ApiModel):
    project_id: str = ""
    selected_prompts: list[str] = Field(default_factory=list)


class VideoResponse(ApiModel):
    video_url: str
    credits_left: int


class LikedMediaItem(ApiModel):
    project_id: str
    kind: Literal["restored", "video"]
    url: str
    created_at: datetime


class LikeRequest(ApiModel):
    liked: Optional[bool] = None
