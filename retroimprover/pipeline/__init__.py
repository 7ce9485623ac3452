"""
Restoration Pipeline

Orchestration for:
  Stage 1 — Restore:  Gemini image model, 1 credit
  Stage 2 — Prompts:  Gemini Flash bilingual (en/ru) animation prompts, free
  Stage 3 — Video:    Veo 3.1 Fast, submitted then polled, 3 credits
  Projects — one record per restoration, with likes, downloads and deletion
"""

from .orchestrator import PipelineService
from .models import ArtifactRef, PipelineStage, Project

__all__ = [
    "PipelineService",
    "ArtifactRef",
    "PipelineStage",
    "Project",
]
