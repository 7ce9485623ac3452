"""
Project Record persistence.

One Project per successful restoration. Artifact references are stored as
tagged JSON ({"kind", "location"}); older rows holding a bare path or URL
are decoded once here and never sniffed again downstream.

Lookups are always scoped to the owner: someone else's project is
indistinguishable from a missing one.
"""

import logging
import threading
from datetime import datetime, timezone
from typing import Optional

from .errors import NotFound
from .models import ArtifactRef, BilingualPrompt, Project

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = {"restored_ref", "video_ref", "prompts", "is_liked"}


def _check_fields(fields: dict):
    unknown = set(fields) - UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Cannot update project fields: {sorted(unknown)}")


class ProjectStore:
    async def create(self, project: Project) -> Project:
        raise NotImplementedError

    async def get(self, project_id: str, user_id: str) -> Project:
        raise NotImplementedError

    async def list_for_user(self, user_id: str, liked_only: bool = False) -> list[Project]:
        raise NotImplementedError

    async def update(self, project_id: str, **fields) -> Project:
        raise NotImplementedError

    async def delete(self, project_id: str):
        raise NotImplementedError


# ═════════════════════════════════════════════════════════════════════════════
# In-memory backend
# ═════════════════════════════════════════════════════════════════════════════

class InMemoryProjectStore(ProjectStore):
    def __init__(self):
        self._lock = threading.Lock()
        self._projects: dict[str, Project] = {}

    async def create(self, project: Project) -> Project:
        with self._lock:
            self._projects[project.id] = project
        return project

    async def get(self, project_id: str, user_id: str) -> Project:
        with self._lock:
            project = self._projects.get(project_id)
        if project is None or project.user_id != user_id:
            raise NotFound("Project not found.")
        return project

    async def list_for_user(self, user_id: str, liked_only: bool = False) -> list[Project]:
        with self._lock:
            rows = [p for p in self._projects.values() if p.user_id == user_id]
        if liked_only:
            rows = [p for p in rows if p.is_liked]
        return sorted(rows, key=lambda p: p.created_at, reverse=True)

    async def update(self, project_id: str, **fields) -> Project:
        _check_fields(fields)
        with self._lock:
            project = self._projects.get(project_id)
            if project is None:
                raise NotFound("Project not found.")
            updated = project.model_copy(update=fields)
            self._projects[project_id] = updated
        return updated

    async def delete(self, project_id: str):
        with self._lock:
            if self._projects.pop(project_id, None) is None:
                raise NotFound("Project not found.")


# ═════════════════════════════════════════════════════════════════════════════
# Supabase backend
# ═════════════════════════════════════════════════════════════════════════════

def project_from_row(row: dict) -> Project:
    prompts = row.get("prompts")
    created = row.get("created_at")
    if isinstance(created, str):
        created = datetime.fromisoformat(created.replace("Z", "+00:00"))
    return Project(
        id=row["id"],
        user_id=row["user_id"],
        original_ref=ArtifactRef.parse(row["original_ref"]),
        restored_ref=ArtifactRef.parse(row.get("restored_ref")),
        video_ref=ArtifactRef.parse(row.get("video_ref")),
        prompts=[BilingualPrompt(**p) for p in prompts] if prompts else None,
        is_liked=bool(row.get("is_liked", False)),
        created_at=created or datetime.now(timezone.utc),
    )


def _row_value(value):
    if isinstance(value, ArtifactRef):
        return value.to_row()
    if isinstance(value, list):
        return [v.model_dump() if isinstance(v, BilingualPrompt) else v for v in value]
    return value


class SupabaseProjectStore(ProjectStore):
    TABLE = "projects"

    def __init__(self, client):
        self._sb = client

    async def create(self, project: Project) -> Project:
        self._sb.table(self.TABLE).insert({
            "id": project.id,
            "user_id": project.user_id,
            "original_ref": project.original_ref.to_row(),
            "restored_ref": _row_value(project.restored_ref),
            "video_ref": _row_value(project.video_ref),
            "prompts": _row_value(project.prompts),
            "is_liked": project.is_liked,
            "created_at": project.created_at.isoformat(),
        }).execute()
        logger.info(f"Project {project.id} created for {project.user_id}")
        return project

    async def get(self, project_id: str, user_id: str) -> Project:
        result = (
            self._sb.table(self.TABLE)
            .select("*")
            .eq("id", project_id)
            .eq("user_id", user_id)
            .limit(1)
            .execute()
        )
        if not result.data:
            raise NotFound("Project not found.")
        return project_from_row(result.data[0])

    async def list_for_user(self, user_id: str, liked_only: bool = False) -> list[Project]:
        query = self._sb.table(self.TABLE).select("*").eq("user_id", user_id)
        if liked_only:
            query = query.eq("is_liked", True)
        result = query.order("created_at", desc=True).execute()
        return [project_from_row(row) for row in result.data]

    async def update(self, project_id: str, **fields) -> Project:
        _check_fields(fields)
        result = (
            self._sb.table(self.TABLE)
            .update({k: _row_value(v) for k, v in fields.items()})
            .eq("id", project_id)
            .execute()
        )
        if not result.data:
            raise NotFound("Project not found.")
        logger.info(f"Project {project_id} updated: {sorted(fields)}")
        return project_from_row(result.data[0])

    async def delete(self, project_id: str):
        result = self._sb.table(self.TABLE).delete().eq("id", project_id).execute()
        if not result.data:
            raise NotFound("Project not found.")
