from datetime import datetime, timezone

import pytest

from conftest import PROMPTS
from retroimprover.pipeline.errors import NotFound
from retroimprover.pipeline.models import ArtifactRef, PipelineStage, Project
from retroimprover.pipeline.project_service import SupabaseProjectStore, project_from_row


def _project(project_id="p1", user_id="alice", **fields) -> Project:
    return Project(
        id=project_id,
        user_id=user_id,
        original_ref=ArtifactRef.local("/srv/uploads/originals/alice/a.png"),
        restored_ref=ArtifactRef.remote("https://cdn.test/restored/alice/a.png"),
        created_at=datetime(2026, 1, 1, tzinfo=timezone.utc),
        **fields,
    )


def test_stage_follows_record():
    project = _project()
    assert project.stage == PipelineStage.RESTORED
    assert project.model_copy(update={"prompts": PROMPTS}).stage == PipelineStage.PROMPTS_READY
    video = project.model_copy(update={"video_ref": ArtifactRef.remote("https://cdn.test/v.mp4")})
    assert video.stage == PipelineStage.VIDEO_READY


def test_legacy_string_columns_are_decoded_once():
    project = project_from_row({
        "id": "p1",
        "user_id": "alice",
        "original_ref": "uploads/originals/alice/a.png",
        "restored_ref": "https://cdn.test/restored/alice/a.png",
        "video_ref": None,
        "prompts": [p.model_dump() for p in PROMPTS],
        "created_at": "2026-01-01T00:00:00Z",
    })

    assert project.original_ref == ArtifactRef.local("uploads/originals/alice/a.png")
    assert project.restored_ref == ArtifactRef.remote("https://cdn.test/restored/alice/a.png")
    assert project.video_ref is None
    assert project.prompts == PROMPTS


async def test_in_memory_store_scopes_lookups_to_owner(projects):
    await projects.create(_project())

    assert (await projects.get("p1", "alice")).id == "p1"
    with pytest.raises(NotFound):
        await projects.get("p1", "bob")


async def test_in_memory_store_rejects_unknown_fields(projects):
    await projects.create(_project())

    with pytest.raises(ValueError):
        await projects.update("p1", user_id="bob")


async def test_supabase_store_round_trip(supabase):
    store = SupabaseProjectStore(supabase)
    await store.create(_project())

    row = supabase.tables["projects"][0]
    assert row["restored_ref"] == {"kind": "remote", "location": "https://cdn.test/restored/alice/a.png"}

    updated = await store.update("p1", prompts=PROMPTS, is_liked=True)
    assert updated.prompts == PROMPTS
    assert updated.is_liked

    liked = await store.list_for_user("alice", liked_only=True)
    assert [p.id for p in liked] == ["p1"]
    with pytest.raises(NotFound):
        await store.get("p1", "bob")

    await store.delete("p1")
    with pytest.raises(NotFound):
        await store.get("p1", "alice")
