from pathlib import Path

import httpx
import pytest

from retroimprover.pipeline.errors import ArtifactMissing, ArtifactUnavailable
from retroimprover.pipeline.jobs import Done
from retroimprover.pipeline.models import ArtifactRef
from retroimprover.pipeline.storage import ArtifactStore, artifact_name, extension_for


class FakeBucket:
    public_base = "https://cdn.test"

    def __init__(self, fail_put=False, fail_delete=False):
        self.objects = {}
        self.deleted = []
        self.fail_put = fail_put
        self.fail_delete = fail_delete

    def url_for(self, key):
        return f"{self.public_base}/{key}"

    def key_for(self, url):
        prefix = f"{self.public_base}/"
        return url[len(prefix):] if url.startswith(prefix) else None

    def put(self, key, path, content_type):
        if self.fail_put:
            raise RuntimeError("R2 unreachable")
        self.objects[key] = (Path(path).read_bytes(), content_type)
        return self.url_for(key)

    def delete(self, key):
        if self.fail_delete:
            raise RuntimeError("R2 unreachable")
        self.deleted.append(key)
        self.objects.pop(key, None)


def remote_store(tmp_path, bucket, handler=None) -> ArtifactStore:
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler)) if handler else None
    return ArtifactStore(str(tmp_path / "uploads"), "http://testserver", remote=bucket, http_client=http)


async def test_local_persist_and_public_url(store):
    ref = await store.persist(b"png-bytes", "restored/alice/a.png")

    assert ref.is_local
    assert Path(ref.location).read_bytes() == b"png-bytes"
    assert store.public_url(ref) == "http://testserver/uploads/restored/alice/a.png"
    assert await store.read_bytes(ref) == b"png-bytes"


async def test_publish_to_remote(tmp_path):
    bucket = FakeBucket()
    store = remote_store(tmp_path, bucket)

    ref = await store.persist(b"png-bytes", "restored/alice/a.png")

    assert ref == ArtifactRef.remote("https://cdn.test/restored/alice/a.png")
    assert bucket.objects["restored/alice/a.png"] == (b"png-bytes", "image/png")
    assert store.public_url(ref) == "https://cdn.test/restored/alice/a.png"


async def test_remote_failure_degrades_to_local(tmp_path):
    store = remote_store(tmp_path, FakeBucket(fail_put=True))

    ref = await store.persist(b"png-bytes", "restored/alice/a.png")

    assert ref.is_local
    assert Path(ref.location).is_file()


async def test_empty_artifact_is_refused(store):
    with pytest.raises(ArtifactMissing):
        await store.persist(b"", "restored/alice/a.png")


async def test_missing_local_artifact(store):
    with pytest.raises(ArtifactMissing):
        await store.resolve_to_local(ArtifactRef.local(str(store.root / "gone.png")))


async def test_ingest_downloads_uri_with_headers(tmp_path):
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["key"] = request.headers.get("x-goog-api-key")
        return httpx.Response(200, content=b"mp4-bytes")

    store = remote_store(tmp_path, None, handler)
    done = Done(uri="https://gemini.test/files/v.mp4", mime_type="video/mp4", headers={"x-goog-api-key": "k"})

    ref = await store.ingest(done, "videos/alice/v.mp4")

    assert seen["key"] == "k"
    assert Path(ref.location).read_bytes() == b"mp4-bytes"


async def test_unreachable_remote_artifact(tmp_path):
    store = remote_store(tmp_path, None, lambda r: httpx.Response(404))

    with pytest.raises(ArtifactUnavailable):
        await store.read_bytes(ArtifactRef.remote("https://cdn.test/restored/alice/a.png"))


async def test_remote_artifact_resolves_to_scratch_copy(tmp_path):
    store = remote_store(tmp_path, None, lambda r: httpx.Response(200, content=b"remote"))

    path = await store.resolve_to_local(ArtifactRef.remote("https://cdn.test/restored/alice/a.png"))

    assert path.parent == store.scratch
    assert path.suffix == ".png"
    assert path.read_bytes() == b"remote"


async def test_release_remote_removes_object_and_working_copy(tmp_path):
    bucket = FakeBucket()
    store = remote_store(tmp_path, bucket)
    ref = await store.persist(b"png-bytes", "restored/alice/a.png")

    await store.release(ref)

    assert bucket.deleted == ["restored/alice/a.png"]
    assert not (store.root / "restored/alice/a.png").exists()


async def test_release_never_raises(tmp_path):
    store = remote_store(tmp_path, FakeBucket(fail_delete=True))

    await store.release(ArtifactRef.remote("https://cdn.test/restored/alice/a.png"))
    await store.release(ArtifactRef.remote("https://elsewhere.test/a.png"))
    await store.release(None)


def test_artifact_names_stay_inside_upload_dir(store):
    with pytest.raises(ValueError):
        store.save_local(b"x", "../outside.txt")


def test_naming_helpers():
    name = artifact_name("videos", "alice", "mp4")
    assert name.startswith("videos/alice/") and name.endswith(".mp4")
    assert extension_for("image/jpeg") == ".jpg"
    assert extension_for("application/x-unknown", ".png") == ".png"


def test_artifact_ref_parse():
    assert ArtifactRef.parse(None) is None
    assert ArtifactRef.parse("") is None
    assert ArtifactRef.parse("https://cdn.test/a.png").kind == "remote"
    assert ArtifactRef.parse("uploads/a.png").kind == "local"
    assert ArtifactRef.parse({"kind": "remote", "location": "https://cdn.test/a.png"}).is_local is False
