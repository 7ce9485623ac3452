import asyncio
from datetime import datetime, timedelta, timezone
from io import BytesIO
from pathlib import Path

import pytest
from PIL import Image

from retroimprover import metrics
from retroimprover.pipeline.jobs import (
    Done,
    JobClient,
    Pending,
    PromptProvider,
    RestorationProvider,
    VideoProvider,
)
from retroimprover.pipeline.ledger import InMemoryLedger
from retroimprover.pipeline.models import BilingualPrompt
from retroimprover.pipeline.orchestrator import PipelineService
from retroimprover.pipeline.project_service import InMemoryProjectStore
from retroimprover.pipeline.storage import ArtifactStore
from retroimprover.pipeline.uploads import validate_image

PROMPTS = [
    BilingualPrompt(en="The woman smiles and turns her head", ru="Женщина улыбается и поворачивает голову"),
    BilingualPrompt(en="Leaves drift across the garden", ru="Листья летят по саду"),
    BilingualPrompt(en="The camera slowly pushes in", ru="Камера медленно приближается"),
    BilingualPrompt(en="Soft wind moves her hair", ru="Легкий ветер шевелит ее волосы"),
]


def make_image(fmt: str = "PNG", size=(64, 64), color=(120, 90, 60)) -> bytes:
    buf = BytesIO()
    Image.new("RGB", size, color).save(buf, format=fmt)
    return buf.getvalue()


# ── Provider fakes ───────────────────────────────────────────────────────────

class FakeRestorer(RestorationProvider):
    def __init__(self):
        self.calls = 0
        self.error = None
        self.gate = None

    async def restore(self, image, mime_type):
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return Done(data=make_image(color=(200, 180, 160)), mime_type="image/png")


class FakePrompter(PromptProvider):
    def __init__(self):
        self.calls = 0
        self.error = None

    async def generate(self, image, mime_type):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return Done(value=list(PROMPTS), mime_type="application/json")


class FakeAnimator(VideoProvider):
    """
    ``results`` is consumed one entry per poll; once exhausted the job stays
    Pending. Set ``gate`` to hold every poll until the test releases it.
    """

    def __init__(self):
        self.started = []
        self.checks = 0
        self.results = [Done(data=b"\x00\x00\x00\x18ftypmp42video", mime_type="video/mp4")]
        self.start_error = None
        self.gate = None

    async def start(self, prompt, image, mime_type, image_url):
        if self.start_error is not None:
            raise self.start_error
        self.started.append({"prompt": prompt, "image_url": image_url})
        return f"operations/op-{len(self.started)}"

    async def check(self, operation_id):
        self.checks += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.results:
            result = self.results.pop(0)
            if isinstance(result, Exception):
                raise result
            return result
        return Pending()


async def no_sleep(_seconds):
    await asyncio.sleep(0)


class Clock:
    def __init__(self):
        self.now = datetime(2026, 1, 1, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds: int):
        self.now += timedelta(seconds=seconds)


# ── Fixtures ─────────────────────────────────────────────────────────────────

@pytest.fixture(autouse=True)
def reset_metrics():
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def png_bytes() -> bytes:
    return make_image()


@pytest.fixture
def upload(png_bytes):
    return validate_image(png_bytes)


@pytest.fixture
def restorer():
    return FakeRestorer()


@pytest.fixture
def prompter():
    return FakePrompter()


@pytest.fixture
def animator():
    return FakeAnimator()


@pytest.fixture
def jobs(restorer, prompter, animator):
    return JobClient(restorer, prompter, animator, poll_interval=0, max_poll_attempts=3, sleep=no_sleep)


@pytest.fixture
def ledger():
    return InMemoryLedger({"alice": 10, "bob": 0})


@pytest.fixture
def projects():
    return InMemoryProjectStore()


@pytest.fixture
def store(tmp_path: Path):
    return ArtifactStore(str(tmp_path / "uploads"), "http://testserver")


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def service(ledger, projects, jobs, store, clock):
    return PipelineService(ledger, projects, jobs, store, speculative_ttl=3600, clock=clock)


def stored_files(store: ArtifactStore, folder: str) -> list[Path]:
    base = store.root / folder
    return [p for p in base.rglob("*") if p.is_file()] if base.exists() else []



# ── Supabase fake ────────────────────────────────────────────────────────────

class FakeResult:
    def __init__(self, data):
        self.data = data


class FakeQuery:
    """Just enough of the postgrest builder: select/insert/update/delete with eq filters."""

    def __init__(self, db: "FakeSupabase", table: str):
        self.db = db
        self.table = table
        self.op = "select"
        self.payload = None
        self.filters = []
        self.desc = None

    def select(self, *_columns):
        self.op = "select"
        return self

    def insert(self, payload):
        self.op, self.payload = "insert", payload
        return self

    def update(self, payload):
        self.op, self.payload = "update", payload
        return self

    def delete(self):
        self.op = "delete"
        return self

    def eq(self, column, value):
        self.filters.append((column, value))
        return self

    def limit(self, _n):
        return self

    def order(self, column, desc=False):
        self.desc = (column, desc)
        return self

    def _matching(self, rows):
        return [r for r in rows if all(r.get(c) == v for c, v in self.filters)]

    def execute(self):
        rows = self.db.tables.setdefault(self.table, [])
        if self.op == "insert":
            rows.append(dict(self.payload))
            return FakeResult([dict(self.payload)])
        if self.op == "update":
            if self.db.before_update:
                self.db.before_update.pop(0)(self.db)
            matched = self._matching(rows)
            for row in matched:
                row.update(self.payload)
            return FakeResult([dict(r) for r in matched])
        if self.op == "delete":
            matched = self._matching(rows)
            self.db.tables[self.table] = [r for r in rows if r not in matched]
            return FakeResult([dict(r) for r in matched])

        matched = [dict(r) for r in self._matching(rows)]
        if self.desc:
            column, desc = self.desc
            matched.sort(key=lambda r: r.get(column), reverse=desc)
        return FakeResult(matched)


class FakeSupabase:
    def __init__(self):
        self.tables: dict[str, list[dict]] = {}
        self.before_update = []  # callables run before the next update lands

    def table(self, name: str) -> FakeQuery:
        return FakeQuery(self, name)


@pytest.fixture
def supabase():
    return FakeSupabase()
