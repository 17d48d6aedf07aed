# -*- coding: utf-8 -*-
"""
Pytest configuration and fixtures.
"""
import re
from pathlib import Path

import pytest
import pytest_asyncio
from fastapi.testclient import TestClient

from content_platform.annotation import (
    CUE_ATTRIBUTE,
    InteractiveAnnotation,
    PhishingAnnotation,
    extract_labels,
)
from content_platform.api import Services, app
from content_platform.assets import AssetMirror
from content_platform.config import settings
from content_platform.database import Database
from content_platform.errors import ExternalServiceError
from content_platform.notifications import NotificationQueue
from content_platform.pipeline import ContentPipeline
from content_platform.tracking import InteractionTracker

TAGGABLE = re.compile(r"<(?:input|button|div)\b", re.IGNORECASE)
CUE_TARGET = re.compile(r"<(?:p|a)\b", re.IGNORECASE)


class FakeAnnotator:
    """Stands in for AnnotationClient: tags the first interactive element."""

    is_configured = True

    def __init__(self, label="phishing-awareness", fail=False, fail_calls=(), difficulty=3):
        self.label = label
        self.fail = fail
        self.fail_calls = set(fail_calls)
        self.difficulty = difficulty
        self.interactive_calls: list[str] = []
        self.phishing_calls: list[str] = []
        self.topic_calls: list[str] = []

    async def tag_interactive(self, document, fragment=False):
        index = len(self.interactive_calls)
        self.interactive_calls.append(document)
        if self.fail or index in self.fail_calls:
            raise ExternalServiceError("annotation service unavailable")
        tagged = TAGGABLE.sub(
            lambda m: f'{m.group(0)} data-tag="{self.label}"', document, count=1
        )
        return InteractiveAnnotation(document=tagged, labels=extract_labels(tagged))

    async def tag_phishing_cues(self, document, reference_guide=None):
        self.phishing_calls.append(document)
        if self.fail:
            raise ExternalServiceError("annotation service unavailable")
        tagged = CUE_TARGET.sub(
            lambda m: f'{m.group(0)} data-cue="language:urgency-tactic"', document, count=1
        )
        return PhishingAnnotation(
            document=tagged,
            cues=extract_labels(tagged, CUE_ATTRIBUTE),
            difficulty=self.difficulty,
        )

    async def suggest_topics(self, document):
        self.topic_calls.append(document)
        if self.fail:
            raise ExternalServiceError("annotation service unavailable")
        return ["security-awareness"]


class FakeFetcher:
    """Stands in for AssetFetcher: writes a small file unless the URL is listed as missing."""

    def __init__(self, missing=()):
        self.missing = tuple(missing)
        self.calls: list[tuple[str, Path]] = []

    async def start(self):
        pass

    async def stop(self):
        pass

    async def download(self, url, destination):
        destination = Path(destination)
        self.calls.append((url, destination))
        if any(fragment in url for fragment in self.missing):
            return False
        destination.parent.mkdir(parents=True, exist_ok=True)
        destination.write_bytes(b"asset-bytes")
        return True


class FakePublisher:
    """Records published payloads; optionally fails."""

    def __init__(self, fail=False):
        self.fail = fail
        self.calls: list[dict] = []

    async def publish_interaction_event(
            self, tracking_link_id, recipient_id, content_id, interactions, final_score=None
    ):
        if self.fail:
            raise ExternalServiceError("publish failed")
        self.calls.append(
            {
                "tracking_link_id": tracking_link_id,
                "recipient_id": recipient_id,
                "content_id": content_id,
                "interactions": interactions,
                "final_score": final_score,
            }
        )
        return f"message-{len(self.calls)}"


@pytest.fixture(autouse=True)
def fast_retries(monkeypatch):
    """No backoff sleeps in tests."""
    monkeypatch.setattr(settings, "RETRY_MIN_WAIT", 0)
    monkeypatch.setattr(settings, "RETRY_MAX_WAIT", 0)


@pytest_asyncio.fixture
async def test_db(tmp_path):
    """Create a temporary test database."""
    db = Database(tmp_path / "test.db")
    await db.initialize()

    yield db

    await db.close()


@pytest.fixture
def content_dir(tmp_path):
    path = tmp_path / "content"
    path.mkdir()
    return path


@pytest.fixture
def annotator():
    return FakeAnnotator()


@pytest.fixture
def fetcher():
    return FakeFetcher(missing=("missing",))


@pytest.fixture
def publisher():
    return FakePublisher()


@pytest.fixture
def queue(test_db, publisher):
    return NotificationQueue(test_db, publisher)


@pytest.fixture
def tracker(test_db, queue):
    return InteractionTracker(test_db, queue)


@pytest.fixture
def mirror(fetcher, content_dir):
    return AssetMirror(fetcher, content_dir=content_dir, origin="https://assets.test")


@pytest.fixture
def pipeline(test_db, annotator, mirror, tracker, content_dir):
    return ContentPipeline(test_db, annotator, mirror, tracker, content_dir=content_dir)


@pytest.fixture
def make_pipeline(test_db, mirror, tracker, content_dir):
    """Factory for a pipeline around a FakeAnnotator built from kwargs."""

    def _make(**annotator_kwargs):
        fake = FakeAnnotator(**annotator_kwargs)
        return ContentPipeline(test_db, fake, mirror, tracker, content_dir=content_dir), fake

    return _make


@pytest_asyncio.fixture
async def content_id(test_db):
    """A stored content item with two labels."""
    await test_db.insert(
        "content",
        {
            "id": "content-1",
            "company_id": "acme",
            "title": "Phishing basics",
            "content_type": "raw_html",
            "status": "succeeded",
            "content_url": "content-1/index.html",
        },
    )
    for name in ("phishing", "password-security"):
        await test_db.insert(
            "content_tags",
            {"content_id": "content-1", "tag_name": name, "tag_type": "interaction-tag"},
        )
    return "content-1"


@pytest_asyncio.fixture
async def link(tracker, content_id):
    """A pending tracking link for recipient r-1."""
    await tracker.ensure_recipient("r-1", company_id="acme")
    return await tracker.create_tracking_link("r-1", content_id)


@pytest.fixture
def api_services(tmp_path):
    """Services wired with fakes; started by the client's lifespan."""
    content = tmp_path / "api-content"
    content.mkdir()
    publisher = FakePublisher()
    services = Services.create(
        db=Database(tmp_path / "api.db"),
        annotator=FakeAnnotator(),
        fetcher=FakeFetcher(),
        publisher=publisher,
        content_dir=content,
    )
    services.publisher = publisher
    services.content_dir = content
    return services


@pytest.fixture
def upload_dir(tmp_path, monkeypatch):
    """Staging directory for multipart uploads."""
    path = tmp_path / "uploads"
    path.mkdir()
    monkeypatch.setattr(settings, "UPLOAD_TMP_DIR", path)
    return path


@pytest.fixture
def client(api_services, upload_dir):
    """FastAPI test client running the lifespan with fake services."""
    app.state.services = api_services
    with TestClient(app, raise_server_exceptions=False) as test_client:
        yield test_client
    del app.state.services
