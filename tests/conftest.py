"""
Shared pytest fixtures.

Every test runs with zero poll/backoff delays and in-memory fakes for
storage, records, the video API and the composer.
"""

import pytest

from walkthrough.config import PipelineSettings
from walkthrough.metrics import MetricsRegistry
from walkthrough.pipeline.orchestrator import GenerationOrchestrator
from walkthrough.pipeline.poller import JobPoller
from walkthrough.pipeline.submitter import RoomVideoSubmitter

from fakes import FakeComposer, FakeRepository, FakeStorage, FakeVideoApi, image_row

PROJECT_ID = "proj-1"
USER_ID = "user-1"


@pytest.fixture()
def settings():
    return PipelineSettings(
        initial_poll_delay=0,
        poll_interval=0,
        storage_base_delay=0,
        video_api_base_delay=0,
        rate_limit_min_delay=0,
        classify_base_delay=0,
    )


@pytest.fixture()
def storage():
    return FakeStorage()


@pytest.fixture()
def three_room_images():
    """3 rooms × 2 images each."""
    rows = []
    order = 0
    for category in ("living-room", "kitchen", "bedroom"):
        for n in (1, 2):
            rows.append(image_row(PROJECT_ID, f"{category}-{n}", category, order, confidence=80 + n))
            order += 1
    return rows


@pytest.fixture()
def repository(three_room_images):
    return FakeRepository(images=three_room_images)


@pytest.fixture()
def video_api():
    return FakeVideoApi()


@pytest.fixture()
def composer():
    return FakeComposer()


@pytest.fixture()
def make_orchestrator(settings, storage, repository, composer):
    def _make(video_api):
        return GenerationOrchestrator(
            repository=repository,
            storage=storage,
            submitter=RoomVideoSubmitter(video_api, repository, settings),
            poller=JobPoller(video_api, storage, repository, settings),
            composer=composer,
            settings=settings,
            metrics=MetricsRegistry(),
        )
    return _make
