"""SupabaseRepository against a recording query-builder stub."""

import asyncio
from datetime import datetime, timezone
from types import SimpleNamespace

import pytest

from walkthrough.pipeline.errors import GenerationError
from walkthrough.pipeline.models import RoomClassification
from walkthrough.pipeline.repository import SupabaseRepository


class FakeQuery:
    """Chainable builder; every call is recorded as (method, args)."""

    def __init__(self, client, table):
        self.client = client
        self.table = table
        self.calls = []

    def __getattr__(self, name):
        def _chain(*args, **kwargs):
            self.calls.append((name, args))
            return self
        return _chain

    def execute(self):
        self.client.executed.append(self)
        if self.client.error:
            raise self.client.error
        data, count = self.client.responses.pop(0) if self.client.responses else ([], None)
        return SimpleNamespace(data=data, count=count)


class FakeSupabase:
    def __init__(self, responses=None, error=None):
        self.responses = list(responses or [])
        self.error = error
        self.executed: list[FakeQuery] = []

    def table(self, name):
        return FakeQuery(self, name)


def _row(**fields):
    return {"id": "v-1", "project_id": "proj-1", "room_id": "kitchen", "status": "pending", **fields}


class TestImages:
    def test_save_classification_scales_confidence(self):
        client = FakeSupabase()
        repo = SupabaseRepository(client)

        asyncio.run(repo.save_image_classification("img-1", RoomClassification(
            category="kitchen", confidence=0.876, reasoning="stove", features=["stove"],
        )))

        query = client.executed[0]
        assert query.table == "images"
        update = query.calls[0]
        assert update[0] == "update"
        assert update[1][0] == {
            "category": "kitchen", "confidence": 88, "features": ["stove"], "metadata": {"reasoning": "stove"},
        }
        assert ("eq", ("id", "img-1")) in query.calls


class TestVideos:
    def test_create_room_video_inserts(self):
        client = FakeSupabase(responses=[([], None), ([_row()], None)])
        record = asyncio.run(SupabaseRepository(client).create_room_video("proj-1", "kitchen", "Kitchen"))

        assert record.room_id == "kitchen"
        assert client.executed[1].calls[0][0] == "insert"

    def test_create_room_video_resets_existing(self):
        client = FakeSupabase(responses=[([_row(status="failed")], None), ([_row()], None)])
        record = asyncio.run(SupabaseRepository(client).create_room_video("proj-1", "kitchen", "Kitchen"))

        reset = client.executed[1]
        assert reset.calls[0][0] == "update"
        assert reset.calls[0][1][0]["status"] == "pending"
        assert record.status == "pending"

    def test_guarded_update_only_touches_active_rows(self):
        client = FakeSupabase(responses=[([_row(status="completed")], None)])
        changed = asyncio.run(SupabaseRepository(client).mark_video_completed("v-1", "https://cdn/x.mp4", 5.4))

        assert changed is True
        query = client.executed[0]
        fields = query.calls[0][1][0]
        assert fields["duration"] == 5
        assert ("in_", ("status", ["pending", "processing"])) in query.calls

    def test_guarded_update_reports_noop(self):
        client = FakeSupabase(responses=[([], None)])
        assert asyncio.run(SupabaseRepository(client).mark_video_failed("v-1", "boom")) is False

    def test_final_video_is_reused(self):
        client = FakeSupabase(responses=[([_row(room_id=None, status="completed")], None)])
        record = asyncio.run(SupabaseRepository(client).get_or_create_final_video("proj-1"))

        assert record.room_id is None
        assert len(client.executed) == 1
        assert ("is_", ("room_id", "null")) in client.executed[0].calls

    def test_missing_final_video(self):
        client = FakeSupabase(responses=[([], None)])
        assert asyncio.run(SupabaseRepository(client).get_final_video("proj-1")) is None
        assert ("is_", ("room_id", "null")) in client.executed[0].calls


class TestUsage:
    def test_count_final_videos(self):
        client = FakeSupabase(responses=[([{"id": "p1"}, {"id": "p2"}], None), ([], 4)])
        since = datetime(2026, 10, 1, tzinfo=timezone.utc)

        count = asyncio.run(SupabaseRepository(client).count_final_videos_since("user-1", since))

        assert count == 4
        calls = client.executed[1].calls
        assert ("in_", ("project_id", ["p1", "p2"])) in calls
        assert ("gte", ("created_at", since.isoformat())) in calls

    def test_count_without_projects(self):
        client = FakeSupabase(responses=[([], None)])
        assert asyncio.run(SupabaseRepository(client).count_final_videos_since("user-1", datetime.now())) == 0
        assert len(client.executed) == 1

    @pytest.mark.parametrize("data, plan", [([], "free"), ([{"plan": None}], "free"), ([{"plan": "premium"}], "premium")])
    def test_user_plan(self, data, plan):
        client = FakeSupabase(responses=[(data, None)])
        assert asyncio.run(SupabaseRepository(client).get_user_plan("user-1")) == plan

    def test_database_failure(self):
        client = FakeSupabase(error=RuntimeError("connection refused"))
        with pytest.raises(GenerationError) as exc:
            asyncio.run(SupabaseRepository(client).get_project("proj-1"))
        assert exc.value.code == "DATABASE_ERROR"
