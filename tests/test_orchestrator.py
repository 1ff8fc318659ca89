"""End-to-end generation runs against in-memory collaborators."""

import asyncio

import pytest

from walkthrough.pipeline.errors import CompositionError
from walkthrough.pipeline.models import (
    GenerationStatus,
    RoomOrderEntry,
    VideoSettings,
    VideoStatus,
)

from conftest import PROJECT_ID, USER_ID
from fakes import FakeVideoApi, image_row


def _run(orchestrator, settings=None):
    return asyncio.run(orchestrator.run(PROJECT_ID, USER_ID, settings or VideoSettings()))


class TestHappyPath:
    def test_all_rooms_succeed(self, make_orchestrator, repository, composer, video_api):
        """3 rooms × 2 images, all jobs succeed → completed, final record, no failed rooms."""
        result = _run(make_orchestrator(video_api))

        assert result.success is True
        assert result.failed_rooms == []
        assert len(composer.calls) == 1
        assert len(composer.calls[0].clips) == 3

        final = repository.final_video(PROJECT_ID)
        assert final.status == VideoStatus.COMPLETED
        assert final.video_url == result.final_video_url
        assert final.thumbnail_url == result.thumbnail_url

        project = repository.projects[PROJECT_ID]
        assert project["video_generation_status"] == "completed"
        assert project["final_video_url"] == result.final_video_url
        assert project["final_video_duration"] == round(result.duration)

    def test_clips_follow_room_order_not_completion_order(self, make_orchestrator, composer, video_api):
        settings = VideoSettings(room_order=[
            RoomOrderEntry(id="bedroom", name="Main Bedroom"),
            RoomOrderEntry(id="living-room", name="Living Room"),
            RoomOrderEntry(id="kitchen", name="Kitchen"),
        ])
        _run(make_orchestrator(video_api), settings)

        names = [clip.room_name for clip in composer.calls[0].clips]
        assert names == ["Main Bedroom", "Living Room", "Kitchen"]

    def test_each_room_gets_one_record(self, make_orchestrator, repository, video_api):
        _run(make_orchestrator(video_api))
        room_ids = sorted(v.room_id for v in repository.videos.values() if v.room_id)
        assert room_ids == ["bedroom", "kitchen", "living-room"]

    def test_composition_settings_from_user_settings(self, make_orchestrator, composer, storage, video_api):
        storage.objects["https://brand.test/logo.png"] = b"logo-bytes"
        settings = VideoSettings(
            orientation="landscape",
            logo_url="https://brand.test/logo.png",
            logo_position="top-left",
            enable_subtitles=True,
            script_text="Welcome home",
            subtitle_font="Helvetica",
        )
        _run(make_orchestrator(video_api), settings)

        composition = composer.calls[0]
        assert composition.aspect_ratio == "16:9"
        assert composition.transitions is True
        assert composition.logo.data == b"logo-bytes"
        assert composition.logo.position.value == "top-left"
        assert composition.subtitles.text == "Welcome home"
        assert composition.subtitles.font == "Helvetica"

    def test_vertical_is_default_aspect(self, make_orchestrator, video_api):
        _run(make_orchestrator(video_api))
        assert {s["aspect_ratio"] for s in video_api.submissions} == {"9:16"}


class TestPartialFailure:
    def test_one_failed_job_still_composes(self, make_orchestrator, repository, composer):
        """Room 2's job fails → compose rooms 1 and 3, failed_rooms == [room 2]."""
        orchestrator = make_orchestrator(FakeVideoApi(fail_job_for=("kitchen",)))
        result = _run(orchestrator)

        assert result.success is True
        assert result.failed_rooms == ["kitchen"]
        assert [c.room_name for c in composer.calls[0].clips] == ["Living Room", "Bedroom"]
        assert repository.room_video(PROJECT_ID, "kitchen").status == VideoStatus.FAILED
        assert repository.room_video(PROJECT_ID, "kitchen").error_message == "generation failed upstream"

    def test_all_submissions_fail(self, make_orchestrator, repository, composer):
        """Every submit fails → run fails without composing."""
        api = FakeVideoApi(fail_submit_for=("living-room", "kitchen", "bedroom"))
        result = _run(make_orchestrator(api))

        assert result.success is False
        assert result.error_code == "ALL_ROOMS_FAILED"
        assert sorted(result.failed_rooms) == ["bedroom", "kitchen", "living-room"]
        assert composer.calls == []
        assert repository.projects[PROJECT_ID]["video_generation_status"] == "failed"
        assert all(
            v.status == VideoStatus.FAILED for v in repository.videos.values() if v.room_id
        )

    def test_room_without_images_fails_validation(self, make_orchestrator, repository, video_api):
        settings = VideoSettings(room_order=[
            RoomOrderEntry(id="kitchen", name="Kitchen"),
            RoomOrderEntry(id="garage", name="Garage"),
        ])
        result = _run(make_orchestrator(video_api), settings)

        assert result.success is True
        assert result.failed_rooms == ["garage"]
        assert repository.room_video(PROJECT_ID, "garage").status == VideoStatus.FAILED
        assert len(video_api.submissions) == 1

    def test_composition_failure_fails_run(self, make_orchestrator, repository, composer, video_api):
        composer.error = CompositionError("xfade failed", "FFMPEG_ERROR")
        result = _run(make_orchestrator(video_api))

        assert result.success is False
        assert result.error_code == "FFMPEG_ERROR"
        assert repository.final_video(PROJECT_ID).status == VideoStatus.FAILED
        assert repository.projects[PROJECT_ID]["video_generation_status"] == "failed"

    def test_unexpected_composer_error_fails_run(self, make_orchestrator, repository, composer, video_api):
        """An untyped error (bad clip bytes) still fails the run and frees the project."""
        composer.error = OSError("moov atom not found")
        orchestrator = make_orchestrator(video_api)
        result = _run(orchestrator)

        assert result.success is False
        assert result.error_code == "INTERNAL_ERROR"
        assert "moov atom not found" in result.error
        assert repository.final_video(PROJECT_ID).status == VideoStatus.FAILED
        assert repository.projects[PROJECT_ID]["video_generation_status"] == "failed"
        assert orchestrator.is_running(PROJECT_ID) is False
        assert orchestrator.get_progress(PROJECT_ID).status == GenerationStatus.FAILED

        composer.error = None
        assert _run(orchestrator).success is True

    def test_no_rooms(self, make_orchestrator, repository, video_api):
        repository.images = []
        result = _run(make_orchestrator(video_api))
        assert result.success is False
        assert result.error_code == "NO_ROOMS"


class TestProgress:
    def test_live_progress_after_completion(self, make_orchestrator, video_api):
        orchestrator = make_orchestrator(video_api)
        _run(orchestrator)

        progress = orchestrator.get_progress(PROJECT_ID)
        assert progress.status == GenerationStatus.COMPLETED
        assert progress.overall_progress == 100
        assert progress.total_steps == 4
        assert progress.estimated_time_remaining == 0
        assert [s.status for s in progress.steps] == ["completed"] * 4

    def test_progress_rebuilt_from_records(self, make_orchestrator, video_api):
        _run(make_orchestrator(video_api))

        fresh = make_orchestrator(video_api)   # simulates a restarted process
        progress = asyncio.run(fresh.get_generation_progress(PROJECT_ID))
        assert progress.status == GenerationStatus.COMPLETED
        assert progress.completed_steps == 4


class TestCancel:
    def test_cancel_stops_polling(self, make_orchestrator, repository, composer):
        api = FakeVideoApi(pending_checks=1000)
        orchestrator = make_orchestrator(api)
        orchestrator.settings = orchestrator.settings.model_copy(update={"poll_interval": 0.01})
        orchestrator.poller.settings = orchestrator.settings

        async def scenario():
            task = asyncio.create_task(orchestrator.run(PROJECT_ID, USER_ID, VideoSettings()))
            while not api.status_checks:
                await asyncio.sleep(0.005)
            assert orchestrator.cancel(PROJECT_ID) is True
            return await task

        result = asyncio.run(scenario())

        assert result.success is False
        assert result.error_code == "CANCELLED"
        assert result.error == "Cancelled by user"
        assert composer.calls == []
        assert all(v.status == VideoStatus.FAILED for v in repository.videos.values() if v.room_id)
        assert orchestrator.cancel(PROJECT_ID) is False

    def test_cancel_unknown_project(self, make_orchestrator, video_api):
        assert make_orchestrator(video_api).cancel("nope") is False


class TestRetry:
    def test_retry_regenerates_only_failed_rooms(self, make_orchestrator, repository, composer):
        first = make_orchestrator(FakeVideoApi(fail_job_for=("kitchen",)))
        assert _run(first).failed_rooms == ["kitchen"]

        api = FakeVideoApi()
        retry = make_orchestrator(api)
        result = asyncio.run(retry.retry_failed_rooms(PROJECT_ID, USER_ID, ["kitchen"], VideoSettings()))

        assert result.success is True
        assert result.failed_rooms == []
        assert len(api.submissions) == 1
        assert "kitchen" in api.submissions[0]["image_urls"][0]
        assert repository.room_video(PROJECT_ID, "kitchen").status == VideoStatus.COMPLETED
        assert [c.room_name for c in composer.calls[-1].clips] == ["Living Room", "Kitchen", "Bedroom"]
        assert repository.final_video(PROJECT_ID).video_url == result.final_video_url

    def test_retry_unknown_room(self, make_orchestrator, video_api):
        result = asyncio.run(
            make_orchestrator(video_api).retry_failed_rooms(PROJECT_ID, USER_ID, ["attic"], VideoSettings())
        )
        assert result.success is False
        assert result.error_code == "VALIDATION_ERROR"


class TestNumberedRooms:
    def test_each_numbered_room_gets_its_own_image(self, make_orchestrator, repository, composer, video_api):
        repository.images = [
            image_row(PROJECT_ID, "b1", "bedroom", 0),
            image_row(PROJECT_ID, "b2", "bedroom", 1),
        ]
        settings = VideoSettings(room_order=[
            RoomOrderEntry(id="bedroom-1", name="Bedroom 1"),
            RoomOrderEntry(id="bedroom-2", name="Bedroom 2"),
        ])
        result = _run(make_orchestrator(video_api), settings)

        assert result.success is True
        assert result.failed_rooms == []
        assert sorted(s["image_urls"][0] for s in video_api.submissions) == [
            "https://img.test/bedroom-b1.jpg",
            "https://img.test/bedroom-b2.jpg",
        ]
        assert all(len(s["image_urls"]) == 1 for s in video_api.submissions)
        assert [c.room_name for c in composer.calls[0].clips] == ["Bedroom 1", "Bedroom 2"]

    def test_numbered_room_past_the_last_image_has_none(self, make_orchestrator, repository, video_api):
        repository.images = [image_row(PROJECT_ID, "b1", "bedroom", 0)]
        settings = VideoSettings(room_order=[RoomOrderEntry(id="bedroom-3", name="Bedroom 3")])

        rooms = asyncio.run(make_orchestrator(video_api).load_rooms(PROJECT_ID, settings))

        assert rooms[0].images == []
        assert rooms[0].type == "bedroom"


class TestTaskCancellation:
    def test_cancelled_task_marks_project_failed(self, make_orchestrator, repository):
        api = FakeVideoApi(pending_checks=1000)
        orchestrator = make_orchestrator(api)
        orchestrator.settings = orchestrator.settings.model_copy(update={"poll_interval": 0.01})
        orchestrator.poller.settings = orchestrator.settings

        async def scenario():
            task = asyncio.create_task(orchestrator.run(PROJECT_ID, USER_ID, VideoSettings()))
            while not api.status_checks:
                await asyncio.sleep(0.005)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        asyncio.run(scenario())

        assert orchestrator.is_running(PROJECT_ID) is False
        assert repository.projects[PROJECT_ID]["video_generation_status"] == "failed"
        assert all(v.status == VideoStatus.FAILED for v in repository.videos.values() if v.room_id)
