"""
GenerationOrchestrator — top-level coordinator for one walkthrough video.

  processing_rooms → composing_video → completed      (failed from either)

  1. Load room image groupings for the project
  2. Submit one video job per room, concurrently
  3. Poll until every job is terminal (partial failure allowed)
  4. Compose the successful clips, in room-list order
  5. Persist the final Video record and project status

Job handles live only in memory for the duration of a run; the Video
records are the durable checkpoint that progress is rebuilt from.
"""

import re
import time
import asyncio
import logging
from typing import Optional

from walkthrough.config import PipelineSettings
from walkthrough.metrics import MetricsRegistry
from .categories import ROOM_CATEGORIES, category_label
from .errors import GenerationError, PipelineError, VideoValidationError
from .models import (
    ClipSpec,
    CompositionSettings,
    GenerationProgress,
    GenerationResult,
    GenerationStatus,
    JobHandle,
    LogoOverlay,
    RoomData,
    RoomImage,
    RoomVideoRequest,
    RoomVideoResult,
    SubtitleSettings,
    VideoSettings,
    VideoStatus,
)
from .progress import RunProgress, progress_from_records

logger = logging.getLogger(__name__)

_NUMBER_SUFFIX = re.compile(r"-\d+$")
_NUMBERED_ROOM = re.compile(r"^(.+)-(\d+)$")
CANCELLED_MESSAGE = "Cancelled by user"


def _room_type(room_id: str) -> str:
    """"bedroom-2" → "bedroom"."""
    return _NUMBER_SUFFIX.sub("", room_id)


def _rows_for_room(room_id: str, by_category: dict[str, list[dict]]) -> list[dict]:
    if room_id in by_category:
        return by_category[room_id]
    match = _NUMBERED_ROOM.match(room_id)
    if not match:
        return []
    bucket = by_category.get(match.group(1), [])
    index = int(match.group(2)) - 1
    return bucket[index:index + 1]


def _room_image(row: dict) -> RoomImage:
    metadata = row.get("metadata") or {}
    return RoomImage(
        url=row.get("url") or "",
        confidence=(row.get("confidence") or 0) / 100,
        scene_description=metadata.get("scene_description") or metadata.get("description"),
    )


class GenerationOrchestrator:
    """
    Usage:
        orchestrator = GenerationOrchestrator(repository, storage, submitter, poller, composer)
        result = await orchestrator.run(project_id, user_id, video_settings)
        progress = await orchestrator.get_generation_progress(project_id)
    """

    def __init__(
        self,
        repository,
        storage,
        submitter,
        poller,
        composer,
        settings: Optional[PipelineSettings] = None,
        metrics: Optional[MetricsRegistry] = None,
    ):
        self.repository = repository
        self.storage = storage
        self.submitter = submitter
        self.poller = poller
        self.composer = composer
        self.settings = settings or PipelineSettings()
        self.metrics = metrics or MetricsRegistry()
        self._runs: dict[str, RunProgress] = {}
        self._cancel_events: dict[str, asyncio.Event] = {}

    # ── Status ───────────────────────────────────────────────────────────

    def is_running(self, project_id: str) -> bool:
        run = self._runs.get(project_id)
        return run is not None and run.status not in (GenerationStatus.COMPLETED, GenerationStatus.FAILED)

    def get_progress(self, project_id: str) -> Optional[GenerationProgress]:
        """Live progress of a run started by this process, if any."""
        run = self._runs.get(project_id)
        return run.snapshot(self.settings) if run else None

    async def get_generation_progress(self, project_id: str) -> GenerationProgress:
        """Live progress when available, otherwise rebuilt from Video records."""
        live = self.get_progress(project_id)
        if live is not None:
            return live

        videos = await self.repository.list_project_videos(project_id)
        project = await self.repository.get_project(project_id)
        project_status = project.get("video_generation_status") if project else None
        return progress_from_records(videos, project_status, self.settings)

    def cancel(self, project_id: str) -> bool:
        """
        Stop polling and submission for an active run. Jobs already queued
        on the video API are abandoned, not cancelled remotely.
        """
        if not self.is_running(project_id):
            return False
        event = self._cancel_events.get(project_id)
        if event is None:
            return False
        event.set()
        logger.info(f"[{project_id}] cancellation requested")
        return True

    # ── Room data ────────────────────────────────────────────────────────

    async def load_rooms(self, project_id: str, video_settings: VideoSettings) -> list[RoomData]:
        """
        Group the project's images into rooms.

        With an explicit room order, each entry takes the images whose
        category equals its id. A numbered id such as "bedroom-2" takes the
        second bedroom image, the same split `build_room_groups` shows.
        Otherwise rooms follow walkthrough order, one per category.
        """
        rows = await self.repository.list_project_images(project_id)

        by_category: dict[str, list[dict]] = {}
        for row in rows:
            if row.get("category"):
                by_category.setdefault(row["category"], []).append(row)

        if video_settings.room_order:
            return [
                RoomData(
                    id=entry.id,
                    name=entry.name,
                    type=_room_type(entry.id),
                    images=[_room_image(row) for row in _rows_for_room(entry.id, by_category)],
                )
                for entry in video_settings.room_order
            ]

        ordered = sorted(
            by_category,
            key=lambda c: ROOM_CATEGORIES[c].order if c in ROOM_CATEGORIES else 100,
        )
        return [
            RoomData(
                id=category,
                name=category_label(_room_type(category)),
                type=_room_type(category),
                images=[_room_image(row) for row in by_category[category]],
            )
            for category in ordered
        ]

    # ── Run ──────────────────────────────────────────────────────────────

    async def run(
        self,
        project_id: str,
        user_id: str,
        video_settings: VideoSettings,
    ) -> GenerationResult:
        """Generate every room from scratch and compose the final video."""
        return await self._execute(project_id, user_id, video_settings)

    async def retry_failed_rooms(
        self,
        project_id: str,
        user_id: str,
        room_ids: list[str],
        video_settings: VideoSettings,
    ) -> GenerationResult:
        """
        Regenerate the given rooms from scratch and recompose.

        Rooms outside `room_ids` that already have a completed clip are
        reused as-is.
        """
        return await self._execute(project_id, user_id, video_settings, retry_room_ids=set(room_ids))

    async def _execute(
        self,
        project_id: str,
        user_id: str,
        video_settings: VideoSettings,
        retry_room_ids: Optional[set[str]] = None,
    ) -> GenerationResult:
        if self.is_running(project_id):
            raise GenerationError(f"Generation already in progress for project {project_id}", "ALREADY_RUNNING")

        started = time.monotonic()
        cancel_event = asyncio.Event()
        run = RunProgress(rooms=[], status=GenerationStatus.PROCESSING_ROOMS)
        self._runs[project_id] = run
        self._cancel_events[project_id] = cancel_event
        self.metrics.inc_counter("runs.started")
        self.metrics.add_gauge("active_runs", 1)

        results: list[RoomVideoResult] = []
        handles: list[JobHandle] = []
        final_record_id: Optional[str] = None

        try:
            await self.repository.update_project_generation(project_id, GenerationStatus.PROCESSING_ROOMS.value)

            rooms = await self.load_rooms(project_id, video_settings)
            if not rooms:
                raise GenerationError("Project has no classified rooms to generate", "NO_ROOMS")
            run.rooms = [(room.id, room.name) for room in rooms]

            # ── Rooms to (re)generate ───────────────────────────────────
            to_submit = rooms
            if retry_room_ids is not None:
                known = {room.id for room in rooms}
                unknown = retry_room_ids - known
                if unknown:
                    raise VideoValidationError(f"Unknown room ids: {sorted(unknown)}")
                to_submit = [room for room in rooms if room.id in retry_room_ids]
                results.extend(await self._previous_results(project_id, rooms, retry_room_ids, run))

            logger.info(f"[{project_id}] submitting {len(to_submit)} room video job(s)")
            handles, submit_failures = await self._submit_rooms(project_id, to_submit, video_settings, run)
            results.extend(submit_failures)

            if cancel_event.is_set():
                raise GenerationError(CANCELLED_MESSAGE, "CANCELLED")

            def _on_resolved(result: RoomVideoResult):
                run.set_room(result.room_id, result.status, result.error)
                self.metrics.inc_counter(f"rooms.{result.status}")
                if result.status == "failed":
                    self.metrics.record_error("room_video", result.error_code or "VIDEO_JOB_FAILED",
                                              result.error or "", project_id)

            results.extend(await self.poller.poll_until_complete(
                handles, user_id, project_id, cancel_event, _on_resolved,
            ))

            # ── Join: every room is terminal here ───────────────────────
            by_room = {r.room_id: r for r in results}
            ordered = [by_room[room.id] for room in rooms if room.id in by_room]
            completed = [r for r in ordered if r.status == "completed"]
            failed_rooms = [r.room_id for r in ordered if r.status == "failed"]

            if not completed:
                raise GenerationError("All room videos failed to generate", "ALL_ROOMS_FAILED")
            if failed_rooms:
                logger.warning(f"[{project_id}] composing without failed rooms: {failed_rooms}")

            # ── Composition ─────────────────────────────────────────────
            run.status = GenerationStatus.COMPOSING_VIDEO
            run.composition_state = "in-progress"
            await self.repository.update_project_generation(project_id, GenerationStatus.COMPOSING_VIDEO.value)

            final_record = await self.repository.get_or_create_final_video(
                project_id, video_settings.model_dump(mode="json"),
            )
            final_record_id = final_record.id
            if final_record.status in (VideoStatus.COMPLETED, VideoStatus.FAILED):
                await self.repository.reset_final_video(final_record_id)
            await self.repository.mark_video_processing(final_record_id)

            composition = await self._composition_settings(completed, video_settings)
            composed = await self.composer.compose(composition, user_id, project_id)

            await self.repository.mark_video_completed(
                final_record_id, composed.video_url, composed.duration, composed.thumbnail_url,
            )
            await self.repository.update_project_generation(
                project_id, GenerationStatus.COMPLETED.value, composed.video_url, composed.duration,
            )

            run.composition_state = "completed"
            run.status = GenerationStatus.COMPLETED
            elapsed_ms = (time.monotonic() - started) * 1000
            self.metrics.inc_counter("runs.completed")
            self.metrics.record_latency("generation_run", elapsed_ms)
            logger.info(
                f"[{project_id}] completed in {elapsed_ms / 1000:.0f}s — "
                f"{len(completed)} room(s), {len(failed_rooms)} failed"
            )
            return GenerationResult(
                project_id=project_id,
                success=True,
                final_video_url=composed.video_url,
                thumbnail_url=composed.thumbnail_url,
                duration=composed.duration,
                failed_rooms=failed_rooms,
            )

        except PipelineError as e:
            return await self._fail(project_id, run, e, results, handles, final_record_id)
        except asyncio.CancelledError:
            error = GenerationError("Generation task was cancelled", "CANCELLED")
            await self._fail(project_id, run, error, results, handles, final_record_id)
            raise
        except Exception as e:
            logger.exception(f"[{project_id}] unexpected error during generation")
            error = GenerationError(f"Unexpected error: {e}", "INTERNAL_ERROR", e)
            return await self._fail(project_id, run, error, results, handles, final_record_id)
        finally:
            self._cancel_events.pop(project_id, None)
            self.metrics.add_gauge("active_runs", -1)

    async def _submit_rooms(
        self,
        project_id: str,
        rooms: list[RoomData],
        video_settings: VideoSettings,
        run: RunProgress,
    ) -> tuple[list[JobHandle], list[RoomVideoResult]]:
        async def _submit(room: RoomData):
            run.set_room(room.id, "in-progress")
            request = RoomVideoRequest(
                room=room,
                duration=video_settings.duration,
                aspect_ratio=video_settings.aspect_ratio,
                ai_directions=video_settings.ai_directions,
            )
            try:
                return await self.submitter.submit_room(project_id, request)
            except PipelineError as e:
                run.set_room(room.id, "failed", e.message)
                self.metrics.inc_counter("rooms.failed")
                self.metrics.record_error("submit_room", e.code, e.message, project_id)
                return RoomVideoResult(
                    room_id=room.id, room_name=room.name, status="failed",
                    error=e.message, error_code=e.code,
                )

        outcomes = await asyncio.gather(*(_submit(room) for room in rooms))
        handles = [o for o in outcomes if isinstance(o, JobHandle)]
        failures = [o for o in outcomes if isinstance(o, RoomVideoResult)]
        return handles, failures

    async def _previous_results(
        self,
        project_id: str,
        rooms: list[RoomData],
        retry_room_ids: set[str],
        run: RunProgress,
    ) -> list[RoomVideoResult]:
        """Results for rooms that are not being retried, from their records."""
        records = {
            v.room_id: v for v in await self.repository.list_project_videos(project_id)
            if v.room_id is not None
        }
        previous = []
        for room in rooms:
            if room.id in retry_room_ids:
                continue
            record = records.get(room.id)
            if record and record.status == VideoStatus.COMPLETED and record.video_url:
                run.set_room(room.id, "completed")
                previous.append(RoomVideoResult(
                    room_id=room.id, room_name=room.name, video_record_id=record.id,
                    video_url=record.video_url, duration=record.duration, status="completed",
                ))
            else:
                error = record.error_message if record else "Room video was never generated"
                run.set_room(room.id, "failed", error)
                previous.append(RoomVideoResult(
                    room_id=room.id, room_name=room.name,
                    video_record_id=record.id if record else None,
                    status="failed", error=error,
                ))
        return previous

    async def _composition_settings(
        self, completed: list[RoomVideoResult], video_settings: VideoSettings
    ) -> CompositionSettings:
        logo = None
        if video_settings.logo_url:
            logo_bytes = await self.storage.download(video_settings.logo_url)
            logo = LogoOverlay(data=logo_bytes, position=video_settings.logo_position)

        subtitles = None
        if video_settings.enable_subtitles and video_settings.script_text.strip():
            subtitles = SubtitleSettings(
                enabled=True,
                text=video_settings.script_text,
                font=video_settings.subtitle_font,
            )

        return CompositionSettings(
            clips=tuple(ClipSpec(url=r.video_url, room_name=r.room_name) for r in completed),
            logo=logo,
            subtitles=subtitles,
            transitions=video_settings.transitions,
            aspect_ratio=video_settings.aspect_ratio,
        )

    async def _fail(
        self,
        project_id: str,
        run: RunProgress,
        error: PipelineError,
        results: list[RoomVideoResult],
        handles: list[JobHandle],
        final_record_id: Optional[str],
    ) -> GenerationResult:
        logger.error(f"[{project_id}] generation failed [{error.code}]: {error.message}")
        run.status = GenerationStatus.FAILED
        run.error = error.message
        if run.composition_state == "in-progress":
            run.composition_state = "failed"
        self.metrics.inc_counter("runs.failed")
        self.metrics.record_error("generation_run", error.code, error.message, project_id)

        try:
            for handle in handles:
                if not handle.resolved:
                    handle.resolved = True
                    run.set_room(handle.room.id, "failed", error.message)
                    await self.repository.mark_video_failed(handle.video_record_id, error.message)
            if final_record_id:
                await self.repository.mark_video_failed(final_record_id, error.message)
            await self.repository.update_project_generation(project_id, GenerationStatus.FAILED.value)
        except PipelineError as e:
            logger.error(f"[{project_id}] could not persist failure status: {e.message}")

        return GenerationResult(
            project_id=project_id,
            success=False,
            failed_rooms=[r.room_id for r in results if r.status == "failed"],
            error=error.message,
            error_code=error.code,
        )
