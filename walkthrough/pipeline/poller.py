"""
Job Poller.

Fixed schedule: wait `initial_poll_delay` after submission, then check every
outstanding job each `poll_interval` until all of them are terminal. A
finished clip is downloaded, re-uploaded to durable storage and its Video
record marked completed; a failed job marks the record failed.

Handles are resolved at most once. Re-checking a resolved handle is a no-op,
so an artifact is never downloaded or uploaded twice.
"""

import asyncio
import logging
from typing import Callable, Optional

from walkthrough.config import PipelineSettings
from .errors import GenerationError, PipelineError
from .models import JobHandle, JobState, RoomVideoResult
from .storage import room_video_key, with_storage_retry

logger = logging.getLogger(__name__)


async def wait_or_cancel(cancel_event: Optional[asyncio.Event], seconds: float) -> bool:
    """Sleep for `seconds`; returns True as soon as the run is cancelled."""
    if cancel_event is None:
        if seconds > 0:
            await asyncio.sleep(seconds)
        return False
    if cancel_event.is_set():
        return True
    if seconds <= 0:
        return False
    try:
        await asyncio.wait_for(cancel_event.wait(), timeout=seconds)
        return True
    except asyncio.TimeoutError:
        return False


class JobPoller:
    """
    Usage:
        poller = JobPoller(video_api, storage, repository)
        results = await poller.poll_until_complete(handles, user_id, project_id)
    """

    def __init__(self, video_api, storage, repository, settings: Optional[PipelineSettings] = None):
        self.video_api = video_api
        self.storage = storage
        self.repository = repository
        self.settings = settings or PipelineSettings()

    async def poll_until_complete(
        self,
        handles: list[JobHandle],
        user_id: str,
        project_id: str,
        cancel_event: Optional[asyncio.Event] = None,
        on_resolved: Optional[Callable[[RoomVideoResult], None]] = None,
    ) -> list[RoomVideoResult]:
        """
        Drive every handle to a terminal state.

        Returns:
            One RoomVideoResult per handle that resolved during this call,
            in resolution order.

        Raises:
            GenerationError(CANCELLED) if `cancel_event` is set first.
        """
        pending = [h for h in handles if not h.resolved]
        results: list[RoomVideoResult] = []
        if not pending:
            return results

        logger.info(
            f"Project {project_id}: waiting {self.settings.initial_poll_delay:.0f}s "
            f"before polling {len(pending)} job(s)"
        )
        if await wait_or_cancel(cancel_event, self.settings.initial_poll_delay):
            raise GenerationError("Cancelled by user", "CANCELLED")

        while pending:
            resolved = await asyncio.gather(
                *(self.check_handle(h, user_id, project_id) for h in pending)
            )
            for result in resolved:
                if result is None:
                    continue
                results.append(result)
                if on_resolved:
                    on_resolved(result)

            pending = [h for h in pending if not h.resolved]
            if not pending:
                break

            logger.info(f"Project {project_id}: {len(pending)} job(s) still pending")
            if await wait_or_cancel(cancel_event, self.settings.poll_interval):
                raise GenerationError("Cancelled by user", "CANCELLED")

        return results

    async def check_handle(
        self, handle: JobHandle, user_id: str, project_id: str
    ) -> Optional[RoomVideoResult]:
        """
        Check one job once. Returns None while it is still pending or if it
        was already resolved earlier.
        """
        if handle.resolved:
            return None

        room = handle.room
        try:
            report = await self.video_api.get_status(handle.request_id, handle.status_url)
            if report.state == JobState.PENDING:
                return None

            if report.state == JobState.FAILED:
                error = report.error or "Video generation failed"
                handle.resolved = True
                await self.repository.mark_video_failed(handle.video_record_id, error)
                logger.warning(f"Room {room.id} ({room.name}): job {handle.request_id} failed: {error}")
                return RoomVideoResult(
                    room_id=room.id, room_name=room.name, video_record_id=handle.video_record_id,
                    status="failed", error=error, error_code="VIDEO_JOB_FAILED",
                )

            source_url = await self.video_api.get_result(handle.request_id, handle.response_url)
            handle.resolved = True
            data = await self.storage.download(source_url)
            key = room_video_key(user_id, project_id, room.id)
            public_url = await with_storage_retry(
                lambda: self.storage.upload(key, data, "video/mp4"),
                max_attempts=self.settings.storage_max_attempts,
                base_delay=self.settings.storage_base_delay,
                max_delay=self.settings.storage_max_delay,
                label=f"upload room video {room.id}",
            )
            await self.repository.mark_video_completed(handle.video_record_id, public_url, handle.duration)
            logger.info(f"Room {room.id} ({room.name}): video stored at {public_url}")
            return RoomVideoResult(
                room_id=room.id, room_name=room.name, video_record_id=handle.video_record_id,
                video_url=public_url, duration=handle.duration, status="completed",
            )

        except PipelineError as e:
            handle.resolved = True
            logger.error(f"Room {room.id} ({room.name}): [{e.code}] {e.message}")
            await self.repository.mark_video_failed(handle.video_record_id, e.message)
            return RoomVideoResult(
                room_id=room.id, room_name=room.name, video_record_id=handle.video_record_id,
                status="failed", error=e.message, error_code=e.code,
            )
