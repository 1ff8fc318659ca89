"""
Record persistence over Supabase (service role, bypasses RLS).

Tables:
  projects  video_generation_status, final_video_url, final_video_duration
  images    category, confidence (0–100 int), features, order, metadata
  videos    one row per (project, room); room_id NULL is the final video

Video status only moves forward: pending → processing → completed | failed.
Terminal rows are never mutated again; the guarded updates below report
whether they actually changed a row.
"""

import os
import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable, Optional, TypeVar
from uuid import uuid4

from supabase import create_client, Client

from .errors import GenerationError
from .models import (
    ImageRecord,
    RoomClassification,
    VideoRecord,
    VideoStatus,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

ACTIVE_STATUSES = [VideoStatus.PENDING.value, VideoStatus.PROCESSING.value]

# ── Supabase Service Client ──────────────────────────────────────────────────

_service_client: Optional[Client] = None


def get_service_client() -> Client:
    """Lazy-init Supabase client using service role key."""
    global _service_client
    if _service_client is None:
        url = os.getenv("SUPABASE_URL") or os.getenv("NEXT_PUBLIC_SUPABASE_URL", "")
        key = os.getenv("SUPABASE_SERVICE_ROLE_KEY", "")
        if not url or not key:
            raise RuntimeError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set")
        _service_client = create_client(url, key)
    return _service_client


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _video_from_row(row: dict) -> VideoRecord:
    return VideoRecord(
        id=row["id"],
        project_id=row["project_id"],
        room_id=row.get("room_id"),
        room_name=row.get("room_name"),
        video_url=row.get("video_url") or "",
        duration=row.get("duration") or 0,
        status=row.get("status", VideoStatus.PENDING.value),
        error_message=row.get("error_message"),
        thumbnail_url=row.get("thumbnail_url"),
        generation_settings=row.get("generation_settings"),
        created_at=row.get("created_at"),
    )


class SupabaseRepository:
    """
    Usage:
        repo = SupabaseRepository()
        record = await repo.create_room_video(project_id, "kitchen", "Kitchen", settings)
        await repo.mark_video_completed(record.id, url, 5)
    """

    def __init__(self, client: Optional[Client] = None):
        self._client = client

    @property
    def sb(self) -> Client:
        if self._client is None:
            self._client = get_service_client()
        return self._client

    async def _run(self, label: str, fn: Callable[[], T]) -> T:
        try:
            return await asyncio.to_thread(fn)
        except Exception as e:
            logger.error(f"Database operation '{label}' failed: {e}")
            raise GenerationError(f"Database operation '{label}' failed: {e}", "DATABASE_ERROR", e)

    # ── Images ───────────────────────────────────────────────────────────

    async def list_project_images(self, project_id: str) -> list[dict]:
        result = await self._run("list_project_images", lambda: (
            self.sb.table("images").select("*").eq("project_id", project_id).order("order").execute()
        ))
        return result.data or []

    async def save_image(self, project_id: str, image: ImageRecord) -> None:
        await self._run("save_image", lambda: self.sb.table("images").upsert({
            "id": image.id,
            "project_id": project_id,
            "filename": image.filename,
            "url": image.upload_url or "",
            "order": image.order,
        }).execute())

    async def save_image_classification(self, image_id: str, classification: RoomClassification) -> None:
        await self._run("save_image_classification", lambda: self.sb.table("images").update({
            "category": classification.category.value,
            "confidence": round(classification.confidence * 100),
            "features": classification.features,
            "metadata": {"reasoning": classification.reasoning},
        }).eq("id", image_id).execute())

    # ── Videos ───────────────────────────────────────────────────────────

    async def create_room_video(
        self,
        project_id: str,
        room_id: str,
        room_name: str,
        generation_settings: Optional[dict] = None,
    ) -> VideoRecord:
        """
        Create the pending record for a room, or reset the existing one.

        Keeps at most one record per (project, room).
        """
        fields = {
            "room_name": room_name,
            "video_url": "",
            "duration": 0,
            "status": VideoStatus.PENDING.value,
            "error_message": None,
            "generation_settings": generation_settings,
            "updated_at": _now_iso(),
        }

        existing = await self._run("find_room_video", lambda: (
            self.sb.table("videos").select("*")
            .eq("project_id", project_id).eq("room_id", room_id).limit(1).execute()
        ))
        if existing.data:
            video_id = existing.data[0]["id"]
            result = await self._run("reset_room_video", lambda: (
                self.sb.table("videos").update(fields).eq("id", video_id).execute()
            ))
        else:
            row = {"id": str(uuid4()), "project_id": project_id, "room_id": room_id, **fields}
            result = await self._run("create_room_video", lambda: (
                self.sb.table("videos").insert(row).execute()
            ))
        return _video_from_row(result.data[0])

    async def get_final_video(self, project_id: str) -> Optional[VideoRecord]:
        """The project's combined video: the one record without a room."""
        result = await self._run("get_final_video", lambda: (
            self.sb.table("videos").select("*")
            .eq("project_id", project_id).is_("room_id", "null").limit(1).execute()
        ))
        return _video_from_row(result.data[0]) if result.data else None

    async def get_or_create_final_video(
        self, project_id: str, generation_settings: Optional[dict] = None
    ) -> VideoRecord:
        existing = await self.get_final_video(project_id)
        if existing:
            return existing

        row = {
            "id": str(uuid4()),
            "project_id": project_id,
            "room_id": None,
            "room_name": "Final Video",
            "video_url": "",
            "duration": 0,
            "status": VideoStatus.PENDING.value,
            "generation_settings": generation_settings,
        }
        result = await self._run("create_final_video", lambda: (
            self.sb.table("videos").insert(row).execute()
        ))
        return _video_from_row(result.data[0])

    async def reset_final_video(self, video_id: str) -> None:
        await self._run("reset_final_video", lambda: self.sb.table("videos").update({
            "status": VideoStatus.PENDING.value,
            "video_url": "",
            "error_message": None,
            "updated_at": _now_iso(),
        }).eq("id", video_id).execute())

    async def _guarded_update(self, label: str, video_id: str, fields: dict, allowed: list[str]) -> bool:
        fields = {**fields, "updated_at": _now_iso()}
        result = await self._run(label, lambda: (
            self.sb.table("videos").update(fields)
            .eq("id", video_id).in_("status", allowed).execute()
        ))
        changed = bool(result.data)
        if not changed:
            logger.info(f"Video {video_id}: '{label}' skipped, record already terminal")
        return changed

    async def mark_video_processing(self, video_id: str) -> bool:
        return await self._guarded_update(
            "mark_video_processing", video_id,
            {"status": VideoStatus.PROCESSING.value}, [VideoStatus.PENDING.value],
        )

    async def mark_video_completed(
        self, video_id: str, video_url: str, duration: float, thumbnail_url: Optional[str] = None
    ) -> bool:
        fields = {
            "status": VideoStatus.COMPLETED.value,
            "video_url": video_url,
            "duration": round(duration),
        }
        if thumbnail_url:
            fields["thumbnail_url"] = thumbnail_url
        return await self._guarded_update("mark_video_completed", video_id, fields, ACTIVE_STATUSES)

    async def mark_video_failed(self, video_id: str, error_message: str) -> bool:
        return await self._guarded_update(
            "mark_video_failed", video_id,
            {"status": VideoStatus.FAILED.value, "error_message": error_message[:1000]},
            ACTIVE_STATUSES,
        )

    async def list_project_videos(self, project_id: str) -> list[VideoRecord]:
        result = await self._run("list_project_videos", lambda: (
            self.sb.table("videos").select("*").eq("project_id", project_id)
            .order("created_at").execute()
        ))
        return [_video_from_row(row) for row in result.data or []]

    # ── Projects ─────────────────────────────────────────────────────────

    async def update_project_generation(
        self,
        project_id: str,
        status: str,
        final_video_url: Optional[str] = None,
        final_video_duration: Optional[float] = None,
    ) -> None:
        fields: dict = {"video_generation_status": status, "updated_at": _now_iso()}
        if final_video_url is not None:
            fields["final_video_url"] = final_video_url
        if final_video_duration is not None:
            fields["final_video_duration"] = round(final_video_duration)
        await self._run("update_project_generation", lambda: (
            self.sb.table("projects").update(fields).eq("id", project_id).execute()
        ))

    async def get_project(self, project_id: str) -> Optional[dict]:
        result = await self._run("get_project", lambda: (
            self.sb.table("projects").select("*").eq("id", project_id).limit(1).execute()
        ))
        return result.data[0] if result.data else None

    # ── Usage / plan ─────────────────────────────────────────────────────

    async def count_final_videos_since(self, user_id: str, since: datetime) -> int:
        projects = await self._run("list_user_projects", lambda: (
            self.sb.table("projects").select("id").eq("user_id", user_id).execute()
        ))
        project_ids = [row["id"] for row in projects.data or []]
        if not project_ids:
            return 0

        result = await self._run("count_final_videos", lambda: (
            self.sb.table("videos").select("id", count="exact")
            .in_("project_id", project_ids)
            .is_("room_id", "null")
            .eq("status", VideoStatus.COMPLETED.value)
            .gte("created_at", since.isoformat())
            .execute()
        ))
        return result.count or 0

    async def get_user_plan(self, user_id: str) -> str:
        result = await self._run("get_user_plan", lambda: (
            self.sb.table("profiles").select("plan").eq("id", user_id).limit(1).execute()
        ))
        if not result.data:
            return "free"
        return result.data[0].get("plan") or "free"
