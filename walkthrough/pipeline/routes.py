"""
FastAPI routes for the media generation pipeline.

Classification Endpoints:
  POST /classification/classify              — Classify a batch of image URLs

Generation Endpoints:
  POST /generation/start                     — Start a walkthrough video run (202)
  GET  /generation/progress/{project_id}     — Live or reconstructed progress
  POST /generation/cancel/{project_id}       — Cancel an active run
  POST /generation/retry                     — Regenerate failed rooms (202)
  GET  /generation/video/{project_id}        — Final combined video record

Pipeline errors propagate to the app-level handler, which renders
{"error_code", "message"} with the error's HTTP status.
"""

import re
import logging
from datetime import datetime, timezone
from functools import lru_cache
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException

from walkthrough.config import PipelineSettings, load_settings
from walkthrough.metrics import MetricsRegistry
from .cache import TTLCache
from .classifier import VisionClassifier, batch_statistics
from .composition import VideoComposer
from .errors import GenerationError
from .models import (
    ClassifyRequest,
    GenerationRetryRequest,
    GenerationStartRequest,
    GenerationStatus,
)
from .orchestrator import GenerationOrchestrator
from .poller import JobPoller
from .repository import SupabaseRepository
from .storage import create_storage
from .submitter import RoomVideoSubmitter
from .subscription import SubscriptionService
from .video_api import FalVideoClient

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = {GenerationStatus.COMPLETED, GenerationStatus.FAILED}


# ── Dependency providers (process-wide singletons) ───────────────────────────

@lru_cache
def get_settings() -> PipelineSettings:
    return load_settings()


@lru_cache
def get_metrics() -> MetricsRegistry:
    return MetricsRegistry()


@lru_cache
def get_repository() -> SupabaseRepository:
    return SupabaseRepository()


@lru_cache
def get_storage():
    return create_storage()


@lru_cache
def get_classifier() -> VisionClassifier:
    return VisionClassifier(settings=get_settings())


@lru_cache
def get_subscription_service() -> SubscriptionService:
    return SubscriptionService(get_repository(), TTLCache(get_settings().subscription_cache_ttl))


@lru_cache
def get_orchestrator() -> GenerationOrchestrator:
    settings = get_settings()
    repository = get_repository()
    storage = get_storage()
    video_api = FalVideoClient(settings=settings)
    return GenerationOrchestrator(
        repository=repository,
        storage=storage,
        submitter=RoomVideoSubmitter(video_api, repository, settings),
        poller=JobPoller(video_api, storage, repository, settings),
        composer=VideoComposer(storage, settings),
        settings=settings,
        metrics=get_metrics(),
    )


def _estimate_seconds(room_count: int, settings: PipelineSettings) -> int:
    return room_count * settings.eta_seconds_per_room + settings.eta_composition_seconds


# ═════════════════════════════════════════════════════════════════════════════
# Classification Router
# ═════════════════════════════════════════════════════════════════════════════

classification_router = APIRouter(prefix="/classification", tags=["classification"])


@classification_router.post("/classify")
async def classify_images(
    request: ClassifyRequest,
    classifier: VisionClassifier = Depends(get_classifier),
    metrics: MetricsRegistry = Depends(get_metrics),
):
    """Classify every image URL; per-image failures are reported, not raised."""
    metrics.inc_counter("requests.classify")
    outcomes = await classifier.classify_batch(request.image_urls, concurrency=request.concurrency)
    stats = batch_statistics(outcomes)
    metrics.record_latency("classify_batch", stats["total_duration_ms"])
    logger.info(f"Classified {stats['successful']}/{stats['total']} images")
    return {
        "results": [o.model_dump(mode="json") for o in outcomes],
        "statistics": stats,
    }


# ═════════════════════════════════════════════════════════════════════════════
# Generation Router
# ═════════════════════════════════════════════════════════════════════════════

generation_router = APIRouter(prefix="/generation", tags=["generation"])


@generation_router.post("/start", status_code=202)
async def start_generation(
    request: GenerationStartRequest,
    background_tasks: BackgroundTasks,
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
    subscriptions: SubscriptionService = Depends(get_subscription_service),
    settings: PipelineSettings = Depends(get_settings),
    metrics: MetricsRegistry = Depends(get_metrics),
):
    """
    Schedule a generation run.

    Errors:
      - 402: Monthly video limit reached
      - 409: A run is already active for this project
    """
    metrics.inc_counter("requests.generation_start")
    if orchestrator.is_running(request.project_id):
        raise GenerationError(
            f"Generation already in progress for project {request.project_id}", "ALREADY_RUNNING"
        )

    remaining = await subscriptions.ensure_can_generate(request.user_id)

    background_tasks.add_task(
        orchestrator.run, request.project_id, request.user_id, request.video_settings,
    )
    room_count = len(request.video_settings.room_order)
    logger.info(f"[{request.project_id}] generation scheduled ({room_count} rooms, {remaining} videos left)")
    return {
        "project_id": request.project_id,
        "status": GenerationStatus.PROCESSING_ROOMS.value,
        "estimated_time_seconds": _estimate_seconds(room_count, settings),
        "message": "Video generation started",
    }


@generation_router.get("/progress/{project_id}")
async def get_generation_progress(
    project_id: str,
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
):
    progress = await orchestrator.get_generation_progress(project_id)
    return {
        **progress.model_dump(mode="json"),
        "is_complete": progress.status == GenerationStatus.COMPLETED,
        "has_failed": progress.status == GenerationStatus.FAILED,
    }


@generation_router.post("/cancel/{project_id}")
async def cancel_generation(
    project_id: str,
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
):
    """
    Errors:
      - 400: The run already completed or failed
      - 404: No run found for the project
    """
    if orchestrator.cancel(project_id):
        return {"project_id": project_id, "cancelled": True, "message": "Generation cancelled"}

    progress = await orchestrator.get_generation_progress(project_id)
    if progress.status in TERMINAL_STATUSES:
        raise HTTPException(
            status_code=400,
            detail=f"Cannot cancel a generation that is already {progress.status.value}",
        )
    raise HTTPException(status_code=404, detail="No active generation for this project")


@generation_router.post("/retry", status_code=202)
async def retry_generation(
    request: GenerationRetryRequest,
    background_tasks: BackgroundTasks,
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
    settings: PipelineSettings = Depends(get_settings),
):
    """Regenerate the listed rooms from scratch and recompose the final video."""
    if orchestrator.is_running(request.project_id):
        raise GenerationError(
            f"Generation already in progress for project {request.project_id}", "ALREADY_RUNNING"
        )

    background_tasks.add_task(
        orchestrator.retry_failed_rooms,
        request.project_id, request.user_id, request.room_ids, request.video_settings,
    )
    return {
        "project_id": request.project_id,
        "status": GenerationStatus.PROCESSING_ROOMS.value,
        "retrying_rooms": request.room_ids,
        "estimated_time_seconds": _estimate_seconds(len(request.room_ids), settings),
    }


@generation_router.get("/video/{project_id}")
async def get_final_video(
    project_id: str,
    repository: SupabaseRepository = Depends(get_repository),
):
    """
    The project's combined walkthrough video.

    Errors:
      - 404: Unknown project, or no final video record yet
    """
    project = await repository.get_project(project_id)
    if project is None:
        raise HTTPException(status_code=404, detail="Project not found")

    video = await repository.get_final_video(project_id)
    if video is None:
        raise HTTPException(
            status_code=404,
            detail="Final video not found. Generation may still be in progress.",
        )

    return {
        "project_id": project_id,
        "video": {
            "video_url": video.video_url,
            "thumbnail_url": video.thumbnail_url,
            "duration": video.duration,
            "status": video.status.value,
            "filename": download_filename(project.get("title")),
        },
    }


def download_filename(title: Optional[str]) -> str:
    """"Sunny Loft!" → "sunny_loft__2026-10-19.mp4"."""
    stem = re.sub(r"[^a-z0-9]", "_", (title or "video").lower())
    return f"{stem}_{datetime.now(timezone.utc).date().isoformat()}.mp4"
