"""
Runtime configuration for the walkthrough worker.

Every timing constant the pipeline depends on (poll schedule, crossfade,
subtitle chunking, retry budgets) lives here so it can be tuned from the
environment without a rebuild. Credentials are read separately by the
clients that need them.
"""

import os
import logging
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel

logger = logging.getLogger(__name__)

load_dotenv()


# ── Output resolutions per aspect ratio ──────────────────────────────────────

OUTPUT_RESOLUTIONS: dict[str, tuple[int, int]] = {
    "9:16": (720, 1280),
    "16:9": (1280, 720),
    "1:1": (720, 720),
}


class PipelineSettings(BaseModel):
    # Job poller (tuned for the video API's queueing profile)
    initial_poll_delay: float = 60.0
    poll_interval: float = 15.0

    # Composition
    crossfade_duration: float = 0.5
    output_fps: int = 30
    logo_max_size: int = 500
    logo_padding: int = 20
    subtitle_chunk_seconds: float = 3.0
    subtitle_max_chars: int = 40
    subtitle_font_size: int = 24
    encoder_preset: str = "medium"
    encoder_crf: int = 23

    # Room video submission
    max_images_per_room: int = 4
    prompt_max_chars: int = 2500
    video_model: str = "fal-ai/kling-video/v1.6/standard/elements"
    video_api_max_retries: int = 3
    video_api_base_delay: float = 1.0
    video_api_max_delay: float = 30.0
    rate_limit_min_delay: float = 10.0

    # Vision classification
    vision_model: str = "gemini-2.0-flash"
    classify_concurrency: int = 10
    classify_timeout: float = 30.0
    classify_max_retries: int = 2
    classify_base_delay: float = 1.0
    classify_max_delay: float = 5.0
    classify_max_tokens: int = 500
    classify_temperature: float = 0.3

    # Durable storage
    storage_max_attempts: int = 3
    storage_base_delay: float = 1.0
    storage_max_delay: float = 10.0

    # Progress estimates
    eta_seconds_per_room: int = 60
    eta_composition_seconds: int = 90

    # Subscription status cache
    subscription_cache_ttl: float = 300.0

    def resolution_for(self, aspect_ratio: str) -> tuple[int, int]:
        return OUTPUT_RESOLUTIONS.get(aspect_ratio, OUTPUT_RESOLUTIONS["9:16"])


# Environment variable → settings field
ENV_FIELDS = {
    "INITIAL_POLL_DELAY_SECONDS": "initial_poll_delay",
    "POLL_INTERVAL_SECONDS": "poll_interval",
    "CROSSFADE_DURATION_SECONDS": "crossfade_duration",
    "SUBTITLE_CHUNK_SECONDS": "subtitle_chunk_seconds",
    "SUBTITLE_MAX_CHARS": "subtitle_max_chars",
    "MAX_IMAGES_PER_ROOM": "max_images_per_room",
    "PROMPT_MAX_CHARS": "prompt_max_chars",
    "VIDEO_MODEL": "video_model",
    "VISION_MODEL": "vision_model",
    "CLASSIFY_CONCURRENCY": "classify_concurrency",
    "CLASSIFY_TIMEOUT_SECONDS": "classify_timeout",
    "CLASSIFY_MAX_RETRIES": "classify_max_retries",
    "STORAGE_MAX_ATTEMPTS": "storage_max_attempts",
    "SUBSCRIPTION_CACHE_TTL_SECONDS": "subscription_cache_ttl",
}


def load_settings(environ: Optional[dict] = None) -> PipelineSettings:
    """Build settings from the environment, falling back to defaults."""
    env = os.environ if environ is None else environ
    overrides = {
        field: env[name]
        for name, field in ENV_FIELDS.items()
        if env.get(name) not in (None, "")
    }
    if overrides:
        logger.info(f"Pipeline settings overridden from env: {sorted(overrides)}")
    return PipelineSettings(**overrides)
