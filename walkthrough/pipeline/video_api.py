"""
Video-generation API client — fal.ai queue (Kling image-to-video).

Non-blocking contract:
  submit(prompt, image_urls, ...)  → request_id (+ status/response URLs)
  get_status(request_id)           → pending | completed | failed
  get_result(request_id)           → video URL

Automatically retries on 429 / 5xx with exponential backoff. Rate-limit
responses wait at least `rate_limit_min_delay` before the next attempt.
"""

import os
import random
import asyncio
import logging
from contextlib import nullcontext
from typing import Optional

import httpx

from walkthrough.config import PipelineSettings
from .errors import VideoApiError
from .models import JobState, JobStatusReport

logger = logging.getLogger(__name__)

# ── Config ───────────────────────────────────────────────────────────────────

FAL_KEY = os.getenv("FAL_KEY", "")
QUEUE_BASE_URL = "https://queue.fal.run"

JITTER_MAX = 1.0        # random jitter 0–1s added to each delay
RETRYABLE_STATUS_CODES = {429, 502, 503, 504}

_COMPLETED_STATES = {"COMPLETED", "OK", "SUCCEEDED"}
_FAILED_STATES = {"FAILED", "ERROR", "CANCELLED"}


def decode_video_result(payload) -> str:
    """
    Normalize a result payload to its video URL.

    Accepts the direct form {"video": {"url": ...}} and the wrapped form
    {"data": {"video": {"url": ...}}}.

    Raises:
        VideoApiError(VIDEO_API_CONTRACT) if neither shape carries a
        non-empty URL.
    """
    if isinstance(payload, dict):
        for candidate in (payload, payload.get("data")):
            if not isinstance(candidate, dict):
                continue
            video = candidate.get("video")
            if isinstance(video, dict):
                url = video.get("url")
                if isinstance(url, str) and url.strip():
                    return url
                raise VideoApiError(
                    "Video API result is missing video.url", "VIDEO_API_CONTRACT", payload
                )

    raise VideoApiError(
        "Video API result matches neither direct nor wrapped shape", "VIDEO_API_CONTRACT", payload
    )


def _json_object(response: httpx.Response) -> dict:
    try:
        data = response.json()
    except ValueError as e:
        raise VideoApiError(
            f"Video API returned a non-JSON body: {response.text[:200]}", "VIDEO_API_CONTRACT", e
        )
    if not isinstance(data, dict):
        raise VideoApiError("Video API returned a non-object body", "VIDEO_API_CONTRACT", data)
    return data


def _app_id(model: str) -> str:
    """Queue status lives under the app id: the first two path segments."""
    return "/".join(model.split("/")[:2])


class FalVideoClient:
    """
    Usage:
        client = FalVideoClient()
        submitted = await client.submit(prompt, image_urls, duration="5", aspect_ratio="9:16")
        report = await client.get_status(submitted["request_id"])
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        settings: Optional[PipelineSettings] = None,
        client: Optional[httpx.AsyncClient] = None,
        jitter_max: float = JITTER_MAX,
    ):
        self.api_key = api_key if api_key is not None else FAL_KEY
        self.settings = settings or PipelineSettings()
        self._client = client
        self.jitter_max = jitter_max

    @property
    def model(self) -> str:
        return self.settings.video_model

    def _http(self):
        if self._client is not None:
            return nullcontext(self._client)
        return httpx.AsyncClient(timeout=60)

    def _delay(self, attempt: int, rate_limited: bool, retry_after: Optional[str]) -> float:
        if retry_after and retry_after.isdigit():
            delay = float(retry_after)
        else:
            delay = min(
                self.settings.video_api_base_delay * (2 ** attempt),
                self.settings.video_api_max_delay,
            ) + random.uniform(0, self.jitter_max)
        if rate_limited:
            delay = max(delay, self.settings.rate_limit_min_delay)
        return delay

    async def _request_with_backoff(self, method: str, url: str, **kwargs) -> httpx.Response:
        """
        Make an HTTP request with exponential backoff on retryable errors (429, 5xx).

        Raises:
            VideoApiError: VIDEO_RATE_LIMIT when still rate limited after the
            last attempt, VIDEO_API_ERROR for every other failure.
        """
        if not self.api_key:
            raise VideoApiError("FAL_KEY not set", "VIDEO_API_ERROR")

        headers = kwargs.pop("headers", {})
        headers.setdefault("Authorization", f"Key {self.api_key}")
        max_retries = self.settings.video_api_max_retries

        async with self._http() as client:
            for attempt in range(max_retries + 1):
                try:
                    response = await client.request(method, url, headers=headers, **kwargs)
                except httpx.TransportError as e:
                    if attempt == max_retries:
                        raise VideoApiError(f"Video API request failed: {e}", "VIDEO_API_ERROR", e)
                    delay = self._delay(attempt, False, None)
                    logger.warning(
                        f"Video API request error on attempt {attempt + 1}/{max_retries + 1}: {e} "
                        f"— retrying in {delay:.1f}s"
                    )
                    await asyncio.sleep(delay)
                    continue

                if response.status_code not in RETRYABLE_STATUS_CODES:
                    if response.is_error:
                        raise VideoApiError(
                            f"Video API {response.status_code}: {response.text[:300]}",
                            "VIDEO_API_ERROR",
                        )
                    return response

                rate_limited = response.status_code == 429
                if attempt == max_retries:
                    raise VideoApiError(
                        f"Video API {response.status_code} after {max_retries + 1} attempts",
                        "VIDEO_RATE_LIMIT" if rate_limited else "VIDEO_API_ERROR",
                    )

                delay = self._delay(attempt, rate_limited, response.headers.get("Retry-After"))
                logger.warning(
                    f"Video API {response.status_code} on attempt {attempt + 1}/{max_retries + 1} "
                    f"— retrying in {delay:.1f}s (url={url})"
                )
                await asyncio.sleep(delay)

        raise VideoApiError(f"Request to {url} failed after {max_retries + 1} attempts", "VIDEO_API_ERROR")

    async def submit(
        self,
        prompt: str,
        image_urls: list[str],
        duration: str = "5",
        aspect_ratio: str = "9:16",
    ) -> dict:
        """
        Queue a generation request and return immediately.

        Returns:
            {"request_id": str, "status_url": str | None, "response_url": str | None}
        """
        payload = {
            "prompt": prompt,
            "input_image_urls": image_urls,
            "duration": duration,
            "aspect_ratio": aspect_ratio,
        }
        logger.info(f"Video API submit: model={self.model}, images={len(image_urls)}, duration={duration}s")

        response = await self._request_with_backoff("POST", f"{QUEUE_BASE_URL}/{self.model}", json=payload)
        data = _json_object(response)
        request_id = data.get("request_id")
        if not request_id:
            raise VideoApiError("Video API submit response has no request_id", "VIDEO_API_CONTRACT", data)

        return {
            "request_id": request_id,
            "status_url": data.get("status_url"),
            "response_url": data.get("response_url"),
        }

    async def get_status(self, request_id: str, status_url: Optional[str] = None) -> JobStatusReport:
        url = status_url or f"{QUEUE_BASE_URL}/{_app_id(self.model)}/requests/{request_id}/status"
        response = await self._request_with_backoff("GET", url)
        data = _json_object(response)

        raw_status = str(data.get("status", "")).upper()
        error = data.get("error")
        if error or raw_status in _FAILED_STATES:
            return JobStatusReport(
                state=JobState.FAILED,
                raw_status=raw_status,
                error=str(error or f"Video generation {raw_status.lower()}"),
            )
        if raw_status in _COMPLETED_STATES:
            return JobStatusReport(state=JobState.COMPLETED, raw_status=raw_status)
        return JobStatusReport(state=JobState.PENDING, raw_status=raw_status)

    async def get_result(self, request_id: str, response_url: Optional[str] = None) -> str:
        url = response_url or f"{QUEUE_BASE_URL}/{_app_id(self.model)}/requests/{request_id}"
        response = await self._request_with_backoff("GET", url)
        return decode_video_result(_json_object(response))
