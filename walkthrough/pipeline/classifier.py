"""
Vision Classifier — Gemini Flash (vision) via REST.

Labels one property photograph with a room category, a confidence score,
short reasoning and a feature list. Output is validated strictly: an
unknown category or an out-of-range confidence is an INVALID_RESPONSE
failure, never coerced.
"""

import os
import re
import json
import time
import base64
import asyncio
import logging
from contextlib import nullcontext
from typing import Optional

import httpx

from walkthrough.config import PipelineSettings
from .batch import run_batch, BatchItemResult
from .errors import ClassificationError
from .models import (
    ClassificationOutcome,
    RoomClassification,
    ROOM_CATEGORY_VALUES,
)

logger = logging.getLogger(__name__)

# ── Config ───────────────────────────────────────────────────────────────────

GEMINI_API_KEY = os.getenv("GEMINI_API_KEY") or os.getenv("GOOGLE_API_KEY", "")
API_BASE = "https://generativelanguage.googleapis.com/v1beta"

CLASSIFICATION_PROMPT = """You are an expert real estate image classifier. Analyze this property image and classify the room type.

IMPORTANT CLASSIFICATION RULES:
1. Choose the MOST SPECIFIC category that fits the image
2. Only use "other" if the image truly doesn't fit any category
3. Consider the primary purpose of the space shown
4. Look for distinctive features (appliances, furniture, fixtures)

AVAILABLE CATEGORIES:
- exterior-front: Front view of house/building exterior, curb appeal shots
- exterior-backyard: Backyard, patio, deck, pool, or rear exterior views
- living-room: Living room, family room, den, or great room
- kitchen: Kitchen or kitchenette with cooking appliances
- dining-room: Formal or casual dining room, breakfast nook
- bedroom: Any bedroom (master, guest, children's room)
- bathroom: Bathroom, powder room, or ensuite
- garage: Garage, carport, or parking area
- office: Home office, study, library, or workspace
- laundry-room: Laundry room, utility room, or mudroom
- basement: Basement, cellar, or below-grade space
- other: Hallways, closets, storage, or unclear spaces

Respond with ONLY a JSON object, no markdown, no explanation:
{
  "category": "<one of the categories above>",
  "confidence": <number between 0 and 1>,
  "reasoning": "<brief 1-2 sentence explanation>",
  "features": ["<feature1>", "<feature2>", "<feature3>"]
}"""

_FENCED_JSON = re.compile(r"```(?:json)?\s*(\{[\s\S]*\})\s*```")


def _guess_mime(url: str) -> str:
    lower = url.lower()
    if ".png" in lower:
        return "image/png"
    if ".webp" in lower:
        return "image/webp"
    return "image/jpeg"


def parse_classification_response(content: str) -> RoomClassification:
    """
    Parse and validate the model's JSON answer.

    Raises:
        ClassificationError(INVALID_RESPONSE) on malformed JSON, an unknown
        category, or a confidence outside [0, 1].
    """
    text = content.strip()
    fenced = _FENCED_JSON.search(text)
    if fenced:
        text = fenced.group(1)

    try:
        parsed = json.loads(text)
    except json.JSONDecodeError as e:
        raise ClassificationError(
            "Failed to parse AI response as JSON", "INVALID_RESPONSE",
            {"content": content[:500], "error": str(e)},
        )

    if not isinstance(parsed, dict):
        raise ClassificationError("AI response is not a JSON object", "INVALID_RESPONSE", parsed)

    category = parsed.get("category")
    if category not in ROOM_CATEGORY_VALUES:
        raise ClassificationError(f"Invalid room category: {category}", "INVALID_RESPONSE", parsed)

    confidence = parsed.get("confidence")
    if (
        isinstance(confidence, bool)
        or not isinstance(confidence, (int, float))
        or not 0 <= confidence <= 1
    ):
        raise ClassificationError(f"Invalid confidence value: {confidence}", "INVALID_RESPONSE", parsed)

    features = parsed.get("features") or []
    if not isinstance(features, list):
        raise ClassificationError("features must be a list", "INVALID_RESPONSE", parsed)

    return RoomClassification(
        category=category,
        confidence=float(confidence),
        reasoning=str(parsed.get("reasoning") or ""),
        features=[str(f) for f in features],
    )


class VisionClassifier:
    """
    Usage:
        classifier = VisionClassifier()
        result = await classifier.classify("https://.../kitchen.jpg")
        outcomes = await classifier.classify_batch(urls, on_progress=cb)
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        settings: Optional[PipelineSettings] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_key = api_key if api_key is not None else GEMINI_API_KEY
        self.settings = settings or PipelineSettings()
        self._client = client

    def is_configured(self) -> bool:
        return bool(self.api_key)

    def _http(self):
        if self._client is not None:
            return nullcontext(self._client)
        return httpx.AsyncClient(timeout=self.settings.classify_timeout, follow_redirects=True)

    async def classify(
        self,
        image_url: str,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
    ) -> RoomClassification:
        """
        Classify a single publicly reachable image.

        Transient failures are retried with capped exponential backoff.
        A rate-limit response is raised immediately so the caller can
        apply its own cooldown.
        """
        timeout = self.settings.classify_timeout if timeout is None else timeout
        max_retries = self.settings.classify_max_retries if max_retries is None else max_retries
        last_error: Optional[ClassificationError] = None

        for attempt in range(max_retries + 1):
            try:
                return await asyncio.wait_for(self._classify_once(image_url), timeout)
            except asyncio.TimeoutError:
                last_error = ClassificationError(
                    f"AI vision request timed out after {timeout}s", "TIMEOUT"
                )
            except ClassificationError as e:
                if e.code == "RATE_LIMIT":
                    raise
                last_error = e
            except httpx.HTTPError as e:
                last_error = ClassificationError(f"Vision API request failed: {e}", "API_ERROR", e)

            if attempt == max_retries:
                break

            delay = min(self.settings.classify_base_delay * (2 ** attempt), self.settings.classify_max_delay)
            logger.warning(
                f"Classification attempt {attempt + 1}/{max_retries + 1} failed "
                f"({last_error.code}: {last_error.message}) — retrying in {delay:.1f}s"
            )
            await asyncio.sleep(delay)

        raise ClassificationError(
            f"Failed to classify room after {max_retries + 1} attempts: {last_error.message}",
            last_error.code,
            last_error.details,
        )

    async def _classify_once(self, image_url: str) -> RoomClassification:
        if not self.api_key:
            raise ClassificationError("GEMINI_API_KEY not set", "API_ERROR")

        async with self._http() as client:
            image_resp = await client.get(image_url)
            image_resp.raise_for_status()
            image_b64 = base64.b64encode(image_resp.content).decode("utf-8")

            request_body = {
                "contents": [{
                    "parts": [
                        {"inlineData": {"mimeType": _guess_mime(image_url), "data": image_b64}},
                        {"text": CLASSIFICATION_PROMPT},
                    ]
                }],
                "generationConfig": {
                    "temperature": self.settings.classify_temperature,
                    "maxOutputTokens": self.settings.classify_max_tokens,
                },
            }

            response = await client.post(
                f"{API_BASE}/models/{self.settings.vision_model}:generateContent",
                params={"key": self.api_key},
                json=request_body,
            )

        if response.status_code == 429 or "RESOURCE_EXHAUSTED" in response.text[:500]:
            raise ClassificationError(
                "Vision API rate limit exceeded. Please try again later.", "RATE_LIMIT",
                response.text[:500],
            )
        if response.status_code != 200:
            raise ClassificationError(
                f"Vision API error {response.status_code}: {response.text[:300]}", "API_ERROR"
            )

        candidates = response.json().get("candidates") or []
        if not candidates:
            raise ClassificationError("No candidates in API response", "INVALID_RESPONSE")

        parts = candidates[0].get("content", {}).get("parts") or [{}]
        text = parts[0].get("text", "")
        if not text:
            raise ClassificationError("No content in API response", "INVALID_RESPONSE")

        return parse_classification_response(text)

    async def classify_batch(
        self,
        image_urls: list[str],
        concurrency: Optional[int] = None,
        on_progress=None,
    ) -> list[ClassificationOutcome]:
        """
        Classify many images with bounded concurrency.

        Individual failures become unsuccessful outcomes; the batch itself
        only fails on empty input.
        """
        if not image_urls:
            raise ClassificationError("image_urls must be a non-empty list", "API_ERROR")

        async def _process(url: str) -> ClassificationOutcome:
            started = time.monotonic()
            try:
                classification = await self.classify(url)
                return ClassificationOutcome(
                    image_url=url, success=True, classification=classification,
                    duration_ms=(time.monotonic() - started) * 1000,
                )
            except ClassificationError as e:
                return ClassificationOutcome(
                    image_url=url, success=False, error=e.message, error_code=e.code,
                    duration_ms=(time.monotonic() - started) * 1000,
                )

        def _progress(completed: int, total: int, item: BatchItemResult):
            if on_progress:
                on_progress(completed, total, _outcome_of(item))

        results = await run_batch(
            image_urls,
            _process,
            concurrency=concurrency or self.settings.classify_concurrency,
            on_progress=_progress,
        )
        return [_outcome_of(r) for r in results]


def _outcome_of(item: BatchItemResult) -> ClassificationOutcome:
    if item.ok:
        return item.value
    return ClassificationOutcome(
        image_url=item.item, success=False, error=str(item.error),
        error_code=getattr(item.error, "code", "API_ERROR"), duration_ms=item.duration_ms,
    )


def batch_statistics(outcomes: list[ClassificationOutcome]) -> dict:
    successful = [o for o in outcomes if o.success and o.classification]
    total_duration = sum(o.duration_ms for o in outcomes)

    category_count: dict[str, int] = {}
    for outcome in successful:
        key = outcome.classification.category.value
        category_count[key] = category_count.get(key, 0) + 1

    return {
        "total": len(outcomes),
        "successful": len(successful),
        "failed": len(outcomes) - len(successful),
        "success_rate": (len(successful) / len(outcomes) * 100) if outcomes else 0,
        "total_duration_ms": total_duration,
        "avg_duration_ms": total_duration / len(outcomes) if outcomes else 0,
        "avg_confidence": (
            sum(o.classification.confidence for o in successful) / len(successful)
            if successful else 0
        ),
        "category_count": category_count,
    }
