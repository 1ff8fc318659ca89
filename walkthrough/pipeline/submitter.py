"""
Room Video Job Submitter.

Builds the generation prompt for one room, creates its Video record and
queues a non-blocking job on the video API. A failure here is recorded
against the room's record and raised to the caller; sibling rooms are
unaffected.
"""

import time
import logging
from typing import Optional

from walkthrough.config import PipelineSettings
from .errors import PipelineError, VideoValidationError
from .models import JobHandle, RoomData, RoomImage, RoomVideoRequest

logger = logging.getLogger(__name__)

CAMERA_INSTRUCTION = (
    "Smooth camera pan through {room}. Camera should move very slowly through the space."
)
LAYOUT_INSTRUCTION = (
    " Pay special attention to the dimensions and layout of the space and stick "
    "exactly to which features are in the input images."
)


def select_best_images(images: list[RoomImage], max_images: int = 4) -> list[RoomImage]:
    """Highest-confidence images first, at most `max_images`."""
    usable = [img for img in images if img.url]
    if len(usable) <= max_images:
        return usable
    return sorted(usable, key=lambda img: img.confidence, reverse=True)[:max_images]


def build_room_prompt(room: RoomData, ai_directions: str = "", max_chars: int = 2500) -> str:
    """
    Camera instruction + scene descriptions (or a layout reminder when there
    are none) + user directions, truncated to `max_chars`.
    """
    prompt = CAMERA_INSTRUCTION.format(room=room.type.replace("-", " ").lower())

    descriptions = [img.scene_description.strip() for img in room.images
                    if img.scene_description and img.scene_description.strip()]
    if descriptions:
        prompt += " " + " ".join(descriptions)
    else:
        prompt += LAYOUT_INSTRUCTION

    directions = (ai_directions or "").strip()
    if directions:
        prompt += " " + directions

    if len(prompt) > max_chars:
        prompt = prompt[:max_chars - 3] + "..."
    return prompt


class RoomVideoSubmitter:
    """
    Usage:
        submitter = RoomVideoSubmitter(video_api, repository)
        handle = await submitter.submit_room(project_id, request)
    """

    def __init__(self, video_api, repository, settings: Optional[PipelineSettings] = None):
        self.video_api = video_api
        self.repository = repository
        self.settings = settings or PipelineSettings()

    async def submit_room(self, project_id: str, request: RoomVideoRequest) -> JobHandle:
        room = request.room
        record = await self.repository.create_room_video(
            project_id, room.id, room.name,
            {
                "duration": request.duration,
                "aspect_ratio": request.aspect_ratio,
                "ai_directions": request.ai_directions,
                "model": self.settings.video_model,
            },
        )
        await self.repository.mark_video_processing(record.id)

        try:
            images = select_best_images(room.images, self.settings.max_images_per_room)
            if not images:
                raise VideoValidationError(f"Room '{room.name}' has no usable images")

            prompt = build_room_prompt(
                room.model_copy(update={"images": images}),
                request.ai_directions,
                self.settings.prompt_max_chars,
            )
            submitted = await self.video_api.submit(
                prompt,
                [img.url for img in images],
                duration=request.duration,
                aspect_ratio=request.aspect_ratio,
            )
        except PipelineError as e:
            logger.error(f"Room {room.id} ({room.name}): submission failed [{e.code}]: {e.message}")
            await self.repository.mark_video_failed(record.id, e.message)
            raise

        logger.info(f"Room {room.id} ({room.name}): submitted request {submitted['request_id']}")
        return JobHandle(
            request_id=submitted["request_id"],
            room=room,
            video_record_id=record.id,
            submitted_at=time.time(),
            duration=float(request.duration),
            status_url=submitted.get("status_url"),
            response_url=submitted.get("response_url"),
        )
