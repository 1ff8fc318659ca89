"""
Generation progress reporting.

One step per room plus a final composition step. The same object shape is
produced from live in-memory run state and, after a restart, rebuilt from
the persisted Video records.
"""

from dataclasses import dataclass, field
from typing import Optional

from walkthrough.config import PipelineSettings
from .models import (
    GenerationProgress,
    GenerationStatus,
    ProgressStep,
    VideoRecord,
    VideoStatus,
)

COMPOSITION_STEP_ID = "composition"
COMPOSITION_LABEL = "Composing final video"

TERMINAL_STEP_STATES = {"completed", "failed"}

_RECORD_TO_STEP = {
    VideoStatus.PENDING: "waiting",
    VideoStatus.PROCESSING: "in-progress",
    VideoStatus.COMPLETED: "completed",
    VideoStatus.FAILED: "failed",
}


def room_step_label(room_name: str) -> str:
    return f"Generating {room_name}"


def build_progress(
    status: GenerationStatus,
    steps: list[ProgressStep],
    settings: Optional[PipelineSettings] = None,
    error: Optional[str] = None,
) -> GenerationProgress:
    """
    Aggregate a step list into the progress object.

    A failed room counts as finished work: it will not be retried within the
    run, so it no longer contributes to the remaining estimate.
    """
    settings = settings or PipelineSettings()
    total = len(steps)
    finished = sum(1 for s in steps if s.status in TERMINAL_STEP_STATES)

    if status == GenerationStatus.COMPLETED:
        overall = 100.0
    else:
        overall = round(finished / total * 100, 1) if total else 0.0

    if status in (GenerationStatus.COMPLETED, GenerationStatus.FAILED):
        eta = 0
    else:
        rooms_left = sum(
            1 for s in steps
            if s.type == "room_video" and s.status not in TERMINAL_STEP_STATES
        )
        composition_left = any(
            s.type == "composition" and s.status not in TERMINAL_STEP_STATES for s in steps
        )
        eta = rooms_left * settings.eta_seconds_per_room
        if composition_left:
            eta += settings.eta_composition_seconds

    active = next((s for s in steps if s.status == "in-progress"), None)
    if active is not None:
        current = active.label
    elif status == GenerationStatus.COMPLETED:
        current = "Complete"
    elif status == GenerationStatus.FAILED:
        current = "Failed"
    else:
        current = next((s.label for s in steps if s.status == "waiting"), "")

    return GenerationProgress(
        status=status,
        current_step=current,
        total_steps=total,
        completed_steps=finished,
        overall_progress=overall,
        estimated_time_remaining=eta,
        steps=steps,
        error=error,
    )


@dataclass
class RunProgress:
    """Mutable live state of one generation run."""
    rooms: list[tuple[str, str]]                       # (room_id, room_name), presentation order
    status: GenerationStatus = GenerationStatus.PENDING
    room_states: dict[str, str] = field(default_factory=dict)
    room_errors: dict[str, str] = field(default_factory=dict)
    composition_state: str = "waiting"
    error: Optional[str] = None

    def set_room(self, room_id: str, state: str, error: Optional[str] = None) -> None:
        # terminal room states are final
        if self.room_states.get(room_id) in TERMINAL_STEP_STATES:
            return
        self.room_states[room_id] = state
        if error:
            self.room_errors[room_id] = error

    def snapshot(self, settings: Optional[PipelineSettings] = None) -> GenerationProgress:
        steps = [
            ProgressStep(
                id=room_id,
                type="room_video",
                label=room_step_label(name),
                status=self.room_states.get(room_id, "waiting"),
                error=self.room_errors.get(room_id),
            )
            for room_id, name in self.rooms
        ]
        steps.append(ProgressStep(
            id=COMPOSITION_STEP_ID,
            type="composition",
            label=COMPOSITION_LABEL,
            status=self.composition_state,
        ))
        return build_progress(self.status, steps, settings, self.error)


def progress_from_records(
    videos: list[VideoRecord],
    project_status: Optional[str] = None,
    settings: Optional[PipelineSettings] = None,
) -> GenerationProgress:
    """Rebuild progress for a project from its persisted Video records."""
    room_videos = [v for v in videos if v.room_id is not None]
    final = next((v for v in videos if v.room_id is None), None)

    steps = [
        ProgressStep(
            id=v.room_id,
            type="room_video",
            label=room_step_label(v.room_name or v.room_id),
            status=_RECORD_TO_STEP[VideoStatus(v.status)],
            error=v.error_message,
        )
        for v in room_videos
    ]
    composition_state = _RECORD_TO_STEP[VideoStatus(final.status)] if final else "waiting"
    steps.append(ProgressStep(
        id=COMPOSITION_STEP_ID,
        type="composition",
        label=COMPOSITION_LABEL,
        status=composition_state,
        error=final.error_message if final else None,
    ))

    room_states = [s.status for s in steps if s.type == "room_video"]
    error = None
    if composition_state == "completed":
        status = GenerationStatus.COMPLETED
    elif composition_state == "failed" or project_status == GenerationStatus.FAILED.value:
        status = GenerationStatus.FAILED
        error = final.error_message if final and final.error_message else "Video generation failed"
    elif composition_state == "in-progress":
        status = GenerationStatus.COMPOSING_VIDEO
    elif not room_states:
        status = GenerationStatus.PENDING
    elif all(s == "failed" for s in room_states):
        status = GenerationStatus.FAILED
        error = "All room videos failed to generate"
    elif all(s in TERMINAL_STEP_STATES for s in room_states):
        status = GenerationStatus.COMPOSING_VIDEO
    else:
        status = GenerationStatus.PROCESSING_ROOMS

    return build_progress(status, steps, settings, error)
