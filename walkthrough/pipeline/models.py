"""
Pydantic models and enums for the media generation pipeline.
"""

from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


# ── Room Categories ──────────────────────────────────────────────────────────

class RoomCategory(str, Enum):
    EXTERIOR_FRONT = "exterior-front"
    EXTERIOR_BACKYARD = "exterior-backyard"
    LIVING_ROOM = "living-room"
    KITCHEN = "kitchen"
    DINING_ROOM = "dining-room"
    BEDROOM = "bedroom"
    BATHROOM = "bathroom"
    GARAGE = "garage"
    OFFICE = "office"
    LAUNDRY_ROOM = "laundry-room"
    BASEMENT = "basement"
    OTHER = "other"


ROOM_CATEGORY_VALUES = [c.value for c in RoomCategory]


class RoomClassification(BaseModel):
    category: RoomCategory
    confidence: float
    reasoning: str = ""
    features: list[str] = Field(default_factory=list)


# ── Images ───────────────────────────────────────────────────────────────────

class ImageStatus(str, Enum):
    PENDING = "pending"
    UPLOADING = "uploading"
    UPLOADED = "uploaded"
    ANALYZING = "analyzing"
    ANALYZED = "analyzed"
    ERROR = "error"


class ImageRecord(BaseModel):
    id: str
    filename: str = ""
    source_path: Optional[str] = None  # local file awaiting upload
    content_type: str = "image/jpeg"
    upload_url: Optional[str] = None
    classification: Optional[RoomClassification] = None
    status: ImageStatus = ImageStatus.PENDING
    error: Optional[str] = None
    order: int = 0
    scene_description: Optional[str] = None


class ProcessingPhase(str, Enum):
    UPLOADING = "uploading"
    ANALYZING = "analyzing"
    CATEGORIZING = "categorizing"
    COMPLETE = "complete"
    ERROR = "error"


class ProcessingProgress(BaseModel):
    phase: ProcessingPhase
    completed: int
    total: int
    overall_progress: float
    current_image: Optional[ImageRecord] = None


class ProcessingStats(BaseModel):
    total: int = 0
    uploaded: int = 0
    analyzed: int = 0
    failed: int = 0
    success_rate: float = 0.0
    avg_confidence: float = 0.0
    total_duration_ms: float = 0.0


class RoomGroup(BaseModel):
    """Derived view: images sharing one category. Never persisted."""
    category: str
    display_label: str
    base_label: str
    room_number: Optional[int] = None
    color: str
    avg_confidence: float = 0.0
    images: list[ImageRecord] = Field(default_factory=list)


class ProcessingResult(BaseModel):
    images: list[ImageRecord]
    stats: ProcessingStats
    categorized: dict[str, list[ImageRecord]]
    groups: list[RoomGroup] = Field(default_factory=list)


class ClassificationOutcome(BaseModel):
    """Per-URL result of a batch classification run."""
    image_url: str
    success: bool
    classification: Optional[RoomClassification] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    duration_ms: float = 0.0


# ── Video Records ────────────────────────────────────────────────────────────

class VideoStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_VIDEO_STATUSES = {VideoStatus.COMPLETED, VideoStatus.FAILED}


class VideoRecord(BaseModel):
    """room_id None marks the final combined video for the project."""
    id: str
    project_id: str
    room_id: Optional[str] = None
    room_name: Optional[str] = None
    video_url: str = ""
    duration: float = 0
    status: VideoStatus = VideoStatus.PENDING
    error_message: Optional[str] = None
    thumbnail_url: Optional[str] = None
    generation_settings: Optional[dict] = None
    created_at: Optional[str] = None


# ── Room Video Jobs ──────────────────────────────────────────────────────────

AspectRatio = Literal["16:9", "9:16", "1:1"]


class RoomImage(BaseModel):
    url: str
    confidence: float = 0.0
    scene_description: Optional[str] = None


class RoomData(BaseModel):
    id: str
    name: str
    type: str
    images: list[RoomImage] = Field(default_factory=list)


class RoomVideoRequest(BaseModel):
    room: RoomData
    duration: Literal["5", "10"] = "5"
    aspect_ratio: AspectRatio = "9:16"
    ai_directions: str = ""


class JobState(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class JobStatusReport(BaseModel):
    state: JobState
    raw_status: str = ""
    error: Optional[str] = None


class JobHandle(BaseModel):
    """In-memory only; lives for the duration of one generation run."""
    request_id: str
    room: RoomData
    video_record_id: str
    submitted_at: float
    duration: float = 5.0
    status_url: Optional[str] = None
    response_url: Optional[str] = None
    resolved: bool = False


class RoomVideoResult(BaseModel):
    room_id: str
    room_name: str
    video_record_id: Optional[str] = None
    video_url: str = ""
    duration: float = 0
    status: Literal["completed", "failed"]
    error: Optional[str] = None
    error_code: Optional[str] = None


# ── Composition ──────────────────────────────────────────────────────────────

class LogoPosition(str, Enum):
    TOP_LEFT = "top-left"
    TOP_RIGHT = "top-right"
    BOTTOM_LEFT = "bottom-left"
    BOTTOM_RIGHT = "bottom-right"


class ClipSpec(BaseModel):
    model_config = ConfigDict(frozen=True)

    url: str
    room_name: str


class LogoOverlay(BaseModel):
    model_config = ConfigDict(frozen=True)

    data: bytes
    position: LogoPosition = LogoPosition.BOTTOM_RIGHT


class SubtitleSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    enabled: bool = True
    text: str = ""
    font: str = "Arial"


class CompositionSettings(BaseModel):
    """Built once per run from user settings; immutable during composition."""
    model_config = ConfigDict(frozen=True)

    clips: tuple[ClipSpec, ...]
    logo: Optional[LogoOverlay] = None
    subtitles: Optional[SubtitleSettings] = None
    transitions: bool = True
    aspect_ratio: AspectRatio = "9:16"


class SubtitleCue(BaseModel):
    start: float
    end: float
    text: str


class ComposedVideo(BaseModel):
    video_url: str
    thumbnail_url: str
    duration: float
    file_size: int


# ── Generation Run ───────────────────────────────────────────────────────────

class GenerationStatus(str, Enum):
    PENDING = "pending"
    PROCESSING_ROOMS = "processing_rooms"
    COMPOSING_VIDEO = "composing_video"
    COMPLETED = "completed"
    FAILED = "failed"


class ProgressStep(BaseModel):
    id: str
    type: Literal["room_video", "composition"]
    label: str
    status: Literal["waiting", "in-progress", "completed", "failed"]
    error: Optional[str] = None


class GenerationProgress(BaseModel):
    status: GenerationStatus
    current_step: str = ""
    total_steps: int = 0
    completed_steps: int = 0
    overall_progress: float = 0.0
    estimated_time_remaining: int = 0
    steps: list[ProgressStep] = Field(default_factory=list)
    error: Optional[str] = None


class GenerationResult(BaseModel):
    project_id: str
    success: bool
    final_video_url: Optional[str] = None
    thumbnail_url: Optional[str] = None
    duration: Optional[float] = None
    failed_rooms: list[str] = Field(default_factory=list)
    error: Optional[str] = None
    error_code: Optional[str] = None


# ── API Request Models ───────────────────────────────────────────────────────

class RoomOrderEntry(BaseModel):
    id: str = Field(..., description="Room key; matches the image category column")
    name: str
    image_count: int = 0


class VideoSettings(BaseModel):
    """User configuration for one generation run."""
    orientation: Literal["landscape", "vertical", "square"] = "vertical"
    room_order: list[RoomOrderEntry] = Field(default_factory=list)
    logo_url: Optional[str] = None
    logo_position: LogoPosition = LogoPosition.BOTTOM_RIGHT
    script_text: str = ""
    enable_subtitles: bool = False
    subtitle_font: str = "Arial"
    ai_directions: str = ""
    duration: Literal["5", "10"] = "5"
    transitions: bool = True

    @property
    def aspect_ratio(self) -> str:
        return {"landscape": "16:9", "square": "1:1"}.get(self.orientation, "9:16")


class ClassifyRequest(BaseModel):
    image_urls: list[str] = Field(..., min_length=1)
    concurrency: Optional[int] = None


class GenerationStartRequest(BaseModel):
    project_id: str
    user_id: str
    video_settings: VideoSettings


class GenerationRetryRequest(BaseModel):
    project_id: str
    user_id: str
    room_ids: list[str] = Field(..., min_length=1)
    video_settings: VideoSettings


# ── Subscription ─────────────────────────────────────────────────────────────

class PlanFeatures(BaseModel):
    premium_templates: bool = False
    max_projects: int = 5
    max_videos_per_month: int = 10


class SubscriptionStatus(BaseModel):
    plan: Literal["free", "premium"] = "free"
    is_subscribed: bool = False
    features: PlanFeatures = Field(default_factory=PlanFeatures)
