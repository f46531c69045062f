"""
Pydantic models and enums for the ad-video generation pipeline.

Step names are closed enums per workflow variant. The raw `current_step`
string persisted on a project is parsed into the right enum by
`single_stage_step()` / `segmented_step()` so each workflow can dispatch
exhaustively.
"""

import json
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ── Project Status ───────────────────────────────────────────────────────────

class ProjectStatus(str, Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class AdType(str, Enum):
    STANDARD = "standard"
    CHARACTER = "character"


# ── Workflow Steps ───────────────────────────────────────────────────────────

class SingleStageStep(str, Enum):
    GENERATING_COVER = "generating_cover"
    GENERATING_VIDEO = "generating_video"
    COMPLETED = "completed"
    FAILED = "failed"


class SegmentedStep(str, Enum):
    GENERATING_COVER = "generating_cover"  # character anchor image
    GENERATING_SEGMENT_FRAMES = "generating_segment_frames"
    GENERATING_SEGMENT_VIDEOS = "generating_segment_videos"
    MERGING_SEGMENTS = "merging_segments"
    COMPLETED = "completed"
    FAILED = "failed"


class SegmentStatus(str, Enum):
    PENDING_FIRST_FRAME = "pending_first_frame"
    GENERATING_FIRST_FRAME = "generating_first_frame"
    FIRST_FRAME_READY = "first_frame_ready"
    GENERATING_VIDEO = "generating_video"
    VIDEO_READY = "video_ready"
    FAILED = "failed"


# ── Provider Gateway ─────────────────────────────────────────────────────────

class TaskKind(str, Enum):
    IMAGE = "image"
    VIDEO = "video"
    MERGE = "merge"


class TaskState(str, Enum):
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    GENERATING = "GENERATING"


class TaskResult(BaseModel):
    """Normalized provider status."""
    status: TaskState
    result_url: Optional[str] = None
    error_message: Optional[str] = None
    is_retryable: bool = False


class ImageTaskRequest(BaseModel):
    prompt: str
    image_urls: list[str] = Field(default_factory=list)
    model: str = "nano_banana"
    image_size: str = "auto"


class VideoTaskRequest(BaseModel):
    prompt: str
    model: str = "veo3_fast"
    image_urls: list[str] = Field(default_factory=list)
    aspect_ratio: str = "16:9"
    duration: Optional[str] = None
    quality: Optional[str] = None
    first_and_last_frames: bool = False


class MergeTaskRequest(BaseModel):
    video_urls: list[str]
    aspect_ratio: str = "16:9"


class MergeStatus(BaseModel):
    status: str  # COMPLETED | FAILED | IN_PROGRESS | NETWORK_ERROR
    result_url: Optional[str] = None
    error: Optional[str] = None


# ── Persisted Records ────────────────────────────────────────────────────────

def _parse_json_payload(value: Any) -> Any:
    """Creative payloads are sometimes stored as JSON strings."""
    if isinstance(value, str):
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            return None
    return value


class Project(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    user_id: str
    ad_type: AdType = AdType.STANDARD
    status: ProjectStatus = ProjectStatus.PROCESSING
    current_step: str = SingleStageStep.GENERATING_COVER.value
    progress_percentage: int = 0

    is_segmented: bool = False
    segment_count: int = 1
    segment_duration_seconds: Optional[int] = None

    video_model: str = "veo3_fast"
    image_model: str = "nano_banana"
    video_aspect_ratio: str = "16:9"
    video_duration: Optional[str] = None
    video_quality: Optional[str] = None
    image_size: str = "auto"
    language: str = "en"

    original_image_url: Optional[str] = None
    reference_image_urls: list[str] = Field(default_factory=list)

    cover_task_id: Optional[str] = None
    video_task_id: Optional[str] = None
    fal_merge_task_id: Optional[str] = None
    cover_image_url: Optional[str] = None
    video_url: Optional[str] = None
    merged_video_url: Optional[str] = None

    retry_count: int = 0
    error_message: Optional[str] = None

    photo_only: bool = False
    use_custom_script: bool = False
    custom_script: Optional[str] = None
    video_prompts: Optional[dict] = None
    segment_plan: Optional[dict] = None
    segment_status: Optional[dict] = None
    credits_cost: int = 0

    created_at: Optional[datetime] = None
    last_processed_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("video_prompts", "segment_plan", "segment_status", mode="before")
    @classmethod
    def _decode_json(cls, value: Any) -> Any:
        return _parse_json_payload(value)

    @field_validator("reference_image_urls", mode="before")
    @classmethod
    def _default_refs(cls, value: Any) -> Any:
        return value or []


class Segment(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    project_id: str
    segment_index: int
    status: SegmentStatus = SegmentStatus.PENDING_FIRST_FRAME
    prompt: Optional[dict] = None

    first_frame_task_id: Optional[str] = None
    first_frame_url: Optional[str] = None
    closing_frame_task_id: Optional[str] = None
    closing_frame_url: Optional[str] = None
    video_task_id: Optional[str] = None
    video_url: Optional[str] = None

    retry_count: int = 0
    error_message: Optional[str] = None
    updated_at: Optional[datetime] = None  # row version for claims

    @field_validator("prompt", mode="before")
    @classmethod
    def _decode_json(cls, value: Any) -> Any:
        return _parse_json_payload(value)


def single_stage_step(project: Project) -> SingleStageStep:
    """Parse a non-segmented project's step. Unknown names raise ValueError."""
    return SingleStageStep(project.current_step)


def segmented_step(project: Project) -> SegmentedStep:
    """Parse a segmented project's step. Unknown names raise ValueError."""
    return SegmentedStep(project.current_step)


# ── API Request / Response Models ────────────────────────────────────────────

class StartProjectRequest(BaseModel):
    """Create a project and submit its first provider task(s)."""
    user_id: str
    image_url: Optional[str] = Field(None, description="Source product photo")
    reference_image_urls: list[str] = Field(
        default_factory=list,
        description="Character / product references for character ads",
    )
    ad_type: AdType = AdType.STANDARD
    video_model: str = "auto"
    image_model: str = "auto"
    video_aspect_ratio: str = "16:9"
    video_duration: Optional[str] = None
    video_quality: Optional[str] = None
    image_size: str = "auto"
    language: str = "en"
    photo_only: bool = False
    custom_script: Optional[str] = None
    video_prompts: Optional[dict] = None
    segment_plan: Optional[dict] = None

    @field_validator("video_prompts", "segment_plan", mode="before")
    @classmethod
    def _decode_json(cls, value: Any) -> Any:
        return _parse_json_payload(value)


class MonitorRequest(BaseModel):
    projectId: Optional[str] = None


class KieCallbackData(BaseModel):
    model_config = ConfigDict(extra="allow")

    taskId: Optional[str] = None


class KieCallback(BaseModel):
    """Kie.ai completion callback; only the task id is acted on."""
    model_config = ConfigDict(extra="allow")

    code: Optional[int] = None
    msg: Optional[str] = None
    data: Optional[KieCallbackData] = None


class SweepResult(BaseModel):
    processed: int = 0
    completed: int = 0
    failed: int = 0
    total_records: int = 0
