"""
Model capabilities, segment planning, credit costs and progress bands.
"""

import math
from typing import Optional

from .models import Segment, SegmentStatus

# ── Models ───────────────────────────────────────────────────────────────────

DEFAULT_VIDEO_MODEL = "veo3_fast"
DEFAULT_IMAGE_MODEL = "nano_banana"

VIDEO_MODELS = ("veo3_fast", "veo3", "sora2", "sora2_pro", "grok", "kling_2_6")
IMAGE_MODELS = ("nano_banana", "seedream", "nano_banana_pro")

# Seconds per clip, and the longest fan-out each model supports
SEGMENT_LENGTHS = {
    "veo3": 8,
    "veo3_fast": 8,
    "grok": 6,
    "sora2": 10,
    "sora2_pro": 10,
}
MAX_SEGMENTS = {
    "veo3": 8,
    "veo3_fast": 8,
    "grok": 10,
}
SEGMENTABLE_MODELS = frozenset({"veo3", "veo3_fast", "grok"})
DEFAULT_SEGMENT_LENGTH = 8
DEFAULT_MAX_SEGMENTS = 8

# ── Credits ──────────────────────────────────────────────────────────────────

FREE_GENERATION_MODELS = frozenset({"veo3_fast", "sora2", "grok"})
VEO3_CREDITS_PER_SEGMENT = 150
KLING_CREDITS_PER_BLOCK = 110
KLING_BLOCK_SECONDS = 5
SORA2_PRO_CREDITS = {
    "standard_10s": 75,
    "standard_15s": 135,
    "hd_10s": 165,
    "hd_15s": 315,
}

# ── Progress bands (percent) ─────────────────────────────────────────────────

COVER_SUBMITTED_PROGRESS = 30
VIDEO_SUBMITTED_PROGRESS = 85
FRAME_PROGRESS = (25, 70)
VIDEO_PROGRESS = (70, 95)
MERGE_PROGRESS = 95
COMPLETED_PROGRESS = 100


def _round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


def resolve_video_model(name: Optional[str]) -> str:
    if not name or name == "auto":
        return DEFAULT_VIDEO_MODEL
    if name not in VIDEO_MODELS:
        raise ValueError(f"Unsupported video model: {name}")
    return name


def resolve_image_model(name: Optional[str]) -> str:
    if not name or name == "auto":
        return DEFAULT_IMAGE_MODEL
    if name not in IMAGE_MODELS:
        raise ValueError(f"Unsupported image model: {name}")
    return name


def parse_duration(value) -> Optional[int]:
    """'24', '24s' or 24 → 24. Empty → None."""
    if value is None or value == "":
        return None
    try:
        return int(str(value).strip().rstrip("s"))
    except ValueError:
        raise ValueError(f"Invalid video duration: {value!r}") from None


def segment_length_for(model: str) -> int:
    return SEGMENT_LENGTHS.get(model, DEFAULT_SEGMENT_LENGTH)


def segment_count_for(model: str, duration: Optional[int]) -> int:
    """
    Number of clips needed to cover `duration` seconds with `model`.

    Kling always renders one clip; Sora rounds up to whole 10s clips; the
    VEO and Grok families round to the nearest clip and cap the fan-out.
    """
    if model == "kling_2_6" or not duration:
        return 1
    length = segment_length_for(model)
    if duration <= length:
        return 1
    if model in ("sora2", "sora2_pro"):
        return math.ceil(duration / length)
    count = max(1, _round_half_up(duration / length))
    return min(MAX_SEGMENTS.get(model, DEFAULT_MAX_SEGMENTS), count)


def requires_segmentation(model: str, duration: Optional[int]) -> bool:
    return model in SEGMENTABLE_MODELS and segment_count_for(model, duration) > 1


def generation_cost(model: str, duration: Optional[int] = None, quality: Optional[str] = None) -> int:
    """Credits reserved up front. Basic models are free at generation time."""
    if model in FREE_GENERATION_MODELS:
        return 0
    if model == "veo3":
        return VEO3_CREDITS_PER_SEGMENT * segment_count_for(model, duration)
    if model == "kling_2_6":
        blocks = max(1, math.ceil((duration or KLING_BLOCK_SECONDS) / KLING_BLOCK_SECONDS))
        return KLING_CREDITS_PER_BLOCK * blocks
    if model == "sora2_pro":
        tier = "hd" if quality == "high" else "standard"
        length = "15s" if duration and duration >= 15 else "10s"
        return SORA2_PRO_CREDITS[f"{tier}_{length}"]
    return 0


# ── Progress ─────────────────────────────────────────────────────────────────

def interpolate_progress(ready: int, total: int, band: tuple[int, int]) -> int:
    floor, ceiling = band
    if total <= 0:
        return floor
    fraction = min(ready, total) / total
    return floor + _round_half_up(fraction * (ceiling - floor))


def frames_ready(segment: Segment, shared_anchor: bool = False) -> bool:
    """
    A segment can go to video once its first frame exists and, outside
    shared-anchor mode, its closing frame too (stitched from the next segment,
    or generated for the last one).
    """
    if not segment.first_frame_url:
        return False
    return shared_anchor or bool(segment.closing_frame_url)


def build_segment_status(segments: list[Segment], merged_video_url: Optional[str] = None) -> dict:
    """Denormalized summary persisted on the project for cheap UI polling."""
    ordered = sorted(segments, key=lambda s: s.segment_index)
    return {
        "total": len(ordered),
        "framesReady": sum(1 for s in ordered if s.first_frame_url),
        "videosReady": sum(1 for s in ordered if s.video_url),
        "segments": [
            {
                "index": s.segment_index,
                "status": s.status.value if isinstance(s.status, SegmentStatus) else s.status,
                "firstFrameUrl": s.first_frame_url,
                "closingFrameUrl": s.closing_frame_url,
                "videoUrl": s.video_url,
                "errorMessage": s.error_message,
            }
            for s in ordered
        ],
        "mergedVideoUrl": merged_video_url,
    }
