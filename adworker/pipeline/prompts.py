"""
Provider request text built from the upstream creative payloads.

`video_prompts` and `segment_plan` are produced by an upstream step and are
treated as opaque dicts; this module only lays their fields out as text.
"""

from typing import Optional

from ..errors import WorkflowPreconditionError
from .models import AdType, Project

LANGUAGE_NAMES = {
    "en": "English",
    "es": "Spanish",
    "fr": "French",
    "de": "German",
    "it": "Italian",
    "pt": "Portuguese",
    "nl": "Dutch",
    "ja": "Japanese",
    "ko": "Korean",
    "zh": "Chinese",
    "ar": "Arabic",
    "hi": "Hindi",
}

# (payload key, label) in the order they appear in the video prompt
VIDEO_PROMPT_FIELDS = (
    ("description", None),
    ("setting", "Setting"),
    ("camera_type", "Camera"),
    ("camera_movement", "Camera Movement"),
    ("action", "Action"),
    ("lighting", "Lighting"),
    ("dialogue", "Dialogue"),
    ("music", "Music"),
    ("ending", "Ending"),
    ("other_details", "Other details"),
)

DEFAULT_COVER_PROMPT = "Professional product advertisement photo, clean composition, studio lighting"
DEFAULT_CHARACTER_PROMPT = "A presenter holding the product, natural pose, advertisement style"


def language_name(code: Optional[str]) -> str:
    return LANGUAGE_NAMES.get((code or "en").lower(), code or "English")


def _language_directive(language: Optional[str]) -> str:
    name = language_name(language)
    if name == "English":
        return ""
    return f"Language: {name}. All spoken dialogue must be in {name}.\n\n"


def _format_fields(payload: dict) -> str:
    lines = []
    for key, label in VIDEO_PROMPT_FIELDS:
        value = payload.get(key)
        if not value:
            continue
        lines.append(str(value) if label is None else f"{label}: {value}")
    return "\n\n".join(lines)


def require_video_prompts(project: Project) -> dict:
    if not isinstance(project.video_prompts, dict) or not project.video_prompts:
        raise WorkflowPreconditionError("No creative prompts available for video generation")
    return project.video_prompts


def cover_prompt(project: Project) -> str:
    prompts = project.video_prompts or {}
    if project.ad_type is AdType.CHARACTER:
        return prompts.get("character_image_prompt") or prompts.get("image_prompt") or DEFAULT_CHARACTER_PROMPT
    return prompts.get("image_prompt") or prompts.get("description") or DEFAULT_COVER_PROMPT


def video_prompt(project: Project) -> str:
    """Prompt for a single-clip video, or the custom script spoken verbatim."""
    directive = _language_directive(project.language)
    if project.use_custom_script:
        script = (project.custom_script or "").strip()
        if not script:
            raise WorkflowPreconditionError("Custom script is empty")
        return f"{directive}Dialogue (speak exactly as written): {script}"

    text = _format_fields(require_video_prompts(project))
    if not text:
        raise WorkflowPreconditionError("Creative prompts are missing a scene description")
    return f"{directive}{text}"


def _generic_segment(base: dict, index: int, count: int) -> dict:
    description = base.get("description") or "Product advertisement"
    return {
        "description": description,
        "action": f"Shot {index + 1} of {count}, continuing naturally from the previous shot",
        "first_frame_description": f"{description}, shot {index + 1} of {count}",
        "closing_frame_description": f"{description}, final shot",
        "dialogue": base.get("dialogue") if index == 0 else None,
    }


def segment_prompts(project: Project, count: int) -> list[dict]:
    """
    One sub-prompt per segment: the multi-segment plan when there is one,
    padded with generic shots when the plan is absent or shorter than `count`.
    """
    plan = (project.segment_plan or {}).get("segments") or (project.video_prompts or {}).get("segments") or []
    prompts = [dict(p) for p in plan if isinstance(p, dict)][:count]
    base = project.video_prompts or {}
    while len(prompts) < count:
        prompts.append(_generic_segment(base, len(prompts), count))
    return prompts


def keyframe_prompt(segment_prompt: Optional[dict], closing: bool = False) -> str:
    prompt = segment_prompt or {}
    key = "closing_frame_description" if closing else "first_frame_description"
    return prompt.get(key) or prompt.get("description") or DEFAULT_COVER_PROMPT


def segment_video_prompt(project: Project, segment_prompt: Optional[dict]) -> str:
    text = _format_fields(segment_prompt or {})
    if not text:
        raise WorkflowPreconditionError("Segment prompt is missing a scene description")
    return f"{_language_directive(project.language)}{text}"
