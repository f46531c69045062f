"""
Single-Stage Workflow (non-segmented projects).

  generating_cover → generating_video → completed
  photo-only:    generating_cover → completed
  custom script: generating_video → completed (original photo is the anchor)
"""

import logging

from .. import providers
from ..errors import WorkflowPreconditionError
from . import transitions
from .models import (
    AdType,
    ImageTaskRequest,
    Project,
    ProjectStatus,
    SingleStageStep,
    TaskKind,
    TaskState,
    VideoTaskRequest,
    single_stage_step,
)
from .planning import VIDEO_SUBMITTED_PROGRESS
from .prompts import cover_prompt, video_prompt

logger = logging.getLogger(__name__)


def cover_request(project: Project) -> ImageTaskRequest:
    if project.ad_type is AdType.CHARACTER:
        refs = project.reference_image_urls or ([project.original_image_url] if project.original_image_url else [])
        if not refs:
            raise WorkflowPreconditionError("Character ads need at least one reference image")
    else:
        if not project.original_image_url:
            raise WorkflowPreconditionError("A product image is required to generate the cover")
        refs = [project.original_image_url]
    return ImageTaskRequest(
        prompt=cover_prompt(project),
        image_urls=refs,
        model=project.image_model,
        image_size=project.image_size,
    )


def video_request(project: Project, anchor_url: str) -> VideoTaskRequest:
    if not anchor_url:
        raise WorkflowPreconditionError("No anchor image available for video generation")
    return VideoTaskRequest(
        prompt=video_prompt(project),
        model=project.video_model,
        image_urls=[anchor_url],
        aspect_ratio=project.video_aspect_ratio,
        duration=project.video_duration,
        quality=project.video_quality,
    )


def submit_cover(project: Project) -> str:
    return providers.submit_task(TaskKind.IMAGE, cover_request(project))


def submit_video(project: Project, anchor_url: str) -> str:
    return providers.submit_task(TaskKind.VIDEO, video_request(project, anchor_url))


# ═════════════════════════════════════════════════════════════════════════════
# Step handlers
# ═════════════════════════════════════════════════════════════════════════════

def _advance_cover(project: Project) -> ProjectStatus:
    if not project.cover_task_id:
        # Not submitted yet; the reconciler applies the stuck-submission rule
        return project.status

    result = providers.check_status(project.cover_task_id, TaskKind.IMAGE)
    if result.status is TaskState.GENERATING:
        return ProjectStatus.PROCESSING
    if result.status is TaskState.FAILED:
        return transitions.retry_or_fail(
            project, result, "cover_task_id", lambda: submit_cover(project), "Cover generation failed"
        )

    if project.photo_only:
        return transitions.complete(project, {
            "cover_image_url": result.result_url,
            "cover_task_id": None,
        })

    anchor_url = result.result_url
    restore = transitions.snapshot(project, "cover_task_id", "current_step", "retry_count", "error_message")
    if not transitions.claim(project, {
        "cover_image_url": anchor_url,
        "cover_task_id": None,
        "current_step": SingleStageStep.GENERATING_VIDEO,
        "retry_count": 0,
        "error_message": None,
        "progress_percentage": max(project.progress_percentage, VIDEO_SUBMITTED_PROGRESS),
    }):
        return project.status

    transitions.submit_project_task(
        project, "video_task_id", lambda: submit_video(project, anchor_url), restore
    )
    return ProjectStatus.PROCESSING


def _advance_video(project: Project) -> ProjectStatus:
    if not project.video_task_id:
        return project.status

    result = providers.check_status(project.video_task_id, TaskKind.VIDEO, project.video_model)
    if result.status is TaskState.GENERATING:
        return ProjectStatus.PROCESSING
    if result.status is TaskState.FAILED:
        return transitions.retry_or_fail(
            project,
            result,
            "video_task_id",
            lambda: submit_video(project, project.cover_image_url),
            "Video generation failed",
        )

    return transitions.complete(project, {
        "video_url": result.result_url,
        "video_task_id": None,
    })


def _settled(project: Project) -> ProjectStatus:
    return project.status


STEP_HANDLERS = {
    SingleStageStep.GENERATING_COVER: _advance_cover,
    SingleStageStep.GENERATING_VIDEO: _advance_video,
    SingleStageStep.COMPLETED: _settled,
    SingleStageStep.FAILED: _settled,
}


def advance(project: Project) -> ProjectStatus:
    """Move a non-segmented project forward by at most one step."""
    return STEP_HANDLERS[single_stage_step(project)](project)
