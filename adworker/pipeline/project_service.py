"""
Project creation and read-side views.

Manages the start of a generation project:
  - Resolve models, duration and segmentation
  - Reserve credits for premium models (pay up front)
  - Insert the project (and, when segmented, every segment row at once)
  - Submit the first provider task(s)

Credit reservations are registered on a CompensationSaga and refunded if
setup fails before the work is durably handed over. After that point only
the reconciler advances the project.
"""

import logging
from typing import Optional
from uuid import uuid4

from .. import credits
from ..errors import StoreError, WorkflowPreconditionError
from . import segmented
from . import single_stage
from . import store
from . import transitions
from .models import (
    AdType,
    Project,
    ProjectStatus,
    SegmentedStep,
    SingleStageStep,
    StartProjectRequest,
)
from .planning import (
    COVER_SUBMITTED_PROGRESS,
    VIDEO_SUBMITTED_PROGRESS,
    build_segment_status,
    generation_cost,
    parse_duration,
    requires_segmentation,
    resolve_image_model,
    resolve_video_model,
    segment_count_for,
    segment_length_for,
)
from .saga import CompensationSaga

logger = logging.getLogger(__name__)


def _first_step(segmented_flow: bool, ad_type: AdType, custom_script: bool) -> str:
    if custom_script:
        return SingleStageStep.GENERATING_VIDEO.value
    if segmented_flow and ad_type is not AdType.CHARACTER:
        return SegmentedStep.GENERATING_SEGMENT_FRAMES.value
    return SingleStageStep.GENERATING_COVER.value


def _validate(request: StartProjectRequest, custom_script: bool) -> None:
    if request.photo_only and custom_script:
        raise WorkflowPreconditionError("A custom script needs a video; photo-only projects cannot use one")
    if request.ad_type is AdType.CHARACTER:
        if not request.reference_image_urls and not request.image_url:
            raise WorkflowPreconditionError("Character ads need at least one reference image")
    elif not request.image_url:
        raise WorkflowPreconditionError("A product image is required")


def _submit_first_tasks(project: Project) -> None:
    """First provider task for non-segmented projects and the character anchor."""
    if project.use_custom_script:
        video_task_id = single_stage.submit_video(project, project.original_image_url)
        transitions.advance(project, {
            "video_task_id": video_task_id,
            "cover_image_url": project.original_image_url,
            "progress_percentage": VIDEO_SUBMITTED_PROGRESS,
        })
    else:
        transitions.advance(project, {
            "cover_task_id": single_stage.submit_cover(project),
            "progress_percentage": COVER_SUBMITTED_PROGRESS,
        })


def _submit_segment_keyframes(project: Project, segments: list) -> None:
    """Keyframes missed here are resubmitted by the reconciler's recovery rule."""
    try:
        segmented.submit_missing_keyframes(project, segments)
        transitions.advance(project, {"segment_status": build_segment_status(segments)})
    except Exception as e:
        logger.warning(f"[{project.id}] keyframe submission deferred to reconciler: {e}")


# ═════════════════════════════════════════════════════════════════════════════
# A. Start Project
# ═════════════════════════════════════════════════════════════════════════════

def start_project(request: StartProjectRequest) -> Project:
    """
    POST /projects/start

    1. Validate inputs and work out model, duration and segment count
    2. Premium model: deduct credits, register the refund, record usage
    3. Insert the project (+ segment rows in one insert when segmented)
    4. Submit the first task(s); commit the saga once the work is durable

    Raises:
        InsufficientCreditsError: balance below the generation cost.
        WorkflowPreconditionError: missing image / prompt inputs.
    """
    video_model = resolve_video_model(request.video_model)
    image_model = resolve_image_model(request.image_model)
    duration = parse_duration(request.video_duration)
    custom_script = bool(request.custom_script and request.custom_script.strip())
    _validate(request, custom_script)

    segmented_flow = (
        not request.photo_only
        and not custom_script
        and requires_segmentation(video_model, duration)
    )
    segment_count = segment_count_for(video_model, duration) if segmented_flow else 1
    cost = 0 if request.photo_only else generation_cost(video_model, duration, request.video_quality)

    project_id = str(uuid4())
    fields = {
        "id": project_id,
        "user_id": request.user_id,
        "ad_type": request.ad_type,
        "status": ProjectStatus.PROCESSING,
        "current_step": _first_step(segmented_flow, request.ad_type, custom_script),
        "progress_percentage": 0,
        "is_segmented": segmented_flow,
        "segment_count": segment_count,
        "segment_duration_seconds": segment_length_for(video_model) if segmented_flow else None,
        "video_model": video_model,
        "image_model": image_model,
        "video_aspect_ratio": request.video_aspect_ratio,
        "video_duration": str(duration) if duration else None,
        "video_quality": request.video_quality,
        "image_size": request.image_size,
        "language": request.language,
        "original_image_url": request.image_url,
        "reference_image_urls": request.reference_image_urls,
        "photo_only": request.photo_only,
        "use_custom_script": custom_script,
        "custom_script": request.custom_script if custom_script else None,
        "video_prompts": request.video_prompts,
        "segment_plan": request.segment_plan,
        "credits_cost": cost,
        "retry_count": 0,
    }

    saga = CompensationSaga(f"project {project_id}")
    project: Optional[Project] = None
    try:
        if cost > 0:
            credits.deduct_credits(request.user_id, cost)
            saga.add(
                f"refund {cost} credits",
                lambda: credits.refund(
                    request.user_id, cost, f"Refund: {video_model} setup failed", project_id
                ),
            )
            credits.record_transaction(
                request.user_id, "usage", -cost, f"Video generation ({video_model})", project_id
            )

        project = store.insert_project(fields)

        if segmented_flow and request.ad_type is not AdType.CHARACTER:
            segments = segmented.initialize_segments(project)
            # Segment rows are durable from here on
            saga.commit()
            _submit_segment_keyframes(project, segments)
        else:
            if segmented_flow:
                segmented.initialize_segments(project)
            _submit_first_tasks(project)
    except Exception as e:
        logger.error(f"[{project_id}] setup failed: {e}", exc_info=True)
        saga.compensate()
        if project is not None:
            try:
                transitions.fail(project, f"Setup failed: {e}", refund=False)
            except StoreError as store_error:
                logger.error(f"[{project_id}] could not record setup failure: {store_error}")
        raise

    saga.commit()
    logger.info(
        f"[{project_id}] started: model={video_model}, segmented={segmented_flow}, "
        f"segments={segment_count}, cost={cost}"
    )
    return project


# ═════════════════════════════════════════════════════════════════════════════
# B. Read Project
# ═════════════════════════════════════════════════════════════════════════════

def get_project_view(project_id: str) -> Optional[dict]:
    """Project record plus a fresh segment summary for segmented projects."""
    project = store.get_project(project_id)
    if project is None:
        return None
    view = project.model_dump(mode="json")
    if project.is_segmented:
        segments = store.get_segments(project_id)
        view["segment_status"] = build_segment_status(segments, project.merged_video_url)
    return view
