"""
Segmented Workflow — fan-out per segment, fan-in through one merge.

Per segment (standard mode):
  pending_first_frame → generating_first_frame → first_frame_ready
    → generating_video → video_ready

  - Segment i's closing frame is segment i+1's first frame (continuity).
  - The last segment gets a dedicated closing-frame task.
  - A clip is submitted in first-and-last-frame mode once both frames exist.

Character ads (shared-anchor mode) generate one anchor image first and use
it as every segment's first frame; clips are single-image.

Project steps:
  [generating_cover →] generating_segment_frames → generating_segment_videos
    → merging_segments → completed
"""

import logging
from datetime import timedelta
from typing import Callable
from uuid import uuid4

from .. import config
from .. import providers
from . import store
from . import transitions
from .models import (
    AdType,
    ImageTaskRequest,
    MergeTaskRequest,
    Project,
    ProjectStatus,
    Segment,
    SegmentedStep,
    SegmentStatus,
    TaskKind,
    TaskResult,
    TaskState,
    VideoTaskRequest,
    segmented_step,
)
from .planning import (
    FRAME_PROGRESS,
    MERGE_PROGRESS,
    VIDEO_PROGRESS,
    build_segment_status,
    frames_ready,
    interpolate_progress,
    segment_length_for,
)
from .prompts import keyframe_prompt, segment_prompts, segment_video_prompt
from .single_stage import submit_cover

logger = logging.getLogger(__name__)


class SegmentExhausted(Exception):
    """A segment failed terminally; the whole project fails with it."""


def is_shared_anchor(project: Project) -> bool:
    return project.ad_type is AdType.CHARACTER


# ── Initialization ───────────────────────────────────────────────────────────

def initialize_segments(project: Project) -> list[Segment]:
    """Create every segment row for `project` in a single insert."""
    count = max(1, project.segment_count)
    rows = [
        {
            "id": str(uuid4()),
            "project_id": project.id,
            "segment_index": index,
            "status": SegmentStatus.PENDING_FIRST_FRAME,
            "prompt": prompt,
            "retry_count": 0,
        }
        for index, prompt in enumerate(segment_prompts(project, count))
    ]
    segments = store.insert_segments(rows)
    logger.info(f"[{project.id}] created {len(segments)} segments")
    return segments


def _load_segments(project: Project) -> list[Segment]:
    segments = store.get_segments(project.id)
    if not segments:
        logger.warning(f"[{project.id}] segmented project has no segment rows; re-initializing")
        segments = initialize_segments(project)
    return segments


def _update(segment: Segment, fields: dict) -> None:
    fields = {**fields, "updated_at": store.now_utc()}
    store.update_segment(segment.id, fields)
    for key, value in fields.items():
        setattr(segment, key, value)


def _claim(project: Project, segment: Segment, fields: dict) -> bool:
    """Write `fields` only if the segment row is unchanged since it was read."""
    fields = {**fields, "updated_at": store.now_utc()}
    if not store.update_segment(segment.id, fields, expected={"updated_at": segment.updated_at}):
        logger.info(f"[{project.id}] segment {segment.segment_index}: claim lost to a concurrent sweep")
        return False
    for key, value in fields.items():
        setattr(segment, key, value)
    return True


def _submit_claimed(segment: Segment, submit: Callable, restore: dict):
    return transitions.submit_claimed(
        f"segment {segment.id}", submit, lambda: _update(segment, restore)
    )


# ── Provider requests ────────────────────────────────────────────────────────

def keyframe_request(project: Project, segment: Segment, closing: bool = False) -> ImageTaskRequest:
    # Without a product photo the keyframe falls back to text-only generation
    refs = [project.original_image_url] if project.original_image_url else []
    return ImageTaskRequest(
        prompt=keyframe_prompt(segment.prompt, closing=closing),
        image_urls=refs,
        model=project.image_model,
        image_size=project.image_size,
    )


def video_request(project: Project, segment: Segment) -> VideoTaskRequest:
    first = segment.first_frame_url
    closing = segment.closing_frame_url
    two_frames = bool(closing) and closing != first and not is_shared_anchor(project)
    return VideoTaskRequest(
        prompt=segment_video_prompt(project, segment.prompt),
        model=project.video_model,
        image_urls=[first, closing] if two_frames else [first],
        aspect_ratio=project.video_aspect_ratio,
        duration=str(segment_length_for(project.video_model)),
        quality=project.video_quality,
        first_and_last_frames=two_frames,
    )


def _submit_keyframe(project: Project, segment: Segment, closing: bool = False) -> str:
    return providers.submit_task(TaskKind.IMAGE, keyframe_request(project, segment, closing))


def _submit_video(project: Project, segment: Segment) -> str:
    return providers.submit_task(TaskKind.VIDEO, video_request(project, segment))


# ── Segment passes ───────────────────────────────────────────────────────────

def _retry_segment(
    project: Project,
    segment: Segment,
    result: TaskResult,
    task_field: str,
    resubmit: Callable[[], str],
    label: str,
) -> None:
    if transitions.should_retry(result, segment.retry_count):
        attempt = segment.retry_count + 1
        restore = transitions.snapshot(segment, task_field, "retry_count", "error_message")
        if not _claim(project, segment, {
            task_field: None,
            "retry_count": attempt,
            "error_message": transitions.retry_notice(attempt),
        }):
            return
        task_id = _submit_claimed(segment, resubmit, restore)
        _update(segment, {task_field: task_id})
        logger.warning(
            f"[{project.id}] segment {segment.segment_index}: {label} (retryable); "
            f"resubmitted as {task_id}, attempt {attempt}"
        )
        return

    message = result.error_message or "unknown error"
    _update(segment, {
        task_field: None,
        "status": SegmentStatus.FAILED,
        "error_message": message,
    })
    raise SegmentExhausted(f"Segment {segment.segment_index + 1} {label}: {message}")


def submit_missing_keyframes(project: Project, segments: list[Segment]) -> bool:
    """
    Submit keyframe tasks for segments that have none.

    Also the recovery rule for segments left in pending_first_frame without a
    task id (crash or failed setup before submission). The segment is claimed
    into generating_first_frame before anything is submitted.
    """
    changed = False
    last_index = len(segments) - 1
    for segment in segments:
        if segment.status is not SegmentStatus.PENDING_FIRST_FRAME:
            continue
        needs_first = not segment.first_frame_task_id and not segment.first_frame_url
        needs_closing = (
            segment.segment_index == last_index
            and not segment.closing_frame_task_id
            and not segment.closing_frame_url
        )
        if not (needs_first or needs_closing):
            continue

        restore = transitions.snapshot(segment, "status")
        if not _claim(project, segment, {"status": SegmentStatus.GENERATING_FIRST_FRAME}):
            continue
        task_ids = _submit_claimed(
            segment, lambda: _submit_keyframes(project, segment, needs_first, needs_closing), restore
        )
        _update(segment, task_ids)
        logger.info(f"[{project.id}] segment {segment.segment_index}: keyframe task(s) submitted")
        changed = True
    return changed


def _submit_keyframes(project: Project, segment: Segment, first: bool, closing: bool) -> dict:
    task_ids = {}
    if first:
        task_ids["first_frame_task_id"] = _submit_keyframe(project, segment)
    if closing:
        task_ids["closing_frame_task_id"] = _submit_keyframe(project, segment, closing=True)
    return task_ids


def _poll_keyframes(project: Project, segments: list[Segment]) -> bool:
    changed = False
    last_index = len(segments) - 1
    for segment in segments:
        if segment.first_frame_task_id and not segment.first_frame_url:
            result = providers.check_status(segment.first_frame_task_id, TaskKind.IMAGE)
            if result.status is TaskState.SUCCESS:
                _update(segment, {
                    "first_frame_url": result.result_url,
                    "first_frame_task_id": None,
                    "status": SegmentStatus.FIRST_FRAME_READY,
                })
                changed = True
            elif result.status is TaskState.FAILED:
                _retry_segment(
                    project, segment, result, "first_frame_task_id",
                    lambda s=segment: _submit_keyframe(project, s),
                    "first frame generation failed",
                )
                changed = True

        if (
            segment.segment_index == last_index
            and segment.closing_frame_task_id
            and not segment.closing_frame_url
        ):
            result = providers.check_status(segment.closing_frame_task_id, TaskKind.IMAGE)
            if result.status is TaskState.SUCCESS:
                _update(segment, {
                    "closing_frame_url": result.result_url,
                    "closing_frame_task_id": None,
                })
                changed = True
            elif result.status is TaskState.FAILED:
                _retry_segment(
                    project, segment, result, "closing_frame_task_id",
                    lambda s=segment: _submit_keyframe(project, s, closing=True),
                    "closing frame generation failed",
                )
                changed = True
    return changed


def _stitch_continuity(segments: list[Segment]) -> bool:
    """Copy each segment's first frame into the previous segment's closing frame."""
    changed = False
    for current, following in zip(segments, segments[1:]):
        if following.first_frame_url and current.closing_frame_url != following.first_frame_url:
            _update(current, {"closing_frame_url": following.first_frame_url})
            changed = True
    return changed


def _assign_anchor(project: Project, segments: list[Segment]) -> bool:
    if not project.cover_image_url:
        return False
    changed = False
    for segment in segments:
        if not segment.first_frame_url and segment.status is not SegmentStatus.FAILED:
            _update(segment, {
                "first_frame_url": project.cover_image_url,
                "status": SegmentStatus.FIRST_FRAME_READY,
            })
            changed = True
    return changed


def _start_videos(project: Project, segments: list[Segment]) -> set[int]:
    shared = is_shared_anchor(project)
    started = set()
    for segment in segments:
        if (
            segment.status is SegmentStatus.FIRST_FRAME_READY
            and not segment.video_task_id
            and not segment.video_url
            and frames_ready(segment, shared_anchor=shared)
        ):
            restore = transitions.snapshot(segment, "status", "retry_count", "error_message")
            if not _claim(project, segment, {
                "status": SegmentStatus.GENERATING_VIDEO,
                "retry_count": 0,
                "error_message": None,
            }):
                continue
            task_id = _submit_claimed(segment, lambda s=segment: _submit_video(project, s), restore)
            _update(segment, {"video_task_id": task_id})
            started.add(segment.segment_index)
    if started:
        logger.info(f"[{project.id}] video tasks submitted for segments {sorted(started)}")
    return started


def _poll_videos(project: Project, segments: list[Segment], skip: set[int]) -> bool:
    changed = False
    for segment in segments:
        if not segment.video_task_id or segment.video_url or segment.segment_index in skip:
            continue
        result = providers.check_status(segment.video_task_id, TaskKind.VIDEO, project.video_model)
        if result.status is TaskState.SUCCESS:
            _update(segment, {
                "video_url": result.result_url,
                "video_task_id": None,
                "status": SegmentStatus.VIDEO_READY,
                "error_message": None,
            })
            changed = True
        elif result.status is TaskState.FAILED:
            _retry_segment(
                project, segment, result, "video_task_id",
                lambda s=segment: _submit_video(project, s),
                "video generation failed",
            )
            changed = True
    return changed


def _summary_fields(project: Project, segments: list[Segment]) -> dict:
    total = len(segments)
    frames = sum(1 for s in segments if s.first_frame_url)
    videos = sum(1 for s in segments if s.video_url)
    in_video_stage = is_shared_anchor(project) or any(s.video_task_id or s.video_url for s in segments)

    if in_video_stage:
        step = SegmentedStep.GENERATING_SEGMENT_VIDEOS
        progress = interpolate_progress(videos, total, VIDEO_PROGRESS)
    else:
        step = SegmentedStep.GENERATING_SEGMENT_FRAMES
        progress = interpolate_progress(frames, total, FRAME_PROGRESS)

    fields = {
        "segment_status": build_segment_status(segments),
        "current_step": step,
        "progress_percentage": max(project.progress_percentage, progress),
    }
    if not project.cover_image_url and segments and segments[0].first_frame_url:
        fields["cover_image_url"] = segments[0].first_frame_url
    return fields


# ═════════════════════════════════════════════════════════════════════════════
# Step handlers
# ═════════════════════════════════════════════════════════════════════════════

def _start_merge(project: Project, segments: list[Segment]) -> ProjectStatus:
    if project.fal_merge_task_id or not segments or not all(s.video_url for s in segments):
        return ProjectStatus.PROCESSING

    ordered = sorted(segments, key=lambda s: s.segment_index)
    request = MergeTaskRequest(
        video_urls=[s.video_url for s in ordered],
        aspect_ratio=project.video_aspect_ratio,
    )
    restore = transitions.snapshot(project, "current_step")
    if not transitions.claim(project, {
        **_summary_fields(project, segments),
        "current_step": SegmentedStep.MERGING_SEGMENTS,
        "progress_percentage": max(project.progress_percentage, MERGE_PROGRESS),
    }):
        return project.status

    transitions.submit_project_task(
        project, "fal_merge_task_id", lambda: providers.submit_task(TaskKind.MERGE, request), restore
    )
    return ProjectStatus.PROCESSING


def _advance_segments(project: Project) -> ProjectStatus:
    segments = _load_segments(project)
    try:
        if is_shared_anchor(project):
            changed = _assign_anchor(project, segments)
        else:
            changed = submit_missing_keyframes(project, segments)
            changed = _poll_keyframes(project, segments) or changed
            changed = _stitch_continuity(segments) or changed
        started = _start_videos(project, segments)
        changed = _poll_videos(project, segments, skip=started) or bool(started) or changed
    except SegmentExhausted as e:
        return transitions.fail(project, str(e), extra={"segment_status": build_segment_status(segments)})

    if all(s.video_url for s in segments):
        return _start_merge(project, segments)
    if changed:
        transitions.advance(project, _summary_fields(project, segments))
    return ProjectStatus.PROCESSING


def _advance_anchor(project: Project) -> ProjectStatus:
    """Character ads: wait for the shared anchor image, then fan out."""
    if not project.cover_task_id:
        return project.status

    result = providers.check_status(project.cover_task_id, TaskKind.IMAGE)
    if result.status is TaskState.GENERATING:
        return ProjectStatus.PROCESSING
    if result.status is TaskState.FAILED:
        return transitions.retry_or_fail(
            project, result, "cover_task_id", lambda: submit_cover(project), "Character image generation failed"
        )

    if not transitions.claim(project, {
        "cover_image_url": result.result_url,
        "cover_task_id": None,
        "current_step": SegmentedStep.GENERATING_SEGMENT_VIDEOS,
        "retry_count": 0,
        "error_message": None,
        "progress_percentage": max(project.progress_percentage, FRAME_PROGRESS[1]),
    }):
        return project.status
    return _advance_segments(project)


def _advance_merge(project: Project) -> ProjectStatus:
    since = project.last_processed_at or project.created_at
    timeout = timedelta(minutes=config.MERGE_TIMEOUT_MINUTES)
    if since and store.now_utc() - since > timeout:
        return transitions.fail(
            project,
            f"Video merging timeout after {int(config.MERGE_TIMEOUT_MINUTES)} minutes. Please retry.",
        )

    if not project.fal_merge_task_id:
        # Claimed by a sweep whose merge submission is still in flight
        return ProjectStatus.PROCESSING

    result = providers.check_status(project.fal_merge_task_id, TaskKind.MERGE)
    if result.status is TaskState.GENERATING:
        return ProjectStatus.PROCESSING
    if result.status is TaskState.FAILED:
        return transitions.fail(project, f"Video merge failed: {result.error_message or 'unknown error'}")

    segments = store.get_segments(project.id)
    return transitions.complete(project, {
        "merged_video_url": result.result_url,
        "video_url": result.result_url,
        "fal_merge_task_id": None,
        "segment_status": build_segment_status(segments, merged_video_url=result.result_url),
    })


def _settled(project: Project) -> ProjectStatus:
    return project.status


STEP_HANDLERS = {
    SegmentedStep.GENERATING_COVER: _advance_anchor,
    SegmentedStep.GENERATING_SEGMENT_FRAMES: _advance_segments,
    SegmentedStep.GENERATING_SEGMENT_VIDEOS: _advance_segments,
    SegmentedStep.MERGING_SEGMENTS: _advance_merge,
    SegmentedStep.COMPLETED: _settled,
    SegmentedStep.FAILED: _settled,
}


def advance(project: Project) -> ProjectStatus:
    """Move a segmented project forward: one pass over every segment."""
    return STEP_HANDLERS[segmented_step(project)](project)
