"""
Monitor / Reconciler — the periodic sweep that advances in-flight projects.

Per candidate, in order:
  1. Global staleness backstop (no transition for GLOBAL_TIMEOUT_MINUTES)
  2. Stuck-submission rule (submitting step, no task id past the grace period)
  3. Dispatch to the single-stage or segmented workflow

Candidates are processed sequentially. An exception from one candidate is
classified (network-like → touch last_processed_at, anything else → fail the
project) and never aborts the sweep. Only failures to load the candidate list
propagate to the caller.

Every path to failed (timeouts, exhausted retries, provider or merge
failures, processing errors) refunds the project's reserved credits through
`transitions.fail`, once, after the failed write has landed.
"""

import time
import logging
from datetime import datetime, timedelta
from typing import Optional

from .. import config
from .. import metrics
from ..errors import StoreError, is_network_error
from . import segmented
from . import single_stage
from . import store
from . import transitions
from .models import Project, ProjectStatus, SweepResult

logger = logging.getLogger(__name__)

GLOBAL_TIMEOUT_MESSAGE = (
    "Task timeout: no progress for {minutes} minutes. Please try again."
)
STUCK_SUBMISSION_MESSAGE = (
    "Generation timed out: no provider task was submitted within {minutes} minutes. "
    "Please try again."
)


def _minutes(value: float) -> str:
    return f"{value:g}"


def _reference_time(project: Project) -> Optional[datetime]:
    return project.last_processed_at or project.created_at


def is_stale(project: Project, now: datetime) -> bool:
    since = _reference_time(project)
    return since is not None and now - since > timedelta(minutes=config.GLOBAL_TIMEOUT_MINUTES)


def awaiting_submission(project: Project) -> bool:
    """In a submitting step with no task id and no result yet."""
    if project.current_step == "generating_cover":
        return not project.cover_task_id and not project.cover_image_url
    if project.current_step == "generating_video" and not project.is_segmented:
        return not project.video_task_id and not project.video_url
    return False


def process_project(project: Project) -> ProjectStatus:
    """Advance one project by at most one step. Returns its resulting status."""
    if project.status is not ProjectStatus.PROCESSING:
        return project.status

    now = store.now_utc()
    if is_stale(project, now):
        return transitions.fail(
            project, GLOBAL_TIMEOUT_MESSAGE.format(minutes=_minutes(config.GLOBAL_TIMEOUT_MINUTES))
        )

    if awaiting_submission(project):
        since = _reference_time(project)
        grace = timedelta(minutes=config.STUCK_SUBMISSION_MINUTES)
        if since is not None and now - since > grace:
            return transitions.fail(
                project,
                STUCK_SUBMISSION_MESSAGE.format(minutes=_minutes(config.STUCK_SUBMISSION_MINUTES)),
            )
        # Submission may still be in flight
        return ProjectStatus.PROCESSING

    if project.is_segmented:
        return segmented.advance(project)
    return single_stage.advance(project)


def _handle_candidate_error(project: Project, error: Exception) -> bool:
    """
    Classify an exception raised while processing `project`.

    Returns True when the project was marked failed (its reserved credits are
    refunded by that same transition, and only if it landed).
    """
    if is_network_error(error):
        logger.warning(f"[{project.id}] network error, retrying next sweep: {error}")
        metrics.inc_counter("sweep.network_deferred")
        try:
            store.touch_project(project.id)
        except Exception as touch_error:
            logger.error(f"[{project.id}] could not touch last_processed_at: {touch_error}")
        return False

    logger.error(f"[{project.id}] processing failed: {error}", exc_info=True)
    metrics.record_error("monitor", type(error).__name__, str(error), project.id)
    try:
        status = transitions.fail(project, str(error) or type(error).__name__)
    except StoreError as store_error:
        logger.error(f"[{project.id}] could not record failure: {store_error}")
        return False
    return status is ProjectStatus.FAILED


def run_sweep(project_id: Optional[str] = None) -> SweepResult:
    """
    Process every candidate project once (or just `project_id`).

    Returns:
        Counts of candidates processed and of transitions to completed / failed
        made by this sweep.
    """
    if project_id:
        project = store.get_project(project_id)
        candidates = [project] if project else []
    else:
        candidates = store.list_candidates(config.SWEEP_LIMIT)

    result = SweepResult(total_records=len(candidates))
    logger.info(f"Monitor sweep: {len(candidates)} candidate(s)")

    for index, project in enumerate(candidates):
        if project.status is not ProjectStatus.PROCESSING:
            logger.info(f"[{project.id}] already {project.status.value}; skipping")
            continue
        if index:
            time.sleep(config.SWEEP_DELAY_SECONDS)
        try:
            status = process_project(project)
        except Exception as e:
            if _handle_candidate_error(project, e):
                result.failed += 1
            continue

        result.processed += 1
        if status is ProjectStatus.COMPLETED:
            result.completed += 1
        elif status is ProjectStatus.FAILED:
            result.failed += 1

    metrics.inc_counter("sweep.processed", result.processed)
    metrics.inc_counter("sweep.completed", result.completed)
    metrics.inc_counter("sweep.failed", result.failed)
    metrics.set_gauge("last_sweep_at", time.time())
    metrics.set_gauge("last_sweep_candidates", len(candidates))
    logger.info(
        f"Monitor sweep done: processed={result.processed}, "
        f"completed={result.completed}, failed={result.failed}"
    )
    return result
