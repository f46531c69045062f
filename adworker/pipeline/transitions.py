"""
Persisted project transitions shared by both workflows and the reconciler.

Every write goes through `store.update_project` (conditional on the project
still processing) and is mirrored onto the in-memory Project.

Paid submissions are claimed first: the claim write is also conditional on
the row's `updated_at` as it was read, so of two sweeps holding the same
project only one submits. A failed project gives back its reserved credits
once, after the failed write has landed.
"""

import logging
from typing import Any, Callable, Optional

from .. import config
from .. import credits
from .. import metrics
from . import store
from .models import Project, ProjectStatus, TaskResult
from .planning import COMPLETED_PROGRESS
from .saga import CompensationSaga

logger = logging.getLogger(__name__)


def snapshot(record, *fields: str) -> dict:
    """Current values of `fields`, used to put a released claim back."""
    return {field: getattr(record, field) for field in fields}


def apply(project: Project, fields: dict, expected: Optional[dict] = None) -> bool:
    """Persist `fields` and mirror them onto `project`. False if it was already terminal."""
    previous_step = project.current_step
    fields = {**fields, "updated_at": store.now_utc()}
    if not store.update_project(project.id, fields, expected):
        return False
    for key, value in fields.items():
        setattr(project, key, value)
    if project.current_step != previous_step:
        logger.info(
            f"[{project.id}] {previous_step} → {project.current_step} "
            f"({project.progress_percentage}%)"
        )
    return True


def advance(project: Project, fields: dict, expected: Optional[dict] = None) -> bool:
    """A successful state transition: also refreshes last_processed_at."""
    return apply(project, {**fields, "last_processed_at": store.now_utc()}, expected)


def claim(project: Project, fields: dict) -> bool:
    """
    Advance `project` only if nobody has written it since it was read.

    False means another sweep got there first; the caller must not submit.
    """
    if advance(project, fields, expected={"updated_at": project.updated_at}):
        return True
    metrics.inc_counter("sweep.claim_lost")
    logger.info(f"[{project.id}] claim lost to a concurrent sweep")
    return False


def submit_claimed(name: str, submit: Callable[[], Any], release: Callable[[], Any]) -> Any:
    """
    Run a provider submission under a claim.

    If `submit` raises, `release` puts the claimed fields back (once) so the
    next sweep can try again, and the error propagates.
    """
    saga = CompensationSaga(name)
    saga.add("release claim", release)
    try:
        result = submit()
    except Exception:
        saga.compensate()
        raise
    saga.commit()
    return result


def submit_project_task(
    project: Project,
    task_field: str,
    submit: Callable[[], str],
    restore: dict,
) -> str:
    """Submit for a claimed project and record the task id in `task_field`."""
    task_id = submit_claimed(f"project {project.id}", submit, lambda: apply(project, restore))
    apply(project, {task_field: task_id})
    return task_id


# ── Terminal transitions ─────────────────────────────────────────────────────

def complete(project: Project, fields: dict) -> ProjectStatus:
    applied = advance(project, {
        **fields,
        "status": ProjectStatus.COMPLETED,
        "current_step": "completed",
        "progress_percentage": COMPLETED_PROGRESS,
        "error_message": None,
    })
    if not applied:
        return project.status
    logger.info(f"[{project.id}] completed")
    return ProjectStatus.COMPLETED


def refund_reserved_credits(project: Project) -> None:
    if project.credits_cost <= 0:
        return
    saga = CompensationSaga(f"project {project.id}")
    saga.add(
        f"refund {project.credits_cost} credits",
        lambda: credits.refund(
            project.user_id,
            project.credits_cost,
            f"Refund: {project.video_model} generation failed",
            project.id,
        ),
    )
    saga.compensate()


def fail(
    project: Project,
    message: str,
    extra: Optional[dict] = None,
    refund: bool = True,
) -> ProjectStatus:
    """
    Terminal failure. Outstanding task handles are dropped with it.

    Reserved credits are refunded only when this call moved the row to
    failed; a project already terminal is never refunded again. Pass
    `refund=False` when the caller has compensated the reservation itself.
    """
    applied = apply(project, {
        **(extra or {}),
        "status": ProjectStatus.FAILED,
        "current_step": "failed",
        "error_message": message,
        "cover_task_id": None,
        "video_task_id": None,
        "fal_merge_task_id": None,
        "last_processed_at": store.now_utc(),
    })
    if not applied:
        return project.status
    logger.error(f"[{project.id}] failed: {message}")
    if refund:
        refund_reserved_credits(project)
    return ProjectStatus.FAILED


# ── Retry policy ─────────────────────────────────────────────────────────────

def should_retry(result: TaskResult, retry_count: int) -> bool:
    return result.is_retryable and retry_count < config.MAX_RETRIES


def retry_notice(attempt: int) -> str:
    return f"Retrying after server error (attempt {attempt}/{config.MAX_RETRIES})"


def retry_or_fail(
    project: Project,
    result: TaskResult,
    task_field: str,
    resubmit: Callable[[], str],
    label: str,
) -> ProjectStatus:
    """
    Resubmit a failed project-level task while the retry budget lasts,
    otherwise fail the project with the provider's message.
    """
    if not should_retry(result, project.retry_count):
        return fail(project, f"{label}: {result.error_message or 'unknown error'}")

    attempt = project.retry_count + 1
    restore = snapshot(project, task_field, "retry_count", "error_message")
    if not claim(project, {
        task_field: None,
        "retry_count": attempt,
        "error_message": retry_notice(attempt),
    }):
        return project.status

    task_id = submit_project_task(project, task_field, resubmit, restore)
    logger.warning(f"[{project.id}] {label} (retryable); resubmitted as {task_id}, attempt {attempt}")
    return ProjectStatus.PROCESSING
