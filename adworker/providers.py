"""
Provider Gateway facade.

Workflows only talk to `submit_task` / `check_status`; the task kind picks
the backing client (Kie.ai for images and videos, fal.ai for merges).
"""

import logging
from typing import Optional

from pydantic import BaseModel

from . import fal_merge
from . import kie
from . import metrics
from .errors import ProviderNetworkError
from .pipeline.models import (
    ImageTaskRequest,
    MergeTaskRequest,
    TaskKind,
    TaskResult,
    TaskState,
    VideoTaskRequest,
)

logger = logging.getLogger(__name__)


def _expect(payload: BaseModel, model: type) -> BaseModel:
    if not isinstance(payload, model):
        raise TypeError(f"{model.__name__} expected, got {type(payload).__name__}")
    return payload


def submit_task(kind: TaskKind, payload: BaseModel) -> str:
    """Submit a generation task and return the provider's task id."""
    metrics.inc_counter(f"provider.submit.{kind.value}")
    if kind is TaskKind.IMAGE:
        return kie.submit_image_task(_expect(payload, ImageTaskRequest))
    if kind is TaskKind.VIDEO:
        return kie.submit_video_task(_expect(payload, VideoTaskRequest))
    if kind is TaskKind.MERGE:
        return fal_merge.submit_merge(_expect(payload, MergeTaskRequest))
    raise ValueError(f"Unknown task kind: {kind}")


def check_status(task_id: str, kind: TaskKind, model: Optional[str] = None) -> TaskResult:
    """
    Poll a task and return the normalized status.

    Raises ProviderNetworkError when the provider could not be reached, so the
    caller leaves project state untouched.
    """
    metrics.inc_counter(f"provider.status.{kind.value}")
    if kind is TaskKind.IMAGE:
        return kie.check_image_status(task_id)
    if kind is TaskKind.VIDEO:
        return kie.check_video_status(task_id, model or "veo3_fast")
    if kind is TaskKind.MERGE:
        merge = fal_merge.check_merge_status(task_id)
        if merge.status == "COMPLETED":
            return TaskResult(status=TaskState.SUCCESS, result_url=merge.result_url)
        if merge.status == "FAILED":
            return TaskResult(status=TaskState.FAILED, error_message=merge.error)
        if merge.status == "NETWORK_ERROR":
            raise ProviderNetworkError(f"Merge status unavailable for {task_id}: {merge.error}")
        return TaskResult(status=TaskState.GENERATING)
    raise ValueError(f"Unknown task kind: {kind}")
