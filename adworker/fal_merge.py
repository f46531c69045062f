"""
Video merge via fal.ai's ffmpeg merge-videos application.

Clips are submitted in segment order; the queue request id is stored on the
project as `fal_merge_task_id` and polled by the reconciler.
"""

import time
import logging

import fal_client

from .errors import is_network_error
from .pipeline.models import MergeStatus, MergeTaskRequest

logger = logging.getLogger(__name__)

MERGE_APPLICATION = "fal-ai/ffmpeg-api/merge-videos"
TARGET_FPS = 30
RESOLUTIONS = {
    "16:9": "landscape_16_9",
    "9:16": "portrait_16_9",
}

STATUS_RETRIES = 3
RETRY_DELAY = 2.0  # seconds


def submit_merge(request: MergeTaskRequest) -> str:
    """Queue a merge of `request.video_urls` and return the fal request id."""
    arguments = {
        "video_urls": request.video_urls,
        "target_fps": TARGET_FPS,
        "resolution": RESOLUTIONS.get(request.aspect_ratio, RESOLUTIONS["16:9"]),
    }
    logger.info(f"Submitting merge of {len(request.video_urls)} clips ({arguments['resolution']})")
    handler = fal_client.submit(MERGE_APPLICATION, arguments=arguments)
    return handler.request_id


def _check_once(request_id: str) -> MergeStatus:
    status = fal_client.status(MERGE_APPLICATION, request_id, with_logs=True)

    if not isinstance(status, fal_client.Completed):
        return MergeStatus(status="IN_PROGRESS")

    error = getattr(status, "error", None)
    if error:
        return MergeStatus(status="FAILED", error=str(error))

    result = fal_client.result(MERGE_APPLICATION, request_id)
    video_url = (result.get("video") or {}).get("url")
    if not video_url:
        return MergeStatus(status="FAILED", error="Merge completed without a video URL")
    return MergeStatus(status="COMPLETED", result_url=video_url)


def check_merge_status(request_id: str) -> MergeStatus:
    """
    Poll a merge request.

    Network failures are retried STATUS_RETRIES times before reporting
    NETWORK_ERROR; any other exception from fal is a merge failure.
    """
    for attempt in range(1, STATUS_RETRIES + 1):
        try:
            return _check_once(request_id)
        except Exception as e:
            if not is_network_error(e):
                logger.error(f"Merge status check failed for {request_id}: {e}")
                return MergeStatus(status="FAILED", error=str(e))
            logger.warning(
                f"Network error checking merge {request_id} "
                f"(attempt {attempt}/{STATUS_RETRIES}): {e}"
            )
            if attempt < STATUS_RETRIES:
                time.sleep(RETRY_DELAY)

    return MergeStatus(
        status="NETWORK_ERROR",
        error=f"Network error after {STATUS_RETRIES} attempts",
    )
