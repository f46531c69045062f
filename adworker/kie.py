import os
import json
import time
import random
import logging
from typing import Callable, Optional

import requests

from .errors import KieError, ProviderNetworkError
from .pipeline.models import ImageTaskRequest, TaskResult, TaskState, VideoTaskRequest

logger = logging.getLogger(__name__)

KIE_API_KEY = os.environ.get("KIE_API_KEY", "")
KIE_API_BASE = os.environ.get("KIE_API_BASE", "https://api.kie.ai/api/v1")
KIE_CALLBACK_URL = os.environ.get("KIE_CALLBACK_URL", "")

# ── Retry configuration ──────────────────────────────────────────────────────
STATUS_RETRIES = 5
STATUS_TIMEOUT = 15     # seconds per attempt
SUBMIT_RETRIES = 8
SUBMIT_TIMEOUT = 30
BASE_DELAY = 0.5        # seconds, grows 1.5x per retry up to MAX_DELAY
MAX_DELAY = 3.0
JITTER_MAX = 0.5
RETRYABLE_STATUS_CODES = {429, 502, 503, 504}

# Image models → Kie.ai jobs model names
IMAGE_MODEL_NAMES = {
    "nano_banana": "google/nano-banana-edit",
    "seedream": "bytedance/seedream-v4-edit",
    "nano_banana_pro": "nano-banana-pro",
}
TEXT_TO_IMAGE_MODEL = "google/nano-banana"

# Video models served by /jobs/createTask (everything else goes to /veo)
JOBS_VIDEO_MODEL_NAMES = {
    "sora2": "sora-2-image-to-video",
    "sora2_pro": "sora-2-pro-image-to-video",
    "grok": "grok-imagine/image-to-video",
    "kling_2_6": "kling-2.6/image-to-video",
}

SERVER_ERROR_FAIL_CODE = "500"
CONTENT_POLICY_MARKERS = (
    "content polic",
    "violating content",
    "prohibited",
    "flagged",
    "safety",
)
CONTENT_POLICY_MESSAGE = (
    "Content policy violation. Please try a different photo or adjust your prompt."
)


def _retry_delay(attempt: int) -> float:
    return min(BASE_DELAY * (1.5 ** attempt), MAX_DELAY) + random.uniform(0, JITTER_MAX)


def _request_with_backoff(
    method: str,
    url: str,
    max_retries: int = STATUS_RETRIES,
    timeout: float = STATUS_TIMEOUT,
    **kwargs,
) -> requests.Response:
    """
    Make an HTTP request with backoff on transport errors and 429/5xx.

    Non-retryable HTTP errors are returned to the caller untouched so they can
    be reported as a provider rejection. Exhausted retries raise
    ProviderNetworkError, which the reconciler treats as "try again next sweep".
    """
    headers = kwargs.pop("headers", {})
    headers.setdefault("Authorization", f"Bearer {KIE_API_KEY}")
    headers.setdefault("Content-Type", "application/json")

    for attempt in range(max_retries):
        last_attempt = attempt == max_retries - 1
        try:
            response = requests.request(method, url, headers=headers, timeout=timeout, **kwargs)
        except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as e:
            if last_attempt:
                raise ProviderNetworkError(
                    f"Kie.ai request failed after {max_retries} attempts (url={url}): {e}"
                ) from e
            delay = _retry_delay(attempt)
            logger.warning(
                f"Kie.ai request error on attempt {attempt + 1}/{max_retries}: {e}; "
                f"retrying in {delay:.1f}s"
            )
            time.sleep(delay)
            continue

        if response.status_code not in RETRYABLE_STATUS_CODES:
            return response

        if last_attempt:
            raise ProviderNetworkError(
                f"Kie.ai returned {response.status_code} after {max_retries} attempts (url={url})"
            )

        retry_after = response.headers.get("Retry-After")
        if retry_after and retry_after.isdigit():
            delay = min(int(retry_after), MAX_DELAY)
        else:
            delay = _retry_delay(attempt)
        logger.warning(
            f"Kie.ai {response.status_code} on attempt {attempt + 1}/{max_retries}; "
            f"retrying in {delay:.1f}s (url={url})"
        )
        time.sleep(delay)

    raise ProviderNetworkError(f"Request to {url} failed after {max_retries} attempts")


def _unwrap(response: requests.Response, action: str) -> dict:
    """Return the `data` member of a Kie.ai envelope or raise KieError."""
    if not response.ok:
        raise KieError(f"Failed to {action}: {response.status_code} {response.text[:300]}")
    body = response.json()
    if body.get("code") != 200:
        raise KieError(f"Failed to {action}: {body.get('msg') or body.get('message') or 'Unknown error'}")
    return body.get("data") or {}


def _submit(url: str, payload: dict, action: str) -> str:
    if KIE_CALLBACK_URL:
        payload["callBackUrl"] = KIE_CALLBACK_URL
    response = _request_with_backoff(
        "POST", url, max_retries=SUBMIT_RETRIES, timeout=SUBMIT_TIMEOUT, json=payload
    )
    task_id = _unwrap(response, action).get("taskId")
    if not task_id:
        raise KieError(f"Failed to {action}: response carried no taskId")
    return task_id


# ═════════════════════════════════════════════════════════════════════════════
# Submission
# ═════════════════════════════════════════════════════════════════════════════

def submit_image_task(request: ImageTaskRequest) -> str:
    """
    Submit a cover / keyframe image task to the jobs endpoint.

    With no reference images the text-to-image model is used instead of the
    edit model, so keyframes can still be produced when brand or product
    images are unavailable.
    """
    if request.image_urls:
        model = IMAGE_MODEL_NAMES.get(request.model, IMAGE_MODEL_NAMES["nano_banana"])
    else:
        model = TEXT_TO_IMAGE_MODEL

    payload = {
        "model": model,
        "input": {
            "prompt": request.prompt,
            "output_format": "png",
            "image_size": request.image_size,
        },
    }
    if request.image_urls:
        payload["input"]["image_urls"] = request.image_urls

    logger.info(f"Kie.ai image task: model={model}, refs={len(request.image_urls)}")
    return _submit(f"{KIE_API_BASE}/jobs/createTask", payload, "generate image")


def _jobs_video_payload(request: VideoTaskRequest) -> dict:
    model = request.model
    first_image = request.image_urls[:1]

    if model == "grok":
        video_input = {"prompt": request.prompt, "image_urls": first_image, "mode": "normal"}
    elif model == "kling_2_6":
        video_input = {
            "prompt": request.prompt,
            "image_urls": first_image,
            "sound": True,
            "duration": request.duration or "5",
        }
    else:
        video_input = {
            "prompt": request.prompt,
            "image_urls": first_image,
            "aspect_ratio": "portrait" if request.aspect_ratio == "9:16" else "landscape",
        }
        if request.duration:
            video_input["n_frames"] = request.duration
        if model == "sora2_pro" and request.quality:
            video_input["size"] = "high" if request.quality == "high" else "standard"

    return {"model": JOBS_VIDEO_MODEL_NAMES[model], "input": video_input}


def _veo_video_payload(request: VideoTaskRequest) -> dict:
    payload = {
        "prompt": request.prompt,
        "model": request.model,
        "aspectRatio": request.aspect_ratio,
        "imageUrls": request.image_urls,
        "enableAudio": True,
        "audioEnabled": True,
        "generateVoiceover": True,
        "includeDialogue": True,
        "enableTranslation": False,
    }
    if request.first_and_last_frames:
        payload["generationType"] = "FIRST_AND_LAST_FRAMES_2_VIDEO"
    return payload


def submit_video_task(request: VideoTaskRequest) -> str:
    """
    Start a video generation task on Kie.ai and return its task id.

    Sora / Grok / Kling go through /jobs/createTask; VEO models use
    /veo/generate, optionally in first-and-last-frame mode.
    """
    if request.model in JOBS_VIDEO_MODEL_NAMES:
        url = f"{KIE_API_BASE}/jobs/createTask"
        payload = _jobs_video_payload(request)
    else:
        url = f"{KIE_API_BASE}/veo/generate"
        payload = _veo_video_payload(request)

    mode = "FIRST_AND_LAST_FRAMES" if request.first_and_last_frames else "IMAGE_TO_VIDEO"
    logger.info(f"Kie.ai video task: model={request.model}, mode={mode}, frames={len(request.image_urls)}")
    return _submit(url, payload, "generate video")


# ═════════════════════════════════════════════════════════════════════════════
# Status
# ═════════════════════════════════════════════════════════════════════════════

def _url_from_result_json(record: dict) -> Optional[str]:
    raw = record.get("resultJson")
    if not raw:
        return None
    try:
        parsed = json.loads(raw) if isinstance(raw, str) else raw
    except json.JSONDecodeError:
        logger.warning(f"Unparseable resultJson: {str(raw)[:120]}")
        return None
    urls = parsed.get("resultUrls") if isinstance(parsed, dict) else None
    return urls[0] if urls else None


def _url_from_response(record: dict) -> Optional[str]:
    response = record.get("response")
    urls = response.get("resultUrls") if isinstance(response, dict) else None
    return urls[0] if urls else None


def _url_from_flat(record: dict) -> Optional[str]:
    urls = record.get("resultUrls")
    return urls[0] if urls else None


# Tried in order; the first strategy that yields a URL wins.
RESULT_URL_STRATEGIES: tuple[Callable[[dict], Optional[str]], ...] = (
    _url_from_result_json,
    _url_from_response,
    _url_from_flat,
)


def extract_result_url(record: dict) -> Optional[str]:
    for strategy in RESULT_URL_STRATEGIES:
        url = strategy(record)
        if url:
            return url
    return None


def _is_content_policy(message: str) -> bool:
    lowered = message.lower()
    return any(marker in lowered for marker in CONTENT_POLICY_MARKERS)


def interpret_record(record: dict) -> TaskResult:
    """Translate a Kie.ai task record into the normalized TaskResult shape."""
    url = extract_result_url(record)
    state = str(record.get("state") or "").lower()
    flag = record.get("successFlag")

    if state in ("success", "succeeded") or flag == 1 or (url and not state):
        if url:
            return TaskResult(status=TaskState.SUCCESS, result_url=url)
        return TaskResult(status=TaskState.GENERATING)

    if state in ("failed", "fail") or flag in (2, 3):
        message = record.get("failMsg") or record.get("errorMessage") or "Generation failed"
        if _is_content_policy(message):
            return TaskResult(status=TaskState.FAILED, error_message=CONTENT_POLICY_MESSAGE)
        retryable = str(record.get("failCode") or "") == SERVER_ERROR_FAIL_CODE
        return TaskResult(status=TaskState.FAILED, error_message=message, is_retryable=retryable)

    return TaskResult(status=TaskState.GENERATING)


def _fetch_record(path: str, task_id: str) -> dict:
    url = f"{KIE_API_BASE}/{path}"
    response = _request_with_backoff("GET", url, params={"taskId": task_id})
    return _unwrap(response, "check task status")


def check_image_status(task_id: str) -> TaskResult:
    return interpret_record(_fetch_record("jobs/recordInfo", task_id))


def check_video_status(task_id: str, model: str = "veo3_fast") -> TaskResult:
    """Poll a video task on the endpoint family that accepted it."""
    path = "jobs/recordInfo" if model in JOBS_VIDEO_MODEL_NAMES else "veo/record-info"
    return interpret_record(_fetch_record(path, task_id))
