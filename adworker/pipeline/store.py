"""
Project Store — Supabase-backed persistence for projects and segments.

All writes go through the service-role client (RLS bypass). Project updates
are conditional on `status = processing`, so a terminal project can never be
mutated again even if a stale copy of it is still being processed. Project
and segment updates can also be conditioned on `updated_at` as read, which
is how a sweep claims a row before a paid submission.
"""

import os
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from postgrest.exceptions import APIError
from supabase import create_client, Client

from ..errors import StoreError
from .models import Project, ProjectStatus, Segment

logger = logging.getLogger(__name__)

PROJECTS_TABLE = os.getenv("PROJECTS_TABLE", "ad_projects")
SEGMENTS_TABLE = os.getenv("SEGMENTS_TABLE", "ad_segments")

# ── Supabase Service Client (bypasses RLS) ───────────────────────────────────

_service_client: Optional[Client] = None


def get_client() -> Client:
    """Lazy-init Supabase client using service role key."""
    global _service_client
    if _service_client is None:
        url = os.getenv("SUPABASE_URL", "")
        key = os.getenv("SUPABASE_SERVICE_ROLE_KEY", "")
        if not url or not key:
            raise RuntimeError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set")
        _service_client = create_client(url, key)
    return _service_client


def set_client(client: Optional[Client]) -> None:
    """Replace the process-wide client (tests install an in-memory fake)."""
    global _service_client
    _service_client = client


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _serialize(fields: dict) -> dict:
    row = {}
    for key, value in fields.items():
        if isinstance(value, datetime):
            value = value.isoformat()
        elif isinstance(value, Enum):
            value = value.value
        row[key] = value
    return row


def _match(query, expected: Optional[dict]):
    """Add equality filters for `expected` (None matches SQL NULL)."""
    for column, value in _serialize(expected or {}).items():
        query = query.is_(column, "null") if value is None else query.eq(column, value)
    return query


def run_query(query, action: str) -> list[dict]:
    try:
        response = query.execute()
    except APIError as e:
        message = getattr(e, "message", None) or str(e)
        raise StoreError(f"Failed to {action}: {message}") from e
    return response.data or []


# ═════════════════════════════════════════════════════════════════════════════
# Projects
# ═════════════════════════════════════════════════════════════════════════════

def get_project(project_id: str) -> Optional[Project]:
    rows = run_query(
        get_client().table(PROJECTS_TABLE).select("*").eq("id", project_id).limit(1),
        f"load project {project_id}",
    )
    return Project.model_validate(rows[0]) if rows else None


def insert_project(fields: dict) -> Project:
    now = now_utc()
    row = _serialize({"created_at": now, "updated_at": now, **fields})
    rows = run_query(get_client().table(PROJECTS_TABLE).insert(row), "create project")
    return Project.model_validate(rows[0] if rows else row)


def update_project(project_id: str, fields: dict, expected: Optional[dict] = None) -> bool:
    """
    Apply `fields` to an in-flight project.

    `expected` narrows the update further (e.g. `{"updated_at": <as read>}`
    to claim the row against a concurrent sweep).

    Returns False when no row matched, i.e. the project is already terminal
    (or gone, or changed since it was read). Callers treat that as "someone
    else got there first".
    """
    row = _serialize({"updated_at": now_utc(), **fields})
    query = (
        get_client()
        .table(PROJECTS_TABLE)
        .update(row)
        .eq("id", project_id)
        .eq("status", ProjectStatus.PROCESSING.value)
    )
    rows = run_query(_match(query, expected), f"update project {project_id}")
    if not rows:
        logger.warning(f"[{project_id}] update skipped: project is no longer processing or was changed")
        return False
    return True


def touch_project(project_id: str) -> bool:
    """Refresh last_processed_at without changing any other state."""
    return update_project(project_id, {"last_processed_at": now_utc()})


def list_candidates(limit: int) -> list[Project]:
    """
    In-flight projects that need attention, oldest-processed first.

    A project qualifies when it has an outstanding task, is segmented, or sits
    in a submitting step without a task id (so stuck-state recovery can see it).
    """
    needs_attention = ",".join([
        "cover_task_id.not.is.null",
        "video_task_id.not.is.null",
        "fal_merge_task_id.not.is.null",
        "is_segmented.eq.true",
        "current_step.in.(generating_cover,generating_video)",
    ])
    rows = run_query(
        get_client()
        .table(PROJECTS_TABLE)
        .select("*")
        .eq("status", ProjectStatus.PROCESSING.value)
        .or_(needs_attention)
        .order("last_processed_at", desc=False, nullsfirst=True)
        .limit(limit),
        "list monitor candidates",
    )
    return [Project.model_validate(row) for row in rows]


def find_project_id_by_task(task_id: str) -> Optional[str]:
    """Resolve a provider task id to its owning project (project or segment level)."""
    client = get_client()
    rows = run_query(
        client.table(PROJECTS_TABLE)
        .select("id")
        .or_(f"cover_task_id.eq.{task_id},video_task_id.eq.{task_id},fal_merge_task_id.eq.{task_id}")
        .limit(1),
        f"find project for task {task_id}",
    )
    if rows:
        return rows[0]["id"]

    rows = run_query(
        client.table(SEGMENTS_TABLE)
        .select("project_id")
        .or_(
            f"first_frame_task_id.eq.{task_id},"
            f"closing_frame_task_id.eq.{task_id},"
            f"video_task_id.eq.{task_id}"
        )
        .limit(1),
        f"find segment for task {task_id}",
    )
    return rows[0]["project_id"] if rows else None


# ═════════════════════════════════════════════════════════════════════════════
# Segments
# ═════════════════════════════════════════════════════════════════════════════

def get_segments(project_id: str) -> list[Segment]:
    rows = run_query(
        get_client()
        .table(SEGMENTS_TABLE)
        .select("*")
        .eq("project_id", project_id)
        .order("segment_index", desc=False),
        f"load segments for {project_id}",
    )
    return [Segment.model_validate(row) for row in rows]


def insert_segments(rows: list[dict]) -> list[Segment]:
    """Insert every segment row in one statement: all rows land or none do."""
    now = now_utc()
    payload = [_serialize({"created_at": now, "updated_at": now, **row}) for row in rows]
    inserted = run_query(
        get_client().table(SEGMENTS_TABLE).insert(payload),
        f"create {len(rows)} segments",
    )
    segments = [Segment.model_validate(row) for row in inserted]
    return sorted(segments, key=lambda s: s.segment_index)


def update_segment(segment_id: str, fields: dict, expected: Optional[dict] = None) -> bool:
    """Returns False when `expected` no longer matches the stored row."""
    row = _serialize({"updated_at": now_utc(), **fields})
    query = get_client().table(SEGMENTS_TABLE).update(row).eq("id", segment_id)
    rows = run_query(_match(query, expected), f"update segment {segment_id}")
    return bool(rows)
