"""
FastAPI routes for the ad-video orchestrator.

Monitor Endpoints:
  POST /monitor-tasks         — Run one reconciler sweep (optionally one project)

Project Endpoints:
  POST /projects/start        — Create project (reserve credits, submit first tasks)
  GET  /projects/{id}         — Project state + segment summary

Webhook Endpoints:
  POST /webhooks/kie          — Provider callback; triggers a targeted sweep
"""

import logging
from typing import Optional

from fastapi import APIRouter, HTTPException
from fastapi.responses import JSONResponse

from ..errors import InsufficientCreditsError, WorkflowPreconditionError
from . import monitor
from . import project_service
from . import store
from .models import KieCallback, MonitorRequest, StartProjectRequest

logger = logging.getLogger(__name__)


def _sweep_response(result, message: str) -> dict:
    return {
        "success": True,
        "processed": result.processed,
        "completed": result.completed,
        "failed": result.failed,
        "totalRecords": result.total_records,
        "message": message,
    }


# ═════════════════════════════════════════════════════════════════════════════
# Monitor Router — invoked by the scheduler
# ═════════════════════════════════════════════════════════════════════════════

monitor_router = APIRouter(tags=["monitor"])


@monitor_router.post("/monitor-tasks")
def monitor_tasks(request: Optional[MonitorRequest] = None):
    """
    Advance every in-flight project by at most one step.

    Per-project errors are absorbed by the sweep; only a failure to load
    candidates produces a 500.
    """
    project_id = request.projectId if request else None
    try:
        result = monitor.run_sweep(project_id)
    except Exception as e:
        logger.error(f"Monitor sweep failed: {e}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"error": "Internal server error", "details": str(e)},
        )
    return _sweep_response(result, f"Processed {result.processed} project(s)")


# ═════════════════════════════════════════════════════════════════════════════
# Project Router — Project lifecycle
# ═════════════════════════════════════════════════════════════════════════════

project_router = APIRouter(prefix="/projects", tags=["projects"])


# ── A. Create Project ───────────────────────────────────────────────────────

@project_router.post("/start")
def start_project(request: StartProjectRequest):
    """
    Reserve credits → create project → submit first task(s).

    Errors:
      - 402: Insufficient credits
      - 400: Missing inputs or unknown model / duration
      - 500: Storage or provider failure (credits already refunded)
    """
    try:
        project = project_service.start_project(request)
    except InsufficientCreditsError as e:
        raise HTTPException(status_code=402, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Project start failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))
    return project.model_dump(mode="json")


# ── B. Get Project ──────────────────────────────────────────────────────────

@project_router.get("/{project_id}")
def get_project(project_id: str):
    """
    Full project state for polling clients.

    Segmented projects carry a freshly built `segment_status` summary.
    """
    try:
        view = project_service.get_project_view(project_id)
    except Exception as e:
        logger.error(f"Get project failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))
    if view is None:
        raise HTTPException(status_code=404, detail="Project not found")
    return view


# ═════════════════════════════════════════════════════════════════════════════
# Webhook Router — Provider callbacks
# ═════════════════════════════════════════════════════════════════════════════

webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@webhook_router.post("/kie")
def kie_callback(callback: KieCallback):
    """
    Kie.ai completion callback.

    The callback only tells us which project to look at; state is still read
    from the provider and written by the reconciler.
    """
    task_id = callback.data.taskId if callback.data else None
    if not task_id:
        raise HTTPException(status_code=400, detail="Missing data.taskId")

    logger.info(f"Kie callback for task {task_id} (code={callback.code})")
    try:
        project_id = store.find_project_id_by_task(task_id)
        if project_id is None:
            return {"success": True, "message": f"No project owns task {task_id}"}
        result = monitor.run_sweep(project_id)
    except Exception as e:
        logger.error(f"Kie callback handling failed for {task_id}: {e}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"error": "Internal server error", "details": str(e)},
        )
    return _sweep_response(result, f"Project {project_id} reconciled")
