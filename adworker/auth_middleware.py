"""
Shared-secret authentication middleware for the orchestrator worker.

/monitor-tasks and /projects/* require a valid X-Worker-Secret header
matching the WORKER_SHARED_SECRET environment variable. The scheduler and
the web app attach this header when calling the worker. Provider webhooks
stay public; they only trigger a sweep.
"""

import os
import secrets
from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

PROTECTED_PREFIXES = ("/monitor-tasks", "/projects")


class WorkerAuthMiddleware(BaseHTTPMiddleware):
    """Reject unauthenticated requests to protected endpoints."""

    async def dispatch(self, request: Request, call_next):
        path = request.url.path

        if not path.startswith(PROTECTED_PREFIXES):
            return await call_next(request)

        worker_secret = os.environ.get("WORKER_SHARED_SECRET", "")
        if not worker_secret:
            # In development without the secret set, allow all traffic
            if os.environ.get("ENVIRONMENT", "development") == "development":
                return await call_next(request)
            return JSONResponse(
                status_code=500, content={"detail": "WORKER_SHARED_SECRET not configured"}
            )

        # Constant-time compare
        provided = request.headers.get("X-Worker-Secret", "")
        if not secrets.compare_digest(provided, worker_secret):
            return JSONResponse(
                status_code=401, content={"detail": "Invalid or missing worker secret"}
            )

        return await call_next(request)
