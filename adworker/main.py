import os
import time
import logging
import uvicorn
from fastapi import FastAPI
from contextlib import asynccontextmanager
from dotenv import load_dotenv

load_dotenv()

from .auth_middleware import WorkerAuthMiddleware
from .pipeline.routes import monitor_router, project_router, webhook_router
from . import metrics

logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("Orchestrator worker starting up...")
    metrics.set_gauge("start_time", time.time())
    yield
    logger.info("Orchestrator worker shutting down...")

app = FastAPI(lifespan=lifespan)
app.add_middleware(WorkerAuthMiddleware)

app.include_router(monitor_router)
app.include_router(project_router)
app.include_router(webhook_router)


@app.get("/health")
def health_check():
    """Verify worker is running and env vars are configured."""
    return {
        "status": "ok",
        "supabase_url_set": bool(os.environ.get("SUPABASE_URL")),
        "kie_api_key_set": bool(os.environ.get("KIE_API_KEY")),
        "fal_key_set": bool(os.environ.get("FAL_KEY")),
        "worker_secret_set": bool(os.environ.get("WORKER_SHARED_SECRET")),
    }


@app.get("/metrics")
def metrics_endpoint():
    """Return a snapshot of all worker metrics."""
    return metrics.get_snapshot()


if __name__ == "__main__":
    port = int(os.environ.get("PORT", 8080))
    uvicorn.run("adworker.main:app", host="0.0.0.0", port=port, reload=True)
