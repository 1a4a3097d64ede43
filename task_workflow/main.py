"""
Task Workflow Service - Entry Point

FastAPI application exposing the delegation workflow under /workflow.

Run:
    python -m task_workflow.main
    uvicorn task_workflow.main:app
"""

import logging
import os

from fastapi import FastAPI

from . import __version__
from .config import LOG_LEVEL_ENV_VAR, configure_logging, load_config
from .task_model import utc_now
from .workflow_router import router as workflow_router
from .workflow_service import get_workflow_service

# -----------------------------------------------------------------------------
# Logging Configuration
# -----------------------------------------------------------------------------
configure_logging(os.getenv(LOG_LEVEL_ENV_VAR, "INFO"))
logger = logging.getLogger("task_workflow")

# -----------------------------------------------------------------------------
# Configuration
# -----------------------------------------------------------------------------
config = load_config()
logging.getLogger().setLevel(config.log_level.upper())
service = get_workflow_service(config)

logger.info(f"Task workflow storage: {service.store.storage_dir}")

app = FastAPI(
    title="Task Workflow - Role Delegation Service",
    description="Role delegation state machine and workflow analytics",
    version=__version__
)

app.include_router(workflow_router)


# -----------------------------------------------------------------------------
# API Endpoints - Health
# -----------------------------------------------------------------------------
@app.get("/")
async def root():
    """Service banner."""
    return {
        "service": "Task Workflow - Role Delegation Service",
        "status": "running",
        "version": __version__
    }


@app.get("/health")
async def health_check():
    """Health check with storage status."""
    storage_dir = service.store.storage_dir
    return {
        "status": "healthy",
        "timestamp": utc_now().isoformat(),
        "version": __version__,
        "components": {
            "api": "operational",
            "storage": "operational" if storage_dir.exists() else "not initialized",
        },
        "storage_dir": str(storage_dir),
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
