"""
FastAPI application entry point.

Operator API for the BodaCover scheduler. The scheduler service is built
during lifespan startup; the tick loop starts automatically only when
SCHEDULER_ENABLED is true, otherwise via POST /scheduler/start.
"""

import logging
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import Depends, FastAPI

from .. import __version__
from ..config import SchedulerSettings
from ..infra.logging_config import setup_logging
from .routers import scheduler
from ._scheduler_state import (
    init_scheduler_service,
    shutdown_scheduler_service,
)
from .dependencies.auth import verify_api_key


logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    - Loads .env and settings
    - Builds the scheduler service and seeds default jobs
    - Stops the tick loop and closes the store on shutdown
    """
    load_dotenv()
    settings = SchedulerSettings.from_env()
    setup_logging(settings.log_level, settings.log_dir)

    service = init_scheduler_service(settings)
    service.seed_default_jobs()

    if settings.enabled:
        service.start(run_recovery=True, blocking=False)
    else:
        logger.info("SCHEDULER_ENABLED=false; start the tick loop with POST /scheduler/start")

    yield

    shutdown_scheduler_service()


# Tag metadata for Swagger UI
tags_metadata = [
    {
        "name": "scheduler",
        "description": "Scheduler control, jobs, execution history and settlement windows",
    },
]

app = FastAPI(
    title="BodaCover Scheduler API",
    lifespan=lifespan,
    description="""
## BodaCover Scheduler API

Operator API for the job scheduler and batch-settlement engine.

### Authentication
When `API_AUTH_ENABLED=true`, all endpoints except `/health` require an
`X-API-Key` header matching the `API_KEY` environment variable.

### Usage
```bash
uvicorn bodacover.api.main:app --host 127.0.0.1 --port 8000

# Re-run a settlement window
curl -X POST http://localhost:8000/scheduler/jobs/<job_id>/trigger \\
  -H "Content-Type: application/json" \\
  -d '{"window_id": "20240301-B1"}'
```
    """,
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_tags=tags_metadata,
)


# Health check - NO authentication (operational endpoint)
@app.get("/health")
async def health_check():
    """Health check endpoint. Not authenticated."""
    return {"status": "ok", "version": __version__}


app.include_router(
    scheduler.router,
    prefix="/scheduler",
    tags=["scheduler"],
    dependencies=[Depends(verify_api_key)],
)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="127.0.0.1", port=8000)
