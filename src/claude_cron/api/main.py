"""
FastAPI application factory.

Local-only HTTP control surface for the cron scheduler. The caller builds
the SchedulerService; the app's lifespan starts it on startup and stops it
on shutdown.
"""

from contextlib import asynccontextmanager
from fastapi import FastAPI

from .. import __version__
from ..scheduler.service import SchedulerService
from .routers import jobs
from .schemas.jobs import HealthResponse


# Tag metadata for Swagger UI
tags_metadata = [
    {
        "name": "jobs",
        "description": "Cron job management - create, schedule, pause, trigger, and inspect run history and logs",
    },
    {
        "name": "health",
        "description": "Operational status",
    },
]


def create_app(service: SchedulerService) -> FastAPI:
    """
    Build the FastAPI application around a scheduler service.

    Args:
        service: Configured (not yet started) SchedulerService

    Returns:
        FastAPI app with the service on app.state.scheduler_service
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Application lifespan manager.

        Starts the scheduler (orphan recovery, job reload, triggers) and
        stops it on shutdown.
        """
        # Startup
        service.start()

        yield

        # Shutdown
        service.stop()

    app = FastAPI(
        title="Claude Cron API",
        lifespan=lifespan,
        description="""
## Claude Cron API

Local-only API for scheduling Claude CLI prompts on cron expressions.

### Features
- **Jobs**: Cron-scheduled prompts with model, permissions, budget and timeout
- **Admission**: Single-flight per job, global parallel cap, usage/budget guards
- **History**: Every execution or skip recorded as a run with cost and tokens
- **Logs**: Per-run log files with streamed stderr and the final result

### Usage
```bash
# Start server
claude-cron --port 3000

# Create a job
curl -X POST http://localhost:3000/jobs \\
  -H "Content-Type: application/json" \\
  -d '{"name": "nightly", "expression": "0 3 * * *", "prompt": "Summarize open TODOs", "cwd": "/path/to/repo"}'
```
        """,
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_tags=tags_metadata,
    )
    app.state.scheduler_service = service

    @app.get("/health", response_model=HealthResponse, tags=["health"])
    async def health_check():
        """Health check endpoint."""
        return HealthResponse(version=__version__, **service.health())

    app.include_router(jobs.router, prefix="/jobs", tags=["jobs"])

    return app
