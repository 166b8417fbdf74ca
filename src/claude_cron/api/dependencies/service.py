"""
Scheduler service access for API routes.

The service is created by the caller of create_app() and stored on
app.state; routes receive it through FastAPI dependency injection.

Usage:
    @router.get("")
    async def list_jobs(service: SchedulerService = Depends(get_scheduler_service)):
        ...
"""

from fastapi import HTTPException, Request

from ...scheduler.service import SchedulerService


def get_scheduler_service(request: Request) -> SchedulerService:
    """
    Get the SchedulerService attached to the application.

    Raises:
        HTTPException: 503 if the app was built without a service
    """
    service = getattr(request.app.state, "scheduler_service", None)
    if service is None:
        raise HTTPException(
            status_code=503,
            detail="Scheduler service not initialized"
        )
    return service
