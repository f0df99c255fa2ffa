"""
FastAPI dependencies
"""
from fastapi import HTTPException, Request, status

from ..core.service import WorkflowService


def get_service(request: Request) -> WorkflowService:
    """Workflow service attached to the application"""
    service = getattr(request.app.state, "service", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "error": "service_unavailable",
                "message": "Workflow service not initialized"
            }
        )
    return service
