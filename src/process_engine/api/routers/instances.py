"""
Workflow instance routes
"""
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query, status

from ...core.service import WorkflowService
from ...models.instance import ExecutionOutcome, TokenStatus
from ..dependencies import get_service
from ..models import (
    ContextChangeResponse, ExecutionResponse, InstanceResponse, LogEntryResponse, StartInstanceRequest,
    TaskCompleteRequest, TokenResponse, TokenStatusEnum
)


logger = logging.getLogger(__name__)
router = APIRouter()


def _execution_response(outcome: ExecutionOutcome) -> ExecutionResponse:
    return ExecutionResponse(
        instance=InstanceResponse.model_validate(outcome.instance.to_dict()),
        tokens_created=[TokenResponse.model_validate(token.to_dict()) for token in outcome.tokens_created],
        steps=outcome.steps,
    )


@router.post("", response_model=ExecutionResponse, status_code=status.HTTP_201_CREATED)
async def start_instance(
    request: StartInstanceRequest,
    service: WorkflowService = Depends(get_service)
) -> ExecutionResponse:
    """Start an instance and run it to its first suspension"""
    outcome = await service.start_instance(
        request.definition_id,
        context=request.context,
        version=request.version,
        instance_id=request.instance_id,
    )
    return _execution_response(outcome)


@router.get("/{instance_id}", response_model=InstanceResponse)
async def get_instance(
    instance_id: str,
    service: WorkflowService = Depends(get_service)
) -> InstanceResponse:
    """Instance status and context"""
    instance = await service.get_status(instance_id)
    return InstanceResponse.model_validate(instance.to_dict())


@router.post("/{instance_id}/execute", response_model=ExecutionResponse)
async def execute_instance(
    instance_id: str,
    service: WorkflowService = Depends(get_service)
) -> ExecutionResponse:
    """Advance an instance"""
    outcome = await service.execute(instance_id)
    return _execution_response(outcome)


@router.post("/{instance_id}/task-complete", response_model=ExecutionResponse)
async def complete_task(
    instance_id: str,
    request: TaskCompleteRequest,
    service: WorkflowService = Depends(get_service)
) -> ExecutionResponse:
    """Complete a work token and resume the instance"""
    outcome = await service.complete_task(instance_id, request.token_id, request.result, request.actor)
    return _execution_response(outcome)


@router.post("/{instance_id}/cancel", response_model=ExecutionResponse)
async def cancel_instance(
    instance_id: str,
    service: WorkflowService = Depends(get_service)
) -> ExecutionResponse:
    """Cancel an instance"""
    outcome = await service.cancel(instance_id)
    return _execution_response(outcome)


@router.get("/{instance_id}/tokens", response_model=List[TokenResponse])
async def list_tokens(
    instance_id: str,
    token_status: Optional[TokenStatusEnum] = Query(None, alias="status", description="Filter by status"),
    service: WorkflowService = Depends(get_service)
) -> List[TokenResponse]:
    """Work tokens of an instance"""
    status_filter = TokenStatus(token_status.value) if token_status else None
    tokens = await service.list_tokens(instance_id, status_filter)
    return [TokenResponse.model_validate(token.to_dict()) for token in tokens]


@router.get("/{instance_id}/log", response_model=List[LogEntryResponse])
async def list_log(
    instance_id: str,
    service: WorkflowService = Depends(get_service)
) -> List[LogEntryResponse]:
    """Execution log of an instance"""
    entries = await service.list_log(instance_id)
    return [LogEntryResponse.model_validate(entry.to_dict()) for entry in entries]


@router.get("/{instance_id}/context", response_model=Dict[str, Any])
async def get_context(
    instance_id: str,
    token_id: Optional[str] = Query(None, description="Include the task-local inputs of this token"),
    service: WorkflowService = Depends(get_service)
) -> Dict[str, Any]:
    """Effective context of an instance or one of its tasks"""
    return await service.get_effective_context(instance_id, token_id)


@router.get("/{instance_id}/context/history", response_model=List[ContextChangeResponse])
async def context_history(
    instance_id: str,
    service: WorkflowService = Depends(get_service)
) -> List[ContextChangeResponse]:
    """Context writes in commit order"""
    changes = await service.context_history(instance_id)
    return [ContextChangeResponse.model_validate(change.to_dict()) for change in changes]
