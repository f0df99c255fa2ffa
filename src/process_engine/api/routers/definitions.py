"""
Workflow definition routes
"""
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, Depends, Query, status

from ...core.service import WorkflowService
from ...models.definition import WorkflowDefinition
from ..dependencies import get_service
from ..models import DefinitionDetail, DefinitionSummary


logger = logging.getLogger(__name__)
router = APIRouter()


def _summary(definition: WorkflowDefinition) -> Dict[str, Any]:
    return {
        "id": definition.id,
        "version": definition.version,
        "name": definition.name,
        "description": definition.description,
        "node_count": len(definition.nodes),
        "edge_count": len(definition.edges),
    }


@router.post("", response_model=DefinitionDetail, status_code=status.HTTP_201_CREATED)
async def register_definition(
    document: Dict[str, Any] = Body(..., description="Definition document"),
    service: WorkflowService = Depends(get_service)
) -> DefinitionDetail:
    """Register a definition version"""
    definition = await service.register_definition(document)
    return DefinitionDetail(document=definition.to_dict(), **_summary(definition))


@router.get("", response_model=List[DefinitionSummary])
async def list_definitions(
    service: WorkflowService = Depends(get_service)
) -> List[DefinitionSummary]:
    """Latest version of every definition"""
    definitions = await service.list_definitions()
    return [DefinitionSummary(**_summary(definition)) for definition in definitions]


@router.get("/{definition_id}", response_model=DefinitionDetail)
async def get_definition(
    definition_id: str,
    version: Optional[int] = Query(None, ge=1, description="Version, latest when omitted"),
    service: WorkflowService = Depends(get_service)
) -> DefinitionDetail:
    """Get a definition version"""
    definition = await service.load_definition(definition_id, version)
    return DefinitionDetail(document=definition.to_dict(), **_summary(definition))
