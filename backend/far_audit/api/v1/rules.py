"""Read-only view of the active FAR rule index."""
from typing import Annotated

from fastapi import APIRouter, Depends

from far_audit.api.deps import get_compliance_service
from far_audit.schemas.far_rule import RulesOut
from far_audit.services.compliance import ComplianceService

router = APIRouter()


@router.get("", response_model=RulesOut, summary="Active FAR rules in priority order")
async def list_rules(
    service: Annotated[ComplianceService, Depends(get_compliance_service)],
):
    index = service.rule_index
    return RulesOut(rules=list(index.rules), count=len(index), load_errors=list(index.load_errors))
