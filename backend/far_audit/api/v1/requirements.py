"""Requirements projection endpoint."""
from typing import Annotated

from fastapi import APIRouter, Depends

from far_audit.api.deps import get_compliance_service
from far_audit.schemas.requirements import ReceiptPolicyOut, RequirementsResponse
from far_audit.services.compliance import ComplianceService

router = APIRouter()


@router.get("", response_model=RequirementsResponse, summary="Receipt and approval requirements per GL row")
async def requirements(
    service: Annotated[ComplianceService, Depends(get_compliance_service)],
):
    threshold = service.policy.receipt_threshold
    return RequirementsResponse(
        rows=await service.requirements(),
        policy=ReceiptPolicyOut(receipt_threshold=float(threshold) if threshold is not None else None),
    )
