"""LLM re-evaluation endpoint."""
import logging
from typing import Annotated

from fastapi import APIRouter, Depends, Request

from far_audit.api.deps import get_compliance_service
from far_audit.core.config import settings
from far_audit.core.limiter import limiter
from far_audit.schemas.gl import AuditResultsOut, ReviewRequest
from far_audit.services.compliance import ComplianceService

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("", response_model=AuditResultsOut, summary="Re-evaluate rows with approval evidence")
@limiter.limit(settings.LLM_REVIEW_RATE_LIMIT)
async def llm_review(
    request: Request,
    body: ReviewRequest,
    service: Annotated[ComplianceService, Depends(get_compliance_service)],
):
    """Runs serially over the selected rows (all rows when gl_entry_ids is omitted)."""
    results = await service.review(body.gl_entry_ids)
    return AuditResultsOut(results=results)
