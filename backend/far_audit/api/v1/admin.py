"""Admin bulk-clear endpoints."""
import logging
from typing import Annotated

from fastapi import APIRouter, Depends

from far_audit.api.deps import get_compliance_service
from far_audit.services.compliance import ComplianceService

logger = logging.getLogger(__name__)

router = APIRouter()


@router.delete("/clear-gl", summary="Delete every GL row and its links")
async def clear_gl(service: Annotated[ComplianceService, Depends(get_compliance_service)]):
    cleared = await service.clear_gl()
    logger.warning("Admin cleared %d GL rows", cleared)
    return {"ok": True, "cleared": {"gl": cleared}}


@router.delete("/clear-docs", summary="Delete every document, item and link")
async def clear_docs(service: Annotated[ComplianceService, Depends(get_compliance_service)]):
    cleared = await service.clear_documents()
    logger.warning("Admin cleared %d documents", cleared)
    return {"ok": True, "cleared": {"documents": cleared}}


@router.delete("/clear-all", summary="Delete all GL rows, documents and links")
async def clear_all(service: Annotated[ComplianceService, Depends(get_compliance_service)]):
    cleared = await service.clear_all()
    logger.warning("Admin cleared everything: %s", cleared)
    return {"ok": True, "cleared": cleared}
