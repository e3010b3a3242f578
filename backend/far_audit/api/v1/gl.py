"""GL endpoints: upload rows, page through them, read audit results."""
import logging
from typing import Annotated

from fastapi import APIRouter, Depends, Query

from far_audit.api.deps import get_compliance_service
from far_audit.schemas.gl import AuditResultsOut, GLPage, GLSaveRequest, GLSaveResponse
from far_audit.services.compliance import MAX_PAGE_SIZE, ComplianceService

logger = logging.getLogger(__name__)

router = APIRouter()


# ─── POST /gl ───

@router.post("", response_model=GLSaveResponse, summary="Save GL rows and audit them")
async def save_gl(
    body: GLSaveRequest,
    service: Annotated[ComplianceService, Depends(get_compliance_service)],
):
    ids = await service.save_gl(body.entries)
    return GLSaveResponse(inserted=len(ids), ids=ids)


# ─── GET /gl ───

@router.get("", response_model=GLPage, summary="Page through audited GL rows")
async def list_gl(
    service: Annotated[ComplianceService, Depends(get_compliance_service)],
    limit: int = Query(default=100, ge=1, le=MAX_PAGE_SIZE),
    offset: int = Query(default=0, ge=0),
):
    """Newest first (date desc, then id desc)."""
    rows = await service.fetch_gl(limit=limit, offset=offset)
    return GLPage(rows=rows, limit=limit, offset=offset)


# ─── GET /gl/audit ───

@router.get("/audit", response_model=AuditResultsOut, summary="Current audit results in upload order")
async def audit_results(
    service: Annotated[ComplianceService, Depends(get_compliance_service)],
):
    return AuditResultsOut(results=await service.current_results())


# ─── DELETE /gl/{gl_entry_id} ───

@router.delete("/{gl_entry_id}", summary="Delete one GL row and its links")
async def delete_gl_entry(
    gl_entry_id: str,
    service: Annotated[ComplianceService, Depends(get_compliance_service)],
):
    removed = await service.delete_gl_entry(gl_entry_id)
    return {"ok": True, "id": gl_entry_id, "links_removed": removed}
