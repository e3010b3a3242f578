"""Document endpoints: ingest OCR output, list items, manage links."""
import logging
from typing import Annotated

from fastapi import APIRouter, Depends

from far_audit.api.deps import get_compliance_service
from far_audit.schemas.document import (
    IngestRequest,
    IngestResponse,
    ItemsSnapshot,
    LinkRequest,
    LinkResponse,
    MatchCandidateOut,
    SuggestionsOut,
)
from far_audit.services.compliance import ComplianceService

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/items", response_model=ItemsSnapshot, summary="All document items, links and documents")
async def list_items(
    service: Annotated[ComplianceService, Depends(get_compliance_service)],
):
    return await service.list_items()


@router.post("/ingest", response_model=IngestResponse, summary="Store an OCR'd document and auto-link its items")
async def ingest_document(
    body: IngestRequest,
    service: Annotated[ComplianceService, Depends(get_compliance_service)],
):
    return await service.ingest_document(body.document, body.items)


@router.post("/link", response_model=LinkResponse, summary="Link a document item to a GL row")
async def link_item(
    body: LinkRequest,
    service: Annotated[ComplianceService, Depends(get_compliance_service)],
):
    await service.link(body.document_item_id, body.gl_entry_id)
    return LinkResponse(document_item_id=body.document_item_id, gl_entry_id=body.gl_entry_id)


@router.delete("/link", response_model=LinkResponse, summary="Remove a document item ↔ GL link")
async def unlink_item(
    body: LinkRequest,
    service: Annotated[ComplianceService, Depends(get_compliance_service)],
):
    await service.unlink(body.document_item_id, body.gl_entry_id)
    return LinkResponse(document_item_id=body.document_item_id, gl_entry_id=body.gl_entry_id)


@router.get(
    "/suggestions/{gl_entry_id}",
    response_model=SuggestionsOut,
    summary="Document items ranked as link candidates for a GL row",
)
async def suggestions(
    gl_entry_id: str,
    service: Annotated[ComplianceService, Depends(get_compliance_service)],
):
    ranked = await service.suggestions(gl_entry_id)
    return SuggestionsOut(
        gl_entry_id=gl_entry_id,
        candidates=[
            MatchCandidateOut(
                document_item_id=c.document_item_id,
                score=c.score,
                ui_score=c.ui_score,
                best=c.best,
                vendor_match=c.vendor_match,
                amount_delta=float(c.amount_delta) if c.amount_delta is not None else None,
                date_delta_days=c.date_delta_days,
                discrepancies=list(c.discrepancies),
            )
            for c in ranked
        ],
    )


@router.delete("/documents/{document_id}", summary="Delete a document, its items and their links")
async def delete_document(
    document_id: str,
    service: Annotated[ComplianceService, Depends(get_compliance_service)],
):
    removed = await service.delete_document(document_id)
    return {"ok": True, "id": document_id, "links_removed": removed}
