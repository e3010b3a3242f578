"""Seed script: loads demo GL rows and documents for dev.

Runs against the configured STORAGE_BACKEND; with the database backend the
data survives, with the memory backend it only exercises the pipeline.
"""
import asyncio
import logging
import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from far_audit.core.config import settings
from far_audit.core.logging import setup_logging
from far_audit.schemas.document import Document, DocumentItem
from far_audit.schemas.gl import GLEntryIn
from far_audit.services.compliance import ComplianceService

logger = logging.getLogger("seed")

GL_ROWS = [
    {"id": "1001", "accountNumber": "6100", "description": "Dinner and wine with client",
     "amount": "152.34", "date": "2024-06-10", "vendor": "Acme Corp", "category": "Meals"},
    {"id": "1002", "accountNumber": "6200", "description": "Airfare business class to DC",
     "amount": "1,240.00", "date": "2024-06-12", "vendor": "United Airlines", "category": "Travel"},
    {"id": "1003", "accountNumber": "6300", "description": "Office supplies",
     "amount": "86.19", "date": "2024-06-14", "vendor": "Staples Inc", "category": "Supplies"},
]

DOCUMENTS = [
    (
        Document(
            id="doc-acme",
            filename="acme_receipt_approved.pdf",
            text_content="ACME CORP\nTotal $152.34\nApproved by J. Doe, Finance Manager on 06/11/2024",
            meta={"ocr_data": {"raw_text": "ACME CORP Total 152.34 Approved by J. Doe"}},
        ),
        [DocumentItem(id="item-acme", kind="receipt", vendor="acme", date="2024-06-11", amount="152.34")],
    ),
    (
        Document(id="doc-staples", filename="staples_receipt.jpg", text_content="Staples\nSubtotal 86.19"),
        [DocumentItem(id="item-staples", kind="receipt", vendor="Staples", date="2024-06-14", amount="86.19")],
    ),
]


async def seed():
    service = await ComplianceService.create(settings)
    try:
        ids = await service.save_gl([GLEntryIn.model_validate(row) for row in GL_ROWS])
        logger.info("Seeded GL rows: %s", ids)
        for document, items in DOCUMENTS:
            result = await service.ingest_document(document, items)
            logger.info("Seeded %s with %d auto-link(s)", document.filename, len(result.auto_links))
        for row in await service.current_results():
            logger.info("%s %-6s %s", row.id, row.status.value, row.far_issue)
    finally:
        await service.close()


if __name__ == "__main__":
    setup_logging()
    asyncio.run(seed())
