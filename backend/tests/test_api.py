"""End-to-end tests for the /api/v1 routes over an in-memory compliance service."""
import json

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport

from far_audit.api.deps import get_compliance_service
from far_audit.core.config import Settings
from far_audit.core.limiter import limiter
from far_audit.main import app
from far_audit.rules.far_rules import load_rule_index
from far_audit.services.compliance import ComplianceService
from far_audit.services.stores import MemoryStore


# ─── Fixtures ─────────────────────────────────────────────────────────────────

class FakeChatClient:
    model = "fake-model"
    last_usage = None

    def __init__(self, reply: str):
        self.reply = reply
        self.calls = 0

    async def chat(self, messages, *, temperature, max_tokens, json_mode=False):
        self.calls += 1
        return self.reply


@pytest.fixture
def service():
    svc = ComplianceService(
        store=MemoryStore(),
        rule_index=load_rule_index(None),
        llm_client=FakeChatClient(json.dumps({"status": "YELLOW", "reasoning": "CFO approved the dinner"})),
        config=Settings(_env_file=None),
    )
    app.dependency_overrides[get_compliance_service] = lambda: svc
    limiter.reset()
    yield svc
    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def client(service):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


GL_ENTRIES = {
    "entries": [
        {
            "id": "g1",
            "accountNumber": "6100",
            "vendor": "Acme Corp",
            "amount": 152.34,
            "date": "2024-06-10",
            "description": "Dinner and wine with client",
        },
        {"id": "g2", "vendor": "Staples", "amount": "$48.10", "date": "06/01/2024", "description": "Office supplies"},
    ]
}

RECEIPT = {
    "document": {"filename": "scan.png", "text_content": 'OCR extracted data: {"body":"Approved by J. Doe"}'},
    "items": [{"id": "i1", "vendor": "acme", "amount": 152.34, "date": "2024-06-11"}],
}


# ─── GL ───────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_save_gl_and_read_audit_results(client):
    response = await client.post("/api/v1/gl", json=GL_ENTRIES)
    assert response.status_code == 200
    assert response.json() == {"inserted": 2, "ids": ["g1", "g2"]}

    results = (await client.get("/api/v1/gl/audit")).json()["results"]
    assert [r["status"] for r in results] == ["RED", "GREEN"]
    assert results[0]["farSection"] == "31.205-51"
    assert results[0]["farIssue"] == "Alcoholic Beverages (31.205-51)"
    assert results[0]["accountNumber"] == "6100"
    assert results[0]["amount"] == 152.34
    assert results[1]["date"] == "2024-06-01"


@pytest.mark.asyncio
async def test_gl_page_is_newest_first(client):
    await client.post("/api/v1/gl", json=GL_ENTRIES)
    page = (await client.get("/api/v1/gl", params={"limit": 1})).json()
    assert page["limit"] == 1
    assert [r["id"] for r in page["rows"]] == ["g1"]


@pytest.mark.asyncio
async def test_unparseable_amount_is_rejected(client):
    response = await client.post("/api/v1/gl", json={"entries": [{"id": "x", "amount": "twelve"}]})
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_page_limit_is_bounded(client):
    assert (await client.get("/api/v1/gl", params={"limit": 0})).status_code == 422


# ─── Documents and links ──────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_ingest_auto_links_and_lists_items(client):
    await client.post("/api/v1/gl", json=GL_ENTRIES)

    response = await client.post("/api/v1/docs/ingest", json=RECEIPT)
    assert response.status_code == 200
    body = response.json()
    assert body["document"]["doc_type"] == "approval"
    assert [(l["document_item_id"], l["gl_entry_id"], l["source"]) for l in body["auto_links"]] == [
        ("i1", "g1", "auto")
    ]

    snapshot = (await client.get("/api/v1/docs/items")).json()
    assert len(snapshot["items"]) == 1
    assert len(snapshot["links"]) == 1


@pytest.mark.asyncio
async def test_suggestions_rank_items_for_a_row(client):
    await client.post("/api/v1/gl", json=GL_ENTRIES)
    await client.post("/api/v1/docs/ingest", json=RECEIPT)

    body = (await client.get("/api/v1/docs/suggestions/g1")).json()

    assert body["gl_entry_id"] == "g1"
    assert body["candidates"][0]["document_item_id"] == "i1"
    assert body["candidates"][0]["score"] == 9.5
    assert body["candidates"][0]["best"] is True


@pytest.mark.asyncio
async def test_suggestions_for_unknown_row_is_404(client):
    response = await client.get("/api/v1/docs/suggestions/missing")
    assert response.status_code == 404
    assert response.json() == {"detail": "GL entry 'missing' not found"}


@pytest.mark.asyncio
async def test_manual_link_and_unlink(client, service):
    await client.post("/api/v1/gl", json=GL_ENTRIES)
    await client.post("/api/v1/docs/ingest", json=RECEIPT)
    payload = {"document_item_id": "i1", "gl_entry_id": "g2"}

    linked = await client.post("/api/v1/docs/link", json=payload)
    assert linked.status_code == 200
    assert linked.json() == {"ok": True, **payload}
    assert len(await service.registry.list_by_item("i1")) == 2

    unlinked = await client.request("DELETE", "/api/v1/docs/link", json=payload)
    assert unlinked.status_code == 200
    assert [l.gl_entry_id for l in await service.registry.list_by_item("i1")] == ["g1"]


@pytest.mark.asyncio
async def test_link_to_unknown_item_is_404(client):
    await client.post("/api/v1/gl", json=GL_ENTRIES)
    response = await client.post("/api/v1/docs/link", json={"document_item_id": "nope", "gl_entry_id": "g1"})
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_link_requires_both_ids(client):
    response = await client.post("/api/v1/docs/link", json={"document_item_id": "", "gl_entry_id": "g1"})
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_delete_gl_row_drops_its_links(client, service):
    await client.post("/api/v1/gl", json=GL_ENTRIES)
    await client.post("/api/v1/docs/ingest", json=RECEIPT)

    response = await client.delete("/api/v1/gl/g1")

    assert response.status_code == 200
    assert response.json() == {"ok": True, "id": "g1", "links_removed": 1}
    assert [r["id"] for r in (await client.get("/api/v1/gl/audit")).json()["results"]] == ["g2"]
    assert (await client.get("/api/v1/docs/items")).json()["links"] == []
    assert service.store.audit_trail[-1].action == "gl.deleted"


@pytest.mark.asyncio
async def test_delete_document_drops_items_and_links(client):
    await client.post("/api/v1/gl", json=GL_ENTRIES)
    document_id = (await client.post("/api/v1/docs/ingest", json=RECEIPT)).json()["document"]["id"]

    response = await client.delete(f"/api/v1/docs/documents/{document_id}")

    assert response.json() == {"ok": True, "id": document_id, "links_removed": 1}
    snapshot = (await client.get("/api/v1/docs/items")).json()
    assert (snapshot["items"], snapshot["links"], snapshot["documents"]) == ([], [], [])
    assert len((await client.get("/api/v1/gl/audit")).json()["results"]) == 2


@pytest.mark.asyncio
@pytest.mark.parametrize("path", ["/api/v1/gl/missing", "/api/v1/docs/documents/missing"])
async def test_delete_unknown_entity_is_404(client, path):
    response = await client.delete(path)
    assert response.status_code == 404

# ─── Review, requirements, rules ──────────────────────────────────────────────

@pytest.mark.asyncio
async def test_llm_review_re_evaluates_rows_with_approvals(client, service):
    await client.post("/api/v1/gl", json=GL_ENTRIES)
    await client.post("/api/v1/docs/ingest", json=RECEIPT)

    response = await client.post("/api/v1/llm-review", json={"gl_entry_ids": ["g1"]})

    assert response.status_code == 200
    [row] = response.json()["results"]
    assert row["status"] == "YELLOW"
    assert row["approvalBasedReEvaluation"] is True
    assert row["gptReasoning"] == "CFO approved the dinner"
    assert service.llm_client.calls == 1


@pytest.mark.asyncio
async def test_llm_review_accepts_boolean_approvals_flag(client, service):
    service.llm_client.reply = json.dumps({"status": "GREEN", "reasoning": "approved", "approvalsFound": True})
    await client.post("/api/v1/gl", json=GL_ENTRIES)
    await client.post("/api/v1/docs/ingest", json=RECEIPT)

    response = await client.post("/api/v1/llm-review", json={})

    assert response.status_code == 200
    rows = {r["id"]: r for r in response.json()["results"]}
    assert rows["g1"]["status"] == "GREEN"
    assert rows["g1"]["approvalsFound"] == ["approved"]
    assert rows["g2"]["status"] == "GREEN"

@pytest.mark.asyncio
async def test_llm_review_of_unknown_row_is_404(client):
    response = await client.post("/api/v1/llm-review", json={"gl_entry_ids": ["nope"]})
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_requirements_projection(client):
    await client.post("/api/v1/gl", json=GL_ENTRIES)

    body = (await client.get("/api/v1/requirements")).json()

    assert body["policy"] == {"receipt_threshold": None}
    red, green = body["rows"]
    assert red["receiptRequired"] is True
    assert red["approvalRequired"] is True
    assert red["pending"] is True
    assert red["approvalState"] == "PENDING"
    assert green["approvalState"] == "TENTATIVE"


@pytest.mark.asyncio
async def test_rules_endpoint_lists_priority_order(client):
    body = (await client.get("/api/v1/rules")).json()
    assert body["count"] == len(body["rules"]) == 38
    assert body["load_errors"] == []
    severities = [r["severity"] for r in body["rules"]]
    assert severities == sorted(severities)  # EXPRESSLY_UNALLOWABLE sorts before LIMITED_ALLOWABLE


# ─── Admin ────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_admin_clear_all(client):
    await client.post("/api/v1/gl", json=GL_ENTRIES)
    await client.post("/api/v1/docs/ingest", json=RECEIPT)

    response = await client.delete("/api/v1/admin/clear-all")

    assert response.json() == {"ok": True, "cleared": {"gl": 2, "documents": 1}}
    assert (await client.get("/api/v1/gl/audit")).json() == {"results": []}


@pytest.mark.asyncio
async def test_admin_clear_docs_keeps_gl_rows(client):
    await client.post("/api/v1/gl", json=GL_ENTRIES)
    await client.post("/api/v1/docs/ingest", json=RECEIPT)

    response = await client.delete("/api/v1/admin/clear-docs")

    assert response.json()["cleared"] == {"documents": 1}
    assert len((await client.get("/api/v1/gl/audit")).json()["results"]) == 2
    assert (await client.get("/api/v1/docs/items")).json()["links"] == []
