"""Compliance service: the one state container behind the API.

Holds the rule index, the store, the link registry, the LLM client and the
match-candidate cache. Created once in the app lifespan and closed on
shutdown. Pipelines:

  1. GL save       → store rows → deterministic audit over all rows → persist
  2. Document ingest → classify/extract approvals → store → auto-link items
  3. LLM review    → per row, serially: linked docs → re-evaluate → persist all
  4. Requirements  → project current results against the items snapshot
"""
import asyncio
import logging
import uuid
from collections import OrderedDict

from far_audit.ai.llm_client import AnthropicChatClient, ChatClient, truncate_for_log
from far_audit.ai.re_evaluator import LinkedDocument, ReEvaluationOutcome, re_evaluate
from far_audit.core.config import Settings, settings as default_settings
from far_audit.core.errors import NotFoundError
from far_audit.rules.auditor import audit_all
from far_audit.rules.far_rules import RuleIndex, load_rule_index
from far_audit.rules.matcher import MatchScore, rank_candidates, select_auto_link
from far_audit.schemas.audit import AICallRecord
from far_audit.schemas.document import (
    Document,
    DocType,
    DocumentItem,
    IngestResponse,
    ItemsSnapshot,
    Link,
    LinkSource,
)
from far_audit.schemas.gl import AuditResult, GLEntryIn, GLRow
from far_audit.schemas.requirements import RequirementsRow
from far_audit.services import audit
from far_audit.services.approval_detector import classify_document, extract_approvals_from_text
from far_audit.services.link_registry import LinkRegistry
from far_audit.services.requirements import ReceiptPolicy, project_requirements
from far_audit.services.stores import ComplianceStore, MemoryStore, SqlStore

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 1000


def _keeps_review(result: AuditResult) -> bool:
    return result.approval_based_re_evaluation or result.re_evaluation_error is not None


class CandidateCache:
    """Bounded LRU of ranked match candidates per GL row."""

    def __init__(self, maxsize: int):
        self.maxsize = maxsize
        self._data: OrderedDict[str, list[MatchScore]] = OrderedDict()

    def get(self, gl_entry_id: str) -> list[MatchScore] | None:
        if gl_entry_id not in self._data:
            return None
        self._data.move_to_end(gl_entry_id)
        return self._data[gl_entry_id]

    def put(self, gl_entry_id: str, candidates: list[MatchScore]) -> None:
        self._data[gl_entry_id] = candidates
        self._data.move_to_end(gl_entry_id)
        while len(self._data) > self.maxsize:
            self._data.popitem(last=False)

    def clear(self) -> None:
        self._data.clear()

    def __len__(self) -> int:
        return len(self._data)


class ComplianceService:
    def __init__(
        self,
        store: ComplianceStore,
        rule_index: RuleIndex,
        llm_client: ChatClient,
        config: Settings = default_settings,
    ):
        self.store = store
        self.rule_index = rule_index
        self.llm_client = llm_client
        self.config = config
        self.registry = LinkRegistry(store)
        self.candidates = CandidateCache(config.MATCH_CACHE_SIZE)
        self.policy = ReceiptPolicy.from_settings(config.RECEIPT_POLICY_THRESHOLD)
        self._engine = None

    @classmethod
    async def create(cls, config: Settings = default_settings) -> "ComplianceService":
        """Build the service for the configured storage backend."""
        engine = None
        if config.STORAGE_BACKEND == "database":
            from far_audit.db.session import AsyncSessionLocal, engine, init_models

            await init_models(engine)
            store: ComplianceStore = SqlStore(AsyncSessionLocal)
        elif config.STORAGE_BACKEND == "memory":
            store = MemoryStore()
        else:
            raise ValueError(f"Unknown STORAGE_BACKEND {config.STORAGE_BACKEND!r}")

        service = cls(
            store=store,
            rule_index=load_rule_index(config.FAR_RULES_OVERLAY_PATH),
            llm_client=AnthropicChatClient(
                api_key=config.ANTHROPIC_API_KEY,
                model=config.ANTHROPIC_MODEL,
                timeout=config.LLM_TIMEOUT_SECONDS,
            ),
            config=config,
        )
        service._engine = engine
        logger.info(
            "Compliance service ready: backend=%s rules=%d", config.STORAGE_BACKEND, len(service.rule_index)
        )
        return service

    async def close(self) -> None:
        close = getattr(self.llm_client, "close", None)
        if close is not None:
            await close()
        if self._engine is not None:
            await self._engine.dispose()
        self.candidates.clear()

    # ─── GL ───────────────────────────────────────────────────────────────────

    async def save_gl(self, entries: list[GLEntryIn]) -> list[str]:
        rows = [
            GLRow(**entry.model_dump(exclude={"id"}), id=entry.id or str(uuid.uuid4()))
            for entry in entries
        ]
        ids = await self.store.save_gl(rows)
        results = await self.current_results()
        await self.store.save_audit_results(results)
        self.candidates.clear()
        logger.info("Saved %d GL rows; %d rows audited", len(ids), len(results))
        return ids

    async def current_results(self) -> list[AuditResult]:
        """Audit every GL row, keeping stored LLM review outcomes of untouched rows.

        A stored outcome is either a successful re-evaluation or the error that
        prevented one.
        """
        rows = await self.store.list_gl()
        stored = await self.store.list_audit_results()
        results = audit_all(rows, self.rule_index)
        return [
            stored[r.id] if r.id in stored and _keeps_review(stored[r.id]) else r
            for r in results
        ]

    async def fetch_gl(self, limit: int = 100, offset: int = 0) -> list[AuditResult]:
        limit = max(1, min(limit, MAX_PAGE_SIZE))
        offset = max(0, offset)
        rows = await self.store.fetch_gl(limit, offset)
        stored = await self.store.list_audit_results()
        fresh = {r.id: r for r in audit_all([row for row in rows if row.id not in stored], self.rule_index)}
        return [stored.get(row.id) or fresh[row.id] for row in rows]

    # ─── Documents and links ──────────────────────────────────────────────────

    async def ingest_document(self, document: Document, items: list[DocumentItem]) -> IngestResponse:
        """Store an OCR'd document and auto-link its items to the best GL rows."""
        if document.doc_type is DocType.UNKNOWN:
            doc_type, extracted = classify_document(document.text_content, document.filename)
            document = document.model_copy(update={"doc_type": doc_type})
        else:
            extracted = extract_approvals_from_text(document.text_content)
        if not document.approvals and extracted:
            document = document.model_copy(update={"approvals": extracted})

        items = [item.model_copy(update={"document_id": document.id}) for item in items]

        gl_rows = await self.store.list_gl()
        proposed: list[Link] = []
        for item in items:
            best = select_auto_link(item, gl_rows, self.config.AUTO_LINK_MIN_SCORE)
            if best is not None:
                proposed.append(
                    Link(
                        document_item_id=item.id,
                        gl_entry_id=best.gl_entry_id,
                        source=LinkSource.AUTO,
                        score=best.score,
                    )
                )
        auto_links = await self.registry.save_document(document, items, proposed)
        self.candidates.clear()
        logger.info(
            "Ingested document %s (%s): %d items, %d auto-linked",
            document.id, document.doc_type.value, len(items), len(auto_links),
        )
        return IngestResponse(document=document, items=items, auto_links=auto_links)

    async def list_items(self) -> ItemsSnapshot:
        return await self.store.list_items()

    async def link(self, document_item_id: str, gl_entry_id: str) -> Link:
        link = await self.registry.link(document_item_id, gl_entry_id, source=LinkSource.MANUAL)
        self.candidates.clear()
        return link

    async def unlink(self, document_item_id: str, gl_entry_id: str) -> None:
        await self.registry.unlink(document_item_id, gl_entry_id)
        self.candidates.clear()

    async def delete_gl_entry(self, gl_entry_id: str) -> int:
        """Delete one GL row and its links. Returns the number of links removed."""
        row = await self.store.get_gl(gl_entry_id)
        if row is None:
            raise NotFoundError("GL entry", gl_entry_id)
        removed = await self.registry.cascade_on_delete(
            gl_entry_id=gl_entry_id,
            trail=audit.entry(
                "gl.deleted", "gl_entry", gl_entry_id, before=row.model_dump(mode="json")
            ),
        )
        self.candidates.clear()
        return removed

    async def delete_document(self, document_id: str) -> int:
        """Delete one document with its items and their links."""
        document = await self.store.get_document(document_id)
        if document is None:
            raise NotFoundError("document", document_id)
        removed = await self.registry.cascade_on_delete(
            document_id=document_id,
            trail=audit.entry(
                "document.deleted",
                "document",
                document_id,
                before={"filename": document.filename, "doc_type": document.doc_type.value},
            ),
        )
        self.candidates.clear()
        return removed

    async def suggestions(self, gl_entry_id: str) -> list[MatchScore]:
        """Document items ranked for one GL row, for the manual-link picker."""
        cached = self.candidates.get(gl_entry_id)
        if cached is not None:
            return cached
        row = await self.store.get_gl(gl_entry_id)
        if row is None:
            raise NotFoundError("GL entry", gl_entry_id)
        snapshot = await self.store.list_items()
        ranked = rank_candidates(row, snapshot.items, ui=True)
        self.candidates.put(gl_entry_id, ranked)
        return ranked

    async def linked_documents(self, gl_entry_id: str) -> list[LinkedDocument]:
        linked: list[LinkedDocument] = []
        for link in await self.registry.list_by_gl(gl_entry_id):
            item = await self.store.get_item(link.document_item_id)
            if item is None:
                continue
            document = await self.store.get_document(item.document_id)
            if document is None:
                continue
            linked.append(LinkedDocument(link=link, item=item, document=document))
        return linked

    # ─── LLM review ───────────────────────────────────────────────────────────

    async def review(self, gl_entry_ids: list[str] | None = None) -> list[AuditResult]:
        """Serially re-evaluate rows with approval-bearing documents.

        Each row starts from its deterministic verdict. Results are written
        only after every row is done, so a cancelled review persists nothing.
        """
        rows = await self.store.list_gl()
        if gl_entry_ids is not None:
            by_id = {row.id: row for row in rows}
            missing = [gl_id for gl_id in gl_entry_ids if gl_id not in by_id]
            if missing:
                raise NotFoundError("GL entry", missing[0])
            rows = [by_id[gl_id] for gl_id in dict.fromkeys(gl_entry_ids)]

        results: list[AuditResult] = []
        for current in audit_all(rows, self.rule_index):
            try:
                linked = await asyncio.wait_for(
                    self.linked_documents(current.id),
                    timeout=self.config.OCR_FETCH_TIMEOUT_SECONDS,
                )
            except asyncio.TimeoutError:
                message = f"document fetch timed out after {self.config.OCR_FETCH_TIMEOUT_SECONDS:g}s"
                logger.warning("Review of GL %s skipped: %s", current.id, message)
                results.append(current.model_copy(update={"re_evaluation_error": message}))
                continue

            updated, outcome = await re_evaluate(
                current,
                linked,
                self.rule_index,
                self.llm_client,
                timeout=self.config.LLM_TIMEOUT_SECONDS,
                temperature=self.config.LLM_TEMPERATURE,
                max_tokens=self.config.LLM_MAX_TOKENS,
            )
            if outcome is not None:
                await self._record_ai_call(current.id, outcome)
            results.append(updated)

        trail = [
            audit.entry(
                action="gl.re_evaluated",
                entity_type="gl_entry",
                entity_id=after.id,
                before={"status": before.status.value, "far_section": before.far_section},
                after={"status": after.status.value, "far_section": after.far_section},
                notes=after.gpt_reasoning,
            )
            for before, after in zip(audit_all(rows, self.rule_index), results)
            if after.approval_based_re_evaluation and after.status != before.status
        ]
        await self.store.save_audit_results(results, trail)
        logger.info(
            "LLM review finished: %d rows, %d re-evaluated, %d errors",
            len(results),
            sum(r.approval_based_re_evaluation for r in results),
            sum(r.re_evaluation_error is not None for r in results),
        )
        return results

    async def _record_ai_call(self, gl_entry_id: str, outcome: ReEvaluationOutcome) -> None:
        usage = getattr(self.llm_client, "last_usage", None)
        error = outcome.error.message if outcome.error else None
        await self.store.record_ai_call(
            AICallRecord(
                gl_entry_id=gl_entry_id,
                model=getattr(self.llm_client, "model", None) or self.config.ANTHROPIC_MODEL,
                prompt_tokens=usage.prompt_tokens if usage else None,
                completion_tokens=usage.completion_tokens if usage else None,
                latency_ms=usage.latency_ms if usage else None,
                status="success" if outcome.ok else ("timeout" if error and "timed out" in error else "error"),
                error_message=error,
                response_json=truncate_for_log(outcome.raw_response) if outcome.raw_response else None,
            )
        )

    # ─── Requirements ─────────────────────────────────────────────────────────

    async def requirements(self) -> list[RequirementsRow]:
        results = await self.current_results()
        snapshot = await self.store.list_items()
        return project_requirements(results, snapshot, self.rule_index, self.policy)

    # ─── Admin ────────────────────────────────────────────────────────────────

    async def clear_gl(self) -> int:
        cleared = await self.store.clear_gl()
        self.candidates.clear()
        await audit.log(self.store, "admin.clear_gl", "gl_entry", notes=f"{cleared} rows")
        return cleared

    async def clear_documents(self) -> int:
        cleared = await self.store.clear_documents()
        self.candidates.clear()
        await audit.log(self.store, "admin.clear_docs", "document", notes=f"{cleared} documents")
        return cleared

    async def clear_all(self) -> dict[str, int]:
        return {"gl": await self.clear_gl(), "documents": await self.clear_documents()}

    async def counts(self) -> dict[str, int]:
        snapshot = await self.store.list_items()
        return {
            "gl": await self.store.count_gl(),
            "documents": len(snapshot.documents),
            "items": len(snapshot.items),
            "links": len(snapshot.links),
        }
