"""
Copilot service -- orchestrates validate -> execute -> compare -> insights -> chart -> log.

``run_intelligent_query`` is the tool the drafting model calls.  It never
raises for data problems: batch errors come back as a clarification,
failed sub-queries as ``success=False`` entries next to the ones that worked.

``answer_question`` drives one full turn: the model proposes a batch, the
batch runs, the model drafts prose from the result, and the grounding
validator accepts the draft or replaces it with the repaired answer.
"""
from __future__ import annotations

import datetime as dt
import threading
from dataclasses import dataclass
from typing import Any, Callable, Sequence

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from erp_copilot.copilot.cache import QueryCache, get_cache
from erp_copilot.copilot.chart_generator import suggest_chart
from erp_copilot.copilot.comparison import ComparisonEngine
from erp_copilot.copilot.executor import QueryExecutor, merge_results
from erp_copilot.copilot.explainer import explain_errors
from erp_copilot.copilot.insights import generate_insights
from erp_copilot.copilot.llm_client import Draft, ToolSpec, draft, query_tool_spec
from erp_copilot.copilot.spec import QueryMetadata, QueryResult, ToolRequest, ToolResult, ValidationVerdict
from erp_copilot.core.config import Settings, get_settings
from erp_copilot.core.logging import get_logger
from erp_copilot.core.utils import timer
from erp_copilot.db.query_log import ensure_log_table, log_tool_call
from erp_copilot.erp.client import ErpClient
from erp_copilot.governance.entity_catalog import EntityCatalog, load_entity_catalog
from erp_copilot.governance.grounding import validate_answer
from erp_copilot.governance.validator import validate_batch

logger = get_logger(__name__)

Drafter = Callable[[str, ToolSpec | None], Draft]


def _default_drafter(prompt: str, tool: ToolSpec | None) -> Draft:
    return draft(prompt, tool)


def windows_from_metadata(metadata: Sequence[QueryMetadata]) -> list[tuple[dt.date, dt.date]]:
    """Closed date windows (``>=`` and ``<=`` on one field) used by successful sub-queries."""
    windows: list[tuple[dt.date, dt.date]] = []
    for meta in metadata:
        if not meta.success:
            continue
        bounds: dict[str, dict[str, dt.date]] = {}
        for predicate in meta.domain:
            if not (isinstance(predicate, (list, tuple)) and len(predicate) == 3):
                continue
            field, op, value = predicate
            if op not in (">=", "<=") or not isinstance(value, str):
                continue
            try:
                bounds.setdefault(field, {})[op] = dt.date.fromisoformat(value[:10])
            except ValueError:
                continue
        for b in bounds.values():
            if ">=" in b and "<=" in b and (b[">="], b["<="]) not in windows:
                windows.append((b[">="], b["<="]))
    return windows


def merged_view(tool_result: ToolResult) -> QueryResult:
    """The merged answer of a tool result, as a single result for grounding."""
    return QueryResult(
        query_id="merged",
        success=tool_result.success,
        records=tool_result.data,
        count=tool_result.count,
        total=tool_result.total,
        grouped=tool_result.grouped,
        state_warning=tool_result.state_warning,
        cached=tool_result.cached,
        execution_ms=tool_result.execution_ms,
        error="; ".join(tool_result.errors) or None,
    )


@dataclass
class CopilotAnswer:
    question: str
    answer: str
    draft: str
    tool_result: ToolResult | None = None
    verdict: ValidationVerdict | None = None

    @property
    def repaired(self) -> bool:
        return bool(self.verdict and not self.verdict.is_clean)


class CopilotService:
    """One per deployment: owns the executor, the comparison engine and the audit hook."""

    def __init__(
        self,
        client: ErpClient,
        cache: QueryCache | None = None,
        catalog: EntityCatalog | None = None,
        settings: Settings | None = None,
    ):
        self.settings = settings or get_settings()
        self.catalog = catalog or load_entity_catalog()
        self.cache = cache or get_cache()
        self.executor = QueryExecutor(client, self.cache, self.catalog, self.settings)
        self.comparisons = ComparisonEngine(self.executor, self.settings)
        self._audit_ready = False

    # ── Tool call ───────────────────────────────────────

    def run_intelligent_query(self, request: ToolRequest, now: dt.date | dt.datetime | None = None) -> ToolResult:
        logger.info(
            "run_intelligent_query | queries=%d | comparison=%s | insights=%s",
            len(request.queries), request.include_comparison, request.include_insights,
        )
        with timer() as t:
            result = self._run(request, now)
        result = result.model_copy(update={"execution_ms": t["elapsed_ms"]})
        self._audit(request, result)
        return result

    def _run(self, request: ToolRequest, now: dt.date | dt.datetime | None) -> ToolResult:
        errors = validate_batch(request.queries, self.catalog, self.settings)
        if errors:
            logger.info("Batch rejected: %s", errors)
            return ToolResult(
                success=False,
                errors=errors,
                clarification=explain_errors(errors, mode=self._explain_mode()),
                query_metadata=[
                    QueryMetadata(query_id=q.id, entity=q.entity, operation=q.operation, filter_text=q.filter_text)
                    for q in request.queries
                ],
            )

        queries = list(request.queries)
        if request.include_comparison:
            queries = [
                q.model_copy(update={"compare_mode": "month-over-month"})
                if q.operation == "aggregate" and q.compare_mode is None else q
                for q in queries
            ]

        executions = self.executor.run_batch(queries, now)
        merged = merge_results(executions)
        merged_result = merged.as_result()
        comparisons = self.comparisons.compare_all(executions)

        insights = generate_insights(merged_result, comparisons, self.settings) if request.include_insights else []
        chart = None
        if merged.primary is not None:
            chart = suggest_chart(merged_result, merged.primary.prepared)

        ok = [e for e in executions if e.result.success]
        failed = [e for e in executions if not e.result.success]
        return ToolResult(
            success=bool(ok),
            data=merged.records,
            count=merged.count,
            total=merged.total,
            grouped=merged.grouped,
            comparison=comparisons[0] if comparisons else None,
            comparisons=comparisons,
            insights=insights,
            chart_data=chart,
            state_warning=merged.state_warning,
            cached=bool(ok) and all(e.result.cached for e in ok),
            query_metadata=[e.metadata() for e in executions],
            results=[e.result for e in executions],
            errors=[f"{e.spec.id}: {e.result.error}" for e in failed],
        )

    # ── Grounding ───────────────────────────────────────

    def validate(self, answer: str, tool_result: ToolResult | None, question: str = "") -> ValidationVerdict:
        if tool_result is None:
            return validate_answer(answer, None, question, settings=self.settings)
        return validate_answer(
            answer,
            merged_view(tool_result),
            question,
            comparisons=tool_result.comparisons,
            windows=windows_from_metadata(tool_result.query_metadata),
            settings=self.settings,
            supporting=[r for r in tool_result.results if r.success],
        )

    # ── Full turn ───────────────────────────────────────

    def answer_question(
        self,
        question: str,
        drafter: Drafter | None = None,
        now: dt.date | dt.datetime | None = None,
    ) -> CopilotAnswer:
        drafter = drafter or _default_drafter
        tool = query_tool_spec()
        first = drafter(question, tool)

        if first.tool_call is None or first.tool_call.name != tool.name:
            # No retrieved facts behind this answer; nothing to ground.
            verdict = self.validate(first.text, None, question)
            return CopilotAnswer(question, first.text, first.text, verdict=verdict)

        try:
            request = ToolRequest.model_validate(first.tool_call.arguments)
        except ValidationError as exc:
            logger.warning("Model proposed a malformed query batch: %s", exc.errors()[:3])
            message = explain_errors([f"Malformed query batch: {exc.errors()[0].get('msg', 'invalid')}"],
                                     mode=self._explain_mode())
            return CopilotAnswer(question, message, first.text)

        tool_result = self.run_intelligent_query(request, now)
        if tool_result.clarification:
            return CopilotAnswer(question, tool_result.clarification, first.text, tool_result)

        prompt = (
            f"Question: {question}\n\n"
            f"Tool result (JSON):\n{tool_result.model_dump_json(by_alias=True, exclude_none=True)}\n\n"
            + "".join(f"Insight: {i.text}\n" for i in tool_result.insights)
            + "\nAnswer the question using only names, amounts and periods present in the tool result."
        )
        second = drafter(prompt, None)
        verdict = self.validate(second.text, tool_result, question)
        final = second.text if verdict.is_clean else verdict.repaired_answer
        return CopilotAnswer(question, final, second.text, tool_result, verdict)

    # ── Internals ───────────────────────────────────────

    def _explain_mode(self) -> str:
        return "mock" if self.settings.llm_provider == "mock" else "llm"

    def _audit(self, request: ToolRequest, result: ToolResult) -> None:
        if not self.settings.audit_log_enabled:
            return
        # Fire-and-forget: the audit store must never block the response.
        try:
            if not self._audit_ready:
                ensure_log_table()
                self._audit_ready = True
        except SQLAlchemyError:
            logger.warning("Could not ensure tool log table (audit DB may not be available)")
            return
        log_tool_call(
            request=request.model_dump(mode="json", by_alias=True),
            query_metadata=[m.model_dump(mode="json", by_alias=True) for m in result.query_metadata],
            success=result.success,
            cached=result.cached,
            errors=result.errors,
            latency_ms=result.execution_ms,
        )


# ── Module-level default (API process) ──────────────────

_service: CopilotService | None = None
_service_lock = threading.Lock()


def get_service() -> CopilotService:
    """Process-wide service bound to the configured ERP and the default cache."""
    global _service
    with _service_lock:
        if _service is None:
            _service = CopilotService(ErpClient.from_settings(), get_cache())
        return _service


def run_intelligent_query(request: ToolRequest | dict[str, Any], service: CopilotService | None = None) -> ToolResult:
    """Tool entry point; accepts the camelCase JSON payload or a ``ToolRequest``."""
    if not isinstance(request, ToolRequest):
        request = ToolRequest.model_validate(request)
    return (service or get_service()).run_intelligent_query(request)
