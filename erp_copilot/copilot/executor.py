"""
Execution engine: runs a batch of sub-queries against the ERP.

Per sub-query:
  1. resolve the entity (aliases; header -> line entity when grouping by product)
  2. translate the filter phrase into a DomainFilter
  3. serve from cache, or call the read RPC and cache non-empty successes
  4. attach a state warning to unfiltered aggregates over stateful entities

A batch runs concurrently, one worker per sub-query.  Failures become
``success=False`` results; siblings are unaffected.
"""
from __future__ import annotations

import datetime as dt
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, replace
from typing import Any, Sequence

import httpx

from erp_copilot.copilot.cache import QueryCache, make_cache_key
from erp_copilot.copilot.filter_translator import DomainFilter, translate
from erp_copilot.copilot.spec import GroupTotals, QueryMetadata, QueryResult, StateWarning, SubQuerySpec
from erp_copilot.copilot.suggestions import closest_field
from erp_copilot.core.config import Settings, get_settings
from erp_copilot.core.logging import get_logger, query_logger
from erp_copilot.core.utils import business_today, month_bounds, timer
from erp_copilot.erp.client import ErpClient, ErpError, ErpRpcError, display_label
from erp_copilot.governance.entity_catalog import EntityCatalog, EntityDef, load_entity_catalog
from erp_copilot.governance.state_guard import check_state_mix

logger = get_logger(__name__)

_TECHNICAL_PREFIXES = ("message_", "activity_", "website_message", "access_", "__")
_TECHNICAL_FIELDS = {"id", "display_name", "create_uid", "write_uid", "write_date", "has_message"}


# ── Prepared queries ────────────────────────────────────


@dataclass(frozen=True)
class PreparedQuery:
    """A sub-query with its entity and domain resolved.  Immutable."""

    spec: SubQuerySpec
    entity: EntityDef
    domain: DomainFilter
    group_by: tuple[str, ...]
    limit: int | None
    order_by: str | None

    @property
    def query_id(self) -> str:
        return self.spec.id

    @property
    def operation(self) -> str:
        return self.spec.operation

    @property
    def cache_key(self) -> str:
        return make_cache_key(
            self.entity.model, self.operation, self.domain.as_rpc(), self.group_by, self.limit, self.order_by,
        )

    @property
    def metric_key(self) -> tuple[str, str, str, tuple[str, ...]]:
        """Results sharing this key answer the same metric and may be summed."""
        return (self.entity.model, self.entity.amount_field or "", self.operation, self.group_by)

    def with_domain(self, domain: DomainFilter) -> "PreparedQuery":
        return replace(self, domain=domain)


@dataclass
class Execution:
    """Outcome of one sub-query: what ran and what came back."""

    spec: SubQuerySpec
    result: QueryResult
    prepared: PreparedQuery | None = None

    def metadata(self) -> QueryMetadata:
        p = self.prepared
        return QueryMetadata(
            query_id=self.spec.id,
            entity=p.entity.name if p else self.spec.entity,
            model=p.entity.model if p else None,
            operation=self.spec.operation,
            filter_text=self.spec.filter_text,
            domain=p.domain.as_rpc() if p else [],
            cached=self.result.cached,
            success=self.result.success,
        )


# ── Value helpers ───────────────────────────────────────


def _flatten_record(record: dict[str, Any]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for k, v in record.items():
        if isinstance(v, list) and len(v) == 2 and isinstance(v[0], int):
            out[k] = display_label(v)
        else:
            out[k] = v
    return out


def _row_count(row: dict[str, Any], group_by: Sequence[str]) -> int:
    if "__count" in row:
        return int(row["__count"] or 0)
    if group_by:
        return int(row.get(f"{group_by[0].split(':')[0]}_count", 0) or 0)
    return 0


def _row_amount(row: dict[str, Any], amount_field: str) -> float:
    value = row.get(amount_field, row.get(f"{amount_field}:sum", 0.0))
    return float(value or 0.0)


def _row_label(row: dict[str, Any], group_by: Sequence[str]) -> str:
    return " / ".join(display_label(row.get(g)) for g in group_by)


def _sorted_groups(grouped: dict[str, GroupTotals]) -> dict[str, GroupTotals]:
    return dict(sorted(grouped.items(), key=lambda kv: (-kv[1].total, -kv[1].count, kv[0])))


def _is_date_grouping(p: "PreparedQuery") -> bool:
    """Date groups keep the ERP's chronological order instead of total order."""
    if not p.group_by:
        return False
    base, sep, _ = p.group_by[0].partition(":")
    return bool(sep) or base == p.entity.date_field


# ── Engine ──────────────────────────────────────────────


class QueryExecutor:
    """Concurrent batch executor bound to one ERP client and one cache."""

    def __init__(
        self,
        client: ErpClient,
        cache: QueryCache,
        catalog: EntityCatalog | None = None,
        settings: Settings | None = None,
    ):
        self.client = client
        self.cache = cache
        self.catalog = catalog or load_entity_catalog()
        self.settings = settings or get_settings()

    # ── Preparation ─────────────────────────────────────

    def resolve_entity(self, spec: SubQuerySpec) -> EntityDef:
        entity = self.catalog.resolve(spec.entity)
        if entity is None:
            raise ValueError(f"Unknown entity '{spec.entity}'")
        line = self.catalog.resolve(entity.line_entity) if entity.line_entity else None
        if line is None or "product_id" in entity.known_fields:
            return entity
        if any(line.group_field(g).split(":")[0] == "product_id" for g in spec.group_by):
            logger.info("Grouping %s by product: switching to %s", entity.model, line.model)
            return line
        return entity

    def prepare(self, spec: SubQuerySpec, now: dt.date | dt.datetime) -> PreparedQuery:
        entity = self.resolve_entity(spec)
        domain = translate(entity, spec.filter_text, spec.explicit_date_range, now=now)

        if spec.compare_mode and domain.date_window() is None:
            today = now.date() if isinstance(now, dt.datetime) else now
            domain = domain.with_date_window(*month_bounds(today.year, today.month))

        limit = spec.limit
        if spec.operation == "search":
            limit = limit or self.settings.default_limit
        if limit is not None:
            limit = max(1, min(limit, self.settings.max_limit))

        return PreparedQuery(
            spec=spec,
            entity=entity,
            domain=domain,
            group_by=tuple(entity.group_field(g) for g in spec.group_by),
            limit=limit,
            order_by=spec.order_by.strip() if spec.order_by else None,
        )

    # ── Batch execution ─────────────────────────────────

    def run_batch(self, specs: Sequence[SubQuerySpec], now: dt.date | dt.datetime | None = None) -> list[Execution]:
        """Prepare and execute every spec concurrently; output follows input order."""
        now = now or business_today()
        slots: list[Execution | PreparedQuery] = []
        for spec in specs:
            try:
                slots.append(self.prepare(spec, now))
            except ValueError as exc:
                slots.append(Execution(spec, QueryResult(query_id=spec.id, success=False, error=str(exc))))

        pending = [s for s in slots if isinstance(s, PreparedQuery)]
        done = iter(self.run_prepared(pending))
        return [next(done) if isinstance(s, PreparedQuery) else s for s in slots]

    def execute_batch(self, specs: Sequence[SubQuerySpec], now: dt.date | dt.datetime | None = None) -> list[QueryResult]:
        return [e.result for e in self.run_batch(specs, now)]

    def run_prepared(self, prepared: Sequence[PreparedQuery]) -> list[Execution]:
        if not prepared:
            return []
        workers = min(len(prepared), self.settings.max_batch_size)
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="subquery") as pool:
            results = list(pool.map(self.execute, prepared))
        return [Execution(p.spec, r, p) for p, r in zip(prepared, results)]

    # ── Single query ────────────────────────────────────

    def execute(self, prepared: PreparedQuery) -> QueryResult:
        log = query_logger(logger, prepared.query_id)
        key = prepared.cache_key
        with timer() as t:
            hit = self.cache.get(key)
        if hit is not None:
            log.info("cache hit %s.%s", prepared.entity.model, prepared.operation)
            return hit.model_copy(update={"query_id": prepared.query_id, "cached": True, "execution_ms": t["elapsed_ms"]})

        log.info(
            "%s %s domain=%s group_by=%s",
            prepared.operation, prepared.entity.model, prepared.domain.as_rpc(), list(prepared.group_by),
        )
        with timer() as t:
            try:
                result = self._run_with_correction(prepared, log)
            except (ErpError, httpx.HTTPError, ValueError) as exc:
                log.warning("failed: %s", exc)
                result = QueryResult(query_id=prepared.query_id, success=False, error=str(exc) or type(exc).__name__)
        result = result.model_copy(update={"execution_ms": t["elapsed_ms"]})

        if result.success and not result.is_empty:
            self.cache.put(key, result)
        return result

    def _run_with_correction(self, prepared: PreparedQuery, log: Any) -> QueryResult:
        try:
            return self._dispatch(prepared)
        except ErpRpcError as exc:
            if not exc.is_invalid_field:
                raise
            fixed = self._corrected(prepared)
            if fixed is None:
                raise
            log.info("retrying with group_by=%s order_by=%s", list(fixed.group_by), fixed.order_by)
            return self._dispatch(fixed)

    def _corrected(self, prepared: PreparedQuery) -> PreparedQuery | None:
        entity = prepared.entity
        group_by = tuple(closest_field(g, entity) or g for g in prepared.group_by)
        order_by = prepared.order_by
        if order_by:
            name, _, direction = order_by.partition(" ")
            fixed = closest_field(name, entity)
            if fixed:
                order_by = f"{fixed} {direction}".strip()
        if group_by == prepared.group_by and order_by == prepared.order_by:
            return None
        return replace(prepared, group_by=group_by, order_by=order_by)

    def _dispatch(self, p: PreparedQuery) -> QueryResult:
        handler = {
            "search": self._search,
            "count": self._count,
            "aggregate": self._aggregate,
            "distinct": self._distinct,
            "discover": self._discover,
            "inspect": self._inspect,
        }.get(p.operation)
        if handler is None:
            raise ValueError(f"Unsupported operation '{p.operation}'")
        return handler(p)

    # ── Operations ──────────────────────────────────────

    def _state_warning(self, p: PreparedQuery) -> StateWarning | None:
        return check_state_mix(self.client, p.entity, p.domain)

    def _search(self, p: PreparedQuery) -> QueryResult:
        fields = list(p.entity.default_fields)
        rows = self.client.search_read(p.entity.model, p.domain.as_rpc(), fields, limit=p.limit, order=p.order_by)
        records = [_flatten_record(r) for r in rows]
        amount = p.entity.amount_field
        total = sum(float(r.get(amount) or 0.0) for r in rows) if amount else None
        return QueryResult(query_id=p.query_id, success=True, records=records, count=len(records), total=total)

    def _count(self, p: PreparedQuery) -> QueryResult:
        n = self.client.search_count(p.entity.model, p.domain.as_rpc())
        return QueryResult(query_id=p.query_id, success=True, count=n, state_warning=self._state_warning(p))

    def _aggregate(self, p: PreparedQuery) -> QueryResult:
        amount = p.entity.amount_field
        fields = [f"{amount}:sum"] if amount else []
        rows = self.client.read_group(p.entity.model, p.domain.as_rpc(), fields, list(p.group_by))

        grouped: dict[str, GroupTotals] = {}
        count, total = 0, 0.0
        for row in rows:
            n = _row_count(row, p.group_by)
            value = _row_amount(row, amount) if amount else float(n)
            count += n
            total += value
            if p.group_by:
                label = _row_label(row, p.group_by)
                current = grouped.get(label, GroupTotals())
                grouped[label] = GroupTotals(count=current.count + n, total=current.total + value)

        if grouped:
            if not _is_date_grouping(p):
                grouped = _sorted_groups(grouped)
            if p.spec.limit:
                grouped = dict(list(grouped.items())[: p.limit])

        return QueryResult(
            query_id=p.query_id,
            success=True,
            count=count,
            total=round(total, 2),
            grouped=grouped if p.group_by else None,
            state_warning=self._state_warning(p),
        )

    def _distinct(self, p: PreparedQuery) -> QueryResult:
        if not p.group_by:
            raise ValueError("distinct requires a groupBy field")
        field = p.group_by[0]
        rows = self.client.read_group(p.entity.model, p.domain.as_rpc(), [field.split(":")[0]], [field])
        grouped: dict[str, GroupTotals] = {}
        for row in rows:
            label = display_label(row.get(field))
            n = _row_count(row, (field,))
            current = grouped.get(label, GroupTotals())
            grouped[label] = GroupTotals(count=current.count + n, total=current.total + n)
        grouped = _sorted_groups(grouped)
        count = sum(g.count for g in grouped.values())
        return QueryResult(query_id=p.query_id, success=True, count=count, total=float(count), grouped=grouped)

    def _describe_fields(self, p: PreparedQuery) -> dict[str, dict[str, Any]]:
        return self.client.fields_get(p.entity.model)

    def _discover(self, p: PreparedQuery) -> QueryResult:
        records = []
        for name, meta in sorted(self._describe_fields(p).items()):
            kind = meta.get("type")
            if kind in ("date", "datetime"):
                role = "date"
            elif kind in ("monetary", "float", "integer") and not name.endswith("_id"):
                role = "amount"
            elif kind == "many2one":
                role = "relation"
            elif kind == "selection" and (name == p.entity.state_field or "state" in name):
                role = "state"
            else:
                continue
            records.append({"field": name, "label": meta.get("string", name), "type": kind, "role": role,
                            "relation": meta.get("relation")})
        return QueryResult(query_id=p.query_id, success=True, records=records, count=len(records))

    def _inspect(self, p: PreparedQuery) -> QueryResult:
        records = [
            {"field": name, "label": meta.get("string", name), "type": meta.get("type"), "relation": meta.get("relation")}
            for name, meta in sorted(self._describe_fields(p).items())
            if meta.get("store", True)
            and name not in _TECHNICAL_FIELDS
            and not name.startswith(_TECHNICAL_PREFIXES)
        ]
        return QueryResult(query_id=p.query_id, success=True, records=records, count=len(records))


# ── Merge ───────────────────────────────────────────────


@dataclass
class MergedResult:
    count: int = 0
    total: float | None = None
    grouped: dict[str, GroupTotals] | None = None
    records: list[dict[str, Any]] | None = None
    state_warning: StateWarning | None = None
    primary: Execution | None = None
    contributors: tuple[str, ...] = ()

    def as_result(self) -> QueryResult:
        return QueryResult(
            query_id="+".join(self.contributors) or "merged",
            success=self.primary is not None,
            records=self.records,
            count=self.count,
            total=self.total,
            grouped=self.grouped,
            state_warning=self.state_warning,
            cached=bool(self.primary and self.primary.result.cached),
        )


def merge_results(executions: Sequence[Execution]) -> MergedResult:
    """Sum the successful results that answer the primary metric.

    The primary metric is the first successful sub-query's.  Sub-queries
    with the same normalized cache key contribute once.
    """
    ok = [e for e in executions if e.result.success and e.prepared is not None]
    if not ok:
        return MergedResult()

    metric = ok[0].prepared.metric_key
    seen: set[str] = set()
    merged = MergedResult(primary=ok[0])
    contributors: list[str] = []
    grouped: dict[str, GroupTotals] = {}
    has_grouped = False

    for e in ok:
        if e.prepared.metric_key != metric or e.prepared.cache_key in seen:
            continue
        seen.add(e.prepared.cache_key)
        contributors.append(e.spec.id)
        r = e.result
        merged.count += r.count or 0
        if r.total is not None:
            merged.total = round((merged.total or 0.0) + r.total, 2)
        if r.grouped is not None:
            has_grouped = True
            for label, g in r.grouped.items():
                current = grouped.get(label, GroupTotals())
                grouped[label] = GroupTotals(count=current.count + g.count, total=round(current.total + g.total, 2))
        if r.records is not None:
            merged.records = (merged.records or []) + list(r.records)
        if merged.state_warning is None:
            merged.state_warning = r.state_warning

    if has_grouped:
        merged.grouped = grouped if _is_date_grouping(ok[0].prepared) else _sorted_groups(grouped)
    merged.contributors = tuple(contributors)
    return merged
