"""
Auto-chart generation.

Builds chart data the chat front end can render directly:

  - bar   (grouped breakdowns: customer, product, state ...), top 10 by total
  - line  (date groupings such as ``date_order:month``, or dated record lists)

Returns ``None`` when nothing chartable came back.
"""
from __future__ import annotations

from typing import Any

from erp_copilot.copilot.executor import PreparedQuery
from erp_copilot.copilot.spec import ChartData, ChartDataset, QueryResult
from erp_copilot.core.logging import get_logger

logger = get_logger(__name__)

MAX_BARS = 10


def _is_time_column(col: str) -> bool:
    """Heuristic: does this group field look like a time axis?"""
    base, _, grain = col.partition(":")
    return bool(grain) or base.startswith("date") or base.endswith("_date")


def _build_title(prepared: PreparedQuery | None) -> str:
    if prepared is None:
        return "Results"
    entity = prepared.entity
    metric = (entity.amount_field or "count").replace("_", " ").title()
    parts = [f"{entity.name.replace('_', ' ').title()} {metric}"]
    if prepared.spec.group_by:
        parts.append("by " + ", ".join(g.replace("_", " ") for g in prepared.spec.group_by))
    if prepared.spec.filter_text:
        parts.append(f"({prepared.spec.filter_text})")
    return " ".join(parts)


def _dated_series(records: list[dict[str, Any]], date_field: str, amount_field: str) -> tuple[list[str], list[float]]:
    totals: dict[str, float] = {}
    for r in records:
        day = r.get(date_field)
        value = r.get(amount_field)
        if not isinstance(day, str) or isinstance(value, bool) or not isinstance(value, (int, float)):
            continue
        key = day[:10]
        totals[key] = totals.get(key, 0.0) + float(value)
    labels = sorted(totals)
    return labels, [round(totals[k], 2) for k in labels]


def suggest_chart(result: QueryResult, prepared: PreparedQuery | None = None) -> ChartData | None:
    """Choose a chart for *result*, or ``None``."""
    if not result.success:
        return None
    title = _build_title(prepared)
    metric = (prepared.entity.amount_field if prepared else None) or "count"

    if result.grouped:
        items = list(result.grouped.items())
        group_field = prepared.group_by[0] if prepared and prepared.group_by else ""
        if _is_time_column(group_field):
            kind = "line"   # executor keeps date groups in ERP (chronological) order
        else:
            items = items[:MAX_BARS]
            kind = "bar"
        return ChartData(
            type=kind,
            title=title,
            labels=[label for label, _ in items],
            datasets=[ChartDataset(label=metric, data=[g.total for _, g in items])],
        )

    if result.records and prepared and prepared.entity.amount_field:
        labels, data = _dated_series(result.records, prepared.entity.date_field, prepared.entity.amount_field)
        if len(labels) >= 2:
            return ChartData(type="line", title=title, labels=labels,
                             datasets=[ChartDataset(label=metric, data=data)])

    logger.debug("No chartable data for %s", result.query_id)
    return None
