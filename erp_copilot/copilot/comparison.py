"""
Period-over-period comparison.

For a sub-query carrying ``compareMode`` the current window is the date
interval of its domain.  The previous window is the same interval shifted
back one calendar month (month-over-month) or twelve (year-over-year),
repeated until the two windows are disjoint.  The previous result is the
same query with only the date predicate swapped, run through the executor
so it benefits from the cache.
"""
from __future__ import annotations

import datetime as dt
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from typing import Sequence

from erp_copilot.copilot.executor import Execution, QueryExecutor
from erp_copilot.copilot.spec import ComparisonResult, DateRange, GroupTotals, LabelVariation, QueryResult, Variation
from erp_copilot.core.config import Settings, get_settings
from erp_copilot.core.logging import get_logger
from erp_copilot.core.utils import period_label, shift_months

logger = get_logger(__name__)

_STEP_MONTHS = {"month-over-month": 1, "year-over-year": 12}


# ── Windows ─────────────────────────────────────────────


def previous_window(start: dt.date, end: dt.date, mode: str) -> tuple[dt.date, dt.date]:
    """Shift ``[start, end]`` back by whole steps of *mode* until it ends before *start*."""
    if end < start:
        raise ValueError(f"window end {end} precedes start {start}")
    step = _STEP_MONTHS[mode]
    k = 1
    while True:
        prev_start = shift_months(start, -step * k)
        prev_end = shift_months(end, -step * k)
        if prev_end < start:
            return prev_start, prev_end
        k += 1


# ── Variation ───────────────────────────────────────────


def compute_variation(current: float, previous: float, flat_threshold: float = 0.01) -> Variation:
    """``percent`` is a fraction; a zero previous value makes it indeterminate."""
    absolute = round(current - previous, 2)
    if previous == 0:
        trend = "flat" if current == 0 else ("up" if current > 0 else "down")
        return Variation(absolute=absolute, percent=None, trend=trend, label="n/a (no previous value)", indeterminate=True)
    percent = (current - previous) / abs(previous)
    if abs(percent) < flat_threshold:
        trend = "flat"
    else:
        trend = "up" if percent > 0 else "down"
    return Variation(absolute=absolute, percent=round(percent, 4), trend=trend, label=f"{percent * 100:+.1f}%")


def compare_groups(
    current: dict[str, GroupTotals],
    previous: dict[str, GroupTotals],
    flat_threshold: float = 0.01,
) -> list[LabelVariation]:
    """Per-label variation over the union of labels, biggest absolute move first."""
    labels = set(current) | set(previous)
    rows = [
        LabelVariation(
            label=label,
            current=current[label].total if label in current else 0.0,
            previous=previous[label].total if label in previous else 0.0,
            variation=compute_variation(
                current[label].total if label in current else 0.0,
                previous[label].total if label in previous else 0.0,
                flat_threshold,
            ),
        )
        for label in labels
    ]
    rows.sort(key=lambda r: (-abs(r.variation.absolute), r.label))
    return rows


def _metric(result: QueryResult) -> float:
    if result.total is not None:
        return result.total
    return float(result.count or 0)


# ── Engine ──────────────────────────────────────────────


class ComparisonEngine:
    def __init__(self, executor: QueryExecutor, settings: Settings | None = None):
        self.executor = executor
        self.settings = settings or get_settings()

    def compare(self, current: Execution) -> ComparisonResult | None:
        prepared = current.prepared
        mode = current.spec.compare_mode
        if not (mode and prepared and current.result.success):
            return None
        window = prepared.domain.date_window()
        if window is None:
            logger.info("[%s] no date window; comparison skipped", current.spec.id)
            return None

        cur_start, cur_end = window
        prev_start, prev_end = previous_window(cur_start, cur_end, mode)
        logger.info(
            "[%s] %s: current %s..%s previous %s..%s",
            current.spec.id, mode, cur_start, cur_end, prev_start, prev_end,
        )

        prev_spec = current.spec.model_copy(update={"id": f"{current.spec.id}:previous"})
        prev_prepared = replace(
            prepared, spec=prev_spec, domain=prepared.domain.with_date_window(prev_start, prev_end),
        )
        previous = self.executor.execute(prev_prepared)
        if not previous.success:
            logger.warning("[%s] previous window failed: %s", current.spec.id, previous.error)
            return None

        threshold = self.settings.trend_flat_threshold
        cur_grouped = current.result.grouped or {}
        prev_grouped = previous.grouped or {}
        by_label = compare_groups(cur_grouped, prev_grouped, threshold) if (cur_grouped or prev_grouped) else []

        decline = self.settings.decline_threshold
        declining = [
            r.label for r in by_label
            if r.previous > 0 and r.current > 0 and r.current < r.previous * (1 - decline)
        ]
        new_labels = sorted(set(cur_grouped) - set(prev_grouped))
        lost_labels = sorted(set(prev_grouped) - set(cur_grouped))

        return ComparisonResult(
            query_id=current.spec.id,
            current_total=_metric(current.result),
            previous_total=_metric(previous),
            current_grouped=cur_grouped,
            previous_grouped=prev_grouped,
            variation=compute_variation(_metric(current.result), _metric(previous), threshold),
            period_labels={"current": period_label(cur_start, cur_end), "previous": period_label(prev_start, prev_end)},
            windows={
                "current": DateRange(start=cur_start, end=cur_end),
                "previous": DateRange(start=prev_start, end=prev_end),
            },
            by_label=by_label,
            declining=declining,
            new_labels=new_labels,
            lost_labels=lost_labels,
        )

    def compare_all(self, executions: Sequence[Execution]) -> list[ComparisonResult]:
        """Run the comparisons of distinct sub-queries concurrently; input order kept."""
        eligible = [e for e in executions if e.spec.compare_mode and e.result.success and e.prepared]
        if not eligible:
            return []
        with ThreadPoolExecutor(max_workers=len(eligible), thread_name_prefix="compare") as pool:
            results = list(pool.map(self.compare, eligible))
        return [r for r in results if r is not None]
