"""
Insight generator.

Derives short advisory observations from a merged result and its
comparisons.  Every number in an insight comes straight from a numeric
field of the result, so insights never introduce new facts.
"""
from __future__ import annotations

from typing import Sequence

from erp_copilot.copilot.spec import ComparisonResult, Insight, QueryResult
from erp_copilot.core.config import Settings, get_settings
from erp_copilot.core.logging import get_logger

logger = get_logger(__name__)

# Higher runs first.
_PRIORITY = {
    "empty": 100,
    "state_mix": 90,
    "concentration": 80,
    "top_three": 78,
    "swing": 75,
    "dominant": 70,
    "hot_leads": 68,
    "pipeline": 65,
    "lost": 60,
    "declining": 55,
    "contact_gaps": 50,
    "new": 40,
}


def _money(value: float) -> str:
    return f"{value:,.2f}"


def _listing(labels: Sequence[str], limit: int = 3) -> str:
    shown = ", ".join(labels[:limit])
    extra = len(labels) - limit
    return f"{shown} and {extra} more" if extra > 0 else shown


def _insight(kind: str, text: str) -> Insight:
    return Insight(kind=kind, text=text, priority=_PRIORITY[kind])


# ── Heuristics ──────────────────────────────────────────


def _empty(result: QueryResult) -> list[Insight]:
    if result.success and not result.grouped and not result.records and not result.count and not result.total:
        return [_insight("empty", "No matching records: the total is 0 and the count is 0.")]
    return []


def _state_mix(result: QueryResult) -> list[Insight]:
    w = result.state_warning
    if w is None:
        return []
    parts = ", ".join(f"{state}: {n}" for state, n in w.distribution.items())
    return [_insight("state_mix", f"The figures mix {len(w.distribution)} states ({parts}). {w.suggestion}")]


def _concentration(result: QueryResult, share_threshold: float) -> list[Insight]:
    grouped = result.grouped or {}
    overall = sum(g.total for g in grouped.values())
    if len(grouped) < 2 or overall <= 0:
        return []
    label, top = next(iter(grouped.items()))
    share = top.total / overall
    if share <= share_threshold:
        return []
    return [_insight(
        "concentration",
        f"{label} accounts for {share:.0%} of the total ({_money(top.total)} of {_money(overall)}).",
    )]


def _top_three(result: QueryResult, share_threshold: float) -> list[Insight]:
    grouped = result.grouped or {}
    overall = sum(g.total for g in grouped.values())
    if len(grouped) <= 3 or overall <= 0:
        return []
    top = sorted(grouped.items(), key=lambda kv: -kv[1].total)[:3]
    share = sum(g.total for _, g in top) / overall
    if share <= share_threshold:
        return []
    return [_insight(
        "top_three",
        f"The top three ({', '.join(label for label, _ in top)}) make up {share:.0%} of the total.",
    )]


def _contact_gaps(result: QueryResult, share_threshold: float) -> list[Insight]:
    rows = [r for r in result.records or [] if "email" in r or "phone" in r]
    if not rows:
        return []
    out: list[Insight] = []
    for field in ("email", "phone"):
        missing = sum(1 for r in rows if field in r and not r[field])
        if missing and missing / len(rows) > share_threshold:
            out.append(_insight(
                "contact_gaps",
                f"{missing} of {len(rows)} partners ({missing / len(rows):.0%}) have no {field} on file.",
            ))
    return out


def _pipeline(result: QueryResult, hot_probability: float) -> list[Insight]:
    leads = [r for r in result.records or [] if isinstance(r.get("expected_revenue"), (int, float))]
    if not leads:
        return []
    out: list[Insight] = []
    value = round(sum(r["expected_revenue"] for r in leads), 2)
    # Only quote the value when it is the result total itself.
    if value > 0 and result.total is not None and abs(result.total - value) < 0.01:
        out.append(_insight("pipeline", f"Pipeline across {len(leads)} opportunities: {_money(value)}."))
    hot = [
        r for r in leads
        if isinstance(r.get("probability"), (int, float)) and hot_probability <= r["probability"] < 100
    ]
    if hot:
        names = [str(r.get("name") or r.get("display_name") or "") for r in hot]
        names = [n for n in names if n]
        text = f"{len(hot)} opportunities are at {hot_probability:.0f}% probability or higher but not yet won"
        out.append(_insight("hot_leads", f"{text}: {_listing(names)}." if names else f"{text}."))
    return out


def _dominant(result: QueryResult) -> list[Insight]:
    items = list((result.grouped or {}).items())
    if len(items) < 2:
        return []
    (top_label, top), (second_label, second) = items[0], items[1]
    if second.total <= 0 or top.total <= 3 * second.total:
        return []
    return [_insight(
        "dominant",
        f"{top_label} is {top.total / second.total:.1f}x the next entry, {second_label} "
        f"({_money(top.total)} vs {_money(second.total)}).",
    )]


def _swing(c: ComparisonResult, threshold: float) -> list[Insight]:
    v = c.variation
    if v.indeterminate or v.percent is None or abs(v.percent) <= threshold:
        return []
    direction = "up" if v.percent > 0 else "down"
    return [_insight(
        "swing",
        f"{c.period_labels['current']} is {direction} {abs(v.percent):.1%} versus {c.period_labels['previous']} "
        f"({_money(c.current_total)} vs {_money(c.previous_total)}).",
    )]


def _label_changes(c: ComparisonResult) -> list[Insight]:
    out: list[Insight] = []
    prev, cur = c.period_labels["previous"], c.period_labels["current"]
    if c.lost_labels:
        out.append(_insight("lost", f"Present in {prev} but absent in {cur}: {_listing(c.lost_labels)}."))
    if c.declining:
        out.append(_insight("declining", f"Declining versus {prev}: {_listing(c.declining)}."))
    if c.new_labels:
        out.append(_insight("new", f"New in {cur}: {_listing(c.new_labels)}."))
    return out


# ── Public API ──────────────────────────────────────────


def generate_insights(
    result: QueryResult,
    comparisons: Sequence[ComparisonResult] = (),
    settings: Settings | None = None,
) -> list[Insight]:
    """Ranked insights, highest priority first, capped at ``max_insights``."""
    s = settings or get_settings()
    found: list[Insight] = []
    found += _empty(result)
    found += _state_mix(result)
    found += _concentration(result, s.concentration_share)
    found += _top_three(result, s.top_three_share)
    found += _dominant(result)
    found += _pipeline(result, s.hot_lead_probability)
    found += _contact_gaps(result, s.missing_contact_share)
    for c in comparisons:
        found += _swing(c, s.swing_threshold)
        found += _label_changes(c)

    found.sort(key=lambda i: i.priority, reverse=True)
    logger.debug("Generated %d insights (kinds=%s)", len(found), [i.kind for i in found])
    return found[: s.max_insights]
