"""
Filter translator: natural-language filter phrase -> ERP domain filter.

Translation is best-effort and deterministic.  Given the same entity,
phrase, explicit date range and ``now`` it always yields the same
``DomainFilter``; anything it does not recognise is dropped rather than
guessed.

Order of evaluation
-------------------
1. explicit date range (skips free-text date parsing)
2. relative-date vocabulary, first match wins
3. status vocabulary from the entity catalog, one rule per status group
4. structured ``field: value`` fragments on fields the entity knows
"""
from __future__ import annotations

import datetime as dt
import re
from dataclasses import dataclass
from typing import Any, Iterator

from erp_copilot.copilot.spec import DateRange
from erp_copilot.core.logging import get_logger
from erp_copilot.core.utils import last_day_of_month, month_bounds
from erp_copilot.governance.entity_catalog import EntityDef

logger = get_logger(__name__)


# ── Domain filter ───────────────────────────────────────


def _to_rpc(value: Any) -> Any:
    if isinstance(value, tuple):
        return [_to_rpc(v) for v in value]
    return value


@dataclass(frozen=True)
class Predicate:
    field: str
    operator: str
    value: Any

    def as_rpc(self) -> list[Any]:
        return [self.field, self.operator, _to_rpc(self.value)]


@dataclass(frozen=True)
class DomainFilter:
    """Ordered, immutable predicate list.  Derived filters are new objects."""

    predicates: tuple[Predicate, ...] = ()
    date_field: str | None = None

    def __iter__(self) -> Iterator[Predicate]:
        return iter(self.predicates)

    def __len__(self) -> int:
        return len(self.predicates)

    def as_rpc(self) -> list[list[Any]]:
        return [p.as_rpc() for p in self.predicates]

    def has_field(self, field: str) -> bool:
        return any(p.field == field for p in self.predicates)

    def date_window(self) -> tuple[dt.date, dt.date] | None:
        """The closed ``[start, end]`` interval on the date field, if both ends are set."""
        if not self.date_field:
            return None
        start = end = None
        for p in self.predicates:
            if p.field != self.date_field:
                continue
            if p.operator == ">=":
                start = dt.date.fromisoformat(str(p.value)[:10])
            elif p.operator == "<=":
                end = dt.date.fromisoformat(str(p.value)[:10])
        if start is None or end is None:
            return None
        return start, end

    def with_date_window(self, start: dt.date, end: dt.date) -> "DomainFilter":
        """Same filter with every date-field predicate replaced by ``[start, end]``."""
        if not self.date_field:
            raise ValueError("filter has no date field")
        kept = tuple(p for p in self.predicates if p.field != self.date_field)
        return DomainFilter(
            predicates=kept + _interval(self.date_field, start, end),
            date_field=self.date_field,
        )


def _interval(field: str, start: dt.date, end: dt.date) -> tuple[Predicate, Predicate]:
    return (
        Predicate(field, ">=", start.isoformat()),
        Predicate(field, "<=", end.isoformat()),
    )


# ── Date vocabulary ─────────────────────────────────────

_MONTHS: list[tuple[int, str]] = [
    (1, r"january|enero"),
    (2, r"february|febrero"),
    (3, r"march|marzo"),
    (4, r"april|abril"),
    (5, r"may|mayo"),
    (6, r"june|junio"),
    (7, r"july|julio"),
    (8, r"august|agosto"),
    (9, r"september|septiembre|setiembre"),
    (10, r"october|octubre"),
    (11, r"november|noviembre"),
    (12, r"december|diciembre"),
]
_MONTH_RES = [(m, re.compile(rf"\b(?:{names})\b", re.IGNORECASE)) for m, names in _MONTHS]

_YEAR_RE = re.compile(r"\b(19\d{2}|20\d{2})\b")
_WEEK_RE = re.compile(
    r"\b(first|1st|primer[ao]?|second|2nd|segund[ao]|third|3rd|tercer[ao]?|"
    r"fourth|4th|cuart[ao]|last|[uú]ltim[ao])\s+(?:week|semana)\b",
    re.IGNORECASE,
)
_THIS_MONTH_RE = re.compile(r"\b(?:this month|current month|este mes|mes actual)\b", re.IGNORECASE)
_LAST_MONTH_RE = re.compile(r"\b(?:last month|previous month|mes pasado|mes anterior)\b", re.IGNORECASE)
_LAST_DAYS_RE = re.compile(r"\b(?:last|past|[uú]ltimos?)\s+(\d{1,4})\s+(?:days?|d[ií]as?)\b", re.IGNORECASE)
_THIS_YEAR_RE = re.compile(r"\b(?:this year|current year|este a[nñ]o|a[nñ]o actual)\b", re.IGNORECASE)
_LAST_YEAR_RE = re.compile(r"\b(?:last year|previous year|a[nñ]o pasado|a[nñ]o anterior)\b", re.IGNORECASE)
_THIS_WEEK_RE = re.compile(r"\b(?:this week|current week|esta semana)\b", re.IGNORECASE)
_LAST_WEEK_RE = re.compile(r"\b(?:last week|previous week|semana pasada|semana anterior)\b", re.IGNORECASE)
_THIS_QUARTER_RE = re.compile(r"\b(?:this quarter|current quarter|este trimestre|trimestre actual)\b", re.IGNORECASE)
_LAST_QUARTER_RE = re.compile(
    r"\b(?:last quarter|previous quarter|trimestre pasado|trimestre anterior)\b", re.IGNORECASE,
)
_YESTERDAY_RE = re.compile(r"\b(?:yesterday|ayer)\b", re.IGNORECASE)
_TODAY_RE = re.compile(r"\b(?:today|hoy)\b", re.IGNORECASE)

_NUMBER_RE = re.compile(r"-?\d+(?:\.\d+)?")
_STRUCTURED_RE = re.compile(r"\b([a-z_][a-z0-9_]*)\s*[:=]\s*(?:'([^']+)'|\"([^\"]+)\"|([^\s,;]+))", re.IGNORECASE)


def _week_number(word: str) -> int:
    w = word.lower()
    if w.startswith(("second", "2nd", "segund")):
        return 2
    if w.startswith(("third", "3rd", "tercer")):
        return 3
    if w.startswith(("fourth", "4th", "cuart")):
        return 4
    if w.startswith(("last", "últim", "ultim")):
        return -1
    return 1


def _week_bounds(day: dt.date) -> tuple[dt.date, dt.date]:
    """Monday to Sunday of the ISO week containing *day*."""
    start = day - dt.timedelta(days=day.weekday())
    return start, start + dt.timedelta(days=6)


def _quarter_bounds(year: int, quarter: int) -> tuple[dt.date, dt.date]:
    first = 3 * (quarter - 1) + 1
    return month_bounds(year, first)[0], month_bounds(year, first + 2)[1]


def _named_month(text: str) -> int | None:
    for month, regex in _MONTH_RES:
        if regex.search(text):
            return month
    return None


def _resolve_year(text: str, month: int, today: dt.date) -> int:
    """Explicit year wins, then "last year" / "this year"; otherwise a month
    after the current one refers to last year."""
    m = _YEAR_RE.search(text)
    if m:
        return int(m.group(1))
    if _LAST_YEAR_RE.search(text):
        return today.year - 1
    if _THIS_YEAR_RE.search(text):
        return today.year
    return today.year - 1 if month > today.month else today.year


def parse_relative_window(text: str, today: dt.date) -> tuple[dt.date, dt.date] | None:
    """Resolve relative-date vocabulary in *text* against *today*.

    Returns a closed ``(start, end)`` interval or ``None``.
    """
    week = _WEEK_RE.search(text)
    month = _named_month(text)
    if week and month:
        year = _resolve_year(text, month, today)
        last = last_day_of_month(year, month)
        n = _week_number(week.group(1))
        if n == -1:
            return dt.date(year, month, last - 6), dt.date(year, month, last)
        start_day = (n - 1) * 7 + 1
        return dt.date(year, month, start_day), dt.date(year, month, min(n * 7, last))

    if month:
        return month_bounds(_resolve_year(text, month, today), month)

    if _THIS_MONTH_RE.search(text):
        return month_bounds(today.year, today.month)

    if _LAST_MONTH_RE.search(text):
        prev = today.replace(day=1) - dt.timedelta(days=1)
        return month_bounds(prev.year, prev.month)

    if _THIS_WEEK_RE.search(text):
        return _week_bounds(today)

    if _LAST_WEEK_RE.search(text):
        return _week_bounds(today - dt.timedelta(days=7))

    quarter = (today.month - 1) // 3 + 1
    if _THIS_QUARTER_RE.search(text):
        return _quarter_bounds(today.year, quarter)

    if _LAST_QUARTER_RE.search(text):
        if quarter == 1:
            return _quarter_bounds(today.year - 1, 4)
        return _quarter_bounds(today.year, quarter - 1)

    days = _LAST_DAYS_RE.search(text)
    if days:
        n = max(int(days.group(1)), 1)
        return today - dt.timedelta(days=n - 1), today

    if _THIS_YEAR_RE.search(text):
        return dt.date(today.year, 1, 1), dt.date(today.year, 12, 31)

    if _LAST_YEAR_RE.search(text):
        return dt.date(today.year - 1, 1, 1), dt.date(today.year - 1, 12, 31)

    year = _YEAR_RE.search(text)
    if year:
        y = int(year.group(1))
        return dt.date(y, 1, 1), dt.date(y, 12, 31)

    if _YESTERDAY_RE.search(text):
        yesterday = today - dt.timedelta(days=1)
        return yesterday, yesterday

    if _TODAY_RE.search(text):
        return today, today

    return None


# ── Status & structured fragments ───────────────────────


def _resolve_value(value: Any, today: dt.date) -> Any:
    if value == "{today}":
        return today.isoformat()
    if isinstance(value, tuple):
        return tuple(_resolve_value(v, today) for v in value)
    return value


def _status_predicates(entity: EntityDef, text: str, today: dt.date) -> list[Predicate]:
    out: list[Predicate] = []
    for group, rules in entity.statuses.items():
        for rule in rules:
            if rule.matches(text):
                out.extend(Predicate(f, op, _resolve_value(v, today)) for f, op, v in rule.predicates)
                logger.debug("Status group '%s' matched keywords %s", group, list(rule.keywords))
                break
    return out


def _coerce_literal(raw: str) -> tuple[str, Any]:
    lowered = raw.lower()
    if lowered in ("true", "false"):
        return "=", lowered == "true"
    if _NUMBER_RE.fullmatch(raw):
        return "=", float(raw) if "." in raw else int(raw)
    return "ilike", raw


def _structured_predicates(entity: EntityDef, text: str) -> list[Predicate]:
    known = entity.known_fields
    out: list[Predicate] = []
    for m in _STRUCTURED_RE.finditer(text):
        field = m.group(1)
        raw = next(g for g in m.groups()[1:] if g is not None).strip()
        if field not in known or not raw:
            continue
        op, value = _coerce_literal(raw)
        out.append(Predicate(field, op, value))
    return out


# ── Public API ──────────────────────────────────────────


def translate(
    entity: EntityDef,
    filter_text: str | None = None,
    date_range: DateRange | None = None,
    *,
    now: dt.date | dt.datetime,
) -> DomainFilter:
    """Build the domain filter for *entity* from a phrase and/or explicit range."""
    today = now.date() if isinstance(now, dt.datetime) else now
    text = " ".join((filter_text or "").split())
    predicates: list[Predicate] = []

    if date_range is not None:
        predicates.extend(_interval(entity.date_field, date_range.start, date_range.end))
    elif text:
        window = parse_relative_window(text, today)
        if window:
            predicates.extend(_interval(entity.date_field, *window))

    if text:
        predicates.extend(_status_predicates(entity, text.lower(), today))
        for p in _structured_predicates(entity, text):
            if p not in predicates:
                predicates.append(p)

    domain = DomainFilter(predicates=tuple(predicates), date_field=entity.date_field)
    if text and not predicates:
        logger.info("Filter '%s' on %s matched nothing; querying all records", text, entity.name)
    return domain
