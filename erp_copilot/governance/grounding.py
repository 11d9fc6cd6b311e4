"""
Grounding validator for drafted answers.

A drafted answer is untrusted text.  Before it reaches the user it is
checked against the result it claims to describe:

  1. build the ground truth: names (group labels, record names, comparison
     labels) and amounts (totals, group totals, numeric record fields,
     comparison totals and variations)
  2. scan the answer for name-like tokens and currency amounts
  3. flag names and amounts that match nothing in the ground truth
  4. flag month / year mentions outside every date window that was used
  5. an empty result must be stated as a literal zero
  6. flag answers that open with leaked model reasoning

Any issue replaces the draft with ``repaired_answer``, a deterministic
rendering of the result fields.  An answer with no backing result is not
claiming retrieved facts and passes untouched.
"""
from __future__ import annotations

import datetime as dt
import re
import unicodedata
from dataclasses import dataclass, field
from typing import Any, Iterable, Sequence

from erp_copilot.copilot.spec import ComparisonResult, GroundingIssue, QueryResult, ValidationVerdict
from erp_copilot.core.config import Settings, get_settings
from erp_copilot.core.logging import get_logger
from erp_copilot.core.utils import month_bounds, period_label

logger = get_logger(__name__)

Window = tuple[dt.date, dt.date]

_MONTH_NAMES = {
    "january": 1, "february": 2, "march": 3, "april": 4, "may": 5, "june": 6,
    "july": 7, "august": 8, "september": 9, "october": 10, "november": 11, "december": 12,
    "enero": 1, "febrero": 2, "marzo": 3, "abril": 4, "mayo": 5, "junio": 6, "julio": 7,
    "agosto": 8, "septiembre": 9, "setiembre": 9, "octubre": 10, "noviembre": 11, "diciembre": 12,
}
_WEEKDAYS = {
    "monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday",
    "lunes", "martes", "miercoles", "jueves", "viernes", "sabado", "domingo",
}
_CURRENCY_CODES = {"usd", "eur", "gbp", "mxn", "ars", "clp", "cop", "pen", "brl", "uyu", "cad", "aud", "jpy", "chf", "cny"}
_STOPWORDS = {
    "a", "an", "the", "and", "or", "of", "in", "on", "for", "to", "by", "with", "from", "at", "as",
    "this", "that", "these", "those", "is", "are", "was", "were", "it", "its", "there", "here",
    "we", "you", "your", "our", "their", "they", "i", "he", "she", "no", "not", "all", "each",
    "also", "however", "overall", "based", "according", "compared", "versus", "vs", "note",
    "total", "totals", "grand", "net", "gross", "sum", "amount", "amounts", "count", "average",
    "sales", "sale", "order", "orders", "invoice", "invoices", "revenue", "payments", "purchases",
    "customer", "customers", "client", "clients", "product", "products", "supplier", "suppliers",
    "vendor", "vendors", "partner", "partners", "leads", "stock", "inventory", "records", "record",
    "top", "month", "months", "year", "years", "week", "weeks", "quarter", "period", "today",
    "previous", "current", "last", "next", "first", "second", "third", "summary", "breakdown",
    "result", "results", "data", "report", "increase", "decrease", "growth", "decline", "change",
    "up", "down", "yes", "ok", "q1", "q2", "q3", "q4", "mom", "yoy", "kpi", "id", "vat", "erp", "n/a",
    "el", "la", "los", "las", "de", "del", "en", "y", "ventas", "clientes", "mes", "ano",
}
_REASONING_PREFIXES = (
    "let me", "i need to", "i will ", "i'll ", "i should", "the user is asking", "the user wants",
    "the user asked", "okay, so", "ok, so", "first, i", "thinking:", "<think>", "analysis:",
    "voy a", "el usuario",
)
_AMOUNT_KEYS = ("amount_total", "amount", "price_subtotal", "expected_revenue", "list_price", "quantity", "amount_residual")
_NAME_KEYS = ("name", "display_name", "partner_id", "product_id", "order_partner_id")

_WORD_RE = re.compile(r"[^\W_][\w&'’.\-]*", re.UNICODE)
_SYMBOL = r"(?:[$€£]|\b(?:USD|EUR|GBP|MXN|ARS|CLP|COP|PEN|BRL|UYU|CAD|AUD)\b)"
_NUMBER = r"(-?\d[\d.,]*\d|\d)"
_SUFFIX = r"(?:\s?([KkMm])\b)?"
_AMOUNT_PREFIX_RE = re.compile(rf"{_SYMBOL}\s?{_NUMBER}{_SUFFIX}")
_AMOUNT_SUFFIX_RE = re.compile(rf"(?<![\w.,]){_NUMBER}{_SUFFIX}\s?(?:€|\b(?:USD|EUR|GBP|MXN|ARS|CLP|COP|PEN|BRL|UYU|CAD|AUD)\b)")
_MONTH_RE = re.compile(
    r"\b(" + "|".join(sorted(_MONTH_NAMES, key=len, reverse=True)) + r")\b(?:\s+(?:de\s+|of\s+)?((?:19|20)\d{2}))?",
    re.IGNORECASE,
)
_YEAR_RE = re.compile(r"\b((?:19|20)\d{2})\b")
_ZERO_RE = re.compile(r"(?<![\d.,])0(?:[.,]0+)?(?![\d.,]*\d)|\bzero\b|\bcero\b", re.IGNORECASE)


# ── Normalisation ───────────────────────────────────────


def fold(text: str) -> str:
    """Lower-case, strip diacritics, collapse everything non-alphanumeric to single spaces."""
    decomposed = unicodedata.normalize("NFKD", text)
    stripped = "".join(c for c in decomposed if not unicodedata.combining(c))
    return " ".join(re.sub(r"[^0-9a-z]+", " ", stripped.lower()).split())


def _is_stopword(word: str) -> bool:
    w = fold(word)
    return (
        w in _STOPWORDS or w in _MONTH_NAMES or w in _WEEKDAYS or w in _CURRENCY_CODES
        or w.isdigit() or not w
    )


# ── Ground truth ────────────────────────────────────────


@dataclass
class GroundTruth:
    names: set[str] = field(default_factory=set)
    amounts: set[float] = field(default_factory=set)

    def add_name(self, value: Any) -> None:
        if isinstance(value, str) and value.strip() and len(value) <= 120:
            self.names.add(value.strip())

    def add_amount(self, value: Any) -> None:
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            self.amounts.add(abs(float(value)))


def ground_truth(result: QueryResult, comparisons: Sequence[ComparisonResult] = ()) -> GroundTruth:
    truth = GroundTruth()
    truth.add_amount(result.total)
    for label, g in (result.grouped or {}).items():
        truth.add_name(label)
        truth.add_amount(g.total)
    for record in result.records or []:
        for key, value in record.items():
            if isinstance(value, (list, tuple)) and len(value) == 2:
                truth.add_name(value[1])
            elif isinstance(value, str) and (key in _NAME_KEYS or key.endswith("_id")):
                truth.add_name(value)
            else:
                truth.add_amount(value)
    for c in comparisons:
        for amount in (c.current_total, c.previous_total, c.variation.absolute):
            truth.add_amount(amount)
        for grouped in (c.current_grouped, c.previous_grouped):
            for label, g in grouped.items():
                truth.add_name(label)
                truth.add_amount(g.total)
        for row in c.by_label:
            truth.add_amount(row.variation.absolute)
    return truth


# ── Answer scanning ─────────────────────────────────────


def _is_camel_or_caps(word: str) -> bool:
    letters = [c for c in word if c.isalpha()]
    if len(letters) < 2:
        return False
    if all(c.isupper() for c in letters):
        return True
    return any(a.islower() and b.isupper() for a, b in zip(word, word[1:]))


def extract_names(answer: str) -> list[str]:
    """Capitalized multi-word sequences plus CamelCase / ALL-CAPS single tokens."""
    runs: list[list[str]] = []
    current: list[str] = []
    last_end = 0
    sentence_break = False
    for m in _WORD_RE.finditer(answer):
        raw = m.group(0)
        word = raw.rstrip(".-'’")
        if word.endswith(("'s", "’s")):
            word = word[:-2]
        gap = answer[last_end:m.start()]
        contiguous = bool(current) and not sentence_break and gap.strip(" ") == ""
        last_end = m.end()
        sentence_break = raw.endswith(".")
        if word[:1].isupper():
            if not contiguous:
                if current:
                    runs.append(current)
                current = []
            current.append(word)
        else:
            if current:
                runs.append(current)
            current = []
    if current:
        runs.append(current)

    names: list[str] = []
    for run in runs:
        while run and _is_stopword(run[0]):
            run = run[1:]
        while run and _is_stopword(run[-1]):
            run = run[:-1]
        if len(run) >= 2:
            names.append(" ".join(run))
        elif len(run) == 1 and _is_camel_or_caps(run[0]):
            names.append(run[0])
    seen: set[str] = set()
    return [n for n in names if not (n in seen or seen.add(n))]


@dataclass(frozen=True)
class Amount:
    text: str
    value: float
    slack: float


def parse_number(raw: str) -> tuple[float, int]:
    """Parse ``1,234.56`` or ``1.234,56``; returns (value, decimal places)."""
    s = raw.strip(".,")
    negative = s.startswith("-")
    s = s.lstrip("-")
    if "," in s and "." in s:
        decimal = "," if s.rfind(",") > s.rfind(".") else "."
    elif "," in s:
        head, _, tail = s.rpartition(",")
        decimal = "," if s.count(",") == 1 and len(tail) in (1, 2) else None
    elif "." in s:
        head, _, tail = s.rpartition(".")
        decimal = "." if s.count(".") == 1 and len(tail) != 3 else None
    else:
        decimal = None

    if decimal is None:
        digits, places = s.replace(",", "").replace(".", ""), 0
    else:
        thousands = "." if decimal == "," else ","
        whole, _, frac = s.replace(thousands, "").partition(decimal)
        digits, places = f"{whole}.{frac}", len(frac)
    value = float(digits)
    return (-value if negative else value), places


def extract_amounts(answer: str) -> list[Amount]:
    found: list[Amount] = []
    spans: list[tuple[int, int]] = []
    for regex in (_AMOUNT_PREFIX_RE, _AMOUNT_SUFFIX_RE):
        for m in regex.finditer(answer):
            if any(s <= m.start() < e for s, e in spans):
                continue
            spans.append(m.span())
            try:
                value, places = parse_number(m.group(1))
            except ValueError:
                continue
            scale = {"k": 1e3, "m": 1e6}.get((m.group(2) or "").lower(), 1.0)
            found.append(Amount(m.group(0).strip(), abs(value) * scale, 0.5 * 10 ** -places * scale))
    return found


@dataclass(frozen=True)
class PeriodMention:
    text: str
    window: Window | None = None   # month+year or bare year
    month: int | None = None       # month named without a year


def mentioned_periods(answer: str) -> list[PeriodMention]:
    out: list[PeriodMention] = []
    consumed: list[tuple[int, int]] = []
    for m in _MONTH_RE.finditer(answer):
        word, year = m.group(1), m.group(2)
        if word.lower() == "may" and not year:
            continue
        consumed.append(m.span())
        month = _MONTH_NAMES[word.lower()]
        if year:
            out.append(PeriodMention(m.group(0), window=month_bounds(int(year), month)))
        else:
            out.append(PeriodMention(m.group(0), month=month))
    for m in _YEAR_RE.finditer(answer):
        if any(s <= m.start() < e for s, e in consumed):
            continue
        y = int(m.group(1))
        out.append(PeriodMention(m.group(0), window=(dt.date(y, 1, 1), dt.date(y, 12, 31))))
    return out


def _month_in_window(month: int, window: Window) -> bool:
    start, end = window
    if (end.year - start.year) * 12 + end.month - start.month >= 11:
        return True
    cursor = start.replace(day=1)
    while cursor <= end:
        if cursor.month == month:
            return True
        cursor = dt.date(cursor.year + (cursor.month == 12), cursor.month % 12 + 1, 1)
    return False


def _period_ok(mention: PeriodMention, windows: Sequence[Window]) -> bool:
    if mention.window is None:
        return any(_month_in_window(mention.month, w) for w in windows)
    start, end = mention.window
    return any(start <= w_end and w_start <= end for w_start, w_end in windows)


# ── Matching ────────────────────────────────────────────


def name_matches(candidate: str, truth: Iterable[str], min_overlap: float) -> bool:
    c = fold(candidate)
    if not c:
        return True
    c_tokens = set(c.split())
    for t in truth:
        f = fold(t)
        if not f:
            continue
        if c == f:
            return True
        # Containment counts only on whole-word boundaries ("Acme" in "Acme Corp").
        if f" {c} " in f" {f} " or f" {f} " in f" {c} ":
            return True
        overlap = len(c_tokens & set(f.split())) / len(c_tokens)
        if overlap >= min_overlap:
            return True
    return False


def amount_matches(amount: Amount, truth: Iterable[float], tolerance: float) -> bool:
    return any(abs(amount.value - t) <= max(tolerance * t, amount.slack) + 1e-9 for t in truth)


# ── Repair ──────────────────────────────────────────────


def _money(value: float) -> str:
    return f"{value:,.2f}"


def _record_line(record: dict[str, Any]) -> str:
    name = next((str(record[k]) for k in _NAME_KEYS if isinstance(record.get(k), str) and record.get(k)), None)
    if name is None:
        name = next((str(v) for v in record.values() if isinstance(v, str) and v), "Record")
    amount = next((record[k] for k in _AMOUNT_KEYS if isinstance(record.get(k), (int, float))
                   and not isinstance(record.get(k), bool)), None)
    return f"- {name}: {_money(float(amount))}" if amount is not None else f"- {name}"


def repair_answer(
    result: QueryResult,
    comparisons: Sequence[ComparisonResult] = (),
    windows: Sequence[Window] = (),
    max_listed: int = 10,
) -> str:
    """Render the result fields as a plain answer.  Uses nothing but the result."""
    if not result.success:
        return "The requested data could not be retrieved from the ERP right now. Please try again."

    period = f" for {period_label(*windows[0])}" if windows else ""
    if result.is_empty:
        return f"No matching records were found{period}: the total is 0 (0 records)."

    lines: list[str] = []
    if result.grouped:
        items = list(result.grouped.items())
        lines.append(f"Results{period}:")
        for i, (label, g) in enumerate(items[:max_listed], start=1):
            lines.append(f"{i}. {label}: {_money(g.total)} ({g.count} records)")
        if len(items) > max_listed:
            lines.append(f"... and {len(items) - max_listed} more.")
        if result.total is not None:
            lines.append(f"Total: {_money(result.total)} ({result.count or 0} records).")
    elif result.records:
        lines.append(f"Records{period}:")
        lines.extend(_record_line(r) for r in result.records[:max_listed])
        if len(result.records) > max_listed:
            lines.append(f"... and {len(result.records) - max_listed} more.")
        if result.total is not None:
            lines.append(f"Total: {_money(result.total)} ({result.count or 0} records).")
    elif result.total is not None:
        lines.append(f"Total{period}: {_money(result.total)} across {result.count or 0} records.")
    else:
        lines.append(f"Count{period}: {result.count or 0} records.")

    for c in comparisons:
        lines.append(
            f"{c.period_labels['current']}: {_money(c.current_total)} vs "
            f"{c.period_labels['previous']}: {_money(c.previous_total)} ({c.variation.label})."
        )
    return "\n".join(lines)


# ── Public API ──────────────────────────────────────────


def validate_answer(
    answer: str,
    result: QueryResult | None,
    question: str = "",
    comparisons: Sequence[ComparisonResult] = (),
    windows: Sequence[Window] = (),
    settings: Settings | None = None,
    supporting: Sequence[QueryResult] = (),
) -> ValidationVerdict:
    """Check *answer* against *result*; a non-clean verdict carries the repaired answer.

    Names and amounts of the successful *supporting* results (other sub-queries
    of the same batch) also count as retrieved data.  The repair is always
    built from *result* alone.
    """
    if result is None:
        return ValidationVerdict(is_clean=True)

    s = settings or get_settings()
    truth = ground_truth(result, comparisons)
    for extra in supporting:
        if extra.success:
            other = ground_truth(extra)
            truth.names |= other.names
            truth.amounts |= other.amounts
    windows = list(windows) + [
        (w.start, w.end) for c in comparisons for w in c.windows.values()
    ]
    issues: list[GroundingIssue] = []

    head = answer.lstrip().lower()
    if head.startswith(_REASONING_PREFIXES):
        issues.append(GroundingIssue(kind="reasoning", token=answer.strip()[:40], detail="answer opens with model reasoning"))

    if not result.success:
        if extract_names(answer) or extract_amounts(answer) or not answer.strip():
            issues.append(GroundingIssue(kind="failure", detail=f"result failed: {result.error or 'unknown error'}"))
    else:
        for name in extract_names(answer):
            if not name_matches(name, truth.names, s.grounding_min_token_overlap):
                issues.append(GroundingIssue(kind="name", token=name, detail="not present in the retrieved data"))
        for amount in extract_amounts(answer):
            if not amount_matches(amount, truth.amounts, s.grounding_amount_tolerance):
                issues.append(GroundingIssue(kind="amount", token=amount.text, detail="does not match any retrieved amount"))
        if windows:
            for mention in mentioned_periods(answer):
                if not _period_ok(mention, windows):
                    issues.append(GroundingIssue(kind="period", token=mention.text, detail="outside the queried period"))
        if result.is_empty and not _ZERO_RE.search(answer):
            issues.append(GroundingIssue(kind="zero", detail="empty result not stated as a literal zero"))

    names = sorted(truth.names)
    if not issues:
        return ValidationVerdict(is_clean=True, ground_truth_names=names)

    logger.warning(
        "Answer failed grounding (%d issues: %s)%s",
        len(issues), ", ".join(f"{i.kind}:{i.token}" for i in issues[:5]),
        f" question='{question[:60]}'" if question else "",
    )
    repaired = repair_answer(result, comparisons, windows, s.grounding_max_listed)
    return ValidationVerdict(is_clean=False, issues=issues, ground_truth_names=names, repaired_answer=repaired)
