"""
Unit tests -- grounding validator: names, amounts, periods, zero results,
leaked reasoning and the repaired answer.
"""
import datetime as dt

import pytest

from erp_copilot.copilot.comparison import compute_variation
from erp_copilot.copilot.spec import ComparisonResult, DateRange, GroupTotals, QueryResult
from erp_copilot.governance.grounding import (
    extract_amounts,
    extract_names,
    fold,
    mentioned_periods,
    parse_number,
    repair_answer,
    validate_answer,
)

MARCH = (dt.date(2024, 3, 1), dt.date(2024, 3, 31))


@pytest.fixture
def result():
    return QueryResult(
        query_id="q1",
        success=True,
        count=4,
        total=140.0,
        grouped={
            "CustomerA": GroupTotals(count=3, total=100.0),
            "CustomerB": GroupTotals(count=1, total=40.0),
        },
    )


@pytest.fixture
def empty():
    return QueryResult(query_id="q1", success=True, count=0, total=0.0)


def _kinds(verdict):
    return [i.kind for i in verdict.issues]


# ── Scanning helpers ────────────────────────────────────

def test_fold_strips_accents_and_punctuation():
    assert fold("Distribuidora  Peñón, S.A.") == "distribuidora penon s a"


def test_extract_names_multiword_and_camel():
    names = extract_names("Acme Corp and Globex Ltd grew, while CustomerC and IBM stalled.")
    assert names == ["Acme Corp", "Globex Ltd", "CustomerC", "IBM"]


def test_extract_names_breaks_on_sentence_end():
    names = extract_names("Sales rose at Acme Corp. Globex Ltd fell.")
    assert names == ["Acme Corp", "Globex Ltd"]


def test_extract_names_ignores_sentence_openers_and_months():
    assert extract_names("The Total for March was stable. In April Sales dropped.") == []


@pytest.mark.parametrize("raw, expected", [
    ("1,234.56", 1234.56),
    ("1.234,56", 1234.56),
    ("1,234", 1234.0),
    ("1.234", 1234.0),
    ("12,5", 12.5),
    ("40", 40.0),
])
def test_parse_number(raw, expected):
    assert parse_number(raw)[0] == pytest.approx(expected)


def test_extract_amounts_symbols_codes_and_suffixes():
    amounts = extract_amounts("We billed $1,234.56, 1.234,56 € and USD 2.5M, plus $10K; 3 orders.")
    values = [a.value for a in amounts]
    assert values == pytest.approx([1234.56, 2_500_000.0, 10_000.0, 1234.56])


def test_mentioned_periods_needs_year_for_may():
    texts = [m.text for m in mentioned_periods("Sales may rise in May but fell in March 2024 and in 2023.")]
    assert texts == ["March 2024", "2023"]


# ── Verdicts ────────────────────────────────────────────

def test_grounded_answer_is_clean(result, settings):
    answer = "CustomerA leads with $100.00 across 3 orders, followed by CustomerB with $40.00. Total: $140.00."
    verdict = validate_answer(answer, result, settings=settings)
    assert verdict.is_clean
    assert verdict.repaired_answer is None
    assert verdict.ground_truth_names == ["CustomerA", "CustomerB"]


def test_unknown_customer_replaced_by_repaired_answer(result, settings):
    verdict = validate_answer("CustomerC was the top buyer with $100.00.", result, settings=settings)
    assert not verdict.is_clean
    assert _kinds(verdict) == ["name"]
    assert verdict.issues[0].token == "CustomerC"
    repaired = verdict.repaired_answer
    assert "CustomerA" in repaired
    assert "CustomerB" in repaired
    assert "CustomerC" not in repaired


def test_invented_amount_flagged(result, settings):
    verdict = validate_answer("CustomerA leads with $250.00.", result, settings=settings)
    assert _kinds(verdict) == ["amount"]


def test_rounded_amount_accepted(result, settings):
    assert validate_answer("CustomerA bought $100 and CustomerB $40.", result, settings=settings).is_clean


def test_fuzzy_name_match(settings):
    res = QueryResult(query_id="q1", success=True, count=1, total=10.0,
                      grouped={"Acme Corporation S.A.": GroupTotals(count=1, total=10.0),
                               "Distribuidora Peñón": GroupTotals(count=1, total=5.0)})
    verdict = validate_answer("Acme Corporation and ACME lead; Distribuidora Penon follows.", res, settings=settings)
    assert verdict.is_clean


def test_name_containing_a_short_truth_name_is_not_grounded(settings):
    res = QueryResult(query_id="q1", success=True, count=2, total=150.0,
                      grouped={"Ana": GroupTotals(count=1, total=100.0),
                               "Bob Stone": GroupTotals(count=1, total=50.0)})
    verdict = validate_answer("Banana Republic led with $100.00.", res, settings=settings)
    assert not verdict.is_clean
    assert "Banana Republic" in [i.token for i in verdict.issues if i.kind == "name"]
    assert validate_answer("Bob Stone trails Ana with $50.00.", res, settings=settings).is_clean


def test_names_from_records_are_ground_truth(settings):
    res = QueryResult(query_id="q1", success=True, count=1, total=1200.0,
                      records=[{"name": "SO001", "partner_id": "Acme Corp", "amount_total": 1200.0}])
    assert validate_answer("SO001 for Acme Corp totals $1,200.00.", res, settings=settings).is_clean


def test_zero_result_must_state_zero(empty, settings):
    verdict = validate_answer("Unfortunately no sales were found for that period.", empty, settings=settings)
    assert _kinds(verdict) == ["zero"]
    assert verdict.repaired_answer == "No matching records were found: the total is 0 (0 records)."


@pytest.mark.parametrize("answer", [
    "The total is 0 for this period.",
    "Sales came to $0.00.",
    "There were zero confirmed orders.",
])
def test_zero_result_literal_zero_accepted(empty, settings, answer):
    assert validate_answer(answer, empty, settings=settings).is_clean


def test_period_outside_window_flagged(result, settings):
    verdict = validate_answer("In February 2024 CustomerA spent $100.00.", result, windows=[MARCH], settings=settings)
    assert _kinds(verdict) == ["period"]
    assert verdict.repaired_answer.startswith("Results for March 2024:")


def test_period_inside_window_accepted(result, settings):
    assert validate_answer("In March 2024 CustomerA spent $100.00.", result, windows=[MARCH], settings=settings).is_clean
    assert validate_answer("In March, CustomerA spent $100.00.", result, windows=[MARCH], settings=settings).is_clean


def test_month_without_year_outside_window(result, settings):
    verdict = validate_answer("In January, CustomerA spent $100.00.", result, windows=[MARCH], settings=settings)
    assert _kinds(verdict) == ["period"]


def test_leaked_reasoning_flagged(result, settings):
    verdict = validate_answer("Let me look at the numbers. CustomerA spent $100.00.", result, settings=settings)
    assert "reasoning" in _kinds(verdict)


def test_failed_result_claims_flagged(settings):
    failed = QueryResult(query_id="q1", success=False, error="timeout")
    verdict = validate_answer("CustomerA spent $100.00.", failed, settings=settings)
    assert _kinds(verdict) == ["failure"]
    assert "could not be retrieved" in verdict.repaired_answer


def test_failed_result_honest_statement_passes(settings):
    failed = QueryResult(query_id="q1", success=False, error="timeout")
    assert validate_answer("The data could not be retrieved right now.", failed, settings=settings).is_clean


def test_no_result_bypasses_grounding(settings):
    assert validate_answer("Hello! Ask me about your sales.", None, settings=settings).is_clean


def test_comparison_figures_and_previous_period_are_grounded(settings):
    current = {"Acme Corp": GroupTotals(count=2, total=2000.0), "Globex Ltd": GroupTotals(count=1, total=500.0)}
    previous = {"Acme Corp": GroupTotals(count=1, total=1000.0), "Umbrella Inc": GroupTotals(count=1, total=400.0)}
    comparison = ComparisonResult(
        query_id="q1", current_total=2500.0, previous_total=1400.0,
        current_grouped=current, previous_grouped=previous,
        variation=compute_variation(2500.0, 1400.0),
        period_labels={"current": "March 2024", "previous": "February 2024"},
        windows={"current": DateRange(start=MARCH[0], end=MARCH[1]),
                 "previous": DateRange(start=dt.date(2024, 2, 1), end=dt.date(2024, 2, 29))},
    )
    res = QueryResult(query_id="q1", success=True, count=3, total=2500.0, grouped=current)
    answer = ("Sales reached $2,500.00 in March 2024, up from $1,400.00 in February 2024. "
              "Umbrella Inc bought $400.00 last period but nothing this month.")
    verdict = validate_answer(answer, res, comparisons=[comparison], windows=[MARCH], settings=settings)
    assert verdict.is_clean


# ── Repair ──────────────────────────────────────────────

def test_repair_lists_groups_and_total(result):
    text = repair_answer(result, windows=[MARCH])
    assert text.splitlines() == [
        "Results for March 2024:",
        "1. CustomerA: 100.00 (3 records)",
        "2. CustomerB: 40.00 (1 records)",
        "Total: 140.00 (4 records).",
    ]


def test_repair_truncates_long_lists():
    grouped = {f"Customer{i:02d}": GroupTotals(count=1, total=float(100 - i)) for i in range(15)}
    res = QueryResult(query_id="q1", success=True, count=15, total=1395.0, grouped=grouped)
    text = repair_answer(res, max_listed=10)
    assert "... and 5 more." in text
    assert "Customer14" not in text


def test_repair_count_only():
    res = QueryResult(query_id="q1", success=True, count=7)
    assert repair_answer(res) == "Count: 7 records."
