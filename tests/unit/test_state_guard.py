"""
Unit tests -- state-mix guard.
"""
import datetime as dt

import httpx

from erp_copilot.copilot.filter_translator import translate
from erp_copilot.governance.state_guard import check_state_mix, needs_state_check, state_distribution

NOW = dt.date(2024, 3, 15)


def test_needs_check_only_without_state_predicate(catalog):
    orders = catalog.resolve("orders")
    assert needs_state_check(orders, translate(orders, "this month", now=NOW))
    assert not needs_state_check(orders, translate(orders, "confirmed this month", now=NOW))
    partners = catalog.resolve("partners")
    assert not needs_state_check(partners, translate(partners, None, now=NOW))


def test_distribution_sorted_by_count(catalog, erp):
    orders = catalog.resolve("orders")
    dist = state_distribution(erp, orders, translate(orders, "last month", now=NOW))
    assert list(dist.items()) == [("sale", 3), ("cancel", 1)]


def test_single_state_no_warning(catalog, make_erp):
    records = {"sale.order": [{"id": 1, "state": "sale", "date_order": "2024-03-01 00:00:00"}]}
    orders = catalog.resolve("orders")
    assert check_state_mix(make_erp(records=records), orders, translate(orders, "this month", now=NOW)) is None


def test_mixed_states_warn_with_hint(catalog, erp):
    orders = catalog.resolve("orders")
    warning = check_state_mix(erp, orders, translate(orders, "last month", now=NOW))
    assert warning.distribution == {"sale": 3, "cancel": 1}
    assert warning.total_records == 4
    assert "2 states" in warning.message
    assert warning.suggestion == orders.state_hint


def test_guard_failure_is_not_fatal(catalog, make_erp):
    erp = make_erp(fail_models={"sale.order": httpx.ConnectError("refused")})
    orders = catalog.resolve("orders")
    assert check_state_mix(erp, orders, translate(orders, "this month", now=NOW)) is None
