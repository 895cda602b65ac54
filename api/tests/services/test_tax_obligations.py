"""
Tests for services/tax_obligations.py: UK tax calendar projection.
"""
from datetime import date
from decimal import Decimal

from ledgerflow.services.report_parser import extract_financial_position, parse_report
from ledgerflow.services.tax_obligations import (
    TaxCalendar,
    corporation_tax_due,
    corporation_tax_obligations,
    paye_obligations,
    project_tax_obligations,
    vat_obligations,
)
from tests.builders import balance_sheet

START = date(2026, 3, 2)


def dues(items):
    return [(i.due_date, i.reference) for i in items]


# ── VAT ───────────────────────────────────────────────────────────────────────

class TestVat:
    def test_quarterly_return_due_37_days_after_quarter_end(self):
        items = vat_obligations(Decimal("3000.00"), START, date(2026, 5, 31))
        assert dues(items) == [(date(2026, 5, 7), "VAT Q1 2026")]
        assert items[0].amount == Decimal("3000.00")
        assert items[0].kind == "VAT"
        assert items[0].account_code == "820"

    def test_previous_quarter_still_due_is_included(self):
        items = vat_obligations(Decimal("800.00"), date(2026, 1, 15), date(2026, 3, 31))
        assert dues(items) == [(date(2026, 2, 6), "VAT Q4 2025")]

    def test_monthly_returns(self):
        items = vat_obligations(Decimal("500.00"), START, date(2026, 5, 31), period="MONTHLY")
        assert dues(items) == [(date(2026, 4, 6), "VAT Feb 2026"), (date(2026, 5, 7), "VAT Mar 2026")]

    def test_no_liability_no_returns(self):
        assert vat_obligations(None, START, date(2026, 12, 31)) == []
        assert vat_obligations(Decimal("0.00"), START, date(2026, 12, 31)) == []


# ── PAYE / NI ─────────────────────────────────────────────────────────────────

class TestPaye:
    def test_due_on_the_22nd_of_the_following_month(self):
        items = paye_obligations(Decimal("1200.00"), START, date(2026, 5, 31))
        assert dues(items) == [
            (date(2026, 3, 22), "PAYE/NI Feb 2026"),
            (date(2026, 4, 22), "PAYE/NI Mar 2026"),
            (date(2026, 5, 22), "PAYE/NI Apr 2026"),
        ]
        assert {i.amount for i in items} == {Decimal("1200.00")}

    def test_credit_balance_is_treated_as_owed(self):
        [item] = paye_obligations(Decimal("-450.5"), START, date(2026, 3, 31))
        assert item.amount == Decimal("450.50")


# ── Corporation tax ───────────────────────────────────────────────────────────

class TestCorporationTax:
    def test_due_nine_months_and_a_day_after_year_end(self):
        assert corporation_tax_due(date(2026, 3, 31)) == date(2027, 1, 1)
        assert corporation_tax_due(date(2025, 12, 31)) == date(2026, 10, 1)

    def test_small_profits_rate(self):
        [item] = corporation_tax_obligations(Decimal("100000"), START, date(2027, 3, 2), TaxCalendar())
        assert (item.due_date, item.amount, item.reference) == (date(2027, 1, 1), Decimal("19000.00"), "CT FY2026")

    def test_main_rate_above_threshold(self):
        [item] = corporation_tax_obligations(Decimal("300000"), START, date(2027, 3, 2), TaxCalendar())
        assert item.amount == Decimal("75000.00")

    def test_loss_owes_nothing(self):
        assert corporation_tax_obligations(Decimal("-5000"), START, date(2027, 3, 2), TaxCalendar()) == []

    def test_year_end_is_clamped_to_month_length(self):
        assert TaxCalendar(year_end_month=2, year_end_day=29).year_end(2027) == date(2027, 2, 28)


# ── From the balance sheet ────────────────────────────────────────────────────

def test_projection_from_balance_sheet_is_sorted():
    report = parse_report(balance_sheet(
        [("acc-1", "Main", "4200.00")],
        liabilities=[("VAT", "3000.00"), ("PAYE Payable", "1200.00")],
        equity=[("Current Year Earnings", "100000.00")],
    ))
    snapshot = extract_financial_position(report, START)
    assert snapshot.vat_liability == Decimal("3000.00")
    assert snapshot.paye_liability == Decimal("1200.00")
    assert snapshot.current_year_earnings == Decimal("100000.00")

    items = project_tax_obligations(snapshot, START, date(2026, 5, 31), TaxCalendar())
    assert [(i.due_date, i.kind) for i in items] == [
        (date(2026, 3, 22), "PAYE_NI"),
        (date(2026, 4, 22), "PAYE_NI"),
        (date(2026, 5, 7), "VAT"),
        (date(2026, 5, 22), "PAYE_NI"),
    ]


def test_balance_sheet_without_tax_rows_projects_nothing():
    snapshot = extract_financial_position(parse_report(balance_sheet([("acc-1", "Main", "10.00")])), START)
    assert project_tax_obligations(snapshot, START, date(2027, 3, 2), TaxCalendar()) == []
