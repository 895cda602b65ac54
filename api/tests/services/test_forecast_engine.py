"""
Tests for the pure forecast engine in services/forecast.py.

No database here: every test builds a ForecastInputs snapshot by hand.
"""
from datetime import date, timedelta
from decimal import Decimal

import pytest

from ledgerflow.core.errors import ValidationError
from ledgerflow.services.forecast import (
    BudgetLine,
    FlowBucket,
    FlowItem,
    ForecastInputs,
    ForecastThresholds,
    OpenInvoice,
    RecurringItem,
    TaxItem,
    confidence_for,
    generate_forecast,
    money,
    occurrences,
    projected_settlement,
    summarize,
)

START = date(2026, 3, 2)


@pytest.fixture
def thresholds():
    return ForecastThresholds(
        low_balance=Decimal("500.00"),
        critical_balance=Decimal("100.00"),
        large_payment=Decimal("350.00"),
        min_confidence=0.7,
    )


def alert_types(day):
    return [a.type for a in day.alerts]


def month_end_inputs(tax_amount: str) -> ForecastInputs:
    """Tax due on the last day of February, March budget for the same code."""
    return ForecastInputs(
        opening_balance=Decimal("1000.00"),
        as_of=date(2026, 2, 28),
        taxes=[TaxItem(date(2026, 2, 28), Decimal(tax_amount), "VAT", account_code="X")],
        budgets=[BudgetLine("2026-03", "X", Decimal("9300.00"))],
    )


# ── Worked example ───────────────────────────────────────────────────────────

class TestMonthEndExample:
    def test_tax_then_budget(self, thresholds):
        days = generate_forecast(month_end_inputs("400.00"), date(2026, 2, 28), 3, thresholds)
        day0, day1, day2 = days

        assert day0.opening_balance == Decimal("1000.00")
        assert day0.outflows.total == Decimal("400.00")
        assert day0.closing_balance == Decimal("600.00")
        assert day0.confidence_level == 1.0
        assert alert_types(day0) == ["TAX_DUE", "LARGE_PAYMENT"]

        # 9300 / 31 days of March
        assert [i.source for i in day1.outflows.items] == ["BUDGET"]
        assert day1.outflows.total == Decimal("300.00")
        assert day1.closing_balance == Decimal("300.00")
        assert day1.confidence_level == 0.6
        low = day1.alerts[0]
        assert (low.type, low.severity) == ("LOW_BALANCE", "warning")
        assert low.shortfall == Decimal("200.00")
        assert low.consecutive_days == 1
        assert "LOW_CONFIDENCE" in alert_types(day1)

        assert day2.closing_balance == Decimal("0.00")
        assert day2.confidence_level == 0.59
        assert day2.alerts[0].severity == "critical"

    def test_tax_overdraws_on_day_zero(self, thresholds):
        day0 = generate_forecast(month_end_inputs("1200.00"), date(2026, 2, 28), 1, thresholds)[0]
        assert day0.closing_balance == Decimal("-200.00")
        low = day0.alerts[0]
        assert (low.type, low.severity) == ("LOW_BALANCE", "critical")
        assert low.shortfall == Decimal("700.00")
        assert "negative" in low.message

    def test_each_day_opens_at_previous_close(self, thresholds):
        inputs = ForecastInputs(
            opening_balance=Decimal("5000.00"),
            as_of=START,
            recurring=[
                RecurringItem("Retainer", "in", Decimal("1200.00"), "WEEKLY", 1, START + timedelta(days=3)),
                RecurringItem("Rent", "out", Decimal("2500.00"), "MONTHLY", 1, date(2026, 3, 15)),
            ],
            invoices=[OpenInvoice("INV-7", "in", "c-1", Decimal("830.15"), date(2026, 3, 20))],
            budgets=[BudgetLine("2026-03", "400", Decimal("1550.00")), BudgetLine("2026-04", "400", Decimal("600.00"))],
        )
        days = generate_forecast(inputs, START, 60, thresholds)

        assert len(days) == 60
        assert [d.date for d in days] == [START + timedelta(days=n) for n in range(60)]
        assert days[0].opening_balance == Decimal("5000.00")
        for prev, nxt in zip(days, days[1:]):
            assert nxt.opening_balance == prev.closing_balance
        for day in days:
            assert day.closing_balance == day.opening_balance + day.inflows.total - day.outflows.total
            assert day.closing_balance == day.closing_balance.quantize(Decimal("0.01"))

    def test_horizon_must_be_positive(self, thresholds):
        with pytest.raises(ValidationError):
            generate_forecast(ForecastInputs(Decimal("0"), START), START, 0, thresholds)

    def test_settings_thresholds_by_default(self):
        day0 = generate_forecast(ForecastInputs(Decimal("4000.00"), START), START, 1)[0]
        assert [(a.type, a.severity) for a in day0.alerts] == [("LOW_BALANCE", "warning")]


# ── Flows ────────────────────────────────────────────────────────────────────

class TestFlows:
    def test_budget_skipped_where_outflow_is_scheduled(self, thresholds):
        start = date(2026, 3, 1)
        inputs = ForecastInputs(
            opening_balance=Decimal("10000.00"),
            as_of=start,
            taxes=[TaxItem(start, Decimal("100.00"), "PAYE_NI", account_code="X")],
            budgets=[BudgetLine("2026-03", "X", Decimal("3100.00")), BudgetLine("2026-03", "Y", Decimal("620.00"))],
        )
        day0, day1 = generate_forecast(inputs, start, 2, thresholds)

        assert [(i.source, i.account_code, i.amount) for i in day0.outflows.items] == [
            ("TAX", "X", Decimal("100.00")),
            ("BUDGET", "Y", Decimal("20.00")),
        ]
        assert [(i.source, i.account_code, i.amount) for i in day1.outflows.items] == [
            ("BUDGET", "X", Decimal("100.00")),
            ("BUDGET", "Y", Decimal("20.00")),
        ]

    def test_receivables_follow_customer_pattern(self, thresholds):
        inputs = ForecastInputs(
            opening_balance=Decimal("1000.00"),
            as_of=START,
            invoices=[
                OpenInvoice("INV-1", "in", "c-1", Decimal("250.00"), START),
                OpenInvoice("BILL-1", "out", "s-1", Decimal("80.00"), START),
            ],
            patterns={("c-1", "CUSTOMER"): 2.4, ("s-1", "SUPPLIER"): 1.0},
        )
        days = generate_forecast(inputs, START, 4, thresholds)

        assert days[0].inflows.items == [] and days[0].outflows.items == []
        assert [i.description for i in days[1].outflows.items] == ["BILL-1"]
        assert [i.description for i in days[2].inflows.items] == ["INV-1"]
        assert days[2].inflows.items[0].firm is False

    def test_settlements_before_window_are_dropped(self, thresholds):
        inputs = ForecastInputs(
            opening_balance=Decimal("1000.00"),
            as_of=START,
            invoices=[OpenInvoice("INV-OLD", "in", "c-1", Decimal("90.00"), START - timedelta(days=5))],
        )
        days = generate_forecast(inputs, START, 3, thresholds)
        assert all(not d.inflows.items for d in days)

    def test_scenarios(self, thresholds):
        inputs = ForecastInputs(
            opening_balance=Decimal("1000.00"),
            as_of=START,
            recurring=[
                RecurringItem("Subscription", "in", Decimal("100.00"), "DAILY", 1, START),
                RecurringItem("Contractor", "out", Decimal("50.00"), "DAILY", 1, START),
            ],
        )
        day0 = generate_forecast(inputs, START, 1, thresholds, include_scenarios=True)[0]
        assert day0.closing_balance == Decimal("1050.00")
        assert day0.scenarios == {"best_case": Decimal("1075.00"), "worst_case": Decimal("1025.00")}

        plain = generate_forecast(inputs, START, 1, thresholds)[0]
        assert plain.scenarios is None


# ── Confidence ───────────────────────────────────────────────────────────────

class TestConfidence:
    def test_firm_day_decays_with_distance(self):
        firm = FlowBucket([FlowItem("TAX", "VAT", Decimal("10.00"), True)])
        assert confidence_for(firm, FlowBucket(), 0) == 1.0
        assert confidence_for(firm, FlowBucket(), 60) == 0.74

    def test_half_soft_day(self):
        inflows = FlowBucket([FlowItem("RECEIVABLE", "INV-1", Decimal("50.00"), False)])
        outflows = FlowBucket([FlowItem("RECURRING", "Rent", Decimal("50.00"), True)])
        assert confidence_for(inflows, outflows, 0) == 0.8

    def test_never_rises_after_a_soft_day(self, thresholds):
        inputs = ForecastInputs(
            opening_balance=Decimal("10000.00"),
            as_of=START,
            recurring=[RecurringItem("Retainer", "in", Decimal("50.00"), "DAILY", 1, START + timedelta(days=1))],
            invoices=[OpenInvoice("INV-1", "in", "c-1", Decimal("100.00"), START)],
        )
        days = generate_forecast(inputs, START, 4, thresholds)
        levels = [d.confidence_level for d in days]
        assert levels == [0.6, 0.6, 0.6, 0.6]
        assert all("LOW_CONFIDENCE" in alert_types(d) for d in days)

    def test_non_increasing_over_long_horizon(self, thresholds):
        inputs = ForecastInputs(
            opening_balance=Decimal("10000.00"),
            as_of=START,
            recurring=[RecurringItem("Payroll", "out", Decimal("900.00"), "MONTHLY", 1, date(2026, 3, 25))],
            budgets=[BudgetLine("2026-04", "400", Decimal("300.00"))],
        )
        levels = [d.confidence_level for d in generate_forecast(inputs, START, 120, thresholds)]
        assert levels == sorted(levels, reverse=True)


# ── Alerts ───────────────────────────────────────────────────────────────────

class TestAlerts:
    def test_low_balance_escalates_after_three_days(self, thresholds):
        inputs = ForecastInputs(
            opening_balance=Decimal("400.00"),
            as_of=START,
            recurring=[RecurringItem("Refund", "in", Decimal("200.00"), "YEARLY", 1, START + timedelta(days=4))],
        )
        days = generate_forecast(inputs, START, 6, thresholds)

        lows = [d.alerts[0] for d in days[:4]]
        assert [a.severity for a in lows] == ["warning", "warning", "critical", "critical"]
        assert [a.consecutive_days for a in lows] == [1, 2, 3, 4]
        assert {a.shortfall for a in lows} == {Decimal("100.00")}

        assert days[4].closing_balance == Decimal("600.00")
        assert "LOW_BALANCE" not in alert_types(days[4])
        assert "LOW_BALANCE" not in alert_types(days[5])

    def test_below_critical_threshold_is_critical_immediately(self, thresholds):
        day0 = generate_forecast(ForecastInputs(Decimal("50.00"), START), START, 1, thresholds)[0]
        assert day0.alerts[0].severity == "critical"
        assert day0.alerts[0].shortfall == Decimal("450.00")

    def test_large_payment_counts_the_whole_day(self, thresholds):
        inputs = ForecastInputs(
            opening_balance=Decimal("10000.00"),
            as_of=START,
            recurring=[
                RecurringItem("Rent", "out", Decimal("200.00"), "DAILY", 1, START),
                RecurringItem("Lease", "out", Decimal("200.00"), "DAILY", 1, START),
            ],
        )
        day0 = generate_forecast(inputs, START, 1, thresholds)[0]
        [large] = [a for a in day0.alerts if a.type == "LARGE_PAYMENT"]
        assert large.severity == "info"
        assert large.amount == Decimal("400.00")

    def test_overdue_receivables_flagged_on_first_day_only(self, thresholds):
        inputs = ForecastInputs(
            opening_balance=Decimal("10000.00"),
            as_of=START,
            invoices=[
                OpenInvoice("INV-1", "in", "c-1", Decimal("120.00"), date(2026, 1, 15)),
                OpenInvoice("INV-2", "in", "c-2", Decimal("80.00"), date(2026, 1, 20)),
                OpenInvoice("INV-3", "in", "c-3", Decimal("999.00"), date(2026, 2, 20)),
                OpenInvoice("BILL-1", "out", "s-1", Decimal("500.00"), date(2026, 1, 1)),
            ],
        )
        days = generate_forecast(inputs, START, 2, thresholds)
        [overdue] = [a for a in days[0].alerts if a.type == "OVERDUE_INVOICE"]
        assert overdue.amount == Decimal("200.00")
        assert overdue.message.startswith("2 invoices")
        assert "OVERDUE_INVOICE" not in alert_types(days[1])


# ── Schedules ────────────────────────────────────────────────────────────────

class TestSchedules:
    def test_monthly_clamps_to_month_end(self):
        item = RecurringItem("Rent", "out", Decimal("1"), "MONTHLY", 1, date(2026, 1, 31))
        assert occurrences(item, date(2026, 1, 1), date(2026, 5, 31)) == [
            date(2026, 1, 31), date(2026, 2, 28), date(2026, 3, 31), date(2026, 4, 30), date(2026, 5, 31),
        ]

    def test_end_date_stops_schedule(self):
        item = RecurringItem("Rent", "out", Decimal("1"), "MONTHLY", 1, date(2026, 1, 31), end_date=date(2026, 3, 31))
        assert occurrences(item, date(2026, 1, 1), date(2026, 6, 30)) == [
            date(2026, 1, 31), date(2026, 2, 28), date(2026, 3, 31),
        ]

    def test_fortnightly_anchor_before_window(self):
        item = RecurringItem("Payroll", "out", Decimal("1"), "WEEKLY", 2, date(2026, 2, 20))
        assert occurrences(item, date(2026, 3, 1), date(2026, 3, 31)) == [date(2026, 3, 6), date(2026, 3, 20)]

    def test_yearly(self):
        item = RecurringItem("Insurance", "out", Decimal("1"), "YEARLY", 1, date(2024, 2, 29))
        assert occurrences(item, date(2025, 1, 1), date(2026, 12, 31)) == [date(2025, 2, 28), date(2026, 2, 28)]

    @pytest.mark.parametrize("unit,period,next_date", [
        ("FORTNIGHTLY", 1, START),
        ("MONTHLY", 0, START),
        ("MONTHLY", 1, None),
    ])
    def test_unusable_schedules_yield_nothing(self, unit, period, next_date):
        item = RecurringItem("x", "out", Decimal("1"), unit, period, next_date)
        assert occurrences(item, START, START + timedelta(days=90)) == []

    def test_projected_settlement(self):
        patterns = {("c-1", "CUSTOMER"): 4.6, ("c-2", "CUSTOMER"): -3.0, ("c-1", "SUPPLIER"): 10.0}
        due = date(2026, 3, 10)
        assert projected_settlement(OpenInvoice("a", "in", "c-1", Decimal("1"), due), patterns) == date(2026, 3, 15)
        assert projected_settlement(OpenInvoice("b", "in", "c-2", Decimal("1"), due), patterns) == due
        assert projected_settlement(OpenInvoice("c", "in", "c-9", Decimal("1"), due), patterns) == due
        assert projected_settlement(OpenInvoice("d", "out", "c-1", Decimal("1"), due), patterns) == date(2026, 3, 20)


# ── Summary ──────────────────────────────────────────────────────────────────

class TestSummary:
    def test_summary_of_worked_example(self, thresholds):
        days = generate_forecast(month_end_inputs("400.00"), date(2026, 2, 28), 3, thresholds)
        assert summarize(days) == {
            "lowest_balance": Decimal("0.00"),
            "lowest_balance_date": date(2026, 3, 2),
            "total_inflows": Decimal("0.00"),
            "total_outflows": Decimal("1000.00"),
            "average_confidence": 0.73,
            "critical_alert_count": 1,
        }

    def test_empty(self):
        assert summarize([]) == {}

    def test_money_rounds_half_even(self):
        assert money("2.345") == Decimal("2.34")
        assert money("2.355") == Decimal("2.36")
