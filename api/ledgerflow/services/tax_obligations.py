"""
UK tax obligations projected from the balance-sheet snapshot.

  VAT              one return per calendar quarter (or month), due one month
                   and seven days after the period ends
  PAYE/NI          due on the 22nd of the month after the payroll month
  Corporation tax  due nine months and one day after the financial year end

The outstanding VAT and PAYE balances stand in for every period in the
window. Corporation tax is charged on current-year earnings, at the main
rate once profit passes the threshold.
"""
import calendar
import logging
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal

from ledgerflow.core.config import settings
from ledgerflow.services.forecast import TaxItem, money
from ledgerflow.services.report_parser import PositionSnapshot

logger = logging.getLogger(__name__)

VAT_ACCOUNT_CODE = "820"
PAYE_ACCOUNT_CODE = "825"
VAT_DUE_AFTER = timedelta(days=37)
PAYE_DUE_DAY = 22
CT_MAIN_RATE_THRESHOLD = Decimal("250000")
CT_SMALL_PROFITS_RATE = Decimal("0.19")
CT_MAIN_RATE = Decimal("0.25")


@dataclass(frozen=True)
class TaxCalendar:
    year_end_month: int = 3
    year_end_day: int = 31
    vat_period: str = "QUARTERLY"

    @classmethod
    def from_settings(cls) -> "TaxCalendar":
        return cls(
            year_end_month=settings.financial_year_end_month,
            year_end_day=settings.financial_year_end_day,
            vat_period=settings.vat_return_period,
        )

    def year_end(self, year: int) -> date:
        last = calendar.monthrange(year, self.year_end_month)[1]
        return date(year, self.year_end_month, min(self.year_end_day, last))


def _shift_month(year: int, month: int, by: int) -> tuple[int, int]:
    index = month - 1 + by
    return year + index // 12, index % 12 + 1


def _month_end(year: int, month: int) -> date:
    return date(year, month, calendar.monthrange(year, month)[1])


def _amount(balance: Decimal | None) -> Decimal:
    return money(abs(balance)) if balance else money(0)


# ─── Per tax ──────────────────────────────────────────────────────────────────

def vat_obligations(liability: Decimal | None, start: date, end: date, period: str = "QUARTERLY") -> list[TaxItem]:
    amount = _amount(liability)
    if amount <= 0:
        return []
    months = 3 if period == "QUARTERLY" else 1
    # Begin one period back: its return may still fall due inside the window
    year, month = _shift_month(start.year, (start.month - 1) // months * months + 1, -months)

    items: list[TaxItem] = []
    while True:
        period_end = _month_end(*_shift_month(year, month, months - 1))
        if period_end >= end:
            break
        due = period_end + VAT_DUE_AFTER
        if start <= due <= end:
            if months == 3:
                reference = f"VAT Q{(month - 1) // 3 + 1} {year}"
            else:
                reference = f"VAT {date(year, month, 1):%b %Y}"
            items.append(TaxItem(due, amount, "VAT", VAT_ACCOUNT_CODE, reference))
        year, month = _shift_month(year, month, months)
    return items


def paye_obligations(liability: Decimal | None, start: date, end: date) -> list[TaxItem]:
    amount = _amount(liability)
    if amount <= 0:
        return []
    year, month = _shift_month(start.year, start.month, -1)

    items: list[TaxItem] = []
    while True:
        due = date(*_shift_month(year, month, 1), PAYE_DUE_DAY)
        if due > end:
            break
        if due >= start:
            items.append(TaxItem(due, amount, "PAYE_NI", PAYE_ACCOUNT_CODE, f"PAYE/NI {date(year, month, 1):%b %Y}"))
        year, month = _shift_month(year, month, 1)
    return items


def corporation_tax_due(year_end: date) -> date:
    year, month = _shift_month(year_end.year, year_end.month, 9)
    shifted = date(year, month, min(year_end.day, calendar.monthrange(year, month)[1]))
    return shifted + timedelta(days=1)


def corporation_tax_obligations(
    profit: Decimal | None, start: date, end: date, tax_calendar: TaxCalendar
) -> list[TaxItem]:
    if not profit or profit <= 0:
        return []
    rate = CT_MAIN_RATE if profit > CT_MAIN_RATE_THRESHOLD else CT_SMALL_PROFITS_RATE
    amount = money(profit * rate)

    items: list[TaxItem] = []
    for year in range(start.year - 1, end.year + 1):
        year_end = tax_calendar.year_end(year)
        due = corporation_tax_due(year_end)
        if start <= due <= end:
            items.append(TaxItem(due, amount, "CORPORATION_TAX", None, f"CT FY{year_end.year}"))
    return items


# ─── Entry point ──────────────────────────────────────────────────────────────

def project_tax_obligations(
    snapshot: PositionSnapshot, start: date, end: date, tax_calendar: TaxCalendar | None = None
) -> list[TaxItem]:
    """Every VAT, PAYE/NI and corporation tax payment falling due in [start, end]."""
    tax_calendar = tax_calendar or TaxCalendar.from_settings()
    items = [
        *vat_obligations(snapshot.vat_liability, start, end, tax_calendar.vat_period),
        *paye_obligations(snapshot.paye_liability, start, end),
        *corporation_tax_obligations(snapshot.current_year_earnings, start, end, tax_calendar),
    ]
    items.sort(key=lambda item: (item.due_date, item.kind))
    logger.debug("Projected %d tax obligations between %s and %s", len(items), start, end)
    return items
