"""
Structured parser for accounting-system reports (balance sheet et al.).

Upstream reports are nested ``Rows`` whose nodes are tagged by ``RowType``.
Each node is classified into one of a closed set of variants:

  Header    column captions (first row of the report)
  Section   titled group of rows, may nest
  Row       one line item: label + per-column amounts (+ account id if any)
  TotalRow  the section total ("SummaryRow" upstream)

Anything else (an unknown RowType, a non-numeric amount, a missing Rows
list) raises ``ReportParseError``. A report that cannot be understood is
never read as zero.
"""
import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal, InvalidOperation

from ledgerflow.core.errors import LedgerflowError

logger = logging.getLogger(__name__)

CASH_SECTION_TITLES = ("bank", "bank accounts", "cash at bank", "cash and cash equivalents")
RECEIVABLE_LABELS = ("accounts receivable", "debtors", "trade debtors")
PAYABLE_LABELS = ("accounts payable", "creditors", "trade creditors")
VAT_LABELS = ("vat", "vat liability", "gst", "sales tax")
PAYE_LABELS = ("paye payable", "paye/ni", "paye and nic", "national insurance")
EARNINGS_LABELS = ("current year earnings", "current year profit")


class ReportParseError(LedgerflowError):
    kind = "report_parse"
    status_code = 502


# ─── Variants ────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Header:
    cells: tuple[str, ...]


@dataclass(frozen=True)
class Row:
    label: str
    values: tuple[Decimal | None, ...]
    account_id: str | None = None

    @property
    def amount(self) -> Decimal | None:
        """Amount in the current-period (first value) column."""
        return self.values[0] if self.values else None


@dataclass(frozen=True)
class TotalRow:
    label: str
    values: tuple[Decimal | None, ...]

    @property
    def amount(self) -> Decimal | None:
        return self.values[0] if self.values else None


@dataclass(frozen=True)
class Section:
    title: str
    rows: tuple["Row | TotalRow | Section", ...] = ()

    def line_items(self) -> list[Row]:
        items: list[Row] = []
        for node in self.rows:
            if isinstance(node, Row):
                items.append(node)
            elif isinstance(node, Section):
                items.extend(node.line_items())
        return items

    def total(self) -> Decimal | None:
        """The TotalRow amount, else the sum of line items, else None when empty."""
        for node in self.rows:
            if isinstance(node, TotalRow) and node.amount is not None:
                return node.amount
        amounts = [r.amount for r in self.line_items() if r.amount is not None]
        return sum(amounts, Decimal("0")) if amounts else None


@dataclass(frozen=True)
class Report:
    name: str
    date_label: str | None
    header: Header | None
    sections: tuple[Section, ...] = field(default_factory=tuple)

    def section(self, *titles: str) -> Section | None:
        wanted = {t.lower() for t in titles}
        for section in self._walk_sections(self.sections):
            if section.title.strip().lower() in wanted:
                return section
        return None

    def find_row(self, *labels: str) -> Row | None:
        wanted = {l.lower() for l in labels}
        for section in self._walk_sections(self.sections):
            for node in section.rows:
                if isinstance(node, Row) and node.label.strip().lower() in wanted:
                    return node
        return None

    @classmethod
    def _walk_sections(cls, sections):
        for section in sections:
            yield section
            yield from cls._walk_sections([n for n in section.rows if isinstance(n, Section)])


# ─── Parsing ─────────────────────────────────────────────────────────────────

def _parse_amount(raw, where: str) -> Decimal | None:
    if raw is None:
        return None
    text = str(raw).strip().replace(",", "")
    if text == "":
        return None
    negative = text.startswith("(") and text.endswith(")")
    if negative:
        text = text[1:-1]
    try:
        value = Decimal(text)
    except InvalidOperation:
        raise ReportParseError(f"Non-numeric amount {raw!r} in {where}") from None
    return -value if negative else value


def _cells(node: dict) -> list[dict]:
    cells = node.get("Cells")
    if not isinstance(cells, list) or not cells:
        raise ReportParseError(f"{node.get('RowType')} row without Cells")
    return cells


def _account_id(cell: dict) -> str | None:
    for attr in cell.get("Attributes") or []:
        if attr.get("Id") == "account":
            return attr.get("Value")
    return None


def _parse_node(node: dict, path: str):
    row_type = node.get("RowType")
    if row_type == "Section":
        children = node.get("Rows")
        if children is None:
            children = []
        if not isinstance(children, list):
            raise ReportParseError(f"Section {node.get('Title')!r} has malformed Rows")
        title = node.get("Title") or ""
        sub_path = f"{path}/{title or '<untitled>'}"
        return Section(title=title, rows=tuple(_parse_node(child, sub_path) for child in children))

    if row_type == "Header":
        return Header(cells=tuple(str(c.get("Value") or "") for c in _cells(node)))

    if row_type in ("Row", "SummaryRow"):
        cells = _cells(node)
        label = str(cells[0].get("Value") or "")
        where = f"{path}/{label}"
        values = tuple(_parse_amount(c.get("Value"), where) for c in cells[1:])
        if row_type == "SummaryRow":
            return TotalRow(label=label, values=values)
        return Row(label=label, values=values, account_id=_account_id(cells[0]))

    raise ReportParseError(f"Unrecognised RowType {row_type!r} at {path or '/'}")


def parse_report(payload: dict) -> Report:
    """Parse a report response (``{"Reports": [...]}`` or a bare report dict)."""
    if not isinstance(payload, dict):
        raise ReportParseError("Report payload is not an object")
    if "Reports" in payload:
        reports = payload["Reports"]
        if not isinstance(reports, list) or not reports:
            raise ReportParseError("Report response contains no reports")
        payload = reports[0]

    rows = payload.get("Rows")
    if not isinstance(rows, list):
        raise ReportParseError("Report has no Rows list")

    header: Header | None = None
    sections: list[Section] = []
    for node in rows:
        parsed = _parse_node(node, "")
        if isinstance(parsed, Header):
            header = parsed
        elif isinstance(parsed, Section):
            sections.append(parsed)
        else:
            # Top-level line items are wrapped so nothing is dropped
            sections.append(Section(title="", rows=(parsed,)))

    return Report(
        name=payload.get("ReportName") or payload.get("ReportID") or "",
        date_label=payload.get("ReportDate"),
        header=header,
        sections=tuple(sections),
    )


# ─── Balance sheet ───────────────────────────────────────────────────────────

@dataclass
class PositionSnapshot:
    as_of: date
    cash: Decimal
    receivables: Decimal | None
    payables: Decimal | None
    bank_balances: dict[str, Decimal]    # upstream account id -> balance
    vat_liability: Decimal | None = None
    paye_liability: Decimal | None = None
    current_year_earnings: Decimal | None = None


def extract_financial_position(report: Report, as_of: date) -> PositionSnapshot:
    bank = report.section(*CASH_SECTION_TITLES)
    if bank is None:
        raise ReportParseError(f"{report.name or 'Report'} has no bank section")
    cash = bank.total()
    if cash is None:
        raise ReportParseError(f"Bank section {bank.title!r} has no amounts")

    receivable_row = report.find_row(*RECEIVABLE_LABELS)
    payable_row = report.find_row(*PAYABLE_LABELS)
    vat_row = report.find_row(*VAT_LABELS)
    paye_row = report.find_row(*PAYE_LABELS)
    earnings_row = report.find_row(*EARNINGS_LABELS)
    bank_balances = {
        row.account_id: row.amount
        for row in bank.line_items()
        if row.account_id and row.amount is not None
    }
    logger.debug("Parsed balance sheet: cash=%s, %d bank accounts", cash, len(bank_balances))
    return PositionSnapshot(
        as_of=as_of,
        cash=cash,
        receivables=receivable_row.amount if receivable_row else None,
        payables=payable_row.amount if payable_row else None,
        bank_balances=bank_balances,
        vat_liability=vat_row.amount if vat_row else None,
        paye_liability=paye_row.amount if paye_row else None,
        current_year_earnings=earnings_row.amount if earnings_row else None,
    )
