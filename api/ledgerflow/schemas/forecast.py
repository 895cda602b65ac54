from datetime import date, datetime
from decimal import Decimal

from pydantic import BaseModel


class FlowItemResponse(BaseModel):
    source: str                     # RECURRING | RECEIVABLE | PAYABLE | TAX | BUDGET
    description: str
    amount: Decimal
    firm: bool
    account_code: str | None = None


class FlowBucketResponse(BaseModel):
    items: list[FlowItemResponse]
    total: Decimal


class AlertResponse(BaseModel):
    type: str
    severity: str                   # info | warning | critical
    message: str
    amount: Decimal | None = None
    shortfall: Decimal
    consecutive_days: int


class ScenarioResponse(BaseModel):
    best_case: Decimal
    worst_case: Decimal


class ForecastDayResponse(BaseModel):
    date: date
    opening_balance: Decimal
    inflows: FlowBucketResponse
    outflows: FlowBucketResponse
    closing_balance: Decimal
    confidence_level: float         # 0..1
    alerts: list[AlertResponse]
    scenarios: ScenarioResponse | None = None


class ForecastSummary(BaseModel):
    lowest_balance: Decimal
    lowest_balance_date: date
    total_inflows: Decimal
    total_outflows: Decimal
    average_confidence: float
    critical_alert_count: int


class ForecastResponse(BaseModel):
    tenant_id: str
    generated_at: datetime
    days: int
    opening_balance: Decimal
    forecast: list[ForecastDayResponse]
    summary: ForecastSummary
