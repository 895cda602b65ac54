from fastapi import APIRouter, Depends, Query

from ledgerflow.core.config import settings
from ledgerflow.core.deps import get_forecast_service
from ledgerflow.schemas.forecast import ForecastResponse
from ledgerflow.services.forecast import ForecastService

router = APIRouter(prefix="/tenants/{tenant_id}/forecast", tags=["forecast"])


@router.get("", response_model=ForecastResponse)
async def get_forecast(
    tenant_id: str,
    days: int = Query(default=settings.forecast_default_days, ge=1, le=settings.forecast_max_days),
    include_scenarios: bool = False,
    service: ForecastService = Depends(get_forecast_service),
):
    """Daily cash projection; served from cache for a few minutes after computing."""
    return await service.get_forecast(tenant_id, days, include_scenarios)


@router.post("/regenerate", response_model=ForecastResponse)
async def regenerate_forecast(
    tenant_id: str,
    days: int = Query(default=settings.forecast_default_days, ge=1, le=settings.forecast_max_days),
    include_scenarios: bool = False,
    service: ForecastService = Depends(get_forecast_service),
):
    return await service.regenerate_forecast(tenant_id, days, include_scenarios)
