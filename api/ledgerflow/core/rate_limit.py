from slowapi import Limiter
from slowapi.util import get_remote_address
from starlette.requests import Request

from ledgerflow.core.config import settings

# Rate limiter backed by Redis so limits survive across worker restarts
limiter = Limiter(key_func=get_remote_address, storage_uri=settings.redis_url)


def tenant_key(request: Request) -> str:
    """Rate-limit key for per-tenant limits (reconciliation)."""
    return f"tenant:{request.path_params.get('tenant_id', get_remote_address(request))}"
