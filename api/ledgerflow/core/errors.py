"""Error taxonomy shared by the sync and forecast services.

Routers translate these into HTTP responses (see ``ledgerflow.main``).
Upstream outcomes inside the sync pipeline travel as values
(``UpstreamFailure`` / ``PageFailed``); these exceptions are what surfaces
to callers.
"""


class LedgerflowError(Exception):
    kind = "internal"
    status_code = 500

    def __init__(self, message: str, *, detail: dict | None = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}

    def to_dict(self) -> dict:
        return {"kind": self.kind, "message": self.message, **self.detail}


class AuthError(LedgerflowError):
    """No usable credential for the tenant. Never retried internally."""
    kind = "auth"
    status_code = 401

    def __init__(self, reason: str, message: str | None = None):
        # reason: "not_connected" | "expired"
        super().__init__(message or f"Tenant credential unavailable: {reason}", detail={"reason": reason})
        self.reason = reason


class RateLimited(LedgerflowError):
    kind = "rate_limited"
    status_code = 429

    def __init__(self, message: str, retry_after: float | None = None):
        super().__init__(message, detail={"retry_after": retry_after})
        self.retry_after = retry_after


class UpstreamUnavailable(LedgerflowError):
    kind = "upstream_unavailable"
    status_code = 503


class ValidationError(LedgerflowError):
    """Malformed caller input, rejected immediately."""
    kind = "validation"
    status_code = 422


class Conflict(LedgerflowError):
    kind = "conflict"
    status_code = 409


class NotFound(LedgerflowError):
    kind = "not_found"
    status_code = 404


class InternalError(LedgerflowError):
    kind = "internal"
    status_code = 500
