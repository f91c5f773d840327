"""Administrative endpoints: health, rate limit reset and metrics."""

import hmac
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse, PlainTextResponse

from apiguard.app.core.config import settings
from apiguard.app.core.logging import get_logger
from apiguard.app.core.metrics import get_metrics
from apiguard.app.ratelimit.engine import RateLimitEngine

logger = get_logger(__name__)
router = APIRouter()

# Engine shared by the admin endpoints; replaced in tests via dependency_overrides
_engine: Optional[RateLimitEngine] = None


def get_engine() -> RateLimitEngine:
    global _engine
    if _engine is None:
        _engine = RateLimitEngine()
    return _engine


def reset_engine() -> None:
    """Reset the admin engine (useful for testing)."""
    global _engine
    _engine = None


def get_bearer_token(request: Request) -> str | None:
    """Extract Bearer token from Authorization header."""
    auth = request.headers.get("Authorization", "")
    if not auth.startswith("Bearer "):
        return None
    return auth.replace("Bearer ", "", 1).strip()


def require_admin(request: Request) -> str:
    """Validate admin token for protected endpoints.

    Raises:
        HTTPException: 403 if admin endpoints are disabled (no token
            configured), 401 if the token is missing or invalid
    """
    expected_token = settings.admin_token
    if not expected_token:
        raise HTTPException(status_code=403, detail="Admin endpoints are disabled")

    token = get_bearer_token(request) or ""
    # Constant-time comparison to prevent timing attacks
    if not hmac.compare_digest(token, expected_token):
        raise HTTPException(status_code=401, detail="Invalid or missing admin token")
    return "admin"


@router.get("/health")
async def health(engine: RateLimitEngine = Depends(get_engine)) -> JSONResponse:
    """Backend reachability; 503 when the store cannot be reached."""
    status = await engine.health()
    code = 200 if status["status"] == "healthy" else 503
    return JSONResponse(status_code=code, content=status)


@router.delete("/admin/rate-limits/{key:path}")
async def reset_rate_limit(
    key: str,
    admin: str = Depends(require_admin),
    engine: RateLimitEngine = Depends(get_engine),
) -> dict[str, Any]:
    """Clear one key's rate limit state."""
    existed = await engine.reset_rate_limit(key)
    logger.info(f"Admin reset of rate limit key {key}")
    return {"key": key, "reset": True, "existed": existed}


@router.get("/metrics", response_class=PlainTextResponse)
async def prometheus_metrics(admin: str = Depends(require_admin)) -> PlainTextResponse:
    """Prometheus-compatible metrics endpoint (admin only)."""
    return PlainTextResponse(
        content=get_metrics().get_prometheus_metrics(),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )
