"""Request identification, rate limiting and API access logging"""
import json
import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import HTTPException, Request

from lateless.core.config import settings
from lateless.db.redis import check_rate_limit as redis_check_rate_limit

security_logger = logging.getLogger("security")
api_access_logger = logging.getLogger("api_access")


def get_client_ip(request: Request) -> str:
    client_ip = request.headers.get("X-Forwarded-For", "").split(",")[0].strip()
    if not client_ip:
        client_ip = request.client.host if request.client else "unknown"
    return client_ip


def get_client_identifier(request: Request, bucket: str) -> str:
    """Get a unique identifier for rate limiting within a bucket"""
    return f"{bucket}:ip:{get_client_ip(request)}"


def check_rate_limit(identifier: str, max_requests: int, window: int) -> bool:
    """Check if request is within rate limit

    Returns:
        True if within limit, False if exceeded
    """
    return redis_check_rate_limit(identifier, max_requests, window)


def require_checkout_rate_limit(request: Request) -> None:
    """Dependency: fixed-window limit on invoice checkout creation"""
    identifier = get_client_identifier(request, "invoice_pay")
    allowed = check_rate_limit(
        identifier,
        settings.CHECKOUT_RATE_LIMIT_REQUESTS,
        settings.CHECKOUT_RATE_LIMIT_WINDOW
    )
    if not allowed:
        security_logger.warning(f"Rate limit exceeded - Identifier: {identifier}, Path: {request.url.path}")
        raise HTTPException(429, "Rate limit exceeded. Please try again later.")


def log_api_access(
    request: Request,
    status_code: int = 200,
    error: Optional[str] = None
):
    """Log detailed API access information"""
    log_data = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "method": request.method,
        "path": request.url.path,
        "query": str(request.url.query) if request.url.query else None,
        "client_ip": get_client_ip(request),
        "user_agent": request.headers.get("User-Agent", "unknown"),
        "status_code": status_code,
        "error": error
    }

    if error or status_code >= 400:
        api_access_logger.warning(f"API Access: {json.dumps(log_data)}")
    else:
        api_access_logger.info(f"API Access: {json.dumps(log_data)}")
