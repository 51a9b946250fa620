"""
Helpers shared by the routers: error translation and rate limiting
"""
from typing import Optional
import logging

from fastapi import HTTPException, Request, status

from lessonpulse.auth import client_ip
from lessonpulse.cache import get_cache
from lessonpulse.rate_limit import rate_limiter
from lessonpulse.services import StateConflictError

logger = logging.getLogger(__name__)


def service_error(e: Exception, action: str) -> HTTPException:
    """Map an exception raised by the service layer to the HTTP error the client sees"""
    if isinstance(e, HTTPException):
        return e
    if isinstance(e, StateConflictError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    if isinstance(e, ValueError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    if isinstance(e, PermissionError):
        return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(e))
    if isinstance(e, LookupError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    logger.error(f"Failed to {action}: {e}")
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=f"Failed to {action}")


def too_many_requests(message: Optional[str], retry_after: int) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        detail=message or "Too many requests",
        headers={"Retry-After": str(max(1, retry_after))},
    )


async def enforce_rate_limit(request: Request, action: str, user_id: Optional[str] = None):
    """Count one request against `action` for the user, or the client IP when anonymous"""
    ip_address = client_ip(request)
    subject = user_id or ip_address or "unknown"
    result = await rate_limiter.hit(await get_cache(), action, subject, ip_address=ip_address, user_id=user_id)
    if not result.allowed:
        raise too_many_requests(result.message, result.retry_after)


def not_found(what: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"{what} not found")
