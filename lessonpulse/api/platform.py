"""
Platform admin console and public pricing
"""
from typing import List, Optional
import logging

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from lessonpulse.audit import audit_service, security_events
from lessonpulse.auth import CurrentUser, Role, client_ip, require_role, require_role_with_csrf
from lessonpulse.cache import get_cache
from lessonpulse.database import get_db
from lessonpulse.models import (
    AuditLogOut,
    DiscountCodeCreate,
    DiscountCodeOut,
    LockoutClear,
    PlatformStats,
    SchoolSummary,
    SecurityEventOut,
    StudentOut,
    SubscriptionCreate,
    SubscriptionOut,
    SubscriptionStatus,
    SubscriptionStatusUpdate,
    TeacherOut,
)
from lessonpulse.pricing import (
    PRICING_TIERS,
    VOLUME_DISCOUNTS,
    PriceQuote,
    calculate_pricing,
    summer_pause_info,
    trial_info,
)
from lessonpulse.rate_limit import login_throttle
from lessonpulse.services import platform_service, subscription_service
from lessonpulse.api.common import not_found, service_error

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/platform", tags=["Platform Admin"])
pricing_router = APIRouter(prefix="/api/pricing", tags=["Pricing"])

platform_admin = require_role([Role.PLATFORM_ADMIN])
platform_admin_csrf = require_role_with_csrf([Role.PLATFORM_ADMIN])


# ==================== Pricing (public) ====================

@pricing_router.get("")
async def pricing_overview():
    return {
        "tiers": PRICING_TIERS,
        "volume_discounts": VOLUME_DISCOUNTS,
        "trial": trial_info(),
        "summer_pause": summer_pause_info(),
    }


@pricing_router.get("/quote", response_model=PriceQuote)
async def price_quote(
    tier: str = Query(..., pattern="^(teacher|admin)$"),
    teachers: int = Query(1, ge=1, le=10000),
    annual: bool = False
):
    try:
        return calculate_pricing(tier, teachers, annual)
    except Exception as e:
        raise service_error(e, "calculate pricing")


# ==================== Overview ====================

@router.get("/stats", response_model=PlatformStats)
async def stats(current_user: CurrentUser = Depends(platform_admin), db: AsyncSession = Depends(get_db)):
    return await platform_service.platform_stats(db)


@router.get("/schools", response_model=List[SchoolSummary])
async def schools(current_user: CurrentUser = Depends(platform_admin), db: AsyncSession = Depends(get_db)):
    return await platform_service.schools(db)


@router.get("/students", response_model=List[StudentOut])
async def students(
    school: Optional[str] = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    current_user: CurrentUser = Depends(platform_admin),
    db: AsyncSession = Depends(get_db)
):
    return await platform_service.students(db, school=school, skip=skip, limit=limit)


@router.get("/teachers", response_model=List[TeacherOut])
async def teachers(
    school: Optional[str] = None,
    role: Optional[str] = Query(None, pattern="^(teacher|admin|doctor)$"),
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    current_user: CurrentUser = Depends(platform_admin),
    db: AsyncSession = Depends(get_db)
):
    return await platform_service.teachers(db, school=school, role=role, skip=skip, limit=limit)


# ==================== Subscriptions ====================

@router.get("/subscriptions", response_model=List[SubscriptionOut])
async def list_subscriptions(
    subscription_status: Optional[SubscriptionStatus] = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    current_user: CurrentUser = Depends(platform_admin),
    db: AsyncSession = Depends(get_db)
):
    return await subscription_service.list_subscriptions(db, status=subscription_status, skip=skip, limit=limit)


@router.post("/subscriptions", response_model=SubscriptionOut, status_code=status.HTTP_201_CREATED)
async def create_subscription(
    data: SubscriptionCreate,
    current_user: CurrentUser = Depends(platform_admin_csrf),
    db: AsyncSession = Depends(get_db)
):
    """Create a school subscription, optionally as a trial and with a discount code"""
    try:
        subscription = await subscription_service.create(db, data)
        await audit_service.log_activity(
            user_id=current_user.id, action="create_subscription", resource="subscription",
            resource_id=subscription.id,
            metadata={"school": subscription.school_name, "plan": subscription.plan_type}, db=db,
        )
        return subscription
    except Exception as e:
        raise service_error(e, "create subscription")


@router.put("/subscriptions/{subscription_id}/status", response_model=SubscriptionOut)
async def update_subscription_status(
    subscription_id: str,
    data: SubscriptionStatusUpdate,
    current_user: CurrentUser = Depends(platform_admin_csrf),
    db: AsyncSession = Depends(get_db)
):
    try:
        subscription = await subscription_service.update_status(db, subscription_id, data.status)
        if subscription is None:
            raise not_found("Subscription")
        await audit_service.log_activity(
            user_id=current_user.id, action="update_subscription_status", resource="subscription",
            resource_id=subscription.id, metadata={"status": data.status.value}, db=db,
        )
        return subscription
    except Exception as e:
        raise service_error(e, "update subscription")


# ==================== Discount codes ====================

@router.get("/discount-codes", response_model=List[DiscountCodeOut])
async def list_discount_codes(current_user: CurrentUser = Depends(platform_admin),
                              db: AsyncSession = Depends(get_db)):
    return await subscription_service.list_discounts(db)


@router.post("/discount-codes", response_model=DiscountCodeOut, status_code=status.HTTP_201_CREATED)
async def create_discount_code(
    data: DiscountCodeCreate,
    current_user: CurrentUser = Depends(platform_admin_csrf),
    db: AsyncSession = Depends(get_db)
):
    try:
        code = await subscription_service.create_discount(db, current_user.id, data)
        await audit_service.log_activity(
            user_id=current_user.id, action="create_discount_code", resource="discount_code",
            resource_id=code.id, db=db,
        )
        return code
    except Exception as e:
        raise service_error(e, "create discount code")


@router.post("/discount-codes/{code_id}/deactivate", response_model=DiscountCodeOut)
async def deactivate_discount_code(
    code_id: str,
    current_user: CurrentUser = Depends(platform_admin_csrf),
    db: AsyncSession = Depends(get_db)
):
    code = await subscription_service.deactivate_discount(db, code_id)
    if code is None:
        raise not_found("Discount code")
    return code


# ==================== Security ====================

@router.get("/security/dashboard")
async def security_dashboard(current_user: CurrentUser = Depends(platform_admin)):
    """Last 24 hours of security events with pattern warnings"""
    try:
        return await security_events.dashboard()
    except Exception as e:
        raise service_error(e, "load security dashboard")


@router.get("/security/events", response_model=List[SecurityEventOut])
async def list_security_events(
    event_type: Optional[str] = None,
    severity: Optional[str] = Query(None, pattern="^(low|medium|high)$"),
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    current_user: CurrentUser = Depends(platform_admin)
):
    return await security_events.list_events(skip=skip, limit=limit, event_type=event_type, severity=severity)


@router.post("/security/lockouts/clear")
async def clear_lockout(
    request: Request,
    data: LockoutClear,
    current_user: CurrentUser = Depends(platform_admin_csrf),
    db: AsyncSession = Depends(get_db)
):
    """Lift a login lockout for an identifier: email, platform:email or student:name|school|grade"""
    cache = await get_cache()
    was_locked = await login_throttle.is_locked(cache, data.identifier)
    await login_throttle.reset(cache, data.identifier)
    await security_events.log(
        "lockout_cleared", "medium", f"Lockout cleared for {data.identifier}",
        user_id=current_user.id, ip_address=client_ip(request), db=db,
    )
    return {"status": "cleared", "was_locked": was_locked}


@router.get("/audit-logs", response_model=List[AuditLogOut])
async def get_audit_logs(
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    current_user: CurrentUser = Depends(platform_admin)
):
    """
    Get audit logs
    Requires: platform admin role
    """
    try:
        return await audit_service.get_logs(skip=skip, limit=limit)
    except Exception as e:
        raise service_error(e, "retrieve audit logs")
