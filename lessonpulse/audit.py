"""
Audit trail and security event recording
"""
from typing import List, Optional, Dict, Any
from datetime import timedelta
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession
import logging

from lessonpulse.database import AsyncSessionLocal, session_scope
from lessonpulse.db_models import AuditLog, SecurityEvent, UserSession, utcnow

logger = logging.getLogger(__name__)

SEVERITIES = ("low", "medium", "high")


class AuditService:
    """Service for audit logging"""

    async def log_activity(
        self,
        user_id: str,
        action: str,
        resource: str,
        resource_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        db: Optional[AsyncSession] = None
    ):
        """
        Log user activity. With a request session the entry commits alongside the
        request; otherwise it is written on its own and failures never reach the caller.
        """
        logger.info(
            f"AUDIT: user={user_id} action={action} resource={resource} "
            f"resource_id={resource_id} metadata={metadata}"
        )
        entry = AuditLog(
            user_id=user_id,
            action=action,
            resource=resource,
            resource_id=resource_id,
            ip_address=ip_address,
            user_agent=user_agent,
            extra_metadata=metadata,
        )
        if db is not None:
            db.add(entry)
            return
        try:
            async with session_scope() as session:
                session.add(entry)
        except Exception as e:
            logger.error(f"Failed to log audit entry: {e}")

    async def get_logs(self, skip: int = 0, limit: int = 50) -> List[AuditLog]:
        """Get audit logs, newest first"""
        async with AsyncSessionLocal() as session:
            result = await session.execute(
                select(AuditLog).order_by(AuditLog.timestamp.desc()).offset(skip).limit(limit)
            )
            return list(result.scalars().all())


class SecurityEventService:
    """Records security events (failed logins, lockouts, CSRF rejects, fingerprint drift)"""

    async def log(
        self,
        event_type: str,
        severity: str,
        details: str,
        user_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        db: Optional[AsyncSession] = None
    ):
        """
        Record an event. Rejections are written on their own session so they
        survive the request being rolled back.
        """
        if severity not in SEVERITIES:
            severity = "medium"

        log_method = logger.warning if severity == "high" else logger.info
        log_method(f"SECURITY: type={event_type} severity={severity} user={user_id} ip={ip_address} details={details}")

        event = SecurityEvent(
            event_type=event_type,
            severity=severity,
            user_id=user_id,
            details=details,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        if db is not None:
            db.add(event)
            return
        try:
            async with session_scope() as session:
                session.add(event)
        except Exception as e:
            logger.error(f"Failed to record security event {event_type}: {e}")

    async def list_events(
        self,
        skip: int = 0,
        limit: int = 50,
        event_type: Optional[str] = None,
        severity: Optional[str] = None
    ) -> List[SecurityEvent]:
        async with AsyncSessionLocal() as session:
            query = select(SecurityEvent)
            if event_type:
                query = query.where(SecurityEvent.event_type == event_type)
            if severity:
                query = query.where(SecurityEvent.severity == severity)
            result = await session.execute(
                query.order_by(SecurityEvent.created_at.desc()).offset(skip).limit(limit)
            )
            return list(result.scalars().all())

    async def dashboard(self) -> Dict[str, Any]:
        """Aggregate the last 24 hours of events and flag unusual patterns in the last hour"""
        now = utcnow()
        day_ago = now - timedelta(hours=24)
        hour_ago = now - timedelta(hours=1)

        async with AsyncSessionLocal() as session:
            by_type_rows = await session.execute(
                select(SecurityEvent.event_type, func.count())
                .where(SecurityEvent.created_at >= day_ago)
                .group_by(SecurityEvent.event_type)
            )
            by_severity_rows = await session.execute(
                select(SecurityEvent.severity, func.count())
                .where(SecurityEvent.created_at >= day_ago)
                .group_by(SecurityEvent.severity)
            )
            last_hour_rows = await session.execute(
                select(SecurityEvent.event_type, func.count())
                .where(SecurityEvent.created_at >= hour_ago)
                .group_by(SecurityEvent.event_type)
            )
            high_last_hour = await session.scalar(
                select(func.count())
                .select_from(SecurityEvent)
                .where(SecurityEvent.created_at >= hour_ago, SecurityEvent.severity == "high")
            )
            recent_high = await session.execute(
                select(SecurityEvent)
                .where(SecurityEvent.severity == "high")
                .order_by(SecurityEvent.created_at.desc())
                .limit(10)
            )
            active_sessions = await session.scalar(
                select(func.count())
                .select_from(UserSession)
                .where(UserSession.revoked_at.is_(None), UserSession.expires_at > now)
            )

        by_severity = {severity: 0 for severity in SEVERITIES}
        by_severity.update(dict(by_severity_rows.all()))

        analysis = []
        for event_type, count in last_hour_rows.all():
            if count > 10:
                analysis.append(f"High frequency of {event_type} events: {count} in last hour")
        if (high_last_hour or 0) > 5:
            analysis.append("Multiple high-severity security events detected")

        return {
            "events_by_type": dict(by_type_rows.all()),
            "events_by_severity": by_severity,
            "recent_high_severity": [
                {
                    "id": event.id,
                    "event_type": event.event_type,
                    "details": event.details,
                    "user_id": event.user_id,
                    "created_at": event.created_at,
                }
                for event in recent_high.scalars().all()
            ],
            "active_sessions": active_sessions or 0,
            "analysis": analysis,
        }


# Service instances
audit_service = AuditService()
security_events = SecurityEventService()
