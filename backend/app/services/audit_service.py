"""Audit sink.

Audit events are fire-and-forget: each one is written on its own session so
it never joins (or rolls back with) the caller's transaction, and a failing
audit write is logged rather than failing the operation that produced it.
"""

from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.models.audit_log import AuditLog

logger = structlog.get_logger()

TRANSACTION_IMPORTED = "transaction.imported"
TRANSACTION_CREATED = "transaction.created"
ALERT_CREATED = "alert.created"
ALERT_ASSIGNED = "alert.assigned"
ALERT_RESOLVED = "alert.resolved"
ALERT_FALSE_POSITIVE = "alert.false_positive"
ALERT_ESCALATED = "alert.escalated"


class AuditService:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def log(
        self,
        action: str,
        user_id: int | None = None,
        resource_type: str | None = None,
        resource_id: int | str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> AuditLog | None:
        """Record an audit event. Returns the stored row, or None if the write failed."""
        entry = AuditLog(
            user_id=user_id,
            action=action,
            resource_type=resource_type,
            resource_id=str(resource_id) if resource_id is not None else None,
            details=metadata,
        )
        try:
            async with self.session_factory() as session:
                session.add(entry)
                await session.commit()
        except SQLAlchemyError as e:
            logger.warning("audit_log_failed", action=action, resource_id=resource_id, error=str(e))
            return None
        return entry

    async def list_by_action(self, action: str, limit: int = 50) -> list[AuditLog]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(AuditLog)
                .where(AuditLog.action == action)
                .order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
                .limit(limit)
            )
            return list(result.scalars().all())
