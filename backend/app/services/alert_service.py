"""Alert lifecycle: creation by the rule engine and the analyst review workflow.

    open --assign--> reviewing --resolve--------> resolved
                               --false positive-> false_positive
                               --escalate-------> escalated

Only the status, notes and analyst/resolution stamps of an alert change;
its rule and transaction links are fixed at creation.
"""

from typing import Any

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import NotFoundError
from app.models.alert import RESOLVING_STATUSES, Alert
from app.models.base import utcnow
from app.schemas.alert import AlertStatistics, AlertUpdate
from app.services import audit_service
from app.services.audit_service import AuditService

logger = structlog.get_logger()


class AlertService:
    def __init__(self, db: AsyncSession, audit: AuditService | None = None):
        self.db = db
        self.audit = audit

    async def create(
        self,
        user_id: int,
        rule_id: int,
        context: dict[str, Any],
        transaction_id: int | None = None,
    ) -> Alert:
        alert = Alert(
            user_id=user_id,
            rule_id=rule_id,
            transaction_id=transaction_id,
            context=context,
            status="open",
        )
        self.db.add(alert)
        await self.db.commit()
        logger.info("alert_created", alert_id=alert.id, rule_id=rule_id, transaction_id=transaction_id)
        await self._audit(audit_service.ALERT_CREATED, alert, None, {"rule_id": rule_id})
        return alert

    async def get(self, alert_id: int) -> Alert:
        alert = await self.db.get(Alert, alert_id)
        if not alert:
            raise NotFoundError("Alert", alert_id)
        return alert

    async def list_alerts(
        self,
        status: str | None = None,
        user_id: int | None = None,
        rule_id: int | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Alert]:
        query = select(Alert)
        if status:
            query = query.where(Alert.status == status)
        if user_id is not None:
            query = query.where(Alert.user_id == user_id)
        if rule_id is not None:
            query = query.where(Alert.rule_id == rule_id)
        result = await self.db.execute(
            query.order_by(Alert.created_at.desc(), Alert.id.desc()).offset(offset).limit(limit)
        )
        return list(result.scalars().all())

    async def update(self, alert_id: int, data: AlertUpdate, analyst_id: int | None = None) -> Alert:
        """Generic update; any status value is accepted.

        Moving to ``reviewing`` stamps ``assigned_to`` when an analyst is
        given; moving to a resolving status stamps ``resolved_at`` (and
        ``resolved_by`` when an analyst is given).
        """
        alert = await self.get(alert_id)
        update_data = data.model_dump(exclude_unset=True, exclude_none=True)
        previous = alert.status
        for key, value in update_data.items():
            setattr(alert, key, value)

        status = update_data.get("status")
        if status == "reviewing" and analyst_id is not None:
            alert.assigned_to = analyst_id
        if status in RESOLVING_STATUSES:
            alert.resolved_at = utcnow()
            if analyst_id is not None:
                alert.resolved_by = analyst_id

        await self.db.commit()
        if status and status != previous:
            self._log_transition(alert, previous, analyst_id)
            action = {
                "resolved": audit_service.ALERT_RESOLVED,
                "false_positive": audit_service.ALERT_FALSE_POSITIVE,
                "escalated": audit_service.ALERT_ESCALATED,
            }.get(status)
            if action:
                await self._audit(action, alert, analyst_id)
        return alert

    async def assign(self, alert_id: int, analyst_id: int) -> Alert:
        alert = await self.get(alert_id)
        previous = alert.status
        alert.assigned_to = analyst_id
        alert.status = "reviewing"
        await self.db.commit()
        self._log_transition(alert, previous, analyst_id)
        await self._audit(audit_service.ALERT_ASSIGNED, alert, analyst_id)
        return alert

    async def resolve(self, alert_id: int, analyst_id: int | None, notes: str | None = None) -> Alert:
        return await self._close(alert_id, "resolved", analyst_id, notes, audit_service.ALERT_RESOLVED)

    async def mark_false_positive(self, alert_id: int, analyst_id: int, notes: str | None = None) -> Alert:
        return await self._close(
            alert_id, "false_positive", analyst_id, notes, audit_service.ALERT_FALSE_POSITIVE
        )

    async def escalate(self, alert_id: int, analyst_id: int, notes: str | None = None) -> Alert:
        """Escalate for further investigation. The alert stays active: no resolution stamps."""
        alert = await self.get(alert_id)
        previous = alert.status
        alert.status = "escalated"
        if notes is not None:
            alert.notes = notes
        await self.db.commit()
        self._log_transition(alert, previous, analyst_id)
        await self._audit(audit_service.ALERT_ESCALATED, alert, analyst_id)
        return alert

    async def get_statistics(self) -> AlertStatistics:
        """Alert counts per status, read in a single query so the buckets sum to the total."""
        result = await self.db.execute(select(Alert.status, func.count()).group_by(Alert.status))
        stats = AlertStatistics()
        for status, count in result.all():
            stats.total += count
            if status in AlertStatistics.model_fields and status != "total":
                setattr(stats, status, count)
        return stats

    async def _close(
        self,
        alert_id: int,
        status: str,
        analyst_id: int | None,
        notes: str | None,
        action: str,
    ) -> Alert:
        alert = await self.get(alert_id)
        previous = alert.status
        alert.status = status
        alert.resolved_at = utcnow()
        alert.resolved_by = analyst_id
        if notes is not None:
            alert.notes = notes
        await self.db.commit()
        self._log_transition(alert, previous, analyst_id)
        await self._audit(action, alert, analyst_id, {"notes": notes} if notes is not None else None)
        return alert

    @staticmethod
    def _log_transition(alert: Alert, previous: str, analyst_id: int | None) -> None:
        logger.info(
            "alert_status_changed",
            alert_id=alert.id,
            from_status=previous,
            to_status=alert.status,
            analyst_id=analyst_id,
        )

    async def _audit(
        self,
        action: str,
        alert: Alert,
        analyst_id: int | None,
        extra: dict[str, Any] | None = None,
    ) -> None:
        if self.audit is None:
            return
        metadata = {"status": alert.status, "rule_id": alert.rule_id, "transaction_id": alert.transaction_id}
        if extra:
            metadata.update(extra)
        await self.audit.log(
            action,
            user_id=analyst_id,
            resource_type="alert",
            resource_id=alert.id,
            metadata=metadata,
        )
