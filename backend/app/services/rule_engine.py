"""Detection rule engine.

Each rule type pulls one aggregate over the account's transaction history,
derives a threshold with Money arithmetic and compares the transaction under
evaluation against it. A violation carries a JSON-safe evidence ``context``
that is stored verbatim on the resulting alert.

Windows:
  * large_transaction / unusual_pattern: baseline of the account's
    transactions with ``timestamp > now - lookback_days``, excluding the
    transaction being evaluated.
  * velocity / structuring: ``[timestamp - window, timestamp]`` of the
    transaction being evaluated, which is itself counted.
"""

from collections.abc import Callable
from datetime import datetime, timedelta
from decimal import Decimal

import pydantic
import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.models.alert import Alert
from app.models.base import utcnow
from app.models.rule import Rule
from app.models.transaction import Transaction
from app.schemas.rule import (
    EVALUATED_RULE_TYPES,
    LargeTransactionCondition,
    RuleCondition,
    StructuringCondition,
    UnusualPatternCondition,
    VelocityCondition,
    Violation,
    build_condition,
)
from app.services.alert_service import AlertService
from app.services.transaction_store import TransactionStore
from app.utils import money

logger = structlog.get_logger()

AUTO_RESOLVE_NOTE = "auto-resolved by rule"


def _number(value: Decimal) -> int | float:
    """Plain JSON number for a rule parameter."""
    if value == value.to_integral_value():
        return int(value)
    return float(value)


class RuleEngine:
    def __init__(
        self,
        db: AsyncSession,
        alert_service: AlertService | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.store = TransactionStore(db)
        self.alert_service = alert_service or AlertService(db)
        self.clock = clock

    # ── Conditions ─────────────────────────────────────

    @staticmethod
    def parse_condition(rule: Rule) -> RuleCondition | None:
        """Typed condition of a rule, or None when the rule type is not evaluated here."""
        if rule.type not in EVALUATED_RULE_TYPES:
            return None
        try:
            return build_condition(rule.type, rule.condition)
        except pydantic.ValidationError as e:
            logger.warning("rule_condition_invalid", rule_id=rule.id, rule_type=rule.type, error=str(e))
            return None

    # ── Evaluation ─────────────────────────────────────

    async def evaluate(self, rule: Rule, txn: Transaction) -> Violation | None:
        if not rule.enabled:
            return None
        condition = self.parse_condition(rule)
        if condition is None:
            return None

        match condition:
            case LargeTransactionCondition():
                return await self._check_large_transaction(condition, txn)
            case VelocityCondition():
                return await self._check_velocity(condition, txn)
            case StructuringCondition():
                return await self._check_structuring(condition, txn)
            case UnusualPatternCondition():
                return await self._check_unusual_pattern(condition, txn)
        return None

    async def evaluate_transaction(self, transaction_id: int) -> list[Alert]:
        """Run every enabled rule against one transaction; one alert per violation.

        A transaction that no longer exists is skipped silently.
        """
        found = await self.store.get_with_owner(transaction_id)
        if found is None:
            logger.info("rule_evaluation_skipped", transaction_id=transaction_id, reason="not_found")
            return []
        txn, owner_id = found

        result = await self.db.execute(select(Rule).where(Rule.enabled.is_(True)).order_by(Rule.id))
        rules = list(result.scalars().all())

        alerts = []
        for rule in rules:
            violation = await self.evaluate(rule, txn)
            if violation is None:
                continue
            logger.info(
                "rule_violation",
                rule_id=rule.id,
                rule_type=rule.type,
                transaction_id=txn.id,
                account_id=txn.account_id,
            )
            alert = await self.alert_service.create(
                user_id=owner_id,
                rule_id=rule.id,
                context=violation.context,
                transaction_id=txn.id,
            )
            if rule.auto_resolve:
                alert = await self.alert_service.resolve(alert.id, None, AUTO_RESOLVE_NOTE)
            alerts.append(alert)
        return alerts

    async def run_rules_for_account(self, account_id: int, since_days: int | None = None) -> int:
        """Evaluate the account's recent transactions. Returns the number of alerts created."""
        since = self.clock() - timedelta(days=since_days or settings.account_rule_window_days)
        transactions = await self.store.recent_for_account(account_id, since)

        created = 0
        for txn in transactions:
            created += len(await self.evaluate_transaction(txn.id))
        logger.info(
            "account_rules_evaluated",
            account_id=account_id,
            transactions=len(transactions),
            alerts_created=created,
        )
        return created

    # ── Checks ─────────────────────────────────────────

    async def _check_large_transaction(
        self, condition: LargeTransactionCondition, txn: Transaction
    ) -> Violation | None:
        since = self.clock() - timedelta(days=condition.lookback_days)
        average = await self.store.average_abs_amount(txn.account_id, since, exclude_id=txn.id)
        if average is None or money.round(average) == 0:
            return None

        current = abs(money.round(txn.amount))
        threshold = money.multiply(average, condition.multiplier)
        if current <= threshold:
            return None
        return Violation(
            context={
                "transactionAmount": money.to_json(current),
                "averageAmount": money.to_json(average),
                "multiplier": _number(condition.multiplier),
                "threshold": money.to_json(threshold),
                "lookbackDays": condition.lookback_days,
            }
        )

    async def _check_velocity(self, condition: VelocityCondition, txn: Transaction) -> Violation | None:
        start = txn.timestamp - timedelta(minutes=condition.window_minutes)
        count = await self.store.count_in_window(txn.account_id, start, txn.timestamp)
        if count < condition.count:
            return None
        return Violation(
            context={
                "transactionCount": count,
                "threshold": condition.count,
                "windowMinutes": condition.window_minutes,
            }
        )

    async def _check_structuring(self, condition: StructuringCondition, txn: Transaction) -> Violation | None:
        start = txn.timestamp - timedelta(hours=condition.window_hours)
        threshold = money.round(condition.threshold)
        lower_bound = money.multiply(threshold, 1 - condition.tolerance)
        matching = await self.store.count_abs_amount_between(
            txn.account_id, start, txn.timestamp, lower_bound, threshold
        )
        if matching < condition.count:
            return None
        return Violation(
            context={
                "matchingTransactions": matching,
                "threshold": money.to_json(threshold),
                "tolerance": _number(condition.tolerance),
                "windowHours": condition.window_hours,
                "lowerBound": money.to_json(lower_bound),
            }
        )

    async def _check_unusual_pattern(
        self, condition: UnusualPatternCondition, txn: Transaction
    ) -> Violation | None:
        since = self.clock() - timedelta(days=condition.lookback_days)
        stats = await self.store.amount_statistics(txn.account_id, since, exclude_id=txn.id)
        if stats.count < condition.min_history:
            return None
        mean = money.round(stats.mean)
        std_dev = money.round(stats.std_dev)
        # Zero variance: nothing to deviate from
        if mean == 0 or std_dev == 0:
            return None

        current = abs(money.round(txn.amount))
        threshold = money.add(mean, money.multiply(std_dev, condition.std_dev_multiplier))
        if current <= threshold:
            return None
        deviations = (current - mean) / std_dev
        return Violation(
            context={
                "transactionAmount": money.to_json(current),
                "mean": money.to_json(mean),
                "stdDev": money.to_json(std_dev),
                "deviations": float(money.round(deviations)),
                "threshold": money.to_json(threshold),
                "historyCount": stats.count,
            }
        )
