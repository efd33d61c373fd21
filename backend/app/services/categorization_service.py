"""Categorization: assign spending categories from prioritized pattern rules.

``match`` and ``categorize_batch`` are pure functions over already-loaded
rules; ``CategorizationService`` loads rules and transactions from the store
and writes the assigned category back.
"""

import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import NotFoundError
from app.models.categorization_rule import CategorizationRule
from app.models.category import Category
from app.models.transaction import Transaction
from app.schemas.category import CategorizationResult, CategoryStatistics
from app.utils import money

logger = structlog.get_logger()


@dataclass(frozen=True)
class CategorizationItem:
    description: str
    merchant: str | None = None
    transaction_id: int | None = None


def order_rules(rules: Iterable[CategorizationRule]) -> list[CategorizationRule]:
    """Enabled rules by descending priority; ties keep their given order."""
    return sorted((r for r in rules if r.enabled), key=lambda r: -r.priority)


def _rule_matches(rule: CategorizationRule, description: str, merchant: str | None) -> bool:
    haystack = f"{description} {merchant or ''}".rstrip()
    pattern = rule.pattern
    if not rule.case_sensitive:
        haystack = haystack.lower()
        pattern = pattern.lower()

    match rule.match_type:
        case "contains":
            return pattern in haystack
        case "starts_with":
            return haystack.startswith(pattern)
        case "ends_with":
            return haystack.endswith(pattern)
        case "exact":
            return haystack == pattern
        case "regex":
            flags = 0 if rule.case_sensitive else re.IGNORECASE
            try:
                return re.search(rule.pattern, haystack, flags) is not None
            except re.error as e:
                logger.warning(
                    "categorization_rule_invalid_regex",
                    rule_id=rule.id,
                    pattern=rule.pattern,
                    error=str(e),
                )
                return False
        case _:
            logger.warning("categorization_rule_unknown_match_type", rule_id=rule.id, match_type=rule.match_type)
            return False


def match_rule(
    description: str, merchant: str | None, rules: Sequence[CategorizationRule]
) -> CategorizationRule | None:
    """First rule (by priority) matching the transaction text, or None."""
    for rule in order_rules(rules):
        if _rule_matches(rule, description, merchant):
            return rule
    return None


def match(description: str, merchant: str | None, rules: Sequence[CategorizationRule]) -> Category | None:
    rule = match_rule(description, merchant, rules)
    return rule.category if rule else None


def categorize_batch(
    items: Sequence[CategorizationItem], rules: Sequence[CategorizationRule]
) -> list[CategorizationResult]:
    """Categorize each item independently; output order follows input order."""
    ordered = order_rules(rules)
    results = []
    for item in items:
        rule = match_rule(item.description, item.merchant, ordered)
        if rule is None:
            results.append(CategorizationResult(transaction_id=item.transaction_id))
            continue
        results.append(
            CategorizationResult(
                transaction_id=item.transaction_id,
                category_id=rule.category_id,
                category_name=rule.category.name if rule.category else None,
                rule_id=rule.id,
            )
        )
    return results


class CategorizationService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def load_rules(self) -> list[CategorizationRule]:
        """All enabled rules, highest priority first (id order breaks ties)."""
        result = await self.db.execute(
            select(CategorizationRule)
            .where(CategorizationRule.enabled.is_(True))
            .order_by(CategorizationRule.priority.desc(), CategorizationRule.id)
        )
        return list(result.scalars().all())

    async def categorize_transaction(self, transaction_id: int) -> Transaction:
        """Categorize one transaction unless it already has a category."""
        txn = await self.db.get(Transaction, transaction_id)
        if not txn:
            raise NotFoundError("Transaction", transaction_id)
        if txn.category_id:
            return txn

        rule = match_rule(txn.description, txn.merchant, await self.load_rules())
        if rule:
            txn.category_id = rule.category_id
            await self.db.flush()
        return txn

    async def categorize_transactions(self, transaction_ids: list[int]) -> list[CategorizationResult]:
        """Categorize freshly inserted transactions and persist the matches."""
        result = await self.db.execute(
            select(Transaction).where(
                Transaction.id.in_(transaction_ids),
                Transaction.category_id.is_(None),
            ).order_by(Transaction.id)
        )
        transactions = list(result.scalars().all())
        if not transactions:
            return []
        results = await self._apply(transactions)
        await self.db.commit()
        return results

    async def categorize_uncategorized(self, account_id: int | None = None) -> int:
        """Apply the rules to every uncategorized transaction. Returns the number categorized."""
        query = select(Transaction).where(Transaction.category_id.is_(None))
        if account_id:
            query = query.where(Transaction.account_id == account_id)
        result = await self.db.execute(query.order_by(Transaction.id))
        transactions = list(result.scalars().all())

        results = await self._apply(transactions)
        categorized = sum(1 for r in results if r.matched)
        logger.info(
            "uncategorized_transactions_categorized",
            account_id=account_id,
            total_uncategorized=len(transactions),
            categorized=categorized,
        )
        return categorized

    async def get_category_statistics(self, category_id: int) -> CategoryStatistics:
        category = await self.db.get(Category, category_id)
        if not category:
            raise NotFoundError("Category", category_id)
        result = await self.db.execute(
            select(Transaction.amount).where(Transaction.category_id == category_id)
        )
        amounts = [abs(money.to_decimal(a)) for a in result.scalars().all()]
        total = money.sum_amounts(amounts)
        average = money.divide(total, len(amounts)) if amounts else money.round(0)
        return CategoryStatistics(
            category_id=category_id,
            transaction_count=len(amounts),
            total_amount=money.to_json(total),
            average_amount=money.to_json(average),
        )

    async def _apply(self, transactions: list[Transaction]) -> list[CategorizationResult]:
        rules = await self.load_rules()
        items = [CategorizationItem(t.description, t.merchant, t.id) for t in transactions]
        results = categorize_batch(items, rules)
        by_id = {t.id: t for t in transactions}
        for r in results:
            if r.matched:
                by_id[r.transaction_id].category_id = r.category_id
        await self.db.flush()
        return results
