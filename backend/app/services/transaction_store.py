"""Transaction store: conflict-ignoring inserts and the aggregates the rule engine needs.

Uniqueness is enforced by the database on ``idempotency_key`` and
``reference_number``. Inserts use ``INSERT ... ON CONFLICT DO NOTHING`` so a
duplicate is skipped by the store itself instead of surfacing as a
driver-specific integrity error.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import Numeric, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import ConflictError
from app.models.account import Account
from app.models.base import utcnow
from app.models.transaction import Transaction
from app.utils import money


@dataclass(frozen=True)
class InsertedRow:
    id: int
    idempotency_key: str
    amount: Decimal


@dataclass(frozen=True)
class AmountStatistics:
    count: int
    mean: Decimal
    std_dev: Decimal


_table = Transaction.__table__


def _abs_amount():
    return func.abs(Transaction.amount, type_=Numeric(15, 2))


# Aggregates keep more than cent precision; callers round with Money
_AGGREGATE = Numeric(30, 10)


def _as_decimal(value) -> Decimal | None:
    if value is None:
        return None
    return money.to_decimal(value)


class TransactionStore:
    def __init__(self, db: AsyncSession):
        self.db = db

    def _insert(self):
        dialect = self.db.get_bind().dialect.name
        if dialect == "postgresql":
            from sqlalchemy.dialects.postgresql import insert
        elif dialect == "sqlite":
            from sqlalchemy.dialects.sqlite import insert
        else:
            raise NotImplementedError(f"No conflict-ignoring insert for dialect {dialect}")
        return insert(_table)

    @staticmethod
    def _complete(values: dict[str, Any]) -> dict[str, Any]:
        now = utcnow()
        row = {
            "currency": "USD",
            "merchant": None,
            "merchant_category": None,
            "category_id": None,
            "source": "upload",
            "reference_number": None,
            "balance_after": None,
            "extra": None,
            "created_at": now,
            "updated_at": now,
        }
        row.update(values)
        # The column behind the "extra" attribute is named "metadata"
        row["metadata"] = row.pop("extra")
        return row

    # ── Inserts ────────────────────────────────────────

    async def insert_ignore_conflicts(self, rows: list[dict[str, Any]]) -> list[InsertedRow]:
        """Insert many rows in one statement; return only the rows actually inserted.

        Rows colliding with an existing ``idempotency_key`` or
        ``reference_number`` (or with an earlier row of the same statement)
        are skipped.
        """
        if not rows:
            return []
        stmt = (
            self._insert()
            .values([self._complete(r) for r in rows])
            .on_conflict_do_nothing()
            .returning(_table.c.id, _table.c.idempotency_key, _table.c.amount)
        )
        result = await self.db.execute(stmt)
        return [
            InsertedRow(id=r.id, idempotency_key=r.idempotency_key, amount=money.round(r.amount))
            for r in result.all()
        ]

    async def insert_or_get(self, values: dict[str, Any]) -> tuple[Transaction, bool]:
        """Insert one transaction, or return the existing one owning its keys.

        Returns ``(transaction, created)``.
        """
        inserted = await self.insert_ignore_conflicts([values])
        if inserted:
            return await self.db.get(Transaction, inserted[0].id), True

        conditions = [Transaction.idempotency_key == values["idempotency_key"]]
        if values.get("reference_number"):
            conditions.append(Transaction.reference_number == values["reference_number"])
        result = await self.db.execute(select(Transaction).where(or_(*conditions)).limit(1))
        existing = result.scalar_one_or_none()
        if existing is None:
            raise ConflictError("Transaction keys collided but no existing row was found")
        return existing, False

    # ── Lookups ────────────────────────────────────────

    async def get_with_owner(self, transaction_id: int) -> tuple[Transaction, int] | None:
        """The transaction and the id of the user owning its account, or None."""
        result = await self.db.execute(
            select(Transaction, Account.user_id)
            .join(Account, Account.id == Transaction.account_id)
            .where(Transaction.id == transaction_id)
        )
        row = result.one_or_none()
        return (row[0], row[1]) if row else None

    async def recent_for_account(self, account_id: int, since: datetime) -> list[Transaction]:
        result = await self.db.execute(
            select(Transaction)
            .where(Transaction.account_id == account_id, Transaction.timestamp > since)
            .order_by(Transaction.timestamp, Transaction.id)
        )
        return list(result.scalars().all())

    async def sum_amounts(self, account_id: int) -> Decimal:
        """Ledger total of an account."""
        result = await self.db.execute(
            select(func.coalesce(func.sum(Transaction.amount), 0)).where(
                Transaction.account_id == account_id
            )
        )
        return money.round(_as_decimal(result.scalar()) or 0)

    # ── Aggregates ─────────────────────────────────────

    async def average_abs_amount(
        self, account_id: int, since: datetime, exclude_id: int | None = None
    ) -> Decimal | None:
        """Mean |amount| of the account's transactions after ``since`` (None without history)."""
        query = select(func.avg(_abs_amount(), type_=_AGGREGATE)).where(
            Transaction.account_id == account_id,
            Transaction.timestamp > since,
        )
        if exclude_id is not None:
            query = query.where(Transaction.id != exclude_id)
        result = await self.db.execute(query)
        return _as_decimal(result.scalar())

    async def count_in_window(self, account_id: int, start: datetime, end: datetime) -> int:
        """Number of the account's transactions with start <= timestamp <= end."""
        result = await self.db.execute(
            select(func.count())
            .select_from(Transaction)
            .where(
                Transaction.account_id == account_id,
                Transaction.timestamp.between(start, end),
            )
        )
        return result.scalar_one()

    async def count_abs_amount_between(
        self,
        account_id: int,
        start: datetime,
        end: datetime,
        lower: Decimal,
        upper: Decimal,
    ) -> int:
        """Count transactions in [start, end] with lower < |amount| < upper."""
        abs_amount = _abs_amount()
        result = await self.db.execute(
            select(func.count())
            .select_from(Transaction)
            .where(
                Transaction.account_id == account_id,
                Transaction.timestamp.between(start, end),
                abs_amount > lower,
                abs_amount < upper,
            )
        )
        return result.scalar_one()

    async def amount_statistics(
        self, account_id: int, since: datetime, exclude_id: int | None = None
    ) -> AmountStatistics:
        """Count, mean |amount| and population standard deviation of |amount|.

        Computed from COUNT, AVG(|x|) and AVG(x*x) so the query runs on any
        backend (SQLite has no STDDEV_POP).
        """
        abs_amount = _abs_amount()
        query = select(
            func.count().label("count"),
            func.avg(abs_amount, type_=_AGGREGATE).label("mean"),
            func.avg(Transaction.amount * Transaction.amount, type_=_AGGREGATE).label("mean_sq"),
        ).where(
            Transaction.account_id == account_id,
            Transaction.timestamp > since,
        )
        if exclude_id is not None:
            query = query.where(Transaction.id != exclude_id)
        row = (await self.db.execute(query)).one()

        count = row.count or 0
        if count == 0:
            return AmountStatistics(count=0, mean=Decimal("0"), std_dev=Decimal("0"))
        mean = _as_decimal(row.mean) or Decimal("0")
        mean_sq = _as_decimal(row.mean_sq) or Decimal("0")
        variance = max(mean_sq - mean * mean, Decimal("0"))
        return AmountStatistics(count=count, mean=mean, std_dev=variance.sqrt())
