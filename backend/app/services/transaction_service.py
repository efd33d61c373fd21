"""Transaction management service (manual and API entry)."""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import NotFoundError
from app.models.transaction import Transaction
from app.schemas.transaction import TransactionCreate
from app.services import audit_service
from app.services.account_service import AccountService
from app.services.audit_service import AuditService
from app.services.transaction_store import TransactionStore
from app.utils import money
from app.utils.file_parsers import parse_date


class TransactionService:
    def __init__(self, db: AsyncSession, audit: AuditService | None = None):
        self.db = db
        self.audit = audit
        self.store = TransactionStore(db)

    async def create_transaction(
        self, data: TransactionCreate, user_id: int | None = None
    ) -> tuple[Transaction, bool]:
        """Record a transaction; re-submitting an idempotency key returns the existing row.

        Returns ``(transaction, created)``. The account balance only moves
        when the row is new.
        """
        accounts = AccountService(self.db)
        await accounts.get_account(data.account_id, user_id)

        values = data.model_dump()
        values["timestamp"] = parse_date(data.timestamp)
        values["amount"] = money.round(data.amount)
        txn, created = await self.store.insert_or_get(values)
        if created:
            await accounts.update_balance(data.account_id, txn.amount)
        await self.db.commit()

        if created and self.audit:
            await self.audit.log(
                audit_service.TRANSACTION_CREATED,
                user_id=user_id,
                resource_type="transaction",
                resource_id=txn.id,
                metadata={"account_id": txn.account_id, "source": txn.source},
            )
        return txn, created

    async def get_transaction(self, transaction_id: int) -> Transaction:
        txn = await self.db.get(Transaction, transaction_id)
        if not txn:
            raise NotFoundError("Transaction", transaction_id)
        return txn

    async def list_transactions(self, account_id: int, limit: int = 50, offset: int = 0) -> list[Transaction]:
        result = await self.db.execute(
            select(Transaction)
            .where(Transaction.account_id == account_id)
            .order_by(Transaction.timestamp.desc(), Transaction.id.desc())
            .offset(offset)
            .limit(limit)
        )
        return list(result.scalars().all())
