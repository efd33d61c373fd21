"""Account service: ownership checks and balance maintenance."""

import asyncio
from collections import defaultdict
from decimal import Decimal

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import ForbiddenError, NotFoundError
from app.models.account import Account
from app.models.job import Job
from app.models.user import User
from app.schemas.account import AccountCreate
from app.services.transaction_store import TransactionStore
from app.utils import money

logger = structlog.get_logger()


class AccountLocks:
    """Registry of per-account asyncio locks.

    Imports into the same account serialize on its lock so the single
    read-modify-write balance adjustment at the end of each import stays
    correct; imports into different accounts run in parallel.
    """

    def __init__(self) -> None:
        self._locks: defaultdict[int, asyncio.Lock] = defaultdict(asyncio.Lock)

    def for_account(self, account_id: int) -> asyncio.Lock:
        return self._locks[account_id]


class AccountService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def create_account(self, data: AccountCreate, user: User) -> Account:
        account = Account(
            user_id=user.id,
            name=data.name,
            type=data.type,
            currency=data.currency,
            balance=money.round(data.balance),
        )
        self.db.add(account)
        await self.db.flush()
        await self.db.refresh(account)
        return account

    async def list_accounts(self, user_id: int) -> list[Account]:
        result = await self.db.execute(
            select(Account)
            .where(Account.user_id == user_id, Account.status == "active")
            .order_by(Account.created_at.desc(), Account.id.desc())
        )
        return list(result.scalars().all())

    async def get_account(self, account_id: int, user_id: int | None = None) -> Account:
        """Fetch an account; when ``user_id`` is given, verify ownership."""
        account = await self.db.get(Account, account_id)
        if not account:
            raise NotFoundError("Account", account_id)
        if user_id is not None and account.user_id != user_id:
            raise ForbiddenError("You do not have access to this account")
        return account

    async def update_balance(self, account_id: int, amount: Decimal) -> Account:
        """Add a signed amount to the stored balance."""
        account = await self.get_account(account_id)
        account.balance = money.add(account.balance, amount)
        await self.db.flush()
        return account

    async def apply_balance_delta(
        self, account_id: int, delta: Decimal, job_id: str | None = None
    ) -> bool:
        """Apply an import's net delta exactly once.

        With a ``job_id`` the job's ``balance_applied`` flag is checked and set
        in the same transaction as the balance update, so a retried job never
        applies its delta twice. Returns True when the delta was applied.
        """
        job = None
        if job_id is not None:
            job = await self.db.get(Job, job_id)
            if job is not None and job.balance_applied:
                logger.info("balance_delta_already_applied", account_id=account_id, job_id=job_id)
                return False

        if delta != 0:
            await self.update_balance(account_id, delta)
        if job is not None:
            job.balance_applied = True
        await self.db.commit()
        logger.info("balance_delta_applied", account_id=account_id, delta=money.to_json(delta), job_id=job_id)
        return True

    async def get_balance(self, account_id: int, user_id: int | None = None) -> Decimal:
        account = await self.get_account(account_id, user_id)
        return money.round(account.balance)

    async def get_total_balance(self, user_id: int, currency: str = "USD") -> Decimal:
        accounts = await self.list_accounts(user_id)
        return money.sum_amounts(a.balance for a in accounts if a.currency == currency)

    async def recompute_balance(self, account_id: int) -> Decimal:
        """Reset the stored balance to the ledger sum of the account's transactions."""
        account = await self.get_account(account_id)
        account.balance = await TransactionStore(self.db).sum_amounts(account_id)
        await self.db.flush()
        return account.balance
