"""Account balance tests."""

from datetime import datetime
from decimal import Decimal

import pytest

from app.core.exceptions import ForbiddenError, NotFoundError
from app.models import Transaction
from app.schemas.account import AccountCreate
from app.services.account_service import AccountLocks, AccountService


@pytest.mark.asyncio
async def test_update_balance_is_exact(db, account):
    service = AccountService(db)
    for _ in range(10):
        await service.update_balance(account.id, Decimal("0.10"))
    assert await service.get_balance(account.id) == Decimal("1.00")


@pytest.mark.asyncio
async def test_get_account_checks_owner(db, account, user, analyst):
    service = AccountService(db)
    assert (await service.get_account(account.id, user.id)).id == account.id
    with pytest.raises(ForbiddenError):
        await service.get_account(account.id, analyst.id)
    with pytest.raises(NotFoundError):
        await service.get_account(999)


@pytest.mark.asyncio
async def test_total_balance_per_currency(db, account, user):
    service = AccountService(db)
    await service.update_balance(account.id, Decimal("100.00"))
    await service.create_account(AccountCreate(name="Savings", balance=Decimal("50.005")), user)
    await service.create_account(AccountCreate(name="Euro", currency="EUR", balance=Decimal("70")), user)

    assert await service.get_total_balance(user.id) == Decimal("150.01")
    assert await service.get_total_balance(user.id, "EUR") == Decimal("70.00")


@pytest.mark.asyncio
async def test_recompute_balance_from_ledger(db, account):
    for n, amount in enumerate(["120.00", "-20.25", "-0.75"]):
        db.add(
            Transaction(
                account_id=account.id,
                timestamp=datetime(2024, 1, n + 1),
                description=f"row {n}",
                amount=Decimal(amount),
                idempotency_key=f"ledger-{n}",
            )
        )
    await db.commit()

    assert await AccountService(db).recompute_balance(account.id) == Decimal("99.00")


def test_account_locks_are_per_account():
    locks = AccountLocks()
    assert locks.for_account(1) is locks.for_account(1)
    assert locks.for_account(1) is not locks.for_account(2)
