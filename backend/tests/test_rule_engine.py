"""Detection rule engine tests.

All rules run against a fixed clock so lookback windows are deterministic.
"""

from datetime import datetime, timedelta
from decimal import Decimal
from itertools import count

import pytest
from sqlalchemy import select

from app.models import Alert, Transaction
from app.services.rule_engine import AUTO_RESOLVE_NOTE, RuleEngine

NOW = datetime(2024, 6, 1, 12, 0)

_keys = count(1)


@pytest.fixture
def engine_for(db):
    return RuleEngine(db, clock=lambda: NOW)


@pytest.fixture
def add_txn(db, account):
    async def _add(amount, at=NOW, description="Payment"):
        txn = Transaction(
            account_id=account.id,
            timestamp=at,
            description=description,
            amount=Decimal(amount),
            idempotency_key=f"test-{next(_keys)}",
        )
        db.add(txn)
        await db.commit()
        return txn

    return _add


async def _history(add_txn, amounts, days_ago_start=1):
    for i, amount in enumerate(amounts):
        await add_txn(amount, NOW - timedelta(days=days_ago_start + i))


# ── large_transaction ─────────────────────────────


@pytest.mark.asyncio
@pytest.mark.parametrize("amount, violated", [("-2999.00", False), ("-3000.00", False), ("-3001.00", True)])
async def test_large_transaction_threshold(engine_for, add_txn, make_rule, amount, violated):
    rule = await make_rule("large_transaction", {"multiplier": 3, "lookbackDays": 30})
    await _history(add_txn, ["-1000.00"] * 5)
    txn = await add_txn(amount)

    violation = await engine_for.evaluate(rule, txn)

    assert (violation is not None) is violated
    if violated:
        assert violation.context == {
            "transactionAmount": "3001.00",
            "averageAmount": "1000.00",
            "multiplier": 3,
            "threshold": "3000.00",
            "lookbackDays": 30,
        }


@pytest.mark.asyncio
async def test_large_transaction_without_history(engine_for, add_txn, make_rule):
    rule = await make_rule("large_transaction")
    txn = await add_txn("-50000.00")
    assert await engine_for.evaluate(rule, txn) is None


@pytest.mark.asyncio
async def test_large_transaction_ignores_history_outside_lookback(engine_for, add_txn, make_rule):
    rule = await make_rule("large_transaction", {"multiplier": 3, "lookback_days": 7})
    await _history(add_txn, ["-10.00"] * 3, days_ago_start=30)
    await _history(add_txn, ["-1000.00"] * 3)
    txn = await add_txn("-2500.00")
    assert await engine_for.evaluate(rule, txn) is None


# ── velocity ──────────────────────────────────────


@pytest.mark.asyncio
@pytest.mark.parametrize("threshold, violated", [(3, True), (4, False)])
async def test_velocity_counts_the_current_transaction(engine_for, add_txn, make_rule, threshold, violated):
    rule = await make_rule("velocity", {"count": threshold, "windowMinutes": 60})
    await add_txn("-10.00", NOW - timedelta(minutes=30))
    await add_txn("-10.00", NOW - timedelta(minutes=10))
    await add_txn("-10.00", NOW - timedelta(minutes=90))
    txn = await add_txn("-10.00")

    violation = await engine_for.evaluate(rule, txn)

    assert (violation is not None) is violated
    if violated:
        assert violation.context == {"transactionCount": 3, "threshold": 3, "windowMinutes": 60}


# ── structuring ───────────────────────────────────


@pytest.mark.asyncio
async def test_structuring_counts_amounts_just_below_threshold(engine_for, add_txn, make_rule):
    rule = await make_rule("structuring", {"threshold": 10000, "tolerance": "0.1", "count": 3, "windowHours": 24})
    await add_txn("-9500.00", NOW - timedelta(hours=5))
    await add_txn("-9800.00", NOW - timedelta(hours=2))
    txn = await add_txn("-9900.00")

    violation = await engine_for.evaluate(rule, txn)

    assert violation is not None
    assert violation.context["matchingTransactions"] == 3
    assert violation.context["threshold"] == "10000.00"
    assert violation.context["lowerBound"] == "9000.00"
    assert violation.context["tolerance"] == 0.1


@pytest.mark.asyncio
async def test_structuring_bounds_are_exclusive(engine_for, add_txn, make_rule):
    rule = await make_rule("structuring", {"threshold": 10000, "tolerance": "0.1", "count": 2})
    await add_txn("-8999.00", NOW - timedelta(hours=3))
    await add_txn("-9000.00", NOW - timedelta(hours=2))
    await add_txn("-10000.00", NOW - timedelta(hours=1))
    txn = await add_txn("-9500.00")

    assert await engine_for.evaluate(rule, txn) is None


# ── unusual_pattern ───────────────────────────────

_VARIED = ["-100.00", "-110.00", "-90.00", "-105.00", "-95.00", "-100.00", "-110.00", "-90.00", "-105.00", "-95.00"]


@pytest.mark.asyncio
async def test_unusual_pattern_needs_minimum_history(engine_for, add_txn, make_rule):
    rule = await make_rule("unusual_pattern", {"stdDevMultiplier": 2.5, "minHistory": 10})
    await _history(add_txn, _VARIED[:9])
    txn = await add_txn("-100000.00")
    assert await engine_for.evaluate(rule, txn) is None


@pytest.mark.asyncio
async def test_unusual_pattern_flags_outlier(engine_for, add_txn, make_rule):
    rule = await make_rule("unusual_pattern", {"stdDevMultiplier": 2.5, "minHistory": 10})
    await _history(add_txn, _VARIED)
    txn = await add_txn("-500.00")

    violation = await engine_for.evaluate(rule, txn)

    assert violation is not None
    assert violation.context["mean"] == "100.00"
    assert violation.context["historyCount"] == 10
    assert violation.context["transactionAmount"] == "500.00"
    assert violation.context["deviations"] > 2.5


@pytest.mark.asyncio
async def test_unusual_pattern_within_range(engine_for, add_txn, make_rule):
    rule = await make_rule("unusual_pattern", {"stdDevMultiplier": 2.5, "minHistory": 10})
    await _history(add_txn, _VARIED)
    txn = await add_txn("-110.00")
    assert await engine_for.evaluate(rule, txn) is None


@pytest.mark.asyncio
async def test_unusual_pattern_zero_variance_is_skipped(engine_for, add_txn, make_rule):
    rule = await make_rule("unusual_pattern", {"minHistory": 10})
    await _history(add_txn, ["-100.00"] * 10)
    txn = await add_txn("-100000.00")
    assert await engine_for.evaluate(rule, txn) is None


# ── Rule handling ─────────────────────────────────


@pytest.mark.asyncio
async def test_disabled_rule_never_violates(engine_for, add_txn, make_rule):
    rule = await make_rule("velocity", {"count": 1}, enabled=False)
    txn = await add_txn("-10.00")
    assert await engine_for.evaluate(rule, txn) is None


@pytest.mark.asyncio
async def test_unevaluated_rule_type_is_skipped(engine_for, add_txn, make_rule):
    rule = await make_rule("foreign_transaction", {"countries": ["XX"]})
    txn = await add_txn("-10.00")
    assert await engine_for.evaluate(rule, txn) is None


@pytest.mark.asyncio
async def test_invalid_condition_is_skipped(engine_for, add_txn, make_rule):
    rule = await make_rule("large_transaction", {"multiplier": -1})
    txn = await add_txn("-10.00")
    assert await engine_for.evaluate(rule, txn) is None


@pytest.mark.asyncio
async def test_evaluate_missing_transaction(engine_for, make_rule):
    await make_rule("velocity", {"count": 1})
    assert await engine_for.evaluate_transaction(12345) == []


@pytest.mark.asyncio
async def test_evaluate_transaction_creates_one_alert_per_violation(engine_for, add_txn, make_rule, user):
    velocity = await make_rule("velocity", {"count": 1})
    await make_rule("large_transaction", name="never fires without history")
    structuring = await make_rule("structuring", {"threshold": 10000, "count": 1}, severity="high")
    txn = await add_txn("-9500.00")

    alerts = await engine_for.evaluate_transaction(txn.id)

    assert [a.rule_id for a in alerts] == [velocity.id, structuring.id]
    for alert in alerts:
        assert alert.status == "open"
        assert alert.transaction_id == txn.id
        assert alert.user_id == user.id
        assert alert.resolved_at is None


@pytest.mark.asyncio
async def test_auto_resolve_rule(engine_for, add_txn, make_rule):
    await make_rule("velocity", {"count": 1}, auto_resolve=True)
    txn = await add_txn("-10.00")

    [alert] = await engine_for.evaluate_transaction(txn.id)

    assert alert.status == "resolved"
    assert alert.notes == AUTO_RESOLVE_NOTE
    assert alert.resolved_at is not None
    assert alert.resolved_by is None


@pytest.mark.asyncio
async def test_run_rules_for_account(engine_for, db, add_txn, make_rule, account):
    await make_rule("velocity", {"count": 2, "windowMinutes": 60})
    await add_txn("-10.00", NOW - timedelta(days=3))
    await add_txn("-10.00", NOW - timedelta(minutes=10))
    await add_txn("-10.00", NOW - timedelta(minutes=5))

    created = await engine_for.run_rules_for_account(account.id)

    assert created == 1
    result = await db.execute(select(Alert))
    assert len(result.scalars().all()) == 1
