"""Detection rule management tests."""

import pytest

from app.core.exceptions import AlreadyExistsError, ConflictError, NotFoundError, ValidationError
from app.schemas.rule import RuleCreate, RuleUpdate
from app.services.alert_service import AlertService
from app.services.rule_service import RuleService


@pytest.mark.asyncio
async def test_create_rule(db):
    rule = await RuleService(db).create_rule(
        RuleCreate(name="Big spender", type="large_transaction", condition={"multiplier": 5})
    )
    assert rule.id is not None
    assert rule.enabled is True
    assert rule.auto_resolve is False
    assert rule.condition == {"multiplier": 5}


@pytest.mark.asyncio
async def test_create_rule_rejects_duplicate_name(db):
    service = RuleService(db)
    await service.create_rule(RuleCreate(name="Dup", type="velocity"))
    with pytest.raises(AlreadyExistsError):
        await service.create_rule(RuleCreate(name="Dup", type="velocity"))


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "rule_type, condition",
    [
        ("no_such_type", {}),
        ("velocity", {"count": 0}),
        ("structuring", {"tolerance": 1.5}),
        ("large_transaction", {"lookbackDays": "soon"}),
    ],
)
async def test_create_rule_validates_condition(db, rule_type, condition):
    with pytest.raises(ValidationError):
        await RuleService(db).create_rule(RuleCreate(name="Bad", type=rule_type, condition=condition))


@pytest.mark.asyncio
async def test_unevaluated_rule_types_store_free_form_conditions(db):
    rule = await RuleService(db).create_rule(
        RuleCreate(name="Offshore", type="foreign_transaction", condition={"countries": ["XX", "YY"]})
    )
    assert rule.condition == {"countries": ["XX", "YY"]}


@pytest.mark.asyncio
async def test_update_rule(db, make_rule):
    rule = await make_rule("velocity", {"count": 10})
    updated = await RuleService(db).update_rule(
        rule.id, RuleUpdate(condition={"count": 20}, severity="high", auto_resolve=True)
    )
    assert updated.condition == {"count": 20}
    assert updated.severity == "high"
    assert updated.auto_resolve is True
    assert updated.type == "velocity"


@pytest.mark.asyncio
async def test_update_rule_validates_condition(db, make_rule):
    rule = await make_rule("velocity", {"count": 10})
    with pytest.raises(ValidationError):
        await RuleService(db).update_rule(rule.id, RuleUpdate(condition={"windowMinutes": -5}))


@pytest.mark.asyncio
async def test_list_enabled_rules(db, make_rule):
    active = await make_rule("velocity", name="active")
    await make_rule("velocity", name="inactive", enabled=False)
    service = RuleService(db)

    assert [r.id for r in await service.list_rules(enabled_only=True)] == [active.id]
    assert len(await service.list_rules()) == 2


@pytest.mark.asyncio
async def test_set_enabled(db, make_rule):
    rule = await make_rule("velocity")
    disabled = await RuleService(db).set_enabled(rule.id, False)
    assert disabled.enabled is False


@pytest.mark.asyncio
async def test_delete_rule(db, make_rule):
    rule = await make_rule("velocity")
    service = RuleService(db)
    await service.delete_rule(rule.id)
    with pytest.raises(NotFoundError):
        await service.get_rule(rule.id)


@pytest.mark.asyncio
async def test_rule_with_alerts_cannot_be_deleted(db, make_rule, user):
    rule = await make_rule("velocity")
    await AlertService(db).create(user_id=user.id, rule_id=rule.id, context={})

    with pytest.raises(ConflictError):
        await RuleService(db).delete_rule(rule.id)
