"""Alert lifecycle tests."""

import pytest

from app.core.exceptions import NotFoundError
from app.schemas.alert import AlertUpdate
from app.services import audit_service
from app.services.alert_service import AlertService
from app.services.audit_service import AuditService


@pytest.fixture
def audit(session_factory):
    return AuditService(session_factory)


@pytest.fixture
def service(db, audit):
    return AlertService(db, audit=audit)


@pytest.fixture
async def alert(service, user, make_rule):
    rule = await make_rule("velocity", {"count": 5})
    return await service.create(user_id=user.id, rule_id=rule.id, context={"transactionCount": 5})


@pytest.mark.asyncio
async def test_create_opens_alert(alert, user):
    assert alert.id is not None
    assert alert.status == "open"
    assert alert.user_id == user.id
    assert alert.context == {"transactionCount": 5}
    assert alert.assigned_to is None
    assert alert.resolved_at is None


@pytest.mark.asyncio
async def test_assign_then_resolve(service, alert, analyst):
    assigned = await service.assign(alert.id, analyst.id)
    assert assigned.status == "reviewing"
    assert assigned.assigned_to == analyst.id
    assert assigned.resolved_at is None

    resolved = await service.resolve(alert.id, analyst.id, notes="Payroll batch, expected")
    assert resolved.status == "resolved"
    assert resolved.assigned_to == analyst.id
    assert resolved.resolved_by == analyst.id
    assert resolved.resolved_at is not None
    assert resolved.notes == "Payroll batch, expected"


@pytest.mark.asyncio
async def test_false_positive_stamps_resolution(service, alert, analyst):
    closed = await service.mark_false_positive(alert.id, analyst.id)
    assert closed.status == "false_positive"
    assert closed.resolved_by == analyst.id
    assert closed.resolved_at is not None


@pytest.mark.asyncio
async def test_escalate_keeps_alert_unresolved(service, alert, analyst):
    escalated = await service.escalate(alert.id, analyst.id, notes="Needs compliance review")
    assert escalated.status == "escalated"
    assert escalated.notes == "Needs compliance review"
    assert escalated.resolved_at is None
    assert escalated.resolved_by is None


@pytest.mark.asyncio
async def test_update_to_reviewing_assigns_analyst(service, alert, analyst):
    updated = await service.update(alert.id, AlertUpdate(status="reviewing"), analyst_id=analyst.id)
    assert updated.assigned_to == analyst.id
    assert updated.resolved_at is None


@pytest.mark.asyncio
async def test_update_to_resolving_status_stamps_resolution(service, alert, analyst):
    updated = await service.update(alert.id, AlertUpdate(status="false_positive"), analyst_id=analyst.id)
    assert updated.resolved_at is not None
    assert updated.resolved_by == analyst.id


@pytest.mark.asyncio
async def test_update_notes_only(service, alert):
    updated = await service.update(alert.id, AlertUpdate(notes="looked at it"))
    assert updated.status == "open"
    assert updated.notes == "looked at it"
    assert updated.resolved_at is None


@pytest.mark.asyncio
async def test_update_with_null_status_keeps_status(service, alert):
    updated = await service.update(alert.id, AlertUpdate.model_validate({"status": None, "notes": "checked"}))
    assert updated.status == "open"
    assert updated.notes == "checked"


@pytest.mark.asyncio
async def test_empty_notes_are_stored(service, alert, analyst):
    await service.update(alert.id, AlertUpdate(notes="first look"))
    resolved = await service.resolve(alert.id, analyst.id, notes="")
    assert resolved.notes == ""

    escalated = await service.escalate(alert.id, analyst.id, notes="")
    assert escalated.notes == ""


@pytest.mark.asyncio
async def test_get_missing_alert(service):
    with pytest.raises(NotFoundError):
        await service.get(404)


@pytest.mark.asyncio
async def test_list_alerts_filters_by_status(service, alert, user, analyst):
    other = await service.create(user_id=user.id, rule_id=alert.rule_id, context={})
    await service.assign(other.id, analyst.id)

    open_alerts = await service.list_alerts(status="open")
    assert [a.id for a in open_alerts] == [alert.id]
    assert len(await service.list_alerts(user_id=user.id)) == 2


@pytest.mark.asyncio
async def test_statistics_buckets_sum_to_total(service, alert, user, analyst):
    ids = [alert.id]
    for _ in range(4):
        ids.append((await service.create(user_id=user.id, rule_id=alert.rule_id, context={})).id)
    await service.assign(ids[1], analyst.id)
    await service.resolve(ids[2], analyst.id)
    await service.mark_false_positive(ids[3], analyst.id)
    await service.escalate(ids[4], analyst.id)

    stats = await service.get_statistics()

    assert stats.total == 5
    assert (stats.open, stats.reviewing, stats.resolved, stats.false_positive, stats.escalated) == (1, 1, 1, 1, 1)
    assert stats.open + stats.reviewing + stats.resolved + stats.false_positive + stats.escalated == stats.total
    assert stats.model_dump(by_alias=True)["falsePositive"] == 1


@pytest.mark.asyncio
async def test_transitions_are_audited(service, alert, analyst, audit):
    await service.assign(alert.id, analyst.id)
    await service.resolve(alert.id, analyst.id, notes="ok")

    [created] = await audit.list_by_action(audit_service.ALERT_CREATED)
    assert created.resource_id == str(alert.id)

    [resolved] = await audit.list_by_action(audit_service.ALERT_RESOLVED)
    assert resolved.user_id == analyst.id
    assert resolved.details["status"] == "resolved"
    assert resolved.details["notes"] == "ok"

    assert len(await audit.list_by_action(audit_service.ALERT_ASSIGNED)) == 1
