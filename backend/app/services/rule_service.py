"""Detection rule service.

Manages CRUD operations on AML / fraud detection rules. Conditions of the
rule types the engine evaluates are validated on write, so a stored rule
never fails to parse at evaluation time.
"""

import pydantic
import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import AlreadyExistsError, ConflictError, NotFoundError, ValidationError
from app.models.alert import Alert
from app.models.rule import RULE_TYPES, Rule
from app.schemas.rule import EVALUATED_RULE_TYPES, RuleCreate, RuleUpdate, build_condition

logger = structlog.get_logger()


def _validate_condition(rule_type: str, condition: dict) -> None:
    if rule_type not in RULE_TYPES:
        raise ValidationError(f"Unknown rule type: {rule_type}")
    if rule_type not in EVALUATED_RULE_TYPES:
        return
    try:
        build_condition(rule_type, condition)
    except pydantic.ValidationError as e:
        raise ValidationError(f"Invalid condition for {rule_type}: {e}") from e


class RuleService:
    def __init__(self, db: AsyncSession):
        self.db = db

    # ── CRUD ───────────────────────────────────────────

    async def list_rules(self, enabled_only: bool = False) -> list[Rule]:
        query = select(Rule)
        if enabled_only:
            query = query.where(Rule.enabled.is_(True))
        result = await self.db.execute(query.order_by(Rule.id))
        return list(result.scalars().all())

    async def get_rule(self, rule_id: int) -> Rule:
        rule = await self.db.get(Rule, rule_id)
        if not rule:
            raise NotFoundError("Rule", rule_id)
        return rule

    async def create_rule(self, data: RuleCreate) -> Rule:
        await self._ensure_unique_name(data.name)
        _validate_condition(data.type, data.condition)

        rule = Rule(**data.model_dump())
        self.db.add(rule)
        await self.db.flush()
        await self.db.refresh(rule)
        logger.info("rule_created", rule_id=rule.id, rule_type=rule.type, rule_name=rule.name)
        return rule

    async def update_rule(self, rule_id: int, data: RuleUpdate) -> Rule:
        """Update a rule. Its type is fixed; only parameters and flags change."""
        rule = await self.get_rule(rule_id)
        update_data = data.model_dump(exclude_unset=True)

        if "name" in update_data and update_data["name"] != rule.name:
            await self._ensure_unique_name(update_data["name"])
        if update_data.get("condition") is not None:
            _validate_condition(rule.type, update_data["condition"])

        for key, value in update_data.items():
            if value is not None:
                setattr(rule, key, value)
        await self.db.flush()
        await self.db.refresh(rule)
        return rule

    async def set_enabled(self, rule_id: int, enabled: bool) -> Rule:
        rule = await self.get_rule(rule_id)
        rule.enabled = enabled
        await self.db.flush()
        logger.info("rule_toggled", rule_id=rule.id, enabled=enabled)
        return rule

    async def delete_rule(self, rule_id: int) -> None:
        """Delete a rule that never fired. Rules with alerts can only be disabled."""
        rule = await self.get_rule(rule_id)
        result = await self.db.execute(select(func.count()).select_from(Alert).where(Alert.rule_id == rule_id))
        if result.scalar_one():
            raise ConflictError("Rule has alerts; disable it instead")
        await self.db.delete(rule)
        await self.db.flush()

    async def _ensure_unique_name(self, name: str) -> None:
        result = await self.db.execute(select(Rule.id).where(Rule.name == name))
        if result.scalar_one_or_none() is not None:
            raise AlreadyExistsError("Rule")
