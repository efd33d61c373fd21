"""Category management service."""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import AlreadyExistsError, ForbiddenError, NotFoundError
from app.models.categorization_rule import CategorizationRule
from app.models.category import Category
from app.schemas.category import CategorizationRuleCreate, CategoryCreate, CategoryUpdate


class CategoryService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def list_categories(self) -> list[Category]:
        result = await self.db.execute(
            select(Category).order_by(Category.parent_id.nulls_first(), Category.name)
        )
        return list(result.scalars().all())

    async def get_category(self, category_id: int) -> Category:
        category = await self.db.get(Category, category_id)
        if not category:
            raise NotFoundError("Category", category_id)
        return category

    async def get_by_name(self, name: str) -> Category | None:
        result = await self.db.execute(select(Category).where(Category.name == name))
        return result.scalar_one_or_none()

    async def create_category(self, data: CategoryCreate) -> Category:
        if await self.get_by_name(data.name):
            raise AlreadyExistsError("Category")
        if data.parent_id is not None:
            await self.get_category(data.parent_id)

        category = Category(**data.model_dump())
        self.db.add(category)
        await self.db.flush()
        await self.db.refresh(category)
        return category

    async def update_category(self, category_id: int, data: CategoryUpdate) -> Category:
        """Rename or re-describe a category. System categories may be edited too."""
        category = await self.get_category(category_id)
        update_data = data.model_dump(exclude_unset=True)
        if "name" in update_data and update_data["name"] != category.name:
            if await self.get_by_name(update_data["name"]):
                raise AlreadyExistsError("Category")
        for key, value in update_data.items():
            setattr(category, key, value)
        await self.db.flush()
        await self.db.refresh(category)
        return category

    async def delete_category(self, category_id: int) -> None:
        """Delete a category. System categories cannot be deleted."""
        category = await self.get_category(category_id)
        if category.is_system:
            raise ForbiddenError("System categories cannot be deleted")
        await self.db.delete(category)
        await self.db.flush()

    # ── Categorization rules ───────────────────────────

    async def create_rule(self, data: CategorizationRuleCreate) -> CategorizationRule:
        await self.get_category(data.category_id)
        rule = CategorizationRule(**data.model_dump())
        self.db.add(rule)
        await self.db.flush()
        await self.db.refresh(rule)
        return rule

    async def list_rules(self, category_id: int | None = None) -> list[CategorizationRule]:
        query = select(CategorizationRule)
        if category_id is not None:
            query = query.where(CategorizationRule.category_id == category_id)
        result = await self.db.execute(
            query.order_by(CategorizationRule.priority.desc(), CategorizationRule.id)
        )
        return list(result.scalars().all())

    async def delete_rule(self, rule_id: int) -> None:
        rule = await self.db.get(CategorizationRule, rule_id)
        if not rule:
            raise NotFoundError("Categorization rule", rule_id)
        await self.db.delete(rule)
        await self.db.flush()
