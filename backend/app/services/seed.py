"""Default system categories, keyword rules and detection rules.

Seeding is idempotent: categories and detection rules are looked up by name,
keyword rules by (category, pattern), and only missing rows are inserted.
"""

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.categorization_rule import CategorizationRule
from app.models.category import Category
from app.models.rule import Rule

logger = structlog.get_logger()

# (name, description, icon, color)
DEFAULT_CATEGORIES = [
    ("Income", "Salary, freelance, and other income", "trending-up", "#10b981"),
    ("Food & Dining", "Restaurants, groceries, and food delivery", "utensils", "#f59e0b"),
    ("Transportation", "Public transport, gas, parking", "car", "#3b82f6"),
    ("Shopping", "Retail, online shopping, clothing", "shopping-bag", "#ec4899"),
    ("Entertainment", "Movies, games, streaming services", "film", "#8b5cf6"),
    ("Bills & Utilities", "Rent, electricity, internet, phone", "file-text", "#ef4444"),
    ("Healthcare", "Medical, dental, pharmacy", "heart", "#06b6d4"),
    ("Travel", "Flights, hotels, vacation expenses", "plane", "#14b8a6"),
    ("Education", "Tuition, books, courses", "book-open", "#a855f7"),
    ("Investments", "Stocks, crypto, savings", "bar-chart", "#059669"),
    ("Insurance", "Health, car, life insurance", "shield", "#6366f1"),
    ("Personal Care", "Salon, spa, gym membership", "smile", "#f472b6"),
    ("Gifts & Donations", "Charity, gifts, contributions", "gift", "#eab308"),
    ("Fees & Charges", "Bank fees, service charges", "percent", "#dc2626"),
    ("Other", "Uncategorized transactions", "more-horizontal", "#6b7280"),
]

# (category name, pattern, priority); all case-insensitive "contains"
DEFAULT_KEYWORD_RULES = [
    ("Income", "salary", 10),
    ("Income", "payroll", 10),
    ("Income", "freelance", 10),
    ("Income", "dividend", 9),
    ("Food & Dining", "starbucks", 8),
    ("Food & Dining", "mcdonald's", 8),
    ("Food & Dining", "restaurant", 7),
    ("Food & Dining", "grocery", 7),
    ("Food & Dining", "uber eats", 8),
    ("Food & Dining", "doordash", 8),
    ("Transportation", "uber", 8),
    ("Transportation", "lyft", 8),
    ("Transportation", "parking", 7),
    ("Transportation", "gas station", 7),
    ("Transportation", "shell", 6),
    ("Shopping", "amazon", 8),
    ("Shopping", "walmart", 7),
    ("Shopping", "target", 7),
    ("Entertainment", "netflix", 9),
    ("Entertainment", "spotify", 9),
    ("Entertainment", "steam", 8),
    ("Entertainment", "cinema", 7),
    ("Bills & Utilities", "electric", 8),
    ("Bills & Utilities", "internet", 8),
    ("Bills & Utilities", "water bill", 8),
    ("Bills & Utilities", "rent", 9),
    ("Healthcare", "pharmacy", 8),
    ("Healthcare", "hospital", 8),
    ("Healthcare", "doctor", 7),
    ("Travel", "airbnb", 9),
    ("Travel", "hotel", 8),
    ("Travel", "airline", 8),
]

DEFAULT_DETECTION_RULES = [
    {
        "name": "Large Transaction Alert",
        "description": "Triggers when a single transaction exceeds 3x the account average",
        "type": "large_transaction",
        "severity": "high",
        "condition": {"multiplier": 3, "lookbackDays": 30},
    },
    {
        "name": "High Velocity - Multiple Transactions",
        "description": "Triggers when 10 or more transactions occur within 1 hour",
        "type": "velocity",
        "severity": "medium",
        "condition": {"count": 10, "windowMinutes": 60},
    },
    {
        "name": "Potential Structuring Pattern",
        "description": "Detects multiple transactions just below the reporting threshold",
        "type": "structuring",
        "severity": "critical",
        "condition": {"threshold": 10000, "tolerance": 0.1, "count": 3, "windowHours": 24},
    },
    {
        "name": "Unusual Spending Pattern",
        "description": "Detects significant deviation from normal spending patterns",
        "type": "unusual_pattern",
        "severity": "medium",
        "condition": {"stdDevMultiplier": 2.5, "lookbackDays": 90},
    },
]


async def seed_categories(db: AsyncSession) -> dict[str, Category]:
    """Create missing system categories and keyword rules. Returns categories by name."""
    result = await db.execute(select(Category))
    categories = {c.name: c for c in result.scalars().all()}

    created = 0
    for name, description, icon, color in DEFAULT_CATEGORIES:
        if name in categories:
            continue
        category = Category(name=name, description=description, icon=icon, color=color, is_system=True)
        db.add(category)
        categories[name] = category
        created += 1
    await db.flush()

    result = await db.execute(select(CategorizationRule.category_id, CategorizationRule.pattern))
    existing_rules = {(row.category_id, row.pattern) for row in result.all()}

    rules_created = 0
    for category_name, pattern, priority in DEFAULT_KEYWORD_RULES:
        category = categories[category_name]
        if (category.id, pattern) in existing_rules:
            continue
        db.add(
            CategorizationRule(
                category_id=category.id,
                pattern=pattern,
                match_type="contains",
                case_sensitive=False,
                priority=priority,
            )
        )
        rules_created += 1
    await db.flush()

    logger.info("categories_seeded", categories_created=created, rules_created=rules_created)
    return categories


async def seed_detection_rules(db: AsyncSession) -> list[Rule]:
    result = await db.execute(select(Rule))
    existing = {r.name: r for r in result.scalars().all()}

    rules = []
    created = 0
    for data in DEFAULT_DETECTION_RULES:
        rule = existing.get(data["name"])
        if rule is None:
            rule = Rule(**data)
            db.add(rule)
            created += 1
        rules.append(rule)
    await db.flush()

    logger.info("detection_rules_seeded", created=created)
    return rules


async def seed_all(db: AsyncSession) -> None:
    await seed_categories(db)
    await seed_detection_rules(db)
    await db.commit()
