"""SQLAlchemy models."""

from app.models.account import Account
from app.models.alert import Alert
from app.models.audit_log import AuditLog
from app.models.base import Base
from app.models.categorization_rule import CategorizationRule
from app.models.category import Category
from app.models.job import Job
from app.models.rule import Rule
from app.models.transaction import Transaction
from app.models.user import User

__all__ = [
    "Base",
    "User",
    "Account",
    "Transaction",
    "Category",
    "CategorizationRule",
    "Rule",
    "Alert",
    "AuditLog",
    "Job",
]
