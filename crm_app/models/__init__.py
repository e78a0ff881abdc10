# crm_app/models/__init__.py
"""
Database models package
"""

from .base import BaseModel, db
from .contact import ActivityType, Contact, ContactActivity
from .importer import ImportJob, ImportJobStatus

__all__ = [
    "db",
    "BaseModel",
    "ActivityType",
    "Contact",
    "ContactActivity",
    "ImportJob",
    "ImportJobStatus",
]
