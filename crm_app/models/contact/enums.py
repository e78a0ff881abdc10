# crm_app/models/contact/enums.py
"""
Enums for contact models.
"""

from enum import Enum as PyEnum


class ActivityType(PyEnum):
    """Kinds of entries recorded in the contact activity log"""

    IMPORTED = "imported"
    CREATED = "created"
    UPDATED = "updated"
    ENRICHED = "enriched"
