# crm_app/models/contact/__init__.py
"""
Contact models package
"""

from .activity import ContactActivity
from .base import Contact, contact_identity_key, identity_text
from .enums import ActivityType

__all__ = ["ActivityType", "Contact", "ContactActivity", "contact_identity_key", "identity_text"]
