# crm_app/models/contact/activity.py
"""
Append-only audit trail for contacts.
"""

from sqlalchemy import Enum

from ..base import BaseModel, db
from .enums import ActivityType


class ContactActivity(BaseModel):
    """One audit entry describing something that happened to a contact."""

    __tablename__ = "contact_activities"

    id = db.Column(db.Integer, primary_key=True)
    contact_id = db.Column(
        db.Integer,
        db.ForeignKey("contacts.id", ondelete="CASCADE"),
        nullable=True,
        index=True,
    )
    activity_type = db.Column(
        Enum(ActivityType, name="activity_type_enum"),
        nullable=False,
        index=True,
    )
    description = db.Column(db.Text, nullable=False)
    changes = db.Column(db.JSON, nullable=True)

    contact = db.relationship("Contact", back_populates="activities")

    def __repr__(self):
        return f"<ContactActivity {self.activity_type.value} contact={self.contact_id}>"
