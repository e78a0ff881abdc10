# crm_app/models/contact/base.py
"""
Business contact model populated by the bulk CSV importer.
"""

import hashlib

from sqlalchemy import Index, func
from sqlalchemy.orm import validates

from ..base import BaseModel, db

IDENTITY_KEY_LENGTH = 32


def identity_text(value):
    """Case- and whitespace-insensitive form of a name or company."""
    if not value:
        return ""
    return " ".join(value.split()).casefold()


def contact_identity_key(full_name, company):
    """
    Hex digest of the folded (full name, company) pair.

    Folding happens in Python, never in SQL: database ``lower()`` functions
    disagree with Python outside ASCII.
    """
    hasher = hashlib.blake2b(digest_size=IDENTITY_KEY_LENGTH // 2)
    for part in (identity_text(full_name), identity_text(company)):
        hasher.update(part.encode("utf-8", "surrogatepass"))
        hasher.update(b"\x00")
    return hasher.hexdigest()


class Contact(BaseModel):
    """
    Person, company, and location attributes for a single business contact,
    plus the attributes derived by import-time enrichment.
    """

    __tablename__ = "contacts"

    id = db.Column(db.Integer, primary_key=True)

    # Person
    full_name = db.Column(db.String(255), nullable=False, index=True)
    first_name = db.Column(db.String(100), nullable=True)
    last_name = db.Column(db.String(100), nullable=True)
    title = db.Column(db.String(255), nullable=True)
    email = db.Column(db.String(254), nullable=True)
    mobile_phone = db.Column(db.String(20), nullable=True)
    other_phone = db.Column(db.String(20), nullable=True)
    home_phone = db.Column(db.String(20), nullable=True)
    corporate_phone = db.Column(db.String(20), nullable=True)
    person_linkedin = db.Column(db.String(500), nullable=True)

    # Company
    company = db.Column(db.String(255), nullable=True, index=True)
    employees = db.Column(db.Integer, nullable=True)
    employee_size_bracket = db.Column(db.String(50), nullable=True)
    industry = db.Column(db.String(255), nullable=True, index=True)
    website = db.Column(db.String(500), nullable=True)
    company_linkedin = db.Column(db.String(500), nullable=True)
    technologies = db.Column(db.JSON, nullable=True)
    annual_revenue = db.Column(db.Numeric(18, 2), nullable=True)

    # Location
    city = db.Column(db.String(100), nullable=True)
    state = db.Column(db.String(100), nullable=True)
    country = db.Column(db.String(100), nullable=True, index=True)
    company_address = db.Column(db.Text, nullable=True)
    company_city = db.Column(db.String(100), nullable=True)
    company_state = db.Column(db.String(100), nullable=True)
    company_country = db.Column(db.String(100), nullable=True)

    # Enriched
    email_domain = db.Column(db.String(255), nullable=True)
    country_code = db.Column(db.String(10), nullable=True)
    timezone = db.Column(db.String(50), nullable=True)
    region = db.Column(db.String(20), nullable=True)
    business_type = db.Column(db.String(20), nullable=True)
    technology_category = db.Column(db.String(50), nullable=True)
    lead_score = db.Column(db.Numeric(3, 1), nullable=True)

    # Maintained from full_name/company; see contact_identity_key()
    identity_key = db.Column(db.String(IDENTITY_KEY_LENGTH), nullable=True, index=True)

    is_deleted = db.Column(db.Boolean, nullable=False, default=False, index=True)
    import_job_id = db.Column(
        db.Integer,
        db.ForeignKey("import_jobs.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    activities = db.relationship(
        "ContactActivity",
        back_populates="contact",
        lazy="dynamic",
        passive_deletes=True,
    )

    def __repr__(self):
        return f"<Contact {self.full_name} ({self.email or 'no email'})>"

    @validates("full_name", "company")
    def refresh_identity_key(self, key, value):
        """Keep identity_key in step with the name and company it is derived from"""
        full_name = value if key == "full_name" else self.full_name
        company = value if key == "company" else self.company
        self.identity_key = contact_identity_key(full_name, company)
        return value

    @staticmethod
    def find_active_by_email(email):
        """Return the non-deleted contact holding ``email`` (case-insensitive), if any."""
        if not email:
            return None
        return Contact.query.filter(
            func.lower(Contact.email) == email.lower(),
            Contact.is_deleted.is_(False),
        ).first()


# Email uniqueness applies to live contacts only; soft-deleted rows keep their address.
Index(
    "uq_contacts_active_email",
    Contact.email,
    unique=True,
    sqlite_where=Contact.is_deleted.is_(False),
    postgresql_where=Contact.is_deleted.is_(False),
)
