"""
Duplicate resolution for contact imports.

``DuplicateResolver`` is the per-job, strictly in-order classifier: a record is
a duplicate when its email, or its (full name, company) pair, was already
accepted earlier in the same file. ``ContactStoreLookup`` is the optional
cross-job check against contacts already persisted; it runs in batches from
the writer stage, which is the only stage that talks to the database.
"""

from __future__ import annotations

import enum
import hashlib
import logging
from dataclasses import dataclass
from typing import Iterable, Literal, Mapping, Protocol

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from crm_app.models import Contact
from crm_app.models.contact import contact_identity_key

from .normalize import ContactRecord

logger = logging.getLogger(__name__)

_KEY_DIGEST_SIZE = 16


class DuplicateReason(str, enum.Enum):
    EMAIL = "email"
    NAME_COMPANY = "name+company"


@dataclass(frozen=True)
class DuplicateDecision:
    is_duplicate: bool
    reason: DuplicateReason | None = None
    source: Literal["job", "store"] | None = None

    @classmethod
    def new(cls) -> "DuplicateDecision":
        return cls(is_duplicate=False)

    @classmethod
    def existing(cls, reason: DuplicateReason) -> "DuplicateDecision":
        """A record matching a contact persisted before this job started."""

        return cls(is_duplicate=True, reason=reason, source="store")


def _digest(*parts: str) -> bytes:
    hasher = hashlib.blake2b(digest_size=_KEY_DIGEST_SIZE)
    for part in parts:
        hasher.update(part.encode("utf-8", "surrogatepass"))
        hasher.update(b"\x00")
    return hasher.digest()


class DuplicateResolver:
    """
    Classify records as new or duplicate in file order.

    Keys are stored as fixed-size digests, so memory grows by a constant
    amount per accepted record. Not thread-safe; one resolver per job stage.
    """

    def __init__(self) -> None:
        self._emails: set[bytes] = set()
        self._name_company: set[bytes] = set()
        self.new_count = 0
        self.duplicate_count = 0

    def __len__(self) -> int:
        return self.new_count

    def classify(self, record: ContactRecord) -> DuplicateDecision:
        email_key = _digest("email", record.email) if record.email else None
        pair_key = bytes.fromhex(contact_identity_key(record.full_name, record.company))

        if email_key is not None and email_key in self._emails:
            self.duplicate_count += 1
            return DuplicateDecision(is_duplicate=True, reason=DuplicateReason.EMAIL, source="job")
        if pair_key in self._name_company:
            self.duplicate_count += 1
            return DuplicateDecision(is_duplicate=True, reason=DuplicateReason.NAME_COMPANY, source="job")

        if email_key is not None:
            self._emails.add(email_key)
        self._name_company.add(pair_key)
        self.new_count += 1
        return DuplicateDecision.new()

    def clear(self) -> None:
        self._emails.clear()
        self._name_company.clear()


class DuplicateLookup(Protocol):
    """Cross-job duplicate check exposed by the persistence side."""

    def find_existing(self, records: Mapping[int, ContactRecord]) -> dict[int, DuplicateReason]:
        """Return ``{row_number: reason}`` for records already present in the store."""


class ContactStoreLookup:
    """
    Batched lookup of live contacts sharing an email or (name, company) pair.

    A database failure disables the lookup for the rest of the job; in-job
    duplicate resolution does not depend on it.
    """

    def __init__(self, session: Session, *, job_id: int | None = None) -> None:
        self.session = session
        self.job_id = job_id
        self.available = True

    def find_existing(self, records: Mapping[int, ContactRecord]) -> dict[int, DuplicateReason]:
        if not records or not self.available:
            return {}
        try:
            return self._find_existing(records)
        except SQLAlchemyError as exc:
            self.session.rollback()
            self.available = False
            logger.warning(
                "Cross-job duplicate lookup failed; continuing with in-job checks only: %s",
                exc,
                extra={"importer_job_id": self.job_id},
            )
            return {}

    def _find_existing(self, records: Mapping[int, ContactRecord]) -> dict[int, DuplicateReason]:
        emails = {record.email for record in records.values() if record.email}
        identity_keys = {
            row_number: contact_identity_key(record.full_name, record.company) for row_number, record in records.items()
        }

        existing_emails: set[str] = set()
        if emails:
            rows = self.session.execute(
                Contact.__table__.select()
                .with_only_columns(func.lower(Contact.email))
                .where(func.lower(Contact.email).in_(sorted(emails)), Contact.is_deleted.is_(False))
            )
            existing_emails = {value for (value,) in rows}

        existing_pairs = self._existing_identity_keys(identity_keys.values())

        matches: dict[int, DuplicateReason] = {}
        for row_number, record in records.items():
            if record.email and record.email in existing_emails:
                matches[row_number] = DuplicateReason.EMAIL
            elif identity_keys[row_number] in existing_pairs:
                matches[row_number] = DuplicateReason.NAME_COMPANY
        return matches

    def _existing_identity_keys(self, keys: Iterable[str]) -> set[str]:
        keys = sorted(set(keys))
        if not keys:
            return set()
        statement = (
            Contact.__table__.select()
            .with_only_columns(Contact.identity_key)
            .where(Contact.identity_key.in_(keys), Contact.is_deleted.is_(False))
        )
        return {value for (value,) in self.session.execute(statement)}
