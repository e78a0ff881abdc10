"""
Row normalization and validation.

``normalize_row`` is a pure function: one decoded row plus a field mapping in,
exactly one of a ``ContactRecord`` or a ``RowError`` out (field-level phone
problems ride along as warnings). Identical input always yields identical
output, and normalizing an already-normalized record is a no-op.
"""

from __future__ import annotations

import re
from dataclasses import asdict, dataclass, fields
from typing import Mapping, Sequence

from email_validator import EmailNotValidError, validate_email

from crm_app.importer.adapters.csv_contacts import DecodedRow
from crm_app.importer.contracts import (
    CONTACT_ATTRIBUTES,
    NAME_ATTRIBUTES,
    PHONE_ATTRIBUTES,
    missing_required_attributes,
    resolve_target_attribute,
)

from .errors import ROW_FIELD, InvalidFieldMappingError, RowError, build_preview

EMAIL_MAX_LENGTH = 254
PHONE_MIN_DIGITS = 10
PHONE_MAX_DIGITS = 15

_EMAIL_STRUCTURE = re.compile(r"^[^@\s]+@[^@\s.][^@\s]*\.[^@\s.][^@\s]*$")
_NON_DIGIT = re.compile(r"\D")


@dataclass(frozen=True)
class ContactRecord:
    """Transient projection of a contact between normalization and persistence."""

    full_name: str
    first_name: str | None = None
    last_name: str | None = None
    title: str | None = None
    email: str | None = None
    mobile_phone: str | None = None
    other_phone: str | None = None
    home_phone: str | None = None
    corporate_phone: str | None = None
    person_linkedin: str | None = None
    company: str | None = None
    employees: str | None = None
    employee_size_bracket: str | None = None
    industry: str | None = None
    website: str | None = None
    company_linkedin: str | None = None
    technologies: str | None = None
    annual_revenue: str | None = None
    city: str | None = None
    state: str | None = None
    country: str | None = None
    company_address: str | None = None
    company_city: str | None = None
    company_state: str | None = None
    company_country: str | None = None

    def to_payload(self) -> dict[str, str | None]:
        return asdict(self)

    def as_source_row(self) -> DecodedRow:
        """Express this record as a headered source row using attribute names as columns."""

        names = tuple(item.name for item in fields(self))
        values = tuple(getattr(self, name) or "" for name in names)
        return DecodedRow(row_number=1, source_line=2, values=values, header=names)


@dataclass(frozen=True)
class NormalizationResult:
    row_number: int
    record: ContactRecord | None = None
    error: RowError | None = None
    warnings: tuple[RowError, ...] = ()

    @property
    def ok(self) -> bool:
        return self.record is not None


def collapse_whitespace(value: str | None) -> str | None:
    if value is None:
        return None
    collapsed = " ".join(value.split())
    return collapsed or None


def normalize_email(value: str | None) -> str | None:
    if value is None:
        return None
    cleaned = value.strip().lower()
    return cleaned or None


def is_structurally_valid_email(email: str) -> bool:
    return len(email) <= EMAIL_MAX_LENGTH and bool(_EMAIL_STRUCTURE.match(email))


def clean_phone(value: str | None) -> str | None:
    """Keep digits and a single leading ``+``; ``None`` when nothing is left."""

    if value is None:
        return None
    stripped = value.strip()
    if not stripped:
        return None
    digits = _NON_DIGIT.sub("", stripped)
    prefix = "+" if stripped.startswith("+") else ""
    return f"{prefix}{digits}" if digits else prefix or None


def phone_digit_count(phone: str) -> int:
    return len(phone.lstrip("+"))


def prepare_field_mapping(
    mapping: Mapping[str, str],
    header: Sequence[str] | None = None,
) -> tuple[dict[str, str], tuple[str, ...]]:
    """
    Validate a caller-supplied field mapping and resolve its targets.

    Returns the resolved ``{source column: attribute}`` mapping plus warnings
    for mapped columns the header does not contain (those are dropped).
    Raises ``InvalidFieldMappingError`` for unknown attributes or when no
    name attribute is mapped.
    """

    resolved: dict[str, str] = {}
    unknown: list[str] = []
    for column, target in (mapping or {}).items():
        if target is None or str(target).strip() == "":
            continue
        attribute = resolve_target_attribute(str(target))
        if attribute is None:
            unknown.append(f"{column} -> {target}")
            continue
        resolved[str(column)] = attribute

    if unknown:
        raise InvalidFieldMappingError(
            "Field mapping targets unknown contact attributes: " + ", ".join(unknown),
            unknown=unknown,
        )

    warnings: list[str] = []
    if header is not None:
        header_set = set(header)
        for column in list(resolved):
            if column not in header_set:
                warnings.append(f"Mapped column '{column}' is not present in the file header; ignoring it.")
                resolved.pop(column)

    missing = missing_required_attributes(resolved.values())
    if missing:
        raise InvalidFieldMappingError(
            "Field mapping does not cover required attributes: " + "; ".join(missing),
            missing=missing,
        )
    return resolved, tuple(warnings)


def _mapped_values(row: DecodedRow, mapping: Mapping[str, str]) -> dict[str, str]:
    values: dict[str, str] = {}
    for column, raw in zip(row.column_names, row.values):
        attribute = mapping.get(column)
        if attribute is None or attribute in values:
            continue
        cleaned = raw.strip()
        if cleaned:
            values[attribute] = cleaned
    return values


def normalize_row(
    row: DecodedRow,
    mapping: Mapping[str, str],
    *,
    strict_email: bool = False,
    delimiter: str = ",",
) -> NormalizationResult:
    """Clean and validate one decoded row against a resolved field mapping."""

    def reject(message: str, *fields_: str) -> NormalizationResult:
        error = RowError.for_row(
            row.row_number,
            message,
            fields=fields_ or (ROW_FIELD,),
            preview=build_preview(row.values, delimiter) if not row.is_error else row.preview(delimiter),
        )
        return NormalizationResult(row_number=row.row_number, error=error)

    if row.is_error:
        return reject(row.error or "Row could not be decoded.")

    if row.header is not None and len(row.values) != len(row.header):
        return reject(f"Expected {len(row.header)} columns but found {len(row.values)}.")

    values = _mapped_values(row, mapping)

    for attribute in NAME_ATTRIBUTES:
        if attribute in values:
            collapsed = collapse_whitespace(values[attribute])
            if collapsed:
                values[attribute] = collapsed
            else:
                values.pop(attribute)

    if "full_name" not in values:
        parts = [values[name] for name in ("first_name", "last_name") if values.get(name)]
        if parts:
            values["full_name"] = " ".join(parts)
    if not values.get("full_name"):
        return reject("Full name is required (map a name column or first/last name).", "full_name")

    email = normalize_email(values.pop("email", None))
    if email is not None:
        if len(email) > EMAIL_MAX_LENGTH:
            return reject(f"Email address exceeds {EMAIL_MAX_LENGTH} characters.", "email")
        if not is_structurally_valid_email(email):
            return reject(f"Invalid email address '{email}'.", "email")
        if strict_email:
            try:
                validate_email(email, check_deliverability=False)
            except EmailNotValidError as exc:
                return reject(f"Invalid email address '{email}': {exc}", "email")
        values["email"] = email

    warnings: list[RowError] = []
    for attribute in PHONE_ATTRIBUTES:
        raw_phone = values.pop(attribute, None)
        phone = clean_phone(raw_phone)
        if phone is None and raw_phone is None:
            continue
        digits = phone_digit_count(phone or "")
        if PHONE_MIN_DIGITS <= digits <= PHONE_MAX_DIGITS:
            values[attribute] = phone
            continue
        warnings.append(
            RowError.for_row(
                row.row_number,
                f"Phone number '{raw_phone}' has {digits} digits; expected "
                f"{PHONE_MIN_DIGITS}-{PHONE_MAX_DIGITS}. Field left empty.",
                fields=(attribute,),
                severity="warning",
                preview=build_preview(row.values, delimiter),
            )
        )

    record = ContactRecord(**{name: values.get(name) for name in CONTACT_ATTRIBUTES if name in values})
    return NormalizationResult(row_number=row.row_number, record=record, warnings=tuple(warnings))


class RowNormalizer:
    """Callable binding a resolved mapping and options, for use from worker pools."""

    def __init__(self, mapping: Mapping[str, str], *, strict_email: bool = False, delimiter: str = ",") -> None:
        self.mapping = dict(mapping)
        self.strict_email = strict_email
        self.delimiter = delimiter

    def __call__(self, row: DecodedRow) -> NormalizationResult:
        return normalize_row(row, self.mapping, strict_email=self.strict_email, delimiter=self.delimiter)
