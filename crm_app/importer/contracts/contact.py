"""Canonical contact import contract.

Single source of truth for the contact attributes a CSV column can be mapped
onto, the header aliases used to suggest a mapping automatically, and the
validation applied to caller-supplied field mappings.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Iterable, Mapping, Sequence, Tuple

from rapidfuzz import fuzz, process, utils

FUZZY_SCORE_CUTOFF = 85.0

_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")
_NON_TOKEN = re.compile(r"[^a-z0-9]+")
_SEPARATORS = re.compile(r"[\s_.\-]")


@dataclass(frozen=True)
class FieldSpec:
    """Metadata describing a contact attribute a CSV column may feed."""

    name: str
    description: str
    required: bool = False
    aliases: Tuple[str, ...] = ()
    is_phone: bool = False

    def headers(self) -> Tuple[str, ...]:
        """Return the canonical header plus aliases for matching."""

        return (self.name, *self.aliases)


CONTACT_FIELDS: Tuple[FieldSpec, ...] = (
    FieldSpec(
        name="full_name",
        description="Display name; derived from first + last name when not mapped.",
        required=True,
        aliases=("name", "fullname", "contact_name", "person_name", "display_name", "complete_name"),
    ),
    FieldSpec(
        name="first_name",
        description="Given name.",
        aliases=("first", "fname", "f_name", "given_name", "forename", "firstname"),
    ),
    FieldSpec(
        name="last_name",
        description="Family name.",
        aliases=("last", "lname", "l_name", "surname", "family_name", "lastname"),
    ),
    FieldSpec(
        name="title",
        description="Job title.",
        aliases=("job_title", "jobtitle", "position", "role", "designation", "job_position"),
    ),
    FieldSpec(
        name="email",
        description="Primary email address (normalized lower-case).",
        aliases=("email_address", "e_mail", "mail", "emailaddress", "work_email", "business_email"),
    ),
    FieldSpec(
        name="mobile_phone",
        description="Mobile phone number.",
        aliases=("mobile", "mobile_number", "cell", "cell_phone", "phone", "phone_number", "telephone", "tel"),
        is_phone=True,
    ),
    FieldSpec(
        name="other_phone",
        description="Alternate phone number.",
        aliases=("alt_phone", "alternate_phone", "secondary_phone", "additional_phone", "backup_phone"),
        is_phone=True,
    ),
    FieldSpec(
        name="home_phone",
        description="Home phone number.",
        aliases=("landline", "home_number", "home_telephone", "home_tel", "house_phone"),
        is_phone=True,
    ),
    FieldSpec(
        name="corporate_phone",
        description="Company or office phone number.",
        aliases=("work_phone", "office_phone", "business_phone", "company_phone", "corp_phone"),
        is_phone=True,
    ),
    FieldSpec(
        name="person_linkedin",
        description="Personal LinkedIn profile URL.",
        aliases=("linkedin", "linkedin_url", "linkedin_profile", "person_linkedin_url", "profile_url"),
    ),
    FieldSpec(
        name="company",
        description="Employer or organization name.",
        aliases=("company_name", "organization", "organisation", "org", "employer", "business_name", "account_name"),
    ),
    FieldSpec(
        name="employees",
        description="Employee headcount.",
        aliases=("employee_count", "number_of_employees", "headcount", "staff_count", "workforce", "num_employees"),
    ),
    FieldSpec(
        name="employee_size_bracket",
        description="Employee headcount bracket such as 11-50.",
        aliases=("company_size", "employee_size", "size_bracket", "employee_range", "company_size_bracket"),
    ),
    FieldSpec(
        name="industry",
        description="Industry or sector.",
        aliases=("sector", "vertical"),
    ),
    FieldSpec(
        name="website",
        description="Company website URL.",
        aliases=("web_site", "company_website", "homepage", "url", "web_address"),
    ),
    FieldSpec(
        name="company_linkedin",
        description="Company LinkedIn page URL.",
        aliases=("company_linkedin_url", "linkedin_company", "company_linkedin_page"),
    ),
    FieldSpec(
        name="technologies",
        description="Technologies in use, separated by ';', ',' or '|'.",
        aliases=("tech_stack", "technology", "tech", "tools", "software"),
    ),
    FieldSpec(
        name="annual_revenue",
        description="Annual revenue.",
        aliases=("revenue", "turnover", "yearly_revenue", "sales"),
    ),
    FieldSpec(
        name="city",
        description="Contact city.",
        aliases=("town", "person_city"),
    ),
    FieldSpec(
        name="state",
        description="Contact state or province.",
        aliases=("province", "state_province", "person_state"),
    ),
    FieldSpec(
        name="country",
        description="Contact country.",
        aliases=("country_name", "nation", "person_country"),
    ),
    FieldSpec(
        name="company_address",
        description="Company street address.",
        aliases=("address", "street", "street_address", "hq_address", "company_street"),
    ),
    FieldSpec(
        name="company_city",
        description="Company city.",
        aliases=("hq_city", "office_city"),
    ),
    FieldSpec(
        name="company_state",
        description="Company state or province.",
        aliases=("hq_state", "office_state"),
    ),
    FieldSpec(
        name="company_country",
        description="Company country.",
        aliases=("hq_country", "office_country"),
    ),
)

CONTACT_ATTRIBUTES: Tuple[str, ...] = tuple(field_spec.name for field_spec in CONTACT_FIELDS)
PHONE_ATTRIBUTES: Tuple[str, ...] = tuple(field_spec.name for field_spec in CONTACT_FIELDS if field_spec.is_phone)
NAME_ATTRIBUTES: Tuple[str, ...] = ("full_name", "first_name", "last_name")

# Each group must have at least one mapped member; full_name may be derived from first/last.
REQUIRED_ATTRIBUTE_GROUPS: Tuple[Tuple[str, ...], ...] = (NAME_ATTRIBUTES,)


def normalize_header(header: str) -> str:
    """Normalize a header or attribute name (case, camelCase, and punctuation agnostic)."""

    token = (header or "").strip().lstrip("\ufeff")
    # camelCase only splits single-word identifiers ("fullName"), not "Company LinkedIn".
    if not _SEPARATORS.search(token):
        token = _CAMEL_BOUNDARY.sub("_", token)
    return _NON_TOKEN.sub("_", token.lower()).strip("_")


def get_contact_field_specs() -> Tuple[FieldSpec, ...]:
    """Return the canonical contact field definitions."""

    return CONTACT_FIELDS


def get_contact_alias_map() -> Mapping[str, str]:
    """Map normalized header tokens to canonical attribute names (includes aliases)."""

    mapping: dict[str, str] = {}
    for field_spec in CONTACT_FIELDS:
        for header in field_spec.headers():
            mapping.setdefault(normalize_header(header), field_spec.name)
    return mapping


def resolve_target_attribute(value: str) -> str | None:
    """
    Resolve a caller-supplied mapping target to a canonical attribute.

    Accepts snake_case and camelCase spellings (``full_name``, ``fullName``);
    header aliases are deliberately not accepted as targets.
    """

    token = normalize_header(value)
    return token if token in CONTACT_ATTRIBUTES else None


@dataclass(frozen=True)
class MappingSuggestion:
    """Automatic header-to-attribute mapping with per-column confidence."""

    mapping: dict[str, str] = field(default_factory=dict)
    confidence: dict[str, float] = field(default_factory=dict)
    unmapped: Tuple[str, ...] = ()

    def as_dict(self) -> dict[str, object]:
        return {
            "mapping": dict(self.mapping),
            "confidence": dict(self.confidence),
            "unmapped": list(self.unmapped),
        }


def suggest_field_mapping(headers: Sequence[str]) -> MappingSuggestion:
    """
    Suggest a field mapping for ``headers``.

    Exact alias matches win with confidence 1.0; remaining headers fall back to
    fuzzy token matching against every alias. Each attribute is assigned to at
    most one column: the best-scoring one, earliest header on ties.
    """

    alias_map = get_contact_alias_map()
    choices = {alias: alias.replace("_", " ") for alias in alias_map}
    candidates: list[tuple[float, int, str, str]] = []

    for position, header in enumerate(headers):
        token = normalize_header(header)
        if not token:
            continue
        exact = alias_map.get(token)
        if exact is not None:
            candidates.append((1.0, position, header, exact))
            continue
        match = process.extractOne(
            token.replace("_", " "),
            choices,
            scorer=fuzz.token_sort_ratio,
            processor=utils.default_process,
            score_cutoff=FUZZY_SCORE_CUTOFF,
        )
        if match is not None:
            _, score, alias = match
            candidates.append((round(score / 100.0, 3), position, header, alias_map[alias]))

    candidates.sort(key=lambda item: (-item[0], item[1]))
    assigned: dict[str, tuple[str, float]] = {}
    taken: set[str] = set()
    for confidence, _, header, attribute in candidates:
        if attribute in taken or header in assigned:
            continue
        taken.add(attribute)
        assigned[header] = (attribute, confidence)

    mapping: dict[str, str] = {}
    confidence_map: dict[str, float] = {}
    for header in headers:
        if header in assigned:
            mapping[header] = assigned[header][0]
            confidence_map[header] = assigned[header][1]
    unmapped = tuple(header for header in headers if header not in assigned)
    return MappingSuggestion(mapping=mapping, confidence=confidence_map, unmapped=unmapped)


def missing_required_attributes(targets: Iterable[str]) -> Tuple[str, ...]:
    """Return a description of each required attribute group with no mapped member."""

    target_set = set(targets)
    missing: list[str] = []
    for group in REQUIRED_ATTRIBUTE_GROUPS:
        if not target_set.intersection(group):
            missing.append(" or ".join(group))
    return tuple(missing)
