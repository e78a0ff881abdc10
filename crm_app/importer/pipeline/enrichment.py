"""
Import-time enrichment of contact attributes.

Enrichment only fills attributes the source left empty and recomputes the
lead score. It runs at persistence time so the normalized record itself stays
a faithful projection of the source row.
"""

from __future__ import annotations

import re
from decimal import Decimal, InvalidOperation
from typing import Any, MutableMapping, Sequence

_NON_DIGIT = re.compile(r"\D")
_TECHNOLOGY_SPLIT = re.compile(r"[;,|]")

# (digits prefix, country code, country); "+1" only matches 11-digit numbers.
_PHONE_PREFIXES: tuple[tuple[str, str, str], ...] = (
    ("44", "+44", "United Kingdom"),
    ("49", "+49", "Germany"),
    ("33", "+33", "France"),
    ("81", "+81", "Japan"),
    ("91", "+91", "India"),
    ("61", "+61", "Australia"),
    ("86", "+86", "China"),
    ("65", "+65", "Singapore"),
)

_COUNTRY_TIMEZONES = {
    "United States": "America/New_York",
    "Canada": "America/Toronto",
    "United Kingdom": "Europe/London",
    "Germany": "Europe/Berlin",
    "France": "Europe/Paris",
    "Japan": "Asia/Tokyo",
    "Australia": "Australia/Sydney",
}

_COUNTRY_REGIONS = {
    "United States": "AMER",
    "Canada": "AMER",
    "Mexico": "AMER",
    "Brazil": "AMER",
    "United Kingdom": "EMEA",
    "Germany": "EMEA",
    "France": "EMEA",
    "Italy": "EMEA",
    "Spain": "EMEA",
    "South Africa": "EMEA",
    "Japan": "APAC",
    "China": "APAC",
    "India": "APAC",
    "Australia": "APAC",
    "Singapore": "APAC",
}

B2B_INDUSTRIES = (
    "technology",
    "manufacturing",
    "consulting",
    "financial services",
    "healthcare",
    "education",
    "government",
    "energy",
)
B2C_INDUSTRIES = (
    "retail",
    "entertainment",
    "food & beverage",
    "travel",
    "consumer products",
    "real estate",
)

TECHNOLOGY_CATEGORIES: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("Web Development", ("react", "angular", "vue", "javascript", "html", "css", "node.js")),
    ("Mobile Development", ("ios", "android", "react native", "flutter", "swift", "kotlin")),
    ("Cloud & DevOps", ("aws", "azure", "gcp", "docker", "kubernetes", "jenkins")),
    ("Data & Analytics", ("python", "r", "sql", "tableau", "power bi", "spark")),
    ("Enterprise", ("salesforce", "sap", "oracle", "microsoft", ".net", "java")),
)

EMPLOYEE_SIZE_BRACKETS = ("1-10", "11-50", "51-200", "201-1000", "1000+")
HIGH_VALUE_INDUSTRIES = frozenset({"technology", "finance", "healthcare"})
LEAD_SCORE_BASE = 5.0
LEAD_SCORE_CAP = 10.0
_COMPLETENESS_FIELDS = ("full_name", "title", "email", "company", "mobile_phone", "industry", "country")


def parse_int(value: Any) -> int | None:
    """Lenient integer parsing: keep the digits, ``None`` when there are none."""

    if value is None:
        return None
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    text = str(value).strip()
    head = text.split(".", 1)[0]
    digits = _NON_DIGIT.sub("", head)
    if not digits:
        return None
    return int(digits)


def parse_decimal(value: Any) -> Decimal | None:
    """Lenient money parsing (``$1,250,000.50`` -> ``Decimal('1250000.50')``)."""

    if value is None:
        return None
    text = re.sub(r"[^0-9.]", "", str(value))
    if not text or text.count(".") > 1 or text == ".":
        return None
    try:
        return Decimal(text)
    except InvalidOperation:
        return None


def split_technologies(value: str | Sequence[str] | None) -> list[str]:
    if value is None:
        return []
    parts = _TECHNOLOGY_SPLIT.split(value) if isinstance(value, str) else value
    return [part.strip() for part in parts if part and part.strip()]


def employee_size_bracket(employees: int | None) -> str | None:
    if employees is None or employees < 0:
        return None
    if employees <= 10:
        return "1-10"
    if employees <= 50:
        return "11-50"
    if employees <= 200:
        return "51-200"
    if employees <= 1000:
        return "201-1000"
    return "1000+"


def country_from_phone(phone: str | None) -> tuple[str, str] | None:
    """Return ``(country_code, country)`` for a recognised international prefix."""

    if not phone:
        return None
    digits = _NON_DIGIT.sub("", phone)
    if digits.startswith("1") and len(digits) == 11:
        return "+1", "United States"
    for prefix, code, country in _PHONE_PREFIXES:
        if digits.startswith(prefix):
            return code, country
    return None


def business_type(industry: str) -> str:
    lowered = industry.lower()
    if any(keyword in lowered for keyword in B2B_INDUSTRIES):
        return "B2B"
    if any(keyword in lowered for keyword in B2C_INDUSTRIES):
        return "B2C"
    return "Unknown"


def technology_category(technologies: Sequence[str]) -> str:
    lowered = [tech.lower() for tech in technologies]
    for category, keywords in TECHNOLOGY_CATEGORIES:
        for tech in lowered:
            if any(_matches_keyword(tech, keyword) for keyword in keywords):
                return category
    return "Other"


def _matches_keyword(tech: str, keyword: str) -> bool:
    # Single-letter keywords ("r") only match as a whole token.
    if len(keyword) == 1:
        return keyword in re.split(r"[^a-z0-9+#.]+", tech)
    return keyword in tech


def _bracket_points(bracket: str) -> float:
    lowered = bracket.lower()
    if lowered in {"201-1000", "1000+"} or "200+" in lowered or "500+" in lowered:
        return 2.0
    if "51-200" in lowered or "50-200" in lowered:
        return 1.5
    if "11-50" in lowered:
        return 1.0
    return 0.5


def calculate_lead_score(values: MutableMapping[str, Any]) -> Decimal:
    score = LEAD_SCORE_BASE
    if values.get("email"):
        score += 1.0
    if values.get("company"):
        score += 0.5
    if values.get("website"):
        score += 0.5
    if values.get("employee_size_bracket"):
        score += _bracket_points(values["employee_size_bracket"])
    industry = values.get("industry")
    if industry:
        score += 1.0 if industry.strip().lower() in HIGH_VALUE_INDUSTRIES else 0.5
    technologies = values.get("technologies") or []
    if technologies:
        score += min(len(technologies) * 0.1, 0.5)
    present = sum(1 for name in _COMPLETENESS_FIELDS if values.get(name))
    score += present / len(_COMPLETENESS_FIELDS) * 0.5
    score = min(round(score, 1), LEAD_SCORE_CAP)
    return Decimal(str(score)).quantize(Decimal("0.1"))


def enrich_contact_values(values: MutableMapping[str, Any]) -> list[str]:
    """
    Fill derived attributes in place and return the names that were set.

    ``values`` holds persistence-ready attributes (``technologies`` as a list,
    ``employees`` as an int). Source-provided values are never overwritten.
    """

    enriched: list[str] = []

    def fill(name: str, value: Any) -> None:
        if value is None or values.get(name):
            return
        values[name] = value
        enriched.append(name)

    email = values.get("email")
    if email and "@" in email:
        fill("email_domain", email.rsplit("@", 1)[1])

    phone_country = country_from_phone(values.get("mobile_phone"))
    if phone_country is not None:
        fill("country_code", phone_country[0])
        fill("country", phone_country[1])

    country = values.get("country")
    if country:
        fill("timezone", _COUNTRY_TIMEZONES.get(country, "UTC"))
        fill("region", _COUNTRY_REGIONS.get(country, "Other"))

    if values.get("industry"):
        fill("business_type", business_type(values["industry"]))

    technologies = values.get("technologies")
    if technologies:
        fill("technology_category", technology_category(technologies))

    fill("employee_size_bracket", employee_size_bracket(values.get("employees")))

    values["lead_score"] = calculate_lead_score(values)
    enriched.append("lead_score")
    return enriched


__all__ = [
    "EMPLOYEE_SIZE_BRACKETS",
    "calculate_lead_score",
    "country_from_phone",
    "employee_size_bracket",
    "enrich_contact_values",
    "parse_decimal",
    "parse_int",
    "split_technologies",
]
