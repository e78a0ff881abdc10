from decimal import Decimal

import pytest

from crm_app.importer.pipeline.enrichment import (
    business_type,
    calculate_lead_score,
    country_from_phone,
    employee_size_bracket,
    enrich_contact_values,
    parse_decimal,
    parse_int,
    split_technologies,
    technology_category,
)


@pytest.mark.parametrize(
    "employees, expected",
    [(None, None), (1, "1-10"), (10, "1-10"), (11, "11-50"), (200, "51-200"), (201, "201-1000"), (5000, "1000+")],
)
def test_employee_size_bracket(employees, expected):
    assert employee_size_bracket(employees) == expected


def test_country_from_phone_prefixes():
    assert country_from_phone("+1 555 123 4567") == ("+1", "United States")
    assert country_from_phone("+44 20 7946 0958") == ("+44", "United Kingdom")
    assert country_from_phone("+81 3 1234 5678") == ("+81", "Japan")
    assert country_from_phone("5551234567") is None
    assert country_from_phone(None) is None


def test_business_type_from_industry():
    assert business_type("Financial Services") == "B2B"
    assert business_type("Retail") == "B2C"
    assert business_type("Agriculture") == "Unknown"


def test_technology_category_matches_single_letter_keywords_as_tokens():
    assert technology_category(["React", "Node.js"]) == "Web Development"
    assert technology_category(["R", "Tableau"]) == "Data & Analytics"
    assert technology_category(["Ruby"]) == "Other"


def test_lenient_number_parsing():
    assert parse_int("1,200 employees") == 1200
    assert parse_int("12.7") == 12
    assert parse_int("n/a") is None
    assert parse_decimal("$1,250,000.50") == Decimal("1250000.50")
    assert parse_decimal("1.2.3") is None
    assert parse_decimal(None) is None


def test_split_technologies_on_any_separator():
    assert split_technologies("React; AWS|Python,") == ["React", "AWS", "Python"]
    assert split_technologies(None) == []


def test_lead_score_for_name_and_email_only():
    assert calculate_lead_score({"full_name": "Ada", "email": "ada@example.com"}) == Decimal("6.1")


def test_lead_score_is_capped():
    values = {
        "full_name": "Ada",
        "title": "CTO",
        "email": "ada@example.com",
        "company": "Analytical",
        "mobile_phone": "+15551234567",
        "industry": "Technology",
        "country": "United States",
        "website": "https://example.com",
        "employee_size_bracket": "1000+",
        "technologies": ["AWS", "Docker", "Python", "React", "SQL", "Kubernetes"],
    }

    assert calculate_lead_score(values) == Decimal("10.0")


def test_enrichment_fills_only_missing_attributes():
    values = {
        "full_name": "Ada",
        "email": "ada@example.co.uk",
        "mobile_phone": "+442079460958",
        "country": "France",
        "industry": "Retail",
        "technologies": ["AWS"],
        "employees": 120,
    }

    enriched = enrich_contact_values(values)

    assert values["email_domain"] == "example.co.uk"
    assert values["country_code"] == "+44"
    assert values["country"] == "France"
    assert values["timezone"] == "Europe/Paris"
    assert values["region"] == "EMEA"
    assert values["business_type"] == "B2C"
    assert values["technology_category"] == "Cloud & DevOps"
    assert values["employee_size_bracket"] == "51-200"
    assert isinstance(values["lead_score"], Decimal)
    assert "country" not in enriched
    assert "country_code" in enriched


def test_enrichment_derives_country_from_phone_when_missing():
    values = {"full_name": "Bob", "mobile_phone": "+15551234567"}

    enrich_contact_values(values)

    assert values["country"] == "United States"
    assert values["timezone"] == "America/New_York"
    assert values["region"] == "AMER"
