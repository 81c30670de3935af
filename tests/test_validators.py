"""
Tests for row normalization and validation.
"""

import pytest

from leadflow.domain.imports.validators import (
    NormalizationOptions,
    ValidationSummary,
    capitalize_words,
    extract_mapped_values,
    normalize_postal_code,
    summarize_validation,
    try_fix_email_domain,
    validate_row,
    validate_rows,
    validate_with_preset,
)

MAPPING = [
    {"source_column": "Email", "source_index": 0, "target_field": "email"},
    {"source_column": "Prenom", "source_index": 1, "target_field": "first_name"},
    {"source_column": "Nom", "source_index": 2, "target_field": "last_name"},
    {"source_column": "Telephone", "source_index": 3, "target_field": "phone"},
    {"source_column": "CP", "source_index": 4, "target_field": "postal_code"},
    {"source_column": "Ville", "source_index": 5, "target_field": "city"},
    {"source_column": "Ignore", "source_index": 6, "target_field": None},
]

OPTIONS = NormalizationOptions(default_phone_country_code="33", default_country="France")


def _row(**values):
    row = {"Email": "", "Prenom": "", "Nom": "", "Telephone": "", "CP": "", "Ville": "", "Ignore": "x"}
    row.update(values)
    return row


class TestPresetPatterns:
    @pytest.mark.parametrize("email", ["jean@example.com", "a.b+c@sub.domain.fr"])
    def test_email_valid(self, email):
        assert validate_with_preset(email, "email") == (True, None)

    @pytest.mark.parametrize("invalid_email", ["jean", "jean@", "jean@example", "a b@example.com"])
    def test_email_invalid(self, invalid_email):
        is_valid, message = validate_with_preset(invalid_email, "email")
        assert is_valid is False
        assert message == "Invalid email format"

    def test_null_allowed_by_default(self):
        assert validate_with_preset(None, "postal_code") == (True, None)
        assert validate_with_preset("", "postal_code", allow_null=False) == (False, "Value is required")

    def test_unknown_preset(self):
        is_valid, message = validate_with_preset("x", "iban")
        assert is_valid is False
        assert "Unknown validation preset" in message


class TestNormalizers:
    def test_email_domain_typos(self):
        assert try_fix_email_domain("Jean@GMAILCOM") == ("jean@gmail.com", True)
        assert try_fix_email_domain("marie@orangefr") == ("marie@orange.fr", True)
        assert try_fix_email_domain("paul@acmenet") == ("paul@acme.net", True)

    def test_email_untouched_when_valid(self):
        assert try_fix_email_domain(" paul@acme.io ") == ("paul@acme.io", False)
        assert try_fix_email_domain("") == (None, False)

    def test_capitalize_words(self):
        assert capitalize_words("jean-PIERRE  de la fontaine") == "Jean-Pierre De La Fontaine"

    def test_postal_code(self):
        assert normalize_postal_code("75 001") == "75001"
        assert normalize_postal_code("1000") == "01000"
        assert normalize_postal_code(75001.0) == "75001"
        assert normalize_postal_code("  ") is None

    def test_extract_by_name_and_index(self):
        by_name = extract_mapped_values({"Email": "a@example.com", "Nom": "Durand"}, MAPPING)
        assert by_name["email"] == "a@example.com"
        assert by_name["last_name"] == "Durand"
        assert by_name["phone"] is None

        by_index = extract_mapped_values(["a@example.com", "Jean"], MAPPING)
        assert by_index["email"] == "a@example.com"
        assert by_index["first_name"] == "Jean"
        assert by_index["city"] is None


class TestValidateRow:
    def test_valid_row_is_normalized(self):
        result = validate_row(
            _row(Email=" Jean.Dupont@Example.COM ", Prenom="jean", Nom="DUPONT",
                 Telephone="06 12 34 56 78", CP="75 001", Ville="paris"),
            MAPPING,
            row_number=1,
            options=OPTIONS,
        )

        assert result.is_valid
        assert result.normalized_data == {
            "email": "jean.dupont@example.com",
            "first_name": "Jean",
            "last_name": "Dupont",
            "phone": "+33612345678",
            "postal_code": "75001",
            "city": "Paris",
            "country": "France",
        }
        assert result.warnings == {}

    def test_invalid_email_is_an_error(self):
        result = validate_row(_row(Email="not-an-email", Telephone="0612345678", Nom="X"), MAPPING, 2, OPTIONS)

        assert not result.is_valid
        assert result.errors == {"email": "Invalid email format"}

    def test_contact_required(self):
        result = validate_row(_row(Prenom="Jean", Nom="Dupont"), MAPPING, 3, OPTIONS)

        assert not result.is_valid
        assert "contact" in result.errors

    def test_invalid_contact_does_not_count(self):
        result = validate_row(_row(Telephone="123", Nom="Dupont"), MAPPING, 4, OPTIONS)

        assert result.errors["phone"] == "Phone number is too short"
        assert "contact" in result.errors

    def test_email_fix_is_a_warning(self):
        result = validate_row(_row(Email="jean@gmailcom", Nom="Dupont"), MAPPING, 5, OPTIONS)

        assert result.is_valid
        assert result.normalized_data["email"] == "jean@gmail.com"
        assert result.warnings["email"] == "Email domain corrected (original: jean@gmailcom)"

    def test_missing_name_warning(self):
        result = validate_row(_row(Email="a@example.com"), MAPPING, 6, OPTIONS)

        assert result.is_valid
        assert result.warnings["first_name"] == "No name provided"

    def test_long_text_is_clamped(self):
        mapping = MAPPING + [{"source_column": "Societe", "source_index": 7, "target_field": "company"}]
        result = validate_row(_row(Email="a@example.com", Nom="X", Societe="A" * 250), mapping, 7, OPTIONS)

        assert result.is_valid
        assert len(result.normalized_data["company"]) == 200
        assert result.warnings["company"] == "Truncated to 200 characters"

    def test_bad_postal_code(self):
        result = validate_row(_row(Email="a@example.com", Nom="X", CP="75-001-PARIS-FR"), MAPPING, 8, OPTIONS)

        assert result.errors == {"postal_code": "Invalid postal code format"}

    def test_validation_is_deterministic(self):
        raw = _row(Email="JEAN@gmailcom", Prenom="jean", Telephone="p:0612345678", CP="1000")
        first = validate_row(raw, MAPPING, 9, OPTIONS)
        second = validate_row(dict(raw), MAPPING, 9, OPTIONS)

        assert first.to_dict() == second.to_dict()

    def test_unmapped_columns_are_ignored(self):
        result = validate_row(_row(Email="a@example.com", Nom="X", Ignore="anything"), MAPPING, 10, OPTIONS)
        assert "Ignore" not in result.normalized_data


class TestSummaries:
    def test_validate_rows_and_summary(self):
        results = validate_rows(
            [
                (1, _row(Email="a@example.com", Nom="A")),
                (2, _row(Email="broken", Nom="B")),
                (3, _row(Email="also-broken", Nom="C")),
                (4, _row(Email="c@gmailcom", Nom="D")),
            ],
            MAPPING,
            OPTIONS,
        )
        summary = summarize_validation(results)

        assert summary["valid_rows"] == 2
        assert summary["invalid_rows"] == 2
        assert {"field": "email", "message": "Invalid email format", "count": 2} in summary["errors"]
        assert summary["warnings"][0]["field"] == "email"

    def test_summary_accepts_stored_rows(self):
        summary = ValidationSummary()
        summary.add({"email": "Invalid email format"}, None)
        summary.add(None, {"company": "Company is empty"})

        data = summary.to_dict()
        assert data["valid_rows"] == 1
        assert data["invalid_rows"] == 1
        assert data["warnings"] == [{"field": "company", "message": "Company is empty", "count": 1}]
