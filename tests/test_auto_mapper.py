"""
Tests for header normalization and column auto-mapping.
"""

import pytest

from leadflow.domain.imports.auto_mapper import (
    auto_map_column,
    auto_map_columns,
    calculate_similarity,
    check_required_mappings,
    get_mapping_summary,
    normalize_header,
    validate_mapping,
)
from leadflow.domain.imports.errors import InvalidConfigurationError


class TestNormalizeHeader:
    def test_strips_accents_and_case(self):
        assert normalize_header("Prénom") == "prenom"
        assert normalize_header("TÉLÉPHONE") == "telephone"

    def test_whitespace_and_punctuation(self):
        assert normalize_header("  Adresse  E-mail ") == "adresse_email"
        assert normalize_header("Code Postal") == "code_postal"
        assert normalize_header("N°") == "n"

    def test_empty_values(self):
        assert normalize_header(None) == ""
        assert normalize_header("   ") == ""


class TestSimilarity:
    def test_identical_after_normalization(self):
        assert calculate_similarity("E-Mail", "email") == 1.0

    def test_containment_scores_high(self):
        assert calculate_similarity("email_pro", "email") == 0.9

    def test_unrelated_scores_low(self):
        assert calculate_similarity("ville", "telephone") < 0.5


class TestAutoMapColumn:
    def test_exact_alias(self):
        result = auto_map_column("Courriel")
        assert result["target_field"] == "email"
        assert result["confidence"] == 1.0

    def test_below_threshold_is_unmapped(self):
        result = auto_map_column("Favourite colour")
        assert result["target_field"] is None
        assert result["confidence"] == 0.0

    def test_fuzzy_match(self):
        result = auto_map_column("Telephon")
        assert result["target_field"] == "phone"
        assert 0.7 <= result["confidence"] < 1.0


class TestAutoMapColumns:
    def test_french_headers_complete_mapping(self):
        mapping = auto_map_columns(["Courriel", "Tel", "Prenom"])

        targets = {entry["source_column"]: entry["target_field"] for entry in mapping}
        assert targets == {"Courriel": "email", "Tel": "phone", "Prenom": "first_name"}
        assert all(entry["confidence"] >= 0.7 for entry in mapping)
        assert check_required_mappings(mapping)["is_complete"] is True

    def test_no_target_claimed_twice(self):
        headers = ["Email", "E-mail", "Mail", "Adresse email", "Nom", "Name", "Ville"]
        mapping = auto_map_columns(headers)

        targets = [entry["target_field"] for entry in mapping if entry["target_field"]]
        assert len(targets) == len(set(targets))
        # The most confident column keeps the field, in source order on ties.
        assert mapping[0]["target_field"] == "email"
        assert mapping[4]["target_field"] == "last_name"

    def test_column_below_threshold_stays_unmapped(self):
        (entry,) = auto_map_columns(["adresse_email_pro"], threshold=0.95)

        assert entry["target_field"] is None
        assert entry["confidence"] == 0.0
        # Alternatives are still offered to the operator.
        assert "email" in [alt["field"] for alt in entry["alternatives"]]

    def test_output_keeps_source_order(self):
        headers = ["Ville", "Email", "Inconnu"]
        mapping = auto_map_columns(headers)
        assert [entry["source_column"] for entry in mapping] == headers
        assert [entry["source_index"] for entry in mapping] == [0, 1, 2]
        assert mapping[2]["target_field"] is None

    def test_sample_values_attached(self):
        samples = [
            {"Email": " a@example.com ", "Ville": "Paris"},
            {"Email": "", "Ville": "Lyon"},
            {"Email": "b@example.com", "Ville": "x" * 80},
        ]
        mapping = auto_map_columns(["Email", "Ville"], samples)

        assert mapping[0]["sample_values"] == ["a@example.com", "b@example.com"]
        assert mapping[1]["sample_values"][2] == "x" * 50

    def test_entries_start_unmanual(self):
        mapping = auto_map_columns(["Email"])
        assert mapping[0]["is_manual"] is False


class TestMappingChecks:
    def test_missing_contact_field(self):
        mapping = auto_map_columns(["Prenom", "Nom", "Ville"])
        status = check_required_mappings(mapping)

        assert status["is_complete"] is False
        assert status["has_contact_field"] is False
        assert "email | phone | external_id" in status["missing_fields"]

    def test_recommended_fields_reported(self):
        status = check_required_mappings(auto_map_columns(["Email"]))
        assert status["is_complete"] is True
        assert status["missing_fields"] == ["first_name", "last_name"]

    def test_summary_counts(self):
        mapping = auto_map_columns(["Email", "Vile", "Inconnu"])
        summary = get_mapping_summary(mapping)

        assert summary["total_columns"] == 3
        assert summary["mapped_columns"] == 2
        assert summary["unmapped_columns"] == 1
        assert summary["high_confidence"] == 1
        assert summary["low_confidence"] == 1

    def test_validate_rejects_duplicate_targets(self):
        mapping = [
            {"source_column": "A", "target_field": "email", "confidence": 1.0},
            {"source_column": "B", "target_field": "email", "confidence": 1.0},
        ]
        with pytest.raises(InvalidConfigurationError, match="both mapped"):
            validate_mapping(mapping)

    def test_validate_rejects_unknown_field(self):
        with pytest.raises(InvalidConfigurationError, match="Unknown target field"):
            validate_mapping([{"source_column": "A", "target_field": "fax", "confidence": 1.0}])

    def test_validate_rejects_confidence_out_of_range(self):
        with pytest.raises(InvalidConfigurationError, match="between 0 and 1"):
            validate_mapping([{"source_column": "A", "target_field": "email", "confidence": 1.5}])
