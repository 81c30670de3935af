"""
Tests for lead ownership assignment.
"""

import math

import pytest

from leadflow.domain.imports.assignment import (
    AssignmentEngine,
    normalize_assignment_config,
    validate_assignment_config,
)
from leadflow.domain.imports.errors import InvalidConfigurationError

DIRECTORY = [
    {"id": 1, "display_name": "Bob Sales", "email": "bob@example.com", "role": "user"},
    {"id": 2, "display_name": "Carol Sales", "email": "carol@example.com", "role": "user"},
    {"id": 3, "display_name": "Dan Sales", "email": "dan@example.com", "role": "user"},
]


class TestValidateAssignmentConfig:
    def test_defaults_to_none(self):
        assert validate_assignment_config({})["mode"] == "none"

    def test_single_requires_user(self):
        with pytest.raises(InvalidConfigurationError, match="requires a user id"):
            validate_assignment_config({"mode": "single"})

    def test_single_rejects_unknown_user(self):
        with pytest.raises(InvalidConfigurationError, match="Unknown user id 9"):
            validate_assignment_config({"mode": "single", "single_user_id": 9}, known_user_ids=[1, 2])

    def test_round_robin_needs_two_users(self):
        with pytest.raises(InvalidConfigurationError, match="at least two users"):
            validate_assignment_config({"mode": "round_robin", "round_robin_user_ids": [1]})

    def test_round_robin_rejects_repeats(self):
        with pytest.raises(InvalidConfigurationError, match="duplicate users"):
            validate_assignment_config({"mode": "round_robin", "round_robin_user_ids": [1, 1]})

    def test_by_column_requires_existing_column(self):
        with pytest.raises(InvalidConfigurationError, match="not present"):
            validate_assignment_config(
                {"mode": "by_column", "assignment_column": "Owner"},
                source_columns=["Email", "Commercial"],
            )

    def test_unknown_mode(self):
        with pytest.raises(InvalidConfigurationError, match="Unknown assignment mode"):
            validate_assignment_config({"mode": "random"})

    def test_normalizes_missing_keys(self):
        assert normalize_assignment_config(None) == {
            "mode": "none",
            "single_user_id": None,
            "round_robin_user_ids": [],
            "assignment_column": None,
        }


class TestAssignmentEngine:
    def test_none_and_single(self):
        assert AssignmentEngine({"mode": "none"}).assign({}) is None
        assert AssignmentEngine({"mode": "single", "single_user_id": 2}).assign({}) == 2

    @pytest.mark.parametrize("rows", [3, 7, 10, 11])
    def test_round_robin_is_balanced(self, rows):
        pool = [1, 2, 3]
        engine = AssignmentEngine({"mode": "round_robin", "round_robin_user_ids": pool})
        owners = [engine.assign({}) for _ in range(rows)]

        for user_id in pool:
            count = owners.count(user_id)
            assert math.floor(rows / len(pool)) <= count <= math.ceil(rows / len(pool))

    def test_round_robin_resumes_from_counter(self):
        config = {"mode": "round_robin", "round_robin_user_ids": [1, 2, 3]}
        first = AssignmentEngine(config)
        assigned = [first.assign({}) for _ in range(4)]

        resumed = AssignmentEngine(config, counter=first.counter)
        assigned += [resumed.assign({}) for _ in range(2)]

        assert assigned == [1, 2, 3, 1, 2, 3]

    def test_by_column_matches_names_emails_and_ids(self):
        engine = AssignmentEngine(
            {"mode": "by_column", "assignment_column": "Commercial"}, DIRECTORY
        )

        assert engine.assign({"Commercial": "  bob sales "}) == 1
        assert engine.assign({"Commercial": "CAROL@example.com"}) == 2
        assert engine.assign({"Commercial": "3"}) == 3
        assert engine.assign({"Commercial": "Nobody"}) is None
        assert engine.assign({}) is None

    def test_summary_counts_per_owner(self):
        engine = AssignmentEngine({"mode": "single", "single_user_id": 2})
        for _ in range(3):
            engine.assign({})
        assert engine.summary() == [{"user_id": 2, "count": 3}]
