"""
Lead ownership assignment for committed rows.
"""
from __future__ import annotations

from collections import Counter
from typing import Any, Dict, List, Mapping, Optional, Sequence

from leadflow.domain.imports.errors import InvalidConfigurationError

ASSIGNMENT_MODES = ("none", "single", "round_robin", "by_column")


def normalize_assignment_config(config: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    config = dict(config or {})
    return {
        "mode": config.get("mode") or "none",
        "single_user_id": config.get("single_user_id"),
        "round_robin_user_ids": list(config.get("round_robin_user_ids") or []),
        "assignment_column": config.get("assignment_column"),
    }


def validate_assignment_config(
    config: Mapping[str, Any],
    known_user_ids: Optional[Sequence[int]] = None,
    source_columns: Optional[Sequence[str]] = None,
) -> Dict[str, Any]:
    """
    Check an assignment configuration is complete.

    Args:
        config: Raw configuration.
        known_user_ids: Active user ids; unknown ids are rejected when given.
        source_columns: File headers; ``by_column`` must reference one of them
            when given.

    Returns:
        The normalized configuration.
    """
    normalized = normalize_assignment_config(config)
    mode = normalized["mode"]
    known = set(known_user_ids) if known_user_ids is not None else None

    if mode not in ASSIGNMENT_MODES:
        raise InvalidConfigurationError(f"Unknown assignment mode '{mode}'")

    if mode == "single":
        user_id = normalized["single_user_id"]
        if user_id is None:
            raise InvalidConfigurationError("Single assignment requires a user id")
        if known is not None and user_id not in known:
            raise InvalidConfigurationError(f"Unknown user id {user_id}")

    elif mode == "round_robin":
        pool = normalized["round_robin_user_ids"]
        if len(pool) < 2:
            raise InvalidConfigurationError("Round-robin assignment requires at least two users")
        if len(set(pool)) != len(pool):
            raise InvalidConfigurationError("Round-robin pool contains duplicate users")
        if known is not None:
            unknown = [user_id for user_id in pool if user_id not in known]
            if unknown:
                raise InvalidConfigurationError(f"Unknown user ids {unknown}")

    elif mode == "by_column":
        column = normalized["assignment_column"]
        if not column:
            raise InvalidConfigurationError("Column assignment requires an assignment column")
        if source_columns is not None and column not in source_columns:
            raise InvalidConfigurationError(f"Column '{column}' is not present in the file")

    return normalized


class AssignmentEngine:
    """
    Resolve the owner of each created lead.

    ``counter`` is the number of round-robin assignments already made for the
    job; it is persisted at every commit checkpoint so a resumed commit keeps
    cycling where it stopped.
    """

    def __init__(
        self,
        config: Optional[Mapping[str, Any]],
        directory: Optional[Sequence[Mapping[str, Any]]] = None,
        counter: int = 0,
    ):
        self.config = normalize_assignment_config(config)
        self.mode = self.config["mode"]
        self.counter = counter
        self.stats: Counter = Counter()
        self._lookup = self._build_lookup(directory or [])

    @staticmethod
    def _build_lookup(directory: Sequence[Mapping[str, Any]]) -> Dict[str, int]:
        lookup: Dict[str, int] = {}
        for user in directory:
            user_id = user["id"]
            for label in (user.get("display_name"), user.get("email"), str(user_id)):
                if label:
                    lookup.setdefault(str(label).strip().lower(), user_id)
        return lookup

    def assign(self, raw_row: Optional[Mapping[str, Any]] = None) -> Optional[int]:
        owner: Optional[int] = None

        if self.mode == "single":
            owner = self.config["single_user_id"]
        elif self.mode == "round_robin":
            pool = self.config["round_robin_user_ids"]
            owner = pool[self.counter % len(pool)]
            self.counter += 1
        elif self.mode == "by_column":
            value = (raw_row or {}).get(self.config["assignment_column"])
            if value is not None:
                owner = self._lookup.get(str(value).strip().lower())

        self.stats[owner] += 1
        return owner

    def summary(self) -> List[Dict[str, Any]]:
        return [
            {"user_id": user_id, "count": count}
            for user_id, count in sorted(
                self.stats.items(), key=lambda item: (item[0] is None, item[0] or 0)
            )
        ]
