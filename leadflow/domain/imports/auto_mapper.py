"""
Column auto-mapping from spreadsheet headers to lead fields.

Headers are normalized (case, accents, punctuation) and scored against the
alias dictionary in ``fields``. Assignment is greedy by confidence: the most
certain column claims its field first and no field is claimed twice.
"""
from __future__ import annotations

import logging
import re
import unicodedata
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from leadflow.core.config import settings
from leadflow.domain.imports.errors import InvalidConfigurationError
from leadflow.domain.imports.fields import (
    COLUMN_ALIASES,
    CONTACT_FIELDS,
    RECOMMENDED_FIELDS,
    TARGET_FIELDS,
)

logger = logging.getLogger(__name__)

MAX_SAMPLE_VALUES = 5
MAX_SAMPLE_LENGTH = 50
MAX_ALTERNATIVES = 3
HIGH_CONFIDENCE = 0.9


def normalize_header(header: Any) -> str:
    """
    Normalize a header for comparison.

    Examples:
        "Prénom" -> "prenom"
        "  Adresse  E-mail " -> "adresse_email"
        "Code Postal" -> "code_postal"
    """
    if header is None:
        return ""
    text = unicodedata.normalize("NFKD", str(header))
    text = "".join(ch for ch in text if not unicodedata.combining(ch))
    text = text.lower().strip()
    text = re.sub(r"\s+", "_", text)
    return re.sub(r"[^a-z0-9_]", "", text)


def _levenshtein(a: str, b: str) -> int:
    if a == b:
        return 0
    if not a:
        return len(b)
    if not b:
        return len(a)

    previous = list(range(len(b) + 1))
    for i, char_a in enumerate(a, start=1):
        current = [i]
        for j, char_b in enumerate(b, start=1):
            cost = 0 if char_a == char_b else 1
            current.append(min(previous[j] + 1, current[j - 1] + 1, previous[j - 1] + cost))
        previous = current
    return previous[-1]


def calculate_similarity(a: str, b: str) -> float:
    """Similarity of two headers in [0, 1] after normalization."""
    left = normalize_header(a)
    right = normalize_header(b)
    if not left or not right:
        return 0.0
    if left == right:
        return 1.0
    if left in right or right in left:
        return 0.9
    longest = max(len(left), len(right))
    return 1.0 - _levenshtein(left, right) / longest


def find_best_match(header: str) -> Tuple[Optional[str], float]:
    """Return ``(field, confidence)`` of the closest alias, or ``(None, 0.0)``."""
    normalized = normalize_header(header)
    if not normalized:
        return None, 0.0

    for field_name, aliases in COLUMN_ALIASES.items():
        if normalized in aliases:
            return field_name, 1.0

    best_field: Optional[str] = None
    best_score = 0.0
    for field_name, aliases in COLUMN_ALIASES.items():
        for alias in aliases:
            score = calculate_similarity(normalized, alias)
            if score > best_score:
                best_field, best_score = field_name, score
    return best_field, best_score


def _find_alternatives(header: str, exclude: Optional[str]) -> List[Dict[str, Any]]:
    normalized = normalize_header(header)
    if not normalized:
        return []

    best_by_field: Dict[str, float] = {}
    for field_name, aliases in COLUMN_ALIASES.items():
        if field_name == exclude:
            continue
        for alias in aliases:
            if alias in normalized or normalized in alias:
                ratio = min(len(alias), len(normalized)) / max(len(alias), len(normalized))
                score = round(ratio * 0.8, 4)
                if score > 0.5 and score > best_by_field.get(field_name, 0.0):
                    best_by_field[field_name] = score

    ranked = sorted(best_by_field.items(), key=lambda item: item[1], reverse=True)
    return [
        {"field": field_name, "confidence": score}
        for field_name, score in ranked[:MAX_ALTERNATIVES]
    ]


def auto_map_column(header: str, threshold: Optional[float] = None) -> Dict[str, Any]:
    """Map a single header, returning the suggestion and ranked alternatives."""
    threshold = settings.import_auto_map_threshold if threshold is None else threshold
    field_name, confidence = find_best_match(header)
    if confidence < threshold:
        field_name = None
    return {
        "target_field": field_name,
        "confidence": round(confidence, 4) if field_name else 0.0,
        "alternatives": _find_alternatives(header, exclude=field_name),
    }


def _sample_values(
    header: str,
    index: int,
    sample_rows: Sequence[Any],
) -> List[str]:
    samples: List[str] = []
    for row in sample_rows:
        if isinstance(row, dict):
            value = row.get(header)
        elif index < len(row):
            value = row[index]
        else:
            value = None
        if value is None:
            continue
        text = str(value).strip()
        if not text:
            continue
        samples.append(text[:MAX_SAMPLE_LENGTH])
        if len(samples) >= MAX_SAMPLE_VALUES:
            break
    return samples


def auto_map_columns(
    headers: Sequence[str],
    sample_rows: Optional[Sequence[Any]] = None,
    threshold: Optional[float] = None,
) -> List[Dict[str, Any]]:
    """
    Build a complete column mapping for ``headers``.

    Args:
        headers: Raw headers in file order.
        sample_rows: Leading data rows (dicts keyed by header or positional
            sequences) used to attach sample values.
        threshold: Minimum confidence for a suggestion; defaults to
            ``settings.import_auto_map_threshold``.

    Returns:
        One mapping entry per header, in header order. No two entries share a
        non-null ``target_field``.
    """
    sample_rows = list(sample_rows or [])[:MAX_SAMPLE_VALUES]
    suggestions = [
        (index, header, auto_map_column(header, threshold=threshold))
        for index, header in enumerate(headers)
    ]

    claimed: set = set()
    resolved: Dict[int, Tuple[Optional[str], float]] = {}
    ordered = sorted(suggestions, key=lambda item: (-item[2]["confidence"], item[0]))
    for index, _header, suggestion in ordered:
        target = suggestion["target_field"]
        confidence = suggestion["confidence"]
        if target and target not in claimed:
            claimed.add(target)
            resolved[index] = (target, confidence)
            continue

        resolved[index] = (None, 0.0)
        if not target:
            # Below the threshold: alternatives are not a fallback.
            continue
        for alternative in suggestion["alternatives"]:
            if alternative["field"] not in claimed:
                claimed.add(alternative["field"])
                resolved[index] = (alternative["field"], alternative["confidence"])
                break

    mapping: List[Dict[str, Any]] = []
    for index, header, suggestion in suggestions:
        target, confidence = resolved[index]
        mapping.append(
            {
                "source_column": header,
                "source_index": index,
                "target_field": target,
                "confidence": confidence,
                "is_manual": False,
                "sample_values": _sample_values(header, index, sample_rows),
                "alternatives": [
                    alt for alt in suggestion["alternatives"] if alt["field"] != target
                ],
            }
        )

    logger.debug(
        "Auto-mapped %d/%d columns",
        sum(1 for entry in mapping if entry["target_field"]),
        len(mapping),
    )
    return mapping


def mapped_fields(mapping: Iterable[Dict[str, Any]]) -> List[str]:
    return [entry["target_field"] for entry in mapping if entry.get("target_field")]


def check_required_mappings(mapping: Sequence[Dict[str, Any]]) -> Dict[str, Any]:
    """Report whether the mapping carries a contact-identity field."""
    fields = set(mapped_fields(mapping))
    has_contact_field = any(name in fields for name in CONTACT_FIELDS)
    missing = [name for name in RECOMMENDED_FIELDS if name not in fields]
    if not has_contact_field:
        missing = [" | ".join(CONTACT_FIELDS)] + missing
    return {
        "is_complete": has_contact_field,
        "has_contact_field": has_contact_field,
        "missing_fields": missing,
    }


def get_mapping_summary(mapping: Sequence[Dict[str, Any]]) -> Dict[str, Any]:
    total = len(mapping)
    mapped = [entry for entry in mapping if entry.get("target_field")]
    return {
        "total_columns": total,
        "mapped_columns": len(mapped),
        "unmapped_columns": total - len(mapped),
        "mapped_ratio": round(len(mapped) / total, 4) if total else 0.0,
        "high_confidence": sum(
            1 for entry in mapped if (entry.get("confidence") or 0) >= HIGH_CONFIDENCE
        ),
        "low_confidence": sum(
            1 for entry in mapped if (entry.get("confidence") or 0) < HIGH_CONFIDENCE
        ),
        "manual": sum(1 for entry in mapped if entry.get("is_manual")),
    }


def validate_mapping(mapping: Sequence[Dict[str, Any]]) -> None:
    """Raise ``InvalidConfigurationError`` if the mapping breaks its invariants."""
    seen: Dict[str, str] = {}
    for entry in mapping:
        target = entry.get("target_field")
        confidence = entry.get("confidence", 0.0)
        if confidence is None or not 0.0 <= float(confidence) <= 1.0:
            raise InvalidConfigurationError(
                f"Confidence for column '{entry.get('source_column')}' must be between 0 and 1"
            )
        if not target:
            continue
        if target not in TARGET_FIELDS:
            raise InvalidConfigurationError(f"Unknown target field '{target}'")
        if target in seen:
            raise InvalidConfigurationError(
                f"Columns '{seen[target]}' and '{entry.get('source_column')}' "
                f"are both mapped to '{target}'"
            )
        seen[target] = entry.get("source_column")
