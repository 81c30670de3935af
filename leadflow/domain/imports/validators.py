"""
Row validation and normalization for lead imports.

``validate_row`` is a pure function of the raw row, the column mapping and a
``NormalizationOptions`` snapshot, so re-validating a row during a resumed
parse yields exactly the same result.
"""
from __future__ import annotations

import re
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from leadflow.core.config import settings
from leadflow.domain.imports.fields import CONTACT_FIELDS, FIELD_MAX_LENGTHS, TARGET_FIELDS
from leadflow.utils.phone import phone_digits, standardize_phone

PRESET_PATTERNS: Dict[str, str] = {
    "email": r"^[^\s@]+@[^\s@]+\.[^\s@]+$",
    "postal_code": r"^[A-Za-z0-9 -]{3,10}$",
}

EMAIL_DOMAIN_CORRECTIONS: Dict[str, str] = {
    "gmailcom": "gmail.com",
    "gmailfr": "gmail.fr",
    "gmalcom": "gmail.com",
    "gmailc": "gmail.com",
    "yahoofr": "yahoo.fr",
    "yahoocom": "yahoo.com",
    "hotmailcom": "hotmail.com",
    "hotmailfr": "hotmail.fr",
    "outlookcom": "outlook.com",
    "outlookfr": "outlook.fr",
    "livecom": "live.com",
    "livefr": "live.fr",
    "lapostenet": "laposte.net",
    "orangefr": "orange.fr",
    "freefr": "free.fr",
    "sfrfr": "sfr.fr",
    "wanadoofr": "wanadoo.fr",
    "skynetbe": "skynet.be",
    "telenetbe": "telenet.be",
}

_MISSING_DOT_TLDS = ("com", "fr", "net", "org", "be", "de", "eu", "io")

# Title-cased on import; other free-text fields keep their casing.
_CAPITALIZED_FIELDS = {"first_name", "last_name", "city"}

MIN_PHONE_DIGITS = 8
MAX_PHONE_DIGITS = 15


@dataclass(frozen=True)
class NormalizationOptions:
    """Settings snapshot that validation depends on."""
    default_phone_country_code: str = "33"
    default_country: Optional[str] = "France"

    @classmethod
    def from_settings(cls) -> "NormalizationOptions":
        return cls(
            default_phone_country_code=settings.default_phone_country_code,
            default_country=settings.default_country or None,
        )


@dataclass
class RowValidationResult:
    """Outcome of validating one raw row."""
    row_number: int
    normalized_data: Dict[str, Optional[str]]
    errors: Dict[str, str] = field(default_factory=dict)
    warnings: Dict[str, str] = field(default_factory=dict)

    @property
    def is_valid(self) -> bool:
        return not self.errors

    def to_dict(self) -> Dict[str, Any]:
        return {
            "row_number": self.row_number,
            "is_valid": self.is_valid,
            "normalized_data": dict(self.normalized_data),
            "errors": dict(self.errors),
            "warnings": dict(self.warnings),
        }


def validate_with_preset(value: Any, preset: str, allow_null: bool = True) -> Tuple[bool, Optional[str]]:
    """Check ``value`` against a named pattern; returns ``(is_valid, error)``."""
    if value is None or value == "":
        return (True, None) if allow_null else (False, "Value is required")
    pattern = PRESET_PATTERNS.get(preset)
    if pattern is None:
        return False, f"Unknown validation preset '{preset}'"
    if not re.match(pattern, str(value)):
        return False, f"Invalid {preset.replace('_', ' ')} format"
    return True, None


def _as_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, float) and value.is_integer():
        # Spreadsheet cells hand back 75001.0 for numeric identifiers.
        value = int(value)
    text = str(value).strip()
    return text or None


def normalize_text(value: Any) -> Optional[str]:
    text = _as_text(value)
    if text is None:
        return None
    return re.sub(r"\s+", " ", text)


def capitalize_words(value: Any) -> Optional[str]:
    """Title-case words, including after hyphens: "jean-PIERRE" -> "Jean-Pierre"."""
    text = normalize_text(value)
    if text is None:
        return None
    return re.sub(r"(^|[\s-])(\S)", lambda m: m.group(1) + m.group(2).upper(), text.lower())


def try_fix_email_domain(value: Any) -> Tuple[Optional[str], bool]:
    """
    Lower-case an email and repair well-known domain typos.

    Returns ``(email, was_fixed)``. "jean@gmailcom" -> ("jean@gmail.com", True).
    """
    text = _as_text(value)
    if text is None:
        return None, False
    email = text.lower()
    if email.count("@") != 1:
        return email, False

    local, domain = email.split("@")
    if not domain:
        return email, False

    corrected = EMAIL_DOMAIN_CORRECTIONS.get(domain)
    if corrected:
        return f"{local}@{corrected}", True

    if "." not in domain:
        for tld in _MISSING_DOT_TLDS:
            stem = domain[: -len(tld)]
            if domain.endswith(tld) and len(stem) >= 2:
                return f"{local}@{stem}.{tld}", True

    return email, False


def normalize_phone(value: Any, options: Optional[NormalizationOptions] = None) -> Optional[str]:
    options = options or NormalizationOptions()
    return standardize_phone(value, default_country_code=options.default_phone_country_code)


def normalize_postal_code(value: Any) -> Optional[str]:
    text = _as_text(value)
    if text is None:
        return None
    compact = re.sub(r"\s", "", text)
    if re.fullmatch(r"\d{4}", compact):
        return "0" + compact
    return compact or None


def extract_mapped_values(raw_row: Any, mapping: Sequence[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Pick the mapped source values out of ``raw_row``.

    Dict rows are read by source column name; positional rows (lists) by
    ``source_index``.
    """
    values: Dict[str, Any] = {}
    for entry in mapping:
        target = entry.get("target_field")
        if not target:
            continue
        if isinstance(raw_row, dict):
            value = raw_row.get(entry.get("source_column"))
        else:
            index = entry.get("source_index")
            value = raw_row[index] if index is not None and index < len(raw_row) else None
        values[target] = value
    return values


def validate_row(
    raw_row: Any,
    mapping: Sequence[Dict[str, Any]],
    row_number: int,
    options: Optional[NormalizationOptions] = None,
) -> RowValidationResult:
    """Normalize and validate one row against the active mapping."""
    options = options or NormalizationOptions()
    mapped = extract_mapped_values(raw_row, mapping)
    errors: Dict[str, str] = {}
    warnings: Dict[str, str] = {}
    normalized: Dict[str, Optional[str]] = {}

    for target in TARGET_FIELDS:
        if target not in mapped:
            continue
        raw_value = mapped[target]

        if target == "email":
            email, was_fixed = try_fix_email_domain(raw_value)
            normalized["email"] = email
            if email is not None:
                ok, message = validate_with_preset(email, "email")
                if not ok:
                    errors["email"] = message
                elif len(email) > FIELD_MAX_LENGTHS["email"]:
                    errors["email"] = "Email is too long"
                elif was_fixed:
                    warnings["email"] = f"Email domain corrected (original: {_as_text(raw_value)})"
            continue

        if target == "phone":
            phone = normalize_phone(raw_value, options)
            normalized["phone"] = phone
            if phone is not None:
                digit_count = len(phone_digits(phone))
                if digit_count < MIN_PHONE_DIGITS:
                    errors["phone"] = "Phone number is too short"
                elif digit_count > MAX_PHONE_DIGITS:
                    warnings["phone"] = "Phone number is unusually long"
            continue

        if target == "postal_code":
            postal = normalize_postal_code(raw_value)
            normalized["postal_code"] = postal
            ok, message = validate_with_preset(postal, "postal_code")
            if not ok:
                errors["postal_code"] = message
            continue

        if target in _CAPITALIZED_FIELDS:
            text = capitalize_words(raw_value)
        else:
            text = normalize_text(raw_value)

        limit = FIELD_MAX_LENGTHS.get(target)
        if text is not None and limit and len(text) > limit:
            warnings[target] = f"Truncated to {limit} characters"
            text = text[:limit]
        normalized[target] = text

    if not normalized.get("country") and options.default_country:
        normalized["country"] = options.default_country

    has_contact = any(
        normalized.get(name) and name not in errors for name in CONTACT_FIELDS
    )
    if not has_contact:
        errors["contact"] = "At least one contact field is required (email, phone or external id)"

    if not normalized.get("first_name") and not normalized.get("last_name"):
        warnings.setdefault("first_name", "No name provided")
    if "company" in mapped and not normalized.get("company"):
        warnings.setdefault("company", "Company is empty")

    return RowValidationResult(
        row_number=row_number,
        normalized_data=normalized,
        errors=errors,
        warnings=warnings,
    )


def validate_rows(
    rows: Iterable[Tuple[int, Any]],
    mapping: Sequence[Dict[str, Any]],
    options: Optional[NormalizationOptions] = None,
) -> List[RowValidationResult]:
    """Validate ``(row_number, raw_row)`` pairs."""
    options = options or NormalizationOptions.from_settings()
    return [validate_row(raw, mapping, number, options) for number, raw in rows]


class ValidationSummary:
    """Running error and warning counts for preview tables."""

    def __init__(self):
        self.valid_rows = 0
        self.invalid_rows = 0
        self.error_counts: Counter = Counter()
        self.warning_counts: Counter = Counter()

    def add(self, errors: Optional[Dict[str, str]], warnings: Optional[Dict[str, str]]) -> None:
        if errors:
            self.invalid_rows += 1
        else:
            self.valid_rows += 1
        for name, message in (errors or {}).items():
            self.error_counts[(name, message)] += 1
        for name, message in (warnings or {}).items():
            self.warning_counts[(name, message)] += 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "valid_rows": self.valid_rows,
            "invalid_rows": self.invalid_rows,
            "errors": [
                {"field": name, "message": message, "count": count}
                for (name, message), count in self.error_counts.most_common()
            ],
            "warnings": [
                {"field": name, "message": message, "count": count}
                for (name, message), count in self.warning_counts.most_common()
            ],
        }


def summarize_validation(results: Iterable[Any]) -> Dict[str, Any]:
    """
    Aggregate ``RowValidationResult`` objects, or persisted row dicts carrying
    ``validation_errors``/``validation_warnings``.
    """
    summary = ValidationSummary()
    for result in results:
        if isinstance(result, RowValidationResult):
            summary.add(result.errors, result.warnings)
        else:
            summary.add(result.get("validation_errors"), result.get("validation_warnings"))
    return summary.to_dict()
