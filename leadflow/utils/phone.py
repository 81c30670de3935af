"""
Phone number normalization for imported contact data.

Numbers arrive from spreadsheets and CRM exports in many shapes
("06 12 34 56 78", "p:+33612345678", "33 6 12 34 56 78"). They are stored
in E.164 form so duplicate detection compares like with like.
"""

import re
from typing import Any, Optional
import logging

logger = logging.getLogger(__name__)

# CRM exports prefix numbers with "p:" (phone) or "t:" (telephone).
_CRM_PREFIX = re.compile(r"^[pt]:", re.IGNORECASE)


def standardize_phone(
    value: Any,
    *,
    default_country_code: Optional[str] = None,
    output_format: str = "e164",
) -> Optional[str]:
    """
    Standardize a phone number.

    Handles:
    - national numbers with a trunk prefix: 06 12 34 56 78
    - country code without "+": 33612345678
    - nine-digit national numbers missing the trunk prefix: 612345678
    - CRM prefixes: p:+33612345678, t:0612345678
    - already formatted numbers: +44 20 7946 1234

    Args:
        value: Raw phone value.
        default_country_code: Country calling code applied to national
            numbers (e.g., "33" for France). National numbers are left as
            digits when it is None.
        output_format: "e164" (+33612345678) or "digits_only" (33612345678).

    Returns:
        Standardized phone string or None when nothing phone-like remains.
    """
    if value is None:
        return None

    text = str(value).strip()
    text = _CRM_PREFIX.sub("", text, count=1).strip()
    if not text:
        return None

    has_plus = text.startswith("+")
    digits = re.sub(r"\D", "", text)
    if not digits:
        return None

    if has_plus:
        result = f"+{digits}"
    elif default_country_code and digits.startswith("0") and len(digits) == 10:
        result = f"+{default_country_code}{digits[1:]}"
    elif default_country_code and digits.startswith(default_country_code) and len(digits) == 11:
        result = f"+{digits}"
    elif default_country_code and len(digits) == 9:
        result = f"+{default_country_code}{digits}"
    elif len(digits) > 10:
        # Long numbers without a trunk prefix already carry a country code.
        result = f"+{digits}"
    else:
        result = digits

    if output_format == "digits_only":
        return result.lstrip("+")
    if output_format != "e164":
        logger.warning(f"Unknown output_format '{output_format}', defaulting to e164")
    return result


def phone_digits(value: Any) -> str:
    """Digits of a phone value, used as its comparison key."""
    if value is None:
        return ""
    return re.sub(r"\D", "", str(value))
