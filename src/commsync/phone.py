"""Phone number normalization to E.164.

The provider, webhook payloads, and the client table all carry phone numbers
in whatever shape a human typed them.  Every comparison in the sync engine
goes through :func:`normalize_phone_number` first.
"""

from __future__ import annotations

import re
from typing import Any

_NON_DIGIT = re.compile(r"\D")

# Country code assumed for bare 10-digit (NANP) numbers.
DEFAULT_COUNTRY_CODE = "1"
_MIN_E164_LENGTH = 5


def normalize_phone_number(raw: Any) -> str | None:
    """Return *raw* as an E.164 string, or ``None`` when it cannot be one.

    Non-digit characters are dropped (a leading ``+`` is remembered).  A
    10-digit number without a ``+`` is treated as NANP and gets country code
    ``1``.  Results shorter than five characters are rejected.
    """
    if not isinstance(raw, str):
        return None
    trimmed = raw.strip()
    if not trimmed:
        return None

    has_plus = trimmed.startswith("+")
    digits = _NON_DIGIT.sub("", trimmed)
    if not digits:
        return None

    if not has_plus and len(digits) == 10:
        digits = DEFAULT_COUNTRY_CODE + digits

    normalized = f"+{digits}"
    if len(normalized) < _MIN_E164_LENGTH:
        return None
    return normalized


def phones_match(left: Any, right: Any) -> bool:
    """True when both values normalize to the same E.164 number."""
    normalized_left = normalize_phone_number(left)
    if normalized_left is None:
        return False
    return normalized_left == normalize_phone_number(right)
