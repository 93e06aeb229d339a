"""
Merchant name normalization used as the grouping key for subscription detection.
"""
import re
from typing import Optional

# Trailing transaction IDs like "*1234" or "#5678"
TRAILING_REFERENCE_PATTERN = re.compile(r"[*#]+\d+$")

# Corporate suffixes, only as the final whole word
COMPANY_SUFFIX_PATTERN = re.compile(
    r"\b(inc|llc|ltd|corp|corporation|company|co)\b\.?$",
    re.IGNORECASE,
)

WHITESPACE_PATTERN = re.compile(r"\s+")

MIN_NORMALIZED_LENGTH = 3


def normalize_merchant_name(name: Optional[str]) -> str:
    """
    Canonicalize a raw merchant name or description for grouping.

    "NETFLIX.COM *1234" -> "netflix.com", "Spotify  USA Inc" -> "spotify usa".
    Names that would collapse below three characters keep their trimmed
    original form so short distinct merchants ("BP", "O2") stay apart.
    """
    if not name:
        return ""

    normalized = name.lower().strip()
    normalized = WHITESPACE_PATTERN.sub(" ", normalized)
    normalized = TRAILING_REFERENCE_PATTERN.sub("", normalized)
    normalized = COMPANY_SUFFIX_PATTERN.sub("", normalized)
    normalized = normalized.strip()

    if len(normalized) < MIN_NORMALIZED_LENGTH:
        return name.strip()
    return normalized


def leading_token(name: Optional[str]) -> str:
    """First whitespace-separated token of a name, empty string if none."""
    if not name:
        return ""
    parts = name.strip().split()
    return parts[0] if parts else ""
