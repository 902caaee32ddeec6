"""
Payer / payee identifier normalization.

Raw identifiers arrive from the change feed in whatever shape the claim
source used. Buckets are always keyed on the normalized form so that
"acme-health" and "ACME HEALTH" land in the same bucket.
"""
import logging
import re
from typing import Optional

logger = logging.getLogger(__name__)

_SEPARATORS = re.compile(r"[-\s.]")
_INVALID = re.compile(r"[^A-Z0-9_]")
_REPEATED_UNDERSCORE = re.compile(r"_{2,}")
_VALID_ID = re.compile(r"^[A-Z0-9_]+$")

KEY_SEPARATOR = "|"


def normalize_party_id(raw_id: Optional[str]) -> Optional[str]:
    """
    Normalize a payer or payee id. Non-string ids are normalized as their text.

    - upper-case
    - hyphens, whitespace and dots become underscores
    - anything outside A-Z, 0-9 and underscore is dropped
    - consecutive underscores collapse, leading/trailing ones are trimmed
    """
    if raw_id is None:
        return None

    normalized = _SEPARATORS.sub("_", str(raw_id).upper())
    normalized = _INVALID.sub("", normalized)
    normalized = _REPEATED_UNDERSCORE.sub("_", normalized).strip("_")

    if normalized != raw_id:
        logger.debug(f"Normalized party id {raw_id!r} -> {normalized!r}")

    return normalized


def is_valid_party_id(party_id: Optional[str]) -> bool:
    return bool(party_id) and _VALID_ID.match(party_id) is not None


def build_grouping_key(*parts: Optional[str]) -> str:
    """Join key parts; missing parts are kept as empty segments."""
    return KEY_SEPARATOR.join((part or "").strip() for part in parts)


def friendly_name(raw_id: Optional[str], prefix: str) -> str:
    """Display name for a party that has no master-data row yet."""
    if not raw_id:
        return f"{prefix} (Unknown)"
    friendly = re.sub(r"[_-]", " ", raw_id)
    return friendly[:1].upper() + friendly[1:].lower()
