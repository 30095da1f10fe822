"""Customer identity hashing for Meta Conversions API.

WHAT:
    Normalizes and SHA256-hashes customer PII (email, phone, name, address)
    into the `user_data` keys Meta expects (em, ph, fn, ln, ...).

WHY:
    Meta matches server events to users only when the hash is computed over
    the exact normalized form it expects. A phone hashed with its "+", spaces
    or dashes still in it silently never matches.

REFERENCES:
    - https://developers.facebook.com/docs/marketing-api/conversions-api/parameters/customer-information-parameters
    - app/services/meta_capi_service.py (wire format)
"""

import hashlib
from typing import Dict, Optional, Tuple

from app.schemas import CustomerFields, HashedIdentity

# CustomerFields attribute -> Meta user_data key
FIELD_KEYS: Dict[str, str] = {
    "email": "em",
    "phone": "ph",
    "first_name": "fn",
    "last_name": "ln",
    "date_of_birth": "db",
    "gender": "ge",
    "city": "ct",
    "state": "st",
    "zip_code": "zp",
    "country": "country",
}


def sha256_hash(value: str) -> str:
    """Return the lowercase hex SHA256 digest of a string."""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def normalize_value(field: str, value: Optional[str]) -> Optional[str]:
    """Normalize one identity field, or None if nothing usable remains.

    Args:
        field: CustomerFields attribute name
        value: Raw value as captured by the funnel

    Returns:
        Lower-cased, trimmed value (digits only for phone), or None
    """
    if value is None:
        return None

    normalized = str(value).strip().lower()

    if field == "phone":
        normalized = "".join(ch for ch in normalized if ch.isdigit())

    return normalized or None


def hash_identity(fields: Optional[CustomerFields], hashing_enabled: bool = True) -> HashedIdentity:
    """Hash every present customer field into Meta's user_data keys.

    WHAT: Normalize then SHA256 each recognized field; omit absent ones
    WHY: Meta requires hashed PII and rejects hashes of empty placeholders

    Args:
        fields: Customer fields (any subset may be missing)
        hashing_enabled: When False, normalized values are passed in clear
            (only meant for Test Events debugging)

    Returns:
        HashedIdentity with None for every field that was absent or blank
    """
    if fields is None:
        return HashedIdentity()

    hashed: Dict[str, str] = {}
    for field, key in FIELD_KEYS.items():
        normalized = normalize_value(field, getattr(fields, field))
        if normalized is None:
            continue
        hashed[key] = sha256_hash(normalized) if hashing_enabled else normalized

    return HashedIdentity(**hashed)


def split_full_name(name: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
    """Split a single "name" form field into (first, last).

    Lead forms capture one free-text name; everything after the first word is
    treated as the last name.
    """
    if not name or not name.strip():
        return None, None

    parts = name.split()
    first = parts[0]
    last = " ".join(parts[1:]) or None
    return first, last
