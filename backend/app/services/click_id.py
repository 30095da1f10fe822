"""Meta click/browser identifier helpers (fbc and fbp).

WHAT:
    Builds the `fbc` value from a raw fbclid and validates `_fbp` cookies
    before they are forwarded in `user_data`.

WHY:
    - fbc format is fb.{subdomain_index}.{creation_time}.{fbclid}
    - creation_time MUST be epoch milliseconds; Meta drops click attribution
      for values expressed in seconds
    - One malformed optional cookie must not get the whole event rejected

REFERENCES:
    - https://developers.facebook.com/docs/marketing-api/conversions-api/parameters/fbp-and-fbc
"""

import logging
import re
import time
from typing import Optional

logger = logging.getLogger(__name__)

FB_PREFIX = "fb"
_CREATION_TIME_RE = re.compile(r"^\d{10,13}$")


def current_time_ms() -> int:
    return time.time_ns() // 1_000_000


def subdomain_index(domain: Optional[str]) -> int:
    """Map a domain to Meta's subdomain index.

    example.com -> 1, www.example.com -> 2, com -> 0, absent -> 1.
    Deeper hosts fall back to 0.
    """
    if not domain:
        return 1

    parts = [part for part in domain.strip().strip(".").split(".") if part]
    if len(parts) == 2:
        return 1
    if len(parts) == 3:
        return 2
    return 0


def format_click_id(
    raw_click_id: Optional[str],
    domain: Optional[str] = None,
    now_ms: Optional[int] = None,
) -> Optional[str]:
    """Build the fbc parameter from a raw fbclid.

    Args:
        raw_click_id: fbclid query parameter value
        domain: Host the click landed on (decides the subdomain index)
        now_ms: Creation time override in epoch milliseconds

    Returns:
        "fb.<index>.<creation_ms>.<fbclid>" or None if there is no click id
    """
    if not raw_click_id or not str(raw_click_id).strip():
        return None

    creation_ms = now_ms if now_ms is not None else current_time_ms()
    fbc = f"{FB_PREFIX}.{subdomain_index(domain)}.{creation_ms}.{str(raw_click_id).strip()}"
    logger.debug(f"[CLICK_ID] Formatted fbc (creation_time={creation_ms}ms)")
    return fbc


def _is_valid_cookie(value: str) -> bool:
    parts = value.split(".")
    return (
        len(parts) == 4
        and parts[0] == FB_PREFIX
        and bool(_CREATION_TIME_RE.match(parts[2]))
        and bool(parts[3])
    )


def validate_browser_id(fbp: Optional[str]) -> Optional[str]:
    """Return the `_fbp` cookie if well-formed, else None.

    Expected shape: fb.{subdomain_index}.{creation_time}.{random}
    """
    if not fbp:
        return None

    value = str(fbp).strip()
    if not _is_valid_cookie(value):
        logger.warning(f"[CLICK_ID] Dropping malformed fbp cookie: {value!r}")
        return None
    return value


def validate_click_cookie(fbc: Optional[str]) -> Optional[str]:
    """Return an `_fbc` cookie if well-formed, else None."""
    if not fbc:
        return None

    value = str(fbc).strip()
    if not _is_valid_cookie(value):
        logger.warning(f"[CLICK_ID] Dropping malformed fbc cookie: {value!r}")
        return None
    return value


def extract_click_id(fbc: Optional[str]) -> Optional[str]:
    """Recover the raw fbclid from a formatted fbc value."""
    value = validate_click_cookie(fbc)
    if value is None:
        return None
    return value.split(".", 3)[3]
