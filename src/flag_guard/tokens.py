"""Encoding of the durable client token.

The token is a cookie value holding ``{content_id: report_count}`` for the
comments a browser has reported. It is not signed: a forged or corrupted
token only ever degrades to "no prior reports", and the address-keyed
rate window catches clients that keep clearing it.
"""

from __future__ import annotations
import base64
import binascii
import json
import logging
from typing import Any, Dict, Optional

from .errors import MalformedClientToken

logger = logging.getLogger(__name__)

# Reports as they arrive from a client or caller, before validation.
RawReports = Any
# Validated reports: non-negative integer ids mapped to non-negative counts.
CleanReports = Dict[int, int]

# Ids and counts are 64-bit; anything larger is forged.
MAX_REPORT_VALUE = 2 ** 63 - 1
MAX_REPORT_DIGITS = len(str(MAX_REPORT_VALUE))


def _as_non_negative_int(value: Any) -> Optional[int]:
    """Returns ``value`` as an int if it is a non-negative integer, else None.

    Accepts ints and all-digit strings up to ``MAX_REPORT_VALUE``. Booleans
    are rejected even though they subclass int.
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if 0 <= value <= MAX_REPORT_VALUE else None
    if isinstance(value, str):
        stripped = value.strip()
        if not (stripped.isascii() and stripped.isdigit()):
            return None
        # Checked before int() so oversized strings never reach the parser
        if len(stripped) > MAX_REPORT_DIGITS:
            return None
        number = int(stripped)
        return number if number <= MAX_REPORT_VALUE else None
    return None


def clean_reports(raw: RawReports) -> CleanReports:
    """Filters raw token content down to numeric id/count pairs.

    Anything that is not a mapping becomes an empty mapping. Entries whose
    key or value is not a non-negative integer are dropped silently.
    """
    if not isinstance(raw, dict):
        return {}
    clean: CleanReports = {}
    for key, value in raw.items():
        content_id = _as_non_negative_int(key)
        count = _as_non_negative_int(value)
        if content_id is None or count is None:
            continue
        clean[content_id] = count
    return clean


def encode(reports: RawReports) -> str:
    """Serializes reports into a cookie-safe token string."""
    clean = clean_reports(reports)
    payload = json.dumps(
        {str(k): v for k, v in sorted(clean.items())}, separators=(",", ":")
    )
    encoded = base64.urlsafe_b64encode(payload.encode("utf-8")).decode("ascii")
    # Padding is restored on decode; "=" would force cookie quoting
    return encoded.rstrip("=")


def _load(token: Any) -> Any:
    if not isinstance(token, str) or not token:
        raise MalformedClientToken("Token is empty or not a string")
    try:
        padded = token + "=" * (-len(token) % 4)
        raw = base64.urlsafe_b64decode(padded.encode("ascii"))
        data = json.loads(raw.decode("utf-8"))
    except (binascii.Error, UnicodeError, ValueError, RecursionError) as e:
        raise MalformedClientToken(f"Token could not be decoded: {e}") from e
    if not isinstance(data, dict):
        raise MalformedClientToken(
            f"Token decoded to {type(data).__name__}, expected an object"
        )
    return data


def decode(token: Any) -> CleanReports:
    """Decodes a token back into clean reports.

    Never raises: undecodable input is logged and treated as an empty
    mapping, and decoded content goes through the same filter as ``encode``.
    """
    try:
        data = _load(token)
    except MalformedClientToken as e:
        logger.debug(f"Discarding client token: {e.message}")
        return {}
    return clean_reports(data)
