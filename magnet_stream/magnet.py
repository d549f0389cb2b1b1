"""
Magnet URI helpers.
Extracts and normalizes BitTorrent info hashes.
"""

import base64
import re
from urllib.parse import parse_qs, quote, urlparse

from .exceptions import InvalidIdentifierError

HEX_HASH = re.compile(r"^[0-9a-fA-F]{40}$")
BASE32_HASH = re.compile(r"^[a-zA-Z2-7]{32}$")
BTIH_PATTERN = re.compile(r"urn:btih:([0-9a-zA-Z]+)", re.IGNORECASE)


def normalize_hash(value: str) -> str:
    """
    Canonicalize an info hash to 40 lowercase hex characters.

    Accepts 40-char hex or 32-char base32. Raises InvalidIdentifierError
    for anything else.
    """
    value = (value or "").strip()
    if HEX_HASH.match(value):
        return value.lower()
    if BASE32_HASH.match(value):
        return base64.b32decode(value.upper()).hex()
    raise InvalidIdentifierError("Invalid info hash", details=value[:64] or None)


def is_info_hash(value: str) -> bool:
    """Check whether a string is a bare info hash."""
    value = (value or "").strip()
    return bool(HEX_HASH.match(value) or BASE32_HASH.match(value))


def parse_info_hash(magnet: str) -> str:
    """
    Extract the canonical info hash from a magnet URI.

    A bare hash is accepted too, so callers can pass whatever identifier
    they were given.
    """
    if not magnet:
        raise InvalidIdentifierError("Empty magnet identifier")

    if is_info_hash(magnet):
        return normalize_hash(magnet)

    if not magnet.lower().startswith("magnet:"):
        raise InvalidIdentifierError("Not a magnet URI", details=magnet[:64])

    query = parse_qs(urlparse(magnet).query)
    for xt in query.get("xt", []):
        match = BTIH_PATTERN.search(xt)
        if match:
            return normalize_hash(match.group(1))

    # Some clients don't encode the query properly, fall back to a raw scan
    match = BTIH_PATTERN.search(magnet)
    if match:
        return normalize_hash(match.group(1))

    raise InvalidIdentifierError("No btih hash in magnet", details=magnet[:64])


def make_magnet_link(info_hash: str, name: str | None = None) -> str:
    """Build a minimal magnet URI for a hash."""
    link = f"magnet:?xt=urn:btih:{normalize_hash(info_hash)}"
    if name:
        link += f"&dn={quote(name)}"
    return link
