"""
Privacy-preserving identity hashing.

Raw IP addresses and user agents never leave this module: callers get
salted HMAC-SHA256 digests. IPs and UAs use distinct salts so a hash from
one category can never be correlated with the other.
"""

import hashlib
import hmac
import re
from typing import Mapping, Optional, Tuple

from ingest.core.config import Settings, settings

UNKNOWN = "unknown"

IP_HEADERS = (
    "x-forwarded-for",
    "x-real-ip",
    "cf-connecting-ip",
    "x-client-ip",
    "x-cluster-client-ip",
)

_IPV4_PORT_RE = re.compile(r"^(\d{1,3}(?:\.\d{1,3}){3}):\d+$")
_BRACKETED_V6_RE = re.compile(r"^\[([^\]]+)\](?::\d+)?$")

_UA_REPLACEMENTS = (
    (re.compile(r"\d+\.\d+\.\d+\.\d+"), "X.X.X.X"),
    (re.compile(r"Chrome/\d+\.\d+\.\d+"), "Chrome/X.X.X"),
    (re.compile(r"Firefox/\d+\.\d+"), "Firefox/X.X"),
    (re.compile(r"Safari/\d+\.\d+"), "Safari/X.X"),
    (re.compile(r"Edge/\d+\.\d+"), "Edge/X.X"),
)


def hash_with_salt(value: str, salt: str) -> str:
    return hmac.new(salt.encode("utf-8"), value.encode("utf-8"), hashlib.sha256).hexdigest()


def normalize_ip(raw: Optional[str]) -> str:
    if not raw:
        return UNKNOWN
    first = raw.split(",")[0].strip()
    if not first or first == UNKNOWN:
        return UNKNOWN
    bracketed = _BRACKETED_V6_RE.match(first)
    if bracketed:
        return bracketed.group(1).lower()
    with_port = _IPV4_PORT_RE.match(first)
    if with_port:
        return with_port.group(1)
    return first.lower()


def normalize_ua(raw: Optional[str]) -> str:
    """Collapse browser build numbers so minor upgrades hash identically."""
    if not raw or raw == UNKNOWN:
        return UNKNOWN
    ua = raw
    for pattern, replacement in _UA_REPLACEMENTS:
        ua = pattern.sub(replacement, ua)
    return ua.strip() or UNKNOWN


def hash_ip(raw: Optional[str], salt: str) -> str:
    return hash_with_salt(normalize_ip(raw), salt)


def hash_ua(raw: Optional[str], salt: str) -> str:
    return hash_with_salt(normalize_ua(raw), salt)


def _lower_headers(headers: Mapping[str, str]) -> dict:
    return {str(k).lower(): v for k, v in headers.items()}


def extract_ip(headers: Mapping[str, str]) -> str:
    """Client IP from proxy headers in precedence order; first list entry wins."""
    lowered = _lower_headers(headers)
    for name in IP_HEADERS:
        value = lowered.get(name)
        if not value:
            continue
        candidate = str(value).split(",")[0].strip()
        if candidate and candidate != UNKNOWN:
            return candidate
    return UNKNOWN


def extract_ua(headers: Mapping[str, str]) -> str:
    value = _lower_headers(headers).get("user-agent")
    return str(value) if value else UNKNOWN


def request_hashes(headers: Mapping[str, str], settings_obj: Optional[Settings] = None) -> Tuple[str, str]:
    """Return ``(ip_hash, ua_hash)`` for a request's headers."""
    cfg = settings_obj or settings
    return (
        hash_ip(extract_ip(headers), cfg.ABUSE_IP_SALT),
        hash_ua(extract_ua(headers), cfg.ABUSE_UA_SALT),
    )
