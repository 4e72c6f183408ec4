from ingest.core.privacy import (
    UNKNOWN,
    extract_ip,
    extract_ua,
    hash_ip,
    hash_ua,
    hash_with_salt,
    normalize_ip,
    normalize_ua,
    request_hashes,
)
from ingest.conftest import make_settings


def test_hash_is_deterministic_and_salted():
    a = hash_with_salt("203.0.113.7", "salt-a")
    assert a == hash_with_salt("203.0.113.7", "salt-a")
    assert a != hash_with_salt("203.0.113.7", "salt-b")
    assert len(a) == 64
    assert "203.0.113.7" not in a


def test_ip_and_ua_hash_spaces_are_distinct():
    cfg = make_settings()
    ip_hash, ua_hash = request_hashes({"x-forwarded-for": "unknown", "user-agent": "unknown"}, cfg)
    # Same raw value, different category salts
    assert ip_hash != ua_hash


def test_forwarded_for_first_entry_wins():
    headers = {"X-Forwarded-For": "198.51.100.1, 10.0.0.2", "X-Real-IP": "10.9.9.9"}
    assert extract_ip(headers) == "198.51.100.1"


def test_header_precedence_falls_through():
    assert extract_ip({"x-real-ip": "10.9.9.9", "cf-connecting-ip": "10.8.8.8"}) == "10.9.9.9"
    assert extract_ip({"cf-connecting-ip": "10.8.8.8"}) == "10.8.8.8"


def test_missing_headers_fall_back_to_unknown():
    assert extract_ip({}) == UNKNOWN
    assert extract_ua({}) == UNKNOWN
    assert extract_ip({"x-forwarded-for": ""}) == UNKNOWN


def test_normalize_ip_strips_port_and_brackets():
    assert normalize_ip("203.0.113.7:8080") == "203.0.113.7"
    assert normalize_ip("[2001:DB8::1]:443") == "2001:db8::1"
    assert normalize_ip(None) == UNKNOWN
    assert hash_ip("203.0.113.7:8080", "s") == hash_ip("203.0.113.7", "s")


def test_normalize_ua_collapses_browser_builds():
    older = "Mozilla/5.0 Chrome/120.0.6099.109 Safari/537.36"
    newer = "Mozilla/5.0 Chrome/120.0.6100.1 Safari/537.36"
    assert normalize_ua(older) == normalize_ua(newer)
    assert hash_ua(older, "s") == hash_ua(newer, "s")
    assert normalize_ua("") == UNKNOWN


def test_request_hashes_ignore_header_case():
    cfg = make_settings()
    lower = request_hashes({"x-forwarded-for": "203.0.113.7", "user-agent": "curl/8.0"}, cfg)
    upper = request_hashes({"X-Forwarded-For": "203.0.113.7", "User-Agent": "curl/8.0"}, cfg)
    assert lower == upper
