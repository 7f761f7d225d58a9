"""Tests for device fingerprinting and network-origin resolution."""

import pytest

from admingate.service.fingerprint import (
    UNKNOWN_ORIGIN,
    FingerprintEngine,
    RequestMetadata,
    device_class,
    is_private_address,
    normalize_address,
    resolve_real_origin,
)

CHROME_HEADERS = {
    "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) Chrome/124.0 Safari/537.36",
    "Accept-Language": "en-GB,en;q=0.8",
    "Accept-Encoding": "gzip, br",
    "Accept": "text/html",
    "Sec-CH-UA-Platform": '"Windows"',
}


class TestResolveRealOrigin:
    """Origin resolution behind proxies."""

    def test_first_public_forwarded_entry_wins(self):
        headers = {"X-Forwarded-For": "10.0.0.7, 8.8.8.8, 1.1.1.1"}
        assert resolve_real_origin(headers, "127.0.0.1") == "8.8.8.8"

    def test_all_private_forwarded_falls_back_to_first_entry(self):
        headers = {"x-forwarded-for": "10.1.2.3, 192.168.1.4"}
        assert resolve_real_origin(headers, "8.8.4.4") == "10.1.2.3"

    def test_private_real_ip_is_skipped(self):
        """A private X-Real-IP falls through to the CDN headers."""
        headers = {"X-Real-IP": "172.16.0.9", "CF-Connecting-IP": "1.1.1.1"}
        assert resolve_real_origin(headers) == "1.1.1.1"

    def test_public_real_ip_used(self):
        headers = {"X-Real-IP": "93.184.216.34", "True-Client-IP": "1.1.1.1"}
        assert resolve_real_origin(headers) == "93.184.216.34"

    def test_cdn_header_order(self):
        headers = {"X-Client-IP": "9.9.9.9", "True-Client-IP": "1.0.0.1"}
        assert resolve_real_origin(headers) == "1.0.0.1"

    def test_connection_address_fallback(self):
        assert resolve_real_origin({}, "8.8.8.8") == "8.8.8.8"

    def test_unknown_without_any_source(self):
        assert resolve_real_origin({}, None) == UNKNOWN_ORIGIN

    def test_ports_and_brackets_are_stripped(self):
        assert resolve_real_origin({"X-Forwarded-For": "8.8.8.8:5123"}) == "8.8.8.8"
        assert resolve_real_origin({"X-Forwarded-For": "[2001:4860:4860::8888]:443"}) == "2001:4860:4860::8888"


class TestAddressHelpers:
    @pytest.mark.parametrize(
        "value", ["10.0.0.1", "192.168.0.10", "127.0.0.1", "169.254.1.1", "::1", "fd00::1"]
    )
    def test_private_ranges(self, value):
        assert is_private_address(value)

    @pytest.mark.parametrize("value", ["8.8.8.8", "1.1.1.1", "2001:4860:4860::8888"])
    def test_public_ranges(self, value):
        assert not is_private_address(value)

    def test_non_ip_is_not_private(self):
        assert not is_private_address("testclient")
        assert normalize_address("testclient") is None


class TestDeviceClass:
    @pytest.mark.parametrize(
        "agent,expected",
        [
            ("Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) Mobile/15E148", "mobile"),
            ("Mozilla/5.0 (Linux; Android 14; Pixel 8)", "mobile"),
            ("Mozilla/5.0 (Windows NT 10.0; Win64; x64)", "windows"),
            ("Mozilla/5.0 (Macintosh; Intel Mac OS X 14_4)", "mac"),
            ("Mozilla/5.0 (X11; Linux x86_64)", "linux"),
            ("curl/8.4.0", "unknown"),
            (None, "unknown"),
        ],
    )
    def test_classification(self, agent, expected):
        assert device_class(agent) == expected


class TestFingerprintEngine:
    """Fingerprint stability and sensitivity."""

    def test_same_headers_same_hash(self):
        engine = FingerprintEngine()
        first = engine.compute(RequestMetadata(headers=CHROME_HEADERS, connection_address="8.8.8.8"))
        second = engine.compute(
            RequestMetadata(
                headers={k.lower(): v for k, v in CHROME_HEADERS.items()},
                connection_address="1.1.1.1",
            )
        )
        assert first == second
        assert len(first) == 64

    def test_signal_change_changes_hash(self):
        engine = FingerprintEngine()
        changed = dict(CHROME_HEADERS, **{"Accept-Language": "fr-FR"})
        assert engine.compute(RequestMetadata(headers=CHROME_HEADERS)) != engine.compute(
            RequestMetadata(headers=changed)
        )

    def test_unlisted_header_ignored(self):
        engine = FingerprintEngine()
        extra = dict(CHROME_HEADERS, **{"X-Trace": "abc"})
        assert engine.compute(RequestMetadata(headers=CHROME_HEADERS)) == engine.compute(
            RequestMetadata(headers=extra)
        )

    def test_missing_signals_are_hashed_as_empty(self):
        engine = FingerprintEngine(signals=("user-agent", "dnt"))
        values = engine.signal_values(RequestMetadata(headers={"User-Agent": "ua"}))
        assert values == ["ua", ""]

    def test_bound_origin_changes_hash_on_network_move(self):
        """With origin binding a different network is a different device."""
        engine = FingerprintEngine(bind_origin=True)
        home = RequestMetadata(headers=dict(CHROME_HEADERS, **{"X-Forwarded-For": "8.8.8.8"}))
        away = RequestMetadata(headers=dict(CHROME_HEADERS, **{"X-Forwarded-For": "1.1.1.1"}))
        assert engine.compute(home) != engine.compute(away)

    def test_unbound_origin_ignores_network_move(self):
        engine = FingerprintEngine()
        home = RequestMetadata(headers=dict(CHROME_HEADERS, **{"X-Forwarded-For": "8.8.8.8"}))
        away = RequestMetadata(headers=dict(CHROME_HEADERS, **{"X-Forwarded-For": "1.1.1.1"}))
        assert engine.compute(home) == engine.compute(away)
        assert engine.origin(away) == "1.1.1.1"


class TestRequestMetadata:
    def test_headers_are_case_insensitive(self):
        metadata = RequestMetadata.from_mapping([("User-Agent", "ua"), ("X-A", "1")])
        assert metadata.header("user-agent") == "ua"
        assert metadata.header("X-a") == "1"
        assert metadata.user_agent == "ua"
        assert metadata.header("missing") == ""
