"""Unit tests for fbc/fbp helpers.

WHAT:
    fbc formatting from a raw fbclid and validation of browser cookies.

WHY:
    A creation time in seconds instead of milliseconds makes Meta drop the
    click attribution without any error.

REFERENCES:
    - app/services/click_id.py (module under test)
"""

import logging

import pytest

from app.services.click_id import (
    current_time_ms,
    extract_click_id,
    format_click_id,
    subdomain_index,
    validate_browser_id,
    validate_click_cookie,
)


class TestFormatClickId:
    """Test fbc = fb.<subdomain_index>.<creation_ms>.<fbclid>."""

    def test_formats_with_given_time(self):
        assert format_click_id("IwAR123", "example.com", now_ms=1730000000123) == "fb.1.1730000000123.IwAR123"

    def test_creation_time_is_milliseconds(self):
        """WHAT: Default creation time is the current epoch in ms.
        WHY: Seconds-precision values are ignored by Meta.
        """
        before = current_time_ms()
        fbc = format_click_id("IwAR123")
        after = current_time_ms()

        prefix, index, creation, click_id = fbc.split(".")
        assert prefix == "fb"
        assert index == "1"
        assert len(creation) == 13
        assert before <= int(creation) <= after
        assert click_id == "IwAR123"

    @pytest.mark.parametrize("raw", [None, "", "   "])
    def test_missing_click_id_gives_none(self, raw):
        assert format_click_id(raw, "example.com") is None


class TestSubdomainIndex:
    """Test the subdomain index rule."""

    @pytest.mark.parametrize(
        "domain,expected",
        [
            ("example.com", 1),
            ("www.example.com", 2),
            ("localhost", 0),
            ("a.b.example.com", 0),
            (None, 1),
            ("", 1),
        ],
    )
    def test_index(self, domain, expected):
        assert subdomain_index(domain) == expected


class TestCookieValidation:
    """Test _fbp / _fbc cookie validation."""

    def test_valid_fbp_is_returned(self):
        assert validate_browser_id(" fb.1.1730000000000.123456789 ") == "fb.1.1730000000000.123456789"

    def test_seconds_creation_time_is_accepted_for_cookies(self):
        assert validate_browser_id("fb.2.1730000000.987") == "fb.2.1730000000.987"

    @pytest.mark.parametrize(
        "cookie",
        [
            "fb.1.1730000000000",
            "xx.1.1730000000000.123",
            "fb.1.notatime.123",
            "fb.1.173.123",
            "fb.1.1730000000000.",
        ],
    )
    def test_malformed_fbp_is_dropped(self, cookie):
        assert validate_browser_id(cookie) is None

    def test_malformed_cookie_logs_warning(self, caplog):
        with caplog.at_level(logging.WARNING, logger="app.services.click_id"):
            assert validate_click_cookie("garbage") is None
        assert "malformed fbc" in caplog.text

    def test_absent_cookie_is_silent(self, caplog):
        with caplog.at_level(logging.WARNING, logger="app.services.click_id"):
            assert validate_browser_id(None) is None
        assert caplog.text == ""


class TestExtractClickId:
    def test_recovers_raw_fbclid(self):
        assert extract_click_id("fb.1.1730000000000.IwAR123") == "IwAR123"

    def test_invalid_fbc_gives_none(self):
        assert extract_click_id("IwAR123") is None
