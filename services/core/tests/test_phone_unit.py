"""Unit tests for phone number normalization."""

import pytest

from callbridge_core.domain.services.phone import (
    InvalidPhoneNumberError,
    normalize_phone,
    try_normalize_phone,
)


class TestNormalizePhone:
    """Tests for E.164 normalization."""

    @pytest.mark.parametrize(
        "raw",
        ["(555) 123-4567", "555-123-4567", "15551234567", "+15551234567", "555.123.4567"],
    )
    def test_common_formats_normalize_to_e164(self, raw):
        assert normalize_phone(raw) == "+15551234567"

    def test_international_number_kept(self):
        assert normalize_phone("+44 20 7946 0958") == "+442079460958"

    def test_eleven_digits_not_starting_with_country_code(self):
        assert normalize_phone("25551234567") == "+25551234567"

    def test_normalization_is_idempotent(self):
        once = normalize_phone("(555) 123-4567")

        assert normalize_phone(once) == once

    @pytest.mark.parametrize("raw", ["", None, "call me", "---"])
    def test_no_digits_raises(self, raw):
        with pytest.raises(InvalidPhoneNumberError):
            normalize_phone(raw)

    def test_invalid_phone_error_is_value_error(self):
        with pytest.raises(ValueError):
            normalize_phone("n/a")

    def test_try_normalize_returns_none_on_invalid(self):
        assert try_normalize_phone("n/a") is None
        assert try_normalize_phone("555 123 4567") == "+15551234567"

