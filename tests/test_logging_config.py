"""
Tests for logging helpers.
"""

import pytest

from billing_sync.core.logging_config import get_logger, mask_identifier


class TestMaskIdentifier:
    """Tests for mask_identifier."""

    @pytest.mark.parametrize("value,expected", [
        ("cus_Nf3kPz0a9Q", "cus_***a9Q"),
        ("sub_1OqXyZ2eZvKYlo2C", "sub_***o2C"),
        ("1234567", "***567"),
        (1234567, "***567"),
        ("42", "***"),
        (7, "***"),
        ("cus_ab", "cus_***"),
    ])
    def test_masks(self, value, expected):
        assert mask_identifier(value) == expected

    def test_empty_values(self):
        assert mask_identifier(None) is None
        assert mask_identifier("") is None

    def test_custom_visible(self):
        assert mask_identifier("cus_Nf3kPz0a9Q", visible=5) == "cus_***z0a9Q"


class TestGetLogger:
    def test_returns_bindable_logger(self):
        logger = get_logger("billing_sync.tests")

        assert hasattr(logger.bind(event_id="evt_1"), "info")
