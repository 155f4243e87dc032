"""
Tests for environment-driven settings.
"""

import pytest

from healthbay.config import _float_env, _int_env


@pytest.mark.parametrize("raw", ["nan", "inf", "-inf", "lots", "  "])
def test_bad_integer_settings_fall_back_to_default(monkeypatch, raw):
    monkeypatch.setenv("HEALTHBAY_TEST_INT", raw)
    assert _int_env("HEALTHBAY_TEST_INT", 7) == 7


def test_integer_settings_are_read(monkeypatch):
    monkeypatch.setenv("HEALTHBAY_TEST_INT", "12")
    assert _int_env("HEALTHBAY_TEST_INT", 7) == 12
    monkeypatch.setenv("HEALTHBAY_TEST_INT", "4.0")
    assert _int_env("HEALTHBAY_TEST_INT", 7) == 4


def test_missing_settings_use_default(monkeypatch):
    monkeypatch.delenv("HEALTHBAY_TEST_FLOAT", raising=False)
    assert _float_env("HEALTHBAY_TEST_FLOAT", 0.5) == 0.5
    monkeypatch.setenv("HEALTHBAY_TEST_FLOAT", "oops")
    assert _float_env("HEALTHBAY_TEST_FLOAT", 0.5) == 0.5
