"""
tests/test_config.py -- Unit tests for core/config.py Settings validation.

Settings are constructed directly with keyword arguments so the process
environment (DEBUG=true from conftest) does not decide the outcome.
"""

from __future__ import annotations

from datetime import timedelta

import pytest
from pydantic import ValidationError

from core.config import Settings

KEY = "k" * 32


def test_debug_mode_generates_secret_key():
    settings = Settings(debug=True, secret_key="")
    assert len(settings.secret_key) >= 32


def test_production_requires_secret_key():
    with pytest.raises(ValidationError, match="SECRET_KEY is required"):
        Settings(debug=False, secret_key="")


def test_short_secret_key_is_rejected():
    with pytest.raises(ValidationError, match="at least 32 characters"):
        Settings(debug=True, secret_key="too-short")


def test_inverted_password_lengths_are_rejected():
    with pytest.raises(ValidationError, match="PASSWORD_MAX_LENGTH"):
        Settings(secret_key=KEY, password_min_length=20, password_max_length=10)


def test_lifetimes_are_timedeltas():
    settings = Settings(
        secret_key=KEY,
        access_token_expire_seconds=900,
        refresh_token_ttl_hours=48,
        verification_token_ttl_hours=24,
        reset_token_ttl_hours=1,
    )
    assert settings.access_token_lifetime == timedelta(minutes=15)
    assert settings.refresh_token_lifetime == timedelta(days=2)
    assert settings.verification_token_lifetime == timedelta(hours=24)
    assert settings.reset_token_lifetime == timedelta(hours=1)


@pytest.mark.parametrize(
    "bind_addr, expected",
    [
        ("127.0.0.1:3000", ("127.0.0.1", 3000)),
        ("0.0.0.0:8080", ("0.0.0.0", 8080)),
        ("[::1]:3000", ("::1", 3000)),
    ],
)
def test_bind_host_port(bind_addr, expected):
    assert Settings(secret_key=KEY, bind_addr=bind_addr).bind_host_port() == expected


def test_bind_addr_without_port_is_rejected():
    with pytest.raises(ValueError):
        Settings(secret_key=KEY, bind_addr="localhost").bind_host_port()
