"""Unit tests for core/config.py -- duration parsing and the secret policy."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from core.config import Settings, parse_duration


class TestParseDuration:
    @pytest.mark.parametrize(
        ("value", "seconds"),
        [("30s", 30), ("15m", 900), ("24h", 86400), ("7d", 604800), (120, 120), ("45", 45)],
    )
    def test_valid_forms(self, value, seconds) -> None:
        assert parse_duration(value) == seconds

    @pytest.mark.parametrize("value", ["", "abc", "10w", "h24"])
    def test_invalid_forms(self, value) -> None:
        with pytest.raises(ValueError):
            parse_duration(value)


class TestSecretPolicy:
    def test_production_without_secret_refuses_to_start(self, monkeypatch) -> None:
        monkeypatch.delenv("JWT_SECRET", raising=False)
        with pytest.raises(ValidationError, match="JWT_SECRET is required"):
            Settings(debug=False, jwt_secret="", _env_file=None)

    def test_debug_generates_secret(self) -> None:
        settings = Settings(debug=True, jwt_secret="", _env_file=None)
        assert len(settings.jwt_secret) >= 32

    def test_short_secret_rejected(self) -> None:
        with pytest.raises(ValidationError, match="at least 32"):
            Settings(debug=True, jwt_secret="too-short", _env_file=None)

    def test_auditor_secret_derived_when_unset(self) -> None:
        a = Settings(jwt_secret="a" * 40, auditor_token_secret="", _env_file=None)
        b = Settings(jwt_secret="b" * 40, auditor_token_secret="", _env_file=None)
        assert a.auditor_token_secret
        assert a.auditor_token_secret != a.jwt_secret
        assert a.auditor_token_secret != b.auditor_token_secret

    def test_explicit_auditor_secret_kept(self) -> None:
        settings = Settings(jwt_secret="a" * 40, auditor_token_secret="explicit-key", _env_file=None)
        assert settings.auditor_token_secret == "explicit-key"

    def test_token_ttl_from_expires_in(self) -> None:
        settings = Settings(jwt_secret="a" * 40, jwt_expires_in="2h", _env_file=None)
        assert settings.token_ttl_seconds == 7200

    def test_bad_expires_in_rejected(self) -> None:
        with pytest.raises(ValidationError):
            Settings(jwt_secret="a" * 40, jwt_expires_in="forever", _env_file=None)
