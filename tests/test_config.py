"""
Settings loaded from the environment.
"""

import pytest

from dashcore.config import load_settings, lookahead_policy
from dashcore.errors import ValidationError


class TestLoadSettings:
    """Environment parsing."""

    def test_defaults(self, monkeypatch):
        for name in ("STORE_BACKEND", "SCOPES", "AZURE_SERVICE_BUS_CONNECTION_STRING", "GENERATION_TARGETS",
                     "NOTIFICATION_LOOKAHEAD_DAYS", "COMPLAINT_LOOKAHEAD_DAYS"):
            monkeypatch.delenv(name, raising=False)
        settings = load_settings()
        assert settings.store_backend == "memory"
        assert settings.scopes == ("electronics", "furniture")
        assert not settings.relay_enabled
        assert lookahead_policy(settings) == {"installment": 7, "delivery": 7, "complaint": 0}

    def test_targets_and_numbers(self, monkeypatch):
        monkeypatch.setenv("GENERATION_TARGETS", "electronics:u1, furniture:u2")
        monkeypatch.setenv("GENERATION_INTERVAL_SECONDS", "300")
        monkeypatch.setenv("NOTIFICATION_LOOKAHEAD_DAYS", "3")
        settings = load_settings()
        assert settings.generation_targets == (("electronics", "u1"), ("furniture", "u2"))
        assert settings.generation_interval_seconds == 300.0
        assert settings.lookahead_days == 3

    @pytest.mark.parametrize(
        "name, value",
        [
            ("STORE_BACKEND", "postgres"),
            ("NOTIFICATION_LOOKAHEAD_DAYS", "a week"),
            ("GENERATION_TARGETS", "electronics"),
            ("SCOPES", " , "),
        ],
    )
    def test_bad_values(self, monkeypatch, name, value):
        monkeypatch.setenv(name, value)
        with pytest.raises(ValidationError):
            load_settings()
