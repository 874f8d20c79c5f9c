"""
Tests for Settings configuration validation in config.py.
"""
import pytest
from pydantic import ValidationError

from cat_engine.core.config import Settings


class TestSettings:
    def test_defaults(self):
        settings = Settings()
        assert settings.EXPOSURE_STORE == "memory"
        assert settings.API_V1_PREFIX == "/v1"

    def test_lowercase_log_level_accepted(self):
        assert Settings(LOG_LEVEL="debug").LOG_LEVEL == "debug"

    def test_unknown_log_level_rejected(self):
        with pytest.raises(ValidationError, match="LOG_LEVEL"):
            Settings(LOG_LEVEL="VERBOSE")

    def test_unknown_exposure_backend_rejected(self):
        with pytest.raises(ValidationError):
            Settings(EXPOSURE_STORE="memcached")

    def test_environment_prefix(self, monkeypatch):
        monkeypatch.setenv("CAT_EXPOSURE_STORE", "redis")
        monkeypatch.setenv("CAT_EXPOSURE_MAX_RETRIES", "5")
        settings = Settings()
        assert settings.EXPOSURE_STORE == "redis"
        assert settings.EXPOSURE_MAX_RETRIES == 5

    def test_max_retries_must_be_positive(self):
        with pytest.raises(ValidationError):
            Settings(EXPOSURE_MAX_RETRIES=0)
