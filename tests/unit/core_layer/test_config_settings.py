"""
Unit Tests for Settings

Tests broker URL resolution per deployment mode, validators and the nested
settings views.
"""

import pytest
from pydantic import ValidationError

from engagement_backbone.config.settings import Settings
from engagement_backbone.core.exceptions import ConfigurationError


@pytest.mark.unit
class TestBrokerUrlResolution:
    def test_production_requires_broker_url(self):
        settings = Settings(DEPLOYMENT_MODE="production", BROKER_URL=None, BROKER_URL_DEV="redis://dev:6379/0")

        with pytest.raises(ConfigurationError) as exc_info:
            settings.broker_url()

        assert "suggestion" in exc_info.value.details

    def test_production_ignores_dev_url(self):
        settings = Settings(
            DEPLOYMENT_MODE="production",
            BROKER_URL="redis://prod:6379/0",
            BROKER_URL_DEV="redis://dev:6379/0",
        )
        assert settings.broker_url() == "redis://prod:6379/0"

    def test_development_reads_dev_url(self):
        settings = Settings(DEPLOYMENT_MODE="development", BROKER_URL="redis://prod:6379/0", BROKER_URL_DEV="redis://dev:6379/1")
        assert settings.broker_url() == "redis://dev:6379/1"

    def test_development_without_url_runs_brokerless(self):
        settings = Settings(DEPLOYMENT_MODE="development", BROKER_URL_DEV=None)
        assert settings.broker_url() is None


@pytest.mark.unit
class TestValidators:
    def test_log_level_upper_cased(self):
        assert Settings(LOG_LEVEL="debug").LOG_LEVEL == "DEBUG"

    def test_invalid_log_level_rejected(self):
        with pytest.raises(ValidationError):
            Settings(LOG_LEVEL="chatty")


@pytest.mark.unit
class TestNestedViews:
    def test_queue_defaults(self):
        queue = Settings().queue
        assert queue.QUEUE_PREFIX == "bull"
        assert queue.QUEUE_BULK_CHUNK_SIZE == 50
        assert queue.QUEUE_BULK_CHUNK_DELAY_MS == 100
        assert queue.QUEUE_FALLBACK_MAX_ATTEMPTS == 5

    def test_rate_limit_tiers(self):
        limits = Settings().rate_limit
        assert limits.RATE_LIMIT_AUTH == "10/15minutes"
        assert limits.RATE_LIMIT_ADMIN == "20/minute"

    def test_overrides_flow_into_views(self, settings):
        assert settings.catalog.EXTERNAL_CATALOG_TOKEN == "test-token"
        assert settings.queue.QUEUE_FALLBACK_BASE_MS == 1
