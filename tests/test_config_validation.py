"""
Unit tests for config validation.

Startup must refuse to run without the credentials the billing flows need,
and warn (not fail) on risky but workable values.
"""

import logging
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from invoicely.config import (
    ConfigurationError,
    CORSConfig,
    GmailWatchConfig,
    GoogleOAuthConfig,
    LoggingConfig,
    PolarConfig,
    Settings,
    SupabaseConfig,
)


def make_settings(**overrides) -> Settings:
    """Fully configured settings; keyword arguments replace whole sections."""
    sections = {
        "supabase": SupabaseConfig(url="https://auth.invoicely.test/", service_role_key="srk"),
        "polar": PolarConfig(
            access_token="polar_oat_real_token", webhook_secret="a-long-enough-webhook-secret"
        ),
        "google": GoogleOAuthConfig(client_id="cid", client_secret="csecret"),
        "gmail_watch": GmailWatchConfig(topic_name="projects/p/topics/t"),
        "cors": CORSConfig(allowed_origins="https://app.invoicely.test"),
        "logging": LoggingConfig(environment="development"),
    }
    sections.update(overrides)
    return Settings(**sections)


def test_complete_configuration_has_no_warnings():
    settings = make_settings()

    with patch("logging.warning") as mock_warning:
        settings.validate_configuration()

    assert mock_warning.call_count == 0
    assert settings.missing_required() == []


def test_missing_credentials_are_all_reported():
    settings = make_settings(
        polar=PolarConfig(access_token="", webhook_secret=""),
        gmail_watch=GmailWatchConfig(topic_name=""),
    )

    with pytest.raises(ConfigurationError) as exc_info:
        settings.validate_configuration()

    message = str(exc_info.value)
    assert "POLAR_ACCESS_TOKEN" in message
    assert "POLAR_WEBHOOK_SECRET" in message
    assert "GMAIL_WATCH_TOPIC_NAME" in message
    assert "SUPABASE_URL" not in message


def test_placeholder_access_token_counts_as_missing(caplog):
    with caplog.at_level(logging.WARNING):
        polar = PolarConfig(access_token="your-token-here", webhook_secret="x" * 32)

    assert polar.access_token == ""
    assert any("placeholder" in record.message for record in caplog.records)
    assert make_settings(polar=polar).missing_required() == ["POLAR_ACCESS_TOKEN"]


def test_short_webhook_secret_warns(caplog):
    settings = make_settings(
        polar=PolarConfig(access_token="polar_oat_real_token", webhook_secret="short")
    )

    with caplog.at_level(logging.WARNING):
        settings.validate_configuration()

    assert any("POLAR_WEBHOOK_SECRET" in record.message for record in caplog.records)


def test_inverted_slow_request_thresholds_warn(caplog):
    settings = make_settings(
        logging=LoggingConfig(slow_request_warning_ms=1000, slow_request_error_ms=500)
    )

    with caplog.at_level(logging.WARNING):
        settings.validate_configuration()

    assert any("LOGGING_SLOW_REQUEST_ERROR_MS" in record.message for record in caplog.records)


def test_wildcard_cors_warns_only_in_production(caplog):
    development = make_settings(cors=CORSConfig(allowed_origins="*"))
    production = make_settings(
        cors=CORSConfig(allowed_origins="*"), logging=LoggingConfig(environment="production")
    )

    with caplog.at_level(logging.WARNING):
        development.validate_configuration()
    assert not any("CORS" in record.message for record in caplog.records)

    with caplog.at_level(logging.WARNING):
        production.validate_configuration()
    assert any("CORS allows all origins" in record.message for record in caplog.records)


def test_topic_name_must_be_a_pubsub_path():
    with pytest.raises(ValidationError):
        GmailWatchConfig(topic_name="gmail-push")


def test_urls_are_normalized():
    settings = make_settings()

    assert settings.supabase.url == "https://auth.invoicely.test"
    assert PolarConfig(api_base_url="https://sandbox-api.polar.sh/").api_base_url == (
        "https://sandbox-api.polar.sh"
    )


def test_cors_lists():
    cors = CORSConfig(
        allowed_origins="https://a.test, https://b.test",
        allowed_methods="GET,POST",
        allowed_headers="*",
    )

    assert cors.origins_list == ["https://a.test", "https://b.test"]
    assert cors.methods_list == ["GET", "POST"]
    assert cors.headers_list == ["*"]
