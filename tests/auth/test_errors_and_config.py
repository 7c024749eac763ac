"""Tests for the error taxonomy and configuration loading."""

import pytest

from mailwarden.auth.models.config import DEFAULT_SCOPES, AuthorizationConfig
from mailwarden.auth.models.errors import (
    AuthenticationError,
    ClassifiedError,
    ConfigurationError,
    ErrorCategory,
    NetworkError,
    OperationTimeoutError,
    QuotaExceededError,
    RateLimitError,
    UnknownProviderError,
    ValidationError,
)
from mailwarden.auth.services.security import is_loopback_redirect, validate_state


class TestErrorTaxonomy:
    @pytest.mark.parametrize(
        "error,category,retryable",
        [
            (ConfigurationError("x"), ErrorCategory.CONFIGURATION, False),
            (ValidationError("x"), ErrorCategory.VALIDATION, False),
            (AuthenticationError("x"), ErrorCategory.AUTHENTICATION, False),
            (NetworkError("x"), ErrorCategory.NETWORK, True),
            (RateLimitError("x"), ErrorCategory.RATE_LIMIT, True),
            (QuotaExceededError("x"), ErrorCategory.QUOTA_EXCEEDED, True),
            (OperationTimeoutError("x"), ErrorCategory.TIMEOUT, True),
            (UnknownProviderError("x"), ErrorCategory.UNKNOWN, False),
        ],
    )
    def test_category_and_retryability(self, error, category, retryable):
        assert error.category is category
        assert error.retryable is retryable
        assert error.classified.detail == "x"

    def test_configuration_message_names_missing_fields(self):
        error = ConfigurationError("bad", missing_fields=("client_id",))

        assert "client_id" in error.classified.human_message

    @pytest.mark.parametrize("category", list(ErrorCategory))
    def test_to_exception_round_trips_category(self, category):
        classified = ClassifiedError.of(category, detail="boom")

        error = classified.to_exception()

        assert error.category is category
        assert error.classified is classified
        assert str(error) == "boom"

    def test_to_exception_keeps_retry_after(self):
        classified = ClassifiedError.of(ErrorCategory.QUOTA_EXCEEDED, retry_after=9)

        error = classified.to_exception()

        assert isinstance(error, QuotaExceededError)
        assert error.retry_after == 9


class TestAuthorizationConfig:
    def test_defaults(self):
        config = AuthorizationConfig()

        assert config.scopes == DEFAULT_SCOPES
        assert config.access_token_prefix == "ya29."
        assert config.missing_fields() == (
            "client_id",
            "client_secret",
            "redirect_uri",
        )

    def test_secret_not_in_repr(self, auth_config):
        assert "secret-xyz" not in repr(auth_config)

    def test_from_env(self):
        config = AuthorizationConfig.from_env(
            {
                "MAILWARDEN_CLIENT_ID": "id",
                "MAILWARDEN_CLIENT_SECRET": "secret",
                "MAILWARDEN_REDIRECT_URI": "http://127.0.0.1:9000/cb",
                "MAILWARDEN_SCOPES": "openid email",
                "MAILWARDEN_REQUEST_TIMEOUT": "5",
            }
        )

        assert config.missing_fields() == ()
        assert config.scopes == ("openid", "email")
        assert config.request_timeout == 5.0

    def test_from_env_rejects_bad_timeout(self):
        with pytest.raises(ConfigurationError, match="REQUEST_TIMEOUT"):
            AuthorizationConfig.from_env({"MAILWARDEN_REQUEST_TIMEOUT": "fast"})


class TestSecurityChecks:
    def test_matching_state(self):
        validate_state("abc", "abc")

    @pytest.mark.parametrize("expected,actual", [("abc", "abd"), ("", ""), ("a", "")])
    def test_mismatch_is_csrf(self, expected, actual):
        with pytest.raises(ValidationError) as exc_info:
            validate_state(expected, actual)

        assert exc_info.value.csrf

    @pytest.mark.parametrize(
        "uri,expected",
        [
            ("http://127.0.0.1:8765/callback", True),
            ("http://localhost/cb", True),
            ("https://127.0.0.1/cb", False),
            ("http://mail.example.com/cb", False),
        ],
    )
    def test_is_loopback_redirect(self, uri, expected):
        assert is_loopback_redirect(uri) is expected
