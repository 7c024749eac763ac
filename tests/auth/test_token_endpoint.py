"""Tests for token endpoint request encoding and response parsing."""

from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from mailwarden.auth.models.tokens import RefreshTokenRequest, TokenRequest
from mailwarden.auth.services.tokens import TokenEndpointClient

TOKEN_ENDPOINT = "https://oauth2.example.com/token"


class TestTokenEndpointClient:
    def setup_method(self):
        # Arrange
        self.http_client = AsyncMock()
        self.client = TokenEndpointClient(TOKEN_ENDPOINT, self.http_client)
        self.token_request = TokenRequest(
            code="auth-code-123",
            code_verifier="dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk",
            redirect_uri="http://127.0.0.1:8765/callback",
            client_id="client-456",
            client_secret="secret-789",
        )

    def _respond(self, status_code: int, body=None, text: str = "") -> None:
        mock_response = MagicMock()
        mock_response.status_code = status_code
        if isinstance(body, Exception):
            mock_response.json.side_effect = body
        else:
            mock_response.json.return_value = body
        mock_response.text = text
        self.http_client.post.return_value = mock_response

    async def test_exchange_posts_form_data(self):
        # Arrange
        self._respond(
            200,
            {
                "access_token": "ya29.token",
                "token_type": "Bearer",
                "expires_in": 3600,
                "refresh_token": "1//refresh",
                "scope": "openid",
            },
        )

        # Act
        token_response = await self.client.exchange_code(self.token_request)

        # Assert
        assert token_response.is_success()
        assert token_response.expires_in == 3600
        call_args = self.http_client.post.call_args
        assert call_args[0][0] == TOKEN_ENDPOINT
        assert call_args[1]["data"]["grant_type"] == "authorization_code"
        assert call_args[1]["data"]["code_verifier"] == (
            self.token_request.code_verifier
        )
        assert call_args[1]["headers"]["Accept"] == "application/json"

    async def test_refresh_posts_form_data(self):
        self._respond(200, {"access_token": "ya29.token"})
        refresh_request = RefreshTokenRequest(
            refresh_token="1//refresh", client_id="client-456", client_secret="s"
        )

        token_response = await self.client.refresh(refresh_request)

        assert token_response.is_success()
        assert self.http_client.post.call_args[1]["data"] == {
            "grant_type": "refresh_token",
            "refresh_token": "1//refresh",
            "client_id": "client-456",
            "client_secret": "s",
        }

    async def test_oauth_error_response(self):
        self._respond(
            400,
            {
                "error": "invalid_grant",
                "error_description": "Code was already redeemed.",
            },
        )

        token_response = await self.client.exchange_code(self.token_request)

        assert token_response.is_error()
        assert token_response.error == "invalid_grant"
        assert token_response.error_message() == (
            "invalid_grant: Code was already redeemed."
        )

    async def test_error_status_without_error_field(self):
        self._respond(500, {"message": "backend error"})

        token_response = await self.client.exchange_code(self.token_request)

        assert token_response.error == "http_500"

    async def test_non_json_body(self):
        self._respond(502, ValueError("no json"), text="<html>Bad Gateway</html>")

        token_response = await self.client.exchange_code(self.token_request)

        assert token_response.error == "invalid_response"
        assert "Bad Gateway" in token_response.error_description

    async def test_malformed_json_fields(self):
        self._respond(200, {"access_token": "ya29.token", "expires_in": "soon"})

        token_response = await self.client.exchange_code(self.token_request)

        assert token_response.error == "invalid_response"

    async def test_transport_errors_propagate(self):
        self.http_client.post.side_effect = httpx.ConnectError("refused")

        with pytest.raises(httpx.ConnectError):
            await self.client.exchange_code(self.token_request)


class TestTokenRequestModels:
    def test_secrets_hidden_from_repr(self):
        token_request = TokenRequest(
            code="the-code",
            code_verifier="the-verifier",
            redirect_uri="http://127.0.0.1/cb",
            client_id="client",
            client_secret="the-secret",
        )

        text = repr(token_request)

        assert "the-code" not in text
        assert "the-verifier" not in text
        assert "the-secret" not in text
        assert "client" in text
