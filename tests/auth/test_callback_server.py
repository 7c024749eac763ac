"""Tests for redirect callback parsing and the loopback receiver."""

import httpx
import pytest

from mailwarden.auth.models.errors import ConfigurationError, OperationTimeoutError
from mailwarden.auth.services.callback import (
    LoopbackCallbackServer,
    parse_callback_url,
)

REDIRECT_URI = "http://127.0.0.1:8765/callback"


class TestParseCallbackUrl:
    def test_success_callback(self):
        auth_response = parse_callback_url(
            f"{REDIRECT_URI}?code=4%2F0Adeu5B&state=xyz&scope=email"
        )

        assert auth_response.is_success()
        assert auth_response.code == "4/0Adeu5B"
        assert auth_response.state == "xyz"

    def test_error_callback(self):
        auth_response = parse_callback_url(
            f"{REDIRECT_URI}?error=access_denied&error_description=denied&state=xyz"
        )

        assert auth_response.is_error()
        assert not auth_response.is_success()
        assert auth_response.error_description == "denied"

    def test_empty_callback(self):
        auth_response = parse_callback_url(REDIRECT_URI)

        assert auth_response.code is None
        assert auth_response.state is None
        assert not auth_response.is_error()


class TestLoopbackCallbackServer:
    def setup_method(self):
        self.server = LoopbackCallbackServer(REDIRECT_URI)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            transport=httpx.ASGITransport(app=self.server.app),
            base_url="http://127.0.0.1:8765",
        )

    def test_binds_redirect_host_port_and_path(self):
        assert self.server.host == "127.0.0.1"
        assert self.server.port == 8765
        assert self.server.path == "/callback"

    @pytest.mark.parametrize(
        "redirect_uri",
        ["https://127.0.0.1:8765/callback", "http://example.com/callback"],
    )
    def test_rejects_non_loopback_redirects(self, redirect_uri):
        with pytest.raises(ConfigurationError):
            LoopbackCallbackServer(redirect_uri)

    async def test_first_callback_resolves_wait(self):
        # Act
        async with self._client() as client:
            response = await client.get("/callback?code=abc&state=s1")
        auth_response = await self.server.wait_for_callback(timeout=1)

        # Assert
        assert response.status_code == 200
        assert "Sign-in complete" in response.text
        assert auth_response.code == "abc"
        assert auth_response.state == "s1"

    async def test_provider_error_is_delivered(self):
        async with self._client() as client:
            response = await client.get("/callback?error=access_denied&state=s1")
        auth_response = await self.server.wait_for_callback(timeout=1)

        assert response.status_code == 200
        assert "not completed" in response.text
        assert auth_response.error == "access_denied"

    async def test_repeated_callback_is_rejected(self):
        async with self._client() as client:
            await client.get("/callback?code=first&state=s1")
            repeat = await client.get("/callback?code=second&state=s1")
        auth_response = await self.server.wait_for_callback(timeout=1)

        assert repeat.status_code == 409
        assert auth_response.code == "first"

    async def test_request_without_code_or_error(self):
        async with self._client() as client:
            response = await client.get("/callback?state=s1")

        assert response.status_code == 400

    async def test_wait_times_out(self):
        with pytest.raises(OperationTimeoutError):
            await self.server.wait_for_callback(timeout=0.01)
