"""Token endpoint client.

Performs the two token endpoint requests of the authorization code flow:
code exchange (RFC 6749 Section 4.1.3, with the PKCE code_verifier of RFC
7636) and refresh (RFC 6749 Section 6). Both use
application/x-www-form-urlencoded bodies and JSON responses.

Transport failures propagate as ``httpx`` exceptions; the flow manager maps
them onto the error taxonomy.
"""

from __future__ import annotations

import logging

import httpx
from pydantic import ValidationError as PydanticValidationError

from mailwarden.auth.models.tokens import (
    RefreshTokenRequest,
    TokenRequest,
    TokenResponse,
)

logger = logging.getLogger(__name__)

FORM_HEADERS = {
    "Content-Type": "application/x-www-form-urlencoded",
    "Accept": "application/json",
}


class TokenEndpointClient:
    """Sends token requests to one provider token endpoint."""

    def __init__(self, token_endpoint: str, http_client: httpx.AsyncClient):
        self.token_endpoint = token_endpoint
        self._http_client = http_client

    async def exchange_code(self, token_request: TokenRequest) -> TokenResponse:
        """Exchange an authorization code for tokens.

        Args:
            token_request: Code, verifier and client credentials

        Returns:
            TokenResponse: Parsed response, success or error

        Raises:
            httpx.HTTPError: If the endpoint could not be reached
        """
        logger.debug(f"Exchanging authorization code at {self.token_endpoint}")
        return await self._post(token_request.to_form_data())

    async def refresh(self, refresh_request: RefreshTokenRequest) -> TokenResponse:
        """Request a new access token with a refresh token.

        Raises:
            httpx.HTTPError: If the endpoint could not be reached
        """
        logger.debug(f"Refreshing access token at {self.token_endpoint}")
        return await self._post(refresh_request.to_form_data())

    async def _post(self, form_data: dict[str, str]) -> TokenResponse:
        # Only non-secret fields are logged
        logger.debug(
            f"Token request: grant_type={form_data['grant_type']}, "
            f"client_id={form_data['client_id']}"
        )

        response = await self._http_client.post(
            self.token_endpoint,
            data=form_data,
            headers=FORM_HEADERS,
        )
        return self._parse_token_response(response)

    def _parse_token_response(self, response: httpx.Response) -> TokenResponse:
        """Parse a token endpoint response (RFC 6749 Section 5).

        Bodies that are not a JSON object, and error statuses without an
        ``error`` field, become error responses rather than exceptions.
        """
        try:
            response_data = response.json()
        except ValueError:
            response_data = None

        if not isinstance(response_data, dict):
            logger.warning(
                f"Token endpoint returned a non-JSON body with {response.status_code}"
            )
            return TokenResponse(
                error="invalid_response",
                error_description=(
                    f"HTTP {response.status_code}: {response.text[:200]}"
                ),
            )

        try:
            token_response = TokenResponse(**response_data)
        except PydanticValidationError as e:
            return TokenResponse(
                error="invalid_response",
                error_description=(
                    f"Malformed token response: {e.error_count()} error(s)"
                ),
            )

        if response.status_code != 200 and token_response.error is None:
            token_response = token_response.model_copy(
                update={"error": f"http_{response.status_code}"}
            )

        if token_response.is_error():
            logger.warning(
                f"Token request failed with {response.status_code}: "
                f"{token_response.error_message()}"
            )
        else:
            logger.info("Token request successful")

        return token_response
