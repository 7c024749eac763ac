"""Redirect callback handling for desktop authorization.

The provider redirects the user's browser to a loopback URI after consent.
``LoopbackCallbackServer`` listens on that URI and hands the first callback
to the waiting flow; ``parse_callback_url`` handles callbacks captured some
other way.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from urllib.parse import parse_qs, urlparse

import uvicorn
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import HTMLResponse, Response
from starlette.routing import Route

from mailwarden.auth.models.errors import ConfigurationError, OperationTimeoutError
from mailwarden.auth.models.security import AuthorizationResponse
from mailwarden.auth.services.security import is_loopback_redirect

logger = logging.getLogger(__name__)

SUCCESS_PAGE = (
    "<html><body><h1>Sign-in complete</h1>"
    "<p>You can close this window and return to the application.</p></body></html>"
)
ERROR_PAGE = (
    "<html><body><h1>Sign-in was not completed</h1>"
    "<p>Return to the application to try again.</p></body></html>"
)


def parse_callback_url(callback_url: str) -> AuthorizationResponse:
    """Parse an OAuth redirect URL into an AuthorizationResponse.

    Args:
        callback_url: Full callback URL from the authorization server

    Returns:
        AuthorizationResponse: Parsed callback parameters (may be empty)
    """
    query_params = parse_qs(urlparse(callback_url).query)

    def get_single_param(key: str) -> str | None:
        values = query_params.get(key, [])
        return values[0] if values else None

    return AuthorizationResponse(
        code=get_single_param("code"),
        state=get_single_param("state"),
        error=get_single_param("error"),
        error_description=get_single_param("error_description"),
        error_uri=get_single_param("error_uri"),
    )


def _response_from_params(params: Mapping[str, str]) -> AuthorizationResponse:
    return AuthorizationResponse(
        code=params.get("code"),
        state=params.get("state"),
        error=params.get("error"),
        error_description=params.get("error_description"),
        error_uri=params.get("error_uri"),
    )


class LoopbackCallbackServer:
    """One-shot HTTP listener for the authorization redirect.

    Serves the path of ``redirect_uri`` on its loopback host and port. The
    first request carrying a code or an error resolves ``wait_for_callback``;
    later requests get the error page.
    """

    def __init__(self, redirect_uri: str):
        if not is_loopback_redirect(redirect_uri):
            raise ConfigurationError(
                f"Redirect URI {redirect_uri} is not an http loopback address",
                human_message="The redirect URI must point to this computer.",
            )
        parsed = urlparse(redirect_uri)
        self.host = parsed.hostname
        self.port = parsed.port or 80
        self.path = parsed.path or "/"

        self._callback: asyncio.Future[AuthorizationResponse] | None = None
        self._server: uvicorn.Server | None = None
        self._server_task: asyncio.Task | None = None
        self._app = self._create_app()

    @property
    def app(self) -> Starlette:
        return self._app

    def _create_app(self) -> Starlette:
        routes = [Route(self.path, self._handle_callback, methods=["GET"])]
        return Starlette(routes=routes)

    def _pending(self) -> asyncio.Future[AuthorizationResponse]:
        if self._callback is None:
            self._callback = asyncio.get_running_loop().create_future()
        return self._callback

    async def _handle_callback(self, request: Request) -> Response:
        auth_response = _response_from_params(request.query_params)
        if auth_response.code is None and auth_response.error is None:
            return HTMLResponse(ERROR_PAGE, status_code=400)

        pending = self._pending()
        if pending.done():
            logger.warning("Ignoring repeated authorization callback")
            return HTMLResponse(ERROR_PAGE, status_code=409)

        pending.set_result(auth_response)
        if auth_response.is_error():
            logger.warning(
                f"Authorization callback carried error: {auth_response.error}"
            )
            return HTMLResponse(ERROR_PAGE, status_code=200)

        logger.info("Authorization callback received")
        return HTMLResponse(SUCCESS_PAGE, status_code=200)

    async def start(self) -> None:
        """Start listening in a background task."""
        self._pending()
        config = uvicorn.Config(
            app=self._app, host=self.host, port=self.port, log_level="warning"
        )
        self._server = uvicorn.Server(config)
        self._server_task = asyncio.create_task(self._server.serve())
        logger.info(f"Listening for authorization callback on {self.host}:{self.port}")

    async def wait_for_callback(self, timeout: float = 300.0) -> AuthorizationResponse:
        """Wait for the browser redirect.

        Raises:
            OperationTimeoutError: If no callback arrives within ``timeout``
        """
        try:
            return await asyncio.wait_for(
                asyncio.shield(self._pending()), timeout=timeout
            )
        except asyncio.TimeoutError as e:
            raise OperationTimeoutError(
                f"No authorization callback received within {timeout:.0f}s"
            ) from e

    async def stop(self) -> None:
        """Stop the HTTP server."""
        if self._server:
            self._server.should_exit = True
        if self._server_task:
            await self._server_task
            self._server_task = None

    async def __aenter__(self) -> LoopbackCallbackServer:
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.stop()
