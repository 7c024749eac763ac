"""Authorized JSON client for the mail provider REST API.

Every request runs through a ``RetryInvoker``: transient failures (network,
rate limiting, quota, 5xx) are retried with backoff, everything else is
returned as a classified failure. Each attempt asks the account session for
fresh tokens, so a refresh happens transparently before the access token
expires.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx

from mailwarden.auth.session import AccountSession
from mailwarden.resilience.invoker import RetryInvoker
from mailwarden.resilience.models import InvocationOutcome, RetryPolicy

logger = logging.getLogger(__name__)

GMAIL_API_BASE_URL = "https://gmail.googleapis.com/gmail/v1"


class MailApiClient:
    """Bearer-authorized GET/POST against the provider API.

    Every attempt first asks the session for fresh tokens, so a failing
    token refresh is retried by this client's invoker. A session that also
    holds a retrying invoker multiplies the attempts; give the session none
    (or a single-attempt policy) when sharing a policy with the client.
    """

    def __init__(
        self,
        session: AccountSession,
        invoker: RetryInvoker | None = None,
        http_client: httpx.AsyncClient | None = None,
        base_url: str = GMAIL_API_BASE_URL,
        timeout: float = 30.0,
    ):
        self.session = session
        self.base_url = base_url.rstrip("/")
        self._invoker = invoker or RetryInvoker()
        self._http_client = http_client or httpx.AsyncClient(timeout=timeout)
        self._owns_http_client = http_client is None

    async def get(
        self,
        path: str,
        params: dict[str, Any] | None = None,
        *,
        policy: RetryPolicy | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> InvocationOutcome[Any]:
        """GET ``path`` and return the decoded JSON body."""
        return await self._invoke(
            "GET", path, params=params, policy=policy, cancel_event=cancel_event
        )

    async def post(
        self,
        path: str,
        json: Any = None,
        *,
        policy: RetryPolicy | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> InvocationOutcome[Any]:
        """POST a JSON body to ``path`` and return the decoded JSON response."""
        return await self._invoke(
            "POST", path, json=json, policy=policy, cancel_event=cancel_event
        )

    async def get_profile(self, user_id: str = "me") -> InvocationOutcome[Any]:
        return await self.get(f"/users/{user_id}/profile")

    async def list_messages(
        self,
        user_id: str = "me",
        query: str | None = None,
        max_results: int = 100,
        page_token: str | None = None,
    ) -> InvocationOutcome[Any]:
        params: dict[str, Any] = {"maxResults": max_results}
        if query:
            params["q"] = query
        if page_token:
            params["pageToken"] = page_token
        return await self.get(f"/users/{user_id}/messages", params=params)

    async def modify_message(
        self,
        message_id: str,
        add_label_ids: list[str] | None = None,
        remove_label_ids: list[str] | None = None,
        user_id: str = "me",
    ) -> InvocationOutcome[Any]:
        body = {
            "addLabelIds": add_label_ids or [],
            "removeLabelIds": remove_label_ids or [],
        }
        return await self.post(
            f"/users/{user_id}/messages/{message_id}/modify", json=body
        )

    async def close(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()

    async def __aenter__(self) -> MailApiClient:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def _invoke(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: Any = None,
        policy: RetryPolicy | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> InvocationOutcome[Any]:
        url = f"{self.base_url}/{path.lstrip('/')}"

        async def attempt() -> Any:
            tokens = await self.session.ensure_fresh_tokens()
            headers = {
                "Authorization": f"{tokens.token_type} {tokens.access_token}",
                "Accept": "application/json",
            }
            response = await self._http_client.request(
                method, url, params=params, json=json, headers=headers
            )
            # HTTPStatusError carries status, body and headers to the classifier
            response.raise_for_status()
            if not response.content:
                return None
            return response.json()

        logger.debug(f"{method} {url}")
        return await self._invoker.execute_with_retry(
            attempt,
            policy,
            cancel_event=cancel_event,
            operation_name=f"{method} {path}",
        )
