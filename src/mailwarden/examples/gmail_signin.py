"""
Sign in to Gmail from the desktop and list a few inbox messages.

You'll need to set MAILWARDEN_CLIENT_ID, MAILWARDEN_CLIENT_SECRET and
MAILWARDEN_REDIRECT_URI (e.g. http://127.0.0.1:8765/callback), or put them in
a .env file.

Gmail API: https://developers.google.com/gmail/api/reference/rest
"""

import asyncio
import json
import logging
import webbrowser

from dotenv import load_dotenv

from mailwarden.api.client import MailApiClient
from mailwarden.auth.models.config import AuthorizationConfig
from mailwarden.auth.models.tokens import TokenSet
from mailwarden.auth.services.callback import LoopbackCallbackServer
from mailwarden.auth.services.flow import OAuthFlowManager
from mailwarden.auth.session import AccountSession
from mailwarden.auth.store import token_set_from_json, token_set_to_json
from mailwarden.resilience.invoker import RetryInvoker
from mailwarden.resilience.models import RetryPolicy

CREDENTIAL_FILE = ".mailwarden-credentials.json"


class JsonFileStore:
    """Keeps one credential per key in a local JSON file. Demo only."""

    def __init__(self, path: str):
        self.path = path

    def _read(self) -> dict[str, str]:
        try:
            with open(self.path) as f:
                return json.load(f)
        except FileNotFoundError:
            return {}

    def _write(self, data: dict[str, str]) -> None:
        with open(self.path, "w") as f:
            json.dump(data, f)

    async def store(self, key: str, token_set: TokenSet) -> None:
        data = self._read()
        data[key] = token_set_to_json(token_set)
        self._write(data)

    async def retrieve(self, key: str) -> TokenSet | None:
        raw = self._read().get(key)
        return token_set_from_json(raw) if raw else None

    async def remove(self, key: str) -> None:
        data = self._read()
        data.pop(key, None)
        self._write(data)


async def main():
    config = AuthorizationConfig.from_env()
    invoker = RetryInvoker(RetryPolicy.from_env())

    async with OAuthFlowManager() as flow:
        flow.initialize(config)
        store = JsonFileStore(CREDENTIAL_FILE)
        # No session invoker: the client retries each call, token refresh
        # included, so attempts do not nest
        session = AccountSession("default", flow, store)

        if await session.startup_refresh() is None:
            async with LoopbackCallbackServer(config.redirect_uri) as receiver:
                auth_url = session.begin_authorization()
                logging.info(f"Opening browser for sign-in: {auth_url}")
                webbrowser.open(auth_url)
                callback = await receiver.wait_for_callback()
            await session.complete_authorization(callback)

        session.start_rotation_scheduler()
        try:
            async with MailApiClient(session, invoker) as client:
                outcome = await client.list_messages(query="in:inbox", max_results=5)
                if not outcome.ok:
                    logging.error(f"Listing failed: {outcome.error.human_message}")
                    return
                for message in outcome.value.get("messages", []):
                    logging.info(f"Message: {message['id']}")
        finally:
            await session.stop_rotation_scheduler()


if __name__ == "__main__":
    load_dotenv()
    logging.basicConfig(level=logging.INFO)
    asyncio.run(main())
