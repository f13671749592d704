"""HTTP client for the agent platform's agent-chat API."""

import asyncio
import logging
from typing import Any

import aiohttp

logger = logging.getLogger(__name__)


class OpenServError(Exception):
    """Raised when an agent-chat API call fails."""


class OpenServClient:
    """Async client for posting to and reading from agent chats.

    Used both for the generation agents (one workspace per category) and for
    the messaging agent that delivers digests.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        session: aiohttp.ClientSession,
        connect_sid: str = "",
        timeout: float = 30.0,
    ):
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._session = session
        self._connect_sid = connect_sid
        self._timeout = aiohttp.ClientTimeout(total=timeout)

    def _url(self, workspace_id: int, agent_id: int, suffix: str) -> str:
        return f"{self._base_url}/workspaces/{workspace_id}/agent-chat/{agent_id}/{suffix}"

    async def post_message(
        self, workspace_id: int, agent_id: int, message: str
    ) -> dict[str, Any] | None:
        """Post a message via POST /workspaces/{w}/agent-chat/{a}/message."""
        url = self._url(workspace_id, agent_id, "message")
        headers = {
            "x-openserv-key": self._api_key,
            "Content-Type": "application/json",
            "accept": "*/*",
        }
        logger.debug(f"POST {url}")
        try:
            async with self._session.post(
                url, json={"message": message}, headers=headers, timeout=self._timeout
            ) as resp:
                if resp.status not in (200, 201, 204):
                    text = await resp.text()
                    raise OpenServError(f"POST {url} returned {resp.status}: {text}")
                if resp.content_type == "application/json":
                    return await resp.json()
                return None
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise OpenServError(f"POST {url} failed: {type(e).__name__}: {e}") from e

    async def get_messages(self, workspace_id: int, agent_id: int) -> list[dict[str, Any]]:
        """Fetch chat history via GET /workspaces/{w}/agent-chat/{a}/messages."""
        url = self._url(workspace_id, agent_id, "messages")
        headers = {
            "x-openserv-key": self._api_key,
            "accept": "application/json",
        }
        if self._connect_sid:
            headers["cookie"] = f"connect.sid={self._connect_sid}"
        logger.debug(f"GET {url}")
        try:
            async with self._session.get(url, headers=headers, timeout=self._timeout) as resp:
                if resp.status != 200:
                    text = await resp.text()
                    raise OpenServError(f"GET {url} returned {resp.status}: {text}")
                data = await resp.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise OpenServError(f"GET {url} failed: {type(e).__name__}: {e}") from e

        messages = data.get("messages") if isinstance(data, dict) else None
        return messages if isinstance(messages, list) else []


def last_agent_message(messages: list[dict[str, Any]]) -> str | None:
    """Return the text of the newest agent-authored message, if any."""
    for message in reversed(messages):
        if not isinstance(message, dict):
            continue
        if message.get("author") == "agent" and message.get("message"):
            return message["message"]
    return None
