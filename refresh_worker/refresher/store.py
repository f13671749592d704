"""Persistence client for the user preferences table (PostgREST API)."""

import logging
from datetime import datetime
from typing import Any

from httpx import AsyncClient, ConnectError, HTTPError, Response, TimeoutException
from pydantic import ValidationError

from refresher.models import UserRecord

logger = logging.getLogger(__name__)

TABLE = "user_preferences"

# Column projections used by the cycles
REFRESH_COLUMNS = (
    "user_email",
    "preferences",
    "ispro",
    "watchlist",
    "sector",
    "narrative",
    "watchlist_social",
    "sector_social",
    "narrative_social",
    "last_job",
    "preference_update",
    "ai_last_update",
    "telegramid",
    "tele_last_sent",
)
IMMEDIATE_COLUMNS = REFRESH_COLUMNS + ("telegram_initial_send_scheduled_at",)
DELIVERY_COLUMNS = REFRESH_COLUMNS


class StoreError(Exception):
    """Base exception for persistence errors."""

    pass


class StoreUnavailableError(StoreError):
    """Store is unreachable (connection error, timeout)."""

    pass


def _serialize(fields: dict[str, Any]) -> dict[str, Any]:
    return {
        key: value.isoformat() if isinstance(value, datetime) else value
        for key, value in fields.items()
    }


class SupabaseStore:
    def __init__(self, base_url: str, service_key: str, timeout: float = 10.0):
        self._client = AsyncClient(
            base_url=f"{base_url.rstrip('/')}/rest/v1",
            timeout=timeout,
            headers={
                "apikey": service_key,
                "Authorization": f"Bearer {service_key}",
            },
        )

    async def close(self):
        """Close the HTTP client."""
        await self._client.aclose()

    async def _request(self, method: str, params: dict[str, str], **kwargs: Any) -> Response:
        try:
            response = await self._client.request(method, f"/{TABLE}", params=params, **kwargs)
        except (ConnectError, TimeoutException) as e:
            logger.exception("Failed to connect to the store")
            raise StoreUnavailableError(f"Store unavailable: {e}") from e
        except HTTPError as e:
            logger.exception(f"Store {method} transport error")
            raise StoreError(f"Store {method} failed: {type(e).__name__}: {e}") from e

        if not response.is_success:
            logger.error(f"Store {method} failed: {response.status_code} {response.text}")
            raise StoreError(f"Store {method} failed: {response.status_code} {response.text}")
        return response

    @staticmethod
    def _parse_rows(response: Response) -> list[UserRecord]:
        try:
            rows = response.json()
        except ValueError as e:
            raise StoreError(f"Store returned invalid JSON: {e}") from e
        if not isinstance(rows, list):
            raise StoreError(f"Unexpected store response: {rows!r}")
        users = []
        for row in rows:
            try:
                users.append(UserRecord.model_validate(row))
            except ValidationError as e:
                logger.warning(f"Skipping malformed user row: {e}")
        return users

    async def fetch_pro_users(
        self, columns: tuple[str, ...], with_telegram: bool = False
    ) -> list[UserRecord]:
        """Fetch all pro-tier users, optionally only those with a messaging id."""
        params = {"select": ",".join(columns), "ispro": "eq.true"}
        if with_telegram:
            params["telegramid"] = "not.is.null"
        response = await self._request("GET", params)
        return self._parse_rows(response)

    async def fetch_user(self, user_email: str, columns: tuple[str, ...]) -> UserRecord | None:
        """Fetch a single user by email, or None if there is no such row."""
        params = {
            "select": ",".join(columns),
            "user_email": f"eq.{user_email}",
            "limit": "1",
        }
        response = await self._request("GET", params)
        users = self._parse_rows(response)
        return users[0] if users else None

    async def update_user(self, user_email: str, fields: dict[str, Any]) -> None:
        """Apply a partial update to one user row.

        Raises:
            StoreError: If the write is rejected or the store is unreachable.
        """
        await self._request(
            "PATCH",
            {"user_email": f"eq.{user_email}"},
            json=_serialize(fields),
            headers={"Prefer": "return=minimal"},
        )
