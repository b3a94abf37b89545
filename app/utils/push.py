"""Expo push gateway client.

One batch POST per dispatch; the gateway answers with one ticket per message
in request order::

    {"data": [{"status": "ok", "id": "..."},
              {"status": "error", "message": "...",
               "details": {"error": "DeviceNotRegistered"}}]}
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import httpx
import structlog

from app.config import get_settings

logger = structlog.get_logger("rapport.push")

EXPO_TOKEN_PREFIXES: tuple[str, ...] = ("ExponentPushToken[", "ExpoPushToken[")

# Gateway error codes meaning the token will never work again.
DEAD_TOKEN_ERRORS: frozenset[str] = frozenset({"DeviceNotRegistered", "InvalidCredentials"})


class PushGatewayError(Exception):
    """The gateway could not be reached or answered with garbage."""


@dataclass(frozen=True)
class PushTicket:
    token: str
    status: str
    error: str | None = None
    message: str | None = None

    @property
    def is_dead_token(self) -> bool:
        return self.status == "error" and self.error in DEAD_TOKEN_ERRORS


def is_expo_token(token: str) -> bool:
    return token.startswith(EXPO_TOKEN_PREFIXES)


class ExpoPushClient:
    """Thin async wrapper around the Expo push ``send`` endpoint."""

    def __init__(
        self,
        url: str | None = None,
        timeout: float | None = None,
        access_token: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        settings = get_settings()
        self.url = url or settings.EXPO_PUSH_URL
        self.timeout = timeout if timeout is not None else settings.PUSH_TIMEOUT_SECONDS
        self.access_token = access_token if access_token is not None else settings.EXPO_ACCESS_TOKEN
        self._transport = transport

    async def send(self, messages: list[dict[str, Any]]) -> list[PushTicket]:
        """Send *messages* in one batch and return one ticket per message.

        Raises
        ------
        httpx.TimeoutException
            The gateway did not answer within ``timeout`` seconds.
        PushGatewayError
            Transport failure, non-2xx status, or an unreadable body.
        """
        if not messages:
            return []

        headers = {
            "Accept": "application/json",
            "Content-Type": "application/json",
        }
        if self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"

        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            try:
                response = await client.post(self.url, json=messages, headers=headers)
                response.raise_for_status()
                body = response.json()
            except httpx.TimeoutException:
                raise
            except (httpx.HTTPError, ValueError) as exc:
                raise PushGatewayError(str(exc)) from exc

        raw_tickets = body.get("data") if isinstance(body, dict) else None
        if not isinstance(raw_tickets, list):
            raise PushGatewayError("Push gateway response has no ticket list")

        tickets: list[PushTicket] = []
        for message, raw in zip(messages, raw_tickets):
            raw = raw if isinstance(raw, dict) else {}
            details = raw.get("details") or {}
            tickets.append(
                PushTicket(
                    token=message["to"],
                    status=str(raw.get("status", "unknown")),
                    error=details.get("error") if isinstance(details, dict) else None,
                    message=raw.get("message"),
                )
            )

        logger.debug("push_batch_sent", count=len(messages), tickets=len(tickets))
        return tickets
