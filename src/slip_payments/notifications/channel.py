"""Messaging channel transports."""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional

import httpx

from ..exceptions import NotificationFailure

logger = logging.getLogger(__name__)

LINE_API_URL = "https://api.line.me/v2/bot/message"


@dataclass
class SendReceipt:
    """Acknowledgement returned by the channel for one accepted message."""
    message_id: Optional[str] = None
    duplicate: bool = False


class MessagingChannel(ABC):
    """Send-and-get-receipt transport for outcome messages."""

    name = "base"

    @abstractmethod
    async def send(self, recipients: List[str], text: str, retry_key: str) -> SendReceipt:
        """Send ``text`` to every recipient.

        ``retry_key`` is stable across retries of the same message so the
        provider can drop a resend it already accepted.

        Raises:
            NotificationFailure: With ``transient`` set when a retry may help.
        """
        raise NotImplementedError

    async def aclose(self) -> None:
        return None


class LineMessagingChannel(MessagingChannel):
    """LINE Messaging API push/multicast transport."""

    name = "line"

    def __init__(
        self,
        access_token: str,
        base_url: str = LINE_API_URL,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        if not access_token:
            raise ValueError("LINE channel access token is required")
        self.access_token = access_token
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def send(self, recipients: List[str], text: str, retry_key: str) -> SendReceipt:
        if len(recipients) == 1:
            url = f"{self.base_url}/push"
            body = {"to": recipients[0], "messages": [{"type": "text", "text": text}]}
        else:
            url = f"{self.base_url}/multicast"
            body = {"to": recipients, "messages": [{"type": "text", "text": text}]}
        headers = {
            "Authorization": f"Bearer {self.access_token}",
            "X-Line-Retry-Key": retry_key,
        }

        try:
            resp = await self._client.post(url, json=body, headers=headers)
        except httpx.TimeoutException as e:
            raise NotificationFailure("LINE request timed out", transient=True) from e
        except httpx.RequestError as e:
            raise NotificationFailure(f"LINE request failed: {e!r}", transient=True) from e

        if resp.status_code == 200:
            return SendReceipt(message_id=resp.headers.get("x-line-request-id"))
        if resp.status_code == 409:
            # Retry key already accepted: the earlier attempt went through
            return SendReceipt(
                message_id=resp.headers.get("x-line-accepted-request-id"),
                duplicate=True,
            )
        if resp.status_code == 429 or resp.status_code >= 500:
            raise NotificationFailure(f"LINE returned {resp.status_code}", transient=True)
        raise NotificationFailure(
            f"LINE rejected message: {resp.status_code} {resp.text[:200]}",
            transient=False,
        )


class LoggingChannel(MessagingChannel):
    """Writes messages to the log instead of sending them."""

    name = "log"

    async def send(self, recipients: List[str], text: str, retry_key: str) -> SendReceipt:
        logger.info(f"Message {retry_key} to {', '.join(recipients)}: {text}")
        return SendReceipt(message_id=retry_key)
