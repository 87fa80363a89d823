"""EasySlip connector: verifies Thai bank transfer slips from their image."""

import base64
import logging
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

import httpx

from ..clock import to_naive_utc
from ..exceptions import BlobNotFound, StorageUnavailable
from ..storage import BlobStore
from .base import (
    PermanentFailure,
    ProviderOutcome,
    SlipVerificationProvider,
    TransientFailure,
    VerificationResult,
    VerificationSuccess,
)

logger = logging.getLogger(__name__)

EASYSLIP_API_URL = "https://developer.easyslip.com/api/v1"

# 429 is the weekly quota being exhausted
TRANSIENT_STATUS_CODES = {408, 429, 500, 502, 503, 504}


def _to_minor_units(value: Any) -> int:
    try:
        return int((Decimal(str(value)) * 100).quantize(Decimal("1")))
    except (InvalidOperation, TypeError) as e:
        raise ValueError(f"Invalid amount {value!r}") from e


def _parse_timestamp(value: str) -> datetime:
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return to_naive_utc(datetime.fromisoformat(value))


def _account_value(party: Dict[str, Any]) -> Optional[str]:
    account = party.get("account") or {}
    value = account.get("value") or (account.get("bank") or {}).get("account")
    return value or None


def _party_name(party: Dict[str, Any]) -> Optional[str]:
    if party.get("name"):
        return party["name"]
    name = (party.get("account") or {}).get("name") or {}
    return name.get("th") or name.get("en") or None


class EasySlipProvider(SlipVerificationProvider):
    """
    Connector for the EasySlip ``/verify`` endpoint.

    The image is read from the blob store and posted as base64. HTTP 429,
    5xx, timeouts and transport errors are transient; any other refusal is
    permanent and carries the provider's message as the reason.
    """

    name = "easyslip"

    def __init__(
        self,
        api_key: str,
        blob_store: BlobStore,
        base_url: str = EASYSLIP_API_URL,
        timeout: float = 15.0,
        currency: str = "THB",
        client: Optional[httpx.AsyncClient] = None,
    ):
        if not api_key:
            raise ValueError("EasySlip API key is required")
        self.api_key = api_key
        self.blob_store = blob_store
        self.base_url = base_url.rstrip("/")
        self.currency = currency
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def verify(self, image_ref: str) -> ProviderOutcome:
        try:
            image = await self.blob_store.get(image_ref)
        except BlobNotFound:
            return PermanentFailure(reason="image_missing")
        except StorageUnavailable as e:
            return TransientFailure(reason=f"storage_unavailable: {e.message}")

        payload = {"image": base64.b64encode(image).decode("ascii")}
        headers = {"Authorization": f"Bearer {self.api_key}"}

        try:
            resp = await self._client.post(f"{self.base_url}/verify", json=payload, headers=headers)
        except httpx.TimeoutException:
            return TransientFailure(reason="timeout")
        except httpx.RequestError as e:
            return TransientFailure(reason=f"network_error: {e!r}")

        if resp.status_code in TRANSIENT_STATUS_CODES:
            logger.warning(f"EasySlip returned {resp.status_code} for {image_ref}")
            return TransientFailure(reason=f"http_{resp.status_code}")

        try:
            body = resp.json()
        except ValueError:
            return PermanentFailure(reason=f"invalid_provider_response: http_{resp.status_code}")
        if not isinstance(body, dict):
            logger.error(f"EasySlip returned a non-object body for {image_ref}")
            return PermanentFailure(reason="invalid_provider_response")

        if resp.status_code != 200 or body.get("status") != 200 or not body.get("data"):
            reason = body.get("message") or f"http_{resp.status_code}"
            return PermanentFailure(reason=str(reason))

        try:
            return VerificationSuccess(result=self._parse(body["data"]))
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            logger.error(f"Unparseable EasySlip payload for {image_ref}: {e}")
            return PermanentFailure(reason="invalid_provider_response")

    def _parse(self, data: Dict[str, Any]) -> VerificationResult:
        amount = data["amount"]
        if not isinstance(amount, dict):
            amount = {"amount": amount}
        local = amount.get("local") or {}
        timestamp = data.get("transTimestamp") or data["date"]
        sender = data.get("sender") or {}
        receiver = data.get("receiver") or {}
        return VerificationResult(
            transaction_ref=data["transRef"],
            amount=_to_minor_units(amount["amount"]),
            currency=(local.get("currency") or self.currency).upper(),
            settled_at=_parse_timestamp(timestamp),
            sender_account_hint=_account_value(sender),
            sender_name=_party_name(sender),
            receiver_account=_account_value(receiver),
            raw=data,
        )
