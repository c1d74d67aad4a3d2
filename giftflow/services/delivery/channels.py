"""Delivery channels for voucher gifts and the retryable-error classification."""

import asyncio
from datetime import datetime, timezone

import httpx
from pydantic import BaseModel

from giftflow.common.logging import logger
from giftflow.services.vouchers.schemas import DeliveryMessage


class DeliveryError(Exception):
    """Base class for failures raised by a delivery channel."""


class TransientDeliveryError(DeliveryError):
    """Downstream temporarily unavailable; worth another attempt."""


class PermanentDeliveryError(DeliveryError):
    """Downstream refused the delivery; retrying will not help."""


TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
    TransientDeliveryError,
    ConnectionError,
    TimeoutError,
    asyncio.TimeoutError,
    httpx.TransportError,
)


def is_transient(exc: BaseException) -> bool:
    return isinstance(exc, TRANSIENT_ERRORS)


class DeliveryReceipt(BaseModel):
    channel: str
    reference: str
    delivered_at: datetime


class DeliveryChannel:
    """One way of getting a voucher to its recipient."""

    name = "base"

    async def deliver(self, message: DeliveryMessage) -> DeliveryReceipt:
        raise NotImplementedError

    def _receipt(self, reference: str) -> DeliveryReceipt:
        return DeliveryReceipt(channel=self.name, reference=reference, delivered_at=datetime.now(timezone.utc))


class EmailChannel(DeliveryChannel):
    """Emails a claim notice, through an HTTP relay when one is configured."""

    name = "email"

    def __init__(
        self,
        relay_url: str | None = None,
        timeout: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.relay_url = relay_url
        self.timeout = timeout
        self.transport = transport

    async def deliver(self, message: DeliveryMessage) -> DeliveryReceipt:
        recipient = message.recipient
        if not self.relay_url:
            logger.info(
                "simulated_email_sent voucher_id=%s to=%s amount=%s message=%s",
                message.voucher_id,
                recipient.address,
                message.amount,
                message.message or "",
            )
            return self._receipt(f"simulated-email:{message.voucher_id}")

        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            resp = await client.post(
                self.relay_url,
                json={
                    "to": recipient.address,
                    "template": "voucher_gift",
                    "voucher_id": message.voucher_id,
                    "amount": message.amount,
                    "message": message.message,
                },
                headers={"idempotency-key": message.voucher_id},
            )
        if resp.status_code == 429 or resp.status_code >= 500:
            raise TransientDeliveryError(f"email relay unavailable status={resp.status_code}")
        if resp.status_code >= 400:
            raise PermanentDeliveryError(f"email relay rejected status={resp.status_code} body={resp.text[:200]}")
        reference = resp.json().get("id") if resp.content else None
        logger.info("email_relayed voucher_id=%s to=%s reference=%s", message.voucher_id, recipient.address, reference)
        return self._receipt(reference or f"email:{message.voucher_id}")


class WalletChannel(DeliveryChannel):
    """Simulated on-chain transfer; logs the transfer it would submit."""

    name = "wallet"

    async def deliver(self, message: DeliveryMessage) -> DeliveryReceipt:
        recipient = message.recipient
        logger.info(
            "simulated_wallet_transfer voucher_id=%s wallet=%s amount=%s message=%s",
            message.voucher_id,
            recipient.address,
            message.amount,
            message.message or "",
        )
        return self._receipt(f"simulated-tx:{message.voucher_id}")


def default_channels(email_relay_url: str | None = None) -> dict[str, DeliveryChannel]:
    return {"email": EmailChannel(relay_url=email_relay_url), "wallet": WalletChannel()}
