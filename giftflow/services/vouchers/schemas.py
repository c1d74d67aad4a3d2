"""Request/response and queue payload schemas for voucher gifts."""

import math
from datetime import datetime
from typing import Annotated, Literal, Union
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field, StrictBool, field_validator
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Accepts and emits the camelCase field names used on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class EmailRecipient(BaseModel):
    channel: Literal["email"] = "email"
    address: EmailStr


class WalletRecipient(BaseModel):
    channel: Literal["wallet"] = "wallet"
    address: str = Field(min_length=1)


Recipient = Annotated[Union[EmailRecipient, WalletRecipient], Field(discriminator="channel")]


class VoucherGiftRequest(CamelModel):
    """Typed shape of a gift request; policy rules live in `validation`."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    recipient_email: EmailStr | None = None
    wallet_address: str | None = None
    amount: float
    message: str | None = None
    idempotency_key: UUID | None = None
    confirm_high_value: StrictBool | None = None

    @field_validator("recipient_email", "wallet_address", mode="before")
    @classmethod
    def _blank_is_absent(cls, value):
        if isinstance(value, str):
            value = value.strip()
            return value or None
        return value

    @field_validator("amount", mode="before")
    @classmethod
    def _amount_must_be_number(cls, value):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValueError("Amount must be a number")
        if isinstance(value, float) and not math.isfinite(value):
            raise ValueError("Amount must be a finite number")
        return value

    @property
    def recipient(self) -> EmailRecipient | WalletRecipient:
        if self.recipient_email is not None:
            return EmailRecipient(address=self.recipient_email)
        return WalletRecipient(address=self.wallet_address or "")


class DeliveryMessage(CamelModel):
    """Queue payload: the voucher fields needed to attempt delivery."""

    voucher_id: str = Field(min_length=1)
    recipient_email: str | None = None
    wallet_address: str | None = None
    amount: float
    message: str | None = None

    @property
    def recipient(self) -> EmailRecipient | WalletRecipient:
        if self.recipient_email:
            return EmailRecipient(address=self.recipient_email)
        if self.wallet_address:
            return WalletRecipient(address=self.wallet_address)
        raise ValueError(f"voucher {self.voucher_id} has no recipient channel")


class SubmissionResult(CamelModel):
    """`data` section of a successful gift response."""

    id: str
    status: str
    is_high_value: bool
    idempotency_key: str | None = None
    idempotent: bool = False


class VoucherView(CamelModel):
    """Read model returned by `GET /api/vouchers/{id}`."""

    id: str
    recipient_email: str | None = None
    wallet_address: str | None = None
    amount: float
    message: str | None = None
    status: str
    is_high_value: bool
    created_at: datetime
    updated_at: datetime | None = None


class FieldError(BaseModel):
    field: str
    message: str
