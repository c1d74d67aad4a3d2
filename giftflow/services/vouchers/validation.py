"""Validation and normalization of inbound gift requests.

Every rule is evaluated on every request so the caller gets one complete list
of violations rather than the first one found.
"""

import math

from pydantic import BaseModel, ValidationError

from giftflow.common.config import settings
from giftflow.services.vouchers.schemas import FieldError, VoucherGiftRequest


class AmountPolicy(BaseModel):
    min_amount: float = settings.min_amount
    max_amount: float = settings.max_amount
    high_value_threshold: float = settings.high_value_threshold

    def is_high_value(self, amount: float) -> bool:
        return amount >= self.high_value_threshold


class GiftValidationError(ValueError):
    """Raised with the full list of field violations for one request."""

    def __init__(self, errors: list[FieldError]) -> None:
        super().__init__("; ".join(f"{e.field}: {e.message}" for e in errors))
        self.errors = errors


def _is_number(value) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return not isinstance(value, float) or math.isfinite(value)


def _get(raw: dict, camel: str, snake: str):
    return raw[camel] if camel in raw else raw.get(snake)


def _present(value) -> bool:
    return value is not None and (not isinstance(value, str) or bool(value.strip()))


def _format_amount(value: float) -> str:
    return f"${value:,.0f}" if float(value).is_integer() else f"${value:,.2f}"


def _schema_errors(exc: ValidationError) -> list[FieldError]:
    errors = []
    for err in exc.errors():
        field = ".".join(str(part) for part in err["loc"]) or "body"
        message = err["msg"].removeprefix("Value error, ")
        errors.append(FieldError(field=field, message=message))
    return errors


def _policy_errors(raw: dict, policy: AmountPolicy) -> list[FieldError]:
    errors = []
    amount = raw.get("amount")
    if _is_number(amount):
        if amount <= 0:
            errors.append(FieldError(field="amount", message="Amount must be a positive number"))
        elif amount < policy.min_amount:
            errors.append(
                FieldError(field="amount", message=f"Amount must be at least {_format_amount(policy.min_amount)}")
            )
        if amount > policy.max_amount:
            errors.append(
                FieldError(field="amount", message=f"Amount cannot exceed {_format_amount(policy.max_amount)}")
            )
        if policy.is_high_value(amount) and _get(raw, "confirmHighValue", "confirm_high_value") is not True:
            errors.append(
                FieldError(
                    field="confirmHighValue",
                    message=(
                        f"High-value vouchers ({_format_amount(policy.high_value_threshold)}+) "
                        "require confirmation"
                    ),
                )
            )

    has_email = _present(_get(raw, "recipientEmail", "recipient_email"))
    has_wallet = _present(_get(raw, "walletAddress", "wallet_address"))
    if not has_email and not has_wallet:
        errors.append(
            FieldError(field="recipient", message="Either recipientEmail or walletAddress must be provided")
        )
    elif has_email and has_wallet:
        errors.append(
            FieldError(field="recipient", message="Provide either recipientEmail or walletAddress, not both")
        )
    return errors


def validate_gift_request(raw, policy: AmountPolicy | None = None) -> VoucherGiftRequest:
    """Return the canonical request or raise `GiftValidationError` listing every violation."""

    if not isinstance(raw, dict):
        raise GiftValidationError([FieldError(field="body", message="Request body must be a JSON object")])
    policy = policy or AmountPolicy()

    errors: list[FieldError] = []
    request = None
    try:
        request = VoucherGiftRequest.model_validate(raw)
    except ValidationError as exc:
        errors.extend(_schema_errors(exc))
    errors.extend(_policy_errors(raw, policy))

    if errors:
        raise GiftValidationError(errors)
    return request
