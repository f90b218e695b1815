"""Request/result shapes exchanged with the invoice client."""

import re
from enum import Enum

from pydantic import BaseModel, Field, field_validator

IDENTITY_PATTERN = re.compile(r"^[A-Za-z0-9_]{5,32}$")


class IdentityValidationError(ValueError):
    """Raised for a blank or malformed Telegram username."""


def normalize_identity(raw: str | None) -> str:
    """Strip whitespace and one leading `@`, then check the handle format."""

    handle = (raw or "").strip()
    if handle.startswith("@"):
        handle = handle[1:]
    if not handle:
        raise IdentityValidationError("Telegram username is required")
    if not IDENTITY_PATTERN.fullmatch(handle):
        raise IdentityValidationError(
            "Telegram username must be 5-32 characters: letters, digits or underscore"
        )
    return handle


class PaymentStatus(str, Enum):
    """Local view of a gateway invoice status."""

    PENDING = "PENDING"
    PAID = "PAID"
    CANCELLED = "CANCELLED"
    UNKNOWN = "unknown"
    ERROR = "error"


TERMINAL_STATUSES = {PaymentStatus.PAID, PaymentStatus.CANCELLED}


class PaymentRequest(BaseModel):
    """One invoice creation request built by the orchestrator."""

    order_id: str = Field(min_length=1)
    fiat_amount: float = Field(gt=0, allow_inf_nan=False)
    description: str
    customer_identity: str
    redirect_url: str

    @field_validator("customer_identity")
    @classmethod
    def _check_identity(cls, value: str) -> str:
        return normalize_identity(value)


class InvoiceResult(BaseModel):
    """Outcome of `create_invoice`; failures carry a user-facing message."""

    success: bool
    payment_url: str | None = None
    invoice_id: str | None = None
    error: str | None = None


class StatusResult(BaseModel):
    """Outcome of a status query."""

    status: PaymentStatus
    success: bool
    invoice_id: str | None = None


class CallbackResult(BaseModel):
    """Outcome of webhook processing."""

    success: bool
    message: str
