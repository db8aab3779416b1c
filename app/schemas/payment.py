"""
app/schemas/payment.py

Purpose: Payment boundary schemas

- Inbound Mercado Pago notification envelope
- Authoritative payment details returned by a status lookup
- Checkout metadata, validated once before any downstream use
"""

from pydantic import BaseModel, Field, field_validator
from typing import Any, Dict, Optional

from utils.validation_utils import validate_email, validate_phone


class PaymentNotificationData(BaseModel):
    id: Optional[str] = None

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, v):
        # Mercado Pago sends numeric ids in some payloads
        if v is None:
            return None
        return str(v).strip() or None


class PaymentNotification(BaseModel):
    """
    {"type": "payment", "data": {"id": "<payment id>"}}
    """
    type: Optional[str] = None
    action: Optional[str] = None
    data: PaymentNotificationData = Field(default_factory=PaymentNotificationData)

    @property
    def payment_id(self) -> Optional[str]:
        if self.type != "payment":
            return None
        return self.data.id


class PaymentMetadata(BaseModel):
    """
    Metadata attached to a checkout and echoed back by the payment gateway.
    Every field is required; incomplete metadata is rejected.
    """
    telegram_user_id: int
    name: str = Field(..., min_length=1)
    email: str
    phone: str

    @field_validator("name", "email", "phone", mode="before")
    @classmethod
    def strip_text(cls, v):
        return v.strip() if isinstance(v, str) else v

    @field_validator("email")
    @classmethod
    def check_email(cls, v):
        if not validate_email(v):
            raise ValueError("invalid email")
        return v

    @field_validator("phone")
    @classmethod
    def check_phone(cls, v):
        if not validate_phone(v):
            raise ValueError("invalid phone")
        return v

    def contact(self) -> Dict[str, str]:
        return {"name": self.name, "email": self.email, "phone": self.phone}


class PaymentInfo(BaseModel):
    """
    Authoritative payment state from a gateway lookup. `metadata` stays
    raw here and is validated into PaymentMetadata by the processor.
    """
    id: str
    status: str
    status_detail: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    transaction_amount: Optional[float] = None
    currency_id: Optional[str] = None

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, v):
        return str(v)

    @field_validator("metadata", mode="before")
    @classmethod
    def default_metadata(cls, v):
        return v or {}

    @property
    def is_approved(self) -> bool:
        return self.status == "approved"
