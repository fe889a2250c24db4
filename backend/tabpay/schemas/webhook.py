"""Payment provider webhook payload."""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class PaymentNotification(BaseModel):
    """Bank transfer notification, parsed from the provider's field names.

    Example provider body::

        {"id": 92704, "transferAmount": 100000, "transactionDate": "2024-07-25 14:02:37",
         "accountNumber": "0123499999", "transferType": "in",
         "content": "Thanh toan don 66a1f0c2e4b0a1b2c3d4e5f6"}
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    transaction_id: str = Field(alias="id")
    amount: Decimal = Field(alias="transferAmount")
    timestamp: datetime = Field(alias="transactionDate")
    account_number: str = Field(alias="accountNumber")
    direction: str = Field(alias="transferType")
    memo: Optional[str] = Field(default="", alias="content")

    @field_validator("transaction_id", "account_number", mode="before")
    @classmethod
    def _to_str(cls, v):
        if v is None or v == "":
            raise ValueError("value is required")
        return str(v).strip()

    @field_validator("timestamp")
    @classmethod
    def _assume_utc(cls, v: datetime) -> datetime:
        return v if v.tzinfo else v.replace(tzinfo=timezone.utc)

    @field_validator("memo", mode="before")
    @classmethod
    def _memo_text(cls, v):
        return "" if v is None else str(v)
