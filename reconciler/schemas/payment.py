from typing import Any

from pydantic import BaseModel, Field


class CanonicalTransaction(BaseModel):
    """Gateway payload mapped onto one shape; nothing downstream reads the raw body's field names."""

    provider_transaction_id: str | None = None
    gateway: str | None = None
    transaction_date: str | None = None
    account_number: str | None = None
    code: str | None = None
    content: str = ""
    transfer_type: str | None = None
    transfer_amount: int = 0
    reference_code: str | None = None
    description: str | None = None
    # Body as received, kept for audit rows only
    raw: Any = Field(default=None, exclude=True)

    def payment_snapshot(self, provider: str) -> dict:
        """Metadata copied onto the order once the transaction is tied to it."""
        return {
            "provider": provider,
            "gateway": self.gateway,
            "transaction_date": self.transaction_date,
            "account_number": self.account_number,
            "reference_code": self.reference_code,
            "transfer_amount": self.transfer_amount,
            "content": self.content,
        }


class ResolveOrderRequest(BaseModel):
    """Operator approval of a needs_review order."""
    note: str | None = Field(default=None, max_length=500)
