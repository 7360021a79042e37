from datetime import datetime

from sqlmodel import Field, SQLModel

from reconciler.core.clock import utcnow


class User(SQLModel, table=True):
    id: int | None = Field(default=None, primary_key=True)
    email: str = Field(unique=True, index=True)
    full_name: str = ""
    membership_tier: str = "free"  # free | plus | pro | business
    membership_status: str = "active"
    membership_started_at: datetime | None = None
    membership_expires_at: datetime | None = None
    membership_source: str | None = None
    # Order whose fulfillment produced the current membership
    membership_order_id: int | None = Field(default=None, index=True)
    created_at: datetime | None = Field(default_factory=utcnow)
