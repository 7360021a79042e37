"""Rate-limit hits on the webhook endpoint."""
from datetime import datetime

from sqlmodel import Field, SQLModel

from reconciler.core.clock import utcnow


class SecurityLog(SQLModel, table=True):
    __tablename__ = "security_logs"
    id: int | None = Field(default=None, primary_key=True)
    event: str = Field(index=True)  # rate_limit
    ip: str | None = None
    endpoint: str | None = None
    detail: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
