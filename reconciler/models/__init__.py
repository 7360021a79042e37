from .audit import PaymentAuditLog
from .error_log import ErrorLog
from .payment import PaymentOrder, PaymentOrderCode, PaymentTransaction, WebhookEvent
from .security_log import SecurityLog
from .user import User

__all__ = [
    "ErrorLog",
    "PaymentAuditLog",
    "PaymentOrder",
    "PaymentOrderCode",
    "PaymentTransaction",
    "SecurityLog",
    "User",
    "WebhookEvent",
]
