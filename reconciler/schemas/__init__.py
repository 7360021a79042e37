from .payment import CanonicalTransaction, ResolveOrderRequest

__all__ = [
    "CanonicalTransaction",
    "ResolveOrderRequest",
]
