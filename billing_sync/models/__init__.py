from .account import Account, SubscriptionStatus
from .processed_event import ProcessedEvent

__all__ = [
    "Account",
    "SubscriptionStatus",
    "ProcessedEvent",
]
