"""Subscription records, tier assignment and change notification."""

from .assignment import TierAssignment
from .models import PurchaseResult, Subscription, SubscriptionState
from .notifier import ChangeNotifier

__all__ = ["ChangeNotifier", "PurchaseResult", "Subscription", "SubscriptionState", "TierAssignment"]
