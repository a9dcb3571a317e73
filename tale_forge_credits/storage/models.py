"""
Data models for storage layer.

Defines accounts, ledger transactions and usage windows.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict


class SubscriptionTier(Enum):
    """Subscription tiers an account can be on."""
    FREE = "free"
    STARTER = "starter"
    PREMIUM = "premium"

    @property
    def is_paid(self) -> bool:
        return self is not SubscriptionTier.FREE


class OperationKind(Enum):
    """Priced generation operations."""
    STORY_TEXT = "story_text"
    STORY_SEGMENT = "story_segment"
    IMAGE = "image"
    CHARACTER_IMAGE = "character_image"
    AUDIO = "audio"
    VIDEO = "video"


FIXED_OPERATION_KINDS = frozenset({
    OperationKind.STORY_TEXT,
    OperationKind.STORY_SEGMENT,
    OperationKind.IMAGE,
    OperationKind.CHARACTER_IMAGE,
})


class TransactionReason(Enum):
    """Tag recorded on every ledger transaction.

    Spend reasons share their value with the operation kind that caused them.
    """
    STORY_TEXT = "story_text"
    STORY_SEGMENT = "story_segment"
    IMAGE = "image"
    CHARACTER_IMAGE = "character_image"
    AUDIO = "audio"
    VIDEO = "video"
    PURCHASE = "purchase"
    SUBSCRIPTION_RENEWAL = "subscription_renewal"
    REFUND = "refund"
    ADMIN_ADJUSTMENT = "admin_adjustment"


GRANT_REASONS = frozenset({
    TransactionReason.PURCHASE,
    TransactionReason.SUBSCRIPTION_RENEWAL,
})


@dataclass(frozen=True)
class Account:
    """Credit account for a single user."""
    user_id: str
    current_balance: int
    subscription_tier: SubscriptionTier
    seed_balance: int
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class Transaction:
    """Immutable ledger record of one credit-affecting event.

    Negative amounts are spends, positive amounts are grants and refunds.
    ``(user_id, reference_id, reason)`` is unique across the ledger.
    """
    transaction_id: str
    user_id: str
    amount: int
    reason: TransactionReason
    reference_id: str
    balance_after: int
    created_at: datetime
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class AppliedTransaction:
    """Outcome of applying a transaction to a balance.

    ``replayed`` is True when the reference had already been applied and the
    prior result was returned instead of writing a new row.
    """
    new_balance: int
    transaction_id: str
    replayed: bool = False


@dataclass(frozen=True)
class UsageWindow:
    """Counted uses of one feature by one user within a rolling period."""
    user_id: str
    feature: str
    count: int
    window_start: datetime

    def rolled(self, now: datetime, period: timedelta) -> "UsageWindow":
        """Return the window as seen at ``now``, reset if the period elapsed."""
        if now - self.window_start >= period:
            return UsageWindow(
                user_id=self.user_id,
                feature=self.feature,
                count=0,
                window_start=now
            )
        return self
