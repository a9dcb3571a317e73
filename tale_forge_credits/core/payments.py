"""
Credit grants from payment events.

Translates payment webhook events into idempotent credit grants. The payment
event id is the reference id, so a redelivered webhook never grants twice.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .coordinator import CreditCoordinator
from .errors import CreditEngineError
from tale_forge_credits.storage.models import AppliedTransaction, TransactionReason

logger = logging.getLogger(__name__)


class PaymentKind(Enum):
    """What a payment event pays for."""
    ONE_TIME = "one_time"
    SUBSCRIPTION_CREATE = "subscription_create"
    SUBSCRIPTION_RENEWAL = "subscription_renewal"


class UnknownPriceError(CreditEngineError):
    def __init__(self, price_id: str):
        self.price_id = price_id
        super().__init__(f"Unknown price ID: {price_id}")


@dataclass(frozen=True)
class PaymentEvent:
    """The parts of a payment webhook event the credit engine needs."""
    event_id: str
    user_id: str
    price_id: str
    kind: PaymentKind = PaymentKind.ONE_TIME


@dataclass(frozen=True)
class GrantOutcome:
    event_id: str
    user_id: str
    credits: int
    transaction: AppliedTransaction
    tier: Optional[str] = None


class PaymentGrantProcessor:
    """Applies payment events to accounts through the coordinator."""

    def __init__(self, coordinator: CreditCoordinator):
        self.coordinator = coordinator

    def handle(self, event: PaymentEvent) -> GrantOutcome:
        """Grant the credits a payment event pays for.

        Subscription prices also move the account to the subscribed tier.

        Raises:
            ValueError: If the event is missing its id or user
            UnknownPriceError: If the price is not in the credit packs
            AccountNotFound: If the user has no account
        """
        if not event.event_id:
            raise ValueError("event_id is required")
        if not event.user_id:
            raise ValueError("user_id is required")

        pack = self.coordinator.config.credit_packs.get(event.price_id)
        if pack is None:
            logger.error(
                "Unknown price ID %s in payment event %s for %s",
                event.price_id, event.event_id, event.user_id
            )
            raise UnknownPriceError(event.price_id)

        reason = TransactionReason.PURCHASE
        if event.kind is PaymentKind.SUBSCRIPTION_RENEWAL:
            reason = TransactionReason.SUBSCRIPTION_RENEWAL

        applied = self.coordinator.grant(
            event.user_id,
            pack.credits,
            reason,
            event.event_id,
            metadata={"price_id": event.price_id, "payment_kind": event.kind.value}
        )

        tier = None
        if pack.tier is not None and event.kind is not PaymentKind.ONE_TIME:
            account = self.coordinator.store.set_subscription_tier(event.user_id, pack.tier)
            tier = account.subscription_tier.value

        return GrantOutcome(
            event_id=event.event_id,
            user_id=event.user_id,
            credits=pack.credits,
            transaction=applied,
            tier=tier
        )
