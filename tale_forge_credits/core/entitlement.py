"""
Entitlement checks.

Decides, before any external work begins, whether a user may perform a
priced operation.

Check Order:
1. Subscription gate - Gated operations are denied to free accounts outright
2. Daily limit - Tier-limited operations are denied once the window is full
3. Credit balance - The quoted cost must be covered by the current balance
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Mapping, Optional, Union

from .errors import DailyLimitReached, InsufficientCredits, SubscriptionRequired
from .pricing import CostQuote, PricingTable
from .usage_limits import UsageLimitCounter
from tale_forge_credits.config.loader import CreditConfig
from tale_forge_credits.storage.models import Account, OperationKind
from tale_forge_credits.storage.repository import BalanceStore


class DenialReason(Enum):
    """Why an operation was denied."""
    SUBSCRIPTION_REQUIRED = "subscription_required"
    DAILY_LIMIT_REACHED = "daily_limit_reached"
    INSUFFICIENT_CREDITS = "insufficient_credits"


@dataclass(frozen=True)
class EntitlementResult:
    """Answer to "may this user do X right now"."""
    allowed: bool
    operation_kind: OperationKind
    reason: Optional[DenialReason] = None
    cost: Optional[int] = None
    balance: Optional[int] = None
    deficit: Optional[int] = None
    used: Optional[int] = None
    limit: Optional[int] = None
    remaining: Optional[int] = None
    resets_at: Optional[datetime] = None
    tier: Optional[str] = None

    def raise_for_denial(self) -> None:
        """Raise the entitlement error matching a denial; no-op when allowed."""
        if self.allowed:
            return
        if self.reason is DenialReason.SUBSCRIPTION_REQUIRED:
            raise SubscriptionRequired(self.operation_kind.value, self.tier or "free")
        if self.reason is DenialReason.DAILY_LIMIT_REACHED:
            raise DailyLimitReached(self.used, self.limit, self.resets_at)
        raise InsufficientCredits(self.cost, self.balance)


class EntitlementChecker:
    """Read-only entitlement decisions over balances, tiers and usage windows."""

    def __init__(
        self,
        config: CreditConfig,
        pricing: PricingTable,
        store: BalanceStore,
        usage_counter: UsageLimitCounter
    ):
        self.config = config
        self.pricing = pricing
        self.store = store
        self.usage_counter = usage_counter

    def check(
        self,
        user_id: str,
        operation_kind: Union[OperationKind, str],
        context: Optional[Mapping[str, Any]] = None
    ) -> EntitlementResult:
        """Decide whether ``user_id`` may perform ``operation_kind``.

        Nothing is mutated: neither the balance nor the usage window.

        Args:
            user_id: Account to check
            operation_kind: Operation being attempted
            context: Cost inputs for variable-priced operations

        Returns:
            EntitlementResult describing the decision

        Raises:
            AccountNotFound: If the user has no account
            ValueError: If the cost inputs are missing or invalid
        """
        kind = OperationKind(operation_kind)
        account = self.store.get_account(user_id)

        denial = self._check_limits(account, kind)
        if denial is not None:
            return denial
        return self._check_funds(account, self.pricing.quote(kind, context))

    def check_quote(
        self,
        user_id: str,
        quote: CostQuote,
        require_funds: bool = True,
        check_daily_limit: bool = True
    ) -> EntitlementResult:
        """Check an already computed quote.

        ``require_funds=False`` skips the balance test for operations that
        are already paid for, such as a retried request whose charge exists.
        ``check_daily_limit=False`` does the same for a request that already
        holds a slot in the usage window.
        """
        account = self.store.get_account(user_id)
        denial = self._check_limits(account, quote.operation_kind, check_daily_limit)
        if denial is not None:
            return denial
        if not require_funds:
            return EntitlementResult(
                allowed=True,
                operation_kind=quote.operation_kind,
                cost=quote.computed_cost,
                balance=account.current_balance,
                tier=account.subscription_tier.value
            )
        return self._check_funds(account, quote)

    def daily_limit_for(self, account: Account, kind: OperationKind) -> Optional[int]:
        return self.config.daily_limit(account.subscription_tier, kind)

    def _check_limits(
        self,
        account: Account,
        kind: OperationKind,
        check_daily_limit: bool = True
    ) -> Optional[EntitlementResult]:
        tier = account.subscription_tier

        if kind in self.config.subscription_required and not tier.is_paid:
            return EntitlementResult(
                allowed=False,
                operation_kind=kind,
                reason=DenialReason.SUBSCRIPTION_REQUIRED,
                balance=account.current_balance,
                tier=tier.value
            )

        limit = self.daily_limit_for(account, kind)
        if limit is not None and check_daily_limit:
            usage = self.usage_counter.status(account.user_id, kind.value, limit)
            if not usage.success:
                return EntitlementResult(
                    allowed=False,
                    operation_kind=kind,
                    reason=DenialReason.DAILY_LIMIT_REACHED,
                    balance=account.current_balance,
                    used=usage.used,
                    limit=usage.limit,
                    remaining=0,
                    resets_at=usage.reset_at,
                    tier=tier.value
                )
        return None

    def _check_funds(self, account: Account, quote: CostQuote) -> EntitlementResult:
        cost = quote.computed_cost
        balance = account.current_balance
        if balance >= cost:
            return EntitlementResult(
                allowed=True,
                operation_kind=quote.operation_kind,
                cost=cost,
                balance=balance,
                tier=account.subscription_tier.value
            )
        return EntitlementResult(
            allowed=False,
            operation_kind=quote.operation_kind,
            reason=DenialReason.INSUFFICIENT_CREDITS,
            cost=cost,
            balance=balance,
            deficit=cost - balance,
            tier=account.subscription_tier.value
        )
