"""
Credit transaction coordination.

Every generation endpoint charges through ``CreditCoordinator.with_charge``,
which runs the charge-after-success protocol:

1. Quote - Compute the cost from the operation's inputs
2. Check - Deny before any external work if the user is not entitled
3. Count - Consume a daily-limit slot for tier-limited operations
4. Execute - Run the caller's work with no lock held
5. Charge - Deduct the cost, keyed by the artifact or request id

Work that fails is never charged. A charge that is retried, for example
after a crash between persisting the artifact and deducting, is absorbed by
the balance store's idempotent replay.
"""

import logging
import random
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Mapping, Optional, Union

from .entitlement import EntitlementChecker, EntitlementResult
from .errors import (
    AccountNotFound,
    ChargeFailed,
    DailyLimitReached,
    InsufficientFunds,
    StoreUnavailable,
    WorkFailed,
)
from .pricing import CostQuote, PricingTable
from .usage_limits import UsageLimitCounter
from tale_forge_credits.config.loader import CreditConfig
from tale_forge_credits.storage.models import (
    GRANT_REASONS,
    Account,
    AppliedTransaction,
    OperationKind,
    SubscriptionTier,
    TransactionReason,
)
from tale_forge_credits.storage.repository import BalanceStore, UsageWindowStore, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GeneratedArtifact:
    """Something a generation endpoint produced and persisted."""
    id: str
    payload: Any = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ChargeResult:
    """Completed operation: the artifact and the balance after paying for it.

    ``transaction_id`` is None for free operations, which record nothing.
    """
    artifact: Any
    new_balance: int
    cost: int
    transaction_id: Optional[str] = None
    replayed: bool = False


def artifact_reference(artifact: Any) -> str:
    """Get the id used as the idempotency key for an artifact."""
    reference = getattr(artifact, "id", None)
    if reference is None and isinstance(artifact, Mapping):
        reference = artifact.get("id")
    if reference is None or str(reference) == "":
        raise ValueError("artifact has no id to use as reference_id")
    return str(reference)


class CreditCoordinator:
    """Charges, refunds and grants credits for a single credit configuration."""

    def __init__(
        self,
        config: CreditConfig,
        store: BalanceStore,
        usage_counter: UsageLimitCounter,
        pricing: Optional[PricingTable] = None,
        sleep: Callable[[float], None] = time.sleep
    ):
        self.config = config
        self.store = store
        self.usage_counter = usage_counter
        self.pricing = pricing or PricingTable(config.pricing)
        self.checker = EntitlementChecker(config, self.pricing, store, usage_counter)
        self._sleep = sleep

    @classmethod
    def from_config(
        cls,
        config: CreditConfig,
        db_path: str,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], None] = time.sleep
    ) -> "CreditCoordinator":
        """Wire a coordinator and its collaborators to one database."""
        store = BalanceStore(db_path, clock=clock)
        usage_counter = UsageLimitCounter(
            UsageWindowStore(db_path),
            period=timedelta(hours=config.usage_period_hours),
            clock=clock
        )
        return cls(config, store, usage_counter, sleep=sleep)

    def open_account(
        self,
        user_id: str,
        tier: SubscriptionTier = SubscriptionTier.FREE
    ) -> Account:
        """Register a user, seeded with the configured welcome bonus."""
        return self.store.create_account(user_id, tier, seed_balance=self.config.welcome_bonus)

    def quote(
        self,
        operation_kind: Union[OperationKind, str],
        cost_inputs: Optional[Mapping[str, Any]] = None
    ) -> CostQuote:
        return self.pricing.quote(operation_kind, cost_inputs)

    def check(
        self,
        user_id: str,
        operation_kind: Union[OperationKind, str],
        context: Optional[Mapping[str, Any]] = None
    ) -> EntitlementResult:
        """Advisory pre-check for cost previews and paywalls."""
        return self.checker.check(user_id, operation_kind, context)

    def with_charge(
        self,
        user_id: str,
        operation_kind: Union[OperationKind, str],
        cost_inputs: Optional[Mapping[str, Any]],
        work: Callable[[], Any],
        reference_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> ChargeResult:
        """Run ``work`` and charge for it only if it succeeds.

        Args:
            user_id: Account paying for the operation
            operation_kind: Operation being performed
            cost_inputs: Inputs for variable-priced operations
            work: Performs the generation and persists the artifact; must
                return the artifact and raise on failure
            reference_id: Stable client request id to charge against;
                defaults to the artifact's id
            metadata: Extra diagnostic payload stored on the transaction

        Returns:
            ChargeResult with the artifact and the new balance

        Raises:
            SubscriptionRequired, DailyLimitReached, InsufficientCredits:
                If the user is not entitled; ``work`` is never called
            WorkFailed: If ``work`` raised; nothing is charged
            ChargeFailed: If the charge could not be recorded; carries the
                artifact
        """
        kind = OperationKind(operation_kind)
        reason = TransactionReason(kind.value)
        quote = self.pricing.quote(kind, cost_inputs)

        prepaid = self._is_prepaid(user_id, reason, quote, reference_id)
        counted = self._is_counted(user_id, kind, reference_id)
        entitlement = self.checker.check_quote(
            user_id, quote, require_funds=not prepaid, check_daily_limit=not counted
        )
        if not entitlement.allowed and reference_id is not None:
            # The original request may have been charged or counted since the lookups
            recheck = (
                self._is_prepaid(user_id, reason, quote, reference_id),
                self._is_counted(user_id, kind, reference_id)
            )
            if recheck != (prepaid, counted):
                prepaid, counted = recheck
                entitlement = self.checker.check_quote(
                    user_id, quote, require_funds=not prepaid, check_daily_limit=not counted
                )
        if not entitlement.allowed:
            logger.info(
                "Denied %s for %s: %s (cost=%s balance=%s)",
                kind.value, user_id, entitlement.reason.value,
                entitlement.cost, entitlement.balance
            )
            entitlement.raise_for_denial()

        if not prepaid:
            self._count_daily_use(user_id, kind, reference_id)

        try:
            artifact = work()
            if artifact is None:
                raise ValueError("work returned no artifact")
        except Exception as e:
            logger.error(
                "Generation failed user_id=%s operation=%s reference_id=%s: %s",
                user_id, kind.value, reference_id, e
            )
            raise WorkFailed(e) from e

        if quote.computed_cost == 0:
            return ChargeResult(artifact=artifact, new_balance=entitlement.balance, cost=0)

        try:
            reference = reference_id or artifact_reference(artifact)
        except ValueError as e:
            logger.error(
                "Cannot charge %s for %s without a reference id: %s",
                kind.value, user_id, e
            )
            raise ChargeFailed(artifact, e) from e

        charge_metadata = {"operation": kind.value, "cost": quote.computed_cost}
        charge_metadata.update(metadata or {})
        applied = self._charge_with_retry(
            user_id, kind, -quote.computed_cost, reference, charge_metadata, artifact
        )
        logger.info(
            "Charged %d credits to %s for %s (ref=%s%s), balance %d",
            quote.computed_cost, user_id, kind.value, reference,
            ", replayed" if applied.replayed else "", applied.new_balance
        )
        return ChargeResult(
            artifact=artifact,
            new_balance=applied.new_balance,
            cost=quote.computed_cost,
            transaction_id=applied.transaction_id,
            replayed=applied.replayed
        )

    def refund(
        self,
        user_id: str,
        amount: int,
        reference_id: str,
        reason: TransactionReason = TransactionReason.REFUND,
        metadata: Optional[Dict[str, Any]] = None
    ) -> AppliedTransaction:
        """Credit back a deduction, at most once per ``reference_id``.

        Raises:
            ValueError: If amount is not positive or reason is not a refund
                or admin adjustment
        """
        if amount <= 0:
            raise ValueError("refund amount must be > 0")
        reason = TransactionReason(reason)
        if reason not in (TransactionReason.REFUND, TransactionReason.ADMIN_ADJUSTMENT):
            raise ValueError(f"'{reason.value}' is not a refund reason")
        applied = self.store.apply_transaction(user_id, amount, reason, reference_id, metadata)
        logger.info(
            "Refunded %d credits to %s (ref=%s%s)",
            amount, user_id, reference_id, ", replayed" if applied.replayed else ""
        )
        return applied

    def grant(
        self,
        user_id: str,
        amount: int,
        reason: TransactionReason,
        reference_id: str,
        metadata: Optional[Dict[str, Any]] = None
    ) -> AppliedTransaction:
        """Grant paid-for credits, keyed by the payment event id.

        Raises:
            ValueError: If amount is not positive or reason is not a
                purchase or subscription renewal
        """
        if amount <= 0:
            raise ValueError("grant amount must be > 0")
        reason = TransactionReason(reason)
        if reason not in GRANT_REASONS:
            raise ValueError(f"'{reason.value}' is not a grant reason")
        applied = self.store.apply_transaction(user_id, amount, reason, reference_id, metadata)
        logger.info(
            "Granted %d credits to %s (%s, ref=%s%s)",
            amount, user_id, reason.value, reference_id,
            ", replayed" if applied.replayed else ""
        )
        return applied

    def adjust(
        self,
        user_id: str,
        amount: int,
        reference_id: str,
        metadata: Optional[Dict[str, Any]] = None
    ) -> AppliedTransaction:
        """Apply a signed operator correction to a balance."""
        applied = self.store.apply_transaction(
            user_id, amount, TransactionReason.ADMIN_ADJUSTMENT, reference_id, metadata
        )
        logger.warning(
            "Admin adjustment of %+d credits for %s (ref=%s)", amount, user_id, reference_id
        )
        return applied

    def _is_prepaid(
        self,
        user_id: str,
        reason: TransactionReason,
        quote: CostQuote,
        reference_id: Optional[str]
    ) -> bool:
        if reference_id is None or quote.computed_cost == 0:
            return False
        return self.store.find_transaction(user_id, reference_id, reason) is not None

    def _is_counted(self, user_id: str, kind: OperationKind, reference_id: Optional[str]) -> bool:
        if reference_id is None:
            return False
        return self.usage_counter.is_counted(user_id, kind.value, reference_id)

    def _count_daily_use(
        self,
        user_id: str,
        kind: OperationKind,
        reference_id: Optional[str]
    ) -> None:
        account = self.store.get_account(user_id)
        limit = self.checker.daily_limit_for(account, kind)
        if limit is None:
            return
        usage = self.usage_counter.try_consume(
            user_id, kind.value, limit, reference_id=reference_id
        )
        if not usage.success:
            raise DailyLimitReached(usage.used, usage.limit, usage.reset_at)

    def _charge_with_retry(
        self,
        user_id: str,
        kind: OperationKind,
        amount: int,
        reference_id: str,
        metadata: Dict[str, Any],
        artifact: Any
    ) -> AppliedTransaction:
        retry = self.config.charge_retry
        last_error: Optional[Exception] = None

        for attempt in range(1, retry.attempts + 1):
            try:
                return self.store.apply_transaction(
                    user_id, amount, TransactionReason(kind.value), reference_id, metadata
                )
            except StoreUnavailable as e:
                last_error = e
                if attempt < retry.attempts:
                    delay = self._backoff(attempt)
                    logger.warning(
                        "Charge attempt %d/%d failed for %s (ref=%s), retrying in %.2fs: %s",
                        attempt, retry.attempts, user_id, reference_id, delay, e
                    )
                    self._sleep(delay)
            except (InsufficientFunds, AccountNotFound) as e:
                last_error = e
                break

        logger.error(
            "CHARGE FAILED user_id=%s operation=%s reference_id=%s amount=%d: %s",
            user_id, kind.value, reference_id, amount, last_error
        )
        raise ChargeFailed(artifact, last_error) from last_error

    def _backoff(self, attempt: int) -> float:
        """Jittered exponential backoff, capped at the configured maximum."""
        retry = self.config.charge_retry
        base = min(retry.max_delay, retry.base_delay * (2 ** (attempt - 1)))
        return base + random.uniform(0, retry.base_delay)
