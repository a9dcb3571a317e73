"""
Error taxonomy for the credit engine.

Entitlement errors are expected and user-correctable; they are raised before
any external cost is incurred. Work and charge failures are exceptional and
are logged with full context by the coordinator.
"""

from datetime import datetime
from typing import Any, Optional


class CreditEngineError(Exception):
    """Base class for all credit engine errors."""


class EntitlementError(CreditEngineError):
    """Raised when a user may not perform an operation.

    ``reason`` matches the ``EntitlementResult.reason`` tag of the denial.
    """
    reason = "denied"


class InsufficientCredits(EntitlementError):
    reason = "insufficient_credits"

    def __init__(self, required: int, available: int):
        self.required = required
        self.available = available
        self.deficit = max(0, required - available)
        super().__init__(
            f"Insufficient credits. Required: {required}, "
            f"Available: {available}, Deficit: {self.deficit}"
        )


class DailyLimitReached(EntitlementError):
    reason = "daily_limit_reached"

    def __init__(self, used: int, limit: int, reset_at: datetime):
        self.used = used
        self.limit = limit
        self.reset_at = reset_at
        super().__init__(
            f"Daily limit of {limit} reached ({used} used), "
            f"resets at {reset_at.isoformat()}"
        )


class SubscriptionRequired(EntitlementError):
    reason = "subscription_required"

    def __init__(self, feature: str, tier: str = "free"):
        self.feature = feature
        self.tier = tier
        super().__init__(f"'{feature}' requires a subscription (current tier: {tier})")


class WorkFailed(CreditEngineError):
    """The generation work failed; no credits were touched."""

    def __init__(self, underlying_error: BaseException):
        self.underlying_error = underlying_error
        super().__init__(f"Generation failed: {underlying_error}")


class ChargeFailed(CreditEngineError):
    """Work succeeded but the deduction could not be recorded.

    The artifact is kept on the error so callers still deliver it.
    """

    def __init__(self, artifact: Any, underlying_error: BaseException):
        self.artifact = artifact
        self.underlying_error = underlying_error
        super().__init__(f"Charge could not be recorded: {underlying_error}")


class AccountNotFound(CreditEngineError):
    def __init__(self, user_id: str):
        self.user_id = user_id
        super().__init__(f"Account not found: {user_id}")


class InsufficientFunds(CreditEngineError):
    """A debit would take the balance below zero."""

    def __init__(self, user_id: str, balance: int, amount: int):
        self.user_id = user_id
        self.balance = balance
        self.amount = amount
        super().__init__(
            f"Debit of {-amount} exceeds balance {balance} for {user_id}"
        )


class StoreUnavailable(CreditEngineError):
    """The persistence store could not complete the operation."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        self.cause = cause
        super().__init__(message)
