"""
Ledger reconciliation.

Every account must satisfy ``current_balance - seed_balance == sum(ledger)``.
Drift means a balance was changed outside the ledger and needs manual review.
"""

import logging
from dataclasses import dataclass
from typing import List

from tale_forge_credits.storage.repository import BalanceStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReconciliationResult:
    user_id: str
    current_balance: int
    seed_balance: int
    ledger_total: int

    @property
    def drift(self) -> int:
        """Credits on the balance that the ledger does not account for."""
        return self.current_balance - self.seed_balance - self.ledger_total

    @property
    def balanced(self) -> bool:
        return self.drift == 0


def reconcile_account(store: BalanceStore, user_id: str) -> ReconciliationResult:
    """Compare one account's balance against its ledger."""
    return _reconcile(store, user_id)


def reconcile_all(store: BalanceStore) -> List[ReconciliationResult]:
    """Reconcile every account, logging any that drifted."""
    results = [_reconcile(store, account.user_id) for account in store.list_accounts()]
    drifted = [result for result in results if not result.balanced]
    if drifted:
        logger.warning("%d of %d accounts out of balance", len(drifted), len(results))
    return results


def _reconcile(store: BalanceStore, user_id: str) -> ReconciliationResult:
    account, ledger_total = store.account_with_ledger_total(user_id)
    result = ReconciliationResult(
        user_id=account.user_id,
        current_balance=account.current_balance,
        seed_balance=account.seed_balance,
        ledger_total=ledger_total
    )
    if not result.balanced:
        logger.warning(
            "Ledger drift for %s: balance=%d seed=%d ledger=%d drift=%+d",
            result.user_id, result.current_balance, result.seed_balance,
            result.ledger_total, result.drift
        )
    return result
