"""
Credit Ledger.

Balances live in `user_credits`, the audit trail in `credit_transactions`.
A refund is a negative deduction plus a 'refund' transaction row.
"""

import logging
from typing import Optional

from . import metrics
from .errors import InsufficientCreditsError, StoreError
from .pipeline import store

logger = logging.getLogger(__name__)

BALANCES_TABLE = "user_credits"
TRANSACTIONS_TABLE = "credit_transactions"

# Attempts at the conditional balance update before giving up
UPDATE_ATTEMPTS = 3


def get_balance(user_id: str) -> Optional[int]:
    rows = store.run_query(
        store.get_client()
        .table(BALANCES_TABLE)
        .select("credits_remaining")
        .eq("user_id", user_id)
        .limit(1),
        f"read credits for {user_id}",
    )
    return rows[0]["credits_remaining"] if rows else None


def check_credits(user_id: str, amount: int) -> bool:
    balance = get_balance(user_id)
    return balance is not None and balance >= amount


def deduct_credits(user_id: str, amount: int) -> int:
    """
    Deduct `amount` credits (negative amounts add credits back).

    The write is conditional on the balance we read, so two concurrent
    deductions cannot both succeed against the same starting balance.

    Returns:
        The new balance.
    """
    for attempt in range(1, UPDATE_ATTEMPTS + 1):
        balance = get_balance(user_id)
        if balance is None:
            raise InsufficientCreditsError(f"No credit account for user {user_id}")
        if amount > 0 and balance < amount:
            raise InsufficientCreditsError(
                f"Insufficient credits: {amount} required, {balance} available"
            )

        new_balance = balance - amount
        rows = store.run_query(
            store.get_client()
            .table(BALANCES_TABLE)
            .update({"credits_remaining": new_balance, "updated_at": store.now_utc().isoformat()})
            .eq("user_id", user_id)
            .eq("credits_remaining", balance),
            f"update credits for {user_id}",
        )
        if rows:
            return new_balance
        logger.warning(f"Credit balance for {user_id} changed concurrently (attempt {attempt})")

    raise StoreError(f"Could not update credits for {user_id} after {UPDATE_ATTEMPTS} attempts")


def record_transaction(
    user_id: str,
    transaction_type: str,
    amount: int,
    description: str,
    project_id: Optional[str] = None,
) -> None:
    store.run_query(
        store.get_client().table(TRANSACTIONS_TABLE).insert({
            "user_id": user_id,
            "type": transaction_type,
            "amount": amount,
            "description": description,
            "history_id": project_id,
            "created_at": store.now_utc().isoformat(),
        }),
        f"record {transaction_type} transaction for {user_id}",
    )


def refund(user_id: str, amount: int, description: str, project_id: str) -> int:
    """Return previously charged credits. Raises if either write fails."""
    try:
        new_balance = deduct_credits(user_id, -amount)
        record_transaction(user_id, "refund", amount, description, project_id)
    except Exception as e:
        metrics.inc_counter("credits.refund_failed")
        logger.error(f"REFUND FAILED: {amount} credits for {user_id} ({project_id}): {e}")
        raise
    metrics.inc_counter("credits.refund")
    logger.info(f"Refunded {amount} credits to {user_id} for {project_id} (balance {new_balance})")
    return new_balance
