"""Pure running-balance computations for the shop ledger.

Nothing here touches the store or the clock. The ledger core maintains
balances incrementally; the fold in :func:`recompute_balance` is the ground
truth those incremental updates are checked against.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, Sequence

from .constants import TransactionKind
from .data_manager import CustomerRow, TransactionRow
from .exceptions import ConsistencyError


@dataclass(frozen=True)
class BalanceReplay:
    """Result of folding a customer's history from the opening balance."""

    final_balance: Decimal
    balances_after: tuple[Decimal, ...]


def signed_amount(kind: TransactionKind, amount: Decimal) -> Decimal:
    """Return ``amount`` signed by direction: debits add, credits subtract."""
    if kind is TransactionKind.DEBIT:
        return amount
    return -amount


def recompute_balance(opening_balance: Decimal, ordered_transactions: Iterable[TransactionRow]) -> BalanceReplay:
    """Fold signed amounts left to right starting from ``opening_balance``.

    Args:
        opening_balance (Decimal): Balance before the first transaction.
        ordered_transactions (Iterable[TransactionRow]): One customer's
            history in insertion order. Amounts are assumed positive.

    Returns:
        BalanceReplay: The final balance and, per transaction, the running
            balance immediately after it.
    """

    running = opening_balance
    balances_after: list[Decimal] = []
    for transaction in ordered_transactions:
        running += signed_amount(transaction.kind, transaction.amount)
        balances_after.append(running)
    return BalanceReplay(final_balance=running, balances_after=tuple(balances_after))


def verify_customer(customer: CustomerRow, history: Sequence[TransactionRow]) -> BalanceReplay:
    """Check stored balances for one customer against a full recompute.

    Args:
        customer (CustomerRow): Customer whose stored ``balance`` is checked.
        history (Sequence[TransactionRow]): That customer's transactions in
            insertion order.

    Returns:
        BalanceReplay: The recompute, when every stored value agrees with it.

    Raises:
        ConsistencyError: Listing every stored value that disagrees.
    """

    replay = recompute_balance(customer.opening_balance, history)
    divergences: list[str] = []
    for transaction, expected in zip(history, replay.balances_after):
        if transaction.balance_after != expected:
            divergences.append(
                f"transaction '{transaction.transaction_id}' balance_after "
                f"{transaction.balance_after} != {expected}"
            )
    if customer.balance != replay.final_balance:
        divergences.append(f"balance {customer.balance} != {replay.final_balance}")

    if divergences:
        raise ConsistencyError(customer.customer_id, divergences)
    return replay
