"""Domain exceptions raised by the ledger core."""

from __future__ import annotations


class LedgerError(Exception):
    """Base class for every error the ledger core raises on purpose."""


class ValidationError(LedgerError, ValueError):
    """Raised when input is malformed: empty name, bad amount, bad date."""


class NotFoundError(LedgerError, KeyError):
    """Raised when a customer id does not resolve to a stored customer."""

    def __str__(self) -> str:
        # KeyError quotes its argument; keep the plain message instead.
        return str(self.args[0]) if self.args else ""


class ConsistencyError(LedgerError):
    """Raised when stored balances disagree with a full recompute.

    Signals a bug or a hand-edited store, never a user mistake. ``divergences``
    lists one human-readable line per mismatching value.
    """

    def __init__(self, customer_id: str, divergences: list[str]):
        self.customer_id = customer_id
        self.divergences = list(divergences)
        super().__init__(
            f"Balance divergence for customer '{customer_id}': " + "; ".join(self.divergences)
        )


__all__ = [
    "LedgerError",
    "ValidationError",
    "NotFoundError",
    "ConsistencyError",
]
