"""Enumerations shared across the shop ledger modules.

Keeps the identifiers used by the data access layer (DAL), the ledger core,
and the CLI in one place so the JSON store, exports, and command parsing
never disagree about spelling.
"""

from __future__ import annotations

from enum import Enum


# Schema version expected by all layers when validating the configuration.
EXPECTED_SCHEMA_VERSION = "1.0.0"


class TransactionKind(str, Enum):
    """Enumerate the two directions a ledger entry can move a balance."""

    DEBIT = "debit"
    CREDIT = "credit"

    @property
    def label(self) -> str:
        """Shop-facing name used in reports."""
        return "Sale" if self is TransactionKind.DEBIT else "Payment"


class StoreKey(str, Enum):
    """Enumerate the top-level keys of the JSON key-value store."""

    CUSTOMERS = "customers"
    TRANSACTIONS = "transactions"


class SheetName(str, Enum):
    """Enumerate the worksheet names written by the workbook export."""

    CUSTOMERS = "Customers"
    TRANSACTIONS = "Transactions"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "TransactionKind",
    "StoreKey",
    "SheetName",
]
