"""Data access layer for the shop ledger.

This module provides low-level helpers that read from and write to the local
JSON key-value store (``customers`` and ``transactions`` keys) and the export
files. Ledger rules belong elsewhere.

The public API is designed around four responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Store lifecycle: opening, validating, and persisting the JSON store.
3. Record conversion: turning stored JSON objects into typed rows and back.
4. Export writers: whole-document JSON snapshots and ``.xlsx`` workbooks.
"""


from __future__ import annotations

import configparser
import json
import os
import stat
import tempfile
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Iterable, List, Mapping, Optional, Sequence

from openpyxl.styles import Font
import openpyxl

from . import log
from .constants import SheetName, StoreKey, TransactionKind


CONFIG_FILE_NAME = "config.ini"
CUSTOMERS_KEY = StoreKey.CUSTOMERS.value
TRANSACTIONS_KEY = StoreKey.TRANSACTIONS.value

CUSTOMER_COLUMNS: Sequence[str] = (
    "CustomerID",
    "Name",
    "Phone",
    "Email",
    "Address",
    "Notes",
    "OpeningBalance",
    "Balance",
    "LastTransactionDate",
)

TRANSACTION_COLUMNS: Sequence[str] = (
    "TransactionID",
    "CustomerID",
    "Date",
    "Type",
    "Amount",
    "Description",
    "BalanceAfter",
)


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    shop_name: str
    schema_version: str
    export_dir: Path


@dataclass(frozen=True)
class CustomerRow:
    """In-memory view of one entry of the ``customers`` array."""

    customer_id: str
    name: str
    phone: str
    email: str
    address: str
    notes: str
    opening_balance: Decimal
    balance: Decimal
    last_transaction_date: date


@dataclass(frozen=True)
class TransactionRow:
    """In-memory view of one entry of the ``transactions`` array."""

    transaction_id: str
    customer_id: str
    kind: TransactionKind
    amount: Decimal
    date: date
    description: str
    balance_after: Decimal


@dataclass
class LedgerData:
    """Both store collections, held in insertion order."""

    customers: List[CustomerRow] = field(default_factory=list)
    transactions: List[TransactionRow] = field(default_factory=list)


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the current
    working directory toward the filesystem root looking for a file named
    ``CONFIG_FILE_NAME``; the first match is authoritative.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If no parent directory holds ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Args:
        config_path (Path): Path to the configuration file, relative or
            absolute. ``~`` is expanded.

    Returns:
        configparser.ConfigParser: Parser containing the raw configuration.
            Required entries are validated later by :func:`parse_settings`.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser(inline_comment_prefixes=(";", "#"))
    parser.read(config_path)
    return parser


def _resolve_path(raw: str, base_path: Path) -> Path:
    path = Path(raw).expanduser()
    if not path.is_absolute():
        path = base_path / path
    return path.resolve()


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    Relative ``DataFile`` and ``Export.Directory`` entries are anchored to
    ``base_path`` (normally the directory holding ``config.ini``), falling back
    to the current working directory. The export directory defaults to
    ``base_path`` itself when the ``[Export]`` section is absent.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Anchor for relative paths.

    Returns:
        ConfigSettings: Immutable settings with resolved paths.

    Raises:
        KeyError: If a required section or option is missing.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        shop_name = parser.get("System", "ShopName")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    if base_path is None:
        base_path = Path.cwd()

    export_raw = parser.get("Export", "Directory", fallback=None)
    export_dir = _resolve_path(export_raw, base_path) if export_raw else base_path.resolve()

    return ConfigSettings(
        data_file=_resolve_path(data_file_raw, base_path),
        shop_name=shop_name,
        schema_version=schema_version,
        export_dir=export_dir,
    )


def open_store(data_file: Path) -> LedgerData:
    """Load the JSON key-value store into typed collections.

    A store file that does not exist yet reads as an empty ledger. Records keep
    the order they have in the file, which is insertion order.

    Args:
        data_file (Path): Location of the store file.

    Returns:
        LedgerData: Customers and transactions deserialized from the file.

    Raises:
        ValueError: If the file is not a JSON object holding arrays under the
            ``customers`` and ``transactions`` keys, or a record is malformed.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        log.info("Store '%s' does not exist yet; starting empty", data_file)
        return LedgerData()

    with data_file.open("r", encoding="utf-8") as handle:
        try:
            document = json.load(handle)
        except json.JSONDecodeError as exc:
            raise ValueError(f"Store is not valid JSON: {data_file}: {exc}") from exc

    if not isinstance(document, dict):
        raise ValueError(f"Store root must be an object: {data_file}")

    raw_customers = document.get(CUSTOMERS_KEY, [])
    raw_transactions = document.get(TRANSACTIONS_KEY, [])
    if not isinstance(raw_customers, list) or not isinstance(raw_transactions, list):
        raise ValueError(f"Store keys must hold arrays: {data_file}")

    return LedgerData(
        customers=[deserialize_customer(raw) for raw in raw_customers],
        transactions=[deserialize_transaction(raw) for raw in raw_transactions],
    )


def save_store(data: LedgerData, destination: Path) -> None:
    """Persist both collections to ``destination``.

    The document is written to a temporary sibling file and moved into place
    with :func:`os.replace`, so readers see either the previous store or the
    new one. Parent directories are created on demand.

    Args:
        data (LedgerData): Collections to persist.
        destination (Path): Store file location.
    """

    document = {
        CUSTOMERS_KEY: [serialize_customer(row) for row in data.customers],
        TRANSACTIONS_KEY: [serialize_transaction(row) for row in data.transactions],
    }
    write_json_document(document, destination)


def refresh_store(data_file: Path) -> LedgerData:
    """Reload the store from disk, discarding any unsaved in-memory changes."""

    return open_store(data_file)


def write_json_document(document: Mapping[str, Any], destination: Path) -> Path:
    """Write ``document`` as indented UTF-8 JSON through an atomic rename.

    When ``destination`` already exists its permission bits are carried over
    to the replacement file.

    Args:
        document (Mapping[str, Any]): JSON-compatible mapping.
        destination (Path): Target file.

    Returns:
        Path: Resolved destination.
    """

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)

    fd, tmp_name = tempfile.mkstemp(prefix=f".{dest.name}.", dir=dest.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(document, handle, indent=2, ensure_ascii=False)
            handle.write("\n")
        if dest.exists():
            os.chmod(tmp_name, stat.S_IMODE(dest.stat().st_mode))
        os.replace(tmp_name, dest)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise
    return dest


def write_workbook_export(
    customers: Iterable[CustomerRow],
    transactions: Iterable[TransactionRow],
    destination: Path,
) -> Path:
    """Write customers and transactions into a two-sheet ``.xlsx`` workbook.

    Each sheet starts with a bold header row followed by one row per record.
    Monetary columns keep their :class:`~decimal.Decimal` values.

    Args:
        customers (Iterable[CustomerRow]): Rows for the ``Customers`` sheet.
        transactions (Iterable[TransactionRow]): Rows for the
            ``Transactions`` sheet.
        destination (Path): Target ``.xlsx`` path.

    Returns:
        Path: Resolved destination.
    """

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)

    workbook = openpyxl.Workbook()
    # Remove the default sheet openpyxl generates so we can create ours.
    if workbook.active and workbook.active.title == "Sheet":
        workbook.remove(workbook.active)

    bold_font = Font(bold=True)
    sheets = (
        (SheetName.CUSTOMERS.value, CUSTOMER_COLUMNS, [customer_to_cells(row) for row in customers]),
        (SheetName.TRANSACTIONS.value, TRANSACTION_COLUMNS, [transaction_to_cells(row) for row in transactions]),
    )
    for sheet_name, columns, rows in sheets:
        worksheet = workbook.create_sheet(title=sheet_name)
        for column_index, column_name in enumerate(columns, start=1):
            cell = worksheet.cell(row=1, column=column_index)
            cell.value = column_name
            cell.font = bold_font
        for row in rows:
            worksheet.append(row)

    workbook.save(dest)
    return dest


def customer_to_cells(record: CustomerRow) -> list[object]:
    """Arrange a customer in :data:`CUSTOMER_COLUMNS` order."""

    return [
        record.customer_id,
        record.name,
        record.phone,
        record.email,
        record.address,
        record.notes,
        record.opening_balance,
        record.balance,
        record.last_transaction_date,
    ]


def transaction_to_cells(record: TransactionRow) -> list[object]:
    """Arrange a transaction in :data:`TRANSACTION_COLUMNS` order."""

    return [
        record.transaction_id,
        record.customer_id,
        record.date,
        record.kind.label,
        record.amount,
        record.description,
        record.balance_after,
    ]


def serialize_customer(record: CustomerRow) -> dict[str, Any]:
    """Convert a customer dataclass into its stored JSON object.

    Decimals are written as strings so no precision is lost to binary floats.
    """

    return {
        "id": record.customer_id,
        "name": record.name,
        "phone": record.phone,
        "email": record.email,
        "address": record.address,
        "notes": record.notes,
        "openingBalance": str(record.opening_balance),
        "balance": str(record.balance),
        "lastTransactionDate": record.last_transaction_date.isoformat(),
    }


def serialize_transaction(record: TransactionRow) -> dict[str, Any]:
    """Convert a transaction dataclass into its stored JSON object."""

    return {
        "id": record.transaction_id,
        "customerId": record.customer_id,
        "kind": record.kind.value,
        "amount": str(record.amount),
        "date": record.date.isoformat(),
        "description": record.description,
        "balanceAfter": str(record.balance_after),
    }


def _to_decimal(raw: object, default: Optional[Decimal] = None) -> Decimal:
    if raw is None or raw == "":
        if default is None:
            raise ValueError("Missing numeric value")
        return default
    try:
        value = Decimal(str(raw))
    except InvalidOperation as exc:
        raise ValueError(f"Invalid numeric value: {raw!r}") from exc
    if not value.is_finite():
        raise ValueError(f"Non-finite numeric value: {raw!r}")
    return value


def _to_text(raw: object) -> str:
    return str(raw) if raw is not None else ""


def deserialize_customer(raw: Mapping[str, Any]) -> CustomerRow:
    """Convert a stored JSON object into a strongly typed customer record.

    Optional text fields become empty strings when absent. A missing
    ``balance`` falls back to the opening balance; reconciliation corrects it
    against the transaction history afterwards.

    Raises:
        ValueError: If the id, name, or a numeric/date field is malformed.
    """

    try:
        customer_id = raw["id"]
        name = raw["name"]
    except (KeyError, TypeError) as exc:
        raise ValueError(f"Malformed customer record: {raw!r}") from exc

    opening_balance = _to_decimal(raw.get("openingBalance"), Decimal("0"))
    balance = _to_decimal(raw.get("balance"), opening_balance)
    last_raw = raw.get("lastTransactionDate")
    last_transaction_date = date.fromisoformat(str(last_raw)) if last_raw else date.today()

    return CustomerRow(
        customer_id=str(customer_id),
        name=str(name),
        phone=_to_text(raw.get("phone")),
        email=_to_text(raw.get("email")),
        address=_to_text(raw.get("address")),
        notes=_to_text(raw.get("notes")),
        opening_balance=opening_balance,
        balance=balance,
        last_transaction_date=last_transaction_date,
    )


def deserialize_transaction(raw: Mapping[str, Any]) -> TransactionRow:
    """Convert a stored JSON object into a strongly typed transaction record.

    Raises:
        ValueError: If a required field is missing or malformed.
    """

    try:
        transaction_id = raw["id"]
        customer_id = raw["customerId"]
        kind = TransactionKind(raw["kind"])
        amount = _to_decimal(raw["amount"])
        entry_date = date.fromisoformat(str(raw["date"]))
    except (KeyError, TypeError) as exc:
        raise ValueError(f"Malformed transaction record: {raw!r}") from exc

    return TransactionRow(
        transaction_id=str(transaction_id),
        customer_id=str(customer_id),
        kind=kind,
        amount=amount,
        date=entry_date,
        description=_to_text(raw.get("description")),
        balance_after=_to_decimal(raw.get("balanceAfter"), Decimal("0")),
    )
