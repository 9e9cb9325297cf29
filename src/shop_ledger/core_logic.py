"""Ledger core for the shop ledger.

This module owns the customer and transaction collections held by a
:class:`RuntimeContext`. Every mutation passes through the rules below,
delegates balance arithmetic to :mod:`balance_engine`, and is persisted through
the Data Access Layer (DAL) before the in-memory collections change, so a call
either fully applies or leaves both memory and disk untouched.
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import UTC, date, datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Callable, Collection, Dict, Iterator, List, Mapping, Optional

from . import balance_engine, data_manager, log
from .constants import EXPECTED_SCHEMA_VERSION, TransactionKind
from .exceptions import ConsistencyError, LedgerError, NotFoundError, ValidationError  # noqa: F401


CustomerPredicate = Callable[[data_manager.CustomerRow], bool]


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration and the loaded store used by the core."""

    settings: data_manager.ConfigSettings
    ledger: data_manager.LedgerData
    _cache: Dict[str, Dict[str, Any]] = field(default_factory=dict, repr=False, compare=False)


@dataclass(frozen=True)
class CustomerProfile:
    """Descriptive customer fields collected by a front end."""

    name: str
    phone: str = ""
    email: str = ""
    address: str = ""
    notes: str = ""


@dataclass(frozen=True)
class CreateCustomerCommand:
    """User intent for registering a customer."""

    profile: CustomerProfile
    opening_balance: Decimal = Decimal("0")


@dataclass(frozen=True)
class RecordTransactionCommand:
    """User intent for recording a debit or credit against a customer."""

    customer_id: str
    kind: TransactionKind
    amount: Decimal
    date: Optional[date] = None
    description: str = ""


@dataclass(frozen=True)
class CustomerView:
    """Lazy, restartable view over a snapshot of customers.

    Every iteration re-applies ``predicate`` to the snapshot captured when the
    view was produced, so later mutations of the store do not leak in.
    """

    customers: tuple[data_manager.CustomerRow, ...]
    predicate: Optional[CustomerPredicate] = None

    def __iter__(self) -> Iterator[data_manager.CustomerRow]:
        for customer in self.customers:
            if self.predicate is None or self.predicate(customer):
                yield customer


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    """Return ``candidate`` or, when ``None``, the current UTC datetime."""

    return candidate if candidate is not None else datetime.now(UTC)


def _today() -> date:
    return _resolve_timestamp(None).date()


def _get_cache_bucket(context: RuntimeContext, name: str) -> Dict[str, Any]:
    """Return a mutable cache bucket dedicated to the supplied name.

    Buckets hold derived lookups (customers by id, history per customer) so
    repeated reads do not rescan the collections. They are dropped by
    :func:`_invalidate_cache` whenever a commit replaces the collections.
    """

    bucket = context._cache.get(name)
    if bucket is None:
        log.debug("Initializing cache bucket '%s'", name)
        bucket = {}
        context._cache[name] = bucket
    return bucket


def _invalidate_cache(context: RuntimeContext, *names: str) -> None:
    """Evict one or more cache buckets after the store changed."""

    if not names:
        return

    log.debug("Invalidating cache buckets: %s", ", ".join(names))

    for name in names:
        context._cache.pop(name, None)


def _ensure_customers_cache(context: RuntimeContext) -> Dict[str, Any]:
    bucket = _get_cache_bucket(context, "customers")
    if "by_id" not in bucket:
        bucket["by_id"] = {customer.customer_id: customer for customer in context.ledger.customers}
        log.debug("Populated customers cache with %d entries", len(bucket["by_id"]))
    return bucket


def _ensure_history_cache(context: RuntimeContext) -> Dict[str, Any]:
    """Group the transaction log by customer, preserving insertion order."""

    bucket = _get_cache_bucket(context, "history")
    if "by_customer" not in bucket:
        by_customer: Dict[str, List[data_manager.TransactionRow]] = {}
        for transaction in context.ledger.transactions:
            by_customer.setdefault(transaction.customer_id, []).append(transaction)
        bucket["by_customer"] = by_customer
        log.debug(
            "Populated history cache with %d transactions across %d customers",
            len(context.ledger.transactions),
            len(by_customer),
        )
    return bucket


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and the store for the ledger core.

    The configuration is located and parsed through the DAL, the store file
    named by ``DataFile`` is opened, the configured schema version is checked,
    and the loaded balances are reconciled against a full recompute so a
    hand-edited store is repaired on open. A schema mismatch is rejected
    before reconciliation can write to the store.

    Args:
        config_path (Path | None): Optional override path for the
            configuration file. When omitted the DAL searches upward from the
            current working directory.

    Returns:
        RuntimeContext: Context ready for the ledger operations.

    Raises:
        FileNotFoundError: If the configuration file cannot be located.
        KeyError: When mandatory configuration options are missing.
        ValueError: If the store file is malformed.
        RuntimeError: If the configured schema version is not supported.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    ledger = data_manager.open_store(settings.data_file)
    log.info(
        "Loaded store '%s' (%d customers, %d transactions)",
        settings.data_file,
        len(ledger.customers),
        len(ledger.transactions),
    )
    context = RuntimeContext(settings=settings, ledger=ledger)
    ensure_schema_version(context)
    reconcile(context)
    return context


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate that ``config.ini`` targets the schema this code writes.

    Raises:
        RuntimeError: If the configured schema version does not match
            ``EXPECTED_SCHEMA_VERSION``.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Store schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Store schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


@contextmanager
def ledger_session(config_path: Optional[Path] = None) -> Iterator[RuntimeContext]:
    """Scoped acquisition of the store for one session.

    Mutations persist themselves, so leaving the block never writes; it only
    drops the cached lookups held by the context.
    """

    context = load_runtime_context(config_path)
    try:
        yield context
    finally:
        _invalidate_cache(context, *list(context._cache))
        log.debug("Closed ledger session for '%s'", context.settings.data_file)


# ---------------------------------------------------------------------------
# Read accessors
# ---------------------------------------------------------------------------


def get_customer(context: RuntimeContext, customer_id: str) -> data_manager.CustomerRow:
    """Resolve a customer record by its identifier.

    Raises:
        NotFoundError: If ``customer_id`` is not in the store.
    """
    cache = _ensure_customers_cache(context)
    try:
        return cache["by_id"][customer_id]
    except KeyError as exc:
        log.warning("Customer lookup failed for id '%s'", customer_id)
        raise NotFoundError(f"Unknown customer id: {customer_id}") from exc


def list_customers(context: RuntimeContext, predicate: Optional[CustomerPredicate] = None) -> CustomerView:
    """Return the customers matching ``predicate``, in creation order.

    The result is lazy and can be iterated any number of times. It reads a
    snapshot of the collection taken now and never mutates the store.

    Args:
        context (RuntimeContext): Runtime context holding the store.
        predicate (Callable | None): Filter supplied by the caller, for example
            :func:`matches_search_term`. ``None`` keeps every customer.

    Returns:
        CustomerView: Restartable iterable of matching customers.
    """
    return CustomerView(customers=tuple(context.ledger.customers), predicate=predicate)


def list_transactions(context: RuntimeContext) -> List[data_manager.TransactionRow]:
    """Return a snapshot of the entire transaction log in insertion order."""
    return list(context.ledger.transactions)


def get_transaction_history(context: RuntimeContext, customer_id: str) -> List[data_manager.TransactionRow]:
    """Return one customer's transactions in insertion order.

    A customer without transactions, or an id with none recorded, yields an
    empty list rather than an error.
    """
    cache = _ensure_history_cache(context)
    return list(cache["by_customer"].get(customer_id, ()))


def matches_search_term(term: str) -> CustomerPredicate:
    """Build the customer search predicate used by list screens.

    Name and email match case-insensitively; phone numbers match as typed.
    An empty or blank term matches every customer.
    """
    needle = (term or "").strip()
    lowered = needle.lower()

    def _predicate(customer: data_manager.CustomerRow) -> bool:
        if not needle:
            return True
        return (
            lowered in customer.name.lower()
            or needle in customer.phone
            or lowered in customer.email.lower()
        )

    return _predicate


# ---------------------------------------------------------------------------
# Parse-and-validate boundary
# ---------------------------------------------------------------------------


def parse_money(raw: Optional[str], *, field_name: str, default: Optional[Decimal] = None) -> Decimal:
    """Parse a user-entered monetary value into a finite :class:`Decimal`.

    Args:
        raw (str | None): Text as typed by the user.
        field_name (str): Name used in error messages.
        default (Decimal | None): Value for blank input. When ``None`` a blank
            value is rejected.

    Raises:
        ValidationError: If the value is blank without a default, not a
            number, or not finite.
    """
    text = (raw or "").strip()
    if not text:
        if default is None:
            raise ValidationError(f"{field_name} is required")
        return default
    try:
        value = Decimal(text)
    except InvalidOperation as exc:
        raise ValidationError(f"{field_name} is not a number: {raw!r}") from exc
    if not value.is_finite():
        raise ValidationError(f"{field_name} must be a finite number: {raw!r}")
    return value


def parse_kind(raw: Optional[str]) -> TransactionKind:
    """Parse a transaction kind; the display labels ``sale``/``payment`` are accepted too."""
    text = (raw or "").strip().lower()
    aliases = {"sale": TransactionKind.DEBIT, "payment": TransactionKind.CREDIT}
    if text in aliases:
        return aliases[text]
    try:
        return TransactionKind(text)
    except ValueError as exc:
        raise ValidationError(f"Unknown transaction type: {raw!r}") from exc


def parse_date(raw: Optional[str]) -> Optional[date]:
    """Parse an ISO ``YYYY-MM-DD`` date; blank input yields ``None``."""
    text = (raw or "").strip()
    if not text:
        return None
    try:
        return date.fromisoformat(text)
    except ValueError as exc:
        raise ValidationError(f"Invalid date (expected YYYY-MM-DD): {raw!r}") from exc


def build_create_customer_command(form: Mapping[str, Optional[str]]) -> CreateCustomerCommand:
    """Turn raw form fields into a validated :class:`CreateCustomerCommand`.

    Recognised keys are ``name``, ``phone``, ``email``, ``address``,
    ``notes``, and ``opening_balance``. A blank opening balance means zero.

    Raises:
        ValidationError: If the name is blank or the opening balance does not
            parse.
    """
    name = (form.get("name") or "").strip()
    require_customer_name(name)
    profile = CustomerProfile(
        name=name,
        phone=(form.get("phone") or "").strip(),
        email=(form.get("email") or "").strip(),
        address=(form.get("address") or "").strip(),
        notes=(form.get("notes") or "").strip(),
    )
    opening_balance = parse_money(form.get("opening_balance"), field_name="Opening balance", default=Decimal("0"))
    return CreateCustomerCommand(profile=profile, opening_balance=opening_balance)


def build_record_transaction_command(form: Mapping[str, Optional[str]]) -> RecordTransactionCommand:
    """Turn raw form fields into a validated :class:`RecordTransactionCommand`.

    Recognised keys are ``customer_id``, ``kind``, ``amount``, ``date``, and
    ``description``. Whether the customer exists is checked when the command
    is executed, not here.

    Raises:
        ValidationError: If any field is missing or malformed, or the amount
            is not strictly positive.
    """
    customer_id = (form.get("customer_id") or "").strip()
    if not customer_id:
        raise ValidationError("Customer is required")
    kind = parse_kind(form.get("kind"))
    amount = parse_money(form.get("amount"), field_name="Amount")
    require_positive_amount(amount)
    return RecordTransactionCommand(
        customer_id=customer_id,
        kind=kind,
        amount=amount,
        date=parse_date(form.get("date")),
        description=(form.get("description") or "").strip(),
    )


def require_customer_name(name: str) -> None:
    """Validate that a customer name is present.

    Raises:
        ValidationError: If ``name`` is empty or whitespace only.
    """
    if not isinstance(name, str) or not name.strip():
        log.error("Customer name validation failed: %r", name)
        raise ValidationError("Customer name is required")


def require_finite_money(amount: Decimal, *, field_name: str) -> None:
    if not isinstance(amount, Decimal) or not amount.is_finite():
        log.error("%s validation failed: %r", field_name, amount)
        raise ValidationError(f"{field_name} must be a finite decimal")


def require_positive_amount(amount: Decimal) -> None:
    """Validate that a transaction amount is strictly positive.

    The direction of a transaction lives in its kind, so amounts are always
    submitted as positive magnitudes.

    Raises:
        ValidationError: If ``amount`` is not a finite decimal greater than
            zero.
    """
    require_finite_money(amount, field_name="Amount")
    if amount <= Decimal("0"):
        log.error("Amount validation failed: %s", amount)
        raise ValidationError("Amount must be greater than zero")


def generate_id(*, prefix: str, when: Optional[datetime] = None, taken: Collection[str] = ()) -> str:
    """Generate a sortable identifier from a UTC timestamp.

    Args:
        prefix (str): ``"C"`` for customers, ``"T"`` for transactions.
        when (datetime | None): Timestamp to encode; defaults to now.
        taken (Collection[str]): Identifiers already in use. A clash gets a
            ``-N`` suffix so ids stay unique even within one microsecond.

    Returns:
        str: Identifier formed as ``{prefix}{YYYYMMDDHHMMSSffffff}[-N]``.
    """
    when = when or _resolve_timestamp(None)
    base = f"{prefix}{when.strftime('%Y%m%d%H%M%S%f')}"
    candidate = base
    suffix = 0
    while candidate in taken:
        suffix += 1
        candidate = f"{base}-{suffix}"
    return candidate


# ---------------------------------------------------------------------------
# Mutations
# ---------------------------------------------------------------------------


def _commit(
    context: RuntimeContext,
    customers: List[data_manager.CustomerRow],
    transactions: List[data_manager.TransactionRow],
) -> None:
    """Persist the new collections, then swap them into the context.

    The write happens first; if it raises, the in-memory store keeps its
    previous contents.
    """
    staged = data_manager.LedgerData(customers=customers, transactions=transactions)
    data_manager.save_store(staged, destination=context.settings.data_file)
    context.ledger.customers[:] = customers
    context.ledger.transactions[:] = transactions
    _invalidate_cache(context, "customers", "history")


def create_customer(context: RuntimeContext, command: CreateCustomerCommand) -> data_manager.CustomerRow:
    """Register a customer whose balance starts at the opening balance.

    Args:
        context (RuntimeContext): Runtime context holding the store.
        command (CreateCustomerCommand): Profile and opening balance.

    Returns:
        data_manager.CustomerRow: The stored customer, with
            ``balance == opening_balance`` and today's date as
            ``last_transaction_date``.

    Raises:
        ValidationError: If the name is empty or the opening balance is not a
            finite decimal.
    """
    profile = command.profile
    require_customer_name(profile.name)
    require_finite_money(command.opening_balance, field_name="Opening balance")

    timestamp = _resolve_timestamp(None)
    customer = data_manager.CustomerRow(
        customer_id=generate_id(prefix="C", when=timestamp, taken=_ensure_customers_cache(context)["by_id"]),
        name=profile.name.strip(),
        phone=profile.phone or "",
        email=profile.email or "",
        address=profile.address or "",
        notes=profile.notes or "",
        opening_balance=command.opening_balance,
        balance=command.opening_balance,
        last_transaction_date=timestamp.date(),
    )
    _commit(context, [*context.ledger.customers, customer], list(context.ledger.transactions))
    log.info(
        "Created customer '%s' (%s) with opening balance %s",
        customer.customer_id,
        customer.name,
        customer.opening_balance,
    )
    return customer


def record_transaction(context: RuntimeContext, command: RecordTransactionCommand) -> data_manager.TransactionRow:
    """Append a debit or credit and move the customer's balance by it.

    The new transaction's ``balance_after`` is the customer's current balance
    plus the signed amount, and the customer's balance becomes that value.
    History order is insertion order; the transaction ``date`` is metadata
    only. ``last_transaction_date`` records the processing date, not
    ``command.date``.

    Args:
        context (RuntimeContext): Runtime context holding the store.
        command (RecordTransactionCommand): Structured transaction intent.

    Returns:
        data_manager.TransactionRow: Newly appended transaction.

    Raises:
        NotFoundError: If the customer id is unknown.
        ValidationError: If the kind is not a :class:`TransactionKind` or the
            amount is not strictly positive.
    """
    customer = get_customer(context, command.customer_id)
    if not isinstance(command.kind, TransactionKind):
        log.error("Unsupported transaction kind provided: %s", command.kind)
        raise ValidationError(f"Unsupported transaction kind: {command.kind}")
    require_positive_amount(command.amount)

    timestamp = _resolve_timestamp(None)
    new_balance = customer.balance + balance_engine.signed_amount(command.kind, command.amount)
    taken = {transaction.transaction_id for transaction in context.ledger.transactions}
    transaction = data_manager.TransactionRow(
        transaction_id=generate_id(prefix="T", when=timestamp, taken=taken),
        customer_id=customer.customer_id,
        kind=command.kind,
        amount=command.amount,
        date=command.date or timestamp.date(),
        description=command.description or "",
        balance_after=new_balance,
    )
    updated = replace(customer, balance=new_balance, last_transaction_date=timestamp.date())
    customers = [updated if row.customer_id == customer.customer_id else row for row in context.ledger.customers]
    _commit(context, customers, [*context.ledger.transactions, transaction])
    log.info(
        "Recorded %s '%s' for customer '%s' (amount=%s, balance=%s)",
        transaction.kind.value,
        transaction.transaction_id,
        customer.customer_id,
        transaction.amount,
        new_balance,
    )
    return transaction


def delete_customer(context: RuntimeContext, customer_id: str) -> int:
    """Remove a customer together with all of its transactions.

    Both collections are replaced in one commit, so no orphaned transaction is
    ever stored.

    Returns:
        int: Number of transactions removed with the customer.

    Raises:
        NotFoundError: If the customer id is unknown.
    """
    customer = get_customer(context, customer_id)
    customers = [row for row in context.ledger.customers if row.customer_id != customer.customer_id]
    transactions = [row for row in context.ledger.transactions if row.customer_id != customer.customer_id]
    removed = len(context.ledger.transactions) - len(transactions)
    _commit(context, customers, transactions)
    log.info("Deleted customer '%s' and %d transaction(s)", customer.customer_id, removed)
    return removed


def reconcile(context: RuntimeContext) -> List[str]:
    """Verify every customer against a full recompute and repair divergences.

    Divergences are logged at error level and fixed by rewriting the
    customer's balance and each transaction's ``balance_after`` from the
    recompute. The store is persisted only when something was repaired.

    Returns:
        list[str]: Ids of the customers that were repaired.
    """
    repaired: Dict[str, balance_engine.BalanceReplay] = {}
    history = _ensure_history_cache(context)["by_customer"]
    for customer in context.ledger.customers:
        entries = history.get(customer.customer_id, [])
        try:
            balance_engine.verify_customer(customer, entries)
        except ConsistencyError as exc:
            log.error("%s; falling back to full recompute", exc)
            repaired[customer.customer_id] = balance_engine.recompute_balance(customer.opening_balance, entries)

    known = {customer.customer_id for customer in context.ledger.customers}
    orphans = [row for row in context.ledger.transactions if row.customer_id not in known]
    if orphans:
        log.error("Dropping %d transaction(s) without a customer", len(orphans))

    if not repaired and not orphans:
        log.debug("Reconciled %d customers; no divergence", len(context.ledger.customers))
        return []

    customers = [
        replace(row, balance=repaired[row.customer_id].final_balance) if row.customer_id in repaired else row
        for row in context.ledger.customers
    ]
    positions: Dict[str, int] = {}
    transactions: List[data_manager.TransactionRow] = []
    for row in context.ledger.transactions:
        if row.customer_id not in known:
            continue
        if row.customer_id in repaired:
            index = positions.get(row.customer_id, 0)
            positions[row.customer_id] = index + 1
            row = replace(row, balance_after=repaired[row.customer_id].balances_after[index])
        transactions.append(row)

    _commit(context, customers, transactions)
    log.info("Reconciliation repaired %d customer(s)", len(repaired))
    return list(repaired)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the store from disk and return a fresh context.

    Raises:
        ValueError: If the store file is malformed.
    """
    ledger = data_manager.refresh_store(context.settings.data_file)
    log.info("Reloaded store '%s'", context.settings.data_file)
    return RuntimeContext(settings=context.settings, ledger=ledger)


# ---------------------------------------------------------------------------
# Exports
# ---------------------------------------------------------------------------


def _default_export_path(context: RuntimeContext, stem: str, suffix: str) -> Path:
    return context.settings.export_dir / f"{stem}-{_today().isoformat()}{suffix}"


def export_snapshot(context: RuntimeContext) -> Dict[str, Any]:
    """Build the export document for the whole store.

    Returns:
        dict[str, Any]: ``customers`` and ``transactions`` arrays in stored
            form plus an ISO-8601 UTC ``exportDate``.
    """
    return {
        "customers": [data_manager.serialize_customer(row) for row in context.ledger.customers],
        "transactions": [data_manager.serialize_transaction(row) for row in context.ledger.transactions],
        "exportDate": _resolve_timestamp(None).isoformat(),
    }


def export_json(context: RuntimeContext, destination: Optional[Path] = None) -> Path:
    """Write :func:`export_snapshot` to ``destination``.

    The default destination is ``shop-ledger-YYYY-MM-DD.json`` inside the
    configured export directory.
    """
    target = destination or _default_export_path(context, "shop-ledger", ".json")
    path = data_manager.write_json_document(export_snapshot(context), target)
    log.info("Exported store snapshot to '%s'", path)
    return path


def export_customer_report(context: RuntimeContext, customer_id: str, destination: Optional[Path] = None) -> Path:
    """Write one customer with its transaction history as a JSON report.

    Raises:
        NotFoundError: If the customer id is unknown.
    """
    customer = get_customer(context, customer_id)
    document = {
        "customer": data_manager.serialize_customer(customer),
        "transactions": [
            data_manager.serialize_transaction(row) for row in get_transaction_history(context, customer_id)
        ],
        "exportDate": _resolve_timestamp(None).isoformat(),
    }
    target = destination or _default_export_path(context, f"customer-{customer.customer_id}", ".json")
    path = data_manager.write_json_document(document, target)
    log.info("Exported report for customer '%s' to '%s'", customer.customer_id, path)
    return path


def export_workbook(context: RuntimeContext, destination: Optional[Path] = None) -> Path:
    """Write the store as an ``.xlsx`` workbook with one sheet per collection."""
    target = destination or _default_export_path(context, "shop-ledger", ".xlsx")
    path = data_manager.write_workbook_export(context.ledger.customers, context.ledger.transactions, target)
    log.info("Exported store workbook to '%s'", path)
    return path


def log_snapshot(context: RuntimeContext) -> None:
    """Log both collections in stored form, for troubleshooting."""
    snapshot = export_snapshot(context)
    log.info("Customers: %s", snapshot["customers"])
    log.info("Transactions: %s", snapshot["transactions"])
