"""Business logic layer for the stock ledger.

This module is the only public entry point for callers that record or read
stock. It consumes the Data Access Layer (DAL) for all I/O, the balance engine
for every recomputation, and the chain helpers for carry-forward, while making
sure each mutation of one tenant/product runs under that product's lock.

Reads never take the lock. They may observe a later period whose opening
balance has not yet caught up with a propagation in flight; propagation always
finishes, and availability checks only consult the latest period.
"""

from __future__ import annotations

import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import UTC, date, datetime, time, timedelta
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Tuple
from zoneinfo import ZoneInfo

from . import chain, data_manager, log
from .balance import recompute_period
from .constants import EXPECTED_SCHEMA_VERSION, MovementType
from .data_manager import MovementEntry, StockPeriod
from .exceptions import (
    ConcurrentModification,
    EntryNotFound,
    InvalidMovement,
    PropagationIncomplete,
    StorageUnavailable,
)

EXPIRY_REFERENCE_PREFIX = "expiry:"


class ProductLocks:
    """One mutex per ``(tenant_id, product_id)``, created on first use.

    The registry's own guard is held only while looking up or creating a lock,
    so operations on different products never wait for each other.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[Tuple[str, str], threading.Lock] = {}

    def lock_for(self, tenant_id: str, product_id: str) -> threading.Lock:
        key = (tenant_id, product_id)
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, tenant_id: str, product_id: str) -> Iterator[None]:
        lock = self.lock_for(tenant_id, product_id)
        with lock:
            log.debug("Acquired ledger lock for %s/%s", tenant_id, product_id)
            yield
        log.debug("Released ledger lock for %s/%s", tenant_id, product_id)


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration, period storage, and product locks."""

    settings: data_manager.ConfigSettings
    store: data_manager.WorkbookLedgerStore
    _locks: ProductLocks = field(default_factory=ProductLocks, repr=False, compare=False)


@dataclass(frozen=True)
class MovementCommand:
    """Caller intent for appending one movement to a product's ledger."""

    tenant_id: str
    product_id: str
    added: int = 0
    used: int = 0
    expired: int = 0
    damaged: int = 0
    timestamp: Optional[datetime] = None
    source_reference: Optional[str] = None
    movement_type: MovementType = MovementType.CUSTOM
    batch_number: Optional[str] = None
    expire_date: Optional[date] = None
    notes: Optional[str] = None


@dataclass(frozen=True)
class RecordedMovement:
    """Result of :func:`record_movement`."""

    period: StockPeriod
    entry: MovementEntry
    propagated: Tuple[StockPeriod, ...] = ()

    @property
    def running_balance(self) -> int:
        return self.entry.running_balance


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    """Return ``candidate`` unchanged, or the current UTC time when ``None``."""

    return candidate if candidate is not None else datetime.now(UTC)


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and open the ledger store.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer searches upward from the current
            working directory.

    Returns:
        RuntimeContext: Context ready for ledger operations.

    Raises:
        FileNotFoundError: If the configuration file or workbook is missing.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    store = data_manager.WorkbookLedgerStore(settings.data_file)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return RuntimeContext(settings=settings, store=store)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate workbook compatibility before mutating state.

    Raises:
        RuntimeError: If the configured schema version does not match
            ``EXPECTED_SCHEMA_VERSION``.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def period_for(context: RuntimeContext, timestamp: datetime) -> Tuple[int, int]:
    """Return the ``(year, month)`` bucket for ``timestamp``.

    Timezone-aware timestamps are converted to the configured ledger timezone
    first; naive timestamps are taken at face value.
    """
    if timestamp.tzinfo is not None:
        timestamp = timestamp.astimezone(ZoneInfo(context.settings.timezone))
    return timestamp.year, timestamp.month


def build_movement_command(
    tenant_id: str,
    product_id: str,
    movement_type: MovementType,
    quantity: int,
    **details: object,
) -> MovementCommand:
    """Translate a typed movement and a single quantity into raw counters.

    ``ADDED`` and ``RETURNED`` add stock, ``SOLD`` uses it, ``EXPIRED`` and
    ``DAMAGED`` write it off. ``ADJUSTMENT`` adds for positive quantities and
    uses for negative ones. Remaining keyword arguments are passed through to
    :class:`MovementCommand`.

    Raises:
        InvalidMovement: If the quantity does not suit the movement type.
    """
    movement_type = MovementType(movement_type)
    if movement_type is MovementType.CUSTOM:
        raise InvalidMovement("CUSTOM movements take raw counters; build a MovementCommand directly")
    if movement_type is MovementType.ADJUSTMENT:
        if quantity == 0:
            raise InvalidMovement("Adjustment quantity must be non-zero")
    elif quantity <= 0:
        raise InvalidMovement(f"{movement_type.value} quantity must be greater than zero")

    magnitude = abs(quantity)
    counters = {"added": 0, "used": 0, "expired": 0, "damaged": 0}
    if movement_type in (MovementType.ADDED, MovementType.RETURNED):
        counters["added"] = magnitude
    elif movement_type is MovementType.SOLD:
        counters["used"] = magnitude
    elif movement_type is MovementType.EXPIRED:
        counters["expired"] = magnitude
    elif movement_type is MovementType.DAMAGED:
        counters["damaged"] = magnitude
    elif quantity > 0:
        counters["added"] = magnitude
    else:
        counters["used"] = magnitude

    return MovementCommand(
        tenant_id=tenant_id,
        product_id=product_id,
        movement_type=movement_type,
        **counters,
        **details,
    )


def validate_quantities(command: MovementCommand) -> None:
    """Reject negative counters and movements that change nothing.

    Raises:
        InvalidMovement: If any counter is negative or all four are zero.
    """
    counters = {
        "added": command.added,
        "used": command.used,
        "expired": command.expired,
        "damaged": command.damaged,
    }
    for name, value in counters.items():
        if not isinstance(value, int) or isinstance(value, bool):
            log.warning("Movement validation failed: %s=%r is not an integer", name, value)
            raise InvalidMovement(f"{name} must be an integer, got {value!r}")
        if value < 0:
            log.warning("Movement validation failed: %s=%s", name, value)
            raise InvalidMovement(f"{name} must be zero or positive, got {value}")
    if not any(counters.values()):
        log.warning("Movement validation failed: all quantities are zero")
        raise InvalidMovement("At least one of added, used, expired, damaged must be non-zero")


def generate_entry_id(*, prefix: str = "M", when: Optional[datetime] = None) -> str:
    """Generate a sortable, collision-resistant movement identifier.

    Returns:
        str: ``{prefix}{YYYYMMDDHHMMSSffffff}-{8 hex chars}``.
    """
    when = when or _resolve_timestamp(None)
    return f"{prefix}{when.strftime('%Y%m%d%H%M%S%f')}-{uuid.uuid4().hex[:8]}"


def build_entry(command: MovementCommand, *, entry_id: str, timestamp: datetime) -> MovementEntry:
    """Create the stored entry for ``command``; its balance is filled in later."""
    return MovementEntry(
        entry_id=entry_id,
        timestamp=timestamp,
        added=command.added,
        used=command.used,
        expired=command.expired,
        damaged=command.damaged,
        source_reference=command.source_reference,
        movement_type=MovementType(command.movement_type).value,
        batch_number=command.batch_number,
        expire_date=command.expire_date,
        notes=command.notes,
    )


def record_movement(context: RuntimeContext, command: MovementCommand) -> RecordedMovement:
    """Append a movement to its month and bring the chain up to date.

    The period is created on first use with the previous period's closing
    balance as its opening balance. The full entry list is replayed, the period
    is committed, and later periods are carried forward if this period's
    closing balance moved. The whole sequence runs under the product lock.

    Args:
        context (RuntimeContext): Runtime context with settings and store.
        command (MovementCommand): Movement to record.

    Returns:
        RecordedMovement: The committed period, the stored entry (whose
            ``running_balance`` is the caller's new stock level in that month),
            and any later periods rewritten by propagation.

    Raises:
        InvalidMovement: If the quantities are rejected.
        StorageUnavailable: If the movement could not be committed; nothing
            was written and the call is safe to retry.
        ConcurrentModification: If the period changed outside the lock.
        PropagationIncomplete: If the movement was committed but later
            periods could not be carried forward. The error carries the stored
            entry; do not retry, repair the product instead.
    """
    validate_quantities(command)
    with context._locks.hold(command.tenant_id, command.product_id):
        return _record_locked(context, command)


def _record_locked(context: RuntimeContext, command: MovementCommand) -> RecordedMovement:
    store = context.store
    policy = context.settings.balance_policy
    timestamp = _resolve_timestamp(command.timestamp)
    year, month_number = period_for(context, timestamp)

    period = store.find(command.tenant_id, command.product_id, year, month_number)
    if period is None:
        opening = chain.resolve_opening_balance(store, command.tenant_id, command.product_id, year, month_number)
        period = StockPeriod(
            tenant_id=command.tenant_id,
            product_id=command.product_id,
            year=year,
            month_number=month_number,
            opening_balance=opening,
            closing_balance=opening,
        )
        log.info(
            "Opening %s for %s/%s with carried balance %s",
            period.label,
            command.tenant_id,
            command.product_id,
            opening,
        )

    entry = build_entry(command, entry_id=generate_entry_id(when=timestamp), timestamp=timestamp)
    committed = _commit_movements(context, period, (*period.movements, entry))
    stored_entry = committed.movements[-1]
    try:
        propagated = _propagate_if_moved(context, period, committed)
    except PropagationIncomplete as exc:
        exc.entry = stored_entry
        raise

    log.info(
        "Recorded %s movement '%s' for %s/%s in %s (added=%s, used=%s, expired=%s, damaged=%s, balance=%s)",
        stored_entry.movement_type,
        stored_entry.entry_id,
        command.tenant_id,
        command.product_id,
        committed.label,
        stored_entry.added,
        stored_entry.used,
        stored_entry.expired,
        stored_entry.damaged,
        stored_entry.running_balance,
    )
    return RecordedMovement(period=committed, entry=stored_entry, propagated=tuple(propagated))


def _commit_movements(context: RuntimeContext, period: StockPeriod, movements) -> StockPeriod:
    fresh = recompute_period(period, movements=movements, policy=context.settings.balance_policy)
    return chain.commit_period(context.store, fresh)


def _propagate_if_moved(context: RuntimeContext, before: StockPeriod, after: StockPeriod) -> List[StockPeriod]:
    if after.closing_balance == before.closing_balance and before.revision > 0:
        return []
    try:
        return chain.propagate_forward(context.store, after, policy=context.settings.balance_policy)
    except (StorageUnavailable, ConcurrentModification) as exc:
        log.error("Carry-forward after %s for %s/%s stopped: %s", after.label, after.tenant_id, after.product_id, exc)
        raise PropagationIncomplete(after, exc) from exc


def update_movement(
    context: RuntimeContext,
    tenant_id: str,
    product_id: str,
    year: int,
    month_number: int,
    entry_id: str,
    replacement: MovementCommand,
) -> StockPeriod:
    """Replace one entry's quantities and details in place.

    The entry keeps its id and position. Its timestamp is replaced only when
    ``replacement.timestamp`` is given, and must stay in the same month.

    Raises:
        PeriodNotFound: If the period does not exist.
        EntryNotFound: If ``entry_id`` is not part of the period.
        InvalidMovement: If the new quantities are rejected or the timestamp
            belongs to another month.
        PropagationIncomplete: If the edit was committed but later periods
            were not carried forward.
    """
    validate_quantities(replacement)
    with context._locks.hold(tenant_id, product_id):
        period = context.store.get(tenant_id, product_id, year, month_number)
        index = _index_of(period, entry_id)
        original = period.movements[index]

        timestamp = original.timestamp
        if replacement.timestamp is not None:
            if period_for(context, replacement.timestamp) != (year, month_number):
                raise InvalidMovement(
                    "An entry cannot move to another month; delete it and record it again"
                )
            timestamp = replacement.timestamp

        updated = build_entry(replacement, entry_id=original.entry_id, timestamp=timestamp)
        movements = list(period.movements)
        movements[index] = updated
        committed = _commit_movements(context, period, movements)
        _propagate_if_moved(context, period, committed)

    log.info("Updated entry '%s' in %s for %s/%s", entry_id, committed.label, tenant_id, product_id)
    return committed


def delete_movement(
    context: RuntimeContext,
    tenant_id: str,
    product_id: str,
    year: int,
    month_number: int,
    entry_id: str,
) -> StockPeriod:
    """Remove one entry from its period and carry the new balance forward.

    The period itself stays in place even when its last entry is removed.

    Raises:
        PeriodNotFound: If the period does not exist.
        EntryNotFound: If ``entry_id`` is not part of the period.
        PropagationIncomplete: If the removal was committed but later periods
            were not carried forward.
    """
    with context._locks.hold(tenant_id, product_id):
        period = context.store.get(tenant_id, product_id, year, month_number)
        index = _index_of(period, entry_id)
        movements = period.movements[:index] + period.movements[index + 1:]
        committed = _commit_movements(context, period, movements)
        _propagate_if_moved(context, period, committed)

    log.info("Deleted entry '%s' from %s for %s/%s", entry_id, committed.label, tenant_id, product_id)
    return committed


def _index_of(period: StockPeriod, entry_id: str) -> int:
    for index, entry in enumerate(period.movements):
        if entry.entry_id == entry_id:
            return index
    log.warning("Entry '%s' not found in %s", entry_id, period.key)
    raise EntryNotFound(f"Unknown entry id '{entry_id}' in {period.label}")


def expiry_moment(expire_date: date, timezone: str) -> datetime:
    """Batches expire at 00:01 on the day after their expiry date."""
    return datetime.combine(expire_date + timedelta(days=1), time(0, 1), tzinfo=ZoneInfo(timezone))


def expire_due_stock(
    context: RuntimeContext,
    tenant_id: str,
    product_id: str,
    now: Optional[datetime] = None,
) -> List[RecordedMovement]:
    """Write off every batch whose expiry moment has passed.

    Each batch entry with an ``expire_date`` is expired at most once: the
    write-off carries ``source_reference = "expiry:<entry id>"`` and batches
    that already have one are skipped. The quantity is the batch entry's own
    remainder and the write-off is filed in the month of the expiry moment.
    """
    timezone = context.settings.timezone
    now = _resolve_timestamp(now)
    if now.tzinfo is None:
        now = now.replace(tzinfo=ZoneInfo(timezone))

    results: List[RecordedMovement] = []
    with context._locks.hold(tenant_id, product_id):
        periods = context.store.get_chain(tenant_id, product_id)
        expired_refs = {
            entry.source_reference
            for period in periods
            for entry in period.movements
            if entry.source_reference and entry.source_reference.startswith(EXPIRY_REFERENCE_PREFIX)
        }

        for period in periods:
            for entry in period.movements:
                if entry.expire_date is None:
                    continue
                reference = f"{EXPIRY_REFERENCE_PREFIX}{entry.entry_id}"
                if reference in expired_refs:
                    continue
                moment = expiry_moment(entry.expire_date, timezone)
                remainder = entry.net_change
                if moment > now or remainder <= 0:
                    continue
                command = MovementCommand(
                    tenant_id=tenant_id,
                    product_id=product_id,
                    expired=remainder,
                    timestamp=moment,
                    source_reference=reference,
                    movement_type=MovementType.EXPIRED,
                    batch_number=entry.batch_number,
                    notes=f"Auto-expired batch expiring {entry.expire_date.isoformat()}",
                )
                results.append(_record_locked(context, command))
                expired_refs.add(reference)

    if results:
        log.info("Expired %d batch(es) for %s/%s", len(results), tenant_id, product_id)
    return results


def get_current_balance(context: RuntimeContext, tenant_id: str, product_id: str) -> int:
    """Return the closing balance of the latest period, or ``0`` without history."""
    latest = context.store.get_latest(tenant_id, product_id)
    return latest.closing_balance if latest is not None else 0


def get_period(context: RuntimeContext, tenant_id: str, product_id: str, year: int, month_number: int) -> StockPeriod:
    """Return one stored period.

    Raises:
        PeriodNotFound: If the period does not exist.
    """
    return context.store.get(tenant_id, product_id, year, month_number)


def list_periods(context: RuntimeContext, tenant_id: str, product_id: str) -> List[StockPeriod]:
    """Return the product's periods in chronological order."""
    return context.store.get_chain(tenant_id, product_id)


def audit_product(context: RuntimeContext, tenant_id: str, product_id: str) -> List[chain.ChainFinding]:
    """Report chain and balance inconsistencies without writing anything."""
    return chain.audit_chain(context.store, tenant_id, product_id, policy=context.settings.balance_policy)


def verify_product(context: RuntimeContext, tenant_id: str, product_id: str) -> None:
    """Raise :class:`~stock_ledger.exceptions.ChainInconsistency` on any finding."""
    chain.verify_chain(context.store, tenant_id, product_id, policy=context.settings.balance_policy)


def repair_product(context: RuntimeContext, tenant_id: str, product_id: str) -> chain.RepairReport:
    """Recompute a product's whole chain under its lock and report corrections."""
    log.info("Repair requested for %s/%s", tenant_id, product_id)
    with context._locks.hold(tenant_id, product_id):
        return chain.repair_chain(context.store, tenant_id, product_id, policy=context.settings.balance_policy)


def repair_all(context: RuntimeContext, tenant_id: Optional[str] = None) -> List[chain.RepairReport]:
    """Repair every product with stored periods, optionally for one tenant."""
    return [
        repair_product(context, tenant, product)
        for tenant, product in context.store.list_products(tenant_id)
    ]
