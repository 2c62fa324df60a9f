"""Data access layer for the stock ledger.

This module provides low-level helpers that read from and write to the ledger
workbook. Balance rules belong elsewhere; the DAL only stores what it is
handed and hands back what it stored.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, validating, and atomically persisting the
   Excel file.
3. Period storage: loading ``StockPeriod`` records by key or by chain and
   replacing a period wholesale through :class:`WorkbookLedgerStore`.
"""


from __future__ import annotations

import configparser
import os
import tempfile
import threading
from dataclasses import dataclass, field
from datetime import date, datetime
from pathlib import Path
from typing import Iterable, Optional, Sequence
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from filelock import FileLock, Timeout
from openpyxl.workbook import Workbook
import openpyxl

from . import log
from .constants import MONTH_NAMES, BalancePolicy, MovementType, SheetName
from .exceptions import ConcurrentModification, PeriodNotFound, StorageUnavailable


CONFIG_FILE_NAME = "config.ini"
LOCK_TIMEOUT_SECONDS = 30.0
STOCK_PERIODS_SHEET = SheetName.STOCK_PERIODS.value
MOVEMENTS_SHEET = SheetName.MOVEMENTS.value

PERIOD_COLUMNS: tuple[str, ...] = (
    "TenantID",
    "ProductID",
    "Year",
    "MonthNumber",
    "Revision",
    "OpeningBalance",
    "TotalAdded",
    "TotalUsed",
    "TotalExpired",
    "TotalDamaged",
    "ClosingBalance",
)

MOVEMENT_COLUMNS: tuple[str, ...] = (
    "TenantID",
    "ProductID",
    "Year",
    "MonthNumber",
    "Sequence",
    "EntryID",
    "Timestamp",
    "MovementType",
    "Added",
    "Used",
    "Expired",
    "Damaged",
    "RunningBalance",
    "SourceReference",
    "BatchNumber",
    "ExpireDate",
    "Notes",
)

PeriodKey = tuple[str, str, int, int]


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    schema_version: str
    balance_policy: BalancePolicy = BalancePolicy.PER_ENTRY
    timezone: str = "UTC"
    default_tenant_id: Optional[str] = None


@dataclass(frozen=True)
class MovementEntry:
    """One recorded stock event inside a period."""

    entry_id: str
    timestamp: datetime
    added: int = 0
    used: int = 0
    expired: int = 0
    damaged: int = 0
    running_balance: int = 0
    source_reference: Optional[str] = None
    movement_type: str = MovementType.CUSTOM.value
    batch_number: Optional[str] = None
    expire_date: Optional[date] = None
    notes: Optional[str] = None

    @property
    def net_change(self) -> int:
        return self.added - self.used - self.expired - self.damaged


@dataclass(frozen=True)
class StockPeriod:
    """A calendar-month bucket of movements for one tenant and product."""

    tenant_id: str
    product_id: str
    year: int
    month_number: int
    opening_balance: int = 0
    movements: tuple[MovementEntry, ...] = field(default_factory=tuple)
    total_added: int = 0
    total_used: int = 0
    total_expired: int = 0
    total_damaged: int = 0
    closing_balance: int = 0
    revision: int = 0

    @property
    def key(self) -> PeriodKey:
        return (self.tenant_id, self.product_id, self.year, self.month_number)

    @property
    def month_name(self) -> str:
        return MONTH_NAMES[self.month_number - 1]

    @property
    def label(self) -> str:
        return f"{self.month_name} {self.year}"


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the current
    working directory toward the filesystem root looking for a file named
    ``CONFIG_FILE_NAME``; the first match is considered authoritative.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If no parent directory contains ``CONFIG_FILE_NAME``.
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

    Raises:
        FileNotFoundError: If ``config_path`` does not exist.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    ``[System]`` entries are mandatory. ``[Ledger]`` and ``[Defaults]`` are
    optional and fall back to the per-entry balance policy, the ``UTC``
    timezone, and no default tenant. Relative ``DataFile`` entries are anchored
    to ``base_path`` (or the working directory) and resolved.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory used as the anchor for relative
            ``DataFile`` entries.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If a required section or option is missing.
        ValueError: If the balance policy or timezone is not recognised.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    policy_raw = parser.get("Ledger", "BalancePolicy", fallback=BalancePolicy.PER_ENTRY.value)
    try:
        balance_policy = BalancePolicy(policy_raw.strip().lower())
    except ValueError as exc:
        raise ValueError(f"Unknown balance policy: {policy_raw}") from exc

    timezone = parser.get("Ledger", "Timezone", fallback="UTC").strip()
    try:
        ZoneInfo(timezone)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError(f"Unknown timezone: {timezone}") from exc

    default_tenant = parser.get("Defaults", "DefaultTenant", fallback="").strip() or None

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        schema_version=schema_version,
        balance_policy=balance_policy,
        timezone=timezone,
        default_tenant_id=default_tenant,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the ledger workbook and verify that both ledger sheets exist.

    Args:
        data_file (Path): Filesystem path to the ledger workbook.

    Returns:
        Workbook: ``openpyxl`` workbook instance backed by the provided file.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist.
        StorageUnavailable: If the file exists but cannot be read.
        ValueError: If a ledger sheet is missing from the workbook.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    try:
        wb = openpyxl.load_workbook(data_file)
    except OSError as exc:
        log.error("Unable to read workbook '%s': %s", data_file, exc)
        raise StorageUnavailable(f"Unable to read workbook {data_file}: {exc}") from exc

    for sheet_name in (STOCK_PERIODS_SHEET, MOVEMENTS_SHEET):
        if sheet_name not in wb.sheetnames:
            raise ValueError(f"Workbook {data_file} is missing sheet '{sheet_name}'")
    return wb


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook so that the destination is replaced atomically.

    The workbook is first written to a temporary file in the destination
    folder, then moved over the target with :func:`os.replace`. A failed save
    leaves the previous file untouched.

    Args:
        workbook (Workbook): Workbook instance to persist.
        destination (Path): Filesystem path that should receive the workbook.

    Raises:
        OSError: If the temporary file cannot be written or moved.
    """

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{dest.stem}-", suffix=dest.suffix, dir=dest.parent)
    os.close(fd)
    try:
        workbook.save(tmp_name)
        os.replace(tmp_name, dest)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def iter_periods(workbook: Workbook) -> Iterable[StockPeriod]:
    """Yield every period header row without its movements.

    Header and fully empty rows are skipped. Use :func:`read_period` or
    :func:`read_chain` to obtain periods with their movements attached.
    """

    sheet = workbook[STOCK_PERIODS_SHEET]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        if any(cell is not None for cell in raw):
            yield deserialize_period(raw)


def iter_movements(workbook: Workbook) -> Iterable[tuple[PeriodKey, int, MovementEntry]]:
    """Yield ``(period key, sequence, entry)`` for every movement row."""

    sheet = workbook[MOVEMENTS_SHEET]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        if any(cell is not None for cell in raw):
            yield deserialize_movement(raw)


def read_period(workbook: Workbook, key: PeriodKey) -> Optional[StockPeriod]:
    """Return the period stored under ``key`` with its movements, if any."""

    header = next((period for period in iter_periods(workbook) if period.key == key), None)
    if header is None:
        return None
    return _attach_movements(workbook, [header])[0]


def read_chain(workbook: Workbook, tenant_id: str, product_id: str) -> list[StockPeriod]:
    """Return all periods of one tenant/product in chronological order."""

    headers = [
        period
        for period in iter_periods(workbook)
        if period.tenant_id == tenant_id and period.product_id == product_id
    ]
    headers.sort(key=lambda period: (period.year, period.month_number))
    return _attach_movements(workbook, headers)


def _attach_movements(workbook: Workbook, headers: Sequence[StockPeriod]) -> list[StockPeriod]:
    """Join movement rows onto period headers, ordered by sequence."""

    if not headers:
        return []
    wanted = {period.key: [] for period in headers}
    for key, sequence, entry in iter_movements(workbook):
        bucket = wanted.get(key)
        if bucket is not None:
            bucket.append((sequence, entry))

    result = []
    for period in headers:
        ordered = sorted(wanted[period.key], key=lambda item: item[0])
        result.append(
            StockPeriod(
                tenant_id=period.tenant_id,
                product_id=period.product_id,
                year=period.year,
                month_number=period.month_number,
                opening_balance=period.opening_balance,
                movements=tuple(entry for _, entry in ordered),
                total_added=period.total_added,
                total_used=period.total_used,
                total_expired=period.total_expired,
                total_damaged=period.total_damaged,
                closing_balance=period.closing_balance,
                revision=period.revision,
            )
        )
    return result


def write_period(workbook: Workbook, period: StockPeriod) -> None:
    """Replace every row belonging to ``period.key`` with the given period.

    This is the only mutation primitive of the DAL. Rows are removed from the
    bottom up so earlier indices stay valid, then the header row and one
    movement row per entry are appended.
    """

    remove_period(workbook, period.key)
    _append_row(workbook[STOCK_PERIODS_SHEET], serialize_period(period))
    movements = workbook[MOVEMENTS_SHEET]
    for sequence, entry in enumerate(period.movements, start=1):
        _append_row(movements, serialize_movement(period.key, sequence, entry))


def _append_row(sheet, values: Sequence[object]) -> None:
    # Worksheet.append keeps counting past deleted rows; write below max_row instead.
    row_idx = sheet.max_row + 1
    for col_idx, value in enumerate(values, start=1):
        sheet.cell(row=row_idx, column=col_idx, value=value)


def remove_period(workbook: Workbook, key: PeriodKey) -> None:
    """Delete the header and movement rows stored under ``key``."""

    for sheet_name in (STOCK_PERIODS_SHEET, MOVEMENTS_SHEET):
        sheet = workbook[sheet_name]
        doomed = locate_rows(workbook, sheet_name, key)
        for row_idx in reversed(doomed):
            sheet.delete_rows(row_idx, 1)


def locate_rows(workbook: Workbook, sheet_name: str, key: PeriodKey) -> list[int]:
    """Find all rows whose leading key columns match ``key``.

    Returns:
        list[int]: 1-based Excel row indices in ascending order.
    """

    sheet = workbook[sheet_name]
    matches = []
    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, max_col=4, values_only=True), start=2):
        if row[0] is None:
            continue
        if (str(row[0]), str(row[1]), int(row[2]), int(row[3])) == key:
            matches.append(row_idx)
    return matches


def list_products(workbook: Workbook, tenant_id: Optional[str] = None) -> list[tuple[str, str]]:
    """Return the sorted ``(tenant_id, product_id)`` pairs that have periods."""

    pairs = {
        (period.tenant_id, period.product_id)
        for period in iter_periods(workbook)
        if tenant_id is None or period.tenant_id == tenant_id
    }
    return sorted(pairs)


def serialize_period(period: StockPeriod) -> list[object]:
    """Convert a period into the ``StockPeriods`` column ordering."""

    return [
        period.tenant_id,
        period.product_id,
        period.year,
        period.month_number,
        period.revision,
        period.opening_balance,
        period.total_added,
        period.total_used,
        period.total_expired,
        period.total_damaged,
        period.closing_balance,
    ]


def serialize_movement(key: PeriodKey, sequence: int, entry: MovementEntry) -> list[object]:
    """Convert a movement into the ``Movements`` column ordering.

    Timestamps and expiry dates are stored as ISO-8601 text because Excel
    cells cannot carry timezone information.
    """

    tenant_id, product_id, year, month_number = key
    return [
        tenant_id,
        product_id,
        year,
        month_number,
        sequence,
        entry.entry_id,
        entry.timestamp.isoformat(),
        entry.movement_type,
        entry.added,
        entry.used,
        entry.expired,
        entry.damaged,
        entry.running_balance,
        entry.source_reference,
        entry.batch_number,
        entry.expire_date.isoformat() if entry.expire_date is not None else None,
        entry.notes,
    ]


def deserialize_period(raw_row: Sequence[object]) -> StockPeriod:
    """Convert a raw ``StockPeriods`` row into a period without movements.

    Identifier columns are coerced to ``str`` so Excel's habit of turning
    numeric-looking ids into numbers does not break key comparisons.
    """

    (
        tenant_id,
        product_id,
        year,
        month_number,
        revision,
        opening_balance,
        total_added,
        total_used,
        total_expired,
        total_damaged,
        closing_balance,
    ) = raw_row[: len(PERIOD_COLUMNS)]

    return StockPeriod(
        tenant_id=str(tenant_id),
        product_id=str(product_id),
        year=int(year),
        month_number=int(month_number),
        opening_balance=_as_int(opening_balance),
        total_added=_as_int(total_added),
        total_used=_as_int(total_used),
        total_expired=_as_int(total_expired),
        total_damaged=_as_int(total_damaged),
        closing_balance=_as_int(closing_balance),
        revision=_as_int(revision),
    )


def deserialize_movement(raw_row: Sequence[object]) -> tuple[PeriodKey, int, MovementEntry]:
    """Convert a raw ``Movements`` row into its key, sequence, and entry."""

    (
        tenant_id,
        product_id,
        year,
        month_number,
        sequence,
        entry_id,
        timestamp_iso,
        movement_type,
        added,
        used,
        expired,
        damaged,
        running_balance,
        source_reference,
        batch_number,
        expire_date_iso,
        notes,
    ) = raw_row[: len(MOVEMENT_COLUMNS)]

    key = (str(tenant_id), str(product_id), int(year), int(month_number))
    entry = MovementEntry(
        entry_id=str(entry_id),
        timestamp=datetime.fromisoformat(str(timestamp_iso)),
        added=_as_int(added),
        used=_as_int(used),
        expired=_as_int(expired),
        damaged=_as_int(damaged),
        running_balance=_as_int(running_balance),
        source_reference=_as_optional_str(source_reference),
        movement_type=str(movement_type) if movement_type is not None else MovementType.CUSTOM.value,
        batch_number=_as_optional_str(batch_number),
        expire_date=_as_optional_date(expire_date_iso),
        notes=_as_optional_str(notes),
    )
    return key, _as_int(sequence), entry


def _as_int(value: object) -> int:
    return int(value) if value is not None else 0


def _as_optional_str(value: object) -> Optional[str]:
    return str(value) if value is not None else None


def _as_optional_date(value: object) -> Optional[date]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value))


class WorkbookLedgerStore:
    """Keyed period storage over a single ledger workbook.

    Every :meth:`put` rewrites one period and saves the workbook before
    returning, so each call is an independent commit. Writers in other
    processes are excluded by a lock file next to the workbook; under it the
    store reloads the file if someone else replaced it since this store last
    read or wrote it, so revision checks always see what is on disk. Reads
    pick up such changes too. Within a process, workbook access is serialized
    by a mutex held only for a single read or write; it does not order ledger
    operations against each other.
    """

    def __init__(self, data_file: Path, *, lock_timeout: float = LOCK_TIMEOUT_SECONDS) -> None:
        self.data_file = Path(data_file).expanduser().resolve()
        self._io_lock = threading.RLock()
        self._file_lock = FileLock(str(self.data_file.with_name(f"{self.data_file.name}.lock")), timeout=lock_timeout)
        self._loaded_stamp: Optional[tuple[int, int, int]] = None
        self.reload()

    @property
    def workbook(self) -> Workbook:
        return self._workbook

    def _disk_stamp(self) -> Optional[tuple[int, int, int]]:
        try:
            stat = os.stat(self.data_file)
        except FileNotFoundError:
            return None
        return (stat.st_ino, stat.st_mtime_ns, stat.st_size)

    def _refresh(self) -> None:
        if self._disk_stamp() != self._loaded_stamp:
            log.debug("Workbook '%s' changed on disk; reloading", self.data_file)
            self.reload()

    def find(self, tenant_id: str, product_id: str, year: int, month_number: int) -> Optional[StockPeriod]:
        """Return the period for the key, or ``None`` when it does not exist."""

        with self._io_lock:
            self._refresh()
            return read_period(self._workbook, (tenant_id, product_id, year, month_number))

    def get(self, tenant_id: str, product_id: str, year: int, month_number: int) -> StockPeriod:
        """Return the period for the key.

        Raises:
            PeriodNotFound: If no period is stored under the key.
        """

        period = self.find(tenant_id, product_id, year, month_number)
        if period is None:
            raise PeriodNotFound(
                f"No period for tenant '{tenant_id}', product '{product_id}', {year}-{month_number:02d}"
            )
        return period

    def get_chain(self, tenant_id: str, product_id: str) -> list[StockPeriod]:
        """Return the full chronological chain for one tenant and product.

        The result is a fresh list on every call, so callers can restart a walk
        simply by asking again.
        """

        with self._io_lock:
            self._refresh()
            return read_chain(self._workbook, tenant_id, product_id)

    def get_previous(self, tenant_id: str, product_id: str, year: int, month_number: int) -> Optional[StockPeriod]:
        """Return the latest period strictly before ``(year, month_number)``."""

        earlier = [
            period
            for period in self.get_chain(tenant_id, product_id)
            if (period.year, period.month_number) < (year, month_number)
        ]
        return earlier[-1] if earlier else None

    def get_latest(self, tenant_id: str, product_id: str) -> Optional[StockPeriod]:
        """Return the chronologically latest period, if any exist."""

        chain = self.get_chain(tenant_id, product_id)
        return chain[-1] if chain else None

    def list_products(self, tenant_id: Optional[str] = None) -> list[tuple[str, str]]:
        with self._io_lock:
            self._refresh()
            return list_products(self._workbook, tenant_id)

    def put(self, period: StockPeriod, *, expected_revision: Optional[int] = None) -> StockPeriod:
        """Replace the stored period and commit the workbook to disk.

        The revision check and the save both run under the workbook lock file,
        against the workbook as it currently is on disk.

        Args:
            period (StockPeriod): Fully computed period to store.
            expected_revision (int | None): When given, the stored revision
                (``0`` for a period that does not exist yet) must equal this
                value or the write is refused.

        Returns:
            StockPeriod: The period exactly as stored.

        Raises:
            ConcurrentModification: If ``expected_revision`` does not match.
            StorageUnavailable: If the workbook cannot be locked or saved. The
                in-memory workbook is rolled back to the previously stored
                period.
        """

        with self._io_lock:
            try:
                with self._file_lock:
                    self._put_locked(period, expected_revision)
            except Timeout as exc:
                log.error("Timed out waiting for lock on '%s'", self.data_file)
                raise StorageUnavailable(f"Workbook {self.data_file} is locked by another writer") from exc

        log.debug("Stored period %s at revision %s", period.key, period.revision)
        return period

    def _put_locked(self, period: StockPeriod, expected_revision: Optional[int]) -> None:
        self._refresh()
        current = read_period(self._workbook, period.key)
        actual_revision = current.revision if current is not None else 0
        if expected_revision is not None and actual_revision != expected_revision:
            log.error(
                "Refusing write to %s: expected revision %s, found %s",
                period.key,
                expected_revision,
                actual_revision,
            )
            raise ConcurrentModification(period.key, expected_revision, actual_revision)

        write_period(self._workbook, period)
        try:
            save_workbook(self._workbook, self.data_file)
        except OSError as exc:
            log.error("Failed to persist period %s to '%s': %s", period.key, self.data_file, exc)
            if current is None:
                remove_period(self._workbook, period.key)
            else:
                write_period(self._workbook, current)
            raise StorageUnavailable(f"Unable to write workbook {self.data_file}: {exc}") from exc
        self._loaded_stamp = self._disk_stamp()

    def reload(self) -> None:
        """Discard the in-memory workbook and reload it from disk."""

        with self._io_lock:
            stamp = self._disk_stamp()
            self._workbook = open_workbook(self.data_file)
            self._loaded_stamp = stamp
