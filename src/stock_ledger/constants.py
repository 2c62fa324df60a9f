"""Enumerations shared across the stock ledger modules.

Centralises domain constants so that the data access layer (DAL), the balance
and chain logic, and the CLI rely on a single source of truth for sheet names,
movement types, and the balance policy identifiers.
"""

from __future__ import annotations

from enum import Enum


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "1.0.0"


class MovementType(str, Enum):
    """Enumerate the kinds of stock movement a caller can record."""

    ADDED = "ADDED"
    RETURNED = "RETURNED"
    SOLD = "SOLD"
    EXPIRED = "EXPIRED"
    DAMAGED = "DAMAGED"
    ADJUSTMENT = "ADJUSTMENT"
    # Raw counters supplied directly by the caller.
    CUSTOM = "CUSTOM"


class BalancePolicy(str, Enum):
    """Enumerate how running balances are floored at zero."""

    PER_ENTRY = "per-entry"
    AGGREGATE = "aggregate"


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the DAL."""

    STOCK_PERIODS = "StockPeriods"
    MOVEMENTS = "Movements"


MONTH_NAMES: tuple[str, ...] = (
    "January",
    "February",
    "March",
    "April",
    "May",
    "June",
    "July",
    "August",
    "September",
    "October",
    "November",
    "December",
)


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "MovementType",
    "BalancePolicy",
    "SheetName",
    "MONTH_NAMES",
]
