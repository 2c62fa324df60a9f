"""Error taxonomy for the stock ledger.

Every failure the ledger surfaces derives from :class:`LedgerError`. The
``retryable`` flag tells callers whether repeating the whole operation is safe:
storage faults are only raised when nothing was committed, so retrying them
converges. Validation and concurrency faults never succeed on a blind retry,
and a change that was committed before carry-forward failed must be finished
by a repair rather than repeated.
"""

from __future__ import annotations

from typing import Sequence


class LedgerError(Exception):
    """Base class for all ledger failures."""

    retryable: bool = False


class InvalidMovement(LedgerError, ValueError):
    """Raised when movement quantities are rejected before any state change."""


class StorageUnavailable(LedgerError):
    """Raised when the backing workbook cannot be read or written."""

    retryable = True


class ConcurrentModification(LedgerError):
    """Raised when a stored period changed underneath a writer."""

    def __init__(self, key: tuple, expected_revision: int, actual_revision: int) -> None:
        super().__init__(
            f"Period {key} changed concurrently: expected revision "
            f"{expected_revision}, found {actual_revision}"
        )
        self.key = key
        self.expected_revision = expected_revision
        self.actual_revision = actual_revision


class PropagationIncomplete(LedgerError):
    """Raised when a change was committed but later periods were not carried forward.

    The committed change stands, so repeating the operation would apply it a
    second time. The chain is finished by repairing the product instead.
    """

    def __init__(self, period: object, cause: Exception) -> None:
        label = getattr(period, "label", period)
        product_id = getattr(period, "product_id", "?")
        super().__init__(
            f"{label} was committed but later periods were not updated ({cause}); "
            f"run a repair for product '{product_id}'"
        )
        self.period = period
        self.cause = cause
        self.entry: object = None


class ChainInconsistency(LedgerError):
    """Raised by strict verification when a product's chain is out of sync."""

    def __init__(self, tenant_id: str, product_id: str, findings: Sequence[object]) -> None:
        super().__init__(
            f"{len(findings)} inconsistent period(s) for tenant '{tenant_id}', "
            f"product '{product_id}'"
        )
        self.tenant_id = tenant_id
        self.product_id = product_id
        self.findings = list(findings)


class PeriodNotFound(LedgerError, KeyError):
    """Raised when no period exists for the requested key."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "Period not found"


class EntryNotFound(LedgerError, KeyError):
    """Raised when a movement entry id is unknown within its period."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "Entry not found"


__all__ = [
    "LedgerError",
    "InvalidMovement",
    "StorageUnavailable",
    "ConcurrentModification",
    "PropagationIncomplete",
    "ChainInconsistency",
    "PeriodNotFound",
    "EntryNotFound",
]
