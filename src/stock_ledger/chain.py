"""Carry-forward chain maintenance for stock periods.

The periods of one tenant and product form a chain ordered by ``(year,
month)``: each period opens with the closing balance of the period before it,
and the earliest period's stored opening balance is taken as given. This
module resolves opening balances for new periods, pushes a changed closing
balance forward through later periods, and audits or repairs whole chains.

Functions here never take locks. Callers that mutate a chain are expected to
hold the per-product guard owned by :mod:`stock_ledger.core_logic`.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Optional, Protocol

from . import log
from .balance import find_balance_errors, recompute_period
from .constants import BalancePolicy
from .data_manager import StockPeriod
from .exceptions import ChainInconsistency


class PeriodStore(Protocol):
    """The slice of :class:`~stock_ledger.data_manager.WorkbookLedgerStore` used here."""

    def get_chain(self, tenant_id: str, product_id: str) -> list[StockPeriod]: ...

    def get_previous(self, tenant_id: str, product_id: str, year: int, month_number: int) -> Optional[StockPeriod]: ...

    def put(self, period: StockPeriod, *, expected_revision: Optional[int] = None) -> StockPeriod: ...


@dataclass(frozen=True)
class ChainFinding:
    """One inconsistency detected in a stored period."""

    year: int
    month_number: int
    problem: str

    def __str__(self) -> str:
        return f"{self.year}-{self.month_number:02d}: {self.problem}"


@dataclass(frozen=True)
class RepairReport:
    """Summary returned by :func:`repair_chain`."""

    tenant_id: str
    product_id: str
    periods_examined: int
    periods_corrected: int
    corrected: tuple[tuple[int, int], ...] = ()
    findings: tuple[ChainFinding, ...] = ()


def commit_period(store: PeriodStore, period: StockPeriod) -> StockPeriod:
    """Store ``period`` one revision ahead of the revision it was loaded at."""

    return store.put(replace(period, revision=period.revision + 1), expected_revision=period.revision)


def resolve_opening_balance(store: PeriodStore, tenant_id: str, product_id: str, year: int, month_number: int) -> int:
    """Return the closing balance of the period before ``(year, month_number)``.

    Products without earlier history open at zero.
    """

    previous = store.get_previous(tenant_id, product_id, year, month_number)
    if previous is None:
        return 0
    log.debug(
        "Resolved opening balance %s for %s/%s %s-%02d from %s",
        previous.closing_balance,
        tenant_id,
        product_id,
        year,
        month_number,
        previous.label,
    )
    return previous.closing_balance


def propagate_forward(
    store: PeriodStore,
    from_period: StockPeriod,
    *,
    policy: BalancePolicy = BalancePolicy.PER_ENTRY,
) -> list[StockPeriod]:
    """Carry ``from_period``'s closing balance through the later periods.

    Walks forward in chronological order. Each period whose opening balance
    differs from its predecessor's closing balance is recomputed and committed
    on its own; the walk stops at the first period that already matches, or at
    the end of the chain. Running it again without new writes changes nothing.

    Args:
        store (PeriodStore): Period storage.
        from_period (StockPeriod): The period whose closing balance changed,
            as it is currently stored.
        policy (BalancePolicy): Flooring policy used for recomputation.

    Returns:
        list[StockPeriod]: The periods that were rewritten, in chain order.
    """

    start = (from_period.year, from_period.month_number)
    later = [
        period
        for period in store.get_chain(from_period.tenant_id, from_period.product_id)
        if (period.year, period.month_number) > start
    ]

    carried = from_period.closing_balance
    updated: list[StockPeriod] = []
    for period in later:
        if period.opening_balance == carried:
            break
        log.info(
            "Carrying forward into %s for %s/%s: opening %s -> %s",
            period.label,
            period.tenant_id,
            period.product_id,
            period.opening_balance,
            carried,
        )
        committed = commit_period(store, recompute_period(period, opening_balance=carried, policy=policy))
        updated.append(committed)
        carried = committed.closing_balance

    if updated:
        log.info(
            "Propagated %s to %d later period(s) for %s/%s",
            from_period.label,
            len(updated),
            from_period.tenant_id,
            from_period.product_id,
        )
    return updated


def audit_chain(
    store: PeriodStore,
    tenant_id: str,
    product_id: str,
    *,
    policy: BalancePolicy = BalancePolicy.PER_ENTRY,
) -> list[ChainFinding]:
    """List every stored value in the chain that breaks a balance rule.

    Nothing is written. Each period is checked against a fresh replay of its
    own movements, and against its predecessor's stored closing balance.
    """

    findings: list[ChainFinding] = []
    previous: Optional[StockPeriod] = None
    for period in store.get_chain(tenant_id, product_id):
        if previous is not None and period.opening_balance != previous.closing_balance:
            findings.append(
                ChainFinding(
                    period.year,
                    period.month_number,
                    f"opening balance {period.opening_balance} != {previous.label} closing balance "
                    f"{previous.closing_balance}",
                )
            )
        for problem in find_balance_errors(period, policy=policy):
            findings.append(ChainFinding(period.year, period.month_number, problem))
        previous = period

    for finding in findings:
        log.warning("Chain inconsistency for %s/%s at %s", tenant_id, product_id, finding)
    return findings


def verify_chain(
    store: PeriodStore,
    tenant_id: str,
    product_id: str,
    *,
    policy: BalancePolicy = BalancePolicy.PER_ENTRY,
) -> None:
    """Raise :class:`ChainInconsistency` when :func:`audit_chain` finds anything."""

    findings = audit_chain(store, tenant_id, product_id, policy=policy)
    if findings:
        raise ChainInconsistency(tenant_id, product_id, findings)


def repair_chain(
    store: PeriodStore,
    tenant_id: str,
    product_id: str,
    *,
    policy: BalancePolicy = BalancePolicy.PER_ENTRY,
) -> RepairReport:
    """Recompute every period of a chain from its earliest opening balance.

    The earliest period keeps its stored opening balance. Every period is
    replayed with the carried balance, and only periods whose recomputed form
    differs from what is stored are committed, so a second run reports zero
    corrections.
    """

    findings = audit_chain(store, tenant_id, product_id, policy=policy)
    chain = store.get_chain(tenant_id, product_id)

    corrected: list[tuple[int, int]] = []
    carried: Optional[int] = None
    for period in chain:
        opening = period.opening_balance if carried is None else carried
        fresh = recompute_period(period, opening_balance=opening, policy=policy)
        if fresh != period:
            log.info(
                "Repairing %s for %s/%s: opening %s -> %s, closing %s -> %s",
                period.label,
                tenant_id,
                product_id,
                period.opening_balance,
                fresh.opening_balance,
                period.closing_balance,
                fresh.closing_balance,
            )
            fresh = commit_period(store, fresh)
            corrected.append((period.year, period.month_number))
        carried = fresh.closing_balance

    report = RepairReport(
        tenant_id=tenant_id,
        product_id=product_id,
        periods_examined=len(chain),
        periods_corrected=len(corrected),
        corrected=tuple(corrected),
        findings=tuple(findings),
    )
    log.info(
        "Repair of %s/%s examined %d period(s), corrected %d",
        tenant_id,
        product_id,
        report.periods_examined,
        report.periods_corrected,
    )
    return report
