"""Balance computation for stock periods.

Everything in this module is pure: functions take an opening balance and an
ordered sequence of movements and return new immutable values. A period is
always recomputed from its full movement list; nothing here patches stored
balances incrementally.

Two flooring policies are supported:

``BalancePolicy.PER_ENTRY``
    Each running balance is floored at zero before the next movement is
    applied, so a shortfall recorded before a restock cannot borrow from it.

``BalancePolicy.AGGREGATE``
    Running balances follow the unfloored cumulative sum and are only floored
    for display; the closing balance is ``max(0, opening + total net)``. This
    reproduces ledgers that were reconciled from period totals.

The four totals are plain sums under both policies. They are informational and
may legitimately disagree with ``closing - opening`` whenever flooring kicked in.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Optional, Sequence

from .constants import BalancePolicy
from .data_manager import MovementEntry, StockPeriod


@dataclass(frozen=True)
class BalanceResult:
    """Outcome of replaying a movement list over an opening balance."""

    movements: tuple[MovementEntry, ...]
    opening_balance: int
    closing_balance: int
    total_added: int
    total_used: int
    total_expired: int
    total_damaged: int

    @property
    def clamped(self) -> bool:
        """True when flooring made the closing balance differ from the totals."""

        return self.closing_balance != self.unclamped_closing_balance

    @property
    def unclamped_closing_balance(self) -> int:
        return self.total_added - self.total_used - self.total_expired - self.total_damaged + self.opening_balance


def compute_balances(
    opening_balance: int,
    movements: Sequence[MovementEntry],
    *,
    policy: BalancePolicy = BalancePolicy.PER_ENTRY,
) -> BalanceResult:
    """Replay ``movements`` in order and derive every running balance.

    Args:
        opening_balance (int): Quantity carried into the period; must be
            non-negative.
        movements (Sequence[MovementEntry]): Entries in chronological order.
            Their stored ``running_balance`` values are ignored.
        policy (BalancePolicy): How negative intermediate balances are floored.

    Returns:
        BalanceResult: New entries with recomputed running balances, the
            closing balance, and the unclamped totals.

    Raises:
        ValueError: If ``opening_balance`` is negative.
    """

    if opening_balance < 0:
        raise ValueError(f"Opening balance must be non-negative, got {opening_balance}")

    recomputed = []
    running = opening_balance
    cumulative = opening_balance
    for entry in movements:
        if policy is BalancePolicy.PER_ENTRY:
            running = max(0, running + entry.net_change)
        else:
            cumulative += entry.net_change
            running = max(0, cumulative)
        recomputed.append(replace(entry, running_balance=running))

    return BalanceResult(
        movements=tuple(recomputed),
        opening_balance=opening_balance,
        closing_balance=running,
        total_added=sum(entry.added for entry in movements),
        total_used=sum(entry.used for entry in movements),
        total_expired=sum(entry.expired for entry in movements),
        total_damaged=sum(entry.damaged for entry in movements),
    )


def recompute_period(
    period: StockPeriod,
    *,
    opening_balance: Optional[int] = None,
    movements: Optional[Sequence[MovementEntry]] = None,
    policy: BalancePolicy = BalancePolicy.PER_ENTRY,
) -> StockPeriod:
    """Return ``period`` with all derived fields rebuilt from its inputs.

    ``opening_balance`` and ``movements`` override the period's own values when
    given. The revision is left untouched; committing is the caller's job.
    """

    opening = period.opening_balance if opening_balance is None else opening_balance
    entries = period.movements if movements is None else movements
    result = compute_balances(opening, entries, policy=policy)
    return replace(
        period,
        opening_balance=opening,
        movements=result.movements,
        total_added=result.total_added,
        total_used=result.total_used,
        total_expired=result.total_expired,
        total_damaged=result.total_damaged,
        closing_balance=result.closing_balance,
    )


def find_balance_errors(period: StockPeriod, *, policy: BalancePolicy = BalancePolicy.PER_ENTRY) -> list[str]:
    """Describe every stored derived value that disagrees with a fresh replay.

    An empty list means the period satisfies the entry-balance and
    closing-balance rules and its totals match the movements.
    """

    expected = recompute_period(period, policy=policy)
    problems = []
    for stored, fresh in zip(period.movements, expected.movements):
        if stored.running_balance != fresh.running_balance:
            problems.append(
                f"entry {stored.entry_id} running balance {stored.running_balance} != {fresh.running_balance}"
            )
    if period.closing_balance != expected.closing_balance:
        problems.append(f"closing balance {period.closing_balance} != {expected.closing_balance}")
    for name in ("total_added", "total_used", "total_expired", "total_damaged"):
        stored_total = getattr(period, name)
        fresh_total = getattr(expected, name)
        if stored_total != fresh_total:
            problems.append(f"{name} {stored_total} != {fresh_total}")
    return problems
