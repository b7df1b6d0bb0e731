"""Time-window ladders: ordered tiers keyed on time elapsed since a reference."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Callable, Sequence, Union

from time_utils import ensure_utc

if TYPE_CHECKING:
    from lifecycle.sweep import SweepContext

Offset = Union[timedelta, Callable[[Any], timedelta]]


@dataclass(frozen=True)
class Tier:
    """One rung of a ladder.

    A tier matches when the elapsed time since the row's reference timestamp
    falls inside ``[start, end]`` (bounds inclusive or exclusive per flag) and
    the optional guard accepts the row. Offsets may be callables of the row for
    per-row windows. Negative offsets describe windows before the reference.
    """

    name: str
    action: Callable[["SweepContext"], bool]
    start: Offset
    end: Offset | None = None
    start_inclusive: bool = True
    end_inclusive: bool = False
    guard: Callable[[Any], bool] | None = None

    def matches(self, row: Any, elapsed: timedelta) -> bool:
        start = _resolve_offset(self.start, row)
        if elapsed < start or (elapsed == start and not self.start_inclusive):
            return False
        if self.end is not None:
            end = _resolve_offset(self.end, row)
            if elapsed > end or (elapsed == end and not self.end_inclusive):
                return False
        if self.guard is not None and not self.guard(row):
            return False
        return True


class Ladder:
    """Select at most one tier per row, longest elapsed window first."""

    def __init__(
        self,
        reference: Callable[[Any], datetime | None],
        tiers: Sequence[Tier],
    ) -> None:
        if not tiers:
            raise ValueError("ladder requires at least one tier.")
        names = [tier.name for tier in tiers]
        if len(set(names)) != len(names):
            raise ValueError("ladder tier names must be unique.")
        self._reference = reference
        self.tiers = tuple(tiers)

    def elapsed(self, row: Any, now: datetime) -> timedelta | None:
        reference = self._reference(row)
        if reference is None:
            return None
        return ensure_utc(now) - ensure_utc(reference)

    def select(self, row: Any, now: datetime) -> Tier | None:
        """Return the first matching tier, or None when no tier applies."""
        elapsed = self.elapsed(row, now)
        if elapsed is None:
            return None
        for tier in self.tiers:
            if tier.matches(row, elapsed):
                return tier
        return None

    def only(self, *names: str) -> "Ladder":
        """Return a ladder restricted to the named tiers, preserving order."""
        selected = [tier for tier in self.tiers if tier.name in names]
        missing = set(names) - {tier.name for tier in selected}
        if missing:
            raise ValueError(f"unknown ladder tiers: {sorted(missing)}")
        return Ladder(self._reference, selected)


def days(value: float) -> timedelta:
    return timedelta(days=value)


def _resolve_offset(offset: Offset, row: Any) -> timedelta:
    if callable(offset):
        return offset(row)
    return offset
