"""Shared auto-confirm ladder for counterparty-confirmed commitments.

Manual payments and reimbursements share the same shape: a deadline
(``auto_confirm_at``), a one-shot warning shortly before it, and a default
resolution once it passes.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Callable

from config import LifecycleConfig, settings
from lifecycle.ladder import Ladder, Tier, days
from lifecycle.sweep import SweepContext

AUTO_CONFIRM_TIER = "auto_confirm"
WARNING_TIER = "auto_confirm_warning"


def auto_confirm_ladder(
    reference: Callable[[Any], datetime | None],
    *,
    resolve: Callable[[SweepContext], bool],
    warn: Callable[[SweepContext], bool],
    warned_flag: str,
    config: LifecycleConfig | None = None,
) -> Ladder:
    """Build the resolve/warn ladder keyed on the auto-confirm deadline."""
    config = config or settings.lifecycle
    return Ladder(
        reference,
        [
            Tier(name=AUTO_CONFIRM_TIER, action=resolve, start=timedelta(0)),
            Tier(
                name=WARNING_TIER,
                action=warn,
                start=-days(config.auto_confirm_warning_max_days),
                end=-days(config.auto_confirm_warning_min_days),
                end_inclusive=True,
                guard=lambda row: not getattr(row, warned_flag),
            ),
        ],
    )


def auto_confirm_deadline(start: datetime, config: LifecycleConfig | None = None) -> datetime:
    config = config or settings.lifecycle
    return start + days(config.auto_confirm_days)


def warning_bounds(
    now: datetime, config: LifecycleConfig | None = None
) -> tuple[datetime, datetime]:
    """Return the deadline range that is due a warning at ``now``."""
    config = config or settings.lifecycle
    return (
        now + days(config.auto_confirm_warning_min_days),
        now + days(config.auto_confirm_warning_max_days),
    )


def days_until(deadline: datetime, now: datetime) -> int:
    """Whole days left before a deadline, rounded up."""
    remaining = deadline - now
    return max(0, -(-remaining // timedelta(days=1)))
