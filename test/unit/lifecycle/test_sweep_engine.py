"""Unit tests for the per-row sweep engine."""

from __future__ import annotations

import threading
from datetime import timedelta

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from lifecycle.ladder import Ladder, Tier
from lifecycle.stages import BandBillingStatus
from lifecycle.sweep import Sweep, interrupted_summary
from models import Band


def _all_bands(session, now):
    return list(session.scalars(select(Band.id).order_by(Band.id)))


def _sweep(sqlite_session_factory, clock, action, *, max_workers=1, tier_name="touch") -> Sweep:
    ladder = Ladder(
        lambda band: band.created_at,
        [Tier(name=tier_name, action=action, start=timedelta(0))],
    )
    return Sweep(
        "test.sweep",
        Band,
        ladder,
        _all_bands,
        session_factory=sqlite_session_factory,
        max_workers=max_workers,
        now_provider=clock,
    )


def test_row_failure_does_not_abort_batch(sqlite_session_factory, seed, clock) -> None:
    """A failing row is counted and the remaining rows still commit."""
    band_ids = [seed.band(name=f"Band {index}") for index in range(3)]
    failing = band_ids[1]

    def deactivate(context) -> bool:
        if context.row.id == failing:
            raise RuntimeError("boom")
        return context.claim(
            {"billing_status": BandBillingStatus.ACTIVE.value},
            {"billing_status": BandBillingStatus.INACTIVE.value},
        )

    summary = _sweep(sqlite_session_factory, clock, deactivate).run()

    assert summary["found"] == 3
    assert summary["processed"] == 3
    assert summary["succeeded"] == 2
    assert summary["failed"] == 1
    assert summary["actions"] == {"touch": 2}
    assert summary["errors"] == [f"bands {failing}: boom"]
    with sqlite_session_factory() as session:
        statuses = {band.id: band.billing_status for band in session.query(Band)}
    assert statuses[failing] == BandBillingStatus.ACTIVE
    assert [statuses[band_id] for band_id in band_ids if band_id != failing] == [
        BandBillingStatus.INACTIVE,
        BandBillingStatus.INACTIVE,
    ]


def test_declined_action_rolls_back(sqlite_session_factory, seed, clock) -> None:
    """Writes made before an action declines are discarded."""
    band_id = seed.band()

    def rename_then_decline(context) -> bool:
        context.row.name = "Renamed"
        context.session.flush()
        return False

    summary = _sweep(sqlite_session_factory, clock, rename_then_decline).run()

    assert summary["skipped"] == 1
    assert summary["actions"] == {}
    with sqlite_session_factory() as session:
        assert session.get(Band, band_id).name == "The Testers"


def test_transient_error_raised_after_batch(sqlite_session_factory, seed, clock) -> None:
    """Connectivity failures surface once every row has been attempted."""
    band_ids = [seed.band(name=f"Band {index}") for index in range(2)]
    attempted: list[int] = []

    def flaky(context) -> bool:
        attempted.append(context.row.id)
        if context.row.id == band_ids[0]:
            raise OperationalError("SELECT 1", {}, Exception("connection reset by peer"))
        return True

    with pytest.raises(OperationalError) as excinfo:
        _sweep(sqlite_session_factory, clock, flaky).run()

    assert attempted == band_ids
    summary = interrupted_summary(excinfo.value)
    assert summary["failed"] == 1
    assert summary["succeeded"] == 1
    assert len(summary["errors"]) == 1
    assert "connection reset by peer" in summary["errors"][0]


def test_after_commit_effects_run_and_failures_are_contained(
    sqlite_session_factory, seed, clock
) -> None:
    """Post-commit callbacks run once per row and their errors do not fail the row."""
    seed.band()
    sent: list[str] = []

    def with_effects(context) -> bool:
        context.after_commit.append(lambda: sent.append("email"))

        def broken() -> None:
            raise RuntimeError("relay down")

        context.after_commit.append(broken)
        return True

    summary = _sweep(sqlite_session_factory, clock, with_effects).run()

    assert summary["succeeded"] == 1
    assert sent == ["email"]


def test_threaded_run_processes_every_row(sqlite_session_factory, seed, clock) -> None:
    """Rows fan out across worker threads and each is handled once."""
    band_ids = [seed.band(name=f"Band {index}") for index in range(4)]
    seen: list[int] = []
    lock = threading.Lock()

    def record(context) -> bool:
        with lock:
            seen.append(context.row.id)
        return True

    summary = _sweep(sqlite_session_factory, clock, record, max_workers=2).run()

    assert summary["succeeded"] == 4
    assert sorted(seen) == band_ids


def test_rows_outside_every_tier_are_skipped(sqlite_session_factory, seed, clock) -> None:
    seed.band()
    ladder_action_calls: list[int] = []

    def action(context) -> bool:
        ladder_action_calls.append(context.row.id)
        return True

    sweep = _sweep(sqlite_session_factory, clock, action)
    summary = sweep.run(now=clock.now - timedelta(days=365))

    assert summary["skipped"] == 1
    assert ladder_action_calls == []
