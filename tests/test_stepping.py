import pytest

from conftest import ManualClock
from market_ingest.ingestion.stepping import Continue, RequestBudget, RequestPacer, Stop, fold_ordered


@pytest.mark.asyncio
async def test_fold_stops_at_first_stop_and_keeps_order():
    seen = []

    async def step(item):
        seen.append(item)
        if item == 3:
            return Stop(item * 10)
        return Continue(note=f"skip {item}")

    outcome = await fold_ordered([1, 2, 3, 4, 5], step)

    assert outcome.stopped
    assert outcome.value == 30
    assert outcome.attempted == 3
    assert seen == [1, 2, 3]
    assert outcome.notes == ["skip 1", "skip 2"]


@pytest.mark.asyncio
async def test_fold_without_stop_exhausts_items():
    async def step(item):
        return Continue()

    outcome = await fold_ordered(["a", "b"], step)

    assert not outcome.stopped
    assert outcome.value is None
    assert outcome.attempted == 2
    assert outcome.notes == []


@pytest.mark.asyncio
async def test_pacer_enforces_gap_and_longer_gap_after_failure():
    clock = ManualClock()
    pacer = RequestPacer(1.0, 2.0, clock=clock, sleep=clock.sleep)

    async def step(item):
        return Continue(note=item, failed=item == "fails")

    await fold_ordered(["ok", "fails", "ok2", "ok3"], step, pacer)

    # no wait before the first call; 2s after the failure
    assert clock.sleeps == [1.0, 2.0, 1.0]


@pytest.mark.asyncio
async def test_pacer_only_waits_for_remaining_time():
    clock = ManualClock()
    pacer = RequestPacer(1.0, clock=clock, sleep=clock.sleep)

    await pacer.wait()
    pacer.record()
    clock.now += 0.4
    await pacer.wait()

    assert clock.sleeps == [pytest.approx(0.6)]


def test_error_interval_never_below_minimum():
    pacer = RequestPacer(1.5, 0.5)
    assert pacer.error_interval == 1.5


@pytest.mark.asyncio
async def test_pacer_records_failure_when_step_raises():
    clock = ManualClock()
    pacer = RequestPacer(1.0, 3.0, clock=clock, sleep=clock.sleep)

    async def step(item):
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError):
        await fold_ordered([1], step, pacer)
    await pacer.wait()

    assert clock.sleeps == [3.0]


def test_budget_refuses_calls_until_the_window_elapses():
    clock = ManualClock()
    budget = RequestBudget(2, window_seconds=60.0, clock=clock)

    assert [budget.try_acquire() for _ in range(3)] == [True, True, False]

    clock.now = 59.9
    assert budget.try_acquire() is False
    clock.now = 60.0
    assert budget.try_acquire() is True
    assert budget.used == 1


def test_zero_budget_is_unlimited():
    budget = RequestBudget(0)
    assert all(budget.try_acquire() for _ in range(500))
