import time
from math import inf

import pytest

from ... import _core
from ..._timeouts import delay
from ...testing import MockClock, wait_all_tasks_blocked


def test_mock_clock():
    REAL_NOW = 123.0
    c = MockClock()
    c._real_clock = lambda: REAL_NOW
    repr(c)  # smoke test
    assert c.rate == 0
    assert c.current_time() == 0
    c.jump(1.2)
    assert c.current_time() == 1.2
    with pytest.raises(ValueError):
        c.jump(-1)
    assert c.current_time() == 1.2
    assert c.deadline_to_sleep_time(1.1) == 0
    assert c.deadline_to_sleep_time(1.2) == 0
    assert c.deadline_to_sleep_time(1.3) > 999999

    with pytest.raises(ValueError):
        c.rate = -1
    assert c.rate == 0

    c.rate = 2
    assert c.current_time() == 1.2
    REAL_NOW += 1
    assert c.current_time() == 3.2
    assert c.deadline_to_sleep_time(3.1) == 0
    assert c.deadline_to_sleep_time(3.2) == 0
    assert c.deadline_to_sleep_time(4.2) == 0.5

    c.rate = 0.5
    assert c.current_time() == 3.2
    assert c.deadline_to_sleep_time(3.1) == 0
    assert c.deadline_to_sleep_time(3.2) == 0
    assert c.deadline_to_sleep_time(4.2) == 2.0

    c.jump(0.8)
    assert c.current_time() == 4.0
    REAL_NOW += 1
    assert c.current_time() == 4.5

    c2 = MockClock(rate=3)
    assert c2.rate == 3
    assert c2.current_time() < 10


async def test_mock_clock_autojump(mock_clock):
    assert mock_clock.autojump_threshold == inf

    mock_clock.autojump_threshold = 0
    assert mock_clock.autojump_threshold == 0

    real_start = time.perf_counter()

    virtual_start = _core.current_time()
    for i in range(10):
        print("delaying {} seconds".format(10 * i))
        await delay(10 * i)
        print("woke up!")
        assert virtual_start + 10 * i == _core.current_time()
        virtual_start = _core.current_time()

    real_duration = time.perf_counter() - real_start
    print(
        "Delayed {} seconds in {} seconds".format(
            10 * sum(range(10)), real_duration
        )
    )
    assert real_duration < 1

    mock_clock.autojump_threshold = 0.02
    t = _core.current_time()
    # this should wake up before the autojump threshold triggers, so time
    # shouldn't change
    await wait_all_tasks_blocked()
    assert t == _core.current_time()
    # this should too
    await wait_all_tasks_blocked(0.01)
    assert t == _core.current_time()

    # This should wake up at the same time as the autojump_threshold. There
    # is no deadline, so it shouldn't actually jump the clock.
    await wait_all_tasks_blocked(cushion=0.02, tiebreaker=float("inf"))
    assert t == _core.current_time()
    mock_clock.autojump_threshold = 0
    await wait_all_tasks_blocked(tiebreaker=float("inf"))
    assert t == _core.current_time()


async def test_mock_clock_autojump_interference(mock_clock):
    mock_clock.autojump_threshold = 0.02

    mock_clock2 = MockClock()
    # messing with the autojump threshold of a clock that isn't actually
    # installed in the run loop shouldn't do anything.
    mock_clock2.autojump_threshold = 0.01

    # if the autojump_threshold of 0.01 were in effect, then the next line
    # would block forever, as the clock kept jumping before the waiter woke.
    await wait_all_tasks_blocked(0.015)

    # but the 0.02 limit does apply
    await delay(100000)


def test_mock_clock_autojump_preset():
    # Check that we can set the autojump_threshold before the clock is
    # actually in use, and it gets picked up
    mock_clock = MockClock(autojump_threshold=0.1)
    mock_clock.autojump_threshold = 0.01
    real_start = time.perf_counter()
    _core.run(delay, 10000, clock=mock_clock)
    assert time.perf_counter() - real_start < 1


async def test_mock_clock_autojump_0_and_wait_all_tasks_blocked(mock_clock):
    # Checks that autojump_threshold=0 doesn't interfere with
    # calling wait_all_tasks_blocked with the default cushion=0 and arbitrary
    # tiebreakers.

    mock_clock.autojump_threshold = 0

    record = []

    async def sleeper():
        await delay(100)
        record.append("yawn")

    async def waiter():
        for i in range(10):
            await wait_all_tasks_blocked(tiebreaker=i)
            record.append(i)
        await delay(1000)
        record.append("waiter done")

    async with _core.open_scope() as scope:
        scope.launch(sleeper)
        scope.launch(waiter)

    assert record == list(range(10)) + ["yawn", "waiter done"]


def test_mock_clock_with_several_workers():
    clock = MockClock(autojump_threshold=0)
    woke = []

    async def child(i):
        await delay(i)
        woke.append((i, _core.current_time()))

    async def main():
        async with _core.open_scope() as scope:
            for i in range(1, 6):
                scope.launch(child, i * 100)

    real_start = time.perf_counter()
    _core.run(main, clock=clock, workers=3)
    assert time.perf_counter() - real_start < 1
    assert sorted(woke) == [(i * 100, i * 100) for i in range(1, 6)]
