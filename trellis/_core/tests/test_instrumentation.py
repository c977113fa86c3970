import logging
import threading

import pytest

from ... import _core
from ..._abc import Instrument
from ..._timeouts import delay
from .tutil import check_sequence_matches, TaskRecorder


def test_instruments():
    r1 = TaskRecorder()
    r2 = TaskRecorder()
    r3 = TaskRecorder()

    async def main():
        for _ in range(3):
            await _core.checkpoint()
        # replace r2 with r3, to test that we can manipulate them as we go
        _core.remove_instrument(r2)
        with pytest.raises(KeyError):
            _core.remove_instrument(r2)
        # add is idempotent
        _core.add_instrument(r3)
        _core.add_instrument(r3)
        for _ in range(1):
            await _core.checkpoint()
        return _core.current_task()

    task = _core.run(main, instruments=[r1, r2])
    # It checkpoints 4 times, so it runs 5 times
    expected = (
        [("before_run",)]
        + 5 * [("schedule", task), ("before", task), ("after", task)]
        + [("after_run",)]
    )
    assert len(r1.record) > len(r2.record) > len(r3.record)
    assert r1.record == r2.record + r3.record
    # Need to filter b/c there's also the init task bumping around in the
    # record:
    assert list(r1.filter_tasks([task])) == expected


def test_instruments_interleave():
    tasks = {}

    async def two_step1():
        await _core.checkpoint()

    async def two_step2():
        await _core.checkpoint()

    async def main():
        async with _core.open_scope() as scope:
            tasks["t1"] = scope.launch(two_step1)
            tasks["t2"] = scope.launch(two_step2)

    r = TaskRecorder()
    _core.run(main, instruments=[r])

    expected = [
        ("before_run",),
        ("schedule", tasks["t1"]),
        ("schedule", tasks["t2"]),
        {
            ("before", tasks["t1"]),
            ("after", tasks["t1"]),
            ("before", tasks["t2"]),
            ("after", tasks["t2"]),
        },
        {
            ("schedule", tasks["t1"]),
            ("before", tasks["t1"]),
            ("after", tasks["t1"]),
            ("schedule", tasks["t2"]),
            ("before", tasks["t2"]),
            ("after", tasks["t2"]),
        },
        ("after_run",),
    ]
    print(list(r.filter_tasks(tasks.values())))
    check_sequence_matches(list(r.filter_tasks(tasks.values())), expected)


def test_instruments_step_order_with_workers():
    # each task's hooks come out strictly as schedule, before, after, even
    # when another worker picks up its next step
    tasks = []

    async def stepper():
        for _ in range(5):
            await _core.checkpoint()

    async def main():
        async with _core.open_scope() as scope:
            for _ in range(10):
                tasks.append(scope.launch(stepper))

    r = TaskRecorder()
    _core.run(main, instruments=[r], workers=3)

    for task in tasks:
        kinds = [item[0] for item in r.filter_tasks([task]) if len(item) > 1]
        assert kinds == 6 * ["schedule", "before", "after"]



def test_null_instrument():
    # undefined instrument methods are skipped
    class NullInstrument:
        def something_unrelated(self):
            pass  # pragma: no cover

    async def main():
        await _core.checkpoint()

    _core.run(main, instruments=[NullInstrument()])


def test_instrument_before_after_run():
    record = []

    class BeforeAfterRun:
        def before_run(self):
            record.append("before_run")

        def after_run(self):
            record.append("after_run")

    async def main():
        pass

    _core.run(main, instruments=[BeforeAfterRun()])
    assert record == ["before_run", "after_run"]


def test_instrument_task_spawn_exit():
    record = []

    class SpawnExitRecorder(Instrument):
        def task_spawned(self, task):
            record.append(("spawned", task))

        def task_exited(self, task):
            record.append(("exited", task))

    async def main():
        return _core.current_task()

    main_task = _core.run(main, instruments=[SpawnExitRecorder()])
    assert ("spawned", main_task) in record
    assert ("exited", main_task) in record


def test_instrument_idle_waits(autojump_clock):
    record = []

    class IdleRecorder(Instrument):
        def before_idle_wait(self, timeout):
            record.append(("before", timeout))

        def after_idle_wait(self, timeout):
            record.append(("after", timeout))

    async def main():
        await delay(5)

    _core.run(main, clock=autojump_clock, instruments=[IdleRecorder()])
    assert record
    assert record[0][0] == "before"
    assert all(timeout >= 0 for _, timeout in record)
    assert [kind for kind, _ in record[:2]] == ["before", "after"]


# This test also tests having a crash before the initial task is even spawned,
# which is very difficult to handle.
def test_instruments_crash(caplog):
    record = []

    class BrokenInstrument:
        def task_scheduled(self, task):
            record.append("scheduled")
            raise ValueError("oops")

        def close(self):
            # Shouldn't be called -- tests that the instrument disabling logic
            # works right.
            record.append("closed")  # pragma: no cover

    async def main():
        record.append("main ran")
        return _core.current_task()

    r = TaskRecorder()
    main_task = _core.run(main, instruments=[r, BrokenInstrument()])
    assert record == ["scheduled", "main ran"]
    # the TaskRecorder kept going throughout, even though the BrokenInstrument
    # was disabled
    assert ("after", main_task) in r.record
    assert ("after_run",) in r.record
    # And we got a log message
    exc_type = ValueError
    exc_value = "oops"
    [rec] = [
        rec for rec in caplog.records if rec.name == "trellis.abc.Instrument"
    ]
    assert rec.levelno == logging.ERROR
    assert "Instrument has been disabled" in rec.getMessage()
    assert rec.exc_info[0] is exc_type
    assert str(rec.exc_info[1]) == exc_value


def test_instruments_from_several_workers():
    seen_threads = set()

    class ThreadRecorder(Instrument):
        def before_task_step(self, task):
            seen_threads.add(threading.get_ident())

    async def child():
        await delay(0.05)

    async def main():
        async with _core.open_scope() as scope:
            for _ in range(10):
                scope.launch(child)

    _core.run(main, workers=3, instruments=[ThreadRecorder()])
    # hooks are called from whichever worker steps the task
    assert 1 <= len(seen_threads) <= 3
