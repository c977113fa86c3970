from math import inf

import pytest

from ... import _core
from ..._timeouts import delay, delay_forever
from ...testing import assert_checkpoints, wait_all_tasks_blocked


async def test_cancel_scope_basic():
    with _core.CancelScope() as scope:
        scope.cancel()
        await _core.checkpoint()
    assert scope.cancel_called
    assert scope.cancelled_caught

    # cancelling an unbound scope sticks
    scope = _core.CancelScope()
    scope.cancel()
    with scope:
        await _core.checkpoint()
    assert scope.cancelled_caught


async def test_cancel_scope_repr(mock_clock):
    scope = _core.CancelScope()
    assert "unbound" in repr(scope)
    with scope:
        assert "active" in repr(scope)
        scope.deadline = _core.current_time() - 1
        assert "deadline is 1.00 seconds ago" in repr(scope)
        scope.deadline = _core.current_time() + 10
        assert "deadline is 10.00 seconds from now" in repr(scope)
        scope.cancel()
        assert "cancelled" in repr(scope)
    assert "exited" in repr(scope)


async def test_cancel_scope_is_single_use():
    scope = _core.CancelScope()
    with scope:
        pass
    with pytest.raises(RuntimeError):
        with scope:
            pass  # pragma: no cover


async def test_cancel_scope_arguments():
    with pytest.raises(TypeError):
        _core.CancelScope(shield="yes")
    with pytest.raises(TypeError):
        # keyword only
        _core.CancelScope(1.0)


async def test_cancel_points():
    with _core.CancelScope() as scope:
        await _core.checkpoint_if_cancelled()
        scope.cancel()
        with pytest.raises(_core.Cancelled):
            await _core.checkpoint_if_cancelled()

    with _core.CancelScope() as scope:
        await _core.checkpoint()
        scope.cancel()
        with pytest.raises(_core.Cancelled):
            await _core.checkpoint()

    with _core.CancelScope() as scope:
        scope.cancel()
        # still cancelled
        with pytest.raises(_core.Cancelled):
            await _core.checkpoint()
        with pytest.raises(_core.Cancelled):
            await _core.checkpoint()
    assert not scope.cancelled_caught


async def test_cancel_edge_cases():
    with _core.CancelScope() as scope:
        # Two cancels in a row -- idempotent
        scope.cancel()
        scope.cancel()
        await _core.checkpoint()
    assert scope.cancel_called
    assert scope.cancelled_caught

    with _core.CancelScope() as scope:
        # Check level-triggering
        scope.cancel()
        with pytest.raises(_core.Cancelled):
            await delay_forever()
        with pytest.raises(_core.Cancelled):
            await delay_forever()


async def test_nested_cancel_scopes():
    with _core.CancelScope() as outer:
        with _core.CancelScope() as inner:
            outer.cancel()
            await _core.checkpoint()
    # the inner scope lets it through, the outer one catches it
    assert not inner.cancelled_caught
    assert outer.cancelled_caught

    with _core.CancelScope() as outer:
        with _core.CancelScope() as inner:
            inner.cancel()
            await _core.checkpoint()
        await _core.checkpoint()
    assert inner.cancelled_caught
    assert not outer.cancelled_caught


async def test_shield():
    with _core.CancelScope() as outer:
        with _core.CancelScope(shield=True) as inner:
            assert inner.shield
            outer.cancel()
            # shielded, so this runs to completion
            await _core.checkpoint()
            await delay(0)
        with pytest.raises(_core.Cancelled):
            await _core.checkpoint()
    assert not inner.cancelled_caught
    assert not outer.cancelled_caught

    # a shield doesn't protect against its own cancellation
    with _core.CancelScope(shield=True) as scope:
        scope.cancel()
        await _core.checkpoint()
    assert scope.cancelled_caught

    # ...or against scopes inside it
    with _core.CancelScope() as outer:
        outer.cancel()
        with _core.CancelScope(shield=True):
            with _core.CancelScope() as inner:
                inner.cancel()
                await _core.checkpoint()
    assert inner.cancelled_caught
    assert not outer.cancelled_caught


async def test_shield_read_only():
    scope = _core.CancelScope(shield=True)
    with pytest.raises(AttributeError):
        scope.shield = False


async def test_shielded_cleanup_in_cancelled_task(autojump_clock):
    record = []

    async def child():
        try:
            await delay_forever()
        finally:
            with _core.CancelScope(shield=True):
                await delay(1)
                record.append("cleaned up at {}".format(_core.current_time()))

    async with _core.open_scope() as scope:
        task = scope.launch(child)
        await wait_all_tasks_blocked()
        await task.cancel_and_join()
        assert record == ["cleaned up at 1.0"]
        assert task.state is _core.TaskState.CANCELLED


async def test_shield_blocks_task_cancel():
    # Task.cancel() cancels the task's root scope, so a shield inside the
    # task holds it off.
    record = []

    async def child():
        with _core.CancelScope(shield=True):
            await wait_quietly(record)

    async def wait_quietly(record):
        try:
            await wait_all_tasks_blocked(0.01)
            record.append("shield held")
        except _core.Cancelled:  # pragma: no cover
            record.append("cancelled")
            raise

    async with _core.open_scope() as scope:
        task = scope.launch(child)
        await wait_all_tasks_blocked()
        task.cancel()
        assert task.cancel_requested
        assert task.state is _core.TaskState.CANCELLING
    assert record == ["shield held"]
    # it never saw the cancel, so it finished normally
    assert task.state is _core.TaskState.COMPLETED


async def test_deadlines(autojump_clock):
    start = _core.current_time()
    with _core.CancelScope(deadline=start + 10) as scope:
        assert scope.deadline == start + 10
        await delay_forever()
    assert scope.cancelled_caught
    assert _core.current_time() == start + 10

    # adjusting the deadline while the scope is active
    start = _core.current_time()
    with _core.CancelScope(deadline=start + 10) as scope:
        scope.deadline += 5
        await delay_forever()
    assert _core.current_time() == start + 15

    # a deadline in the past cancels on entry
    with _core.CancelScope(deadline=_core.current_time() - 1) as scope:
        assert scope.cancel_called
        await _core.checkpoint()
    assert scope.cancelled_caught

    # a scope that exits before its deadline doesn't fire
    with _core.CancelScope(deadline=_core.current_time() + 100) as scope:
        await delay(1)
    assert not scope.cancel_called
    assert not scope.cancelled_caught
    assert _core.current_statistics().seconds_to_next_deadline == inf


async def test_current_effective_deadline(mock_clock):
    assert _core.current_effective_deadline() == inf

    with _core.CancelScope(deadline=5) as scope1:
        with _core.CancelScope(deadline=10) as scope2:
            assert _core.current_effective_deadline() == 5
            scope2.deadline = 3
            assert _core.current_effective_deadline() == 3
            scope2.deadline = 10
            assert _core.current_effective_deadline() == 5
            scope1.cancel()
            assert _core.current_effective_deadline() == -inf
        with _core.CancelScope(shield=True, deadline=7):
            assert _core.current_effective_deadline() == 7

    assert _core.current_effective_deadline() == inf


async def test_cancel_scope_misnesting():
    outer = _core.CancelScope()
    inner = _core.CancelScope()
    with pytest.raises(RuntimeError) as excinfo:
        outer.__enter__()
        inner.__enter__()
        outer.__exit__(None, None, None)
    assert "still within its child" in str(excinfo.value)

    with pytest.raises(RuntimeError) as excinfo:
        outer.__exit__(None, None, None)
    assert "already been exited" in str(excinfo.value)


async def test_scope_cancel_is_absorbed():
    record = []

    async def child(i):
        try:
            await delay_forever()
        except _core.Cancelled:
            record.append(i)
            raise

    async with _core.open_scope() as scope:
        for i in range(3):
            scope.launch(child, i)
        await wait_all_tasks_blocked()
        scope.cancel()
        await delay_forever()

    # children get their Cancelled in launch order
    assert record == [0, 1, 2]
    assert scope.cancel_scope.cancelled_caught


async def test_cancel_from_outside_passes_through_scope():
    record = []

    async def child():
        try:
            await delay_forever()
        finally:
            record.append("child cleanup")

    with _core.CancelScope() as outer:
        async with _core.open_scope() as scope:
            scope.launch(child)
            await wait_all_tasks_blocked()
            outer.cancel()
            await delay_forever()
    assert outer.cancelled_caught
    assert not scope.cancel_scope.cancelled_caught
    assert record == ["child cleanup"]


async def test_launch_into_cancelled_scope_never_runs():
    ran = []

    async def child():  # pragma: no cover
        ran.append(True)

    with _core.CancelScope() as outer:
        outer.cancel()
        async with _core.open_scope() as scope:
            task = scope.launch(child)
            assert task.state is _core.TaskState.CANCELLING
    assert ran == []
    assert task.state is _core.TaskState.CANCELLED


async def test_busy_loop_polls_for_cancellation():
    counter = 0

    async def busy():
        nonlocal counter
        while True:
            counter += 1
            await _core.checkpoint_if_cancelled()
            if counter % 10 == 0:
                # give the canceller a chance to run
                await _core.checkpoint()

    async with _core.open_scope() as scope:
        task = scope.launch(busy)
        while counter < 50:
            await _core.checkpoint()
        assert task.is_active
        await task.cancel_and_join()
    assert not task.is_active
    assert task.state is _core.TaskState.CANCELLED


async def test_join_is_cancellable():
    async with _core.open_scope() as scope:
        sleeper = scope.launch(delay_forever)

        async def joiner():
            await sleeper.join()

        j = scope.launch(joiner)
        await wait_all_tasks_blocked()
        await j.cancel_and_join()
        assert j.state is _core.TaskState.CANCELLED
        assert sleeper.state is _core.TaskState.SUSPENDED
        scope.cancel()


async def test_cancelled_is_not_constructible():
    with pytest.raises(TypeError):
        raise _core.Cancelled
    with assert_checkpoints():
        await _core.checkpoint()


async def test_scope_cancel_wakes_children_before_body():
    record = []

    async def child(i):
        try:
            await delay_forever()
        except _core.Cancelled:
            record.append(i)
            raise

    async def canceller(scope):
        await wait_all_tasks_blocked()
        scope.cancel()

    async with _core.open_scope() as scope:
        for i in range(3):
            scope.launch(child, i)
        scope.launch(canceller, scope)
        try:
            await delay_forever()
        except _core.Cancelled:
            record.append("body")
            raise

    assert record == [0, 1, 2, "body"]
