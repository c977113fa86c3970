# These are the only functions that ever yield back to the task runner.

import types
import enum

import attr


# Helper for the bottommost 'yield'. You can't use 'yield' inside an async
# function, but you can inside a generator, and if you decorate your generator
# with @types.coroutine, then it's even awaitable. However, it's still not a
# real async function: in particular, it isn't recognized by
# inspect.iscoroutinefunction, and it doesn't trigger the unawaited coroutine
# tracking machinery. Since our traps are public APIs, we make them real async
# functions, and then this helper takes care of the actual yield:
@types.coroutine
def _async_yield(obj):
    return (yield obj)


# This class object is used as a singleton.
class CancelShieldedCheckpoint:
    pass


async def cancel_shielded_checkpoint():
    """Introduce a schedule point, but not a cancel point.

    This is *not* a :ref:`checkpoint <checkpoints>`, but it is half of a
    checkpoint, and when combined with :func:`checkpoint_if_cancelled` it can
    make a full checkpoint.

    Equivalent to (but potentially more efficient than)::

        with trellis.CancelScope(shield=True):
            await trellis.lowlevel.checkpoint()

    """
    return (await _async_yield(CancelShieldedCheckpoint)).unwrap()


# Return values for abort functions
class Abort(enum.Enum):
    """:class:`enum.Enum` used as the return value from abort functions.

    See :func:`wait_task_rescheduled` for details.

    .. data:: SUCCEEDED
              FAILED

    """

    SUCCEEDED = 1
    FAILED = 2


@attr.s(frozen=True)
class WaitTaskRescheduled:
    abort_func = attr.ib()


async def wait_task_rescheduled(abort_func):
    """Put the current task to sleep, with cancellation support.

    This is the lowest-level API for suspending a task in trellis. Every time
    a :class:`~trellis.lowlevel.Task` suspends, it does so by calling this
    function.

    This is a tricky interface with no guard rails. If you can use
    :class:`ParkingLot` or :func:`trellis.delay` instead, then you should.

    Generally the way it works is that before calling this function, you make
    arrangements for "someone" to call :func:`reschedule` on the current task
    at some later point. Those arrangements must be made while holding the
    runner lock (see :func:`trellis.lowlevel.current_runner_lock`), because
    with more than one worker thread the "someone" may be running right now
    on another thread.

    Then you call :func:`wait_task_rescheduled`, passing in ``abort_func``, an
    "abort callback".

    (Terminology: in trellis, "aborting" is the process of attempting to
    interrupt a suspended task to deliver a cancellation.)

    There are two possibilities for what happens next:

    1. "Someone" calls :func:`reschedule` on the current task, and
       :func:`wait_task_rescheduled` returns or raises whatever value or error
       was passed to :func:`reschedule`.

    2. The task gets cancelled (by :meth:`Task.cancel`, by the cancellation
       of a :class:`Scope` it belongs to, or by a deadline expiring). When
       this happens, the ``abort_func`` is called, with the runner lock held.
       Its interface looks like::

           def abort_func(raise_cancel):
               ...
               return trellis.lowlevel.Abort.SUCCEEDED  # or FAILED

       It should attempt to clean up any state associated with this call, and
       in particular, arrange that :func:`reschedule` will *not* be called
       later. If (and only if!) it is successful, then it should return
       :data:`Abort.SUCCEEDED`, in which case the task will automatically be
       rescheduled with an appropriate :exc:`~trellis.Cancelled` error.

       Otherwise, it should return :data:`Abort.FAILED`. This means that the
       task can't be cancelled at this time, and still has to make sure that
       "someone" eventually calls :func:`reschedule`. ``raise_cancel`` is a
       callable that raises the appropriate :exc:`~trellis.Cancelled`, for
       abort functions that want to report the cancellation later.

       In any case it's guaranteed that we only call the ``abort_func`` at
       most once per call to :func:`wait_task_rescheduled`.

    .. warning::

       If your ``abort_func`` raises an error, or returns any value other than
       :data:`Abort.SUCCEEDED` or :data:`Abort.FAILED`, then trellis will crash
       violently. Be careful! Similarly, it is entirely possible to deadlock a
       trellis program by failing to reschedule a suspended task, or cause
       havoc by calling :func:`reschedule` too many times.

    """
    return (await _async_yield(WaitTaskRescheduled(abort_func))).unwrap()
