import enum
import itertools
import logging
import random
import sys
import threading
import weakref
from collections import deque
from contextvars import copy_context
from math import inf
from time import perf_counter

import attr
from outcome import Error, Value, capture
from sniffio import current_async_library_cvar
from sortedcontainers import SortedDict

from ._exceptions import (
    TrellisInternalError, Cancelled, CapacityExceeded, WouldBlock
)
from ._instrumentation import Instruments
from ._parking_lot import ParkingLot
from ._traps import (
    Abort,
    wait_task_rescheduled,
    cancel_shielded_checkpoint,
    CancelShieldedCheckpoint,
    WaitTaskRescheduled,
)
from .._abc import Clock
from .._util import Final, NoPublicConstructor, coroutine_or_error, name_for

if sys.version_info < (3, 11):
    from exceptiongroup import BaseExceptionGroup

_NO_SEND = object()

LOGGER = logging.getLogger(__name__)


# Decorator to mark methods public. This does nothing by itself, but the
# module-level wrappers at the bottom of this file are exactly the methods
# marked with it.
def _public(fn):
    return fn


_r = random.Random()


@attr.s(frozen=True, slots=True)
class SystemClock(Clock):
    # Add a large random offset to our clock to ensure that if people
    # accidentally call time.perf_counter() directly or start comparing clocks
    # between different runs, then they'll notice the bug quickly:
    offset = attr.ib(factory=lambda: _r.uniform(10000, 200000))

    def start_clock(self):
        pass

    # In cPython 3, on every platform except Windows, perf_counter is
    # exactly the same as time.monotonic; and on Windows, it uses
    # QueryPerformanceCounter instead of GetTickCount64.
    def current_time(self):
        return self.offset + perf_counter()

    def deadline_to_sleep_time(self, deadline):
        return deadline - self.current_time()


def _strip_cancelled(exc):
    # What's left of an exception once every Cancelled has been removed.
    if isinstance(exc, Cancelled):
        return None
    if isinstance(exc, BaseExceptionGroup):
        _, rest = exc.split(Cancelled)
        return rest
    return exc


def _chain_cancelled(chain):
    # Walk from the innermost scope outwards; a shield stops the walk.
    for scope in reversed(chain):
        if scope._cancel_called:
            return True
        if scope._shield:
            return False
    return False


################################################################
# CancelScope
################################################################


MISNESTING_ADVICE = """
This is probably a bug in your code, that has caused trellis's internal state
to become corrupted. We'll do our best to recover, but from now on there are
no guarantees.

Typically this is caused by manually calling __enter__ or __exit__ on a
trellis.CancelScope, or __aenter__ or __aexit__ on the object returned by
trellis.open_scope(), or by yielding inside a generator that opened one.
"""


@attr.s(eq=False, repr=False)
class CancelScope(metaclass=Final):
    """A *cancellation scope*: the link between a unit of cancellable
    work and trellis's cancellation system.

    A :class:`CancelScope` becomes associated with some cancellable work
    when it is used as a context manager surrounding that work::

        cancel_scope = trellis.CancelScope()
        ...
        with cancel_scope:
            await long_running_operation()

    Inside the ``with`` block, a cancellation of ``cancel_scope`` (via
    a call to its :meth:`cancel` method or via the expiry of its
    :attr:`deadline`) will immediately interrupt the
    ``long_running_operation()`` by raising :exc:`Cancelled` at its
    next :ref:`checkpoint <checkpoints>`. The :exc:`Cancelled` is caught
    again when it reaches the end of the ``with`` block.

    Every task has one of these at its root, which is what
    :meth:`Task.cancel` cancels, and every :class:`Scope` has one, which is
    what :meth:`Scope.cancel` cancels. Tasks launched into a :class:`Scope`
    see the cancellation of every cancel scope that surrounded the
    ``async with open_scope()`` block.

    Cancel scopes are not reusable or reentrant; that is, each cancel
    scope can be used for at most one ``with`` block.  (You'll get a
    :exc:`RuntimeError` if you violate this rule.)

    Args:
      deadline (float): an absolute time on the run's clock at which this
          scope will cancel itself. Defaults to :data:`math.inf`.
      shield (bool): if true, cancellations from scopes and tasks *outside*
          this scope are not delivered inside it. Use this to let cleanup
          code in a cancelled task suspend.

    """

    _runner = attr.ib(default=None, init=False)
    _owner = attr.ib(default=None, init=False)
    # Ordered set ({task: None}) of every task that sees this scope's
    # cancellation: the owner, plus every task launched below it.
    _tasks = attr.ib(factory=dict, init=False)
    _has_been_entered = attr.ib(default=False, init=False)
    _active = attr.ib(default=False, init=False)
    _registered_deadline = attr.ib(default=inf, init=False)
    _cancel_called = attr.ib(default=False, init=False)
    cancelled_caught = attr.ib(default=False, init=False)

    # Constructor arguments:
    _deadline = attr.ib(default=inf, kw_only=True, converter=float)
    _shield = attr.ib(
        default=False,
        kw_only=True,
        validator=attr.validators.instance_of(bool),
    )

    def __enter__(self):
        task = current_task()
        runner = task._runner
        with runner.lock:
            if self._has_been_entered:
                raise RuntimeError(
                    "Each CancelScope may only be used for a single 'with' block"
                )
            self._has_been_entered = True
            self._runner = runner
            self._owner = task
            self._active = True
            if runner.clock.current_time() >= self._deadline:
                self._cancel_called = True
            task._regions.append(self)
            self._tasks[task] = None
            self._update_registered_deadline()
        return self

    def _attach_as_root(self, task):
        # The implicit scope every task runs inside. It's never exited with
        # 'with'; task_exited() deactivates it.
        self._has_been_entered = True
        self._runner = task._runner
        self._owner = task
        self._active = True
        task._regions.append(self)
        self._tasks[task] = None

    def _exc_filter(self, exc):
        if isinstance(exc, Cancelled):
            self.cancelled_caught = True
            return None
        if isinstance(exc, BaseExceptionGroup):
            matched, rest = exc.split(Cancelled)
            if matched is not None:
                self.cancelled_caught = True
            return rest
        return exc

    def _close(self, exc):
        if not self._active:
            new_exc = RuntimeError(
                "Cancel scope stack corrupted: attempted to exit {!r} "
                "which had already been exited".format(self)
            )
            new_exc.__context__ = exc
            return new_exc
        scope_task = current_task()
        with self._runner.lock:
            if scope_task is not self._owner:
                new_exc = RuntimeError(
                    "Cancel scope stack corrupted: attempted to exit {!r} "
                    "from unrelated {!r}\n{}".format(
                        self, scope_task, MISNESTING_ADVICE
                    )
                )
                new_exc.__context__ = exc
                return new_exc
            if scope_task._regions[-1] is not self:
                # Some inner cancel scope is still open. Forget about it so
                # the task's region stack is at least consistent again, and
                # don't let the mistake pass silently.
                new_exc = RuntimeError(
                    "Cancel scope stack corrupted: attempted to exit {!r} "
                    "in {!r} that's still within its child {!r}\n{}".format(
                        self, scope_task, scope_task._regions[-1],
                        MISNESTING_ADVICE
                    )
                )
                new_exc.__context__ = exc
                exc = new_exc
                while scope_task._regions[-1] is not self:
                    abandoned = scope_task._regions.pop()
                    abandoned._deactivate(scope_task)
            scope_task._regions.pop()
            self._deactivate(scope_task)
            outer_visible = not self._shield and scope_task._cancel_visible()
        if exc is not None and self._cancel_called and not outer_visible:
            exc = self._exc_filter(exc)
        return exc

    def _deactivate(self, task):
        # runner lock held
        self._tasks.pop(task, None)
        self._active = False
        self._update_registered_deadline()

    def __exit__(self, etype, exc, tb):
        # NB: ScopeManager calls _close() directly rather than __exit__(),
        # so __exit__() must be just _close() plus this logic for adapting
        # the exception-filtering result to the context manager API.

        # Tracebacks show the 'raise' line below out of context, so let's give
        # this variable a name that makes sense out of context.
        remaining_error_after_cancel_scope = self._close(exc)
        if remaining_error_after_cancel_scope is None:
            return True
        elif remaining_error_after_cancel_scope is exc:
            return False
        else:
            # Python doesn't allow us to encapsulate this __context__ fixup.
            old_context = remaining_error_after_cancel_scope.__context__
            try:
                raise remaining_error_after_cancel_scope
            finally:
                _, value, _ = sys.exc_info()
                assert value is remaining_error_after_cancel_scope
                value.__context__ = old_context

    def __repr__(self):
        if self._active:
            binding = "active"
        elif self._has_been_entered:
            binding = "exited"
        else:
            binding = "unbound"

        if self._cancel_called:
            state = ", cancelled"
        elif self._deadline == inf:
            state = ""
        else:
            try:
                now = current_time()
            except RuntimeError:  # must be called from async context
                state = ""
            else:
                state = ", deadline is {:.2f} seconds {}".format(
                    abs(self._deadline - now),
                    "from now" if self._deadline >= now else "ago"
                )

        return "<trellis.CancelScope at {:#x}, {}{}>".format(
            id(self), binding, state
        )

    def _update_registered_deadline(self):
        # runner lock held
        old = self._registered_deadline
        if not self._active or self._cancel_called:
            new = inf
        else:
            new = self._deadline
        if old != new:
            self._registered_deadline = new
            deadlines = self._runner.deadlines
            if old != inf:
                del deadlines[old, id(self)]
            if new != inf:
                deadlines[new, id(self)] = self
                # Idle workers sized their wait on the old earliest deadline.
                if deadlines.keys()[0] == (new, id(self)):
                    self._runner.wakeup.notify_all()

    @property
    def deadline(self):
        """Read-write, :class:`float`. An absolute time on the current
        run's clock at which this scope will automatically become
        cancelled. You can adjust the deadline by modifying this
        attribute, e.g.::

           # I need a little more time!
           cancel_scope.deadline += 30

        Defaults to :data:`math.inf`, which means "no deadline", though
        this can be overridden by the ``deadline=`` argument to
        the :class:`~trellis.CancelScope` constructor.
        """
        return self._deadline

    @deadline.setter
    def deadline(self, new_deadline):
        new_deadline = float(new_deadline)
        if self._runner is None:
            self._deadline = new_deadline
            return
        with self._runner.lock:
            self._deadline = new_deadline
            self._update_registered_deadline()

    @property
    def shield(self):
        """Read-only :class:`bool`. While this is :data:`True`, code inside
        this scope does not receive :exc:`~trellis.Cancelled` exceptions
        caused by scopes or tasks outside it. It can still be cancelled by
        this scope itself, or by scopes opened inside it::

           try:
               ...
           finally:
               with trellis.CancelScope(shield=True):
                   # A cancelled task can still take its time here:
                   await trellis.delay(0.5)

        It is fixed at construction, so a task's cancellation state only
        ever moves forward.
        """
        return self._shield

    def cancel(self):
        """Cancels this scope immediately.

        Every task that sees this scope and is currently suspended is woken
        up with :exc:`Cancelled`; tasks that are running get it at their
        next checkpoint.

        This method is idempotent, i.e., if the scope was already
        cancelled then this method silently does nothing.
        """
        if self._runner is None:
            self._cancel_called = True
            return
        with self._runner.lock:
            if self._cancel_called:
                return
            self._cancel_called = True
            if self._active:
                self._update_registered_deadline()
            # Children in spawn order, then the task that owns the scope.
            tasks = [task for task in self._tasks if task is not self._owner]
            if self._owner in self._tasks:
                tasks.append(self._owner)
            for task in tasks:
                task._cancellation_changed()

    @property
    def cancel_called(self):
        """Readonly :class:`bool`. Records whether cancellation has been
        requested for this scope, either by an explicit call to
        :meth:`cancel` or by the deadline expiring.

        This attribute being True does *not* necessarily mean that the
        code within the scope has been, or will be, affected by the
        cancellation. If you want to know whether or not a chunk of code
        was actually cancelled, then :attr:`cancelled_caught` is usually more
        appropriate.
        """
        if self._active and not self._cancel_called:
            # Make sure cancel_called is true if the deadline has passed,
            # even if the run loop hasn't gotten around to noticing yet.
            if self._runner.clock.current_time() >= self._deadline:
                self.cancel()
        return self._cancel_called


################################################################
# Scope and friends
################################################################


class ScopeManager:
    """Scope context manager.

    Note we explicitly avoid @asynccontextmanager since it adds a lot of
    extraneous stack frames to exceptions, as well as cause problematic
    behavior with handling of StopIteration and StopAsyncIteration.

    """

    def __init__(self, strict_exception_groups):
        self._strict_exception_groups = strict_exception_groups

    async def __aenter__(self):
        self._scope = CancelScope()
        self._scope.__enter__()
        task = current_task()
        strict = self._strict_exception_groups
        if strict is None:
            strict = task._runner.strict_exception_groups
        self._nursery = Scope._create(task, self._scope, strict)
        return self._nursery

    async def __aexit__(self, etype, exc, tb):
        new_exc = await self._nursery._nested_child_finished(exc)
        # Tracebacks show the 'raise' line below out of context, so let's give
        # this variable a name that makes sense out of context.
        combined_error_from_scope = self._scope._close(new_exc)
        if combined_error_from_scope is None:
            return True
        elif combined_error_from_scope is exc:
            return False
        else:
            # Python doesn't allow us to encapsulate this __context__ fixup.
            old_context = combined_error_from_scope.__context__
            try:
                raise combined_error_from_scope
            finally:
                _, value, _ = sys.exc_info()
                assert value is combined_error_from_scope
                value.__context__ = old_context

    def __enter__(self):
        raise RuntimeError(
            "use 'async with open_scope(...)', not 'with open_scope(...)'"
        )

    def __exit__(self, *args):  # pragma: no cover
        assert False, """Never called, but should be defined"""


def open_scope(strict_exception_groups=None):
    """Returns an async context manager which must be used to create a
    new `Scope`.

    It does not block on entry; on exit it blocks until all child tasks
    have exited.

    Args:
      strict_exception_groups (bool): If true, failures raised out of the
          scope are always wrapped in an :exc:`ExceptionGroup`, even if
          there is only one of them. If false, a single failure is raised
          as is. ``None`` (the default) uses the value passed to
          :func:`run`.

    """
    return ScopeManager(strict_exception_groups)


class Scope(metaclass=NoPublicConstructor):
    """A structured lifetime boundary which owns a set of child tasks.

    Not constructed directly, use `open_scope` instead.

    The ``async with open_scope()`` block does not exit until every child
    task has exited. If the body raises, or any child fails, the scope
    cancels everything still running inside it (the remaining children and
    the body) and then re-raises the failures once they have all finished.

    Attributes:
        cancel_scope:
            Creating a scope also implicitly creates a cancellation scope,
            which is exposed as the :attr:`cancel_scope` attribute. This is
            used internally to implement the logic where if an error occurs
            then ``__aexit__`` cancels all children, but you can use it for
            other things, e.g. if you want to explicitly cancel all children
            in response to some external event.
    """

    def __init__(self, parent_task, cancel_scope, strict_exception_groups):
        self._parent_task = parent_task
        parent_task._child_scopes.append(self)
        # every cancel scope that children see - we take a snapshot, so it
        # won't be affected by scopes the parent enters later.
        self._chain = parent_task._cancel_chain()
        self.cancel_scope = cancel_scope
        self._strict_exception_groups = strict_exception_groups
        # {task: None}, in spawn order
        self._children = {}
        self._pending_excs = []
        # The "nested child" is how this code refers to the contents of the
        # scope's 'async with' block, which acts like a child Task in all
        # the ways we can make it.
        self._nested_child_running = True
        self._parent_waiting_in_aexit = False
        self._closed = False

    def __repr__(self):
        return "<trellis.Scope of {!r} with {} children>".format(
            self._parent_task, len(self._children)
        )

    @property
    def child_tasks(self):
        """(`list`): The child :class:`~trellis.lowlevel.Task` objects that
        are still running, in the order they were launched."""
        with self._parent_task._runner.lock:
            return list(self._children)

    @property
    def parent_task(self):
        "(`~trellis.lowlevel.Task`):  The Task that opened this scope."
        return self._parent_task

    def launch(self, async_fn, *args, name=None):
        """Creates a child task, scheduling ``await async_fn(*args)``.

        Note that this is *not* an async function and you don't use await
        when calling it. It sets up the new task, but then returns
        immediately, *before* it has a chance to run. The new task won't
        actually get a chance to do anything until a worker is free to pick
        it up; tasks start in the order they were launched.

        It's possible to pass a scope object into another task, which
        allows that task to launch new child tasks in the first task's
        scope.

        The child task sees its scope's cancellation, and the cancellation
        of everything that was around the scope when it was opened.

        Args:
            async_fn: An async callable.
            args: Positional arguments for ``async_fn``. If you want
                  to pass keyword arguments, use
                  :func:`functools.partial`.
            name: The name for this task. Only used for
                  debugging/introspection
                  (e.g. ``repr(task_obj)``). If this isn't a string,
                  :meth:`launch` will try to make it one.

        Returns:
            Task: a handle that can be joined and cancelled.

        Raises:
            RuntimeError: If this scope is no longer open
                          (i.e. its ``async with`` block has
                          exited).
            CapacityExceeded: If the run was started with ``max_tasks=N``
                          and N tasks are already alive.
        """
        return self._parent_task._runner.spawn_impl(async_fn, args, self, name)

    def cancel(self):
        """Cancel every child task (in the order they were launched) and the
        body of the ``async with`` block.

        Equivalent to ``scope.cancel_scope.cancel()``. The resulting
        :exc:`Cancelled` exceptions are absorbed when they reach the end of
        the ``async with`` block.
        """
        self.cancel_scope.cancel()

    def _add_exc(self, exc):
        # runner lock held
        if any(exc is pending for pending in self._pending_excs):
            pass
        elif isinstance(exc, Cancelled) and any(
            isinstance(pending, Cancelled) for pending in self._pending_excs
        ):
            # any Cancelled is as good as any other
            pass
        else:
            self._pending_excs.append(exc)
        self.cancel_scope.cancel()

    def _check_scope_closed(self):
        # runner lock held
        if not (self._nested_child_running or self._children):
            self._closed = True
            if self._parent_waiting_in_aexit:
                self._parent_waiting_in_aexit = False
                self._parent_task._runner.reschedule(self._parent_task)

    def _child_finished(self, task, outcome):
        # runner lock held
        del self._children[task]
        if type(outcome) is Error:
            failure = _strip_cancelled(outcome.error)
            if failure is not None:
                self._add_exc(failure)
        self._check_scope_closed()

    async def _nested_child_finished(self, nested_child_exc):
        """Returns the combined exception, if there are pending exceptions."""
        runner = self._parent_task._runner
        with runner.lock:
            if nested_child_exc is not None:
                self._add_exc(nested_child_exc)
            self._nested_child_running = False
            self._check_scope_closed()
            closed = self._closed
            if not closed:
                self._parent_waiting_in_aexit = True

        if not closed:
            # If we get cancelled, then save that, but still wait until our
            # children finish.
            def aborted(raise_cancel):
                self._add_exc(capture(raise_cancel).error)
                return Abort.FAILED

            await wait_task_rescheduled(aborted)
        else:
            # Nothing to wait for, so just execute a checkpoint -- but we
            # still need to mix any exception (e.g. from an external
            # cancellation) in with the rest of our exceptions.
            try:
                await checkpoint()
            except BaseException as exc:
                with runner.lock:
                    self._add_exc(exc)

        popped = self._parent_task._child_scopes.pop()
        assert popped is self
        with runner.lock:
            return self._combined_excs()

    def _combined_excs(self):
        # runner lock held
        cancel_scope = self.cancel_scope
        absorb = cancel_scope._cancel_called and (
            cancel_scope._shield
            or not self._parent_task._cancel_visible_outside(cancel_scope)
        )
        excs = []
        for exc in self._pending_excs:
            if absorb:
                exc = _strip_cancelled(exc)
                if exc is None:
                    cancel_scope.cancelled_caught = True
                    continue
            excs.append(exc)
        if not excs:
            return None
        if len(excs) == 1 and not self._strict_exception_groups:
            return excs[0]
        return BaseExceptionGroup("Exceptions from Trellis scope", excs)


################################################################
# Task and friends
################################################################


class TaskState(enum.Enum):
    """The lifecycle state of a :class:`Task`.

    Transitions only ever move forward::

        CREATED -> RUNNING <-> SUSPENDED -> CANCELLING -> terminal

    where CANCELLING may be entered from any non-terminal state, and the
    terminal states are COMPLETED, CANCELLED and FAILED.

    """

    CREATED = "created"
    RUNNING = "running"
    SUSPENDED = "suspended"
    CANCELLING = "cancelling"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def is_terminal(self):
        return self in _TERMINAL_STATES


_TERMINAL_STATES = frozenset(
    [TaskState.COMPLETED, TaskState.CANCELLED, TaskState.FAILED]
)


@attr.s(eq=False, hash=False, repr=False)
class Task(metaclass=NoPublicConstructor):
    coro = attr.ib()
    _runner = attr.ib()
    name = attr.ib()
    # PEP 567 contextvars context
    context = attr.ib()
    # weakref to the Scope that owns us (None for the init task)
    _parent_scope_ref = attr.ib()
    # Snapshot of the cancel scopes around our parent scope, outermost first
    _inherited = attr.ib()
    id = attr.ib(init=False, factory=itertools.count(1).__next__)

    _state = attr.ib(default=TaskState.CREATED, init=False)
    _outcome = attr.ib(default=None, init=False)

    # Invariant:
    # - for unscheduled tasks, _next_send is None
    # - for scheduled tasks, _next_send is an Outcome object
    # Tasks start out scheduled, with a dummy Value(None) that is never sent.
    _next_send = attr.ib(default=None, init=False)
    _abort_func = attr.ib(default=None, init=False)
    _started = attr.ib(default=False, init=False)
    # True while some worker is inside coro.send() for us
    _stepping = attr.ib(default=False, init=False)

    # Cancel scopes this task has entered, outermost first. _regions[0] is
    # the task's own root scope.
    _regions = attr.ib(factory=list, init=False, repr=False)
    _cancel_scope = attr.ib(default=None, init=False, repr=False)

    # For introspection
    _child_scopes = attr.ib(factory=list, init=False)

    # Created on first join()
    _join_lot = attr.ib(default=None, init=False, repr=False)

    # these are counts of how many cancel/schedule points this task has
    # executed, for assert{_no,}_checkpoints
    _cancel_points = attr.ib(default=0, init=False)
    _schedule_points = attr.ib(default=0, init=False)

    def __repr__(self):
        return "<Task {!r} #{} {}>".format(self.name, self.id, self._state.value)

    @property
    def state(self):
        """The task's current :class:`TaskState`."""
        return self._state

    @property
    def outcome(self):
        """``None`` while the task is alive; afterwards an
        :class:`outcome.Value` holding what it returned or an
        :class:`outcome.Error` holding what it raised (a
        :exc:`~trellis.Cancelled` if it was cancelled).

        """
        return self._outcome

    @property
    def parent_scope(self):
        """The :class:`~trellis.Scope` this task was launched into (or None
        if this is the "init" task, or the scope is gone).

        Example use case: drawing a visualization of the task tree in a
        debugger.

        """
        if self._parent_scope_ref is None:
            return None
        return self._parent_scope_ref()

    @property
    def child_scopes(self):
        """The scopes this task has open.

        This is a list, with outer scopes before inner scopes.

        """
        return list(self._child_scopes)

    @property
    def cancel_requested(self):
        """True once cancellation has been requested for this task as a
        whole, either directly via :meth:`cancel` or through the
        cancellation of a scope it was launched into.

        """
        with self._runner.lock:
            return self._root_cancelled()

    @property
    def is_active(self):
        """True if the task hasn't finished and nobody has asked it to stop.

        Long-running loops that never suspend can poll this (or call
        :func:`trellis.checkpoint_if_cancelled`) to honor cancellation.

        """
        with self._runner.lock:
            return not self._state.is_terminal and not self._root_cancelled()

    ################
    # Join
    ################

    def _result_for_joiner(self):
        outcome = self._outcome
        # Inlined outcome.unwrap(): every joiner gets to see the outcome, and
        # Outcome objects can only be unwrapped once.
        if type(outcome) is Value:
            return outcome.value
        if _strip_cancelled(outcome.error) is None:
            return None
        raise outcome.error

    def join_nowait(self):
        """Like :meth:`join`, but raises :exc:`~trellis.WouldBlock` instead
        of waiting if the task hasn't finished yet.

        """
        with self._runner.lock:
            if self._outcome is None:
                raise WouldBlock
        return self._result_for_joiner()

    async def join(self):
        """Wait until this task has finished.

        Returns:
          Whatever the task's async function returned, or ``None`` if the
          task was cancelled.

        Raises:
          Whatever exception the task failed with. The same failure is
          also raised out of the task's :class:`Scope`.
          RuntimeError: if a task tries to join itself.

        """
        current = current_task()
        if current is self:
            raise RuntimeError("a task can't join itself")
        with self._runner.lock:
            if self._outcome is None:
                if self._join_lot is None:
                    self._join_lot = ParkingLot()
                lot = self._join_lot
                idx = lot._park_locked(current)
            else:
                lot = None
        if lot is None:
            await checkpoint()
        else:
            await lot._wait_parked(idx)
        return self._result_for_joiner()

    def cancel(self):
        """Request cancellation of this task, and of every task launched
        into scopes it has open.

        If the task is suspended it is woken immediately with
        :exc:`~trellis.Cancelled`; if it's running, it gets the exception at
        its next checkpoint. A task that was cancelled before it ever got to
        run never runs at all. Cancelling a finished task does nothing.

        """
        with self._runner.lock:
            if self._state.is_terminal:
                return
            self._cancel_scope.cancel()

    async def cancel_and_join(self):
        """:meth:`cancel` this task, then :meth:`join` it.

        When this returns, the task has finished, including any ``finally``
        blocks it was in.

        """
        self.cancel()
        return await self.join()

    ################
    # Cancellation
    ################

    def _cancel_chain(self):
        return self._inherited + tuple(self._regions)

    def _root_cancelled(self):
        # runner lock held
        return self._cancel_scope._cancel_called or _chain_cancelled(
            self._inherited
        )

    def _cancel_visible(self):
        # runner lock held. Would a checkpoint raise Cancelled right now?
        for scope in reversed(self._regions):
            if scope._cancel_called:
                return True
            if scope._shield:
                return False
        return _chain_cancelled(self._inherited)

    def _cancel_visible_outside(self, cancel_scope):
        # runner lock held. Same, but only looking at what's around
        # cancel_scope.
        idx = self._regions.index(cancel_scope)
        for scope in reversed(self._regions[:idx]):
            if scope._cancel_called:
                return True
            if scope._shield:
                return False
        return _chain_cancelled(self._inherited)

    def _set_state(self, new_state):
        # runner lock held
        old_state = self._state
        if old_state.is_terminal:
            raise TrellisInternalError(
                "{!r} can't leave terminal state {}".format(self, old_state)
            )
        if old_state is TaskState.CANCELLING and not new_state.is_terminal:
            return
        self._state = new_state

    def _cancellation_changed(self):
        # runner lock held
        if self._state.is_terminal:
            return
        if self._root_cancelled():
            self._set_state(TaskState.CANCELLING)
        self._attempt_delivery_of_any_pending_cancel()

    def _attempt_abort(self, raise_cancel):
        # Either the abort succeeds, in which case we will reschedule the
        # task, or else it fails, in which case it will worry about
        # rescheduling itself (hopefully eventually calling reraise to raise
        # the given exception, but not necessarily).
        #
        # We only attempt to abort once per blocking call, regardless of
        # whether we succeeded or failed. Clear it first: the abort function
        # itself may cancel things, which lands back here.
        abort_func = self._abort_func
        self._abort_func = None
        success = abort_func(raise_cancel)
        if type(success) is not Abort:
            raise TrellisInternalError("abort function must return Abort enum")
        if success is Abort.SUCCEEDED:
            self._runner.reschedule(self, capture(raise_cancel))

    def _attempt_delivery_of_any_pending_cancel(self):
        # runner lock held
        if self._abort_func is None:
            return
        if not self._cancel_visible():
            return

        def raise_cancel():
            raise Cancelled._create()

        self._attempt_abort(raise_cancel)


################################################################
# The central Runner object
################################################################

GLOBAL_RUN_CONTEXT = threading.local()


@attr.s(frozen=True)
class _RunStatistics:
    tasks_living = attr.ib()
    tasks_runnable = attr.ib()
    tasks_running = attr.ib()
    seconds_to_next_deadline = attr.ib()
    workers = attr.ib()


# This holds all the state that gets trampled by worker threads. The one
# RLock guards the run queue, the deadlines, and every Task, CancelScope and
# Scope; the Condition parks idle workers.
@attr.s(eq=False, hash=False)
class Runner:
    clock = attr.ib()
    instruments = attr.ib()
    workers = attr.ib(default=1)
    max_tasks = attr.ib(default=None)
    strict_exception_groups = attr.ib(default=False)

    lock = attr.ib(factory=threading.RLock)
    wakeup = attr.ib(default=None)

    runq = attr.ib(factory=deque)
    tasks = attr.ib(factory=set)
    # number of tasks currently inside coro.send() on some worker
    running = attr.ib(default=0)

    # {(deadline, id(CancelScope)): CancelScope}
    # only contains scopes with non-infinite deadlines that are currently
    # active and not yet cancelled
    deadlines = attr.ib(factory=SortedDict)

    init_task = attr.ib(default=None)
    root_scope = attr.ib(default=None)
    main_task = attr.ib(default=None)
    main_task_outcome = attr.ib(default=None)

    clock_autojump_threshold = attr.ib(default=inf)

    done = attr.ib(default=False)
    crash = attr.ib(default=None)

    def __attrs_post_init__(self):
        if self.wakeup is None:
            self.wakeup = threading.Condition(self.lock)

    def close(self):
        if self.instruments.after_run:
            self.instruments.after_run()

    @_public
    def current_statistics(self):
        """Returns an object containing run-loop-level debugging information.

        Currently the following fields are defined:

        * ``tasks_living`` (int): The number of tasks that have been spawned
          and not yet exited.
        * ``tasks_runnable`` (int): The number of tasks that are currently
          queued on the run queue (as opposed to suspended waiting for
          something to happen).
        * ``tasks_running`` (int): The number of tasks a worker thread is
          executing right now.
        * ``seconds_to_next_deadline`` (float): The time until the next
          pending cancel scope deadline. May be negative if the deadline has
          expired but we haven't yet processed cancellations. May be
          :data:`~math.inf` if there are no pending deadlines.
        * ``workers`` (int): The number of worker threads in this run.

        """
        with self.lock:
            if self.deadlines:
                next_deadline, _ = self.deadlines.keys()[0]
                seconds_to_next_deadline = next_deadline - self.current_time()
            else:
                seconds_to_next_deadline = float("inf")
            return _RunStatistics(
                tasks_living=len(self.tasks),
                tasks_runnable=len(self.runq),
                tasks_running=self.running,
                seconds_to_next_deadline=seconds_to_next_deadline,
                workers=self.workers,
            )

    @_public
    def current_time(self):
        """Returns the current time according to trellis's internal clock.

        Returns:
            float: The current time.

        Raises:
            RuntimeError: if not inside a call to :func:`trellis.run`.

        """
        return self.clock.current_time()

    @_public
    def current_clock(self):
        """Returns the current :class:`~trellis.abc.Clock`.

        """
        return self.clock

    @_public
    def current_root_task(self):
        """Returns the current root :class:`Task`.

        This is the task that is the ultimate parent of all other tasks.

        """
        return self.init_task

    @_public
    def current_runner_lock(self):
        """Returns the lock that guards the run loop's internal state.

        Low-level code that arranges for a task to be rescheduled (see
        :func:`wait_task_rescheduled`) must hold it while doing so. It's a
        :class:`threading.RLock`.

        """
        return self.lock

    ################
    # Core task handling primitives
    ################

    @_public
    def reschedule(self, task, next_send=_NO_SEND):
        """Reschedule the given task with the given
        :class:`outcome.Outcome`.

        See :func:`wait_task_rescheduled` for the gory details.

        There must be exactly one call to :func:`reschedule` for every call to
        :func:`wait_task_rescheduled`. (And when counting, keep in mind that
        returning :data:`Abort.SUCCEEDED` from an abort callback is equivalent
        to calling :func:`reschedule` once.)

        Args:
          task (trellis.lowlevel.Task): the task to be rescheduled. Must be
              suspended in a call to :func:`wait_task_rescheduled`.
          next_send (outcome.Outcome): the value (or error) to return (or
              raise) from :func:`wait_task_rescheduled`.

        """
        if next_send is _NO_SEND:
            next_send = Value(None)

        with self.lock:
            assert task._runner is self
            assert task._next_send is None
            task._next_send = next_send
            task._abort_func = None
            if task._stepping:
                # The worker that's running it queues it when the step ends
                return
            self._enqueue(task)

    def _enqueue(self, task):
        # runner lock held
        self.runq.append(task)
        if self.instruments.task_scheduled:
            self.instruments.task_scheduled(task)
        self.wakeup.notify()

    def spawn_impl(self, async_fn, args, scope, name, *, system_task=False):
        with self.lock:

            ######
            # Make sure the scope is in working order
            ######

            # This sorta feels like it should be a method on scope, except it
            # has to handle scope=None for init. And it touches the internals
            # of all kinds of objects.
            if scope is not None and scope._closed:
                raise RuntimeError("Scope is closed to new arrivals")
            if scope is None:
                assert self.init_task is None
            if (
                not system_task
                and self.max_tasks is not None
                # the init task doesn't count against the limit
                and len(self.tasks) - 1 >= self.max_tasks
            ):
                LOGGER.debug(
                    "refusing to launch %r: %d tasks alive, max_tasks=%d",
                    async_fn, len(self.tasks) - 1, self.max_tasks
                )
                raise CapacityExceeded(
                    "can't launch more than max_tasks={} tasks at once"
                    .format(self.max_tasks)
                )

            ######
            # Call the function and get the coroutine object, while giving
            # helpful errors for common mistakes.
            ######

            context = copy_context()
            context.run(current_async_library_cvar.set, "trellis")
            coro = context.run(coroutine_or_error, async_fn, *args)

            ######
            # Set up the Task object
            ######

            if name is None:
                name = async_fn
            name = name_for(name)

            task = Task._create(
                coro=coro,
                runner=self,
                name=name,
                context=context,
                parent_scope_ref=None if scope is None else weakref.ref(scope),
                inherited=() if scope is None else scope._chain,
            )
            task._cancel_scope = CancelScope()
            task._cancel_scope._attach_as_root(task)
            for cancel_scope in task._inherited:
                cancel_scope._tasks[task] = None
            self.tasks.add(task)
            if scope is not None:
                scope._children[task] = None
            if task._root_cancelled():
                # Launched into a scope that's already cancelled; it will
                # never get to run.
                task._set_state(TaskState.CANCELLING)

            if self.instruments.task_spawned:
                self.instruments.task_spawned(task)
            # The first send is always a literal None, see _step().
            self.reschedule(task)
            return task

    def task_exited(self, task, outcome):
        # runner lock held
        if type(outcome) is Value:
            final_state = TaskState.COMPLETED
        elif _strip_cancelled(outcome.error) is None:
            final_state = TaskState.CANCELLED
        else:
            final_state = TaskState.FAILED
        task._set_state(final_state)
        task._outcome = outcome

        for cancel_scope in task._cancel_chain():
            cancel_scope._tasks.pop(task, None)
        task._cancel_scope._active = False
        self.tasks.remove(task)
        if task._join_lot is not None:
            task._join_lot.unpark_all()

        if task is self.main_task:
            self.main_task_outcome = outcome
            self.root_scope._child_finished(task, Value(None))
        elif task is self.init_task:
            # If the init task crashed, then something is very wrong and we
            # let the error propagate. (It'll eventually be wrapped in a
            # TrellisInternalError.)
            if type(outcome) is Error:
                raise outcome.error
            # the init task should be the last task to exit. If not, then
            # something is very wrong.
            if self.tasks:  # pragma: no cover
                raise TrellisInternalError("tasks outlived the init task")
            self.done = True
            self.wakeup.notify_all()
        else:
            task.parent_scope._child_finished(task, outcome)

        if self.instruments.task_exited:
            self.instruments.task_exited(task)

    ################
    # Init and the run loop
    ################

    async def init(self, async_fn, args):
        async with open_scope() as root_scope:
            self.root_scope = root_scope
            try:
                # Hold the lock so main_task is set before any worker can
                # step it.
                with self.lock:
                    self.main_task = self.spawn_impl(
                        async_fn, args, root_scope, None
                    )
            except BaseException as exc:
                self.main_task_outcome = Error(exc)

    def work(self):
        # The loop each worker thread runs until the init task exits.
        while True:
            task = self._next_task()
            if task is None:
                return
            self._step(task)

    def _fire_expired_deadlines(self):
        # runner lock held
        if not self.deadlines:
            return
        now = self.clock.current_time()
        while self.deadlines:
            (deadline, _), cancel_scope = self.deadlines.peekitem(0)
            if deadline <= now:
                # This removes the given scope from self.deadlines:
                cancel_scope.cancel()
            else:
                break

    def _next_task(self):
        with self.lock:
            while True:
                if self.done:
                    return None
                self._fire_expired_deadlines()
                if self.runq:
                    self.running += 1
                    return self.runq.popleft()

                # Nothing to do; park until a task is rescheduled or the
                # next deadline comes around.
                if self.deadlines:
                    deadline, _ = self.deadlines.keys()[0]
                    timeout = self.clock.deadline_to_sleep_time(deadline)
                else:
                    timeout = _MAX_TIMEOUT
                timeout = min(max(0, timeout), _MAX_TIMEOUT)

                idle_primed = None
                if not self.running:
                    if self.waiting_for_idle:
                        cushion, _, _ = self.waiting_for_idle.keys()[0]
                        if cushion < timeout:
                            timeout = cushion
                            idle_primed = IdlePrimedTypes.WAITING_FOR_IDLE
                    # We use 'elif' here because if there are tasks in
                    # wait_all_tasks_blocked, then those tasks will wake up
                    # without jumping the clock, so we don't need to autojump.
                    # With no deadline there's nothing to jump to.
                    elif self.deadlines and self.clock_autojump_threshold < timeout:
                        timeout = self.clock_autojump_threshold
                        idle_primed = IdlePrimedTypes.AUTOJUMP

                if self.instruments.before_idle_wait:
                    self.instruments.before_idle_wait(timeout)
                notified = self.wakeup.wait(timeout)
                if self.instruments.after_idle_wait:
                    self.instruments.after_idle_wait(timeout)

                if (
                    idle_primed is not None
                    and not notified
                    and not self.runq
                    and not self.running
                    and not self.done
                ):
                    if idle_primed is IdlePrimedTypes.WAITING_FOR_IDLE:
                        cushion, tiebreaker, _ = self.waiting_for_idle.keys()[0]
                        while self.waiting_for_idle:
                            key, task = self.waiting_for_idle.peekitem(0)
                            if key[:2] == (cushion, tiebreaker):
                                del self.waiting_for_idle[key]
                                self.reschedule(task)
                            else:
                                break
                    else:
                        self.clock._autojump()

    def _step(self, task):
        GLOBAL_RUN_CONTEXT.task = task

        if self.instruments.before_task_step:
            self.instruments.before_task_step(task)

        with self.lock:
            next_send = task._next_send
            task._next_send = None
            task._stepping = True
            first_step = not task._started
            task._started = True
            # Cancelled before it ever ran: don't run it at all.
            never_run = first_step and task._state is TaskState.CANCELLING
            if not never_run:
                task._set_state(TaskState.RUNNING)

        final_outcome = None
        msg = None
        if never_run:
            task.coro.close()
            final_outcome = Error(Cancelled._create())
        else:
            try:
                # We send in the Outcome object and unwrap it on the other
                # side. The very first send has to be a literal unboxed None.
                if first_step:
                    msg = task.context.run(task.coro.send, None)
                else:
                    msg = task.context.run(task.coro.send, next_send)
            except StopIteration as stop_iteration:
                final_outcome = Value(stop_iteration.value)
            except BaseException as task_exc:
                # Store for later, removing the uninteresting top frame (this
                # function catching it).
                tb = task_exc.__traceback__
                if tb is not None and tb.tb_next is not None:
                    task_exc = task_exc.with_traceback(tb.tb_next)
                final_outcome = Error(task_exc)

        # Reported before the task can be requeued, so that another worker
        # never sees its next before_task_step ahead of this after_task_step.
        if self.instruments.after_task_step:
            self.instruments.after_task_step(task)

        # We can't call task_exited directly inside the except: blocks above,
        # because then the exceptions end up attaching themselves to other
        # exceptions as __context__ in unwanted ways.
        with self.lock:
            task._stepping = False
            self.running -= 1
            if final_outcome is not None:
                self.task_exited(task, final_outcome)
            else:
                task._schedule_points += 1
                if msg is CancelShieldedCheckpoint:
                    task._set_state(TaskState.SUSPENDED)
                    self.reschedule(task)
                elif type(msg) is WaitTaskRescheduled:
                    task._cancel_points += 1
                    task._set_state(TaskState.SUSPENDED)
                    if task._next_send is not None:
                        # Somebody woke it up before this step was over.
                        self._enqueue(task)
                    else:
                        task._abort_func = msg.abort_func
                        task._attempt_delivery_of_any_pending_cancel()
                else:
                    exc = TypeError(
                        "trellis.run received unrecognized yield message {!r}. "
                        "Are you trying to use a library written for some "
                        "other framework like asyncio? That won't work "
                        "without some kind of compatibility shim.".format(msg)
                    )
                    # How can we resume this task? It's blocked in code we
                    # don't control, waiting for some message that we know
                    # nothing about. So instead we abandon this task and
                    # propagate the exception into the task's scope.
                    self.task_exited(task, Error(exc))

        del GLOBAL_RUN_CONTEXT.task

    def shutdown(self, exc=None):
        with self.lock:
            if exc is not None and self.crash is None:
                self.crash = exc
            self.done = True
            self.wakeup.notify_all()

    ################
    # Quiescing
    ################

    waiting_for_idle = attr.ib(factory=SortedDict)

    @_public
    async def wait_all_tasks_blocked(self, cushion=0.0, tiebreaker=0):
        """Block until there are no runnable tasks.

        This is useful in testing code when you want to give other tasks a
        chance to "settle down". The calling task is suspended, and doesn't
        wake up until every worker has been idle for at least ``cushion``
        seconds.

        Note that ``cushion`` is measured in *real* time, not the trellis
        clock time.

        If there are multiple tasks suspended in
        :func:`wait_all_tasks_blocked`, then the one with the shortest
        ``cushion`` is the one woken (and this task becoming unblocked resets
        the timers for the remaining tasks). If there are multiple tasks that
        have exactly the same ``cushion``, then the one with the lowest
        ``tiebreaker`` value is woken first. And if there are multiple tasks
        with the same ``cushion`` and the same ``tiebreaker``, then all are
        woken.

        """
        task = current_task()
        key = (cushion, tiebreaker, task.id)
        with self.lock:
            self.waiting_for_idle[key] = task

        def abort(_):
            del self.waiting_for_idle[key]
            return Abort.SUCCEEDED

        await wait_task_rescheduled(abort)

    ################
    # Instrumentation
    ################

    @_public
    def add_instrument(self, instrument):
        """Start instrumenting the current run loop with the given instrument.

        Args:
          instrument (trellis.abc.Instrument): The instrument to activate.

        If ``instrument`` is already active, does nothing.

        """
        self.instruments.add_instrument(instrument)

    @_public
    def remove_instrument(self, instrument):
        """Stop instrumenting the current run loop with the given instrument.

        Args:
          instrument (trellis.abc.Instrument): The instrument to de-activate.

        Raises:
          KeyError: if the instrument is not currently active. This could
              occur either because you never added it, or because you added it
              and then it raised an unhandled exception and was automatically
              deactivated.

        """
        self.instruments.remove_instrument(instrument)


class IdlePrimedTypes(enum.Enum):
    WAITING_FOR_IDLE = 1
    AUTOJUMP = 2


################################################################
# run
################################################################


def run(
    async_fn,
    *args,
    clock=None,
    instruments=(),
    workers=1,
    max_tasks=None,
    strict_exception_groups=False,
):
    """Run a trellis-flavored async function, and return the result.

    Calling::

       run(async_fn, *args)

    is the equivalent of::

       await async_fn(*args)

    except that :func:`run` can (and must) be called from a synchronous
    context. It blocks the calling thread until ``async_fn`` and every task
    it launched have finished.

    This is trellis's main entry point. Almost every other function in
    trellis requires that you be inside a call to :func:`run`.

    Args:
      async_fn: An async function.

      args: Positional arguments to be passed to *async_fn*. If you need to
          pass keyword arguments, then use :func:`functools.partial`.

      clock: ``None`` to use the default system-specific monotonic clock;
          otherwise, an object implementing the :class:`trellis.abc.Clock`
          interface, like (for example) a :class:`trellis.testing.MockClock`
          instance.

      instruments (list of :class:`trellis.abc.Instrument` objects): Any
          instrumentation you want to apply to this run. This can also be
          modified during the run.

      workers (int): How many threads run tasks. With the default of 1,
          everything happens on the calling thread. With N > 1, N-1 extra
          threads are started and all N pull tasks from the same queue, so
          a task that hogs its thread without suspending doesn't stop the
          others from making progress. Suspended tasks never occupy a
          thread, whatever the value.

      max_tasks (int): If given, :meth:`Scope.launch` raises
          :exc:`CapacityExceeded` instead of creating a task when this many
          tasks are already alive.

      strict_exception_groups (bool): The default for
          :func:`open_scope`'s argument of the same name.

    Returns:
      Whatever ``async_fn`` returns.

    Raises:
      TrellisInternalError: if an unexpected error is encountered inside
          trellis's internal machinery. This is a bug and you should let us
          know.

      Anything else: if ``async_fn`` raises an exception, then :func:`run`
          propagates it.

    """

    __tracebackhide__ = True

    # Do error-checking up front, before we enter the TrellisInternalError
    # try/catch
    #
    # It wouldn't be *hard* to support nested calls to run(), but I can't
    # think of a single good reason for it, so let's be conservative for
    # now:
    if hasattr(GLOBAL_RUN_CONTEXT, "runner"):
        raise RuntimeError("Attempted to call run() from inside a run()")
    if workers < 1:
        raise ValueError("workers must be >= 1")
    if max_tasks is not None and max_tasks < 1:
        raise ValueError("max_tasks must be >= 1 or None")

    if clock is None:
        clock = SystemClock()
    runner = Runner(
        clock=clock,
        instruments=Instruments(instruments),
        workers=workers,
        max_tasks=max_tasks,
        strict_exception_groups=strict_exception_groups,
    )
    GLOBAL_RUN_CONTEXT.runner = runner

    try:
        try:
            # The main reason this is split off into its own function
            # is just to get rid of this extra indentation.
            run_impl(runner, async_fn, args)
        except (TrellisInternalError, KeyboardInterrupt):
            raise
        except BaseException as exc:
            raise TrellisInternalError(
                "internal error in trellis - please file a bug!"
            ) from exc
        finally:
            GLOBAL_RUN_CONTEXT.__dict__.clear()
        runner.close()
    finally:
        runner.shutdown()
    # Inlined copy of runner.main_task_outcome.unwrap() to avoid
    # cluttering every single trellis traceback with an extra frame.
    if type(runner.main_task_outcome) is Value:
        return runner.main_task_outcome.value
    else:
        raise runner.main_task_outcome.error


# 24 hours is arbitrary, but it avoids issues like people setting timeouts of
# 10**20 and then getting overflows in the underlying wait calls.
_MAX_TIMEOUT = 24 * 60 * 60


def _worker_thread(runner, index):
    GLOBAL_RUN_CONTEXT.runner = runner
    LOGGER.debug("worker %d started", index)
    try:
        runner.work()
    except BaseException as exc:
        runner.shutdown(exc)
    finally:
        GLOBAL_RUN_CONTEXT.__dict__.clear()
        LOGGER.debug("worker %d exiting", index)


def run_impl(runner, async_fn, args):
    __tracebackhide__ = True

    if runner.instruments.before_run:
        runner.instruments.before_run()
    runner.clock.start_clock()
    runner.init_task = runner.spawn_impl(
        runner.init,
        (async_fn, args),
        None,
        "<init>",
        system_task=True,
    )

    threads = [
        threading.Thread(
            target=_worker_thread,
            args=(runner, index),
            name="trellis-worker-{}".format(index),
            daemon=True,
        )
        for index in range(1, runner.workers)
    ]
    for thread in threads:
        thread.start()
    # The calling thread is worker 0.
    try:
        runner.work()
    except BaseException as exc:
        runner.shutdown(exc)
        raise
    finally:
        runner.shutdown()
        for thread in threads:
            thread.join()
    if runner.crash is not None:
        raise runner.crash


################################################################
# Other public API functions
################################################################


def current_task():
    """Return the :class:`Task` object representing the current task.

    Returns:
      Task: the :class:`Task` that called :func:`current_task`.

    """

    try:
        return GLOBAL_RUN_CONTEXT.task
    except AttributeError:
        raise RuntimeError("must be called from async context") from None


def current_effective_deadline():
    """Returns the current effective deadline for the current task.

    This function examines all the cancellation scopes that are currently in
    effect (taking into account shielding), and returns the deadline that will
    expire first.

    If this is called in a context where a cancellation is currently active
    (i.e., a suspending call will immediately raise :exc:`Cancelled`), then
    returned deadline is ``-inf``. If it is called in a context where no
    scopes have a deadline set, it returns ``inf``.

    Returns:
        float: the effective deadline, as an absolute time.

    """
    task = current_task()
    deadline = inf
    with task._runner.lock:
        for scope in reversed(task._cancel_chain()):
            if scope._cancel_called:
                return -inf
            deadline = min(deadline, scope._deadline)
            if scope._shield:
                break
    return deadline


async def checkpoint():
    """A pure :ref:`checkpoint <checkpoints>`.

    This checks for cancellation and allows other tasks to be scheduled,
    without otherwise blocking.

    Equivalent to ``await trellis.delay(0)`` (which is implemented by calling
    :func:`checkpoint`.)

    """
    # The scheduler is what checks timeouts and converts them into
    # cancellations. So by doing the schedule point first, we ensure that the
    # cancel point has the most up-to-date info.
    await cancel_shielded_checkpoint()
    task = current_task()
    task._cancel_points += 1
    with task._runner.lock:
        cancelled = task._cancel_visible()
    if cancelled:
        with CancelScope(deadline=-inf):
            await wait_task_rescheduled(lambda _: Abort.SUCCEEDED)


async def checkpoint_if_cancelled():
    """Issue a :ref:`checkpoint <checkpoints>` if the calling context has been
    cancelled.

    This is the explicit cooperative check for tasks that run long stretches
    of code without suspending: it is either a no-op, or else it allows other
    tasks to be scheduled and then raises :exc:`trellis.Cancelled`.

    """
    task = current_task()
    with task._runner.lock:
        cancelled = task._cancel_visible()
    if cancelled:
        await checkpoint()
        assert False  # pragma: no cover
    task._cancel_points += 1


################################################################
# Module-level wrappers for the @_public Runner methods
################################################################


def _current_runner():
    try:
        return GLOBAL_RUN_CONTEXT.runner
    except AttributeError:
        raise RuntimeError("must be called from async context") from None


def current_statistics():
    return _current_runner().current_statistics()


def current_time():
    return _current_runner().current_time()


def current_clock():
    return _current_runner().current_clock()


def current_root_task():
    return _current_runner().current_root_task()


def current_runner_lock():
    return _current_runner().current_runner_lock()


def reschedule(task, next_send=_NO_SEND):
    return _current_runner().reschedule(task, next_send)


async def wait_all_tasks_blocked(cushion=0.0, tiebreaker=0):
    return await _current_runner().wait_all_tasks_blocked(cushion, tiebreaker)


def add_instrument(instrument):
    return _current_runner().add_instrument(instrument)


def remove_instrument(instrument):
    return _current_runner().remove_instrument(instrument)


for _wrapper, _method in [
    (current_statistics, Runner.current_statistics),
    (current_time, Runner.current_time),
    (current_clock, Runner.current_clock),
    (current_root_task, Runner.current_root_task),
    (current_runner_lock, Runner.current_runner_lock),
    (reschedule, Runner.reschedule),
    (wait_all_tasks_blocked, Runner.wait_all_tasks_blocked),
    (add_instrument, Runner.add_instrument),
    (remove_instrument, Runner.remove_instrument),
]:
    _wrapper.__doc__ = _method.__doc__
del _wrapper, _method
