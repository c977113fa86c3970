# ParkingLot provides an abstraction for a fair waitqueue with cancellation
# and requeueing support. Task.join() is built on top of it.
#
# Every operation takes the runner lock: with several worker threads, the
# task that unparks may be running at the same moment as the task that parks.

from itertools import count

import attr
from sortedcontainers import SortedDict

from .. import _core

__all__ = ["ParkingLot"]

_counter = count()


class _AllType:
    def __repr__(self):
        return "ParkingLot.ALL"


@attr.s(frozen=True)
class _ParkingLotStatistics:
    tasks_waiting = attr.ib()


@attr.s(eq=False, hash=False)
class ParkingLot:
    """A fair wait queue with cancellation.

    This is the low-level building block that :meth:`Task.join` uses to put
    joiners to sleep. Tasks wait by calling :meth:`park`, and are woken in
    FIFO order by :meth:`unpark`.

    :class:`ParkingLot` objects can be used as booleans: a lot is true if it
    has at least one task parked in it.

    """

    # {idx: task}
    _parked = attr.ib(factory=SortedDict, init=False)

    ALL = _AllType()

    def __len__(self):
        """Returns the number of parked tasks."""
        return len(self._parked)

    def __bool__(self):
        """True if there are parked tasks, False otherwise."""
        return bool(self._parked)

    def statistics(self):
        """Return an object containing debugging information.

        Currently the following fields are defined:

        * ``tasks_waiting``: The number of tasks blocked on this lot's
          :meth:`park` method.

        """
        return _ParkingLotStatistics(tasks_waiting=len(self._parked))

    async def park(self):
        """Park the current task until woken by a call to :meth:`unpark`.

        """
        task = _core.current_task()
        with task._runner.lock:
            idx = self._park_locked(task)
        await self._wait_parked(idx)

    def _park_locked(self, task):
        # runner lock held. Split out of park() so Task.join() can check
        # whether it needs to wait and register in one critical section.
        idx = next(_counter)
        self._parked[idx] = task
        return idx

    async def _wait_parked(self, idx):
        def abort(_):
            del self._parked[idx]
            return _core.Abort.SUCCEEDED

        await _core.wait_task_rescheduled(abort)

    def unpark(self, *, count=ALL):
        """Unpark one or more tasks.

        This wakes up ``count`` tasks that are blocked in :meth:`park`. If
        there are fewer than ``count`` tasks parked, then wakes as many tasks
        are available and then returns successfully.

        Args:
          count (int | ParkingLot.ALL): the number of tasks to unpark.

        Returns:
          list: the tasks that were woken, in the order they parked.

        """
        woken = []
        with _core.current_runner_lock():
            if count is ParkingLot.ALL:
                count = len(self._parked)
            for _ in range(min(count, len(self._parked))):
                _, task = self._parked.popitem(0)
                woken.append(task)
                _core.reschedule(task)
        return woken

    def unpark_all(self):
        """Unpark all parked tasks."""
        return self.unpark(count=ParkingLot.ALL)
