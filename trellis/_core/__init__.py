"""
This namespace represents the core functionality that has to be built-in
and deal with private internal data structures. Things in this namespace
are publicly available in either trellis, trellis.lowlevel, or
trellis.testing.
"""

from ._exceptions import (
    TrellisInternalError, WouldBlock, Cancelled, CapacityExceeded
)

from ._run import (
    Task, TaskState, CancelScope, Scope, run, open_scope, checkpoint,
    current_task, current_effective_deadline, checkpoint_if_cancelled,
    current_statistics, current_runner_lock, reschedule, remove_instrument,
    add_instrument, current_clock, current_root_task, current_time,
    wait_all_tasks_blocked
)

# Has to come after _run to resolve a circular import
from ._traps import (
    cancel_shielded_checkpoint, Abort, wait_task_rescheduled
)

from ._parking_lot import ParkingLot

from ._mock_clock import MockClock
