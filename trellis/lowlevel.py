"""
This namespace represents low-level functionality not intended for daily use,
but useful for extending Trellis's functionality.
"""

# This is a subset of trellis/_core/. See comments in trellis/__init__.py for
# details.

# Uses `from x import y as y` for compatibility with `pyright --verifytypes`

from ._core import (
    cancel_shielded_checkpoint as cancel_shielded_checkpoint,
    Abort as Abort,
    wait_task_rescheduled as wait_task_rescheduled,
    Task as Task,
    TaskState as TaskState,
    checkpoint as checkpoint,
    current_task as current_task,
    ParkingLot as ParkingLot,
    current_statistics as current_statistics,
    current_runner_lock as current_runner_lock,
    reschedule as reschedule,
    remove_instrument as remove_instrument,
    add_instrument as add_instrument,
    current_clock as current_clock,
    current_root_task as current_root_task,
    checkpoint_if_cancelled as checkpoint_if_cancelled,
)
