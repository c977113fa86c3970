# Uses `from x import y as y` for compatibility with `pyright --verifytypes`

from .._core import (
    wait_all_tasks_blocked as wait_all_tasks_blocked,
    MockClock as MockClock,
)

from ._trellis_test import trellis_test as trellis_test

from ._checkpoints import (
    assert_checkpoints as assert_checkpoints,
    assert_no_checkpoints as assert_no_checkpoints,
)
