"""Trellis - structured concurrency for plain Python coroutines
"""

# General layout:
#
# trellis/_core/... is the self-contained core library: the run loop, tasks,
# scopes and cancellation. Parts of its API are too low-level to be
# recommended for regular use; those live in trellis.lowlevel.
#
# trellis/*.py define more usable tools on top of it.
#
# This file pulls together the friendly public API.
#
# Uses `from x import y as y` for compatibility with `pyright --verifytypes`

from ._version import __version__

from ._core import (
    TrellisInternalError as TrellisInternalError,
    WouldBlock as WouldBlock,
    Cancelled as Cancelled,
    CapacityExceeded as CapacityExceeded,
    run as run,
    open_scope as open_scope,
    Scope as Scope,
    CancelScope as CancelScope,
    TaskState as TaskState,
    current_effective_deadline as current_effective_deadline,
    current_time as current_time,
    checkpoint as checkpoint,
    checkpoint_if_cancelled as checkpoint_if_cancelled,
)

from ._timeouts import (
    move_on_at as move_on_at,
    move_on_after as move_on_after,
    delay_forever as delay_forever,
    delay_until as delay_until,
    delay as delay,
    fail_at as fail_at,
    fail_after as fail_after,
    TooSlowError as TooSlowError,
)

# Submodules imported by default
from . import lowlevel
from . import abc
from . import testing

################################################################

from ._util import fixup_module_metadata

fixup_module_metadata(__name__, globals())
fixup_module_metadata(lowlevel.__name__, lowlevel.__dict__)
fixup_module_metadata(abc.__name__, abc.__dict__)
fixup_module_metadata(testing.__name__, testing.__dict__)
del fixup_module_metadata
