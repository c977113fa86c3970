from .._util import NoPublicConstructor


class TrellisInternalError(Exception):
    """Raised by :func:`run` if we encounter a bug in trellis, or (possibly) a
    misuse of one of the low-level :mod:`trellis.lowlevel` APIs.

    This should never happen! If you get this error, please file a bug.

    Unfortunately, if you get this error it also means that all bets are off:
    trellis doesn't know what is going on and its normal invariants may be
    void. (For example, we might have "lost track" of a task.)

    """


class WouldBlock(Exception):
    """Raised by ``X_nowait`` functions if ``X`` would block.

    """


class CapacityExceeded(RuntimeError):
    """Raised by :meth:`Scope.launch` when the run was started with
    ``max_tasks=N`` and N tasks are already alive.

    """


class Cancelled(BaseException, metaclass=NoPublicConstructor):
    """Raised by suspension points if the surrounding task or scope has been
    cancelled.

    You should let this exception propagate, to be caught by the relevant
    cancel scope. To remind you of this, it inherits from :exc:`BaseException`
    instead of :exc:`Exception`, just like :exc:`KeyboardInterrupt` and
    :exc:`SystemExit` do. This means that if you write something like::

       try:
           ...
       except Exception:
           ...

    then this *won't* catch a :exc:`Cancelled` exception.

    ``finally`` blocks and ``with`` blocks still run while it propagates,
    which is how a cancelled task gets to clean up after itself.

    You cannot raise :exc:`Cancelled` yourself. Attempting to do so
    will produce a :exc:`TypeError`. Use :meth:`Task.cancel` or
    :meth:`CancelScope.cancel` instead.

    .. note::

       In the US it's also common to see this word spelled "canceled", with
       only one "l". Trellis uses the two "l" spelling everywhere, for
       consistency with "cancellation".

    """

    def __str__(self):
        return "Cancelled"
