from abc import ABCMeta, abstractmethod

__all__ = ["Clock", "Instrument"]


# We use ABCMeta instead of ABC, plus set __slots__=(), so as not to force a
# __dict__ onto subclasses.
class Clock(metaclass=ABCMeta):
    """The interface for custom run loop clocks.

    """
    __slots__ = ()

    @abstractmethod
    def start_clock(self):
        """Do any setup this clock might need.

        Called at the beginning of the run.

        """

    @abstractmethod
    def current_time(self):
        """Return the current time, according to this clock.

        This is used to implement functions like :func:`trellis.current_time`
        and :func:`trellis.delay`.

        Returns:
            float: The current time.

        """

    @abstractmethod
    def deadline_to_sleep_time(self, deadline):
        """Compute the real time until the given deadline.

        This is called before an idle worker parks itself, to get the timeout
        to pass.

        For a clock using wall-time, this should be something like::

           return deadline - self.current_time()

        but of course it may be different if you're implementing some kind of
        virtual clock.

        Args:
            deadline (float): The absolute time of the next deadline,
                according to this clock.

        Returns:
            float: The number of real seconds to sleep until the given
            deadline. May be :data:`math.inf`.

        """


class Instrument(metaclass=ABCMeta):
    """The interface for run loop instrumentation.

    Instruments don't have to inherit from this abstract base class, and all
    of these methods are optional. This class serves mostly as documentation.

    With ``run(..., workers=N)`` for N > 1, hooks are called from whichever
    worker thread is doing the work, so instruments that keep state should
    protect it themselves.

    """
    __slots__ = ()

    def before_run(self):
        """Called at the beginning of :func:`trellis.run`.

        """

    def after_run(self):
        """Called just before :func:`trellis.run` returns.

        """

    def task_spawned(self, task):
        """Called when the given task is created.

        Args:
            task (trellis.lowlevel.Task): The new task.

        """

    def task_scheduled(self, task):
        """Called when the given task becomes runnable.

        It may still be some time before it actually runs, if there are other
        runnable tasks ahead of it.

        Args:
            task (trellis.lowlevel.Task): The task that became runnable.

        """

    def before_task_step(self, task):
        """Called immediately before we resume running the given task.

        Args:
            task (trellis.lowlevel.Task): The task that is about to run.

        """

    def after_task_step(self, task):
        """Called when we return to the run loop after a task has yielded.

        Args:
            task (trellis.lowlevel.Task): The task that just ran.

        """

    def task_exited(self, task):
        """Called when the given task exits.

        Args:
            task (trellis.lowlevel.Task): The finished task.

        """

    def before_idle_wait(self, timeout):
        """Called before a worker with nothing to run parks itself.

        Args:
            timeout (float): The number of seconds we are willing to wait.

        """

    def after_idle_wait(self, timeout):
        """Called after a parked worker wakes up.

        Args:
            timeout (float): The number of seconds we were willing to wait.

        """
