# Little utilities we use internally

from abc import ABCMeta
import collections.abc
import functools
import inspect


def coroutine_or_error(async_fn, *args):
    """Call ``async_fn(*args)`` and return the coroutine object, giving
    helpful errors for the usual mistakes.

    """

    def _return_value_looks_like_wrong_library(value):
        # Returned by legacy @asyncio.coroutine functions, which includes
        # a surprising proportion of asyncio builtins.
        if isinstance(value, collections.abc.Generator):
            return True
        # The protocol for detecting an asyncio Future-like object
        if getattr(value, "_asyncio_future_blocking", None) is not None:
            return True
        # This janky check catches tornado Futures and twisted Deferreds.
        # By the time we're calling this function, we already know
        # something has gone wrong, so a heuristic is pretty safe.
        if value.__class__.__name__ in ("Future", "Deferred"):
            return True
        return False

    try:
        coro = async_fn(*args)
    except TypeError:
        # Give good error for: scope.launch(trellis.delay(1))
        if isinstance(async_fn, collections.abc.Coroutine):
            # explicitly close coroutine to avoid RuntimeWarning
            async_fn.close()
            raise TypeError(
                "Trellis was expecting an async function, but instead it got "
                "a coroutine object {async_fn!r}\n"
                "\n"
                "Probably you did something like:\n"
                "\n"
                "  trellis.run({async_fn.__name__}(...))     # incorrect!\n"
                "  scope.launch({async_fn.__name__}(...))    # incorrect!\n"
                "\n"
                "Instead, you want (notice the parentheses!):\n"
                "\n"
                "  trellis.run({async_fn.__name__}, ...)     # correct!\n"
                "  scope.launch({async_fn.__name__}, ...)    # correct!"
                .format(async_fn=async_fn)
            ) from None

        # Give good error for: scope.launch(future)
        if _return_value_looks_like_wrong_library(async_fn):
            raise TypeError(
                "Trellis was expecting an async function, but instead it got "
                "{!r} - are you trying to use a library written for "
                "asyncio/twisted/tornado or similar? That won't work "
                "without some sort of compatibility shim.".format(async_fn)
            ) from None

        raise

    # We can't check iscoroutinefunction(async_fn), because that will fail
    # for things like functools.partial objects wrapping an async
    # function. So we have to just call it and then check whether the
    # return value is a coroutine object.
    if not isinstance(coro, collections.abc.Coroutine):
        # Give good error for: scope.launch(func_returning_future)
        if _return_value_looks_like_wrong_library(coro):
            raise TypeError(
                "launch got unexpected {!r} - are you trying to use a "
                "library written for asyncio/twisted/tornado or similar? "
                "That won't work without some sort of compatibility shim."
                .format(coro)
            )

        if inspect.isasyncgen(coro):
            raise TypeError(
                "launch expected an async function but got an async "
                "generator {!r}".format(coro)
            )

        # Give good error for: scope.launch(some_sync_fn)
        raise TypeError(
            "Trellis expected an async function, but {!r} appears to be "
            "synchronous".format(getattr(async_fn, "__qualname__", async_fn))
        )

    return coro


def name_for(async_fn):
    """Compute a task name from whatever was passed to launch()."""
    name = async_fn
    while isinstance(name, functools.partial):
        name = name.func
    if not isinstance(name, str):
        try:
            name = "{}.{}".format(name.__module__, name.__qualname__)
        except AttributeError:
            name = repr(name)
    return name


def fixup_module_metadata(module_name, namespace):
    seen_ids = set()

    def fix_one(obj):
        # avoid infinite recursion
        if id(obj) in seen_ids:
            return
        seen_ids.add(id(obj))

        mod = getattr(obj, "__module__", None)
        if mod is not None and mod.startswith("trellis."):
            obj.__module__ = module_name
            if isinstance(obj, type):
                for attr_value in obj.__dict__.values():
                    fix_one(attr_value)

    for objname, obj in namespace.items():
        if not objname.startswith("_"):  # ignore private attributes
            fix_one(obj)


class Final(ABCMeta):
    """Metaclass that enforces a class to be final (i.e., subclass not allowed).

    If a class uses this metaclass like this::

        class SomeClass(metaclass=Final):
            pass

    The metaclass will ensure that no sub class can be created.

    Raises
    ------
    - TypeError if a sub class is created
    """

    def __new__(cls, name, bases, cls_namespace):
        for base in bases:
            if isinstance(base, Final):
                raise TypeError(
                    "`%s` does not support subclassing" % base.__name__
                )
        return super().__new__(cls, name, bases, cls_namespace)


class NoPublicConstructor(Final):
    """Metaclass that enforces a class to be final (i.e., subclass not allowed)
    and ensures a private constructor.

    If a class uses this metaclass like this::

        class SomeClass(metaclass=NoPublicConstructor):
            pass

    The metaclass will ensure that no sub class can be created, and that no instance
    can be initialized.

    If you try to instantiate your class (SomeClass()), a TypeError will be thrown.

    Raises
    ------
    - TypeError if a sub class or an instance is created.
    """

    def __call__(cls, *args, **kwargs):
        raise TypeError(
            "{}.{} has no public constructor".format(
                cls.__module__, cls.__qualname__
            )
        )

    def _create(cls, *args, **kwargs):
        return super().__call__(*args, **kwargs)
