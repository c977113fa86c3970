import inspect

import pytest

from ..testing import MockClock, trellis_test


@pytest.fixture
def mock_clock():
    return MockClock()


@pytest.fixture
def autojump_clock():
    return MockClock(autojump_threshold=0)


# Lets plain 'async def test_...' functions run inside trellis.run(), with
# any Clock fixture they ask for.
@pytest.hookimpl(tryfirst=True)
def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        pyfuncitem.obj = trellis_test(pyfuncitem.obj)
