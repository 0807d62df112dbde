import sys
import time
from unittest.mock import Mock

from hamcrest import assert_that, is_


def assert_delegates(target, fn, delegate, *args):
    """
    asserts that the given method fn on object target calls the delegate function with the same arguments
    and propagates the result
    """
    mock = Mock(return_value=123)
    setattr(target, delegate, mock)
    assert_that(getattr(target, fn)(*args), is_(123))
    mock.assert_called_once_with(*args)


def debug_timeout(value):
    """
    Replaces the timeout value with a very large one if the tests are running under a debugger.
    This prevents the main thread from throwing an exception and exiting when the test times out
    due to a breakpoint.
    """
    return value if sys.gettrace() is None else 100000


def wait_until(condition, timeout=2.0, interval=0.005):
    """ polls the condition until it is true or the timeout expires. Returns the last result. """
    deadline = time.monotonic() + timeout
    result = condition()
    while not result and time.monotonic() < deadline:
        time.sleep(interval)
        result = condition()
    return result
