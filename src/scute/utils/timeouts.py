from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import TypeVar

T = TypeVar("T")

_executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="scute-io")


def call_with_timeout(fn: Callable[..., T], *args, timeout: float, **kwargs) -> T:
    """
    Runs `fn` on the I/O pool and waits at most `timeout` seconds.

    Raises TimeoutError when the call does not finish in time; the call itself
    keeps running in the background since threads cannot be cancelled.
    """
    future = _executor.submit(fn, *args, **kwargs)
    try:
        return future.result(timeout=timeout)
    except FutureTimeout:
        raise TimeoutError(f"{getattr(fn, '__name__', fn)} did not finish within {timeout}s") from None
