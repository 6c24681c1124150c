"""
Deadline helpers shared by the embedding, search and rerank paths.

Work is submitted to a thread pool and raced against a timeout. A call that
loses the race is not interrupted: it finishes in the background and its
result is simply ignored by the caller.
"""

import threading
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from typing import Any, Callable, Optional


class DeadlineExceeded(Exception):
    """Raised when a call does not finish before its deadline."""

    def __init__(self, label: str, timeout: float):
        self.label = label
        self.timeout = timeout
        super().__init__(f"{label} did not finish within {timeout:.3f}s")


def run_with_timeout(executor: ThreadPoolExecutor, func: Callable[..., Any], timeout: Optional[float],
                     *args, label: str = "call", **kwargs) -> Any:
    """
    Run func(*args, **kwargs) with a deadline.

    Args:
        executor: Pool that runs the call
        func: Callable to run
        timeout: Seconds to wait; None runs the call inline with no deadline
        label: Name used in the DeadlineExceeded message

    Returns:
        Whatever func returns

    Raises:
        DeadlineExceeded: If the deadline passes first
        Exception: Anything func raises
    """
    if timeout is None:
        return func(*args, **kwargs)

    future = executor.submit(func, *args, **kwargs)
    try:
        return future.result(timeout=timeout)
    except FutureTimeoutError:
        raise DeadlineExceeded(label, timeout)


class CancellationToken:
    """Cooperative cancellation flag checked between pipeline stages."""

    def __init__(self):
        self._event = threading.Event()
        self.reason = None

    def cancel(self, reason: str = "cancelled"):
        self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()
