"""Calling functions with a deadline that holds even if the callee ignores it."""

from __future__ import annotations

import threading
from typing import Any, Callable


class CallTimeoutError(TimeoutError):
    """Raised when a call does not finish before its deadline."""


def call_with_timeout(timeout: float | None, func: Callable[..., Any], *args: Any) -> Any:
    """Run ``func(*args)`` in a background thread and wait at most *timeout* seconds.

    Returns the result or re-raises the callee's exception. A call that outlives
    the deadline keeps running in its daemon thread; its outcome is discarded.
    """
    if not callable(func):
        raise TypeError("first parameter must be method")

    done = threading.Event()
    outcome: dict[str, Any] = {}

    def runner() -> None:
        try:
            outcome["result"] = func(*args)
        except BaseException as err:  # handed back to the caller below
            outcome["error"] = err
        finally:
            done.set()

    threading.Thread(target=runner, name="call-with-timeout", daemon=True).start()
    if not done.wait(timeout):
        raise CallTimeoutError(f"call did not finish within {timeout}s")
    if "error" in outcome:
        raise outcome["error"]
    return outcome["result"]