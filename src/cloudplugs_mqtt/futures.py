"""Helpers for the single-resolution futures returned by every operation."""

from __future__ import annotations

from concurrent.futures import Future, InvalidStateError
from typing import Any, Optional


def settle(future: Future, result: Any = None, error: Optional[BaseException] = None) -> bool:
    """Resolve future once. Returns False if it was already done or cancelled."""
    if future.done():
        return False
    try:
        if error is not None:
            future.set_exception(error)
        else:
            future.set_result(result)
    except InvalidStateError:
        return False
    return True


def completed(result: Any = None) -> Future:
    future: Future = Future()
    future.set_result(result)
    return future


def failed(error: BaseException) -> Future:
    future: Future = Future()
    future.set_exception(error)
    return future


def chain(source: Future, target: Future, transform=None) -> None:
    """Copy source's outcome into target, passing a result through transform."""

    def _done(f: Future) -> None:
        if f.cancelled():
            target.cancel()
            return
        exc = f.exception()
        if exc is not None:
            settle(target, error=exc)
            return
        try:
            value = transform(f.result()) if transform else f.result()
        except Exception as err:
            settle(target, error=err)
            return
        settle(target, value)

    source.add_done_callback(_done)
