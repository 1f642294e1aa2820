from __future__ import annotations

import contextlib
import math
from collections.abc import Iterator

import trio

from .exceptions import LoopbackTimeout


@contextlib.contextmanager
def fail_after(
    seconds: float,
    error: type[LoopbackTimeout],
    msg: str,
) -> Iterator[None]:
    """Like `trio.fail_after`, but raises `error(msg)` on timeout.

    An infinite `seconds` imposes no bound.
    """
    if seconds == math.inf:
        yield
        return

    try:
        with trio.fail_after(seconds):
            yield
    except trio.TooSlowError as e:
        raise error(msg) from e
