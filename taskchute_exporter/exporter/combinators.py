"""Generic first-success combinators for strategy and channel lists."""
from __future__ import annotations

import asyncio
import contextlib
from typing import Awaitable, Callable, Iterable, Optional, Sequence, Tuple, TypeVar

T = TypeVar("T")
C = TypeVar("C")


async def first_success(
    candidates: Iterable[C],
    attempt: Callable[[C], Awaitable[bool]],
    *,
    on_error: Callable[[C, Exception], None] | None = None,
) -> Optional[C]:
    """Try ``candidates`` in order and return the first whose attempt is truthy.

    An attempt that raises counts as a failure; later candidates are not tried
    once one succeeds.
    """

    for candidate in candidates:
        try:
            if await attempt(candidate):
                return candidate
        except Exception as exc:
            if on_error is not None:
                on_error(candidate, exc)
    return None


def _consume_result(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    with contextlib.suppress(Exception):
        task.exception()


async def first_concurrent_success(
    tasks: Sequence[Tuple[str, "asyncio.Task[Optional[T]]"]],
    *,
    on_error: Callable[[str, BaseException], None] | None = None,
) -> Optional[Tuple[str, T]]:
    """Wait on already-running tasks and return the first non-``None`` result.

    Tasks that raise or resolve to ``None`` are discarded. The remaining tasks
    are left running when a winner is found; a done-callback retrieves their
    outcome so nothing is reported as unhandled.
    """

    names = {task: name for name, task in tasks}
    pending = set(names)
    try:
        while pending:
            done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                if task.cancelled():
                    continue
                exc = task.exception()
                if exc is not None:
                    if on_error is not None:
                        on_error(names[task], exc)
                    continue
                result = task.result()
                if result is not None:
                    return names[task], result
        return None
    finally:
        for task in names:
            task.add_done_callback(_consume_result)
