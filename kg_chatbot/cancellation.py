"""Cooperative cancellation helpers built on an abort event."""

import asyncio
from typing import Any, Awaitable, TypeVar

from kg_chatbot.exceptions import RequestCancelledError

T = TypeVar("T")


async def cancel_task(task: asyncio.Future[Any] | None) -> None:
    """Cancel task and await it to avoid pending task warnings."""
    if task is None or task.done():
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
    except Exception:
        pass


def check_abort(abort_event: asyncio.Event | None) -> None:
    """Raise if the request has already been aborted."""
    if abort_event is not None and abort_event.is_set():
        raise RequestCancelledError("Request aborted")


async def wait_or_abort(awaitable: Awaitable[T], abort_event: asyncio.Event | None) -> T:
    """Await ``awaitable`` unless ``abort_event`` fires first.

    The pending work is cancelled when the abort wins.

    Raises:
        RequestCancelledError: If the abort event is set before the work completes.
    """
    if abort_event is not None and abort_event.is_set():
        if asyncio.iscoroutine(awaitable):
            awaitable.close()
        raise RequestCancelledError("Request aborted")
    work = asyncio.ensure_future(awaitable)
    if abort_event is None:
        return await work

    abort_wait_task = asyncio.create_task(abort_event.wait())
    try:
        done, _ = await asyncio.wait(
            {work, abort_wait_task},
            return_when=asyncio.FIRST_COMPLETED,
        )
        if work in done:
            return work.result()
        await cancel_task(work)
        raise RequestCancelledError("Request aborted")
    except asyncio.CancelledError:
        await cancel_task(work)
        raise
    finally:
        await cancel_task(abort_wait_task)
