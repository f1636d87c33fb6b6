import asyncio

import pytest

from kg_chatbot.cancellation import check_abort, wait_or_abort
from kg_chatbot.exceptions import RequestCancelledError


@pytest.mark.asyncio
async def test_wait_or_abort_returns_result():
    async def work():
        return 42

    assert await wait_or_abort(work(), asyncio.Event()) == 42
    assert await wait_or_abort(work(), None) == 42


@pytest.mark.asyncio
async def test_wait_or_abort_cancels_pending_work():
    abort_event = asyncio.Event()
    cancelled = False

    async def work():
        nonlocal cancelled
        try:
            await asyncio.sleep(30)
        except asyncio.CancelledError:
            cancelled = True
            raise

    asyncio.get_running_loop().call_later(0.02, abort_event.set)
    with pytest.raises(RequestCancelledError):
        await wait_or_abort(work(), abort_event)

    assert cancelled is True


@pytest.mark.asyncio
async def test_wait_or_abort_refuses_to_start_after_abort():
    abort_event = asyncio.Event()
    abort_event.set()
    started = False

    async def work():
        nonlocal started
        started = True

    with pytest.raises(RequestCancelledError):
        await wait_or_abort(work(), abort_event)
    assert started is False

    with pytest.raises(RequestCancelledError):
        check_abort(abort_event)
