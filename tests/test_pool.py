import asyncio

import pytest

from karaokify.core.pool import StagePool
from karaokify.models.job import Stage


def test_pool_needs_a_slot():
    with pytest.raises(ValueError):
        StagePool(Stage.SEPARATION, 0)


@pytest.mark.asyncio
async def test_free_slots_follow_acquire_and_release():
    pool = StagePool(Stage.DOWNLOAD, 2)
    await pool.acquire()
    await pool.acquire()
    assert pool.free == 0

    waiter = asyncio.create_task(pool.acquire())
    await asyncio.sleep(0)
    assert not waiter.done()

    pool.release()
    await waiter
    assert pool.free == 0
    pool.release()
    pool.release()
    assert pool.free == 2
    with pytest.raises(RuntimeError):
        pool.release()


@pytest.mark.asyncio
async def test_cancelled_waiter_does_not_take_a_slot():
    pool = StagePool(Stage.POSTPROCESS, 1)
    await pool.acquire()
    waiter = asyncio.create_task(pool.acquire())
    await asyncio.sleep(0)
    waiter.cancel()
    with pytest.raises(asyncio.CancelledError):
        await waiter

    pool.release()
    assert pool.free == 1
    await asyncio.wait_for(pool.acquire(), 1)
    assert pool.in_use == 1
