import asyncio

import pytest

from goodcoin_service.infrastructure.locks import KeyedLock


@pytest.mark.asyncio
async def test_same_key_is_serialized():
    locks = KeyedLock()
    order = []

    async def worker(name):
        async with locks.acquire("account:alice"):
            order.append(f"{name}-in")
            await asyncio.sleep(0.01)
            order.append(f"{name}-out")

    await asyncio.gather(worker("a"), worker("b"))

    assert order in (["a-in", "a-out", "b-in", "b-out"], ["b-in", "b-out", "a-in", "a-out"])


@pytest.mark.asyncio
async def test_overlapping_sets_do_not_deadlock():
    locks = KeyedLock()

    async def worker(*keys):
        async with locks.acquire(*keys):
            await asyncio.sleep(0.01)

    await asyncio.wait_for(
        asyncio.gather(worker("a", "b"), worker("b", "a"), worker("b", "c", "a")),
        timeout=1
    )


@pytest.mark.asyncio
async def test_duplicate_keys_and_cleanup():
    locks = KeyedLock()

    async with locks.acquire("x", "x", "y"):
        assert locks.is_locked("x")
        assert locks.is_locked("y")
        assert len(locks) == 2

    assert not locks.is_locked("x")
    assert len(locks) == 0


@pytest.mark.asyncio
async def test_release_on_error():
    locks = KeyedLock()

    with pytest.raises(RuntimeError):
        async with locks.acquire("x"):
            raise RuntimeError("boom")

    assert len(locks) == 0
    async with locks.acquire("x"):
        pass
