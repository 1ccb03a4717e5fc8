import asyncio

import pytest

from costlens.core.locks import KeyedLock


@pytest.mark.asyncio
async def test_same_key_is_serialized():
    locks = KeyedLock()
    events = []

    async def worker(name):
        async with locks.hold("user-1"):
            events.append(f"{name}-in")
            await asyncio.sleep(0.01)
            events.append(f"{name}-out")

    await asyncio.gather(worker("a"), worker("b"))

    assert events == ["a-in", "a-out", "b-in", "b-out"]


@pytest.mark.asyncio
async def test_different_keys_run_concurrently():
    locks = KeyedLock()
    both_inside = asyncio.Event()
    inside = 0

    async def worker(key):
        nonlocal inside
        async with locks.hold(key):
            inside += 1
            if inside == 2:
                both_inside.set()
            await both_inside.wait()

    # Would deadlock if the second key waited on the first
    await asyncio.wait_for(asyncio.gather(worker("user-1"), worker("user-2")), timeout=1)


@pytest.mark.asyncio
async def test_idle_locks_are_dropped():
    locks = KeyedLock()

    async with locks.hold("user-1"):
        assert locks.is_locked("user-1")

    assert not locks.is_locked("user-1")
    assert locks._locks == {}


@pytest.mark.asyncio
async def test_lock_released_on_error():
    locks = KeyedLock()

    with pytest.raises(RuntimeError):
        async with locks.hold("user-1"):
            raise RuntimeError("rebuild failed")

    assert not locks.is_locked("user-1")
    async with locks.hold("user-1"):
        pass
