"""Tests for per-key lock bookkeeping."""

from __future__ import annotations

import asyncio

import pytest

from fieldsync.sync.locks import KeyedLocks


@pytest.mark.asyncio
async def test_same_key_is_exclusive_and_dropped_after_use():
    locks: KeyedLocks[str] = KeyedLocks()
    order = []

    async def _hold(name: str) -> None:
        async with locks.hold("CA-001"):
            order.append(f"{name}:in")
            await asyncio.sleep(0.01)
            order.append(f"{name}:out")

    await asyncio.gather(_hold("a"), _hold("b"))

    assert order == ["a:in", "a:out", "b:in", "b:out"]
    assert len(locks) == 0


@pytest.mark.asyncio
async def test_lock_survives_while_a_waiter_remains():
    locks: KeyedLocks[str] = KeyedLocks()
    release = asyncio.Event()

    async def _holder() -> None:
        async with locks.hold("k"):
            await release.wait()

    first = asyncio.create_task(_holder())
    second = asyncio.create_task(_holder())
    await asyncio.sleep(0)
    assert "k" in locks

    release.set()
    await asyncio.gather(first, second)
    assert "k" not in locks


@pytest.mark.asyncio
async def test_lock_released_on_error():
    locks: KeyedLocks[tuple[str, str]] = KeyedLocks()
    with pytest.raises(RuntimeError):
        async with locks.hold(("k", "findings")):
            raise RuntimeError("boom")
    assert len(locks) == 0
