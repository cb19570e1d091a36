import asyncio

import pytest

from sensor_recon.utils.single_flight import SingleFlight


@pytest.mark.asyncio
async def test_do_joins_running_call():
    sf = SingleFlight()
    gate = asyncio.Event()
    calls = []

    async def work():
        calls.append(1)
        await gate.wait()
        return "done"

    first = asyncio.create_task(sf.do("k", work))
    await asyncio.sleep(0)
    second = asyncio.create_task(sf.do("k", work))
    await asyncio.sleep(0)
    assert sf.in_flight("k")

    gate.set()
    assert await first == "done"
    assert await second == "done"
    assert len(calls) == 1
    assert not sf.in_flight("k")


@pytest.mark.asyncio
async def test_try_do_refuses_while_busy():
    sf = SingleFlight()
    gate = asyncio.Event()

    async def work():
        await gate.wait()
        return 42

    running = asyncio.create_task(sf.try_do("k", work))
    await asyncio.sleep(0)

    started, result = await sf.try_do("k", work)
    assert (started, result) == (False, None)

    gate.set()
    assert await running == (True, 42)
    # released after completion
    assert await sf.try_do("k", work) == (True, 42)


@pytest.mark.asyncio
async def test_key_released_after_failure():
    sf = SingleFlight()

    async def boom():
        raise RuntimeError("fail")

    with pytest.raises(RuntimeError):
        await sf.do("k", boom)
    assert sf.keys() == frozenset()


@pytest.mark.asyncio
async def test_joiner_sees_the_same_error():
    sf = SingleFlight()
    gate = asyncio.Event()

    async def boom():
        await gate.wait()
        raise ValueError("upstream")

    first = asyncio.create_task(sf.do("k", boom))
    await asyncio.sleep(0)
    second = asyncio.create_task(sf.do("k", boom))
    await asyncio.sleep(0)
    gate.set()

    results = await asyncio.gather(first, second, return_exceptions=True)
    assert all(isinstance(r, ValueError) for r in results)


@pytest.mark.asyncio
async def test_different_keys_run_independently():
    sf = SingleFlight()

    async def work(v):
        await asyncio.sleep(0)
        return v

    a, b = await asyncio.gather(sf.do("a", lambda: work(1)), sf.do("b", lambda: work(2)))
    assert (a, b) == (1, 2)
