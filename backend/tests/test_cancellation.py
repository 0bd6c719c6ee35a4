import asyncio

from chatweb.services.cancellation import CancellationRegistry


def test_abort_unknown_turn_returns_false():
    registry = CancellationRegistry()
    registry.register(1, 10)
    assert registry.abort(1, 11) is False
    assert registry.abort(2, 10) is False
    assert len(registry) == 1


def test_abort_cancels_and_closes_transport():
    registry = CancellationRegistry()
    handle = registry.register(1, 10)
    closed = []
    handle.attach(lambda: closed.append(True))

    assert registry.abort(1, 10) is True
    assert handle.cancelled
    assert closed == [True]
    assert len(registry) == 0
    # second abort finds nothing
    assert registry.abort(1, 10) is False


def test_remove_is_idempotent():
    registry = CancellationRegistry()
    handle = registry.register(1, 10)
    assert registry.remove(handle) is True
    assert registry.remove(handle) is False
    assert registry.find(1, 10) is None


def test_attach_after_cancel_closes_immediately():
    registry = CancellationRegistry()
    handle = registry.register(1, 10)
    handle.cancel()
    closed = []
    handle.attach(lambda: closed.append(True))
    assert closed == [True]


async def test_async_closer_is_scheduled():
    registry = CancellationRegistry()
    handle = registry.register(1, 10)
    closed = asyncio.Event()

    async def close():
        closed.set()

    handle.attach(close)
    registry.abort(1, 10)
    await asyncio.wait_for(closed.wait(), timeout=1)


async def test_wait_returns_after_cancel():
    registry = CancellationRegistry()
    handle = registry.register(1, 10)
    waiter = asyncio.create_task(handle.wait())
    await asyncio.sleep(0)
    registry.abort(1, 10)
    await asyncio.wait_for(waiter, timeout=1)
