import asyncio
import random

import pytest

from chatweb.services.config_service import KeyCredential
from chatweb.services.key_lease import KeyLeaseManager, is_eligible


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def make_key(key_id, models=("gpt-4.1",), roles=("user",), enabled=True):
    return KeyCredential(
        id=key_id,
        key=f"sk-{key_id}",
        chat_models=list(models),
        user_roles=list(roles),
        enabled=enabled,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def manager(clock):
    return KeyLeaseManager(lock_ttl=20, wait_timeout=0, wait_interval=0.01,
                           clock=clock, rng=random.Random(7))


def test_eligibility_rules():
    key = make_key(1, roles=("admin", "user"))
    assert is_eligible(key, ["user"], "gpt-4.1")
    assert not is_eligible(key, ["guest"], "gpt-4.1")
    assert not is_eligible(key, ["user"], "other-model")
    assert not is_eligible(make_key(2, enabled=False), ["user"], "gpt-4.1")


async def test_no_eligible_key_returns_none(manager):
    keys = [make_key(1, roles=("admin",)), make_key(2, enabled=False)]
    assert await manager.acquire(keys, ["user"], "gpt-4.1") is None


async def test_leased_key_is_not_handed_out_twice(manager):
    keys = [make_key(1), make_key(2)]
    first = await manager.acquire(keys, ["user"], "gpt-4.1")
    second = await manager.acquire(keys, ["user"], "gpt-4.1")
    assert first is not None and second is not None
    assert first.id != second.id
    assert await manager.acquire(keys, ["user"], "gpt-4.1") is None


async def test_release_frees_the_key(manager):
    keys = [make_key(1)]
    key = await manager.acquire(keys, ["user"], "gpt-4.1")
    assert manager.is_locked(key)
    manager.release(key)
    assert not manager.is_locked(key)
    assert (await manager.acquire(keys, ["user"], "gpt-4.1")).id == 1


async def test_lease_expires_after_ttl(manager, clock):
    keys = [make_key(1)]
    assert await manager.acquire(keys, ["user"], "gpt-4.1") is not None
    clock.now += 19
    assert await manager.acquire(keys, ["user"], "gpt-4.1") is None
    clock.now += 2
    assert await manager.acquire(keys, ["user"], "gpt-4.1") is not None


async def test_waits_for_a_key_to_be_released():
    manager = KeyLeaseManager(lock_ttl=20, wait_timeout=2, wait_interval=0.01)
    keys = [make_key(1)]
    held = await manager.acquire(keys, ["user"], "gpt-4.1")

    async def release_soon():
        await asyncio.sleep(0.05)
        manager.release(held)

    releaser = asyncio.create_task(release_soon())
    again = await manager.acquire(keys, ["user"], "gpt-4.1")
    await releaser
    assert again is not None and again.id == 1


def test_release_none_is_noop(manager):
    manager.release(None)
