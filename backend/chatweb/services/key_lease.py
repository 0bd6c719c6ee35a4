"""
Backend key selection with short-lived leases.

A lease marks a key as in use by one request. Leases that are never
released expire after ``lock_ttl`` seconds so a crashed request cannot pin
a key forever.
"""

import asyncio
import logging
import random
import time
from typing import Callable, Dict, Iterable, List, Optional

from ..config import settings
from .config_service import KeyCredential

logger = logging.getLogger(__name__)


def is_eligible(key: KeyCredential, roles: Iterable[str], model: str) -> bool:
    """A key serves a request only when enabled, role-compatible and model-compatible."""
    return (
        key.enabled
        and bool(set(key.user_roles) & set(roles))
        and model in key.chat_models
    )


class KeyLeaseManager:
    """Picks a random eligible key and leases it for one request."""

    def __init__(
        self,
        lock_ttl: float = settings.KEY_LOCK_TTL_SECONDS,
        wait_timeout: float = settings.KEY_WAIT_TIMEOUT_SECONDS,
        wait_interval: float = settings.KEY_WAIT_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        rng: Optional[random.Random] = None,
    ):
        self.lock_ttl = lock_ttl
        self.wait_timeout = wait_timeout
        self.wait_interval = wait_interval
        self._clock = clock
        self._rng = rng or random.Random()
        # key id -> lease timestamp
        self._locks: Dict[int, float] = {}

    def is_locked(self, key: KeyCredential) -> bool:
        locked_at = self._locks.get(key.id)
        return locked_at is not None and locked_at > self._clock() - self.lock_ttl

    def _purge_expired(self) -> None:
        cutoff = self._clock() - self.lock_ttl
        for key_id in [k for k, locked_at in self._locks.items() if locked_at <= cutoff]:
            del self._locks[key_id]

    def _try_lease(self, candidates: List[KeyCredential]) -> Optional[KeyCredential]:
        # no await between choosing and locking
        self._purge_expired()
        unlocked = [key for key in candidates if key.id not in self._locks]
        if not unlocked:
            return None
        chosen = self._rng.choice(unlocked)
        self._locks[chosen.id] = self._clock()
        return chosen

    async def acquire(
        self,
        keys: Iterable[KeyCredential],
        roles: Iterable[str],
        model: str,
    ) -> Optional[KeyCredential]:
        """
        Lease one eligible key, waiting briefly for a busy one to free up.

        Returns None when no key is eligible or all eligible keys stay
        leased past the wait deadline.
        """
        roles = list(roles)
        candidates = [key for key in keys if is_eligible(key, roles, model)]
        if not candidates:
            logger.info("No eligible key for model %s and roles %s", model, roles)
            return None

        deadline = self._clock() + self.wait_timeout
        while True:
            leased = self._try_lease(candidates)
            if leased is not None:
                return leased
            if self._clock() >= deadline:
                logger.warning("All %d keys for model %s are busy", len(candidates), model)
                return None
            await asyncio.sleep(self.wait_interval)

    def release(self, key: Optional[KeyCredential]) -> None:
        if key is not None:
            self._locks.pop(key.id, None)
