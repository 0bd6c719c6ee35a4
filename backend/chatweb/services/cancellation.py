"""
Registry of in-flight generations so a client can abort its own turn.
"""

import asyncio
import inspect
import logging
from typing import Any, Callable, List, Optional

logger = logging.getLogger(__name__)


class GenerationHandle:
    """Cancellation state for one streaming generation."""

    def __init__(self, user_id: Any, turn_id: Any):
        self.user_id = user_id
        self.turn_id = turn_id
        self._event = asyncio.Event()
        self._closer: Optional[Callable[[], Any]] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def attach(self, closer: Callable[[], Any]) -> None:
        """Register the callable that tears down the active upstream stream."""
        self._closer = closer
        if self.cancelled:
            self._close()

    def cancel(self) -> None:
        if self.cancelled:
            return
        self._event.set()
        self._close()

    async def wait(self) -> None:
        await self._event.wait()

    def _close(self) -> None:
        closer, self._closer = self._closer, None
        if closer is None:
            return
        result = closer()
        if inspect.isawaitable(result):
            # the closer may be a coroutine (AsyncStream.close)
            task = asyncio.ensure_future(result)
            task.add_done_callback(_log_close_failure)


def _log_close_failure(task: "asyncio.Future") -> None:
    if not task.cancelled() and task.exception() is not None:
        logger.warning("Closing aborted upstream stream failed: %s", task.exception())


class CancellationRegistry:
    """In-flight generations keyed by caller and turn id."""

    def __init__(self):
        self._handles: List[GenerationHandle] = []

    def __len__(self) -> int:
        return len(self._handles)

    def register(self, user_id: Any, turn_id: Any) -> GenerationHandle:
        handle = GenerationHandle(user_id, turn_id)
        self._handles.append(handle)
        return handle

    def find(self, user_id: Any, turn_id: Any) -> Optional[GenerationHandle]:
        for handle in self._handles:
            if handle.user_id == user_id and handle.turn_id == turn_id:
                return handle
        return None

    def remove(self, handle: GenerationHandle) -> bool:
        """Drop a handle. Removing twice is a no-op."""
        try:
            self._handles.remove(handle)
        except ValueError:
            return False
        return True

    def abort(self, user_id: Any, turn_id: Any) -> bool:
        """Cancel the matching generation. Returns False when nothing matched."""
        handle = self.find(user_id, turn_id)
        if handle is None:
            return False
        handle.cancel()
        self.remove(handle)
        logger.info("Aborted generation of turn %s for user %s", turn_id, user_id)
        return True
