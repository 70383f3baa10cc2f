"""Reentrancy guard for editor operations the manager issues itself."""

from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, TypeVar

__all__ = ["GuardController"]

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


class GuardController:
    """Suppresses event handling triggered by the manager's own editor calls.

    Editors publish "opened"/"focused" notifications synchronously while the
    manager is opening or closing a view. Those must not be mistaken for user
    actions, so every such call runs inside :meth:`extension_triggered_open`.

    The flag is a depth counter: two tasks interleaving guarded blocks across
    awaits cannot clear each other's flag.

    The recently-closed cooldown is timer based. :meth:`mark_recently_closed`
    suppresses re-opening a view for a source for ``cooldown_seconds``;
    expired entries are purged on every query, and
    :meth:`clear_recently_closed` drops entries early.
    """

    def __init__(
        self,
        cooldown_seconds: float = 0.75,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._depth = 0
        self._cooldowns: dict[str, float] = {}
        self._cooldown_seconds = max(cooldown_seconds, 0.0)
        self._clock = clock

    @property
    def cooldown_seconds(self) -> float:
        return self._cooldown_seconds

    @cooldown_seconds.setter
    def cooldown_seconds(self, value: float) -> None:
        self._cooldown_seconds = max(value, 0.0)

    # ------------------------------------------------------------------
    # Extension-triggered flag
    # ------------------------------------------------------------------
    @asynccontextmanager
    async def extension_triggered_open(self) -> AsyncIterator[None]:
        self._depth += 1
        try:
            yield
        finally:
            self._depth -= 1

    async def with_extension_triggered_open(self, fn: Callable[[], Awaitable[T]]) -> T:
        """Run ``fn`` with the flag raised; the flag drops on every exit path."""

        async with self.extension_triggered_open():
            return await fn()

    def is_extension_triggered_open(self) -> bool:
        return self._depth > 0

    # ------------------------------------------------------------------
    # Recently-closed cooldown
    # ------------------------------------------------------------------
    def mark_recently_closed(self, source_path: str) -> None:
        if self._cooldown_seconds <= 0:
            return
        self._cooldowns[source_path] = self._clock() + self._cooldown_seconds
        LOGGER.debug("Cooldown started for %s (%.0fms)", source_path, self._cooldown_seconds * 1000)

    def is_recently_closed(self, source_path: str) -> bool:
        self._purge_expired()
        return source_path in self._cooldowns

    def clear_recently_closed(self, source_path: str | None = None) -> None:
        if source_path is None:
            self._cooldowns.clear()
            return
        self._cooldowns.pop(source_path, None)

    def _purge_expired(self) -> None:
        now = self._clock()
        expired = [path for path, expiry in self._cooldowns.items() if expiry <= now]
        for path in expired:
            del self._cooldowns[path]
