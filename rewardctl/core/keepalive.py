"""Periodic liveness writes on the connection channel."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from enum import Enum

from rewardctl.core.codec import encode_keepalive
from rewardctl.core.errors import LinkError

LOGGER = logging.getLogger(__name__)


class KeepaliveTick(str, Enum):
    SENT = "sent"
    SKIPPED = "skipped"
    FAILED = "failed"


class KeepalivePinger:
    def __init__(
        self,
        *,
        write: Callable[[bytes], Awaitable[None]],
        is_busy: Callable[[], bool],
        on_failure: Callable[[str], None],
        interval_s: float = 5.0,
        value: int = 200,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._write = write
        self._is_busy = is_busy
        self._on_failure = on_failure
        self._interval_s = interval_s
        self._frame = encode_keepalive(value)
        self._sleep = sleep
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())

    def stop(self) -> None:
        task = self._task
        self._task = None
        if task is None or task.done():
            return
        # A keepalive failure stops the pinger from inside its own task.
        if task is not asyncio.current_task():
            task.cancel()

    async def tick(self) -> KeepaliveTick:
        # Never race a reward write; the next interval picks it up.
        if self._is_busy():
            LOGGER.debug("Keepalive skipped, reward command in flight")
            return KeepaliveTick.SKIPPED
        try:
            await self._write(self._frame)
        except LinkError as exc:
            LOGGER.warning("Keepalive write failed: %s", exc)
            self._on_failure(f"keepalive write failed: {exc}")
            return KeepaliveTick.FAILED
        LOGGER.debug("Keepalive sent %s", self._frame.hex())
        return KeepaliveTick.SENT

    async def _run(self) -> None:
        while True:
            if await self.tick() is KeepaliveTick.FAILED:
                return
            await self._sleep(self._interval_s)
