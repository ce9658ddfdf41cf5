"""Heartbeat emitter — jittered liveness + health metrics."""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Any, Awaitable, Callable, Optional

from .probe import HealthProber
from .protocol import HEARTBEAT, heartbeat_payload

logger = logging.getLogger(__name__)

SendFn = Callable[[str, Any], Awaitable[None]]


def jitter_delay(min_s: float, max_s: float) -> float:
    """Pick a delay in ``[min_s, max_s]`` so a fleet doesn't beat in lockstep."""
    min_s = max(min_s, 0.0)
    max_s = max(max_s, min_s)
    return random.uniform(min_s, max_s)


class HeartbeatEmitter:
    """Sends a heartbeat after every re-rolled jitter delay.

    A failed send propagates out of :meth:`run` so the session notices the
    transport is gone.
    """

    def __init__(
        self,
        send: SendFn,
        prober: Optional[HealthProber] = None,
        min_s: float = 5.0,
        max_s: float = 10.0,
        status: str = "idle",
        task_count: Optional[Callable[[], int]] = None,
    ) -> None:
        self._send = send
        self._prober = prober
        self._task_count = task_count
        self.min_s = min_s
        self.max_s = max_s
        self.status = status

    async def run(self) -> None:
        while True:
            await asyncio.sleep(jitter_delay(self.min_s, self.max_s))
            await self.beat()

    async def beat(self) -> None:
        metrics = None
        if self._prober is not None:
            snapshot = await self._prober.snapshot()
            metrics = snapshot.metrics()
            if self._task_count is not None:
                metrics["tasks"] = self._task_count()
        await self._send(HEARTBEAT, heartbeat_payload(self.status, metrics))
