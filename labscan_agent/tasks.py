"""Task executor — runs remotely dispatched diagnostic tasks.

The set of task kinds is closed: ``ping``, ``port_scan`` and
``arp_snapshot``. Simulated agents use synthetic variants of the same kinds
that never touch the network.

Every received task produces exactly one ``task_result``. Handler failures
become ``ok: false`` results; they never reach the session.
"""

from __future__ import annotations

import asyncio
import logging
import random
import sys
import time
from typing import Any, Awaitable, Callable

from .errors import ProbeError, TaskError, TransportError
from .params import TaskParams
from .probe import split_target, tcp_connect
from .protocol import TASK_RESULT, TaskDescriptor, TaskResult

logger = logging.getLogger(__name__)

TaskHandler = Callable[[TaskParams], Awaitable[dict]]
SendFn = Callable[[str, Any], Awaitable[None]]

DEFAULT_PORTS = (22, 80, 443)

SIMULATED_ARP_ENTRIES = [
    "192.168.1.1 aa-bb-cc-dd-ee-01 dynamic",
    "192.168.1.20 aa-bb-cc-dd-ee-14 dynamic",
    "192.168.1.51 aa-bb-cc-dd-ee-51 dynamic",
]


# ── Real handlers ─────────────────────────────────────────────────


async def run_ping(params: TaskParams) -> dict:
    """Timed TCP connect; an unreachable target is reported, not raised."""
    target = params.string("target", "8.8.8.8")
    timeout_ms = params.integer("timeout_ms", 1200, minimum=1)
    host, port = split_target(target, 80)
    try:
        elapsed = await tcp_connect(host, port, timeout_ms / 1000)
    except ProbeError:
        return {"target": target, "ok": False}
    return {"target": target, "ok": True, "latency_ms": int(elapsed * 1000)}


async def run_port_scan(params: TaskParams) -> dict:
    target = params.string("target", "127.0.0.1")
    ports = [p for p in params.int_list("ports", DEFAULT_PORTS) if 0 < p < 65536]
    if not ports:
        ports = list(DEFAULT_PORTS)
    timeout_ms = params.integer("timeout_ms", 700, minimum=1)

    open_ports = []
    for port in ports:
        try:
            await tcp_connect(target, port, timeout_ms / 1000)
        except ProbeError:
            continue
        open_ports.append(port)
    return {"target": target, "open_ports": open_ports, "scanned": len(ports)}


def neighbor_table_command() -> list[str]:
    if sys.platform.startswith("win"):
        return ["arp", "-a"]
    return ["ip", "neigh"]


async def run_arp_snapshot(params: TaskParams) -> dict:
    cmd = neighbor_table_command()
    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
        stdout, _ = await proc.communicate()
    except OSError as e:
        raise TaskError(f"arp snapshot failed: {e}") from e
    if proc.returncode != 0:
        raise TaskError(f"arp snapshot failed: exit status {proc.returncode}")

    entries = stdout.decode(errors="replace").strip().splitlines()
    return {"entries": entries, "count": len(entries)}


# ── Simulated handlers ────────────────────────────────────────────


async def simulate_ping(params: TaskParams) -> dict:
    return {"ok": True, "latency_ms": 5 + random.randrange(25)}


async def simulate_port_scan(params: TaskParams) -> dict:
    ports = params.int_list("ports", DEFAULT_PORTS)
    open_ports = [p for p in ports if p % 2 == 0 or p == 443]
    return {"open_ports": open_ports, "scanned": len(ports)}


async def simulate_arp_snapshot(params: TaskParams) -> dict:
    entries = list(SIMULATED_ARP_ENTRIES)
    return {"entries": entries, "count": len(entries)}


TASK_HANDLERS: dict[str, TaskHandler] = {
    "ping": run_ping,
    "port_scan": run_port_scan,
    "arp_snapshot": run_arp_snapshot,
}

SIMULATED_HANDLERS: dict[str, TaskHandler] = {
    "ping": simulate_ping,
    "port_scan": simulate_port_scan,
    "arp_snapshot": simulate_arp_snapshot,
}


# ── Executor ──────────────────────────────────────────────────────


class TaskExecutor:
    """Dispatches tasks without blocking the caller and reports results."""

    def __init__(self, send: SendFn, simulated: bool = False) -> None:
        self._send = send
        self.simulated = simulated
        self._handlers = SIMULATED_HANDLERS if simulated else TASK_HANDLERS
        self._inflight: set[asyncio.Task] = set()

    @property
    def kinds(self) -> list[str]:
        return sorted(self._handlers)

    @property
    def inflight(self) -> int:
        return len(self._inflight)

    def dispatch(self, task: TaskDescriptor) -> asyncio.Task:
        """Start ``task`` in the background and return immediately."""
        job = asyncio.get_running_loop().create_task(
            self._run_and_report(task), name=f"task-{task.task_id}"
        )
        self._inflight.add(job)
        job.add_done_callback(self._inflight.discard)
        return job

    async def execute(self, task: TaskDescriptor) -> TaskResult:
        """Run one task to a result. Never raises except on cancellation."""
        handler = self._handlers.get(task.kind)
        if handler is None:
            return TaskResult(
                task.task_id, False, error=f"unsupported task kind: {task.kind}"
            )

        start = time.monotonic()
        try:
            result = await handler(TaskParams(task.params))
        except TaskError as e:
            logger.warning("Task %s (%s) failed: %s", task.task_id, task.kind, e)
            return TaskResult(task.task_id, False, error=str(e))
        except Exception as e:
            logger.exception("Task %s (%s) crashed", task.task_id, task.kind)
            return TaskResult(task.task_id, False, error=f"{type(e).__name__}: {e}")

        logger.debug(
            "Task %s (%s) done in %.0fms",
            task.task_id, task.kind, (time.monotonic() - start) * 1000,
        )
        return TaskResult(task.task_id, True, result=result)

    async def _run_and_report(self, task: TaskDescriptor) -> None:
        result = await self.execute(task)
        try:
            await self._send(TASK_RESULT, result.to_payload())
        except TransportError as e:
            logger.info("Dropped result for task %s: %s", task.task_id, e)
