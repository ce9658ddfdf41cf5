"""Health prober — periodic reachability sampling with anti-flap smoothing.

Each cycle samples three independent flags:

  internet  TCP connect to known-good external endpoints (first success wins)
  dns       resolve one well-known hostname
  gateway   TCP connect to common private gateway addresses

A single success sets a flag immediately; it takes two consecutive failures
to report a flag as down.
"""

from __future__ import annotations

import asyncio
import copy
import logging
import socket
import time
from dataclasses import dataclass, field
from typing import Optional, Sequence

from .errors import ProbeError

logger = logging.getLogger(__name__)

FAILURE_THRESHOLD = 2


@dataclass
class FlagState:
    value: Optional[bool] = None
    failures: int = 0


@dataclass
class ProbeState:
    internet: FlagState = field(default_factory=FlagState)
    dns: FlagState = field(default_factory=FlagState)
    gateway: FlagState = field(default_factory=FlagState)
    latency_ms: Optional[int] = None

    def metrics(self) -> dict:
        return {
            "internet_reachable": self.internet.value,
            "dns_ok": self.dns.value,
            "gateway_reachable": self.gateway.value,
            "latency_ms": self.latency_ms,
        }


def apply_debounce(flag: FlagState, ok: bool) -> None:
    """Fold one probe sample into ``flag``."""
    if ok:
        flag.value = True
        flag.failures = 0
        return

    flag.failures += 1
    if flag.failures < FAILURE_THRESHOLD:
        return
    if flag.value is None or flag.value:
        flag.value = False


def split_target(target: str, default_port: int) -> tuple[str, int]:
    """Split ``host:port`` (or ``[v6]:port``); bare hosts get ``default_port``."""
    if target.startswith("["):
        host, _, rest = target[1:].partition("]")
        if rest.startswith(":") and rest[1:].isdigit():
            return host, int(rest[1:])
        return host, default_port
    if target.count(":") == 1:
        host, _, port = target.partition(":")
        if port.isdigit():
            return host, int(port)
    return target, default_port


async def tcp_connect(host: str, port: int, timeout: float) -> float:
    """Open and close a TCP connection; return elapsed seconds."""
    if not 0 < port < 65536:
        raise ProbeError(f"{host}:{port} unreachable: port out of range")
    start = time.monotonic()
    try:
        _, writer = await asyncio.wait_for(
            asyncio.open_connection(host, port), timeout=timeout
        )
    # Malformed names fail IDNA encoding with UnicodeError (a ValueError).
    except (asyncio.TimeoutError, OSError, ValueError, OverflowError) as e:
        raise ProbeError(f"{host}:{port} unreachable: {e!r}") from e
    elapsed = time.monotonic() - start
    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        pass
    return elapsed


class HealthProber:
    """Samples connectivity and keeps a debounced :class:`ProbeState`."""

    def __init__(
        self,
        internet_targets: Sequence[str] = ("1.1.1.1:443", "8.8.8.8:53"),
        internet_timeout: float = 2.0,
        dns_hostname: str = "example.com",
        dns_timeout: float = 2.0,
        gateway_targets: Sequence[str] = ("192.168.1.1:53", "10.0.0.1:53", "172.16.0.1:53"),
        gateway_timeout: float = 1.5,
        interval: float = 30.0,
    ) -> None:
        self.internet_targets = list(internet_targets)
        self.internet_timeout = internet_timeout
        self.dns_hostname = dns_hostname
        self.dns_timeout = dns_timeout
        self.gateway_targets = list(gateway_targets)
        self.gateway_timeout = gateway_timeout
        self.interval = interval
        self._state = ProbeState()
        self._lock = asyncio.Lock()

    async def run(self) -> None:
        """Probe now, then every ``interval`` seconds until cancelled."""
        while True:
            await self.run_cycle()
            await asyncio.sleep(self.interval)

    async def run_cycle(self) -> None:
        (internet_ok, latency), dns_ok, gateway_ok = await asyncio.gather(
            self._sample_internet(),
            self._sample(self.probe_dns, "dns"),
            self._sample(self.probe_gateway, "gateway"),
        )
        async with self._lock:
            apply_debounce(self._state.internet, internet_ok)
            apply_debounce(self._state.dns, dns_ok)
            apply_debounce(self._state.gateway, gateway_ok)
            self._state.latency_ms = latency if internet_ok else None
        logger.debug(
            "Probe cycle: internet=%s dns=%s gateway=%s latency=%s",
            internet_ok, dns_ok, gateway_ok, latency,
        )

    async def snapshot(self) -> ProbeState:
        """Deep copy of the current state; never a live reference."""
        async with self._lock:
            return copy.deepcopy(self._state)

    # ── Probes ────────────────────────────────────────────────────

    async def probe_internet(self) -> int:
        """Return latency in ms to the first reachable internet target."""
        for target in self.internet_targets:
            host, port = split_target(target, 443)
            try:
                elapsed = await tcp_connect(host, port, self.internet_timeout)
            except ProbeError:
                continue
            return int(elapsed * 1000)
        raise ProbeError("no internet target reachable")

    async def probe_dns(self) -> None:
        loop = asyncio.get_running_loop()
        try:
            await asyncio.wait_for(
                loop.getaddrinfo(self.dns_hostname, None, type=socket.SOCK_STREAM),
                timeout=self.dns_timeout,
            )
        except (asyncio.TimeoutError, OSError, ValueError) as e:
            raise ProbeError(f"cannot resolve {self.dns_hostname}: {e!r}") from e

    async def probe_gateway(self) -> None:
        for target in self.gateway_targets:
            host, port = split_target(target, 53)
            try:
                await tcp_connect(host, port, self.gateway_timeout)
            except ProbeError:
                continue
            return
        raise ProbeError("no gateway reachable")

    async def _sample_internet(self) -> tuple[bool, Optional[int]]:
        try:
            return True, await self.probe_internet()
        except ProbeError as e:
            logger.debug("internet probe failed: %s", e)
            return False, None
        except Exception:
            logger.exception("internet probe crashed")
            return False, None

    async def _sample(self, probe, name: str) -> bool:
        try:
            await probe()
        except ProbeError as e:
            logger.debug("%s probe failed: %s", name, e)
            return False
        except Exception:
            logger.exception("%s probe crashed", name)
            return False
        return True
