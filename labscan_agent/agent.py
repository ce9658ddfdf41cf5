"""Top-level runners.

Normal mode runs one session for the host identity::

    provisioning → session (… → DORMANT) → provisioning → …

Fake mode provisions once with the host identity, then fans out into N
simulated devices sharing the credential. The first device to go dormant
takes the whole group down and the fleet goes back to provisioning together.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional, Sequence

from .config import AgentConfig, AgentState
from .identity import AgentIdentity, fake_profiles, resolve_identity
from .provisioning import ProvisioningListener, SessionCredential
from .session import AgentSession, ExitReason
from .transport import Connector

logger = logging.getLogger(__name__)


class LabscanAgent:
    """Normal-mode agent: one identity, one session at a time."""

    def __init__(
        self,
        config: AgentConfig,
        identity: Optional[AgentIdentity] = None,
        connector: Optional[Connector] = None,
    ) -> None:
        self.config = config
        self.identity = identity or resolve_identity(config.state_path)
        self._connector = connector
        self.session: Optional[AgentSession] = None

    async def run(self) -> None:
        """Run forever (until cancelled)."""
        logger.info("=== LabScan Agent v%s ===", self.identity.version)
        logger.info("ID: %s | Host: %s", self.identity.agent_id, self.identity.hostname)

        credential = self._resumed_credential()
        while True:
            if credential is None:
                credential = await provision(self.config, self.identity)
            await self.run_session(credential)
            credential = None

    async def run_session(self, credential: SessionCredential) -> ExitReason:
        self.session = AgentSession(
            self.identity, credential, self.config, connector=self._connector
        )
        reason = await self.session.run()
        self.identity = self.session.identity
        return reason

    def _resumed_credential(self) -> Optional[SessionCredential]:
        if not self.config.resume_credential:
            return None
        state = AgentState.load(self.config.state_path)
        if state is None or not state.has_credential:
            return None
        logger.info("Resuming persisted credential for admin %s", state.admin_ip)
        return SessionCredential(state.admin_ip, state.secret, state.provisioned_at)


class SessionGroup:
    """N sibling sessions that live and die together."""

    def __init__(self, sessions: Sequence[AgentSession]) -> None:
        self.sessions = list(sessions)
        self.tasks: list[asyncio.Task] = []
        self.started = asyncio.Event()

    async def run(self) -> None:
        """Return once any sibling ends; all others are cancelled first."""
        loop = asyncio.get_running_loop()
        self.tasks = [
            loop.create_task(s.run(), name=f"session-{s.name}") for s in self.sessions
        ]
        self.started.set()
        try:
            done, _ = await asyncio.wait(self.tasks, return_when=asyncio.FIRST_COMPLETED)
        finally:
            self.cancel()
            await asyncio.gather(*self.tasks, return_exceptions=True)

        for task in done:
            if task.cancelled():
                logger.info("Fake mode: %s was cancelled", task.get_name())
            elif task.exception() is not None:
                logger.error(
                    "Fake mode: %s crashed", task.get_name(), exc_info=task.exception()
                )
            else:
                logger.info("Fake mode: %s went %s", task.get_name(), task.result().value)

    def cancel(self) -> None:
        for task in self.tasks:
            task.cancel()


class FleetSimulator:
    """Fake mode: one provisioning event drives N simulated agents."""

    def __init__(
        self,
        config: AgentConfig,
        identity: Optional[AgentIdentity] = None,
        connector: Optional[Connector] = None,
    ) -> None:
        self.config = config
        self.identity = identity or resolve_identity(config.state_path)
        self._connector = connector
        self.group: Optional[SessionGroup] = None

    async def run(self) -> None:
        while True:
            credential = await provision(self.config, self.identity)
            await self.run_group(credential)

    async def run_group(self, credential: SessionCredential) -> None:
        sessions = [
            AgentSession(profile, credential, self.config, connector=self._connector)
            for profile in fake_profiles(self.config.fake_agent_count)
        ]
        self.group = SessionGroup(sessions)
        logger.info("Fake mode: spawned %d agents", len(sessions))
        await self.group.run()
        logger.info("Fake mode: group torn down, back to provisioning")


async def provision(config: AgentConfig, identity: AgentIdentity) -> SessionCredential:
    """Listen for provisioning until it succeeds, retrying bind failures."""
    while True:
        listener = ProvisioningListener(
            agent_id=identity.agent_id,
            hostname=identity.hostname,
            state_path=config.state_path,
            port=config.provision_port,
            host=config.provision_bind,
        )
        try:
            return await listener.listen()
        except OSError as e:
            logger.error("Provisioning listener error: %s", e)
            await asyncio.sleep(config.provision_retry_s)
