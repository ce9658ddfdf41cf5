"""Tests for the normal-mode runner and the simulated fleet group."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from labscan_agent.agent import FleetSimulator, LabscanAgent, SessionGroup, provision
from labscan_agent.config import AgentState
from labscan_agent.errors import TransportError
from labscan_agent.identity import AgentIdentity, FakeAgentProfile
from labscan_agent.provisioning import SessionCredential
from labscan_agent.session import AgentSession, ExitReason, SessionState

CREDENTIAL = SessionCredential("10.0.0.2", "s3cret", 1)
IDENTITY = AgentIdentity(agent_id="host-id", hostname="lab-pc", ips=["10.0.0.7"])


class StopRunner(Exception):
    """Breaks out of a runner's endless loop."""


async def refuse(url: str):
    raise TransportError("connection refused")


class HangingConnector:
    """Never completes a dial, so sessions sit in CONNECTING."""

    def __init__(self):
        self.dialing = 0
        self._never = asyncio.Event()

    async def __call__(self, url: str):
        self.dialing += 1
        await self._never.wait()


class TestSessionGroup:
    @pytest.mark.asyncio
    async def test_cancelling_one_sibling_cancels_all(self, fast_config):
        connector = HangingConnector()
        sessions = [
            AgentSession(FakeAgentProfile.create(i), CREDENTIAL, fast_config, connector=connector)
            for i in range(1, 5)
        ]
        group = SessionGroup(sessions)
        runner = asyncio.create_task(group.run())

        await asyncio.wait_for(group.started.wait(), timeout=1)
        while connector.dialing < 4:
            await asyncio.sleep(0.005)

        group.tasks[2].cancel()
        await asyncio.wait_for(runner, timeout=2)

        assert len(group.tasks) == 4
        assert all(t.cancelled() for t in group.tasks)

    @pytest.mark.asyncio
    async def test_first_dormant_sibling_tears_down_group(self, fast_config):
        fast_config.backoff_s = []
        hanging = HangingConnector()

        dormant = AgentSession(FakeAgentProfile.create(1), CREDENTIAL, fast_config, connector=refuse)
        others = [
            AgentSession(FakeAgentProfile.create(i), CREDENTIAL, fast_config, connector=hanging)
            for i in range(2, 5)
        ]
        group = SessionGroup([dormant, *others])
        await asyncio.wait_for(group.run(), timeout=2)

        assert dormant.state is SessionState.DORMANT
        assert group.tasks[0].result() is ExitReason.EARLY_FAILURE
        assert all(t.cancelled() for t in group.tasks[1:])

    @pytest.mark.asyncio
    async def test_cancelling_group_cancels_siblings(self, fast_config):
        connector = HangingConnector()
        sessions = [
            AgentSession(FakeAgentProfile.create(i), CREDENTIAL, fast_config, connector=connector)
            for i in range(1, 3)
        ]
        group = SessionGroup(sessions)
        runner = asyncio.create_task(group.run())
        await asyncio.wait_for(group.started.wait(), timeout=1)
        await asyncio.sleep(0.01)

        runner.cancel()
        with pytest.raises(asyncio.CancelledError):
            await runner
        assert all(t.cancelled() for t in group.tasks)


class TestFleetSimulator:
    @pytest.mark.asyncio
    async def test_run_group_spawns_fake_profiles(self, fast_config):
        fast_config.backoff_s = []
        fast_config.fake_agent_count = 3
        fleet = FleetSimulator(fast_config, identity=IDENTITY, connector=refuse)

        await asyncio.wait_for(fleet.run_group(CREDENTIAL), timeout=2)

        names = [s.identity.hostname for s in fleet.group.sessions]
        assert names == ["LABSCAN-FAKE-001", "LABSCAN-FAKE-002", "LABSCAN-FAKE-003"]
        assert all(s.identity.simulated for s in fleet.group.sessions)
        assert all(s.executor.simulated for s in fleet.group.sessions)
        assert all(s.credential is CREDENTIAL for s in fleet.group.sessions)

    @pytest.mark.asyncio
    async def test_run_goes_back_to_provisioning(self, fast_config):
        fast_config.backoff_s = []
        fleet = FleetSimulator(fast_config, identity=IDENTITY, connector=refuse)
        calls = []

        async def fake_provision(config, identity):
            calls.append(identity.agent_id)
            if len(calls) > 2:
                raise StopRunner
            return CREDENTIAL

        with patch("labscan_agent.agent.provision", fake_provision):
            with pytest.raises(StopRunner):
                await asyncio.wait_for(fleet.run(), timeout=2)
        assert calls == ["host-id", "host-id", "host-id"]


class TestLabscanAgent:
    @pytest.mark.asyncio
    async def test_run_session_real_identity(self, fast_config):
        fast_config.backoff_s = []
        agent = LabscanAgent(fast_config, identity=IDENTITY, connector=refuse)

        reason = await agent.run_session(CREDENTIAL)

        assert reason is ExitReason.EARLY_FAILURE
        assert not agent.session.executor.simulated
        assert agent.identity.agent_id == "host-id"

    def test_resumes_persisted_credential(self, fast_config):
        AgentState("host-id", "10.0.0.9", "old-secret", 5).save(fast_config.state_path)
        agent = LabscanAgent(fast_config, identity=IDENTITY)
        assert agent._resumed_credential() == SessionCredential("10.0.0.9", "old-secret", 5)

    def test_resume_disabled(self, fast_config):
        AgentState("host-id", "10.0.0.9", "old-secret", 5).save(fast_config.state_path)
        fast_config.resume_credential = False
        agent = LabscanAgent(fast_config, identity=IDENTITY)
        assert agent._resumed_credential() is None

    def test_no_credential_to_resume(self, fast_config):
        AgentState(agent_id="host-id").save(fast_config.state_path)
        agent = LabscanAgent(fast_config, identity=IDENTITY)
        assert agent._resumed_credential() is None

    def test_identity_resolved_from_state(self, fast_config):
        AgentState(agent_id="persisted").save(fast_config.state_path)
        agent = LabscanAgent(fast_config)
        assert agent.identity.agent_id == "persisted"

    @pytest.mark.asyncio
    async def test_dormant_falls_back_to_provisioning(self, fast_config):
        fast_config.backoff_s = []
        AgentState("host-id", "10.0.0.9", "old-secret", 5).save(fast_config.state_path)
        agent = LabscanAgent(fast_config, identity=IDENTITY, connector=refuse)
        provisioned = []

        async def fake_provision(config, identity):
            provisioned.append(True)
            raise StopRunner

        with patch("labscan_agent.agent.provision", fake_provision):
            with pytest.raises(StopRunner):
                await agent.run()

        # resumed credential was tried first, then the agent went to provisioning
        assert agent.session.credential.admin_ip == "10.0.0.9"
        assert agent.session.state is SessionState.DORMANT
        assert provisioned == [True]


class TestProvision:
    @pytest.mark.asyncio
    async def test_retries_bind_failure(self, fast_config):
        listen = AsyncMock(side_effect=[OSError("address in use"), CREDENTIAL])
        with patch("labscan_agent.agent.ProvisioningListener.listen", listen):
            credential = await provision(fast_config, IDENTITY)
        assert credential is CREDENTIAL
        assert listen.await_count == 2
