"""Tests for the wire envelope and payload builders."""

from __future__ import annotations

import json

import pytest

from labscan_agent.errors import ProtocolError
from labscan_agent.identity import AgentIdentity
from labscan_agent.protocol import (
    TaskDescriptor,
    TaskResult,
    WireEnvelope,
    heartbeat_payload,
    parse_registered,
    register_payload,
)


class TestWireEnvelope:
    def test_encode_shape(self):
        env = WireEnvelope("heartbeat", "agent-1", {"status": "idle"}, ts=1234)
        data = json.loads(env.encode())
        assert data == {
            "type": "heartbeat",
            "ts": 1234,
            "agent_id": "agent-1",
            "payload": {"status": "idle"},
        }

    def test_default_timestamp_is_epoch_ms(self):
        env = WireEnvelope("heartbeat")
        assert env.ts > 1_600_000_000_000

    def test_decode(self):
        env = WireEnvelope.decode(json.dumps({
            "type": "task", "ts": 5, "agent_id": "", "payload": {"task_id": "t1"},
        }))
        assert env.type == "task"
        assert env.ts == 5
        assert env.payload == {"task_id": "t1"}

    @pytest.mark.parametrize("raw", [
        "not json",
        "[1, 2, 3]",
        json.dumps({"payload": {}}),
        json.dumps({"type": ""}),
        json.dumps({"type": 5}),
    ])
    def test_decode_rejects(self, raw):
        with pytest.raises(ProtocolError):
            WireEnvelope.decode(raw)

    def test_decode_tolerates_missing_fields(self):
        env = WireEnvelope.decode('{"type": "something_new"}')
        assert env.type == "something_new"
        assert env.payload is None
        assert env.ts == 0


class TestTaskPayloads:
    def test_descriptor_from_payload(self):
        task = TaskDescriptor.from_payload({
            "task_id": "t-9", "kind": "ping", "params": {"target": "1.2.3.4"},
        })
        assert task.task_id == "t-9"
        assert task.kind == "ping"
        assert task.params == {"target": "1.2.3.4"}

    def test_descriptor_defaults_params(self):
        task = TaskDescriptor.from_payload({"task_id": "t", "kind": "arp_snapshot", "params": None})
        assert task.params == {}

    def test_descriptor_rejects_non_object(self):
        with pytest.raises(ProtocolError):
            TaskDescriptor.from_payload("ping")

    def test_result_omits_null_error(self):
        payload = TaskResult("t1", True, {"ok": False}).to_payload()
        assert payload == {"task_id": "t1", "ok": True, "result": {"ok": False}}

    def test_result_with_error(self):
        payload = TaskResult("t1", False, error="boom").to_payload()
        assert payload == {"task_id": "t1", "ok": False, "result": None, "error": "boom"}


class TestRegister:
    def test_register_payload(self):
        identity = AgentIdentity(
            agent_id="a-1", hostname="lab-pc", ips=["192.168.1.5"],
            os="linux", arch="amd64", version="0.3.0",
        )
        payload = register_payload(identity, "s3cret", ["ping"])
        assert payload == {
            "agent_id": "a-1",
            "secret": "s3cret",
            "hostname": "lab-pc",
            "ips": ["192.168.1.5"],
            "os": "linux",
            "arch": "amd64",
            "version": "0.3.0",
            "capabilities": ["ping"],
        }

    def test_parse_registered(self):
        assert parse_registered({"ok": True}) == (True, "")
        assert parse_registered({"ok": False, "error": "bad secret"}) == (False, "bad secret")
        # anything but a literal true is a refusal
        assert parse_registered({"ok": "yes"}) == (False, "")

    def test_parse_registered_rejects_non_object(self):
        with pytest.raises(ProtocolError):
            parse_registered(None)


class TestHeartbeatPayload:
    def test_bare_liveness(self):
        payload = heartbeat_payload("idle")
        assert payload["status"] == "idle"
        assert "metrics" not in payload
        assert isinstance(payload["last_seen"], int)

    def test_with_metrics(self):
        payload = heartbeat_payload("idle", {"dns_ok": True})
        assert payload["metrics"] == {"dns_ok": True}
