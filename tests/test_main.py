"""Tests for CLI config assembly."""

from __future__ import annotations

import argparse
import logging

from labscan_agent.__main__ import build_config
from labscan_agent.config import AgentConfig


def _args(**overrides) -> argparse.Namespace:
    values = {"config": None, "state": None, "fake": False, "count": None, "debug": False}
    values.update(overrides)
    return argparse.Namespace(**values)


class TestBuildConfig:
    def test_no_config_uses_defaults(self):
        assert build_config(_args()) == AgentConfig()

    def test_missing_config_file_warns(self, tmp_path, caplog):
        missing = tmp_path / "nope.json"
        with caplog.at_level(logging.WARNING, logger="labscan_agent.config"):
            config = build_config(_args(config=str(missing)))
        assert config == AgentConfig()
        assert "Config not found" in caplog.text
        assert str(missing) in caplog.text

    def test_config_file_loaded(self, tmp_path):
        path = tmp_path / "settings.json"
        AgentConfig(control_port=9100).save(path)
        assert build_config(_args(config=str(path))).control_port == 9100

    def test_overrides(self, tmp_path):
        state = str(tmp_path / "state.json")
        config = build_config(_args(state=state, count=7))
        assert config.state_path == state
        assert config.fake_agent_count == 7

    def test_non_positive_count_ignored(self):
        assert build_config(_args(count=0)).fake_agent_count == 4
