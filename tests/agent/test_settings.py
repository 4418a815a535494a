# tests/agent/test_settings.py
"""
Tests for AgentSettings environment parsing
"""

import pytest
from pydantic import ValidationError

from ipsec_manager.agent.config import AgentSettings


class TestTags:
    """Tests for IPSEC_AGENT_TAGS"""

    def test_single_tag(self, monkeypatch):
        monkeypatch.setenv("IPSEC_AGENT_TAGS", "edge")

        assert AgentSettings().TAGS == ["edge"]

    def test_comma_separated(self, monkeypatch):
        monkeypatch.setenv("IPSEC_AGENT_TAGS", "edge, eu,,core")

        assert AgentSettings().TAGS == ["edge", "eu", "core"]

    def test_json_list(self, monkeypatch):
        monkeypatch.setenv("IPSEC_AGENT_TAGS", '["edge", "eu"]')

        assert AgentSettings().TAGS == ["edge", "eu"]

    def test_empty(self, monkeypatch):
        monkeypatch.setenv("IPSEC_AGENT_TAGS", "")

        assert AgentSettings().TAGS == []

    def test_keyword_list_is_kept(self, monkeypatch):
        monkeypatch.delenv("IPSEC_AGENT_TAGS", raising=False)

        assert AgentSettings(TAGS=["edge", "eu"]).TAGS == ["edge", "eu"]


def test_invalid_interval(monkeypatch):
    monkeypatch.setenv("IPSEC_AGENT_SYNC_INTERVAL", "soon")

    with pytest.raises(ValidationError):
        AgentSettings()
