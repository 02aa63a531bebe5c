"""Fixtures for the client-side tests."""

from __future__ import annotations

import pytest

from chatflow import utils


@pytest.fixture
def config_home(tmp_path, monkeypatch):
    """Point every chatflow path at a temporary directory."""
    monkeypatch.setattr(utils, "CONFIG_DIR", str(tmp_path / "chatflow"))
    monkeypatch.setattr(utils, "CONFIG_FILE", str(tmp_path / "chatflow" / "config.json"))
    monkeypatch.setattr(utils, "STATE_FILE", str(tmp_path / "chatflow" / "state.json"))
    monkeypatch.setattr(utils, "PID_FILE", str(tmp_path / "chatflow" / "gateway.pid"))
    monkeypatch.setattr(utils, "LOG_FILE", str(tmp_path / "chatflow" / "logs" / "gateway.log"))
    return tmp_path / "chatflow"
