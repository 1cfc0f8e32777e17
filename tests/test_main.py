from __future__ import annotations

import socket

import pytest

from debug_bridge import main as cli
from debug_bridge.agent import AgentClient
from debug_bridge.errors import AgentClientError


def test_relay_flags_override_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DEBUG_BRIDGE_PORT", "5000")
    monkeypatch.setenv("DEBUG_BRIDGE_TOKEN", "from-env")
    monkeypatch.setenv("DEBUG_BRIDGE_RATE_LIMIT", "20")

    args = cli._build_parser().parse_args(["relay", "--port", "4100", "--path", "bridge/", "--rate-burst", "0"])
    cfg = cli.relay_config_from_args(args)
    assert cfg.port == 4100
    assert cfg.path == "/bridge"
    assert cfg.token == "from-env"
    assert cfg.rate_limit == 20.0
    assert cfg.rate_burst == 1

    args = cli._build_parser().parse_args(["relay", "--host", "0.0.0.0", "--session", "s1", "--rate-limit", "-3"])
    cfg = cli.relay_config_from_args(args)
    assert cfg.host == "0.0.0.0"
    assert cfg.port == 5000
    assert cfg.session == "s1"
    assert cfg.rate_limit == 0.0


def test_main_without_command_prints_help(capsys: pytest.CaptureFixture[str]) -> None:
    assert cli.main([]) == 2
    assert "relay" in capsys.readouterr().out


def test_main_reports_bind_failure() -> None:
    blocker = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    blocker.bind(("127.0.0.1", 0))
    blocker.listen(1)
    try:
        port = int(blocker.getsockname()[1])
        assert cli.main(["relay", "--host", "127.0.0.1", "--port", str(port)]) == 1
    finally:
        blocker.close()


def test_agent_find_by_index_and_text() -> None:
    items = [
        {"stableId": "q", "role": "textbox", "meta": {"placeholder": "Search products", "name": "q"}},
        {"stableId": "login-btn", "role": "button", "text": "Log in"},
        {"stableId": "tos", "role": "checkbox", "label": "Accept terms"},
    ]
    assert AgentClient.find(items, 1)["stableId"] == "login-btn"
    assert AgentClient.find(items, "2")["stableId"] == "tos"
    assert AgentClient.find(items, 7) is None
    assert AgentClient.find(items, "LOG IN")["stableId"] == "login-btn"
    assert AgentClient.find(items, "search")["stableId"] == "q"
    assert AgentClient.find(items, "terms")["stableId"] == "tos"
    assert AgentClient.find(items, "  ") is None
    assert AgentClient.find(items, "checkout") is None


def test_agent_requires_connection() -> None:
    agent = AgentClient("ws://127.0.0.1:1/debug", timeout=0.5)
    assert agent.connect_url == "ws://127.0.0.1:1/debug?role=agent&sessionId=default"
    with pytest.raises(AgentClientError) as err:
        agent.send("click")
    assert "not connected" in str(err.value)
    with pytest.raises(AgentClientError):
        agent.connect()
    assert agent.connected is False
