from __future__ import annotations

import pytest

from debug_bridge.config import BridgeConfig, RelayConfig
from debug_bridge.rate_limit import TokenBucket


def test_relay_config_from_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DEBUG_BRIDGE_HOST", "0.0.0.0")
    monkeypatch.setenv("DEBUG_BRIDGE_PORT", "4555")
    monkeypatch.setenv("DEBUG_BRIDGE_PATH", "bridge/")
    monkeypatch.setenv("DEBUG_BRIDGE_SESSION", "only-me")
    monkeypatch.setenv("DEBUG_BRIDGE_TOKEN", "t0k")
    monkeypatch.setenv("DEBUG_BRIDGE_RATE_LIMIT", "12.5")
    monkeypatch.setenv("DEBUG_BRIDGE_RATE_BURST", "not-a-number")

    cfg = RelayConfig.from_env()
    assert cfg.host == "0.0.0.0"
    assert cfg.port == 4555
    assert cfg.path == "/bridge"
    assert cfg.session == "only-me"
    assert cfg.token == "t0k"
    assert cfg.rate_limit == 12.5
    assert cfg.rate_burst == 50


def test_relay_config_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("HOST", "PORT", "PATH", "SESSION", "TOKEN", "RATE_LIMIT", "RATE_BURST", "MAX_FRAME_BYTES"):
        monkeypatch.delenv(f"DEBUG_BRIDGE_{name}", raising=False)
    cfg = RelayConfig.from_env()
    assert (cfg.host, cfg.port, cfg.path) == ("localhost", 4000, "/debug")
    assert cfg.session is None
    assert cfg.token is None
    assert cfg.rate_limit == 0.0


def test_capabilities_follow_feature_flags() -> None:
    cfg = BridgeConfig()
    caps = cfg.capabilities()
    assert "eval" not in caps
    assert "custom_state" not in caps
    assert "screenshot" not in caps
    assert {"dom_snapshot", "dom_mutations", "ui_tree", "console", "errors", "network", "navigation"} <= set(caps)

    cfg = BridgeConfig(
        enable_eval=True,
        enable_console=False,
        get_custom_state=lambda: {},
        rasterizer=lambda *a, **k: None,
        extra_capabilities=["custom_thing", "eval"],
    )
    caps = cfg.capabilities()
    assert "console" not in caps
    assert caps.count("eval") == 1
    assert {"custom_state", "screenshot", "custom_thing"} <= set(caps)


def test_reconnect_delay_backoff_is_capped() -> None:
    cfg = BridgeConfig()
    assert [cfg.reconnect_delay_ms(n) for n in range(1, 8)] == [1000, 2000, 4000, 8000, 16000, 30000, 30000]
    assert cfg.reconnect_delay_ms(0) == 1000


class _Clock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


def test_token_bucket_burst_then_refill() -> None:
    clock = _Clock()
    bucket = TokenBucket(2.0, 3, clock=clock)
    assert [bucket.allow() for _ in range(4)] == [True, True, True, False]

    clock.now += 0.5
    assert bucket.allow() is True
    assert bucket.allow() is False

    clock.now += 100.0
    assert bucket.tokens == pytest.approx(3.0)


def test_token_bucket_rejects_non_positive_rate() -> None:
    with pytest.raises(ValueError):
        TokenBucket(0, 10)
