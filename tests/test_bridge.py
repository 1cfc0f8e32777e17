from __future__ import annotations

import socket
import threading
import time

from debug_bridge.agent import AgentClient
from debug_bridge.bridge import ConnectionState, DebugBridge
from debug_bridge.config import BridgeConfig, RelayConfig
from debug_bridge.errors import BridgeConnectionError
from debug_bridge.page import Page
from debug_bridge.relay import RelayServer
from debug_bridge.screenshot import Screenshot

APP_HTML = """
<html><head><title>Shop</title></head><body>
  <input id="q" placeholder="Search">
  <button data-testid="login-btn">Log in</button>
  <ul id="cart"></ul>
</body></html>
"""


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return int(s.getsockname()[1])


def _bridge(port: int, **config: object) -> DebugBridge:
    page = Page(APP_HTML, url="https://shop.test/", viewport=(800, 600))
    cfg = BridgeConfig(url=f"ws://127.0.0.1:{port}/debug", session_id="s1", app_name="shop", app_id="app1", **config)
    return DebugBridge(page, cfg)


def test_end_to_end_handshake_commands_and_telemetry() -> None:
    relay = RelayServer(RelayConfig(host="127.0.0.1", port=_free_port()))
    relay.start()
    connected = threading.Event()
    disconnected = threading.Event()
    bridge = _bridge(
        relay.port,
        app_version="1.2.3",
        get_custom_state=lambda: {"cart": {"items": 0}},
        on_connect=connected.set,
        on_disconnect=disconnected.set,
    )
    agent = AgentClient(f"ws://127.0.0.1:{relay.port}/debug", session_id="s1", agent_id="a1", timeout=5)
    try:
        agent.connect()
        bridge.connect()
        assert bridge.wait_until_open(timeout=5)
        assert connected.wait(5)

        tree = agent.wait_for("ui_tree")
        assert tree is not None
        burst = agent.drain()
        types = [m["type"] for m in burst]
        assert types == ["connection_event", "hello", "capabilities", "dom_snapshot"]
        assert burst[0]["event"] == "app_connected"
        assert burst[0]["appId"] == "app1"

        hello = burst[1]
        assert hello["origin"] == "app"
        assert hello["sessionId"] == "s1"
        assert hello["appName"] == "shop"
        assert hello["appVersion"] == "1.2.3"
        assert hello["url"] == "https://shop.test/"
        assert hello["viewport"] == {"width": 800, "height": 600}
        assert "custom_state" in burst[2]["capabilities"]
        assert "<title>Shop</title>" in burst[3]["html"]
        assert any(i["stableId"] == "login-btn" for i in tree["items"])

        state = agent.wait_for("state_update")
        assert state is not None
        assert state["scope"] == "cart"
        nav = agent.wait_for("navigation")
        assert nav is not None
        assert nav["trigger"] == "initial"

        ok = agent.command("click", target={"stableId": "login-btn"})
        assert ok["success"] is True
        assert ok["origin"] == "app"
        missing = agent.command("click", target={"stableId": "nonexistent"})
        assert missing["success"] is False
        assert missing["error"]["code"] == "TARGET_NOT_FOUND"

        typed = agent.command("type", target={"selector": "#q"}, text="shoes")
        assert typed["result"] == {"value": "shoes"}

        bridge.page.console.warn("low stock", 3)
        console = agent.wait_for("console")
        assert console is not None
        assert console == {**console, "level": "warn", "args": ["low stock", "3"]}

        bridge.page.append_child(bridge.page.get_element_by_id("cart"), "<li>item</li>")
        batch = agent.wait_for("dom_mutations")
        assert batch is not None
        assert any(m["mutationType"] == "childList" for m in batch["mutations"])

        items = agent.refresh_ui_tree()
        assert AgentClient.find(items, "search")["stableId"] == "q"

        assert bridge.status()["state"] == "open"
    finally:
        bridge.disconnect()
        agent.close()
        relay.stop()

    assert bridge.state == ConnectionState.CLOSED
    assert disconnected.is_set()
    # Collectors are unhooked once closed.
    assert "warn" not in vars(bridge.page.console)


def test_send_is_a_no_op_until_open() -> None:
    bridge = _bridge(_free_port())
    bridge.send("console", {"level": "log", "args": ["dropped"]})
    bridge.send_state("cart", {"items": 1})
    assert bridge.state == ConnectionState.DISCONNECTED
    assert bridge.status() == {
        "state": "disconnected",
        "url": bridge.config.url,
        "sessionId": "s1",
        "appId": "app1",
        "attempt": 0,
    }


def test_url_carries_role_session_and_token() -> None:
    bridge = _bridge(4000, token="t0k")
    assert bridge.url == "ws://127.0.0.1:4000/debug?role=app&sessionId=s1&appId=app1&token=t0k"


def test_gives_up_after_max_attempts_with_one_error() -> None:
    errors: list[Exception] = []
    failed = threading.Event()

    def _on_error(exc: Exception) -> None:
        errors.append(exc)
        failed.set()

    bridge = _bridge(
        _free_port(),
        reconnect_base_ms=10,
        reconnect_max_ms=20,
        reconnect_max_attempts=2,
        on_error=_on_error,
    )
    bridge.connect()
    assert failed.wait(5)
    assert bridge.wait_for_state(ConnectionState.DISCONNECTED, timeout=1)
    time.sleep(0.2)

    assert len(errors) == 1
    assert isinstance(errors[0], BridgeConnectionError)
    assert bridge.attempt == 2
    assert "lastError" in bridge.status()


def test_reconnecting_state_then_manual_connect_retries_now() -> None:
    port = _free_port()
    errors: list[Exception] = []
    bridge = _bridge(port, reconnect_base_ms=30_000, on_error=errors.append)
    bridge.connect()
    assert bridge.wait_for_state(ConnectionState.RECONNECTING, timeout=5)
    assert bridge.attempt == 1

    relay = RelayServer(RelayConfig(host="127.0.0.1", port=port))
    relay.start()
    try:
        started = time.time()
        bridge.connect()
        assert bridge.wait_until_open(timeout=5)
        assert time.time() - started < 5
        assert bridge.attempt == 0
    finally:
        bridge.disconnect()
        relay.stop()
    assert bridge.state == ConnectionState.CLOSED
    assert errors == []


def test_relay_restart_triggers_reconnect() -> None:
    port = _free_port()
    relay = RelayServer(RelayConfig(host="127.0.0.1", port=port))
    relay.start()
    dropped = threading.Event()
    bridge = _bridge(port, reconnect_base_ms=50, reconnect_max_ms=100, on_disconnect=dropped.set)
    try:
        bridge.connect()
        assert bridge.wait_until_open(timeout=5)

        relay.stop()
        assert dropped.wait(5)
        assert bridge.wait_for_state(ConnectionState.RECONNECTING, timeout=5)

        relay = RelayServer(RelayConfig(host="127.0.0.1", port=port))
        relay.start()
        assert bridge.wait_until_open(timeout=5)
    finally:
        bridge.disconnect()
        relay.stop()


def test_intentional_disconnect_does_not_reconnect() -> None:
    relay = RelayServer(RelayConfig(host="127.0.0.1", port=_free_port()))
    relay.start()
    bridge = _bridge(relay.port, reconnect_base_ms=10)
    try:
        bridge.connect()
        assert bridge.wait_until_open(timeout=5)
        bridge.disconnect()
        assert bridge.state == ConnectionState.CLOSED
        time.sleep(0.2)
        assert bridge.state == ConnectionState.CLOSED
        deadline = time.time() + 2.0
        while time.time() < deadline and relay.status()["clients"]:
            time.sleep(0.02)
        assert relay.status()["clients"] == 0
    finally:
        relay.stop()


def test_two_agents_each_get_their_own_result() -> None:
    relay = RelayServer(RelayConfig(host="127.0.0.1", port=_free_port()))
    relay.start()
    bridge = _bridge(relay.port)
    url = f"ws://127.0.0.1:{relay.port}/debug"
    a1 = AgentClient(url, session_id="s1", agent_id="a1", timeout=5)
    a2 = AgentClient(url, session_id="s1", agent_id="a2", timeout=5)
    try:
        a1.connect()
        a2.connect()
        bridge.connect()
        assert bridge.wait_until_open(timeout=5)

        miss = a1.command("click", target={"stableId": "nonexistent"})
        hit = a2.command("click", target={"stableId": "login-btn"})
        assert miss["requestId"] != hit["requestId"]
        assert miss["success"] is False
        assert hit["success"] is True

        # Each agent also sees the other's result; it stays buffered, never matched.
        other = a1.wait_for("command_result", lambda m: m.get("requestId") == hit["requestId"])
        assert other is not None
        assert other["success"] is True
    finally:
        bridge.disconnect()
        a1.close()
        a2.close()
        relay.stop()


def test_slow_screenshot_does_not_block_other_commands() -> None:
    release = threading.Event()
    entered = threading.Event()

    def _slow_raster(page: Page, *, selector: str | None, full_page: bool) -> Screenshot:
        entered.set()
        release.wait(5)
        return Screenshot("data:image/png;base64,AAAA", 1, 1)

    relay = RelayServer(RelayConfig(host="127.0.0.1", port=_free_port()))
    relay.start()
    bridge = _bridge(relay.port, rasterizer=_slow_raster)
    agent = AgentClient(f"ws://127.0.0.1:{relay.port}/debug", session_id="s1", timeout=5)
    try:
        agent.connect()
        bridge.connect()
        assert bridge.wait_until_open(timeout=5)

        agent.send("request_screenshot", requestId="shot-1")
        assert entered.wait(5)

        started = time.time()
        focus = agent.command("focus", target={"selector": "#q"}, timeout=3)
        assert focus["success"] is True
        assert time.time() - started < 1.5
        assert not release.is_set()

        release.set()
        shot = agent.wait_for("command_result", lambda m: m.get("requestId") == "shot-1")
        assert shot is not None
        assert shot["result"] == {"captured": True, "width": 1, "height": 1}
    finally:
        release.set()
        bridge.disconnect()
        agent.close()
        relay.stop()


def test_reconnect_waits_out_the_backoff_schedule() -> None:
    listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    listener.bind(("127.0.0.1", 0))
    listener.listen(8)
    listener.settimeout(0.05)
    port = int(listener.getsockname()[1])
    accepted: list[float] = []
    done = threading.Event()

    # Accept and hang up at once: every handshake fails, so each retry counts as an attempt.
    def _serve() -> None:
        while not done.is_set():
            try:
                conn, _ = listener.accept()
            except OSError:
                continue
            accepted.append(time.monotonic())
            conn.close()

    server = threading.Thread(target=_serve, daemon=True)
    server.start()

    failed = threading.Event()
    bridge = _bridge(
        port,
        reconnect_base_ms=100,
        reconnect_max_ms=250,
        reconnect_max_attempts=3,
        on_error=lambda exc: failed.set(),
    )
    try:
        bridge.connect()
        assert failed.wait(10)
    finally:
        done.set()
        server.join(timeout=2)
        listener.close()
        bridge.disconnect()

    assert len(accepted) == 4
    gaps = [b - a for a, b in zip(accepted, accepted[1:])]
    for attempt, gap in enumerate(gaps, start=1):
        expected = bridge.config.reconnect_delay_ms(attempt) / 1000.0
        assert expected * 0.95 <= gap < expected + 1.0
    assert [bridge.config.reconnect_delay_ms(n) for n in (1, 2, 3)] == [100, 200, 250]
