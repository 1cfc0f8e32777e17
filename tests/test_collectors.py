from __future__ import annotations

import threading
import time
from typing import Any

from debug_bridge.page import FormData, NetworkError, Page, Request, Response
from debug_bridge.page.window import Console
from debug_bridge.telemetry import ConsoleHook, DomObserver, ErrorHook, NavigationHook, NetworkHook
from debug_bridge.telemetry.console_hook import stringify_arg
from debug_bridge.telemetry.network_hook import request_body_summary, response_body_summary, safe_headers


class _Sink:
    def __init__(self) -> None:
        self.items: list[tuple[str, dict[str, Any]]] = []
        self.event = threading.Event()

    def __call__(self, msg_type: str, payload: dict[str, Any]) -> None:
        self.items.append((msg_type, payload))
        self.event.set()

    def of_type(self, msg_type: str) -> list[dict[str, Any]]:
        return [p for t, p in self.items if t == msg_type]


# ─────────────────────────────────────────────────────────────────────────────
# DOM mutations
# ─────────────────────────────────────────────────────────────────────────────


def test_dom_mutations_are_batched() -> None:
    page = Page('<ul id="list"></ul>')
    sink = _Sink()
    observer = DomObserver(page, sink, batch_ms=300)
    observer.start()
    try:
        ul = page.get_element_by_id("list")
        for i in range(25):
            page.append_child(ul, f"<li>{i}</li>")
        page.set_attribute(ul, "data-debug-bridge-id", "list")
        assert sink.event.wait(2.0)
        time.sleep(0.4)
    finally:
        observer.stop()

    batches = sink.of_type("dom_mutations")
    assert len(batches) == 1
    mutations = batches[0]["mutations"]
    assert len(mutations) == 25
    assert mutations[0]["mutationType"] == "childList"
    assert mutations[0]["targetSelector"] == "#list"
    assert mutations[0]["addedNodes"] == [{"type": "element", "tagName": "li", "html": "<li>0</li>"}]
    assert batches[0]["batchId"].startswith("batch-1-")
    assert "droppedCount" not in batches[0]


def test_dom_mutation_cap_reports_dropped_count() -> None:
    page = Page("<div id='box'></div>")
    sink = _Sink()
    observer = DomObserver(page, sink, batch_ms=10_000, max_mutations=3)
    observer.start()
    box = page.get_element_by_id("box")
    for i in range(5):
        page.set_attribute(box, "data-n", i)
    observer.flush()
    observer.stop()

    batch = sink.of_type("dom_mutations")[0]
    assert len(batch["mutations"]) == 3
    assert batch["mutations"][0]["attributeName"] == "data-n"
    assert batch["droppedCount"] == 2

    # Stopped: nothing more is observed.
    page.set_attribute(box, "data-n", "late")
    observer.flush()
    assert len(sink.of_type("dom_mutations")) == 1


# ─────────────────────────────────────────────────────────────────────────────
# Console
# ─────────────────────────────────────────────────────────────────────────────


def test_console_hook_forwards_and_restores() -> None:
    console = Console()
    original_log = console.log
    sink = _Sink()
    hook = ConsoleHook(console, sink, max_args=2, max_arg_length=5)
    hook.start()
    console.log("hello world", {"a": 1}, "dropped")
    console.error(ValueError("bad"))
    hook.stop()
    console.warn("after stop")

    msgs = sink.of_type("console")
    assert msgs[0] == {"level": "log", "args": ["hello...", '{"a":...']}
    assert msgs[1] == {"level": "error", "args": ["Value..."]}
    assert len(msgs) == 2
    assert "log" not in vars(console)
    assert console.log == original_log


def test_console_hook_restores_instance_override() -> None:
    console = Console()
    calls: list[tuple[Any, ...]] = []
    console.info = lambda *a: calls.append(a)  # type: ignore[method-assign]
    patched = console.info
    hook = ConsoleHook(console, _Sink())
    hook.start()
    console.info("x")
    hook.stop()
    assert console.info is patched
    assert calls == [("x",)]


def test_console_emit_failure_does_not_break_original() -> None:
    console = Console()
    seen: list[str] = []
    console.debug = lambda *a: seen.append("orig")  # type: ignore[method-assign]

    def _broken(msg_type: str, payload: dict[str, Any]) -> None:
        raise RuntimeError("socket gone")

    hook = ConsoleHook(console, _broken)
    hook.start()
    console.debug("still works")
    hook.stop()
    assert seen == ["orig"]


def test_stringify_arg() -> None:
    assert stringify_arg("abc", 10) == "abc"
    assert stringify_arg([1, 2], 10) == "[1, 2]"
    assert stringify_arg(object.__new__(object), 1000).startswith("<object")
    assert stringify_arg("x" * 12, 10) == "x" * 10 + "..."


# ─────────────────────────────────────────────────────────────────────────────
# Errors
# ─────────────────────────────────────────────────────────────────────────────


def test_error_hook_runtime_and_rejection() -> None:
    page = Page('<button id="b">b</button>')
    sink = _Sink()
    hook = ErrorHook(page, sink)
    hook.start()

    def _boom(_ev: Any) -> None:
        raise TypeError("undefined is not a function")

    page.add_event_listener("click", _boom, page.get_element_by_id("b"))
    page.click(page.get_element_by_id("b"))
    page.report_error(message="Script error.", filename="app.js", lineno=10, colno=4)
    page.report_unhandled_rejection("nope")
    hook.stop()
    page.report_unhandled_rejection("after stop")

    errors = sink.of_type("error")
    assert len(errors) == 3
    assert errors[0]["errorType"] == "runtime"
    assert errors[0]["message"] == "TypeError: undefined is not a function"
    assert "Traceback" in errors[0]["stack"]
    assert errors[1] == {
        "errorType": "runtime",
        "message": "Script error.",
        "filename": "app.js",
        "lineno": 10,
        "colno": 4,
    }
    assert errors[2] == {"errorType": "unhandledrejection", "message": "nope"}


# ─────────────────────────────────────────────────────────────────────────────
# Network
# ─────────────────────────────────────────────────────────────────────────────


def _transport(req: Request) -> Response:
    if "fail" in req.url:
        raise NetworkError("connection reset")
    if req.url.endswith(".png"):
        return Response(req.url, 200, "OK", {"Content-Type": "image/png"}, b"\x89PNG....")
    return Response(req.url, 404, "Not Found", {"Content-Type": "text/plain", "Set-Cookie": "x=1"}, b"missing")


def test_network_hook_fetch_and_restore() -> None:
    page = Page("", url="https://app.test/", fetch_transport=_transport)
    sink = _Sink()
    hook = NetworkHook(page, sink, max_body_size=8, bridge_url="ws://localhost:4000/debug")
    hook.start()

    page.fetch("/api/x", method="post", headers={"Authorization": "Bearer s3cret", "X-Trace": "1"}, body={"q": "long"})
    page.fetch("/logo.png")
    try:
        page.fetch("/fail")
    except NetworkError:
        pass
    else:
        raise AssertionError("fetch failure must propagate")
    page.fetch("http://localhost:4000/debug/health")
    hook.stop()
    page.fetch("/after-stop")

    reqs = sink.of_type("network_request")
    resps = sink.of_type("network_response")
    assert len(reqs) == 3
    assert len(resps) == 3
    assert reqs[0]["method"] == "POST"
    assert reqs[0]["url"] == "https://app.test/api/x"
    assert reqs[0]["headers"] == {"X-Trace": "1"}
    assert reqs[0]["body"].startswith('{"q": "l')
    assert "[truncated" in reqs[0]["body"]
    assert reqs[0]["initiator"] == "fetch"
    assert resps[0]["requestId"] == reqs[0]["requestId"]
    assert resps[0]["status"] == 404
    assert resps[0]["ok"] is False
    assert resps[0]["headers"] == {"Content-Type": "text/plain"}
    assert resps[0]["body"] == "missing"
    assert resps[1]["body"] == "[image/png: 8 bytes]"
    assert resps[2]["status"] == 0
    assert resps[2]["error"] == "connection reset"
    assert "fetch" not in vars(page)


def test_network_hook_xhr_and_filter() -> None:
    page = Page("", url="https://app.test/", fetch_transport=_transport)
    sink = _Sink()
    hook = NetworkHook(page, sink, url_filter=lambda url: "skip" not in url)
    original_send = page.XMLHttpRequest.__dict__.get("send")
    hook.start()

    xhr = page.XMLHttpRequest()
    xhr.open("GET", "/items")
    xhr.set_request_header("Cookie", "sid=1")
    xhr.send()

    skipped = page.XMLHttpRequest()
    skipped.open("GET", "/skip-me")
    skipped.send()
    hook.stop()

    reqs = sink.of_type("network_request")
    resps = sink.of_type("network_response")
    assert len(reqs) == 1
    assert reqs[0]["initiator"] == "xhr"
    assert reqs[0]["headers"] == {}
    assert resps[0]["status"] == 404
    assert resps[0]["requestId"] == reqs[0]["requestId"]
    assert page.XMLHttpRequest.__dict__.get("send") is original_send
    assert "open" not in page.XMLHttpRequest.__dict__


def test_body_summaries() -> None:
    assert request_body_summary(FormData(a="1"), 100) == "[FormData]"
    assert request_body_summary(b"\x00\x01", 100) == "[Binary data: 2 bytes]"
    assert request_body_summary(None, 100) is None
    assert response_body_summary(b'{"a":1}', {"content-type": "application/json; charset=utf-8"}, 100) == '{"a":1}'
    assert safe_headers({"Proxy-Authorization": "x", "Accept": "*/*"}) == {"Accept": "*/*"}
    assert safe_headers(
        {
            "X-Authorization": "Bearer s3cret",
            "X-Api-Cookie": "sid=1",
            "X-Set-Cookie-Token": "s",
            "X-Api-Key": "k",
            "X-Session-Id": "abc",
            "X-Request-Id": "r1",
        }
    ) == {"X-Request-Id": "r1"}


def test_network_hook_redacts_custom_credential_headers() -> None:
    def _echo(req: Request) -> Response:
        return Response(req.url, 200, "OK", {"X-Set-Cookie-Token": "s", "Content-Type": "text/plain"}, b"ok")

    page = Page("", url="https://app.test/", fetch_transport=_echo)
    sink = _Sink()
    hook = NetworkHook(page, sink)
    hook.start()
    page.fetch("/api", headers={"X-Authorization": "Bearer s3cret", "X-Api-Cookie": "sid=1", "Accept": "*/*"})
    hook.stop()

    assert sink.of_type("network_request")[0]["headers"] == {"Accept": "*/*"}
    assert sink.of_type("network_response")[0]["headers"] == {"Content-Type": "text/plain"}


# ─────────────────────────────────────────────────────────────────────────────
# Navigation
# ─────────────────────────────────────────────────────────────────────────────


def test_navigation_hook_triggers_and_restore() -> None:
    page = Page("", url="https://app.test/")
    sink = _Sink()
    hook = NavigationHook(page, sink)
    hook.start()

    page.history.push_state(None, "", "/a")
    page.history.replace_state(None, "", "/b")
    page.history.replace_state(None, "", "/b")
    page.navigate("#frag")
    page.history.back()
    hook.stop()
    page.history.push_state(None, "", "/after")

    navs = sink.of_type("navigation")
    assert [n["trigger"] for n in navs] == ["initial", "pushstate", "replacestate", "hashchange", "popstate"]
    assert navs[0] == {"url": "https://app.test/", "trigger": "initial"}
    assert navs[1]["previousUrl"] == "https://app.test/"
    assert navs[3]["url"] == "https://app.test/b#frag"
    assert navs[4]["url"] == "https://app.test/b"
    assert "push_state" not in vars(page.history)
