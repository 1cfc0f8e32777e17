from __future__ import annotations

from typing import Any

import pytest

from debug_bridge.page import DomHost, Event, InvalidSelectorError, NetworkError, Page, Request, Response


def _page(html: str, **kw: Any) -> Page:
    return Page(html, url=kw.pop("url", "https://app.test/home"), **kw)


def test_shadow_root_queries_and_event_path() -> None:
    page = _page(
        """
        <div id="host"><template shadowrootmode="open"><button id="inner">Hi</button></template></div>
        <div id="closed"><template shadowrootmode="closed"><button id="secret">No</button></template></div>
        """
    )
    host = page.get_element_by_id("host")
    assert host is not None
    assert page.query("#inner") is None
    inner = page.query_deep("#inner")
    assert inner is not None
    assert page.shadow_root(host) is not None
    assert page.query_deep("#secret") is None
    assert page.is_connected(inner)
    assert page.composed_parent(inner) is host

    seen: list[str] = []
    page.add_event_listener("click", lambda ev: seen.append("host"), host)
    page.add_event_listener("click", lambda ev: seen.append("window"))
    page.click(inner)
    assert seen == ["host", "window"]


def test_listener_errors_become_window_error_events() -> None:
    page = _page('<button id="b">x</button>')
    btn = page.get_element_by_id("b")
    errors: list[Event] = []

    def _boom(_ev: Event) -> None:
        raise RuntimeError("listener exploded")

    page.add_event_listener("click", _boom, btn)
    page.add_event_listener("error", errors.append)
    page.click(btn)
    assert len(errors) == 1
    assert "listener exploded" in errors[0].detail["message"]
    assert errors[0].detail["lineno"] is not None


def test_mutation_observer_sees_helpers() -> None:
    page = _page('<ul id="list"></ul>')
    records: list[Any] = []
    handle = page.observe(records.extend)
    ul = page.get_element_by_id("list")
    page.append_child(ul, "<li>one</li><li>two</li>")
    page.set_attribute(ul, "class", "full")
    page.remove_node(ul.find("li"))
    handle.disconnect()
    page.set_attribute(ul, "class", "ignored")

    assert [r.type for r in records] == ["childList", "attributes", "childList"]
    assert len(records[0].added_nodes) == 2
    assert records[1].attribute_name == "class"


def test_form_state_is_separate_from_attributes() -> None:
    page = _page(
        """
        <input id="name" value="initial">
        <input id="agree" type="checkbox">
        <input type="radio" name="size" id="s" checked><input type="radio" name="size" id="l">
        <select id="color"><option value="r">Red</option><option value="g" selected>Green</option></select>
        """
    )
    name = page.get_element_by_id("name")
    page.set_value(name, "typed")
    assert page.get_value(name) == "typed"
    assert name.get("value") == "initial"

    agree = page.get_element_by_id("agree")
    page.click(agree)
    assert page.get_checked(agree) is True
    assert not agree.has_attr("checked")

    small, large = page.get_element_by_id("s"), page.get_element_by_id("l")
    page.click(large)
    assert page.get_checked(large) is True
    assert page.get_checked(small) is False

    color = page.get_element_by_id("color")
    assert page.get_value(color) == "g"
    assert page.select_option(color, label="Red") is not None
    assert page.get_value(color) == "r"
    assert page.selected_index(color) == 0


def test_visibility_model() -> None:
    page = _page(
        """
        <div style="display: none"><button id="a">A</button></div>
        <div style="visibility:hidden"><button id="b">B</button></div>
        <button id="c" hidden>C</button>
        <button id="d">D</button>
        <input id="e" type="hidden">
        """
    )
    visible = {el_id: page.is_visible(page.get_element_by_id(el_id)) for el_id in "abcde"}
    assert visible == {"a": False, "b": False, "c": False, "d": True, "e": False}


def test_invalid_selector_raises() -> None:
    page = _page("<div></div>")
    with pytest.raises(InvalidSelectorError):
        page.query("div[")
    with pytest.raises(InvalidSelectorError):
        page.query_deep("")


def test_navigation_history_and_hashchange() -> None:
    loaded: list[str] = []
    page = _page("<a id='l' href='/about'>About</a>", navigation_handler=loaded.append)
    events: list[str] = []
    page.add_event_listener("hashchange", lambda ev: events.append("hashchange"))
    page.add_event_listener("popstate", lambda ev: events.append("popstate"))

    page.click(page.get_element_by_id("l"))
    assert loaded == ["https://app.test/about"]
    assert page.location.pathname == "/about"

    page.navigate("#team")
    assert events == ["hashchange"]
    assert loaded == ["https://app.test/about"]

    page.history.back()
    assert page.location.href == "https://app.test/about"
    assert events == ["hashchange", "popstate", "hashchange"]

    page.history.push_state({"tab": 2}, "", "/settings?tab=2")
    assert page.location.search == "?tab=2"
    assert page.history.state == {"tab": 2}


def test_form_submit_navigates_to_action() -> None:
    loaded: list[str] = []
    page = _page("<form action='/login'><button id='go'>Go</button></form>", navigation_handler=loaded.append)
    submits: list[Event] = []
    page.add_event_listener("submit", submits.append)
    page.click(page.get_element_by_id("go"))
    assert len(submits) == 1
    assert loaded == ["https://app.test/login"]


def test_cookies_and_storage() -> None:
    page = _page("")
    page.cookie = "sid=abc; path=/"
    page.cookie = "theme=dark"
    assert page.cookie == "sid=abc; theme=dark"
    page.cookie = "sid=; max-age=0"
    assert page.cookie == "theme=dark"

    page.local_storage.set_item("k", 1)
    assert page.local_storage.get_item("k") == "1"
    assert page.local_storage.key(0) == "k"
    page.local_storage.clear()
    assert page.local_storage.length == 0


def test_fetch_and_xhr_use_transport() -> None:
    seen: list[Request] = []

    def transport(req: Request) -> Response:
        seen.append(req)
        if req.url.endswith("/down"):
            raise NetworkError("connection refused")
        return Response(req.url, 201, "Created", {"Content-Type": "application/json"}, b'{"ok": true}')

    page = _page("", fetch_transport=transport)
    resp = page.fetch("/api/items", method="post", body={"a": 1})
    assert resp.ok
    assert resp.json() == {"ok": True}
    assert seen[0].url == "https://app.test/api/items"
    assert seen[0].method == "POST"
    assert seen[0].headers["Content-Type"] == "application/json"

    xhr = page.XMLHttpRequest()
    fired: list[str] = []
    xhr.add_event_listener("error", lambda x: fired.append("error"))
    xhr.add_event_listener("loadend", lambda x: fired.append("loadend"))
    xhr.open("GET", "/down")
    xhr.send()
    assert xhr.status == 0
    assert fired == ["error", "loadend"]


def test_load_replaces_document_but_keeps_window_listeners() -> None:
    page = _page("<title>One</title><button id='x'>x</button>")
    hits: list[str] = []
    page.add_event_listener("scroll", lambda ev: hits.append("scroll"))
    page.load("<title>Two</title>", url="/next")
    assert page.title == "Two"
    assert page.location.href == "https://app.test/next"
    assert page.get_element_by_id("x") is None
    page.scroll_to(0, 250)
    assert hits == ["scroll"]
    assert page.viewport.scroll_y == 250


def test_dom_host_needs_a_window_layer() -> None:
    with pytest.raises(TypeError):
        DomHost("<p>x</p>")  # type: ignore[abstract]
    page = _page("<p>x</p>")
    with page.lock, page.lock:
        page.set_attribute(page.query("p"), "data-x", "1")
    assert page.query("p")["data-x"] == "1"
