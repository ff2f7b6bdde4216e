from __future__ import annotations

import asyncio
import base64
from pathlib import Path
from typing import Any

from dev_servers.hotpatch.dispatch import ChangeDispatcher, content_hash
from dev_servers.hotpatch.errors import CdpCommandError
from dev_servers.hotpatch.interceptor import RequestInterceptor
from dev_servers.hotpatch.state import SessionState
from dev_servers.hotpatch.watcher import WatchHandle

BASE = "http://localhost:8080/"


class FakeWatcher:
    def __init__(self) -> None:
        self.paths: list[str] = []

    def watch(self, path: str, callback) -> WatchHandle:  # noqa: ANN001
        self.paths.append(path)
        return WatchHandle(self, path, callback)  # type: ignore[arg-type]

    def unwatch(self, handle: WatchHandle) -> None:
        handle.active = False


class DummyConn:
    def __init__(self, errors: dict[str, Exception] | None = None) -> None:
        self.calls: list[tuple[str, dict[str, Any] | None]] = []
        self.handlers: dict[str, Any] = {}
        self.errors = errors or {}

    async def send(self, method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        self.calls.append((method, params))
        if method in self.errors:
            raise self.errors[method]
        return {}

    def on(self, event_name: str, handler):  # noqa: ANN001, ANN201
        self.handlers[event_name] = handler
        return lambda: self.handlers.pop(event_name, None)


def _paused(url: str, method: str = "GET", request_id: str = "r1") -> dict[str, Any]:
    return {"requestId": request_id, "request": {"url": url, "method": method}}


def _setup(tmp_path: Path, conn: DummyConn) -> tuple[RequestInterceptor, SessionState, FakeWatcher]:
    state = SessionState()
    watcher = FakeWatcher()
    dispatcher = ChangeDispatcher(state, conn, watcher)  # type: ignore[arg-type]
    interceptor = RequestInterceptor(conn, dispatcher, root_dir=str(tmp_path), base_url=BASE)  # type: ignore[arg-type]
    return interceptor, state, watcher


def test_enable_subscribes_and_enables_fetch(tmp_path: Path) -> None:
    conn = DummyConn()
    interceptor, _state, _watcher = _setup(tmp_path, conn)
    asyncio.run(interceptor.enable())

    assert "Fetch.requestPaused" in conn.handlers
    assert conn.calls == [
        ("Fetch.enable", {"patterns": [{"urlPattern": BASE + "*", "requestStage": "Request"}]}),
    ]
    interceptor.disable()
    assert conn.handlers == {}


def test_serves_stylesheet_and_starts_watch(tmp_path: Path) -> None:
    (tmp_path / "app.css").write_text("a { color: red; }")
    conn = DummyConn()
    interceptor, state, watcher = _setup(tmp_path, conn)

    asyncio.run(interceptor.on_request_paused(_paused(BASE + "app.css")))

    method, params = conn.calls[0]
    assert method == "Fetch.fulfillRequest"
    assert params is not None
    assert params["responseCode"] == 200
    assert params["responseHeaders"] == [{"name": "Content-Type", "value": "text/css"}]
    assert base64.b64decode(params["body"]) == b"a { color: red; }"

    resource = state.resources[BASE + "app.css"]
    assert resource.kind == "stylesheet"
    assert resource.content_hash == content_hash(b"a { color: red; }")
    assert watcher.paths == [str((tmp_path / "app.css").resolve())]


def test_unpatchable_resource_is_served_but_not_watched(tmp_path: Path) -> None:
    (tmp_path / "logo.png").write_bytes(b"\x89PNG\r\n")
    conn = DummyConn()
    interceptor, state, watcher = _setup(tmp_path, conn)

    asyncio.run(interceptor.on_request_paused(_paused(BASE + "logo.png")))

    assert conn.calls[0][0] == "Fetch.fulfillRequest"
    assert state.resources[BASE + "logo.png"].kind == "other"
    assert state.bindings == {}
    assert watcher.paths == []


def test_missing_file_gets_404(tmp_path: Path) -> None:
    conn = DummyConn()
    interceptor, state, _watcher = _setup(tmp_path, conn)
    asyncio.run(interceptor.on_request_paused(_paused(BASE + "missing.js")))
    assert conn.calls == [("Fetch.fulfillRequest", {"requestId": "r1", "responseCode": 404, "responseHeaders": []})]
    assert state.resources == {}


def test_foreign_and_non_get_requests_continue(tmp_path: Path) -> None:
    (tmp_path / "api").write_text("{}")
    conn = DummyConn()
    interceptor, _state, _watcher = _setup(tmp_path, conn)

    async def _run() -> None:
        await interceptor.on_request_paused(_paused("https://cdn.example.com/lib.js", request_id="a"))
        await interceptor.on_request_paused(_paused(BASE + "api", method="POST", request_id="b"))

    asyncio.run(_run())
    assert conn.calls == [
        ("Fetch.continueRequest", {"requestId": "a"}),
        ("Fetch.continueRequest", {"requestId": "b"}),
    ]


def test_cancelled_request_does_not_watch(tmp_path: Path) -> None:
    (tmp_path / "app.css").write_text("a {}")
    conn = DummyConn(errors={"Fetch.fulfillRequest": CdpCommandError("Fetch.fulfillRequest", {"message": "Invalid InterceptionId."})})
    interceptor, state, watcher = _setup(tmp_path, conn)

    asyncio.run(interceptor.on_request_paused(_paused(BASE + "app.css")))
    assert state.bindings == {}
    assert watcher.paths == []


def test_unreadable_file_still_answers_request(tmp_path: Path, monkeypatch) -> None:  # noqa: ANN001
    (tmp_path / "app.css").write_text("a {}")
    conn = DummyConn()
    interceptor, state, watcher = _setup(tmp_path, conn)

    def _denied(self: Path) -> bytes:
        raise PermissionError(13, "Permission denied", str(self))

    monkeypatch.setattr(Path, "read_bytes", _denied)
    asyncio.run(interceptor.on_request_paused(_paused(BASE + "app.css")))

    assert conn.calls == [("Fetch.fulfillRequest", {"requestId": "r1", "responseCode": 500, "responseHeaders": []})]
    assert state.resources == {}
    assert watcher.paths == []
