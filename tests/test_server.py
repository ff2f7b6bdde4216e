from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any

from dev_servers.hotpatch.config import HotpatchConfig
from dev_servers.hotpatch.errors import CdpTransportError
from dev_servers.hotpatch.registry import NOT_FOUND
from dev_servers.hotpatch.server import DOM_TRACE_EVENTS, HotpatchServer
from dev_servers.hotpatch.session_cdp import CdpSession
from dev_servers.hotpatch.watcher import WatchHandle

BASE = "http://localhost:8080/"


class FakeWebSocket:
    def __init__(self) -> None:
        self.sent: list[dict[str, Any]] = []
        self._incoming: asyncio.Queue = asyncio.Queue()

    async def send(self, data: str) -> None:
        msg = json.loads(data)
        self.sent.append(msg)
        self.feed({"id": msg["id"], "result": {}})

    def feed(self, message: dict[str, Any]) -> None:
        self._incoming.put_nowait(json.dumps(message))

    def __aiter__(self) -> FakeWebSocket:
        return self

    async def __anext__(self) -> str:
        item = await self._incoming.get()
        if item is None:
            raise StopAsyncIteration
        if isinstance(item, Exception):
            raise item
        return item

    async def close(self) -> None:
        self._incoming.put_nowait(None)


class FakeWatcher:
    def __init__(self) -> None:
        self.handles: list[WatchHandle] = []
        self.closed = False

    def watch(self, path: str, callback) -> WatchHandle:  # noqa: ANN001
        handle = WatchHandle(self, path, callback)  # type: ignore[arg-type]
        self.handles.append(handle)
        return handle

    def unwatch(self, handle: WatchHandle) -> None:
        handle.active = False

    def close(self) -> None:
        self.closed = True


class FakeLauncher:
    def __init__(self) -> None:
        self.stopped = False

    def stop(self) -> bool:
        self.stopped = True
        return True


async def _settle() -> None:
    for _ in range(10):
        await asyncio.sleep(0)


def _server(tmp_path: Path, **overrides: Any) -> tuple[HotpatchServer, FakeWatcher, FakeLauncher]:
    config = HotpatchConfig(root_dir=str(tmp_path), base_url=BASE, **overrides)
    watcher = FakeWatcher()
    launcher = FakeLauncher()
    return HotpatchServer(config, launcher=launcher, watcher=watcher), watcher, launcher  # type: ignore[arg-type]


def test_start_enables_domains_then_fetch(tmp_path: Path) -> None:
    async def _run() -> None:
        server, _watcher, _launcher = _server(tmp_path)
        ws = FakeWebSocket()
        session = CdpSession(ws, timeout=1.0)
        session.start()
        await server.start(session)
        await server.open_page()

        methods = [m["method"] for m in ws.sent]
        assert methods == [
            "Debugger.enable",
            "DOM.enable",
            "Page.enable",
            "CSS.enable",
            "Runtime.enable",
            "Fetch.enable",
            "Page.bringToFront",
            "Page.navigate",
        ]
        assert ws.sent[-1]["params"] == {"url": BASE}
        await server.close()

    asyncio.run(_run())


def test_parse_events_populate_registry(tmp_path: Path) -> None:
    async def _run() -> None:
        server, _watcher, _launcher = _server(tmp_path)
        ws = FakeWebSocket()
        session = CdpSession(ws, timeout=1.0)
        session.start()
        await server.start(session)

        ws.feed({"method": "Debugger.scriptParsed", "params": {"url": BASE + "main.js", "scriptId": "42", "executionContextId": 7}})
        ws.feed({"method": "CSS.styleSheetAdded", "params": {"header": {"sourceURL": BASE + "app.css", "styleSheetId": "3.1"}}})
        await _settle()

        registry = server.state.registry
        assert registry.lookup_script(BASE + "main.js").script_id == "42"
        assert registry.lookup_stylesheet(BASE + "app.css").stylesheet_id == "3.1"
        await server.close()

    asyncio.run(_run())


def test_navigation_invalidates_identities_and_rearms_on_load(tmp_path: Path) -> None:
    css = tmp_path / "app.css"
    css.write_text("a {}")

    async def _run() -> None:
        server, watcher, _launcher = _server(tmp_path)
        ws = FakeWebSocket()
        session = CdpSession(ws, timeout=1.0)
        session.start()
        await server.start(session)
        assert server.dispatcher is not None

        server.dispatcher.watch(BASE + "app.css", str(css), "text/css")
        ws.feed({"method": "CSS.styleSheetAdded", "params": {"header": {"sourceURL": BASE + "app.css", "styleSheetId": "3.1"}}})
        await _settle()
        generation = server.state.generation

        ws.feed({"method": "Runtime.executionContextsCleared", "params": {}})
        await _settle()
        assert server.state.generation == generation + 1
        assert server.state.registry.lookup_stylesheet(BASE + "app.css") is NOT_FOUND
        assert not server.state.bindings[BASE + "app.css"].active

        ws.feed({"method": "CSS.styleSheetAdded", "params": {"header": {"sourceURL": BASE + "app.css", "styleSheetId": "8.1"}}})
        ws.feed({"method": "Page.loadEventFired", "params": {"timestamp": 2.0}})
        await _settle()
        assert server.state.bindings[BASE + "app.css"].active
        assert len([h for h in watcher.handles if h.active]) == 1
        assert server.state.registry.lookup_stylesheet(BASE + "app.css").stylesheet_id == "8.1"
        await server.close()

    asyncio.run(_run())


def test_browser_going_away_ends_run_with_failure(tmp_path: Path) -> None:
    async def _run() -> int:
        server, watcher, launcher = _server(tmp_path)
        ws = FakeWebSocket()
        session = CdpSession(ws, timeout=1.0)
        session.start()

        async def _connect() -> CdpSession:
            return session

        server._connect = _connect  # type: ignore[method-assign]
        run = asyncio.ensure_future(server.run())
        while not any(m["method"] == "Page.navigate" for m in ws.sent):
            await asyncio.sleep(0.01)
        await _settle()
        ws._incoming.put_nowait(ConnectionResetError("browser closed"))
        code = await asyncio.wait_for(run, timeout=2.0)
        assert watcher.closed
        assert launcher.stopped
        return code

    assert asyncio.run(_run()) == 1


def test_verbose_subscribes_dom_trace(tmp_path: Path) -> None:
    async def _run() -> None:
        server, _watcher, _launcher = _server(tmp_path, verbose=True)
        session = CdpSession(FakeWebSocket(), timeout=1.0)
        session.start()
        await server.start(session)
        for name in DOM_TRACE_EVENTS:
            assert session._handlers.get(name)
        await server.close()

    asyncio.run(_run())


def test_transport_error_closes_session_with_tracked_task(tmp_path: Path) -> None:
    async def _run() -> None:
        server, _watcher, _launcher = _server(tmp_path)
        session = CdpSession(FakeWebSocket(), timeout=1.0)
        session.start()
        await server.start(session)

        server._on_transport_error(CdpTransportError("socket reset"))
        assert len(server._tasks) == 1
        await asyncio.wait_for(session.wait_closed(), timeout=1.0)
        await _settle()
        assert server._tasks == set()
        assert isinstance(server._transport_error, CdpTransportError)
        await server.close()

    asyncio.run(_run())
