"""HotpatchServer: wires launcher, CDP session, registry, interceptor and dispatcher.

Lifecycle of the one managed page:
- Runtime.executionContextsCleared (navigation/reload): new session
  generation (old identities go stale) and watches are suspended.
- Page.loadEventFired: suspended watches are re-armed.
- Transport loss: state is reset and `run()` returns a failure exit code.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from .config import HotpatchConfig
from .dispatch import ChangeDispatcher
from .errors import CdpTransportError
from .http_client import HttpClientError
from .interceptor import RequestInterceptor
from .launcher import BrowserLauncher
from .session_cdp import CdpSession
from .state import SessionState
from .watcher import FileWatchService

logger = logging.getLogger("hotpatch.server")

ENABLED_DOMAINS = ("Debugger", "DOM", "Page", "CSS", "Runtime")

DOM_TRACE_EVENTS = (
    "DOM.attributeModified",
    "DOM.attributeRemoved",
    "DOM.characterDataModified",
    "DOM.childNodeCountUpdated",
    "DOM.childNodeInserted",
    "DOM.childNodeRemoved",
    "DOM.distributedNodesUpdated",
    "DOM.inlineStyleInvalidated",
    "DOM.pseudoElementAdded",
    "DOM.pseudoElementRemoved",
    "DOM.setChildNodes",
    "DOM.shadowRootPopped",
    "DOM.shadowRootPushed",
    "DOM.documentUpdated",
    "DOM.topLayerElementUpdated",
)


class HotpatchServer:
    def __init__(
        self,
        config: HotpatchConfig,
        *,
        launcher: BrowserLauncher | None = None,
        watcher: FileWatchService | None = None,
    ) -> None:
        self.config = config
        self.launcher = launcher or BrowserLauncher(config)
        self.watcher = watcher
        self.state = SessionState()
        self.session: CdpSession | None = None
        self.dispatcher: ChangeDispatcher | None = None
        self.interceptor: RequestInterceptor | None = None
        self._closing = False
        self._transport_error: BaseException | None = None
        self._tasks: set[asyncio.Task] = set()

    async def _connect(self) -> CdpSession:
        result = await asyncio.to_thread(self.launcher.ensure_running)
        logger.info("%s", result.message)
        if not result.started and not self.launcher.cdp_ready():
            raise HttpClientError(result.message)
        ws_url = await asyncio.to_thread(self.launcher.page_ws_url)
        return await CdpSession.connect(ws_url, timeout=self.config.command_timeout)

    async def start(self, session: CdpSession | None = None) -> None:
        if session is None:
            session = await self._connect()
        self.session = session
        session.on_disconnect(self._on_disconnect)

        if self.watcher is None:
            self.watcher = FileWatchService()
        self.dispatcher = ChangeDispatcher(
            self.state, session, self.watcher, on_transport_error=self._on_transport_error
        )

        # Subscribe before enabling: enabling replays already-parsed scripts/sheets.
        self.state.registry.attach(session)
        session.on("Runtime.executionContextsCleared", self._on_contexts_cleared)
        session.on("Page.loadEventFired", self._on_load)
        if self.config.verbose:
            for name in DOM_TRACE_EVENTS:
                session.on(name, lambda params, name=name: logger.debug("%s %s", name, params))

        for domain in ENABLED_DOMAINS:
            await session.send(f"{domain}.enable")

        self.interceptor = RequestInterceptor(
            session, self.dispatcher, root_dir=self.config.root_dir, base_url=self.config.base_url
        )
        await self.interceptor.enable()

    async def open_page(self) -> None:
        assert self.session is not None
        await self.session.send("Page.bringToFront")
        logger.info("opening %s (serving %s)", self.config.base_url, self.config.root_dir)
        result = await self.session.send("Page.navigate", {"url": self.config.base_url})
        if result.get("errorText"):
            logger.warning("navigation failed: %s", result["errorText"])

    async def run(self) -> int:
        """Serve until the browser goes away. Returns a process exit code."""
        try:
            await self.start()
            await self.open_page()
            assert self.session is not None
            await self.session.wait_closed()
        finally:
            await self.close()
        if self._transport_error is not None:
            logger.error("session lost: %s", self._transport_error)
            return 1
        return 0

    # ─────────────────────────────────────────────────────────────────────────
    # Page lifecycle
    # ─────────────────────────────────────────────────────────────────────────

    def _on_contexts_cleared(self, _params: dict[str, Any]) -> None:
        self.state.advance_generation("navigation")
        if self.dispatcher is not None:
            self.dispatcher.suspend()

    def _on_load(self, _params: dict[str, Any]) -> None:
        if self.dispatcher is not None:
            self.dispatcher.rearm()

    def _on_transport_error(self, exc: CdpTransportError) -> None:
        if self._transport_error is None:
            self._transport_error = exc
        if self.session is not None and not self.session.closed:
            task = asyncio.get_running_loop().create_task(self.session.close())
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    def _on_disconnect(self, reason: BaseException | None) -> None:
        if not self._closing and self._transport_error is None:
            self._transport_error = reason or CdpTransportError("browser closed the debugging connection")
        self.state.advance_generation("disconnect")
        self.state.registry.detach()
        if self.dispatcher is not None:
            self.dispatcher.suspend()

    async def close(self) -> None:
        if self._closing:
            return
        self._closing = True
        if self.interceptor is not None:
            self.interceptor.disable()
        if self.dispatcher is not None:
            await self.dispatcher.close()
        if self.watcher is not None:
            await asyncio.to_thread(self.watcher.close)
        if self.session is not None:
            await self.session.close()
        await asyncio.to_thread(self.launcher.stop)


__all__ = ["DOM_TRACE_EVENTS", "ENABLED_DOMAINS", "HotpatchServer"]
