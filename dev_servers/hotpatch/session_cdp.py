"""Async CDP session bridge.

One CdpSession per page target. It owns the WebSocket, correlates command
responses by id and fans events out to subscribers. Every other component
talks to the browser through `send()` and `on()`.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from collections.abc import Callable
from typing import Any

from .errors import CdpCommandError, CdpTimeoutError, CdpTransportError

logger = logging.getLogger("hotpatch.cdp")

EventHandler = Callable[[dict[str, Any]], Any]


def _import_websockets():
    try:
        import websockets  # type: ignore[import-not-found]

        return websockets
    except Exception as exc:  # noqa: BLE001
        raise RuntimeError(
            "hotpatch requires the 'websockets' Python package. Install it (pip install websockets)."
        ) from exc


class CdpSession:
    """CDP connection for a single page target."""

    def __init__(self, ws: Any, *, timeout: float = 10.0, ws_url: str = "") -> None:
        self.ws = ws
        self.ws_url = ws_url
        self.timeout = float(timeout)
        self._next_id = 1
        self._pending: dict[int, tuple[str, asyncio.Future]] = {}
        self._handlers: dict[str, list[EventHandler]] = {}
        self._disconnect_handlers: list[Callable[[BaseException | None], Any]] = []
        self._handler_tasks: set[asyncio.Task] = set()
        self._reader: asyncio.Task | None = None
        self._closed = asyncio.Event()
        self.close_reason: BaseException | None = None

    @classmethod
    async def connect(cls, ws_url: str, *, timeout: float = 10.0) -> CdpSession:
        websockets = _import_websockets()
        try:
            # Large DOM/source payloads exceed the default 1 MiB frame limit.
            ws = await websockets.connect(ws_url, max_size=None, ping_interval=None)
        except OSError as exc:
            raise CdpTransportError(f"Cannot connect to {ws_url}: {exc}") from exc
        session = cls(ws, timeout=timeout, ws_url=ws_url)
        session.start()
        logger.info("cdp connected %s", ws_url)
        return session

    # ─────────────────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────────────────

    def start(self) -> None:
        if self._reader is not None:
            return
        self._reader = asyncio.get_running_loop().create_task(self._read_loop(), name="cdp-reader")

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    async def wait_closed(self) -> BaseException | None:
        await self._closed.wait()
        return self.close_reason

    async def close(self) -> None:
        if self.closed:
            return
        try:
            await self.ws.close()
        except Exception as exc:  # noqa: BLE001
            logger.debug("cdp close failed: %s", exc)
        if self._reader is not None:
            await self._reader

    # ─────────────────────────────────────────────────────────────────────────
    # Commands
    # ─────────────────────────────────────────────────────────────────────────

    async def send(self, method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        """Send a CDP command and wait for its result."""
        if self.closed:
            raise CdpTransportError(f"CDP session closed (cannot send {method})")

        msg_id = self._next_id
        self._next_id += 1
        msg: dict[str, Any] = {"id": msg_id, "method": method}
        if params:
            msg["params"] = params

        fut: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[msg_id] = (method, fut)
        try:
            try:
                await self.ws.send(json.dumps(msg))
            except Exception as exc:  # noqa: BLE001
                raise CdpTransportError(f"{method}: {exc}") from exc
            try:
                return await asyncio.wait_for(fut, timeout=self.timeout)
            except asyncio.TimeoutError as exc:
                raise CdpTimeoutError(f"{method}: no response within {self.timeout:g}s") from exc
        finally:
            self._pending.pop(msg_id, None)

    # ─────────────────────────────────────────────────────────────────────────
    # Events
    # ─────────────────────────────────────────────────────────────────────────

    def on(self, event_name: str, handler: EventHandler) -> Callable[[], None]:
        """Subscribe to a CDP event. Returns an unsubscribe callable.

        Handlers receive the event params. Coroutine handlers are scheduled as
        tasks so a slow handler never stalls the reader.
        """
        self._handlers.setdefault(event_name, []).append(handler)

        def _unsubscribe() -> None:
            handlers = self._handlers.get(event_name)
            if handlers and handler in handlers:
                handlers.remove(handler)

        return _unsubscribe

    def on_disconnect(self, handler: Callable[[BaseException | None], Any]) -> None:
        self._disconnect_handlers.append(handler)

    def _dispatch_event(self, method: str, params: dict[str, Any]) -> None:
        for handler in list(self._handlers.get(method, ())):
            try:
                result = handler(params)
            except Exception:
                logger.exception("cdp event handler failed event=%s", method)
                continue
            if inspect.isawaitable(result):
                self._track(result, method)

    def _track(self, awaitable: Any, label: str) -> None:
        task = asyncio.ensure_future(awaitable)
        self._handler_tasks.add(task)

        def _done(t: asyncio.Task) -> None:
            self._handler_tasks.discard(t)
            if t.cancelled():
                return
            exc = t.exception()
            if exc is not None:
                logger.error("cdp event handler failed event=%s: %s", label, exc, exc_info=exc)

        task.add_done_callback(_done)

    # ─────────────────────────────────────────────────────────────────────────
    # Reader
    # ─────────────────────────────────────────────────────────────────────────

    def _handle_message(self, raw: Any) -> None:
        try:
            data = json.loads(raw)
        except (TypeError, json.JSONDecodeError):
            logger.debug("cdp: dropping non-JSON frame")
            return
        if not isinstance(data, dict):
            return

        if "id" in data:
            entry = self._pending.get(data.get("id"))
            if entry is None:
                return
            cmd_method, fut = entry
            if fut.done():
                return
            if "error" in data:
                fut.set_exception(CdpCommandError(cmd_method, data["error"]))
            else:
                result = data.get("result")
                fut.set_result(result if isinstance(result, dict) else {})
            return

        method = data.get("method")
        if isinstance(method, str):
            params = data.get("params")
            self._dispatch_event(method, params if isinstance(params, dict) else {})

    async def _read_loop(self) -> None:
        reason: BaseException | None = None
        try:
            async for raw in self.ws:
                self._handle_message(raw)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            reason = exc
        finally:
            self._shutdown(reason)

    def _shutdown(self, reason: BaseException | None) -> None:
        if self.closed:
            return
        self.close_reason = reason
        self._closed.set()

        err = CdpTransportError(f"CDP connection lost: {reason}" if reason else "CDP connection closed")
        for _method, fut in list(self._pending.values()):
            if not fut.done():
                fut.set_exception(err)
        self._pending.clear()

        if reason is not None:
            logger.error("cdp connection lost %s: %s", self.ws_url, reason)
        else:
            logger.info("cdp connection closed %s", self.ws_url)

        for handler in list(self._disconnect_handlers):
            try:
                result = handler(reason)
            except Exception:
                logger.exception("cdp disconnect handler failed")
                continue
            if inspect.isawaitable(result):
                self._track(result, "disconnect")


__all__ = ["CdpSession", "EventHandler"]
