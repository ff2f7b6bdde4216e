"""Change dispatcher: file change → read → executor → logged PatchResult.

Changes to one URL are applied strictly in arrival order by a per-URL worker
task; different URLs patch concurrently. Patch failures never stop a watch,
so the next edit retries. Transport loss is handed to `on_transport_error`
(the session owner) instead of being retried.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .errors import CdpTransportError
from .patchers import Patcher, PatchResult, PatchSession, content_kind, normalize_content_type, select_patcher
from .state import SessionState
from .watcher import FileWatchService, WatchHandle

logger = logging.getLogger("hotpatch.dispatch")

CONTENT_UNCHANGED = "content unchanged"
FILE_UNREADABLE = "file unreadable"


def content_hash(data: str | bytes) -> str:
    if isinstance(data, str):
        data = data.encode("utf-8")
    return hashlib.sha256(data).hexdigest()


@dataclass
class Resource:
    url: str
    path: str
    content_type: str
    kind: str
    content_hash: str | None = None
    last_result: PatchResult | None = None


@dataclass
class WatchBinding:
    url: str
    path: str
    content_type: str
    patcher: Patcher
    handle: WatchHandle | None = None

    @property
    def active(self) -> bool:
        return self.handle is not None and self.handle.active


def _read_text(path: str) -> str:
    return Path(path).read_bytes().decode("utf-8")


class ChangeDispatcher:
    def __init__(
        self,
        state: SessionState,
        session: PatchSession,
        watcher: FileWatchService,
        *,
        on_transport_error: Callable[[CdpTransportError], Any] | None = None,
    ) -> None:
        self.state = state
        self.session = session
        self.watcher = watcher
        self._on_transport_error = on_transport_error
        self._queues: dict[str, asyncio.Queue[None]] = {}
        self._workers: dict[str, asyncio.Task] = {}

    # ─────────────────────────────────────────────────────────────────────────
    # Resources & watches
    # ─────────────────────────────────────────────────────────────────────────

    def register_resource(self, url: str, path: str, content_type: str, content: bytes | None = None) -> Resource:
        """Record (or refresh) a resource after it was served."""
        ctype = normalize_content_type(content_type)
        resource = self.state.resources.get(url)
        if resource is None:
            resource = Resource(url=url, path=path, content_type=ctype, kind=content_kind(ctype))
            self.state.resources[url] = resource
        else:
            resource.path = path
            resource.content_type = ctype
            resource.kind = content_kind(ctype)
        if content is not None:
            resource.content_hash = content_hash(content)
        return resource

    def watch(self, url: str, path: str, content_type: str) -> bool:
        """Start watching the file behind url. Returns False when nothing was started."""
        binding = self.state.bindings.get(url)
        if binding is not None and binding.active:
            return False

        patcher_cls = select_patcher(content_type)
        if patcher_cls is None:
            return False

        if binding is None:
            binding = WatchBinding(
                url=url,
                path=path,
                content_type=normalize_content_type(content_type),
                patcher=patcher_cls(self.state.registry),
            )
            self.state.bindings[url] = binding
        else:
            binding.path = path
        binding.handle = self.watcher.watch(path, lambda: self.notify_changed(url))
        logger.info("watching %s -> %s (%s)", url, path, binding.patcher.kind)
        return True

    def suspend(self) -> None:
        """Stop every watch but keep the bindings so `rearm` can restore them."""
        for binding in self.state.bindings.values():
            if binding.handle is not None:
                binding.handle.stop()
                binding.handle = None
        logger.info("watches suspended count=%d", len(self.state.bindings))

    def rearm(self) -> int:
        rearmed = 0
        for url, binding in self.state.bindings.items():
            if binding.active:
                continue
            binding.handle = self.watcher.watch(binding.path, lambda url=url: self.notify_changed(url))
            rearmed += 1
        if rearmed:
            logger.info("watches re-armed count=%d", rearmed)
        return rearmed

    # ─────────────────────────────────────────────────────────────────────────
    # Change handling
    # ─────────────────────────────────────────────────────────────────────────

    def notify_changed(self, url: str) -> None:
        """Queue one patch cycle for url (called on the loop thread)."""
        binding = self.state.bindings.get(url)
        if binding is None or not binding.active:
            return
        queue = self._queues.get(url)
        if queue is None:
            queue = asyncio.Queue()
            self._queues[url] = queue
        queue.put_nowait(None)
        worker = self._workers.get(url)
        if worker is None or worker.done():
            self._workers[url] = asyncio.get_running_loop().create_task(self._drain(url, queue), name=f"patch:{url}")

    async def _drain(self, url: str, queue: asyncio.Queue[None]) -> None:
        while True:
            await queue.get()
            try:
                await self.handle_change(url)
            except CdpTransportError as exc:
                logger.error("patch aborted url=%s: %s", url, exc)
                if self._on_transport_error is not None:
                    self._on_transport_error(exc)
            except Exception:
                logger.exception("patch crashed url=%s", url)
            finally:
                queue.task_done()

    async def handle_change(self, url: str) -> PatchResult:
        """Run one patch cycle for url. Raises only CdpTransportError."""
        binding = self.state.bindings[url]
        resource = self.state.resources.get(url)
        if resource is None:
            resource = self.register_resource(url, binding.path, binding.content_type)

        try:
            new_content = await asyncio.to_thread(_read_text, binding.path)
        except (OSError, UnicodeDecodeError) as exc:
            result = PatchResult.skipped(FILE_UNREADABLE, error=exc)
            self._log(url, result)
            resource.last_result = result
            return result

        digest = content_hash(new_content)
        if digest == resource.content_hash:
            result = PatchResult.skipped(CONTENT_UNCHANGED)
        else:
            logger.info("patching %s", url)
            result = await binding.patcher.apply(self.session, url, new_content)
            if result.ok:
                resource.content_hash = digest

        resource.last_result = result
        self._log(url, result)
        return result

    def _log(self, url: str, result: PatchResult) -> None:
        if result.reason == CONTENT_UNCHANGED:
            logger.debug("patch url=%s %s", url, result.describe())
        elif result.status == "failed":
            logger.warning("patch url=%s %s", url, result.describe())
        else:
            logger.info("patch url=%s %s", url, result.describe())

    async def wait_idle(self) -> None:
        """Wait until every queued change has been processed."""
        for queue in list(self._queues.values()):
            await queue.join()

    async def close(self) -> None:
        for binding in self.state.bindings.values():
            if binding.handle is not None:
                binding.handle.stop()
                binding.handle = None
        workers = list(self._workers.values())
        for task in workers:
            task.cancel()
        if workers:
            await asyncio.gather(*workers, return_exceptions=True)
        self._workers.clear()
        self._queues.clear()


__all__ = [
    "CONTENT_UNCHANGED",
    "FILE_UNREADABLE",
    "ChangeDispatcher",
    "Resource",
    "WatchBinding",
    "content_hash",
]
