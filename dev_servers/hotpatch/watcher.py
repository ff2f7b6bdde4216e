"""Single-file change notifications on top of watchdog.

watchdog observes directories, so one handler is scheduled per parent
directory and fans events out to the per-file handles registered under it.
Callbacks run on the asyncio loop (observer threads hand events over with
call_soon_threadsafe).
"""

from __future__ import annotations

import asyncio
import logging
import os
import threading
from collections.abc import Callable
from typing import Any

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

logger = logging.getLogger("hotpatch.watcher")


def _norm(path: str | bytes) -> str:
    return os.path.realpath(os.fsdecode(path))


class WatchHandle:
    def __init__(self, service: FileWatchService, path: str, callback: Callable[[], Any]) -> None:
        self.service = service
        self.path = path
        self.callback = callback
        self.active = True

    def stop(self) -> None:
        self.service.unwatch(self)

    def __repr__(self) -> str:
        state = "active" if self.active else "stopped"
        return f"<WatchHandle {self.path} {state}>"


class _DirectoryHandler(FileSystemEventHandler):
    def __init__(self, service: FileWatchService) -> None:
        super().__init__()
        self._service = service

    def on_modified(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._service._fire(event.src_path)

    def on_created(self, event: FileSystemEvent) -> None:
        # Editors that save via rename-over show up as create/move, not modify.
        if not event.is_directory:
            self._service._fire(event.src_path)

    def on_moved(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._service._fire(getattr(event, "dest_path", "") or event.src_path)


class FileWatchService:
    """Watch individual files; each change invokes the file's callback on the loop."""

    def __init__(self, *, loop: asyncio.AbstractEventLoop | None = None, observer: Any | None = None) -> None:
        self._loop = loop
        self._observer = observer if observer is not None else Observer()
        self._started = False
        self._lock = threading.Lock()
        self._handles: dict[str, list[WatchHandle]] = {}
        # directory -> (ObservedWatch, number of watched files in it)
        self._dirs: dict[str, tuple[Any, int]] = {}

    def watch(self, path: str, callback: Callable[[], Any]) -> WatchHandle:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        full = _norm(path)
        directory = os.path.dirname(full)
        handle = WatchHandle(self, full, callback)
        with self._lock:
            self._handles.setdefault(full, []).append(handle)
            observed, count = self._dirs.get(directory, (None, 0))
            if observed is None:
                observed = self._observer.schedule(_DirectoryHandler(self), directory, recursive=False)
            self._dirs[directory] = (observed, count + 1)
            if not self._started:
                self._observer.start()
                self._started = True
        logger.debug("watching %s", full)
        return handle

    def unwatch(self, handle: WatchHandle) -> None:
        with self._lock:
            if not handle.active:
                return
            handle.active = False
            handles = self._handles.get(handle.path, [])
            if handle in handles:
                handles.remove(handle)
            if not handles:
                self._handles.pop(handle.path, None)
            directory = os.path.dirname(handle.path)
            observed, count = self._dirs.get(directory, (None, 0))
            if observed is None:
                return
            if count <= 1:
                del self._dirs[directory]
                self._observer.unschedule(observed)
            else:
                self._dirs[directory] = (observed, count - 1)
        logger.debug("stopped watching %s", handle.path)

    def close(self) -> None:
        with self._lock:
            for handles in self._handles.values():
                for handle in handles:
                    handle.active = False
            self._handles.clear()
            self._dirs.clear()
            started = self._started
            self._started = False
        if started:
            self._observer.stop()
            self._observer.join(timeout=2.0)

    def _fire(self, raw_path: str | bytes) -> None:
        path = _norm(raw_path)
        with self._lock:
            callbacks = [h.callback for h in self._handles.get(path, ()) if h.active]
        loop = self._loop
        if not callbacks or loop is None or loop.is_closed():
            return
        for callback in callbacks:
            loop.call_soon_threadsafe(callback)


__all__ = ["FileWatchService", "WatchHandle"]
