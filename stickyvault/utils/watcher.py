"""File watching with a stability window, built on watchdog.

watchdog delivers raw events from its own thread. They are handed to the
asyncio loop, and a path is only reported once nothing has happened to it for
``stability_seconds``. A burst of writes from one save therefore produces a
single callback, and half-written files are not handed out for parsing.
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Awaitable, Callable
from pathlib import Path

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

logger = logging.getLogger(__name__)

ChangeCallback = Callable[[Path], Awaitable[None]]


class _ForwardingHandler(FileSystemEventHandler):
    """Forwards watchdog events onto the event loop."""

    def __init__(self, watcher: StableFileWatcher):
        super().__init__()
        self.watcher = watcher

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        if event.event_type in ("created", "modified", "deleted", "closed"):
            self.watcher.notify_threadsafe(Path(os.fsdecode(event.src_path)))
        elif event.event_type == "moved":
            self.watcher.notify_threadsafe(Path(os.fsdecode(event.src_path)))
            self.watcher.notify_threadsafe(Path(os.fsdecode(event.dest_path)))


class StableFileWatcher:
    """Watch one directory (non-recursive) and report settled changes.

    Args:
        folder: Directory to watch
        on_changed: Awaited with the path when a file was added or modified
        on_removed: Awaited with the path when a file disappeared
        stability_seconds: Quiet period required before a path is reported
        suffixes: Only paths with one of these suffixes are reported
    """

    def __init__(
        self,
        folder: Path,
        on_changed: ChangeCallback,
        on_removed: ChangeCallback,
        stability_seconds: float = 0.5,
        suffixes: tuple[str, ...] = (".md",),
    ):
        self.folder = Path(folder)
        self.on_changed = on_changed
        self.on_removed = on_removed
        self.stability_seconds = stability_seconds
        self.suffixes = suffixes

        self._loop: asyncio.AbstractEventLoop | None = None
        self._observer: Observer | None = None
        self._timers: dict[Path, asyncio.TimerHandle] = {}
        self._tasks: set[asyncio.Task] = set()

    @property
    def is_running(self) -> bool:
        return self._observer is not None

    def start(self) -> None:
        if self._observer is not None:
            return
        self._loop = asyncio.get_running_loop()
        self._observer = Observer()
        self._observer.schedule(_ForwardingHandler(self), str(self.folder), recursive=False)
        self._observer.start()
        logger.info("Watching %s for changes", self.folder, extra={"log_category": "watcher"})

    async def stop(self) -> None:
        observer, self._observer = self._observer, None
        if observer is not None:
            observer.stop()
            await asyncio.to_thread(observer.join)

        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()

        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        logger.debug("Stopped watching %s", self.folder, extra={"log_category": "watcher"})

    def _wants(self, path: Path) -> bool:
        if path.name.startswith("."):
            return False
        return path.suffix.lower() in self.suffixes

    def notify_threadsafe(self, path: Path) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(self.notify, path)

    def notify(self, path: Path) -> None:
        """Record activity on ``path``, restarting its stability timer."""
        if not self._wants(path):
            return
        loop = self._loop or asyncio.get_running_loop()
        self._loop = loop

        existing = self._timers.pop(path, None)
        if existing is not None:
            existing.cancel()
        self._timers[path] = loop.call_later(self.stability_seconds, self._settled, path)

    def _settled(self, path: Path) -> None:
        self._timers.pop(path, None)
        callback = self.on_changed if path.exists() else self.on_removed
        task = asyncio.ensure_future(self._run(callback, path))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, callback: ChangeCallback, path: Path) -> None:
        try:
            await callback(path)
        except Exception:
            logger.exception("Failed to process change for %s", path.name)

    async def drain(self) -> None:
        """Wait until pending timers have fired and their callbacks finished."""
        while self._timers or self._tasks:
            if self._tasks:
                await asyncio.gather(*list(self._tasks), return_exceptions=True)
            else:
                await asyncio.sleep(self.stability_seconds / 2 or 0.01)
