"""Recursive filesystem watching bridged onto the asyncio loop."""

import asyncio
import logging
import os
from pathlib import Path
from typing import AsyncIterator, Callable, Iterable, Optional

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

logger = logging.getLogger("agenttunnel-watch")

IGNORED_DIRECTORIES = ("node_modules", "__pycache__")


def should_ignore(relative_path: str, ignored_names: Iterable[str] = ()) -> bool:
    """True for hidden paths, dependency folders and the session's own state files."""
    normalized = relative_path.replace(os.sep, "/")
    if not normalized or normalized.startswith("."):
        return True
    parts = normalized.split("/")
    if any(part in IGNORED_DIRECTORIES for part in parts):
        return True
    return any(name and name in normalized for name in ignored_names)


class _QueueingHandler(FileSystemEventHandler):
    """Runs on the observer thread; hands relative paths to the loop's queue."""

    def __init__(self, root: Path, loop: asyncio.AbstractEventLoop, queue: "asyncio.Queue[str]"):
        self.root = root
        self.loop = loop
        self.queue = queue

    def on_any_event(self, event: FileSystemEvent):
        if event.is_directory or event.event_type in ("opened", "closed_no_write"):
            return
        for raw_path in (event.src_path, getattr(event, "dest_path", "")):
            if not raw_path:
                continue
            try:
                relative = os.path.relpath(os.fsdecode(raw_path), self.root)
            except ValueError:
                continue
            self.loop.call_soon_threadsafe(self.queue.put_nowait, relative)


class FileWatcher:
    """Async stream of relative paths that changed under ``root``.

    Changes that pile up while the consumer is busy are coalesced: after a
    qualifying path is taken off the queue, everything already queued behind it
    is dropped, since one sync covers all of them.
    """

    def __init__(self, root: Path, ignore: Callable[[str], bool] = should_ignore):
        self.root = Path(root).resolve()
        self.ignore = ignore
        self.queue: Optional["asyncio.Queue[str]"] = None
        self.observer: Optional[Observer] = None

    def start(self):
        loop = asyncio.get_running_loop()
        self.queue = asyncio.Queue()
        self.observer = Observer()
        self.observer.schedule(_QueueingHandler(self.root, loop, self.queue), str(self.root), recursive=True)
        self.observer.daemon = True
        self.observer.start()
        logger.info(f"Watching for changes in {self.root}")

    def stop(self):
        if self.observer is not None:
            self.observer.stop()
            self.observer.join(timeout=2.0)
            self.observer = None

    async def events(self) -> AsyncIterator[str]:
        if self.queue is None:
            self.start()
        while True:
            relative = await self.queue.get()
            if self.ignore(relative):
                logger.debug(f"Ignoring change in {relative}")
                continue
            dropped = 0
            while not self.queue.empty():
                self.queue.get_nowait()
                dropped += 1
            if dropped:
                logger.debug(f"Coalesced {dropped} queued change(s) into one sync")
            yield relative
