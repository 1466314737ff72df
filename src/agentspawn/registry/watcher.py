"""Registry change notification for long-running consumers.

Two independent paths feed one debounced callback:

* a watchdog observer on the registry's directory (low latency), and
* an mtime poll on a fixed interval, which bounds the worst-case latency
  when native notification is unreliable or silently stops.

A lost native watch (directory removed/renamed, observer thread died) is
re-attached after a short delay; after ``max_retries`` consecutive
failures the watcher keeps running on polling alone. Nothing here raises
to the caller.
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
import os
from pathlib import Path
from typing import Any, Callable

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from agentspawn.config import WatcherConfig

logger = logging.getLogger(__name__)

RegistryChangeCallback = Callable[[], Any]


class _RegistryEventHandler(FileSystemEventHandler):
    """Runs on the watchdog thread; hands events to the event loop."""

    def __init__(self, watcher: RegistryWatcher, loop: asyncio.AbstractEventLoop) -> None:
        self._watcher = watcher
        self._loop = loop

    def on_any_event(self, event: FileSystemEvent) -> None:
        kind = self._watcher._classify(event)
        if kind is None or self._loop.is_closed():
            return
        with contextlib.suppress(RuntimeError):
            self._loop.call_soon_threadsafe(self._watcher._on_native_event, kind)


class RegistryWatcher:
    """Watch the registry file and fire a debounced callback on change."""

    def __init__(self, registry_path: str | Path, options: WatcherConfig | None = None) -> None:
        self.registry_path = Path(os.path.abspath(Path(registry_path).expanduser()))
        opts = options or WatcherConfig()
        self.debounce = opts.debounce
        self.fallback_interval = opts.fallback_interval
        self.retry_interval = opts.retry_interval
        self.max_retries = opts.max_retries

        self._loop: asyncio.AbstractEventLoop | None = None
        self._callback: RegistryChangeCallback | None = None
        self._observer: Any = None
        self._debounce_timer: asyncio.TimerHandle | None = None
        self._retry_timer: asyncio.TimerHandle | None = None
        self._poll_task: asyncio.Task[None] | None = None
        self._callback_tasks: set[asyncio.Task[Any]] = set()
        self._retry_count = 0
        self._last_mtime_ns = 0
        self._suppress_until = 0.0

    @property
    def watching(self) -> bool:
        return self._callback is not None

    @property
    def native_active(self) -> bool:
        return self._observer is not None

    def watch(self, callback: RegistryChangeCallback) -> None:
        """Start watching. Must be called from inside the event loop.

        ``callback`` may be a plain function or a coroutine function.
        """
        self.unwatch()
        self._loop = asyncio.get_running_loop()
        self._callback = callback
        self._retry_count = 0
        self._init_watcher()
        self._start_fallback_polling()

    def unwatch(self) -> None:
        """Stop watching and release everything. Idempotent."""
        self._callback = None
        self._close_watcher()

        for timer in (self._debounce_timer, self._retry_timer):
            if timer is not None:
                timer.cancel()
        self._debounce_timer = None
        self._retry_timer = None

        if self._poll_task is not None:
            self._poll_task.cancel()
            self._poll_task = None

    def notify_write(self) -> None:
        """Announce a local write: fire now and swallow its native echo."""
        if self._debounce_timer is not None:
            self._debounce_timer.cancel()
            self._debounce_timer = None

        if self._loop is not None:
            self._suppress_until = self._loop.time() + self.debounce
        with contextlib.suppress(OSError):
            self._last_mtime_ns = os.stat(self.registry_path).st_mtime_ns

        self._invoke_callback()

    # ------------------------------------------------------------------
    # Native watch
    # ------------------------------------------------------------------

    def _init_watcher(self) -> None:
        self._close_watcher()
        if self._loop is None or self._callback is None:
            return

        observer = Observer()
        handler = _RegistryEventHandler(self, self._loop)
        try:
            observer.schedule(handler, str(self.registry_path.parent), recursive=False)
            observer.start()
        except Exception as e:
            logger.debug("Could not watch registry directory %s: %s", self.registry_path.parent, e)
            self._schedule_reattach()
            return

        self._observer = observer
        self._retry_count = 0
        logger.debug("Watching registry file %s", self.registry_path)

    def _close_watcher(self) -> None:
        observer = self._observer
        self._observer = None
        if observer is None:
            return
        try:
            observer.stop()
            observer.join(timeout=1.0)
        except Exception as e:
            logger.debug("Error stopping registry observer: %s", e)

    def _classify(self, event: FileSystemEvent) -> str | None:
        """Map a raw event to ``"change"``, ``"lost"`` or ``None`` (ignore)."""
        target = str(self.registry_path)
        watched_dir = str(self.registry_path.parent)
        src = os.path.normpath(os.fsdecode(event.src_path))
        dest = getattr(event, "dest_path", "") or ""
        dest = os.path.normpath(os.fsdecode(dest)) if dest else ""

        if event.is_directory:
            if src == watched_dir and event.event_type in ("deleted", "moved"):
                return "lost"
            return None

        if target in (src, dest) and event.event_type in ("created", "modified", "moved", "deleted"):
            return "change"
        return None

    def _on_native_event(self, kind: str) -> None:
        if self._callback is None:
            return
        if kind == "lost":
            self._handle_watcher_lost()
        else:
            self._schedule_debounce()

    def _handle_watcher_lost(self) -> None:
        self._close_watcher()
        # Losing the watch usually means the file was replaced; report it
        self._schedule_debounce()
        self._schedule_reattach()

    def _schedule_reattach(self) -> None:
        if self._loop is None or self._callback is None or self._retry_timer is not None:
            return
        if self._retry_count >= self.max_retries:
            logger.debug("Max watcher retries reached, relying on fallback polling")
            return

        self._retry_count += 1
        self._retry_timer = self._loop.call_later(self.retry_interval, self._retry_watch)

    def _retry_watch(self) -> None:
        self._retry_timer = None
        self._init_watcher()

    # ------------------------------------------------------------------
    # Debounce + fallback polling
    # ------------------------------------------------------------------

    def _schedule_debounce(self) -> None:
        if self._loop is None or self._callback is None:
            return
        if self._loop.time() < self._suppress_until:
            return

        if self._debounce_timer is not None:
            self._debounce_timer.cancel()
        self._debounce_timer = self._loop.call_later(self.debounce, self._fire_debounced)

    def _fire_debounced(self) -> None:
        self._debounce_timer = None
        self._invoke_callback()

    def _invoke_callback(self) -> None:
        callback = self._callback
        if callback is None:
            return
        try:
            result = callback()
        except Exception:
            logger.exception("Registry change callback failed")
            return
        if inspect.isawaitable(result) and self._loop is not None:
            task = self._loop.create_task(_guarded(result))
            self._callback_tasks.add(task)
            task.add_done_callback(self._callback_tasks.discard)

    def _start_fallback_polling(self) -> None:
        try:
            self._last_mtime_ns = os.stat(self.registry_path).st_mtime_ns
        except OSError:
            self._last_mtime_ns = 0
        assert self._loop is not None
        self._poll_task = self._loop.create_task(self._poll_loop())

    async def _poll_loop(self) -> None:
        while True:
            await asyncio.sleep(self.fallback_interval)

            observer = self._observer
            if observer is not None and not observer.is_alive():
                logger.debug("Registry observer thread died, re-attaching")
                self._handle_watcher_lost()

            try:
                mtime_ns = os.stat(self.registry_path).st_mtime_ns
            except OSError:
                continue
            if mtime_ns != self._last_mtime_ns:
                self._last_mtime_ns = mtime_ns
                self._schedule_debounce()


async def _guarded(awaitable: Any) -> None:
    try:
        await awaitable
    except Exception:
        logger.exception("Registry change callback failed")
