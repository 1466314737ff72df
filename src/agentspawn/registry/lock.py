"""Advisory lock for the registry file.

The lock is a directory created next to the registry (``<path>.lock``).
``mkdir`` is atomic on every local filesystem, so exactly one contender
wins. The directory's mtime is the holder's heartbeat: it is refreshed
while the lock is held, and a marker whose mtime is older than the
staleness threshold is assumed abandoned by a crashed holder and removed.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import time
import uuid
from pathlib import Path

import aiofiles.os
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from agentspawn.config import LockConfig
from agentspawn.errors import RegistryLockError

logger = logging.getLogger(__name__)


class LockContendedError(Exception):
    """Raised internally when the marker is held by someone else."""


def lock_path_for(path: str | Path) -> Path:
    return Path(f"{path}.lock")


class RegistryLock:
    """Async context manager around the ``<path>.lock`` marker.

    Usage::

        async with RegistryLock(registry_path, options):
            ...  # read-modify-write
    """

    def __init__(self, path: str | Path, options: LockConfig | None = None) -> None:
        self.path = Path(path)
        self.marker = lock_path_for(self.path)
        self.options = options or LockConfig()
        self._held = False
        self._heartbeat: asyncio.Task[None] | None = None

    @property
    def held(self) -> bool:
        return self._held

    async def acquire(self) -> None:
        """Acquire the marker, retrying with exponential backoff.

        Raises:
            RegistryLockError: retries were exhausted or the marker could
                not be created at all.
        """
        opts = self.options
        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception_type(LockContendedError),
                stop=stop_after_attempt(opts.retries + 1),
                wait=wait_exponential(
                    multiplier=opts.min_timeout,
                    min=opts.min_timeout,
                    max=opts.max_timeout,
                    exp_base=opts.factor,
                ),
                before_sleep=before_sleep_log(logger, logging.DEBUG),
                reraise=True,
            ):
                with attempt:
                    await self._try_acquire()
        except (LockContendedError, OSError) as e:
            raise RegistryLockError(self.path, e) from e

        self._held = True
        self._heartbeat = asyncio.create_task(self._refresh_loop())
        logger.debug("Acquired registry lock %s", self.marker)

    async def _try_acquire(self) -> None:
        try:
            await aiofiles.os.mkdir(self.marker)
            return
        except FileExistsError:
            pass

        if not self._is_stale():
            raise LockContendedError(f"lock held: {self.marker}")

        await self._reclaim_stale()
        try:
            await aiofiles.os.mkdir(self.marker)
        except FileExistsError as e:
            raise LockContendedError(f"lock reclaimed by another process: {self.marker}") from e

    async def _reclaim_stale(self) -> None:
        """Move a stale marker aside, then delete it.

        Renaming is atomic, so only one contender gets the marker. If the
        moved marker turns out to be fresh, another contender replaced the
        stale one after we looked; it is put back and we keep waiting.
        """
        tombstone = self.marker.with_name(
            f"{self.marker.name}.{os.getpid()}.{uuid.uuid4().hex[:8]}.stale"
        )
        try:
            await aiofiles.os.rename(self.marker, tombstone)
        except FileNotFoundError:
            return
        except OSError as e:
            raise LockContendedError(f"could not move stale lock: {self.marker}") from e

        if not self._is_stale(tombstone):
            try:
                await aiofiles.os.rename(tombstone, self.marker)
            except OSError:
                logger.warning("Could not restore live registry lock %s", self.marker)
                with contextlib.suppress(OSError):
                    await aiofiles.os.rmdir(tombstone)
            raise LockContendedError(f"lock held: {self.marker}")

        logger.warning("Reclaimed stale registry lock %s", self.marker)
        with contextlib.suppress(OSError):
            await aiofiles.os.rmdir(tombstone)

    def _is_stale(self, marker: Path | None = None) -> bool:
        try:
            mtime = os.stat(marker or self.marker).st_mtime
        except FileNotFoundError:
            # Released between our mkdir and stat; treat as free
            return True
        return time.time() - mtime > self.options.stale

    async def _refresh_loop(self) -> None:
        interval = self.options.stale / 2
        while True:
            await asyncio.sleep(interval)
            try:
                os.utime(self.marker)
            except OSError as e:
                logger.warning("Lost registry lock heartbeat on %s: %s", self.marker, e)
                return

    async def release(self) -> None:
        """Release the marker. Safe to call when not held."""
        if self._heartbeat is not None:
            self._heartbeat.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._heartbeat
            self._heartbeat = None

        if not self._held:
            return
        self._held = False
        try:
            await aiofiles.os.rmdir(self.marker)
            logger.debug("Released registry lock %s", self.marker)
        except OSError as e:
            # Marker may have been reclaimed as stale by another process
            logger.debug("Could not remove lock marker %s: %s", self.marker, e)

    async def __aenter__(self) -> RegistryLock:
        await self.acquire()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.release()
