"""Registry: crash-safe JSON store of session entries keyed by name."""

from __future__ import annotations

import contextlib
import inspect
import json
import logging
import os
import uuid
from pathlib import Path
from typing import Awaitable, Callable, TypeVar

import aiofiles
import aiofiles.os

from agentspawn.config import LockConfig
from agentspawn.errors import RegistryCorruptError
from agentspawn.registry.lock import RegistryLock
from agentspawn.registry.schema import (
    CorruptDocument,
    RegistryData,
    RegistryEntry,
    empty_registry,
    validate_document,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Registry:
    """Durable, file-backed record of sessions shared by all processes.

    Readers never take the lock: every write lands via rename, so a
    reader sees either the previous document or the new one, never a
    partial file. All mutations should go through ``with_lock``.
    """

    def __init__(self, path: str | Path, lock_options: LockConfig | None = None) -> None:
        self.path = Path(path).expanduser()
        self.lock_options = lock_options or LockConfig()

    async def load(self) -> RegistryData:
        """Read the registry. A missing file yields an empty registry.

        Raises:
            RegistryCorruptError: the file is not JSON or has the wrong shape.
        """
        try:
            async with aiofiles.open(self.path, "r", encoding="utf-8") as f:
                content = await f.read()
        except FileNotFoundError:
            return empty_registry()

        try:
            parsed = json.loads(content)
        except json.JSONDecodeError as e:
            logger.error("Registry file is not valid JSON: %s", self.path)
            raise RegistryCorruptError(self.path, f"invalid JSON: {e.msg}") from e

        result = validate_document(parsed)
        if isinstance(result, CorruptDocument):
            logger.error("Registry file has invalid structure: %s (%s)", self.path, result.reason)
            raise RegistryCorruptError(self.path, result.reason)
        return result

    async def save(self, data: RegistryData) -> None:
        """Write the registry atomically (temp file + rename)."""
        await aiofiles.os.makedirs(self.path.parent, exist_ok=True)
        tmp_path = self.path.with_name(
            f".{self.path.name}.{os.getpid()}.{uuid.uuid4().hex[:8]}.tmp"
        )
        try:
            async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
                await f.write(json.dumps(data.to_json(), indent=2))
                await f.flush()
            await aiofiles.os.replace(tmp_path, self.path)
        except BaseException:
            with contextlib.suppress(OSError):
                os.unlink(tmp_path)
            raise
        logger.debug("Registry saved to %s", self.path)

    async def with_lock(self, mutator: Callable[[RegistryData], T | Awaitable[T]]) -> T:
        """Run ``load -> mutator(data) -> save`` under the advisory lock.

        The mutator edits ``data`` in place and may be sync or async; its
        return value is passed through. Exceptions raised by the mutator
        propagate unchanged and nothing is saved. The lock is always
        released.

        Raises:
            RegistryLockError: the lock could not be acquired.
        """
        await aiofiles.os.makedirs(self.path.parent, exist_ok=True)
        async with RegistryLock(self.path, self.lock_options):
            if not await aiofiles.os.path.exists(self.path):
                await self.save(empty_registry())
            data = await self.load()
            result = mutator(data)
            if inspect.isawaitable(result):
                result = await result
            await self.save(data)
            return result

    async def add_entry(self, entry: RegistryEntry) -> None:
        def _add(data: RegistryData) -> None:
            data.sessions[entry.name] = entry

        await self.with_lock(_add)

    async def remove_entry(self, name: str) -> None:
        def _remove(data: RegistryData) -> None:
            data.sessions.pop(name, None)

        await self.with_lock(_remove)

    async def get_all(self) -> RegistryData:
        return await self.load()
