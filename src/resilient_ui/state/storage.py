"""Key/value storage backends for persisted state records.

``MemoryStorage`` models browser-style storage: several views may share
one area, and a write through one view notifies the others. Setting a
byte quota makes writes beyond it fail the way a full storage area does.

``JsonFileStorage`` keeps one file per key and writes atomically
(temp file -> fsync -> os.replace).
"""

from __future__ import annotations

import asyncio
import contextlib
import os
import re
import tempfile
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol, runtime_checkable

import structlog

from resilient_ui.exceptions import StorageError

if TYPE_CHECKING:
    from pathlib import Path

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

_KEY_RE = re.compile(r"^[\w.-]+$")


@dataclass(frozen=True, slots=True)
class StorageChange:
    """Notification that another view changed a key."""

    key: str
    old_value: str | None
    new_value: str | None


StorageListener = Callable[[StorageChange], None]


class StorageBackend(Protocol):
    def get_item(self, key: str) -> str | None: ...

    def set_item(self, key: str, value: str) -> None: ...

    def remove_item(self, key: str) -> None: ...

    def keys(self) -> list[str]: ...


@runtime_checkable
class ObservableStorage(Protocol):
    """Backend that reports writes made through other views."""

    def subscribe(self, listener: StorageListener) -> Callable[[], None]: ...


class _StorageArea:
    def __init__(self, quota_bytes: int | None) -> None:
        self.data: dict[str, str] = {}
        self.quota_bytes = quota_bytes
        self.views: list[MemoryStorage] = []

    def used_bytes(self, replacing: str | None = None, extra: int = 0) -> int:
        total = sum(
            len(k) + len(v) for k, v in self.data.items() if k != replacing
        )
        return total + extra


class MemoryStorage:
    """In-process storage area with optional sharing and quota."""

    def __init__(
        self, quota_bytes: int | None = None, *, area: _StorageArea | None = None
    ) -> None:
        self._area = area if area is not None else _StorageArea(quota_bytes)
        self._area.views.append(self)
        self._listeners: list[StorageListener] = []

    def open_view(self) -> MemoryStorage:
        """Return another view onto the same area (another execution context)."""
        return MemoryStorage(area=self._area)

    def get_item(self, key: str) -> str | None:
        return self._area.data.get(key)

    def set_item(self, key: str, value: str) -> None:
        quota = self._area.quota_bytes
        if quota is not None:
            needed = self._area.used_bytes(replacing=key, extra=len(key) + len(value))
            if needed > quota:
                msg = (
                    f"Storage quota exceeded writing {key!r} "
                    f"({needed} > {quota} bytes)"
                )
                raise StorageError(msg)
        old = self._area.data.get(key)
        self._area.data[key] = value
        self._notify(StorageChange(key=key, old_value=old, new_value=value))

    def remove_item(self, key: str) -> None:
        old = self._area.data.pop(key, None)
        if old is not None:
            self._notify(StorageChange(key=key, old_value=old, new_value=None))

    def keys(self) -> list[str]:
        return sorted(self._area.data)

    def subscribe(self, listener: StorageListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _notify(self, change: StorageChange) -> None:
        for view in self._area.views:
            if view is self:
                continue
            for listener in list(view._listeners):
                _deliver(listener, change)


def _deliver(listener: StorageListener, change: StorageChange) -> None:
    def _run() -> None:
        try:
            listener(change)
        except Exception as exc:
            logger.error("storage_listener_failed", key=change.key, error=str(exc))

    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        _run()
    else:
        loop.call_soon(_run)


class JsonFileStorage:
    """One JSON file per key under ``directory``."""

    def __init__(self, directory: Path) -> None:
        self._directory = directory

    @property
    def directory(self) -> Path:
        return self._directory

    def _path(self, key: str) -> Path:
        if not _KEY_RE.match(key):
            msg = f"Invalid storage key: {key!r}"
            raise ValueError(msg)
        return self._directory / f"{key}.json"

    def get_item(self, key: str) -> str | None:
        path = self._path(key)
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError) as exc:
            raise StorageError(f"Failed to read {key!r}") from exc

    def set_item(self, key: str, value: str) -> None:
        path = self._path(key)
        try:
            self._directory.mkdir(parents=True, exist_ok=True)
            self._atomic_write(path, value.encode("utf-8"))
        except OSError as exc:
            raise StorageError(f"Failed to write {key!r}") from exc

    def remove_item(self, key: str) -> None:
        path = self._path(key)
        try:
            path.unlink(missing_ok=True)
        except OSError as exc:
            raise StorageError(f"Failed to remove {key!r}") from exc

    def keys(self) -> list[str]:
        if not self._directory.is_dir():
            return []
        return sorted(p.stem for p in self._directory.glob("*.json"))

    @staticmethod
    def _atomic_write(path: Path, data: bytes) -> None:
        """Write data atomically using temp file -> fsync -> os.replace.

        Args:
            path: Target file path.
            data: Bytes to write.
        """
        fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), suffix=".tmp")
        fd_closed = False
        try:
            os.write(fd, data)
            os.fsync(fd)
            os.close(fd)
            fd_closed = True
            os.replace(tmp_path, str(path))
        except BaseException:
            if not fd_closed:
                os.close(fd)
            with contextlib.suppress(FileNotFoundError):
                os.unlink(tmp_path)
            raise
