"""
Local key/value storage for the client SDK (the browser localStorage of the web app).
Values are strings; callers handle (de)serialization.
"""
import logging
import os
import re
from pathlib import Path
from typing import Protocol

logger = logging.getLogger(__name__)


class LocalStorage(Protocol):
    def get_item(self, key: str) -> str | None: ...

    def set_item(self, key: str, value: str) -> None: ...

    def remove_item(self, key: str) -> None: ...

    def keys(self) -> list[str]: ...


class MemoryStorage:
    """Per-process storage; lost on exit."""

    def __init__(self) -> None:
        self._items: dict[str, str] = {}

    def get_item(self, key: str) -> str | None:
        return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        self._items[key] = value

    def remove_item(self, key: str) -> None:
        self._items.pop(key, None)

    def keys(self) -> list[str]:
        return list(self._items)


_SAFE_KEY = re.compile(r"[^A-Za-z0-9_.-]")


class FileStorage:
    """One file per key under a directory; survives restarts."""

    def __init__(self, directory: str) -> None:
        self._dir = Path(directory)
        os.makedirs(self._dir, exist_ok=True)

    def _path(self, key: str) -> Path:
        return self._dir / f"{_SAFE_KEY.sub('_', key)}.json"

    def get_item(self, key: str) -> str | None:
        path = self._path(key)
        if not path.is_file():
            return None
        return path.read_text(encoding="utf-8")

    def set_item(self, key: str, value: str) -> None:
        path = self._path(key)
        tmp = path.with_suffix(".tmp")
        tmp.write_text(value, encoding="utf-8")
        os.replace(tmp, path)

    def remove_item(self, key: str) -> None:
        try:
            self._path(key).unlink()
        except FileNotFoundError:
            pass

    def keys(self) -> list[str]:
        return [p.stem for p in self._dir.glob("*.json")]


def build_storage(directory: str | None) -> LocalStorage:
    if directory:
        logger.debug("Client cache storage: %s", directory)
        return FileStorage(directory)
    return MemoryStorage()
