"""Async JSON document storage keyed by path."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, List, Optional, Protocol, runtime_checkable

from .errors import CorruptDocumentError, StorageError

LOGGER = logging.getLogger(__name__)

PathLike = str | Path


@runtime_checkable
class JsonStore(Protocol):
    """Minimal async key/value interface over JSON documents."""

    async def read_json(self, path: PathLike) -> Optional[Any]:
        """Return the parsed document, ``None`` if absent.

        Raises :class:`CorruptDocumentError` when the document cannot be parsed.
        """

    async def write_json(self, path: PathLike, data: Any) -> None: ...

    async def list_dir(self, path: PathLike) -> List[str]: ...

    async def exists(self, path: PathLike) -> bool: ...

    async def delete(self, path: PathLike) -> bool: ...


class FileJsonStore:
    """Filesystem-backed :class:`JsonStore`.

    Blocking file access runs in a worker thread. Writes go through a
    temporary file and ``os.replace`` so readers never observe a partial
    document.
    """

    def __init__(self, root: PathLike = ".") -> None:
        self.root = Path(root)

    def resolve(self, path: PathLike) -> Path:
        return self.root / Path(path)

    async def read_json(self, path: PathLike) -> Optional[Any]:
        return await asyncio.to_thread(self._read_json, self.resolve(path))

    async def write_json(self, path: PathLike, data: Any) -> None:
        await asyncio.to_thread(self._write_json, self.resolve(path), data)

    async def list_dir(self, path: PathLike) -> List[str]:
        return await asyncio.to_thread(self._list_dir, self.resolve(path))

    async def exists(self, path: PathLike) -> bool:
        return await asyncio.to_thread(self.resolve(path).exists)

    async def delete(self, path: PathLike) -> bool:
        return await asyncio.to_thread(self._delete, self.resolve(path))

    @staticmethod
    def _read_json(target: Path) -> Optional[Any]:
        if not target.is_file():
            return None
        try:
            raw = target.read_text(encoding="utf-8")
        except OSError as error:
            raise StorageError(f"Unable to read {target}: {error}") from error
        except UnicodeDecodeError as error:
            raise CorruptDocumentError(str(target), str(error)) from error
        try:
            return json.loads(raw)
        except json.JSONDecodeError as error:
            raise CorruptDocumentError(str(target), str(error)) from error

    @staticmethod
    def _write_json(target: Path, data: Any) -> None:
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            handle, temp_name = tempfile.mkstemp(prefix=f".{target.name}.", dir=target.parent)
            with os.fdopen(handle, "w", encoding="utf-8") as stream:
                json.dump(data, stream, indent=2, ensure_ascii=False)
                stream.write("\n")
            os.replace(temp_name, target)
        except OSError as error:
            raise StorageError(f"Unable to write {target}: {error}") from error
        LOGGER.debug("Wrote JSON document %s", target)

    @staticmethod
    def _list_dir(target: Path) -> List[str]:
        if not target.is_dir():
            return []
        return sorted(entry.name for entry in target.iterdir())

    @staticmethod
    def _delete(target: Path) -> bool:
        try:
            target.unlink()
        except FileNotFoundError:
            return False
        except OSError as error:
            raise StorageError(f"Unable to delete {target}: {error}") from error
        return True


__all__ = ["FileJsonStore", "JsonStore", "PathLike"]
