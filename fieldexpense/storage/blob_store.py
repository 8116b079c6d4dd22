"""Keyed storage for receipt and signature image payloads.

Payloads are kept outside the ledger metadata and addressed by ledger
entry id. ``get`` on a missing key returns None rather than raising.
"""

import asyncio
import base64
import contextlib
import mimetypes
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from fieldexpense.utils.logger import get_logger

logger = get_logger(__name__)

_KEY_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")
_EXTENSIONS = {
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/webp": ".webp",
}
_MIME_TYPES = {ext: mime for mime, ext in _EXTENSIONS.items()}
_MIME_TYPES[".jpeg"] = "image/jpeg"
_DEFAULT_MIME = "application/octet-stream"


class BlobStoreError(RuntimeError):
    """Raised when a payload cannot be read, written, or deleted."""


@dataclass(frozen=True)
class BlobPayload:
    """Binary payload together with its declared mime type."""

    data: bytes
    mime_type: str = "image/jpeg"

    @classmethod
    def from_data_uri(cls, uri: str) -> "BlobPayload":
        """Decode a ``data:<mime>;base64,<data>`` URI.

        Raises:
            ValueError: If the URI is not base64 data.
        """
        header, sep, body = uri.partition(",")
        if not sep or not header.startswith("data:") or ";base64" not in header:
            raise ValueError("Not a base64 data URI")
        mime_type = header[5:].split(";", 1)[0] or _DEFAULT_MIME
        return cls(base64.b64decode(body), mime_type)

    def to_data_uri(self) -> str:
        encoded = base64.b64encode(self.data).decode("ascii")
        return f"data:{self.mime_type};base64,{encoded}"


class BlobStore(Protocol):
    """Interface of the payload store."""

    async def put(self, key: str, payload: BlobPayload) -> None: ...

    async def get(self, key: str) -> BlobPayload | None: ...

    async def delete(self, key: str) -> None: ...

    async def purge_all(self) -> list[str]:
        """Delete every payload and return the keys that could not be removed."""
        ...


class InMemoryBlobStore:
    """Process-local blob store, used for tests and ephemeral sessions."""

    def __init__(self) -> None:
        self._items: dict[str, BlobPayload] = {}

    def keys(self) -> list[str]:
        return list(self._items)

    async def put(self, key: str, payload: BlobPayload) -> None:
        self._items[key] = payload

    async def get(self, key: str) -> BlobPayload | None:
        return self._items.get(key)

    async def delete(self, key: str) -> None:
        self._items.pop(key, None)

    async def purge_all(self) -> list[str]:
        self._items.clear()
        return []


class FileBlobStore:
    """Blob store keeping one file per key in a directory.

    The file extension records the payload's mime type.

    Args:
        root: Directory holding the payload files.
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    def keys(self) -> list[str]:
        if not self.root.is_dir():
            return []
        return sorted(
            {
                p.name.split(".", 1)[0]
                for p in self.root.iterdir()
                if p.is_file() and not p.name.startswith(".")
            }
        )

    async def put(self, key: str, payload: BlobPayload) -> None:
        await asyncio.to_thread(self._put_sync, key, payload)

    async def get(self, key: str) -> BlobPayload | None:
        return await asyncio.to_thread(self._get_sync, key)

    async def delete(self, key: str) -> None:
        await asyncio.to_thread(self._delete_sync, key)

    async def purge_all(self) -> list[str]:
        return await asyncio.to_thread(self._purge_sync)

    def _files_for(self, key: str) -> list[Path]:
        _check_key(key)
        if not self.root.is_dir():
            return []
        return [p for p in self.root.glob(f"{key}.*") if p.is_file()]

    def _put_sync(self, key: str, payload: BlobPayload) -> None:
        _check_key(key)
        extension = _EXTENSIONS.get(payload.mime_type) or (
            mimetypes.guess_extension(payload.mime_type) or ".bin"
        )
        target = self.root / f"{key}{extension}"
        tmp = self.root / f".{key}{extension}.tmp"
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            tmp.write_bytes(payload.data)
            for stale in self._files_for(key):
                if stale != target:
                    stale.unlink()
            os.replace(tmp, target)
        except OSError as exc:
            with contextlib.suppress(OSError):
                tmp.unlink(missing_ok=True)
            raise BlobStoreError(f"Could not store payload {key}: {exc}") from exc
        logger.debug("Stored %d bytes under %s", len(payload.data), key)

    def _get_sync(self, key: str) -> BlobPayload | None:
        files = self._files_for(key)
        if not files:
            return None
        path = files[0]
        try:
            data = path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise BlobStoreError(f"Could not read payload {key}: {exc}") from exc
        suffix = path.suffix.lower()
        mime_type = _MIME_TYPES.get(suffix) or mimetypes.guess_type(path.name)[0]
        return BlobPayload(data, mime_type or _DEFAULT_MIME)

    def _delete_sync(self, key: str) -> None:
        try:
            for path in self._files_for(key):
                path.unlink(missing_ok=True)
        except OSError as exc:
            raise BlobStoreError(f"Could not delete payload {key}: {exc}") from exc

    def _purge_sync(self) -> list[str]:
        if not self.root.is_dir():
            return []
        failed: set[str] = set()
        for path in self.root.iterdir():
            if not path.is_file():
                continue
            try:
                path.unlink()
            except OSError as exc:
                logger.warning("Could not purge %s: %s", path.name, exc)
                failed.add(path.name.lstrip(".").split(".", 1)[0])
        return sorted(failed)


def _check_key(key: str) -> None:
    if not _KEY_PATTERN.match(key):
        raise ValueError(f"Invalid blob key: {key!r}")
