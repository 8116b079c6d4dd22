"""Builders and fakes shared across test modules."""

import asyncio
import datetime as dt
import io
from decimal import Decimal
from typing import Any

import numpy as np
from PIL import Image

from fieldexpense.ledger.models import EntryDraft, ExpenseCategory
from fieldexpense.storage.blob_store import (
    BlobPayload,
    BlobStoreError,
    InMemoryBlobStore,
)


def make_image_bytes(fmt: str = "JPEG", size: tuple[int, int] = (80, 120)) -> bytes:
    """Encode a small synthetic receipt-like image."""
    array = np.full((size[1], size[0], 3), 255, dtype=np.uint8)
    array[10:20, 10 : size[0] - 10] = 0
    buf = io.BytesIO()
    Image.fromarray(array).save(buf, format=fmt)
    return buf.getvalue()


def make_draft(
    title: str = "Jollibee",
    amount: str = "150.00",
    category: ExpenseCategory = ExpenseCategory.FOOD,
) -> EntryDraft:
    return EntryDraft(
        title=title,
        date=dt.date(2024, 3, 15),
        amount=Decimal(amount),
        category=category,
    )


class SequentialIds:
    """Deterministic id factory yielding CWX-00001, CWX-00002, ..."""

    def __init__(self, values: list[str] | None = None) -> None:
        self.values = list(values or [])
        self.count = 0

    def __call__(self) -> str:
        if self.values:
            return self.values.pop(0)
        self.count += 1
        return f"CWX-{self.count:05d}"


class RecordingBlobStore(InMemoryBlobStore):
    """In-memory store that records calls and can fail selected keys."""

    def __init__(self) -> None:
        super().__init__()
        self.deleted: list[str] = []
        self.fail_get: set[str] = set()
        self.fail_delete: set[str] = set()
        self.fail_purge: set[str] = set()

    async def get(self, key: str) -> BlobPayload | None:
        if key in self.fail_get:
            raise BlobStoreError(f"read failed for {key}")
        return await super().get(key)

    async def delete(self, key: str) -> None:
        self.deleted.append(key)
        if key in self.fail_delete:
            raise BlobStoreError(f"delete failed for {key}")
        await super().delete(key)

    async def purge_all(self) -> list[str]:
        survivors = {k: v for k, v in self._items.items() if k in self.fail_purge}
        self._items.clear()
        self._items.update(survivors)
        return sorted(survivors)


class GatedBlobStore(RecordingBlobStore):
    """Store whose writes wait until the test opens the gate."""

    def __init__(self) -> None:
        super().__init__()
        self.gate = asyncio.Event()

    async def put(self, key: str, payload: BlobPayload) -> None:
        await self.gate.wait()
        await super().put(key, payload)


class FakeService:
    """Recognition collaborator returning a canned result or raising."""

    def __init__(self, result: Any = None, error: Exception | None = None) -> None:
        self.result = result
        self.error = error
        self.calls: list[tuple[bytes, str]] = []

    async def extract(self, image: bytes, mime_type: str) -> Any:
        self.calls.append((image, mime_type))
        if self.error is not None:
            raise self.error
        return self.result


class FakeVideoSource:
    """Video source serving a fixed frame with optional torch support."""

    def __init__(
        self,
        frame: np.ndarray | None,
        supports_torch: bool = True,
        torch_fails: bool = False,
    ) -> None:
        self.frame = frame
        self._supports_torch = supports_torch
        self.torch_fails = torch_fails
        self.torch_calls: list[bool] = []
        self.torch_on = False

    @property
    def supports_torch(self) -> bool:
        return self._supports_torch

    def read_frame(self) -> np.ndarray | None:
        return self.frame

    async def set_torch(self, enabled: bool) -> None:
        self.torch_calls.append(enabled)
        if self.torch_fails:
            raise RuntimeError("torch constraint rejected")
        self.torch_on = enabled

    def close(self) -> None:
        pass
