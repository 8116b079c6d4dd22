"""Ordered in-memory ledger with durable persistence.

The store owns entry metadata and report metadata. Image payloads are
delegated to the blob store under the entry id; only the metadata
projection is written to the metadata store, after every mutation once
the initial load has completed.
"""

import secrets
import string
from collections.abc import Callable
from decimal import Decimal
from typing import Any

from fieldexpense.storage.blob_store import BlobPayload, BlobStore, BlobStoreError
from fieldexpense.storage.metadata_store import MetadataStore
from fieldexpense.utils.logger import get_logger

from .models import (
    EntryDraft,
    ExpenseCategory,
    LedgerEntry,
    LedgerRecord,
    ReportMetadata,
)

logger = get_logger(__name__)

SIGNATURE_KEY = "signature"
ID_PREFIX = "CWX-"
_ID_ALPHABET = string.ascii_uppercase + string.digits
_IMMUTABLE_FIELDS = {"id", "receipt_ref"}


class LedgerError(RuntimeError):
    """Base class for ledger store errors."""


class LedgerNotLoadedError(LedgerError):
    """Raised when the ledger is mutated before its initial load."""


class EntryNotFoundError(LedgerError):
    """Raised when an entry id is not in the ledger."""


class LedgerClearedError(LedgerError):
    """Raised when the ledger was cleared while a write was in flight."""


def generate_entry_id() -> str:
    """Generate an id of the form ``CWX-XXXXX``."""
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(5))
    return f"{ID_PREFIX}{suffix}"


class LedgerStore:
    """Expense ledger plus the report metadata singleton.

    Args:
        metadata_store: Durable store for the two metadata records.
        blob_store: Store for receipt and signature payloads.
        id_factory: Callable producing candidate entry ids.
    """

    def __init__(
        self,
        metadata_store: MetadataStore,
        blob_store: BlobStore,
        id_factory: Callable[[], str] = generate_entry_id,
    ) -> None:
        self.metadata_store = metadata_store
        self.blob_store = blob_store
        self.id_factory = id_factory
        self._entries: list[LedgerEntry] = []
        self._metadata = ReportMetadata()
        self._pending_purge: set[str] = set()
        self._reserved_ids: set[str] = set()
        self._clear_epoch = 0
        self._loaded = False

    @property
    def is_loaded(self) -> bool:
        return self._loaded

    @property
    def entries(self) -> list[LedgerEntry]:
        """Entries in ledger order, newest first."""
        return list(self._entries)

    @property
    def metadata(self) -> ReportMetadata:
        return self._metadata

    async def load(self) -> None:
        """Hydrate the ledger from durable storage. Runs once per store."""
        if self._loaded:
            logger.debug("Ledger already loaded")
            return

        record = self.metadata_store.load_ledger()
        if record is not None:
            self._entries = list(record.entries)
            self._pending_purge = set(record.pending_purge)
        metadata = self.metadata_store.load_metadata()
        if metadata is not None:
            self._metadata = metadata
        self._loaded = True
        logger.info("Loaded %d ledger entries", len(self._entries))

        if self._pending_purge:
            await self._retry_pending_purge()

    def get(self, entry_id: str) -> LedgerEntry:
        for entry in self._entries:
            if entry.id == entry_id:
                return entry
        raise EntryNotFoundError(f"No ledger entry with id {entry_id}")

    async def add(
        self, draft: EntryDraft, receipt: BlobPayload | None = None
    ) -> LedgerEntry:
        """Record a new entry under a freshly generated id.

        Args:
            draft: Entry fields.
            receipt: Optional proof image, stored in the blob store under the id.

        Returns:
            The stored entry.

        Raises:
            BlobStoreError: If the receipt image cannot be stored.
            LedgerClearedError: If the ledger was cleared while the receipt
                was being stored.
        """
        self._require_loaded()
        entry_id = self._new_id()
        if receipt is not None:
            epoch = self._clear_epoch
            self._reserved_ids.add(entry_id)
            try:
                await self.blob_store.put(entry_id, receipt)
            finally:
                self._reserved_ids.discard(entry_id)
            if epoch != self._clear_epoch:
                await self._discard_orphan(entry_id)
                raise LedgerClearedError(
                    f"Ledger was cleared before entry {entry_id} was recorded"
                )

        entry = LedgerEntry(
            id=entry_id,
            receipt_ref=entry_id if receipt is not None else None,
            **draft.model_dump(),
        )
        self._entries.insert(0, entry)
        self._persist_ledger()
        logger.info("Added entry %s (%s %s)", entry.id, entry.currency, entry.amount)
        return entry

    async def update(
        self,
        entry_id: str,
        fields: dict[str, Any],
        receipt: BlobPayload | None = None,
    ) -> LedgerEntry:
        """Merge fields into an existing entry.

        Args:
            entry_id: Id of the entry to edit.
            fields: Partial entry fields. ``id`` and ``receipt_ref`` are ignored.
            receipt: Optional replacement proof image.

        Returns:
            The updated entry.

        Raises:
            EntryNotFoundError: If the entry does not exist, or was deleted
                while the replacement image was being stored.
        """
        self._require_loaded()
        self._index_of(entry_id)

        if receipt is not None:
            await self.blob_store.put(entry_id, receipt)
            if not any(e.id == entry_id for e in self._entries):
                await self._discard_orphan(entry_id)

        # Merge onto the entry as it is now; other edits may have landed
        # while the payload write was pending.
        index = self._index_of(entry_id)
        changes = {k: v for k, v in fields.items() if k not in _IMMUTABLE_FIELDS}
        merged = self._entries[index].model_dump() | changes
        if receipt is not None:
            merged["receipt_ref"] = entry_id
        updated = LedgerEntry.model_validate(merged)
        self._entries[index] = updated
        self._persist_ledger()
        logger.info("Updated entry %s", entry_id)
        return updated

    async def delete(self, entry_id: str) -> None:
        """Remove an entry and request deletion of its payload."""
        self._require_loaded()
        index = self._index_of(entry_id)
        del self._entries[index]
        self._persist_ledger()

        try:
            await self.blob_store.delete(entry_id)
        except BlobStoreError as exc:
            logger.warning("Could not delete payload for %s: %s", entry_id, exc)
            self._pending_purge.add(entry_id)
            self._persist_ledger()
        logger.info("Deleted entry %s", entry_id)

    async def clear_all(self) -> None:
        """Empty the ledger, reset metadata, and purge every payload.

        Keys the blob store fails to remove are remembered and retried on
        the next load; their ids are never issued again.
        """
        self._require_loaded()
        self._clear_epoch += 1
        known_keys = {e.id for e in self._entries} | self._pending_purge
        if self._metadata.signature_ref:
            known_keys.add(self._metadata.signature_ref)

        self._entries = []
        self._metadata = ReportMetadata()
        self._pending_purge = known_keys
        self._persist_ledger()
        self._persist_metadata()

        try:
            failed = await self.blob_store.purge_all()
        except BlobStoreError as exc:
            logger.warning("Blob purge failed: %s", exc)
            failed = sorted(known_keys)

        self._pending_purge = set(failed)
        self._persist_ledger()
        if failed:
            logger.warning("%d payloads left pending purge", len(failed))
        logger.info("Cleared all ledger data")

    async def update_metadata(self, fields: dict[str, Any]) -> ReportMetadata:
        """Merge fields into the report metadata. ``signature_ref`` is ignored."""
        self._require_loaded()
        changes = {k: v for k, v in fields.items() if k != "signature_ref"}
        self._metadata = ReportMetadata.model_validate(
            self._metadata.model_dump() | changes
        )
        self._persist_metadata()
        return self._metadata

    async def set_signature(self, payload: BlobPayload) -> ReportMetadata:
        """Store the claimant signature image and reference it from metadata."""
        self._require_loaded()
        epoch = self._clear_epoch
        await self.blob_store.put(SIGNATURE_KEY, payload)
        if epoch != self._clear_epoch:
            await self._discard_orphan(SIGNATURE_KEY)
            raise LedgerClearedError("Ledger was cleared before the signature was set")
        self._pending_purge.discard(SIGNATURE_KEY)
        self._metadata = self._metadata.model_copy(
            update={"signature_ref": SIGNATURE_KEY}
        )
        self._persist_ledger()
        self._persist_metadata()
        logger.info("Stored claimant signature")
        return self._metadata

    def filter(self, category: ExpenseCategory | None = None) -> list[LedgerEntry]:
        """Entries in ledger order, optionally restricted to one category."""
        if category is None:
            return self.entries
        return [e for e in self._entries if e.category == category]

    def total_spent(self) -> Decimal:
        return sum((e.amount for e in self._entries), Decimal("0.00"))

    def category_totals(self) -> dict[ExpenseCategory, Decimal]:
        totals: dict[ExpenseCategory, Decimal] = {}
        for entry in self._entries:
            current = totals.get(entry.category, Decimal("0.00"))
            totals[entry.category] = current + entry.amount
        return totals

    def _require_loaded(self) -> None:
        if not self._loaded:
            raise LedgerNotLoadedError("Ledger store has not been loaded")

    def _index_of(self, entry_id: str) -> int:
        for i, entry in enumerate(self._entries):
            if entry.id == entry_id:
                return i
        raise EntryNotFoundError(f"No ledger entry with id {entry_id}")

    def _new_id(self) -> str:
        taken = (
            {e.id for e in self._entries}
            | self._pending_purge
            | self._reserved_ids
            | {SIGNATURE_KEY}
        )
        while True:
            candidate = self.id_factory()
            if candidate not in taken:
                return candidate
            logger.debug("Id collision on %s, regenerating", candidate)

    def _persist_ledger(self) -> None:
        self.metadata_store.save_ledger(
            LedgerRecord(
                entries=self._entries,
                pending_purge=sorted(self._pending_purge),
            )
        )

    def _persist_metadata(self) -> None:
        self.metadata_store.save_metadata(self._metadata)

    async def _discard_orphan(self, key: str) -> None:
        try:
            await self.blob_store.delete(key)
        except BlobStoreError as exc:
            logger.warning("Could not discard orphaned payload %s: %s", key, exc)
            self._pending_purge.add(key)
            self._persist_ledger()

    async def _retry_pending_purge(self) -> None:
        for key in sorted(self._pending_purge):
            try:
                await self.blob_store.delete(key)
            except BlobStoreError as exc:
                logger.warning("Payload %s still pending purge: %s", key, exc)
                continue
            self._pending_purge.discard(key)
        self._persist_ledger()
