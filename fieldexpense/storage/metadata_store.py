"""Durable JSON storage for ledger metadata and report metadata.

Two independent records live in the data directory. Each is read once
at startup and rewritten wholesale on every mutation.
"""

import contextlib
import os
from pathlib import Path

from pydantic import ValidationError

from fieldexpense.ledger.models import LedgerRecord, ReportMetadata
from fieldexpense.utils.config import StorageConfig
from fieldexpense.utils.logger import get_logger

logger = get_logger(__name__)


class MetadataStoreError(RuntimeError):
    """Raised when a persisted record cannot be read or written."""


class MetadataStore:
    """File-backed store for the ledger and report metadata records.

    Args:
        data_dir: Directory holding the JSON records.
        entries_file: File name of the ledger record.
        metadata_file: File name of the report metadata record.
    """

    def __init__(
        self,
        data_dir: Path,
        entries_file: str = "ledger_entries.json",
        metadata_file: str = "report_metadata.json",
    ) -> None:
        self.data_dir = Path(data_dir)
        self.entries_path = self.data_dir / entries_file
        self.metadata_path = self.data_dir / metadata_file

    @classmethod
    def from_config(cls, config: StorageConfig) -> "MetadataStore":
        return cls(Path(config.data_dir), config.entries_file, config.metadata_file)

    def load_ledger(self) -> LedgerRecord | None:
        """Read the ledger record, or None if it was never written."""
        raw = self._read(self.entries_path)
        if raw is None:
            return None
        try:
            return LedgerRecord.model_validate_json(raw)
        except ValidationError as exc:
            raise MetadataStoreError(f"Corrupt ledger record: {exc}") from exc

    def load_metadata(self) -> ReportMetadata | None:
        """Read the report metadata record, or None if it was never written."""
        raw = self._read(self.metadata_path)
        if raw is None:
            return None
        try:
            return ReportMetadata.model_validate_json(raw)
        except ValidationError as exc:
            raise MetadataStoreError(f"Corrupt metadata record: {exc}") from exc

    def save_ledger(self, record: LedgerRecord) -> None:
        self._write(self.entries_path, record.model_dump_json(indent=2))
        logger.debug("Persisted %d ledger entries", len(record.entries))

    def save_metadata(self, metadata: ReportMetadata) -> None:
        self._write(self.metadata_path, metadata.model_dump_json(indent=2))

    def _read(self, path: Path) -> str | None:
        if not path.exists():
            return None
        try:
            return path.read_text(encoding="utf-8")
        except OSError as exc:
            raise MetadataStoreError(f"Could not read {path}: {exc}") from exc

    def _write(self, path: Path, content: str) -> None:
        tmp = path.with_name(f".{path.name}.tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_text(content, encoding="utf-8")
            os.replace(tmp, path)
        except OSError as exc:
            with contextlib.suppress(OSError):
                tmp.unlink(missing_ok=True)
            raise MetadataStoreError(f"Could not write {path}: {exc}") from exc
