"""End-to-end expense flow.

Capture or upload an image, turn it into a draft through recognition,
let the user confirm the draft into the ledger, sign, and export the
liquidation report. Recognition failures degrade to a manual draft that
still carries the image. Results arriving for a view the user already
closed are dropped.
"""

import asyncio
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from fieldexpense.capture.controller import CaptureController
from fieldexpense.ledger.models import (
    EntryDraft,
    ExpenseCategory,
    LedgerEntry,
    ReportMetadata,
)
from fieldexpense.ledger.store import LedgerStore
from fieldexpense.recognition.adapter import RecognitionAdapter
from fieldexpense.recognition.service import OpenAIRecognitionService, RecognitionError
from fieldexpense.report.assembler import (
    AssembledDocument,
    MissingSignatureError,
    ReportAssembler,
    ReportAssemblyError,
    write_document,
)
from fieldexpense.session import ViewGuard, ViewToken
from fieldexpense.signature.rasterizer import SignaturePad
from fieldexpense.storage.blob_store import BlobPayload, FileBlobStore
from fieldexpense.storage.metadata_store import MetadataStore
from fieldexpense.utils.config import AppConfig
from fieldexpense.utils.logger import get_logger

logger = get_logger(__name__)

CAPTURE_VIEW = "capture"
SIGNATURE_VIEW = "signature"


class ExportInProgressError(RuntimeError):
    """Raised when a report export is requested while one is running."""


class DraftNotFoundError(KeyError):
    """Raised when a pending draft id is unknown or already resolved."""


@dataclass
class PendingDraft:
    """A draft awaiting user confirmation.

    ``recognized`` is False when recognition failed and the fields are
    manual-entry defaults; ``receipt`` is kept either way.
    """

    draft: EntryDraft
    receipt: BlobPayload | None
    recognized: bool
    error: str | None = None
    draft_id: str = field(default_factory=lambda: uuid.uuid4().hex)


@dataclass(frozen=True)
class ExportResult:
    document: AssembledDocument
    path: Path


class ExpenseWorkflow:
    """Coordinates capture, recognition, ledger, signature and export.

    Args:
        ledger: Loaded or loadable ledger store.
        adapter: Recognition adapter producing drafts from images.
        assembler: Report assembler.
        config: Application configuration.
        guard: View generation guard shared with the presentation layer.
    """

    def __init__(
        self,
        ledger: LedgerStore,
        adapter: RecognitionAdapter,
        assembler: ReportAssembler,
        config: AppConfig,
        guard: ViewGuard | None = None,
    ) -> None:
        self.ledger = ledger
        self.adapter = adapter
        self.assembler = assembler
        self.config = config
        self.guard = guard or ViewGuard()
        self._pending: dict[str, PendingDraft] = {}
        self._exporting = False

    @property
    def exporting(self) -> bool:
        return self._exporting

    @property
    def pending_drafts(self) -> list[PendingDraft]:
        return list(self._pending.values())

    async def start(self) -> None:
        await self.ledger.load()

    async def scan(
        self, controller: CaptureController, token: ViewToken | None = None
    ) -> PendingDraft | None:
        """Capture a still and run it through recognition.

        Args:
            controller: Capture controller bound to the open camera.
            token: Token of the capture view; a fresh one is opened if omitted.

        Returns:
            The pending draft, or None if the capture was ignored because
            one was already running or the view closed meanwhile.

        Raises:
            CaptureError: If no still could be produced.
        """
        token = token or self.guard.open(CAPTURE_VIEW)
        image = await controller.capture()
        if image is None:
            return None
        if not self.guard.is_current(token):
            logger.info("Capture view closed, discarding captured still")
            return None
        return await self._draft_from(BlobPayload(image.data, image.mime_type), token)

    async def upload(
        self, data: bytes, mime_type: str, token: ViewToken | None = None
    ) -> PendingDraft | None:
        """Run an existing image file through recognition.

        Raises:
            ValueError: If the upload is empty.
        """
        if not data:
            raise ValueError("Uploaded image is empty")
        payload = BlobPayload(data, mime_type or "image/jpeg")
        return await self._draft_from(payload, token)

    def manual_draft(self) -> PendingDraft:
        """Start a blank draft for manual entry without an image."""
        return self._remember(
            PendingDraft(draft=self._blank_draft(), receipt=None, recognized=False)
        )

    def get_draft(self, draft_id: str) -> PendingDraft:
        try:
            return self._pending[draft_id]
        except KeyError:
            raise DraftNotFoundError(draft_id) from None

    def discard_draft(self, draft_id: str) -> None:
        self._pending.pop(draft_id, None)

    async def confirm(
        self, draft_id: str, edits: dict[str, Any] | None = None
    ) -> LedgerEntry:
        """Record a pending draft in the ledger as a verified entry.

        Args:
            draft_id: Id of the pending draft.
            edits: Field corrections made by the user.

        Returns:
            The new ledger entry.
        """
        pending = self.get_draft(draft_id)
        fields = pending.draft.model_dump() | (edits or {}) | {"verified": True}
        entry = await self.ledger.add(
            EntryDraft.model_validate(fields), pending.receipt
        )
        self._pending.pop(draft_id, None)
        return entry

    async def save_signature(
        self, pad: SignaturePad, token: ViewToken | None = None
    ) -> ReportMetadata | None:
        """Export the signature pad and store it as the claimant signature.

        Returns:
            Updated metadata, or None if the signature view closed first.

        Raises:
            MissingSignatureError: If nothing was drawn.
        """
        if pad.is_empty:
            raise MissingSignatureError()
        data = await asyncio.to_thread(pad.export)
        if token is not None and not self.guard.is_current(token):
            logger.info("Signature view closed, discarding signature")
            return None
        metadata = await self.ledger.set_signature(BlobPayload(data, "image/jpeg"))
        if token is not None:
            self.guard.close(token.view)
        return metadata

    async def generate_report(self, output_dir: Path | None = None) -> ExportResult:
        """Assemble the report and write it to disk.

        Only one export runs at a time.

        Raises:
            ExportInProgressError: If an export is already running.
            ReportValidationError: If the ledger is empty or unsigned.
            ReportAssemblyError: If construction or writing fails.
        """
        if self._exporting:
            raise ExportInProgressError("A report export is already running")

        self._exporting = True
        try:
            document = await self.assembler.assemble(
                self.ledger.entries, self.ledger.metadata
            )
            target_dir = output_dir or Path(self.config.report.output_dir)
            try:
                path = await asyncio.to_thread(write_document, document, target_dir)
            except OSError as exc:
                raise ReportAssemblyError(f"Could not write report: {exc}") from exc
        finally:
            self._exporting = False
        return ExportResult(document=document, path=path)

    async def _draft_from(
        self, payload: BlobPayload, token: ViewToken | None
    ) -> PendingDraft | None:
        try:
            draft = await self.adapter.recognize(payload.data, payload.mime_type)
            pending = PendingDraft(draft=draft, receipt=payload, recognized=True)
        except RecognitionError as exc:
            logger.warning("Recognition failed, falling back to manual entry: %s", exc)
            pending = PendingDraft(
                draft=self._blank_draft(),
                receipt=payload,
                recognized=False,
                error=str(exc),
            )

        if token is not None and not self.guard.is_current(token):
            logger.info("View %s closed, discarding draft", token.view)
            return None
        return self._remember(pending)

    def _remember(self, pending: PendingDraft) -> PendingDraft:
        self._pending[pending.draft_id] = pending
        # First key is the oldest draft.
        while len(self._pending) > max(self.config.max_pending_drafts, 1):
            oldest = next(iter(self._pending))
            self._pending.pop(oldest)
            logger.info("Dropped unconfirmed draft %s", oldest)
        return pending

    def _blank_draft(self) -> EntryDraft:
        recognition = self.config.recognition
        return EntryDraft(
            currency=recognition.default_currency,
            category=recognition.default_category or ExpenseCategory.MISCELLANEOUS,
        )


def build_workflow(config: AppConfig) -> ExpenseWorkflow:
    """Wire the file-backed stores and the OpenAI recognizer from config."""
    storage = config.storage
    blob_store = FileBlobStore(Path(storage.data_dir) / storage.blob_dir)
    ledger = LedgerStore(MetadataStore.from_config(storage), blob_store)
    adapter = RecognitionAdapter(
        OpenAIRecognitionService(config.recognition), config.recognition
    )
    assembler = ReportAssembler(config.report, blob_store)
    return ExpenseWorkflow(ledger, adapter, assembler, config)
