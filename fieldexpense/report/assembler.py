"""Liquidation report assembly and export.

Builds a PDF in four sections laid out top to bottom with a running
cursor: header band, personnel and liquidation summary, the expense
table, and the signature block, on landscape A4. An appendix of proof
images follows on portrait A4, one record per ledger entry. A proof that
cannot be resolved or decoded is replaced by a placeholder line and the
appendix continues.
"""

import datetime as dt
import io
import os
import tempfile
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from decimal import Decimal
from enum import StrEnum
from pathlib import Path

from PIL import Image
from reportlab.lib import colors
from reportlab.lib.pagesizes import A4, landscape, portrait
from reportlab.lib.styles import ParagraphStyle
from reportlab.lib.units import mm
from reportlab.lib.utils import ImageReader
from reportlab.pdfgen import canvas
from reportlab.platypus import Paragraph, Table, TableStyle

from fieldexpense.ledger.models import LedgerEntry, ReportMetadata
from fieldexpense.storage.blob_store import BlobPayload, BlobStore
from fieldexpense.utils.config import ReportConfig
from fieldexpense.utils.logger import get_logger

logger = get_logger(__name__)

NAVY = colors.Color(30 / 255, 41 / 255, 59 / 255)
SLATE = colors.Color(100 / 255, 116 / 255, 139 / 255)
EMERALD = colors.Color(16 / 255, 185 / 255, 129 / 255)
ROSE = colors.Color(239 / 255, 68 / 255, 68 / 255)

MARGIN_MM = 15.0
BOTTOM_MARGIN_MM = 15.0
HEADER_BAND_MM = 45.0
LINE_MM = 4.5
SECTION_GAP_MM = 10.0
SIGNATURE_BLOCK_MM = 50.0
PROOF_WIDTH_MM = 120.0
PROOF_HEIGHT_MM = 75.0
CAPTION_MM = 4.0
PROOF_GAP_MM = 10.0
PLACEHOLDER_MM = 10.0
TABLE_COLUMNS_MM = (25.0, 70.0, 92.0, 35.0, 45.0)
TABLE_HEADINGS = (
    "Date",
    "Merchant / Establishment",
    "Verified Address",
    "Category",
    "Amount",
)


class Orientation(StrEnum):
    """Page orientation. Every page is started with one explicitly."""

    LANDSCAPE = "landscape"
    PORTRAIT = "portrait"


class BalanceStatus(StrEnum):
    SURPLUS = "surplus"
    SHORTAGE = "shortage"


class AppendixStatus(StrEnum):
    """Outcome of placing one entry's proof image in the appendix."""

    EMBEDDED = "embedded"
    MISSING = "missing"
    FAILED = "failed"


class ReportValidationError(ValueError):
    """Raised before assembly when the report cannot be produced as asked."""

    reason = "invalid"
    prompt = "The report cannot be generated."

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.prompt)


class EmptyLedgerError(ReportValidationError):
    reason = "empty_ledger"
    prompt = "Please add at least one expense record before generating a report."


class MissingSignatureError(ReportValidationError):
    reason = "missing_signature"
    prompt = "Claimant signature is required for the liquidation report."


class ReportAssemblyError(RuntimeError):
    """Raised when document construction fails unexpectedly."""


@dataclass(frozen=True)
class LiquidationSummary:
    """Cash advanced versus amount spent."""

    received: Decimal
    total_spent: Decimal

    @property
    def balance(self) -> Decimal:
        return self.received - self.total_spent

    @property
    def status(self) -> BalanceStatus:
        return BalanceStatus.SURPLUS if self.balance >= 0 else BalanceStatus.SHORTAGE


@dataclass(frozen=True)
class AppendixRecord:
    """Where and how one entry's proof landed in the appendix."""

    entry_id: str
    page_number: int
    status: AppendixStatus


@dataclass(frozen=True)
class AssembledDocument:
    """A finished report. Each generation produces a new instance."""

    filename: str
    content: bytes
    page_orientations: tuple[Orientation, ...]
    appendix: tuple[AppendixRecord, ...]
    summary: LiquidationSummary

    @property
    def page_count(self) -> int:
        return len(self.page_orientations)


def summarize(entries: Sequence[LedgerEntry], received: Decimal) -> LiquidationSummary:
    """Compute total spent and the balance against the cash advance."""
    total = sum((e.amount for e in entries), Decimal("0.00"))
    return LiquidationSummary(received=received, total_spent=total)


def pdf_image_format(mime_type: str | None) -> str:
    """Map a declared mime type to an image format, JPEG when unrecognized."""
    mime = (mime_type or "").lower()
    if "png" in mime:
        return "PNG"
    if "webp" in mime:
        return "WEBP"
    return "JPEG"


def report_filename(claimant: str, generated: dt.date) -> str:
    """Build ``Liquidation_<claimant>_<YYYY-MM-DD>.pdf``."""
    name = "_".join(claimant.split()) or "Claimant"
    return f"Liquidation_{name}_{generated.isoformat()}.pdf"


def format_money(currency: str, amount: Decimal) -> str:
    return f"{currency} {amount:,.2f}"


def load_proof_image(payload: BlobPayload) -> Image.Image:
    """Decode a stored payload, trying its declared format first.

    Raises:
        PIL.UnidentifiedImageError: If the data is not a decodable image.
    """
    declared = pdf_image_format(payload.mime_type)
    formats = [declared] + [f for f in ("JPEG", "PNG", "WEBP") if f != declared]
    image = Image.open(io.BytesIO(payload.data), formats=formats)
    image.load()
    if image.mode not in ("RGB", "L"):
        image = image.convert("RGB")
    return image


class _PageWriter:
    """Canvas wrapper that tracks pages and a top-down cursor in millimetres."""

    def __init__(self, buffer: io.BytesIO) -> None:
        self.canvas = canvas.Canvas(buffer, pagesize=landscape(A4))
        self.orientations: list[Orientation] = []
        self.cursor = 0.0
        self.width = 0.0
        self.height = 0.0

    @property
    def page_number(self) -> int:
        return len(self.orientations)

    @property
    def usable_bottom(self) -> float:
        return self.height - BOTTOM_MARGIN_MM

    def remaining(self) -> float:
        return self.usable_bottom - self.cursor

    def new_page(self, orientation: Orientation, cursor: float = MARGIN_MM) -> None:
        if self.orientations:
            self.canvas.showPage()
        size = landscape(A4) if orientation is Orientation.LANDSCAPE else portrait(A4)
        self.canvas.setPageSize(size)
        self.width = size[0] / mm
        self.height = size[1] / mm
        self.orientations.append(orientation)
        self.cursor = cursor

    def ensure_room(self, needed: float, orientation: Orientation) -> None:
        if self.remaining() < needed:
            self.new_page(orientation)

    def y(self, top_mm: float) -> float:
        """Convert a distance from the top of the page to canvas points."""
        return (self.height - top_mm) * mm

    def text(
        self,
        x_mm: float,
        top_mm: float,
        value: str,
        size: float = 9,
        bold: bool = False,
        color: colors.Color = NAVY,
    ) -> None:
        self.canvas.setFont("Helvetica-Bold" if bold else "Helvetica", size)
        self.canvas.setFillColor(color)
        self.canvas.drawString(x_mm * mm, self.y(top_mm), value)

    def finish(self) -> None:
        self.canvas.showPage()
        self.canvas.save()


class ReportAssembler:
    """Lays out the liquidation report from ledger state.

    Args:
        config: Organization identity and formatting settings.
        blob_store: Store holding receipt and signature payloads.
        now: Clock used for the generation timestamp and filename.
    """

    def __init__(
        self,
        config: ReportConfig,
        blob_store: BlobStore,
        now: Callable[[], dt.datetime] = dt.datetime.now,
    ) -> None:
        self.config = config
        self.blob_store = blob_store
        self.now = now
        self._cell_style = ParagraphStyle(
            "cell", fontName="Helvetica", fontSize=8, leading=10
        )

    def validate(
        self, entries: Sequence[LedgerEntry], metadata: ReportMetadata
    ) -> None:
        """Reject inputs that would produce an incomplete report.

        Raises:
            EmptyLedgerError: If there are no entries.
            MissingSignatureError: If no signature is referenced.
        """
        if not entries:
            raise EmptyLedgerError()
        if not metadata.signature_ref:
            raise MissingSignatureError()

    async def assemble(
        self, entries: Sequence[LedgerEntry], metadata: ReportMetadata
    ) -> AssembledDocument:
        """Build the report document.

        Args:
            entries: Ledger entries in ledger order.
            metadata: Report metadata with a signature reference.

        Returns:
            The assembled document.

        Raises:
            ReportValidationError: If the ledger is empty or unsigned.
            ReportAssemblyError: If construction fails for any other reason.
        """
        self.validate(entries, metadata)
        entries = list(entries)
        generated = self.now()

        try:
            return await self._build(entries, metadata, generated)
        except Exception as exc:
            logger.exception("Report assembly failed")
            raise ReportAssemblyError(
                "Export failed. Please ensure all receipt images and signatures "
                "are valid."
            ) from exc

    async def _build(
        self,
        entries: list[LedgerEntry],
        metadata: ReportMetadata,
        generated: dt.datetime,
    ) -> AssembledDocument:
        buffer = io.BytesIO()
        writer = _PageWriter(buffer)
        summary = summarize(entries, metadata.received_amount)

        writer.new_page(Orientation.LANDSCAPE, cursor=0.0)
        self._draw_header(writer, generated)
        self._draw_summary(writer, metadata, summary)
        self._draw_table(writer, entries)
        await self._draw_signature_block(writer, metadata)
        appendix = await self._draw_appendix(writer, entries)
        writer.finish()

        document = AssembledDocument(
            filename=report_filename(metadata.claimant, generated.date()),
            content=buffer.getvalue(),
            page_orientations=tuple(writer.orientations),
            appendix=tuple(appendix),
            summary=summary,
        )
        logger.info(
            "Assembled %s: %d pages, %d appendix records",
            document.filename,
            document.page_count,
            len(document.appendix),
        )
        return document

    def _draw_header(self, writer: _PageWriter, generated: dt.datetime) -> None:
        writer.canvas.setFillColor(NAVY)
        writer.canvas.rect(
            0,
            writer.y(HEADER_BAND_MM),
            writer.width * mm,
            HEADER_BAND_MM * mm,
            stroke=0,
            fill=1,
        )
        white = colors.white
        cfg = self.config
        writer.text(MARGIN_MM, 18, cfg.company_name, size=16, bold=True, color=white)
        writer.text(MARGIN_MM, 23, cfg.company_address, size=8, color=white)
        writer.text(MARGIN_MM, 27, f"TIN: {cfg.company_tin}", size=8, color=white)

        right = writer.width * 0.6
        writer.text(
            right, 18, "EXPENSE LIQUIDATION REPORT", size=18, bold=True, color=white
        )
        writer.text(
            right,
            23,
            f"System Generated: {generated:%Y-%m-%d %H:%M:%S}",
            size=8,
            color=white,
        )
        writer.cursor = HEADER_BAND_MM + SECTION_GAP_MM

    def _draw_summary(
        self,
        writer: _PageWriter,
        metadata: ReportMetadata,
        summary: LiquidationSummary,
    ) -> None:
        currency = self.config.currency_label
        top = writer.cursor
        right = writer.width * 0.67

        left_lines = [
            f"Claimant Name: {metadata.claimant}",
            f"Purpose: {metadata.purpose}",
            f"Project Location: {metadata.period_label}",
            f"Period Type: {metadata.period_type.value}",
        ]
        writer.text(MARGIN_MM, top, "PERSONNEL DATA", bold=True)
        for i, line in enumerate(left_lines, 1):
            writer.text(MARGIN_MM, top + i * LINE_MM, line)

        right_lines = [
            f"Audit Window: {metadata.start_date} to {metadata.end_date}",
            f"Cash Advanced: {format_money(currency, summary.received)}",
            f"Total Liquidated: {format_money(currency, summary.total_spent)}",
        ]
        writer.text(right, top, "LIQUIDATION SUMMARY", bold=True)
        for i, line in enumerate(right_lines, 1):
            writer.text(right, top + i * LINE_MM, line)

        balance_top = top + (len(right_lines) + 1) * LINE_MM + 1.5
        if summary.status is BalanceStatus.SURPLUS:
            label = f"Surplus (To Return): {format_money(currency, summary.balance)}"
            writer.text(right, balance_top, label, bold=True, color=EMERALD)
        else:
            amount = format_money(currency, abs(summary.balance))
            label = f"Shortage (Reimburse): {amount}"
            writer.text(right, balance_top, label, bold=True, color=ROSE)

        left_bottom = top + len(left_lines) * LINE_MM
        writer.cursor = max(left_bottom, balance_top) + SECTION_GAP_MM

    def _table_rows(self, entries: list[LedgerEntry]) -> list[list[object]]:
        currency = self.config.currency_label
        rows: list[list[object]] = [list(TABLE_HEADINGS)]
        for entry in entries:
            address = entry.issuer_address or self.config.address_placeholder
            rows.append(
                [
                    entry.date.isoformat(),
                    Paragraph(_escape(entry.title), self._cell_style),
                    Paragraph(_escape(address), self._cell_style),
                    entry.category.value,
                    format_money(currency, entry.amount),
                ]
            )
        return rows

    def _draw_table(self, writer: _PageWriter, entries: list[LedgerEntry]) -> None:
        table = Table(
            self._table_rows(entries),
            colWidths=[w * mm for w in TABLE_COLUMNS_MM],
            repeatRows=1,
        )
        table.setStyle(
            TableStyle(
                [
                    ("BACKGROUND", (0, 0), (-1, 0), NAVY),
                    ("TEXTCOLOR", (0, 0), (-1, 0), colors.white),
                    ("FONTNAME", (0, 0), (-1, 0), "Helvetica-Bold"),
                    ("FONTSIZE", (0, 0), (-1, -1), 8),
                    ("ALIGN", (-1, 1), (-1, -1), "RIGHT"),
                    ("VALIGN", (0, 0), (-1, -1), "TOP"),
                    ("GRID", (0, 0), (-1, -1), 0.25, colors.lightgrey),
                    (
                        "ROWBACKGROUNDS",
                        (0, 1),
                        (-1, -1),
                        [colors.white, colors.whitesmoke],
                    ),
                ]
            )
        )

        available_width = (writer.width - 2 * MARGIN_MM) * mm
        pending: list[Table] = [table]
        while pending:
            part = pending.pop(0)
            available_height = writer.remaining() * mm
            _, height = part.wrapOn(writer.canvas, available_width, available_height)
            if height <= available_height:
                self._place(writer, part, height)
                continue

            pieces = part.split(available_width, available_height)
            if len(pieces) < 2:
                if writer.cursor <= MARGIN_MM:
                    # A single row taller than a page; draw it and move on.
                    self._place(writer, part, height)
                    continue
                writer.new_page(Orientation.LANDSCAPE)
                pending.insert(0, part)
                continue

            head = pieces[0]
            _, head_height = head.wrapOn(
                writer.canvas, available_width, available_height
            )
            self._place(writer, head, head_height)
            writer.new_page(Orientation.LANDSCAPE)
            pending = list(pieces[1:]) + pending

    @staticmethod
    def _place(writer: _PageWriter, flowable: Table, height: float) -> None:
        flowable.drawOn(writer.canvas, MARGIN_MM * mm, writer.y(writer.cursor) - height)
        writer.cursor += height / mm

    async def _draw_signature_block(
        self, writer: _PageWriter, metadata: ReportMetadata
    ) -> None:
        writer.cursor += SECTION_GAP_MM
        writer.ensure_room(SIGNATURE_BLOCK_MM, Orientation.LANDSCAPE)
        top = writer.cursor + 5
        approver_x = writer.width * 0.67

        writer.text(MARGIN_MM, top, "Claimant Signature:", bold=True)
        writer.text(approver_x, top, "Finance Approver:", bold=True)

        try:
            payload = await self.blob_store.get(metadata.signature_ref or "")
            if payload is None:
                raise LookupError(f"signature {metadata.signature_ref} not found")
            image = load_proof_image(payload)
            writer.canvas.drawImage(
                ImageReader(image),
                MARGIN_MM * mm,
                writer.y(top + 20),
                width=40 * mm,
                height=15 * mm,
                preserveAspectRatio=True,
                anchor="sw",
            )
        except Exception as exc:
            logger.warning("Could not render signature: %s", exc)
            writer.text(
                MARGIN_MM,
                top + 12,
                "[Signature image unavailable]",
                size=7,
                color=SLATE,
            )

        writer.canvas.setStrokeColor(NAVY)
        line_y = writer.y(top + 20)
        writer.canvas.line(MARGIN_MM * mm, line_y, 75 * mm, line_y)
        writer.canvas.line(
            approver_x * mm,
            writer.y(top + 20),
            (writer.width - MARGIN_MM - 7) * mm,
            writer.y(top + 20),
        )
        writer.text(MARGIN_MM, top + 25, metadata.claimant, bold=True)
        writer.text(approver_x, top + 25, metadata.approver_name, bold=True)
        writer.cursor = top + 25 + SECTION_GAP_MM

    async def _draw_appendix(
        self, writer: _PageWriter, entries: list[LedgerEntry]
    ) -> list[AppendixRecord]:
        writer.new_page(Orientation.PORTRAIT, cursor=20.0)
        writer.text(
            MARGIN_MM, writer.cursor, "Audit Attachments (Proofs of Expense)", size=16
        )
        writer.cursor = 35.0

        records: list[AppendixRecord] = []
        for entry in entries:
            status, image = await self._resolve_proof(entry)
            if status is AppendixStatus.EMBEDDED and image is not None:
                writer.ensure_room(CAPTION_MM + PROOF_HEIGHT_MM, Orientation.PORTRAIT)
                try:
                    self._draw_proof(writer, entry, image)
                except Exception as exc:
                    logger.warning("Could not embed proof for %s: %s", entry.id, exc)
                    status = AppendixStatus.FAILED
            if status is not AppendixStatus.EMBEDDED:
                writer.ensure_room(PLACEHOLDER_MM, Orientation.PORTRAIT)
                self._draw_placeholder(writer, entry, status)
            records.append(AppendixRecord(entry.id, writer.page_number, status))
        return records

    async def _resolve_proof(
        self, entry: LedgerEntry
    ) -> tuple[AppendixStatus, Image.Image | None]:
        if not entry.receipt_ref:
            return AppendixStatus.MISSING, None
        try:
            payload = await self.blob_store.get(entry.receipt_ref)
            if payload is None:
                return AppendixStatus.MISSING, None
            return AppendixStatus.EMBEDDED, load_proof_image(payload)
        except Exception as exc:
            logger.warning("Skipping image attachment for %s: %s", entry.id, exc)
            return AppendixStatus.FAILED, None

    def _draw_proof(
        self, writer: _PageWriter, entry: LedgerEntry, image: Image.Image
    ) -> None:
        caption = " | ".join(
            [
                f"Ref ID: {entry.id}",
                entry.title,
                entry.date.isoformat(),
                format_money(self.config.currency_label, entry.amount),
            ]
        )
        writer.text(MARGIN_MM, writer.cursor, caption, size=8, color=SLATE)
        writer.cursor += CAPTION_MM
        top = writer.cursor
        writer.canvas.drawImage(
            ImageReader(image),
            MARGIN_MM * mm,
            writer.y(top + PROOF_HEIGHT_MM),
            width=PROOF_WIDTH_MM * mm,
            height=PROOF_HEIGHT_MM * mm,
            preserveAspectRatio=True,
            anchor="nw",
        )
        writer.cursor = top + PROOF_HEIGHT_MM + PROOF_GAP_MM

    def _draw_placeholder(
        self, writer: _PageWriter, entry: LedgerEntry, status: AppendixStatus
    ) -> None:
        if status is AppendixStatus.MISSING:
            message = f"[No receipt image on file for record {entry.id}]"
        else:
            message = f"[Image attachment failed or corrupted for record {entry.id}]"
        writer.text(MARGIN_MM, writer.cursor, message, size=7, color=SLATE)
        writer.cursor += PLACEHOLDER_MM


def write_document(document: AssembledDocument, output_dir: Path) -> Path:
    """Write a document to ``output_dir`` under its filename.

    The file appears only once fully written.

    Args:
        document: Assembled report.
        output_dir: Destination directory, created if needed.

    Returns:
        Path of the written file.
    """
    output_dir.mkdir(parents=True, exist_ok=True)
    target = output_dir / document.filename
    fd, tmp_name = tempfile.mkstemp(dir=output_dir, prefix=".", suffix=".pdf.tmp")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(document.content)
        os.replace(tmp_name, target)
    except OSError:
        Path(tmp_name).unlink(missing_ok=True)
        raise
    logger.info("Report written to %s", target)
    return target


def _escape(text: str) -> str:
    return text.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")
