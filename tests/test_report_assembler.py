"""Tests for liquidation report assembly and export."""

import asyncio
import datetime as dt
from decimal import Decimal
from pathlib import Path
from unittest.mock import patch

import pytest
from helpers import RecordingBlobStore, make_draft, make_image_bytes
from PIL import UnidentifiedImageError

from fieldexpense.ledger.models import ExpenseCategory, LedgerEntry, ReportMetadata
from fieldexpense.report.assembler import (
    AppendixStatus,
    AssembledDocument,
    BalanceStatus,
    EmptyLedgerError,
    MissingSignatureError,
    Orientation,
    ReportAssembler,
    _PageWriter,
    ReportAssemblyError,
    ReportValidationError,
    load_proof_image,
    pdf_image_format,
    report_filename,
    summarize,
    write_document,
)
from fieldexpense.storage.blob_store import BlobPayload
from fieldexpense.utils.config import ReportConfig

GENERATED = dt.datetime(2024, 6, 1, 10, 30, 0)


def _entry(index: int, amount: str = "100.00", receipt: bool = True) -> LedgerEntry:
    entry_id = f"CWX-{index:05d}"
    draft = make_draft(f"Merchant {index}", amount, ExpenseCategory.FOOD)
    return LedgerEntry(
        id=entry_id,
        receipt_ref=entry_id if receipt else None,
        **draft.model_dump(),
    )


def _signed_metadata(**fields: object) -> ReportMetadata:
    return ReportMetadata(signature_ref="signature", **fields)


@pytest.fixture
def store() -> RecordingBlobStore:
    store = RecordingBlobStore()
    asyncio.run(store.put("signature", BlobPayload(make_image_bytes("JPEG"))))
    return store


@pytest.fixture
def assembler(store: RecordingBlobStore) -> ReportAssembler:
    return ReportAssembler(ReportConfig(), store, now=lambda: GENERATED)


def _store_receipts(store: RecordingBlobStore, entries: list[LedgerEntry]) -> None:
    for entry in entries:
        if entry.receipt_ref:
            payload = BlobPayload(make_image_bytes("PNG"), "image/png")
            asyncio.run(store.put(entry.receipt_ref, payload))


class TestHelpers:
    @pytest.mark.parametrize(
        "mime,expected",
        [
            ("image/png", "PNG"),
            ("image/webp", "WEBP"),
            ("image/jpeg", "JPEG"),
            ("application/octet-stream", "JPEG"),
            (None, "JPEG"),
        ],
    )
    def test_pdf_image_format(self, mime: str | None, expected: str) -> None:
        assert pdf_image_format(mime) == expected

    def test_report_filename(self) -> None:
        name = report_filename("Juan  Dela Cruz", dt.date(2024, 6, 1))
        assert name == "Liquidation_Juan_Dela_Cruz_2024-06-01.pdf"

    def test_load_proof_image_with_wrong_declared_type(self) -> None:
        payload = BlobPayload(make_image_bytes("PNG"), "application/octet-stream")
        image = load_proof_image(payload)
        assert image.mode == "RGB"
        assert image.size == (80, 120)

    def test_load_proof_image_rejects_garbage(self) -> None:
        with pytest.raises(UnidentifiedImageError):
            load_proof_image(BlobPayload(b"not an image", "image/jpeg"))


class TestSummary:
    """Tests for the liquidation balance."""

    def test_shortage(self) -> None:
        entries = [_entry(1, "700"), _entry(2, "500")]
        summary = summarize(entries, Decimal("1000"))
        assert summary.total_spent == Decimal("1200.00")
        assert summary.balance == Decimal("-200.00")
        assert summary.status is BalanceStatus.SHORTAGE

    def test_surplus(self) -> None:
        entries = [_entry(1, "300"), _entry(2, "500")]
        summary = summarize(entries, Decimal("1000"))
        assert summary.balance == Decimal("200.00")
        assert summary.status is BalanceStatus.SURPLUS

    def test_exact_liquidation_is_surplus(self) -> None:
        summary = summarize([_entry(1, "1000")], Decimal("1000"))
        assert summary.balance == 0
        assert summary.status is BalanceStatus.SURPLUS


class TestValidation:
    """Tests for refusals before any output is produced."""

    def test_empty_ledger_refused(self, assembler: ReportAssembler) -> None:
        with pytest.raises(EmptyLedgerError) as excinfo:
            asyncio.run(assembler.assemble([], _signed_metadata()))
        assert excinfo.value.reason == "empty_ledger"
        assert "expense record" in excinfo.value.prompt

    def test_missing_signature_refused(self, assembler: ReportAssembler) -> None:
        with pytest.raises(MissingSignatureError) as excinfo:
            asyncio.run(assembler.assemble([_entry(1)], ReportMetadata()))
        assert excinfo.value.reason == "missing_signature"

    def test_reasons_are_distinct(self) -> None:
        assert EmptyLedgerError.reason != MissingSignatureError.reason
        assert issubclass(EmptyLedgerError, ReportValidationError)
        assert issubclass(MissingSignatureError, ReportValidationError)

    def test_empty_ledger_checked_first(self, assembler: ReportAssembler) -> None:
        with pytest.raises(EmptyLedgerError):
            asyncio.run(assembler.assemble([], ReportMetadata()))


class TestAssemble:
    """Tests for document layout and appendix isolation."""

    def test_produces_pdf(
        self, assembler: ReportAssembler, store: RecordingBlobStore
    ) -> None:
        entries = [_entry(1), _entry(2)]
        _store_receipts(store, entries)
        metadata = _signed_metadata(claimant="Juan Dela Cruz", received_amount=500)

        document = asyncio.run(assembler.assemble(entries, metadata))

        assert document.content.startswith(b"%PDF")
        assert document.filename == "Liquidation_Juan_Dela_Cruz_2024-06-01.pdf"
        assert document.summary.total_spent == Decimal("200.00")
        assert document.summary.status is BalanceStatus.SURPLUS

    def test_orientation_set_per_page(
        self, assembler: ReportAssembler, store: RecordingBlobStore
    ) -> None:
        entries = [_entry(i) for i in range(1, 7)]
        _store_receipts(store, entries)

        document = asyncio.run(assembler.assemble(entries, _signed_metadata()))

        orientations = document.page_orientations
        assert orientations[0] is Orientation.LANDSCAPE
        first_appendix = orientations.index(Orientation.PORTRAIT)
        assert all(o is Orientation.LANDSCAPE for o in orientations[:first_appendix])
        assert all(o is Orientation.PORTRAIT for o in orientations[first_appendix:])
        # Six 75 mm proofs cannot share one portrait page.
        assert len(orientations) - first_appendix >= 2
        assert document.page_count == len(orientations)

    def test_long_ledger_spans_landscape_pages(
        self, assembler: ReportAssembler
    ) -> None:
        entries = [_entry(i, receipt=False) for i in range(1, 61)]

        document = asyncio.run(assembler.assemble(entries, _signed_metadata()))

        main_pages = document.page_orientations.index(Orientation.PORTRAIT)
        assert main_pages >= 2
        assert len(document.appendix) == 60

    def test_one_failed_proof_keeps_every_record(
        self, assembler: ReportAssembler, store: RecordingBlobStore
    ) -> None:
        entries = [_entry(i) for i in range(1, 6)]
        _store_receipts(store, entries)
        store.fail_get.add(entries[2].id)

        document = asyncio.run(assembler.assemble(entries, _signed_metadata()))

        assert [r.entry_id for r in document.appendix] == [e.id for e in entries]
        statuses = [r.status for r in document.appendix]
        assert statuses.count(AppendixStatus.EMBEDDED) == 4
        assert statuses[2] is AppendixStatus.FAILED

    def test_corrupt_and_missing_proofs_become_placeholders(
        self, assembler: ReportAssembler, store: RecordingBlobStore
    ) -> None:
        corrupt, absent, no_receipt, good = (
            _entry(1),
            _entry(2),
            _entry(3, receipt=False),
            _entry(4),
        )
        asyncio.run(store.put(corrupt.id, BlobPayload(b"garbage", "image/jpeg")))
        _store_receipts(store, [good])

        document = asyncio.run(
            assembler.assemble([corrupt, absent, no_receipt, good], _signed_metadata())
        )

        assert [r.status for r in document.appendix] == [
            AppendixStatus.FAILED,
            AppendixStatus.MISSING,
            AppendixStatus.MISSING,
            AppendixStatus.EMBEDDED,
        ]

    def test_failed_embed_places_notice_below_caption(
        self, assembler: ReportAssembler, store: RecordingBlobStore
    ) -> None:
        entry = _entry(1)
        _store_receipts(store, [entry])
        drawn: list[tuple[str, float]] = []
        original_text = _PageWriter.text

        def record(writer, x_mm, top_mm, value, *args, **kwargs):
            drawn.append((value, top_mm))
            return original_text(writer, x_mm, top_mm, value, *args, **kwargs)

        with (
            patch.object(_PageWriter, "text", autospec=True, side_effect=record),
            patch(
                "fieldexpense.report.assembler.ImageReader",
                side_effect=OSError("broken image"),
            ),
        ):
            document = asyncio.run(assembler.assemble([entry], _signed_metadata()))

        assert document.appendix[0].status is AppendixStatus.FAILED
        caption_top = next(top for text, top in drawn if text.startswith("Ref ID:"))
        notice_top = next(top for text, top in drawn if "failed or corrupted" in text)
        assert notice_top > caption_top

    def test_appendix_pages_are_ordered(
        self, assembler: ReportAssembler, store: RecordingBlobStore
    ) -> None:
        entries = [_entry(i) for i in range(1, 8)]
        _store_receipts(store, entries)

        document = asyncio.run(assembler.assemble(entries, _signed_metadata()))

        pages = [r.page_number for r in document.appendix]
        assert pages == sorted(pages)
        first_appendix = document.page_orientations.index(Orientation.PORTRAIT) + 1
        assert pages[0] == first_appendix

    def test_missing_signature_image_does_not_abort(
        self, store: RecordingBlobStore
    ) -> None:
        asyncio.run(store.delete("signature"))
        assembler = ReportAssembler(ReportConfig(), store, now=lambda: GENERATED)

        document = asyncio.run(assembler.assemble([_entry(1)], _signed_metadata()))

        assert document.content.startswith(b"%PDF")

    def test_unexpected_failure_is_single_assembly_error(
        self, assembler: ReportAssembler
    ) -> None:
        with patch.object(
            ReportAssembler, "_draw_table", side_effect=RuntimeError("layout bug")
        ):
            with pytest.raises(ReportAssemblyError):
                asyncio.run(assembler.assemble([_entry(1)], _signed_metadata()))

    def test_each_generation_is_new_document(
        self, assembler: ReportAssembler
    ) -> None:
        entries = [_entry(1, receipt=False)]
        first = asyncio.run(assembler.assemble(entries, _signed_metadata()))
        second = asyncio.run(assembler.assemble(entries, _signed_metadata()))
        assert first is not second


class TestWriteDocument:
    def test_writes_file_atomically(self, tmp_path: Path) -> None:
        document = AssembledDocument(
            filename="Liquidation_Test_2024-06-01.pdf",
            content=b"%PDF-1.4 test",
            page_orientations=(Orientation.LANDSCAPE,),
            appendix=(),
            summary=summarize([], Decimal("0")),
        )

        path = write_document(document, tmp_path / "reports")

        assert path == tmp_path / "reports" / document.filename
        assert path.read_bytes() == b"%PDF-1.4 test"
        assert [p.name for p in path.parent.iterdir()] == [document.filename]
