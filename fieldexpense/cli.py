"""Command-line interface for the expense ledger and report export.

Provides subcommands for scanning or uploading receipts, listing the
ledger, editing report metadata, storing a signature image, exporting
the liquidation report, and clearing all data.
"""

import argparse
import asyncio
import json
import mimetypes
import sys
from pathlib import Path
from typing import Any

from fieldexpense.capture.controller import (
    CameraUnavailableError,
    CaptureController,
    CaptureError,
    open_camera,
)
from fieldexpense.ledger.models import ExpenseCategory, PeriodType
from fieldexpense.ledger.store import LedgerError
from fieldexpense.report.assembler import ReportAssemblyError, ReportValidationError
from fieldexpense.storage.blob_store import BlobPayload, BlobStoreError
from fieldexpense.utils.config import AppConfig, load_config
from fieldexpense.utils.logger import get_logger, setup_logging
from fieldexpense.workflow import (
    ExpenseWorkflow,
    ExportInProgressError,
    PendingDraft,
    build_workflow,
)

logger = get_logger(__name__)

_EDIT_FIELDS = ("title", "date", "amount", "currency", "category", "issuer_address")
_METADATA_FIELDS = (
    "claimant",
    "approver_name",
    "purpose",
    "period_type",
    "period_label",
    "start_date",
    "end_date",
    "received_amount",
)


class CLIError(Exception):
    """Raised for errors reported to the user with exit status 1."""


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


def _collect(args: argparse.Namespace, names: tuple[str, ...]) -> dict[str, Any]:
    values = {name: getattr(args, name) for name in names}
    return {k: v for k, v in values.items() if v is not None}


async def _finish_draft(
    workflow: ExpenseWorkflow, pending: PendingDraft, args: argparse.Namespace
) -> None:
    if not pending.recognized:
        print(
            f"Recognition failed ({pending.error}); using manual entry",
            file=sys.stderr,
        )
    edits = _collect(args, _EDIT_FIELDS)
    if args.dry_run:
        _print_json(
            {
                "draft_id": pending.draft_id,
                "recognized": pending.recognized,
                "draft": pending.draft.model_dump(mode="json") | edits,
            }
        )
        return
    entry = await workflow.confirm(pending.draft_id, edits)
    _print_json(entry.model_dump(mode="json"))


async def upload_receipt(
    workflow: ExpenseWorkflow, args: argparse.Namespace
) -> None:
    """Recognize an image file and record it in the ledger."""
    if not args.file.exists():
        raise CLIError(f"{args.file} does not exist")
    mime_type = mimetypes.guess_type(args.file.name)[0] or "image/jpeg"
    pending = await workflow.upload(args.file.read_bytes(), mime_type)
    if pending is not None:
        await _finish_draft(workflow, pending, args)


async def scan_receipt(
    workflow: ExpenseWorkflow, config: AppConfig, args: argparse.Namespace
) -> None:
    """Capture a still from the camera and record it in the ledger."""
    source = open_camera(config.capture)
    try:
        controller = CaptureController(source, config.capture)
        pending = await workflow.scan(controller)
    finally:
        source.close()
    if pending is None:
        raise CLIError("Capture was ignored")
    await _finish_draft(workflow, pending, args)


def list_entries(workflow: ExpenseWorkflow, category: ExpenseCategory | None) -> None:
    """Print the ledger, newest first, with totals."""
    ledger = workflow.ledger
    currency = workflow.config.report.currency_label
    entries = ledger.filter(category)
    for entry in entries:
        print(
            f"{entry.id}  {entry.date}  {entry.category.value:<13} "
            f"{currency} {entry.amount:>12,.2f}  {entry.title}"
        )
    print(f"\n{'=' * 50}")
    for cat, total in ledger.category_totals().items():
        print(f"{cat.value + ':':<15} {currency} {total:,.2f}")
    print(f"{'Total spent:':<15} {currency} {ledger.total_spent():,.2f}")
    print(f"{'Entries:':<15} {len(entries)}")


async def store_signature(workflow: ExpenseWorkflow, path: Path) -> None:
    if not path.exists():
        raise CLIError(f"{path} does not exist")
    mime_type = mimetypes.guess_type(path.name)[0] or "image/jpeg"
    await workflow.ledger.set_signature(BlobPayload(path.read_bytes(), mime_type))
    print("Signature stored")


async def export_report(workflow: ExpenseWorkflow, output_dir: Path | None) -> None:
    result = await workflow.generate_report(output_dir)
    document = result.document
    print(f"\n{'=' * 50}")
    print("Liquidation Report Exported")
    print(f"{'=' * 50}")
    print(f"Pages:      {document.page_count}")
    print(f"Entries:    {len(document.appendix)}")
    print(f"Balance:    {document.summary.balance:,.2f} ({document.summary.status})")
    print(f"Output:     {result.path}")


async def run(args: argparse.Namespace, config: AppConfig) -> None:
    """Execute a parsed command against a freshly loaded workflow."""
    workflow = build_workflow(config)
    await workflow.start()

    if args.command == "scan":
        await scan_receipt(workflow, config, args)
    elif args.command == "upload":
        await upload_receipt(workflow, args)
    elif args.command == "list":
        list_entries(workflow, args.category)
    elif args.command == "delete":
        await workflow.ledger.delete(args.entry_id)
        print(f"Deleted {args.entry_id}")
    elif args.command == "meta":
        changes = _collect(args, _METADATA_FIELDS)
        metadata = (
            await workflow.ledger.update_metadata(changes)
            if changes
            else workflow.ledger.metadata
        )
        _print_json(metadata.model_dump(mode="json"))
    elif args.command == "sign":
        await store_signature(workflow, args.image)
    elif args.command == "report":
        await export_report(workflow, args.output)
    elif args.command == "clear":
        await workflow.ledger.clear_all()
        print("All ledger data cleared")


def _add_edit_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--title", help="Merchant or establishment name")
    parser.add_argument("--date", help="Transaction date (YYYY-MM-DD)")
    parser.add_argument("--amount", help="Amount paid")
    parser.add_argument("--currency", help="Currency code")
    parser.add_argument(
        "--category", choices=[c.value for c in ExpenseCategory], help="Category"
    )
    parser.add_argument("--address", dest="issuer_address", help="Merchant address")
    parser.add_argument(
        "--dry-run", action="store_true", help="Print the draft without recording it"
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Field Expense Liquidation",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("-c", "--config", type=Path, help="Configuration YAML file")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    scan_parser = subparsers.add_parser(
        "scan", help="Capture a receipt from the camera"
    )
    _add_edit_arguments(scan_parser)

    upload_parser = subparsers.add_parser("upload", help="Record a receipt image file")
    upload_parser.add_argument("file", type=Path, help="Receipt image")
    _add_edit_arguments(upload_parser)

    list_parser = subparsers.add_parser("list", help="List ledger entries")
    list_parser.add_argument(
        "--category",
        type=ExpenseCategory,
        choices=list(ExpenseCategory),
        help="Only show one category",
    )

    delete_parser = subparsers.add_parser("delete", help="Delete a ledger entry")
    delete_parser.add_argument("entry_id", help="Entry id (CWX-XXXXX)")

    meta_parser = subparsers.add_parser("meta", help="Show or edit report metadata")
    meta_parser.add_argument("--claimant")
    meta_parser.add_argument("--approver", dest="approver_name")
    meta_parser.add_argument("--purpose")
    meta_parser.add_argument(
        "--period-type", type=PeriodType, choices=list(PeriodType)
    )
    meta_parser.add_argument("--period-label")
    meta_parser.add_argument("--start-date")
    meta_parser.add_argument("--end-date")
    meta_parser.add_argument("--received", dest="received_amount")

    sign_parser = subparsers.add_parser("sign", help="Store a claimant signature image")
    sign_parser.add_argument("image", type=Path, help="Signature image file")

    report_parser = subparsers.add_parser(
        "report", help="Export the liquidation report"
    )
    report_parser.add_argument(
        "-o", "--output", type=Path, help="Output directory (default from config)"
    )

    subparsers.add_parser("clear", help="Delete all entries, metadata and images")
    return parser


def main(argv: list[str] | None = None) -> None:
    """Parse CLI arguments and dispatch to the appropriate command.

    Args:
        argv: Command-line arguments (defaults to sys.argv).
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    config = load_config(args.config)
    setup_logging(config.log_level, config.log_file)

    try:
        asyncio.run(run(args, config))
    except ReportValidationError as exc:
        print(f"Error: {exc.prompt}", file=sys.stderr)
        sys.exit(1)
    except (
        CLIError,
        CameraUnavailableError,
        CaptureError,
        BlobStoreError,
        ExportInProgressError,
        ReportAssemblyError,
        LedgerError,
    ) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
