"""
CLI main entry point.
"""

import argparse
import json
import logging
import mimetypes
import sys
from pathlib import Path

from ..config import Config, create_default_config, load_config
from ..pipeline import DocumentIntelligenceService
from ..resilience import PipelineError
from ..schemas.correction import Correction, FeedbackType, FieldCorrection
from ..schemas.document import Document, DocumentCategory, ProcessingContext
from ..schemas.extraction import FIELD_KINDS, ExtractionResult, make_field

logger = logging.getLogger(__name__)

# mimetypes does not know every office type on every platform
EXTRA_MIME_TYPES = {
    ".xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    ".xls": "application/vnd.ms-excel",
    ".csv": "text/csv",
    ".txt": "text/plain",
}


def setup_logging(verbose: bool = False) -> None:
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def create_cli() -> argparse.ArgumentParser:
    """Create CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="taxdoc",
        description="Extract tax fields from invoices, receipts and tax reports",
    )

    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=Path("config.yaml"),
        help="Path to config file (default: config.yaml)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # init-config command
    subparsers.add_parser("init-config", help="Write a default config file")

    # process command
    process_parser = subparsers.add_parser("process", help="Extract tax fields from documents")
    process_parser.add_argument("files", nargs="+", type=Path, help="Documents to process")
    process_parser.add_argument(
        "--category",
        choices=[c.value for c in DocumentCategory],
        default=DocumentCategory.PURCHASE.value,
        help="Sales or purchase document (default: PURCHASE)",
    )
    process_parser.add_argument("--vendor", type=str, help="Known vendor name")
    process_parser.add_argument("--vat-number", type=str, help="Known vendor VAT number")
    process_parser.add_argument(
        "--force",
        action="store_true",
        help="Reprocess even if a stored result exists",
    )
    process_parser.add_argument(
        "--json",
        action="store_true",
        help="Print results as JSON",
    )

    # aggregate command
    aggregate_parser = subparsers.add_parser(
        "aggregate", help="Sum the tax total of a spreadsheet report"
    )
    aggregate_parser.add_argument("file", type=Path, help="XLSX or CSV report")
    aggregate_parser.add_argument(
        "--expected",
        type=str,
        help="Expected total to compare against (within 0.01)",
    )

    # correct command
    correct_parser = subparsers.add_parser("correct", help="Submit a reviewer correction")
    correct_parser.add_argument("ref", type=str, help="Result ID or document hash")
    correct_parser.add_argument(
        "--feedback",
        choices=[f.value for f in FeedbackType],
        required=True,
        help="Reviewer verdict",
    )
    correct_parser.add_argument(
        "--field",
        action="append",
        default=[],
        metavar="NAME=VALUE",
        help="Corrected field value (repeatable)",
    )
    correct_parser.add_argument("--user", type=str, help="Reviewer ID")
    correct_parser.add_argument("--notes", type=str, help="Free-form notes")

    # stats command
    stats_parser = subparsers.add_parser("stats", help="Show pipeline and learning statistics")
    stats_parser.add_argument(
        "--days",
        type=int,
        default=30,
        help="Accuracy window in days (default: 30)",
    )

    # health command
    subparsers.add_parser("health", help="Check breakers, state store and vision service")

    return parser


def guess_mime_type(path: Path) -> str:
    """MIME type from the file suffix."""
    suffix = path.suffix.lower()
    if suffix in EXTRA_MIME_TYPES:
        return EXTRA_MIME_TYPES[suffix]
    mime, _ = mimetypes.guess_type(path.name)
    return mime or "application/octet-stream"


def load_document(path: Path, category: DocumentCategory = DocumentCategory.PURCHASE) -> Document:
    return Document(
        content=path.read_bytes(),
        mime_type=guess_mime_type(path),
        filename=path.name,
        category=category,
    )


def parse_field_arguments(values: list[str]) -> tuple[FieldCorrection, ...]:
    """
    Parse ``name=value`` pairs into field corrections.

    Raises:
        ValueError: malformed pair, unknown field or unparsable value
    """
    corrections = []
    for item in values:
        name, sep, raw = item.partition("=")
        name = name.strip()
        if not sep or not name:
            raise ValueError(f"Expected NAME=VALUE, got {item!r}")
        kind = FIELD_KINDS.get(name)
        if kind is None:
            raise ValueError(f"Unknown field: {name}")
        corrected = make_field(kind, raw.strip(), 1.0, source="reviewer")
        corrections.append(FieldCorrection(field=name, original=None, corrected=corrected))
    return tuple(corrections)


def _print_result(path: Path, result: ExtractionResult) -> None:
    icon = "✓" if result.success else "⚠"
    print(f"  📄 {path.name}")
    print(f"     {icon} {result.strategy.value} ({result.confidence:.0%}, {result.review_state})")
    for name, value in sorted(result.fields.items()):
        print(f"     → {name}: {value.display()} ({value.confidence:.0%})")
    for note in result.suggested_improvements:
        print(f"     ℹ️  {note}")
    if result.error:
        print(f"     ❌ {result.error.code}: {result.error.message}")
    print(f"     Result ID: {result.result_id}")


def cmd_init_config(config_path: Path) -> int:
    """Write a default config file."""
    if config_path.exists():
        print(f"❌ Config already exists: {config_path}")
        return 1
    create_default_config(config_path)
    print(f"✓ Wrote default config to {config_path}")
    return 0


def cmd_process(
    config: Config,
    files: list[Path],
    category: str,
    vendor: str | None,
    vat_number: str | None,
    force: bool,
    as_json: bool,
) -> int:
    """Process documents through the extraction pipeline."""
    context = ProcessingContext(
        known_vendor=vendor,
        vat_number=vat_number,
        force_reprocess=force,
    )

    if not as_json:
        print(f"📊 Processing {len(files)} document(s)...")

    service = DocumentIntelligenceService(config)
    outputs = []
    failed = 0
    try:
        for path in files:
            try:
                document = load_document(path, DocumentCategory(category))
                result = service.process(document, context)
            except (OSError, PipelineError) as e:
                failed += 1
                if as_json:
                    outputs.append({"file": str(path), "error": str(e)})
                else:
                    print(f"  ❌ {path.name}: {e}")
                continue

            if not result.success:
                failed += 1
            if as_json:
                outputs.append({"file": str(path), **result.to_dict()})
            else:
                _print_result(path, result)
    finally:
        service.stop()

    if as_json:
        print(json.dumps(outputs, indent=2, default=str))
    else:
        print(f"\n✓ Processed: {len(files) - failed}, Failed: {failed}")
    return 0 if failed == 0 else 1


def cmd_aggregate(config: Config, path: Path, expected: str | None) -> int:
    """Aggregate a spreadsheet tax report."""
    print(f"📊 Aggregating {path.name}...")

    service = DocumentIntelligenceService(config)
    try:
        result = service.aggregate_report(load_document(path))
    except (OSError, PipelineError) as e:
        print(f"❌ {e}")
        return 1
    finally:
        service.stop()

    for group in result.groups:
        print(
            f"  {group.group:<20} {group.contribution:>12}  "
            f"({group.resolution.value}, {group.row_count} rows)"
        )
    print("=" * 40)
    print(f"  Total:      {result.total}")
    print(f"  Method:     {result.method.value}")
    print(f"  Confidence: {result.confidence:.0%}")
    for warning in result.warnings:
        print(f"  ⚠️  {warning}")

    if expected is not None:
        if result.matches(expected):
            print(f"✓ Matches expected total {expected}")
        else:
            print(f"❌ Expected {expected}, got {result.total}")
            return 1
    return 0


def cmd_correct(
    config: Config,
    ref: str,
    feedback: str,
    fields: list[str],
    user: str | None,
    notes: str | None,
) -> int:
    """Submit a correction for a processed document."""
    try:
        field_corrections = parse_field_arguments(fields)
    except ValueError as e:
        print(f"❌ {e}")
        return 1

    correction = Correction(
        feedback=FeedbackType(feedback),
        field_corrections=field_corrections,
        user_id=user,
        notes=notes,
    )

    service = DocumentIntelligenceService(config)
    try:
        service.submit_correction(ref, correction)
    except PipelineError as e:
        print(f"❌ {e}")
        return 1
    finally:
        service.stop()

    print(f"✓ Recorded {feedback} feedback for {ref}")
    return 0


def cmd_stats(config: Config, days: int) -> int:
    """Show persistent pipeline and learning statistics."""
    service = DocumentIntelligenceService(config)
    try:
        store_stats = service.store.get_stats()
        learning = service.get_learning_stats(days)
    finally:
        service.stop()

    print("\n📊 Pipeline Status")
    print("=" * 40)
    for key, value in store_stats.items():
        print(f"  {key.replace('_', ' ').capitalize():<22} {value}")

    templates = learning["templates"]
    print("\n🧩 Templates")
    print("=" * 40)
    print(f"  Active:              {templates['active_templates']}")
    print(f"  Match-ready:         {templates['match_ready']}")
    print(f"  Average weight:      {templates['average_weight']:.2f}")
    print(f"  Total usage:         {templates['total_usage']}")

    accuracy = learning["accuracy"]
    print(f"\n🎯 Accuracy (last {days} days)")
    print("=" * 40)
    print(f"  Corrections:         {accuracy['corrections']}")
    if accuracy["average_accuracy"] is not None:
        print(f"  Average accuracy:    {accuracy['average_accuracy']:.0%}")
    print(f"  Trend:               {accuracy['trend']}")
    return 0


def cmd_health(config: Config) -> int:
    """Check service health."""
    service = DocumentIntelligenceService(config)
    try:
        statuses = service.get_health()
    finally:
        service.stop()

    healthy = True
    for status in statuses:
        icon = "✓" if status.healthy else "❌"
        line = f"  {icon} {status.service}"
        if status.error:
            line += f": {status.error}"
        print(line)
        healthy = healthy and status.healthy
    return 0 if healthy else 1


def main(args: list[str] | None = None) -> int:
    """Main entry point."""
    parser = create_cli()
    parsed = parser.parse_args(args)

    setup_logging(parsed.verbose)

    if not parsed.command:
        parser.print_help()
        return 1

    if parsed.command == "init-config":
        return cmd_init_config(parsed.config)

    # Load config
    try:
        config = load_config(parsed.config)
    except Exception as e:
        print(f"❌ Failed to load config: {e}")
        return 1

    errors = config.validate()
    if errors:
        print("❌ Invalid config:")
        for error in errors:
            print(f"   - {error}")
        return 1

    # Route to command
    if parsed.command == "process":
        return cmd_process(
            config,
            parsed.files,
            parsed.category,
            parsed.vendor,
            parsed.vat_number,
            parsed.force,
            parsed.json,
        )
    elif parsed.command == "aggregate":
        return cmd_aggregate(config, parsed.file, parsed.expected)
    elif parsed.command == "correct":
        return cmd_correct(
            config, parsed.ref, parsed.feedback, parsed.field, parsed.user, parsed.notes
        )
    elif parsed.command == "stats":
        return cmd_stats(config, parsed.days)
    elif parsed.command == "health":
        return cmd_health(config)
    else:
        parser.print_help()
        return 1


if __name__ == "__main__":
    sys.exit(main())
