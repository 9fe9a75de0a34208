"""
Command-line front end for the expense export pipeline.

Every sub-command maps onto one ExportOrchestrator operation and prints its
JSON response on stdout.  ``export`` and ``re-export`` also write the
artifact into the output directory and report the path instead of the
file content.

Usage:
    expense-export --database-url sqlite:///exports.db init-db --with-source-tables
    expense-export create-batch per_diem 2025-01-01 2025-01-31
    expense-export pull <batch-id>
    expense-export validate <batch-id>
    expense-export export <batch-id> --output-dir exports/
    expense-export mark-posted <batch-id> --reference ERP-2025-001
    expense-export reconciliation --period 2025-01

Exit codes:
    0  success
    1  the operation was refused (invalid state, not found, conflict, audit)
    2  bad arguments or configuration
    3  an upstream source was unavailable; safe to retry
"""

from __future__ import annotations

import argparse
import json
import os
import sys
from datetime import date, datetime
from pathlib import Path
from uuid import UUID
from typing import Any, Sequence, TextIO

import yaml
from sqlalchemy.orm import sessionmaker

from export_config import load_settings
from export_kernel.db.engine import build_engine, create_tables
from export_kernel.exceptions import ExpenseExportError
from export_kernel.logging_config import configure_logging, get_logger
from expense_export.collaborators.sql import SOURCE_METADATA, SqlIncidents, SqlSourceRecords
from expense_export.domain.types import BatchStatus, ExportType, RecordStatus
from expense_export.orchestrator import ExportOrchestrator
from expense_export.services.batch_service import check_page
from expense_export.services.profile_service import profile_from_dict

logger = get_logger("cli")

EXIT_OK = 0
EXIT_REFUSED = 1
EXIT_USAGE = 2
EXIT_RETRY = 3

_EXPORT_TYPES = [t.value for t in ExportType]


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="expense-export",
        description="Pull, validate, export and reconcile training expense batches.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--config", help="Override YAML file (default: $EXPENSE_EXPORT_CONFIG)")
    parser.add_argument("--database-url", help="Pipeline database URL (default: settings)")
    parser.add_argument(
        "--source-url",
        help="Training application database URL (default: the pipeline database)",
    )
    parser.add_argument("--actor", help="Actor UUID recorded on audit entries")
    parser.add_argument("--log-level", help="Log level (default: settings)")

    sub = parser.add_subparsers(dest="command", required=True)

    init = sub.add_parser("init-db", help="Create the pipeline tables")
    init.add_argument(
        "--with-source-tables",
        action="store_true",
        help="Also create the (read-only) source tables; for local tooling",
    )

    create = sub.add_parser("create-batch", help="Create a draft batch")
    create.add_argument("export_type", choices=_EXPORT_TYPES)
    create.add_argument("period_start", help="YYYY-MM-DD")
    create.add_argument("period_end", help="YYYY-MM-DD")
    create.add_argument("--entity", action="append", dest="entities", default=None)
    create.add_argument("--cost-centre", action="append", dest="cost_centres", default=None)
    create.add_argument("--profile", dest="profile_id")
    create.add_argument("--notes")

    for name, help_text in (
        ("pull", "Pull eligible source records into a draft batch"),
        ("validate", "Validate every record of a batch"),
        ("delete", "Delete a draft batch"),
        ("get-batch", "Show one batch"),
        ("audit-trail", "Show the audit entries of a batch"),
    ):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("batch_id")

    for name, help_text in (
        ("export", "Export a validated batch"),
        ("re-export", "Re-send exported and failed records"),
    ):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("batch_id")
        p.add_argument("--output-dir", help="Artifact directory (default: settings)")

    posted = sub.add_parser("mark-posted", help="Record external posting confirmation")
    posted.add_argument("batch_id")
    posted.add_argument("--record", action="append", dest="record_ids", default=None)
    posted.add_argument("--reference", dest="external_reference")

    failed = sub.add_parser("mark-failed", help="Record external posting failures")
    failed.add_argument("batch_id")
    failed.add_argument("--record", action="append", dest="record_ids", required=True)
    failed.add_argument("--reason", required=True)

    defer = sub.add_parser("defer", help="Defer records to a later batch")
    defer.add_argument("batch_id")
    defer.add_argument("--record", action="append", dest="record_ids", required=True)

    listing = sub.add_parser("list-batches", help="List batches, newest first")
    listing.add_argument("--status", choices=[s.value for s in BatchStatus])
    listing.add_argument("--export-type", choices=_EXPORT_TYPES)
    listing.add_argument("--page", type=int, default=1)
    listing.add_argument("--page-size", type=int, default=20)

    records = sub.add_parser("records", help="List the records of a batch")
    records.add_argument("batch_id")
    records.add_argument("--status", choices=[s.value for s in RecordStatus])
    records.add_argument("--page", type=int, default=1)
    records.add_argument("--page-size", type=int, default=50)

    recon = sub.add_parser("reconciliation", help="Exported vs posted comparison")
    recon.add_argument("--export-type", choices=_EXPORT_TYPES)
    recon.add_argument("--batch", dest="batch_id")
    recon.add_argument("--period", dest="posting_period", help="YYYY-MM")

    sub.add_parser("summary", help="Totals across exported and posted records")
    sub.add_parser("verify-audit", help="Verify the audit hash chain")

    profile = sub.add_parser("save-profile", help="Create or update an export profile")
    profile.add_argument("file", help="JSON file with the profile fields")
    profile.add_argument("--id", dest="profile_id")

    sub.add_parser("list-profiles", help="List active export profiles")

    return parser.parse_args(argv)


def _check_request(args: argparse.Namespace) -> None:
    """
    Convert free-form arguments to their typed values, in place.

    Raises:
        KeyError, ValueError: malformed argument or profile body.
        OSError: the profile file cannot be read.
    """
    if args.actor:
        args.actor = UUID(args.actor)
    command = args.command
    if command == "create-batch":
        args.period_start = date.fromisoformat(args.period_start)
        args.period_end = date.fromisoformat(args.period_end)
    if command in ("list-batches", "records"):
        check_page(args.page, args.page_size)
    if command == "reconciliation" and args.posting_period:
        datetime.strptime(args.posting_period, "%Y-%m")
    if command == "save-profile":
        args.profile = profile_from_dict(json.loads(Path(args.file).read_text(encoding="utf-8")))


def _write_artifact(response: dict[str, Any], output_dir: Path) -> dict[str, Any]:
    output_dir.mkdir(parents=True, exist_ok=True)
    path = output_dir / response["fileName"]
    path.write_text(response["fileContent"], encoding="utf-8")
    logger.info("artifact_written", extra={"path": str(path)})
    result = {k: v for k, v in response.items() if k != "fileContent"}
    result["path"] = str(path)
    return result


def _dispatch(
    args: argparse.Namespace,
    orchestrator: ExportOrchestrator,
    output_dir: Path,
) -> dict[str, Any]:
    actor = args.actor
    command = args.command

    if command == "create-batch":
        return orchestrator.create_batch(
            args.export_type,
            args.period_start,
            args.period_end,
            entity_filter=args.entities,
            cost_centre_filter=args.cost_centres,
            profile_id=args.profile_id,
            notes=args.notes,
            actor_id=actor,
        )
    if command == "pull":
        return orchestrator.pull_records(args.batch_id, actor_id=actor)
    if command == "validate":
        return orchestrator.validate(args.batch_id, actor_id=actor)
    if command == "export":
        response = orchestrator.export(args.batch_id, actor_id=actor)
        return _write_artifact(response, Path(args.output_dir) if args.output_dir else output_dir)
    if command == "re-export":
        response = orchestrator.re_export(args.batch_id, actor_id=actor)
        return _write_artifact(response, Path(args.output_dir) if args.output_dir else output_dir)
    if command == "mark-posted":
        return orchestrator.mark_posted(
            args.batch_id,
            record_ids=args.record_ids,
            external_reference=args.external_reference,
            actor_id=actor,
        )
    if command == "mark-failed":
        return orchestrator.mark_failed(args.batch_id, args.record_ids, args.reason, actor_id=actor)
    if command == "defer":
        return orchestrator.defer_records(args.batch_id, args.record_ids, actor_id=actor)
    if command == "delete":
        return orchestrator.delete_batch(args.batch_id, actor_id=actor)
    if command == "get-batch":
        return orchestrator.get_batch(args.batch_id)
    if command == "list-batches":
        return orchestrator.list_batches(args.status, args.export_type, args.page, args.page_size)
    if command == "records":
        return orchestrator.get_records(args.batch_id, args.status, args.page, args.page_size)
    if command == "reconciliation":
        return orchestrator.get_reconciliation(
            {
                "export_type": args.export_type,
                "batch_id": args.batch_id,
                "posting_period": args.posting_period,
            }
        )
    if command == "summary":
        return orchestrator.get_summary()
    if command == "audit-trail":
        return orchestrator.get_audit_trail(args.batch_id)
    if command == "verify-audit":
        return orchestrator.verify_audit_chain()
    if command == "save-profile":
        return orchestrator.save_profile(args.profile, profile_id=args.profile_id, actor_id=actor)
    if command == "list-profiles":
        return orchestrator.list_profiles()
    raise ValueError(f"Unknown command {command!r}")


def _emit(stream: TextIO, payload: dict[str, Any]) -> None:
    stream.write(json.dumps(payload, indent=2, sort_keys=True, default=str))
    stream.write("\n")


def main(
    argv: Sequence[str] | None = None,
    stdout: TextIO | None = None,
    stderr: TextIO | None = None,
) -> int:
    args = _parse_args(argv)
    out = stdout or sys.stdout
    err = stderr or sys.stderr

    try:
        settings = load_settings(Path(args.config) if args.config else None, environ=os.environ)
    except (FileNotFoundError, KeyError, ValueError, yaml.YAMLError) as exc:
        _emit(err, {"error": {"code": "CONFIG_ERROR", "message": str(exc)}})
        return EXIT_USAGE

    try:
        _check_request(args)
    except (KeyError, ValueError, OSError) as exc:
        _emit(err, {"error": {"code": "BAD_REQUEST", "message": str(exc)}})
        return EXIT_USAGE

    configure_logging(level=(args.log_level or settings.logging.level).upper(), stream=err)

    db = settings.database
    engine = build_engine(
        args.database_url or db.url,
        echo=db.echo,
        pool_size=db.pool_size,
        max_overflow=db.max_overflow,
    )
    source_engine = build_engine(args.source_url) if args.source_url else engine

    try:
        if args.command == "init-db":
            create_tables(engine)
            if args.with_source_tables:
                SOURCE_METADATA.create_all(source_engine)
            _emit(out, {"initialized": True, "sourceTables": bool(args.with_source_tables)})
            return EXIT_OK

        orchestrator = ExportOrchestrator(
            session_factory=sessionmaker(bind=engine, expire_on_commit=False),
            source=SqlSourceRecords(source_engine),
            incidents=SqlIncidents(source_engine),
            settings=settings,
        )
        response = _dispatch(args, orchestrator, Path(settings.artifact.output_dir))
    except ExpenseExportError as exc:
        _emit(err, {"error": {"code": exc.code, "message": str(exc)}})
        return EXIT_RETRY if exc.retryable else EXIT_REFUSED
    finally:
        if source_engine is not engine:
            source_engine.dispose()
        engine.dispose()

    _emit(out, response)
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
