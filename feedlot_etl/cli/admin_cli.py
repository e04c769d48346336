"""
Admin CLI for operating the feedlot ETL.

Usage:
    python -m feedlot_etl.cli.admin_cli register --org <org> --pipeline <name> --filepath <path> [--force]
    python -m feedlot_etl.cli.admin_cli process --file-id <id> [--separator ';']
    python -m feedlot_etl.cli.admin_cli retry --file-id <id> --actor <name>
    python -m feedlot_etl.cli.admin_cli retry-queue --org <org>
    python -m feedlot_etl.cli.admin_cli fail --file-id <id> --actor <name> --reason <text>
    python -m feedlot_etl.cli.admin_cli status --file-id <id>
    python -m feedlot_etl.cli.admin_cli checksum-history --org <org> --filepath <path>
    python -m feedlot_etl.cli.admin_cli dlq-list --org <org> [--include-resolved]
    python -m feedlot_etl.cli.admin_cli dlq-resolve --entry-id <id> --actor <name> [--notes ...]
    python -m feedlot_etl.cli.admin_cli dlq-reclassify --entry-id <id> --error-kind permanent --actor <name>
    python -m feedlot_etl.cli.admin_cli dlq-mark --entry-id <id> --actor <name> [--delay-minutes 0]
    python -m feedlot_etl.cli.admin_cli dlq-process-marked --org <org> --actor <name>
    python -m feedlot_etl.cli.admin_cli dlq-cleanup --org <org> [--older-than-days 30] [--dry-run]
    python -m feedlot_etl.cli.admin_cli pending-list --org <org> [--status pending]
    python -m feedlot_etl.cli.admin_cli pending-resolve --pending-id <id> --actor <name> [--dimension-id <id>]
    python -m feedlot_etl.cli.admin_cli pending-reject --pending-id <id> --actor <name>
    python -m feedlot_etl.cli.admin_cli retry-stats --org <org>
    python -m feedlot_etl.cli.admin_cli health --org <org>
    python -m feedlot_etl.cli.admin_cli check-alerts --org <org>
    python -m feedlot_etl.cli.admin_cli monitor --org <org> [--metrics-port 8000]
    python -m feedlot_etl.cli.admin_cli metrics [--org <org>]
    python -m feedlot_etl.cli.admin_cli run-log-stats --org <org> [--hours 24]
    python -m feedlot_etl.cli.admin_cli run-log-cleanup --org <org> [--retain-days 90] [--dry-run]
"""

import argparse
import json
import sys
import threading
from datetime import datetime, timedelta, timezone
from pathlib import PurePosixPath

from feedlot_etl.app import EtlServices, build_services
from feedlot_etl.config import load_settings
from feedlot_etl.core.models.file_record import FileState
from feedlot_etl.etl.checksum import calculate_checksum
from feedlot_etl.etl.orchestrator import OrchestratorResult, ProcessFileRequest
from feedlot_etl.observability.logger import get_logger
from feedlot_etl.observability.metrics import generate_metrics, start_metrics_server
from feedlot_etl.pipelines import VALIDATORS
from feedlot_etl.utils.validation import (
    validate_actor,
    validate_error_kind,
    validate_file_path,
    validate_id,
    validate_limit,
    validate_notes,
)
from feedlot_etl.warehouse.run_log import cleanup_run_log, get_run_log_stats

logger = get_logger(__name__)


def format_timestamp(ts: datetime | str | None) -> str:
    """Format timestamp for display."""
    if isinstance(ts, str):
        return ts
    return ts.strftime("%Y-%m-%d %H:%M:%S") if ts else "N/A"


def print_header(title: str) -> None:
    print(f"\n{'=' * 80}")
    print(title)
    print(f"{'=' * 80}\n")


def print_result(result: OrchestratorResult) -> None:
    summary = result.summary
    print_header(f"RUN {result.run_id} FOR FILE {result.file_id}")
    print(f"Success:     {result.success}")
    print(f"Final state: {FileState(result.final_state).value}")
    print(f"Duration:    {result.duration_ms} ms\n")
    print(f"Rows: total={summary.total} processed={summary.processed} failed={summary.failed}")
    print(
        f"      inserted={summary.inserted} updated={summary.updated} "
        f"skipped={summary.skipped} pending={summary.pending}"
    )
    if result.errors:
        print(f"\nErrors ({len(result.errors)}):")
        for error in result.errors[:20]:
            print(f"  - {error}")
    if result.warnings:
        print(f"\nWarnings ({len(result.warnings)}):")
        for warning in result.warnings[:20]:
            print(f"  - {warning}")
    print()


# =======================
# FILE COMMANDS
# =======================

def register_command(args, services: EtlServices) -> int:
    """Register an uploaded file so it can be processed."""
    organization_id = validate_id(args.org, "org")
    filepath = validate_file_path(args.filepath)
    filename = args.filename or PurePosixPath(filepath).name
    checksum = calculate_checksum(services.blobs.download(filepath))

    record = services.state_machine.register_file(
        organization_id, filename, filepath, args.pipeline, checksum=checksum, force=args.force
    )
    print(f"Registered file {record.id} ({record.pipeline}) in state {FileState(record.current_state).value}")
    return 0


def process_command(args, services: EtlServices) -> int:
    """Process an UPLOADED file."""
    file_id = validate_id(args.file_id, "file_id")
    parse_options = {
        key: value
        for key, value in (("separator", args.separator), ("encoding", args.encoding))
        if value is not None
    }
    logger.info(f"Processing file: {file_id}")

    result = services.orchestrator.process_file(
        ProcessFileRequest(file_id=file_id, parse_options=parse_options or None)
    )
    print_result(result)
    return 0 if result.success else 1


def retry_command(args, services: EtlServices) -> int:
    """Reset a FAILED or LOADED file and reprocess it."""
    file_id = validate_id(args.file_id, "file_id")
    actor = validate_actor(args.actor)
    logger.info(f"Reprocessing file {file_id} for {actor}")

    result = services.orchestrator.retry_file(file_id, actor)
    print_result(result)
    return 0 if result.success else 1


def retry_queue_command(args, services: EtlServices) -> int:
    """Reprocess FAILED files whose scheduled retry is due."""
    organization_id = validate_id(args.org, "org")
    results = services.orchestrator.process_retry_queue(organization_id)

    if not results:
        print("\nNo files are due for retry.")
        return 0
    for result in results:
        print_result(result)
    return 0 if all(r.success for r in results) else 1


def fail_command(args, services: EtlServices) -> int:
    """Mark a non-terminal file FAILED, e.g. one left behind by a dead worker."""
    file_id = validate_id(args.file_id, "file_id")
    actor = validate_actor(args.actor)
    reason = validate_notes(args.reason, "reason")

    record = services.state_machine.fail(file_id, actor, reason)
    print(f"File {record.id} is now {FileState(record.current_state).value}: {record.last_error}")
    return 0


def checksum_history_command(args, services: EtlServices) -> int:
    """List registered files with the same content as a blob."""
    organization_id = validate_id(args.org, "org")
    filepath = validate_file_path(args.filepath)
    checksum = calculate_checksum(services.blobs.download(filepath))

    history = services.state_machine.get_checksum_history(checksum, organization_id)
    if not history:
        print(f"\nNo files with checksum {checksum}.")
        return 0

    print_header(f"FILES WITH CHECKSUM {checksum[:16]}... ({len(history)})")
    print(f"{'Id':<38} {'Filename':<30} {'State':<11} {'Uploaded'}")
    print(f"{'-' * 100}")
    for record in history:
        print(
            f"{record.id:<38} {record.filename:<30} {FileState(record.current_state).value:<11} "
            f"{format_timestamp(record.created_at)}"
        )
    print()
    return 0


def status_command(args, services: EtlServices) -> int:
    """Show a file's state and run-log trail."""
    file_id = validate_id(args.file_id, "file_id")
    status = services.orchestrator.get_file_status(file_id)
    record = status.file

    print_header(f"FILE {record.id}")
    print(f"Filename:     {record.filename}")
    print(f"Pipeline:     {record.pipeline}")
    print(f"State:        {FileState(record.current_state).value}")
    print(f"Retry count:  {record.retry_count}")
    print(f"Next retry:   {format_timestamp(record.next_retry_at)}")
    print(f"Last error:   {record.last_error or '-'}")
    print(f"Dead-lettered (unresolved): {status.has_unresolved_dead_letter}\n")

    entries = status.run_log[-args.limit:]
    print(f"{'Timestamp':<20} {'Level':<8} {'Category':<22} {'Message'}")
    print(f"{'-' * 80}")
    for entry in entries:
        print(f"{format_timestamp(entry.created_at):<20} {entry.level:<8} {entry.category:<22} {entry.message}")
    print()
    return 0


# =======================
# DEAD LETTER COMMANDS
# =======================

def dlq_list_command(args, services: EtlServices) -> int:
    """List dead-letter entries of an organization."""
    organization_id = validate_id(args.org, "org")
    limit = validate_limit(args.limit)
    resolved = None if args.include_resolved else False

    entries = services.retry_service.get_dead_letter_entries(organization_id, resolved=resolved, limit=limit)
    if not entries:
        print("\nDead letter queue is empty.")
        return 0

    print_header(f"DEAD LETTER QUEUE FOR {organization_id} ({len(entries)} entries)")
    print(f"{'Id':<38} {'Entity':<38} {'Kind':<13} {'Retries':<8} {'Resolved'}")
    print(f"{'-' * 110}")
    for entry in entries:
        print(
            f"{entry.id:<38} {entry.entity_id:<38} {entry.effective_error_type.value:<13} "
            f"{entry.total_retries:<8} {entry.resolved}"
        )
        if args.show_errors:
            print(f"    {entry.original_error}")
    print()
    return 0


def dlq_resolve_command(args, services: EtlServices) -> int:
    """Mark a dead-letter entry resolved."""
    entry_id = validate_id(args.entry_id, "entry_id")
    actor = validate_actor(args.actor)
    notes = validate_notes(args.notes)

    if services.retry_service.resolve_dead_letter_entry(entry_id, actor, notes):
        print(f"Resolved dead letter entry {entry_id}")
        return 0
    print(f"Dead letter entry {entry_id} not found or already resolved")
    return 1


def dlq_reclassify_command(args, services: EtlServices) -> int:
    """Override the error kind recorded on a dead-letter entry."""
    entry_id = validate_id(args.entry_id, "entry_id")
    error_kind = validate_error_kind(args.error_kind)
    actor = validate_actor(args.actor)

    if services.dead_letters.reclassify(entry_id, error_kind, actor):
        print(f"Reclassified dead letter entry {entry_id} as {error_kind.value}")
        return 0
    print(f"Dead letter entry {entry_id} not found")
    return 1


def dlq_mark_command(args, services: EtlServices) -> int:
    """Mark a dead-letter entry so dlq-process-marked reprocesses its file."""
    entry_id = validate_id(args.entry_id, "entry_id")
    actor = validate_actor(args.actor)
    retry_after = datetime.now(timezone.utc) + timedelta(minutes=args.delay_minutes)

    if services.dead_letters.mark_for_retry(entry_id, actor, retry_after):
        print(f"Marked dead letter entry {entry_id} for retry after {format_timestamp(retry_after)}")
        return 0
    print(f"Dead letter entry {entry_id} not found or already resolved")
    return 1


def dlq_process_marked_command(args, services: EtlServices) -> int:
    """Reprocess the files of marked dead-letter entries."""
    organization_id = validate_id(args.org, "org")
    actor = validate_actor(args.actor)

    results = services.orchestrator.process_marked_dead_letters(organization_id, actor)
    if not results:
        print("\nNo marked entries are due.")
        return 0
    for result in results:
        print_result(result)
    return 0 if all(r.success for r in results) else 1


def dlq_cleanup_command(args, services: EtlServices) -> int:
    """Delete old resolved dead-letter entries."""
    organization_id = validate_id(args.org, "org")
    days = validate_limit(args.older_than_days, "older_than_days")

    count = services.dead_letters.cleanup_resolved(organization_id, days, dry_run=args.dry_run)
    verb = "Would delete" if args.dry_run else "Deleted"
    print(f"{verb} {count} resolved dead letter entries older than {days} days")
    return 0


# =======================
# PENDING ENTRY COMMANDS
# =======================

def pending_list_command(args, services: EtlServices) -> int:
    """List pending dimension entries."""
    organization_id = validate_id(args.org, "org")
    status = None if args.status == "all" else args.status

    entries = services.lookup.get_pending_entries(organization_id, status=status)
    if not entries:
        print("\nNo pending entries.")
        return 0

    print_header(f"PENDING ENTRIES FOR {organization_id} ({len(entries)})")
    print(f"{'Id':<38} {'Type':<8} {'Code':<20} {'Status':<10} {'Created'}")
    print(f"{'-' * 100}")
    for entry in entries:
        print(
            f"{entry.id:<38} {entry.type:<8} {entry.code:<20} {entry.status:<10} "
            f"{format_timestamp(entry.created_at)}"
        )
    print()
    return 0


def pending_resolve_command(args, services: EtlServices) -> int:
    """Map a pending code to a dimension row (created from the code when no id is given)."""
    pending_id = validate_id(args.pending_id, "pending_id")
    actor = validate_actor(args.actor)
    dimension_id = validate_id(args.dimension_id, "dimension_id") if args.dimension_id else None
    notes = validate_notes(args.notes)

    if services.lookup.resolve_pending_entry(pending_id, actor, dimension_id, notes):
        print(f"Resolved pending entry {pending_id}")
        print("Reprocess the affected files to load the rows that were waiting on it.")
        return 0
    print(f"Pending entry {pending_id} not found or no longer pending")
    return 1


def pending_reject_command(args, services: EtlServices) -> int:
    pending_id = validate_id(args.pending_id, "pending_id")
    actor = validate_actor(args.actor)
    notes = validate_notes(args.notes)

    if services.lookup.reject_pending_entry(pending_id, actor, notes):
        print(f"Rejected pending entry {pending_id}")
        return 0
    print(f"Pending entry {pending_id} not found or no longer pending")
    return 1


# =======================
# MONITORING COMMANDS
# =======================

def retry_stats_command(args, services: EtlServices) -> int:
    organization_id = validate_id(args.org, "org")
    stats = services.retry_service.get_retry_statistics(organization_id)

    print_header(f"RETRY STATISTICS FOR {organization_id}")
    print(f"Active retries:        {stats.active_retries}")
    print(f"Dead letter queue:     {stats.dead_letter_queue_size}")
    print(f"Success rate:          {stats.success_rate:.1f}%")
    print(f"Average retries:       {stats.average_retries:.2f}")
    print()
    return 0


def health_command(args, services: EtlServices) -> int:
    """Print the health check; exit code 1 when critical."""
    organization_id = validate_id(args.org, "org")
    health = services.monitoring.get_health_check(organization_id)

    if args.json:
        print(health.model_dump_json(indent=2))
    else:
        metrics = health.metrics
        print_header(f"HEALTH FOR {organization_id}: {health.status.upper()}")
        for issue in health.issues:
            print(f"  - {issue}")
        if health.issues:
            print()
        print(f"Active retries:     {metrics.active_retries}")
        print(f"Dead letter queue:  {metrics.dead_letter_queue_size}")
        print(f"Success rate:       {metrics.success_rate:.1f}%")
        print(f"Stale files:        {metrics.stale_entities}")
        print(
            f"Processing (ms):    p50={metrics.processing_duration.p50:.0f} "
            f"p95={metrics.processing_duration.p95:.0f} p99={metrics.processing_duration.p99:.0f}"
        )
        print(f"Errors by kind:     {json.dumps(metrics.errors_by_type)}")
        print()
    return 1 if health.status == "critical" else 0


def check_alerts_command(args, services: EtlServices) -> int:
    organization_id = validate_id(args.org, "org")
    alerts = services.monitoring.check_alerts(organization_id)

    if not alerts:
        print("\nNo alerts.")
        return 0
    print_header(f"ALERTS FOR {organization_id} ({len(alerts)})")
    for alert in alerts:
        print(f"[{alert.severity.upper():<8}] {alert.type}: {alert.message}")
    print()
    return 0


def monitor_command(args, services: EtlServices) -> int:
    """Run background alert checks (and the metrics endpoint) until interrupted."""
    organization_id = validate_id(args.org, "org")
    interval = args.interval or services.settings.monitoring.interval_seconds

    if args.metrics_port:
        start_metrics_server(args.metrics_port)
        print(f"Metrics served on :{args.metrics_port}/metrics")

    stop = services.monitoring.start_monitoring(organization_id, interval_seconds=interval)
    print(f"Monitoring {organization_id} every {interval:.0f}s (Ctrl+C to stop)")
    try:
        threading.Event().wait(args.duration)
    finally:
        stop()
    return 0


def metrics_command(args, services: EtlServices) -> int:
    """Refresh the DLQ gauge and print the registry in Prometheus text format."""
    if args.org:
        services.monitoring.get_metrics(validate_id(args.org, "org"))
    print(generate_metrics().decode("utf-8"), end="")
    return 0


def run_log_stats_command(args, services: EtlServices) -> int:
    organization_id = validate_id(args.org, "org")
    hours = validate_limit(args.hours, "hours")
    stats = get_run_log_stats(services.store, organization_id, hours)

    if args.json:
        print(json.dumps(stats, indent=2, default=str))
        return 0
    print_header(f"RUN LOG FOR {organization_id}, LAST {hours}H")
    print(f"Entries:      {stats['total_entries']}")
    print(f"Files:        {stats['files']}")
    print(f"Runs:         {stats['runs']}")
    print(f"Error rate:   {stats['error_rate']:.1f}%")
    print(f"By level:     {json.dumps(stats['entries_by_level'])}")
    print(f"By category:  {json.dumps(stats['entries_by_category'])}")
    if stats["recent_errors"]:
        print("\nRecent errors:")
        for error in stats["recent_errors"]:
            print(f"  {format_timestamp(error['created_at'])} {error['file_id']}: {error['message']}")
    print()
    return 0


def run_log_cleanup_command(args, services: EtlServices) -> int:
    """Delete run log entries past the retention window."""
    organization_id = validate_id(args.org, "org")
    days = validate_limit(args.retain_days, "retain_days")

    count = cleanup_run_log(services.store, organization_id, days, dry_run=args.dry_run)
    verb = "Would delete" if args.dry_run else "Deleted"
    print(f"{verb} {count} run log entries older than {days} days")
    return 0


COMMANDS = {
    "register": register_command,
    "process": process_command,
    "retry": retry_command,
    "retry-queue": retry_queue_command,
    "fail": fail_command,
    "status": status_command,
    "checksum-history": checksum_history_command,
    "dlq-list": dlq_list_command,
    "dlq-resolve": dlq_resolve_command,
    "dlq-reclassify": dlq_reclassify_command,
    "dlq-mark": dlq_mark_command,
    "dlq-process-marked": dlq_process_marked_command,
    "dlq-cleanup": dlq_cleanup_command,
    "pending-list": pending_list_command,
    "pending-resolve": pending_resolve_command,
    "pending-reject": pending_reject_command,
    "retry-stats": retry_stats_command,
    "health": health_command,
    "check-alerts": check_alerts_command,
    "monitor": monitor_command,
    "metrics": metrics_command,
    "run-log-stats": run_log_stats_command,
    "run-log-cleanup": run_log_cleanup_command,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Feedlot ETL administration",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--config",
        help="Path to the settings YAML (default: $ETL_CONFIG or config/etl.yaml)"
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    register_parser = subparsers.add_parser("register", help="Register an uploaded file")
    register_parser.add_argument("--org", required=True, help="Organization id")
    register_parser.add_argument("--pipeline", required=True, choices=sorted(VALIDATORS), help="Pipeline")
    register_parser.add_argument("--filepath", required=True, help="Path in the blob store")
    register_parser.add_argument("--filename", help="Original file name (default: basename of filepath)")
    register_parser.add_argument(
        "--force", action="store_true",
        help="Register even if the content duplicates a recently loaded file"
    )

    process_parser = subparsers.add_parser("process", help="Process an uploaded file")
    process_parser.add_argument("--file-id", required=True, help="File id")
    process_parser.add_argument("--separator", help="CSV separator (default: detected)")
    process_parser.add_argument("--encoding", help="Text encoding (default: utf-8, then latin-1)")

    retry_parser = subparsers.add_parser("retry", help="Reprocess a FAILED or LOADED file")
    retry_parser.add_argument("--file-id", required=True, help="File id")
    retry_parser.add_argument("--actor", required=True, help="Operator requesting the retry")

    queue_parser = subparsers.add_parser("retry-queue", help="Reprocess files whose retry is due")
    queue_parser.add_argument("--org", required=True, help="Organization id")

    fail_parser = subparsers.add_parser("fail", help="Mark a stuck file FAILED")
    fail_parser.add_argument("--file-id", required=True, help="File id")
    fail_parser.add_argument("--actor", required=True, help="Operator failing the file")
    fail_parser.add_argument("--reason", required=True, help="Reason recorded as last_error")

    status_parser = subparsers.add_parser("status", help="Show file state and run log")
    status_parser.add_argument("--file-id", required=True, help="File id")
    status_parser.add_argument(
        "--limit", type=int, default=50,
        help="Most recent run log entries to show (default: 50)"
    )

    history_parser = subparsers.add_parser("checksum-history", help="List files with the same content")
    history_parser.add_argument("--org", required=True, help="Organization id")
    history_parser.add_argument("--filepath", required=True, help="Path in the blob store")

    dlq_list_parser = subparsers.add_parser("dlq-list", help="List dead letter entries")
    dlq_list_parser.add_argument("--org", required=True, help="Organization id")
    dlq_list_parser.add_argument("--include-resolved", action="store_true", help="Include resolved entries")
    dlq_list_parser.add_argument("--show-errors", action="store_true", help="Display the error messages")
    dlq_list_parser.add_argument("--limit", type=int, default=100, help="Maximum entries (default: 100)")

    dlq_resolve_parser = subparsers.add_parser("dlq-resolve", help="Resolve a dead letter entry")
    dlq_resolve_parser.add_argument("--entry-id", required=True, help="Dead letter entry id")
    dlq_resolve_parser.add_argument("--actor", required=True, help="Operator resolving the entry")
    dlq_resolve_parser.add_argument("--notes", help="Resolution notes")

    dlq_reclassify_parser = subparsers.add_parser("dlq-reclassify", help="Override an entry's error kind")
    dlq_reclassify_parser.add_argument("--entry-id", required=True, help="Dead letter entry id")
    dlq_reclassify_parser.add_argument(
        "--error-kind", required=True,
        help="transient, permanent, rate_limited or resource"
    )
    dlq_reclassify_parser.add_argument("--actor", required=True, help="Operator reclassifying the entry")

    dlq_mark_parser = subparsers.add_parser("dlq-mark", help="Mark a dead letter entry for retry")
    dlq_mark_parser.add_argument("--entry-id", required=True, help="Dead letter entry id")
    dlq_mark_parser.add_argument("--actor", required=True, help="Operator marking the entry")
    dlq_mark_parser.add_argument(
        "--delay-minutes", type=int, default=0,
        help="Minutes before the entry may be reprocessed (default: 0)"
    )

    dlq_marked_parser = subparsers.add_parser(
        "dlq-process-marked", help="Reprocess files of marked dead letter entries"
    )
    dlq_marked_parser.add_argument("--org", required=True, help="Organization id")
    dlq_marked_parser.add_argument("--actor", required=True, help="Operator running the pass")

    dlq_cleanup_parser = subparsers.add_parser("dlq-cleanup", help="Delete old resolved entries")
    dlq_cleanup_parser.add_argument("--org", required=True, help="Organization id")
    dlq_cleanup_parser.add_argument(
        "--older-than-days", type=int, default=30, help="Age threshold in days (default: 30)"
    )
    dlq_cleanup_parser.add_argument("--dry-run", action="store_true", help="Only count")

    pending_list_parser = subparsers.add_parser("pending-list", help="List pending dimension entries")
    pending_list_parser.add_argument("--org", required=True, help="Organization id")
    pending_list_parser.add_argument(
        "--status", default="pending", choices=["pending", "resolved", "rejected", "all"],
        help="Filter by status (default: pending)"
    )

    pending_resolve_parser = subparsers.add_parser("pending-resolve", help="Resolve a pending entry")
    pending_resolve_parser.add_argument("--pending-id", required=True, help="Pending entry id")
    pending_resolve_parser.add_argument("--actor", required=True, help="Operator resolving the entry")
    pending_resolve_parser.add_argument(
        "--dimension-id",
        help="Existing dimension row to map to (default: create one from the code)"
    )
    pending_resolve_parser.add_argument("--notes", help="Resolution notes")

    pending_reject_parser = subparsers.add_parser("pending-reject", help="Reject a pending entry")
    pending_reject_parser.add_argument("--pending-id", required=True, help="Pending entry id")
    pending_reject_parser.add_argument("--actor", required=True, help="Operator rejecting the entry")
    pending_reject_parser.add_argument("--notes", help="Rejection notes")

    stats_parser = subparsers.add_parser("retry-stats", help="Show retry statistics")
    stats_parser.add_argument("--org", required=True, help="Organization id")

    health_parser = subparsers.add_parser("health", help="Show the health check")
    health_parser.add_argument("--org", required=True, help="Organization id")
    health_parser.add_argument("--json", action="store_true", help="Print JSON")

    alerts_parser = subparsers.add_parser("check-alerts", help="Evaluate alerts now")
    alerts_parser.add_argument("--org", required=True, help="Organization id")

    monitor_parser = subparsers.add_parser("monitor", help="Run periodic alert checks")
    monitor_parser.add_argument("--org", required=True, help="Organization id")
    monitor_parser.add_argument("--interval", type=float, help="Seconds between checks (default: from settings)")
    monitor_parser.add_argument("--metrics-port", type=int, help="Serve Prometheus metrics on this port")
    monitor_parser.add_argument("--duration", type=float, help="Stop after this many seconds")

    metrics_parser = subparsers.add_parser("metrics", help="Print Prometheus metrics")
    metrics_parser.add_argument("--org", help="Refresh gauges for this organization first")

    log_stats_parser = subparsers.add_parser("run-log-stats", help="Summarize recent run log activity")
    log_stats_parser.add_argument("--org", required=True, help="Organization id")
    log_stats_parser.add_argument("--hours", type=int, default=24, help="Time range in hours (default: 24)")
    log_stats_parser.add_argument("--json", action="store_true", help="Print JSON")

    log_cleanup_parser = subparsers.add_parser("run-log-cleanup", help="Delete old run log entries")
    log_cleanup_parser.add_argument("--org", required=True, help="Organization id")
    log_cleanup_parser.add_argument(
        "--retain-days", type=int, default=90, help="Days of history to keep (default: 90)"
    )
    log_cleanup_parser.add_argument("--dry-run", action="store_true", help="Only count")

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    try:
        services = build_services(load_settings(args.config))
    except Exception as e:
        logger.error(f"Failed to start services: {e}", exc_info=True)
        print(f"\nError: {e}")
        return 1

    try:
        return COMMANDS[args.command](args, services)
    except KeyboardInterrupt:
        print("\n\nInterrupted by user")
        return 130
    except Exception as e:
        logger.error(f"Command {args.command} failed: {e}", exc_info=True)
        print(f"\nError: {e}")
        return 1
    finally:
        services.close()


if __name__ == "__main__":
    sys.exit(main())
