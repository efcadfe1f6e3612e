"""
Backoffice - CLI.

============================================================
RESPONSIBILITY
============================================================
Command-line tools around the batch pipeline and scheduler.

- Dry-run validation of an import file against a rule set
- Import templates
- Next-run previews for a recurrence
- Listing persisted scheduled exports

============================================================
USAGE
============================================================
python -m backoffice.cli validate products.csv --rules rules.json --report errors.xlsx
python -m backoffice.cli template products_template.xlsx --columns name,sku,price
python -m backoffice.cli next-run --kind weekly --day-of-week 1 --time 09:00
python -m backoffice.cli schedules --store schedules.json

============================================================
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional

from core.clock import from_iso8601, now_utc, to_iso8601
from core.exceptions import BatchOpsException

from import_export.codec import TabularCodec, detect_format, validate_upload
from import_export.models import TabularFormat, ValidationRule
from import_export.reports import build_import_template, build_issue_report
from import_export.validation import RecordValidationStage
from scheduled_exports.models import RecurrenceKind, RecurrenceSpec, ScheduledExportConfig
from scheduled_exports.recurrence import next_run
from scheduled_exports.store import create_schedule_store


logger = logging.getLogger("backoffice")


# ============================================================
# LOGGING SETUP
# ============================================================

def setup_logging(level: str = "INFO", log_format: str = "text") -> logging.Logger:
    """
    Set up process logging.

    Args:
        level: Log level
        log_format: Output format (json or text)

    Returns:
        Configured logger
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    if log_format == "json":
        formatter = logging.Formatter(
            json.dumps({
                "timestamp": "%(asctime)s",
                "level": "%(levelname)s",
                "logger": "%(name)s",
                "message": "%(message)s",
            })
        )
    else:
        formatter = logging.Formatter("%(asctime)s | %(levelname)-8s | %(name)s | %(message)s")

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers = [handler]

    return logging.getLogger("backoffice")


# ============================================================
# CLI ARGUMENT PARSER
# ============================================================

def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="backoffice",
        description="Retail back-office batch import/export tools",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    logging_group = parser.add_argument_group("Logging Options")
    logging_group.add_argument(
        "--log-level",
        type=str,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default="WARNING",
        help="Logging level (default: WARNING)",
    )
    logging_group.add_argument(
        "--log-format",
        type=str,
        choices=["json", "text"],
        default="text",
        help="Logging format (default: text)",
    )

    commands = parser.add_subparsers(dest="command", required=True)

    # validate
    validate = commands.add_parser("validate", help="Validate an import file without writing it")
    validate.add_argument("file", type=str, help="CSV or XLSX file")
    validate.add_argument("--rules", type=str, required=True, metavar="PATH", help="JSON list of rules")
    validate.add_argument("--entity", type=str, default="records", help="Entity type (for messages)")
    validate.add_argument("--report", type=str, metavar="PATH", help="Write issues to CSV/XLSX")

    # template
    template = commands.add_parser("template", help="Write an empty import template")
    template.add_argument("output", type=str, help="Target .csv or .xlsx path")
    template.add_argument("--columns", type=str, required=True, help="Comma-separated column names")

    # next-run
    preview = commands.add_parser("next-run", help="Show when a recurrence fires next")
    preview.add_argument("--kind", choices=[k.value for k in RecurrenceKind], required=True)
    preview.add_argument("--time", type=str, metavar="HH:MM", help="Time of day")
    preview.add_argument("--day-of-week", type=int, metavar="0-6", help="0 = Sunday")
    preview.add_argument("--day-of-month", type=int, metavar="1-31")
    preview.add_argument("--interval", type=int, default=60, metavar="MINUTES", help="Custom interval")
    preview.add_argument("--timezone", type=str, default="UTC", help="IANA timezone (default: UTC)")
    preview.add_argument("--start", type=str, metavar="ISO", help="Validity start")
    preview.add_argument("--end", type=str, metavar="ISO", help="Validity end")
    preview.add_argument("--now", type=str, metavar="ISO", help="Evaluate at this instant")
    preview.add_argument("--count", type=int, default=1, help="Number of upcoming runs to list")

    # schedules
    schedules = commands.add_parser("schedules", help="List persisted scheduled exports")
    source = schedules.add_mutually_exclusive_group(required=True)
    source.add_argument("--store", type=str, metavar="PATH", help="JSON schedule store")
    source.add_argument("--database-url", type=str, metavar="URL", help="SQLAlchemy URL")

    return parser


# ============================================================
# COMMANDS
# ============================================================

def _format_for(path: str) -> TabularFormat:
    fmt = detect_format(path)
    if fmt is None:
        raise BatchOpsException(f"Unsupported file type: {path}")
    return fmt


def cmd_validate(args: argparse.Namespace) -> int:
    path = Path(args.file)
    content = path.read_bytes()

    rejection = validate_upload(path.name, len(content))
    if rejection:
        print(f"Rejected: {rejection}", file=sys.stderr)
        return 1

    with open(args.rules, "r", encoding="utf-8") as f:
        rules = [ValidationRule.from_dict(item) for item in json.load(f)]

    table = TabularCodec().decode(content, _format_for(path.name))
    outcome = asyncio.run(RecordValidationStage().validate(table.rows, rules))

    print(f"{args.entity}: {table.row_count} rows, {len(outcome.valid_records)} valid, "
          f"{outcome.invalid_row_count} invalid, {len(outcome.warnings)} warnings")
    for issue in outcome.errors[:20]:
        print(f"  row {issue.row} {issue.field or ''}: {issue.message}")
    if len(outcome.errors) > 20:
        print(f"  ... and {len(outcome.errors) - 20} more")

    if args.report:
        report = build_issue_report(outcome.errors + outcome.warnings, _format_for(args.report))
        Path(args.report).write_bytes(report)
        print(f"Issue report written to {args.report}")

    return 0 if outcome.invalid_row_count == 0 else 2


def cmd_template(args: argparse.Namespace) -> int:
    columns = [c.strip() for c in args.columns.split(",") if c.strip()]
    content = build_import_template(columns, _format_for(args.output))
    Path(args.output).write_bytes(content)
    print(f"Template with {len(columns)} columns written to {args.output}")
    return 0


def cmd_next_run(args: argparse.Namespace) -> int:
    spec = RecurrenceSpec(
        kind=RecurrenceKind(args.kind),
        time_of_day=args.time,
        day_of_week=args.day_of_week,
        day_of_month=args.day_of_month,
        interval_minutes=args.interval,
        timezone=args.timezone,
        start_date=from_iso8601(args.start),
        end_date=from_iso8601(args.end),
    )
    errors = spec.validate()
    if errors:
        for error in errors:
            print(f"Error: {error}", file=sys.stderr)
        return 1

    moment = from_iso8601(args.now) or now_utc()
    for _ in range(max(args.count, 1)):
        upcoming = next_run(spec, moment)
        print(to_iso8601(upcoming))
        if upcoming <= moment or spec.kind == RecurrenceKind.ONCE:
            break
        moment = upcoming
    return 0


def cmd_schedules(args: argparse.Namespace) -> int:
    store = create_schedule_store(database_url=args.database_url, path=args.store)
    configs = [ScheduledExportConfig.from_dict(data) for data in store.load_configs().values()]
    if not configs:
        print("No scheduled exports")
        return 0

    for config in sorted(configs, key=lambda c: c.name):
        state = "enabled" if config.enabled else "disabled"
        print(
            f"{config.config_id}  {config.name:<30} {config.schedule.kind.value:<8} {state:<8} "
            f"next={to_iso8601(config.next_run) or '-'} last={to_iso8601(config.last_run) or '-'}"
        )
    return 0


COMMANDS = {
    "validate": cmd_validate,
    "template": cmd_template,
    "next-run": cmd_next_run,
    "schedules": cmd_schedules,
}


# ============================================================
# MAIN ENTRY POINT
# ============================================================

def main(argv: Optional[List[str]] = None) -> int:
    """
    Main CLI entry point.

    Args:
        argv: Command line arguments (default: sys.argv[1:])

    Returns:
        Exit code
    """
    parser = create_parser()
    args = parser.parse_args(argv)
    setup_logging(args.log_level, args.log_format)

    try:
        return COMMANDS[args.command](args)
    except BatchOpsException as e:
        logger.error(e.to_log_format())
        print(f"Error: {e.message}", file=sys.stderr)
        return 1
    except (OSError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


# ============================================================
# MODULE EXECUTION
# ============================================================

if __name__ == "__main__":
    sys.exit(main())
