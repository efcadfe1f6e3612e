"""
Import/Export - Reports and Templates.

Downloadable companions to an import: a report of validation
issues for the uploader to fix, and a blank template with the
expected columns.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence
import logging

from .codec import TabularCodec, format_timestamp
from .models import ImportIssue, TabularFormat


logger = logging.getLogger(__name__)


ISSUE_REPORT_FIELDS = ["Row", "Field", "Value", "Severity", "Message"]


def issue_report_rows(issues: Sequence[ImportIssue]) -> List[Dict[str, Any]]:
    """Flatten issues into report rows, sorted by row then original order."""
    ordered = sorted(enumerate(issues), key=lambda pair: (pair[1].row, pair[0]))
    rows = []
    for _, issue in ordered:
        value = issue.value
        if isinstance(value, datetime):
            value = format_timestamp(value)
        rows.append({
            "Row": issue.row,
            "Field": issue.field or "",
            "Value": "" if value is None else str(value),
            "Severity": issue.severity.value,
            "Message": issue.message,
        })
    return rows


def build_issue_report(
    issues: Sequence[ImportIssue],
    fmt: TabularFormat = TabularFormat.EXCEL,
    codec: Optional[TabularCodec] = None,
) -> bytes:
    """Encode validation issues as a spreadsheet the uploader can work through."""
    codec = codec or TabularCodec()
    rows = issue_report_rows(issues)
    logger.debug(f"Building issue report with {len(rows)} entries")
    return codec.encode(rows, ISSUE_REPORT_FIELDS, fmt, sheet_name="Errors")


def issue_report_filename(moment: datetime, fmt: TabularFormat = TabularFormat.EXCEL) -> str:
    return f"import_errors_{moment.date().isoformat()}.{fmt.extension}"


def build_import_template(
    columns: Sequence[str],
    fmt: TabularFormat = TabularFormat.EXCEL,
    sample_rows: Optional[Sequence[Dict[str, Any]]] = None,
    sheet_name: str = "Template",
    codec: Optional[TabularCodec] = None,
) -> bytes:
    """Header row with the expected columns, plus optional sample rows."""
    if not columns:
        raise ValueError("A template needs at least one column")
    codec = codec or TabularCodec()
    return codec.encode(list(sample_rows or []), list(columns), fmt, sheet_name=sheet_name)
