"""
Import/Export - Validation.

============================================================
PURPOSE
============================================================
Per-field rule evaluation and the row validation stage that
partitions parsed rows into valid records and issues.

============================================================
RULES
============================================================
- Empty values (None or "") pass every rule except `required`
- Rows are evaluated in order, all rules of row i before row i+1
- A row is valid when it has no error-severity failures
- Progress callbacks are advisory and never change the outcome

============================================================
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple
import logging
import math
import re

from .models import (
    FieldValidationResult,
    ImportIssue,
    IssueSeverity,
    ParsedRow,
    RuleKind,
    ValidationRule,
)


logger = logging.getLogger(__name__)


EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

FALLBACK_DATE_FORMATS = (
    "%Y/%m/%d",
    "%d/%m/%Y",
    "%m/%d/%Y",
    "%Y/%m/%d %H:%M:%S",
    "%d/%m/%Y %H:%M:%S",
    "%m/%d/%Y %H:%M:%S",
    "%d/%m/%Y %H:%M",
)

NON_ISO_DATE_WARNING = "Date is not in ISO-8601 format"


def is_empty(value: Any) -> bool:
    return value is None or value == ""


def parse_date_value(value: Any) -> Optional[datetime]:
    """
    Parse a cell into a datetime.

    Returns None when the value is not a date. ISO-8601 strings
    (with or without a trailing Z) are tried first, then a few
    common day/month layouts.
    """
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        if not math.isfinite(value):
            return None
        try:
            return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None

    text = str(value).strip()
    if not text:
        return None

    iso_text = text[:-1] + "+00:00" if text.endswith("Z") else text
    try:
        return datetime.fromisoformat(iso_text)
    except ValueError:
        pass

    for fmt in FALLBACK_DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue
    return None


def _is_iso_date(value: Any) -> bool:
    if not isinstance(value, str):
        return True
    text = value.strip()
    iso_text = text[:-1] + "+00:00" if text.endswith("Z") else text
    try:
        datetime.fromisoformat(iso_text)
        return True
    except ValueError:
        return False


def _to_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return float(value)
    try:
        number = float(str(value).strip()) if isinstance(value, str) else float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    return number


# ============================================================
# FIELD VALIDATOR
# ============================================================

def validate_field(value: Any, rule: ValidationRule) -> FieldValidationResult:
    """Evaluate one rule against one value."""
    if is_empty(value):
        if rule.kind == RuleKind.REQUIRED:
            return FieldValidationResult(is_valid=False, message=rule.message)
        return FieldValidationResult(is_valid=True)

    if rule.kind == RuleKind.REQUIRED:
        return FieldValidationResult(is_valid=True)

    if rule.kind == RuleKind.EMAIL:
        if not EMAIL_PATTERN.match(str(value)):
            return FieldValidationResult(is_valid=False, message=rule.message)

    elif rule.kind == RuleKind.NUMERIC:
        number = _to_number(value)
        if number is None:
            return FieldValidationResult(is_valid=False, message=rule.message)
        if rule.min is not None and number < rule.min:
            return FieldValidationResult(
                is_valid=False,
                message=f"Value must be at least {rule.min}",
            )
        if rule.max is not None and number > rule.max:
            return FieldValidationResult(
                is_valid=False,
                message=f"Value must be at most {rule.max}",
            )

    elif rule.kind == RuleKind.DATE:
        if parse_date_value(value) is None:
            return FieldValidationResult(is_valid=False, message=rule.message)
        if not _is_iso_date(value):
            return FieldValidationResult(is_valid=True, warnings=[NON_ISO_DATE_WARNING])

    elif rule.kind == RuleKind.ENUM:
        if rule.values is not None and value not in rule.values and str(value) not in rule.values:
            allowed = ", ".join(str(v) for v in rule.values)
            return FieldValidationResult(
                is_valid=False,
                message=f"Value must be one of: {allowed}",
            )

    elif rule.kind == RuleKind.PATTERN:
        if rule.pattern and not re.search(rule.pattern, str(value)):
            return FieldValidationResult(is_valid=False, message=rule.message)

    elif rule.kind == RuleKind.CUSTOM:
        if rule.predicate is not None:
            try:
                accepted = bool(rule.predicate(value))
            except Exception as e:
                logger.warning(f"Custom validator for '{rule.field}' raised: {e}")
                accepted = False
            if not accepted:
                return FieldValidationResult(is_valid=False, message=rule.message)

    return FieldValidationResult(is_valid=True)


# ============================================================
# RECORD VALIDATION STAGE
# ============================================================

@dataclass
class ValidationOutcome:
    """Partition of rows after validation."""
    valid_records: List[ParsedRow] = field(default_factory=list)
    errors: List[ImportIssue] = field(default_factory=list)
    warnings: List[ImportIssue] = field(default_factory=list)
    invalid_row_count: int = 0

    @property
    def error_rows(self) -> List[int]:
        """Distinct rows with errors, in report order."""
        return list(dict.fromkeys(issue.row for issue in self.errors))


def apply_field_mappings(row: ParsedRow, mappings: Dict[str, str]) -> None:
    """Rename keys in place (source key dropped); safe to apply twice."""
    for source, target in mappings.items():
        if source == target or source not in row.values:
            continue
        row.values[target] = row.values.pop(source)


class RecordValidationStage:
    """
    Applies a rule set to every parsed row.

    Emits an advisory progress callback every `progress_interval`
    rows with the number of rows validated so far.
    """

    def __init__(self, progress_interval: int = 100):
        if progress_interval < 1:
            raise ValueError("progress_interval must be at least 1")
        self._progress_interval = progress_interval

    def check_row(
        self,
        row: ParsedRow,
        rules: Sequence[ValidationRule],
        field_mappings: Optional[Dict[str, str]] = None,
    ) -> Tuple[List[ImportIssue], List[ImportIssue]]:
        """Rename fields, then evaluate every rule; returns (errors, warnings)."""
        if field_mappings:
            apply_field_mappings(row, field_mappings)

        errors: List[ImportIssue] = []
        warnings: List[ImportIssue] = []

        for rule in rules:
            value = row.get(rule.field)
            result = validate_field(value, rule)

            if not result.is_valid:
                issue = ImportIssue(
                    row=row.row_index,
                    field=rule.field,
                    message=result.message or rule.message,
                    value=value,
                    severity=rule.severity,
                )
                if rule.severity == IssueSeverity.ERROR:
                    errors.append(issue)
                else:
                    warnings.append(issue)

            for warning in result.warnings:
                warnings.append(ImportIssue(
                    row=row.row_index,
                    field=rule.field,
                    message=warning,
                    value=value,
                    severity=IssueSeverity.WARNING,
                ))

        return errors, warnings

    def _collect(
        self,
        outcome: ValidationOutcome,
        row: ParsedRow,
        errors: List[ImportIssue],
        warnings: List[ImportIssue],
    ) -> None:
        outcome.errors.extend(errors)
        outcome.warnings.extend(warnings)
        if errors:
            outcome.invalid_row_count += 1
        else:
            outcome.valid_records.append(row)

    async def validate(
        self,
        rows: Sequence[ParsedRow],
        rules: Sequence[ValidationRule],
        field_mappings: Optional[Dict[str, str]] = None,
        on_progress: Optional[Callable[[int], Awaitable[None]]] = None,
    ) -> ValidationOutcome:
        """
        Validate all rows, awaiting on_progress every progress_interval rows.

        A failing progress callback is logged and validation carries on.
        """
        outcome = ValidationOutcome()

        for position, row in enumerate(rows):
            errors, warnings = self.check_row(row, rules, field_mappings)
            self._collect(outcome, row, errors, warnings)

            if on_progress and position % self._progress_interval == 0:
                try:
                    await on_progress(position + 1)
                except Exception as e:
                    logger.error(f"Validation progress callback failed: {e}", exc_info=True)

        logger.debug(
            f"Validated {len(rows)} rows: {len(outcome.valid_records)} valid, "
            f"{outcome.invalid_row_count} invalid, {len(outcome.warnings)} warnings"
        )
        return outcome


def create_validation_stage(progress_interval: int = 100) -> RecordValidationStage:
    """Create a record validation stage."""
    return RecordValidationStage(progress_interval=progress_interval)
