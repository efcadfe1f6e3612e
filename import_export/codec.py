"""
Import/Export - Tabular Codec.

============================================================
PURPOSE
============================================================
Converts between file bytes and rows:
- CSV (UTF-8, optional BOM on input, BOM on output)
- XLSX workbook (first sheet on input, one sheet on output)

Also owns upload checks, export value normalisation and the
export file naming scheme.

============================================================
ROW NUMBERING
============================================================
Row 1 is the header, the first data row is row 2. Fully blank
rows are skipped but still consume their row number so issue
reports point at the right line of the source file.

============================================================
"""

from datetime import date, datetime, time, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence
import csv
import io
import logging

from openpyxl import Workbook, load_workbook

from core.clock import ensure_utc
from core.exceptions import ParseError

from .models import CellValue, DecodedTable, ParsedRow, TabularFormat


logger = logging.getLogger(__name__)


DEFAULT_MAX_UPLOAD_BYTES = 10 * 1024 * 1024

SUPPORTED_EXTENSIONS: Dict[str, TabularFormat] = {
    "csv": TabularFormat.CSV,
    "xlsx": TabularFormat.EXCEL,
}

# openpyxl reads only the XML workbook format
LEGACY_EXCEL_EXTENSIONS = ("xls",)

DATE_LIKE_MARKERS = ("date", "time", "created", "updated")

# Excel caps worksheet titles at 31 characters
MAX_SHEET_TITLE = 31
INVALID_SHEET_CHARS = set("[]:*?/\\")


# ============================================================
# FORMAT DETECTION & UPLOAD CHECKS
# ============================================================

def _extension(file_name: str) -> str:
    if "." not in file_name:
        return ""
    return file_name.rsplit(".", 1)[-1].lower()


def detect_format(file_name: str) -> Optional[TabularFormat]:
    """Format implied by the file extension, None when unsupported."""
    return SUPPORTED_EXTENSIONS.get(_extension(file_name))


def validate_upload(
    file_name: str,
    size_bytes: int,
    max_bytes: int = DEFAULT_MAX_UPLOAD_BYTES,
) -> Optional[str]:
    """Return a rejection message, or None when the upload is acceptable."""
    if size_bytes > max_bytes:
        limit_mb = max_bytes / (1024 * 1024)
        return f"File size must be less than {limit_mb:g}MB"
    if detect_format(file_name) is None:
        if _extension(file_name) in LEGACY_EXCEL_EXTENSIONS:
            return "Legacy Excel (.xls) files are not supported, save the file as .xlsx"
        return "Only Excel (.xlsx) and CSV files are supported"
    return None


# ============================================================
# VALUE NORMALISATION
# ============================================================

def format_timestamp(value: Any) -> str:
    """Render a datetime/date as YYYY-MM-DDTHH:MM:SS.mmmZ (UTC)."""
    if isinstance(value, datetime):
        moment = ensure_utc(value)
    else:
        moment = datetime.combine(value, time(), tzinfo=timezone.utc)
    return moment.strftime("%Y-%m-%dT%H:%M:%S.") + f"{moment.microsecond // 1000:03d}Z"


def _is_date_like(field_name: str) -> bool:
    lowered = field_name.lower()
    return any(marker in lowered for marker in DATE_LIKE_MARKERS)


def normalize_value(
    field_name: str,
    value: Any,
    true_token: str = "Yes",
    false_token: str = "No",
) -> Any:
    """
    Normalise one exported value.

    None becomes "", booleans become yes/no tokens, temporal values
    (and ISO strings in date-like fields) become UTC timestamps.
    Everything else passes through unchanged.
    """
    if value is None:
        return ""
    if isinstance(value, bool):
        return true_token if value else false_token
    if isinstance(value, (datetime, date)):
        return format_timestamp(value)
    if isinstance(value, str) and value and _is_date_like(field_name):
        text = value[:-1] + "+00:00" if value.endswith("Z") else value
        try:
            return format_timestamp(datetime.fromisoformat(text))
        except ValueError:
            return value
    return value


def project_record(
    record: Dict[str, Any],
    fields: Sequence[str],
    true_token: str = "Yes",
    false_token: str = "No",
) -> Dict[str, Any]:
    """Keep only the requested fields, normalised, in field order."""
    return {
        name: normalize_value(name, record.get(name), true_token, false_token)
        for name in fields
    }


def build_export_filename(entity_type: str, fmt: TabularFormat, moment: datetime) -> str:
    """{entity}_export_{timestamp with ':' and '.' replaced}.{ext}"""
    stamp = format_timestamp(moment).replace(":", "-").replace(".", "-")
    return f"{entity_type}_export_{stamp}.{fmt.extension}"


def sheet_title(name: str) -> str:
    cleaned = "".join("_" if ch in INVALID_SHEET_CHARS else ch for ch in name).strip()
    return (cleaned or "Sheet1")[:MAX_SHEET_TITLE]


# ============================================================
# CODEC
# ============================================================

class TabularCodec:
    """
    Decodes uploads into ParsedRows and encodes records into files.

    Stateless; one instance can be shared by all operations.
    """

    # ----------------------------------------------------------
    # DECODE
    # ----------------------------------------------------------

    def decode(self, content: bytes, fmt: TabularFormat) -> DecodedTable:
        """Decode file bytes; raises ParseError when unreadable."""
        if fmt == TabularFormat.EXCEL:
            matrix = self._read_workbook(content)
        else:
            matrix = self._read_csv(content)
        return self._to_table(matrix, fmt)

    def _read_csv(self, content: bytes) -> List[List[Any]]:
        try:
            text = content.decode("utf-8-sig")
        except UnicodeDecodeError:
            logger.warning("CSV is not valid UTF-8, falling back to latin-1")
            text = content.decode("latin-1")

        try:
            return [list(row) for row in csv.reader(io.StringIO(text, newline=""))]
        except csv.Error as e:
            raise ParseError(f"Failed to parse CSV: {e}", file_format="csv", cause=e)

    def _read_workbook(self, content: bytes) -> List[List[Any]]:
        try:
            workbook = load_workbook(io.BytesIO(content), read_only=True, data_only=True)
        except Exception as e:
            raise ParseError(f"Failed to open workbook: {e}", file_format="excel", cause=e)

        try:
            if not workbook.worksheets:
                return []
            sheet = workbook.worksheets[0]
            return [list(row) for row in sheet.iter_rows(values_only=True)]
        finally:
            workbook.close()

    def _to_table(self, matrix: List[List[Any]], fmt: TabularFormat) -> DecodedTable:
        if not matrix:
            raise ParseError("File contains no header row", file_format=fmt.value)

        headers = [self._header(cell) for cell in matrix[0]]
        while headers and not headers[-1]:
            headers.pop()
        if not headers:
            raise ParseError("Header row is empty", file_format=fmt.value)

        rows: List[ParsedRow] = []
        for offset, raw in enumerate(matrix[1:]):
            values: Dict[str, CellValue] = {}
            for position, header in enumerate(headers):
                if not header:
                    continue
                cell = raw[position] if position < len(raw) else None
                values[header] = self._cell(cell)

            row = ParsedRow(row_index=offset + 2, values=values)
            if row.is_blank:
                continue
            rows.append(row)

        logger.debug(f"Decoded {len(rows)} {fmt.value} rows with {len(headers)} columns")
        return DecodedTable(headers=[h for h in headers if h], rows=rows)

    @staticmethod
    def _header(cell: Any) -> str:
        return "" if cell is None else str(cell).strip()

    @staticmethod
    def _cell(cell: Any) -> CellValue:
        if cell is None:
            return None
        if isinstance(cell, str):
            return cell if cell != "" else None
        if isinstance(cell, (bool, int, float, datetime, date)):
            return cell
        if isinstance(cell, time):
            return cell.isoformat()
        return str(cell)

    # ----------------------------------------------------------
    # ENCODE
    # ----------------------------------------------------------

    def encode(
        self,
        records: Iterable[Dict[str, Any]],
        fields: Sequence[str],
        fmt: TabularFormat,
        sheet_name: str = "Export",
        include_headers: bool = True,
    ) -> bytes:
        """Encode records (already projected) into file bytes."""
        if fmt == TabularFormat.EXCEL:
            return self._write_workbook(records, fields, sheet_name, include_headers)
        return self._write_csv(records, fields, include_headers)

    def _write_csv(
        self,
        records: Iterable[Dict[str, Any]],
        fields: Sequence[str],
        include_headers: bool,
    ) -> bytes:
        buffer = io.StringIO()
        writer = csv.writer(buffer, quoting=csv.QUOTE_MINIMAL, lineterminator="\n")

        if include_headers:
            writer.writerow(fields)
        for record in records:
            writer.writerow(["" if record.get(name) is None else record.get(name) for name in fields])

        return buffer.getvalue().encode("utf-8-sig")

    def _write_workbook(
        self,
        records: Iterable[Dict[str, Any]],
        fields: Sequence[str],
        sheet_name: str,
        include_headers: bool,
    ) -> bytes:
        workbook = Workbook(write_only=True)
        sheet = workbook.create_sheet(title=sheet_title(sheet_name))

        if include_headers:
            sheet.append(list(fields))
        for record in records:
            sheet.append([record.get(name) for name in fields])

        buffer = io.BytesIO()
        workbook.save(buffer)
        return buffer.getvalue()


def create_codec() -> TabularCodec:
    """Create a tabular codec."""
    return TabularCodec()
