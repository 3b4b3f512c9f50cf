"""
Turn uploaded spreadsheets into ordered rows keyed by header.

CSV is read with ``csv.reader`` so nothing is inferred from cell contents;
Excel goes through pandas/openpyxl with every cell read as text except
native date cells, which stay dates so no text format is imposed on them; JSON
uploads must be an array of objects. Every format yields the same
``ParsedFile``: the header row, the total data row count (one full pass),
and a lazy row iterator that can restart from any row offset.
"""
import csv
import io
import json
import logging
from dataclasses import dataclass
from datetime import date, datetime, time
from itertools import islice
from types import MappingProxyType
from typing import Any, Callable, Iterator, List, Mapping, Optional, Sequence

import pandas as pd

from ..errors import ParseError

logger = logging.getLogger(__name__)

SUPPORTED_FILE_TYPES = ("csv", "excel", "json")


@dataclass(frozen=True)
class RawRow:
    """One data row: header -> cell text, with its 0-based data row index."""
    index: int
    values: Mapping[str, Any]

    def get(self, header: str, default: Any = None) -> Any:
        return self.values.get(header, default)


def _cell_is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, float) and value != value:
        return True
    return isinstance(value, str) and not value.strip()


def _clean_header(value: Any) -> str:
    if _cell_is_blank(value):
        return ""
    return str(value).strip()


def _dedupe_headers(headers: Sequence[str]) -> List[str]:
    """Suffix repeated header names so every column stays addressable."""
    seen = {}
    result = []
    for header in headers:
        if header in seen:
            seen[header] += 1
            result.append(f"{header}_{seen[header]}")
        else:
            seen[header] = 1
            result.append(header)
    return result


class ParsedFile:
    """Header row plus restartable access to the data rows of an upload."""

    def __init__(self, headers: Sequence[str], cells_factory: Callable[[], Iterator[Sequence[Any]]]):
        self.headers = list(headers)
        self._cells_factory = cells_factory
        self.total_records = sum(1 for _ in self.iter_rows())

    def iter_rows(self, start: int = 0) -> Iterator[RawRow]:
        """
        Yield rows from data row ``start`` onward.

        Fully blank rows are skipped and do not consume an index. Raises
        ``ParseError`` for a row carrying values beyond the header width.
        """
        return islice(self._rows(), start, None)

    def _rows(self) -> Iterator[RawRow]:
        width = len(self.headers)
        index = 0
        for line_number, cells in enumerate(self._cells_factory(), start=2):
            cells = list(cells)
            if all(_cell_is_blank(cell) for cell in cells):
                continue
            if len(cells) > width:
                extra = cells[width:]
                if not all(_cell_is_blank(cell) for cell in extra):
                    raise ParseError(
                        f"Line {line_number} has {len(cells)} cells but the header has {width} columns",
                        row_index=index,
                    )
                cells = cells[:width]
            elif len(cells) < width:
                cells = cells + [""] * (width - len(cells))
            values = {header: ("" if _cell_is_blank(cell) else cell) for header, cell in zip(self.headers, cells)}
            yield RawRow(index=index, values=MappingProxyType(values))
            index += 1


def _header_from_first_row(first_row: Optional[Sequence[Any]]) -> List[str]:
    if first_row is None:
        raise ParseError("File is empty")
    headers = [_clean_header(cell) for cell in first_row]
    while headers and not headers[-1]:
        headers.pop()
    if not headers:
        raise ParseError("Header row is empty")
    if any(not header for header in headers):
        raise ParseError("Header row contains blank column names")
    return _dedupe_headers(headers)


def _parse_csv(content: bytes, encoding: str) -> ParsedFile:
    try:
        text_content = content.decode(encoding)
    except (UnicodeDecodeError, LookupError) as exc:
        raise ParseError(f"File is not valid {encoding} text: {exc}") from exc
    if "\x00" in text_content:
        raise ParseError("File contains binary data and cannot be read as CSV")

    def _reader() -> Iterator[List[str]]:
        return csv.reader(io.StringIO(text_content))

    try:
        first_row = next(_reader(), None)
        while first_row is not None and all(_cell_is_blank(cell) for cell in first_row):
            # Blank leading lines before the header are not data
            text_content = text_content.split("\n", 1)[1] if "\n" in text_content else ""
            first_row = next(_reader(), None)
        headers = _header_from_first_row(first_row)

        def _data_cells() -> Iterator[List[str]]:
            reader = _reader()
            next(reader, None)
            return reader

        parsed = ParsedFile(headers, _data_cells)
    except csv.Error as exc:
        raise ParseError(f"Malformed CSV: {exc}") from exc
    logger.info("Parsed CSV upload: %d columns, %d data rows", len(parsed.headers), parsed.total_records)
    return parsed


def _excel_cell(cell: Any) -> Any:
    if pd.isna(cell):
        return ""
    if isinstance(cell, pd.Timestamp):
        cell = cell.to_pydatetime()
    if isinstance(cell, datetime):
        return cell.date() if cell.time() == time(0) else cell
    if isinstance(cell, date):
        return cell
    return str(cell)


def _parse_excel(content: bytes) -> ParsedFile:
    try:
        frame = pd.read_excel(io.BytesIO(content), engine="openpyxl", header=None, dtype=object)
    except Exception as exc:
        raise ParseError(f"Could not read Excel file: {exc}") from exc

    rows = [
        [_excel_cell(cell) for cell in row]
        for row in frame.itertuples(index=False, name=None)
    ]
    while rows and all(_cell_is_blank(cell) for cell in rows[0]):
        rows.pop(0)
    headers = _header_from_first_row(rows[0] if rows else None)
    parsed = ParsedFile(headers, lambda: iter(rows[1:]))
    logger.info("Parsed Excel upload: %d columns, %d data rows", len(parsed.headers), parsed.total_records)
    return parsed


def _parse_json(content: bytes, encoding: str) -> ParsedFile:
    try:
        data = json.loads(content.decode(encoding))
    except (UnicodeDecodeError, LookupError, json.JSONDecodeError) as exc:
        raise ParseError(f"File is not valid JSON: {exc}") from exc
    if isinstance(data, dict):
        data = [data]
    if not isinstance(data, list) or not all(isinstance(item, dict) for item in data):
        raise ParseError("JSON upload must be an array of objects")

    headers: List[str] = []
    for item in data:
        for key in item:
            if str(key).strip() and str(key).strip() not in headers:
                headers.append(str(key).strip())
    if not headers:
        raise ParseError("Header row is empty")

    def _cells() -> Iterator[List[Any]]:
        for item in data:
            normalized = {str(key).strip(): value for key, value in item.items()}
            yield [_json_cell(normalized.get(header)) for header in headers]

    parsed = ParsedFile(headers, _cells)
    logger.info("Parsed JSON upload: %d fields, %d records", len(parsed.headers), parsed.total_records)
    return parsed


def _json_cell(value: Any) -> Any:
    if value is None:
        return ""
    if isinstance(value, list):
        return ",".join(str(item) for item in value)
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def parse_upload(content: bytes, file_type: str = "csv", encoding: str = "utf-8-sig") -> ParsedFile:
    """
    Parse an uploaded file into headers and rows.

    Raises:
        ParseError: when the file cannot be read as a table
    """
    if not content:
        raise ParseError("File is empty")
    if file_type == "csv":
        return _parse_csv(content, encoding)
    if file_type == "excel":
        return _parse_excel(content)
    if file_type == "json":
        return _parse_json(content, encoding)
    raise ParseError(f"Unsupported file type '{file_type}'")
