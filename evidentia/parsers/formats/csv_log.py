"""Delimited text (CSV/TSV) log parser.

Infers the delimiter from the header line and maps columns onto event
fields by keyword containment, so column order does not matter.
"""

import csv
import io
import logging
from collections import Counter
from collections.abc import Iterator

from evidentia.parsers.base import (
    BaseParser,
    LogEvent,
    LogLevel,
    ParseContext,
    ValidationResult,
)

logger = logging.getLogger(__name__)

CANDIDATE_DELIMITERS = [",", "\t", ";", "|"]

# Header keywords for semantic columns, matched by containment
TIMESTAMP_KEYWORDS = ["timestamp", "time", "datetime", "date", "created", "occurred"]
LEVEL_KEYWORDS = ["level", "severity", "priority", "type", "category"]
MESSAGE_KEYWORDS = ["message", "msg", "description", "text", "content", "details"]
SOURCE_KEYWORDS = ["source", "host", "hostname", "server", "application", "service"]


def detect_delimiter(first_line: str) -> str:
    """Pick the candidate delimiter occurring most often; comma on tie or none."""
    counts = {d: first_line.count(d) for d in CANDIDATE_DELIMITERS}
    best = max(counts.values())
    if best == 0:
        return ","
    winners = [d for d in CANDIDATE_DELIMITERS if counts[d] == best]
    if len(winners) > 1:
        return ","
    return winners[0]


def find_column(headers: list[str], keywords: list[str]) -> int | None:
    """Index of the first header containing any keyword (case-insensitive)."""
    lowered = [h.strip().lower() for h in headers]
    for keyword in keywords:
        for index, header in enumerate(lowered):
            if keyword in header:
                return index
    return None


def split_row(line: str, delimiter: str) -> list[str]:
    """Split one physical line honouring quotes."""
    return next(csv.reader([line], delimiter=delimiter), [])


class CsvLogParser(BaseParser):
    """Parser for comma, tab, semicolon or pipe separated logs."""

    name = "csv"
    display_name = "CSV Log Parser"
    description = "Delimited log files with automatic delimiter and column detection"
    version = "1.0.0"
    supported_extensions = (".csv", ".tsv", ".tab")
    tags = ("structured", "tabular")

    def _probe_content(self, text: str) -> bool:
        lines = self.sample_lines(text, 2)
        if len(lines) < 2:
            return False
        headers = split_row(lines[0], detect_delimiter(lines[0]))
        return any(h.strip() for h in headers)

    def _iter_events(self, text: str, context: ParseContext) -> Iterator[LogEvent]:
        lines = self.split_lines(text)
        header_index = next((i for i, line in enumerate(lines) if line.strip()), None)
        if header_index is None:
            return

        delimiter = detect_delimiter(lines[header_index])
        headers = [h.strip() for h in split_row(lines[header_index], delimiter)]
        context.metadata["delimiter"] = delimiter
        context.metadata["headers"] = headers

        columns = {
            "timestamp": find_column(headers, TIMESTAMP_KEYWORDS),
            "level": find_column(headers, LEVEL_KEYWORDS),
            "message": find_column(headers, MESSAGE_KEYWORDS),
            "source": find_column(headers, SOURCE_KEYWORDS),
        }
        context.metadata["mapped_columns"] = {
            key: headers[index] for key, index in columns.items() if index is not None
        }

        skipped = 0
        for line_number, line in enumerate(lines[header_index + 1:], start=header_index + 2):
            if not line.strip():
                continue

            values = split_row(line, delimiter)
            if len(values) != len(headers):
                skipped += 1
                continue

            yield self._build_event(line, line_number, headers, values, columns)

        context.metadata["skipped_rows"] = skipped

    def _build_event(
        self,
        line: str,
        line_number: int,
        headers: list[str],
        values: list[str],
        columns: dict[str, int | None],
    ) -> LogEvent:
        fields = {header: value.strip() for header, value in zip(headers, values)}

        def column_value(key: str) -> str | None:
            index = columns[key]
            if index is None:
                return None
            return values[index].strip() or None

        timestamp, estimated = self.resolve_timestamp(column_value("timestamp"))

        return LogEvent(
            timestamp=timestamp,
            timestamp_estimated=estimated,
            level=LogLevel.normalize(column_value("level")),
            message=column_value("message") or line,
            source=column_value("source") or "",
            line_number=line_number,
            raw=line,
            fields=fields,
        )

    def _validate_text(self, text: str, result: ValidationResult) -> None:
        lines = [line for line in self.split_lines(text) if line.strip()]
        if len(lines) < 2:
            result.add_error("CSV content must contain a header and at least one data row")
            return

        delimiter = detect_delimiter(lines[0])
        headers = [h.strip() for h in split_row(lines[0], delimiter)]
        result.suggestions["delimiter"] = delimiter
        result.suggestions["total_rows"] = len(lines) - 1
        result.suggestions["header_count"] = len(headers)

        duplicates = sorted(h for h, n in Counter(h.lower() for h in headers).items() if n > 1)
        if duplicates:
            result.add_warning(f"Duplicate headers found: {', '.join(duplicates)}")

        for row_number, line in enumerate(lines[1:], start=2):
            width = len(split_row(line, delimiter))
            if width != len(headers):
                result.add_warning(
                    f"Row {row_number} has {width} fields, expected {len(headers)}"
                )

        if find_column(headers, TIMESTAMP_KEYWORDS) is None:
            result.add_warning("No timestamp column detected; ingestion time will be used")
