"""Generic JSON log parser.

Parses JSON documents (a single object or an array of objects) and JSONL
(JSON Lines) files. Common field names are mapped onto the normalized
event; every original key is preserved with nested values flattened.
"""

import json
import logging
from collections.abc import Iterator
from typing import Any

from evidentia.parsers.base import (
    BaseParser,
    LogEvent,
    LogLevel,
    ParseContext,
    ValidationResult,
)

logger = logging.getLogger(__name__)

# Alias lists, first present key wins
TIMESTAMP_FIELDS = ["timestamp", "time", "@timestamp", "datetime", "date"]
LEVEL_FIELDS = ["level", "severity", "loglevel"]
MESSAGE_FIELDS = ["message", "msg", "text"]
SOURCE_FIELDS = ["source", "logger", "component", "host"]

JSONL_SAMPLE_LINES = 5
JSONL_MIN_VALID_RATIO = 0.8


def flatten(value: Any, prefix: str = "", out: dict[str, Any] | None = None) -> dict[str, Any]:
    """Flatten nested objects into dotted keys; lists keep primitive members."""
    if out is None:
        out = {}

    if isinstance(value, dict):
        for key, item in value.items():
            flatten(item, f"{prefix}.{key}" if prefix else str(key), out)
    elif isinstance(value, list):
        out[prefix] = [
            item if isinstance(item, (str, int, float, bool)) or item is None else json.dumps(item, sort_keys=True)
            for item in value
        ]
    else:
        out[prefix] = value

    return out


def lookup(record: dict[str, Any], names: list[str]) -> Any:
    """Return the first alias present in the record (case-insensitive)."""
    lowered = {str(key).lower(): key for key in record}
    for name in names:
        key = lowered.get(name.lower())
        if key is not None and record[key] not in (None, ""):
            return record[key]
    return None


class JsonLogParser(BaseParser):
    """Parser for JSON and JSONL log files."""

    name = "json"
    display_name = "JSON Log Parser"
    description = "JSON documents and JSON Lines with alias-based field mapping"
    version = "1.0.0"
    supported_extensions = (".json", ".jsonl", ".ndjson")
    tags = ("structured", "json")

    def _probe_content(self, text: str) -> bool:
        if self._detect_format(text) is not None:
            return True
        return self._starts_object_array(text)

    @staticmethod
    def _starts_object_array(text: str) -> bool:
        """Accept a head sample cut off inside a large array of objects."""
        stripped = text.lstrip()
        if not stripped.startswith("["):
            return False
        try:
            first, _ = json.JSONDecoder().raw_decode(stripped[1:].lstrip())
        except json.JSONDecodeError:
            return False
        return isinstance(first, dict)

    def _detect_format(self, text: str) -> str | None:
        """Classify content as 'object', 'array', 'jsonl' or None."""
        stripped = text.strip()
        if not stripped:
            return None

        try:
            document = json.loads(stripped)
        except json.JSONDecodeError:
            document = None
        else:
            if isinstance(document, dict):
                return "object"
            if isinstance(document, list) and all(isinstance(item, dict) for item in document):
                return "array"

        sample = self.sample_lines(stripped, JSONL_SAMPLE_LINES)
        valid = sum(1 for line in sample if self._parse_line(line) is not None)
        if sample and valid / len(sample) >= JSONL_MIN_VALID_RATIO:
            return "jsonl"
        return None

    @staticmethod
    def _parse_line(line: str) -> dict[str, Any] | None:
        try:
            value = json.loads(line)
        except json.JSONDecodeError:
            return None
        return value if isinstance(value, dict) else None

    def _iter_events(self, text: str, context: ParseContext) -> Iterator[LogEvent]:
        fmt = self._detect_format(text)
        context.metadata["format"] = fmt

        if fmt == "object":
            document = json.loads(text)
            yield self._build_event(document, text.strip(), 1)
        elif fmt == "array":
            for index, record in enumerate(json.loads(text), start=1):
                yield self._build_event(record, json.dumps(record, ensure_ascii=False), index)
        elif fmt == "jsonl":
            skipped = 0
            for line_number, line in enumerate(self.split_lines(text), start=1):
                if not line.strip():
                    continue
                record = self._parse_line(line)
                if record is None:
                    skipped += 1
                    continue
                yield self._build_event(record, line, line_number)
            context.metadata["skipped_lines"] = skipped
        else:
            raise ValueError("Content is not valid JSON or JSON Lines")

    def _build_event(self, record: dict[str, Any], raw: str, line_number: int) -> LogEvent:
        timestamp, estimated = self.resolve_timestamp(lookup(record, TIMESTAMP_FIELDS))
        message = lookup(record, MESSAGE_FIELDS)
        source = lookup(record, SOURCE_FIELDS)

        return LogEvent(
            timestamp=timestamp,
            timestamp_estimated=estimated,
            level=LogLevel.normalize(lookup(record, LEVEL_FIELDS)),
            message=str(message) if message is not None else raw,
            source=str(source) if source is not None else "",
            line_number=line_number,
            raw=raw,
            fields=flatten(record),
        )

    def _validate_text(self, text: str, result: ValidationResult) -> None:
        fmt = self._detect_format(text)
        if fmt is None:
            result.add_error("Content is not valid JSON, a JSON array of objects, or JSON Lines")
            return

        result.suggestions["format"] = fmt
        if fmt == "jsonl":
            lines = [line for line in self.split_lines(text) if line.strip()]
            valid = sum(1 for line in lines if self._parse_line(line) is not None)
            result.suggestions["valid_lines"] = valid
            result.suggestions["total_lines"] = len(lines)
            if valid < len(lines):
                result.add_warning(f"{len(lines) - valid} of {len(lines)} lines are not valid JSON objects")
        elif fmt == "array":
            count = len(json.loads(text))
            result.suggestions["total_records"] = count
            if count == 0:
                result.add_warning("JSON array is empty")
