"""Generic multi-pattern text log parser.

Tries a ranked table of common line grammars (syslog, Apache, IIS and
generic timestamp/level layouts). This is the most permissive built-in and
acts as the fallback for line-oriented logs.
"""

import logging
import re
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

_ISO_TIMESTAMP = r"\d{4}-\d{2}-\d{2}[\sT]\d{2}:\d{2}:\d{2}(?:[.,]\d{1,6})?(?:Z|[+-]\d{2}:?\d{2})?"
_LEVELS = r"TRACE|DEBUG|INFO|NOTICE|WARN|WARNING|ERROR|ERR|FATAL|CRITICAL|CRIT"

# Ordered: first match wins
LOG_PATTERNS: dict[str, re.Pattern] = {
    "syslog": re.compile(
        r"^(?P<timestamp>\w{3}\s+\d{1,2}\s+\d{2}:\d{2}:\d{2})\s+(?P<hostname>\S+)\s+"
        r"(?P<process>[^\s:\[]+)(?:\[(?P<pid>\d+)\])?\s*:\s*(?P<message>.*)$"
    ),
    "apache_common": re.compile(
        r'^(?P<ip>\S+)\s+\S+\s+(?P<user>\S+)\s+\[(?P<timestamp>[^\]]+)\]\s+'
        r'"(?P<method>\S+)\s+(?P<url>\S+)\s+(?P<protocol>[^"]+)"\s+(?P<status>\d{3})\s+(?P<size>\S+)$'
    ),
    "apache_combined": re.compile(
        r'^(?P<ip>\S+)\s+\S+\s+(?P<user>\S+)\s+\[(?P<timestamp>[^\]]+)\]\s+'
        r'"(?P<method>\S+)\s+(?P<url>\S+)\s+(?P<protocol>[^"]+)"\s+(?P<status>\d{3})\s+(?P<size>\S+)\s+'
        r'"(?P<referer>[^"]*)"\s+"(?P<useragent>[^"]*)"'
    ),
    "iis": re.compile(
        r"^(?P<date>\d{4}-\d{2}-\d{2})\s+(?P<time>\d{2}:\d{2}:\d{2})\s+(?P<ip>\S+)\s+(?P<method>\S+)\s+"
        r"(?P<uri>\S+)\s+(?P<query>\S+)\s+(?P<port>\d+)\s+(?P<username>\S+)\s+(?P<clientip>\S+)\s+"
        r"(?P<useragent>\S+)\s+(?P<referer>\S+)\s+(?P<status>\d+)\s+(?P<substatus>\d+)\s+"
        r"(?P<win32status>\d+)\s+(?P<timetaken>\d+)$"
    ),
    "generic_level": re.compile(
        rf"^(?P<timestamp>{_ISO_TIMESTAMP})\s*[\[\(]?(?P<level>{_LEVELS})\b[\]\)]?\s*[:\-]?\s*(?P<message>.*)$",
        re.IGNORECASE,
    ),
    "generic_timestamp": re.compile(rf"^(?P<timestamp>{_ISO_TIMESTAMP})\s+(?P<message>.*)$"),
    "level_only": re.compile(
        rf"^[\[\(]?(?P<level>{_LEVELS})\b[\]\)]?\s*[:\-]?\s*(?P<message>.*)$",
        re.IGNORECASE,
    ),
}

PATTERN_TIMESTAMP_FORMATS: dict[str, list[str]] = {
    "syslog": ["%Y %b %d %H:%M:%S"],
    "apache_common": ["%d/%b/%Y:%H:%M:%S %z"],
    "apache_combined": ["%d/%b/%Y:%H:%M:%S %z"],
    "iis": ["%Y-%m-%d %H:%M:%S"],
}

LEADING_TIMESTAMP = re.compile(rf"^({_ISO_TIMESTAMP})")
LEVEL_WORD = re.compile(rf"\b({_LEVELS})\b", re.IGNORECASE)
KEY_VALUE = re.compile(r"\b([A-Za-z_][\w.\-]*)=(\"[^\"]*\"|'[^']*'|\S+)")

SAMPLE_LINES = 10
MIN_MATCH_RATIO = 0.3
VALIDATION_SAMPLE_LINES = 100


class TextLogParser(BaseParser):
    """Fallback parser for line-oriented text logs."""

    name = "text"
    display_name = "Generic Text Log Parser"
    description = "Line-oriented logs: syslog, Apache, IIS and timestamp/level layouts"
    version = "1.0.0"
    supported_extensions = (".log", ".txt", ".syslog")
    tags = ("text", "fallback", "webserver")

    def matching_pattern(self, line: str) -> tuple[str, re.Match] | None:
        for pattern_name, pattern in LOG_PATTERNS.items():
            match = pattern.match(line)
            if match:
                return pattern_name, match
        return None

    def _probe_content(self, text: str) -> bool:
        sample = self.sample_lines(text, SAMPLE_LINES)
        if not sample:
            return False
        matched = sum(1 for line in sample if self.matching_pattern(line.strip()))
        return matched / len(sample) >= MIN_MATCH_RATIO

    def _iter_events(self, text: str, context: ParseContext) -> Iterator[LogEvent]:
        pattern_counts: dict[str, int] = {}
        for line_number, line in enumerate(self.split_lines(text), start=1):
            if not line.strip():
                continue
            event = self.parse_line(line, line_number)
            pattern = event.fields.get("pattern_matched", "unstructured")
            pattern_counts[pattern] = pattern_counts.get(pattern, 0) + 1
            yield event
        context.metadata["pattern_counts"] = pattern_counts

    def parse_line(self, line: str, line_number: int = 0) -> LogEvent:
        found = self.matching_pattern(line.strip())
        if found is None:
            return self._basic_event(line, line_number)

        pattern_name, match = found
        groups = {k: v for k, v in match.groupdict().items() if v is not None}
        fields: dict[str, Any] = dict(groups)
        fields["pattern_matched"] = pattern_name

        raw_timestamp = groups.get("timestamp")
        if pattern_name == "iis":
            raw_timestamp = f"{groups['date']} {groups['time']}"
        elif pattern_name == "syslog":
            raw_timestamp = f"{self.clock().year} {' '.join(groups['timestamp'].split())}"
        timestamp, estimated = self.resolve_timestamp(
            raw_timestamp, PATTERN_TIMESTAMP_FORMATS.get(pattern_name)
        )

        if "level" in groups:
            level = LogLevel.normalize(groups["level"])
        elif "status" in groups:
            level = self._http_level(groups["status"])
        else:
            level = LogLevel.INFO

        message = groups.get("message")
        if message is None:
            message = line.strip()

        return LogEvent(
            timestamp=timestamp,
            timestamp_estimated=estimated,
            level=level,
            message=message,
            source=groups.get("hostname") or groups.get("ip") or "",
            line_number=line_number,
            raw=line,
            fields=fields,
        )

    def _basic_event(self, line: str, line_number: int) -> LogEvent:
        fields: dict[str, Any] = {}

        ts_match = LEADING_TIMESTAMP.match(line.strip())
        raw_timestamp = ts_match.group(1) if ts_match else None
        if raw_timestamp:
            fields["extracted_timestamp"] = raw_timestamp
        timestamp, estimated = self.resolve_timestamp(raw_timestamp)

        level_match = LEVEL_WORD.search(line)
        level = LogLevel.normalize(level_match.group(1)) if level_match else LogLevel.INFO

        for key, value in KEY_VALUE.findall(line):
            fields[key] = value.strip("\"'")

        return LogEvent(
            timestamp=timestamp,
            timestamp_estimated=estimated,
            level=level,
            message=line.strip(),
            line_number=line_number,
            raw=line,
            fields=fields,
        )

    @staticmethod
    def _http_level(status: str) -> LogLevel:
        code = int(status)
        if code >= 500:
            return LogLevel.ERROR
        if code >= 400:
            return LogLevel.WARNING
        return LogLevel.INFO

    def _validate_text(self, text: str, result: ValidationResult) -> None:
        sample = self.sample_lines(text, VALIDATION_SAMPLE_LINES)
        counts = {name: 0 for name in LOG_PATTERNS}
        matched = 0
        for line in sample:
            found = self.matching_pattern(line.strip())
            if found:
                counts[found[0]] += 1
                matched += 1

        result.suggestions["pattern_counts"] = counts
        result.suggestions["sampled_lines"] = len(sample)
        percentage = round(matched / len(sample) * 100, 1) if sample else 0.0
        result.suggestions["match_percentage"] = percentage
        if matched:
            result.suggestions["dominant_pattern"] = max(counts, key=lambda name: counts[name])

        if percentage < MIN_MATCH_RATIO * 100:
            result.add_error(f"Only {percentage}% of sampled lines match a known log layout")
        elif percentage < 80:
            result.add_warning(f"{percentage}% of sampled lines match a known log layout")
