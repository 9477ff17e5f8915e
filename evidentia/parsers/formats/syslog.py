"""Syslog parser (RFC 3164 and RFC 5424).

Handles both the BSD syslog framing and the structured RFC 5424 framing.
When a line carries a PRI value its severity overrides any level inferred
from the message text.
"""

import logging
import re
from collections.abc import Iterator
from datetime import UTC, datetime
from typing import Any

from evidentia.parsers.base import (
    BaseParser,
    LogEvent,
    LogLevel,
    ParseContext,
    ValidationResult,
)

logger = logging.getLogger(__name__)

RFC3164_PATTERN = re.compile(
    r"^(?P<pri><\d{1,3}>)?"
    r"(?P<timestamp>\w{3}\s+\d{1,2}\s+\d{2}:\d{2}:\d{2})\s+"
    r"(?P<hostname>\S+)\s+"
    r"(?P<process>[^\s:\[]+)(?:\[(?P<pid>\d+)\])?\s*:\s*"
    r"(?P<message>.*)$"
)

RFC5424_PATTERN = re.compile(
    r"^(?P<pri><\d{1,3}>)(?P<version>\d+)\s+"
    r"(?P<timestamp>\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}(?:\.\d+)?(?:Z|[+-]\d{2}:\d{2}))\s+"
    r"(?P<hostname>\S+)\s+"
    r"(?P<app>\S+)\s+"
    r"(?P<procid>\S+)\s+"
    r"(?P<msgid>\S+)\s+"
    r"(?P<sd>-|\[.*?\](?:\[.*?\])*)\s*"
    r"(?P<message>.*)$"
)

SAMPLE_LINES = 5
MIN_MATCH_RATIO = 0.6

# Syslog severity (PRI % 8) -> (name, normalized level)
SEVERITIES: dict[int, tuple[str, LogLevel]] = {
    0: ("Emergency", LogLevel.CRITICAL),
    1: ("Alert", LogLevel.CRITICAL),
    2: ("Critical", LogLevel.CRITICAL),
    3: ("Error", LogLevel.ERROR),
    4: ("Warning", LogLevel.WARNING),
    5: ("Notice", LogLevel.INFO),
    6: ("Informational", LogLevel.INFO),
    7: ("Debug", LogLevel.DEBUG),
}

FACILITIES = [
    "kern", "user", "mail", "daemon", "auth", "syslog", "lpr", "news",
    "uucp", "cron", "authpriv", "ftp", "ntp", "security", "console", "solaris-cron",
    "local0", "local1", "local2", "local3", "local4", "local5", "local6", "local7",
]

LEVEL_KEYWORDS = [
    (re.compile(r"\b(emerg|emergency|panic|fatal|crit|critical)\b", re.IGNORECASE), LogLevel.CRITICAL),
    (re.compile(r"\b(err|error|fail|failed|failure|denied)\b", re.IGNORECASE), LogLevel.ERROR),
    (re.compile(r"\b(warn|warning)\b", re.IGNORECASE), LogLevel.WARNING),
    (re.compile(r"\bdebug\b", re.IGNORECASE), LogLevel.DEBUG),
]


def infer_level(message: str) -> LogLevel:
    """Guess a level from keywords in free text."""
    for pattern, level in LEVEL_KEYWORDS:
        if pattern.search(message):
            return level
    return LogLevel.INFO


def decode_priority(pri: str | None) -> tuple[int, int] | None:
    """Split a ``<N>`` PRI token into (facility, severity)."""
    if not pri:
        return None
    value = int(pri.strip("<>"))
    if value > 191:
        return None
    return value // 8, value % 8


class SyslogParser(BaseParser):
    """Parser for RFC 3164 and RFC 5424 syslog files."""

    name = "syslog"
    display_name = "Syslog Parser"
    description = "BSD (RFC 3164) and structured (RFC 5424) syslog"
    version = "1.0.0"
    supported_extensions = (".log", ".syslog")
    tags = ("syslog", "linux", "network")

    def match_line(self, line: str) -> tuple[str, re.Match] | None:
        """Return the grammar name and match for a line, if any."""
        match = RFC5424_PATTERN.match(line)
        if match:
            return "rfc5424", match
        match = RFC3164_PATTERN.match(line)
        if match:
            return "rfc3164", match
        return None

    def _probe_content(self, text: str) -> bool:
        sample = self.sample_lines(text, SAMPLE_LINES)
        if not sample:
            return False
        matched = sum(1 for line in sample if self.match_line(line.strip()))
        return matched / len(sample) >= MIN_MATCH_RATIO

    def _iter_events(self, text: str, context: ParseContext) -> Iterator[LogEvent]:
        counts = {"rfc3164": 0, "rfc5424": 0, "unknown": 0}
        for line_number, line in enumerate(self.split_lines(text), start=1):
            if not line.strip():
                continue
            event = self.parse_line(line, line_number)
            counts[event.fields.get("format", "unknown")] += 1
            yield event
        context.metadata["format_counts"] = counts

    def parse_line(self, line: str, line_number: int = 0) -> LogEvent:
        """Parse a single syslog line into an event."""
        found = self.match_line(line.strip())
        if found is None:
            timestamp, _ = self.resolve_timestamp(None)
            return LogEvent(
                timestamp=timestamp,
                timestamp_estimated=True,
                level=infer_level(line),
                message=line.strip(),
                line_number=line_number,
                raw=line,
                fields={"format": "unknown"},
            )

        grammar, match = found
        groups = match.groupdict()
        fields: dict[str, Any] = {"format": grammar}

        if grammar == "rfc5424":
            timestamp, estimated = self.resolve_timestamp(groups["timestamp"])
            fields["version"] = int(groups["version"])
            fields["app_name"] = groups["app"]
            fields["proc_id"] = groups["procid"]
            fields["msg_id"] = groups["msgid"]
            if groups["sd"] != "-":
                fields["structured_data"] = groups["sd"]
        else:
            timestamp, estimated = self._bsd_timestamp(groups["timestamp"])
            fields["process"] = groups["process"]
            if groups.get("pid"):
                fields["pid"] = int(groups["pid"])

        message = groups["message"].strip()
        if grammar == "rfc5424" and message.startswith("\ufeff"):
            message = message[1:]

        level = infer_level(message)
        priority = decode_priority(groups.get("pri"))
        if priority is not None:
            facility, severity = priority
            severity_name, level = SEVERITIES[severity]
            fields["priority"] = facility * 8 + severity
            fields["facility"] = FACILITIES[facility] if facility < len(FACILITIES) else str(facility)
            fields["severity"] = severity
            fields["severity_name"] = severity_name

        return LogEvent(
            timestamp=timestamp,
            timestamp_estimated=estimated,
            level=level,
            message=message,
            source=groups["hostname"],
            line_number=line_number,
            raw=line,
            fields=fields,
        )

    def _bsd_timestamp(self, value: str) -> tuple[datetime, bool]:
        """RFC 3164 timestamps omit the year; borrow it from the clock."""
        year = self.clock().year
        normalized = " ".join(value.split())
        try:
            parsed = datetime.strptime(f"{year} {normalized}", "%Y %b %d %H:%M:%S")
        except ValueError:
            return self.resolve_timestamp(None)
        return parsed.replace(tzinfo=UTC), False

    def _validate_text(self, text: str, result: ValidationResult) -> None:
        lines = [line for line in self.split_lines(text) if line.strip()]
        counts = {"rfc3164": 0, "rfc5424": 0}
        for line in lines:
            found = self.match_line(line.strip())
            if found:
                counts[found[0]] += 1

        matched = counts["rfc3164"] + counts["rfc5424"]
        percentage = round(matched / len(lines) * 100, 1) if lines else 0.0
        result.suggestions["match_percentage"] = percentage
        result.suggestions["rfc3164_lines"] = counts["rfc3164"]
        result.suggestions["rfc5424_lines"] = counts["rfc5424"]
        result.suggestions["total_lines"] = len(lines)

        if percentage < 50:
            result.add_error(f"Only {percentage}% of lines match a syslog format")
        elif percentage < 80:
            result.add_warning(f"{percentage}% of lines match a syslog format; some lines will be unstructured")

        if counts["rfc3164"] and counts["rfc5424"]:
            result.add_warning("Mixed RFC 3164 and RFC 5424 lines detected")
