"""Windows Event Log parser.

Handles the three textual encodings analysts usually hand over: XML
exports (``wevtutil qe /f:xml``), Event Viewer plain-text exports and
Event Viewer CSV exports. The encoding is sniffed before parsing.
Binary EVTX containers are not decoded here.
"""

import csv
import io
import logging
import re
import xml.etree.ElementTree as ET
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

CSV_EXPORT_HEADER = "Level,Date and Time,Source,Event ID,Task Category"
EVTX_SIGNATURE = "ElfFile"

# Event Viewer level codes and labels
EVENT_LEVELS: dict[str, LogLevel] = {
    "0": LogLevel.INFO,
    "1": LogLevel.CRITICAL,
    "2": LogLevel.ERROR,
    "3": LogLevel.WARNING,
    "4": LogLevel.INFO,
    "5": LogLevel.DEBUG,
    "information": LogLevel.INFO,
    "critical": LogLevel.CRITICAL,
    "error": LogLevel.ERROR,
    "warning": LogLevel.WARNING,
    "verbose": LogLevel.DEBUG,
    "audit success": LogLevel.INFO,
    "audit failure": LogLevel.WARNING,
}

EVENT_BLOCK_STARTS = ("Log Name:", "Event Type:")

_NAMESPACE = re.compile(r"^\{[^}]*\}")


def map_event_level(value: str | None) -> LogLevel:
    if value is None:
        return LogLevel.INFO
    return EVENT_LEVELS.get(value.strip().lower(), LogLevel.normalize(value))


def build_message(fields: dict[str, Any]) -> str:
    parts = []
    if fields.get("EventID"):
        parts.append(f"Event ID: {fields['EventID']}")
    if fields.get("Provider"):
        parts.append(f"Source: {fields['Provider']}")
    if fields.get("Description"):
        parts.append(f"Description: {fields['Description']}")
    return " | ".join(parts) if parts else "Windows Event"


def _local(tag: str) -> str:
    """Strip an XML namespace from a tag."""
    return _NAMESPACE.sub("", tag)


def _child(element: ET.Element, name: str) -> ET.Element | None:
    for child in element:
        if _local(child.tag) == name:
            return child
    return None


class WindowsEventLogParser(BaseParser):
    """Parser for Windows Event Log XML, text and CSV exports."""

    name = "windows_event_log"
    display_name = "Windows Event Log Parser"
    description = "Windows Event Log exports in XML, plain-text or CSV form"
    version = "1.0.0"
    supported_extensions = (".evtx", ".evt", ".xml", ".txt", ".csv")
    tags = ("windows", "eventlog")

    def detect_encoding(self, text: str) -> str | None:
        """Return 'xml', 'text', 'csv' or None."""
        if text.startswith(EVTX_SIGNATURE):
            return None
        if text.lstrip().startswith("<Event") or "<Event xmlns=" in text:
            return "xml"
        if "Event ID" in text and "Source" in text and "Log Name" in text:
            return "text"
        if CSV_EXPORT_HEADER in text:
            return "csv"
        return None

    def _probe_content(self, text: str) -> bool:
        return self.detect_encoding(text) is not None

    def _iter_events(self, text: str, context: ParseContext) -> Iterator[LogEvent]:
        encoding = self.detect_encoding(text)
        context.metadata["encoding"] = encoding

        if encoding == "xml":
            yield from self._parse_xml(text, context)
        elif encoding == "text":
            yield from self._parse_text_export(text)
        elif encoding == "csv":
            yield from self._parse_csv_export(text, context)
        else:
            raise ValueError("Content is not a recognised Windows Event Log export")

    # ------------------------------------------------------------------
    # XML
    # ------------------------------------------------------------------

    def _parse_xml(self, text: str, context: ParseContext) -> Iterator[LogEvent]:
        stripped = text.strip()
        if stripped.startswith("<?xml"):
            stripped = stripped[stripped.find("?>") + 2:].strip()

        try:
            root = ET.fromstring(stripped)
        except ET.ParseError:
            # Concatenated <Event> elements without a common root
            root = ET.fromstring(f"<Events>{stripped}</Events>")

        nodes = [root] if _local(root.tag) == "Event" else [
            node for node in root.iter() if _local(node.tag) == "Event"
        ]

        failed = 0
        for index, node in enumerate(nodes, start=1):
            try:
                yield self._xml_event(node, index)
            except (ValueError, AttributeError) as e:
                failed += 1
                self.logger.warning("Error parsing XML event node at index %d: %s", index, e)
        context.metadata["failed_events"] = failed

    def _xml_event(self, node: ET.Element, index: int) -> LogEvent:
        fields: dict[str, Any] = {}
        source = ""
        level = LogLevel.INFO
        time_created = None

        system = _child(node, "System")
        if system is not None:
            for child in system:
                tag = _local(child.tag)
                if tag == "EventID":
                    fields["EventID"] = (child.text or "").strip()
                elif tag == "Level":
                    fields["Level"] = (child.text or "").strip()
                    level = map_event_level(fields["Level"])
                elif tag == "TimeCreated":
                    time_created = child.get("SystemTime")
                    if time_created:
                        fields["TimeCreated"] = time_created
                elif tag == "Provider":
                    source = child.get("Name", "")
                    if source:
                        fields["Provider"] = source
                elif tag in ("Computer", "Channel", "Task", "Keywords", "EventRecordID"):
                    fields[tag] = (child.text or "").strip()

        event_data = _child(node, "EventData")
        if event_data is not None:
            for position, data in enumerate(event_data, start=1):
                if _local(data.tag) != "Data":
                    continue
                fields[data.get("Name") or f"Data{position}"] = data.text or ""

        user_data = _child(node, "UserData")
        if user_data is not None:
            fields["UserData"] = "".join(ET.tostring(child, encoding="unicode") for child in user_data)

        timestamp, estimated = self.resolve_timestamp(time_created)

        return LogEvent(
            timestamp=timestamp,
            timestamp_estimated=estimated,
            level=level,
            message=build_message(fields),
            source=source,
            line_number=index,
            raw=ET.tostring(node, encoding="unicode"),
            fields=fields,
        )

    # ------------------------------------------------------------------
    # Plain-text export
    # ------------------------------------------------------------------

    def _parse_text_export(self, text: str) -> Iterator[LogEvent]:
        block: list[tuple[str, str]] = []
        raw_lines: list[str] = []
        start_line = 1

        for line_number, line in enumerate(self.split_lines(text), start=1):
            stripped = line.strip()
            if not stripped:
                continue

            if stripped.startswith(EVENT_BLOCK_STARTS) and block:
                yield self._text_event(block, raw_lines, start_line)
                block, raw_lines = [], []

            if not block:
                start_line = line_number

            raw_lines.append(line)
            key, sep, value = stripped.partition(":")
            if sep and key.strip() and value.strip():
                block.append((key.strip(), value.strip()))

        if block:
            yield self._text_event(block, raw_lines, start_line)

    def _text_event(self, block: list[tuple[str, str]], raw_lines: list[str], line_number: int) -> LogEvent:
        fields: dict[str, Any] = {}
        source = ""
        level = LogLevel.INFO
        time_value = None

        for key, value in block:
            fields[key] = value
            lowered = key.lower()
            if lowered in ("event type", "level"):
                level = map_event_level(value)
            elif lowered in ("date", "time generated"):
                time_value = value
            elif lowered == "source":
                source = value
                fields["Provider"] = value
            elif lowered == "event id":
                fields["EventID"] = value

        timestamp, estimated = self.resolve_timestamp(time_value)

        return LogEvent(
            timestamp=timestamp,
            timestamp_estimated=estimated,
            level=level,
            message=build_message(fields),
            source=source,
            line_number=line_number,
            raw="\n".join(raw_lines),
            fields=fields,
        )

    # ------------------------------------------------------------------
    # CSV export
    # ------------------------------------------------------------------

    def _parse_csv_export(self, text: str, context: ParseContext) -> Iterator[LogEvent]:
        lines = self.split_lines(text)
        header_index = next(i for i, line in enumerate(lines) if CSV_EXPORT_HEADER in line)
        headers = [h.strip().strip('"') for h in next(csv.reader([lines[header_index]]))]

        skipped = 0
        for line_number, line in enumerate(lines[header_index + 1:], start=header_index + 2):
            if not line.strip():
                continue
            values = next(csv.reader(io.StringIO(line)), [])
            if len(values) != len(headers):
                skipped += 1
                continue

            fields: dict[str, Any] = {}
            level = LogLevel.INFO
            source = ""
            time_value = None
            for header, value in zip(headers, values):
                value = value.strip().strip('"')
                fields[header] = value
                lowered = header.lower()
                if lowered == "level":
                    level = map_event_level(value)
                elif lowered in ("date and time", "datetime"):
                    time_value = value
                elif lowered == "source":
                    source = value
                    fields["Provider"] = value
                elif lowered == "event id":
                    fields["EventID"] = value

            timestamp, estimated = self.resolve_timestamp(time_value)
            yield LogEvent(
                timestamp=timestamp,
                timestamp_estimated=estimated,
                level=level,
                message=build_message(fields),
                source=source,
                line_number=line_number,
                raw=line,
                fields=fields,
            )

        context.metadata["skipped_rows"] = skipped

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def _validate_text(self, text: str, result: ValidationResult) -> None:
        encoding = self.detect_encoding(text)
        result.suggestions["encoding"] = encoding

        if encoding == "xml":
            stripped = text.strip()
            if stripped.startswith("<?xml"):
                stripped = stripped[stripped.find("?>") + 2:].strip()
            try:
                root = ET.fromstring(f"<Events>{stripped}</Events>")
            except ET.ParseError as e:
                result.add_error(f"Invalid XML format: {e}")
                return
            if not any(_local(node.tag) == "Event" for node in root.iter()):
                result.add_warning("No Event nodes found in XML")
        elif encoding == "text":
            lines = [line for line in self.split_lines(text) if line.strip()]
            if len(lines) < 5:
                result.add_warning("Text export appears to have very few events")
        elif encoding == "csv":
            lines = [line for line in self.split_lines(text) if line.strip()]
            if len(lines) < 2:
                result.add_error("CSV export must have at least header and one data row")
        else:
            result.add_error("Content does not appear to be a valid Windows Event Log format")
