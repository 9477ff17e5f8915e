"""Unit tests for the Windows Event Log parser.

Covers encoding sniffing and parsing of XML, plain-text and CSV exports.
"""

from datetime import UTC, datetime

import pytest

pytestmark = pytest.mark.unit


@pytest.fixture
def windows_parser():
    """Create a Windows Event Log parser instance."""
    from evidentia.parsers.formats.windows_event import WindowsEventLogParser

    return WindowsEventLogParser(clock=lambda: datetime(2026, 3, 1, 12, 0, tzinfo=UTC))


@pytest.fixture
def sample_windows_text_content() -> bytes:
    """Event Viewer plain-text export with two events."""
    return (
        b"Log Name:      Security\n"
        b"Source:        Microsoft-Windows-Security-Auditing\n"
        b"Date:          2026-03-01 10:00:00\n"
        b"Event ID:      4624\n"
        b"Level:         Information\n"
        b"Description:   An account was successfully logged on.\n"
        b"\n"
        b"Log Name:      System\n"
        b"Source:        Service Control Manager\n"
        b"Date:          2026-03-01 10:05:00\n"
        b"Event ID:      7034\n"
        b"Level:         Error\n"
        b"Description:   The service terminated unexpectedly.\n"
    )


class TestEncodingDetection:
    """Tests for detect_encoding."""

    def test_xml(self, windows_parser, sample_windows_xml_content):
        assert windows_parser.detect_encoding(sample_windows_xml_content.decode()) == "xml"

    def test_text(self, windows_parser, sample_windows_text_content):
        assert windows_parser.detect_encoding(sample_windows_text_content.decode()) == "text"

    def test_csv(self, windows_parser, sample_windows_csv_content):
        assert windows_parser.detect_encoding(sample_windows_csv_content.decode()) == "csv"

    def test_binary_evtx_is_not_handled(self, windows_parser):
        assert windows_parser.detect_encoding("ElfFile\x00\x00\x00") is None

    def test_generic_csv_is_not_windows(self, windows_parser):
        assert windows_parser.can_parse("events.csv", b"timestamp,level,message\n1,2,3\n") is False


class TestXmlParsing:
    """Tests for XML exports."""

    @pytest.mark.asyncio
    async def test_parse_events(self, windows_parser, sample_windows_xml_content):
        result = await windows_parser.parse("security.xml", sample_windows_xml_content)

        assert result.success
        assert result.events_count == 2
        assert result.metadata["encoding"] == "xml"
        assert result.metadata["failed_events"] == 0

        logon = result.events[0]
        assert logon.fields["EventID"] == "4625"
        assert logon.fields["Provider"] == "Microsoft-Windows-Security-Auditing"
        assert logon.fields["TargetUserName"] == "administrator"
        assert logon.fields["IpAddress"] == "203.0.113.50"
        assert logon.fields["Computer"] == "DC01"
        assert logon.source == "Microsoft-Windows-Security-Auditing"
        assert logon.message == "Event ID: 4625 | Source: Microsoft-Windows-Security-Auditing"
        assert logon.timestamp == datetime(2026, 3, 1, 10, 0, 0, tzinfo=UTC)
        assert logon.level.value == "INFO"
        assert "<" in logon.raw

        service = result.events[1]
        assert service.level.value == "ERROR"
        assert service.fields["EventID"] == "7045"

    @pytest.mark.asyncio
    async def test_single_event_document(self, windows_parser):
        content = (
            b'<Event xmlns="http://schemas.microsoft.com/win/2004/08/events/event">'
            b"<System><EventID>1102</EventID><Level>4</Level></System></Event>"
        )

        result = await windows_parser.parse("one.xml", content)

        assert result.events_count == 1
        assert result.events[0].fields["EventID"] == "1102"
        assert result.events[0].timestamp_estimated is True


class TestTextParsing:
    """Tests for plain-text exports."""

    @pytest.mark.asyncio
    async def test_parse_blocks(self, windows_parser, sample_windows_text_content):
        result = await windows_parser.parse("export.txt", sample_windows_text_content)

        assert result.events_count == 2

        first, second = result.events
        assert first.source == "Microsoft-Windows-Security-Auditing"
        assert first.fields["EventID"] == "4624"
        assert first.level.value == "INFO"
        assert first.timestamp == datetime(2026, 3, 1, 10, 0, 0, tzinfo=UTC)
        assert first.line_number == 1
        assert "Description: An account was successfully logged on." in first.message

        assert second.level.value == "ERROR"
        assert second.line_number == 8
        assert second.raw.startswith("Log Name:")


class TestCsvExportParsing:
    """Tests for Event Viewer CSV exports."""

    @pytest.mark.asyncio
    async def test_parse_rows(self, windows_parser, sample_windows_csv_content):
        result = await windows_parser.parse("export.csv", sample_windows_csv_content)

        assert result.events_count == 2
        assert result.metadata["skipped_rows"] == 0

        first = result.events[0]
        assert first.level.value == "ERROR"
        assert first.source == "Service Control Manager"
        assert first.fields["EventID"] == "7034"
        assert first.timestamp == datetime(2026, 3, 1, 10, 0, 0, tzinfo=UTC)
        assert first.message == (
            "Event ID: 7034 | Source: Service Control Manager | "
            "Description: The service terminated unexpectedly"
        )
        assert first.line_number == 2


class TestWindowsValidation:
    """Tests for validate()."""

    def test_xml_valid(self, windows_parser, sample_windows_xml_content):
        result = windows_parser.validate(sample_windows_xml_content)

        assert result.is_valid
        assert result.suggestions["encoding"] == "xml"

    def test_broken_xml(self, windows_parser):
        result = windows_parser.validate(b"<Event><System></Event>")

        assert not result.is_valid
        assert result.errors[0].startswith("Invalid XML format")

    def test_unknown_content(self, windows_parser):
        result = windows_parser.validate(b"just some text")

        assert not result.is_valid
