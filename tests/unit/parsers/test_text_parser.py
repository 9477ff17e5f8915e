"""Unit tests for the generic text log parser."""

from datetime import UTC, datetime

import pytest

pytestmark = pytest.mark.unit


@pytest.fixture
def text_parser():
    """Create a text parser with a fixed clock."""
    from evidentia.parsers.formats.text_log import TextLogParser

    return TextLogParser(clock=lambda: datetime(2026, 3, 1, 12, 0, tzinfo=UTC))


class TestTextLogParser:
    """Tests for TextLogParser identity and probing."""

    def test_parser_name(self, text_parser):
        assert text_parser.name == "text"

    def test_can_parse(self, text_parser, sample_text_log_content):
        assert text_parser.can_parse("app.log", sample_text_log_content) is True

    def test_can_parse_txt(self, text_parser, sample_apache_content):
        assert text_parser.can_parse("access.txt", sample_apache_content) is True

    def test_rejects_free_text(self, text_parser):
        assert text_parser.can_parse("notes.txt", b"dear diary\ntoday was fine\n") is False

    def test_rejects_json_extension(self, text_parser, sample_text_log_content):
        assert text_parser.can_parse("app.json", sample_text_log_content) is False


class TestPatternMatching:
    """Tests for the individual line layouts."""

    def test_generic_level(self, text_parser):
        event = text_parser.parse_line("2026-03-01 10:00:01 [ERROR] Failed to open socket", 2)

        assert event.fields["pattern_matched"] == "generic_level"
        assert event.level.value == "ERROR"
        assert event.message == "Failed to open socket"
        assert event.timestamp == datetime(2026, 3, 1, 10, 0, 1, tzinfo=UTC)
        assert event.line_number == 2

    def test_generic_timestamp(self, text_parser):
        event = text_parser.parse_line("2026-03-01T10:00:02Z worker restarted")

        assert event.fields["pattern_matched"] == "generic_timestamp"
        assert event.level.value == "INFO"
        assert event.message == "worker restarted"

    def test_level_only(self, text_parser):
        event = text_parser.parse_line("WARN: disk usage at 91%")

        assert event.fields["pattern_matched"] == "level_only"
        assert event.level.value == "WARNING"
        assert event.timestamp_estimated is True

    def test_syslog_layout(self, text_parser):
        event = text_parser.parse_line("Mar  1 08:00:00 web01 nginx[88]: upstream timed out")

        assert event.fields["pattern_matched"] == "syslog"
        assert event.source == "web01"
        assert event.timestamp == datetime(2026, 3, 1, 8, 0, 0, tzinfo=UTC)

    def test_apache_common(self, text_parser):
        event = text_parser.parse_line(
            '203.0.113.7 - - [01/Mar/2026:10:00:02 +0000] "GET /admin HTTP/1.1" 503 0'
        )

        assert event.fields["pattern_matched"] == "apache_common"
        assert event.source == "203.0.113.7"
        assert event.level.value == "ERROR"
        assert event.timestamp == datetime(2026, 3, 1, 10, 0, 2, tzinfo=UTC)

    def test_apache_combined_client_error(self, text_parser):
        event = text_parser.parse_line(
            '203.0.113.6 - bob [01/Mar/2026:10:00:01 +0000] "POST /login HTTP/1.1" 401 12 '
            '"http://shop.test/" "Mozilla/5.0"'
        )

        assert event.fields["pattern_matched"] == "apache_combined"
        assert event.fields["user"] == "bob"
        assert event.level.value == "WARNING"

    def test_iis(self, text_parser):
        event = text_parser.parse_line(
            "2026-03-01 10:00:00 10.0.0.5 GET /default.htm - 80 - 198.51.100.4 Mozilla/5.0 - 200 0 0 15"
        )

        assert event.fields["pattern_matched"] == "iis"
        assert event.timestamp == datetime(2026, 3, 1, 10, 0, 0, tzinfo=UTC)
        assert event.level.value == "INFO"

    def test_unstructured_line_extracts_key_values(self, text_parser):
        event = text_parser.parse_line('login attempt user=alice src="198.51.100.4" result=denied')

        assert "pattern_matched" not in event.fields
        assert event.fields["user"] == "alice"
        assert event.fields["src"] == "198.51.100.4"
        assert event.timestamp_estimated is True


class TestTextParsing:
    """Tests for whole-file parsing."""

    @pytest.mark.asyncio
    async def test_parse_file(self, text_parser, sample_text_log_content):
        result = await text_parser.parse("app.log", sample_text_log_content)

        assert result.success
        assert result.events_count == 3
        assert result.metadata["pattern_counts"] == {"generic_level": 2, "generic_timestamp": 1}
        assert result.events[2].fields["pattern_matched"] == "generic_timestamp"

    @pytest.mark.asyncio
    async def test_parse_apache(self, text_parser, sample_apache_content):
        result = await text_parser.parse("access.log", sample_apache_content)

        assert [e.level.value for e in result.events] == ["INFO", "WARNING", "ERROR"]


class TestTextValidation:
    """Tests for validate()."""

    def test_valid(self, text_parser, sample_text_log_content):
        result = text_parser.validate(sample_text_log_content)

        assert result.is_valid
        assert result.suggestions["match_percentage"] == 100.0
        assert result.suggestions["dominant_pattern"] == "generic_level"
        assert result.suggestions["sampled_lines"] == 3

    def test_unrecognised(self, text_parser):
        result = text_parser.validate(b"lorem ipsum\ndolor sit amet\n")

        assert not result.is_valid
        assert "dominant_pattern" not in result.suggestions
