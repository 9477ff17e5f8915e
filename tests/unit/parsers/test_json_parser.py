"""Unit tests for the JSON log parser.

Tests JSON/JSONL format detection, alias based field mapping, flattening
of nested objects and the validation report.
"""

import json
from datetime import UTC, datetime

import pytest

pytestmark = pytest.mark.unit


class TestJsonLogParser:
    """Tests for JsonLogParser identity."""

    @pytest.fixture
    def json_parser(self):
        """Create a JSON parser instance."""
        from evidentia.parsers.formats.json_log import JsonLogParser

        return JsonLogParser()

    def test_parser_name(self, json_parser):
        """Test parser name property."""
        assert json_parser.name == "json"

    def test_supported_extensions(self, json_parser):
        """Test parser supports JSON extensions."""
        assert ".json" in json_parser.supported_extensions
        assert ".jsonl" in json_parser.supported_extensions
        assert ".ndjson" in json_parser.supported_extensions


class TestJsonFormatDetection:
    """Tests for format detection and can_parse."""

    @pytest.fixture
    def json_parser(self):
        from evidentia.parsers.formats.json_log import JsonLogParser

        return JsonLogParser()

    def test_detect_object(self, json_parser):
        assert json_parser._detect_format('{"message": "hi"}') == "object"

    def test_detect_array(self, json_parser):
        assert json_parser._detect_format('[{"a": 1}, {"b": 2}]') == "array"

    def test_array_of_scalars_is_not_array_format(self, json_parser):
        assert json_parser._detect_format("[1, 2, 3]") is None

    def test_detect_jsonl(self, json_parser, sample_jsonl_content):
        assert json_parser._detect_format(sample_jsonl_content.decode()) == "jsonl"

    def test_jsonl_four_of_five_valid(self, json_parser):
        """Test four valid lines out of the five sampled qualify."""
        lines = ['{"n": 1}', '{"n": 2}', "not json", '{"n": 4}', '{"n": 5}']
        assert json_parser._detect_format("\n".join(lines)) == "jsonl"

    def test_jsonl_three_of_five_valid(self, json_parser):
        """Test three valid lines out of the five sampled do not qualify."""
        lines = ['{"n": 1}', "bad", "worse", '{"n": 4}', '{"n": 5}']
        assert json_parser._detect_format("\n".join(lines)) is None

    def test_can_parse_truncated_array(self, json_parser):
        """Test a head sample cut inside a large array is accepted."""
        sample = b'[{"message": "one"}, {"message": "tw'
        assert json_parser.can_parse("big.json", sample) is True

    def test_rejects_plain_text(self, json_parser):
        assert json_parser.can_parse("events.json", b"hello world\nnot json\n") is False

    def test_rejects_wrong_extension(self, json_parser, sample_jsonl_content):
        assert json_parser.can_parse("events.log", sample_jsonl_content) is False

    def test_accepts_bom(self, json_parser):
        assert json_parser.can_parse("events.json", b'\xef\xbb\xbf{"message": "x"}') is True


class TestJsonParsing:
    """Tests for JSON event production."""

    @pytest.fixture
    def json_parser(self):
        from evidentia.parsers.formats.json_log import JsonLogParser

        return JsonLogParser(clock=lambda: datetime(2026, 3, 1, 12, 0, tzinfo=UTC))

    @pytest.mark.asyncio
    async def test_parse_jsonl(self, json_parser, sample_jsonl_content):
        result = await json_parser.parse("events.jsonl", sample_jsonl_content)

        assert result.success
        assert result.events_count == 3
        assert result.metadata["format"] == "jsonl"
        assert result.metadata["skipped_lines"] == 0

        first, second, third = result.events
        assert first.message == "Service started"
        assert first.source == "app01"
        assert first.level.value == "INFO"
        assert first.timestamp == datetime(2026, 3, 1, 10, 0, 0, tzinfo=UTC)
        assert first.line_number == 1

        assert second.message == "Request failed"
        assert second.level.value == "ERROR"
        assert second.fields["http.status"] == 500
        assert second.fields["http.path"] == "/api/login"

        assert third.message == "Retrying"
        assert third.level.value == "WARNING"
        assert third.source == "worker"

    @pytest.mark.asyncio
    async def test_raw_is_original_line(self, json_parser, sample_jsonl_content):
        result = await json_parser.parse("events.jsonl", sample_jsonl_content)

        lines = sample_jsonl_content.decode().splitlines()
        assert [event.raw for event in result.events] == lines

    @pytest.mark.asyncio
    async def test_jsonl_invalid_lines_skipped(self, json_parser):
        content = b'{"message": "a"}\n{"message": "b"}\n\n{broken\n{"message": "c"}\n{"message": "d"}\n'

        result = await json_parser.parse("events.jsonl", content)

        assert result.events_count == 4
        assert result.metadata["skipped_lines"] == 1
        assert [event.line_number for event in result.events] == [1, 2, 5, 6]

    @pytest.mark.asyncio
    async def test_parse_array(self, json_parser, sample_json_array_content):
        result = await json_parser.parse("events.json", sample_json_array_content)

        assert result.metadata["format"] == "array"
        assert result.events_count == 2
        assert result.events[1].message == "second"
        assert result.events[1].line_number == 2
        assert json.loads(result.events[1].raw)["message"] == "second"
        assert result.events[0].timestamp == datetime(2026, 3, 1, 9, 0, 0, tzinfo=UTC)

    @pytest.mark.asyncio
    async def test_parse_single_object(self, json_parser):
        result = await json_parser.parse("event.json", b'{"msg": "only one", "logger": "auth"}')

        assert result.events_count == 1
        assert result.events[0].message == "only one"
        assert result.events[0].source == "auth"

    @pytest.mark.asyncio
    async def test_message_falls_back_to_raw(self, json_parser):
        content = b'{"user": "alice", "action": "login"}'

        result = await json_parser.parse("event.json", content)

        assert result.events[0].message == content.decode()

    @pytest.mark.asyncio
    async def test_epoch_timestamp(self, json_parser):
        result = await json_parser.parse("event.json", b'{"timestamp": 1772359200, "message": "epoch"}')

        assert result.events[0].timestamp == datetime(2026, 3, 1, 10, 0, 0, tzinfo=UTC)
        assert result.events[0].timestamp_estimated is False

    @pytest.mark.asyncio
    async def test_missing_timestamp_uses_clock(self, json_parser):
        result = await json_parser.parse("event.json", b'{"message": "no time"}')

        assert result.events[0].timestamp == datetime(2026, 3, 1, 12, 0, tzinfo=UTC)
        assert result.events[0].timestamp_estimated is True

    @pytest.mark.asyncio
    async def test_invalid_content_fails(self, json_parser):
        """Test parse errors are captured, not raised."""
        result = await json_parser.parse("event.json", b"this is not json at all")

        assert not result.success
        assert result.status.value == "failed"
        assert "not valid JSON" in result.error_message


class TestJsonValidation:
    """Tests for validate()."""

    @pytest.fixture
    def json_parser(self):
        from evidentia.parsers.formats.json_log import JsonLogParser

        return JsonLogParser()

    def test_jsonl_counts(self, json_parser):
        content = b'{"a": 1}\n{"a": 2}\n{"a": 3}\n{"a": 4}\nnope\n'

        result = json_parser.validate(content)

        assert result.is_valid
        assert result.suggestions["format"] == "jsonl"
        assert result.suggestions["valid_lines"] == 4
        assert result.suggestions["total_lines"] == 5
        assert result.warnings == ["1 of 5 lines are not valid JSON objects"]

    def test_array_counts(self, json_parser, sample_json_array_content):
        result = json_parser.validate(sample_json_array_content)

        assert result.suggestions["format"] == "array"
        assert result.suggestions["total_records"] == 2

    def test_invalid(self, json_parser):
        result = json_parser.validate(b"<xml/>")

        assert not result.is_valid
