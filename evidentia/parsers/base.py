"""Base parser interface and data structures.

Defines the abstract interface that all parsers (built-in and custom) must
implement, along with the normalized event and result types they produce.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import PurePath
from typing import Any
from uuid import uuid4

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Default clock."""
    return datetime.now(UTC)


class LogLevel(str, Enum):
    """Normalized event severity."""

    TRACE = "TRACE"
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"

    @classmethod
    def normalize(cls, value: Any) -> "LogLevel":
        """Map a free-form severity label onto a LogLevel, defaulting to INFO."""
        if isinstance(value, LogLevel):
            return value
        if value is None:
            return cls.INFO
        return LEVEL_ALIASES.get(str(value).strip().lower(), cls.INFO)


LEVEL_ALIASES: dict[str, LogLevel] = {
    "trace": LogLevel.TRACE,
    "debug": LogLevel.DEBUG,
    "verbose": LogLevel.DEBUG,
    "info": LogLevel.INFO,
    "information": LogLevel.INFO,
    "informational": LogLevel.INFO,
    "notice": LogLevel.INFO,
    "warn": LogLevel.WARNING,
    "warning": LogLevel.WARNING,
    "error": LogLevel.ERROR,
    "err": LogLevel.ERROR,
    "critical": LogLevel.CRITICAL,
    "crit": LogLevel.CRITICAL,
    "fatal": LogLevel.CRITICAL,
    "alert": LogLevel.CRITICAL,
    "emergency": LogLevel.CRITICAL,
    "emerg": LogLevel.CRITICAL,
}

# Common timestamp formats tried after ISO 8601
TIMESTAMP_FORMATS = [
    "%Y-%m-%d %H:%M:%S.%f",
    "%Y-%m-%d %H:%M:%S",
    "%Y/%m/%d %H:%M:%S",
    "%d/%b/%Y:%H:%M:%S %z",
    "%m/%d/%Y %I:%M:%S %p",
    "%m/%d/%Y %H:%M:%S",
    "%d/%m/%Y %H:%M:%S",
    "%b %d %Y %H:%M:%S",
]


def ensure_utc(value: datetime) -> datetime:
    """Interpret naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def parse_timestamp(value: Any, formats: list[str] | None = None) -> datetime | None:
    """Best-effort timestamp parsing.

    Accepts datetimes, Unix epoch numbers (seconds, or milliseconds when the
    value is too large to be seconds) and strings in ISO 8601 or one of the
    given formats. Returns None when nothing matches.
    """
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, datetime):
        return ensure_utc(value)

    if isinstance(value, (int, float)):
        seconds = value / 1000 if abs(value) > 1e11 else value
        try:
            return datetime.fromtimestamp(seconds, tz=UTC)
        except (OverflowError, OSError, ValueError):
            return None

    text = str(value).strip()
    if not text:
        return None

    try:
        return ensure_utc(datetime.fromisoformat(text))
    except ValueError:
        pass

    for fmt in formats or TIMESTAMP_FORMATS:
        try:
            return ensure_utc(datetime.strptime(text, fmt))
        except ValueError:
            continue

    return None


def decode_content(content: bytes | str | None) -> str:
    """Decode raw evidence bytes to text, dropping a UTF-8 BOM."""
    if content is None:
        return ""
    if isinstance(content, str):
        return content[1:] if content.startswith("\ufeff") else content
    return content.decode("utf-8-sig", errors="replace")


@dataclass
class LogEvent:
    """A single normalized record extracted from evidence.

    ``raw`` always holds the original record text verbatim.
    """

    timestamp: datetime
    message: str
    raw: str
    level: LogLevel = LogLevel.INFO
    source: str = ""
    line_number: int = 0
    fields: dict[str, Any] = field(default_factory=dict)
    timestamp_estimated: bool = False

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "timestamp": self.timestamp.isoformat(),
            "timestamp_estimated": self.timestamp_estimated,
            "level": self.level.value,
            "message": self.message,
            "source": self.source,
            "line_number": self.line_number,
            "fields": self.fields,
            "raw": self.raw,
        }


class ParseStatus(str, Enum):
    """Terminal status of a parse invocation."""

    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class ParseResult:
    """Outcome of one parse invocation."""

    parser_name: str
    status: ParseStatus
    events: tuple[LogEvent, ...] = ()
    duration: float = 0.0
    error_message: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return self.status == ParseStatus.COMPLETED

    @property
    def cancelled(self) -> bool:
        return self.status == ParseStatus.CANCELLED

    @property
    def events_count(self) -> int:
        return len(self.events)

    @classmethod
    def completed(cls, parser_name: str, events: list[LogEvent], duration: float, **metadata: Any) -> "ParseResult":
        return cls(parser_name, ParseStatus.COMPLETED, tuple(events), duration, None, metadata)

    @classmethod
    def failed(cls, parser_name: str, error_message: str, duration: float = 0.0, **metadata: Any) -> "ParseResult":
        return cls(parser_name, ParseStatus.FAILED, (), duration, error_message, metadata)

    @classmethod
    def cancelled_result(cls, parser_name: str, duration: float = 0.0, **metadata: Any) -> "ParseResult":
        return cls(parser_name, ParseStatus.CANCELLED, (), duration, "Parsing was cancelled", metadata)

    def to_dict(self) -> dict[str, Any]:
        return {
            "parser_name": self.parser_name,
            "status": self.status.value,
            "success": self.success,
            "events_count": self.events_count,
            "duration": self.duration,
            "error_message": self.error_message,
            "metadata": self.metadata,
        }


@dataclass
class Diagnostic:
    """A located message produced while vetting parser source code."""

    message: str
    severity: str = "error"
    line: int | None = None
    column: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "message": self.message,
            "severity": self.severity,
            "line": self.line,
            "column": self.column,
        }


@dataclass
class ValidationResult:
    """Result of a content pre-flight check or a source code review."""

    is_valid: bool = True
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    suggestions: dict[str, Any] = field(default_factory=dict)
    diagnostics: list[Diagnostic] = field(default_factory=list)

    def add_error(self, message: str, line: int | None = None, column: int | None = None) -> None:
        self.is_valid = False
        self.errors.append(message)
        self.diagnostics.append(Diagnostic(message, "error", line, column))

    def add_warning(self, message: str, line: int | None = None, column: int | None = None) -> None:
        self.warnings.append(message)
        self.diagnostics.append(Diagnostic(message, "warning", line, column))

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_valid": self.is_valid,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "suggestions": dict(self.suggestions),
            "diagnostics": [d.to_dict() for d in self.diagnostics],
        }


@dataclass
class ParserMetadata:
    """Static description of a parser's capabilities."""

    name: str
    display_name: str
    description: str
    version: str
    author: str
    supported_extensions: list[str] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)


@dataclass
class ParserDescriptor:
    """Catalog entry for a parser, built-in or user-supplied."""

    name: str
    extensions: list[str]
    priority: int
    id: str = field(default_factory=lambda: uuid4().hex)
    description: str = ""
    version: str = "1.0.0"
    author: str = ""
    enabled: bool = True
    is_builtin: bool = False
    source_code: str | None = None
    configuration: dict[str, Any] = field(default_factory=dict)
    usage_count: int = 0
    last_used: datetime | None = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def to_dict(self, include_source: bool = False) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "version": self.version,
            "author": self.author,
            "extensions": list(self.extensions),
            "priority": self.priority,
            "enabled": self.enabled,
            "is_builtin": self.is_builtin,
            "configuration": dict(self.configuration),
            "usage_count": self.usage_count,
            "last_used": self.last_used.isoformat() if self.last_used else None,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }
        if include_source:
            data["source_code"] = self.source_code
        return data


def normalize_extension(extension: str) -> str:
    """Lower-case an extension and give it a leading dot."""
    ext = extension.strip().lower()
    if not ext:
        return ext
    return ext if ext.startswith(".") else f".{ext}"


@dataclass
class ParseContext:
    """Per-invocation state shared between parse() and _iter_events()."""

    file_path: PurePath | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


class BaseParser(ABC):
    """Abstract base class for all evidence parsers.

    Subclasses declare their identity as class attributes and implement
    ``_probe_content`` and ``_iter_events``. Optionally they override
    ``_validate_text`` for format-specific pre-flight feedback.
    """

    name: str = ""
    display_name: str = ""
    description: str = ""
    version: str = "1.0.0"
    author: str = "Evidentia"
    supported_extensions: tuple[str, ...] = ()
    tags: tuple[str, ...] = ()

    # Yield to the event loop every N produced events
    YIELD_EVERY = 100

    def __init__(self, logger: logging.Logger | None = None, clock: Clock | None = None):
        self.logger = logger or logging.getLogger(f"{__name__}.{self.name or type(self).__name__}")
        self.clock: Clock = clock or utc_now
        self.configuration: dict[str, Any] = {}

    # ------------------------------------------------------------------
    # Probe
    # ------------------------------------------------------------------

    def supports_extension(self, file_path: str | PurePath | None) -> bool:
        """Check the file's extension against the declared allow-list."""
        if not file_path or not self.supported_extensions:
            return False
        suffix = PurePath(str(file_path)).suffix.lower()
        if not suffix:
            return False
        return suffix in {ext.lower() for ext in self.supported_extensions}

    def can_parse(self, file_path: str | PurePath | None = None, content: bytes | str | None = None) -> bool:
        """Check if this parser can handle the given input.

        The extension allow-list is checked first; only compatible files get
        the costlier content probe. Never raises.

        Args:
            file_path: Name or path of the evidence file
            content: Leading sample of the file content

        Returns:
            True if this parser can handle the input
        """
        try:
            if not self.supports_extension(file_path):
                return False
            if content is None:
                return False
            text = decode_content(content)
            if not text.strip():
                return False
            return bool(self._probe_content(text))
        except Exception as e:
            logger.debug("Probe of parser %s failed: %s", self.name, e)
            return False

    async def probe(self, file_path: str | PurePath | None, content: bytes | str | None) -> bool:
        """Awaitable probe used by the registry during selection."""
        return self.can_parse(file_path, content)

    @abstractmethod
    def _probe_content(self, text: str) -> bool:
        """Return True when the decoded sample looks like this parser's format."""
        ...

    # ------------------------------------------------------------------
    # Parse
    # ------------------------------------------------------------------

    @abstractmethod
    def _iter_events(self, text: str, context: ParseContext) -> Iterator[LogEvent]:
        """Yield events for the decoded content."""
        ...

    async def parse(
        self,
        file_path: str | PurePath | None,
        content: bytes | str,
        cancel_event: asyncio.Event | None = None,
    ) -> ParseResult:
        """Parse content into a ParseResult.

        Internal errors are captured in the result. Setting ``cancel_event``
        produces a cancelled result; task cancellation propagates.
        """
        started = time.perf_counter()
        context = ParseContext(file_path=PurePath(str(file_path)) if file_path else None)
        events: list[LogEvent] = []

        try:
            if cancel_event is not None and cancel_event.is_set():
                return ParseResult.cancelled_result(self.name, time.perf_counter() - started)

            text = decode_content(content)
            for event in self._iter_events(text, context):
                events.append(event)
                if cancel_event is not None and cancel_event.is_set():
                    self.logger.info("Parsing with %s cancelled after %d events", self.name, len(events))
                    return ParseResult.cancelled_result(
                        self.name, time.perf_counter() - started, events_before_cancel=len(events)
                    )
                if len(events) % self.YIELD_EVERY == 0:
                    await asyncio.sleep(0)
        except Exception as e:
            self.logger.warning("Parser %s failed: %s", self.name, e)
            return ParseResult.failed(
                self.name,
                f"{type(e).__name__}: {e}",
                time.perf_counter() - started,
                **context.metadata,
            )

        duration = time.perf_counter() - started
        self.logger.debug("Parser %s produced %d events in %.3fs", self.name, len(events), duration)
        return ParseResult.completed(self.name, events, duration, **context.metadata)

    # ------------------------------------------------------------------
    # Validate / describe
    # ------------------------------------------------------------------

    def validate(self, content: bytes | str) -> ValidationResult:
        """Dry-run check of content without producing events."""
        result = ValidationResult()
        try:
            text = decode_content(content)
            if not text.strip():
                result.add_error("Content is empty")
                return result
            self._validate_text(text, result)
        except Exception as e:
            result.add_error(f"Validation error: {e}")
        return result

    def _validate_text(self, text: str, result: ValidationResult) -> None:
        if not self._probe_content(text):
            result.add_error(f"Content does not appear to be in {self.name} format")

    def get_metadata(self) -> ParserMetadata:
        """Describe this parser for registry bookkeeping."""
        return ParserMetadata(
            name=self.name,
            display_name=self.display_name or self.name,
            description=self.description,
            version=self.version,
            author=self.author,
            supported_extensions=list(self.supported_extensions),
            tags=list(self.tags),
        )

    # ------------------------------------------------------------------
    # Helpers for subclasses
    # ------------------------------------------------------------------

    def resolve_timestamp(self, value: Any, formats: list[str] | None = None) -> tuple[datetime, bool]:
        """Parse a timestamp, falling back to the clock.

        Returns:
            (timestamp, estimated) where estimated is True for the fallback
        """
        parsed = parse_timestamp(value, formats)
        if parsed is None:
            return ensure_utc(self.clock()), True
        return parsed, False

    @staticmethod
    def split_lines(text: str) -> list[str]:
        """Split into lines, keeping empty ones so numbering matches the source."""
        return text.splitlines()

    @staticmethod
    def sample_lines(text: str, count: int) -> list[str]:
        """First ``count`` non-empty lines of the text."""
        lines: list[str] = []
        for line in text.splitlines():
            if line.strip():
                lines.append(line)
                if len(lines) >= count:
                    break
        return lines

    def __repr__(self) -> str:
        return f"<{type(self).__name__} name={self.name!r}>"
