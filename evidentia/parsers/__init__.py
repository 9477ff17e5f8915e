"""Evidentia log parser system.

Provides built-in and user-supplied log parsers with content-based format
detection and normalization to a common event shape.
"""

from evidentia.parsers.base import (
    BaseParser,
    LogEvent,
    LogLevel,
    ParserDescriptor,
    ParseResult,
    ParseStatus,
    ValidationResult,
)
from evidentia.parsers.loader import CustomParserLoader, ParserTestResult
from evidentia.parsers.registry import ParserRegistry, ParserStore, SelectedParser

__all__ = [
    "BaseParser",
    "CustomParserLoader",
    "LogEvent",
    "LogLevel",
    "ParseResult",
    "ParseStatus",
    "ParserDescriptor",
    "ParserRegistry",
    "ParserStore",
    "ParserTestResult",
    "SelectedParser",
    "ValidationResult",
]
