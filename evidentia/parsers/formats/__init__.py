"""Built-in log format parsers."""

from evidentia.parsers.formats.csv_log import CsvLogParser
from evidentia.parsers.formats.json_log import JsonLogParser
from evidentia.parsers.formats.syslog import SyslogParser
from evidentia.parsers.formats.text_log import TextLogParser
from evidentia.parsers.formats.windows_event import WindowsEventLogParser

# Built-in parsers with their default selection priority (lower wins)
BUILTIN_PARSERS = [
    (WindowsEventLogParser, 10),
    (JsonLogParser, 20),
    (CsvLogParser, 30),
    (SyslogParser, 35),
    (TextLogParser, 40),
]

__all__ = [
    "BUILTIN_PARSERS",
    "CsvLogParser",
    "JsonLogParser",
    "SyslogParser",
    "TextLogParser",
    "WindowsEventLogParser",
]
