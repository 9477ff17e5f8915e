"""Shared fixtures for parser tests."""

import json

import pytest


@pytest.fixture
def sample_csv_content() -> bytes:
    """CSV log with timestamp, level, source and message columns."""
    return (
        b"timestamp,level,hostname,message\n"
        b"2026-03-01 10:00:00,INFO,web01,User login succeeded\n"
        b"2026-03-01 10:00:05,ERROR,web01,Database connection refused\n"
        b"2026-03-01 10:00:09,WARNING,db01,Slow query detected\n"
    )


@pytest.fixture
def sample_jsonl_content() -> bytes:
    """JSON Lines log with nested fields."""
    lines = [
        {"timestamp": "2026-03-01T10:00:00Z", "level": "info", "message": "Service started", "host": "app01"},
        {"timestamp": "2026-03-01T10:00:01Z", "level": "error", "msg": "Request failed",
         "http": {"status": 500, "path": "/api/login"}},
        {"time": "2026-03-01T10:00:02Z", "severity": "warning", "text": "Retrying", "component": "worker"},
    ]
    return "\n".join(json.dumps(line) for line in lines).encode("utf-8")


@pytest.fixture
def sample_json_array_content() -> bytes:
    """JSON array of event objects."""
    records = [
        {"@timestamp": "2026-03-01T09:00:00+00:00", "level": "INFO", "message": "first"},
        {"@timestamp": "2026-03-01T09:00:01+00:00", "level": "ERROR", "message": "second"},
    ]
    return json.dumps(records).encode("utf-8")


@pytest.fixture
def sample_syslog_content() -> bytes:
    """Mixed RFC 3164 and RFC 5424 syslog lines."""
    return (
        b"<34>Oct 11 22:14:15 mymachine su: 'su root' failed for lonvick on /dev/pts/8\n"
        b"Oct 11 22:14:16 mymachine sshd[4321]: Accepted publickey for admin\n"
        b"<165>1 2003-10-11T22:14:15.003Z mymachine.example.com evntslog - ID47 "
        b'[exampleSDID@32473 iut="3" eventSource="Application"] An application event log entry\n'
    )


@pytest.fixture
def sample_windows_xml_content() -> bytes:
    """Two Windows events exported as XML."""
    return (
        b'<?xml version="1.0" encoding="utf-8"?>\n'
        b'<Events>\n'
        b'<Event xmlns="http://schemas.microsoft.com/win/2004/08/events/event">'
        b'<System><Provider Name="Microsoft-Windows-Security-Auditing"/>'
        b"<EventID>4625</EventID><Level>0</Level>"
        b'<TimeCreated SystemTime="2026-03-01T10:00:00.000Z"/>'
        b"<Computer>DC01</Computer><Channel>Security</Channel></System>"
        b'<EventData><Data Name="TargetUserName">administrator</Data>'
        b'<Data Name="IpAddress">203.0.113.50</Data></EventData>'
        b"</Event>\n"
        b'<Event xmlns="http://schemas.microsoft.com/win/2004/08/events/event">'
        b'<System><Provider Name="Service Control Manager"/>'
        b"<EventID>7045</EventID><Level>2</Level>"
        b'<TimeCreated SystemTime="2026-03-01T10:05:00.000Z"/></System>'
        b"</Event>\n"
        b"</Events>\n"
    )


@pytest.fixture
def sample_windows_csv_content() -> bytes:
    """Event Viewer CSV export."""
    return (
        b"Level,Date and Time,Source,Event ID,Task Category,Description\n"
        b"Error,3/1/2026 10:00:00 AM,Service Control Manager,7034,None,The service terminated unexpectedly\n"
        b"Information,3/1/2026 10:01:00 AM,EventLog,6005,None,The Event log service was started\n"
    )


@pytest.fixture
def sample_text_log_content() -> bytes:
    """Generic timestamp/level text log."""
    return (
        b"2026-03-01 10:00:00 INFO Application started\n"
        b"2026-03-01 10:00:01 [ERROR] Failed to open socket\n"
        b"2026-03-01 10:00:02 something happened user=alice action=login\n"
    )


@pytest.fixture
def sample_apache_content() -> bytes:
    """Apache access log in common and combined formats."""
    return (
        b'203.0.113.5 - - [01/Mar/2026:10:00:00 +0000] "GET /index.html HTTP/1.1" 200 1043\n'
        b'203.0.113.6 - bob [01/Mar/2026:10:00:01 +0000] "POST /login HTTP/1.1" 401 12 '
        b'"http://shop.test/" "Mozilla/5.0"\n'
        b'203.0.113.7 - - [01/Mar/2026:10:00:02 +0000] "GET /admin HTTP/1.1" 503 0\n'
    )
