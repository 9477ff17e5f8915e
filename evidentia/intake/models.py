"""Analysis records and their in-memory store."""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from evidentia.enrichment.extractors.ioc import Indicator
from evidentia.enrichment.mitre import TechniqueMatch
from evidentia.parsers.base import utc_now


class AnalysisStatus(str, Enum):
    """Lifecycle state of an analysis."""

    PENDING = "pending"
    VALIDATED = "validated"
    QUARANTINED = "quarantined"
    REJECTED = "rejected"
    SELECTING = "selecting"
    PARSING = "parsing"
    EXTRACTING = "extracting"
    MAPPING = "mapping"
    SUMMARIZING = "summarizing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({
    AnalysisStatus.QUARANTINED,
    AnalysisStatus.REJECTED,
    AnalysisStatus.COMPLETED,
    AnalysisStatus.FAILED,
    AnalysisStatus.CANCELLED,
})


class AnalysisMode(str, Enum):
    DIRECT = "direct"
    CHUNKED = "chunked"


@dataclass
class QuarantineRecord:
    """A file held back from analysis."""

    analysis_id: str
    original_filename: str
    reason: str
    sha256: str
    size: int
    quarantined_at: datetime
    data_path: str
    sidecar_path: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "analysis_id": self.analysis_id,
            "original_filename": self.original_filename,
            "reason": self.reason,
            "sha256": self.sha256,
            "size": self.size,
            "quarantined_at": self.quarantined_at.isoformat(),
            "data_path": self.data_path,
            "sidecar_path": self.sidecar_path,
        }


@dataclass
class AnalysisRecord:
    """State and results of one submitted evidence file."""

    filename: str
    size: int
    id: str = field(default_factory=lambda: uuid4().hex)
    sha256: str | None = None
    status: AnalysisStatus = AnalysisStatus.PENDING
    progress: int = 0
    preferred_parser_id: str | None = None
    parser_name: str | None = None
    mode: AnalysisMode = AnalysisMode.DIRECT
    events_count: int = 0
    indicators: list[Indicator] = field(default_factory=list)
    techniques: list[TechniqueMatch] = field(default_factory=list)
    summary: str | None = None
    error_message: str | None = None
    stage_errors: dict[str, str] = field(default_factory=dict)
    quarantine: QuarantineRecord | None = None
    options: dict[str, Any] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)
    stored_path: str | None = None
    created_at: datetime = field(default_factory=utc_now)
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "filename": self.filename,
            "size": self.size,
            "sha256": self.sha256,
            "status": self.status.value,
            "progress": self.progress,
            "preferred_parser_id": self.preferred_parser_id,
            "parser_name": self.parser_name,
            "mode": self.mode.value,
            "events_count": self.events_count,
            "indicators": [i.to_dict() for i in self.indicators],
            "techniques": [t.to_dict() for t in self.techniques],
            "summary": self.summary,
            "error_message": self.error_message,
            "stage_errors": dict(self.stage_errors),
            "quarantine": self.quarantine.to_dict() if self.quarantine else None,
            "metadata": dict(self.metadata),
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


class AnalysisStore:
    """In-memory analysis record store."""

    def __init__(self):
        self._records: dict[str, AnalysisRecord] = {}
        self._lock = asyncio.Lock()

    async def add(self, record: AnalysisRecord) -> AnalysisRecord:
        async with self._lock:
            self._records[record.id] = record
            return record

    async def get(self, analysis_id: str) -> AnalysisRecord | None:
        return self._records.get(analysis_id)

    async def list(self) -> list[AnalysisRecord]:
        return sorted(self._records.values(), key=lambda r: r.created_at, reverse=True)

    async def update(self, analysis_id: str, **changes: Any) -> AnalysisRecord | None:
        async with self._lock:
            record = self._records.get(analysis_id)
            if record is None:
                return None
            for name, value in changes.items():
                if not hasattr(record, name):
                    raise AttributeError(f"AnalysisRecord has no field '{name}'")
                setattr(record, name, value)
            return record
