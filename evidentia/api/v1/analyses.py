"""Analysis API endpoints.

Evidence files are submitted as multipart uploads. Screening happens
before the response is sent, so the returned status already says whether
the file was rejected, quarantined or accepted for processing.
"""

import logging
from datetime import datetime
from typing import Annotated, Any

from fastapi import APIRouter, Depends, File, Form, UploadFile, status
from pydantic import BaseModel, Field

from evidentia.api.deps import get_pipeline
from evidentia.intake.models import AnalysisRecord
from evidentia.intake.pipeline import AnalysisPipeline

logger = logging.getLogger(__name__)
router = APIRouter()


# Pydantic schemas
class AnalysisSubmitResponse(BaseModel):
    """Result of submitting an evidence file."""

    id: str
    filename: str
    status: str
    mode: str
    sha256: str | None
    error_message: str | None


class IndicatorResponse(BaseModel):
    type: str
    value: str
    confidence: float
    context: str


class TechniqueResponse(BaseModel):
    technique_id: str
    name: str
    tactic: str
    tactic_name: str
    confidence: float
    indicators: list[str]


class AnalysisResponse(BaseModel):
    """Full state of an analysis."""

    id: str
    filename: str
    size: int
    sha256: str | None
    status: str
    progress: int = Field(..., ge=0, le=100)
    preferred_parser_id: str | None
    parser_name: str | None
    mode: str
    events_count: int
    indicators: list[IndicatorResponse]
    techniques: list[TechniqueResponse]
    summary: str | None
    error_message: str | None
    stage_errors: dict[str, str]
    quarantine: dict[str, Any] | None
    metadata: dict[str, Any]
    created_at: datetime
    started_at: datetime | None
    completed_at: datetime | None


class AnalysisSummary(BaseModel):
    id: str
    filename: str
    status: str
    progress: int
    parser_name: str | None
    indicators_count: int
    created_at: datetime


class AnalysisListResponse(BaseModel):
    items: list[AnalysisSummary]
    total: int


def _summary(record: AnalysisRecord) -> AnalysisSummary:
    return AnalysisSummary(
        id=record.id,
        filename=record.filename,
        status=record.status.value,
        progress=record.progress,
        parser_name=record.parser_name,
        indicators_count=len(record.indicators),
        created_at=record.created_at,
    )


@router.post("", response_model=AnalysisSubmitResponse, status_code=status.HTTP_202_ACCEPTED)
async def submit_analysis(
    pipeline: Annotated[AnalysisPipeline, Depends(get_pipeline)],
    file: UploadFile = File(..., description="Evidence file"),
    preferred_parser_id: str | None = Form(None, description="Parser id to try first"),
) -> AnalysisSubmitResponse:
    """Submit an evidence file for analysis."""
    content = await file.read()
    filename = file.filename or "upload.bin"

    record = await pipeline.submit(content, filename, preferred_parser_id=preferred_parser_id or None)

    return AnalysisSubmitResponse(
        id=record.id,
        filename=record.filename,
        status=record.status.value,
        mode=record.mode.value,
        sha256=record.sha256,
        error_message=record.error_message,
    )


@router.get("", response_model=AnalysisListResponse)
async def list_analyses(
    pipeline: Annotated[AnalysisPipeline, Depends(get_pipeline)],
) -> AnalysisListResponse:
    """List analyses, newest first."""
    records = await pipeline.list_analyses()
    return AnalysisListResponse(items=[_summary(r) for r in records], total=len(records))


@router.get("/{analysis_id}", response_model=AnalysisResponse)
async def get_analysis(
    analysis_id: str,
    pipeline: Annotated[AnalysisPipeline, Depends(get_pipeline)],
) -> AnalysisResponse:
    """Get the full state and results of an analysis."""
    record = await pipeline.get(analysis_id)
    return AnalysisResponse(**record.to_dict())


@router.post("/{analysis_id}/cancel", response_model=AnalysisResponse)
async def cancel_analysis(
    analysis_id: str,
    pipeline: Annotated[AnalysisPipeline, Depends(get_pipeline)],
) -> AnalysisResponse:
    """Cancel a running analysis."""
    record = await pipeline.cancel(analysis_id)
    logger.info("Cancellation requested for analysis %s", analysis_id)
    return AnalysisResponse(**record.to_dict())
