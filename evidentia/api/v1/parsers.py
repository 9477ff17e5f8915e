"""Parser catalog API endpoints.

Lists built-in and custom parsers, registers and edits custom parser
source, vets code and dry-runs parsers against sample content.
"""

import logging
from datetime import datetime
from typing import Annotated, Any

from fastapi import APIRouter, Depends, Query, Response, status
from pydantic import BaseModel, Field

from evidentia.api.deps import get_registry
from evidentia.parsers.base import ParserDescriptor
from evidentia.parsers.registry import DEFAULT_CUSTOM_PRIORITY, ParserRegistry

logger = logging.getLogger(__name__)
router = APIRouter()


# Pydantic schemas
class ParserResponse(BaseModel):
    """Parser catalog entry."""

    id: str
    name: str
    description: str
    version: str
    author: str
    extensions: list[str]
    priority: int
    enabled: bool
    is_builtin: bool
    configuration: dict[str, Any]
    usage_count: int
    last_used: datetime | None
    created_at: datetime
    updated_at: datetime
    source_code: str | None = None


class ParserListResponse(BaseModel):
    parsers: list[ParserResponse]
    total: int


class ParserCreateRequest(BaseModel):
    """Request to register a custom parser."""

    name: str = Field(..., min_length=1, max_length=100, description="Unique parser name")
    description: str = Field("", max_length=1000)
    version: str = Field("1.0.0", max_length=50)
    author: str = Field("", max_length=200)
    extensions: list[str] = Field(..., min_length=1, description="File extensions, e.g. ['.log']")
    source_code: str = Field(..., min_length=1, description="Python source defining a BaseParser subclass")
    configuration: dict[str, Any] = Field(default_factory=dict)
    priority: int = Field(DEFAULT_CUSTOM_PRIORITY, ge=0, description="Lower values are tried first")


class ParserUpdateRequest(BaseModel):
    """Partial update of a parser. Built-ins only accept enabled and priority."""

    description: str | None = Field(None, max_length=1000)
    version: str | None = Field(None, max_length=50)
    author: str | None = Field(None, max_length=200)
    extensions: list[str] | None = None
    source_code: str | None = None
    configuration: dict[str, Any] | None = None
    priority: int | None = Field(None, ge=0)
    enabled: bool | None = None


class CodeValidationRequest(BaseModel):
    source_code: str = Field(..., description="Python source to vet")


class DiagnosticResponse(BaseModel):
    message: str
    severity: str
    line: int | None
    column: int | None


class ValidationResponse(BaseModel):
    is_valid: bool
    errors: list[str]
    warnings: list[str]
    suggestions: dict[str, Any]
    diagnostics: list[DiagnosticResponse]


class ParserTestRequest(BaseModel):
    sample: str = Field(..., description="Sample content to parse")
    filename: str | None = Field(None, description="File name used for the extension check")


class ParserTestResponse(BaseModel):
    passed: bool
    duration_ms: float
    diagnostic: str
    events_count: int
    probe_accepted: bool | None
    sample_events: list[dict[str, Any]]
    validation: dict[str, Any] | None


def _to_response(descriptor: ParserDescriptor, include_source: bool = False) -> ParserResponse:
    return ParserResponse(**descriptor.to_dict(include_source=include_source))


@router.get("", response_model=ParserListResponse)
async def list_parsers(
    registry: Annotated[ParserRegistry, Depends(get_registry)],
    include_disabled: bool = Query(True, description="Include disabled parsers"),
) -> ParserListResponse:
    """List all catalogued parsers in selection order."""
    descriptors = await registry.list_parsers(include_disabled=include_disabled)
    return ParserListResponse(
        parsers=[_to_response(d) for d in descriptors],
        total=len(descriptors),
    )


@router.get("/statistics")
async def get_parser_statistics(
    registry: Annotated[ParserRegistry, Depends(get_registry)],
) -> dict[str, Any]:
    """Catalog totals, usage counters and loader cache statistics."""
    return await registry.get_statistics()


@router.post("/validate", response_model=ValidationResponse)
async def validate_parser_code(
    request: CodeValidationRequest,
    registry: Annotated[ParserRegistry, Depends(get_registry)],
) -> ValidationResponse:
    """Vet custom parser source without registering it."""
    result = await registry.validate_code(request.source_code)
    return ValidationResponse(**result.to_dict())


@router.post("", response_model=ParserResponse, status_code=status.HTTP_201_CREATED)
async def register_parser(
    request: ParserCreateRequest,
    registry: Annotated[ParserRegistry, Depends(get_registry)],
) -> ParserResponse:
    """Register a custom parser."""
    descriptor = await registry.register_custom_parser(
        name=request.name,
        description=request.description,
        version=request.version,
        author=request.author,
        extensions=request.extensions,
        source_code=request.source_code,
        configuration=request.configuration,
        priority=request.priority,
    )
    return _to_response(descriptor, include_source=True)


@router.get("/{parser_id}", response_model=ParserResponse)
async def get_parser(
    parser_id: str,
    registry: Annotated[ParserRegistry, Depends(get_registry)],
) -> ParserResponse:
    """Get one parser including its source code."""
    descriptor = await registry.get_parser(parser_id)
    return _to_response(descriptor, include_source=True)


@router.patch("/{parser_id}", response_model=ParserResponse)
async def update_parser(
    parser_id: str,
    request: ParserUpdateRequest,
    registry: Annotated[ParserRegistry, Depends(get_registry)],
) -> ParserResponse:
    """Update a parser."""
    descriptor = await registry.update_parser(parser_id, **request.model_dump(exclude_unset=True))
    return _to_response(descriptor, include_source=True)


@router.delete("/{parser_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_parser(
    parser_id: str,
    registry: Annotated[ParserRegistry, Depends(get_registry)],
) -> Response:
    """Remove a custom parser."""
    await registry.unregister_parser(parser_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{parser_id}/test", response_model=ParserTestResponse)
async def test_parser(
    parser_id: str,
    request: ParserTestRequest,
    registry: Annotated[ParserRegistry, Depends(get_registry)],
) -> ParserTestResponse:
    """Dry-run a parser against sample content."""
    result = await registry.test_parser(parser_id, request.sample, request.filename)
    logger.info("Parser test for %s: %s", parser_id, result.diagnostic)
    return ParserTestResponse(**result.to_dict())
