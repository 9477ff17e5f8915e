"""API v1 router."""

from fastapi import APIRouter

from evidentia.api.v1 import analyses, parsers, ws

router = APIRouter()

router.include_router(parsers.router, prefix="/parsers", tags=["Parsers"])
router.include_router(analyses.router, prefix="/analyses", tags=["Analyses"])
router.include_router(ws.router, tags=["WebSocket"])
