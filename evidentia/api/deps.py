"""Request-scoped access to the services created at startup."""

from fastapi import Request, WebSocket

from evidentia.intake.pipeline import AnalysisPipeline
from evidentia.parsers.registry import ParserRegistry
from evidentia.websocket import ConnectionManager


def get_registry(request: Request) -> ParserRegistry:
    return request.app.state.registry


def get_pipeline(request: Request) -> AnalysisPipeline:
    return request.app.state.pipeline


def get_connection_manager(websocket: WebSocket) -> ConnectionManager:
    return websocket.app.state.connection_manager
