"""
HTTP surface for the database access layer.

Routes mirror the client contract: every database route takes an encrypted
connection record, runs exactly one operation, and answers with either the
result or ``{"error": ..., "kind": ...}`` under a non-2xx status.

Usage:
    uvicorn dbrelay.api:create_app --factory --port 8000
"""

from __future__ import annotations

import dataclasses
import logging
from functools import partial
from typing import Any, Awaitable, Callable, TypeVar

import anyio
from fastapi import APIRouter, Body, FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .config import AppConfig, load_config
from .errors import DbRelayError
from .orchestrator import ConnectionOrchestrator
from .payloads import parse_browse, parse_connection, parse_text

LOG = logging.getLogger(__name__)

T = TypeVar("T")

API_TITLE = "dbrelay"
API_VERSION = "0.1.0"

router = APIRouter(prefix="/api/database", tags=["Database"])


class ClientDisconnected(Exception):
    """The client went away before the operation finished."""


def _orchestrator(request: Request) -> ConnectionOrchestrator:
    return request.app.state.orchestrator


def _payload(body: Any) -> dict[str, Any]:
    return body if isinstance(body, dict) else {}


async def _until_disconnect(request: Request, operation: Callable[[], Awaitable[T]]) -> T:
    """Run ``operation``, cancelling it (and so unwinding it) if the client disconnects.

    Mirrors Starlette's streaming responses: one task runs the operation, one
    listens for ``http.disconnect``, and whichever finishes first cancels the
    group.
    """

    outcome: dict[str, Any] = {}

    async with anyio.create_task_group() as group:

        async def _run() -> None:
            try:
                outcome["result"] = await operation()
            except Exception as exc:
                outcome["error"] = exc
            finally:
                group.cancel_scope.cancel()

        async def _listen() -> None:
            while (await request.receive())["type"] != "http.disconnect":
                pass
            group.cancel_scope.cancel()

        group.start_soon(_run)
        group.start_soon(_listen)

    if "error" in outcome:
        raise outcome["error"]
    if "result" not in outcome:
        LOG.info("Client disconnected; cancelled %s %s", request.method, request.url.path)
        raise ClientDisconnected()
    return outcome["result"]


@router.post("/schema")
async def fetch_schema(request: Request, body: Any = Body(None)):
    orchestrator = _orchestrator(request)
    orchestrator.codec.require_configured()
    connection = parse_connection(_payload(body))
    schema = await _until_disconnect(request, partial(orchestrator.fetch_schema, connection))
    return {"schema": dataclasses.asdict(schema)}


@router.post("/tables")
async def list_tables(request: Request, body: Any = Body(None)):
    orchestrator = _orchestrator(request)
    orchestrator.codec.require_configured()
    connection = parse_connection(_payload(body))
    tables = await _until_disconnect(request, partial(orchestrator.list_tables, connection))
    return {"tables": [dataclasses.asdict(table) for table in tables]}


@router.post("/query")
async def run_query(request: Request, body: Any = Body(None)):
    orchestrator = _orchestrator(request)
    orchestrator.codec.require_configured()
    payload = _payload(body)
    connection = parse_connection(payload)
    sql = parse_text(payload, "sql")
    result = await _until_disconnect(request, partial(orchestrator.run_query, connection, sql))
    return {"result": dataclasses.asdict(result)}


@router.post("/browse")
async def browse_table(request: Request, body: Any = Body(None)):
    orchestrator = _orchestrator(request)
    orchestrator.codec.require_configured()
    payload = _payload(body)
    connection = parse_connection(payload)
    params = parse_browse(payload)
    page = await _until_disconnect(request, partial(orchestrator.browse_table, connection, params))
    return {"page": dataclasses.asdict(page)}


@router.post("/test")
async def test_connection(request: Request, body: Any = Body(None)):
    orchestrator = _orchestrator(request)
    orchestrator.codec.require_configured()
    connection = parse_connection(_payload(body))
    outcome = await _until_disconnect(request, partial(orchestrator.test_connection, connection))
    return {key: value for key, value in dataclasses.asdict(outcome).items() if value is not None}


@router.post("/encrypt")
async def encrypt_value(request: Request, body: Any = Body(None)):
    codec = _orchestrator(request).codec
    codec.require_configured()
    value = parse_text(_payload(body), "value")
    return {"encrypted": codec.encrypt(value)}


@router.post("/decrypt")
async def decrypt_value(request: Request, body: Any = Body(None)):
    codec = _orchestrator(request).codec
    codec.require_configured()
    value = parse_text(_payload(body), "value")
    return {"decrypted": codec.decrypt(value)}


def create_app(
    config: AppConfig | None = None,
    orchestrator: ConnectionOrchestrator | None = None,
) -> FastAPI:
    """Build the application; the master key is resolved once, here."""

    config = config or load_config()
    app = FastAPI(title=API_TITLE, version=API_VERSION)
    app.state.config = config
    app.state.orchestrator = orchestrator or ConnectionOrchestrator.from_config(config)
    app.include_router(router)

    @app.get("/health", tags=["Health"])
    async def health(request: Request):
        return {
            "status": "ok",
            "encryptionConfigured": request.app.state.orchestrator.codec.configured,
        }

    @app.exception_handler(DbRelayError)
    async def relay_error_handler(request: Request, exc: DbRelayError):
        LOG.info("%s %s failed (%s): %s", request.method, request.url.path, exc.kind, exc.message)
        return JSONResponse(status_code=exc.status_code, content={"error": exc.message, "kind": exc.kind})

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"error": "Request body must be a JSON object", "kind": "validation"},
        )

    @app.exception_handler(ClientDisconnected)
    async def disconnect_handler(request: Request, exc: ClientDisconnected):
        return JSONResponse(status_code=499, content={"error": "Client closed request", "kind": "cancelled"})

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        LOG.exception("Unexpected error handling %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "Internal server error", "kind": "internal"},
        )

    return app


__all__ = ["ClientDisconnected", "create_app", "router"]
