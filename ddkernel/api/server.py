"""HTTP execution API for the Design Diary GUI.

Thin aiohttp surface over :class:`ExecutionService`. Every failure is
rendered as a JSON body carrying a single ``error`` artifact so the GUI
can place it like any other output.

Usage:
    ddkernel [--host HOST] [--port PORT]
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import sys
import time
import uuid
from pathlib import Path
from typing import Any

from aiohttp import web

from ddkernel.engine.errors import (
    ExecutionTimeout,
    KernelError,
    SessionTerminated,
    StartupFailure,
)
from ddkernel.engine.models import (
    Artifact,
    ArtifactKind,
    ExecutionResult,
    Slot,
    SourceAnchor,
)
from ddkernel.engine.service import DEFAULT_SESSION_KEY, ExecutionService

logger = logging.getLogger(__name__)

OUTPUTS_PREFIX = "/api/outputs"


def error_status(exc: BaseException) -> int:
    """HTTP status for a kernel failure."""
    if isinstance(exc, StartupFailure):
        return 503
    if isinstance(exc, ExecutionTimeout):
        return 504
    if isinstance(exc, SessionTerminated):
        return 502
    return 500


def error_body(message: str, error_type: str) -> dict[str, Any]:
    return {
        "error": message,
        "errorType": error_type,
        "success": False,
        "artifacts": [
            Artifact(kind=ArtifactKind.ERROR, payload=message).to_dict()
        ],
    }


def artifact_payload(artifact: Artifact) -> dict[str, Any]:
    data = artifact.to_dict()
    if artifact.kind == ArtifactKind.IMAGE and artifact.payload:
        data["url"] = f"{OUTPUTS_PREFIX}/{artifact.payload}"
    return data


def result_payload(result: ExecutionResult) -> dict[str, Any]:
    return {
        "executionId": result.execution_id,
        "stdout": result.stdout,
        "stderr": result.stderr,
        "artifacts": [artifact_payload(a) for a in result.artifacts],
        "success": result.success,
        "timestamp": result.created_at.isoformat(),
    }


class ExecutionServer:
    """aiohttp application exposing the execution service."""

    def __init__(
        self,
        service: ExecutionService,
        host: str = "127.0.0.1",
        port: int = 3001,
    ) -> None:
        self._service = service
        self._host = host
        self._port = port
        self._runner: web.AppRunner | None = None
        self._stop_event: asyncio.Event | None = None
        self._app = web.Application(middlewares=[self._request_logging_middleware])
        self._app.on_startup.append(self._on_startup)
        self._app.on_cleanup.append(self._on_cleanup)
        self._setup_routes()
        logger.info(
            "ExecutionServer init host=%s port=%s output_dir=%s pid=%s",
            self._host, self._port, service.config.output_dir, os.getpid(),
        )

    @property
    def app(self) -> web.Application:
        return self._app

    @property
    def port(self) -> int:
        return self._port

    # ── Middleware ──

    @web.middleware
    async def _request_logging_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        req_id = request.headers.get("x-ddkernel-request-id", str(uuid.uuid4())[:8])
        request["req_id"] = req_id
        start = time.monotonic()
        logger.info("HTTP %s %s req=%s from=%s", request.method, request.path_qs, req_id, request.remote)
        try:
            response = await handler(request)
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.info(
                "HTTP %s %s req=%s status=%s duration_ms=%.1f",
                request.method, request.path_qs, req_id,
                getattr(response, "status", "?"), elapsed_ms,
            )
            return response
        except web.HTTPException:
            raise
        except Exception:
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.exception("HTTP %s %s req=%s failed duration_ms=%.1f", request.method, request.path_qs, req_id, elapsed_ms)
            raise

    # ── Route setup ──

    def _setup_routes(self) -> None:
        r = self._app.router
        r.add_post("/api/execute", self._handle_execute)
        r.add_get("/api/execution/{execution_id}", self._handle_get_execution)
        r.add_post("/api/reconcile", self._handle_reconcile)
        r.add_get("/api/sessions", self._handle_list_sessions)
        r.add_delete("/api/sessions/{key}", self._handle_shutdown_session)
        r.add_get("/api/health", self._handle_health)
        r.add_get("/api/python-info", self._handle_python_info)
        r.add_post("/api/shutdown", self._handle_shutdown)
        # add_static requires the directory to exist up front.
        output_dir = Path(self._service.config.output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)
        r.add_static(OUTPUTS_PREFIX, output_dir, show_index=False)

    # ── Lifecycle ──

    async def _on_startup(self, app: web.Application) -> None:
        await self._service.start()

    async def _on_cleanup(self, app: web.Application) -> None:
        stopped = await self._service.shutdown()
        logger.info("Execution service stopped (%d session(s))", stopped)

    async def start(self) -> None:
        """Serve until cancelled. Prints the bound port to stdout."""
        self._runner = web.AppRunner(self._app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self._host, self._port)
        await site.start()

        actual_port = self._resolve_port(self._runner)
        if actual_port is not None:
            self._port = actual_port
        sys.stdout.write(json.dumps({"port": self._port}) + "\n")
        sys.stdout.flush()
        logger.info("ddkernel server listening on %s:%d", self._host, self._port)

        self._stop_event = asyncio.Event()
        try:
            await self._stop_event.wait()
        except (KeyboardInterrupt, asyncio.CancelledError):
            logger.info("Server shutting down")
        finally:
            await self._runner.cleanup()
            self._runner = None

    def request_stop(self) -> None:
        if self._stop_event is not None:
            self._stop_event.set()

    @staticmethod
    def _resolve_port(runner: web.AppRunner) -> int | None:
        addresses = getattr(runner, "addresses", None) or ()
        if addresses:
            first = addresses[0]
            if isinstance(first, tuple) and len(first) >= 2:
                return int(first[1])
        return None

    # ── Handlers ──

    async def _read_json(self, request: web.Request) -> dict[str, Any]:
        if not request.can_read_body:
            return {}
        try:
            body = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise web.HTTPBadRequest(
                text=json.dumps(error_body(f"Invalid JSON body: {exc}", "BadRequest")),
                content_type="application/json",
            )
        if not isinstance(body, dict):
            raise web.HTTPBadRequest(
                text=json.dumps(error_body("JSON body must be an object", "BadRequest")),
                content_type="application/json",
            )
        return body

    async def _handle_execute(self, request: web.Request) -> web.Response:
        body = await self._read_json(request)
        code = body.get("code")
        if not isinstance(code, str):
            return web.json_response(error_body("No code provided", "BadRequest"), status=400)

        source_id = body.get("sourceId") or body.get("cellId")
        session_key = (
            body.get("sessionKey") or body.get("documentId") or DEFAULT_SESSION_KEY
        )
        timeout = body.get("timeout")
        if timeout is not None:
            try:
                timeout = float(timeout)
            except (TypeError, ValueError):
                return web.json_response(
                    error_body("timeout must be a number", "BadRequest"), status=400,
                )

        try:
            response = await self._service.execute(
                code,
                source_id=source_id,
                session_key=str(session_key),
                timeout=timeout,
            )
        except KernelError as exc:
            logger.warning(
                "Execution failed for source=%s session=%s: %s",
                source_id, session_key, exc,
            )
            return web.json_response(
                error_body(str(exc), type(exc).__name__), status=error_status(exc),
            )

        payload = response.to_dict()
        payload["artifacts"] = [artifact_payload(a) for a in response.artifacts]
        reply = web.json_response(payload)
        # Serialized and handed to the client: artifact files may now age out.
        self._service.acknowledge(response.execution_id)
        return reply

    async def _handle_get_execution(self, request: web.Request) -> web.Response:
        execution_id = request.match_info["execution_id"]
        result = self._service.get_result(execution_id)
        if result is None:
            return web.json_response(
                error_body(f"Execution {execution_id} not found", "NotFound"),
                status=404,
            )
        return web.json_response(result_payload(result))

    async def _handle_reconcile(self, request: web.Request) -> web.Response:
        body = await self._read_json(request)
        try:
            prior = [Slot.from_dict(s) for s in body.get("priorSlots") or []]
            artifacts = [Artifact.from_dict(a) for a in body.get("artifacts") or []]
            anchor = SourceAnchor.from_dict(body.get("anchor") or {})
        except (TypeError, ValueError, AttributeError) as exc:
            return web.json_response(
                error_body(f"Invalid reconcile request: {exc}", "BadRequest"),
                status=400,
            )
        outcome = self._service.reconcile(prior, artifacts, anchor)
        return web.json_response(outcome.to_dict())

    async def _handle_list_sessions(self, request: web.Request) -> web.Response:
        return web.json_response({"sessions": self._service.registry.list_sessions()})

    async def _handle_shutdown_session(self, request: web.Request) -> web.Response:
        key = request.match_info["key"]
        stopped = await self._service.shutdown_session(key)
        if not stopped:
            return web.json_response(
                error_body(f"Session {key} not found", "NotFound"), status=404,
            )
        return web.json_response({"success": True, "sessionKey": key})

    async def _handle_health(self, request: web.Request) -> web.Response:
        payload = self._service.health()
        payload["pid"] = os.getpid()
        return web.json_response(payload)

    async def _handle_python_info(self, request: web.Request) -> web.Response:
        try:
            info = await self._service.python_info()
        except OSError as exc:
            return web.json_response(
                {"success": False, "error": f"Failed to run Python: {exc}"},
                status=500,
            )
        return web.json_response(info, status=200 if info.get("success") else 500)

    async def _handle_shutdown(self, request: web.Request) -> web.Response:
        stopped = await self._service.shutdown_sessions(purge_outputs=True)
        return web.json_response({
            "success": True,
            "message": "All sessions shut down and outputs cleaned",
            "sessionsStopped": stopped,
        })
