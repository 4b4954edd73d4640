# src/sqlsalvage/server.py
"""Starlette ASGI application exposing the recovery service over HTTP.

Usage:
    from sqlsalvage.config import load_config
    from sqlsalvage.server import create_app

    app = create_app(load_config(preset="default"))
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import AsyncIterator
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from starlette.applications import Starlette
from starlette.background import BackgroundTask
from starlette.datastructures import UploadFile
from starlette.requests import Request
from starlette.responses import FileResponse, JSONResponse, Response, StreamingResponse
from starlette.routing import Route

from sqlsalvage.config import SalvageConfig
from sqlsalvage.contracts import (
    ArchiveError,
    ArtifactAccessError,
    InvalidOptionsError,
    MaterializationError,
    NotFoundError,
    ProgressEvent,
    RecoveryMode,
    RecoveryOptions,
    SalvageError,
    SessionState,
    SessionTimeoutError,
    format_file_size,
)
from sqlsalvage.core.artifacts import content_type
from sqlsalvage.core.logging import get_logger
from sqlsalvage.engine.service import RecoveryService, Submission

logger = get_logger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
}
KEEPALIVE_FRAME = ": keepalive\n\n"

_COPY_CHUNK = 1024 * 1024


def error_status(error: Exception) -> int:
    """HTTP status for an error raised while serving a request."""
    match error:
        case InvalidOptionsError() | ArchiveError():
            return 400
        case ArtifactAccessError():
            return 403
        case NotFoundError():
            return 404
        case SessionTimeoutError():
            return 504
        case _:
            return 500


def error_response(error: Exception) -> JSONResponse:
    body: dict[str, Any] = {"error": str(error) or "Recovery failed"}
    if isinstance(error, MaterializationError) and error.sql_file:
        body["sqlFile"] = error.sql_file
    return JSONResponse(body, status_code=error_status(error))


class SalvageServer:
    """Holds the recovery service and the routes that front it."""

    def __init__(self, config: SalvageConfig, *, service: RecoveryService | None = None) -> None:
        self._config = config
        self.service = service if service is not None else RecoveryService.from_config(config)
        self._app = self._create_app()

    def _create_app(self) -> Starlette:
        routes = [
            Route("/api/recover", self._recover_endpoint, methods=["POST"]),
            Route("/api/manual-recovery", self._manual_recovery_endpoint, methods=["POST"]),
            Route("/api/progress/{session_id}", self._progress_endpoint, methods=["GET"]),
            Route("/api/download/{filename}", self._download_endpoint, methods=["GET"]),
            Route("/api/status", self._status_endpoint, methods=["GET"]),
            Route("/api/health", self._health_endpoint, methods=["GET"]),
            Route("/api/force-stop", self._force_stop_endpoint, methods=["POST"]),
            Route("/api/sessions/{session_id}", self._session_endpoint, methods=["GET"]),
            Route("/api/sessions/{session_id}/cancel", self._cancel_endpoint, methods=["POST"]),
            Route("/api/capabilities", self._capabilities_endpoint, methods=["GET"]),
        ]
        return Starlette(debug=False, routes=routes, lifespan=self._lifespan)

    @property
    def app(self) -> Starlette:
        return self._app

    @contextlib.asynccontextmanager
    async def _lifespan(self, app: Starlette) -> AsyncIterator[None]:
        capabilities = await self.service.capabilities.get()
        if not capabilities.available:
            logger.error("sqlite3 is not available; recoveries will fail", error=capabilities.error)
        logger.info(
            "sqlsalvage ready",
            artifact_dir=str(self.service.artifacts.root),
            sqlite_version=capabilities.version,
            has_recover=capabilities.has_recover,
        )
        try:
            yield
        finally:
            for session in self.service.sessions.running():
                if session.task is not None:
                    session.task.cancel()
            await self.service.runner.registry.terminate_all(self._config.tool.kill_grace_sec)
            await self.service.artifacts.drain_pending_deletes()

    # === Recovery ===

    async def _recover_endpoint(self, request: Request) -> Response:
        """Handle POST /api/recover."""
        return await self._handle_recovery(request, RecoveryMode.STANDARD)

    async def _manual_recovery_endpoint(self, request: Request) -> Response:
        """Handle POST /api/manual-recovery."""
        return await self._handle_recovery(request, RecoveryMode.TABLE_BY_TABLE)

    async def _handle_recovery(self, request: Request, mode: RecoveryMode) -> Response:
        service = self.service
        session_id = request.headers.get("x-session-id") or None
        timestamp = service.artifacts.timestamp()

        async with request.form(max_files=1) as form:
            upload = form.get("database")
            if not isinstance(upload, UploadFile) or not upload.filename:
                return JSONResponse({"error": "No database file uploaded"}, status_code=400)
            try:
                options = RecoveryOptions.from_form(form)
                self._check_extension(upload.filename)
                stored = service.artifacts.upload_path(upload.filename, timestamp)
                await self._store_upload(upload, stored)
            except InvalidOptionsError as e:
                return error_response(e)

        try:
            session = service.sessions.create(mode, options, session_id=session_id)
        except ValueError as e:
            stored.unlink(missing_ok=True)
            return JSONResponse({"error": str(e)}, status_code=409)

        logger.info(
            "Recovery requested",
            session_id=session.session_id,
            mode=mode.value,
            filename=upload.filename,
            size=format_file_size(stored.stat().st_size),
        )
        task = service.submit(session, Submission(path=stored, original_name=upload.filename, timestamp=timestamp))
        try:
            await asyncio.wait({task})
        except asyncio.CancelledError:
            task.cancel()
            raise

        if task.cancelled():
            return JSONResponse({"error": "Recovery cancelled", "sessionId": session.session_id}, status_code=409)
        error = task.exception()
        if error is not None:
            if not isinstance(error, SalvageError):
                logger.error("Unexpected recovery failure", error=str(error), error_type=type(error).__name__)
            return error_response(error)
        return JSONResponse(task.result().to_dict())

    def _check_extension(self, filename: str) -> None:
        suffix = Path(filename).suffix.lower()
        if suffix not in self._config.server.allowed_extensions:
            raise InvalidOptionsError(
                "Invalid file type. Only SQLite database files (.db, .sqlite, .sqlite3) or ZIP files are allowed."
            )

    async def _store_upload(self, upload: UploadFile, target: Path) -> None:
        """Copy the upload into the artifact directory, enforcing the size limit."""
        limit = self._config.server.max_upload_bytes
        if upload.size is not None and upload.size > limit:
            raise InvalidOptionsError(f"File too large. Maximum size is {format_file_size(limit)}.")
        written = 0
        try:
            with target.open("wb") as sink:
                while chunk := await upload.read(_COPY_CHUNK):
                    written += len(chunk)
                    if written > limit:
                        raise InvalidOptionsError(f"File too large. Maximum size is {format_file_size(limit)}.")
                    sink.write(chunk)
        except InvalidOptionsError:
            target.unlink(missing_ok=True)
            raise

    # === Progress ===

    async def _progress_endpoint(self, request: Request) -> Response:
        """Handle GET /api/progress/{session_id} as a server-sent-events stream.

        A session that has already finished gets its terminal event and the
        stream closes. An idle stream (unknown or quiet session) sends a
        keepalive comment every ``server.keepalive_sec``.
        """
        session_id = request.path_params["session_id"]
        channel = self.service.channel
        keepalive = self._config.server.keepalive_sec

        async def frames() -> AsyncIterator[str]:
            async with channel.subscribe(session_id) as subscription:
                yield ProgressEvent.connected().to_frame()
                # Subscribed first, so a session finishing now is not missed.
                finished = self._finished_event(session_id)
                if finished is not None:
                    yield finished.to_frame()
                    return
                while True:
                    try:
                        event = await asyncio.wait_for(subscription.get(), timeout=keepalive)
                    except TimeoutError:
                        yield KEEPALIVE_FRAME
                        continue
                    yield event.to_frame()
                    if event.is_terminal:
                        return

        return StreamingResponse(frames(), media_type="text/event-stream", headers=SSE_HEADERS)

    def _finished_event(self, session_id: str) -> ProgressEvent | None:
        """The terminal event of a finished session, or None while it can still change."""
        try:
            session = self.service.sessions.get(session_id)
        except NotFoundError:
            return None
        if not session.state.is_finished:
            return None
        if session.last_event is not None and session.last_event.is_terminal:
            return session.last_event
        if session.state == SessionState.SUCCEEDED:
            return ProgressEvent.complete("Recovery complete!")
        return ProgressEvent.failed("Recovery failed", session.error_detail)

    # === Artifacts ===

    async def _download_endpoint(self, request: Request) -> Response:
        """Handle GET /api/download/{filename}."""
        filename = request.path_params["filename"]
        artifacts = self.service.artifacts
        try:
            path = artifacts.resolve(filename)
        except ArtifactAccessError:
            logger.warning("Rejected artifact request", filename=filename)
            return JSONResponse({"error": "Access denied"}, status_code=403)
        except NotFoundError:
            return JSONResponse({"error": "File not found"}, status_code=404)

        delay = self._config.storage.download_delete_delay_sec

        async def delete_later() -> None:
            artifacts.schedule_delete(path, delay)

        return FileResponse(
            path,
            media_type=content_type(path.name),
            filename=path.name,
            background=BackgroundTask(delete_later),
        )

    async def _status_endpoint(self, request: Request) -> JSONResponse:
        """Handle GET /api/status."""
        report = self.service.artifacts.latest_activity(self._config.storage.stuck_after_sec)
        return JSONResponse(report.to_dict())

    async def _health_endpoint(self, request: Request) -> JSONResponse:
        """Handle GET /api/health."""
        return JSONResponse({"status": "OK", "timestamp": datetime.now(UTC).isoformat()})

    # === Control ===

    async def _force_stop_endpoint(self, request: Request) -> JSONResponse:
        """Handle POST /api/force-stop."""
        stopped = await self.service.force_stop()
        return JSONResponse(
            {
                "success": True,
                "stopped": stopped,
                "message": "Recovery processes stopped" if any(stopped.values()) else "No recovery processes running",
            }
        )

    async def _session_endpoint(self, request: Request) -> JSONResponse:
        """Handle GET /api/sessions/{session_id}."""
        try:
            session = self.service.sessions.get(request.path_params["session_id"])
        except NotFoundError as e:
            return error_response(e)
        return JSONResponse(session.to_dict())

    async def _cancel_endpoint(self, request: Request) -> JSONResponse:
        """Handle POST /api/sessions/{session_id}/cancel."""
        session_id = request.path_params["session_id"]
        try:
            cancelled = self.service.sessions.cancel(session_id)
        except NotFoundError as e:
            return error_response(e)
        return JSONResponse({"success": cancelled, "sessionId": session_id})

    async def _capabilities_endpoint(self, request: Request) -> JSONResponse:
        """Handle GET /api/capabilities."""
        capabilities = await self.service.capabilities.get()
        return JSONResponse(capabilities.to_dict())


def create_app(config: SalvageConfig, *, service: RecoveryService | None = None) -> Starlette:
    """Create the Starlette application from config.

    For access to the service (tests, embedding), read ``app.state.server``.
    """
    server = SalvageServer(config, service=service)
    server.app.state.server = server
    return server.app
