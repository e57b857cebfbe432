from __future__ import annotations

"""
Upload/finalize API surface for the intake service.

Design intent:
- Keep API orchestration thin and typed.
- Delegate session, merge and transcription logic to internal_core.
- Return typed failures with a remediation hint, never a bare 500.
"""

import asyncio
import base64
import binascii
import contextlib
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Annotated, Any, AsyncIterator, Literal, Union

from fastapi import FastAPI, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from scribe_intake.internal_core.config import load_config
from scribe_intake.internal_core.contracts import ChunkReceipt
from scribe_intake.internal_core.errors import FailureKind, SessionError
from scribe_intake.internal_core.gate import GateOutcome
from scribe_intake.internal_core.integrity import normalize_file_type
from scribe_intake.internal_core.services import IntakeServices, build_services
from scribe_intake.internal_core.session_tracker import run_expiry_sweeper

logger = logging.getLogger(__name__)

_SHA256_PATTERN = r"^[0-9a-fA-F]{64}$"


class OpenUploadRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    total_chunks: int
    total_size: int
    file_type: str = Field(min_length=1, max_length=128)
    file_name: str | None = Field(default=None, max_length=255)
    expected_sha256: str | None = Field(default=None, pattern=_SHA256_PATTERN)


class OpenUploadResponse(BaseModel):
    session_id: str
    file_type: str
    expires_at: float
    max_upload_bytes: int
    max_chunks: int
    transcription_max_bytes: int


class AbortResponse(BaseModel):
    session_id: str
    status: Literal["aborted"] = "aborted"


class WsOpenMessage(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: Literal["open"]
    total_chunks: int
    total_size: int
    file_type: str = Field(min_length=1, max_length=128)
    file_name: str | None = Field(default=None, max_length=255)
    expected_sha256: str | None = Field(default=None, pattern=_SHA256_PATTERN)


class WsChunkMessage(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: Literal["chunk"]
    session_id: str = Field(min_length=1, max_length=128)
    index: int
    data_b64: str = Field(min_length=1)


class WsFinalizeMessage(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: Literal["finalize"]
    session_id: str = Field(min_length=1, max_length=128)
    expected_sha256: str | None = Field(default=None, pattern=_SHA256_PATTERN)


class WsAbortMessage(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: Literal["abort"]
    session_id: str = Field(min_length=1, max_length=128)


WsMessage = Annotated[
    Union[WsOpenMessage, WsChunkMessage, WsFinalizeMessage, WsAbortMessage],
    Field(discriminator="type"),
]
_WS_MESSAGE_ADAPTER: TypeAdapter[Any] = TypeAdapter(WsMessage)

_STATUS_BY_KIND = {
    FailureKind.UNKNOWN_SESSION: 404,
    FailureKind.SESSION_CLOSED: 409,
    FailureKind.INCOMPLETE_SESSION: 409,
    FailureKind.UPLOAD_TOO_LARGE: 413,
    FailureKind.DECLARED_SIZE_EXCEEDED: 413,
}


def _get_services() -> IntakeServices:
    existing = getattr(app.state, "intake_services", None)
    if isinstance(existing, IntakeServices):
        return existing
    created = build_services(load_config())
    setattr(app.state, "intake_services", created)
    return created


def _configure_logging(level_name: str) -> None:
    level = getattr(logging, str(level_name or "INFO").upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    services = _get_services()
    _configure_logging(services.config.INTAKE_LOG_LEVEL)
    sweeper = asyncio.create_task(
        run_expiry_sweeper(
            services.tracker,
            services.config.INTAKE_SWEEP_INTERVAL_SECONDS,
            on_sweep=services.gate.prune_outcomes,
        )
    )
    try:
        yield
    finally:
        sweeper.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await sweeper
        await services.aclose()


app = FastAPI(title="scribe intake service", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _http_error(exc: SessionError) -> HTTPException:
    status_code = _STATUS_BY_KIND.get(exc.kind, 400)
    return HTTPException(status_code=status_code, detail=exc.failure.to_payload())


def _outcome_response(outcome: GateOutcome) -> JSONResponse:
    payload = outcome.to_payload()
    if outcome.accepted:
        return JSONResponse(status_code=200, content=payload)
    body = dict(outcome.failure.to_payload()) if outcome.failure is not None else {}
    body.update(
        {
            "session_id": outcome.session_id,
            "state": outcome.state,
            "history": payload["history"],
            "attempts": payload["attempts"],
            "flags": payload["flags"],
        }
    )
    return JSONResponse(status_code=422, content=body)


def _open_session(
    services: IntakeServices,
    total_chunks: int,
    total_size: int,
    file_type: str,
    file_name: str | None,
    expected_sha256: str | None,
) -> OpenUploadResponse:
    tracker = services.tracker
    session_id = tracker.open(
        total_chunks,
        total_size,
        file_type,
        file_name=file_name,
        expected_sha256=expected_sha256,
    )
    session = tracker.get(session_id)
    return OpenUploadResponse(
        session_id=session_id,
        file_type=session.file_type,
        expires_at=session.expires_at,
        max_upload_bytes=services.config.INTAKE_MAX_UPLOAD_BYTES,
        max_chunks=services.config.INTAKE_MAX_CHUNKS,
        transcription_max_bytes=services.config.INTAKE_TRANSCRIBE_MAX_BYTES,
    )


async def _abort_session(services: IntakeServices, session_id: str, reason: str) -> None:
    # Once finalize has started the session belongs to the gate.
    if services.gate.in_progress(session_id) or services.gate.outcome(session_id) is not None:
        raise SessionError(
            FailureKind.SESSION_CLOSED,
            f"Session {session_id} is already being finalized.",
            session_id,
        )
    await services.tracker.abort(session_id, reason)


@app.get("/healthz")
async def healthz() -> dict[str, str]:
    services = _get_services()
    return {"status": "ok", "provider": services.client.provider.name()}


@app.post("/uploads", response_model=OpenUploadResponse)
async def open_upload(payload: OpenUploadRequest) -> OpenUploadResponse:
    services = _get_services()
    try:
        return _open_session(
            services,
            payload.total_chunks,
            payload.total_size,
            payload.file_type,
            payload.file_name,
            payload.expected_sha256,
        )
    except SessionError as exc:
        raise _http_error(exc) from exc


@app.put("/uploads/{session_id}/chunks/{index}", response_model=ChunkReceipt)
async def put_chunk(session_id: str, index: int, request: Request) -> ChunkReceipt:
    services = _get_services()
    data = await request.body()
    try:
        return await services.tracker.accept_chunk(session_id, index, data)
    except SessionError as exc:
        raise _http_error(exc) from exc


@app.post("/uploads/{session_id}/finalize")
async def finalize_upload(
    session_id: str,
    expected_sha256: str | None = Query(default=None, pattern=_SHA256_PATTERN),
) -> JSONResponse:
    services = _get_services()
    try:
        outcome = await services.gate.finalize(session_id, expected_sha256)
    except SessionError as exc:
        raise _http_error(exc) from exc
    return _outcome_response(outcome)


@app.get("/uploads/{session_id}")
async def upload_status(session_id: str) -> dict[str, Any]:
    services = _get_services()
    outcome = services.gate.outcome(session_id)
    if outcome is not None:
        return {"session_id": session_id, "state": outcome.state, "outcome": outcome.to_payload()}
    if services.gate.in_progress(session_id):
        return {"session_id": session_id, "state": "finalizing"}
    try:
        status = services.tracker.status(session_id)
    except SessionError as exc:
        raise _http_error(exc) from exc
    return {"session_id": session_id, "state": "receiving", "status": status.model_dump()}


@app.delete("/uploads/{session_id}", response_model=AbortResponse)
async def abort_upload(session_id: str) -> AbortResponse:
    services = _get_services()
    try:
        await _abort_session(services, session_id, "client_abort")
    except SessionError as exc:
        raise _http_error(exc) from exc
    return AbortResponse(session_id=session_id)


@app.post("/uploads/direct")
async def upload_direct(
    request: Request,
    filename: str = Query(min_length=1, max_length=255),
    expected_sha256: str | None = Query(default=None, pattern=_SHA256_PATTERN),
) -> JSONResponse:
    services = _get_services()
    filename = Path(str(filename or "")).name
    suffix = Path(filename).suffix.lower()
    if normalize_file_type(suffix) is None:
        exc = SessionError(
            FailureKind.UNSUPPORTED_FILE_TYPE,
            f"Unsupported file type: {suffix or filename!r}.",
            file_name=filename,
        )
        raise _http_error(exc)

    data = await request.body()
    try:
        opened = _open_session(services, 1, len(data), suffix, filename, expected_sha256)
        await services.tracker.accept_chunk(opened.session_id, 0, data)
        outcome = await services.gate.finalize(opened.session_id)
    except SessionError as exc:
        raise _http_error(exc) from exc
    return _outcome_response(outcome)


@app.websocket("/ws/uploads")
async def uploads_ws(websocket: WebSocket) -> None:
    await websocket.accept()
    services = _get_services()

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                message = _WS_MESSAGE_ADAPTER.validate_json(raw)
            except ValidationError as exc:
                await websocket.send_json(
                    {
                        "type": "error",
                        "detail": "invalid_message",
                        "errors": [
                            {"loc": [str(part) for part in err["loc"]], "msg": err["msg"]}
                            for err in exc.errors()
                        ],
                    }
                )
                continue

            try:
                if isinstance(message, WsOpenMessage):
                    opened = _open_session(
                        services,
                        message.total_chunks,
                        message.total_size,
                        message.file_type,
                        message.file_name,
                        message.expected_sha256,
                    )
                    await websocket.send_json({"type": "ack_open", **opened.model_dump()})
                    continue

                if isinstance(message, WsChunkMessage):
                    try:
                        data = base64.b64decode(message.data_b64, validate=True)
                    except (binascii.Error, ValueError):
                        await websocket.send_json(
                            {"type": "error", "detail": "invalid_base64", "session_id": message.session_id}
                        )
                        continue
                    receipt = await services.tracker.accept_chunk(message.session_id, message.index, data)
                    await websocket.send_json({"type": "ack_chunk", **receipt.model_dump()})
                    continue

                if isinstance(message, WsFinalizeMessage):
                    outcome = await services.gate.finalize(message.session_id, message.expected_sha256)
                    await websocket.send_json({"type": "result", **outcome.to_payload()})
                    continue

                await _abort_session(services, message.session_id, "client_abort")
                await websocket.send_json({"type": "ack_abort", "session_id": message.session_id})
            except SessionError as exc:
                await websocket.send_json(
                    {
                        "type": "error",
                        "detail": exc.kind.value,
                        "session_id": exc.session_id,
                        "failure": exc.failure.to_payload(),
                    }
                )
    except WebSocketDisconnect:
        logger.debug("upload websocket disconnected")
