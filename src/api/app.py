"""
src/api/app.py
===============
HTTP Surface — SCAI Guard

Responsibility:
    - Expose the Session Service over HTTP
    - Accept raw telephony signals and publish the classified events
    - Accept audio chunk uploads via multipart/form-data
    - Map the error taxonomy onto HTTP status codes
    - Run the lifecycle coordinator and the eviction loop for the
      lifetime of the application

Endpoints:
    GET  /health
    POST /api/v1/telephony/signal
    POST /api/v1/sessions
    GET  /api/v1/sessions
    GET  /api/v1/sessions/{call_id}
    POST /api/v1/sessions/{call_id}/chunks
    POST /api/v1/sessions/{call_id}/stop
    GET  /api/v1/sessions/{call_id}/audit

Sessions only change through open / merge / close. There is no endpoint
that overwrites session fields.

Error mapping:
    InvalidChunk          400
    InvalidRequest        422
    SessionNotFound       404
    SessionAlreadyClosed  409
    ScoringUnavailable    503
"""

import asyncio
import contextlib
import logging
from datetime import datetime, timezone

from fastapi import FastAPI, File, Form, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from src.config import Settings, load_settings
from src.errors import (
    InvalidChunk,
    InvalidRequest,
    ScaiError,
    ScoringUnavailable,
    SessionAlreadyClosed,
    SessionNotFound,
)
from src.scoring.acoustic import AcousticHeuristicScorer
from src.scoring.adapter import ChunkScorer
from src.session.notifier import WebhookNotifier
from src.session.service import SessionService
from src.telephony.channel import CallEventChannel
from src.telephony.classifier import CallStateClassifier

logger = logging.getLogger("scai.api")

SERVER_NAME = "SCAI Backend v1.0.0"

_STATUS_CODES: dict[type, int] = {
    InvalidChunk: 400,
    InvalidRequest: 422,
    SessionNotFound: 404,
    SessionAlreadyClosed: 409,
    ScoringUnavailable: 503,
}


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------


class StartSessionRequest(BaseModel):
    call_id: str
    phone_number: str | None = None
    direction: str | None = None


class TelephonySignal(BaseModel):
    state: str
    phone_number: str | None = None
    call_id: str | None = None


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app(
    service: SessionService | None = None,
    settings: Settings | None = None,
    classifier: CallStateClassifier | None = None,
) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        service:    Session service to expose. Defaults to one backed by
                    the acoustic heuristic scorer.
        settings:   Configuration. Defaults to load_settings().
        classifier: Telephony classifier. Defaults to a fresh instance.
    """
    settings = settings or (service.settings if service else load_settings())
    if service is None:
        scorer = ChunkScorer(
            AcousticHeuristicScorer(),
            timeout_seconds=settings.scoring_timeout_seconds,
            max_chunk_bytes=settings.max_chunk_bytes,
            max_total_chunks=settings.max_total_chunks,
        )
        service = SessionService(scorer, settings=settings)
    if settings.webhook_url:
        service.subscribe(WebhookNotifier(settings.webhook_url))

    @contextlib.asynccontextmanager
    async def lifespan(app: FastAPI):
        # Fresh channel per lifespan; the previous one was closed on shutdown
        channel = CallEventChannel()
        app.state.channel = channel
        subscription = channel.subscribe()
        consumer = asyncio.create_task(service.coordinator.run(subscription))
        evictor = asyncio.create_task(service.run_eviction())
        logger.info("SCAI session engine started.")
        try:
            yield
        finally:
            channel.close()
            await consumer
            evictor.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await evictor
            logger.info("SCAI session engine stopped.")

    app = FastAPI(
        title="SCAI Guard",
        description="Live call fraud-risk session engine.",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.service = service
    app.state.classifier = classifier or CallStateClassifier()
    app.state.channel = CallEventChannel()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ScaiError)
    async def scai_error_handler(request: Request, exc: ScaiError):
        status = _STATUS_CODES.get(type(exc), 500)
        if status >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        else:
            logger.info("%s %s rejected: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=status, content=exc.to_dict())

    _register_routes(app)
    return app


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------


def _register_routes(app: FastAPI) -> None:

    @app.get("/health")
    async def health():
        return {"status": "OK", "timestamp": _now(), "server": SERVER_NAME}

    @app.post("/api/v1/telephony/signal")
    async def telephony_signal(signal: TelephonySignal, request: Request):
        """Classify a raw device call state and publish any resulting event."""
        classifier: CallStateClassifier = request.app.state.classifier
        try:
            event = classifier.handle(signal.state, signal.phone_number, signal.call_id)
        except ValueError as exc:
            raise InvalidRequest(signal.call_id or None, str(exc))

        if event is None:
            return {"event": None, "timestamp": _now()}

        request.app.state.channel.publish(event)
        return {"event": event.to_dict(), "timestamp": _now()}

    @app.post("/api/v1/sessions")
    async def start_session(body: StartSessionRequest, request: Request):
        service: SessionService = request.app.state.service
        try:
            session = await service.start_session(body.call_id, body.phone_number, body.direction)
        except ValueError as exc:
            raise InvalidRequest(body.call_id or None, str(exc))
        return {"success": True, "session": session.to_dict(), "timestamp": _now()}

    @app.get("/api/v1/sessions")
    async def list_sessions(request: Request, limit: int | None = None, scam_only: bool = False):
        service: SessionService = request.app.state.service
        sessions = service.list_sessions(limit=limit, scam_only=scam_only)
        return {
            "success": True,
            "sessions": [s.to_dict() for s in sessions],
            "total": len(service.registry),
            "timestamp": _now(),
        }

    @app.get("/api/v1/sessions/{call_id}")
    async def get_session(call_id: str, request: Request):
        session = request.app.state.service.get_session(call_id)
        return {"success": True, "session": session.to_dict(), "timestamp": _now()}

    @app.post("/api/v1/sessions/{call_id}/chunks")
    async def ingest_chunk(
        call_id: str,
        request: Request,
        sequence_number: int = Form(...),
        total_chunks: int | None = Form(None),
        audio: UploadFile = File(...),
    ):
        """
        Score one uploaded audio chunk and merge it into the call's session.

        A chunk for a closed session is answered with 200 and a warning.
        """
        service: SessionService = request.app.state.service
        try:
            audio_bytes = await audio.read()
        except Exception:
            raise InvalidChunk(call_id, "Failed to read uploaded chunk.")

        logger.info(
            "Chunk received: %s seq=%d (%.2f KB)",
            call_id, sequence_number, len(audio_bytes) / 1024,
        )

        result = await service.ingest_chunk(call_id, sequence_number, audio_bytes, total_chunks)
        return {"success": True, **result.to_dict(), "timestamp": _now()}

    @app.post("/api/v1/sessions/{call_id}/stop")
    async def stop_session(call_id: str, request: Request):
        session = await request.app.state.service.stop_session(call_id)
        return {"success": True, "session": session.to_dict(), "timestamp": _now()}

    @app.get("/api/v1/sessions/{call_id}/audit")
    async def audit_log(call_id: str, request: Request):
        entries = request.app.state.service.audit_entries(call_id)
        return {
            "success": True,
            "entries": [e.to_dict() for e in entries],
            "timestamp": _now(),
        }


app = create_app()
