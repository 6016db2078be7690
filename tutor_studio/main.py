from __future__ import annotations

import contextlib
import logging
from collections.abc import AsyncIterator
from typing import Any

from fastapi import Depends, FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from fastapi.websockets import WebSocketState

from tutor_studio.config import Settings
from tutor_studio.errors import FlowInProgress, RemoteError, SessionClosed
from tutor_studio.gemini_client import GeminiClient
from tutor_studio.memory import SessionStore
from tutor_studio.orchestrator import SessionOrchestrator
from tutor_studio.prompts import DEFAULT_TOPIC, QUICK_TOPICS
from tutor_studio.schemas import (
    ChatInputRequest,
    ChatSendRequest,
    CodeRequest,
    EditIllustrationRequest,
    LessonRequest,
    SessionSnapshot,
    TopicsResponse,
    ViewRequest,
)
from tutor_studio.voice import VoiceHandlers


logger = logging.getLogger(__name__)


def _snapshot(orch: SessionOrchestrator) -> SessionSnapshot:
    snap = orch.snapshot()
    if snap.conceptVideoId:
        snap.conceptVideoUrl = f"/sessions/{orch.session_id}/video?v={snap.conceptVideoId}"
    return snap


async def _session(session_id: str, request: Request) -> SessionOrchestrator:
    orch = await request.app.state.store.get(session_id)
    if orch is None:
        raise HTTPException(status_code=404, detail="Unknown session")
    return orch


def create_app(settings: Settings | None = None, gateway: GeminiClient | None = None) -> FastAPI:
    """
    Builds the API. Without arguments, settings come from the environment and a missing
    API key stops startup here.
    """
    settings = settings or Settings.from_env()
    gateway = gateway or GeminiClient(settings)

    def new_session(session_id: str) -> SessionOrchestrator:
        return SessionOrchestrator(
            session_id,
            gateway,
            gateway.create_tutor_chat(),
            transcribe_delay=settings.transcribe_delay_seconds,
        )

    store = SessionStore(new_session, ttl_seconds=settings.session_ttl_seconds)

    @contextlib.asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        yield
        await store.aclose()

    app = FastAPI(title="Tutor Studio API", version="0.1.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.store = store

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(FlowInProgress)
    async def _flow_in_progress(request: Request, exc: FlowInProgress) -> JSONResponse:
        return JSONResponse(status_code=409, content={"detail": str(exc), "flow": exc.flow})

    @app.get("/")
    def root() -> dict:
        return {
            "ok": True,
            "service": "tutor-studio",
            "views": ["lessons", "playground", "chat", "voice"],
            "docs": "/docs",
        }

    @app.get("/health")
    def health() -> dict:
        return {"ok": True}

    @app.get("/topics", response_model=TopicsResponse)
    def topics() -> TopicsResponse:
        return TopicsResponse(default=DEFAULT_TOPIC, quickTopics=QUICK_TOPICS)

    @app.post("/sessions", response_model=SessionSnapshot, status_code=201)
    async def create_session() -> SessionSnapshot:
        orch = await store.create()
        orch.start()
        logger.info("Session %s created", orch.session_id)
        return _snapshot(orch)

    @app.get("/sessions/{session_id}", response_model=SessionSnapshot)
    async def get_session(orch: SessionOrchestrator = Depends(_session)) -> SessionSnapshot:
        return _snapshot(orch)

    @app.delete("/sessions/{session_id}", status_code=204)
    async def delete_session(session_id: str) -> Response:
        if not await store.delete(session_id):
            raise HTTPException(status_code=404, detail="Unknown session")
        return Response(status_code=204)

    @app.post("/sessions/{session_id}/view", response_model=SessionSnapshot)
    async def select_view(req: ViewRequest, orch: SessionOrchestrator = Depends(_session)) -> SessionSnapshot:
        orch.select_view(req.view)
        return _snapshot(orch)

    @app.post("/sessions/{session_id}/lesson", response_model=SessionSnapshot)
    async def generate_lesson(req: LessonRequest, orch: SessionOrchestrator = Depends(_session)) -> SessionSnapshot:
        await orch.generate_lesson(req.topic)
        return _snapshot(orch)

    @app.post("/sessions/{session_id}/illustration", response_model=SessionSnapshot)
    async def generate_illustration(orch: SessionOrchestrator = Depends(_session)) -> SessionSnapshot:
        await orch.generate_illustration()
        return _snapshot(orch)

    @app.post("/sessions/{session_id}/illustration/edit", response_model=SessionSnapshot)
    async def edit_illustration(
        req: EditIllustrationRequest, orch: SessionOrchestrator = Depends(_session)
    ) -> SessionSnapshot:
        await orch.edit_illustration(req.instruction)
        return _snapshot(orch)

    @app.post("/sessions/{session_id}/video", response_model=SessionSnapshot, status_code=202)
    async def start_video(orch: SessionOrchestrator = Depends(_session)) -> SessionSnapshot:
        orch.start_video()
        return _snapshot(orch)

    @app.post("/sessions/{session_id}/video/cancel", response_model=SessionSnapshot)
    async def cancel_video(orch: SessionOrchestrator = Depends(_session)) -> SessionSnapshot:
        orch.cancel_video()
        return _snapshot(orch)

    @app.get("/sessions/{session_id}/video")
    async def get_video(orch: SessionOrchestrator = Depends(_session)) -> Response:
        clip = orch.state.concept_video
        if clip is None:
            raise HTTPException(status_code=404, detail="No video generated yet")
        return Response(content=clip.data, media_type=clip.mime_type)

    @app.put("/sessions/{session_id}/code", response_model=SessionSnapshot)
    async def set_code(req: CodeRequest, orch: SessionOrchestrator = Depends(_session)) -> SessionSnapshot:
        orch.set_code(req.code)
        return _snapshot(orch)

    @app.post("/sessions/{session_id}/analysis", response_model=SessionSnapshot)
    async def analyze_code(orch: SessionOrchestrator = Depends(_session)) -> SessionSnapshot:
        await orch.analyze_code()
        return _snapshot(orch)

    @app.put("/sessions/{session_id}/chat/input", response_model=SessionSnapshot)
    async def set_chat_input(req: ChatInputRequest, orch: SessionOrchestrator = Depends(_session)) -> SessionSnapshot:
        orch.set_chat_input(req.text)
        return _snapshot(orch)

    @app.post("/sessions/{session_id}/chat", response_model=SessionSnapshot)
    async def send_chat(req: ChatSendRequest, orch: SessionOrchestrator = Depends(_session)) -> SessionSnapshot:
        await orch.send_chat(req.message)
        return _snapshot(orch)

    @app.post("/sessions/{session_id}/chat/transcribe", response_model=SessionSnapshot)
    async def transcribe(orch: SessionOrchestrator = Depends(_session)) -> SessionSnapshot:
        await orch.transcribe()
        return _snapshot(orch)

    @app.websocket("/sessions/{session_id}/voice")
    async def voice(websocket: WebSocket, session_id: str) -> None:
        """
        Binary frames carry 16 kHz PCM from the browser; text frames are sent as typed turns.
        Audio from the tutor comes back as binary frames, lifecycle events as JSON.
        """
        orch = await store.get(session_id)
        if orch is None:
            await websocket.close(code=4404)
            return
        await websocket.accept()

        def live() -> bool:
            return (
                websocket.client_state == WebSocketState.CONNECTED
                and websocket.application_state == WebSocketState.CONNECTED
            )

        async def send_event(event: str, **extra: Any) -> None:
            if live():
                await websocket.send_json({"event": event, **extra})

        async def on_message(message: Any) -> None:
            if not live():
                return
            if message.data:
                await websocket.send_bytes(message.data)
            content = message.server_content
            if content is not None and content.turn_complete:
                await send_event("turn_complete")

        handlers = VoiceHandlers(
            on_message=on_message,
            on_open=lambda: send_event("open"),
            on_error=lambda e: send_event("error", detail=str(e)),
            on_close=lambda: send_event("close"),
        )

        try:
            session = await orch.open_voice(handlers)
        except RemoteError as e:
            logger.warning("Voice connect failed for session %s: %s", session_id, e)
            await websocket.close(code=1011)
            return

        try:
            while True:
                frame = await websocket.receive()
                if frame["type"] == "websocket.disconnect":
                    break
                if frame.get("bytes"):
                    await session.send_audio(frame["bytes"])
                elif frame.get("text"):
                    await session.send_text(frame["text"])
        except WebSocketDisconnect:
            pass
        except (RemoteError, SessionClosed) as e:
            logger.warning("Voice session %s ended: %s", session_id, e)
        finally:
            await orch.close_voice()
            if live():
                await websocket.close()

    return app
