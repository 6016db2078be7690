from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator, Awaitable, Callable, Coroutine
from dataclasses import dataclass, field
from typing import Any, Protocol

from tutor_studio.errors import FlowInProgress, TutorError
from tutor_studio.gemini_client import TutorChat
from tutor_studio.media import VideoClip
from tutor_studio.prompts import DEFAULT_CODE, DEFAULT_EDIT_INSTRUCTION, DEFAULT_TOPIC, SIMULATED_TRANSCRIPT
from tutor_studio.schemas import ChatRole, ChatTurn, CodeAnalysisResult, SessionSnapshot, TurnStatus, View
from tutor_studio.voice import VoiceHandlers, VoiceSession


logger = logging.getLogger(__name__)


class TutorGateway(Protocol):
    async def analyze_code(self, code: str) -> CodeAnalysisResult: ...

    async def generate_lesson(self, topic: str) -> str: ...

    async def generate_concept_image(self, concept: str) -> str | None: ...

    async def edit_concept_image(self, existing_image: str, instruction: str) -> str | None: ...

    async def generate_concept_video(
        self, concept: str, *, cancel: asyncio.Event | None = None
    ) -> VideoClip | None: ...

    async def connect_voice_tutor(self, handlers: VoiceHandlers) -> VoiceSession: ...


@dataclass
class SessionState:
    view: View = View.lessons
    topic: str = DEFAULT_TOPIC
    lesson: str | None = None
    code: str = DEFAULT_CODE
    analysis: CodeAnalysisResult | None = None
    chat: list[ChatTurn] = field(default_factory=list)
    chat_input: str = ""
    concept_image: str | None = None
    concept_video: VideoClip | None = None
    pending: set[str] = field(default_factory=set)
    transcribing: bool = False

    @property
    def busy(self) -> bool:
        return bool(self.pending)


class SessionOrchestrator:
    """
    Owns everything one learner sees and runs each user action against the gateway.

    Every flow marks itself pending before the remote call and clears the mark in a
    `finally`, so `busy` never sticks after a failure. Failures are logged and leave the
    previous state in place. A flow that is already pending rejects a second request with
    FlowInProgress; different flows may overlap.
    """

    def __init__(
        self,
        session_id: str,
        gateway: TutorGateway,
        chat: TutorChat,
        *,
        transcribe_delay: float = 2.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.session_id = session_id
        self.gateway = gateway
        self.chat = chat
        self.state = SessionState()
        self.voice: VoiceSession | None = None
        self._transcribe_delay = transcribe_delay
        self._sleep = sleep
        self._tasks: set[asyncio.Task] = set()
        self._video_cancel: asyncio.Event | None = None
        # Bumped whenever a new lesson clears the media slots; late image/video results
        # from before the bump are dropped.
        self._media_epoch = 0

    # -- flow plumbing -------------------------------------------------------

    def _claim(self, flow: str) -> None:
        if flow in self.state.pending:
            raise FlowInProgress(flow)
        self.state.pending.add(flow)

    def _claim_media(self, flow: str) -> None:
        # Media is generated for the settled topic only; a lesson in flight is about to change it.
        if "lesson" in self.state.pending:
            raise FlowInProgress("lesson")
        self._claim(flow)

    @contextlib.asynccontextmanager
    async def _flow(self, flow: str, *, claimed: bool = False) -> AsyncIterator[None]:
        if not claimed:
            self._claim(flow)
        try:
            yield
        except TutorError as e:
            logger.warning("Flow %s failed for session %s: %s", flow, self.session_id, e)
        except Exception:
            logger.exception("Flow %s failed for session %s", flow, self.session_id)
        finally:
            self.state.pending.discard(flow)

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # -- views ---------------------------------------------------------------

    def start(self) -> asyncio.Task | None:
        """
        Called once when the session is created. Sessions open on the lessons view, so this
        starts the first lesson in the background.
        """
        return self._enter_view()

    def select_view(self, view: View) -> asyncio.Task | None:
        """
        Switches the active view. Entering the lessons view with no lesson yet starts the
        lesson flow in the background and returns its task.
        """
        self.state.view = view
        return self._enter_view()

    def _enter_view(self) -> asyncio.Task | None:
        if self.state.view is View.lessons and self.state.lesson is None and "lesson" not in self.state.pending:
            self._claim("lesson")
            return self._spawn(self._lesson_flow(self.state.topic, claimed=True))
        return None

    # -- lessons & media -----------------------------------------------------

    async def generate_lesson(self, topic: str | None = None) -> None:
        await self._lesson_flow(topic or self.state.topic)

    async def _lesson_flow(self, topic: str, *, claimed: bool = False) -> None:
        async with self._flow("lesson", claimed=claimed):
            self.state.concept_image = None
            self.state.concept_video = None
            self._media_epoch += 1
            lesson = await self.gateway.generate_lesson(topic)
            self.state.lesson = lesson
            self.state.topic = topic
            logger.info("Lesson ready for session %s: %s (%d chars)", self.session_id, topic, len(lesson))

    async def generate_illustration(self) -> None:
        self._claim_media("illustration")
        async with self._flow("illustration", claimed=True):
            epoch = self._media_epoch
            image = await self.gateway.generate_concept_image(self.state.topic)
            if epoch != self._media_epoch:
                logger.info("Dropping stale illustration for session %s", self.session_id)
                return
            self.state.concept_image = image

    async def edit_illustration(self, instruction: str | None = None) -> None:
        if self.state.concept_image is None:
            return
        self._claim_media("illustration")
        async with self._flow("illustration", claimed=True):
            epoch = self._media_epoch
            image = await self.gateway.edit_concept_image(
                self.state.concept_image, instruction or DEFAULT_EDIT_INSTRUCTION
            )
            if epoch != self._media_epoch:
                logger.info("Dropping stale illustration edit for session %s", self.session_id)
                return
            self.state.concept_image = image

    async def generate_video(self) -> None:
        self._claim_media("video")
        await self._video_flow()

    def start_video(self) -> asyncio.Task:
        """
        Runs the video flow in its own task; the poll loop can take minutes.
        """
        self._claim_media("video")
        return self._spawn(self._video_flow())

    def cancel_video(self) -> bool:
        if "video" not in self.state.pending or self._video_cancel is None:
            return False
        self._video_cancel.set()
        return True

    async def _video_flow(self) -> None:
        async with self._flow("video", claimed=True):
            self._video_cancel = asyncio.Event()
            epoch = self._media_epoch
            try:
                clip = await self.gateway.generate_concept_video(self.state.topic, cancel=self._video_cancel)
            finally:
                self._video_cancel = None
            if epoch != self._media_epoch:
                logger.info("Dropping stale video for session %s", self.session_id)
                return
            self.state.concept_video = clip

    # -- playground ----------------------------------------------------------

    def set_code(self, code: str) -> None:
        self.state.code = code

    async def analyze_code(self) -> None:
        async with self._flow("analysis"):
            self.state.analysis = await self.gateway.analyze_code(self.state.code)

    # -- chat ----------------------------------------------------------------

    def set_chat_input(self, text: str) -> None:
        self.state.chat_input = text

    async def send_chat(self, message: str | None = None) -> ChatTurn | None:
        """
        Appends the user's turn as provisional before the call, then confirms it and
        appends the reply, or marks it failed. The user's turn is never removed.
        """
        text = self.state.chat_input if message is None else message
        if not text.strip():
            return None

        self._claim("chat")
        turn = ChatTurn(role=ChatRole.user, text=text, status=TurnStatus.provisional)
        self.state.chat.append(turn)
        self.state.chat_input = ""

        async with self._flow("chat", claimed=True):
            delivered = False
            try:
                reply = await self.chat.send(text)
                delivered = True
            finally:
                turn.status = TurnStatus.confirmed if delivered else TurnStatus.failed
            self.state.chat.append(ChatTurn(role=ChatRole.model, text=reply))
        return turn

    async def transcribe(self) -> None:
        # Simulated speech-to-text: no audio is captured.
        if self.state.transcribing:
            raise FlowInProgress("transcribe")
        self.state.transcribing = True
        try:
            await self._sleep(self._transcribe_delay)
            self.state.chat_input = SIMULATED_TRANSCRIPT
        finally:
            self.state.transcribing = False

    # -- voice ---------------------------------------------------------------

    async def open_voice(self, handlers: VoiceHandlers) -> VoiceSession:
        await self.close_voice()
        self.voice = await self.gateway.connect_voice_tutor(handlers)
        return self.voice

    async def close_voice(self) -> None:
        voice, self.voice = self.voice, None
        if voice is not None:
            await voice.close()

    # -- lifecycle -----------------------------------------------------------

    def snapshot(self) -> SessionSnapshot:
        s = self.state
        return SessionSnapshot(
            sessionId=self.session_id,
            view=s.view,
            topic=s.topic,
            lesson=s.lesson,
            code=s.code,
            analysis=s.analysis,
            noBugsDetected=s.analysis is not None and not s.analysis.bugs,
            chat=[turn.model_copy() for turn in s.chat],
            chatInput=s.chat_input,
            conceptImage=s.concept_image,
            conceptVideoId=s.concept_video.id if s.concept_video else None,
            busy=s.busy,
            pending=sorted(s.pending),
            transcribing=s.transcribing,
            voiceConnected=self.voice is not None and self.voice.connected,
        )

    async def aclose(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        for task in list(self._tasks):
            with contextlib.suppress(asyncio.CancelledError):
                await task
        await self.close_voice()
        self.chat.close()
