from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

import httpx
from google import genai
from google.genai import errors as genai_errors
from google.genai import types
from pydantic import ValidationError

from tutor_studio.config import Settings
from tutor_studio.errors import (
    OperationCancelled,
    OperationTimeout,
    RemoteError,
    SchemaViolation,
    SessionClosed,
)
from tutor_studio.media import VideoClip, decode_data_uri, encode_data_uri
from tutor_studio.prompts import (
    CHAT_FALLBACK_REPLY,
    TUTOR_SYSTEM,
    VOICE_SYSTEM,
    analyze_code_prompt,
    concept_image_prompt,
    concept_video_prompt,
    lesson_prompt,
)
from tutor_studio.schemas import CodeAnalysisResult
from tutor_studio.voice import VoiceHandlers, VoiceSession


logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[Any]]

# google-genai talks over httpx or, when installed, aiohttp; aiohttp connection and timeout
# errors subclass OSError and asyncio.TimeoutError.
_TRANSPORT_ERRORS = (httpx.HTTPError, OSError, asyncio.TimeoutError)


def _first_inline_image(resp: Any) -> str | None:
    candidates = getattr(resp, "candidates", None) or []
    if not candidates:
        return None
    content = getattr(candidates[0], "content", None)
    for part in getattr(content, "parts", None) or []:
        inline = getattr(part, "inline_data", None)
        if inline is not None and inline.data:
            return encode_data_uri(inline.data, inline.mime_type)
    return None


def _video_uri(operation: Any) -> str | None:
    response = getattr(operation, "response", None)
    videos = getattr(response, "generated_videos", None) or []
    if not videos:
        return None
    video = getattr(videos[0], "video", None)
    return getattr(video, "uri", None) or None


class TutorChat:
    """
    One conversational context with the tutor persona. The server keeps the history,
    so callers only send the new message. Created by GeminiClient.create_tutor_chat()
    and owned by whoever created it; close() disposes it.
    """

    def __init__(self, chat: Any) -> None:
        self._chat = chat
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, message: str) -> str:
        if self._closed:
            raise SessionClosed("Tutor chat is closed")
        try:
            resp = await self._chat.send_message(message)
        except genai_errors.APIError as e:
            raise RemoteError(f"Chat failed: {e}", {"code": e.code}) from e
        except _TRANSPORT_ERRORS as e:
            raise RemoteError(f"Chat failed: {e}") from e
        return (resp.text or "").strip() or CHAT_FALLBACK_REPLY

    def close(self) -> None:
        self._closed = True
        self._chat = None


class GeminiClient:
    """
    Gateway to the Gemini API: lessons, code analysis, concept media, chat and live voice.
    API key mode only; the key is also needed to download finished videos.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        client: genai.Client | None = None,
        http_client: httpx.AsyncClient | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.settings = settings
        self.client = client or genai.Client(api_key=settings.api_key)
        self._http = http_client
        self._sleep = sleep

    async def _generate(self, *, model: str, contents: Any, config: types.GenerateContentConfig | None = None):
        try:
            return await self.client.aio.models.generate_content(model=model, contents=contents, config=config)
        except genai_errors.APIError as e:
            raise RemoteError(f"Gemini call failed: {e}", {"model": model, "code": e.code}) from e
        except _TRANSPORT_ERRORS as e:
            raise RemoteError(f"Gemini call failed: {e}", {"model": model}) from e

    async def analyze_code(self, code: str) -> CodeAnalysisResult:
        resp = await self._generate(
            model=self.settings.reasoning_model,
            contents=[types.Content(role="user", parts=[types.Part(text=analyze_code_prompt(code))])],
            config=types.GenerateContentConfig(
                thinking_config=types.ThinkingConfig(thinking_level=types.ThinkingLevel.HIGH),
                response_mime_type="application/json",
                response_schema=CodeAnalysisResult,
            ),
        )
        text = (resp.text or "").strip()
        try:
            return CodeAnalysisResult.model_validate_json(text)
        except ValidationError as e:
            raise SchemaViolation(f"Analysis did not match the schema. Raw: {text[:500]}") from e

    async def generate_lesson(self, topic: str) -> str:
        tools = [types.Tool(google_search=types.GoogleSearch())] if self.settings.lesson_search else None
        resp = await self._generate(
            model=self.settings.text_model,
            contents=lesson_prompt(topic),
            config=types.GenerateContentConfig(tools=tools),
        )
        return resp.text or ""

    async def generate_concept_image(self, concept: str) -> str | None:
        resp = await self._generate(
            model=self.settings.image_model,
            contents=[types.Content(role="user", parts=[types.Part(text=concept_image_prompt(concept))])],
            config=types.GenerateContentConfig(
                image_config=types.ImageConfig(aspect_ratio="16:9", image_size="1K"),
            ),
        )
        return _first_inline_image(resp)

    async def edit_concept_image(self, existing_image: str, instruction: str) -> str | None:
        mime_type, data = decode_data_uri(existing_image)
        resp = await self._generate(
            model=self.settings.image_edit_model,
            contents=[
                types.Content(
                    role="user",
                    parts=[
                        types.Part(inline_data=types.Blob(data=data, mime_type=mime_type)),
                        types.Part(text=instruction),
                    ],
                )
            ],
        )
        return _first_inline_image(resp)

    async def generate_concept_video(
        self,
        concept: str,
        *,
        cancel: asyncio.Event | None = None,
        deadline_seconds: float | None = None,
    ) -> VideoClip | None:
        """
        Starts a Veo long-running operation and polls it until done.

        Each round waits the poll interval, then re-queries the operation. The loop stops
        with OperationCancelled when `cancel` is set and with OperationTimeout once
        `deadline_seconds` (default from settings) has elapsed.
        """
        loop = asyncio.get_running_loop()
        deadline = deadline_seconds if deadline_seconds is not None else self.settings.video_deadline_seconds
        started = loop.time()

        try:
            operation = await self.client.aio.models.generate_videos(
                model=self.settings.video_model,
                prompt=concept_video_prompt(concept),
                config=types.GenerateVideosConfig(number_of_videos=1, resolution="720p", aspect_ratio="16:9"),
            )
            polls = 0
            while not operation.done:
                if cancel is not None and cancel.is_set():
                    raise OperationCancelled("Video generation cancelled", {"polls": polls})
                if loop.time() - started >= deadline:
                    raise OperationTimeout("Video generation timed out", {"polls": polls, "deadline": deadline})
                await self._sleep(self.settings.video_poll_seconds)
                if cancel is not None and cancel.is_set():
                    raise OperationCancelled("Video generation cancelled", {"polls": polls})
                operation = await self.client.aio.operations.get(operation)
                polls += 1
                logger.debug("Video operation %s polled (%d), done=%s", operation.name, polls, operation.done)
        except genai_errors.APIError as e:
            raise RemoteError(f"Video generation failed: {e}", {"code": e.code}) from e
        except _TRANSPORT_ERRORS as e:
            raise RemoteError(f"Video generation failed: {e}") from e

        if operation.error:
            raise RemoteError("Video operation finished with an error", {"error": operation.error})

        uri = _video_uri(operation)
        if not uri:
            return None
        return await self._download_video(uri)

    async def _download_video(self, uri: str) -> VideoClip:
        headers = {"x-goog-api-key": self.settings.api_key}
        try:
            if self._http is not None:
                r = await self._http.get(uri, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=120, follow_redirects=True) as client:
                    r = await client.get(uri, headers=headers)
            r.raise_for_status()
        except httpx.HTTPError as e:
            raise RemoteError(f"Video download failed: {e}") from e

        mime_type = r.headers.get("content-type", "video/mp4").split(";")[0].strip() or "video/mp4"
        return VideoClip(data=r.content, mime_type=mime_type)

    def create_tutor_chat(self) -> TutorChat:
        chat = self.client.aio.chats.create(
            model=self.settings.reasoning_model,
            config=types.GenerateContentConfig(
                system_instruction=TUTOR_SYSTEM,
                thinking_config=types.ThinkingConfig(thinking_level=types.ThinkingLevel.HIGH),
            ),
        )
        return TutorChat(chat)

    async def connect_voice_tutor(self, handlers: VoiceHandlers) -> VoiceSession:
        config = types.LiveConnectConfig(
            response_modalities=[types.Modality.AUDIO],
            speech_config=types.SpeechConfig(
                voice_config=types.VoiceConfig(
                    prebuilt_voice_config=types.PrebuiltVoiceConfig(voice_name=self.settings.voice_name)
                )
            ),
            system_instruction=VOICE_SYSTEM,
        )
        session = VoiceSession(self.client.aio.live.connect(model=self.settings.voice_model, config=config), handlers)
        await session.open()
        return session
