from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from google.genai import types

from tutor_studio.errors import RemoteError, SessionClosed


logger = logging.getLogger(__name__)

DEFAULT_INPUT_MIME = "audio/pcm;rate=16000"


@dataclass
class VoiceHandlers:
    """
    Callbacks for a live voice session. Each may be a plain function or a coroutine function.
    """

    on_message: Callable[[Any], Any]
    on_open: Callable[[], Any] | None = None
    on_error: Callable[[BaseException], Any] | None = None
    on_close: Callable[[], Any] | None = None


async def _call(fn: Callable[..., Any] | None, *args: Any) -> None:
    if fn is None:
        return
    result = fn(*args)
    if inspect.isawaitable(result):
        await result


class VoiceSession:
    """
    Handle for a bidirectional Gemini Live session.

    Inbound server messages are delivered to `handlers.on_message` from a background task
    for as long as the connection lives. The caller owns teardown and must call close().
    """

    def __init__(self, connect: contextlib.AbstractAsyncContextManager, handlers: VoiceHandlers) -> None:
        self._connect = connect
        self._handlers = handlers
        self._stack = contextlib.AsyncExitStack()
        self._session: Any = None
        self._task: asyncio.Task | None = None
        self._closed = False
        self._ended = False
        self._close_notified = False

    @property
    def connected(self) -> bool:
        return self._session is not None and not (self._closed or self._ended)

    async def open(self) -> None:
        try:
            self._session = await self._stack.enter_async_context(self._connect)
        except Exception as e:
            await _call(self._handlers.on_error, e)
            raise RemoteError(f"Voice connection failed: {e}") from e

        await _call(self._handlers.on_open)
        self._task = asyncio.create_task(self._receive_loop(), name="voice-receive")

    async def _receive_loop(self) -> None:
        try:
            # receive() stops after each completed turn; an empty pass means the stream ended.
            while not self._closed:
                received = 0
                async for message in self._session.receive():
                    received += 1
                    await _call(self._handlers.on_message, message)
                if received == 0:
                    break
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Voice session receive failed: %s", e)
            await _call(self._handlers.on_error, e)
        self._ended = True
        await self._notify_close()

    async def _notify_close(self) -> None:
        if self._close_notified:
            return
        self._close_notified = True
        await _call(self._handlers.on_close)

    async def send_audio(self, data: bytes, mime_type: str = DEFAULT_INPUT_MIME) -> None:
        if not self.connected:
            raise SessionClosed("Voice session is closed")
        try:
            await self._session.send_realtime_input(audio=types.Blob(data=data, mime_type=mime_type))
        except Exception as e:
            raise RemoteError(f"Voice send failed: {e}") from e

    async def send_text(self, text: str) -> None:
        if not self.connected:
            raise SessionClosed("Voice session is closed")
        try:
            await self._session.send_client_content(
                turns=types.Content(role="user", parts=[types.Part(text=text)]),
                turn_complete=True,
            )
        except Exception as e:
            raise RemoteError(f"Voice send failed: {e}") from e

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._task is not None and not self._task.done():
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        await self._stack.aclose()
        self._session = None
        await self._notify_close()
