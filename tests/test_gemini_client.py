from __future__ import annotations

import asyncio
import base64
import json
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from google.genai import errors as genai_errors
from google.genai import types

from fakes import FakeLiveSession, fake_connect, image_response, text_response, video_operation
from tutor_studio.config import Settings
from tutor_studio.errors import (
    MalformedInput,
    OperationCancelled,
    OperationTimeout,
    RemoteError,
    SchemaViolation,
    SessionClosed,
)
from tutor_studio.gemini_client import GeminiClient
from tutor_studio.prompts import CHAT_FALLBACK_REPLY, TUTOR_SYSTEM, VOICE_SYSTEM
from tutor_studio.voice import VoiceHandlers


def _quota_error() -> genai_errors.ClientError:
    return genai_errors.ClientError(
        429, {"error": {"code": 429, "message": "Quota exceeded", "status": "RESOURCE_EXHAUSTED"}}
    )


@pytest.fixture
def client(settings, genai_client) -> GeminiClient:
    return GeminiClient(settings, client=genai_client, sleep=AsyncMock())


# -- analyze_code ----------------------------------------------------------


async def test_analyze_code_parses_all_fields(client, genai_client):
    payload = {
        "explanation": "Builds a list of the numbers 0-9.",
        "bugs": [],
        "improvements": ["Use list(range(10)) instead."],
        "output": "",
    }
    genai_client.aio.models.generate_content.return_value = text_response(json.dumps(payload))

    result = await client.analyze_code("x = [i for i in range(10)]")

    assert result.explanation == "Builds a list of the numbers 0-9."
    assert result.bugs == []
    assert result.improvements == ["Use list(range(10)) instead."]
    assert result.simulatedOutput == ""


async def test_analyze_code_request_shape(client, genai_client, settings):
    payload = {"explanation": "e", "bugs": ["b"], "improvements": [], "output": "1"}
    genai_client.aio.models.generate_content.return_value = text_response(json.dumps(payload))

    await client.analyze_code("print(1)")

    kwargs = genai_client.aio.models.generate_content.await_args.kwargs
    assert kwargs["model"] == settings.reasoning_model
    prompt = kwargs["contents"][0].parts[0].text
    assert "```python\nprint(1)\n```" in prompt
    config = kwargs["config"]
    assert config.response_mime_type == "application/json"
    assert config.thinking_config.thinking_level == types.ThinkingLevel.HIGH


@pytest.mark.parametrize(
    "raw",
    [
        '{"explanation": "e", "bugs": [], "improvements": []}',
        '{"explanation": "e", "bugs": "none", "improvements": [], "output": ""}',
        '{"explanation": 3, "bugs": [], "improvements": [], "output": ""}',
        "not json at all",
        "",
    ],
)
async def test_analyze_code_rejects_partial_or_invalid_payloads(client, genai_client, raw):
    genai_client.aio.models.generate_content.return_value = text_response(raw)

    with pytest.raises(SchemaViolation):
        await client.analyze_code("print(1)")


async def test_analyze_code_wraps_api_errors(client, genai_client):
    genai_client.aio.models.generate_content.side_effect = _quota_error()

    with pytest.raises(RemoteError) as exc_info:
        await client.analyze_code("print(1)")
    assert exc_info.value.details["code"] == 429


@pytest.mark.parametrize("error", [ConnectionResetError("reset by peer"), asyncio.TimeoutError()])
async def test_generate_wraps_transport_errors(client, genai_client, error):
    genai_client.aio.models.generate_content.side_effect = error

    with pytest.raises(RemoteError) as exc_info:
        await client.generate_lesson("Loops")
    assert exc_info.value.__cause__ is error


# -- generate_lesson -------------------------------------------------------


async def test_generate_lesson_returns_text_with_search(client, genai_client, settings):
    genai_client.aio.models.generate_content.return_value = text_response("# Loops\nUse `for`.")

    lesson = await client.generate_lesson("Loops")

    assert lesson == "# Loops\nUse `for`."
    kwargs = genai_client.aio.models.generate_content.await_args.kwargs
    assert kwargs["model"] == settings.text_model
    assert "Loops" in kwargs["contents"]
    assert kwargs["config"].tools[0].google_search is not None


async def test_generate_lesson_without_search(genai_client):
    settings = Settings(api_key="k", lesson_search=False)
    client = GeminiClient(settings, client=genai_client)
    genai_client.aio.models.generate_content.return_value = text_response("lesson")

    await client.generate_lesson("Loops")

    assert genai_client.aio.models.generate_content.await_args.kwargs["config"].tools is None


async def test_generate_lesson_passes_empty_response_through(client, genai_client):
    genai_client.aio.models.generate_content.return_value = text_response(None)

    assert await client.generate_lesson("Loops") == ""


# -- images ----------------------------------------------------------------


async def test_generate_concept_image_returns_first_inline_part(client, genai_client):
    genai_client.aio.models.generate_content.return_value = image_response(b"\x89PNG-bytes")

    image = await client.generate_concept_image("Loops")

    assert image == "data:image/png;base64," + base64.b64encode(b"\x89PNG-bytes").decode("ascii")
    config = genai_client.aio.models.generate_content.await_args.kwargs["config"]
    assert config.image_config.aspect_ratio == "16:9"
    assert config.image_config.image_size == "1K"


async def test_generate_concept_image_without_image_part(client, genai_client):
    genai_client.aio.models.generate_content.return_value = image_response(None)

    assert await client.generate_concept_image("Loops") is None


async def test_generate_concept_image_without_candidates(client, genai_client):
    genai_client.aio.models.generate_content.return_value = types.GenerateContentResponse(candidates=[])

    assert await client.generate_concept_image("Loops") is None


async def test_edit_concept_image_sends_bytes_and_instruction(client, genai_client, settings):
    existing = "data:image/png;base64," + base64.b64encode(b"old").decode("ascii")
    genai_client.aio.models.generate_content.return_value = image_response(b"new", "image/jpeg")

    edited = await client.edit_concept_image(existing, "Add a retro filter")

    assert edited == "data:image/jpeg;base64," + base64.b64encode(b"new").decode("ascii")
    kwargs = genai_client.aio.models.generate_content.await_args.kwargs
    assert kwargs["model"] == settings.image_edit_model
    parts = kwargs["contents"][0].parts
    assert parts[0].inline_data.data == b"old"
    assert parts[0].inline_data.mime_type == "image/png"
    assert parts[1].text == "Add a retro filter"


async def test_edit_concept_image_rejects_malformed_input(client, genai_client):
    with pytest.raises(MalformedInput):
        await client.edit_concept_image("data:image/png;base64no-delimiter", "Add a retro filter")

    genai_client.aio.models.generate_content.assert_not_awaited()


# -- video -----------------------------------------------------------------


def _video_client(settings, genai_client, handler) -> tuple[GeminiClient, AsyncMock, httpx.AsyncClient]:
    sleep = AsyncMock()
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return GeminiClient(settings, client=genai_client, http_client=http, sleep=sleep), sleep, http


async def test_video_polls_until_done_then_downloads(settings, genai_client):
    events: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        events.append("fetch")
        assert request.headers["x-goog-api-key"] == "test-key"
        return httpx.Response(200, content=b"mp4-bytes", headers={"content-type": "video/mp4"})

    client, sleep, http = _video_client(settings, genai_client, handler)
    sleep.side_effect = lambda seconds: events.append(f"sleep:{seconds}")
    genai_client.aio.models.generate_videos.return_value = video_operation(False)
    genai_client.aio.operations.get.side_effect = [
        video_operation(False),
        video_operation(True, "https://generativelanguage.googleapis.com/v1beta/files/abc:download"),
    ]

    async with http:
        clip = await client.generate_concept_video("Loops")

    assert events == ["sleep:5.0", "sleep:5.0", "fetch"]
    assert genai_client.aio.operations.get.await_count == 2
    assert clip is not None
    assert clip.data == b"mp4-bytes"
    assert clip.mime_type == "video/mp4"
    config = genai_client.aio.models.generate_videos.await_args.kwargs["config"]
    assert config.number_of_videos == 1
    assert config.resolution == "720p"
    assert config.aspect_ratio == "16:9"


async def test_video_without_download_reference_returns_none(settings, genai_client):
    handler = MagicMock()
    client, sleep, http = _video_client(settings, genai_client, handler)
    genai_client.aio.models.generate_videos.return_value = video_operation(True)

    async with http:
        assert await client.generate_concept_video("Loops") is None
    sleep.assert_not_awaited()
    handler.assert_not_called()


async def test_video_operation_error_is_remote_error(settings, genai_client):
    client, _, http = _video_client(settings, genai_client, MagicMock())
    genai_client.aio.models.generate_videos.return_value = video_operation(True, error={"message": "blocked"})

    async with http:
        with pytest.raises(RemoteError):
            await client.generate_concept_video("Loops")


async def test_video_download_failure_is_remote_error(settings, genai_client):
    client, _, http = _video_client(settings, genai_client, lambda request: httpx.Response(403))
    genai_client.aio.models.generate_videos.return_value = video_operation(True, "https://example.com/v.mp4")

    async with http:
        with pytest.raises(RemoteError):
            await client.generate_concept_video("Loops")


async def test_video_start_failure_is_remote_error(client, genai_client):
    genai_client.aio.models.generate_videos.side_effect = _quota_error()

    with pytest.raises(RemoteError):
        await client.generate_concept_video("Loops")


async def test_video_deadline_stops_polling(client, genai_client):
    genai_client.aio.models.generate_videos.return_value = video_operation(False)

    with pytest.raises(OperationTimeout):
        await client.generate_concept_video("Loops", deadline_seconds=0.0)
    genai_client.aio.operations.get.assert_not_awaited()


async def test_video_cancel_during_wait(settings, genai_client):
    cancel = asyncio.Event()
    client, sleep, http = _video_client(settings, genai_client, MagicMock())
    sleep.side_effect = lambda seconds: cancel.set()
    genai_client.aio.models.generate_videos.return_value = video_operation(False)

    async with http:
        with pytest.raises(OperationCancelled):
            await client.generate_concept_video("Loops", cancel=cancel)
    sleep.assert_awaited_once()
    genai_client.aio.operations.get.assert_not_awaited()


# -- chat ------------------------------------------------------------------


async def test_tutor_chat_is_created_with_persona(client, genai_client, settings):
    client.create_tutor_chat()

    kwargs = genai_client.aio.chats.create.call_args.kwargs
    assert kwargs["model"] == settings.reasoning_model
    assert kwargs["config"].system_instruction == TUTOR_SYSTEM
    assert kwargs["config"].thinking_config.thinking_level == types.ThinkingLevel.HIGH


async def test_tutor_chat_send_returns_reply(client, genai_client):
    remote = MagicMock()
    remote.send_message = AsyncMock(return_value=text_response("A list comprehension is..."))
    genai_client.aio.chats.create.return_value = remote
    chat = client.create_tutor_chat()

    reply = await chat.send("What is a list comprehension?")

    assert reply == "A list comprehension is..."
    remote.send_message.assert_awaited_once_with("What is a list comprehension?")


async def test_tutor_chat_falls_back_when_reply_has_no_text(client, genai_client):
    remote = MagicMock()
    remote.send_message = AsyncMock(return_value=text_response(None))
    genai_client.aio.chats.create.return_value = remote

    assert await client.create_tutor_chat().send("hi") == CHAT_FALLBACK_REPLY


async def test_tutor_chat_failure_and_close(client, genai_client):
    remote = MagicMock()
    remote.send_message = AsyncMock(side_effect=_quota_error())
    genai_client.aio.chats.create.return_value = remote
    chat = client.create_tutor_chat()

    with pytest.raises(RemoteError):
        await chat.send("hi")

    chat.close()
    assert chat.closed
    with pytest.raises(SessionClosed):
        await chat.send("hi")


async def test_tutor_chat_wraps_transport_errors(client, genai_client):
    remote = MagicMock()
    remote.send_message = AsyncMock(side_effect=ConnectionRefusedError("refused"))
    genai_client.aio.chats.create.return_value = remote

    with pytest.raises(RemoteError, match="refused"):
        await client.create_tutor_chat().send("hi")


# -- voice -----------------------------------------------------------------


async def test_connect_voice_tutor_configures_audio_session(client, genai_client, settings):
    live = FakeLiveSession(block=True)
    genai_client.aio.live.connect.return_value = fake_connect(live)
    opened = MagicMock()

    session = await client.connect_voice_tutor(VoiceHandlers(on_message=MagicMock(), on_open=opened))
    try:
        kwargs = genai_client.aio.live.connect.call_args.kwargs
        assert kwargs["model"] == settings.voice_model
        config = kwargs["config"]
        assert config.response_modalities == [types.Modality.AUDIO]
        assert config.speech_config.voice_config.prebuilt_voice_config.voice_name == "Zephyr"
        assert config.system_instruction == VOICE_SYSTEM
        opened.assert_called_once()
        assert session.connected
    finally:
        await session.close()
