from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from tutor_studio.config import Settings
from tutor_studio.orchestrator import SessionOrchestrator


@pytest.fixture
def settings() -> Settings:
    return Settings(
        api_key="test-key",
        video_poll_seconds=5.0,
        video_deadline_seconds=600.0,
        transcribe_delay_seconds=0.0,
    )


@pytest.fixture
def genai_client() -> MagicMock:
    client = MagicMock()
    client.aio.models.generate_content = AsyncMock()
    client.aio.models.generate_videos = AsyncMock()
    client.aio.operations.get = AsyncMock()
    client.aio.chats.create = MagicMock()
    client.aio.live.connect = MagicMock()
    return client


@pytest.fixture
def gateway() -> MagicMock:
    gw = MagicMock()
    gw.generate_lesson = AsyncMock(return_value="# Lesson")
    gw.analyze_code = AsyncMock()
    gw.generate_concept_image = AsyncMock(return_value=None)
    gw.edit_concept_image = AsyncMock(return_value=None)
    gw.generate_concept_video = AsyncMock(return_value=None)
    gw.connect_voice_tutor = AsyncMock()
    return gw


@pytest.fixture
def tutor_chat() -> MagicMock:
    chat = MagicMock()
    chat.send = AsyncMock(return_value="Sure, here is how.")
    chat.close = MagicMock()
    return chat


@pytest.fixture
def orchestrator(gateway: MagicMock, tutor_chat: MagicMock) -> SessionOrchestrator:
    return SessionOrchestrator("s1", gateway, tutor_chat, transcribe_delay=2.0, sleep=AsyncMock())
