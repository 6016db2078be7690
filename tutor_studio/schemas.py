from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class View(str, Enum):
    lessons = "lessons"
    playground = "playground"
    chat = "chat"
    voice = "voice"


class CodeAnalysisResult(BaseModel):
    # Strict: a payload missing a field or carrying the wrong type is rejected outright.
    model_config = ConfigDict(strict=True, populate_by_name=True)

    explanation: str = Field(..., description="A brief explanation of what the code does.")
    bugs: list[str] = Field(..., description="List of potential bugs or errors.")
    improvements: list[str] = Field(..., description="List of style or performance improvements.")
    simulatedOutput: str = Field(..., alias="output", description="Simulated output if the code were to run.")


class ChatRole(str, Enum):
    user = "user"
    model = "model"


class TurnStatus(str, Enum):
    provisional = "provisional"
    confirmed = "confirmed"
    failed = "failed"


class ChatTurn(BaseModel):
    role: ChatRole
    text: str
    status: TurnStatus = TurnStatus.confirmed


class SessionSnapshot(BaseModel):
    sessionId: str
    view: View
    topic: str
    lesson: str | None = None
    code: str
    analysis: CodeAnalysisResult | None = None
    noBugsDetected: bool = False
    chat: list[ChatTurn] = Field(default_factory=list)
    chatInput: str = ""
    conceptImage: str | None = None
    conceptVideoId: str | None = None
    conceptVideoUrl: str | None = None
    busy: bool = False
    pending: list[str] = Field(default_factory=list)
    transcribing: bool = False
    voiceConnected: bool = False


class ViewRequest(BaseModel):
    view: View


class LessonRequest(BaseModel):
    topic: str | None = Field(None, min_length=1, description="Defaults to the current topic")


class EditIllustrationRequest(BaseModel):
    instruction: str | None = Field(None, min_length=1, description="Free-text edit instruction")


class CodeRequest(BaseModel):
    code: str


class ChatInputRequest(BaseModel):
    text: str


class ChatSendRequest(BaseModel):
    message: str | None = Field(None, description="Defaults to the current chat input")


class TopicsResponse(BaseModel):
    default: str
    quickTopics: list[str]
