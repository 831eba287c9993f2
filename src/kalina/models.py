# kalina: Centralized Pydantic v2 models for conversations, memory, plans and the strict JSON payloads requested from the model.
# Persisted records ignore unknown keys so older stored data keeps loading; model-facing schemas forbid extras to keep responses strict.

from __future__ import annotations

import time
import uuid
from enum import Enum
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def new_id() -> str:
    """Return a fresh random identifier for messages, conversations and snippets."""
    return str(uuid.uuid4())


class CustomBaseModel(BaseModel):
    """Pydantic base model configured to forbid unknown fields for strict validation."""
    model_config = ConfigDict(extra="forbid")


class Record(BaseModel):
    """Base for persisted records; unknown keys from older stores are dropped."""
    model_config = ConfigDict(extra="ignore")


# -----------------------------
# Conversation records
# -----------------------------

MessageRole = Literal["user", "model"]


class Attachment(Record):
    base64: str
    mime_type: str


class FileAttachment(Attachment):
    name: str = "file"


class Citation(Record):
    """A web source attached to a streamed response chunk."""
    uri: str
    title: str = ""


class ThoughtStep(Record):
    phase: str = ""
    step: str = ""
    concise_step: str = ""


class UsageCounts(Record):
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None


class Message(Record):
    """
    One chat message. The placeholder model message of a turn is mutated in place
    (by copy) as planning, streaming and background jobs progress.

    is_planning, is_generating_image and is_editing_image are mutually exclusive
    transient flags.
    """
    id: str = Field(default_factory=new_id)
    role: MessageRole
    content: str = ""
    image: Optional[Attachment] = None
    file: Optional[FileAttachment] = None
    sources: Optional[List[Citation]] = None
    thoughts: Optional[List[ThoughtStep]] = None
    thinking_duration: Optional[float] = None
    is_planning: bool = False
    is_generating_image: bool = False
    is_editing_image: bool = False
    generated_images: Optional[List[str]] = None
    image_generation_count: Optional[int] = None
    aspect_ratio: Optional[str] = None
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None
    memory_updated: bool = False

    def update(self, **changes) -> "Message":
        """Return a copy of this message with the given fields replaced."""
        return self.model_copy(update=changes)


class Conversation(Record):
    id: str = Field(default_factory=new_id)
    title: str = "New Chat"
    messages: List[Message] = Field(default_factory=list)
    summary: Optional[str] = None
    is_pinned: bool = False
    is_generating_title: bool = False
    created_at: float = Field(default_factory=time.time)

    def update(self, **changes) -> "Conversation":
        """Return a copy of this conversation with the given fields replaced."""
        return self.model_copy(update=changes)


class CodeSnippet(Record):
    id: str = Field(default_factory=new_id)
    language: str = "text"
    code: str
    description: str = ""


# -----------------------------
# Planning
# -----------------------------

class Tool(str, Enum):
    smart = "smart"
    web_search = "web_search"
    thinking = "thinking"
    image_generation = "image_generation"


class Plan(Record):
    """Routing decision produced per turn. Never persisted."""
    needs_web_search: bool = False
    needs_thinking: bool = False
    needs_code_context: bool = False
    is_image_generation_request: bool = False
    is_image_edit_request: bool = False
    thoughts: List[ThoughtStep] = Field(default_factory=list)


class ResolvedPlan(Record):
    """The plan after the user's pinned tool has been applied."""
    web_search: bool = False
    thinking: bool = False
    code_context: bool = False
    image_generation: bool = False
    image_edit: bool = False
    thoughts: List[ThoughtStep] = Field(default_factory=list)


AspectRatio = Literal["1:1", "16:9", "9:16", "4:3", "3:4"]


class ImageGenerationOptions(CustomBaseModel):
    count: int = Field(1, ge=1, le=4)
    aspect_ratio: AspectRatio = "1:1"


class ChatModel(CustomBaseModel):
    id: str
    name: str


# kalina: Selectable chat models; the display name doubles as the persona name in the system prompt.
CHAT_MODELS: List[ChatModel] = [
    ChatModel(id="gpt-5-mini", name="Kalina Flash"),
    ChatModel(id="gpt-5", name="Kalina Pro"),
]

DEFAULT_PERSONA_NAME = "Kalina AI"


def persona_name(model_id: str) -> str:
    """Return the display name for a chat model id (falls back to the default persona)."""
    for m in CHAT_MODELS:
        if m.id == model_id:
            return m.name
    return DEFAULT_PERSONA_NAME


class AppError(CustomBaseModel):
    """Short, user-facing error for banner display."""
    message: str
    is_api_key_error: bool = False


# -----------------------------
# Strict model-facing response schemas
# -----------------------------

class ThoughtStepResponse(CustomBaseModel):
    phase: str = Field(..., description="The phase of the process (e.g., 'Analysis', 'Planning', 'Finalizing').")
    step: str = Field(..., description="The detailed description of the thought process step.")
    concise_step: str = Field(..., description="A 3-5 word summary of the step; the last one ends with '-ing'.")


class PlanResponse(CustomBaseModel):
    needs_web_search: bool = Field(..., description="Query needs up-to-date or verifiable web information.")
    needs_thinking: bool = Field(..., description="True for complex tasks, false for simple conversational turns.")
    needs_code_context: bool = Field(..., description="Prompt references code discussed earlier.")
    is_image_generation_request: bool = Field(..., description="Explicit request to create an image and no image attached.")
    is_image_edit_request: bool = Field(..., description="Image attached and the user asks to change it.")
    thoughts: List[ThoughtStepResponse] = Field(default_factory=list, description="Step-by-step plan when needs_thinking is true.")


class MemoryResponse(CustomBaseModel):
    new_memories: List[str] = Field(..., description="New, concise, unique, long-term facts about the user; empty if none.")


class RelevanceResponse(CustomBaseModel):
    relevant_ids: List[str] = Field(..., description="Ids of the relevant snippets; empty if none.")


class CodeDescription(CustomBaseModel):
    description: str = Field(..., description="One sentence describing what the code does.")

    @field_validator("description")
    @classmethod
    def _strip(cls, v: str) -> str:
        return v.strip()


class ImagePromptSuggestions(CustomBaseModel):
    suggestions: List[str] = Field(..., description="Five short image generation prompts.")
