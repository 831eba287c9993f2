# kalina: The model capability layer consumed by the orchestrator: plan, stream_respond, image generation/edit, snippet relevance, code description, summarization, fact extraction and image prompt ideas.
# Every capability is async; blocking HTTP work runs on worker threads so the event loop keeps ticking timers and background jobs.

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Dict, List, Optional

from pydantic import BaseModel, Field

from .client import ModelClient
from .models import (
    Attachment,
    Citation,
    CodeDescription,
    FileAttachment,
    ImagePromptSuggestions,
    MemoryResponse,
    Plan,
    PlanResponse,
    RelevanceResponse,
    Record,
    UsageCounts,
    persona_name,
)
from .prompts import get_prompt

logger = logging.getLogger("kalina.capabilities")


class StreamChunk(Record):
    text: str = ""
    citations: Optional[List[Citation]] = None
    usage: Optional[UsageCounts] = None


class EditResult(Record):
    text: Optional[str] = None
    image: Optional[str] = None
    usage: Optional[UsageCounts] = None


class SessionConfig(BaseModel):
    """
    Per-turn chat session configuration.

    history is the assembled context (synthetic summary/code exchanges plus the
    recent raw turns) in role+parts form.
    """
    model: str
    persona: str = ""
    is_first_turn: bool = False
    ltm: List[str] = Field(default_factory=list)
    thinking: bool = False
    web_search: bool = False
    history: List[Dict[str, Any]] = Field(default_factory=list)


def build_system_instructions(config: SessionConfig) -> str:
    """Persona text, the first-turn title directive and the long-term-memory block."""
    text = get_prompt("prompt_persona_system.txt", model_name=config.persona or persona_name(config.model))
    if config.is_first_turn:
        text += "\n" + get_prompt("prompt_title_directive.txt")
    if config.ltm:
        facts = "\n".join(f"- {fact}" for fact in config.ltm)
        text += (
            "\n\n---\n[Long Term Memory]\n"
            "Here are some facts you should remember about the user and conversation:\n"
            f"{facts}\n"
            "Use this information to personalize your responses and maintain context.\n---"
        )
    return text


def _data_url(data: str, mime_type: str) -> str:
    return f"data:{mime_type};base64,{data}"


def to_input_items(history: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """
    Convert role+parts history into Responses API input items.

    Model turns become assistant output_text; inline data on model turns is
    not replayable and is dropped.
    """
    items: List[Dict[str, Any]] = []
    for turn in history:
        is_model = turn.get("role") == "model"
        content: List[Dict[str, Any]] = []
        for part in turn.get("parts") or []:
            if "text" in part:
                content.append({"type": "output_text" if is_model else "input_text", "text": part["text"]})
            elif "inline_data" in part and not is_model:
                blob = part["inline_data"]
                mime = blob.get("mime_type") or "application/octet-stream"
                if mime.startswith("image/"):
                    content.append({"type": "input_image", "image_url": _data_url(blob["data"], mime)})
                else:
                    content.append({
                        "type": "input_file",
                        "filename": blob.get("name") or "attachment",
                        "file_data": _data_url(blob["data"], mime),
                    })
        if content:
            items.append({"role": "assistant" if is_model else "user", "content": content})
    return items


def _turns_text(turns: List[Dict[str, Any]]) -> str:
    """Render role+parts turns as 'role: text' lines, marking non-text parts."""
    lines = []
    for t in turns:
        text = " ".join(p.get("text", "[non-text part]") for p in t.get("parts") or [])
        lines.append(f"{t.get('role')}: {text}")
    return "\n".join(lines)


def _user_text(text: str) -> List[Dict[str, Any]]:
    return [{"role": "user", "content": [{"type": "input_text", "text": text}]}]


class ModelCapabilities:
    """Async capabilities backed by a ModelClient."""

    def __init__(self, client: ModelClient) -> None:
        self.client = client

    @property
    def has_credentials(self) -> bool:
        return self.client.has_credentials

    async def plan(
        self,
        prompt: str,
        image: Optional[Attachment] = None,
        file: Optional[FileAttachment] = None,
        model: Optional[str] = None,
    ) -> Plan:
        """Classify a turn. Raises on transport or schema errors; the planner adapter owns the fallback."""
        parts: List[str] = []
        if image is not None:
            parts.append("[User has attached an image]")
        parts.append(prompt)
        if file is not None:
            parts.append(f"[User has attached a file named: {file.name}]")
        raw = await asyncio.to_thread(
            self.client.call_responses,
            _user_text("\n".join(parts)),
            PlanResponse.model_json_schema(),
            get_prompt("prompt_planner_system.txt"),
            "plan",
            model,
        )
        parsed = PlanResponse.model_validate(raw)
        return Plan.model_validate(parsed.model_dump())

    async def stream_respond(self, session: SessionConfig, parts: List[Dict[str, Any]]) -> AsyncIterator[StreamChunk]:
        """
        Stream the assistant's answer to the current turn's parts.

        The HTTP response is pulled one event per worker-thread hop; closing the
        iterator (or cancelling the consuming task) closes the connection.
        """
        effort = "medium" if session.thinking else ("low" if session.web_search else "minimal")
        input_items = to_input_items(session.history + [{"role": "user", "parts": parts}])
        stream = await asyncio.to_thread(
            self.client.open_stream,
            input_items,
            build_system_instructions(session),
            session.model,
            effort,
            session.web_search,
        )
        try:
            it = stream.chunks()
            while True:
                raw = await asyncio.to_thread(next, it, None)
                if raw is None:
                    break
                yield StreamChunk.model_validate(raw)
        finally:
            stream.close()

    async def generate_image(self, prompt: str, count: int, aspect_ratio: str) -> List[str]:
        return await asyncio.to_thread(self.client.generate_images, prompt, count, aspect_ratio)

    async def edit_image(self, prompt: str, image: Attachment) -> EditResult:
        raw = await asyncio.to_thread(self.client.edit_image, prompt, image.base64, image.mime_type)
        return EditResult.model_validate(raw)

    async def extract_relevant_snippets(self, prompt: str, descriptions: List[Dict[str, str]]) -> List[str]:
        user = json.dumps({"request": prompt, "snippets": descriptions}, ensure_ascii=False)
        raw = await asyncio.to_thread(
            self.client.call_responses,
            _user_text(user),
            RelevanceResponse.model_json_schema(),
            get_prompt("prompt_code_relevance_system.txt"),
            "code_relevance",
        )
        return RelevanceResponse.model_validate(raw).relevant_ids

    async def describe_code(self, code: str, language: str, context: List[Dict[str, Any]]) -> str:
        user = (
            f"CONVERSATION:\n{_turns_text(context)}\n\n"
            f"LANGUAGE: {language}\n\nCODE:\n```{language}\n{code}\n```"
        )
        raw = await asyncio.to_thread(
            self.client.call_responses,
            _user_text(user),
            CodeDescription.model_json_schema(),
            get_prompt("prompt_code_description_system.txt"),
            "code_description",
        )
        return CodeDescription.model_validate(raw).description

    async def summarize(self, turns: List[Dict[str, Any]], previous_summary: Optional[str]) -> str:
        user = (
            f"PREVIOUS SUMMARY:\n{previous_summary or 'None'}\n\n"
            f"RECENT CONVERSATION:\n{_turns_text(turns)}\n\n"
            "Based on the above, provide an updated summary."
        )
        text = await asyncio.to_thread(
            self.client.call_text,
            _user_text(user),
            get_prompt("prompt_summarizer_system.txt"),
            "summary",
        )
        return text.strip()

    async def extract_facts(self, turns: List[Dict[str, Any]], current_ltm: List[str]) -> List[str]:
        user = (
            f"CURRENT LTM:\n{json.dumps(current_ltm, ensure_ascii=False)}\n\n"
            f"NEW CONVERSATION TURNS:\n{_turns_text(turns)}\n\n"
            "Analyze the conversation and LTM, then generate the JSON output as instructed."
        )
        raw = await asyncio.to_thread(
            self.client.call_responses,
            _user_text(user),
            MemoryResponse.model_json_schema(),
            get_prompt("prompt_memory_system.txt"),
            "memory",
        )
        return MemoryResponse.model_validate(raw).new_memories

    async def suggest_image_prompts(self, prompt: str) -> List[str]:
        raw = await asyncio.to_thread(
            self.client.call_responses,
            _user_text(prompt),
            ImagePromptSuggestions.model_json_schema(),
            get_prompt("prompt_image_ideas_system.txt"),
            "image_ideas",
        )
        return ImagePromptSuggestions.model_validate(raw).suggestions
