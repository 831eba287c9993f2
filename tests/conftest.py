import asyncio
from typing import Any, Dict, List, Optional

import pytest

from kalina.capabilities import EditResult, SessionConfig, StreamChunk
from kalina.context import MemoryStorage
from kalina.models import Plan, UsageCounts
from kalina.orchestrator import TurnOrchestrator
from kalina.state import AppState


class FakeCapabilities:
    """
    Scripted stand-in for ModelCapabilities.

    Every call is recorded in `calls`; set the *_error attributes to make the
    matching capability raise.
    """

    def __init__(self) -> None:
        self.has_credentials = True
        self.calls: List[tuple] = []

        self.plan_result = Plan()
        self.plan_error: Optional[Exception] = None

        self.chunks: List[StreamChunk] = [StreamChunk(text="Hello")]
        self.stream_error: Optional[Exception] = None
        self.first_chunk_delay = 0.0
        # When set, the stream pauses after its first chunk until the event fires.
        self.stream_gate: Optional[asyncio.Event] = None
        self.first_chunk_sent = asyncio.Event()
        self.stream_closed = False
        self.sessions: List[SessionConfig] = []
        self.parts: List[List[Dict[str, Any]]] = []

        self.images = ["aW1hZ2Ux", "aW1hZ2Uy"]
        self.image_error: Optional[Exception] = None
        self.edit_result = EditResult(text="Here is your edit.", image="ZWRpdGVk", usage=UsageCounts(input_tokens=3, output_tokens=4))
        self.edit_error: Optional[Exception] = None

        self.relevant_ids: List[str] = []
        self.relevance_error: Optional[Exception] = None
        self.description = "Prints a greeting."
        self.summary = "The user said hello."
        self.summary_error: Optional[Exception] = None
        self.facts: List[str] = []
        self.facts_error: Optional[Exception] = None
        self.suggestions = ["A red fox", "A blue whale", "A green tree", "A gold coin", "A silver moon"]
        self.suggestions_error: Optional[Exception] = None

    async def plan(self, prompt, image=None, file=None, model=None):
        self.calls.append(("plan", prompt))
        if self.plan_error is not None:
            raise self.plan_error
        return self.plan_result

    async def stream_respond(self, session, parts):
        self.calls.append(("stream", parts))
        self.sessions.append(session)
        self.parts.append(parts)
        try:
            if self.first_chunk_delay:
                await asyncio.sleep(self.first_chunk_delay)
            for i, chunk in enumerate(self.chunks):
                yield chunk
                if i == 0:
                    self.first_chunk_sent.set()
                    if self.stream_gate is not None:
                        await self.stream_gate.wait()
            if self.stream_error is not None:
                raise self.stream_error
        finally:
            self.stream_closed = True

    async def generate_image(self, prompt, count, aspect_ratio):
        self.calls.append(("generate_image", prompt, count, aspect_ratio))
        if self.image_error is not None:
            raise self.image_error
        return list(self.images[:count])

    async def edit_image(self, prompt, image):
        self.calls.append(("edit_image", prompt))
        if self.edit_error is not None:
            raise self.edit_error
        return self.edit_result

    async def extract_relevant_snippets(self, prompt, descriptions):
        self.calls.append(("relevance", prompt, descriptions))
        if self.relevance_error is not None:
            raise self.relevance_error
        return list(self.relevant_ids)

    async def describe_code(self, code, language, context):
        self.calls.append(("describe_code", language, code))
        return self.description

    async def summarize(self, turns, previous_summary):
        self.calls.append(("summarize", turns, previous_summary))
        if self.summary_error is not None:
            raise self.summary_error
        return self.summary

    async def extract_facts(self, turns, current_ltm):
        self.calls.append(("extract_facts", turns, current_ltm))
        if self.facts_error is not None:
            raise self.facts_error
        return list(self.facts)

    async def suggest_image_prompts(self, prompt):
        self.calls.append(("suggest_image_prompts", prompt))
        if self.suggestions_error is not None:
            raise self.suggestions_error
        return list(self.suggestions)

    def called(self, name: str) -> List[tuple]:
        return [c for c in self.calls if c[0] == name]


@pytest.fixture
def storage():
    return MemoryStorage()


@pytest.fixture
def state(storage):
    return AppState(storage)


@pytest.fixture
def caps():
    return FakeCapabilities()


@pytest.fixture
def orchestrator(state, caps):
    return TurnOrchestrator(state, caps, model="gpt-5-mini", tick_interval=0.01)
