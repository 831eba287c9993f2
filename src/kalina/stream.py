# kalina: Stream consumer. Drives the model token stream into the in-flight assistant message: running text, first-turn title extraction, citations and usage counters.

import logging
from typing import AsyncIterable, Callable, List, Optional

from .config import TITLE_SCAN_CHARS
from .models import Citation, Conversation, Message, UsageCounts
from .parsing import match_title, strip_title

logger = logging.getLogger("kalina.stream")

UpdateMessages = Callable[[str, Callable[[List[Message]], List[Message]]], object]
UpdateConversation = Callable[[str, Callable[[Conversation], Conversation]], object]


class StreamResult:
    def __init__(self, text: str, cleaned_text: str, usage: Optional[UsageCounts], sources: Optional[List[Citation]]) -> None:
        self.text = text
        self.cleaned_text = cleaned_text
        self.usage = usage
        self.sources = sources


class StreamConsumer:
    """
    Consume one turn's stream.

    Every mutation is a functional update keyed by conversation_id, so the
    consumer keeps writing into the right conversation even when the user has
    switched to another one.
    """

    def __init__(
        self,
        conversation_id: str,
        is_first_turn: bool,
        update_messages: UpdateMessages,
        update_conversation: UpdateConversation,
        on_first_token: Optional[Callable[[], None]] = None,
    ) -> None:
        self.conversation_id = conversation_id
        self.is_first_turn = is_first_turn
        self.update_messages = update_messages
        self.update_conversation = update_conversation
        self.on_first_token = on_first_token
        self.buffer = ""
        self.title_done = not is_first_turn
        self.usage: Optional[UsageCounts] = None
        self.sources: Optional[List[Citation]] = None
        self._first_token_seen = False

    def display_content(self, final: bool = False) -> str:
        """Buffer with the leading TITLE directive removed (first turn only)."""
        if not self.is_first_turn:
            return self.buffer
        self._check_title(final)
        return strip_title(self.buffer)

    def _check_title(self, final: bool) -> None:
        if self.title_done:
            return
        title = match_title(self.buffer, final=final)
        if title is not None:
            self.title_done = True
            self.update_conversation(self.conversation_id, lambda c: c.update(title=title, is_generating_title=False))
            return
        if final or (len(self.buffer) > TITLE_SCAN_CHARS and "TITLE:" not in self.buffer):
            # kalina: No directive arrived in time; stop looking for this turn.
            self.title_done = True
            self.update_conversation(self.conversation_id, lambda c: c.update(is_generating_title=False))

    def _write(self, content: str) -> None:
        sources = self.sources

        def apply(messages: List[Message]) -> List[Message]:
            last = messages[-1] if messages else None
            if last is not None and last.role == "model":
                return messages[:-1] + [last.update(
                    content=content,
                    sources=sources,
                    is_planning=False,
                    is_generating_image=False,
                )]
            return messages + [Message(role="model", content=content, sources=sources)]

        self.update_messages(self.conversation_id, apply)

    def feed(self, text: str, citations: Optional[List[Citation]] = None, usage: Optional[UsageCounts] = None) -> None:
        """Apply one chunk."""
        if text and not self._first_token_seen:
            self._first_token_seen = True
            if self.on_first_token is not None:
                self.on_first_token()
        if usage is not None:
            # Last write wins: usage is expected once, on the final chunk.
            self.usage = usage
        if citations:
            self.sources = list(self.sources or []) + list(citations)
        self.buffer += text or ""
        self._write(self.display_content())

    async def consume(self, stream: AsyncIterable) -> StreamResult:
        """Drain the stream, then write final content and usage counters."""
        async for chunk in stream:
            self.feed(chunk.text, chunk.citations, chunk.usage)
        final_content = self.display_content(final=True)
        self._write(final_content)
        if self.usage is not None:
            usage = self.usage

            def apply_usage(messages: List[Message]) -> List[Message]:
                last = messages[-1] if messages else None
                if last is not None and last.role == "model":
                    return messages[:-1] + [last.update(input_tokens=usage.input_tokens, output_tokens=usage.output_tokens)]
                return messages

            self.update_messages(self.conversation_id, apply_usage)
        return StreamResult(self.buffer, strip_title(self.buffer), self.usage, self.sources)
