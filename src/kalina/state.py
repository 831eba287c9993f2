# kalina: Process-wide host state: the conversation list, long-term memory, code memory and the generated-image gallery.
# Loaded from Storage at startup, written back on every mutation. The orchestrator only sees read access plus functional updates keyed by conversation id.

import logging
from typing import Any, Callable, List, Optional

from pydantic import TypeAdapter, ValidationError

from .models import CodeSnippet, Conversation, Message

logger = logging.getLogger("kalina.state")

CONVERSATIONS_KEY = "conversations"
LTM_KEY = "ltm"
CODE_MEMORY_KEY = "code_memory"
GENERATED_IMAGES_KEY = "generated_images"

_conversations_adapter = TypeAdapter(List[Conversation])
_snippets_adapter = TypeAdapter(List[CodeSnippet])
_strings_adapter = TypeAdapter(List[str])


def _load(storage, key: str, adapter: TypeAdapter) -> list:
    """Read and validate a stored list; absent or corrupt values load as []."""
    raw = storage.get(key, None)
    if raw is None:
        return []
    try:
        return adapter.validate_python(raw)
    except ValidationError as e:
        logger.warning("Stored %s is corrupt; starting empty (%s)", key, e.error_count())
        return []


class AppState:
    """
    Owner of all persisted state.

    Updates are pure functions over the latest value (`fn(old) -> new`), applied
    and persisted synchronously, so interleaved async callers never lose an
    update.
    """

    def __init__(self, storage) -> None:
        self.storage = storage
        self.conversations: List[Conversation] = _load(storage, CONVERSATIONS_KEY, _conversations_adapter)
        self.ltm: List[str] = _load(storage, LTM_KEY, _strings_adapter)
        self.code_memory: List[CodeSnippet] = _load(storage, CODE_MEMORY_KEY, _snippets_adapter)
        self.generated_images: List[str] = _load(storage, GENERATED_IMAGES_KEY, _strings_adapter)
        self.active_conversation_id: Optional[str] = None

    # ---------- Persistence ----------

    def _save_conversations(self) -> None:
        self.storage.set(CONVERSATIONS_KEY, [c.model_dump(mode="json", exclude_none=True) for c in self.conversations])

    def _save(self, key: str, value: Any) -> None:
        self.storage.set(key, value)

    # ---------- Conversations ----------

    def get_conversation(self, conversation_id: Optional[str]) -> Optional[Conversation]:
        if conversation_id is None:
            return None
        for c in self.conversations:
            if c.id == conversation_id:
                return c
        return None

    @property
    def active_conversation(self) -> Optional[Conversation]:
        return self.get_conversation(self.active_conversation_id)

    def add_conversation(self, conversation: Conversation) -> Conversation:
        """Insert at the head of the list and make it active."""
        self.conversations = [conversation] + self.conversations
        self.active_conversation_id = conversation.id
        self._save_conversations()
        return conversation

    def update_conversation(self, conversation_id: str, fn: Callable[[Conversation], Conversation]) -> Optional[Conversation]:
        """Replace the conversation with fn(conversation). Unknown ids are a no-op."""
        updated = None
        out = []
        for c in self.conversations:
            if c.id == conversation_id:
                updated = fn(c)
                out.append(updated)
            else:
                out.append(c)
        if updated is None:
            return None
        self.conversations = out
        self._save_conversations()
        return updated

    def update_messages(self, conversation_id: str, fn: Callable[[List[Message]], List[Message]]) -> Optional[Conversation]:
        """Replace the message list with fn(messages)."""
        return self.update_conversation(conversation_id, lambda c: c.update(messages=list(fn(list(c.messages)))))

    def delete_conversation(self, conversation_id: str) -> bool:
        before = len(self.conversations)
        self.conversations = [c for c in self.conversations if c.id != conversation_id]
        if len(self.conversations) == before:
            return False
        if self.active_conversation_id == conversation_id:
            self.active_conversation_id = None
        self._save_conversations()
        return True

    def rename_conversation(self, conversation_id: str, title: str) -> Optional[Conversation]:
        return self.update_conversation(conversation_id, lambda c: c.update(title=title.strip() or c.title))

    def toggle_pin(self, conversation_id: str) -> Optional[Conversation]:
        return self.update_conversation(conversation_id, lambda c: c.update(is_pinned=not c.is_pinned))

    def sorted_conversations(self) -> List[Conversation]:
        """Pinned first, then most recent first."""
        return sorted(self.conversations, key=lambda c: (not c.is_pinned, -c.created_at))

    # ---------- Long-term memory ----------

    def extend_ltm(self, facts: List[str]) -> List[str]:
        """Append facts not already present verbatim. Returns the facts actually added."""
        added: List[str] = []
        for fact in facts:
            if fact not in self.ltm and fact not in added:
                added.append(fact)
        if added:
            self.ltm = self.ltm + added
            self._save(LTM_KEY, self.ltm)
        return added

    # ---------- Code memory ----------

    def append_snippet(self, snippet: CodeSnippet) -> None:
        self.code_memory = self.code_memory + [snippet]
        self._save(CODE_MEMORY_KEY, [s.model_dump(mode="json") for s in self.code_memory])

    # ---------- Image gallery ----------

    def add_generated_images(self, images: List[str]) -> None:
        if not images:
            return
        self.generated_images = self.generated_images + list(images)
        self._save(GENERATED_IMAGES_KEY, self.generated_images)
