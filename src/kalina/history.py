# kalina: Context assembler. Builds the exact history sent with a turn: the rolling summary exchange, the retrieved code exchange and the last few raw turns.

import logging
from typing import Any, Dict, List, Optional

from .config import HISTORY_TURNS
from .models import Attachment, CodeSnippet, Conversation, FileAttachment, Message

logger = logging.getLogger("kalina.history")


def _inline(att: Attachment) -> Dict[str, Any]:
    blob = {"data": att.base64, "mime_type": att.mime_type}
    if isinstance(att, FileAttachment):
        blob["name"] = att.name
    return {"inline_data": blob}


def message_parts(msg: Message) -> List[Dict[str, Any]]:
    """One part per non-empty field, in order: text, image, file."""
    parts: List[Dict[str, Any]] = []
    if msg.content:
        parts.append({"text": msg.content})
    if msg.image is not None:
        parts.append(_inline(msg.image))
    if msg.file is not None:
        parts.append(_inline(msg.file))
    return parts


def to_history(messages: List[Message]) -> List[Dict[str, Any]]:
    """
    Convert messages into role+parts turns.

    Model messages with no text, no image and no generated images are dropped,
    then any message left with zero parts is dropped too.
    """
    out: List[Dict[str, Any]] = []
    for m in messages:
        if m.role == "model" and not m.content.strip() and m.image is None and not m.generated_images:
            continue
        parts = message_parts(m)
        if parts:
            out.append({"role": m.role, "parts": parts})
    return out


def recent_turns(messages: List[Message], turns: int = HISTORY_TURNS) -> List[Message]:
    """
    The trailing `turns` messages before the current turn.

    `messages` already ends with the just-appended user + placeholder pair,
    which is excluded.
    """
    prior = messages[:-2] if len(messages) >= 2 else []
    return prior[-turns:] if turns > 0 else []


def summary_exchange(summary: Optional[str]) -> List[Dict[str, Any]]:
    if not summary:
        return []
    return [
        {
            "role": "user",
            "parts": [{
                "text": (
                    "[Conversation Summary]\nThe following is a summary of our conversation so far. "
                    "Use it for context, but do not mention it unless I ask about it.\n---\n"
                    f"{summary}\n---"
                )
            }],
        },
        {"role": "model", "parts": [{"text": "Understood. I'll keep that context in mind."}]},
    ]


def format_snippet(snippet: CodeSnippet) -> str:
    return (
        f"Language: {snippet.language}\nDescription: {snippet.description}\n"
        f"Code:\n```{snippet.language}\n{snippet.code}\n```"
    )


def code_exchange(snippets: List[CodeSnippet]) -> List[Dict[str, Any]]:
    if not snippets:
        return []
    body = "\n---\n".join(format_snippet(s) for s in snippets)
    return [
        {
            "role": "user",
            "parts": [{
                "text": (
                    "[Retrieved Code Snippets]\nThese previously saved snippets might be relevant to my next request. "
                    "Use them for context, but do not mention them unless I ask about them.\n---\n"
                    f"{body}\n---"
                )
            }],
        },
        {"role": "model", "parts": [{"text": "Got it. I have the code snippets for reference."}]},
    ]


def assemble_context(
    conversation: Conversation,
    snippets: Optional[List[CodeSnippet]] = None,
    turns: int = HISTORY_TURNS,
) -> List[Dict[str, Any]]:
    """Summary exchange, code exchange, then the recent raw turns."""
    history: List[Dict[str, Any]] = []
    history.extend(summary_exchange(conversation.summary))
    history.extend(code_exchange(snippets or []))
    history.extend(to_history(recent_turns(conversation.messages, turns)))
    return history


async def select_relevant_snippets(
    capabilities,
    prompt: str,
    code_memory: List[CodeSnippet],
    needs_code_context: bool,
) -> List[CodeSnippet]:
    """
    Ask the relevance capability which saved snippets matter for this prompt.

    Only snippets whose id comes back are included; a relevance failure means
    no snippets.
    """
    if not needs_code_context or not code_memory:
        return []
    descriptions = [{"id": s.id, "description": s.description} for s in code_memory]
    try:
        ids = set(await capabilities.extract_relevant_snippets(prompt, descriptions))
    except Exception as e:
        logger.warning("Code relevance lookup failed: %s", e)
        return []
    return [s for s in code_memory if s.id in ids]


def build_user_parts(
    prompt: str,
    image: Optional[Attachment] = None,
    file: Optional[FileAttachment] = None,
) -> List[Dict[str, Any]]:
    """Parts for the current turn: image, file, then text."""
    parts: List[Dict[str, Any]] = []
    if image is not None:
        parts.append(_inline(image))
    if file is not None:
        parts.append(_inline(file))
    if prompt:
        parts.append({"text": prompt})
    if not parts:
        raise ValueError("Cannot send an empty message.")
    return parts
