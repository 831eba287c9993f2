# kalina: Background enrichment after a visible response: rolling summarization, code-snippet extraction and long-term-memory fact extraction.
# Jobs are detached asyncio tasks keyed by the conversation id captured at schedule time; failures are logged and swallowed, never retried.

import asyncio
import logging
from typing import Coroutine, List, Optional, Set

from .config import SUMMARY_INTERVAL, SUMMARY_WINDOW
from .history import to_history
from .models import CodeSnippet, Conversation, Message
from .parsing import extract_code_blocks

logger = logging.getLogger("kalina.enrichment")


def should_summarize(message_count: int, interval: int = SUMMARY_INTERVAL) -> bool:
    return message_count > 1 and message_count % interval == 0


class BackgroundJobs:
    """
    Fire-and-forget task set.

    Tasks are held by strong reference until they finish so they are not
    garbage-collected mid-flight. Nothing awaits them during a turn; drain()
    exists for shutdown and tests.
    """

    def __init__(self) -> None:
        self._tasks: Set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def spawn(self, coro: Coroutine, name: str) -> asyncio.Task:
        task = asyncio.create_task(self._guard(coro, name), name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    @staticmethod
    async def _guard(coro: Coroutine, name: str) -> None:
        try:
            await coro
        except asyncio.CancelledError:
            logger.info("Background job %s cancelled.", name)
            raise
        except Exception:
            logger.exception("Background job %s failed.", name)

    async def drain(self) -> None:
        """Wait for every job scheduled so far (and any they schedule)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def cancel_all(self) -> None:
        for t in list(self._tasks):
            t.cancel()


class Enricher:
    """Runs the three post-turn jobs against AppState."""

    def __init__(self, capabilities, state, jobs: Optional[BackgroundJobs] = None) -> None:
        self.capabilities = capabilities
        self.state = state
        self.jobs = jobs or BackgroundJobs()

    def schedule(self, conversation: Conversation, prompt: str, cleaned_response: str) -> List[asyncio.Task]:
        """
        Schedule all applicable jobs for the final state of `conversation`.

        The conversation id and message snapshot are captured now; later
        switches or new turns do not change which conversation is enriched.
        """
        conversation_id = conversation.id
        messages = list(conversation.messages)
        tasks: List[asyncio.Task] = []

        if should_summarize(len(messages)):
            tasks.append(self.jobs.spawn(
                self.summarize(conversation_id, messages[-SUMMARY_WINDOW:], conversation.summary),
                f"summarize:{conversation_id}",
            ))

        blocks = extract_code_blocks(cleaned_response)
        if blocks:
            context = to_history(messages[-2:])
            for i, block in enumerate(blocks):
                tasks.append(self.jobs.spawn(
                    self.save_code(block.language, block.code, context),
                    f"code:{conversation_id}:{i}",
                ))

        reply = messages[-1] if messages and messages[-1].role == "model" else None
        if cleaned_response.strip() and reply is not None:
            tasks.append(self.jobs.spawn(
                self.update_memory(conversation_id, reply.id, prompt, cleaned_response),
                f"memory:{conversation_id}",
            ))
        return tasks

    async def summarize(self, conversation_id: str, window: List[Message], previous: Optional[str]) -> None:
        try:
            summary = await self.capabilities.summarize(to_history(window), previous)
        except Exception as e:
            logger.warning("Summarization failed for %s: %s", conversation_id, e)
            return
        if not summary:
            return
        self.state.update_conversation(conversation_id, lambda c: c.update(summary=summary))
        logger.info("Updated rolling summary for %s", conversation_id)

    async def save_code(self, language: str, code: str, context: List[dict]) -> None:
        description = await self.capabilities.describe_code(code, language, context)
        self.state.append_snippet(CodeSnippet(language=language, code=code, description=description))
        logger.info("Saved %s snippet to code memory", language)

    async def update_memory(self, conversation_id: str, reply_id: str, prompt: str, response: str) -> None:
        turns = [
            {"role": "user", "parts": [{"text": prompt}]},
            {"role": "model", "parts": [{"text": response}]},
        ]
        new_facts = await self.capabilities.extract_facts(turns, list(self.state.ltm))
        if not new_facts:
            return
        added = self.state.extend_ltm(new_facts)
        if not added:
            return

        # kalina: Mark the reply the facts came from, even if newer messages followed it.
        def mark(messages: List[Message]) -> List[Message]:
            return [m.update(memory_updated=True) if m.id == reply_id else m for m in messages]

        self.state.update_messages(conversation_id, mark)
        logger.info("Added %d fact(s) to long-term memory", len(added))
