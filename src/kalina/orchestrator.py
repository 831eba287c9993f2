# kalina: Turn orchestrator. Decides per user message which capabilities run and in what order, owns the loading/thinking/searching flags and implements retry, edit-and-resend and cancellation.

import asyncio
import logging
from enum import Enum
from typing import List, Optional

from .capabilities import SessionConfig
from .config import AI_MODEL, THINKING_TICK_SEC
from .enrichment import Enricher
from .errors import error_content, friendly_error
from .history import assemble_context, build_user_parts, select_relevant_snippets
from .models import (
    AppError,
    Attachment,
    Conversation,
    FileAttachment,
    ImageGenerationOptions,
    Message,
    ResolvedPlan,
    Tool,
    persona_name,
)
from .planner import plan_turn, resolve_plan
from .stream import StreamConsumer
from .ticker import Ticker

logger = logging.getLogger("kalina.orchestrator")

IMAGE_GENERATION_TITLE = "Image Generation"

DEFAULT_IMAGE_PROMPTS: List[str] = [
    "A cyberpunk cityscape at night, glowing with neon lights, detailed",
    "An astronaut riding a unicorn on the moon, photorealistic, 4K",
    "A magical forest with glowing mushrooms and whimsical creatures, fantasy art",
    "A majestic dragon perched on a mountain peak, epic, digital painting",
    "A vintage robot serving tea in a Victorian-era room, steampunk style",
    "Abstract art representing the feeling of joy, vibrant colors, swirling patterns",
]


class TurnPhase(str, Enum):
    idle = "idle"
    planning = "planning"
    image_edit = "image_edit"
    awaiting_image_options = "awaiting_image_options"
    generating_image = "generating_image"
    responding = "responding"
    enriching = "enriching"


def _replace_message(message_id: str, **changes):
    """Functional update that rewrites one message by id, leaving the rest untouched."""
    def apply(messages: List[Message]) -> List[Message]:
        return [m.update(**changes) if m.id == message_id else m for m in messages]
    return apply


def _write_error(content: str):
    """Put an error string into the in-flight assistant message, never over a user message."""
    def apply(messages: List[Message]) -> List[Message]:
        if not messages:
            return [Message(role="model", content=content)]
        last = messages[-1]
        if last.role == "user":
            return messages + [Message(role="model", content=content)]
        return messages[:-1] + [last.update(
            content=content,
            is_planning=False,
            is_generating_image=False,
            is_editing_image=False,
        )]
    return apply


class TurnOrchestrator:
    """
    One turn at a time.

    A turn appends the user message and an assistant placeholder up front, then
    fills the placeholder in as planning, image work or streaming progresses.
    Every write goes through AppState's functional updates keyed by the id of
    the conversation the turn started in.
    """

    def __init__(
        self,
        state,
        capabilities,
        enricher: Optional[Enricher] = None,
        model: str = AI_MODEL,
        tool: Tool = Tool.smart,
        tick_interval: float = THINKING_TICK_SEC,
    ) -> None:
        self.state = state
        self.capabilities = capabilities
        self.enricher = enricher or Enricher(capabilities, state)
        self.model = model
        self.tool = tool
        self.tick_interval = tick_interval

        self.is_loading = False
        self.is_thinking = False
        self.is_searching_web = False
        self.error: Optional[AppError] = None
        self.phase = TurnPhase.idle
        self.image_generation_prompt: Optional[str] = None
        self.active_suggestion: Optional[str] = None

        self._ticker: Optional[Ticker] = None
        self._stream_task: Optional[asyncio.Task] = None
        self._cancel_requested = False

    # ---------- Guards ----------

    def can_send(self, prompt: str, image: Optional[Attachment] = None, file: Optional[FileAttachment] = None) -> bool:
        if not prompt.strip() and image is None and file is None:
            return False
        if self.is_loading:
            return False
        return self.capabilities.has_credentials

    # ---------- Turn ----------

    async def send_message(
        self,
        prompt: str,
        image: Optional[Attachment] = None,
        file: Optional[FileAttachment] = None,
    ) -> bool:
        """
        Run one turn. Returns False when the turn is rejected without touching
        any state, True otherwise (including turns that end in an error message).
        """
        if not self.can_send(prompt, image, file):
            return False
        conversation = self.state.active_conversation
        if conversation is None:
            conversation = self.state.add_conversation(Conversation())
        is_first_turn = not conversation.messages
        user_message = Message(role="user", content=prompt, image=image, file=file)
        self.state.update_messages(conversation.id, lambda msgs: msgs + [user_message])
        await self._run_turn(conversation.id, prompt, image, file, is_first_turn)
        return True

    async def _run_turn(
        self,
        conversation_id: str,
        prompt: str,
        image: Optional[Attachment],
        file: Optional[FileAttachment],
        is_first_turn: bool,
    ) -> None:
        """
        Drive a turn whose user message is already the last message of the conversation.

        Only a turn started on an empty conversation asks the model for a title.
        """

        self.is_loading = True
        self.error = None
        self._cancel_requested = False
        self.phase = TurnPhase.planning

        placeholder = Message(role="model", is_planning=True)
        self.state.update_messages(conversation_id, lambda msgs: msgs + [placeholder])
        if is_first_turn:
            self.state.update_conversation(conversation_id, lambda c: c.update(is_generating_title=True))

        try:
            plan = await plan_turn(self.capabilities, prompt, image, file, self.model)
            resolved = resolve_plan(plan, self.tool, image is not None)
            logger.info(
                "Plan for %s: web=%s thinking=%s code=%s image_gen=%s image_edit=%s",
                conversation_id, resolved.web_search, resolved.thinking, resolved.code_context,
                resolved.image_generation, resolved.image_edit,
            )

            if is_first_turn and resolved.image_generation:
                self.state.update_conversation(
                    conversation_id,
                    lambda c: c.update(title=IMAGE_GENERATION_TITLE, is_generating_title=False),
                )

            if resolved.image_edit and image is not None:
                await self._edit_image(conversation_id, placeholder.id, prompt, image)
                return

            if resolved.image_generation:
                self.state.update_messages(conversation_id, lambda msgs: [m for m in msgs if m.id != placeholder.id])
                self.image_generation_prompt = prompt
                self.phase = TurnPhase.awaiting_image_options
                return

            await self._respond(conversation_id, placeholder.id, is_first_turn, prompt, image, file, resolved)
        except asyncio.CancelledError:
            if not self._cancel_requested:
                raise
            logger.info("Turn in %s cancelled; keeping partial content.", conversation_id)
        except Exception as e:
            logger.error("Turn in %s failed: %s", conversation_id, e, exc_info=True)
            self.error = friendly_error(e)
            self.state.update_messages(conversation_id, _write_error(error_content(self.error)))
        finally:
            self._finish_turn(conversation_id)

    def _finish_turn(self, conversation_id: str) -> None:
        self._release_ticker()
        self._stream_task = None
        self._cancel_requested = False
        self.is_loading = False
        self.is_searching_web = False
        self.active_suggestion = None
        if self.phase != TurnPhase.awaiting_image_options:
            self.phase = TurnPhase.idle
        conversation = self.state.get_conversation(conversation_id)
        if conversation is not None and conversation.is_generating_title:
            self.state.update_conversation(conversation_id, lambda c: c.update(is_generating_title=False))

    async def _edit_image(self, conversation_id: str, placeholder_id: str, prompt: str, image: Attachment) -> None:
        self.phase = TurnPhase.image_edit
        self.state.update_messages(
            conversation_id,
            _replace_message(placeholder_id, is_planning=False, is_editing_image=True, image_generation_count=1),
        )
        result = await self.capabilities.edit_image(prompt, image)
        generated = [result.image] if result.image else []
        usage = result.usage
        self.state.add_generated_images(generated)
        self.state.update_messages(conversation_id, _replace_message(
            placeholder_id,
            is_editing_image=False,
            content=result.text or "",
            generated_images=generated or None,
            input_tokens=usage.input_tokens if usage else None,
            output_tokens=usage.output_tokens if usage else None,
        ))

    async def _respond(
        self,
        conversation_id: str,
        placeholder_id: str,
        is_first_turn: bool,
        prompt: str,
        image: Optional[Attachment],
        file: Optional[FileAttachment],
        resolved: ResolvedPlan,
    ) -> None:
        self.phase = TurnPhase.responding
        self.state.update_messages(conversation_id, _replace_message(
            placeholder_id,
            is_planning=False,
            thoughts=list(resolved.thoughts) or None,
        ))
        if resolved.thinking and resolved.thoughts:
            self._start_ticker(conversation_id, placeholder_id)
        if resolved.web_search:
            self.is_searching_web = True

        snippets = await select_relevant_snippets(
            self.capabilities, prompt, self.state.code_memory, resolved.code_context,
        )
        conversation = self.state.get_conversation(conversation_id)
        session = SessionConfig(
            model=self.model,
            persona=persona_name(self.model),
            is_first_turn=is_first_turn,
            ltm=list(self.state.ltm),
            thinking=resolved.thinking,
            web_search=resolved.web_search,
            history=assemble_context(conversation, snippets),
        )
        parts = build_user_parts(prompt, image, file)

        consumer = StreamConsumer(
            conversation_id,
            is_first_turn,
            self.state.update_messages,
            self.state.update_conversation,
            on_first_token=self._on_first_token,
        )
        stream = self.capabilities.stream_respond(session, parts)
        self._stream_task = asyncio.create_task(consumer.consume(stream), name=f"stream:{conversation_id}")
        try:
            result = await self._stream_task
        except asyncio.CancelledError:
            self._stream_task.cancel()
            raise

        self.phase = TurnPhase.enriching
        final = self.state.get_conversation(conversation_id)
        if final is not None:
            self.enricher.schedule(final, prompt, result.cleaned_text)

    # ---------- Ticker ----------

    def _start_ticker(self, conversation_id: str, message_id: str) -> None:
        self._release_ticker()
        self.is_thinking = True

        def on_tick(elapsed: float) -> None:
            self.state.update_messages(conversation_id, _replace_message(message_id, thinking_duration=elapsed))

        self._ticker = Ticker(self.tick_interval, on_tick).start()

    def _release_ticker(self) -> None:
        if self._ticker is not None:
            self._ticker.cancel()
            self._ticker = None
        self.is_thinking = False

    def _on_first_token(self) -> None:
        self._release_ticker()
        self.is_searching_web = False

    # ---------- Image generation ----------

    async def generate_images(self, options: ImageGenerationOptions) -> bool:
        """Confirm the pending image generation with the chosen count and aspect ratio."""
        prompt = self.image_generation_prompt
        conversation = self.state.active_conversation
        if prompt is None or conversation is None or self.is_loading or not self.capabilities.has_credentials:
            return False
        conversation_id = conversation.id

        self.is_loading = True
        self.error = None
        self.phase = TurnPhase.generating_image
        placeholder = Message(
            role="model",
            is_generating_image=True,
            image_generation_count=options.count,
            aspect_ratio=options.aspect_ratio,
        )
        self.state.update_messages(conversation_id, lambda msgs: msgs + [placeholder])
        try:
            images = await self.capabilities.generate_image(prompt, options.count, options.aspect_ratio)
            self.state.add_generated_images(images)
            self.state.update_messages(conversation_id, _replace_message(
                placeholder.id, is_generating_image=False, generated_images=list(images),
            ))
            logger.info("Generated %d image(s) in %s", len(images), conversation_id)
        except Exception as e:
            logger.error("Image generation in %s failed: %s", conversation_id, e, exc_info=True)
            self.error = friendly_error(e)
            self.state.update_messages(conversation_id, _replace_message(
                placeholder.id, is_generating_image=False, content=error_content(self.error),
            ))
        finally:
            self.is_loading = False
            self.image_generation_prompt = None
            self.phase = TurnPhase.idle
        return True

    def cancel_image_options(self) -> None:
        self.image_generation_prompt = None
        if self.phase == TurnPhase.awaiting_image_options:
            self.phase = TurnPhase.idle

    async def suggest_image_prompts(self) -> List[str]:
        """Five image prompt ideas riffing on the last user prompt of the active conversation."""
        conversation = self.state.active_conversation
        last_prompt = ""
        if conversation is not None:
            for m in reversed(conversation.messages):
                if m.role == "user" and m.content.strip():
                    last_prompt = m.content
                    break
        if not last_prompt or not self.capabilities.has_credentials:
            return list(DEFAULT_IMAGE_PROMPTS)
        try:
            suggestions = await self.capabilities.suggest_image_prompts(last_prompt)
        except Exception as e:
            logger.warning("Image prompt suggestions failed: %s", e)
            return list(DEFAULT_IMAGE_PROMPTS)
        return list(suggestions) or list(DEFAULT_IMAGE_PROMPTS)

    # ---------- Retry / edit ----------

    async def retry(self) -> bool:
        """
        Regenerate the most recent assistant reply.

        The conversation is cut back to the user message that preceded it and
        that message is resubmitted as-is, so repeated retries always restart
        from the same boundary.
        """
        conversation = self.state.active_conversation
        if conversation is None:
            return False
        messages = conversation.messages
        model_index = next((i for i in range(len(messages) - 1, -1, -1) if messages[i].role == "model"), -1)
        if model_index < 1:
            return False
        user_message = messages[model_index - 1]
        if user_message.role != "user":
            return False
        if not self.can_send(user_message.content, user_message.image, user_message.file):
            return False
        self.state.update_messages(conversation.id, lambda msgs: msgs[:model_index])
        # kalina: A retried reply keeps the existing title, including one set by :rename.
        await self._run_turn(conversation.id, user_message.content, user_message.image, user_message.file, False)
        return True

    async def edit_and_resend(self, index: int, content: str) -> bool:
        """Replace the user message at `index` with `content`, dropping everything after it."""
        conversation = self.state.active_conversation
        if conversation is None or not 0 <= index < len(conversation.messages):
            return False
        original = conversation.messages[index]
        if original.role != "user":
            return False
        if not self.can_send(content, original.image, original.file):
            return False
        self.state.update_messages(conversation.id, lambda msgs: msgs[:index])
        return await self.send_message(content, original.image, original.file)

    # ---------- Cancellation / navigation ----------

    def cancel(self) -> bool:
        """Abort the in-flight stream. Whatever was already streamed stays in the message."""
        task = self._stream_task
        if task is None or task.done():
            return False
        self._cancel_requested = True
        self._release_ticker()
        task.cancel()
        return True

    def new_chat(self) -> None:
        self._release_ticker()
        self.state.active_conversation_id = None
        self.error = None
        self.active_suggestion = None
        self.image_generation_prompt = None
        self.tool = Tool.smart

    def switch_conversation(self, conversation_id: str) -> bool:
        if self.state.get_conversation(conversation_id) is None:
            return False
        self._release_ticker()
        self.state.active_conversation_id = conversation_id
        self.error = None
        self.active_suggestion = None
        self.image_generation_prompt = None
        return True
