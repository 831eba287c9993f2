# kalina: Interactive host. Wires storage, host state, the model client and the turn orchestrator together and runs the ':command' REPL on top of them.

import asyncio
import base64
import logging
import pathlib
import signal
from typing import List, Optional

from pydantic import ValidationError

from .capabilities import ModelCapabilities
from .client import ModelClient
from .context import Context, Storage
from .enrichment import BackgroundJobs, Enricher
from .fs import load_attachment
from .models import CHAT_MODELS, Attachment, FileAttachment, ImageGenerationOptions, Message, Tool, persona_name
from .orchestrator import TurnOrchestrator, TurnPhase
from .settings import load_settings, section
from .state import AppState

logger = logging.getLogger("kalina.app")

TOOL_ALIASES = {
    "smart": Tool.smart,
    "web": Tool.web_search,
    "web_search": Tool.web_search,
    "thinking": Tool.thinking,
    "think": Tool.thinking,
    "image": Tool.image_generation,
    "image_generation": Tool.image_generation,
}

# Poll period for echoing streamed text to the terminal
ECHO_INTERVAL_SEC = 0.05


class Kalina:
    """
    Terminal front-end for the turn orchestrator.

    Everything the user sees is read back from AppState after (or while) the
    orchestrator writes it; the host never edits conversations itself except
    through the orchestrator and AppState helpers.
    """

    def __init__(self, home: pathlib.Path, model: Optional[str] = None, ctx: Optional[Context] = None) -> None:
        """Load settings and stored state from `home` and build the orchestrator."""
        self.home = pathlib.Path(home).expanduser().resolve()
        self.ctx = ctx or Context()
        self.settings = load_settings(self.home)
        self.storage = Storage(self.home)
        self.state = AppState(self.storage)
        self.client = ModelClient(model=model, settings=self.settings)
        self.capabilities = ModelCapabilities(self.client)
        self.jobs = BackgroundJobs()

        chat_cfg = section(self.settings, "chat")
        chat_model = model or chat_cfg.get("default_model") or self.client.model
        tool = TOOL_ALIASES.get(str(chat_cfg.get("default_tool") or "smart"), Tool.smart)
        self.orchestrator = TurnOrchestrator(
            self.state,
            self.capabilities,
            enricher=Enricher(self.capabilities, self.state, self.jobs),
            model=chat_model,
            tool=tool,
        )
        self.pending_image: Optional[Attachment] = None
        self.pending_file: Optional[FileAttachment] = None
        self._echoed = ""

    # ---------- Rendering ----------

    def _render_message(self, index: int, msg: Message) -> None:
        who = "you" if msg.role == "user" else persona_name(self.orchestrator.model)
        line = f"[{index}] {who}: {msg.content}"
        if msg.image is not None:
            line += f" [image {msg.image.mime_type}]"
        if msg.file is not None:
            line += f" [file {msg.file.name}]"
        self.ctx.send_to_user(line)

    def _render_reply(self, msg: Message) -> None:
        """Print the finished assistant message: text not yet echoed, images, sources, usage."""
        if msg.thoughts:
            secs = f" for {msg.thinking_duration:.1f}s" if msg.thinking_duration else ""
            self.ctx.send_to_user(f"(thought{secs})")
            for t in msg.thoughts:
                self.ctx.send_to_user(f"  - {t.concise_step or t.step}")
        if msg.content.startswith(self._echoed):
            rest = msg.content[len(self._echoed):]
            if rest:
                self.ctx.send_to_user(rest)
        else:
            # Streamed text was rewritten (title stripped, error replaced it); reprint in full.
            self.ctx.send_to_user(msg.content)
        for i, img in enumerate(msg.generated_images or []):
            out = self._save_image(img, msg.id, i)
            self.ctx.send_to_user(f"[image saved: {out}]")
        if msg.sources:
            self.ctx.send_to_user("Sources:")
            for s in msg.sources:
                self.ctx.send_to_user(f"  - {s.title or s.uri} <{s.uri}>")
        if msg.input_tokens is not None or msg.output_tokens is not None:
            self.ctx.log(f"tokens in={msg.input_tokens} out={msg.output_tokens}")
        if msg.memory_updated:
            self.ctx.send_to_user("(memory updated)")

    def _save_image(self, b64: str, message_id: str, i: int) -> pathlib.Path:
        out_dir = self.home / "images"
        out_dir.mkdir(parents=True, exist_ok=True)
        out = out_dir / f"{message_id}-{i}.png"
        if not out.exists():
            out.write_bytes(base64.b64decode(b64))
        return out

    def _last_model_message(self, conversation_id: str) -> Optional[Message]:
        conv = self.state.get_conversation(conversation_id)
        if conv is None or not conv.messages:
            return None
        last = conv.messages[-1]
        return last if last.role == "model" else None

    async def _echo_stream(self, conversation_id: str) -> None:
        """Print streamed text as it lands in the in-flight assistant message."""
        while True:
            await asyncio.sleep(ECHO_INTERVAL_SEC)
            conv = self.state.get_conversation(conversation_id)
            msg = self._last_model_message(conversation_id)
            # Hold output until a first-turn title directive has been split off.
            if msg is None or msg.is_planning or (conv is not None and conv.is_generating_title):
                continue
            content = msg.content
            if content.startswith(self._echoed) and len(content) > len(self._echoed):
                self.ctx.send_to_user(content[len(self._echoed):], end="")
                self._echoed = content

    def _on_interrupt(self) -> None:
        """SIGINT during a turn: stop the stream, or say why nothing stopped."""
        if not self.orchestrator.cancel():
            self.ctx.send_to_user("\n(nothing to cancel yet; Ctrl-C stops the reply once it starts streaming)")

    async def _run_turn(self, coro) -> None:
        """
        Await a turn with live echo. SIGINT cancels the stream instead of
        killing the process.
        """
        conv_before = self.state.active_conversation
        loop = asyncio.get_running_loop()
        sigint_installed = False
        try:
            loop.add_signal_handler(signal.SIGINT, self._on_interrupt)
            sigint_installed = True
        except (NotImplementedError, RuntimeError):
            pass

        # The active conversation may be created by the turn itself.
        self._echoed = ""
        turn = asyncio.create_task(coro)
        echo: Optional[asyncio.Task] = None
        try:
            while echo is None and not turn.done():
                conv = self.state.active_conversation or conv_before
                if conv is not None:
                    echo = asyncio.create_task(self._echo_stream(conv.id))
                    break
                await asyncio.sleep(0)
            accepted = await turn
        finally:
            if echo is not None:
                echo.cancel()
            if sigint_installed:
                loop.remove_signal_handler(signal.SIGINT)

        if not accepted:
            self.ctx.error_message("Message not sent (empty, busy, or no API key configured).")
            return
        conv = self.state.active_conversation
        if conv is None:
            return
        self.ctx.send_to_user("")
        if self.orchestrator.phase == TurnPhase.awaiting_image_options:
            self.ctx.send_to_user("Ready to generate. Use :images <count 1-4> <aspect 1:1|16:9|9:16|4:3|3:4> or :images cancel.")
            return
        msg = self._last_model_message(conv.id)
        if msg is not None:
            self._render_reply(msg)
        if self.orchestrator.error is not None:
            err = self.orchestrator.error
            self.ctx.error_message(err.message)
            if err.is_api_key_error:
                self.ctx.send_to_user("Check OPENAI_API_KEY or settings.yaml api.api_key.")

    # ---------- Commands ----------

    def cmd_help(self) -> None:
        """Print a list of supported commands and brief descriptions."""
        self.ctx.send_to_user("Commands:")
        self.ctx.send_to_user(":new                        - Start a new chat")
        self.ctx.send_to_user(":list                       - List conversations (pinned first)")
        self.ctx.send_to_user(":switch <id>                - Switch to a conversation")
        self.ctx.send_to_user(":delete <id>                - Delete a conversation")
        self.ctx.send_to_user(":rename <id> <title>        - Rename a conversation")
        self.ctx.send_to_user(":pin <id>                   - Pin or unpin a conversation")
        self.ctx.send_to_user(":show                       - Print the active conversation")
        self.ctx.send_to_user(":retry                      - Regenerate the last reply")
        self.ctx.send_to_user(":edit <index> <text>        - Edit a user message and resend")
        self.ctx.send_to_user(":tool <smart|web|thinking|image> - Pin a tool for following turns")
        self.ctx.send_to_user(":model <id>                 - Switch chat model")
        self.ctx.send_to_user(":attach <path>              - Attach an image or file to the next message")
        self.ctx.send_to_user(":images <count> <aspect>    - Confirm a pending image generation (:images cancel drops it)")
        self.ctx.send_to_user(":ideas                      - Suggest image prompts")
        self.ctx.send_to_user(":memory                     - Show long-term memory")
        self.ctx.send_to_user(":code                       - Show saved code snippets")
        self.ctx.send_to_user(":status                     - Show status summary")
        self.ctx.send_to_user(":help                       - Show this help")
        self.ctx.send_to_user(":quit                       - Exit")

    def _resolve_id(self, prefix: str) -> Optional[str]:
        """Accept a full conversation id or a unique prefix of one."""
        matches = [c.id for c in self.state.conversations if c.id.startswith(prefix)]
        if len(matches) == 1:
            return matches[0]
        self.ctx.error_message(f"No unique conversation matches {prefix!r}.")
        return None

    def cmd_list(self) -> None:
        convs = self.state.sorted_conversations()
        if not convs:
            self.ctx.send_to_user("No conversations.")
            return
        for c in convs:
            marks = ("*" if c.id == self.state.active_conversation_id else " ") + ("^" if c.is_pinned else " ")
            self.ctx.send_to_user(f"{marks} {c.id[:8]}  {c.title}  ({len(c.messages)} messages)")

    def cmd_show(self) -> None:
        conv = self.state.active_conversation
        if conv is None:
            self.ctx.send_to_user("No active conversation.")
            return
        self.ctx.send_to_user(f"# {conv.title}")
        for i, m in enumerate(conv.messages):
            self._render_message(i, m)

    def cmd_switch(self, prefix: str) -> None:
        cid = self._resolve_id(prefix)
        if cid and self.orchestrator.switch_conversation(cid):
            self.cmd_show()

    def cmd_delete(self, prefix: str) -> None:
        cid = self._resolve_id(prefix)
        if cid and self.state.delete_conversation(cid):
            self.ctx.send_to_user(f"Deleted {cid[:8]}.")

    def cmd_rename(self, prefix: str, title: str) -> None:
        cid = self._resolve_id(prefix)
        if cid:
            conv = self.state.rename_conversation(cid, title)
            self.ctx.send_to_user(f"Renamed to {conv.title}.")

    def cmd_pin(self, prefix: str) -> None:
        cid = self._resolve_id(prefix)
        if cid:
            conv = self.state.toggle_pin(cid)
            self.ctx.send_to_user("Pinned." if conv.is_pinned else "Unpinned.")

    def cmd_tool(self, name: str) -> None:
        tool = TOOL_ALIASES.get(name)
        if tool is None:
            self.ctx.error_message(f"Unknown tool: {name}. Use smart, web, thinking or image.")
            return
        self.orchestrator.tool = tool
        self.ctx.send_to_user(f"Tool: {tool.value}")

    def cmd_model(self, model_id: str) -> None:
        known = [m.id for m in CHAT_MODELS]
        if model_id not in known:
            self.ctx.send_to_user(f"Note: {model_id} is not one of {', '.join(known)}; using it anyway.")
        self.orchestrator.model = model_id
        self.ctx.send_to_user(f"Model: {model_id} ({persona_name(model_id)})")

    def cmd_attach(self, path_str: str) -> None:
        path = pathlib.Path(path_str).expanduser()
        if not path.is_file():
            self.ctx.error_message(f"No such file: {path}")
            return
        data = load_attachment(path)
        if data["mime_type"].startswith("image/"):
            self.pending_image = Attachment(base64=data["base64"], mime_type=data["mime_type"])
            self.ctx.send_to_user(f"Attached image {path.name} to the next message.")
        else:
            self.pending_file = FileAttachment(**data)
            self.ctx.send_to_user(f"Attached file {path.name} to the next message.")

    async def cmd_images(self, args: List[str]) -> None:
        if args and args[0] == "cancel":
            self.orchestrator.cancel_image_options()
            self.ctx.send_to_user("Image generation cancelled.")
            return
        if self.orchestrator.image_generation_prompt is None:
            self.ctx.error_message("No image generation is pending.")
            return
        try:
            options = ImageGenerationOptions(
                count=int(args[0]) if args else 1,
                aspect_ratio=args[1] if len(args) > 1 else "1:1",
            )
        except (ValueError, ValidationError):
            self.ctx.error_message("Usage: :images <count 1-4> <aspect 1:1|16:9|9:16|4:3|3:4>")
            return
        await self._run_turn(self.orchestrator.generate_images(options))

    async def cmd_ideas(self) -> None:
        for s in await self.orchestrator.suggest_image_prompts():
            self.ctx.send_to_user(f"- {s}")

    def cmd_memory(self) -> None:
        if not self.state.ltm:
            self.ctx.send_to_user("Long-term memory is empty.")
            return
        for fact in self.state.ltm:
            self.ctx.send_to_user(f"- {fact}")

    def cmd_code(self) -> None:
        if not self.state.code_memory:
            self.ctx.send_to_user("No saved code snippets.")
            return
        for s in self.state.code_memory:
            self.ctx.send_to_user(f"- {s.id[:8]} [{s.language}] {s.description}")

    def cmd_status(self) -> None:
        """Print a one-line-per-field status report about the current session."""
        conv = self.state.active_conversation
        self.ctx.send_to_user(f"Data directory: {self.home}")
        self.ctx.send_to_user(f"Provider: {self.client.provider} (credentials: {'yes' if self.client.has_credentials else 'no'})")
        self.ctx.send_to_user(f"Model: {self.orchestrator.model} ({persona_name(self.orchestrator.model)})")
        self.ctx.send_to_user(f"Tool: {self.orchestrator.tool.value}")
        self.ctx.send_to_user(f"Conversations: {len(self.state.conversations)}")
        self.ctx.send_to_user(f"Active: {conv.title if conv else '-'}")
        self.ctx.send_to_user(f"Long-term facts: {len(self.state.ltm)}")
        self.ctx.send_to_user(f"Code snippets: {len(self.state.code_memory)}")
        self.ctx.send_to_user(f"Generated images: {len(self.state.generated_images)}")
        self.ctx.send_to_user(f"Background jobs pending: {self.jobs.pending}")

    # ---------- Input ----------

    async def handle_user_input(self, text: str) -> bool:
        """
        Handle a line of user input: either execute a command or send a turn.
        Returns False when the REPL should exit.
        """
        if text.startswith(":"):
            parts = text.strip().split()
            cmd, args = parts[0], parts[1:]
            if cmd == ":help":
                self.cmd_help()
            elif cmd == ":new":
                self.orchestrator.new_chat()
                self.ctx.send_to_user("Started a new chat.")
            elif cmd == ":list":
                self.cmd_list()
            elif cmd == ":show":
                self.cmd_show()
            elif cmd in (":switch", ":delete", ":pin"):
                if not args:
                    self.ctx.error_message(f"Usage: {cmd} <id>")
                elif cmd == ":switch":
                    self.cmd_switch(args[0])
                elif cmd == ":delete":
                    self.cmd_delete(args[0])
                else:
                    self.cmd_pin(args[0])
            elif cmd == ":rename":
                if len(args) < 2:
                    self.ctx.error_message("Usage: :rename <id> <title>")
                else:
                    self.cmd_rename(args[0], " ".join(args[1:]))
            elif cmd == ":retry":
                await self._run_turn(self.orchestrator.retry())
            elif cmd == ":edit":
                if len(args) < 2 or not args[0].isdigit():
                    self.ctx.error_message("Usage: :edit <index> <text>")
                else:
                    await self._run_turn(self.orchestrator.edit_and_resend(int(args[0]), text.split(None, 2)[2]))
            elif cmd == ":tool":
                if not args:
                    self.ctx.error_message("Usage: :tool <smart|web|thinking|image>")
                else:
                    self.cmd_tool(args[0])
            elif cmd == ":model":
                if not args:
                    self.ctx.error_message("Usage: :model <id>")
                else:
                    self.cmd_model(args[0])
            elif cmd == ":attach":
                if not args:
                    self.ctx.error_message("Usage: :attach <path>")
                else:
                    self.cmd_attach(text.split(None, 1)[1])
            elif cmd == ":images":
                await self.cmd_images(args)
            elif cmd == ":ideas":
                await self.cmd_ideas()
            elif cmd == ":memory":
                self.cmd_memory()
            elif cmd == ":code":
                self.cmd_code()
            elif cmd == ":status":
                self.cmd_status()
            elif cmd == ":quit":
                self.ctx.send_to_user("Goodbye.")
                return False
            else:
                self.ctx.error_message(f"Unknown command: {cmd}. Type :help for help.")
            return True

        image, file = self.pending_image, self.pending_file
        self.pending_image = self.pending_file = None
        await self._run_turn(self.orchestrator.send_message(text, image, file))
        return True

    async def run(self) -> None:
        """Start the interactive REPL loop."""
        print(f"Kalina ready. Data directory: {self.home}")
        if not self.client.has_credentials:
            print("No API key configured (OPENAI_API_KEY or settings.yaml api.api_key); messages will be rejected.")
        print("Type :help for commands.")
        try:
            while True:
                try:
                    text = (await asyncio.to_thread(input, "> ")).strip()
                except EOFError:
                    print("\nGoodbye.")
                    break
                if not text:
                    continue
                if not await self.handle_user_input(text):
                    break
        finally:
            if self.jobs.pending:
                logger.info("Waiting for %d background job(s) to finish.", self.jobs.pending)
                await self.jobs.drain()
