"""Public library API for skein: Session class and Result dataclass."""

import asyncio
import copy
from dataclasses import dataclass
from typing import Callable

from .cancel import CancellationToken
from .driver import DEFAULT_COMPRESS_AFTER_MESSAGES, Conversation
from .editor import ArgumentEditor
from .llm import LLMClient, resolve_model_config
from .prompts import build_system_prompt
from .report import ErrorReporter, ReportCollector
from .scheduler import ApprovalDispatcher, ConfirmationOutcome, ToolScheduler
from .tools import ApprovalMode, build_registry


@dataclass
class Result:
    """Result of a session run or ask call."""

    answer: str | None
    exhausted: bool
    messages: list[dict]
    report: dict | None


class Session:
    """Programmatic interface to the skein conversation loop.

    Stores configuration as plain attributes. Call .run() for single-shot
    questions or .ask() for multi-turn conversations.

    Tool calls that need approval are passed to ``confirm(call)``, which
    returns a ConfirmationOutcome. Without it they are rejected, which
    makes a Session safe to use unattended.
    """

    def __init__(
        self,
        *,
        base_dir: str = ".",
        provider: str = "lmstudio",
        model: str | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
        max_turns: int = 100,
        max_output_tokens: int | None = None,
        temperature: float | None = None,
        top_p: float | None = None,
        seed: int | None = None,
        approval_mode: str = "default",
        allowed_commands: list[str] | None = None,
        compress_after_messages: int | None = DEFAULT_COMPRESS_AFTER_MESSAGES,
        compress_after_tokens: int | None = None,
        system_prompt: str | None = None,
        no_system_prompt: bool = False,
        no_instructions: bool = False,
        editor: str | None = None,
        verbose: bool = False,
        history: bool = True,
        confirm: Callable | None = None,
        client=None,
    ):
        self.base_dir = base_dir
        self.provider = provider
        self.model = model
        self.api_key = api_key
        self.base_url = base_url
        self.max_turns = max_turns
        self.max_output_tokens = max_output_tokens
        self.temperature = temperature
        self.top_p = top_p
        self.seed = seed
        self.approval_mode = ApprovalMode(approval_mode)
        self.allowed_commands = allowed_commands or []
        self.compress_after_messages = compress_after_messages
        self.compress_after_tokens = compress_after_tokens
        self.system_prompt = system_prompt
        self.no_system_prompt = no_system_prompt
        self.no_instructions = no_instructions
        self.editor = editor
        self.verbose = verbose
        self.history = history
        self.confirm = confirm

        # Setup state (cached after first _setup())
        self._setup_done = False
        self._client = client
        self._model_id: str | None = None
        self._system_content: str | None = None

        # Per-conversation state (for ask() mode)
        self._conversation: Conversation | None = None

    def _setup(self) -> None:
        """One-time setup: resolve provider, model and system prompt."""
        if self._setup_done:
            return

        if self._client is None:
            model_config = resolve_model_config(
                self.provider,
                self.model,
                self.api_key,
                self.base_url,
                max_output_tokens=self.max_output_tokens,
                temperature=self.temperature,
                top_p=self.top_p,
                seed=self.seed,
            )
            self._model_id = model_config.model
            self._client = LLMClient(model_config)
        else:
            self._model_id = self.model or "custom"

        if not self.no_system_prompt:
            self._system_content, _ = build_system_prompt(
                self.base_dir,
                system_prompt=self.system_prompt,
                no_instructions=self.no_instructions,
                verbose=self.verbose,
            )

        if self.verbose:
            from . import fmt

            fmt.init()

        self._setup_done = True

    def _new_conversation(self, report: ReportCollector | None = None) -> Conversation:
        registry = build_registry(self.base_dir, self.allowed_commands)
        scheduler = ToolScheduler(
            registry,
            approval_mode=self.approval_mode,
            telemetry=report,
            editor=ArgumentEditor(self.editor),
        )
        return Conversation(
            self._client,
            registry,
            scheduler,
            system_prompt=self._system_content,
            max_turns=self.max_turns,
            compress_after_messages=self.compress_after_messages,
            compress_after_tokens=self.compress_after_tokens,
            error_reporter=ErrorReporter(),
            report=report,
        )

    async def _decide(self, call):
        if self.confirm is None:
            return ConfirmationOutcome.CANCEL
        outcome = self.confirm(call)
        if asyncio.iscoroutine(outcome):
            outcome = await outcome
        return outcome

    async def _converse(self, conv: Conversation, question: str):
        renderer = None
        if self.verbose:
            from .agent import ConsoleRenderer

            renderer = ConsoleRenderer(verbose=True)
        conv.scheduler.on_update = ApprovalDispatcher(
            conv.scheduler,
            self._decide,
            forward=renderer.update if renderer else None,
        )
        token = CancellationToken()
        try:
            async for event in conv.converse(question, token):
                if renderer is not None:
                    renderer.event(event)
        finally:
            if renderer is not None:
                renderer.finish()
        return conv.result

    def _record(self, question: str, answer: str | None) -> None:
        if self.history and answer:
            from .agent import append_history

            append_history(self.base_dir, question, answer)

    def run(self, question: str, *, report: bool = False) -> Result:
        """Single-shot: run a question with fresh state. Each call is independent."""
        self._setup()

        collector = ReportCollector() if report else None
        conv = self._new_conversation(collector)
        outcome = asyncio.run(self._converse(conv, question))
        self._record(question, outcome.answer)

        report_dict = None
        if collector:
            report_dict = collector.build_report(
                task=question,
                model=self._model_id or "unknown",
                provider=self.provider,
                settings={
                    "max_turns": self.max_turns,
                    "max_output_tokens": self.max_output_tokens,
                    "temperature": self.temperature,
                    "top_p": self.top_p,
                    "seed": self.seed,
                    "approval_mode": self.approval_mode.value,
                },
                outcome="exhausted" if outcome.exhausted else "success",
                answer=outcome.answer,
                exit_code=2 if outcome.exhausted else 0,
                turns=outcome.turns,
            )

        return Result(
            answer=outcome.answer,
            exhausted=outcome.exhausted,
            messages=copy.deepcopy(conv.history),
            report=report_dict,
        )

    def ask(self, question: str) -> Result:
        """Conversational: share context across questions (like the REPL)."""
        self._setup()

        if self._conversation is None:
            self._conversation = self._new_conversation()
        conv = self._conversation

        outcome = asyncio.run(self._converse(conv, question))
        self._record(question, outcome.answer)

        return Result(
            answer=outcome.answer,
            exhausted=outcome.exhausted,
            messages=copy.deepcopy(conv.history),
            report=None,
        )

    def reset(self) -> None:
        """Clear conversation state without invalidating setup. Next ask() starts fresh."""
        self._conversation = None
