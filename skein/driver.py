"""Conversation driver: owns the history and loops turns and tool batches."""

import functools
import json
import logging
import time
from dataclasses import dataclass

from . import prompts
from .next_speaker import check_next_speaker
from .turn import ChatCompressed, Turn

logger = logging.getLogger(__name__)

DEFAULT_MAX_TURNS = 100
DEFAULT_COMPRESS_AFTER_MESSAGES = 25


@functools.lru_cache(maxsize=1)
def _encoder():
    import tiktoken

    return tiktoken.get_encoding("cl100k_base")


def estimate_tokens(messages: list, tools: list | None = None) -> int:
    """Count tokens across all messages using tiktoken."""
    enc = _encoder()
    total = 0
    for m in messages:
        content = m.get("content", "") or ""
        for tc in m.get("tool_calls") or []:
            fn = tc.get("function", {})
            content += fn.get("name", "") + (fn.get("arguments", "") or "")
        total += len(enc.encode(content))
    if tools:
        total += len(enc.encode(json.dumps(tools)))
    # Per-message overhead (role, separators), ~4 tokens each
    total += 4 * len(messages)
    return total


@dataclass
class ConverseResult:
    answer: str | None
    exhausted: bool
    turns: int


class Conversation:
    """Alternates model turns and tool batches until the model is done.

    The history list is only ever changed here. The scheduler's completion
    callback is taken over so that tool results land in the history in
    request order as soon as a batch finishes.
    """

    def __init__(
        self,
        client,
        registry,
        scheduler,
        *,
        system_prompt: str | None = None,
        max_turns: int = DEFAULT_MAX_TURNS,
        compress_after_messages: int | None = DEFAULT_COMPRESS_AFTER_MESSAGES,
        compress_after_tokens: int | None = None,
        error_reporter=None,
        report=None,
        next_speaker=check_next_speaker,
    ):
        self.client = client
        self.registry = registry
        self.scheduler = scheduler
        self.system_prompt = system_prompt
        self.max_turns = max_turns
        self.compress_after_messages = compress_after_messages
        self.compress_after_tokens = compress_after_tokens
        self.error_reporter = error_reporter
        self.report = report
        self.next_speaker = next_speaker
        self.result: ConverseResult | None = None
        self.total_turns = 0
        self.history: list[dict] = self.initial_history()
        scheduler.on_complete = self._append_tool_results

    def initial_history(self) -> list[dict]:
        if self.system_prompt is None:
            return []
        return [
            {"role": "system", "content": self.system_prompt},
            {"role": "user", "content": prompts.CONTEXT_PROVIDED},
            {"role": "assistant", "content": prompts.CONTEXT_ACK},
        ]

    def reset(self) -> int:
        """Drop everything but the initial history; returns how many messages went."""
        dropped = len(self.history) - len(self.initial_history())
        self.history = self.initial_history()
        return max(dropped, 0)

    def _append(self, message: dict) -> None:
        self.history.append(message)

    def _append_tool_results(self, results: list[dict]) -> None:
        for message in results:
            self._append(message)

    def record_turn(self, turn: Turn) -> None:
        """Append a finished turn's assistant message, exactly once."""
        if turn.recorded:
            raise RuntimeError("turn message already appended to history")
        if turn.message is None:
            raise RuntimeError("turn has no finalized message")
        turn.recorded = True
        self._append(turn.message)

    # -- compaction ----------------------------------------------------------

    def needs_compression(self) -> bool:
        if self.compress_after_messages and len(self.history) > self.compress_after_messages:
            return True
        if self.compress_after_tokens:
            tokens = estimate_tokens(self.history, self.registry.get_tool_schemas())
            return tokens > self.compress_after_tokens
        return False

    async def try_compress(self, token, force: bool = False) -> ChatCompressed | None:
        """Replace the history with a summary when it grew too long.

        Best effort: on failure the history is left as it was and None is
        returned. A trailing user message is kept after the summary.
        """
        if not force and not self.needs_compression():
            return None

        history = self.history
        pending = []
        if history and history[-1].get("role") == "user":
            pending = [history[-1]]
            history = history[:-1]
        head = [m for m in history[:1] if m.get("role") == "system"]
        if len(history) - len(head) < 2:
            return None

        request = history + [{"role": "user", "content": prompts.SUMMARY_PROMPT}]
        try:
            summary = await self.client.complete(request, token)
        except Exception as e:
            logger.warning("compression failed: %s", e)
            if not token.cancelled and self.error_reporter is not None:
                self.error_reporter.report(e, "chat-compression", list(self.history))
            return None
        if not summary.strip():
            logger.warning("compression skipped: model returned an empty summary")
            return None

        original_count = len(self.history)
        self.history = head + [
            {"role": "user", "content": prompts.SUMMARY_INTRO + summary.strip()},
            {"role": "assistant", "content": prompts.SUMMARY_ACK},
        ] + pending
        if self.report is not None:
            self.report.record_compaction(self.total_turns, original_count, len(self.history))
        return ChatCompressed(original_count, len(self.history))

    async def force_compress(self, token) -> ChatCompressed | None:
        return await self.try_compress(token, force=True)

    # -- main loop -----------------------------------------------------------

    async def converse(self, user_text: str, token):
        """Yield stream events for every turn until the model stops.

        When the generator finishes, ``self.result`` holds the answer, whether
        the turn budget ran out, and how many turns were used.
        """
        self.result = None
        self._append({"role": "user", "content": user_text})
        answer = None
        turns = 0
        exhausted = False

        while not token.cancelled:
            if turns >= self.max_turns:
                exhausted = True
                break
            turns += 1
            self.total_turns += 1

            compressed = await self.try_compress(token)
            if compressed is not None:
                yield compressed

            turn = Turn(self.client, self.registry, self.error_reporter)
            t0 = time.monotonic()
            async for event in turn.run(self.history, token):
                yield event
            if self.report is not None:
                self.report.record_llm_call(
                    self.total_turns,
                    time.monotonic() - t0,
                    len(self.history),
                    "error" if turn.failed else "ok",
                )

            if turn.message is None:
                break
            self.record_turn(turn)
            if turn.text.strip():
                answer = turn.text

            if turn.pending_tool_calls:
                await self.scheduler.schedule(turn.pending_tool_calls, token)
                if token.cancelled:
                    break
                self._append({"role": "user", "content": prompts.TOOL_CONTINUATION_PROMPT})
                continue

            verdict = await self.next_speaker(self.history, self.client, token)
            if token.cancelled or verdict is None or verdict["next_speaker"] != "model":
                break
            logger.debug("model continues: %s", verdict.get("reasoning"))
            self._append({"role": "user", "content": prompts.CONTINUE_PROMPT})

        self.result = ConverseResult(answer=answer, exhausted=exhausted, turns=turns)
