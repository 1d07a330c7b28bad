"""One model round-trip: stream events in, finalized assistant message out."""

import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ContentDelta:
    value: str


@dataclass(frozen=True)
class ToolCallStart:
    index: int
    name: str


@dataclass(frozen=True)
class ToolCallDelta:
    index: int
    name: str
    args_chunk: str


@dataclass(frozen=True)
class ToolCallEnd:
    index: int
    call_id: str
    name: str


@dataclass(frozen=True)
class Error:
    message: str
    status: int | None = None


@dataclass(frozen=True)
class ChatCompressed:
    original_count: int
    new_count: int


StreamEvent = ContentDelta | ToolCallStart | ToolCallDelta | ToolCallEnd | Error | ChatCompressed


@dataclass(frozen=True)
class PendingToolCall:
    """A tool call exactly as the model finalized it; arguments are unparsed JSON."""

    id: str
    name: str
    arguments: str

    def to_message(self) -> dict:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }


class _CallBuffer:
    __slots__ = ("id", "name", "arguments", "started")

    def __init__(self):
        self.id = ""
        self.name = ""
        self.arguments = ""
        self.started = False


def _error_status(exc: BaseException) -> int | None:
    for candidate in (exc, exc.__cause__):
        status = getattr(candidate, "status_code", None)
        if isinstance(status, int):
            return status
    return None


class Turn:
    """Drives a single streamed model response.

    Iterate ``run()`` to completion, then read ``message`` (the assistant
    message to append) and ``pending_tool_calls``. ``message`` stays None
    when the stream failed or was cancelled. The turn never touches the
    history it is given.
    """

    def __init__(self, client, registry, error_reporter=None):
        self.client = client
        self.registry = registry
        self.error_reporter = error_reporter
        self.pending_tool_calls: list[PendingToolCall] = []
        self.failed = False
        self.cancelled = False
        self.recorded = False
        self._text_parts: list[str] = []
        self._message: dict | None = None
        self._started = False

    @property
    def message(self) -> dict | None:
        return self._message

    @property
    def text(self) -> str:
        return "".join(self._text_parts)

    async def run(self, history: list, token):
        if self._started:
            raise RuntimeError("a Turn can only be run once")
        self._started = True

        tools = self.registry.get_tool_schemas()
        buffers: dict[int, _CallBuffer] = {}

        try:
            async for chunk in self.client.stream_completion(list(history), tools, token):
                if token.cancelled:
                    self.cancelled = True
                    return
                if chunk.text:
                    self._text_parts.append(chunk.text)
                    yield ContentDelta(chunk.text)
                for fragment in chunk.tool_calls:
                    buf = buffers.get(fragment.index)
                    if buf is None:
                        buf = buffers[fragment.index] = _CallBuffer()
                    if fragment.id:
                        buf.id = fragment.id
                    if fragment.name:
                        buf.name = fragment.name
                    if buf.name and not buf.started:
                        buf.started = True
                        yield ToolCallStart(fragment.index, buf.name)
                    if fragment.arguments:
                        buf.arguments += fragment.arguments
                        yield ToolCallDelta(fragment.index, buf.name, fragment.arguments)
        except Exception as e:
            if token.cancelled:
                self.cancelled = True
                return
            self.failed = True
            if self.error_reporter is not None:
                self.error_reporter.report(e, "Turn.run-stream", list(history))
            else:
                logger.warning("model stream failed: %s", e)
            yield Error(str(e), _error_status(e))
            return

        if token.cancelled:
            self.cancelled = True
            return

        for index in sorted(buffers):
            buf = buffers[index]
            if not buf.id or not buf.name:
                logger.debug("dropping unfinished tool call at index %d", index)
                continue
            self.pending_tool_calls.append(PendingToolCall(buf.id, buf.name, buf.arguments))
            yield ToolCallEnd(index, buf.id, buf.name)

        message: dict = {"role": "assistant", "content": self.text}
        if self.pending_tool_calls:
            message["tool_calls"] = [c.to_message() for c in self.pending_tool_calls]
        self._message = message
