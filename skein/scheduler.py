"""Tool call scheduler: validation, approval, concurrent execution, completion.

Each call in a batch moves forward through

    validating -> [awaiting_approval ->] scheduled -> executing -> success | error | cancelled

Calls that fail lookup or argument parsing go straight to ``error`` and are
never shown to the user for approval. Nothing runs until every call in the
batch is either scheduled or already terminal; the scheduled ones then run
concurrently. When the last call settles, the batch is cleared and its
results are delivered in request order, once.
"""

import asyncio
import dataclasses
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, ClassVar

from .report import SchedulerBusyError, ToolCallEvent
from .tools import ApprovalMode, ConfirmationDetails, ConfirmationOutcome, Tool
from .turn import PendingToolCall

logger = logging.getLogger(__name__)

__all__ = [
    "ToolCallRequest",
    "ValidatingCall",
    "AwaitingApprovalCall",
    "ScheduledCall",
    "ExecutingCall",
    "SuccessCall",
    "ErrorCall",
    "CancelledCall",
    "ToolCall",
    "ConfirmationOutcome",
    "ToolScheduler",
    "ApprovalDispatcher",
    "is_terminal",
]

CANCELLED_MESSAGE = "Tool call cancelled by user."


@dataclass(frozen=True)
class ToolCallRequest:
    id: str
    name: str
    args: dict


@dataclass(frozen=True)
class ValidatingCall:
    status: ClassVar[str] = "validating"
    request: ToolCallRequest
    tool: Tool
    started_at: float


@dataclass(frozen=True)
class AwaitingApprovalCall:
    status: ClassVar[str] = "awaiting_approval"
    request: ToolCallRequest
    tool: Tool
    started_at: float
    details: ConfirmationDetails


@dataclass(frozen=True)
class ScheduledCall:
    status: ClassVar[str] = "scheduled"
    request: ToolCallRequest
    tool: Tool
    started_at: float
    outcome: ConfirmationOutcome | None = None


@dataclass(frozen=True)
class ExecutingCall:
    status: ClassVar[str] = "executing"
    request: ToolCallRequest
    tool: Tool
    started_at: float
    outcome: ConfirmationOutcome | None = None


@dataclass(frozen=True)
class SuccessCall:
    status: ClassVar[str] = "success"
    request: ToolCallRequest
    response: dict
    duration_ms: int
    outcome: ConfirmationOutcome | None = None


@dataclass(frozen=True)
class ErrorCall:
    status: ClassVar[str] = "error"
    request: ToolCallRequest
    response: dict
    duration_ms: int
    outcome: ConfirmationOutcome | None = None


@dataclass(frozen=True)
class CancelledCall:
    status: ClassVar[str] = "cancelled"
    request: ToolCallRequest
    response: dict
    duration_ms: int
    outcome: ConfirmationOutcome | None = None


ToolCall = (
    ValidatingCall
    | AwaitingApprovalCall
    | ScheduledCall
    | ExecutingCall
    | SuccessCall
    | ErrorCall
    | CancelledCall
)

TERMINAL_CALLS = (SuccessCall, ErrorCall, CancelledCall)


def is_terminal(call: ToolCall) -> bool:
    return isinstance(call, TERMINAL_CALLS)


def _tool_response(call_id: str, content: str) -> dict:
    return {"role": "tool", "tool_call_id": call_id, "content": content}


def _stringify(content: Any) -> str:
    if isinstance(content, str):
        return content
    return json.dumps(content, default=str)


def _elapsed_ms(started_at: float) -> int:
    return int((time.monotonic() - started_at) * 1000)


class ToolScheduler:
    """Runs one batch of tool calls at a time.

    on_update(snapshot) is called with a tuple of every call in the batch
    after each state change. on_complete(results) receives the ordered
    tool-result messages once the whole batch is terminal. Confirmation
    answers come in through respond().
    """

    def __init__(
        self,
        registry,
        *,
        approval_mode: ApprovalMode = ApprovalMode.DEFAULT,
        on_update: Callable[[tuple], None] | None = None,
        on_complete: Callable[[list[dict]], None] | None = None,
        telemetry=None,
        editor=None,
    ):
        self.registry = registry
        self.approval_mode = ApprovalMode(approval_mode)
        self.on_update = on_update
        self.on_complete = on_complete
        self.telemetry = telemetry
        self.editor = editor
        self._calls: list[ToolCall] = []
        self._answers: dict[int, asyncio.Future] = {}
        self._active = False

    @property
    def calls(self) -> tuple:
        return tuple(self._calls)

    @property
    def is_running(self) -> bool:
        """True from the moment a batch is admitted until its results are delivered."""
        return self._active

    # -- state helpers -------------------------------------------------------

    def _set(self, index: int, call: ToolCall) -> None:
        self._calls[index] = call
        self._notify()

    def _notify(self) -> None:
        if self.on_update is not None:
            self.on_update(tuple(self._calls))

    def _finish(self, index: int, cls, content: str, outcome=None) -> None:
        current = self._calls[index]
        started_at = getattr(current, "started_at", time.monotonic())
        request = current.request
        if outcome is None:
            outcome = getattr(current, "outcome", None)
        self._set(
            index,
            cls(
                request=request,
                response=_tool_response(request.id, content),
                duration_ms=_elapsed_ms(started_at),
                outcome=outcome,
            ),
        )

    # -- admission -----------------------------------------------------------

    def _admit(self, item) -> ToolCall:
        started_at = time.monotonic()
        if isinstance(item, PendingToolCall):
            raw = item.arguments
            try:
                args = json.loads(raw) if raw.strip() else {}
            except json.JSONDecodeError as e:
                request = ToolCallRequest(item.id, item.name, {})
                return ErrorCall(
                    request,
                    _tool_response(
                        item.id,
                        f"error: invalid JSON arguments for {item.name}: {e}. "
                        f"Raw arguments: {raw}",
                    ),
                    _elapsed_ms(started_at),
                )
            if not isinstance(args, dict):
                request = ToolCallRequest(item.id, item.name, {})
                return ErrorCall(
                    request,
                    _tool_response(
                        item.id,
                        f"error: arguments for {item.name} must be a JSON object. "
                        f"Raw arguments: {raw}",
                    ),
                    _elapsed_ms(started_at),
                )
            request = ToolCallRequest(item.id, item.name, args)
        else:
            request = item

        tool = self.registry.get_tool(request.name)
        if tool is None:
            return ErrorCall(
                request,
                _tool_response(
                    request.id, f"error: tool {request.name!r} not found in registry"
                ),
                _elapsed_ms(started_at),
            )
        return ValidatingCall(request, tool, started_at)

    def _check_confirmation(self, index: int) -> None:
        call = self._calls[index]
        try:
            details = call.tool.requires_confirmation(call.request.args, self.approval_mode)
        except Exception as e:
            logger.debug("confirmation check for %s failed", call.request.name, exc_info=True)
            self._finish(index, ErrorCall, f"error: {call.request.name} failed: {e}")
            return
        if details is None:
            self._set(index, ScheduledCall(call.request, call.tool, call.started_at))
            return
        self._answers[index] = asyncio.get_running_loop().create_future()
        self._set(
            index,
            AwaitingApprovalCall(call.request, call.tool, call.started_at, details),
        )

    # -- approval ------------------------------------------------------------

    def respond(
        self,
        call_id: str,
        outcome: ConfirmationOutcome,
        modified_args: dict | None = None,
    ) -> bool:
        """Answer a call that is awaiting approval.

        Returns False if no call with that id is waiting.
        """
        outcome = ConfirmationOutcome(outcome)
        for index, call in enumerate(self._calls):
            if not isinstance(call, AwaitingApprovalCall) or call.request.id != call_id:
                continue
            answer = self._answers.get(index)
            if answer is None or answer.done():
                continue
            answer.set_result((outcome, modified_args))
            return True
        logger.warning("no tool call %r is awaiting approval", call_id)
        return False

    async def _await_approval(self, index: int, token) -> None:
        answer = self._answers[index]
        waiter = asyncio.ensure_future(token.wait())
        try:
            await asyncio.wait({answer, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()

        call = self._calls[index]
        if not answer.done():
            answer.cancel()
            self._finish(index, CancelledCall, CANCELLED_MESSAGE)
            return

        outcome, modified_args = answer.result()
        if call.details.on_confirm is not None:
            call.details.on_confirm(outcome)

        if outcome == ConfirmationOutcome.CANCEL:
            self._finish(
                index,
                CancelledCall,
                f"User declined to run {call.request.name}.",
                outcome=outcome,
            )
            return

        request = call.request
        if outcome == ConfirmationOutcome.MODIFY:
            if modified_args is None:
                if self.editor is None or not call.tool.modifiable:
                    self._finish(
                        index,
                        ErrorCall,
                        f"error: {request.name} cannot be modified before running",
                        outcome=outcome,
                    )
                    return
                try:
                    modified_args = await self.editor.modify(request.name, request.args)
                except Exception as e:
                    self._finish(
                        index,
                        ErrorCall,
                        f"error: editing arguments for {request.name} failed: {e}",
                        outcome=outcome,
                    )
                    return
            request = dataclasses.replace(request, args=modified_args)

        if token.cancelled:
            self._finish(index, CancelledCall, CANCELLED_MESSAGE, outcome=outcome)
            return
        self._set(index, ScheduledCall(request, call.tool, call.started_at, outcome))

    # -- execution -----------------------------------------------------------

    async def _execute(self, index: int, token) -> None:
        call = self._calls[index]
        name = call.request.name
        try:
            result = await call.tool.execute(call.request.args, token)
        except Exception as e:
            if token.cancelled:
                self._finish(index, CancelledCall, CANCELLED_MESSAGE)
            else:
                logger.debug("tool %s raised", name, exc_info=True)
                self._finish(index, ErrorCall, f"error: {name} failed: {e}")
            return

        if token.cancelled:
            self._finish(index, CancelledCall, CANCELLED_MESSAGE)
        elif result.is_error:
            self._finish(index, ErrorCall, _stringify(result.content))
        else:
            self._finish(index, SuccessCall, _stringify(result.content))

    # -- batch ---------------------------------------------------------------

    async def schedule(self, requests, token) -> list[dict]:
        """Run a batch to completion and return its ordered tool-result messages.

        Accepts PendingToolCall (raw JSON arguments) or ToolCallRequest items.

        Raises:
            SchedulerBusyError: a previous batch has not delivered its results yet.
        """
        if self._active:
            raise SchedulerBusyError(
                "cannot schedule tool calls while another batch is running"
            )
        requests = list(requests)
        if not requests:
            return []

        self._active = True
        try:
            return await self._run_batch(requests, token)
        finally:
            self._active = False

    async def _run_batch(self, requests: list, token) -> list[dict]:
        self._calls = [self._admit(item) for item in requests]
        self._answers = {}
        self._notify()

        for index, call in enumerate(self._calls):
            if isinstance(call, ValidatingCall):
                self._check_confirmation(index)

        if self._answers:
            await asyncio.gather(
                *(self._await_approval(index, token) for index in list(self._answers))
            )

        runnable = [i for i, c in enumerate(self._calls) if isinstance(c, ScheduledCall)]
        if token.cancelled:
            for index in runnable:
                self._finish(index, CancelledCall, CANCELLED_MESSAGE)
            runnable = []
        for index in runnable:
            call = self._calls[index]
            self._set(
                index,
                ExecutingCall(call.request, call.tool, call.started_at, call.outcome),
            )
        if runnable:
            await asyncio.gather(*(self._execute(index, token) for index in runnable))

        return self._complete()

    def _complete(self) -> list[dict]:
        finished = self._calls
        self._calls = []
        self._answers = {}

        for call in finished:
            if not is_terminal(call):
                raise RuntimeError(f"tool call {call.request.id} finished in state {call.status}")
            self._log(call)

        results = [call.response for call in finished]
        if self.on_complete is not None:
            self.on_complete(results)
        return results

    def _log(self, call) -> None:
        if self.telemetry is None:
            return
        event = ToolCallEvent(
            name=call.request.name,
            duration_ms=call.duration_ms,
            success=isinstance(call, SuccessCall),
            decision=call.outcome.value if call.outcome is not None else None,
            error=call.response["content"] if isinstance(call, ErrorCall) else None,
            arguments=call.request.args,
        )
        try:
            self.telemetry.log_tool_call(event)
        except Exception:
            logger.exception("telemetry logger failed for %s", call.request.name)


class ApprovalDispatcher:
    """An on_update observer that answers approval requests.

    Each call that newly enters awaiting_approval is handed to the async
    ``decide(call)`` callback, one at a time, and the answer is passed to
    ``scheduler.respond``. ``decide`` returns a ConfirmationOutcome or an
    ``(outcome, modified_args)`` pair. ``forward`` receives every snapshot
    first, for rendering.
    """

    def __init__(self, scheduler: ToolScheduler, decide, forward=None):
        self.scheduler = scheduler
        self.decide = decide
        self.forward = forward
        self._asked: dict[int, AwaitingApprovalCall] = {}
        self._tasks: set[asyncio.Task] = set()
        self._lock: asyncio.Lock | None = None

    def __call__(self, snapshot: tuple) -> None:
        if self.forward is not None:
            self.forward(snapshot)
        waiting = [c for c in snapshot if isinstance(c, AwaitingApprovalCall)]
        if not waiting and not self._tasks:
            self._asked.clear()
        for call in waiting:
            if id(call) in self._asked:
                continue
            self._asked[id(call)] = call
            task = asyncio.get_running_loop().create_task(self._answer(call))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _answer(self, call: AwaitingApprovalCall) -> None:
        if self._lock is None:
            self._lock = asyncio.Lock()
        async with self._lock:
            if not any(c is call for c in self.scheduler.calls):
                return
            try:
                decision = await self.decide(call)
            except Exception:
                logger.exception("approval callback failed for %s", call.request.name)
                decision = ConfirmationOutcome.CANCEL
            if isinstance(decision, tuple):
                outcome, modified_args = decision
            else:
                outcome, modified_args = decision, None
            if any(c is call for c in self.scheduler.calls):
                self.scheduler.respond(call.request.id, outcome, modified_args)
