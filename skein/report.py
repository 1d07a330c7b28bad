"""Error types, error reporting and the JSON run report."""

import json
import logging
import tempfile
import traceback
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)


class AgentError(Exception):
    """Raised by the agent loop or setup helpers for reportable runtime failures."""


class ConfigError(AgentError):
    """Raised for invalid configuration (missing model, bad API key, etc.)."""


class SchedulerBusyError(AgentError):
    """Raised when a batch is scheduled while another is still running.

    This means the caller broke the one-batch-at-a-time contract; it is not
    a condition users can trigger.
    """


@dataclass
class ToolCallEvent:
    """One finished tool call, as handed to the telemetry logger."""

    name: str
    duration_ms: int
    success: bool
    decision: str | None = None
    error: str | None = None
    arguments: dict | None = None


class ErrorReporter:
    """Writes a JSON dump for unexpected failures so they can be inspected later.

    report() is fire-and-forget: it never raises, whatever goes wrong while
    writing the dump.
    """

    def __init__(self, report_dir: str | Path | None = None):
        self.report_dir = Path(report_dir) if report_dir else Path(tempfile.gettempdir())
        self.reports: list[Path] = []

    def report(self, error: BaseException, context: str, history: list | None = None) -> None:
        timestamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%f")
        slug = "".join(c if c.isalnum() else "-" for c in context.lower()).strip("-")[:40]
        path = self.report_dir / f"skein-error-{slug or 'unknown'}-{timestamp}.json"
        payload = {
            "context": context,
            "error": {
                "type": type(error).__name__,
                "message": str(error),
                "traceback": "".join(
                    traceback.format_exception(type(error), error, error.__traceback__)
                ),
            },
        }
        if history is not None:
            payload["history"] = history
        try:
            self.report_dir.mkdir(parents=True, exist_ok=True)
            with open(path, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2, default=str)
                f.write("\n")
        except (OSError, TypeError, ValueError) as e:
            logger.warning("%s: %s (could not write error report: %s)", context, error, e)
            return
        self.reports.append(path)
        logger.warning("%s: %s (full report: %s)", context, error, path)


class ReportCollector:
    """Accumulates events during an agent run for JSON report output.

    Also serves as the telemetry logger for the tool scheduler via
    log_tool_call().
    """

    def __init__(self):
        self.events: list[dict] = []
        self.tool_stats: dict[str, dict[str, int]] = {}
        self.compactions = 0
        self.llm_calls = 0
        self.llm_errors = 0
        self.total_llm_time = 0.0
        self.total_tool_time = 0.0
        self.declined_calls = 0
        self.max_turn_seen = 0
        self.current_turn = 0

    def record_llm_call(
        self,
        turn: int,
        duration: float,
        message_count: int,
        outcome: str,
    ):
        self.llm_calls += 1
        self.total_llm_time += duration
        self.current_turn = turn
        if turn > self.max_turn_seen:
            self.max_turn_seen = turn
        if outcome == "error":
            self.llm_errors += 1
        self.events.append(
            {
                "turn": turn,
                "type": "llm_call",
                "duration_s": round(duration, 3),
                "messages": message_count,
                "outcome": outcome,
            }
        )

    def log_tool_call(self, event: ToolCallEvent):
        self.total_tool_time += event.duration_ms / 1000
        stats = self.tool_stats.setdefault(event.name, {"succeeded": 0, "failed": 0})
        if event.success:
            stats["succeeded"] += 1
        else:
            stats["failed"] += 1
        if event.decision == "cancel":
            self.declined_calls += 1
        entry: dict = {
            "turn": self.current_turn,
            "type": "tool_call",
            "name": event.name,
            "arguments": event.arguments,
            "succeeded": event.success,
            "duration_s": round(event.duration_ms / 1000, 3),
        }
        if event.decision is not None:
            entry["decision"] = event.decision
        if event.error is not None:
            entry["error"] = event.error
        self.events.append(entry)

    def record_compaction(self, turn: int, messages_before: int, messages_after: int):
        self.compactions += 1
        self.events.append(
            {
                "turn": turn,
                "type": "compaction",
                "messages_before": messages_before,
                "messages_after": messages_after,
            }
        )

    def build_report(
        self,
        *,
        task: str,
        model: str,
        provider: str,
        settings: dict,
        outcome: str,
        answer: str | None,
        exit_code: int,
        turns: int,
        error_message: str | None = None,
    ) -> dict:
        tool_calls_succeeded = sum(s["succeeded"] for s in self.tool_stats.values())
        tool_calls_failed = sum(s["failed"] for s in self.tool_stats.values())

        result: dict = {
            "outcome": outcome,
            "answer": answer,
            "exit_code": exit_code,
        }
        if error_message is not None:
            result["error_message"] = error_message

        return {
            "version": 1,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "task": task,
            "model": model,
            "provider": provider,
            "settings": settings,
            "result": result,
            "stats": {
                "turns": turns,
                "tool_calls_total": tool_calls_succeeded + tool_calls_failed,
                "tool_calls_succeeded": tool_calls_succeeded,
                "tool_calls_failed": tool_calls_failed,
                "tool_calls_declined": self.declined_calls,
                "tool_calls_by_name": dict(self.tool_stats),
                "compactions": self.compactions,
                "llm_calls": self.llm_calls,
                "llm_errors": self.llm_errors,
                "total_llm_time_s": round(self.total_llm_time, 3),
                "total_tool_time_s": round(self.total_tool_time, 3),
            },
            "timeline": self.events,
        }

    def finalize(self, **kwargs) -> dict:
        """Build the report and keep it for write()."""
        self._last_report = self.build_report(**kwargs)
        return self._last_report

    def write(self, path: str):
        with open(path, "w", encoding="utf-8") as f:
            json.dump(self._last_report, f, indent=2)
            f.write("\n")
