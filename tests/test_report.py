"""Tests for the JSON report and the error reporter."""

import json

import pytest

from skein.report import ErrorReporter, ReportCollector, ToolCallEvent


def _build(rc, **overrides):
    kwargs = dict(
        task="hello",
        model="m",
        provider="lmstudio",
        settings={},
        outcome="success",
        answer="done",
        exit_code=0,
        turns=0,
    )
    kwargs.update(overrides)
    return rc.build_report(**kwargs)


# ---------------------------------------------------------------------------
# ReportCollector unit tests
# ---------------------------------------------------------------------------


class TestReportCollector:
    def test_empty_report(self):
        r = _build(ReportCollector())
        assert r["version"] == 1
        assert r["task"] == "hello"
        assert r["result"] == {"outcome": "success", "answer": "done", "exit_code": 0}
        assert r["stats"]["tool_calls_total"] == 0
        assert r["stats"]["llm_calls"] == 0
        assert r["timeline"] == []

    def test_llm_call_tracking(self):
        rc = ReportCollector()
        rc.record_llm_call(1, 2.5, 10, "ok")
        rc.record_llm_call(2, 1.3, 12, "error")
        assert rc.llm_calls == 2
        assert rc.llm_errors == 1
        assert rc.total_llm_time == pytest.approx(3.8)
        assert rc.max_turn_seen == 2
        assert rc.events[1] == {
            "turn": 2,
            "type": "llm_call",
            "duration_s": 1.3,
            "messages": 12,
            "outcome": "error",
        }

    def test_tool_calls(self):
        rc = ReportCollector()
        rc.current_turn = 3
        rc.log_tool_call(ToolCallEvent("grep", 120, True, arguments={"pattern": "x"}))
        rc.log_tool_call(
            ToolCallEvent("grep", 30, False, decision="proceed_once", error="error: bad regex")
        )
        rc.log_tool_call(ToolCallEvent("run_command", 0, False, decision="cancel"))
        r = _build(rc)
        stats = r["stats"]
        assert stats["tool_calls_total"] == 3
        assert stats["tool_calls_succeeded"] == 1
        assert stats["tool_calls_failed"] == 2
        assert stats["tool_calls_declined"] == 1
        assert stats["tool_calls_by_name"]["grep"] == {"succeeded": 1, "failed": 1}
        assert r["timeline"][0]["turn"] == 3
        assert r["timeline"][0]["arguments"] == {"pattern": "x"}
        assert "decision" not in r["timeline"][0]
        assert r["timeline"][1]["error"] == "error: bad regex"
        assert stats["total_tool_time_s"] == pytest.approx(0.15)

    def test_compaction(self):
        rc = ReportCollector()
        rc.record_compaction(4, 30, 4)
        r = _build(rc)
        assert r["stats"]["compactions"] == 1
        assert r["timeline"] == [
            {"turn": 4, "type": "compaction", "messages_before": 30, "messages_after": 4}
        ]

    def test_error_message(self):
        r = _build(ReportCollector(), outcome="error", exit_code=1, error_message="boom")
        assert r["result"]["error_message"] == "boom"

    def test_finalize_and_write(self, tmp_path):
        rc = ReportCollector()
        rc.finalize(
            task="t", model="m", provider="xai", settings={"max_turns": 5},
            outcome="exhausted", answer=None, exit_code=2, turns=5,
        )
        path = tmp_path / "report.json"
        rc.write(str(path))
        data = json.loads(path.read_text())
        assert data["result"]["exit_code"] == 2
        assert data["settings"] == {"max_turns": 5}


# ---------------------------------------------------------------------------
# ErrorReporter
# ---------------------------------------------------------------------------


class TestErrorReporter:
    def test_writes_dump(self, tmp_path):
        reporter = ErrorReporter(tmp_path)
        try:
            raise RuntimeError("stream reset")
        except RuntimeError as e:
            reporter.report(e, "Turn.run-stream", [{"role": "user", "content": "q"}])
        (path,) = reporter.reports
        assert path.parent == tmp_path
        assert path.name.startswith("skein-error-turn-run-stream-")
        data = json.loads(path.read_text())
        assert data["context"] == "Turn.run-stream"
        assert data["error"]["type"] == "RuntimeError"
        assert "stream reset" in data["error"]["traceback"]
        assert data["history"] == [{"role": "user", "content": "q"}]

    def test_never_raises(self, tmp_path):
        blocker = tmp_path / "file"
        blocker.write_text("")
        reporter = ErrorReporter(blocker / "sub")
        reporter.report(ValueError("x"), "chat-compression")
        assert reporter.reports == []

    def test_unserializable_history(self, tmp_path):
        reporter = ErrorReporter(tmp_path)
        reporter.report(ValueError("x"), "ctx", [{"obj": object()}])
        assert len(reporter.reports) == 1
