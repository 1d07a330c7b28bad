"""Tests for the command-line entry point, console renderer and confirmer."""

import asyncio
import json
import sys
import time
from io import StringIO
from types import SimpleNamespace

import pytest
from rich.console import Console

from skein import agent, fmt
from skein.config import _UNSET
from skein.driver import Conversation
from skein.llm import StreamChunk, ToolCallFragment
from skein.scheduler import (
    AwaitingApprovalCall,
    ConfirmationOutcome,
    ExecutingCall,
    SuccessCall,
    ToolCallRequest,
    ToolScheduler,
)
from skein.tools import ApprovalMode, ConfirmationDetails, ToolRegistry, build_registry


class ScriptedClient:
    def __init__(self, turns):
        self.turns = list(turns)

    async def stream_completion(self, messages, tools, token=None):
        for chunk in self.turns.pop(0):
            yield chunk

    async def complete(self, messages, token=None, **extra):
        return "summary"

    async def generate_json(self, messages, token=None):
        return {"reasoning": "", "next_speaker": "user"}


def _say(text):
    return [StreamChunk(text=text)]


def _capture(func, *args, **kwargs):
    buf = StringIO()
    old = fmt._console
    fmt._console = Console(file=buf, no_color=True, width=100)
    try:
        func(*args, **kwargs)
    finally:
        fmt._console = old
    return buf.getvalue()


@pytest.fixture
def isolated(tmp_path, monkeypatch):
    """No global config, and a scripted client instead of a real model."""
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg"))
    turns = []
    real_build = agent.build_conversation

    def fake_build(args, renderer, report=None):
        if args.model is None and args.provider == "lmstudio":
            args.model = "local-model"
        conv = real_build(args, renderer, report)
        conv.client = ScriptedClient(turns)
        return conv

    monkeypatch.setattr(agent, "build_conversation", fake_build)
    monkeypatch.setattr(agent, "setup_logging", lambda debug: None)
    return turns


def _main(monkeypatch, *argv):
    monkeypatch.setattr(sys, "argv", ["skein", *argv])
    agent.main()


class TestParser:
    def test_config_options_default_to_unset(self):
        args = agent.build_parser().parse_args(["q"])
        assert args.model is _UNSET
        assert args.max_turns is _UNSET
        assert args.approval_mode is _UNSET
        assert args.base_dir == "."
        assert args.report is None

    def test_prompt_flags_exclusive(self):
        with pytest.raises(SystemExit):
            agent.build_parser().parse_args(["--system-prompt", "x", "--no-system-prompt", "q"])

    def test_approval_mode_choices(self):
        with pytest.raises(SystemExit):
            agent.build_parser().parse_args(["--approval-mode", "sometimes", "q"])


class TestMain:
    def test_init_config(self, monkeypatch, capsys):
        with pytest.raises(SystemExit) as exc:
            _main(monkeypatch, "--init-config", "--project")
        assert exc.value.code == 0
        assert "<project>/skein.toml" in capsys.readouterr().out

    def test_project_requires_init_config(self, monkeypatch):
        with pytest.raises(SystemExit) as exc:
            _main(monkeypatch, "--project", "q")
        assert exc.value.code == 2

    def test_question_required(self, isolated, monkeypatch):
        with pytest.raises(SystemExit) as exc:
            _main(monkeypatch)
        assert exc.value.code == 2

    def test_report_incompatible_with_repl(self, isolated, monkeypatch, tmp_path):
        with pytest.raises(SystemExit):
            _main(monkeypatch, "--repl", "--report", str(tmp_path / "r.json"))

    def test_bad_config_exits_1(self, isolated, monkeypatch, tmp_path):
        (tmp_path / "skein.toml").write_text("max_turns = 0\n")
        with pytest.raises(SystemExit) as exc:
            _main(monkeypatch, "--base-dir", str(tmp_path), "q")
        assert exc.value.code == 1

    def test_quiet_prints_answer(self, isolated, monkeypatch, tmp_path, capsys):
        isolated.append(_say("forty-two"))
        _main(monkeypatch, "--base-dir", str(tmp_path), "-q", "meaning?")
        assert capsys.readouterr().out.strip() == "forty-two"
        assert "forty-two" in (tmp_path / ".skein" / "HISTORY.md").read_text()

    def test_no_history(self, isolated, monkeypatch, tmp_path):
        isolated.append(_say("x"))
        _main(monkeypatch, "--base-dir", str(tmp_path), "-q", "--no-history", "q")
        assert not (tmp_path / ".skein" / "HISTORY.md").exists()

    def test_report_written(self, isolated, monkeypatch, tmp_path):
        isolated.append(_say("done"))
        report = tmp_path / "report.json"
        _main(monkeypatch, "--base-dir", str(tmp_path), "-q", "--report", str(report), "task")
        data = json.loads(report.read_text())
        assert data["task"] == "task"
        assert data["result"]["outcome"] == "success"
        assert data["stats"]["llm_calls"] == 1

    def test_exhausted_exit_code(self, isolated, monkeypatch, tmp_path):
        call = StreamChunk(tool_calls=[ToolCallFragment(0, "c1", "list_files", '{"pattern": "*"}')])
        isolated.append([call])
        with pytest.raises(SystemExit) as exc:
            _main(monkeypatch, "--base-dir", str(tmp_path), "-q", "--max-turns", "1", "go")
        assert exc.value.code == 2

    def test_missing_api_key_is_error(self, isolated, monkeypatch, tmp_path, capsys):
        monkeypatch.delenv("OPENROUTER_API_KEY", raising=False)
        report = tmp_path / "r.json"
        with pytest.raises(SystemExit) as exc:
            _main(
                monkeypatch, "--base-dir", str(tmp_path), "--provider", "openrouter",
                "--model", "m", "--report", str(report), "q",
            )
        assert exc.value.code == 1
        assert "OPENROUTER_API_KEY" in capsys.readouterr().err
        assert json.loads(report.read_text())["result"]["outcome"] == "error"

    def test_yolo_flag(self, isolated, monkeypatch, tmp_path):
        args_seen = {}
        real = agent.build_conversation

        def spy(args, renderer, report=None):
            args_seen["mode"] = args.approval_mode
            return real(args, renderer, report)

        monkeypatch.setattr(agent, "build_conversation", spy)
        isolated.append(_say("ok"))
        _main(monkeypatch, "--base-dir", str(tmp_path), "-q", "--yolo", "q")
        assert args_seen["mode"] == "yolo"


def _request(name="read_file"):
    return ToolCallRequest("1", name, {"file_path": "a.py"})


class TestConsoleRenderer:
    def test_shows_each_state_once(self, tmp_path):
        tool = build_registry(str(tmp_path)).get_tool("read_file")
        executing = ExecutingCall(_request(), tool, time.monotonic())
        done = SuccessCall(_request(), {"content": "1: import os\n2: ..."}, 1500)
        renderer = agent.ConsoleRenderer(verbose=True)

        out = _capture(renderer.update, (executing,))
        out += _capture(renderer.update, (executing,))
        out += _capture(renderer.update, (done,))
        assert out.count("read_file") == 2
        assert '"file_path": "a.py"' in out
        assert "1: import os" in out
        assert "1.5s" in out

    def test_quiet_renders_nothing(self):
        done = SuccessCall(_request(), {"content": "x"}, 1)
        assert _capture(agent.ConsoleRenderer(verbose=False).update, (done,)) == ""

    def test_error_event_always_shown(self):
        from skein.turn import Error

        out = _capture(agent.ConsoleRenderer(verbose=False).event, Error("LLM call failed"))
        assert "LLM call failed" in out


class TestConsoleConfirmer:
    def _call(self):
        details = ConfirmationDetails("Run rm", "rm -rf build", "exec")
        tool = SimpleNamespace(modifiable=False)
        return AwaitingApprovalCall(_request("run_command"), tool, time.monotonic(), details)

    def test_non_interactive_rejects(self):
        confirmer = agent.ConsoleConfirmer(interactive=False)
        result = {}

        def go():
            result["outcome"] = asyncio.run(confirmer.decide(self._call()))

        out = _capture(go)
        assert result["outcome"] == ConfirmationOutcome.CANCEL
        assert "rm -rf build" in out
        assert "non-interactive" in out

    def test_interactive_answer(self):
        confirmer = agent.ConsoleConfirmer(interactive=True)
        answers = iter(["what?", "a"])

        async def prompt_async(text):
            return next(answers)

        confirmer._session = SimpleNamespace(prompt_async=prompt_async)
        outcome = asyncio.run(confirmer.decide(self._call()))
        assert outcome == ConfirmationOutcome.PROCEED_ALWAYS

    def test_modify_not_offered_for_unmodifiable(self):
        confirmer = agent.ConsoleConfirmer(interactive=True)
        answers = iter(["m", "n"])

        async def prompt_async(text):
            return next(answers)

        confirmer._session = SimpleNamespace(prompt_async=prompt_async)
        assert asyncio.run(confirmer.decide(self._call())) == ConfirmationOutcome.CANCEL

    def test_eof_cancels(self):
        confirmer = agent.ConsoleConfirmer(interactive=True)

        async def prompt_async(text):
            raise EOFError

        confirmer._session = SimpleNamespace(prompt_async=prompt_async)
        assert asyncio.run(confirmer.decide(self._call())) == ConfirmationOutcome.CANCEL


class TestReplCommands:
    def _conv(self, turns=()):
        registry = ToolRegistry()
        return Conversation(
            ScriptedClient(list(turns)),
            registry,
            ToolScheduler(registry, approval_mode=ApprovalMode.YOLO),
            system_prompt="sys",
        )

    def test_clear(self):
        conv = self._conv()
        conv.history.append({"role": "user", "content": "x"})
        out = _capture(agent._repl_clear, conv)
        assert "1 messages removed" in out
        assert len(conv.history) == 3

    def test_compress(self):
        conv = self._conv()
        for i in range(3):
            conv.history.append({"role": "user", "content": f"q{i}"})
            conv.history.append({"role": "assistant", "content": f"a{i}"})
        out = _capture(lambda: asyncio.run(agent._repl_compress(conv)))
        assert "9 -> 3 messages" in out

    def test_compress_nothing(self):
        conv = self._conv()
        conv.history = conv.history[:1]
        out = _capture(lambda: asyncio.run(agent._repl_compress(conv)))
        assert "nothing was compressed" in out

    def test_help(self):
        out = _capture(agent._repl_help)
        assert "/compress" in out
        assert "/clear" in out
