import argparse
import asyncio
import json
import logging
import signal
import sys
from datetime import datetime
from importlib import metadata
from pathlib import Path

from . import fmt
from .cancel import CancellationToken
from .config import _UNSET, apply_config_to_args, generate_config, load_config
from .driver import Conversation
from .editor import ArgumentEditor
from .llm import PROVIDERS, LLMClient, resolve_model_config
from .prompts import build_system_prompt
from .report import AgentError, ConfigError, ErrorReporter, ReportCollector
from .scheduler import (
    ApprovalDispatcher,
    CancelledCall,
    ConfirmationOutcome,
    ErrorCall,
    ExecutingCall,
    SuccessCall,
    ToolScheduler,
    is_terminal,
)
from .tools import ApprovalMode, build_registry
from .turn import ChatCompressed, ContentDelta, Error

logger = logging.getLogger(__name__)

MAX_ARG_LOG = 1000
MAX_PREVIEW = 120
MAX_HISTORY_SIZE = 500 * 1024  # 500KB
EXIT_INTERRUPTED = 130


def _safe_history_path(base_dir: str) -> Path:
    """Build history path, verify it resolves inside base_dir."""
    base = Path(base_dir).resolve()
    history_path = (Path(base_dir) / ".skein" / "HISTORY.md").resolve()
    if not history_path.is_relative_to(base):
        raise ValueError(f"history path {history_path} escapes base directory {base}")
    return history_path


def append_history(base_dir: str, question: str, answer: str) -> None:
    """Append a timestamped Q&A entry to .skein/HISTORY.md."""
    if not answer or not answer.strip():
        return

    try:
        history_path = _safe_history_path(base_dir)
    except ValueError:
        fmt.warning("history path escapes base directory, skipping write")
        return

    try:
        history_path.parent.mkdir(parents=True, exist_ok=True)

        current_size = history_path.stat().st_size if history_path.exists() else 0
        if current_size >= MAX_HISTORY_SIZE:
            fmt.warning("history file at capacity, skipping write")
            return

        q_display = question[:200] + "..." if len(question) > 200 else question
        timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        entry = f"---\n\n**{timestamp}** *{q_display}*\n\n{answer}\n\n"

        with history_path.open("a", encoding="utf-8") as f:
            f.write(entry)
    except OSError:
        fmt.warning("failed to write history entry")


def _first_line(text: str, limit: int = MAX_PREVIEW) -> str:
    line = text.strip().split("\n", 1)[0]
    return line[:limit] + "..." if len(line) > limit else line


class ConsoleRenderer:
    """Prints stream events and tool call progress."""

    def __init__(self, verbose: bool):
        self.verbose = verbose
        self._shown: dict[int, object] = {}

    def event(self, event) -> None:
        if isinstance(event, ContentDelta):
            if self.verbose:
                fmt.stream_text(event.value)
        elif isinstance(event, Error):
            fmt.end_stream()
            fmt.error(event.message)
        elif isinstance(event, ChatCompressed):
            if self.verbose:
                fmt.end_stream()
                fmt.compressed(event.original_count, event.new_count)

    def update(self, snapshot: tuple) -> None:
        if not self.verbose:
            return
        for call in snapshot:
            if id(call) in self._shown:
                continue
            name = call.request.name
            if isinstance(call, ExecutingCall):
                fmt.end_stream()
                args_json = json.dumps(call.request.args, indent=2)
                if len(args_json) > MAX_ARG_LOG:
                    args_json = args_json[:MAX_ARG_LOG] + "\n..."
                fmt.tool_call(name, args_json)
            elif isinstance(call, SuccessCall):
                fmt.end_stream()
                fmt.tool_result(
                    name, call.duration_ms / 1000, _first_line(call.response["content"])
                )
            elif isinstance(call, ErrorCall):
                fmt.end_stream()
                fmt.tool_error(name, _first_line(call.response["content"]))
            elif isinstance(call, CancelledCall):
                fmt.end_stream()
                fmt.tool_cancelled(name, call.response["content"])
            else:
                continue
            self._shown[id(call)] = call
        if all(is_terminal(c) for c in snapshot):
            self._shown.clear()

    def finish(self) -> None:
        fmt.end_stream()


class ConsoleConfirmer:
    """Asks the user about tool calls that need approval."""

    CHOICES = {
        "y": ConfirmationOutcome.PROCEED_ONCE,
        "a": ConfirmationOutcome.PROCEED_ALWAYS,
        "m": ConfirmationOutcome.MODIFY,
        "n": ConfirmationOutcome.CANCEL,
    }

    def __init__(self, interactive: bool):
        self.interactive = interactive
        self._session = None

    async def decide(self, call):
        fmt.end_stream()
        details = call.details
        fmt.confirmation(details.title, details.prompt, details.kind)
        if not self.interactive:
            fmt.warning(
                f"{call.request.name} needs confirmation; rejected in non-interactive mode"
            )
            return ConfirmationOutcome.CANCEL

        from prompt_toolkit import PromptSession
        from prompt_toolkit.formatted_text import FormattedText

        if self._session is None:
            self._session = PromptSession()
        allowed = "yamn" if call.tool.modifiable else "yan"
        label = "/".join(allowed)
        prompt_text = FormattedText(
            [("bold fg:ansiyellow", f"Allow {call.request.name}? [{label}] ")]
        )
        while True:
            try:
                answer = await self._session.prompt_async(prompt_text)
            except (EOFError, KeyboardInterrupt):
                return ConfirmationOutcome.CANCEL
            choice = answer.strip().lower()[:1]
            if choice and choice in allowed:
                return self.CHOICES[choice]
            fmt.warning(f"please answer one of: {', '.join(allowed)}")


def build_parser():
    """Build and return the argument parser.

    Options that can also come from config files default to _UNSET so
    apply_config_to_args() can tell them apart from explicit CLI values.
    """
    parser = argparse.ArgumentParser(
        prog="skein",
        usage="%(prog)s [options] <question>\n       %(prog)s --repl [options] [question]",
        description="A CLI coding agent with supervised tool calls and multi-provider LLM support.",
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Print the version and exit.",
    )
    parser.add_argument(
        "question", nargs="?", default=None, help="The question or task for the model."
    )
    parser.add_argument(
        "--repl",
        action="store_true",
        help="Start an interactive session instead of answering a single question.",
    )
    parser.add_argument(
        "--provider",
        choices=list(PROVIDERS),
        default=_UNSET,
        help="LLM provider: lmstudio (local), openrouter, xai, or generic (OpenAI-compatible).",
    )
    parser.add_argument(
        "--model",
        type=str,
        default=_UNSET,
        help="Model identifier (default for xai: grok-3-latest).",
    )
    parser.add_argument(
        "--api-key",
        type=str,
        default=_UNSET,
        help="API key for the provider (overrides env var).",
    )
    parser.add_argument(
        "--base-url",
        default=_UNSET,
        help="Server base URL (default: http://127.0.0.1:1234 for lmstudio).",
    )
    parser.add_argument(
        "--max-output-tokens",
        type=int,
        default=_UNSET,
        help="Maximum output tokens per response (default: provider default).",
    )
    parser.add_argument(
        "--temperature",
        type=float,
        default=_UNSET,
        help="Sampling temperature (default: provider default).",
    )
    parser.add_argument(
        "--top-p",
        type=float,
        default=_UNSET,
        help="Top-p (nucleus) sampling (default: provider default).",
    )
    parser.add_argument(
        "--seed",
        type=int,
        default=_UNSET,
        help="Random seed for reproducible outputs (optional, model support varies).",
    )
    parser.add_argument(
        "--max-turns",
        type=int,
        default=_UNSET,
        help="Maximum model turns per question (default: 100).",
    )
    parser.add_argument(
        "--base-dir",
        type=str,
        default=".",
        help="Base directory for file tools (default: current directory).",
    )
    parser.add_argument(
        "--approval-mode",
        choices=[m.value for m in ApprovalMode],
        default=_UNSET,
        help="default: ask before edits and commands; auto_edit: only ask before "
        "commands; yolo: never ask.",
    )
    parser.add_argument(
        "--yolo",
        action="store_true",
        help="Shortcut for --approval-mode yolo.",
    )
    parser.add_argument(
        "--allowed-commands",
        type=str,
        default=_UNSET,
        help='Comma-separated command basenames that run without asking (e.g. "ls,git").',
    )

    prompt_group = parser.add_mutually_exclusive_group()
    prompt_group.add_argument(
        "--system-prompt",
        type=str,
        default=_UNSET,
        help="Replace the built-in system prompt.",
    )
    prompt_group.add_argument(
        "--no-system-prompt",
        action="store_true",
        default=_UNSET,
        help="Omit the system message entirely.",
    )

    parser.add_argument(
        "--no-instructions",
        action="store_true",
        default=_UNSET,
        help="Don't load SKEIN.md or AGENT.md from the base directory.",
    )
    parser.add_argument(
        "--report",
        type=str,
        default=None,
        metavar="FILE",
        help="Write a JSON run report to FILE. Incompatible with --repl.",
    )
    parser.add_argument(
        "--no-history",
        action="store_true",
        default=_UNSET,
        help="Don't write responses to .skein/HISTORY.md",
    )

    color_group = parser.add_mutually_exclusive_group()
    color_group.add_argument(
        "--color",
        action="store_true",
        default=_UNSET,
        help="Force ANSI color even when stderr is not a TTY.",
    )
    color_group.add_argument(
        "--no-color",
        action="store_true",
        default=_UNSET,
        help="Disable ANSI color even when stderr is a TTY.",
    )

    parser.add_argument(
        "-q",
        "--quiet",
        action="store_true",
        default=_UNSET,
        help="Suppress all diagnostics; only print the final result.",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging.",
    )
    parser.add_argument(
        "--init-config",
        action="store_true",
        help="Print a commented config template and exit.",
    )
    parser.add_argument(
        "--project",
        action="store_true",
        help="With --init-config, print the project (skein.toml) template.",
    )

    return parser


def setup_logging(debug: bool) -> None:
    from rich.logging import RichHandler

    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=fmt.console(), show_path=False)],
        force=True,
    )
    if not debug:
        for name in ("LiteLLM", "litellm", "httpx"):
            logging.getLogger(name).setLevel(logging.WARNING)


def main():
    parser = build_parser()
    args = parser.parse_args()

    if args.version:
        try:
            version = metadata.version("skein")
        except metadata.PackageNotFoundError:
            version = "unknown"
        print(version)
        sys.exit(0)

    if args.init_config:
        print(generate_config(project=args.project))
        sys.exit(0)
    if args.project:
        parser.error("--project requires --init-config")

    try:
        config = load_config(args.base_dir)
    except ConfigError as e:
        fmt.error(str(e))
        sys.exit(1)
    apply_config_to_args(args, config)

    if args.yolo:
        args.approval_mode = ApprovalMode.YOLO.value
    args.verbose = not args.quiet

    if not args.repl and args.question is None:
        parser.error("question is required (or use --repl)")
    if args.report and args.repl:
        parser.error("--report is incompatible with --repl")
    if not Path(args.base_dir).is_dir():
        parser.error(f"--base-dir is not a directory: {args.base_dir}")

    fmt.init(color=args.color, no_color=args.no_color)
    setup_logging(args.debug)

    report = ReportCollector() if args.report else None

    def _write_report(outcome, answer=None, exit_code=0, turns=None, error_message=None):
        if not report:
            return
        report.finalize(
            task=args.question or "",
            model=getattr(args, "_resolved_model_id", args.model or "unknown"),
            provider=args.provider,
            settings={
                "temperature": args.temperature,
                "top_p": args.top_p,
                "seed": args.seed,
                "max_turns": args.max_turns,
                "max_output_tokens": args.max_output_tokens,
                "approval_mode": args.approval_mode,
                "compress_after_messages": args.compress_after_messages,
                "compress_after_tokens": args.compress_after_tokens,
            },
            outcome=outcome,
            answer=answer,
            exit_code=exit_code,
            turns=turns if turns is not None else report.max_turn_seen,
            error_message=error_message,
        )
        try:
            report.write(args.report)
        except OSError as e:
            fmt.error(f"Failed to write report to {args.report}: {e}")
            return
        if args.verbose:
            fmt.info(f"Report written to {args.report}")

    try:
        exit_code = asyncio.run(_run_main(args, report, _write_report))
    except AgentError as e:
        fmt.error(str(e))
        _write_report("error", exit_code=1, error_message=str(e))
        sys.exit(1)
    if exit_code:
        sys.exit(exit_code)


def _interactive_stdin() -> bool:
    return sys.stdin.isatty()


def build_conversation(args, renderer: ConsoleRenderer, report=None) -> Conversation:
    """Wire client, tools, scheduler and driver from resolved CLI args."""
    model_config = resolve_model_config(
        args.provider,
        args.model,
        args.api_key,
        args.base_url,
        max_output_tokens=args.max_output_tokens,
        temperature=args.temperature,
        top_p=args.top_p,
        seed=args.seed,
    )
    args._resolved_model_id = model_config.model
    if args.verbose:
        fmt.model_info(f"Using model {model_config.model} via {model_config.provider}")

    allowed = {c.strip() for c in (args.allowed_commands or "").split(",") if c.strip()}
    registry = build_registry(args.base_dir, allowed)

    system_prompt = None
    if not args.no_system_prompt:
        system_prompt, _ = build_system_prompt(
            args.base_dir,
            system_prompt=args.system_prompt,
            no_instructions=args.no_instructions,
            verbose=args.verbose,
        )

    scheduler = ToolScheduler(
        registry,
        approval_mode=ApprovalMode(args.approval_mode),
        telemetry=report,
        editor=ArgumentEditor(args.editor),
    )
    confirmer = ConsoleConfirmer(interactive=_interactive_stdin())
    scheduler.on_update = ApprovalDispatcher(
        scheduler, confirmer.decide, forward=renderer.update
    )
    return Conversation(
        LLMClient(model_config),
        registry,
        scheduler,
        system_prompt=system_prompt,
        max_turns=args.max_turns,
        compress_after_messages=args.compress_after_messages,
        compress_after_tokens=args.compress_after_tokens,
        error_reporter=ErrorReporter(),
        report=report,
    )


def _install_sigint(token: CancellationToken) -> bool:
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, token.cancel, "interrupted")
    except (NotImplementedError, RuntimeError):
        return False
    return True


def _remove_sigint() -> None:
    try:
        asyncio.get_running_loop().remove_signal_handler(signal.SIGINT)
    except (NotImplementedError, RuntimeError):
        pass


async def run_question(conv: Conversation, renderer: ConsoleRenderer, question: str):
    """Run one question through the driver; Ctrl-C cancels it.

    Returns (result, token).
    """
    token = CancellationToken()
    installed = _install_sigint(token)
    try:
        async for event in conv.converse(question, token):
            renderer.event(event)
    finally:
        renderer.finish()
        if installed:
            _remove_sigint()
    return conv.result, token


async def _run_main(args, report, _write_report) -> int:
    renderer = ConsoleRenderer(args.verbose)
    conv = build_conversation(args, renderer, report)
    no_history = args.no_history

    if not args.repl:
        result, token = await run_question(conv, renderer, args.question)
        if token.cancelled:
            fmt.warning("interrupted, question aborted.")
            _write_report(
                "interrupted",
                answer=result.answer,
                exit_code=EXIT_INTERRUPTED,
                turns=result.turns,
            )
            return EXIT_INTERRUPTED
        answer = result.answer
        if not no_history and answer:
            append_history(args.base_dir, args.question, answer)
        if answer is not None and not args.verbose:
            print(answer)
        _write_report(
            "exhausted" if result.exhausted else "success",
            answer=answer,
            exit_code=2 if result.exhausted else 0,
            turns=result.turns,
        )
        if result.exhausted:
            fmt.warning("max turns reached, agent stopped.")
            return 2
        if args.verbose:
            fmt.completion(result.turns, "ok")
        return 0

    if args.question:
        await _repl_ask(conv, renderer, args, args.question)
    await repl_loop(conv, renderer, args)
    return 0


async def _repl_ask(conv: Conversation, renderer: ConsoleRenderer, args, line: str) -> None:
    result, token = await run_question(conv, renderer, line)
    if token.cancelled:
        fmt.warning("interrupted, question aborted.")
        return
    if not args.no_history and result.answer:
        append_history(args.base_dir, line, result.answer)
    if result.answer is not None and not args.verbose:
        print(result.answer)
    if result.exhausted:
        fmt.warning("max turns reached for this question.")


def _repl_help() -> None:
    """Print available REPL commands."""
    fmt.info(
        "Available commands:\n"
        "  /help              Show this help message\n"
        "  /clear             Reset conversation to initial state\n"
        "  /compress          Summarize the conversation to free up context\n"
        "  /exit, /quit       Exit the REPL"
    )


def _repl_clear(conv: Conversation) -> None:
    dropped = conv.reset()
    fmt.info(f"context cleared ({dropped} messages removed)")


async def _repl_compress(conv: Conversation) -> None:
    token = CancellationToken()
    installed = _install_sigint(token)
    try:
        compressed = await conv.force_compress(token)
    finally:
        if installed:
            _remove_sigint()
    if compressed is None:
        fmt.info("nothing was compressed")
    else:
        fmt.compressed(compressed.original_count, compressed.new_count)


async def repl_loop(conv: Conversation, renderer: ConsoleRenderer, args) -> None:
    """Interactive read-eval-print loop."""
    from prompt_toolkit import PromptSession
    from prompt_toolkit.formatted_text import FormattedText
    from prompt_toolkit.history import FileHistory

    history_path = Path(args.base_dir) / ".skein" / "repl_history"
    history_path.parent.mkdir(parents=True, exist_ok=True)
    session = PromptSession(
        history=FileHistory(str(history_path)),
        enable_history_search=True,
    )
    prompt_text = FormattedText([("bold fg:ansigreen", "skein> ")])

    if args.verbose:
        fmt.repl_banner()

    while True:
        try:
            print(file=sys.stderr)  # blank line before prompt
            line = await session.prompt_async(prompt_text)
        except (EOFError, KeyboardInterrupt):
            print(file=sys.stderr)  # newline after ^D / ^C
            break

        line = line.strip()
        if not line:
            continue

        # Only known commands are intercepted; unknown /foo goes to the model
        cmd = line.split(None, 1)[0].lower()
        if cmd in ("/exit", "/quit"):
            break
        if cmd == "/help":
            _repl_help()
            continue
        if cmd == "/clear":
            _repl_clear(conv)
            continue
        if cmd == "/compress":
            await _repl_compress(conv)
            continue

        await _repl_ask(conv, renderer, args, line)


if __name__ == "__main__":
    main()
