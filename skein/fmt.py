"""ANSI-formatted output using Rich.

Diagnostics go to stderr. Streamed assistant text goes to stdout.
"""

from rich.console import Console
from rich.markup import escape
from rich.rule import Rule
from rich.text import Text

_console = Console(stderr=True)
_out = Console(highlight=False, markup=False)
_streaming = False


def init(*, color: bool = False, no_color: bool = False) -> None:
    """Reconfigure the module-level consoles from CLI flags.

    Call once at startup, before any output.
    """
    global _console, _out
    kwargs: dict = {}
    if color:
        kwargs["force_terminal"] = True
        kwargs["no_color"] = False
    if no_color:
        kwargs["no_color"] = True
    _console = Console(stderr=True, **kwargs)
    _out = Console(highlight=False, markup=False, **kwargs)


def console() -> Console:
    """The stderr console, for handlers that need to share it."""
    return _console


# -- Assistant text ----------------------------------------------------------


def stream_text(text: str) -> None:
    global _streaming
    _streaming = True
    _out.print(text, end="", soft_wrap=True)


def end_stream() -> None:
    """Terminate a streamed line, if one is open."""
    global _streaming
    if _streaming:
        _out.print()
        _streaming = False


# -- Turn structure ----------------------------------------------------------


def completion(turns: int, exit_code: str) -> None:
    if exit_code == "ok":
        _console.print(
            Text(f"  \u2713 Agent finished: {turns} turns", style="bold green")
        )
    else:
        _console.print(
            Text(f"  Agent finished: {turns} turns, exit={exit_code}", style="bold red")
        )


def compressed(before: int, after: int) -> None:
    _console.print(
        Text(f"  Chat history compressed: {before} -> {after} messages", style="cyan")
    )


# -- Tool calls --------------------------------------------------------------


def tool_call(name: str, args_json: str) -> None:
    header = Text()
    header.append("  \u25b6 ", style="bold magenta")
    header.append(name, style="bold magenta")
    _console.print(header)
    if args_json:
        for line in args_json.splitlines():
            _console.print(Text(f"    {line}", style="dim"))


def tool_result(name: str, elapsed: float, preview: str) -> None:
    header = Text()
    header.append(f"  \u2713 {name}", style="green")
    header.append(f"  {elapsed:.1f}s", style="green")
    _console.print(header)
    if preview:
        _console.print(Text(f"    {preview}", style="dim"))


def tool_error(name: str, msg: str) -> None:
    header = Text()
    header.append(f"  \u2717 {name}", style="bold red")
    header.append(f"  {msg}", style="red")
    _console.print(header)


def tool_cancelled(name: str, msg: str) -> None:
    header = Text()
    header.append(f"  \u2298 {name}", style="yellow")
    header.append(f"  {msg}", style="yellow")
    _console.print(header)


def confirmation(title: str, details: str, kind: str) -> None:
    _console.print(Rule(escape(title), style="yellow"))
    for line in details.splitlines():
        style = "dim"
        if kind == "edit" and line.startswith("+") and not line.startswith("+++"):
            style = "green"
        elif kind == "edit" and line.startswith("-") and not line.startswith("---"):
            style = "red"
        _console.print(Text(f"    {line}", style=style))


# -- Diagnostics -------------------------------------------------------------


def model_info(msg: str) -> None:
    _console.print(Text(f"  {msg}", style="dim"))


def info(msg: str) -> None:
    _console.print(Text(f"  {msg}", style="dim"))


def warning(msg: str) -> None:
    line = Text()
    line.append("  \u26a0 Warning: ", style="yellow")
    line.append(msg, style="yellow")
    _console.print(line)


def error(msg: str) -> None:
    line = Text()
    line.append("Error: ", style="bold red")
    line.append(msg, style="red")
    _console.print(line)


def repl_banner() -> None:
    _console.print(Text("Interactive mode. Type /exit or Ctrl-D to quit.", style="dim"))
