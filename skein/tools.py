"""Tool registry and built-in tool implementations for the agent."""

import asyncio
import difflib
import fnmatch
import json
import os
import re
import shlex
import shutil
import signal
import subprocess
import sys
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable

MAX_OUTPUT_BYTES = 50 * 1024  # 50 KB
MAX_LINE_LENGTH = 2000
BINARY_CHECK_BYTES = 8 * 1024  # 8 KB
MAX_LIST_RESULTS = 100
MAX_GREP_MATCHES = 100
MAX_COMMAND_OUTPUT = 10 * 1024
MAX_TIMEOUT = 120
MAX_PREVIEW_LINES = 40

_KILL_WAIT_TIMEOUT = 5  # seconds to wait for process to die after kill signals
_POLL_INTERVAL = 0.1


class ApprovalMode(str, Enum):
    """How eagerly mutating tool calls are approved without asking."""

    DEFAULT = "default"
    AUTO_EDIT = "auto_edit"
    YOLO = "yolo"


class ConfirmationOutcome(str, Enum):
    """The user's answer to a confirmation request."""

    PROCEED_ONCE = "proceed_once"
    PROCEED_ALWAYS = "proceed_always"
    MODIFY = "modify"
    CANCEL = "cancel"


@dataclass
class ToolResult:
    content: Any
    is_error: bool = False


@dataclass
class ConfirmationDetails:
    """What to show the user before a tool runs.

    on_confirm is called with the chosen ConfirmationOutcome once the user
    answers, so a tool can remember "always allow" decisions.
    """

    title: str
    prompt: str
    kind: str
    on_confirm: Callable[[ConfirmationOutcome], None] | None = None


class Tool:
    """Base class for anything the model can call."""

    name: str = ""
    description: str = ""
    parameters: dict = {"type": "object", "properties": {}}
    modifiable: bool = False

    def schema(self) -> dict:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }

    def requires_confirmation(
        self, args: dict, approval_mode: ApprovalMode
    ) -> ConfirmationDetails | None:
        return None

    async def execute(self, args: dict, token) -> ToolResult:
        missing = [k for k in self.parameters.get("required", []) if k not in args]
        if missing:
            return ToolResult(
                f"error: missing required argument(s): {', '.join(missing)}",
                is_error=True,
            )
        result = await asyncio.to_thread(self.run, args, token)
        return ToolResult(result, is_error=result.startswith("error:"))

    def run(self, args: dict, token) -> str:
        raise NotImplementedError


class ToolRegistry:
    """Name -> Tool lookup. Schemas are rebuilt on every call."""

    def __init__(self, tools: list[Tool] | None = None):
        self._tools: dict[str, Tool] = {}
        for tool in tools or []:
            self.register(tool)

    def register(self, tool: Tool) -> None:
        if not tool.name:
            raise ValueError("tool has no name")
        self._tools[tool.name] = tool

    def unregister(self, name: str) -> None:
        self._tools.pop(name, None)

    def get_tool(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def get_tool_schemas(self) -> list[dict]:
        return [tool.schema() for tool in self._tools.values()]

    def names(self) -> list[str]:
        return list(self._tools)


# ---------------------------------------------------------------------------
# Path sandbox
# ---------------------------------------------------------------------------


def safe_resolve(file_path: str, base_dir: str) -> Path:
    """Resolve a file path, ensuring it stays within base_dir.

    Symlinks are resolved for both the base directory and the target.

    Raises:
        ValueError: If the resolved path escapes the base directory.
    """
    base = Path(base_dir).resolve()
    if Path(file_path).is_absolute():
        resolved = Path(file_path).resolve()
    else:
        resolved = (base / file_path).resolve()

    if resolved.is_relative_to(base):
        return resolved

    raise ValueError(
        f"Path {file_path!r} resolves to {resolved}, "
        f"which is outside base directory {base}"
    )


def _is_binary(path: Path) -> bool:
    with open(path, "rb") as f:
        return b"\x00" in f.read(BINARY_CHECK_BYTES)


def _glob_match(rel_path: str, pattern: str) -> bool:
    if fnmatch.fnmatch(rel_path, pattern):
        return True
    # "**/" also matches zero directories
    return pattern.startswith("**/") and fnmatch.fnmatch(rel_path, pattern[3:])


def _walk_files(root: Path):
    for dirpath, dirs, files in os.walk(root):
        dirs[:] = [d for d in dirs if d != ".git"]
        for filename in files:
            yield Path(dirpath) / filename


def _relative(path: Path, base: Path) -> str:
    try:
        return path.relative_to(base).as_posix()
    except ValueError:
        return str(path)


def _diff_preview(old: str, new: str, label: str) -> str:
    lines = list(
        difflib.unified_diff(
            old.splitlines(),
            new.splitlines(),
            fromfile=f"a/{label}",
            tofile=f"b/{label}",
            lineterm="",
        )
    )
    if len(lines) > MAX_PREVIEW_LINES:
        extra = len(lines) - MAX_PREVIEW_LINES
        lines = lines[:MAX_PREVIEW_LINES] + [f"... ({extra} more diff lines)"]
    return "\n".join(lines) or "(no changes)"


class FileTool(Tool):
    """A tool confined to one base directory."""

    def __init__(self, base_dir: str):
        self.base_dir = base_dir


# ---------------------------------------------------------------------------
# Read-only tools
# ---------------------------------------------------------------------------


class ReadFileTool(FileTool):
    name = "read_file"
    description = (
        "Read the contents of a file or list a directory. "
        "For files, returns lines prefixed with line numbers. "
        "Use offset/limit to paginate. "
        "For directories, returns a listing with / suffix for subdirectories."
    )
    parameters = {
        "type": "object",
        "properties": {
            "file_path": {
                "type": "string",
                "description": "Path to the file or directory to read.",
            },
            "offset": {
                "type": "integer",
                "description": "1-based line number to start reading from. Defaults to 1.",
                "default": 1,
            },
            "limit": {
                "type": "integer",
                "description": "Maximum number of lines to return. Defaults to 2000.",
                "default": 2000,
            },
        },
        "required": ["file_path"],
    }

    def run(self, args: dict, token) -> str:
        file_path = args["file_path"]
        offset = args.get("offset", 1)
        limit = args.get("limit", 2000)
        if not isinstance(offset, int) or not isinstance(limit, int):
            return "error: offset and limit must be integers"
        try:
            resolved = safe_resolve(file_path, self.base_dir)
        except ValueError as exc:
            return f"error: {exc}"

        if not resolved.exists():
            return f"error: path does not exist: {file_path}"

        if resolved.is_dir():
            return self._list_dir(resolved)

        try:
            if _is_binary(resolved):
                return f"error: binary file detected: {file_path}"
            text = resolved.read_text(encoding="utf-8")
        except UnicodeDecodeError as exc:
            return f"error: failed to decode {file_path} as UTF-8: {exc}"
        except OSError as exc:
            return f"error: {exc}"

        lines = text.splitlines()
        start = max(offset - 1, 0)
        selected = lines[start : start + limit]

        output_parts = []
        total_bytes = 0
        for i, line in enumerate(selected, start=start + 1):
            numbered = f"{i}: {line[:MAX_LINE_LENGTH]}"
            encoded_len = len(numbered.encode("utf-8")) + 1
            if total_bytes + encoded_len > MAX_OUTPUT_BYTES:
                break
            output_parts.append(numbered)
            total_bytes += encoded_len

        remaining = len(lines) - (start + len(output_parts))
        result = "\n".join(output_parts)
        if remaining > 0:
            next_offset = start + len(output_parts) + 1
            result += f"\n[{remaining} more lines, use offset={next_offset} to continue]"
        return result

    def _list_dir(self, resolved: Path) -> str:
        output_parts = []
        total_bytes = 0
        try:
            for child in sorted(resolved.iterdir()):
                name = child.name + ("/" if child.is_dir() else "")
                encoded_len = len(name.encode("utf-8")) + 1
                if total_bytes + encoded_len > MAX_OUTPUT_BYTES:
                    output_parts.append("[truncated at 50KB]")
                    break
                output_parts.append(name)
                total_bytes += encoded_len
        except PermissionError as exc:
            return f"error: {exc}"
        return "\n".join(output_parts)


class ListFilesTool(FileTool):
    name = "list_files"
    description = (
        "Recursively list files matching a glob pattern. "
        "Returns paths sorted by modification time (newest first), "
        "relative to the base directory."
    )
    parameters = {
        "type": "object",
        "properties": {
            "pattern": {
                "type": "string",
                "description": 'Glob pattern to match files, e.g. "**/*.py".',
            },
            "path": {
                "type": "string",
                "description": 'Directory to search in. Defaults to "." (base directory).',
                "default": ".",
            },
        },
        "required": ["pattern"],
    }

    def run(self, args: dict, token) -> str:
        pattern = args["pattern"]
        path = args.get("path", ".")
        if Path(pattern).is_absolute() or ".." in Path(pattern).parts:
            return f"error: pattern {pattern!r} must be relative and must not contain '..'"
        try:
            root = safe_resolve(path, self.base_dir)
        except ValueError as exc:
            return f"error: {exc}"
        if not root.is_dir():
            return f"error: path is not a directory: {path}"

        base = Path(self.base_dir).resolve()
        matched = []
        for filepath in _walk_files(root):
            if token is not None and token.cancelled:
                return "error: cancelled"
            if _glob_match(filepath.relative_to(root).as_posix(), pattern):
                matched.append(filepath)

        if not matched:
            return "No files matched the pattern."

        matched.sort(key=lambda f: f.stat().st_mtime, reverse=True)
        truncated = len(matched) > MAX_LIST_RESULTS
        result = "\n".join(_relative(f, base) for f in matched[:MAX_LIST_RESULTS])
        if truncated:
            result += (
                f"\n(Results truncated: showing first {MAX_LIST_RESULTS} results. "
                "Use a more specific pattern or path.)"
            )
        return result


class GrepTool(FileTool):
    name = "grep"
    description = (
        "Search file contents for a regex pattern. "
        "Returns matches grouped by file with line numbers, "
        "sorted by file modification time (newest first)."
    )
    parameters = {
        "type": "object",
        "properties": {
            "pattern": {
                "type": "string",
                "description": "Python regex pattern to search for.",
            },
            "path": {
                "type": "string",
                "description": 'Directory to search in. Defaults to "." (base directory).',
                "default": ".",
            },
            "include": {
                "type": "string",
                "description": 'Glob pattern to filter filenames, e.g. "*.py".',
            },
        },
        "required": ["pattern"],
    }

    def run(self, args: dict, token) -> str:
        pattern = args["pattern"]
        path = args.get("path", ".")
        include = args.get("include")
        try:
            regex = re.compile(pattern)
        except re.error as exc:
            return f"error: invalid regex {pattern!r}: {exc}"
        try:
            root = safe_resolve(path, self.base_dir)
        except ValueError as exc:
            return f"error: {exc}"
        if not root.is_dir():
            return f"error: path is not a directory: {path}"

        base = Path(self.base_dir).resolve()
        matches: list[tuple[Path, int, str, float]] = []
        for filepath in _walk_files(root):
            if token is not None and token.cancelled:
                return "error: cancelled"
            if include and not fnmatch.fnmatch(filepath.name, include):
                continue
            try:
                if _is_binary(filepath):
                    continue
                text = filepath.read_text(encoding="utf-8")
                mtime = filepath.stat().st_mtime
            except (UnicodeDecodeError, OSError):
                continue
            for line_no, line in enumerate(text.splitlines(), start=1):
                if regex.search(line):
                    matches.append((filepath, line_no, line, mtime))

        if not matches:
            return "No matches found."

        matches.sort(key=lambda m: (-m[3], m[0], m[1]))
        total_found = len(matches)
        matches = matches[:MAX_GREP_MATCHES]

        grouped: OrderedDict[Path, list[tuple[int, str]]] = OrderedDict()
        for filepath, line_no, line_text, _ in matches:
            grouped.setdefault(filepath, []).append((line_no, line_text))

        output_parts = [f"Found {total_found} matches"]
        for filepath, file_matches in grouped.items():
            output_parts.append(f"\n{_relative(filepath, base)}:")
            for line_no, line_text in file_matches:
                output_parts.append(f"  Line {line_no}: {line_text[:MAX_LINE_LENGTH]}")

        result = "\n".join(output_parts)
        if total_found > MAX_GREP_MATCHES:
            result += (
                f"\n(Results truncated: showing first {MAX_GREP_MATCHES} matches. "
                "Use a more specific pattern or path.)"
            )
        return result


# ---------------------------------------------------------------------------
# Mutating tools
# ---------------------------------------------------------------------------


class _EditConfirmMixin:
    """Ask before editing files unless the mode or an earlier answer says not to."""

    always_allowed = False

    def _needs_asking(self, approval_mode: ApprovalMode) -> bool:
        if approval_mode in (ApprovalMode.AUTO_EDIT, ApprovalMode.YOLO):
            return False
        return not self.always_allowed

    def _remember(self, outcome: ConfirmationOutcome) -> None:
        if outcome == ConfirmationOutcome.PROCEED_ALWAYS:
            self.always_allowed = True


class WriteFileTool(_EditConfirmMixin, FileTool):
    name = "write_file"
    description = (
        "Create or overwrite a file with the given content, "
        "creating parent directories as needed."
    )
    parameters = {
        "type": "object",
        "properties": {
            "file_path": {"type": "string", "description": "Path to the file to write."},
            "content": {"type": "string", "description": "The content to write to the file."},
        },
        "required": ["file_path", "content"],
    }
    modifiable = True

    def requires_confirmation(self, args, approval_mode):
        if not self._needs_asking(approval_mode):
            return None
        file_path = args.get("file_path", "")
        old = ""
        try:
            resolved = safe_resolve(file_path, self.base_dir)
            if resolved.is_file():
                old = resolved.read_text(encoding="utf-8", errors="replace")
        except (ValueError, OSError):
            pass
        return ConfirmationDetails(
            title=f"Write {file_path}",
            prompt=_diff_preview(old, str(args.get("content", "")), file_path),
            kind="edit",
            on_confirm=self._remember,
        )

    def run(self, args: dict, token) -> str:
        file_path = args["file_path"]
        content = args["content"]
        if not isinstance(content, str):
            return "error: content must be a string"
        try:
            resolved = safe_resolve(file_path, self.base_dir)
        except ValueError as exc:
            return f"error: {exc}"
        try:
            resolved.parent.mkdir(parents=True, exist_ok=True)
            data = content.encode("utf-8")
            resolved.write_bytes(data)
        except OSError as exc:
            return f"error: {exc}"
        return f"Wrote {len(data)} bytes to {file_path}"


class EditFileTool(_EditConfirmMixin, FileTool):
    name = "edit_file"
    description = (
        "Make a targeted edit to an existing file by replacing old_string with new_string. "
        "old_string must match exactly and be unique unless replace_all is set. "
        "For creating new files, use write_file instead."
    )
    parameters = {
        "type": "object",
        "properties": {
            "file_path": {"type": "string", "description": "Path to the file to edit."},
            "old_string": {"type": "string", "description": "The exact text to find and replace."},
            "new_string": {"type": "string", "description": "The replacement text."},
            "replace_all": {
                "type": "boolean",
                "description": "Replace all occurrences.",
                "default": False,
            },
        },
        "required": ["file_path", "old_string", "new_string"],
    }
    modifiable = True

    def _apply(self, args: dict) -> tuple[Path, str, str]:
        """Return (path, old_content, new_content); raises ValueError on bad input."""
        file_path = args["file_path"]
        old_string = args["old_string"]
        new_string = args["new_string"]
        resolved = safe_resolve(file_path, self.base_dir)
        if not resolved.is_file():
            raise ValueError(f"file does not exist: {file_path}")
        if not old_string:
            raise ValueError("old_string must not be empty")
        try:
            content = resolved.read_text(encoding="utf-8")
        except (UnicodeDecodeError, OSError) as exc:
            raise ValueError(str(exc)) from exc
        count = content.count(old_string)
        if count == 0:
            raise ValueError(f"old_string not found in {file_path}")
        if count > 1 and not args.get("replace_all", False):
            raise ValueError(
                f"old_string occurs {count} times in {file_path}; "
                "add more context or set replace_all"
            )
        return resolved, content, content.replace(old_string, new_string)

    def requires_confirmation(self, args, approval_mode):
        if not self._needs_asking(approval_mode):
            return None
        file_path = args.get("file_path", "")
        try:
            _, old, new = self._apply(args)
            prompt = _diff_preview(old, new, file_path)
        except (KeyError, ValueError) as exc:
            # Let execute() report the problem; still ask before running.
            prompt = f"(edit cannot be previewed: {exc})"
        return ConfirmationDetails(
            title=f"Edit {file_path}",
            prompt=prompt,
            kind="edit",
            on_confirm=self._remember,
        )

    def run(self, args: dict, token) -> str:
        try:
            resolved, _, new_content = self._apply(args)
        except ValueError as exc:
            return f"error: {exc}"
        try:
            resolved.write_text(new_content, encoding="utf-8")
        except OSError as exc:
            return f"error: {exc}"
        return f"Edited {args['file_path']}"


# ---------------------------------------------------------------------------
# Command execution
# ---------------------------------------------------------------------------


def _kill_process_tree(proc: subprocess.Popen) -> None:
    """Kill a process and its descendants, then wait for exit."""
    if sys.platform != "win32":
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except OSError:
            pass  # already exited
    else:
        try:
            subprocess.run(
                ["taskkill", "/T", "/F", "/PID", str(proc.pid)],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                timeout=5,
            )
        except (OSError, subprocess.TimeoutExpired):
            pass
    try:
        proc.kill()
    except OSError:
        pass
    try:
        proc.wait(timeout=_KILL_WAIT_TIMEOUT)
    except subprocess.TimeoutExpired:
        pass  # unkillable


def _capture_process(proc: subprocess.Popen, timeout: int, token) -> str:
    """Collect output until exit, timeout or cancellation."""
    chunks: list[bytes] = []

    def _reader():
        try:
            while True:
                chunk = proc.stdout.read(4096)
                if not chunk:
                    break
                chunks.append(chunk)
        except (OSError, ValueError):
            pass  # pipe closed after kill

    reader_thread = threading.Thread(target=_reader, daemon=True)
    reader_thread.start()

    deadline = time.monotonic() + timeout
    stopped = None
    while proc.poll() is None:
        if token is not None and token.cancelled:
            stopped = "error: command cancelled"
            break
        if time.monotonic() >= deadline:
            stopped = f"error: command timed out after {timeout}s"
            break
        try:
            proc.wait(timeout=_POLL_INTERVAL)
        except subprocess.TimeoutExpired:
            pass
    if stopped:
        _kill_process_tree(proc)

    reader_thread.join(timeout=2)
    proc.stdout.close()

    output = b"".join(chunks)
    truncated = len(output) > MAX_COMMAND_OUTPUT
    text = output[:MAX_COMMAND_OUTPUT].decode("utf-8", errors="replace")

    parts: list[str] = []
    if stopped:
        parts.append(stopped)
    elif proc.returncode != 0:
        parts.append(f"Exit code: {proc.returncode}")
    if text:
        parts.append(text)
    if truncated:
        parts.append(f"[output truncated at {MAX_COMMAND_OUTPUT // 1024}KB]")
    return "\n".join(parts) if parts else "(no output)"


def _coerce_command(command) -> list[str] | None:
    if isinstance(command, list) and all(isinstance(x, str) for x in command):
        return command
    if isinstance(command, str):
        try:
            parsed = json.loads(command)
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, list) and all(isinstance(x, str) for x in parsed):
            return parsed
        try:
            return shlex.split(command)
        except ValueError:
            return None
    return None


class RunCommandTool(FileTool):
    name = "run_command"
    description = (
        "Run a command in the base directory and return its combined output. "
        "No shell is involved: pipes, redirects and && are not supported."
    )
    parameters = {
        "type": "object",
        "properties": {
            "command": {
                "type": "array",
                "items": {"type": "string"},
                "description": 'Command as an array of strings, e.g. ["ls", "-la", "src/"].',
            },
            "timeout": {
                "type": "integer",
                "description": f"Timeout in seconds (1-{MAX_TIMEOUT}). Defaults to 30.",
                "default": 30,
            },
        },
        "required": ["command"],
    }

    def __init__(self, base_dir: str, allowed_commands=()):
        super().__init__(base_dir)
        self.allowed_commands: set[str] = set(allowed_commands)

    def requires_confirmation(self, args, approval_mode):
        if approval_mode == ApprovalMode.YOLO:
            return None
        argv = _coerce_command(args.get("command"))
        if argv and os.path.basename(argv[0]) in self.allowed_commands:
            return None
        shown = shlex.join(argv) if argv else repr(args.get("command"))
        root = os.path.basename(argv[0]) if argv else ""

        def _remember(outcome):
            if outcome == ConfirmationOutcome.PROCEED_ALWAYS and root:
                self.allowed_commands.add(root)

        return ConfirmationDetails(
            title=f"Run {root or 'command'}",
            prompt=shown,
            kind="exec",
            on_confirm=_remember,
        )

    def run(self, args: dict, token) -> str:
        argv = _coerce_command(args["command"])
        if not argv:
            return "error: command must be a non-empty array of strings"
        timeout = args.get("timeout", 30)
        if not isinstance(timeout, int):
            return "error: timeout must be an integer"
        timeout = max(1, min(timeout, MAX_TIMEOUT))

        base_path = Path(self.base_dir)
        if not base_path.is_dir():
            return f"error: base directory is not a directory: {self.base_dir}"

        exe = shutil.which(argv[0], path=os.environ.get("PATH"))
        if exe is None and ("/" in argv[0] or "\\" in argv[0]):
            candidate = base_path / argv[0]
            exe = str(candidate) if candidate.is_file() else None
        if exe is None:
            return f"error: command not found: {argv[0]!r}"

        popen_kwargs: dict = dict(
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            stdin=subprocess.DEVNULL,
            cwd=self.base_dir,
        )
        if sys.platform != "win32":
            popen_kwargs["start_new_session"] = True
        try:
            proc = subprocess.Popen([exe] + argv[1:], **popen_kwargs)
        except OSError as e:
            return f"error: failed to start command: {e}"
        return _capture_process(proc, timeout, token)


def build_registry(base_dir: str, allowed_commands=()) -> ToolRegistry:
    """Registry with every built-in tool rooted at base_dir."""
    return ToolRegistry(
        [
            ReadFileTool(base_dir),
            ListFilesTool(base_dir),
            GrepTool(base_dir),
            WriteFileTool(base_dir),
            EditFileTool(base_dir),
            RunCommandTool(base_dir, allowed_commands),
        ]
    )
