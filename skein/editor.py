"""Let the user edit a tool call's arguments in $EDITOR before it runs."""

import asyncio
import json
import os
import shlex
import subprocess
import tempfile
from pathlib import Path

from .report import AgentError


def default_editor() -> str:
    return os.environ.get("VISUAL") or os.environ.get("EDITOR") or "vi"


class ArgumentEditor:
    """Opens the arguments as pretty-printed JSON and reads them back."""

    def __init__(self, command: str | None = None):
        self.command = command or default_editor()

    def _edit_sync(self, tool_name: str, args: dict) -> dict:
        fd, tmp = tempfile.mkstemp(prefix=f"skein-{tool_name}-", suffix=".json")
        path = Path(tmp)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(args, f, indent=2)
                f.write("\n")
            argv = shlex.split(self.command) + [str(path)]
            try:
                proc = subprocess.run(argv)
            except OSError as e:
                raise AgentError(f"failed to start editor {self.command!r}: {e}") from e
            if proc.returncode != 0:
                raise AgentError(f"editor exited with code {proc.returncode}")
            text = path.read_text(encoding="utf-8")
        finally:
            path.unlink(missing_ok=True)

        try:
            edited = json.loads(text)
        except json.JSONDecodeError as e:
            raise AgentError(f"edited arguments are not valid JSON: {e}") from e
        if not isinstance(edited, dict):
            raise AgentError("edited arguments must be a JSON object")
        return edited

    async def modify(self, tool_name: str, args: dict) -> dict:
        return await asyncio.to_thread(self._edit_sync, tool_name, args)
