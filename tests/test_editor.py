"""Tests for editing tool arguments in an external editor."""

import asyncio
import json
import sys

import pytest

from skein.editor import ArgumentEditor, default_editor
from skein.report import AgentError

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="uses sh scripts")


def _script(tmp_path, body):
    """Write an executable 'editor' that runs body with $1 as the file."""
    path = tmp_path / "fake-editor"
    path.write_text(f"#!/bin/sh\n{body}\n")
    path.chmod(0o755)
    return str(path)


def test_default_editor_prefers_visual(monkeypatch):
    monkeypatch.setenv("VISUAL", "code -w")
    monkeypatch.setenv("EDITOR", "nano")
    assert default_editor() == "code -w"


def test_default_editor_fallback(monkeypatch):
    monkeypatch.delenv("VISUAL", raising=False)
    monkeypatch.delenv("EDITOR", raising=False)
    assert default_editor() == "vi"


def test_edited_arguments_are_returned(tmp_path):
    new = json.dumps({"command": ["ls", "-la"]})
    editor = ArgumentEditor(_script(tmp_path, f"printf '%s' '{new}' > \"$1\""))
    result = asyncio.run(editor.modify("run_command", {"command": ["rm", "-rf", "/"]}))
    assert result == {"command": ["ls", "-la"]}


def test_unchanged_file_round_trips(tmp_path):
    editor = ArgumentEditor(_script(tmp_path, "true"))
    assert asyncio.run(editor.modify("grep", {"pattern": "x"})) == {"pattern": "x"}


def test_nonzero_exit(tmp_path):
    editor = ArgumentEditor(_script(tmp_path, "exit 3"))
    with pytest.raises(AgentError, match="code 3"):
        asyncio.run(editor.modify("grep", {}))


def test_invalid_json(tmp_path):
    editor = ArgumentEditor(_script(tmp_path, "echo 'not json' > \"$1\""))
    with pytest.raises(AgentError, match="not valid JSON"):
        asyncio.run(editor.modify("grep", {}))


def test_not_an_object(tmp_path):
    editor = ArgumentEditor(_script(tmp_path, "echo '[1]' > \"$1\""))
    with pytest.raises(AgentError, match="JSON object"):
        asyncio.run(editor.modify("grep", {}))


def test_missing_editor():
    editor = ArgumentEditor("definitely-not-an-editor-xyz")
    with pytest.raises(AgentError, match="failed to start editor"):
        asyncio.run(editor.modify("grep", {}))
