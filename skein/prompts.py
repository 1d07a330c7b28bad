"""System prompt, environment context and the fixed prompts the driver injects."""

import platform
from datetime import datetime
from pathlib import Path

from . import fmt

MAX_INSTRUCTIONS_CHARS = 10_000
MAX_LISTING_ENTRIES = 200

CORE_SYSTEM_PROMPT = """You are an interactive command-line agent that helps with software engineering tasks. Use the tools available to you to inspect and change the project in the working directory.

# Core mandates
- Follow the conventions of the existing code. Read surrounding files before changing anything.
- Never assume a library is available; check the project's manifests or imports first.
- Make the smallest change that fully solves the task.
- Use absolute or base-directory-relative paths with file tools.
- Prefer read_file, list_files and grep to explore; use edit_file for targeted changes and write_file for new files.
- run_command takes an argument list, not a shell string. Pipes and redirects are not available.
- The user may decline a tool call. If that happens, do not retry the same call; ask how to proceed or try another approach.

# Output
- Be concise and direct. Avoid filler and repeated summaries.
- When the task is done, say what changed in a few sentences."""

CONTEXT_PROVIDED = "Okay, I've read the context provided above."
CONTEXT_ACK = "Got it. Thanks for the context!"

TOOL_CONTINUATION_PROMPT = (
    "Tool execution finished. Please analyze the results and continue with the original task."
)
CONTINUE_PROMPT = "Please continue."

SUMMARY_PROMPT = (
    "Summarize our conversation so far. Keep the user's goals, decisions that were "
    "made, files that were read or changed, the results of commands, and the work "
    "that still remains. Be concise but do not drop anything needed to continue the task."
)
SUMMARY_INTRO = "The previous conversation has been summarized. Here is the summary:\n\n"
SUMMARY_ACK = "Thank you for the summary. My context is updated."


def load_instructions(base_dir: str, verbose: bool = False) -> tuple[str, list[str]]:
    """Load SKEIN.md and/or AGENT.md from base_dir, if present.

    Returns (combined_text, filenames_loaded) where combined_text is
    XML-tagged sections (or "" if none found).
    """
    sections = []
    loaded: list[str] = []
    for filename, tag in [
        ("SKEIN.md", "project-instructions"),
        ("AGENT.md", "agent-instructions"),
    ]:
        path = Path(base_dir).resolve() / filename
        if not path.is_file():
            continue
        try:
            file_size = path.stat().st_size
            with path.open(encoding="utf-8", errors="replace") as f:
                content = f.read(MAX_INSTRUCTIONS_CHARS + 1)
        except OSError:
            continue
        if len(content) > MAX_INSTRUCTIONS_CHARS:
            content = (
                content[:MAX_INSTRUCTIONS_CHARS]
                + f"\n[truncated: {filename} exceeds {MAX_INSTRUCTIONS_CHARS} character limit]"
            )
        if verbose:
            fmt.info(f"Loaded {filename} ({file_size} bytes) from {path.parent}")
        sections.append(f"<{tag}>\n{content}\n</{tag}>")
        loaded.append(filename)
    return "\n\n".join(sections), loaded


def environment_context(base_dir: str) -> str:
    """Date, platform, working directory and its top-level listing."""
    root = Path(base_dir).resolve()
    now = datetime.now().astimezone()
    try:
        entries = sorted(root.iterdir())
    except OSError:
        entries = []
    listing = [e.name + ("/" if e.is_dir() else "") for e in entries[:MAX_LISTING_ENTRIES]]
    if len(entries) > MAX_LISTING_ENTRIES:
        listing.append(f"... ({len(entries) - MAX_LISTING_ENTRIES} more)")
    return (
        f"Current date and time: {now.strftime('%Y-%m-%d %H:%M %Z')}\n"
        f"Platform: {platform.system().lower()}\n"
        f"Working directory: {root}\n"
        "Top-level entries:\n" + ("\n".join(listing) if listing else "(empty)")
    )


def build_system_prompt(
    base_dir: str,
    *,
    system_prompt: str | None = None,
    no_instructions: bool = False,
    verbose: bool = False,
) -> tuple[str, list[str]]:
    """Return (system_prompt_text, instruction_files_loaded).

    A custom system_prompt replaces the core prompt and skips project
    instructions; the environment context is always appended.
    """
    loaded: list[str] = []
    if system_prompt:
        content = system_prompt
    else:
        content = CORE_SYSTEM_PROMPT
        if not no_instructions:
            instructions, loaded = load_instructions(base_dir, verbose)
            if instructions:
                content += "\n\n" + instructions
    content += "\n\n" + environment_context(base_dir)
    return content, loaded
