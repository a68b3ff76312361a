#!/usr/bin/env python3
"""
v11_plan_approval_agent.py - Mini Claude Code: Plan Approval Gate

Core Philosophy: "Nothing Changes Until a Human Says Go"
========================================================
A plan mode where the model decides when to plan, and approval is a typed
"approve", leaves two gaps:

    1. Blocking bash entirely means the model cannot even run `git log`
       while planning.
    2. Approval is all-or-nothing - no way to say "keep going, but split
       step 3" without starting over.

v11 makes planning a USER-controlled mode with a real gate:

    You: /plan refactor auth to use JWT
         |
         v
    +---------------------------+
    | PLANNING (read-only)      |   tools: read, grep, find, ls, bash*
    | bash screened per command |   * only inspection commands pass
    +-------------+-------------+
                  |
        agent ends its turn with "Plan: 1. ... 2. ..."
                  |
                  v
    +---------------------------+
    | Approve and execute now   |  -> tools restored, steps tracked
    | Continue from plan + note |  -> refine with your note
    | Regenerate plan           |  -> fresh plan from scratch
    | Exit plan mode            |  -> back to normal, nothing run
    +---------------------------+
                  |
        EXECUTING: model marks steps with [DONE:n] until all are done

The mode logic lives in plan_mode.py; this file is the host around it: the
model client, the tool registry and the REPL.

Commands:
    /plan              toggle plan mode
    /plan on|off       enable / disable
    /plan status       show mode and progress
    /plan <task>       enable plan mode and send the task
    /todos             show plan step progress

Usage:
    python v11_plan_approval_agent.py
"""

import json
import os
import re
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from anthropic import Anthropic
from dotenv import load_dotenv

from action_selector import ActionSelection, select_next_action
from plan_mode import PlanModeHost, PlanModeOrchestrator

load_dotenv(override=True)

# =============================================================================
# Logging Configuration
# =============================================================================

DEBUG_LOG = os.getenv("DEBUG_LOG", "false").lower() == "true"


def log_api_call(caller: str, system: str, messages: list, tools: list):
    if not DEBUG_LOG:
        return
    print("\n" + "=" * 80)
    print(f"[API CALL] from: {caller}")
    print("=" * 80)
    print(json.dumps({"system": system, "messages": messages, "tools": tools},
                     ensure_ascii=False, indent=2, default=str))
    print("=" * 80 + "\n")


def log_api_response(caller: str, response):
    if not DEBUG_LOG:
        return
    print("\n" + "=" * 80)
    print(f"[API RESPONSE] from: {caller}")
    print("=" * 80)
    print(response)
    print("=" * 80 + "\n")


# =============================================================================
# Configuration
# =============================================================================

WORKDIR = Path.cwd()

client = Anthropic(base_url=os.getenv("ANTHROPIC_BASE_URL"))
MODEL = os.getenv("MODEL_ID", "claude-sonnet-4-5-20250929")

# Optional override of the read-only candidates, e.g. PLAN_TOOLS=read,grep,ls
PLAN_TOOLS = [t.strip() for t in os.getenv("PLAN_TOOLS", "").split(",") if t.strip()] or None

EXCLUDE_DIRS = {
    '.git', 'node_modules', '__pycache__', '.venv', 'venv',
    '.idea', '.vscode', 'dist', 'build', '.pytest_cache', '.mypy_cache',
}


# =============================================================================
# Tool Registry
# =============================================================================

@dataclass
class ToolContext:
    """Passed to every tool call, never stored on the tool."""
    workdir: Path


class Tool(ABC):
    @property
    @abstractmethod
    def name(self) -> str:
        pass

    @property
    @abstractmethod
    def description(self) -> str:
        pass

    @property
    @abstractmethod
    def input_schema(self) -> dict:
        pass

    @abstractmethod
    def execute(self, context: ToolContext, **kwargs) -> str:
        pass

    def to_schema(self) -> dict:
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_schema,
        }


class ToolRegistry:
    """Name -> Tool. Schemas can be filtered to the currently active names."""

    def __init__(self):
        self._tools: dict[str, Tool] = {}

    def register(self, tool: Tool) -> "ToolRegistry":
        self._tools[tool.name] = tool
        return self

    def has(self, name: str) -> bool:
        return name in self._tools

    def list_names(self) -> list[str]:
        return list(self._tools.keys())

    def get_schemas(self, names: list[str] | None = None) -> list[dict]:
        if names is None:
            return [t.to_schema() for t in self._tools.values()]
        return [self._tools[n].to_schema() for n in names if n in self._tools]

    def execute(self, name: str, context: ToolContext, **kwargs) -> str:
        tool = self._tools.get(name)
        if not tool:
            return f"Error: Unknown tool '{name}'"
        try:
            return tool.execute(context, **kwargs)
        except Exception as e:
            return f"Error: {e}"


def tool(name: str, description: str, schema: dict):
    """Turn a plain function(context, **kwargs) into a registered-ready Tool."""
    def decorator(func: Callable) -> Tool:
        class FunctionTool(Tool):
            @property
            def name(self) -> str:
                return name

            @property
            def description(self) -> str:
                return description

            @property
            def input_schema(self) -> dict:
                return schema

            def execute(self, context: ToolContext, **kwargs) -> str:
                return func(context, **kwargs)

        return FunctionTool()

    return decorator


# =============================================================================
# Tool Implementations
# =============================================================================

def safe_path(workdir: Path, p: str) -> Path:
    path = (workdir / p).resolve()
    if not path.is_relative_to(workdir):
        raise ValueError(f"Path escapes workspace: {p}")
    return path


@tool(
    name="read",
    description="Read a file with line numbers. Supports offset/limit for large files.",
    schema={
        "type": "object",
        "properties": {
            "file_path": {"type": "string"},
            "offset": {"type": "integer", "description": "Start line (1-indexed)"},
            "limit": {"type": "integer", "description": "Max lines to read"},
        },
        "required": ["file_path"],
    },
)
def read_tool(context: ToolContext, file_path: str, offset: int = 1, limit: int = 2000) -> str:
    try:
        fp = safe_path(context.workdir, file_path)
        if not fp.is_file():
            return f"Error: File not found: {file_path}"
        try:
            lines = fp.read_text().splitlines()
        except UnicodeDecodeError:
            return f"Error: Binary file: {file_path}"

        start = max(0, offset - 1)
        end = min(len(lines), start + limit)
        out = []
        for i, line in enumerate(lines[start:end], start=start + 1):
            if len(line) > 500:
                line = line[:500] + "..."
            out.append(f"{i:>6}| {line}")
        result = "\n".join(out)
        if end < len(lines):
            result += f"\n\n... {len(lines) - end} more lines. Use offset={end + 1} to continue."
        return result or "(empty file)"
    except Exception as e:
        return f"Error: {e}"


@tool(
    name="grep",
    description="Search file contents with a regex. output_mode: files_with_matches (default), content, count.",
    schema={
        "type": "object",
        "properties": {
            "pattern": {"type": "string"},
            "path": {"type": "string", "description": "Directory (default: workspace root)"},
            "glob": {"type": "string", "description": "File filter, e.g. '*.py'"},
            "output_mode": {"type": "string", "enum": ["files_with_matches", "content", "count"]},
        },
        "required": ["pattern"],
    },
)
def grep_tool(context: ToolContext, pattern: str, path: str = None, glob: str = None,
              output_mode: str = "files_with_matches") -> str:
    try:
        base = safe_path(context.workdir, path) if path else context.workdir
        try:
            regex = re.compile(pattern)
        except re.error as e:
            return f"Invalid regex: {e}"

        results = []
        for fp in base.glob(f"**/{glob}" if glob else "**/*"):
            if not fp.is_file() or any(ex in fp.parts for ex in EXCLUDE_DIRS):
                continue
            try:
                lines = fp.read_text(errors="ignore").splitlines()
            except OSError:
                continue
            matches = [(i + 1, line) for i, line in enumerate(lines) if regex.search(line)]
            if not matches:
                continue

            rel = str(fp.relative_to(context.workdir))
            if output_mode == "count":
                results.append(f"{rel}: {len(matches)}")
            elif output_mode == "content":
                results.append(f"\n{rel}:")
                for lineno, line in matches[:10]:
                    results.append(f"  {lineno:>5}: {line[:200]}")
            else:
                results.append(rel)
            if len(results) >= 100:
                results.append("... (limited to 100 results)")
                break

        return "\n".join(results) if results else "No matches found."
    except Exception as e:
        return f"Error: {e}"


@tool(
    name="find",
    description="Find files by glob pattern, newest first. Examples: '**/*.py', 'src/**/test_*'",
    schema={
        "type": "object",
        "properties": {
            "pattern": {"type": "string"},
            "path": {"type": "string", "description": "Base directory (default: workspace root)"},
        },
        "required": ["pattern"],
    },
)
def find_tool(context: ToolContext, pattern: str, path: str = None) -> str:
    try:
        base = safe_path(context.workdir, path) if path else context.workdir
        found = []
        for p in base.glob(pattern):
            if p.is_file() and not any(ex in p.parts for ex in EXCLUDE_DIRS):
                found.append((p.stat().st_mtime, p))
        found.sort(reverse=True)
        paths = [str(p.relative_to(context.workdir)) for _, p in found[:100]]
        if not paths:
            return "No matches found."
        output = "\n".join(paths)
        if len(found) > 100:
            output += f"\n... and {len(found) - 100} more files"
        return output
    except Exception as e:
        return f"Error: {e}"


@tool(
    name="ls",
    description="List a directory. Directories end with '/'.",
    schema={
        "type": "object",
        "properties": {"path": {"type": "string", "description": "Directory (default: workspace root)"}},
    },
)
def ls_tool(context: ToolContext, path: str = ".") -> str:
    try:
        base = safe_path(context.workdir, path)
        if not base.is_dir():
            return f"Error: Not a directory: {path}"
        entries = sorted(base.iterdir(), key=lambda p: (not p.is_dir(), p.name))
        return "\n".join(p.name + ("/" if p.is_dir() else "") for p in entries) or "(empty)"
    except Exception as e:
        return f"Error: {e}"


@tool(
    name="bash",
    description="Run a shell command. In plan mode only read-only commands are allowed.",
    schema={
        "type": "object",
        "properties": {"command": {"type": "string"}},
        "required": ["command"],
    },
)
def bash_tool(context: ToolContext, command: str) -> str:
    try:
        r = subprocess.run(command, shell=True, cwd=context.workdir,
                           capture_output=True, text=True, timeout=60)
        return (r.stdout + r.stderr).strip()[:50000] or "(no output)"
    except subprocess.TimeoutExpired:
        return "Error: Command timed out (60s)"
    except Exception as e:
        return f"Error: {e}"


@tool(
    name="write",
    description="Write content to a file, creating parent directories.",
    schema={
        "type": "object",
        "properties": {"path": {"type": "string"}, "content": {"type": "string"}},
        "required": ["path", "content"],
    },
)
def write_tool(context: ToolContext, path: str, content: str) -> str:
    try:
        fp = safe_path(context.workdir, path)
        fp.parent.mkdir(parents=True, exist_ok=True)
        fp.write_text(content)
        return f"Wrote {len(content)} bytes to {path}"
    except Exception as e:
        return f"Error: {e}"


@tool(
    name="edit",
    description="Replace exact text in a file (first occurrence).",
    schema={
        "type": "object",
        "properties": {
            "path": {"type": "string"},
            "old_text": {"type": "string"},
            "new_text": {"type": "string"},
        },
        "required": ["path", "old_text", "new_text"],
    },
)
def edit_tool(context: ToolContext, path: str, old_text: str, new_text: str) -> str:
    try:
        fp = safe_path(context.workdir, path)
        text = fp.read_text()
        if old_text not in text:
            return f"Error: Text not found in {path}"
        fp.write_text(text.replace(old_text, new_text, 1))
        return f"Edited {path}"
    except Exception as e:
        return f"Error: {e}"


def create_registry() -> ToolRegistry:
    registry = ToolRegistry()
    for t in (read_tool, grep_tool, find_tool, ls_tool, bash_tool, write_tool, edit_tool):
        registry.register(t)
    return registry


REGISTRY = create_registry()
CONTEXT = ToolContext(workdir=WORKDIR)


# =============================================================================
# Terminal Host - what plan_mode.py talks to
# =============================================================================

class TerminalHost(PlanModeHost):
    """
    PlanModeHost for this REPL.

    Keeps the active tool list, the /commands, a queue of user messages the
    orchestrator wants to send, and the status indicator shown in the prompt.
    """

    def __init__(self, registry: ToolRegistry):
        self.registry = registry
        self.active_tools = registry.list_names()
        self.commands: dict[str, tuple[str, Callable]] = {}
        self.pending_messages: list[str] = []
        self.status: dict[str, str] = {}

    def get_all_tools(self) -> list[str]:
        return self.registry.list_names()

    def get_active_tools(self) -> list[str]:
        return list(self.active_tools)

    def set_active_tools(self, names: list[str]):
        self.active_tools = [n for n in names if self.registry.has(n)]

    def register_command(self, name: str, description: str, handler):
        self.commands[name] = (description, handler)

    def send_user_message(self, text: str):
        self.pending_messages.append(text)

    def notify(self, message: str, level: str = "info"):
        prefix = {"warning": "[plan] warning: ", "error": "[plan] error: "}.get(level, "[plan] ")
        print(f"{prefix}{message}")

    def set_status(self, key: str, text: str | None):
        if text is None:
            self.status.pop(key, None)
        else:
            self.status[key] = text

    def select_next_action(self) -> ActionSelection:
        return select_next_action()

    def status_line(self) -> str:
        return " ".join(self.status.values())

    def run_command(self, line: str) -> bool:
        """Dispatch '/name args'. Returns False for unknown commands."""
        name, _, args = line[1:].partition(" ")
        if name == "help":
            for cmd, (description, _) in self.commands.items():
                print(f"  /{cmd} - {description}")
            return True
        if name not in self.commands:
            return False
        _, handler = self.commands[name]
        handler(args)
        return True


# =============================================================================
# System Prompt
# =============================================================================

def get_base_system_prompt() -> str:
    return f"""You are a coding agent at {WORKDIR}.

Loop: understand -> act with tools -> report.

Tools: read, grep, find, ls (inspection), bash (builds/git/scripts),
write, edit (changes).

Rules:
- Prefer read/grep/find/ls over bash for file inspection.
- Only the tools offered to you are available right now.
- After finishing, summarize what changed."""


# =============================================================================
# Main Agent Loop - gated by plan mode
# =============================================================================

def execute_tool(host: TerminalHost, modes: PlanModeOrchestrator, name: str, args: dict) -> tuple[str, bool]:
    """Run one tool call through the plan-mode gate. Returns (output, is_error)."""
    decision = modes.on_tool_call(name, args)
    if decision is not None and decision.block:
        return decision.reason, True
    if name not in host.get_active_tools():
        return f"Error: Tool '{name}' is not available right now", True
    return REGISTRY.execute(name, CONTEXT, **args), False


def agent_loop(messages: list, host: TerminalHost, modes: PlanModeOrchestrator) -> str:
    """
    Run the model until it stops calling tools.

    Every response is a turn: its text goes to modes.on_turn_end() so step
    markers are picked up as soon as they appear. Returns all assistant text
    of the run for the approval round.
    """
    run_text = []
    while True:
        system = modes.on_before_agent_start(get_base_system_prompt())
        tools = REGISTRY.get_schemas(host.get_active_tools())

        log_api_call("main_agent", system, messages, tools)
        response = client.messages.create(
            model=MODEL,
            system=system,
            messages=messages,
            tools=tools,
            max_tokens=8000,
        )
        log_api_response("main_agent", response)

        texts = []
        tool_calls = []
        for block in response.content:
            if hasattr(block, "text"):
                print(block.text)
                texts.append(block.text)
            if block.type == "tool_use":
                tool_calls.append(block)

        messages.append({"role": "assistant", "content": response.content})
        turn_text = "\n".join(texts)
        run_text.append(turn_text)
        modes.on_turn_end(turn_text)

        if response.stop_reason != "tool_use":
            return "\n".join(run_text)

        results = []
        for tc in tool_calls:
            print(f"\n> {tc.name}")
            output, is_error = execute_tool(host, modes, tc.name, tc.input)
            if len(output) > 500:
                print(f"  {output[:500]}...")
            else:
                print(f"  {output}")
            results.append({
                "type": "tool_result",
                "tool_use_id": tc.id,
                "content": output,
                "is_error": is_error,
            })

        messages.append({"role": "user", "content": results})


def run_pending(history: list, host: TerminalHost, modes: PlanModeOrchestrator):
    """Send queued user messages; approval rounds may queue more."""
    while host.pending_messages:
        history.append({"role": "user", "content": host.pending_messages.pop(0)})
        try:
            run_text = agent_loop(history, host, modes)
        except Exception as e:
            print(f"Error: {e}")
            host.pending_messages.clear()
            return
        modes.on_agent_end(run_text)


# =============================================================================
# Main REPL
# =============================================================================

def main():
    host = TerminalHost(REGISTRY)
    modes = PlanModeOrchestrator(host, plan_tools=PLAN_TOOLS)
    modes.register()

    print(f"Mini Claude Code v11 (with Plan Approval) - {WORKDIR}")
    print(f"Tools: {', '.join(REGISTRY.list_names())}")
    print("Commands: /plan, /plan on|off|status, /plan <task>, /todos, /help")
    print("Type 'exit' to quit.\n")

    modes.on_session_start()
    history = []

    try:
        while True:
            try:
                indicator = host.status_line()
                prompt = f"You [{indicator}]: " if indicator else "You: "
                user_input = input(prompt).strip()
            except (EOFError, KeyboardInterrupt):
                break

            if not user_input:
                continue
            if user_input.lower() in ("exit", "quit", "q"):
                break

            if user_input.startswith("/"):
                if not host.run_command(user_input):
                    print(f"Unknown command: {user_input.split()[0]} (try /help)")
            else:
                host.send_user_message(user_input)

            run_pending(history, host, modes)
            print()
    finally:
        modes.dispose()
        print("\nSession ended.")


if __name__ == "__main__":
    main()
