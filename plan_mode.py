"""
plan_mode.py - Plan mode orchestrator: read-only planning + approval gate

Core Philosophy: "Look, Plan, Ask, Then Touch"
==============================================
Removing write tools while planning stops the model from editing too early.
This module adds the rest of the workflow around that idea:

    +------------------------------------------------------------------+
    |                                                                  |
    |   IDLE ---/plan---> PLANNING ---approve---> EXECUTING ---> IDLE   |
    |                      |   ^                  (all [DONE:n] seen)  |
    |                      |   |                                       |
    |                      +---+ continue(note) / regenerate           |
    |                      |                                           |
    |                      +---exit---> IDLE                           |
    |                                                                  |
    +------------------------------------------------------------------+

    PLANNING   active tools = read-only subset, bash screened, edits blocked
    EXECUTING  tools restored, remaining plan steps injected into the prompt,
               progress tracked via [DONE:n] markers in assistant output
    IDLE       tools restored, nothing tracked

The orchestrator never talks to a model or a terminal itself. Everything goes
through an injected PlanModeHost, and the host calls the on_* hooks below at
the matching points of its agent loop:

    on_session_start()                 once, before the first prompt
    on_before_agent_start(system)      -> system prompt to use for this run
    on_tool_call(name, input)          -> ToolCallDecision to block, None to allow
    on_turn_end(assistant_text)        after each model response
    on_agent_end(assistant_text)       when the agent stops; approval round
    dispose()                          session shutdown
"""

import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum

from action_selector import ActionSelection, PlanAction
from plan_steps import (
    PlanStep,
    completed_count,
    extract_steps,
    first_incomplete,
    format_progress,
    mark_completed,
    remaining_steps,
)
from tool_guard import (
    PLAN_TOOL_CANDIDATES,
    SHELL_TOOL,
    WRITE_LIKE_TOOLS,
    is_safe_readonly_command,
    normalize_arg,
    resolve_read_only_tools,
    snapshot_tools,
    tools_to_restore,
)

STATUS_KEY = "plan-mode"


def log_mode_event(caller: str, message: str):
    if os.getenv("DEBUG_LOG", "false").lower() != "true":
        return
    print(f"[plan-mode] {caller}: {message}")


# =============================================================================
# Prompts and instructions
# =============================================================================

PLAN_MODE_SYSTEM_PROMPT = """
[PLAN MODE ACTIVE - READ ONLY]
You are in planning mode.

Hard rules:
- Inspect, analyse and write a plan. Nothing else.
- Never change files: edit/write tools are disabled and mutating shell
  commands are rejected.

Workflow:
1) Gather evidence first
   - Read the relevant files, symbols, config and tests before planning.
   - When a dependency's behaviour matters, look up its docs or source.
   - No plan without evidence.
2) Clarify
   - List uncertainties and assumptions.
   - If something blocks a sound plan, ask a short question first.
3) Design the plan from what you found.

Answer with this structure:
1) Goal (brief)
2) Evidence gathered
   - files, paths, symbols, docs checked
3) Uncertainties / assumptions
4) Plan:
   1. first step (objective, target files, how to validate)
   2. next step
5) Risks and rollback notes
6) End with: "Ready to execute when approved."
""".strip()

YOLO_MODE_SYSTEM_PROMPT = """
[DEFAULT MODE: YOLO]
- Execute tasks directly unless the user explicitly asks for planning.
- Do NOT force a plan/approval gate in normal mode.
- The read-only plan/approval flow is only active when /plan mode is enabled.
""".strip()

EXECUTION_TRIGGER_PROMPT = (
    "Plan approved. Switch to implementation mode and execute the latest plan now."
)

REGENERATE_PROMPT = (
    "Discard the previous plan. Stay in read-only mode, re-check the evidence "
    "and produce a fresh plan from scratch using the required structure."
)

BLOCKED_TOOL_REASON = (
    "Plan mode is read-only. Approve execution first (choose 'Approve and execute now')."
)


def format_step_focus(step: PlanStep) -> str:
    return f"step {step.ordinal}: {step.text}"


def build_execution_prompt(steps: list[PlanStep]) -> str:
    """YOLO notice plus the remaining steps, when there are any."""
    remaining = remaining_steps(steps)
    if not remaining:
        return YOLO_MODE_SYSTEM_PROMPT

    lines = [
        YOLO_MODE_SYSTEM_PROMPT,
        "",
        "[APPROVED PLAN - EXECUTING]",
        "Remaining steps, in order:",
    ]
    lines.extend(f"{step.ordinal}. {step.text}" for step in remaining)
    lines.append("")
    lines.append(
        "After finishing a step, include the marker [DONE:n] in your reply, "
        "where n is the step number (e.g. [DONE:1])."
    )
    return "\n".join(lines)


# =============================================================================
# Host interface
# =============================================================================

@dataclass
class ToolCallDecision:
    """Returned by on_tool_call to stop a tool from running."""
    block: bool
    reason: str


class PlanModeHost(ABC):
    """
    What the orchestrator needs from the agent runtime.

    Tool names are plain strings. set_active_tools() replaces the whole
    active list; the host must only offer active tools to the model.
    """

    @property
    def has_ui(self) -> bool:
        return True

    @abstractmethod
    def get_all_tools(self) -> list[str]:
        pass

    @abstractmethod
    def get_active_tools(self) -> list[str]:
        pass

    @abstractmethod
    def set_active_tools(self, names: list[str]):
        pass

    @abstractmethod
    def register_command(self, name: str, description: str, handler):
        """handler(args: str) is called with the raw text after the command."""
        pass

    @abstractmethod
    def send_user_message(self, text: str):
        """Queue text as the next user message to the agent."""
        pass

    @abstractmethod
    def notify(self, message: str, level: str = "info"):
        pass

    def set_status(self, key: str, text: str | None):
        pass

    @abstractmethod
    def select_next_action(self) -> ActionSelection:
        pass


# =============================================================================
# Orchestrator
# =============================================================================

class AgentMode(Enum):
    IDLE = "idle"
    PLANNING = "planning"
    EXECUTING = "executing"


class PlanModeOrchestrator:
    """
    One plan-mode session bound to one host.

    State: mode, the tool snapshot taken on entering planning (private, used
    exactly once on exit) and the tracked plan steps.
    """

    def __init__(self, host: PlanModeHost, plan_tools=None, is_safe_command=None):
        self.host = host
        self.plan_tool_candidates = tuple(plan_tools or PLAN_TOOL_CANDIDATES)
        self.is_safe_command = is_safe_command or is_safe_readonly_command
        self.mode = AgentMode.IDLE
        self.steps: list[PlanStep] = []
        self._tool_snapshot: list[str] | None = None
        self._snapshot_pending = False
        self._disposed = False

    # -- lifecycle --------------------------------------------------------------

    def register(self):
        self.host.register_command(
            "plan",
            "Read-only planning mode. Usage: /plan, /plan on, /plan off, "
            "/plan status, /plan <task>",
            self.handle_plan_command,
        )
        self.host.register_command(
            "todos",
            "Show progress of the tracked plan steps.",
            self.handle_todos_command,
        )

    def on_session_start(self):
        self._update_status()

    def dispose(self):
        """Session shutdown: put the user's tools back and clear the indicator."""
        if self._disposed:
            return
        if self.mode == AgentMode.PLANNING:
            self.exit_planning(reset_progress=True)
        if self.host.has_ui:
            self.host.set_status(STATUS_KEY, None)
        self._disposed = True

    # -- helpers ----------------------------------------------------------------

    @property
    def is_planning(self) -> bool:
        return self.mode == AgentMode.PLANNING

    def _notify(self, message: str, level: str = "info"):
        self.host.notify(message, level)

    def _update_status(self):
        if not self.host.has_ui:
            return
        if self.mode == AgentMode.PLANNING:
            self.host.set_status(STATUS_KEY, "⏸ plan")
        elif self.mode == AgentMode.EXECUTING and self.steps:
            self.host.set_status(
                STATUS_KEY, f"▶ {completed_count(self.steps)}/{len(self.steps)}"
            )
        else:
            self.host.set_status(STATUS_KEY, None)

    def _capture_snapshot(self):
        if self._snapshot_pending:
            log_mode_event("enter", "snapshot already pending, keeping it")
            return
        self._tool_snapshot = snapshot_tools(self.host.get_active_tools())
        self._snapshot_pending = True

    def _release_snapshot(self) -> list[str] | None:
        snapshot = self._tool_snapshot
        self._tool_snapshot = None
        self._snapshot_pending = False
        return snapshot

    # -- transitions ------------------------------------------------------------

    def enter_planning(self) -> bool:
        """Switch to read-only planning. Returns True when planning is active."""
        if self.mode == AgentMode.PLANNING:
            self._notify("Plan mode is already enabled.")
            return True

        plan_tools = resolve_read_only_tools(
            self.plan_tool_candidates,
            self.host.get_all_tools(),
            self.host.get_active_tools(),
        )
        if not plan_tools:
            log_mode_event("enter", "no read-only tool set")
            self._notify("No read-only tool set could be resolved.", "error")
            return False

        self._capture_snapshot()
        self.steps = []
        self.mode = AgentMode.PLANNING
        self.host.set_active_tools(plan_tools)
        self._update_status()
        log_mode_event("enter", f"tools={plan_tools} snapshot={self._tool_snapshot}")
        self._notify(f"Plan mode enabled (read-only): {', '.join(plan_tools)}")
        return True

    def exit_planning(self, reason: str = None, reset_progress: bool = False,
                      next_mode: AgentMode = AgentMode.IDLE):
        """Leave planning, restoring the tools that were active before it."""
        if self.mode != AgentMode.PLANNING:
            if reason:
                self._notify(reason)
            return

        restore = tools_to_restore(self._release_snapshot(), self.host.get_all_tools())
        if restore:
            self.host.set_active_tools(restore)

        self.mode = next_mode
        if reset_progress:
            self.steps = []
        self._update_status()
        log_mode_event("exit", f"mode={next_mode.value} tools={restore}")
        if reason:
            self._notify(reason)

    def stop_tracking(self, reason: str = None):
        """Drop an executing plan without touching tools."""
        if self.mode != AgentMode.EXECUTING:
            return
        self.steps = []
        self.mode = AgentMode.IDLE
        self._update_status()
        if reason:
            self._notify(reason)

    # -- hooks --------------------------------------------------------------------

    def on_tool_call(self, tool_name: str, tool_input) -> ToolCallDecision | None:
        if self.mode != AgentMode.PLANNING:
            return None

        if tool_name in WRITE_LIKE_TOOLS:
            log_mode_event("tool_call", f"blocked {tool_name}")
            return ToolCallDecision(block=True, reason=BLOCKED_TOOL_REASON)

        if tool_name == SHELL_TOOL:
            command = tool_input.get("command") if isinstance(tool_input, dict) else None
            command = command if isinstance(command, str) else ""
            if not self.is_safe_command(command):
                log_mode_event("tool_call", f"blocked bash: {command}")
                return ToolCallDecision(
                    block=True,
                    reason=f"Plan mode blocked a potentially mutating bash command: {command}",
                )
        return None

    def on_before_agent_start(self, system_prompt: str) -> str:
        if self.mode == AgentMode.PLANNING:
            return f"{system_prompt}\n\n{PLAN_MODE_SYSTEM_PROMPT}"
        if self.mode == AgentMode.EXECUTING:
            return f"{system_prompt}\n\n{build_execution_prompt(self.steps)}"
        return f"{system_prompt}\n\n{YOLO_MODE_SYSTEM_PROMPT}"

    def on_turn_end(self, assistant_text: str):
        if self.mode != AgentMode.EXECUTING or not self.steps:
            return

        if mark_completed(assistant_text or "", self.steps):
            self._update_status()
            log_mode_event("progress", f"{completed_count(self.steps)}/{len(self.steps)}")

        if all(step.completed for step in self.steps):
            total = len(self.steps)
            self.steps = []
            self.mode = AgentMode.IDLE
            self._update_status()
            self._notify(f"Plan complete: all {total} steps done.")

    def on_agent_end(self, assistant_text: str):
        if self.mode != AgentMode.PLANNING or not self.host.has_ui:
            return
        self.run_approval_round(assistant_text)

    # -- approval round -----------------------------------------------------------

    def run_approval_round(self, assistant_text: str):
        extracted = extract_steps(assistant_text or "")
        if extracted:
            self.steps = extracted

        selection = self.host.select_next_action()
        log_mode_event("approval", f"{selection}")
        if selection.cancelled or selection.action is None:
            return

        if selection.action == PlanAction.APPROVE:
            self._approve()
        elif selection.action == PlanAction.REGENERATE:
            self.steps = []
            self._notify("Regenerating the plan from scratch.")
            self.host.send_user_message(REGENERATE_PROMPT)
        elif selection.action == PlanAction.CONTINUE:
            self._continue(selection.note)
        elif selection.action == PlanAction.EXIT:
            self.exit_planning("Exited plan mode without execution.", reset_progress=True)

    def _approve(self):
        next_mode = AgentMode.EXECUTING if self.steps else AgentMode.IDLE
        self.exit_planning("Plan approved. Entering YOLO mode for execution.",
                           next_mode=next_mode)

        instruction = EXECUTION_TRIGGER_PROMPT
        focus = first_incomplete(self.steps)
        if focus is not None:
            instruction += (
                f" Start with {format_step_focus(focus)}. "
                "Mark each finished step with [DONE:n]."
            )
        self.host.send_user_message(instruction)

    def _continue(self, note: str | None):
        if not note:
            self._notify(
                "Waiting for your modification note. Type it as your next "
                "message to refine the plan."
            )
            return

        instruction = f"Continue from the proposed plan and refine it with this note: {note}"
        focus = first_incomplete(self.steps)
        if focus is not None:
            instruction += f"\nFocus first on {format_step_focus(focus)}."
        instruction += "\nStay in read-only mode and return the updated plan."
        self.host.send_user_message(instruction)

    # -- commands -----------------------------------------------------------------

    def describe_status(self) -> str:
        if self.mode == AgentMode.PLANNING:
            return "Plan mode: ON (read-only planning)"
        if self.mode == AgentMode.EXECUTING:
            return (
                f"Plan mode: OFF, executing approved plan "
                f"({completed_count(self.steps)}/{len(self.steps)} steps done)"
            )
        return "Plan mode: OFF (default YOLO mode)"

    def handle_plan_command(self, args: str):
        raw = (args or "").strip()

        if not raw:
            if self.mode == AgentMode.PLANNING:
                self.exit_planning("Plan mode disabled. Back to YOLO mode.",
                                   reset_progress=True)
            else:
                self.enter_planning()
            return

        command = normalize_arg(raw)
        if command in ("on", "enable", "start"):
            self.enter_planning()
            return

        if command in ("off", "disable", "stop", "exit"):
            if self.mode == AgentMode.EXECUTING:
                self.stop_tracking("Stopped tracking the approved plan.")
                return
            self.exit_planning("Plan mode disabled. Back to YOLO mode.", reset_progress=True)
            return

        if command in ("status", "state"):
            self._notify(self.describe_status())
            return

        if self.is_planning or self.enter_planning():
            self.host.send_user_message(raw)

    def handle_todos_command(self, args: str = ""):
        if not self.steps:
            self._notify("No tracked plan. Use /plan to create one.")
            return
        self._notify(f"Plan progress:\n{format_progress(self.steps)}")
