"""
plan_steps.py - Plan step tracking

A plan is an ordered list of steps pulled out of the assistant's text:

    Plan:
      1. Write parser
      2. Add tests

Each step keeps a stable 1-based ordinal. While the plan executes, the
assistant reports progress with markers like [DONE:1] and the matching step
flips to completed. Steps never flip back.
"""

import re
from dataclasses import dataclass

MAX_STEP_TEXT = 80

PLAN_HEADER = re.compile(
    r"^\s*(?:#{1,6}\s*)?(?:\d+[.)]\s*)?(?:\*\*|__)?\s*plan\s*(?:\*\*|__)?\s*:?\s*(?:\*\*|__)?\s*$",
    re.IGNORECASE,
)
NUMBERED_ITEM = re.compile(r"^(\s*)(\d+)[.)]\s+(.*\S)")
MARKDOWN_HEADING = re.compile(r"^\s*#{1,6}\s")
DONE_MARKER = re.compile(r"\[DONE:\s*(\d+)\s*\]", re.IGNORECASE)


@dataclass
class PlanStep:
    ordinal: int
    text: str
    completed: bool = False


def clean_step_text(text: str) -> str:
    """Strip markdown emphasis and code ticks, collapse whitespace, cap length."""
    cleaned = re.sub(r"\*\*|__|`", "", text)
    cleaned = re.sub(r"\s+", " ", cleaned).strip()
    if len(cleaned) > MAX_STEP_TEXT:
        cleaned = cleaned[:MAX_STEP_TEXT - 3].rstrip() + "..."
    return cleaned


def _indent(line: str) -> int:
    return len(line) - len(line.lstrip())


def _collect_items(lines: list[str]) -> list[str]:
    """Collect the numbered entries that follow a plan header."""
    items: list[str] = []
    item_indent = None

    for line in lines:
        if not line.strip():
            continue

        match = NUMBERED_ITEM.match(line)
        if item_indent is None:
            if match:
                item_indent = len(match.group(1))
                items.append(match.group(3))
            elif MARKDOWN_HEADING.match(line) or PLAN_HEADER.match(line):
                break
            continue

        indent = len(match.group(1)) if match else _indent(line)
        if indent > item_indent:
            # Sub-bullet or wrapped detail of the current entry
            continue
        if match and indent == item_indent:
            items.append(match.group(3))
            continue
        break

    return items


def extract_steps(text: str) -> list[PlanStep]:
    """
    Parse the "Plan" section of free-form text into steps.

    The last plan header followed by numbered entries wins, so a restated
    plan replaces an earlier draft in the same message. Text without a plan
    section yields an empty list.
    """
    if not text:
        return []

    lines = text.splitlines()
    best: list[str] = []
    for i, line in enumerate(lines):
        if not PLAN_HEADER.match(line):
            continue
        items = _collect_items(lines[i + 1:])
        if items:
            best = items

    return [
        PlanStep(ordinal=n, text=clean_step_text(item))
        for n, item in enumerate(best, start=1)
    ]


def mark_completed(text: str, steps: list[PlanStep]) -> int:
    """
    Flip steps referenced by [DONE:n] markers to completed.

    Returns how many steps were newly completed by this call. Unknown
    ordinals and repeated markers are ignored.
    """
    if not text or not steps:
        return 0

    by_ordinal = {step.ordinal: step for step in steps}
    newly = 0
    for match in DONE_MARKER.finditer(text):
        step = by_ordinal.get(int(match.group(1)))
        if step is not None and not step.completed:
            step.completed = True
            newly += 1
    return newly


def completed_count(steps: list[PlanStep]) -> int:
    return sum(1 for s in steps if s.completed)


def remaining_steps(steps: list[PlanStep]) -> list[PlanStep]:
    return [s for s in sorted(steps, key=lambda s: s.ordinal) if not s.completed]


def first_incomplete(steps: list[PlanStep]) -> PlanStep | None:
    remaining = remaining_steps(steps)
    return remaining[0] if remaining else None


def format_progress(steps: list[PlanStep]) -> str:
    """Render steps in ordinal order with [x]/[ ] marks and a done/total footer."""
    lines = []
    for step in sorted(steps, key=lambda s: s.ordinal):
        mark = "[x]" if step.completed else "[ ]"
        lines.append(f"{step.ordinal}. {mark} {step.text}")
    return "\n".join(lines) + f"\n({completed_count(steps)}/{len(steps)} done)"
