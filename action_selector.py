"""
action_selector.py - Plan approval selector with an inline note

After every planning turn the human picks what happens next:

    ────────────────────────────────────────
     Plan mode: next action

    → ● Approve and execute now
      ○ Continue from proposed plan — note: split step 3
      ○ Regenerate plan
      ○ Exit plan mode

     ↑↓ move • Enter select • Esc cancel
    ────────────────────────────────────────

The selector is a small two-state machine:

    NAVIGATING  --Tab on Continue-->  EDITING_NOTE
    EDITING_NOTE --Tab/Esc-->         NAVIGATING     (note kept)
    EDITING_NOTE --Enter, empty-->    NAVIGATING
    EDITING_NOTE --Enter, note-->     done(continue, note)
    NAVIGATING  --Enter-->            done(option under cursor)
    NAVIGATING  --Esc-->              done(cancelled)

It knows nothing about terminals: feed it keys with handle_input() and draw
what render() returns. select_next_action() is the terminal driver.
"""

import codecs
import os
import re
import shutil
import sys
from dataclasses import dataclass
from enum import Enum


# =============================================================================
# Key decoding
# =============================================================================

class Key:
    UP = ("\x1b[A", "\x1bOA")
    DOWN = ("\x1b[B", "\x1bOB")
    LEFT = ("\x1b[D", "\x1bOD")
    RIGHT = ("\x1b[C", "\x1bOC")
    HOME = ("\x1b[H", "\x1bOH", "\x1b[1~", "\x01")
    END = ("\x1b[F", "\x1bOF", "\x1b[4~", "\x05")
    ENTER = ("\r", "\n")
    TAB = ("\t",)
    ESCAPE = ("\x1b",)
    BACKSPACE = ("\x7f", "\x08")
    DELETE = ("\x1b[3~",)
    CLEAR_LINE = ("\x15",)
    CTRL_C = ("\x03",)


def matches_key(data: str, key: tuple) -> bool:
    return data in key


KEY_TOKEN = re.compile(r"\x1b\[[0-9;]*[A-Za-z~]|\x1bO[A-Za-z]|\x1b|.", re.DOTALL)


def split_keys(data: str) -> list[str]:
    """Split one raw read into separate keys: escape sequences stay whole."""
    return KEY_TOKEN.findall(data)


# =============================================================================
# Rendering primitives
# =============================================================================

class PlainTheme:
    """No colours. Used when output is not a terminal, and in tests."""

    def fg(self, role: str, text: str) -> str:
        return text


class AnsiTheme:
    COLORS = {
        "accent": "\x1b[36m",
        "text": "",
        "muted": "\x1b[90m",
        "dim": "\x1b[2m",
        "warning": "\x1b[33m",
    }
    RESET = "\x1b[0m"

    def fg(self, role: str, text: str) -> str:
        code = self.COLORS.get(role, "")
        return f"{code}{text}{self.RESET}" if code else text


ANSI_STYLE = re.compile(r"\x1b\[[0-9;]*m")
STYLE_OR_CHAR = re.compile(r"\x1b\[[0-9;]*m|.", re.DOTALL)


def visible_width(text: str) -> int:
    return len(ANSI_STYLE.sub("", text))


def truncate_to_width(text: str, width: int, ellipsis: str = "…") -> str:
    """Cut text to `width` visible characters, keeping colour codes intact."""
    if width <= 0:
        return ""
    if visible_width(text) <= width:
        return text

    limit = max(0, width - len(ellipsis))
    out = []
    visible = 0
    styled = False
    for token in STYLE_OR_CHAR.findall(text):
        if token.startswith("\x1b"):
            styled = True
            out.append(token)
            continue
        if visible >= limit:
            break
        out.append(token)
        visible += 1
    return "".join(out) + ellipsis + (AnsiTheme.RESET if styled else "")


# =============================================================================
# Selection model
# =============================================================================

class PlanAction(Enum):
    APPROVE = "approve"
    CONTINUE = "continue"
    REGENERATE = "regenerate"
    EXIT = "exit"


@dataclass
class ActionSelection:
    """Result of one approval round. `note` is only set for CONTINUE."""
    cancelled: bool
    action: PlanAction | None = None
    note: str | None = None


ACTION_OPTIONS = (
    ("Approve and execute now", PlanAction.APPROVE),
    ("Continue from proposed plan", PlanAction.CONTINUE),
    ("Regenerate plan", PlanAction.REGENERATE),
    ("Exit plan mode", PlanAction.EXIT),
)

CONTINUE_OPTION_INDEX = next(
    i for i, (_, action) in enumerate(ACTION_OPTIONS) if action == PlanAction.CONTINUE
)

EDIT_CARET = "▍"


def normalize_note(text: str) -> str:
    """Collapse whitespace runs to single spaces and trim."""
    return re.sub(r"\s+", " ", text or "").strip()


def note_or_none(text: str) -> str | None:
    normalized = normalize_note(text)
    return normalized if normalized else None


def build_continue_label(base_label: str, note: str, editing: bool, max_length: int) -> str:
    """
    Label for the Continue option with its note inlined.

    Too-long labels lose the tail of the note and end with an ellipsis. The
    option label itself is never cut.
    """
    normalized = normalize_note(note)
    if not normalized and not editing:
        return base_label

    suffix = f"{normalized}{EDIT_CARET}" if editing else normalized
    inline = f"{base_label} — note: {suffix}"
    if len(inline) <= max_length:
        return inline

    keep = max(max_length - 1, len(base_label))
    return f"{inline[:keep]}…"


# =============================================================================
# Line editor for the note
# =============================================================================

class NoteEditor:
    """Single-line editor: insert, backspace/delete, cursor moves, Enter submits."""

    def __init__(self, on_change=None, on_submit=None):
        self.text = ""
        self.cursor = 0
        self.on_change = on_change
        self.on_submit = on_submit

    def set_text(self, text: str):
        self.text = text
        self.cursor = len(text)

    def _changed(self):
        if self.on_change:
            self.on_change(self.text)

    def handle_input(self, data: str):
        if matches_key(data, Key.ENTER):
            if self.on_submit:
                self.on_submit(self.text)
            return
        if matches_key(data, Key.BACKSPACE):
            if self.cursor > 0:
                self.text = self.text[:self.cursor - 1] + self.text[self.cursor:]
                self.cursor -= 1
                self._changed()
            return
        if matches_key(data, Key.DELETE):
            if self.cursor < len(self.text):
                self.text = self.text[:self.cursor] + self.text[self.cursor + 1:]
                self._changed()
            return
        if matches_key(data, Key.CLEAR_LINE):
            self.text = self.text[self.cursor:]
            self.cursor = 0
            self._changed()
            return
        if matches_key(data, Key.LEFT):
            self.cursor = max(0, self.cursor - 1)
            return
        if matches_key(data, Key.RIGHT):
            self.cursor = min(len(self.text), self.cursor + 1)
            return
        if matches_key(data, Key.HOME):
            self.cursor = 0
            return
        if matches_key(data, Key.END):
            self.cursor = len(self.text)
            return
        if data.startswith("\x1b"):
            return

        # Plain text, possibly pasted: control characters become spaces
        inserted = "".join(ch if ch.isprintable() else " " for ch in data)
        if not inserted:
            return
        self.text = self.text[:self.cursor] + inserted + self.text[self.cursor:]
        self.cursor += len(inserted)
        self._changed()


# =============================================================================
# Selector state machine
# =============================================================================

class SelectorState(Enum):
    NAVIGATING = "navigating"
    EDITING_NOTE = "editing_note"


class ActionSelector:
    """
    Approval selector. Drive it with handle_input(), draw render(width).

    render() is memoised; every state change drops the cache and sets
    `dirty` so the driver knows a redraw is due.
    """

    TITLE = "Plan mode: next action"

    def __init__(self, theme=None):
        self.theme = theme or PlainTheme()
        self.state = SelectorState.NAVIGATING
        self.cursor = 0
        self.note = ""
        self.result: ActionSelection | None = None
        self.dirty = True
        self._cached: tuple[int, list[str]] | None = None

        self.editor = NoteEditor(on_change=self._on_note_change, on_submit=self._on_note_submit)

    @property
    def done(self) -> bool:
        return self.result is not None

    def invalidate(self):
        self._cached = None

    def _request_render(self):
        self._cached = None
        self.dirty = True

    def _finish(self, selection: ActionSelection):
        self.result = selection
        self._request_render()

    # -- note editor callbacks ------------------------------------------------

    def _on_note_change(self, value: str):
        self.note = value
        self._request_render()

    def _on_note_submit(self, value: str):
        self.note = value
        note = note_or_none(value)
        if note is None:
            self.state = SelectorState.NAVIGATING
            self._request_render()
            return
        self._finish(ActionSelection(cancelled=False, action=PlanAction.CONTINUE, note=note))

    def _open_editor(self):
        if self.cursor != CONTINUE_OPTION_INDEX:
            return
        self.state = SelectorState.EDITING_NOTE
        self.editor.set_text(self.note)
        self._request_render()

    # -- input ------------------------------------------------------------------

    def handle_input(self, data: str):
        if self.done:
            return
        if matches_key(data, Key.CTRL_C):
            self._finish(ActionSelection(cancelled=True))
            return
        if self.state == SelectorState.EDITING_NOTE:
            self._handle_editing(data)
        else:
            self._handle_navigating(data)

    def _handle_editing(self, data: str):
        if matches_key(data, Key.TAB) or matches_key(data, Key.ESCAPE):
            self.state = SelectorState.NAVIGATING
            self._request_render()
            return
        self.editor.handle_input(data)
        self._request_render()

    def _handle_navigating(self, data: str):
        if matches_key(data, Key.UP):
            self.cursor = max(0, self.cursor - 1)
            self._request_render()
            return
        if matches_key(data, Key.DOWN):
            self.cursor = min(len(ACTION_OPTIONS) - 1, self.cursor + 1)
            self._request_render()
            return
        if matches_key(data, Key.TAB):
            self._open_editor()
            return
        if matches_key(data, Key.ENTER):
            _, action = ACTION_OPTIONS[self.cursor]
            if action == PlanAction.CONTINUE:
                self._finish(ActionSelection(cancelled=False, action=action,
                                             note=note_or_none(self.note)))
                return
            self._finish(ActionSelection(cancelled=False, action=action))
            return
        if matches_key(data, Key.ESCAPE):
            self._finish(ActionSelection(cancelled=True))

    # -- rendering --------------------------------------------------------------

    def _hint(self) -> str:
        if self.state == SelectorState.EDITING_NOTE:
            return " Typing note inline • Enter continue • Tab/Esc stop editing"
        if self.cursor == CONTINUE_OPTION_INDEX:
            verb = "edit" if normalize_note(self.note) else "add"
            return f" ↑↓ move • Enter continue • Tab {verb} note • Esc cancel"
        return " ↑↓ move • Enter select • Esc cancel"

    def render(self, width: int) -> list[str]:
        if self._cached is not None and self._cached[0] == width:
            return self._cached[1]

        theme = self.theme
        lines: list[str] = []

        def add(line: str):
            lines.append(truncate_to_width(line, width))

        add(theme.fg("accent", "─" * width))
        add(theme.fg("text", f" {self.TITLE}"))
        lines.append("")

        max_label = max(20, width - 8)
        for index, (label, action) in enumerate(ACTION_OPTIONS):
            selected = index == self.cursor
            if action == PlanAction.CONTINUE:
                editing = self.state == SelectorState.EDITING_NOTE and selected
                label = build_continue_label(label, self.note, editing, max_label)
            prefix = theme.fg("accent", "→ ") if selected else "  "
            bullet = "●" if selected else "○"
            add(prefix + theme.fg("accent" if selected else "text", f"{bullet} {label}"))

        lines.append("")
        add(theme.fg("dim", self._hint()))
        add(theme.fg("accent", "─" * width))

        self._cached = (width, lines)
        return lines


# =============================================================================
# Terminal driver
# =============================================================================

def parse_choice(response: str) -> ActionSelection | None:
    """
    Parse a typed answer for the line-based fallback.

    "1".."4" pick an option; "2 <note>" continues with a note; "", "q" or
    "quit" cancel. Returns None for anything unrecognised.
    """
    response = response.strip()
    if response.lower() in ("", "q", "quit"):
        return ActionSelection(cancelled=True)

    head, _, rest = response.partition(" ")
    if not head.isdigit() or not 1 <= int(head) <= len(ACTION_OPTIONS):
        return None

    _, action = ACTION_OPTIONS[int(head) - 1]
    if action == PlanAction.CONTINUE:
        return ActionSelection(cancelled=False, action=action, note=note_or_none(rest))
    return ActionSelection(cancelled=False, action=action)


def _select_with_input() -> ActionSelection:
    print(f"\n┌─ {ActionSelector.TITLE} {'─' * 30}┐")
    for i, (label, _) in enumerate(ACTION_OPTIONS, start=1):
        print(f"│ [{i}] {label}")
    print(f"│ Add a note with '{CONTINUE_OPTION_INDEX + 1} <note>'. Empty or 'q' cancels.")
    while True:
        try:
            response = input("└─> ")
        except (EOFError, KeyboardInterrupt):
            return ActionSelection(cancelled=True)
        selection = parse_choice(response)
        if selection is not None:
            return selection
        print(f"  Please enter 1-{len(ACTION_OPTIONS)}")


def _move_up(n: int):
    if n > 0:
        sys.stdout.write(f"\x1b[{n}A")


def _clear_block(count: int):
    if count <= 0:
        return
    _move_up(count)
    for i in range(count):
        sys.stdout.write("\r\x1b[2K")
        if i != count - 1:
            sys.stdout.write("\n")
    sys.stdout.write("\r")
    _move_up(count - 1)


def _draw_block(previous: int, lines: list[str]):
    _clear_block(previous)
    for line in lines:
        sys.stdout.write("\r" + line + "\r\n")
    sys.stdout.flush()


def feed_raw_input(selector: ActionSelector, decoder, raw: bytes):
    """Decode one raw read and feed its keys. Partial UTF-8 stays in `decoder`."""
    for key in split_keys(decoder.decode(raw)):
        selector.handle_input(key)
        if selector.done:
            break


def select_next_action(theme=None) -> ActionSelection:
    """
    Run one approval round on the controlling terminal.

    Uses raw key input when stdin/stdout are a TTY on a POSIX system,
    otherwise falls back to a numbered input() prompt.
    """
    try:
        interactive = sys.stdin.isatty() and sys.stdout.isatty()
    except (AttributeError, ValueError):
        interactive = False
    if not interactive:
        return _select_with_input()

    try:
        import termios
        import tty
    except ImportError:
        return _select_with_input()

    selector = ActionSelector(theme or AnsiTheme())
    decoder = codecs.getincrementaldecoder("utf-8")(errors="ignore")
    fd = sys.stdin.fileno()
    saved = termios.tcgetattr(fd)
    drawn = 0
    try:
        tty.setraw(fd)
        while not selector.done:
            if selector.dirty:
                lines = selector.render(shutil.get_terminal_size().columns)
                _draw_block(drawn, lines)
                drawn = len(lines)
                selector.dirty = False

            raw = os.read(fd, 64)
            if not raw:
                selector.handle_input(Key.ESCAPE[0])
                break
            feed_raw_input(selector, decoder, raw)
    finally:
        termios.tcsetattr(fd, termios.TCSADRAIN, saved)
        _clear_block(drawn)
        sys.stdout.flush()

    return selector.result or ActionSelection(cancelled=True)
