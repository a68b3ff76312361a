"""
Tests for the plan approval selector state machine and its rendering.
"""
import codecs
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from action_selector import (
    ACTION_OPTIONS,
    ActionSelection,
    ActionSelector,
    AnsiTheme,
    NoteEditor,
    PlanAction,
    SelectorState,
    build_continue_label,
    feed_raw_input,
    normalize_note,
    parse_choice,
    split_keys,
    truncate_to_width,
    visible_width,
)

UP, DOWN, ENTER, TAB, ESC, BACKSPACE = "\x1b[A", "\x1b[B", "\r", "\t", "\x1b", "\x7f"


def feed(selector: ActionSelector, *keys: str):
    for key in keys:
        selector.handle_input(key)


def type_text(selector: ActionSelector, text: str):
    for ch in text:
        selector.handle_input(ch)


def test_enter_commits_option_under_cursor():
    expected = [PlanAction.APPROVE, PlanAction.CONTINUE, PlanAction.REGENERATE, PlanAction.EXIT]
    for index, action in enumerate(expected):
        selector = ActionSelector()
        feed(selector, *([DOWN] * index), ENTER)
        assert selector.result == ActionSelection(cancelled=False, action=action)


def test_cursor_is_clamped():
    selector = ActionSelector()
    feed(selector, UP, UP)
    assert selector.cursor == 0
    feed(selector, *([DOWN] * 10))
    assert selector.cursor == len(ACTION_OPTIONS) - 1


def test_escape_cancels_round():
    selector = ActionSelector()
    feed(selector, DOWN, ESC)
    assert selector.result == ActionSelection(cancelled=True)
    # Input after completion is ignored
    feed(selector, ENTER)
    assert selector.result == ActionSelection(cancelled=True)


def test_tab_only_opens_editor_on_continue():
    selector = ActionSelector()
    feed(selector, TAB)
    assert selector.state == SelectorState.NAVIGATING
    feed(selector, DOWN, TAB)
    assert selector.state == SelectorState.EDITING_NOTE


def test_note_submitted_with_enter_is_normalized():
    selector = ActionSelector()
    feed(selector, DOWN, TAB)
    type_text(selector, "  split   step  3 ")
    feed(selector, ENTER)
    assert selector.result == ActionSelection(
        cancelled=False, action=PlanAction.CONTINUE, note="split step 3"
    )


def test_enter_with_blank_note_returns_to_navigation():
    selector = ActionSelector()
    feed(selector, DOWN, TAB)
    type_text(selector, "   ")
    feed(selector, ENTER)
    assert not selector.done
    assert selector.state == SelectorState.NAVIGATING


def test_tab_and_escape_close_editor_keeping_note():
    for close_key in (TAB, ESC):
        selector = ActionSelector()
        feed(selector, DOWN, TAB)
        type_text(selector, "keep me")
        feed(selector, close_key)
        assert selector.state == SelectorState.NAVIGATING
        assert not selector.done
        feed(selector, ENTER)
        assert selector.result.note == "keep me"


def test_continue_without_note_gives_none_not_empty_string():
    selector = ActionSelector()
    feed(selector, DOWN, ENTER)
    assert selector.result.action == PlanAction.CONTINUE
    assert selector.result.note is None


def test_editor_keys_do_not_move_cursor():
    selector = ActionSelector()
    feed(selector, DOWN, TAB, UP, DOWN)
    assert selector.cursor == 1
    type_text(selector, "ab")
    feed(selector, BACKSPACE)
    assert selector.note == "a"


def test_render_is_memoized_and_invalidated_on_change():
    selector = ActionSelector()
    first = selector.render(60)
    assert selector.render(60) is first
    feed(selector, DOWN)
    second = selector.render(60)
    assert second is not first
    selector.invalidate()
    assert selector.render(60) is not second


def test_render_layout_and_hints():
    selector = ActionSelector()
    lines = selector.render(60)
    assert lines[1] == " Plan mode: next action"
    assert lines[3] == "→ ● Approve and execute now"
    assert lines[4] == "  ○ Continue from proposed plan"
    assert "Enter select" in lines[-2]

    feed(selector, DOWN)
    assert "Tab add note" in selector.render(60)[-2]
    feed(selector, TAB)
    type_text(selector, "x")
    lines = selector.render(60)
    assert lines[4] == "→ ● Continue from proposed plan — note: x▍"
    assert "Tab/Esc stop editing" in lines[-2]
    feed(selector, TAB)
    assert "Tab edit note" in selector.render(60)[-2]


def test_rendered_lines_fit_width():
    selector = ActionSelector(AnsiTheme())
    feed(selector, DOWN, TAB)
    type_text(selector, "a very long note " * 10)
    for line in selector.render(40):
        assert visible_width(line) <= 40


def test_continue_label_truncates_note_tail_only():
    base = "Continue from proposed plan"
    assert build_continue_label(base, "", False, 40) == base
    assert build_continue_label(base, "", True, 40) == f"{base} — note: ▍"

    label = build_continue_label(base, "refine the second step " * 5, False, 52)
    assert label.startswith(f"{base} — note: refine")
    assert label.endswith("…")
    assert len(label) == 52

    narrow = build_continue_label(base, "note", False, 20)
    assert narrow.startswith(base)
    assert narrow.endswith("…")


def test_normalize_note():
    assert normalize_note("  a \n\t b  ") == "a b"
    assert normalize_note("   ") == ""


def test_note_editor_cursor_editing():
    submitted = []
    editor = NoteEditor(on_submit=submitted.append)
    for key in ("a", "c", "\x1b[D", "b", "\x1b[H", "\x1b[3~", "\x1b[F", "!"):
        editor.handle_input(key)
    assert editor.text == "bc!"
    editor.handle_input("\r")
    assert submitted == ["bc!"]


def test_truncate_to_width_keeps_styles():
    styled = "\x1b[36m" + "x" * 30 + "\x1b[0m"
    cut = truncate_to_width(styled, 10)
    assert visible_width(cut) == 10
    assert cut.startswith("\x1b[36m")
    assert cut.endswith("…\x1b[0m")
    assert truncate_to_width("short", 10) == "short"
    assert truncate_to_width("anything", 0) == ""


def test_split_keys():
    assert split_keys("\x1b[A\x1b[Bab\r") == ["\x1b[A", "\x1b[B", "a", "b", "\r"]
    assert split_keys("\x1b") == ["\x1b"]


def test_raw_input_keeps_characters_split_across_reads():
    selector = ActionSelector()
    decoder = codecs.getincrementaldecoder("utf-8")(errors="ignore")
    feed_raw_input(selector, decoder, (DOWN + TAB).encode())

    data = ("a" * 63 + "é").encode("utf-8")
    feed_raw_input(selector, decoder, data[:64])
    feed_raw_input(selector, decoder, data[64:])
    feed_raw_input(selector, decoder, ENTER.encode())

    assert selector.result == ActionSelection(
        cancelled=False, action=PlanAction.CONTINUE, note="a" * 63 + "é"
    )


def test_narrow_render_still_fits_width():
    selector = ActionSelector()
    feed(selector, DOWN, TAB)
    type_text(selector, "note")
    for line in selector.render(24):
        assert visible_width(line) <= 24
    assert build_continue_label("Continue from proposed plan", "note", True, 20).startswith(
        "Continue from proposed plan"
    )


def test_parse_choice():
    assert parse_choice("1") == ActionSelection(cancelled=False, action=PlanAction.APPROVE)
    assert parse_choice("2 tighten  step 2 ") == ActionSelection(
        cancelled=False, action=PlanAction.CONTINUE, note="tighten step 2"
    )
    assert parse_choice("2").note is None
    assert parse_choice("3 ignored").note is None
    assert parse_choice("") == ActionSelection(cancelled=True)
    assert parse_choice("q").cancelled
    assert parse_choice("9") is None
    assert parse_choice("approve") is None
