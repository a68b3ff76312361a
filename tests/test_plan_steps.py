"""
Tests for plan step extraction and [DONE:n] progress tracking.
"""
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from plan_steps import (
    PlanStep,
    clean_step_text,
    completed_count,
    extract_steps,
    first_incomplete,
    format_progress,
    mark_completed,
)


CONTRACT_ANSWER = """1) Goal
Add a config parser.

2) Evidence gathered
   - src/config.py
   - tests/test_config.py

3) Uncertainties / assumptions
   1. YAML is not needed

4) Plan:
   1. Write parser in `src/config.py`
      - handle comments
   2. **Add tests** for edge cases
   3. Wire parser into the CLI
5) Risks and rollback notes
   1. None

6) Ready to execute when approved.
"""


def test_no_plan_section_gives_empty_list():
    assert extract_steps("") == []
    assert extract_steps("Just some thoughts.\n1. not a plan\n2. still not") == []


def test_simple_plan_block():
    steps = extract_steps("Plan:\n1. Write parser\n2. Add tests\n")
    assert [s.ordinal for s in steps] == [1, 2]
    assert [s.text for s in steps] == ["Write parser", "Add tests"]
    assert not any(s.completed for s in steps)


def test_plan_section_inside_contract_answer():
    steps = extract_steps(CONTRACT_ANSWER)
    assert [s.text for s in steps] == [
        "Write parser in src/config.py",
        "Add tests for edge cases",
        "Wire parser into the CLI",
    ]
    assert [s.ordinal for s in steps] == [1, 2, 3]


def test_header_variants():
    for header in ("**Plan:**", "## Plan", "Plan", "4) Plan:", "### plan:"):
        steps = extract_steps(f"{header}\n1) First\n2) Second\n")
        assert [s.text for s in steps] == ["First", "Second"], header


def test_ordinals_are_sequential_even_if_source_numbering_is_not():
    steps = extract_steps("Plan:\n3. a step\n7. another step\n1. last step\n")
    assert [s.ordinal for s in steps] == [1, 2, 3]


def test_text_after_list_ends_block():
    text = "Plan:\n1. Do it\n2. Check it\nAfter that we are done.\n3. Unrelated\n"
    assert [s.text for s in extract_steps(text)] == ["Do it", "Check it"]


def test_last_plan_section_wins():
    text = "Plan:\n1. Old step\n\nRevised plan:\n\nPlan:\n1. New step\n2. Newer step\n"
    assert [s.text for s in extract_steps(text)] == ["New step", "Newer step"]


def test_long_step_text_is_truncated():
    text = clean_step_text("word " * 40)
    assert len(text) <= 80
    assert text.endswith("...")


def test_mark_completed_counts_new_completions():
    steps = [PlanStep(1, "Write parser"), PlanStep(2, "Add tests")]
    assert mark_completed("Finished the parser [DONE:1]", steps) == 1
    assert steps[0].completed and not steps[1].completed
    # Repeated and unknown markers are ignored
    assert mark_completed("[DONE:1] [done: 1] [DONE:9] [DONE:0]", steps) == 0
    assert mark_completed("[DONE:2]", steps) == 1
    assert completed_count(steps) == 2


def test_mark_completed_is_total_and_order_independent():
    steps = [PlanStep(n, f"step {n}") for n in range(1, 4)]
    assert mark_completed("", steps) == 0
    assert mark_completed("no markers here [DONE:] [DONE:x]", steps) == 0
    assert mark_completed("[DONE:3] then [DONE:1]", steps) == 2
    assert [s.completed for s in steps] == [True, False, True]


def test_mark_completed_is_monotonic():
    steps = [PlanStep(1, "a"), PlanStep(2, "b"), PlanStep(3, "c")]
    transcript = ""
    seen: set[int] = set()
    for chunk in ("[DONE:2]", "nothing", "[DONE:1]", "", "[DONE:3] [DONE:2]"):
        transcript += chunk
        mark_completed(transcript, steps)
        done = {s.ordinal for s in steps if s.completed}
        assert seen <= done
        seen = done
    assert seen == {1, 2, 3}


def test_first_incomplete_and_progress():
    steps = [PlanStep(1, "Write parser", completed=True), PlanStep(2, "Add tests")]
    assert first_incomplete(steps).ordinal == 2
    assert format_progress(steps) == "1. [x] Write parser\n2. [ ] Add tests\n(1/2 done)"
    steps[1].completed = True
    assert first_incomplete(steps) is None
