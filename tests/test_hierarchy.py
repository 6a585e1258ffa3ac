import pytest

from step_sequencer.hierarchy import Hierarchy, InvalidTransition
from step_sequencer.models import Severity, StepStatus, TaskGroup
from step_sequencer.references import ReferenceResolver


@pytest.fixture
def steps(make_step):
    return [
        make_step("grab", "grab", target="A"),
        make_step("place", "grab_and_snap", target="A", destination="Socket1"),
        make_step("read", "show_instruction", hint="Done"),
    ]


# ---------------------------------------------------------------------------
# Traversal Tests
# ---------------------------------------------------------------------------

def test_traversal_within_group(steps, make_program):
    hierarchy = Hierarchy(make_program(steps))
    assert hierarchy.next_step(steps[0]) is steps[1]
    assert hierarchy.next_step(steps[2]) is None
    assert hierarchy.steps_after(steps[0]) == steps[1:]
    assert hierarchy.index_in_group(steps[2]) == 2
    assert hierarchy.location(steps[1]) == "Module/Group 0/place"

def test_parent_lookups(steps, make_program, make_step):
    other = make_step("other", "grab", target="B")
    program = make_program(steps, [other])
    hierarchy = Hierarchy(program)
    group = hierarchy.parent_task_group(other)
    assert group.name == "Group 1"
    assert hierarchy.parent_module(group) is program.modules[0]
    assert [g.name for _, g in hierarchy.task_groups()] == ["Group 0", "Group 1"]

def test_unknown_step_raises_key_error(steps, make_program, make_step):
    hierarchy = Hierarchy(make_program(steps))
    with pytest.raises(KeyError):
        hierarchy.parent_task_group(make_step("stray", "grab", target="A"))

def test_first_pending_step(steps, make_program):
    hierarchy = Hierarchy(make_program(steps))
    assert hierarchy.first_pending_step() is steps[0]
    steps[0].status = StepStatus.COMPLETED
    assert hierarchy.first_pending_step() is steps[1]

# ---------------------------------------------------------------------------
# Mutation Tests
# ---------------------------------------------------------------------------

def test_status_moves_forward_only(steps, make_program):
    hierarchy = Hierarchy(make_program(steps))
    with pytest.raises(InvalidTransition):
        hierarchy.mark_completed(steps[0])

    hierarchy.mark_active(steps[0])
    with pytest.raises(InvalidTransition):
        hierarchy.mark_active(steps[0])

    hierarchy.mark_completed(steps[0])
    assert steps[0].status is StepStatus.COMPLETED
    with pytest.raises(InvalidTransition):
        hierarchy.mark_completed(steps[0])

def test_reset_returns_everything_to_not_started(steps, make_program):
    hierarchy = Hierarchy(make_program(steps))
    hierarchy.mark_active(steps[0])
    hierarchy.mark_completed(steps[0])
    hierarchy.mark_active(steps[1])
    hierarchy.reset()
    assert all(s.status is StepStatus.NOT_STARTED for s in steps)

# ---------------------------------------------------------------------------
# Validation Tests
# ---------------------------------------------------------------------------

def test_valid_program_has_no_issues(steps, make_program):
    assert Hierarchy(make_program(steps)).validate() == []

def test_invalid_step_is_reported_with_location(steps, make_program, make_step):
    steps.append(make_step("broken", "grab"))
    issues = Hierarchy(make_program(steps)).validate()
    assert len(issues) == 1
    assert issues[0].location == "Module/Group 0/broken"
    assert issues[0].severity is Severity.ERROR

def test_duplicate_names_within_group(make_step, make_program):
    group = [make_step("grab", "grab", target="A"), make_step("grab", "grab", target="B")]
    issues = Hierarchy(make_program(group)).validate()
    assert len(issues) == 1
    assert "Duplicate step name 'grab'" in issues[0].message

def test_same_name_in_different_groups_is_fine(make_step, make_program):
    program = make_program(
        TaskGroup(name="First", steps=[make_step("grab", "grab", target="A")]),
        TaskGroup(name="Second", steps=[make_step("grab", "grab", target="A")]),
    )
    assert Hierarchy(program).validate() == []

def test_reference_warnings(steps, make_program, world):
    world.add("A")
    warnings = Hierarchy(make_program(steps)).reference_warnings(ReferenceResolver(world))
    assert len(warnings) == 1
    assert warnings[0].severity is Severity.WARNING
    assert "Socket1" in warnings[0].message
