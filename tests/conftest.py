import pytest

from step_sequencer.config import EngineConfig
from step_sequencer.models import Framework, Module, ObjectReference, Program, Step, StepType, TaskGroup
from step_sequencer.world import SimulatedWorld


@pytest.fixture
def world():
    return SimulatedWorld(Framework.XRI)


@pytest.fixture
def auto_hands_world():
    return SimulatedWorld(Framework.AUTO_HANDS)


@pytest.fixture
def config():
    return EngineConfig(poll_interval_s=0.5, substate_timeout_s=2.0, condition_poll_interval_s=0.1)


@pytest.fixture
def make_step():
    def _make(name, type, target="", destination="", socket="", **kwargs):
        return Step(
            name=name,
            type=StepType(type),
            target=ObjectReference(path=target),
            destination=ObjectReference(path=destination),
            socket=ObjectReference(path=socket),
            **kwargs,
        )

    return _make


@pytest.fixture
def make_program():
    def _make(*groups, name="Test Program"):
        task_groups = [g if isinstance(g, TaskGroup) else TaskGroup(name=f"Group {i}", steps=list(g)) for i, g in enumerate(groups)]
        return Program(name=name, modules=[Module(name="Module", task_groups=task_groups)])

    return _make
