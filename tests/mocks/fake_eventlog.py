"""
Fake progress stage.

Steps record their state transitions so tests can compare whole step
lists with ==. A stage built with a shared events list also appends
"step_<state>" entries to it, for ordering checks against other fakes.
"""

from dataclasses import dataclass, field

from microdeploy.eventlog import EventState


@dataclass
class FakeStep:
    name: str
    states: list[EventState] = field(default_factory=list)
    fail_message: str = ""
    events: list[str] | None = field(default=None, compare=False, repr=False)

    def start(self) -> None:
        self._record(EventState.STARTED)

    def finish(self) -> None:
        self._record(EventState.FINISHED)

    def fail(self, message: str) -> None:
        self._record(EventState.FAILED)
        self.fail_message = message

    def _record(self, state: EventState) -> None:
        self.states.append(state)
        if self.events is not None:
            self.events.append(f"step_{state.value}")


class FakeStage:
    def __init__(self, events: list[str] | None = None):
        self.steps: list[FakeStep] = []
        self.events = events

    def new_step(self, name: str) -> FakeStep:
        step = FakeStep(name, events=self.events)
        self.steps.append(step)
        return step

    def step_names(self) -> list[str]:
        return [step.name for step in self.steps]


def finished(name: str) -> FakeStep:
    return FakeStep(name, [EventState.STARTED, EventState.FINISHED])


def failed(name: str, message: str) -> FakeStep:
    return FakeStep(name, [EventState.STARTED, EventState.FAILED], message)
