"""
Event Log Module

Record and display step-structured progress for deployment operations.

A Stage groups the Steps of one top-level operation (delete, start jobs,
wait for agent). Each Step moves from STARTED to either FINISHED or
FAILED(message). Every transition is recorded as an Event and rendered as
one line on the output stream.

Security Requirements:
- No credential exposure in output
- Safe output formatting
"""

import logging
import sys
import time
from dataclasses import dataclass
from enum import Enum
from typing import Protocol

from rich.console import Console
from rich.markup import escape

logger = logging.getLogger(__name__)


class EventLoggerError(Exception):
    """Raised when a step transition is invalid."""

    pass


class EventState(Enum):
    """Step state indicators."""

    STARTED = "started"
    FINISHED = "finished"
    FAILED = "failed"


@dataclass
class Event:
    """One recorded step transition."""

    time: float
    stage: str
    step_name: str
    step_index: int
    total: int
    state: EventState
    message: str = ""


class StepHandle(Protocol):
    """Capability set for a single progress step."""

    def start(self) -> None: ...

    def finish(self) -> None: ...

    def fail(self, message: str) -> None: ...


class StageHandle(Protocol):
    """Capability set for a progress stage."""

    def new_step(self, name: str) -> StepHandle: ...


class EventLogger:
    """
    Record events and render them to a console.

    Features:
    - Per-state symbols
    - Elapsed time on step close
    - Full event history for auditing
    """

    SYMBOLS = {
        EventState.STARTED: "►",
        EventState.FINISHED: "✓",
        EventState.FAILED: "✗",
    }

    ASCII_SYMBOLS = {
        EventState.STARTED: ">",
        EventState.FINISHED: "OK",
        EventState.FAILED: "FAIL",
    }

    def __init__(self, use_unicode: bool = True, output_file=None):
        """
        Initialize event logger.

        Args:
            use_unicode: Use Unicode symbols (True) or ASCII (False)
            output_file: Output file object (default: sys.stdout)
        """
        self.use_unicode = use_unicode
        self.console = Console(file=output_file or sys.stdout, highlight=False)
        self.events: list[Event] = []

    def new_stage(self, name: str) -> "Stage":
        """
        Create a stage for one top-level operation.

        Example:
            >>> stage = EventLogger().new_stage("deleting deployment")
            >>> step = stage.new_step("Deleting VM 'vm-1234'")
        """
        return Stage(name, self)

    def add_event(self, event: Event, elapsed: float | None = None) -> None:
        """Record an event and print it."""
        self.events.append(event)
        self._print(self._format_event(event, elapsed))

    def get_events(self) -> list[Event]:
        """Get a copy of all recorded events."""
        return self.events.copy()

    def _format_event(self, event: Event, elapsed: float | None) -> str:
        symbols = self.SYMBOLS if self.use_unicode else self.ASCII_SYMBOLS
        line = f"{symbols[event.state]} {event.step_name}"

        if event.state == EventState.FAILED and event.message:
            line += f": {event.message}"

        if elapsed is not None:
            line += f" ({self._format_duration(elapsed)})"

        return line

    def _format_duration(self, seconds: float) -> str:
        """
        Format duration in human-readable format.

        Args:
            seconds: Duration in seconds

        Returns:
            str: Formatted duration (e.g., "2m 30s")
        """
        if seconds < 60:
            return f"{seconds:.1f}s"
        if seconds < 3600:
            minutes = int(seconds // 60)
            secs = int(seconds % 60)
            return f"{minutes}m {secs}s"
        hours = int(seconds // 3600)
        minutes = int((seconds % 3600) // 60)
        return f"{hours}h {minutes}m"

    def _print(self, message: str) -> None:
        # Step names carry user data (job names, CIDs); never interpret it as markup
        self.console.print(escape(message), soft_wrap=True)


class Stage:
    """Ordered, append-only collection of steps for one operation."""

    def __init__(self, name: str, event_logger: EventLogger):
        self.name = name
        self.event_logger = event_logger
        self.steps: list[Step] = []
        self.start_time: float | None = None

    def start(self) -> None:
        self.start_time = time.time()
        logger.debug(f"Stage '{self.name}' started")

    def finish(self) -> None:
        if self.start_time is not None:
            elapsed = time.time() - self.start_time
            logger.debug(f"Stage '{self.name}' finished in {elapsed:.1f}s")

    def new_step(self, name: str) -> "Step":
        step = Step(self, name, len(self.steps) + 1)
        self.steps.append(step)
        return step


class Step:
    """Single named step with a Started -> Finished|Failed lifecycle."""

    def __init__(self, stage: Stage, name: str, index: int):
        self.stage = stage
        self.name = name
        self.index = index
        self.state: EventState | None = None
        self.fail_message = ""
        self.start_time: float | None = None

    def start(self) -> None:
        if self.state is not None:
            raise EventLoggerError(f"Step '{self.name}' already started")
        self.start_time = time.time()
        self._transition(EventState.STARTED)

    def finish(self) -> None:
        self._close(EventState.FINISHED)

    def fail(self, message: str) -> None:
        self.fail_message = message
        self._close(EventState.FAILED, message)

    @property
    def closed(self) -> bool:
        return self.state in (EventState.FINISHED, EventState.FAILED)

    def _close(self, state: EventState, message: str = "") -> None:
        if self.state != EventState.STARTED:
            raise EventLoggerError(
                f"Step '{self.name}' cannot move to {state.value} from "
                f"{self.state.value if self.state else 'not started'}"
            )
        elapsed = time.time() - self.start_time if self.start_time else None
        self._transition(state, message, elapsed)

    def _transition(
        self, state: EventState, message: str = "", elapsed: float | None = None
    ) -> None:
        self.state = state
        event = Event(
            time=time.time(),
            stage=self.stage.name,
            step_name=self.name,
            step_index=self.index,
            total=len(self.stage.steps),
            state=state,
            message=message,
        )
        self.stage.event_logger.add_event(event, elapsed)


__all__ = [
    "Event",
    "EventLogger",
    "EventLoggerError",
    "EventState",
    "Stage",
    "StageHandle",
    "Step",
    "StepHandle",
]
