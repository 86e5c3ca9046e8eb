"""
Auto-connect workflow state machine.

The steps run strictly in order and a failure is absorbing until
``reset()``. The work of each step is a caller-supplied coroutine; this
module only sequences it and reports progress.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

from .storage_interface import InvalidTransition


logger = logging.getLogger(__name__)


class ConnectStep(Enum):
    IDLE = "idle"
    FORWARDING_PORT = "forwarding_port"
    LOADING_TARGETS = "loading_targets"
    CONNECTING_CDP = "connecting_cdp"
    CONNECTED = "connected"
    ERROR = "error"


class StepStatus(Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    ERROR = "error"


STEP_ORDER = [
    ConnectStep.IDLE,
    ConnectStep.FORWARDING_PORT,
    ConnectStep.LOADING_TARGETS,
    ConnectStep.CONNECTING_CDP,
    ConnectStep.CONNECTED,
]

WORK_STEPS = STEP_ORDER[1:-1]


@dataclass(frozen=True)
class WorkflowError:
    message: str
    failed_step: ConnectStep


@dataclass(frozen=True)
class Transition:
    previous: ConnectStep
    current: ConnectStep
    error: Optional[WorkflowError] = None


TransitionListener = Callable[[Transition], None]
StepAction = Callable[[Any], Awaitable[Any]]


class ConnectionWorkflow:
    """Idle -> ForwardingPort -> LoadingTargets -> ConnectingCdp -> Connected."""

    def __init__(self):
        self._step = ConnectStep.IDLE
        self._error: Optional[WorkflowError] = None
        self._listeners: List[TransitionListener] = []

    @property
    def step(self) -> ConnectStep:
        return self._step

    @property
    def error(self) -> Optional[WorkflowError]:
        return self._error

    @property
    def in_progress(self) -> bool:
        return self._step in WORK_STEPS

    def add_listener(self, listener: TransitionListener) -> Callable[[], None]:
        """Subscribe to transitions; returns an unsubscribe callable."""
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def _transition(self, step: ConnectStep, error: Optional[WorkflowError] = None) -> None:
        previous = self._step
        self._step = step
        self._error = error
        transition = Transition(previous=previous, current=step, error=error)
        logger.debug(f"Connection workflow {previous.value} -> {step.value}")
        for listener in list(self._listeners):
            listener(transition)

    def advance(self, step: ConnectStep) -> None:
        """Move to ``step``, which must be the next step in order."""
        if self._step is ConnectStep.ERROR:
            raise InvalidTransition(
                f"workflow failed at {self._error.failed_step.value}; reset before retrying"
            )
        if self._step is ConnectStep.CONNECTED:
            raise InvalidTransition("workflow already connected; reset before reconnecting")

        expected = STEP_ORDER[STEP_ORDER.index(self._step) + 1]
        if step is not expected:
            raise InvalidTransition(
                f"cannot move from {self._step.value} to {step.value}; next step is {expected.value}"
            )
        self._transition(step)

    def fail(self, message: str) -> WorkflowError:
        """Record a failure of the step in progress."""
        if not self.in_progress:
            raise InvalidTransition(f"no step in progress to fail (state {self._step.value})")
        error = WorkflowError(message=message, failed_step=self._step)
        self._transition(ConnectStep.ERROR, error)
        logger.warning(f"Connection workflow failed at {error.failed_step.value}: {message}")
        return error

    def reset(self) -> None:
        self._transition(ConnectStep.IDLE)

    def step_status(self, step: ConnectStep) -> StepStatus:
        """Progress of ``step`` relative to the current state, for display."""
        if step not in STEP_ORDER:
            raise ValueError(f"{step.value} is not a workflow step")
        index = STEP_ORDER.index(step)

        if self._step is ConnectStep.ERROR:
            failed_index = STEP_ORDER.index(self._error.failed_step)
            if index < failed_index:
                return StepStatus.COMPLETED
            if index == failed_index:
                return StepStatus.ERROR
            return StepStatus.PENDING

        if self._step is ConnectStep.CONNECTED:
            return StepStatus.COMPLETED

        current_index = STEP_ORDER.index(self._step)
        if index < current_index:
            return StepStatus.COMPLETED
        if index == current_index:
            return StepStatus.IN_PROGRESS
        return StepStatus.PENDING

    async def run(
        self, actions: Mapping[ConnectStep, StepAction], initial: Any = None
    ) -> Dict[ConnectStep, Any]:
        """
        Execute the step actions in order, from Idle to Connected.

        Each action receives the previous action's result (``initial`` for
        the first). The first failure moves the workflow to Error and is
        re-raised; nothing is retried.
        """
        missing = [step.value for step in WORK_STEPS if step not in actions]
        if missing:
            raise ValueError(f"Missing actions for steps: {missing}")
        if self._step is not ConnectStep.IDLE:
            raise InvalidTransition(f"workflow must start from idle, not {self._step.value}")

        results: Dict[ConnectStep, Any] = {}
        previous = initial
        for step in WORK_STEPS:
            self.advance(step)
            try:
                previous = await actions[step](previous)
            except asyncio.CancelledError:
                self.fail("cancelled")
                raise
            except Exception as e:
                self.fail(str(e) or type(e).__name__)
                raise
            results[step] = previous

        self.advance(ConnectStep.CONNECTED)
        return results
