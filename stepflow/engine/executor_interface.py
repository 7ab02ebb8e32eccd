"""
Executor Interface - Base classes for protocol step executors

This module contains:
1. The StepExecutor base class every protocol executor implements
2. StepContext, the per-step view of the run handed to executors
3. The step error hierarchy raised by executors and the runner
4. run_cancellable, which ties a blocking protocol call to the run's
   cancellation event
"""

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, TypeVar

from ..models.flow import Step, StepKind
from .run_log import StepLogContext
from .template import TemplateRenderer
from .variables import VariableStore

logger = logging.getLogger(__name__)

CANCEL_POLL_SECONDS = 0.05

T = TypeVar("T")


class StepError(Exception):
    """Raised when a step fails. Any StepError aborts the flow."""

    def __init__(self, step_name: str, message: str, original_error: Exception = None):
        self.step_name = step_name
        self.message = message
        self.original_error = original_error
        super().__init__(f"step '{step_name}': {message}")


class ConfigurationError(StepError):
    """Missing field, unresolved connection target or unsupported option."""
    pass


class ProtocolError(StepError):
    """Dial, connect, transport or parse failure of the protocol operation."""
    pass


class ExpectationError(StepError):
    """The operation succeeded but its outcome differs from the expectation."""

    def __init__(self, step_name: str, message: str, expected: Any = None, actual: Any = None,
                 detail: str = ""):
        self.expected = expected
        self.actual = actual
        self.detail = detail
        super().__init__(step_name, message)


class FlowCancelledError(StepError):
    """The run-scoped cancellation event was set."""
    pass


@dataclass
class StepContext:
    """
    Everything an executor needs to run one step.

    Templates are rendered against the variable store as it is when the
    executor asks, so a step only ever sees values saved by earlier steps.
    """
    step: Step
    variables: VariableStore
    renderer: TemplateRenderer
    log: StepLogContext
    cancel_event: threading.Event = field(default_factory=threading.Event)

    @property
    def name(self) -> str:
        return self.step.name

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    @property
    def timeout(self) -> int:
        return self.step.timeout_seconds

    def render(self, template: Optional[str]) -> str:
        return self.renderer.render(template, self.variables.as_dict())

    def render_list(self, values: Optional[List[str]]) -> List[str]:
        return self.renderer.render_list(values, self.variables.as_dict())

    def render_map(self, values: Optional[Dict[str, str]]) -> Dict[str, str]:
        """Render every value of a header-style mapping."""
        return {key: self.render(value) for key, value in (values or {}).items()}


class StepExecutor(ABC):
    """
    Base class for protocol executors.

    Executors are stateless: one instance may run any number of steps of its
    kind. Each execute() call opens its own connection and closes it before
    returning.
    """

    @property
    @abstractmethod
    def kind(self) -> StepKind:
        """
        Step kind handled by this executor.

        Returns:
            StepKind
        """
        pass

    @abstractmethod
    def execute(self, context: StepContext) -> None:
        """
        Run the step's protocol operation, check expectations and save values.

        Args:
            context: Step context with the step, variables, renderer and log

        Raises:
            StepError: If the step fails
        """
        pass


def ensure_expected_affected_rows(step: Step, affected: int) -> None:
    """
    Check the affected-row expectation shared by SQL and document steps.

    An expectation of 0 disables the check.

    Raises:
        ExpectationError: If the counts differ
    """
    expected = step.expect_affected_rows
    if expected and expected != affected:
        raise ExpectationError(
            step.name,
            f"expected {expected} affected rows, got {affected}",
            expected=expected,
            actual=affected,
        )


def run_cancellable(context: StepContext, operation: Callable[[], T],
                    on_cancel: Optional[Callable[[], None]] = None) -> T:
    """
    Run a blocking protocol call so that cancelling the run aborts it.

    The call runs on a daemon thread while the caller watches the run's
    cancel event. If the event is set first, on_cancel is invoked to tear
    down the connection the call is using and FlowCancelledError is raised
    without waiting for the call to return. Exceptions raised by the call
    are re-raised in the caller.

    Args:
        context: Step context holding the cancel event
        operation: Blocking call
        on_cancel: Releases the call's connection (close a session, channel, ...)

    Returns:
        The call's return value

    Raises:
        FlowCancelledError: If the run was cancelled before the call finished
    """
    if context.cancelled:
        raise FlowCancelledError(context.name, "flow cancelled")

    outcome: Dict[str, Any] = {}
    done = threading.Event()

    def target() -> None:
        try:
            outcome["value"] = operation()
        except BaseException as e:
            outcome["error"] = e
        finally:
            done.set()

    worker = threading.Thread(target=target, name=f"step-{context.name}", daemon=True)
    worker.start()

    while not done.wait(CANCEL_POLL_SECONDS):
        if context.cancelled:
            logger.info(f"[runner] cancelling in-flight step '{context.name}'")
            if on_cancel is not None:
                try:
                    on_cancel()
                except Exception as e:
                    logger.warning(f"[runner] cleanup after cancelling '{context.name}' failed: {e}")
            raise FlowCancelledError(context.name, "flow cancelled while the step was running")

    if "error" in outcome:
        raise outcome["error"]
    return outcome["value"]
