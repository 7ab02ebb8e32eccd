"""
Flow Runner - Executes the steps of a flow in order.

For each step: honour `skip`, apply `wait`, check for cancellation, confirm
the step's kind, build the step context, dispatch to the executor registered
for that kind, record the outcome in the run log and the export sink. The
first failing step aborts the flow. The run's cancel event is shared with
every step context so cancelling also aborts the step in flight.
"""

import logging
import threading
import time
from datetime import datetime, timezone
from typing import Callable, Dict, Mapping, Optional

from ..models.flow import Flow, Step, StepKind, classify_step
from ..utils.durations import format_duration, parse_duration
from .executor_interface import ConfigurationError, FlowCancelledError, StepContext, StepError
from .executor_registry import ExecutorRegistry
from .export import VariableExporter
from .run_log import RunLog, RunLogEntry, StepLogContext
from .template import TemplateRenderer
from .variables import VariableStore

logger = logging.getLogger(__name__)

WAIT_TICK_SECONDS = 1.0

# Called with (step_name, remaining_seconds) once per wait tick
WaitObserver = Callable[[str, float], None]


def cancellable_wait(seconds: float, cancel_event: threading.Event,
                     on_tick: Optional[Callable[[float], None]] = None,
                     tick: float = WAIT_TICK_SECONDS) -> bool:
    """
    Sleep for a duration, waking early if the cancel event is set.

    Args:
        seconds: Duration to wait
        cancel_event: Run-scoped cancellation token
        on_tick: Receives the remaining seconds after each tick
        tick: Tick length in seconds

    Returns:
        True if the full duration elapsed, False if cancelled
    """
    deadline = time.monotonic() + seconds
    while True:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            return True
        if cancel_event.wait(min(tick, remaining)):
            return False
        if on_tick:
            on_tick(max(deadline - time.monotonic(), 0.0))


class FlowRunner:
    """
    Runs flows against a registry of protocol executors.

    One runner can run several flows; each run gets its own variable store
    while the export sink and run log are shared.

    Usage:
        with FlowRunner(exporter=VariableExporter("vars.json")) as runner:
            final_vars = runner.run_flow(flow, overrides={"base": "http://localhost"})
    """

    def __init__(
        self,
        registry: Optional[ExecutorRegistry] = None,
        renderer: Optional[TemplateRenderer] = None,
        exporter: Optional[VariableExporter] = None,
        run_log: Optional[RunLog] = None,
        cancel_event: Optional[threading.Event] = None,
        wait_observer: Optional[WaitObserver] = None,
    ):
        """
        Initialize runner.

        Args:
            registry: Executors by step kind (default: all built-in executors)
            renderer: Template renderer (default: unseeded fixtures)
            exporter: Optional export sink
            run_log: Optional run log
            cancel_event: Cancellation token (a fresh one if omitted)
            wait_observer: Optional progress callback for waits
        """
        if registry is None:
            from ..executors import default_registry
            registry = default_registry()

        self.registry = registry
        self.renderer = renderer or TemplateRenderer()
        self.exporter = exporter
        self.run_log = run_log
        self.cancel_event = cancel_event or threading.Event()
        self.wait_observer = wait_observer

    def cancel(self) -> None:
        """
        Request cancellation.

        Waits return early, the in-flight step is aborted with
        FlowCancelledError and no further step starts. Safe to call from a
        signal handler or another thread.
        """
        self.cancel_event.set()

    def run_flow(self, flow: Flow, overrides: Optional[Mapping[str, str]] = None,
                 name: Optional[str] = None) -> Dict[str, str]:
        """
        Run every step of a flow.

        Args:
            flow: Validated flow
            overrides: Variables that replace the flow's own vars
            name: Flow name for logs

        Returns:
            Final variables

        Raises:
            StepError: The first failing step's error
        """
        variables = VariableStore.seeded(flow.vars, overrides)

        if name:
            logger.info(f"[runner] === Flow: {name} ===")

        for step in flow.steps:
            self.execute_step(step, variables)

        return variables.as_dict()

    def execute_step(self, step: Step, variables: VariableStore) -> None:
        """
        Execute one step against the variable store.

        Args:
            step: Step to run
            variables: Store read by templates and written by save

        Raises:
            StepError: If the step fails or the run was cancelled
        """
        if step.skip:
            logger.info(f"[runner] skipping step '{step.name}'")
            return

        if step.wait:
            self._wait(step, variables)

        if self.cancel_event.is_set():
            raise FlowCancelledError(step.name, "flow cancelled")

        kind = self.resolve_kind(step, variables)
        executor = self.registry.get_executor(kind)
        log_context = StepLogContext()
        context = StepContext(
            step=step,
            variables=variables,
            renderer=self.renderer,
            log=log_context,
            cancel_event=self.cancel_event,
        )

        started_at = datetime.now(timezone.utc)
        started = time.monotonic()
        try:
            executor.execute(context)
        except StepError as e:
            logger.error(f"[runner] ✖ {e}")
            self._record(step, kind, "failed", started_at, started, log_context, error=str(e))
            raise

        self._record(step, kind, "passed", started_at, started, log_context)

        if self.exporter is not None:
            self.exporter.record_step(step, variables.as_dict())

        logger.info(f"[runner] ✓ {step.name}")

    def resolve_kind(self, step: Step, variables: VariableStore) -> StepKind:
        """
        Confirm a step's kind against the current variables.

        A SQL step whose statement renders blank falls through to the
        document-store, RPC and HTTP fields it also carries.

        Raises:
            ConfigurationError: If nothing is left to run
        """
        if step.kind is not StepKind.SQL:
            return step.kind
        if self.renderer.render(step.sql, variables.as_dict()).strip():
            return StepKind.SQL

        kind = classify_step(step, include_sql=False)
        if kind is None:
            raise ConfigurationError(step.name, "step requires one of sql/mongo/grpc/http fields")
        logger.info(f"[runner] sql for step '{step.name}' rendered empty, running it as {kind.value}")
        return kind

    def close(self) -> None:
        """Flush the export sink and the run log."""
        if self.exporter is not None:
            self.exporter.close()
        if self.run_log is not None:
            self.run_log.close()

    def __enter__(self) -> "FlowRunner":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _wait(self, step: Step, variables: VariableStore) -> None:
        text = self.renderer.render(step.wait, variables.as_dict())
        try:
            seconds = parse_duration(text)
        except ValueError as e:
            raise ConfigurationError(step.name, f"parse wait duration: {e}", e) from e

        if seconds <= 0:
            return

        logger.info(f"[runner] waiting {format_duration(seconds)} before step '{step.name}'")

        on_tick = None
        if self.wait_observer is not None:
            def on_tick(remaining: float) -> None:
                self.wait_observer(step.name, remaining)

        if cancellable_wait(seconds, self.cancel_event, on_tick):
            logger.info(f"[runner] wait complete for step '{step.name}'")
        else:
            logger.info(f"[runner] wait interrupted for step '{step.name}'")

    def _record(self, step: Step, kind: StepKind, status: str, started_at: datetime,
                started: float, log_context: StepLogContext, error: Optional[str] = None) -> None:
        if self.run_log is None:
            return
        self.run_log.add(RunLogEntry(
            step=step.name,
            type=kind.value,
            status=status,
            started_at=started_at.isoformat(),
            duration_ms=int((time.monotonic() - started) * 1000),
            request=log_context.request,
            response=log_context.response,
            error=error,
        ))
