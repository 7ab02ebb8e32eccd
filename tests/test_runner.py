import json
import threading
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from unittest.mock import MagicMock

import pytest

from stepflow.engine.executor_interface import (
    ConfigurationError, ExpectationError, FlowCancelledError, StepExecutor
)
from stepflow.engine.executor_registry import ExecutorRegistry
from stepflow.engine.export import VariableExporter
from stepflow.engine.run_log import RunLog
from stepflow.engine.runner import FlowRunner, cancellable_wait
from stepflow.executors.http import HTTPExecutor
from stepflow.models.flow import Flow, StepKind


def make_response(status=200, body="{}"):
    response = MagicMock()
    response.status_code = status
    response.text = body
    response.content = body.encode("utf-8")
    response.headers = {}
    return response


class RecordingExecutor(StepExecutor):
    """Records every step it runs and saves a fixed value."""

    def __init__(self):
        self.seen = []

    @property
    def kind(self) -> StepKind:
        return StepKind.SQL

    def execute(self, context):
        self.seen.append((context.name, context.render(context.step.sql)))
        for key in context.step.save:
            context.variables.set(key, f"{context.name}-{key}")


@pytest.fixture
def session():
    return MagicMock()


@pytest.fixture
def http_registry(session):
    registry = ExecutorRegistry()
    registry.register(HTTPExecutor(session_factory=lambda: session))
    return registry


def test_overrides_replace_flow_vars(http_registry, session):
    session.request.return_value = make_response()
    flow = Flow.model_validate({
        "vars": {"base": "http://flow.local"},
        "steps": [{"name": "ping", "method": "GET", "url": "{{.base}}/ping"}],
    })

    FlowRunner(registry=http_registry).run_flow(flow, {"base": "http://override.local"})

    assert session.request.call_args.kwargs["url"] == "http://override.local/ping"


def test_saved_values_feed_later_steps(http_registry, session):
    responses = {
        "http://api.test/users": make_response(201, '{"id": 42}'),
        "http://api.test/users/42": make_response(200, '{"name": "Ada"}'),
    }
    session.request.side_effect = lambda **kwargs: responses[kwargs["url"]]

    flow = Flow.model_validate({
        "vars": {"base": "http://api.test"},
        "steps": [
            {"name": "create", "method": "POST", "url": "{{.base}}/users",
             "expect_status": 201, "save": {"user_id": "id"}},
            {"name": "fetch", "method": "GET", "url": "{{.base}}/users/{{.user_id}}",
             "save": {"user_name": "name"}},
        ],
    })

    final = FlowRunner(registry=http_registry).run_flow(flow)

    urls = [call.kwargs["url"] for call in session.request.call_args_list]
    assert urls == ["http://api.test/users", "http://api.test/users/42"]
    assert final["user_id"] == "42"
    assert final["user_name"] == "Ada"


def test_first_failure_aborts_flow(http_registry, session):
    session.request.return_value = make_response(500, "down")
    flow = Flow.model_validate({"steps": [
        {"name": "one", "method": "GET", "url": "http://x/1", "expect_status": 200},
        {"name": "two", "method": "GET", "url": "http://x/2"},
    ]})

    with pytest.raises(ExpectationError):
        FlowRunner(registry=http_registry).run_flow(flow)

    assert session.request.call_count == 1


def test_skipped_steps_do_not_run():
    recorder = RecordingExecutor()
    registry = ExecutorRegistry()
    registry.register(recorder)
    flow = Flow.model_validate({"steps": [
        {"name": "a", "sql": "SELECT 1", "skip": True},
        {"name": "placeholder", "skip": True},
        {"name": "b", "sql": "SELECT {{.n}}"},
    ]})

    FlowRunner(registry=registry).run_flow(flow, {"n": "2"})

    assert recorder.seen == [("b", "SELECT 2")]


def test_cancelled_run_stops_before_next_step():
    recorder = RecordingExecutor()
    registry = ExecutorRegistry()
    registry.register(recorder)
    runner = FlowRunner(registry=registry)
    runner.cancel()
    flow = Flow.model_validate({"steps": [{"name": "later", "sql": "SELECT 1", "wait": "30s"}]})

    with pytest.raises(FlowCancelledError):
        runner.run_flow(flow)

    assert recorder.seen == []


def test_invalid_wait_is_a_configuration_error():
    registry = ExecutorRegistry()
    registry.register(RecordingExecutor())
    flow = Flow.model_validate({"steps": [{"name": "w", "sql": "SELECT 1", "wait": "soon"}]})

    with pytest.raises(ConfigurationError) as exc_info:
        FlowRunner(registry=registry).run_flow(flow)

    assert "parse wait duration" in str(exc_info.value)


def test_templated_wait_reports_progress():
    recorder = RecordingExecutor()
    registry = ExecutorRegistry()
    registry.register(recorder)
    ticks = []
    runner = FlowRunner(registry=registry, wait_observer=lambda name, remaining: ticks.append(name))
    flow = Flow.model_validate({"steps": [{"name": "w", "sql": "SELECT 1", "wait": "{{.delay}}"}]})

    runner.run_flow(flow, {"delay": "10ms"})

    assert recorder.seen == [("w", "SELECT 1")]
    assert ticks and set(ticks) == {"w"}


def test_cancellable_wait():
    event = threading.Event()
    remaining = []
    assert cancellable_wait(0.05, event, remaining.append, tick=0.01)
    assert remaining
    assert all(value >= 0 for value in remaining)

    event.set()
    assert not cancellable_wait(10, event)


def test_export_and_run_log(tmp_path):
    registry = ExecutorRegistry()
    registry.register(RecordingExecutor())
    export_path = tmp_path / "out" / "vars.json"
    log_dir = tmp_path / "logs"
    flow = Flow.model_validate({"steps": [
        {"name": "create", "sql": "INSERT 1", "save": {"id": "", "token": ""}, "export": True},
        {"name": "quiet", "sql": "SELECT 1", "save": {"other": ""}},
    ]})

    with FlowRunner(registry=registry, exporter=VariableExporter(str(export_path)),
                    run_log=RunLog(str(log_dir), run_id="run-1")) as runner:
        runner.run_flow(flow)

    exported = json.loads(export_path.read_text())
    assert exported == [{"step": "create", "vars": {"id": "create-id", "token": "create-token"}}]

    log = json.loads((log_dir / "run-1.json").read_text())
    assert log["run_id"] == "run-1"
    assert [(entry["step"], entry["type"], entry["status"]) for entry in log["steps"]] == [
        ("create", "sql", "passed"),
        ("quiet", "sql", "passed"),
    ]


def test_failed_steps_are_logged(tmp_path, session, http_registry):
    session.request.return_value = make_response(503, "unavailable")
    run_log = RunLog(str(tmp_path), run_id="run-2")
    flow = Flow.model_validate({"steps": [
        {"name": "health", "method": "GET", "url": "http://x/health", "expect_status": 200},
    ]})

    runner = FlowRunner(registry=http_registry, run_log=run_log)
    with pytest.raises(ExpectationError):
        runner.run_flow(flow)
    runner.close()

    entry = json.loads((tmp_path / "run-2.json").read_text())["steps"][0]
    assert entry["status"] == "failed"
    assert entry["type"] == "http"
    assert entry["response"]["status"] == 503
    assert "unexpected status 503" in entry["error"]


def test_sql_rendering_empty_falls_through_to_http(tmp_path, session):
    recorder = RecordingExecutor()
    registry = ExecutorRegistry()
    registry.register(recorder)
    registry.register(HTTPExecutor(session_factory=lambda: session))
    session.request.return_value = make_response()
    flow = Flow.model_validate({"steps": [
        {"name": "either", "sql": "{{.query}}", "method": "GET", "url": "http://x/users"},
    ]})
    assert flow.steps[0].kind is StepKind.SQL

    with FlowRunner(registry=registry, run_log=RunLog(str(tmp_path), run_id="run-3")) as runner:
        runner.run_flow(flow)
        runner.run_flow(flow, {"query": "SELECT 1"})

    assert session.request.call_count == 1
    assert recorder.seen == [("either", "SELECT 1")]
    log = json.loads((tmp_path / "run-3.json").read_text())
    assert [entry["type"] for entry in log["steps"]] == ["http", "sql"]


def test_sql_rendering_empty_without_fallback_fails():
    registry = ExecutorRegistry()
    registry.register(RecordingExecutor())
    flow = Flow.model_validate({"steps": [{"name": "blank", "sql": "{{.query}}"}]})

    with pytest.raises(ConfigurationError) as exc_info:
        FlowRunner(registry=registry).run_flow(flow)

    assert "step requires one of sql/mongo/grpc/http fields" in str(exc_info.value)


class SlowHandler(BaseHTTPRequestHandler):
    def do_GET(self):
        time.sleep(3)
        self.send_response(200)
        self.send_header("Content-Type", "application/json")
        self.end_headers()
        self.wfile.write(b'{"done": true}')

    def log_message(self, format, *args):
        pass


@pytest.fixture
def slow_server():
    server = ThreadingHTTPServer(("127.0.0.1", 0), SlowHandler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield f"http://127.0.0.1:{server.server_address[1]}"
    server.shutdown()
    server.server_close()


def test_cancel_aborts_step_in_flight(tmp_path, slow_server):
    registry = ExecutorRegistry()
    registry.register(HTTPExecutor())
    runner = FlowRunner(registry=registry, run_log=RunLog(str(tmp_path), run_id="run-4"))
    flow = Flow.model_validate({"steps": [
        {"name": "slow", "method": "GET", "url": f"{slow_server}/slow", "save": {"done": "done"}},
        {"name": "after", "method": "GET", "url": f"{slow_server}/after"},
    ]})
    timer = threading.Timer(0.3, runner.cancel)
    timer.start()

    started = time.monotonic()
    try:
        with pytest.raises(FlowCancelledError):
            runner.run_flow(flow)
    finally:
        timer.cancel()
        runner.close()

    assert time.monotonic() - started < 2
    steps = json.loads((tmp_path / "run-4.json").read_text())["steps"]
    assert [(entry["step"], entry["status"]) for entry in steps] == [("slow", "failed")]
    assert "cancelled" in steps[0]["error"]
