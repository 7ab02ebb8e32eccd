import json

import pytest

from stepflow.__main__ import main, parse_args


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    for name in ("STEPFLOW_FLOW_DIR", "STEPFLOW_EXPORT_FILE", "STEPFLOW_LOG_DIR"):
        monkeypatch.delenv(name, raising=False)


def write_flow(directory, name, body):
    directory.mkdir(exist_ok=True)
    path = directory / name
    path.write_text(body)
    return path


def test_parse_args_defaults():
    args = parse_args([])
    assert args.command == "run"
    assert args.var == []
    assert not args.verbose

    args = parse_args(["list", "-d", "flows"])
    assert args.command == "list"
    assert args.dir == "flows"

    args = parse_args(["-f", "a.yaml", "-v", "a=1", "--var", "b=2", "-e", "out/", "--log-dir", "logs"])
    assert args.file == "a.yaml"
    assert args.var == ["a=1", "b=2"]
    assert args.export_file == "out/"
    assert args.log_dir == "logs"


def test_list_command(tmp_path, capsys):
    flows = tmp_path / "flows"
    write_flow(flows, "b.yaml", "steps: []")
    write_flow(flows, "a.yml", "steps: []")

    assert main(["list", "-d", str(flows)]) == 0
    assert capsys.readouterr().out.split() == ["a", "b"]


def test_run_skipped_flow(tmp_path):
    flows = tmp_path / "flows"
    write_flow(flows, "only.yaml", "steps:\n  - name: later\n    skip: true\n")

    assert main(["run", "-d", str(flows), "-e", str(tmp_path / "exports") + "/"]) == 0
    assert not (tmp_path / "exports").exists()


def test_run_writes_log_on_failure(tmp_path):
    flows = tmp_path / "flows"
    write_flow(flows, "bad.yaml", "steps:\n  - name: broken\n    sql: SELECT 1\n    database_url: 'nope://'\n")
    log_dir = tmp_path / "logs"

    assert main(["-d", str(flows), "--log-dir", str(log_dir)]) == 1

    [log_file] = list(log_dir.iterdir())
    entry = json.loads(log_file.read_text())["steps"][0]
    assert entry["step"] == "broken"
    assert entry["status"] == "failed"


def test_run_errors(tmp_path):
    assert main(["-f", str(tmp_path / "absent.yaml")]) == 1
    assert main(["-d", str(tmp_path), "-n", "x", "-v", "novalue"]) == 1

    invalid = write_flow(tmp_path / "flows", "invalid.yaml", "steps:\n  - name: nothing\n")
    assert main(["-f", str(invalid)]) == 1
