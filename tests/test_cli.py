from __future__ import annotations

import json
from pathlib import Path

import pytest

from catalog_pipeline import run

from fakes import FakeContainerClient


@pytest.mark.parametrize(
    "argv, message",
    [
        ([], "Must specify which container tool"),
        (["docker", "podman"], "Too many command line arguments"),
        (["rkt"], "must be one of"),
    ],
)
def test_usage_errors_exit_before_any_work(monkeypatch, capsys, argv, message) -> None:
    def unexpected(*args, **kwargs):
        raise AssertionError("pipeline must not be built on a usage error")

    monkeypatch.setattr(run.PipelineContext, "create", unexpected)
    with pytest.raises(SystemExit) as excinfo:
        run.main(argv)
    assert excinfo.value.code == 2
    assert message in capsys.readouterr().err


def test_dry_run_prints_planned_references(monkeypatch, capsys, tmp_path: Path) -> None:
    monkeypatch.setenv("TAG_LENGTH", "8")
    assert run.main(["podman", "--dry-run", "--workspace", str(tmp_path)]) == 0

    described = json.loads(capsys.readouterr().out)
    assert described["container_tool"] == "podman"
    assert described["package"] == "prometheus"
    assert len(described["bundles"]) == 3
    index_tag = described["index_image"].rsplit(":", 1)[1]
    assert len(index_tag) == 8
    assert described["download_path"].endswith(index_tag)


def test_dry_run_does_not_create_workspace(capsys, tmp_path: Path) -> None:
    workspace = tmp_path / "not-yet"
    assert run.main(["docker", "--dry-run", "--workspace", str(workspace)]) == 0

    assert not workspace.exists()
    assert json.loads(capsys.readouterr().out)["download_path"].startswith(str(workspace))


def test_zero_tag_length_is_a_usage_error(monkeypatch, capsys) -> None:
    monkeypatch.setenv("TAG_LENGTH", "0")
    monkeypatch.setattr(run.PipelineContext, "create", lambda *args, **kwargs: pytest.fail("context built"))
    with pytest.raises(SystemExit) as excinfo:
        run.main(["docker", "--dry-run"])
    assert excinfo.value.code == 2
    assert "TAG_LENGTH" in capsys.readouterr().err


def test_bad_plan_is_a_usage_error(capsys, tmp_path: Path) -> None:
    plan = tmp_path / "plan.json"
    plan.write_text(json.dumps({"package": "p"}))
    with pytest.raises(SystemExit) as excinfo:
        run.main(["docker", "--plan", str(plan)])
    assert excinfo.value.code == 2
    assert "bundles" in capsys.readouterr().err


@pytest.mark.parametrize("client, code, state", [(FakeContainerClient(), 0, "done"), (FakeContainerClient(fail_build_at=1), 1, "failed")])
def test_exit_code_and_report_follow_pipeline_result(
    monkeypatch, make_context, tmp_path: Path, client, code, state
) -> None:
    monkeypatch.setattr(run.PipelineContext, "create", lambda *args, **kwargs: make_context(client))
    report = tmp_path / "report.json"

    assert run.main(["docker", "--report", str(report)]) == code
    assert json.loads(report.read_text())["state"] == state
