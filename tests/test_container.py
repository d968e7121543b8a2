from __future__ import annotations

import subprocess
from pathlib import Path
from typing import List

import pytest

from catalog_pipeline import container
from catalog_pipeline.container import ContainerToolClient, select_container_tool
from catalog_pipeline.errors import AuthError, BuildError, PushError, UsageError
from catalog_pipeline.models import ImageReference
from catalog_pipeline.utils import CommandError


@pytest.mark.parametrize("tool", ["docker", "podman"])
def test_supported_tools_are_accepted(tool: str) -> None:
    assert select_container_tool([tool]) == tool


@pytest.mark.parametrize(
    "args, message",
    [
        ([], "Must specify which container tool"),
        (["docker", "podman"], "Too many command line arguments"),
        (["docker", "docker", "docker"], "Too many command line arguments"),
        (["buildah"], "must be one of"),
        (["Docker"], "must be one of"),
    ],
)
def test_invalid_tool_arguments_are_rejected(args: List[str], message: str) -> None:
    with pytest.raises(UsageError, match=message):
        select_container_tool(args)


class RecordingRunner:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.calls = []

    def __call__(self, command, **kwargs):
        self.calls.append((list(command), kwargs))
        if self.fail:
            raise CommandError(command, 1, "", "denied")
        return subprocess.CompletedProcess(command, 0, "", "")


@pytest.fixture
def runner(monkeypatch) -> RecordingRunner:
    recording = RecordingRunner()
    monkeypatch.setattr(container, "run_command", recording)
    return recording


def test_login_sends_password_on_stdin(runner: RecordingRunner) -> None:
    ContainerToolClient("podman", timeout=30).login("quay.io", "robot", "secret")

    (command, kwargs), = runner.calls
    assert command == ["podman", "login", "-u", "robot", "--password-stdin", "quay.io"]
    assert kwargs["input_text"] == "secret"
    assert kwargs["timeout"] == 30
    assert "secret" not in command


def test_login_without_credentials_never_runs_the_tool(runner: RecordingRunner) -> None:
    with pytest.raises(AuthError):
        ContainerToolClient("docker").login("quay.io", "", "")
    assert runner.calls == []


def test_push_and_build_commands(runner: RecordingRunner, tmp_path: Path) -> None:
    client = ContainerToolClient("docker")
    image = ImageReference("quay.io/olmtest/e2e-bundle", "abc123")

    client.build(tmp_path / "bundle.Dockerfile", image, tmp_path)
    client.push(image)

    assert runner.calls[0][0] == [
        "docker",
        "build",
        "-f",
        str(tmp_path / "bundle.Dockerfile"),
        "-t",
        "quay.io/olmtest/e2e-bundle:abc123",
        str(tmp_path),
    ]
    assert runner.calls[1][0] == ["docker", "push", "quay.io/olmtest/e2e-bundle:abc123"]


@pytest.mark.parametrize(
    "action, error",
    [
        (lambda c: c.login("quay.io", "robot", "secret"), AuthError),
        (lambda c: c.push(ImageReference("quay.io/x", "t")), PushError),
        (lambda c: c.build(Path("Dockerfile"), ImageReference("quay.io/x", "t"), Path(".")), BuildError),
    ],
)
def test_non_zero_exit_maps_to_stage_error(monkeypatch, action, error) -> None:
    monkeypatch.setattr(container, "run_command", RecordingRunner(fail=True))
    with pytest.raises(error, match="denied"):
        action(ContainerToolClient("docker"))


def test_client_rejects_unknown_tool() -> None:
    with pytest.raises(UsageError):
        ContainerToolClient("nerdctl")
