"""Narrow wrapper around the docker/podman executable."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional, Protocol, Sequence

from .errors import AuthError, BuildError, PushError, UsageError
from .models import ImageReference
from .utils import CommandError, run_command

logger = logging.getLogger(__name__)

SUPPORTED_TOOLS = ("docker", "podman")
_TOOL_LIST = '["docker", "podman"]'


def select_container_tool(args: Sequence[str]) -> str:
    """Validate the positional arguments and return the chosen container tool."""

    if len(args) == 0:
        raise UsageError(f"Must specify which container tool to use from {_TOOL_LIST}")
    if len(args) > 1:
        raise UsageError("Too many command line arguments provided")
    if args[0] not in SUPPORTED_TOOLS:
        raise UsageError(f"container tool argument must be one of {_TOOL_LIST}")
    return args[0]


class ContainerClient(Protocol):
    tool: str

    def login(self, registry: str, username: str, password: str) -> None:
        ...

    def push(self, image: ImageReference) -> None:
        ...

    def build(self, dockerfile: Path, image: ImageReference, context_dir: Path) -> None:
        ...


class ContainerToolClient:
    """Runs login/push/build through the selected container tool."""

    def __init__(self, tool: str, *, timeout: Optional[float] = None) -> None:
        self.tool = select_container_tool([tool])
        self.timeout = timeout

    def login(self, registry: str, username: str, password: str) -> None:
        if not username or not password:
            raise AuthError(f"No credentials supplied for {registry}")
        logger.info(f"Logging into {registry} as {username}")
        try:
            run_command(
                [self.tool, "login", "-u", username, "--password-stdin", registry],
                input_text=password,
                timeout=self.timeout,
            )
        except CommandError as exc:
            raise AuthError(f"Login to {registry} failed: {exc.stderr.strip() or exc}") from exc

    def push(self, image: ImageReference) -> None:
        logger.info(f"Pushing {image}")
        try:
            run_command([self.tool, "push", str(image)], timeout=self.timeout)
        except CommandError as exc:
            raise PushError(f"Push of {image} failed: {exc.stderr.strip() or exc}") from exc

    def build(self, dockerfile: Path, image: ImageReference, context_dir: Path) -> None:
        logger.info(f"Building {image} from {dockerfile}")
        try:
            run_command(
                [self.tool, "build", "-f", str(dockerfile), "-t", str(image), str(context_dir)],
                timeout=self.timeout,
            )
        except CommandError as exc:
            raise BuildError(f"Build of {image} failed: {exc.stderr.strip() or exc}") from exc
