"""
Runtime settings for the catalog pipeline.

Everything that is not part of the run plan is read from environment variables
so that CI jobs can inject credentials without touching files.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping, Optional

from .identifiers import DEFAULT_TAG_LENGTH


@dataclass(frozen=True)
class Settings:
    """
    Pipeline configuration from environment variables.

    Environment Variables:
        DOCKER_USERNAME: Registry user name. Default: empty
        DOCKER_PASSWORD: Registry password. Default: empty
        LOG_LEVEL: Logging level (DEBUG, INFO, WARNING, ERROR). Default: INFO
        COMMAND_TIMEOUT: Seconds allowed per external command. Default: unbounded
        OPM_BINARY: Executable used for index add/export. Default: opm
        TAG_LENGTH: Length of generated image tags. Default: 6
    """

    username: str = ""
    password: str = ""
    log_level: str = "INFO"
    command_timeout: Optional[float] = None
    opm_binary: str = "opm"
    tag_length: int = DEFAULT_TAG_LENGTH

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ
        timeout = env.get("COMMAND_TIMEOUT", "").strip()
        command_timeout = float(timeout) if timeout else None
        if command_timeout is not None and command_timeout <= 0:
            command_timeout = None
        tag_length = int(env.get("TAG_LENGTH", str(DEFAULT_TAG_LENGTH)))
        if tag_length < 1:
            raise ValueError(f"TAG_LENGTH must be at least 1, got {tag_length}")
        return cls(
            username=env.get("DOCKER_USERNAME", ""),
            password=env.get("DOCKER_PASSWORD", ""),
            log_level=env.get("LOG_LEVEL", "INFO").upper(),
            command_timeout=command_timeout,
            opm_binary=env.get("OPM_BINARY", "opm"),
            tag_length=tag_length,
        )

    @property
    def has_credentials(self) -> bool:
        return bool(self.username and self.password)

    def __repr__(self) -> str:
        """String representation for logging."""
        return (
            f"Settings(username={self.username!r}, "
            f"password={'***' if self.password else ''!r}, "
            f"log_level={self.log_level}, "
            f"command_timeout={self.command_timeout}, "
            f"opm_binary={self.opm_binary}, "
            f"tag_length={self.tag_length})"
        )
