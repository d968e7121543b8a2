from __future__ import annotations

from typing import Optional


class PipelineError(RuntimeError):
    """Base class for every failure the pipeline reports."""

    def __init__(self, message: str, *, stage: Optional[str] = None) -> None:
        super().__init__(message)
        self.stage = stage


class UsageError(PipelineError):
    """Raised for a missing, repeated, or unrecognised command line argument."""


class PlanError(PipelineError):
    """Raised when a run plan file cannot be parsed or is inconsistent."""


class AuthError(PipelineError):
    """Raised when the registry login fails."""


class BuildError(PipelineError):
    """Raised when a bundle image cannot be built."""


class IndexBuildError(BuildError):
    """Raised when the index image cannot be assembled from its bundles."""


class PushError(PipelineError):
    """Raised when the container tool fails to push an image."""


class ExportError(PipelineError):
    """Raised when a package cannot be exported from an index image."""


class LoadError(PipelineError):
    """Raised when exported manifests cannot be migrated into or loaded by the catalog database."""
