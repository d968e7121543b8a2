"""Index add/export through the ``opm`` executable."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional, Protocol

from .errors import ExportError, IndexBuildError
from .models import ExportRequest, IndexBuildRequest
from .utils import CommandError, ensure_directory, run_command

logger = logging.getLogger(__name__)


def build_add_command(opm_binary: str, container_tool: str, request: IndexBuildRequest) -> List[str]:
    command = [
        opm_binary,
        "index",
        "add",
        "--bundles",
        ",".join(request.bundles),
        "--tag",
        request.tag,
        "--container-tool",
        container_tool,
    ]
    if request.from_index:
        command.extend(["--from-index", request.from_index])
    if request.binary_source_image:
        command.extend(["--binary-image", request.binary_source_image])
    if request.out_dockerfile:
        command.extend(["--out-dockerfile", request.out_dockerfile])
    if request.generate:
        command.append("--generate")
    if request.permissive:
        command.append("--permissive")
    return command


def build_export_command(opm_binary: str, request: ExportRequest) -> List[str]:
    return [
        opm_binary,
        "index",
        "export",
        "--index",
        request.index,
        "--package",
        request.package,
        "--download-folder",
        request.download_path,
        "--container-tool",
        request.container_tool,
    ]


class IndexClient(Protocol):
    def add_to_index(self, request: IndexBuildRequest) -> None:
        ...

    def export_from_index(self, request: ExportRequest) -> Path:
        ...


class OpmIndexer:
    """Adds bundles to a fresh index image and exports packages back out of one."""

    def __init__(
        self,
        container_tool: str,
        *,
        opm_binary: str = "opm",
        timeout: Optional[float] = None,
    ) -> None:
        self.container_tool = container_tool
        self.opm_binary = opm_binary
        self.timeout = timeout

    def add_to_index(self, request: IndexBuildRequest) -> None:
        if not request.bundles:
            raise IndexBuildError(f"No bundles supplied for index {request.tag}")
        logger.info(f"Building index {request.tag} from {len(request.bundles)} bundles")
        try:
            run_command(
                build_add_command(self.opm_binary, self.container_tool, request),
                timeout=self.timeout,
            )
        except CommandError as exc:
            raise IndexBuildError(f"Index build of {request.tag} failed: {exc.stderr.strip() or exc}") from exc

    def export_from_index(self, request: ExportRequest) -> Path:
        try:
            download_path = ensure_directory(request.download_path)
        except OSError as exc:
            raise ExportError(f"Cannot create download folder {request.download_path}: {exc}") from exc
        logger.info(f"Exporting package {request.package} from {request.index} into {download_path}")
        try:
            run_command(build_export_command(self.opm_binary, request), timeout=self.timeout)
        except CommandError as exc:
            raise ExportError(
                f"Export of {request.package} from {request.index} failed: {exc.stderr.strip() or exc}"
            ) from exc
        if not any(download_path.iterdir()):
            raise ExportError(f"Package {request.package} not found in {request.index}")
        return download_path
