from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Tuple

import yaml

from .errors import PlanError
from .models import BundleSpec, ImageReference

DEFAULT_REGISTRY = "quay.io"
DEFAULT_BUNDLE_REPOSITORY = "quay.io/olmtest/e2e-bundle"
DEFAULT_INDEX_REPOSITORY = "quay.io/olmtest/e2e-index"
DEFAULT_DOWNLOAD_PATH = "downloaded"


def _check_repository(name: str, repository: str) -> None:
    """Repositories are tagged per run, so a plan may not pin one."""
    if not repository:
        raise PlanError(f"Run plan {name} must not be empty")
    try:
        image = ImageReference.parse(repository)
    except ValueError:
        return
    raise PlanError(f"Run plan {name} {repository!r} must not carry a tag (found {image.tag!r})")


@dataclass(frozen=True)
class RunPlan:
    """Static description of what a run builds, where it pushes, and what it exports."""

    package: str
    bundles: Tuple[BundleSpec, ...]
    registry: str = DEFAULT_REGISTRY
    bundle_repository: str = DEFAULT_BUNDLE_REPOSITORY
    index_repository: str = DEFAULT_INDEX_REPOSITORY
    download_path: str = DEFAULT_DOWNLOAD_PATH
    source: str = field(default="<builtin>", compare=False)

    def __post_init__(self) -> None:
        if not self.bundles:
            raise PlanError("Run plan must declare at least one bundle")
        foreign = [bundle.path for bundle in self.bundles if bundle.package != self.package]
        if foreign:
            raise PlanError(f"Bundles {foreign} do not belong to package {self.package!r}")
        for name, repository in (
            ("bundle_repository", self.bundle_repository),
            ("index_repository", self.index_repository),
        ):
            _check_repository(name, repository)

    def bundle_image(self, tag: str) -> ImageReference:
        return ImageReference(self.bundle_repository, tag)

    def index_image(self, tag: str) -> ImageReference:
        return ImageReference(self.index_repository, tag)

    @classmethod
    def default(cls) -> "RunPlan":
        channels = ("preview",)
        bundles = tuple(
            BundleSpec(
                path=f"manifests/prometheus/{version}",
                package="prometheus",
                channels=channels,
                default_channel="preview",
            )
            for version in ("0.14.0", "0.15.0", "0.22.2")
        )
        return cls(package="prometheus", bundles=bundles)

    @classmethod
    def from_dict(cls, data: Dict[str, Any], *, source: str = "<dict>") -> "RunPlan":
        if not isinstance(data, dict) or "bundles" not in data:
            raise PlanError("Run plan must contain a top-level 'bundles' list")
        package = data.get("package")
        if not package:
            raise PlanError("Run plan must name a 'package'")
        entries = data.get("bundles") or []
        if not isinstance(entries, list):
            raise PlanError("'bundles' must be a list")
        bundles = tuple(BundleSpec.from_dict(entry, package=package) for entry in entries)
        return cls(
            package=package,
            bundles=bundles,
            registry=data.get("registry", DEFAULT_REGISTRY),
            bundle_repository=data.get("bundle_repository", DEFAULT_BUNDLE_REPOSITORY),
            index_repository=data.get("index_repository", DEFAULT_INDEX_REPOSITORY),
            download_path=data.get("download_path", DEFAULT_DOWNLOAD_PATH),
            source=source,
        )

    @classmethod
    def from_file(cls, path: str | Path) -> "RunPlan":
        path = Path(path)
        try:
            raw_text = path.read_text()
        except OSError as exc:
            raise PlanError(f"Cannot read run plan {path}: {exc}") from exc
        try:
            raw_data = json.loads(raw_text)
        except json.JSONDecodeError:
            try:
                raw_data = yaml.safe_load(raw_text)
            except yaml.YAMLError as exc:
                raise PlanError(f"Run plan {path} is neither JSON nor YAML: {exc}") from exc
        return cls.from_dict(raw_data, source=str(path))
