from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Sequence, Tuple

from .errors import PlanError


@dataclass(frozen=True)
class BundleSpec:
    """One operator version to package as a bundle image."""

    path: str
    package: str
    channels: Tuple[str, ...]
    default_channel: str
    version: str = ""

    def __post_init__(self) -> None:
        if not self.channels:
            raise PlanError(f"Bundle {self.path} must declare at least one channel")
        if self.default_channel not in self.channels:
            raise PlanError(
                f"Default channel {self.default_channel!r} of bundle {self.path} "
                f"is not one of its channels {list(self.channels)}"
            )
        if not self.version:
            object.__setattr__(self, "version", Path(self.path).name)

    @property
    def channels_csv(self) -> str:
        return ",".join(self.channels)

    @classmethod
    def from_dict(cls, data: Dict[str, Any], *, package: Optional[str] = None) -> "BundleSpec":
        try:
            path = data["path"]
        except KeyError as exc:
            raise PlanError(f"Bundle entry is missing 'path': {data}") from exc
        channels = data.get("channels", [])
        if isinstance(channels, str):
            channels = [name.strip() for name in channels.split(",") if name.strip()]
        package_name = data.get("package", package)
        if not package_name:
            raise PlanError(f"Bundle {path} does not name a package")
        return cls(
            path=str(path),
            package=package_name,
            channels=tuple(channels),
            default_channel=data.get("default_channel", channels[0] if channels else ""),
            version=str(data.get("version", "")),
        )


@dataclass(frozen=True)
class ImageReference:
    """A ``repository:tag`` pair used for builds, pushes and pulls."""

    repository: str
    tag: str

    def __str__(self) -> str:
        return f"{self.repository}:{self.tag}"

    @classmethod
    def parse(cls, reference: str) -> "ImageReference":
        # A colon before the last slash belongs to a registry port.
        repository, sep, tag = reference.rpartition(":")
        if not sep or "/" in tag or not repository:
            raise ValueError(f"Image reference {reference!r} has no tag")
        return cls(repository=repository, tag=tag)


@dataclass(frozen=True)
class IndexBuildRequest:
    tag: str
    bundles: Tuple[str, ...]
    from_index: Optional[str] = None
    binary_source_image: Optional[str] = None
    out_dockerfile: Optional[str] = None
    generate: bool = False
    permissive: bool = False

    @classmethod
    def for_images(cls, tag: ImageReference, bundles: Sequence[ImageReference]) -> "IndexBuildRequest":
        return cls(tag=str(tag), bundles=tuple(str(image) for image in bundles))


@dataclass(frozen=True)
class ExportRequest:
    index: str
    package: str
    download_path: str
    container_tool: str


@dataclass
class StageResult:
    """Summary emitted by a pipeline stage."""

    name: str
    status: str
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status == "completed"

    def to_dict(self) -> Dict[str, Any]:
        return {"stage": self.name, "status": self.status, "details": self.details}
