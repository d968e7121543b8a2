"""
Bundle image builder.

A bundle image is a ``FROM scratch`` image holding one operator version's
manifests plus ``metadata/annotations.yaml``. The same annotations are also
stamped onto the image as labels so that index tooling can read them without
unpacking the image.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, Iterator, List

import yaml

from .container import ContainerClient
from .errors import BuildError
from .models import BundleSpec, ImageReference

logger = logging.getLogger(__name__)

MEDIATYPE_LABEL = "operators.operatorframework.io.bundle.mediatype.v1"
MANIFESTS_LABEL = "operators.operatorframework.io.bundle.manifests.v1"
METADATA_LABEL = "operators.operatorframework.io.bundle.metadata.v1"
PACKAGE_LABEL = "operators.operatorframework.io.bundle.package.v1"
CHANNELS_LABEL = "operators.operatorframework.io.bundle.channels.v1"
DEFAULT_CHANNEL_LABEL = "operators.operatorframework.io.bundle.channel.default.v1"

REGISTRY_V1 = "registry+v1"
METADATA_DIR = "metadata"
ANNOTATIONS_FILE = "annotations.yaml"
DOCKERFILE_NAME = "bundle.Dockerfile"
MANIFEST_SUFFIXES = (".yaml", ".yml", ".json")


def bundle_annotations(spec: BundleSpec) -> Dict[str, str]:
    return {
        MEDIATYPE_LABEL: REGISTRY_V1,
        MANIFESTS_LABEL: "manifests/",
        METADATA_LABEL: f"{METADATA_DIR}/",
        PACKAGE_LABEL: spec.package,
        CHANNELS_LABEL: spec.channels_csv,
        DEFAULT_CHANNEL_LABEL: spec.default_channel,
    }


def render_dockerfile(annotations: Dict[str, str], manifests_dir: str) -> str:
    lines = ["FROM scratch", ""]
    lines.extend(f"LABEL {key}={value}" for key, value in annotations.items())
    lines.append("")
    lines.append(f"COPY {manifests_dir} /manifests/")
    lines.append(f"COPY {METADATA_DIR} /metadata/")
    return "\n".join(lines) + "\n"


def iter_manifest_files(directory: Path) -> Iterator[Path]:
    for path in sorted(directory.iterdir()):
        if path.is_file() and path.suffix.lower() in MANIFEST_SUFFIXES:
            yield path


def check_manifest_directory(directory: Path) -> List[Path]:
    """Return the manifest files under ``directory`` or raise BuildError if it is unusable."""

    if not directory.is_dir():
        raise BuildError(f"Manifest directory {directory} does not exist")
    try:
        manifests = list(iter_manifest_files(directory))
    except OSError as exc:
        raise BuildError(f"Cannot list manifest directory {directory}: {exc}") from exc
    if not manifests:
        raise BuildError(f"Manifest directory {directory} contains no manifests")
    for manifest in manifests:
        try:
            documents = [doc for doc in yaml.safe_load_all(manifest.read_text()) if doc is not None]
        except (yaml.YAMLError, UnicodeDecodeError) as exc:
            raise BuildError(f"Manifest {manifest} is not valid YAML: {exc}") from exc
        except OSError as exc:
            raise BuildError(f"Cannot read manifest {manifest}: {exc}") from exc
        if not all(isinstance(doc, dict) for doc in documents):
            raise BuildError(f"Manifest {manifest} must contain mappings only")
    return manifests


class BundleBuilder:
    """Turns a manifest directory into a tagged bundle image."""

    def __init__(self, client: ContainerClient) -> None:
        self.client = client

    def generate(self, spec: BundleSpec) -> Path:
        """Write annotations and the bundle Dockerfile beside the manifest directory."""

        manifests_dir = Path(spec.path)
        check_manifest_directory(manifests_dir)
        context_dir = manifests_dir.resolve().parent
        annotations = bundle_annotations(spec)

        metadata_dir = context_dir / METADATA_DIR
        dockerfile = context_dir / DOCKERFILE_NAME
        try:
            metadata_dir.mkdir(parents=True, exist_ok=True)
            (metadata_dir / ANNOTATIONS_FILE).write_text(
                yaml.safe_dump({"annotations": annotations}, sort_keys=False)
            )
            dockerfile.write_text(render_dockerfile(annotations, manifests_dir.resolve().name))
        except OSError as exc:
            raise BuildError(f"Cannot write bundle metadata for {manifests_dir}: {exc}") from exc
        logger.debug(f"Generated {dockerfile} for {spec.package} {spec.version}")
        return dockerfile

    def build(self, spec: BundleSpec, image: ImageReference, *, generate_only: bool = False) -> None:
        dockerfile = self.generate(spec)
        if generate_only:
            return
        self.client.build(dockerfile, image, dockerfile.parent)
        logger.info(f"Built bundle {image} ({spec.package} {spec.version})")
