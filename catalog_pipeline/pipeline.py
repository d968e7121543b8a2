from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum, auto
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from .bundle import BundleBuilder
from .config import Settings
from .container import ContainerClient, ContainerToolClient
from .errors import AuthError, PipelineError
from .identifiers import RunIdentifiers
from .models import ExportRequest, ImageReference, IndexBuildRequest, StageResult
from .opm import IndexClient, OpmIndexer
from .plan import RunPlan
from .verify import verify_catalog

logger = logging.getLogger(__name__)


class Stage(Enum):
    AUTHENTICATE = auto()
    BUILD_BUNDLES = auto()
    PUSH_BUNDLES = auto()
    BUILD_INDEX = auto()
    PUSH_INDEX = auto()
    EXPORT = auto()
    VERIFY = auto()

    @classmethod
    def ordered(cls) -> Iterable["Stage"]:
        return (
            cls.AUTHENTICATE,
            cls.BUILD_BUNDLES,
            cls.PUSH_BUNDLES,
            cls.BUILD_INDEX,
            cls.PUSH_INDEX,
            cls.EXPORT,
            cls.VERIFY,
        )


class PipelineState(Enum):
    INIT = auto()
    AUTHENTICATED = auto()
    BUNDLES_BUILT = auto()
    BUNDLES_PUSHED = auto()
    INDEX_BUILT = auto()
    INDEX_PUSHED = auto()
    EXPORTED = auto()
    VERIFIED = auto()
    DONE = auto()
    FAILED = auto()


_STATE_AFTER: Dict[Stage, PipelineState] = {
    Stage.AUTHENTICATE: PipelineState.AUTHENTICATED,
    Stage.BUILD_BUNDLES: PipelineState.BUNDLES_BUILT,
    Stage.PUSH_BUNDLES: PipelineState.BUNDLES_PUSHED,
    Stage.BUILD_INDEX: PipelineState.INDEX_BUILT,
    Stage.PUSH_INDEX: PipelineState.INDEX_PUSHED,
    Stage.EXPORT: PipelineState.EXPORTED,
    Stage.VERIFY: PipelineState.VERIFIED,
}


@dataclass
class PipelineContext:
    """Run-scoped configuration built once by the entry point and shared by every stage."""

    plan: RunPlan
    identifiers: RunIdentifiers
    client: ContainerClient
    indexer: IndexClient
    settings: Settings = field(default_factory=Settings)
    workspace: Path = Path(".")
    keep_database: bool = False
    builder: Optional[BundleBuilder] = None

    def __post_init__(self) -> None:
        if len(self.identifiers.bundle_tags) != len(self.plan.bundles):
            raise ValueError(
                f"{len(self.identifiers.bundle_tags)} bundle tags for {len(self.plan.bundles)} bundles"
            )
        if self.builder is None:
            self.builder = BundleBuilder(self.client)

    @classmethod
    def create(
        cls,
        tool: str,
        plan: RunPlan,
        settings: Settings,
        *,
        workspace: str | Path = ".",
        keep_database: bool = False,
    ) -> "PipelineContext":
        identifiers = RunIdentifiers.generate(len(plan.bundles), length=settings.tag_length)
        return cls(
            plan=plan,
            identifiers=identifiers,
            client=ContainerToolClient(tool, timeout=settings.command_timeout),
            indexer=OpmIndexer(tool, opm_binary=settings.opm_binary, timeout=settings.command_timeout),
            settings=settings,
            workspace=Path(workspace),
            keep_database=keep_database,
        )

    @property
    def tool(self) -> str:
        return self.client.tool

    @property
    def bundle_images(self) -> Tuple[ImageReference, ...]:
        return tuple(self.plan.bundle_image(tag) for tag in self.identifiers.bundle_tags)

    @property
    def index_image(self) -> ImageReference:
        return self.plan.index_image(self.identifiers.index_tag)

    @property
    def download_path(self) -> Path:
        # Per-run subdirectory so stale exports never satisfy verification.
        return self.workspace / self.plan.download_path / self.identifiers.index_tag

    def describe(self) -> Dict[str, Any]:
        return {
            "container_tool": self.tool,
            "package": self.plan.package,
            "plan": self.plan.source,
            "bundles": [
                {"path": spec.path, "version": spec.version, "image": str(image)}
                for spec, image in zip(self.plan.bundles, self.bundle_images)
            ],
            "index_image": str(self.index_image),
            "download_path": str(self.download_path),
        }


StageHandler = Callable[[PipelineContext], StageResult]


def _stage_authenticate(context: PipelineContext) -> StageResult:
    registry = context.plan.registry
    if not context.settings.has_credentials:
        raise AuthError(f"DOCKER_USERNAME and DOCKER_PASSWORD must be set to log into {registry}")
    context.client.login(registry, context.settings.username, context.settings.password)
    return StageResult("authenticate", "completed", {"registry": registry})


def _stage_build_bundles(context: PipelineContext) -> StageResult:
    built: List[str] = []
    for spec, image in zip(context.plan.bundles, context.bundle_images):
        context.builder.build(spec, image)
        built.append(str(image))
    return StageResult("build_bundles", "completed", {"images": built})


def _stage_push_bundles(context: PipelineContext) -> StageResult:
    pushed: List[str] = []
    for image in context.bundle_images:
        context.client.push(image)
        pushed.append(str(image))
    return StageResult("push_bundles", "completed", {"images": pushed})


def _stage_build_index(context: PipelineContext) -> StageResult:
    request = IndexBuildRequest.for_images(context.index_image, context.bundle_images)
    context.indexer.add_to_index(request)
    return StageResult(
        "build_index",
        "completed",
        {"image": request.tag, "bundles": list(request.bundles)},
    )


def _stage_push_index(context: PipelineContext) -> StageResult:
    context.client.push(context.index_image)
    return StageResult("push_index", "completed", {"image": str(context.index_image)})


def _stage_export(context: PipelineContext) -> StageResult:
    request = ExportRequest(
        index=str(context.index_image),
        package=context.plan.package,
        download_path=str(context.download_path),
        container_tool=context.tool,
    )
    context.indexer.export_from_index(request)
    return StageResult(
        "export",
        "completed",
        {"index": request.index, "package": request.package, "download_path": request.download_path},
    )


def _stage_verify(context: PipelineContext) -> StageResult:
    summary = verify_catalog(
        context.download_path,
        context.plan.package,
        workdir=context.workspace,
        keep_database=context.keep_database,
        expected=context.plan.bundles,
    )
    return StageResult("verify", "completed", summary.to_dict())


_STAGE_HANDLERS: Dict[Stage, StageHandler] = {
    Stage.AUTHENTICATE: _stage_authenticate,
    Stage.BUILD_BUNDLES: _stage_build_bundles,
    Stage.PUSH_BUNDLES: _stage_push_bundles,
    Stage.BUILD_INDEX: _stage_build_index,
    Stage.PUSH_INDEX: _stage_push_index,
    Stage.EXPORT: _stage_export,
    Stage.VERIFY: _stage_verify,
}

_FAILURE_MESSAGES: Dict[Stage, str] = {
    Stage.AUTHENTICATE: "logging into registry",
    Stage.BUILD_BUNDLES: "building bundles",
    Stage.PUSH_BUNDLES: "pushing bundles",
    Stage.BUILD_INDEX: "building index",
    Stage.PUSH_INDEX: "pushing index",
    Stage.EXPORT: "exporting from index",
    Stage.VERIFY: "loading manifests from directory",
}


@dataclass
class PipelineResult:
    state: PipelineState
    results: List[StageResult] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.state is PipelineState.DONE

    @property
    def failed_stage(self) -> Optional[str]:
        for result in self.results:
            if not result.ok:
                return result.name
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.name.lower(),
            "failed_stage": self.failed_stage,
            "stages": [result.to_dict() for result in self.results],
        }


class CatalogPipeline:
    """Runs the publish and round-trip stages strictly in order, stopping at the first failure."""

    def __init__(self, context: PipelineContext) -> None:
        self.context = context
        self.state = PipelineState.INIT
        self.results: List[StageResult] = []

    def run(self) -> PipelineResult:
        if self.state is not PipelineState.INIT:
            raise RuntimeError(f"Pipeline already ran and is in state {self.state.name}")
        logger.info(f"Starting run for {self.context.plan.package} with index {self.context.index_image}")
        for stage in Stage.ordered():
            result = self._run_stage(stage)
            if not result.ok:
                break
        else:
            self.state = PipelineState.DONE
            logger.info(f"Round trip of {self.context.index_image} verified")
        return PipelineResult(self.state, list(self.results))

    def _run_stage(self, stage: Stage) -> StageResult:
        handler = _STAGE_HANDLERS[stage]
        logger.debug(f"Entering stage {stage.name.lower()}")
        try:
            result = handler(self.context)
        except PipelineError as exc:
            exc.stage = exc.stage or stage.name.lower()
            logger.critical(f"Error {_FAILURE_MESSAGES[stage]}: {exc}")
            self.state = PipelineState.FAILED
            result = StageResult(
                stage.name.lower(),
                "failed",
                {"error": type(exc).__name__, "message": str(exc)},
            )
        else:
            self.state = _STATE_AFTER[stage]
        self.results.append(result)
        return result
