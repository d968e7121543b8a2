from __future__ import annotations

from pathlib import Path
from typing import Optional

import pytest

from catalog_pipeline.config import Settings
from catalog_pipeline.identifiers import RunIdentifiers
from catalog_pipeline.models import BundleSpec
from catalog_pipeline.pipeline import PipelineContext
from catalog_pipeline.plan import RunPlan

from fakes import FakeContainerClient, FakeIndexer, write_bundle_manifests


@pytest.fixture
def plan(tmp_path: Path) -> RunPlan:
    sources = write_bundle_manifests(tmp_path / "manifests" / "prometheus")
    bundles = tuple(
        BundleSpec(
            path=str(path),
            package="prometheus",
            channels=("preview",),
            default_channel="preview",
        )
        for path in sources
    )
    return RunPlan(package="prometheus", bundles=bundles)


@pytest.fixture
def identifiers() -> RunIdentifiers:
    return RunIdentifiers(bundle_tags=("aaaaaa", "bbbbbb", "cccccc"), index_tag="indexx")


@pytest.fixture
def settings() -> Settings:
    return Settings(username="robot", password="secret")


@pytest.fixture
def make_context(tmp_path: Path, plan: RunPlan, identifiers: RunIdentifiers, settings: Settings):
    def _make(client: FakeContainerClient, indexer: Optional[FakeIndexer] = None, **kwargs) -> PipelineContext:
        return PipelineContext(
            plan=plan,
            identifiers=identifiers,
            client=client,
            indexer=indexer or FakeIndexer(plan),
            settings=kwargs.pop("settings", settings),
            workspace=tmp_path / "workspace",
            **kwargs,
        )

    return _make
