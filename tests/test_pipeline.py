from __future__ import annotations

import logging
from pathlib import Path

import pytest

from catalog_pipeline.config import Settings
from catalog_pipeline.errors import AuthError
from catalog_pipeline.pipeline import CatalogPipeline, PipelineState, Stage

from fakes import FakeContainerClient, FakeIndexer

BUNDLES = [
    "quay.io/olmtest/e2e-bundle:aaaaaa",
    "quay.io/olmtest/e2e-bundle:bbbbbb",
    "quay.io/olmtest/e2e-bundle:cccccc",
]
INDEX = "quay.io/olmtest/e2e-index:indexx"


def test_stages_run_in_declared_order() -> None:
    assert [stage.name for stage in Stage.ordered()] == [
        "AUTHENTICATE",
        "BUILD_BUNDLES",
        "PUSH_BUNDLES",
        "BUILD_INDEX",
        "PUSH_INDEX",
        "EXPORT",
        "VERIFY",
    ]


def test_full_run_reaches_done(make_context, plan) -> None:
    client = FakeContainerClient()
    indexer = FakeIndexer(plan)
    pipeline = CatalogPipeline(make_context(client, indexer))

    result = pipeline.run()

    assert result.ok
    assert result.state is PipelineState.DONE
    assert [r.name for r in result.results] == [stage.name.lower() for stage in Stage.ordered()]
    assert client.calls[0] == ("login", "quay.io", "robot")
    assert client.builds == BUNDLES
    assert client.pushes == BUNDLES + [INDEX]
    verify = result.results[-1].details
    assert verify["channels"]["preview"]["head_version"] == "0.22.2"
    assert verify["bundle_versions"] == ["0.14.0", "0.15.0", "0.22.2"]


def test_index_tag_is_identical_across_stages(make_context, plan) -> None:
    client = FakeContainerClient()
    indexer = FakeIndexer(plan)
    context = make_context(client, indexer)

    CatalogPipeline(context).run()

    (add_request,) = indexer.add_requests
    (export_request,) = indexer.export_requests
    assert add_request.tag == INDEX
    assert client.pushes[-1] == INDEX
    assert export_request.index == INDEX
    assert list(add_request.bundles) == BUNDLES
    assert context.identifiers.index_tag == "indexx"


def test_index_request_is_built_from_scratch_and_strict(make_context, plan) -> None:
    indexer = FakeIndexer(plan)
    CatalogPipeline(make_context(FakeContainerClient(), indexer)).run()

    (request,) = indexer.add_requests
    assert request.from_index is None
    assert request.generate is False
    assert request.permissive is False


def test_second_bundle_failure_stops_before_third_and_before_any_push(make_context, plan) -> None:
    client = FakeContainerClient(fail_build_at=2)
    indexer = FakeIndexer(plan)
    pipeline = CatalogPipeline(make_context(client, indexer))

    result = pipeline.run()

    assert result.state is PipelineState.FAILED
    assert result.failed_stage == "build_bundles"
    assert client.builds == BUNDLES[:2]
    assert client.pushes == []
    assert indexer.add_requests == []


def test_unreadable_manifest_fails_the_build_stage_cleanly(make_context, plan, caplog) -> None:
    second = Path(plan.bundles[1].path)
    (second / "broken.yaml").write_bytes(b"kind: \xff\xfe\n")
    client = FakeContainerClient()
    indexer = FakeIndexer(plan)

    with caplog.at_level(logging.CRITICAL, logger="catalog_pipeline.pipeline"):
        result = CatalogPipeline(make_context(client, indexer)).run()

    assert result.state is PipelineState.FAILED
    assert result.failed_stage == "build_bundles"
    assert result.results[-1].details["error"] == "BuildError"
    assert client.builds == BUNDLES[:1]
    assert client.pushes == []
    assert indexer.add_requests == []
    assert any(record.getMessage().startswith("Error building bundles:") for record in caplog.records)


@pytest.mark.parametrize(
    "failing_image, failed_stage, pushes",
    [
        (BUNDLES[0], "push_bundles", BUNDLES[:1]),
        (BUNDLES[1], "push_bundles", BUNDLES[:2]),
        (BUNDLES[2], "push_bundles", BUNDLES),
        (INDEX, "push_index", BUNDLES + [INDEX]),
    ],
)
def test_push_failure_terminates_run(make_context, plan, failing_image, failed_stage, pushes) -> None:
    client = FakeContainerClient(fail_push_of=failing_image)
    indexer = FakeIndexer(plan)

    result = CatalogPipeline(make_context(client, indexer)).run()

    assert result.state is PipelineState.FAILED
    assert result.failed_stage == failed_stage
    assert result.results[-1].details["error"] == "PushError"
    assert client.pushes == pushes
    assert indexer.export_requests == []
    if failed_stage == "push_bundles":
        assert indexer.add_requests == []


def test_missing_credentials_fail_before_login(make_context) -> None:
    client = FakeContainerClient()

    result = CatalogPipeline(make_context(client, settings=Settings())).run()

    assert result.failed_stage == "authenticate"
    assert result.results[-1].details["error"] == "AuthError"
    assert client.calls == []


def test_rejected_login_fails_before_any_build(make_context) -> None:
    class RejectingClient(FakeContainerClient):
        def login(self, registry, username, password):
            super().login(registry, username, password)
            raise AuthError(f"Login to {registry} failed: unauthorized")

    client = RejectingClient()
    result = CatalogPipeline(make_context(client)).run()

    assert result.state is PipelineState.FAILED
    assert result.failed_stage == "authenticate"
    assert client.builds == []


def test_index_build_failure_skips_push_and_export(make_context, plan) -> None:
    client = FakeContainerClient()
    indexer = FakeIndexer(plan, fail_add=True)

    result = CatalogPipeline(make_context(client, indexer)).run()

    assert result.failed_stage == "build_index"
    assert result.results[-1].details["error"] == "IndexBuildError"
    assert INDEX not in client.pushes
    assert indexer.export_requests == []


def test_export_failure_skips_verification(make_context, plan) -> None:
    indexer = FakeIndexer(plan, fail_export=True)

    result = CatalogPipeline(make_context(FakeContainerClient(), indexer)).run()

    assert result.failed_stage == "export"
    assert [r.name for r in result.results][-1] == "export"


def test_lost_bundle_fails_verification(make_context, plan) -> None:
    indexer = FakeIndexer(plan, drop_versions=["0.15.0"])

    result = CatalogPipeline(make_context(FakeContainerClient(), indexer)).run()

    assert result.failed_stage == "verify"
    assert result.results[-1].details["error"] == "LoadError"


def test_undeclared_bundle_in_export_fails_verification(make_context, plan) -> None:
    indexer = FakeIndexer(plan, extra_versions=["0.30.0"])

    result = CatalogPipeline(make_context(FakeContainerClient(), indexer)).run()

    assert result.failed_stage == "verify"
    assert "undeclared versions ['0.30.0']" in result.results[-1].details["message"]


def test_failure_is_logged_with_stage_message(make_context, plan, caplog) -> None:
    client = FakeContainerClient(fail_push_of=INDEX)

    with caplog.at_level(logging.CRITICAL, logger="catalog_pipeline.pipeline"):
        CatalogPipeline(make_context(client, FakeIndexer(plan))).run()

    messages = [record.getMessage() for record in caplog.records if record.levelno == logging.CRITICAL]
    assert len(messages) == 1
    assert messages[0].startswith("Error pushing index:")


def test_pipeline_cannot_run_twice(make_context) -> None:
    pipeline = CatalogPipeline(make_context(FakeContainerClient()))
    pipeline.run()

    with pytest.raises(RuntimeError):
        pipeline.run()


def test_scratch_database_is_removed_after_run(make_context, tmp_path: Path) -> None:
    context = make_context(FakeContainerClient())
    CatalogPipeline(context).run()

    assert list(context.workspace.glob("index_tmp*.db")) == []


def test_report_names_failed_stage(make_context) -> None:
    result = CatalogPipeline(make_context(FakeContainerClient(fail_build_at=1))).run()

    report = result.to_dict()
    assert report["state"] == "failed"
    assert report["failed_stage"] == "build_bundles"
    assert report["stages"][-1]["status"] == "failed"
