from __future__ import annotations

import argparse
import json
import logging
import sys

from .config import Settings
from .container import select_container_tool
from .errors import PlanError, UsageError
from .pipeline import CatalogPipeline, PipelineContext
from .plan import RunPlan
from .utils import dump_json

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Build and push operator bundles and an index image, then verify the index round trip"
    )
    parser.add_argument(
        "tool",
        nargs="*",
        metavar="CONTAINER_TOOL",
        help='Container tool used for login, build and push: one of ["docker", "podman"].',
    )
    parser.add_argument(
        "--plan",
        help="JSON or YAML run plan. Defaults to the built-in prometheus plan.",
    )
    parser.add_argument(
        "--workspace",
        default=".",
        help="Directory for exported manifests and the scratch catalog database.",
    )
    parser.add_argument("--report", help="Write the per-stage results as JSON to this path.")
    parser.add_argument(
        "--keep-database",
        action="store_true",
        help="Leave the scratch catalog database on disk for inspection.",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Print the image references this run would use and exit.",
    )
    return parser


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        tool = select_container_tool(args.tool)
    except UsageError as exc:
        parser.error(str(exc))

    try:
        settings = Settings.from_env()
    except ValueError as exc:
        parser.error(f"Invalid environment configuration: {exc}")
    configure_logging(settings.log_level)
    logger.debug(f"Configuration: {settings!r}")

    try:
        plan = RunPlan.from_file(args.plan) if args.plan else RunPlan.default()
    except PlanError as exc:
        parser.error(str(exc))

    context = PipelineContext.create(
        tool,
        plan,
        settings,
        workspace=args.workspace,
        keep_database=args.keep_database,
    )
    if args.dry_run:
        print(json.dumps(context.describe(), indent=2))
        return 0

    result = CatalogPipeline(context).run()
    if args.report:
        dump_json(args.report, result.to_dict())
    return 0 if result.ok else 1


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
