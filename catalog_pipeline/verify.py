from __future__ import annotations

import logging
import os
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence

from .database import CatalogDatabase, DirectoryLoader
from .errors import LoadError
from .models import BundleSpec

logger = logging.getLogger(__name__)

SCRATCH_PREFIX = "index_tmp"


@dataclass
class ChannelSummary:
    name: str
    head: Optional[str]
    head_version: Optional[str]
    versions: List[str] = field(default_factory=list)


@dataclass
class CatalogSummary:
    """What the catalog database holds for one package after loading."""

    package: str
    default_channel: Optional[str]
    schema_version: int
    channels: Dict[str, ChannelSummary] = field(default_factory=dict)
    bundle_versions: List[str] = field(default_factory=list)
    database_path: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "package": self.package,
            "default_channel": self.default_channel,
            "schema_version": self.schema_version,
            "bundle_versions": self.bundle_versions,
            "channels": {
                name: {
                    "head": channel.head,
                    "head_version": channel.head_version,
                    "versions": channel.versions,
                }
                for name, channel in self.channels.items()
            },
            "database_path": self.database_path,
        }


@contextmanager
def scratch_database(workdir: str | Path = ".", *, keep: bool = False) -> Iterator[Path]:
    """Yield a fresh database file path that is removed on exit unless ``keep`` is set."""

    try:
        fd, name = tempfile.mkstemp(prefix=SCRATCH_PREFIX, suffix=".db", dir=str(workdir))
    except OSError as exc:
        raise LoadError(f"Cannot create scratch catalog database in {workdir}: {exc}") from exc
    os.close(fd)
    path = Path(name)
    try:
        yield path
    finally:
        if keep:
            logger.info(f"Keeping catalog database {path}")
        else:
            path.unlink(missing_ok=True)


def summarize(database: CatalogDatabase, package: str) -> CatalogSummary:
    if package not in database.packages():
        raise LoadError(f"Package {package} was not loaded into the catalog database")
    summary = CatalogSummary(
        package=package,
        default_channel=database.default_channel(package),
        schema_version=database.version(),
        bundle_versions=sorted(database.bundle_versions(package)),
    )
    for channel in database.channels(package):
        head = database.channel_head(package, channel)
        summary.channels[channel] = ChannelSummary(
            name=channel,
            head=head,
            head_version=database.bundle_version(head) if head else None,
            versions=database.channel_versions(package, channel),
        )
    return summary


def check_round_trip(summary: CatalogSummary, expected: Sequence[BundleSpec]) -> None:
    """Raise LoadError unless the loaded package holds exactly the declared versions and channels.

    Bundles are declared oldest first, so the last declared bundle in a channel
    must be that channel's head.
    """

    problems: List[str] = []
    declared_versions = {bundle.version for bundle in expected}
    loaded_versions = set(summary.bundle_versions)
    missing = sorted(declared_versions - loaded_versions)
    if missing:
        problems.append(f"missing versions {missing}")
    unexpected = sorted(loaded_versions - declared_versions)
    if unexpected:
        problems.append(f"undeclared versions {unexpected}")

    declared_heads: Dict[str, str] = {}
    for bundle in expected:
        for channel in bundle.channels:
            declared_heads[channel] = bundle.version
    for channel, head_version in declared_heads.items():
        loaded = summary.channels.get(channel)
        if loaded is not None and loaded.head_version != head_version:
            problems.append(
                f"channel {channel!r} head is {loaded.head_version}, expected {head_version}"
            )

    for bundle in expected:
        for channel in bundle.channels:
            loaded = summary.channels.get(channel)
            if loaded is None:
                problems.append(f"missing channel {channel!r}")
            elif bundle.version not in loaded.versions:
                problems.append(f"version {bundle.version} not reachable in channel {channel!r}")

    defaults = {bundle.default_channel for bundle in expected}
    if expected and summary.default_channel not in defaults:
        problems.append(
            f"default channel {summary.default_channel!r} is not one of the declared {sorted(defaults)}"
        )
    if problems:
        # Duplicate messages appear once per bundle declaring the same channel.
        unique = list(dict.fromkeys(problems))
        raise LoadError(f"Round trip of {summary.package} lost content: {'; '.join(unique)}")


def verify_catalog(
    exported_dir: str | Path,
    package: str,
    *,
    workdir: str | Path = ".",
    keep_database: bool = False,
    expected: Optional[Sequence[BundleSpec]] = None,
) -> CatalogSummary:
    """Load ``exported_dir`` into a fresh, migrated catalog database and summarise ``package``."""

    with scratch_database(workdir, keep=keep_database) as db_path:
        with CatalogDatabase.open(db_path) as database:
            schema_version = database.migrate()
            logger.debug(f"Catalog database {db_path} migrated to version {schema_version}")
            DirectoryLoader(database, exported_dir).populate()
            summary = summarize(database, package)
        if keep_database:
            summary.database_path = str(db_path)
    if expected:
        check_round_trip(summary, expected)
    return summary
