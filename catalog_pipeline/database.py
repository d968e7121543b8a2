"""
Local catalog database used to prove that exported index content is loadable.

The schema mirrors the relational layout used by operator indexes: packages
own channels, channels point at a head bundle, and ``channel_entry`` rows
describe the upgrade graph reached by following ``replaces`` from each head.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

import yaml

from .bundle import (
    CHANNELS_LABEL,
    DEFAULT_CHANNEL_LABEL,
    MANIFEST_SUFFIXES,
    PACKAGE_LABEL,
)
from .errors import LoadError

logger = logging.getLogger(__name__)

CSV_KIND = "ClusterServiceVersion"
CRD_KIND = "CustomResourceDefinition"

MIGRATIONS: Sequence[Tuple[int, Sequence[str]]] = (
    (
        1,
        (
            """
            CREATE TABLE package (
                name TEXT PRIMARY KEY,
                default_channel TEXT
            )
            """,
            """
            CREATE TABLE operatorbundle (
                name TEXT PRIMARY KEY,
                package_name TEXT NOT NULL REFERENCES package(name),
                version TEXT NOT NULL,
                bundlepath TEXT,
                replaces TEXT,
                skips TEXT
            )
            """,
            """
            CREATE TABLE channel (
                name TEXT NOT NULL,
                package_name TEXT NOT NULL REFERENCES package(name),
                head_operatorbundle_name TEXT REFERENCES operatorbundle(name),
                PRIMARY KEY (name, package_name)
            )
            """,
            """
            CREATE TABLE channel_entry (
                entry_id INTEGER PRIMARY KEY,
                channel_name TEXT NOT NULL,
                package_name TEXT NOT NULL,
                operatorbundle_name TEXT NOT NULL REFERENCES operatorbundle(name),
                replaces TEXT,
                depth INTEGER NOT NULL,
                FOREIGN KEY (channel_name, package_name) REFERENCES channel(name, package_name)
            )
            """,
        ),
    ),
    (
        2,
        (
            """
            CREATE TABLE api_provider (
                group_name TEXT NOT NULL,
                version TEXT NOT NULL,
                kind TEXT NOT NULL,
                operatorbundle_name TEXT NOT NULL REFERENCES operatorbundle(name),
                PRIMARY KEY (group_name, version, kind, operatorbundle_name)
            )
            """,
        ),
    ),
    (
        3,
        (
            "CREATE INDEX channel_entry_lookup ON channel_entry (package_name, channel_name, depth)",
        ),
    ),
)

LATEST_VERSION = MIGRATIONS[-1][0]


class CatalogDatabase:
    """Thin query/migration layer over an open sqlite connection."""

    def __init__(self, connection: sqlite3.Connection) -> None:
        self.connection = connection

    @classmethod
    def open(cls, path: str | Path) -> "CatalogDatabase":
        try:
            connection = sqlite3.connect(str(path))
        except sqlite3.Error as exc:
            raise LoadError(f"Cannot open catalog database {path}: {exc}") from exc
        connection.execute("PRAGMA foreign_keys = ON")
        return cls(connection)

    def close(self) -> None:
        self.connection.close()

    def __enter__(self) -> "CatalogDatabase":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def version(self) -> int:
        try:
            row = self.connection.execute("SELECT MAX(version) FROM schema_migrations").fetchone()
        except sqlite3.OperationalError:
            return 0
        return row[0] or 0

    def migrate(self) -> int:
        """Apply pending migrations and return the resulting schema version."""

        try:
            with self.connection:
                self.connection.execute(
                    "CREATE TABLE IF NOT EXISTS schema_migrations (version INTEGER PRIMARY KEY)"
                )
            current = self.version()
            if current > LATEST_VERSION:
                raise LoadError(
                    f"Catalog schema version {current} is newer than supported version {LATEST_VERSION}"
                )
            for version, statements in MIGRATIONS:
                if version <= current:
                    continue
                with self.connection:
                    for statement in statements:
                        self.connection.execute(statement)
                    self.connection.execute(
                        "INSERT INTO schema_migrations (version) VALUES (?)", (version,)
                    )
                logger.debug(f"Applied catalog migration {version}")
        except sqlite3.Error as exc:
            raise LoadError(f"Catalog migration failed: {exc}") from exc
        return self.version()

    def _column(self, query: str, params: Sequence[Any] = ()) -> List[Any]:
        return [row[0] for row in self.connection.execute(query, tuple(params))]

    def packages(self) -> List[str]:
        return self._column("SELECT name FROM package ORDER BY name")

    def default_channel(self, package: str) -> Optional[str]:
        row = self.connection.execute(
            "SELECT default_channel FROM package WHERE name = ?", (package,)
        ).fetchone()
        return row[0] if row else None

    def channels(self, package: str) -> List[str]:
        return self._column(
            "SELECT name FROM channel WHERE package_name = ? ORDER BY name", (package,)
        )

    def channel_head(self, package: str, channel: str) -> Optional[str]:
        row = self.connection.execute(
            "SELECT head_operatorbundle_name FROM channel WHERE package_name = ? AND name = ?",
            (package, channel),
        ).fetchone()
        return row[0] if row else None

    def channel_bundles(self, package: str, channel: str) -> List[str]:
        """Bundle names in the channel, head first."""
        return self._column(
            """
            SELECT operatorbundle_name FROM channel_entry
            WHERE package_name = ? AND channel_name = ?
            ORDER BY depth
            """,
            (package, channel),
        )

    def channel_versions(self, package: str, channel: str) -> List[str]:
        return self._column(
            """
            SELECT b.version FROM channel_entry e
            JOIN operatorbundle b ON b.name = e.operatorbundle_name
            WHERE e.package_name = ? AND e.channel_name = ?
            ORDER BY e.depth
            """,
            (package, channel),
        )

    def bundle_version(self, name: str) -> Optional[str]:
        row = self.connection.execute(
            "SELECT version FROM operatorbundle WHERE name = ?", (name,)
        ).fetchone()
        return row[0] if row else None

    def bundle_versions(self, package: str) -> List[str]:
        return self._column(
            "SELECT version FROM operatorbundle WHERE package_name = ? ORDER BY name", (package,)
        )

    def provided_apis(self, bundle: str) -> List[Tuple[str, str, str]]:
        return [
            tuple(row)
            for row in self.connection.execute(
                """
                SELECT group_name, version, kind FROM api_provider
                WHERE operatorbundle_name = ? ORDER BY group_name, version, kind
                """,
                (bundle,),
            )
        ]


@dataclass
class _Bundle:
    name: str
    version: str
    replaces: Optional[str]
    skips: List[str]
    path: Path
    apis: List[Tuple[str, str, str]] = field(default_factory=list)


@dataclass
class _PackageManifest:
    name: str
    default_channel: Optional[str]
    channels: Dict[str, str]
    root: Path


def _iter_documents(directory: Path) -> Iterator[Tuple[Path, Dict[str, Any]]]:
    for path in sorted(directory.rglob("*")):
        if not path.is_file() or path.suffix.lower() not in MANIFEST_SUFFIXES:
            continue
        try:
            documents = list(yaml.safe_load_all(path.read_text()))
        except (yaml.YAMLError, UnicodeDecodeError) as exc:
            raise LoadError(f"Cannot parse manifest {path}: {exc}") from exc
        except OSError as exc:
            raise LoadError(f"Cannot read manifest {path}: {exc}") from exc
        for document in documents:
            if isinstance(document, dict):
                yield path, document


def _mapping(path: Path, value: Any, name: str) -> Dict[str, Any]:
    """Return ``value`` as a mapping, treating a missing value as empty."""
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise LoadError(f"Manifest {path} has a non-mapping {name}: {value!r}")
    return value


def _sequence(path: Path, value: Any, name: str) -> List[Any]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise LoadError(f"Manifest {path} has a non-list {name}: {value!r}")
    return value


def _optional_string(path: Path, value: Any, name: str) -> Optional[str]:
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        raise LoadError(f"Manifest {path} has a non-string {name}: {value!r}")
    return value


def _crd_apis(path: Path, document: Dict[str, Any]) -> List[Tuple[str, str, str]]:
    spec = _mapping(path, document.get("spec"), "spec")
    group = spec.get("group", "")
    kind = _mapping(path, spec.get("names"), "spec.names").get("kind", "")
    versions = []
    for entry in _sequence(path, spec.get("versions"), "spec.versions"):
        name = _mapping(path, entry, "spec.versions entry").get("name")
        if name:
            versions.append(str(name))
    if not versions and spec.get("version"):
        versions = [str(spec["version"])]
    return [(group, version, kind) for version in versions]


def _parse_csv(path: Path, document: Dict[str, Any]) -> _Bundle:
    metadata = _mapping(path, document.get("metadata"), "metadata")
    spec = _mapping(path, document.get("spec"), "spec")
    name = _optional_string(path, metadata.get("name"), "metadata.name")
    version = spec.get("version")
    if not name or not version:
        raise LoadError(f"ClusterServiceVersion in {path} is missing metadata.name or spec.version")
    skips = _sequence(path, spec.get("skips"), "spec.skips")
    return _Bundle(
        name=name,
        version=str(version),
        replaces=_optional_string(path, spec.get("replaces"), "spec.replaces"),
        skips=[str(skip) for skip in skips],
        path=path.parent,
    )


def _parse_package_manifest(path: Path, document: Dict[str, Any]) -> _PackageManifest:
    package = _optional_string(path, document.get("packageName"), "packageName")
    if not package:
        raise LoadError(f"Package manifest {path} has an empty packageName")
    channels: Dict[str, str] = {}
    for entry in _sequence(path, document.get("channels"), "channels"):
        entry = _mapping(path, entry, "channels entry")
        name = _optional_string(path, entry.get("name"), "channel name")
        current = _optional_string(path, entry.get("currentCSV"), "currentCSV")
        if not name or not current:
            raise LoadError(f"Package manifest {path} has a channel without name or currentCSV")
        channels[name] = current
    return _PackageManifest(
        name=package,
        default_channel=_optional_string(path, document.get("defaultChannel"), "defaultChannel"),
        channels=channels,
        root=path.parent,
    )


def _is_within(path: Path, root: Path) -> bool:
    return path == root or root in path.parents


class DirectoryLoader:
    """Populates a migrated catalog database from a directory of exported manifests."""

    def __init__(self, database: CatalogDatabase, directory: str | Path) -> None:
        self.database = database
        self.directory = Path(directory)

    def populate(self) -> None:
        if not self.directory.is_dir():
            raise LoadError(f"Manifest directory {self.directory} does not exist")

        packages: List[_PackageManifest] = []
        bundles: Dict[str, _Bundle] = {}
        crds: List[Tuple[Path, List[Tuple[str, str, str]]]] = []
        annotations: List[Tuple[Path, Dict[str, str]]] = []

        for path, document in _iter_documents(self.directory):
            if "packageName" in document:
                packages.append(_parse_package_manifest(path, document))
            elif document.get("kind") == CSV_KIND:
                bundle = _parse_csv(path, document)
                if bundle.name in bundles:
                    raise LoadError(f"Duplicate ClusterServiceVersion {bundle.name} in {path}")
                bundles[bundle.name] = bundle
            elif document.get("kind") == CRD_KIND:
                crds.append((path.parent, _crd_apis(path, document)))
            elif isinstance(document.get("annotations"), dict):
                annotations.append((path, document["annotations"]))

        if not packages:
            packages = self._packages_from_annotations(annotations, bundles)
        if not packages:
            raise LoadError(f"No package manifest found under {self.directory}")

        for bundle_dir, apis in crds:
            for bundle in bundles.values():
                if bundle.path == bundle_dir:
                    bundle.apis.extend(apis)

        try:
            with self.database.connection:
                for package in packages:
                    self._load_package(package, self._bundles_for(package, packages, bundles))
        except sqlite3.Error as exc:
            raise LoadError(f"Cannot populate catalog database: {exc}") from exc
        logger.info(
            f"Loaded {len(bundles)} bundles for {', '.join(p.name for p in packages)} from {self.directory}"
        )

    def _bundles_for(
        self,
        package: _PackageManifest,
        packages: List[_PackageManifest],
        bundles: Dict[str, _Bundle],
    ) -> Dict[str, _Bundle]:
        if len(packages) == 1:
            return bundles
        return {name: b for name, b in bundles.items() if _is_within(b.path, package.root)}

    def _packages_from_annotations(
        self,
        annotations: List[Tuple[Path, Dict[str, str]]],
        bundles: Dict[str, _Bundle],
    ) -> List[_PackageManifest]:
        """Derive package manifests from bundle annotations when none were exported."""

        by_package: Dict[str, _PackageManifest] = {}
        members: Dict[str, Dict[str, List[str]]] = {}
        for path, values in annotations:
            name = _optional_string(path, values.get(PACKAGE_LABEL), PACKAGE_LABEL)
            if not name:
                continue
            default_channel = _optional_string(path, values.get(DEFAULT_CHANNEL_LABEL), DEFAULT_CHANNEL_LABEL)
            channel_list = _optional_string(path, values.get(CHANNELS_LABEL), CHANNELS_LABEL) or ""
            manifest = by_package.setdefault(
                name, _PackageManifest(name, default_channel, {}, self.directory)
            )
            if not manifest.default_channel:
                manifest.default_channel = default_channel
            # metadata/annotations.yaml sits one level below the bundle root.
            bundle_root = path.parent.parent
            csv_names = [b.name for b in bundles.values() if _is_within(b.path, bundle_root)]
            for channel in channel_list.split(","):
                channel = channel.strip()
                if channel:
                    members.setdefault(name, {}).setdefault(channel, []).extend(csv_names)

        for name, channels in members.items():
            for channel, csv_names in channels.items():
                replaced = {bundles[csv].replaces for csv in csv_names}
                heads = [csv for csv in csv_names if csv not in replaced]
                if len(heads) != 1:
                    raise LoadError(f"Channel {channel} of {name} has no single head: {sorted(heads)}")
                by_package[name].channels[channel] = heads[0]
        return list(by_package.values())

    def _load_package(self, package: _PackageManifest, bundles: Dict[str, _Bundle]) -> None:
        if not package.channels:
            raise LoadError(f"Package {package.name} declares no channels")
        default_channel = package.default_channel
        if default_channel is None and len(package.channels) == 1:
            default_channel = next(iter(package.channels))
        if default_channel not in package.channels:
            raise LoadError(
                f"Default channel {default_channel!r} of {package.name} is not one of {sorted(package.channels)}"
            )

        connection = self.database.connection
        connection.execute(
            "INSERT INTO package (name, default_channel) VALUES (?, ?)",
            (package.name, default_channel),
        )
        for bundle in bundles.values():
            connection.execute(
                """
                INSERT INTO operatorbundle (name, package_name, version, bundlepath, replaces, skips)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    bundle.name,
                    package.name,
                    bundle.version,
                    str(bundle.path.relative_to(self.directory)),
                    bundle.replaces,
                    json.dumps(bundle.skips),
                ),
            )
            for group, version, kind in bundle.apis:
                connection.execute(
                    """
                    INSERT OR IGNORE INTO api_provider (group_name, version, kind, operatorbundle_name)
                    VALUES (?, ?, ?, ?)
                    """,
                    (group, version, kind, bundle.name),
                )

        for channel, head in package.channels.items():
            if head not in bundles:
                raise LoadError(f"Channel {channel} of {package.name} points at unknown bundle {head}")
            connection.execute(
                "INSERT INTO channel (name, package_name, head_operatorbundle_name) VALUES (?, ?, ?)",
                (channel, package.name, head),
            )
            for depth, bundle in enumerate(self._replaces_chain(package.name, channel, head, bundles)):
                connection.execute(
                    """
                    INSERT INTO channel_entry
                        (channel_name, package_name, operatorbundle_name, replaces, depth)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (channel, package.name, bundle.name, bundle.replaces, depth),
                )

    @staticmethod
    def _replaces_chain(
        package: str, channel: str, head: str, bundles: Dict[str, _Bundle]
    ) -> Iterator[_Bundle]:
        seen = set()
        current: Optional[str] = head
        while current is not None:
            if current in seen:
                raise LoadError(f"Replaces cycle in channel {channel} of {package} at {current}")
            if current not in bundles:
                raise LoadError(
                    f"Bundle in channel {channel} of {package} replaces nonexistent bundle {current}"
                )
            seen.add(current)
            bundle = bundles[current]
            yield bundle
            current = bundle.replaces
