"""Data Transfer Objects used while building test databases.

DTOs are plain dataclasses that can be passed between the builder, the
driver adapters, the snapshot store and (serialised) between processes.
"""

import dataclasses
import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional, Protocol, Union

from .exceptions import RemoteShareException

# 远程构建协议版本，双方不一致时拒绝共享
REMOTE_SHARE_VERSION = 1


def human_size(
    bytes: int, units: tuple[str, ...] = ("B", "KB", "MB", "GB", "TB", "PB", "EB")
) -> str:
    if bytes < 1024 or len(units) == 1:
        return str(bytes) + units[0]
    return human_size(bytes >> 10, units[1:])


@dataclass(frozen=True)
class BuildConfiguration:
    """Immutable settings for building one connection's database."""

    project_name: str
    connection: str
    driver: str
    database_url: str
    storage_dir: str
    database_prefix: str = "test_"
    snapshot_prefix: str = "snapshot."
    hash_paths: tuple[str, ...] = ()
    pre_migration_imports: tuple[str, ...] = ()
    migrations: Union[bool, str] = True
    seeders: tuple[str, ...] = ()
    is_seeding_allowed: bool = True
    reuse_transaction: bool = True
    scenarios: bool = True
    snapshot_after_migrations: bool = False
    snapshot_after_seeders: bool = False
    remote_build_url: Optional[str] = None
    remote_build_timeout: float = 120.0
    remote_build_fallback_local: bool = False
    schema_applier: str = "sql"
    migrate_command: Optional[str] = None
    seed_command: Optional[str] = None
    mysql_client: str = "mysql"
    mysqldump: str = "mysqldump"
    psql: str = "psql"
    pg_dump: str = "pg_dump"

    @property
    def snapshots_enabled(self) -> bool:
        return self.snapshot_after_migrations or self.snapshot_after_seeders

    @property
    def effective_seeders(self) -> tuple[str, ...]:
        """Seeders only run when seeding is allowed and migrations run."""
        if not self.is_seeding_allowed or self.migrations is False:
            return ()
        return self.seeders

    def replace(self, **changes: Any) -> "BuildConfiguration":
        return dataclasses.replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        data = dataclasses.asdict(self)
        for key in ("hash_paths", "pre_migration_imports", "seeders"):
            data[key] = list(data[key])
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BuildConfiguration":
        """Build from a dict, ignoring keys this version does not know."""
        names = {f.name for f in dataclasses.fields(cls)}
        values = {k: v for k, v in data.items() if k in names}
        for key in ("hash_paths", "pre_migration_imports", "seeders"):
            if key in values and values[key] is not None:
                values[key] = tuple(values[key])
        return cls(**values)


@dataclass(frozen=True)
class HashTriplet:
    build_hash: str
    snapshot_hash: str
    scenario_hash: str

    def __str__(self) -> str:
        return (
            f"build={self.build_hash} snapshot={self.snapshot_hash} "
            f"scenario={self.scenario_hash}"
        )


@dataclass
class ReuseMetaDTO:
    """Detached copy of the ReuseMeta row of one database."""

    project_name: Optional[str]
    connection: str
    original_database: Optional[str]
    reuse_table_version: int
    build_hash: str
    snapshot_hash: str
    scenario_hash: str
    inside_transaction: bool
    last_used: Optional[datetime]

    @classmethod
    def from_orm(cls, obj) -> "ReuseMetaDTO":
        """Create DTO from SQLAlchemy ORM object.

        Args:
            obj: ReuseMeta ORM instance

        Returns:
            ReuseMetaDTO with all attributes copied
        """
        return cls(
            project_name=obj.project_name,
            connection=obj.connection,
            original_database=obj.original_database,
            reuse_table_version=obj.reuse_table_version,
            build_hash=obj.build_hash,
            snapshot_hash=obj.snapshot_hash,
            scenario_hash=obj.scenario_hash,
            inside_transaction=bool(obj.inside_transaction),
            last_used=obj.last_used,
        )


class Sizeable(Protocol):
    def size(self, name: str) -> Optional[int]: ...


class Removable(Protocol):
    def remove(self, meta: Any) -> bool: ...


_NOT_MEASURED = object()


@dataclass
class DatabaseMetaInfo:
    """A live view of one database found on a server, plus its reuse row."""

    name: str
    connection: str
    driver: str
    is_valid: bool
    build_hash: Optional[str]
    sizer: Sizeable = field(repr=False, compare=False)
    remover: Removable = field(repr=False, compare=False)
    project_name: Optional[str] = None
    original_database: Optional[str] = None
    last_used: Optional[datetime] = None
    _size: Any = field(default=_NOT_MEASURED, repr=False, compare=False)

    def size(self) -> Optional[int]:
        """Size in bytes, measured on first call only."""
        if self._size is _NOT_MEASURED:
            self._size = self.sizer.size(self.name)
        return self._size

    def remove(self) -> bool:
        return self.remover.remove(self)

    def purge_if_needed(self) -> bool:
        if self.is_valid:
            return False
        return self.remove()

    def readable(self) -> str:
        size = self.size()
        return f"{self.name} {human_size(size) if size is not None else '?'}"


@dataclass
class SnapshotMetaInfo:
    """A snapshot dump file found in the storage directory."""

    path: str
    filename: str
    access_dt: Optional[datetime]
    is_valid: bool
    snapshot_hash: Optional[str]
    label: Optional[str]
    sizer: Sizeable = field(repr=False, compare=False)
    remover: Removable = field(repr=False, compare=False)
    _size: Any = field(default=_NOT_MEASURED, repr=False, compare=False)

    def size(self) -> Optional[int]:
        if self._size is _NOT_MEASURED:
            self._size = self.sizer.size(self.path)
        return self._size

    def delete(self) -> bool:
        return self.remover.remove(self)

    def purge_if_needed(self) -> bool:
        if self.is_valid:
            return False
        return self.delete()

    def readable(self) -> str:
        size = self.size()
        return f"{self.path} {human_size(size) if size is not None else '?'}"


@dataclass(frozen=True)
class ResolvedSettingsDTO:
    """The settings that were actually used to provision a database.

    Serialised as flat JSON when a remote build answers, and rendered as
    tables for the build log.
    """

    connection: str
    driver: Optional[str] = None
    host: Optional[str] = None
    database: Optional[str] = None
    project_name: Optional[str] = None
    test_name: Optional[str] = None
    built_remotely: bool = False
    remote_build_url: Optional[str] = None
    snapshots_enabled: bool = False
    storage_dir: Optional[str] = None
    pre_migration_imports: list[str] = field(default_factory=list)
    migrations: Union[bool, str] = True
    is_seeding_allowed: bool = False
    seeders: list[str] = field(default_factory=list)
    using_scenarios: bool = False
    build_hash: Optional[str] = None
    snapshot_hash: Optional[str] = None
    scenario_hash: Optional[str] = None
    database_is_reusable: bool = False
    version: int = REMOTE_SHARE_VERSION

    @classmethod
    def build(
        cls,
        config: BuildConfiguration,
        hashes: Optional[HashTriplet],
        database: str,
        host: Optional[str],
        test_name: Optional[str] = None,
        built_remotely: bool = False,
    ) -> "ResolvedSettingsDTO":
        using_scenarios = config.scenarios and hashes is not None
        return cls(
            connection=config.connection,
            driver=config.driver,
            host=host,
            database=database,
            project_name=config.project_name,
            test_name=test_name,
            built_remotely=built_remotely,
            remote_build_url=config.remote_build_url if built_remotely else None,
            snapshots_enabled=config.snapshots_enabled,
            storage_dir=config.storage_dir,
            pre_migration_imports=list(config.pre_migration_imports),
            migrations=config.migrations,
            is_seeding_allowed=config.is_seeding_allowed,
            seeders=list(config.effective_seeders),
            using_scenarios=using_scenarios,
            build_hash=hashes.build_hash if using_scenarios else None,
            snapshot_hash=hashes.snapshot_hash if using_scenarios else None,
            scenario_hash=hashes.scenario_hash if using_scenarios else None,
            database_is_reusable=config.reuse_transaction,
        )

    def replace(self, **changes: Any) -> "ResolvedSettingsDTO":
        return dataclasses.replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)

    def build_payload(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, values: dict[str, Any]) -> "ResolvedSettingsDTO":
        names = {f.name for f in dataclasses.fields(cls)}
        return cls(**{k: v for k, v in values.items() if k in names})

    @classmethod
    def from_payload(cls, payload: Union[str, bytes, None]) -> "ResolvedSettingsDTO":
        """Rebuild from a remote response, rejecting other versions."""
        if not payload:
            raise RemoteShareException.could_not_read_resolved_settings()
        try:
            values = json.loads(payload)
        except ValueError:
            raise RemoteShareException.could_not_read_resolved_settings()
        if not isinstance(values, dict) or "connection" not in values:
            raise RemoteShareException.could_not_read_resolved_settings()
        if values.get("version") != REMOTE_SHARE_VERSION:
            raise RemoteShareException.version_mismatch(
                str(REMOTE_SHARE_VERSION), values.get("version")
            )
        return cls.from_dict(values)

    def render_build_settings(self) -> dict[str, str]:
        """Render the build settings for the log, skipping empty rows."""
        remote_extra = " (remote)" if self.built_remotely else ""

        storage_dir = (
            _escape(self.storage_dir) + remote_extra
            if self.snapshots_enabled and self.storage_dir
            else None
        )

        if isinstance(self.migrations, bool):
            migrations = ("Yes" if self.migrations else "No") + remote_extra
        else:
            migrations = f'"{self.migrations}"{remote_extra}'

        seeders = (
            _render_list(self.seeders, remote_extra) if self.is_seeding_allowed else "n/a"
        )
        imports_title = (
            "Pre-migration import:"
            if len(self.pre_migration_imports) == 1
            else "Pre-migration imports:"
        )
        seeders_title = (
            "Seeder:" if self.is_seeding_allowed and len(self.seeders) == 1 else "Seeders:"
        )

        rows: dict[str, Optional[str]] = {
            "Project name:": _escape(self.project_name) or "n/a",
            "Remote-build url:": _escape(self.remote_build_url),
            "Snapshots enabled?": "Yes" if self.snapshots_enabled else "No",
            "Snapshot storage dir:": storage_dir,
            imports_title: _render_list(self.pre_migration_imports, remote_extra),
            "Migrations:": migrations,
            seeders_title: seeders,
            "Is reusable?": " ",
            "- Using transactions:": (
                "Yes" if self.database_is_reusable else "No, it will be rebuilt for each test"
            ),
            "Using scenarios?": "Yes" if self.using_scenarios else "No",
            "- Build-hash:": _escape(self.build_hash),
            "- Snapshot-hash:": _escape(self.snapshot_hash),
            "- Scenario-hash:": _escape(self.scenario_hash),
        }
        return {k: v for k, v in rows.items() if v}

    def render_resolved_database_settings(self) -> dict[str, str]:
        rows = {
            "Connection:": _escape(self.connection),
            "Driver:": _escape(self.driver),
            "Host:": _escape(self.host),
            "Database:": _escape(self.database),
        }
        return {k: v for k, v in rows.items() if v}


def render_table(rows: dict[str, str]) -> str:
    """把键值对渲染为对齐的多行文本，便于写入日志"""
    if not rows:
        return ""
    width = max(len(k) for k in rows)
    lines = []
    for key, value in rows.items():
        parts = str(value).split("\n")
        lines.append(f"{key.ljust(width)} {parts[0]}")
        lines.extend(f"{' ' * width} {part}" for part in parts[1:])
    return "\n".join(lines)


def _escape(value: Optional[str]) -> Optional[str]:
    return f'"{value}"' if value else None


def _render_list(things: list[str], remote_extra: str) -> str:
    if not things:
        return "None"
    return "\n".join(f'"{thing}"{remote_extra}' for thing in things)
