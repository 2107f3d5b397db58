from typing import Any

from dynaconf import Dynaconf

from .adapters import driver_for_url
from .dto import BuildConfiguration
from .exceptions import ConfigurationError

settings = Dynaconf(
    envvar_prefix="PYTESTDB",
    settings_files=["settings.toml", ".secrets.toml"],
)

# `envvar_prefix` = export envvars with `export PYTESTDB_FOO=bar`.
# `settings_files` = Load these files in the order.

# 设置项 -> BuildConfiguration 字段
SETTING_FIELDS = {
    "DATABASE_PREFIX": "database_prefix",
    "SNAPSHOT_PREFIX": "snapshot_prefix",
    "MIGRATIONS": "migrations",
    "IS_SEEDING_ALLOWED": "is_seeding_allowed",
    "REUSE_TRANSACTION": "reuse_transaction",
    "SCENARIOS": "scenarios",
    "SNAPSHOT_AFTER_MIGRATIONS": "snapshot_after_migrations",
    "SNAPSHOT_AFTER_SEEDERS": "snapshot_after_seeders",
    "REMOTE_BUILD_URL": "remote_build_url",
    "REMOTE_BUILD_TIMEOUT": "remote_build_timeout",
    "REMOTE_BUILD_FALLBACK_LOCAL": "remote_build_fallback_local",
    "SCHEMA_APPLIER": "schema_applier",
    "MIGRATE_COMMAND": "migrate_command",
    "SEED_COMMAND": "seed_command",
    "MYSQL_CLIENT": "mysql_client",
    "MYSQLDUMP": "mysqldump",
    "PSQL": "psql",
    "PG_DUMP": "pg_dump",
}

LIST_SETTING_FIELDS = {
    "HASH_PATHS": "hash_paths",
    "SEEDERS": "seeders",
}


def _as_tuple(value: Any) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,)
    return tuple(str(v) for v in value)


def _connection_table(source) -> dict[str, Any]:
    connections = source.get("CONNECTIONS") or {}
    return {str(name): value for name, value in dict(connections).items()}


def _pre_migration_imports(value: Any, driver: str) -> tuple[str, ...]:
    """预迁移导入按驱动配置：`{sqlite = [...], mysql = [...]}`，也接受一个列表。"""
    if not value:
        return ()
    if isinstance(value, (list, tuple, str)):
        return _as_tuple(value)
    per_driver = {str(k).lower(): v for k, v in dict(value).items()}
    return _as_tuple(per_driver.get(driver))


def build_configuration(source, connection: str) -> BuildConfiguration:
    """为一个连接创建 BuildConfiguration。

    连接可以写成一个 URL，也可以写成带 `url` 的表，表中的其他键覆盖全局设置。
    """
    connections = _connection_table(source)
    if connection not in connections:
        raise ConfigurationError(f"Connection \"{connection}\" is not configured")

    entry = connections[connection]
    overrides: dict[str, Any] = {}
    if isinstance(entry, str):
        url = entry
    else:
        overrides = {str(k).upper(): v for k, v in dict(entry).items()}
        url = overrides.pop("URL", None)
    if not url:
        raise ConfigurationError(f"Connection \"{connection}\" has no database url")

    def lookup(key: str, default: Any = None) -> Any:
        if key in overrides:
            return overrides[key]
        return source.get(key, default)

    driver = driver_for_url(url)
    values: dict[str, Any] = {
        "project_name": lookup("PROJECT_NAME", "pytestdb"),
        "connection": connection,
        "driver": driver,
        "database_url": url,
        "storage_dir": str(lookup("STORAGE_DIR", ".pytestdb")),
        "pre_migration_imports": _pre_migration_imports(
            lookup("PRE_MIGRATION_IMPORTS"), driver
        ),
    }
    for key, name in SETTING_FIELDS.items():
        value = lookup(key)
        if value is not None:
            values[name] = value
    for key, name in LIST_SETTING_FIELDS.items():
        value = lookup(key)
        if value is not None:
            values[name] = _as_tuple(value)

    if "remote_build_timeout" in values:
        values["remote_build_timeout"] = float(values["remote_build_timeout"])
    if not values.get("remote_build_url"):
        values["remote_build_url"] = None
    return BuildConfiguration(**values)


def load_build_configurations(source=None) -> list[BuildConfiguration]:
    """为所有已配置的连接创建 BuildConfiguration。"""
    source = source if source is not None else settings
    return [build_configuration(source, name) for name in _connection_table(source)]


def validate_settings(source=None):
    """验证关键配置项，提供有用的错误信息。"""
    source = source if source is not None else settings
    warnings = []

    if not source.get("PROJECT_NAME"):
        warnings.append("PROJECT_NAME 未设置，将使用 'pytestdb'")

    connections = _connection_table(source)
    if not connections:
        warnings.append("CONNECTIONS 未设置，没有需要构建的数据库")

    if not source.get("HASH_PATHS"):
        warnings.append("HASH_PATHS 未设置，修改迁移文件后数据库不会被重建")

    applier = source.get("SCHEMA_APPLIER", "sql")
    if applier not in ("sql", "command"):
        warnings.append(f"SCHEMA_APPLIER 只能是 'sql' 或 'command'，当前为 '{applier}'")
    elif applier == "command" and not source.get("MIGRATE_COMMAND"):
        warnings.append("SCHEMA_APPLIER 为 'command' 时需要设置 MIGRATE_COMMAND")

    remote_url = source.get("REMOTE_BUILD_URL")
    if remote_url:
        for name, entry in connections.items():
            if isinstance(entry, str):
                url = entry
            else:
                url = {str(k).lower(): v for k, v in dict(entry).items()}.get("url", "")
            if str(url).startswith("sqlite"):
                warnings.append(f"连接 '{name}' 使用 sqlite，无法远程构建")

    timeout = source.get("REMOTE_BUILD_TIMEOUT", 120)
    try:
        if float(timeout) <= 0:
            warnings.append("REMOTE_BUILD_TIMEOUT 应该为正数")
    except (TypeError, ValueError):
        warnings.append("REMOTE_BUILD_TIMEOUT 应该为数字")

    return warnings
