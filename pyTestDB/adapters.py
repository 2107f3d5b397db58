"""Per-engine database adapters.

`DriverAdapter` holds the control flow shared by every engine (enumerate
databases, read their reuse table, classify validity, drop, measure).
The engine dialects only supply SQL, catalog queries and dump/restore
commands, and are picked from `DIALECTS` by driver name.
"""

import logging
import time
from decimal import Decimal
from pathlib import Path
from typing import Any, Optional, Protocol

from sqlalchemy import text
from sqlalchemy.engine import URL, make_url

from .database import DatabaseManager, db_manager
from .dto import BuildConfiguration, DatabaseMetaInfo, HashTriplet, ReuseMetaDTO
from .exceptions import ConfigurationError
from .models import REUSE_TABLE_VERSION

logger = logging.getLogger(__name__)


def _as_int(value: Any) -> Optional[int]:
    if isinstance(value, Decimal) and value == value.to_integral_value():
        value = int(value)
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return value


class EngineDialect(Protocol):
    name: str
    snapshot_extension: str

    def server_url(self) -> str: ...

    def database_url(self, database: str) -> str: ...

    def list_databases(self) -> list[str]: ...

    def create_database(self, database: str) -> None: ...

    def drop_database(self, database: str) -> None: ...

    def size(self, database: str) -> Optional[int]: ...

    def dump_args(self, database: str, path: str) -> Optional[list[str]]: ...

    def restore_args(self, database: str, path: str) -> Optional[list[str]]: ...


class SQLiteDialect:
    """SQLite 数据库是存储目录下 databases/ 中的文件。"""

    name = "sqlite"
    snapshot_extension = "sqlite"

    def __init__(self, adapter: "DriverAdapter") -> None:
        self.adapter = adapter
        self.database_dir = Path(adapter.config.storage_dir) / "databases"

    def database_path(self, database: str) -> Path:
        return self.database_dir / f"{database}.sqlite"

    def server_url(self) -> str:
        return "sqlite://"

    def database_url(self, database: str) -> str:
        return f"sqlite:///{self.database_path(database).as_posix()}"

    def list_databases(self) -> list[str]:
        if not self.database_dir.is_dir():
            return []
        return sorted(p.stem for p in self.database_dir.glob("*.sqlite"))

    def create_database(self, database: str) -> None:
        self.database_dir.mkdir(parents=True, exist_ok=True)
        self.database_path(database).touch()

    def drop_database(self, database: str) -> None:
        for suffix in ("", "-journal", "-wal", "-shm"):
            Path(f"{self.database_path(database)}{suffix}").unlink(missing_ok=True)

    def size(self, database: str) -> Optional[int]:
        path = self.database_path(database)
        return path.stat().st_size if path.exists() else None

    def dump_args(self, database: str, path: str) -> Optional[list[str]]:
        return None  # 直接复制文件

    def restore_args(self, database: str, path: str) -> Optional[list[str]]:
        return None


class MySQLDialect:
    name = "mysql"
    snapshot_extension = "sql"

    def __init__(self, adapter: "DriverAdapter") -> None:
        self.adapter = adapter

    def server_url(self) -> str:
        return self.adapter.url.set(database=None).render_as_string(hide_password=False)

    def database_url(self, database: str) -> str:
        return self.adapter.url.set(database=database).render_as_string(hide_password=False)

    def _quote(self, database: str) -> str:
        engine = self.adapter.db.engine_for(self.server_url())
        return engine.dialect.identifier_preparer.quote_identifier(database)

    def list_databases(self) -> list[str]:
        return self.adapter.db.column(self.server_url(), "SHOW DATABASES")

    def create_database(self, database: str) -> None:
        with self.adapter.db.autocommit(self.server_url()) as conn:
            conn.execute(
                text(
                    f"CREATE DATABASE IF NOT EXISTS {self._quote(database)} "
                    "CHARACTER SET utf8mb4 COLLATE utf8mb4_unicode_ci"
                )
            )

    def drop_database(self, database: str) -> None:
        with self.adapter.db.autocommit(self.server_url()) as conn:
            conn.execute(text(f"DROP DATABASE IF EXISTS {self._quote(database)}"))

    def size(self, database: str) -> Optional[int]:
        return _as_int(
            self.adapter.db.scalar(
                self.server_url(),
                "SELECT SUM(data_length + index_length) FROM information_schema.TABLES "
                "WHERE table_schema = :database",
                {"database": database},
            )
        )

    def _client_args(self, executable: str) -> list[str]:
        url = self.adapter.url
        args = [executable, f"--host={url.host or 'localhost'}", f"--port={url.port or 3306}"]
        if url.username:
            args.append(f"--user={url.username}")
        if url.password:
            args.append(f"--password={url.password}")
        return args

    def dump_args(self, database: str, path: str) -> Optional[list[str]]:
        return self._client_args(self.adapter.config.mysqldump) + [
            "--add-drop-table",
            "--skip-lock-tables",
            f"--result-file={path}",
            database,
        ]

    def restore_args(self, database: str, path: str) -> Optional[list[str]]:
        # 内容通过 stdin 传入
        return self._client_args(self.adapter.config.mysql_client) + [database]


class PostgreSQLDialect:
    name = "postgresql"
    snapshot_extension = "sql"

    def __init__(self, adapter: "DriverAdapter") -> None:
        self.adapter = adapter

    def server_url(self) -> str:
        return self.adapter.url.set(database="postgres").render_as_string(
            hide_password=False
        )

    def database_url(self, database: str) -> str:
        return self.adapter.url.set(database=database).render_as_string(hide_password=False)

    def _libpq_url(self, database: str) -> str:
        url = self.adapter.url.set(drivername="postgresql", database=database)
        return url.render_as_string(hide_password=False)

    def _quote(self, database: str) -> str:
        engine = self.adapter.db.engine_for(self.server_url())
        return engine.dialect.identifier_preparer.quote_identifier(database)

    def list_databases(self) -> list[str]:
        return self.adapter.db.column(
            self.server_url(),
            "SELECT datname FROM pg_database WHERE datistemplate = false",
        )

    def create_database(self, database: str) -> None:
        with self.adapter.db.autocommit(self.server_url()) as conn:
            conn.execute(text(f"CREATE DATABASE {self._quote(database)}"))

    def drop_database(self, database: str) -> None:
        with self.adapter.db.autocommit(self.server_url()) as conn:
            conn.execute(text(f"DROP DATABASE IF EXISTS {self._quote(database)}"))

    def size(self, database: str) -> Optional[int]:
        return _as_int(
            self.adapter.db.scalar(
                self.server_url(),
                "SELECT pg_database_size(:database)",
                {"database": database},
            )
        )

    def dump_args(self, database: str, path: str) -> Optional[list[str]]:
        return [
            self.adapter.config.pg_dump,
            f"--dbname={self._libpq_url(database)}",
            f"--file={path}",
            "--no-owner",
        ]

    def restore_args(self, database: str, path: str) -> Optional[list[str]]:
        return [
            self.adapter.config.psql,
            f"--dbname={self._libpq_url(database)}",
            f"--file={path}",
            "--quiet",
            "--set=ON_ERROR_STOP=1",
        ]


DIALECTS = {
    "sqlite": SQLiteDialect,
    "mysql": MySQLDialect,
    "mariadb": MySQLDialect,
    "postgresql": PostgreSQLDialect,
}


def driver_for_url(database_url: str) -> str:
    """从 SQLAlchemy URL 推断驱动名称（sqlite / mysql / postgresql）。"""
    return make_url(database_url).get_backend_name()


class DriverAdapter:
    """Find, measure and remove the databases built for one connection."""

    def __init__(
        self, config: BuildConfiguration, db: Optional[DatabaseManager] = None
    ) -> None:
        self.config = config
        self.db = db or db_manager
        self.url: URL = make_url(config.database_url)
        self.driver = config.driver
        dialect_cls = DIALECTS.get(self.driver)
        if dialect_cls is None:
            raise ConfigurationError(
                f"Database driver \"{self.driver}\" is not supported "
                f"(connection \"{config.connection}\")"
            )
        self.dialect: EngineDialect = dialect_cls(self)

    @property
    def original_database(self) -> str:
        database = self.url.database or ""
        if self.driver == "sqlite":
            return Path(database).stem or "database"
        return database

    @property
    def host(self) -> Optional[str]:
        return self.url.host

    @property
    def server_key(self) -> str:
        """同一数据库服务器上的适配器共享这个键。"""
        if self.driver == "sqlite":
            return f"sqlite:{Path(self.config.storage_dir).resolve().as_posix()}"
        return self.dialect.server_url()

    def database_url(self, database: str) -> str:
        return self.dialect.database_url(database)

    def find_databases(
        self, orig_db_name: Optional[str], build_hash: Optional[str]
    ) -> list[DatabaseMetaInfo]:
        """Look for databases and build DatabaseMetaInfo objects for them.

        Only databases with a readable reuse table that belong to this project
        (and to `orig_db_name` when given) are returned.
        """
        database_meta_infos = []
        for database in self.dialect.list_databases():
            url = self.database_url(database)
            # 只为读取复用表而创建的引擎读完就关闭，不保留到其他数据库的空闲连接
            cached = url in self.db.engines
            try:
                reuse = self.db.read_reuse_meta(url)
            except Exception as e:
                logger.debug(f"Skipping database \"{database}\": {type(e).__name__}: {e}")
                continue
            finally:
                if not cached:
                    self.db.dispose(url)
            meta = self.build_database_meta_info(database, reuse, orig_db_name, build_hash)
            if meta is not None:
                database_meta_infos.append(meta)
        return database_meta_infos

    def build_database_meta_info(
        self,
        database: str,
        reuse: Optional[ReuseMetaDTO],
        orig_db_name: Optional[str],
        build_hash: Optional[str],
    ) -> Optional[DatabaseMetaInfo]:
        if reuse is None:
            return None
        if reuse.project_name != self.config.project_name:
            return None
        if orig_db_name is not None and reuse.original_database != orig_db_name:
            return None

        is_valid = (
            reuse.reuse_table_version == REUSE_TABLE_VERSION
            and build_hash is not None
            and reuse.build_hash == build_hash
        )
        return DatabaseMetaInfo(
            name=database,
            connection=self.config.connection,
            driver=self.driver,
            is_valid=is_valid,
            build_hash=reuse.build_hash,
            sizer=self,
            remover=self,
            project_name=reuse.project_name,
            original_database=reuse.original_database,
            last_used=reuse.last_used,
        )

    def read_reuse_meta(self, database: str) -> Optional[ReuseMetaDTO]:
        if database not in self.dialect.list_databases():
            return None
        return self.db.read_reuse_meta(self.database_url(database))

    def write_reuse_meta(self, database: str, hashes: HashTriplet) -> None:
        self.db.write_reuse_meta(
            self.database_url(database),
            project_name=self.config.project_name,
            connection=self.config.connection,
            original_database=self.original_database,
            hashes=hashes,
        )

    def create_database(self, database: str) -> None:
        self.dialect.create_database(database)

    def drop_database(self, database: str) -> None:
        """删除数据库，数据库不存在时不报错。"""
        self.db.dispose(self.database_url(database))
        self.dialect.drop_database(database)

    def remove_database(self, meta: DatabaseMetaInfo) -> bool:
        start = time.time()
        self.drop_database(meta.name)
        stale = "" if meta.is_valid else " stale"
        logger.debug(
            f"Removed{stale} {meta.driver} database: \"{meta.name}\" "
            f"({(time.time() - start) * 1000:.0f}ms)"
        )
        return True

    def remove(self, meta: DatabaseMetaInfo) -> bool:
        return self.remove_database(meta)

    def size(self, database: str) -> Optional[int]:
        """数据库大小（字节），查询失败时返回 None。"""
        try:
            return self.dialect.size(database)
        except Exception as e:
            logger.debug(f"Could not size database \"{database}\": {e}")
            return None
