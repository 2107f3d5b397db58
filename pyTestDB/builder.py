import enum
import logging
import time
from pathlib import Path
from typing import Optional

from sqlalchemy.engine import Connection, Transaction

from .adapters import DriverAdapter
from .applier import SchemaApplier, create_schema_applier
from .database import DatabaseManager, db_manager
from .dto import BuildConfiguration, HashTriplet, ResolvedSettingsDTO, render_table
from .exceptions import (
    BuildFailed,
    ConfigurationError,
    HashingError,
    RemoteBuildTimeout,
    RemoteShareException,
    SnapshotIOError,
)
from .hasher import ScenarioHasher
from .metrics import metrics
from .remote import RemoteBuildClient
from .snapshots import LABEL_MIGRATED, LABEL_SEEDED, SnapshotStore

logger = logging.getLogger(__name__)


class BuildState(str, enum.Enum):
    CONFIGURED = "configured"
    HASHED = "hashed"
    REUSING = "reusing"
    IMPORTING = "importing"
    MIGRATING = "migrating"
    BUILT = "built"
    REUSE_TXN_OPEN = "reuse-transaction-open"
    EXECUTED = "executed"
    FINALIZED = "finalized"


class DatabaseBuilder:
    """为一个连接准备测试数据库：复用、导入快照、迁移，或委托远程构建。

    生命周期：
    - execute()：计算哈希并构建数据库
    - run_post_build_steps()：测试开始前打开复用事务
    - run_post_test_steps(is_last)：测试结束后回滚
    """

    def __init__(
        self,
        config: BuildConfiguration,
        test_name: Optional[str] = None,
        hasher: Optional[ScenarioHasher] = None,
        adapter: Optional[DriverAdapter] = None,
        snapshot_store: Optional[SnapshotStore] = None,
        applier: Optional[SchemaApplier] = None,
        remote_client: Optional[RemoteBuildClient] = None,
        db: Optional[DatabaseManager] = None,
    ):
        self.config = config
        self.test_name = test_name
        self.db = db or db_manager
        self.hasher = hasher or ScenarioHasher()
        self._adapter = adapter
        self._snapshot_store = snapshot_store
        self._applier = applier
        self._remote_client = remote_client

        self.state = BuildState.CONFIGURED
        self.hashes: Optional[HashTriplet] = None
        self.resolved_settings: Optional[ResolvedSettingsDTO] = None
        self.outcome: Optional[str] = None
        self.executed = False

        self.transaction_connection: Optional[Connection] = None
        self._transaction: Optional[Transaction] = None

    @property
    def adapter(self) -> DriverAdapter:
        if self._adapter is None:
            self._adapter = DriverAdapter(self.config, self.db)
        return self._adapter

    @property
    def snapshot_store(self) -> SnapshotStore:
        if self._snapshot_store is None:
            self._snapshot_store = SnapshotStore(self.config, self.hashes)
        return self._snapshot_store

    @property
    def applier(self) -> SchemaApplier:
        if self._applier is None:
            self._applier = create_schema_applier(self.config, self.db)
        return self._applier

    @property
    def remote_client(self) -> RemoteBuildClient:
        if self._remote_client is None:
            self._remote_client = RemoteBuildClient(
                self.config.remote_build_url or "", self.config.remote_build_timeout
            )
        return self._remote_client

    def has_executed(self) -> bool:
        return self.executed

    def should_build_remotely(self) -> bool:
        return bool(self.config.remote_build_url)

    def will_build_locally(self) -> bool:
        return not self.should_build_remotely() or self.config.remote_build_fallback_local

    def get_connection(self) -> str:
        return self.config.connection

    def get_resolved_database(self) -> Optional[str]:
        return self.resolved_settings.database if self.resolved_settings else None

    def ensure_hashes(self) -> HashTriplet:
        """计算哈希三元组（每个构建器只计算一次）。HashingError 直接向上抛出。"""
        if self.hashes is None:
            self.hashes = self.hasher.compute_hashes(self.config)
            self.state = BuildState.HASHED
        return self.hashes

    def pick_database_name(self) -> str:
        hashes = self.ensure_hashes()
        name = f"{self.config.database_prefix}{self.adapter.original_database}"
        if self.config.scenarios:
            name += f"_{hashes.scenario_hash}"
        return name

    def _error_context(self) -> dict:
        return {
            "connection": self.config.connection,
            "driver": self.config.driver,
            "hashes": self.hashes,
        }

    def execute(self) -> ResolvedSettingsDTO:
        """构建（或复用）数据库，返回最终使用的设置。"""
        if self.executed and self.resolved_settings is not None:
            return self.resolved_settings

        start = time.time()
        hashes = self.ensure_hashes()

        try:
            if self.should_build_remotely():
                resolved = self._build_remotely_or_fallback(hashes)
            else:
                resolved = self._build_locally(hashes)
        except Exception:
            metrics.inc_build(self.config.connection, "failed")
            raise

        self.resolved_settings = resolved
        self.state = BuildState.BUILT
        self.executed = True

        duration = time.time() - start
        metrics.inc_build(self.config.connection, self.outcome or "unknown")
        metrics.observe_build(self.config.connection, self.outcome or "unknown", duration)
        self._log_settings(resolved, duration)
        self._share_resolved_settings(resolved)
        return resolved

    def _build_remotely_or_fallback(self, hashes: HashTriplet) -> ResolvedSettingsDTO:
        if self.config.driver == "sqlite":
            raise ConfigurationError(
                f"Connection \"{self.config.connection}\" uses sqlite, "
                "which cannot be built remotely"
            )
        try:
            resolved = self.remote_client.build(self.config, hashes, self.test_name)
        except (RemoteBuildTimeout, RemoteShareException) as e:
            if not self.config.remote_build_fallback_local:
                raise
            logger.warning(f"Remote build failed, building locally instead: {e.message}")
            return self._build_locally(hashes)
        self.outcome = "remote"
        return resolved

    def _build_locally(self, hashes: HashTriplet) -> ResolvedSettingsDTO:
        database = self.pick_database_name()
        try:
            if self.config.reuse_transaction and self._can_reuse(database, hashes):
                self.state = BuildState.REUSING
                self.outcome = "reused"
                self.adapter.db.touch_reuse_meta(self.adapter.database_url(database))
                logger.info(f"Reusing the existing database \"{database}\"")
            else:
                self._rebuild(database, hashes)
        except (HashingError, ConfigurationError):
            raise
        except BuildFailed as e:
            if e.connection:
                raise
            raise BuildFailed(e.message, **self._error_context()) from e
        except Exception as e:
            raise BuildFailed(
                f"Could not build database \"{database}\": {type(e).__name__}: {e}",
                **self._error_context(),
            ) from e

        return ResolvedSettingsDTO.build(
            self.config, hashes, database, self.adapter.host, self.test_name
        )

    def _can_reuse(self, database: str, hashes: HashTriplet) -> bool:
        """数据库存在、哈希一致且没有被测试留下脏数据时才能复用。"""
        try:
            reuse = self.adapter.read_reuse_meta(database)
        except Exception as e:
            logger.debug(f"Could not read the reuse table of \"{database}\": {e}")
            return False
        if reuse is None:
            return False

        meta = self.adapter.build_database_meta_info(
            database, reuse, self.adapter.original_database, hashes.build_hash
        )
        if meta is None or not meta.is_valid:
            logger.debug(f"Database \"{database}\" is stale, it will be rebuilt")
            return False
        if reuse.scenario_hash != hashes.scenario_hash:
            return False
        if reuse.inside_transaction:
            logger.warning(
                f"Database \"{database}\" was left dirty by a committed transaction, "
                "it will be rebuilt"
            )
            return False
        return True

    def _rebuild(self, database: str, hashes: HashTriplet) -> None:
        start = time.time()
        self.adapter.drop_database(database)
        self.adapter.create_database(database)
        db_url = self.adapter.database_url(database)

        if not self._import_snapshots(database, hashes):
            self.state = BuildState.MIGRATING
            self.outcome = "migrated"
            self._run_pre_migration_imports(database)
            self.applier.migrate(db_url, self.config.migrations)
            seeders = self.config.effective_seeders
            if self.config.snapshot_after_migrations:
                self._export_snapshot(database, hashes, LABEL_MIGRATED)
            self.applier.seed(db_url, seeders)
            if self.config.snapshot_after_seeders and (
                seeders or not self.config.snapshot_after_migrations
            ):
                self._export_snapshot(database, hashes, LABEL_SEEDED)

        # 最后一步：写入复用元数据
        self.adapter.write_reuse_meta(database, hashes)
        logger.info(f"Built database \"{database}\" ({time.time() - start:.2f}s)")

    def _import_snapshots(self, database: str, hashes: HashTriplet) -> bool:
        """尝试用快照代替迁移。快照导入失败时回退到迁移。"""
        if not self.config.snapshots_enabled:
            return False
        store = self.snapshot_store
        db_url = self.adapter.database_url(database)

        seeded = (
            store.find_valid(hashes, LABEL_SEEDED)
            if self.config.snapshot_after_seeders
            else None
        )
        if seeded is not None and self._try_import(seeded, database):
            self.state = BuildState.IMPORTING
            self.outcome = "imported"
            return True

        migrated = (
            store.find_valid(hashes, LABEL_MIGRATED)
            if self.config.snapshot_after_migrations
            else None
        )
        if migrated is not None and self._try_import(migrated, database):
            self.state = BuildState.IMPORTING
            self.outcome = "imported"
            seeders = self.config.effective_seeders
            self.applier.seed(db_url, seeders)
            if self.config.snapshot_after_seeders and seeders:
                self._export_snapshot(database, hashes, LABEL_SEEDED)
            return True

        return False

    def _try_import(self, path: Path, database: str) -> bool:
        try:
            self.snapshot_store.import_snapshot(path, self.adapter, database)
        except SnapshotIOError as e:
            metrics.inc_errors("snapshot_import")
            logger.warning(f"{e.message}; the database will be migrated instead")
            self.adapter.drop_database(database)
            self.adapter.create_database(database)
            return False
        metrics.inc_snapshot(self.config.connection, "import")
        return True

    def _export_snapshot(self, database: str, hashes: HashTriplet, label: str) -> None:
        """导出快照失败不影响当前构建，只记录错误。"""
        path = self.snapshot_store.snapshot_path(hashes, label)
        try:
            self.snapshot_store.export_snapshot(self.adapter, database, path)
        except SnapshotIOError as e:
            metrics.inc_errors("snapshot_export")
            logger.error(e.message)
            return
        metrics.inc_snapshot(self.config.connection, "export")

    def _run_pre_migration_imports(self, database: str) -> None:
        for path in self.config.pre_migration_imports:
            try:
                self.snapshot_store.import_snapshot(path, self.adapter, database)
            except SnapshotIOError as e:
                raise BuildFailed(
                    f"Pre-migration import failed: {e.message}", **self._error_context()
                ) from e

    def run_post_build_steps(self) -> None:
        """测试开始前：打开包裹测试的复用事务。"""
        if not self.executed or not self.config.reuse_transaction:
            return
        database = self.get_resolved_database()
        if not database:
            return

        engine = self.db.engine_for(self.adapter.database_url(database))
        conn = engine.connect()
        transaction = conn.begin()
        self.db.mark_inside_transaction(conn)
        self.transaction_connection = conn
        self._transaction = transaction
        self.state = BuildState.REUSE_TXN_OPEN
        logger.debug(f"Started the reuse transaction on \"{database}\"")

    def run_post_test_steps(self, is_last: bool) -> None:
        """测试结束后：回滚复用事务；最后一个构建器负责收尾。"""
        if self._transaction is not None:
            if self._transaction.is_active:
                self._transaction.rollback()
            else:
                logger.warning(
                    f"The test committed the reuse transaction on "
                    f"\"{self.get_resolved_database()}\", it will be rebuilt next time"
                )
            if self.transaction_connection is not None:
                self.transaction_connection.close()
            self._transaction = None
            self.transaction_connection = None
        self.state = BuildState.EXECUTED

        if is_last:
            database = self.get_resolved_database()
            if database and not self.resolved_settings.built_remotely:
                self.db.dispose(self.adapter.database_url(database))
            self.state = BuildState.FINALIZED
            logger.debug(
                f"Finished with connection \"{self.config.connection}\" "
                f"-> \"{self.get_resolved_database()}\""
            )

    def _log_settings(self, resolved: ResolvedSettingsDTO, duration: float) -> None:
        logger.info(
            f"Database for connection \"{self.config.connection}\" ready "
            f"({self.outcome}, {duration:.2f}s)"
        )
        logger.debug("Build settings:\n" + render_table(resolved.render_build_settings()))
        logger.debug(
            "Resolved database:\n"
            + render_table(resolved.render_resolved_database_settings())
        )

    def _share_resolved_settings(self, resolved: ResolvedSettingsDTO) -> None:
        """把最终设置写入存储目录，供其他进程读取。"""
        if self.hashes is None:
            return
        path = resolved_settings_path(
            self.config.storage_dir, self.config.connection, self.hashes.scenario_hash
        )
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(resolved.build_payload(), encoding="utf-8")
        except OSError as e:
            logger.warning(f"Could not write \"{path}\": {e}")


def resolved_settings_path(storage_dir: str, connection: str, scenario_hash: str) -> Path:
    return Path(storage_dir) / f"resolved.{connection}.{scenario_hash}.json"
