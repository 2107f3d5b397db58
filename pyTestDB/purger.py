import logging
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional, Sequence

from .builder import DatabaseBuilder
from .dto import human_size
from .metrics import metrics

logger = logging.getLogger(__name__)

RESOLVED_PREFIX = "resolved."
RESOLVED_SUFFIX = ".json"


class FirstTestFlag:
    """进程内只允许第一次 claim() 成功，用于保证清理只运行一次。"""

    def __init__(self):
        self._lock = threading.Lock()
        self._claimed = False

    def claim(self) -> bool:
        with self._lock:
            if self._claimed:
                return False
            self._claimed = True
            return True

    @property
    def claimed(self) -> bool:
        return self._claimed

    def reset(self):
        """重置标记（用于测试）"""
        with self._lock:
            self._claimed = False


@dataclass
class PurgeReport:
    databases_removed: int = 0
    snapshots_removed: int = 0
    resolved_removed: int = 0
    bytes_freed: int = 0
    failures: int = 0

    @property
    def total_removed(self) -> int:
        return self.databases_removed + self.snapshots_removed + self.resolved_removed


def parse_resolved_filename(filename: str) -> Optional[tuple[str, str]]:
    """`resolved.<连接>.<场景哈希>.json` -> (连接, 场景哈希)"""
    if not filename.startswith(RESOLVED_PREFIX) or not filename.endswith(RESOLVED_SUFFIX):
        return None
    stem = filename[len(RESOLVED_PREFIX):-len(RESOLVED_SUFFIX)]
    if "." not in stem:
        return None
    connection, scenario_hash = stem.rsplit(".", 1)
    return connection, scenario_hash


class StalePurger:
    """删除过期的测试数据库、快照和共享设置文件。"""

    def __init__(self, flag: FirstTestFlag, enabled: bool = True):
        self.flag = flag
        self.enabled = enabled

    def run(self, builders: Sequence[DatabaseBuilder]) -> Optional[PurgeReport]:
        if not self.flag.claim():
            return None
        if not self.enabled:
            logger.debug("Purging stale databases is disabled")
            return None

        local_builders = [b for b in builders if b.will_build_locally()]
        if not local_builders:
            logger.debug("No connection is built locally, nothing to purge")
            return None

        start = time.time()
        report = PurgeReport()
        for builder in builders:
            builder.ensure_hashes()

        self.purge_databases(local_builders, report)
        self.purge_snapshots(local_builders, builders, report)
        self.purge_resolved_settings(local_builders, builders, report)

        if report.total_removed or report.failures:
            logger.info(
                f"Purged {report.databases_removed} database(s), "
                f"{report.snapshots_removed} snapshot(s) and "
                f"{report.resolved_removed} settings file(s), "
                f"freed {human_size(report.bytes_freed)} "
                f"({report.failures} failure(s), {time.time() - start:.2f}s)"
            )
        return report

    def purge_databases(
        self, local_builders: Iterable[DatabaseBuilder], report: PurgeReport
    ) -> None:
        # 同一数据库服务器上的连接只扫描一次
        groups: dict[str, list[DatabaseBuilder]] = {}
        for builder in local_builders:
            groups.setdefault(builder.adapter.server_key, []).append(builder)

        for server_key, group in groups.items():
            valid_hashes = {b.hashes.build_hash for b in group if b.hashes}
            adapter = group[0].adapter
            try:
                database_metas = adapter.find_databases(None, group[0].hashes.build_hash)
            except Exception as e:
                logger.warning(f"Could not list databases on {server_key}: {e}")
                report.failures += 1
                metrics.inc_errors("purge")
                continue

            for meta in database_metas:
                meta.is_valid = meta.build_hash in valid_hashes
                if meta.is_valid:
                    continue
                try:
                    size = meta.size() or 0
                    if meta.purge_if_needed():
                        report.databases_removed += 1
                        report.bytes_freed += size
                        metrics.inc_purged("database")
                except Exception as e:
                    logger.warning(f"Could not remove database \"{meta.name}\": {e}")
                    report.failures += 1
                    metrics.inc_errors("purge")

    def purge_snapshots(
        self,
        local_builders: Iterable[DatabaseBuilder],
        builders: Iterable[DatabaseBuilder],
        report: PurgeReport,
    ) -> None:
        valid_hashes = {b.hashes.snapshot_hash for b in builders if b.hashes}
        stores = {}
        for builder in local_builders:
            key = (str(Path(builder.config.storage_dir).resolve()), builder.config.snapshot_prefix)
            stores.setdefault(key, builder.snapshot_store)

        for store in stores.values():
            for snapshot in store.list_snapshots(valid_hashes=valid_hashes):
                if snapshot.is_valid:
                    continue
                try:
                    size = snapshot.size() or 0
                    if snapshot.purge_if_needed():
                        report.snapshots_removed += 1
                        report.bytes_freed += size
                        metrics.inc_purged("snapshot")
                except Exception as e:
                    logger.warning(f"Could not remove snapshot \"{snapshot.path}\": {e}")
                    report.failures += 1
                    metrics.inc_errors("purge")

    def purge_resolved_settings(
        self,
        local_builders: Iterable[DatabaseBuilder],
        builders: Iterable[DatabaseBuilder],
        report: PurgeReport,
    ) -> None:
        valid_hashes = {b.hashes.scenario_hash for b in builders if b.hashes}
        storage_dirs = {Path(b.config.storage_dir).resolve() for b in local_builders}

        for storage_dir in storage_dirs:
            if not storage_dir.is_dir():
                continue
            for path in sorted(storage_dir.glob(f"{RESOLVED_PREFIX}*{RESOLVED_SUFFIX}")):
                parsed = parse_resolved_filename(path.name)
                if parsed is None or parsed[1] in valid_hashes:
                    continue
                try:
                    size = path.stat().st_size
                    path.unlink()
                except OSError as e:
                    logger.warning(f"Could not remove \"{path}\": {e}")
                    report.failures += 1
                    metrics.inc_errors("purge")
                    continue
                logger.debug(f"Removed stale settings file: \"{path}\"")
                report.resolved_removed += 1
                report.bytes_freed += size
                metrics.inc_purged("resolved")
