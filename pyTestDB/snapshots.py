import datetime
import logging
import os
import shutil
import subprocess
import time
from pathlib import Path
from typing import TYPE_CHECKING, Iterable, Optional, Union

from .dto import BuildConfiguration, HashTriplet, SnapshotMetaInfo
from .exceptions import SnapshotIOError

if TYPE_CHECKING:
    from .adapters import DriverAdapter

logger = logging.getLogger(__name__)

# 快照标签
LABEL_MIGRATED = "migrated"
LABEL_SEEDED = "seeded"

EXTENSIONS = {"sqlite": "sqlite", "mysql": "sql", "mariadb": "sql", "postgresql": "sql"}


class SnapshotStore:
    """管理存储目录中的快照文件。

    文件名格式：`<前缀><驱动>.<快照哈希>.<标签>.<扩展名>`，
    有效性只通过文件名中的哈希判断，不需要连接数据库。
    """

    def __init__(self, config: BuildConfiguration, hashes: Optional[HashTriplet] = None):
        self.config = config
        self.hashes = hashes
        self.snapshot_dir = Path(config.storage_dir) / "snapshots"

    def filename(self, snapshot_hash: str, label: str) -> str:
        ext = EXTENSIONS.get(self.config.driver, "sql")
        return f"{self.config.snapshot_prefix}{self.config.driver}.{snapshot_hash}.{label}.{ext}"

    def snapshot_path(self, hashes: HashTriplet, label: str) -> Path:
        return self.snapshot_dir / self.filename(hashes.snapshot_hash, label)

    def parse_filename(self, filename: str) -> Optional[tuple[str, str, str]]:
        """解析文件名，返回 (驱动, 哈希, 标签)；不是快照文件时返回 None。"""
        prefix = self.config.snapshot_prefix
        if not filename.startswith(prefix) or filename.endswith(".tmp"):
            return None
        parts = filename[len(prefix):].split(".")
        if len(parts) != 4:
            return None
        driver, snapshot_hash, label, _ext = parts
        return driver, snapshot_hash, label

    def find_valid(self, hashes: HashTriplet, label: str) -> Optional[Path]:
        path = self.snapshot_path(hashes, label)
        return path if path.is_file() else None

    def list_snapshots(
        self,
        storage_dir: Union[str, Path, None] = None,
        valid_hashes: Optional[Iterable[str]] = None,
    ) -> list[SnapshotMetaInfo]:
        """扫描快照目录，为每个快照文件创建 SnapshotMetaInfo。"""
        snapshot_dir = (
            Path(storage_dir) / "snapshots" if storage_dir is not None else self.snapshot_dir
        )
        if valid_hashes is None:
            valid_hashes = [self.hashes.snapshot_hash] if self.hashes else []
        valid = set(valid_hashes)

        if not snapshot_dir.is_dir():
            return []

        snapshots = []
        for path in sorted(snapshot_dir.iterdir()):
            if not path.is_file():
                continue
            parsed = self.parse_filename(path.name)
            if parsed is None:
                continue
            _driver, snapshot_hash, label = parsed
            try:
                access_dt = datetime.datetime.fromtimestamp(path.stat().st_atime)
            except OSError:
                access_dt = None
            snapshots.append(
                SnapshotMetaInfo(
                    path=str(path),
                    filename=path.name,
                    access_dt=access_dt,
                    is_valid=snapshot_hash in valid,
                    snapshot_hash=snapshot_hash,
                    label=label,
                    sizer=self,
                    remover=self,
                )
            )
        return snapshots

    def size(self, name: str) -> Optional[int]:
        try:
            return Path(name).stat().st_size
        except OSError:
            return None

    def remove(self, meta: SnapshotMetaInfo) -> bool:
        Path(meta.path).unlink(missing_ok=True)
        stale = "" if meta.is_valid else " stale"
        logger.debug(f"Removed{stale} snapshot: \"{meta.path}\"")
        return True

    def _run(self, args: list[str], stdin_path: Optional[Path] = None) -> None:
        try:
            if stdin_path is not None:
                with open(stdin_path, "rb") as stdin:
                    subprocess.run(args, check=True, capture_output=True, stdin=stdin)
            else:
                subprocess.run(args, check=True, capture_output=True)
        except FileNotFoundError as e:
            raise SnapshotIOError(f"Could not run \"{args[0]}\": {e}")
        except subprocess.CalledProcessError as e:
            stderr = (e.stderr or b"").decode("utf-8", errors="replace").strip()
            raise SnapshotIOError(
                f"\"{args[0]}\" exited with status {e.returncode}: {stderr}"
            )

    def import_snapshot(
        self, path: Union[str, Path], adapter: "DriverAdapter", database: str
    ) -> None:
        """把快照导入到（已创建的）数据库中。"""
        path = Path(path)
        if not path.is_file():
            raise SnapshotIOError(f"Snapshot \"{path}\" does not exist", path=str(path))

        start = time.time()
        args = adapter.dialect.restore_args(database, str(path))
        try:
            if args is None:
                target = adapter.dialect.database_path(database)  # type: ignore[attr-defined]
                adapter.db.dispose(adapter.database_url(database))
                target.parent.mkdir(parents=True, exist_ok=True)
                shutil.copyfile(path, target)
            else:
                self._run(args, stdin_path=path)
        except OSError as e:
            raise SnapshotIOError(f"Could not import snapshot \"{path}\": {e}", path=str(path))
        except SnapshotIOError as e:
            raise SnapshotIOError(
                f"Could not import snapshot \"{path}\": {e.message}", path=str(path)
            )
        try:
            os.utime(path)  # 更新访问时间
        except OSError:
            pass
        logger.info(f"Imported snapshot \"{path.name}\" ({time.time() - start:.2f}s)")

    def export_snapshot(
        self, adapter: "DriverAdapter", database: str, path: Union[str, Path]
    ) -> None:
        """导出数据库到快照文件。先写临时文件再重命名，避免留下不完整的快照。"""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_name(path.name + ".tmp")

        start = time.time()
        args = adapter.dialect.dump_args(database, str(tmp_path))
        try:
            if args is None:
                source = adapter.dialect.database_path(database)  # type: ignore[attr-defined]
                adapter.db.dispose(adapter.database_url(database))
                shutil.copyfile(source, tmp_path)
            else:
                self._run(args)
            os.replace(tmp_path, path)
        except OSError as e:
            tmp_path.unlink(missing_ok=True)
            raise SnapshotIOError(f"Could not export snapshot \"{path}\": {e}", path=str(path))
        except SnapshotIOError as e:
            tmp_path.unlink(missing_ok=True)
            raise SnapshotIOError(
                f"Could not export snapshot \"{path}\": {e.message}", path=str(path)
            )
        logger.info(f"Exported snapshot \"{path.name}\" ({time.time() - start:.2f}s)")
