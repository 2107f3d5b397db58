import hashlib
import logging
from pathlib import Path
from typing import Iterable, Optional

from .dto import BuildConfiguration, HashTriplet
from .exceptions import HashingError
from .models import REUSE_TABLE_VERSION

logger = logging.getLogger(__name__)

# 哈希截断长度（十六进制字符数）
HASH_LENGTH = 16

# 读取缓冲区大小
CHUNK_SIZE = 1024 * 1024


def _update_from_file(digest, file_path: Path) -> None:
    """分块读取文件内容并更新摘要。"""
    with open(file_path, "rb", buffering=CHUNK_SIZE) as f:
        while True:
            chunk = f.read(CHUNK_SIZE)
            if not chunk:
                break
            digest.update(chunk)


def _collect_files(hash_path: Path) -> list[tuple[str, Path]]:
    """列出哈希路径下的所有文件，键为 `<根目录名>/<相对路径>`，与绝对路径无关。"""
    if hash_path.is_file():
        return [(hash_path.name, hash_path)]
    files = []
    for file in hash_path.rglob("*"):
        if file.is_file():
            key = f"{hash_path.name}/{file.relative_to(hash_path).as_posix()}"
            files.append((key, file))
    return files


def digest_paths(paths: Iterable[str], label: str = "hash-path") -> str:
    """计算一组文件/目录内容的摘要，结果与传入顺序无关。"""
    collected: list[tuple[str, Path]] = []
    for raw in paths:
        path = Path(raw)
        if not path.exists():
            raise HashingError(f"The {label} \"{raw}\" does not exist", path=raw)
        try:
            collected.extend(_collect_files(path))
        except OSError as e:
            raise HashingError(f"Could not read {label} \"{raw}\": {e}", path=raw)

    # 每个文件单独计算摘要，按 (键, 文件摘要) 排序，同名文件也不依赖传入顺序
    entries: list[tuple[str, str]] = []
    for key, file in collected:
        file_digest = hashlib.sha256()
        try:
            _update_from_file(file_digest, file)
        except OSError as e:
            raise HashingError(f"Could not read {label} file \"{file}\": {e}", path=str(file))
        entries.append((key, file_digest.hexdigest()))

    digest = hashlib.sha256()
    for key, file_hex in sorted(entries):
        digest.update(key.encode("utf-8"))
        digest.update(b"\0")
        digest.update(file_hex.encode("ascii"))
        digest.update(b"\0")
    return digest.hexdigest()


def _path_key(value):
    if isinstance(value, bool):
        return value
    return Path(value).name


def _combine(*parts: object) -> str:
    digest = hashlib.sha256()
    for part in parts:
        digest.update(repr(part).encode("utf-8"))
        digest.update(b"\0")
    return digest.hexdigest()[:HASH_LENGTH]


class ScenarioHasher:
    """根据哈希路径内容和构建配置计算哈希三元组。

    同一个配置对象只计算一次，结果缓存在实例上。
    """

    def __init__(self) -> None:
        self._cache: dict[BuildConfiguration, HashTriplet] = {}

    def compute_hashes(self, config: BuildConfiguration) -> HashTriplet:
        cached: Optional[HashTriplet] = self._cache.get(config)
        if cached is not None:
            return cached

        content_digest = digest_paths(config.hash_paths)
        imports_digest = digest_paths(
            config.pre_migration_imports, label="pre-migration import"
        )
        build_hash = _combine("build", content_digest, imports_digest, REUSE_TABLE_VERSION)

        # 快照只与数据库内容相关的配置有关
        snapshot_hash = _combine(
            "snapshot",
            build_hash,
            config.driver,
            _path_key(config.migrations),
            tuple(Path(p).name for p in config.pre_migration_imports),
            tuple(Path(s).name for s in config.effective_seeders),
        )

        scenario_hash = _combine(
            "scenario",
            snapshot_hash,
            config.project_name,
            config.connection,
            config.database_prefix,
            config.reuse_transaction,
        )

        hashes = HashTriplet(build_hash, snapshot_hash, scenario_hash)
        logger.debug(f"Hashes for connection \"{config.connection}\": {hashes}")
        self._cache[config] = hashes
        return hashes
