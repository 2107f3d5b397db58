import shutil

import pytest

from pyTestDB.exceptions import HashingError
from pyTestDB.hasher import HASH_LENGTH, ScenarioHasher, digest_paths


class TestDigestPaths:
    """测试哈希路径摘要"""

    @pytest.mark.unit
    def test_order_independent(self, workspace):
        """传入顺序不影响结果"""
        a = digest_paths([str(workspace["migrations"]), str(workspace["seeds"])])
        b = digest_paths([str(workspace["seeds"]), str(workspace["migrations"])])
        assert a == b

    @pytest.mark.unit
    def test_order_independent_with_same_names(self, temp_dir):
        """不同目录下的同名文件和同名目录，顺序也不影响结果"""
        for parent, content in (("a", "CREATE TABLE a (id INT);"), ("b", "CREATE TABLE b (id INT);")):
            (temp_dir / parent / "migrations").mkdir(parents=True)
            (temp_dir / parent / "schema.sql").write_text(content)
            (temp_dir / parent / "migrations" / "001.sql").write_text(content)

        files = [str(temp_dir / "a" / "schema.sql"), str(temp_dir / "b" / "schema.sql")]
        assert digest_paths(files) == digest_paths(list(reversed(files)))

        dirs = [str(temp_dir / "a" / "migrations"), str(temp_dir / "b" / "migrations")]
        assert digest_paths(dirs) == digest_paths(list(reversed(dirs)))

    @pytest.mark.unit
    def test_content_change(self, workspace):
        """文件内容变化时摘要变化"""
        before = digest_paths([str(workspace["migrations"])])
        (workspace["migrations"] / "001_create_users.sql").write_text("CREATE TABLE x (id INT);")
        after = digest_paths([str(workspace["migrations"])])
        assert before != after

    @pytest.mark.unit
    def test_new_file_changes_digest(self, workspace):
        """新增文件时摘要变化"""
        before = digest_paths([str(workspace["migrations"])])
        (workspace["migrations"] / "003_more.sql").write_text("")
        assert digest_paths([str(workspace["migrations"])]) != before

    @pytest.mark.unit
    def test_independent_of_location(self, workspace, temp_dir):
        """同样的内容放在不同位置，摘要相同"""
        copy = temp_dir / "elsewhere" / "migrations"
        shutil.copytree(workspace["migrations"], copy)
        assert digest_paths([str(copy)]) == digest_paths([str(workspace["migrations"])])

    @pytest.mark.unit
    def test_single_file(self, workspace):
        """哈希路径可以是单个文件"""
        digest = digest_paths([str(workspace["seed_users"])])
        assert len(digest) == 64

    @pytest.mark.unit
    def test_missing_path(self, temp_dir):
        """路径不存在时抛出 HashingError"""
        with pytest.raises(HashingError) as exc_info:
            digest_paths([str(temp_dir / "nope")])
        assert exc_info.value.path == str(temp_dir / "nope")
        assert exc_info.value.code == "HASHING_ERROR"


class TestScenarioHasher:
    """测试哈希三元组"""

    @pytest.mark.unit
    def test_deterministic(self, sqlite_config):
        """相同输入得到相同的三元组"""
        assert ScenarioHasher().compute_hashes(sqlite_config) == ScenarioHasher().compute_hashes(
            sqlite_config
        )

    @pytest.mark.unit
    def test_hash_length(self, hasher, sqlite_config):
        hashes = hasher.compute_hashes(sqlite_config)
        for value in (hashes.build_hash, hashes.snapshot_hash, hashes.scenario_hash):
            assert len(value) == HASH_LENGTH
            int(value, 16)

    @pytest.mark.unit
    def test_memoised(self, hasher, sqlite_config, workspace):
        """同一配置只计算一次"""
        first = hasher.compute_hashes(sqlite_config)
        (workspace["seed_users"]).write_text("changed")
        assert hasher.compute_hashes(sqlite_config) is first

    @pytest.mark.unit
    def test_hash_path_order(self, hasher, sqlite_config):
        reordered = sqlite_config.replace(hash_paths=tuple(reversed(sqlite_config.hash_paths)))
        assert hasher.compute_hashes(reordered) == hasher.compute_hashes(sqlite_config)

    @pytest.mark.unit
    def test_content_change_changes_all(self, sqlite_config, workspace):
        """内容变化时三个哈希都变化"""
        before = ScenarioHasher().compute_hashes(sqlite_config)
        workspace["seed_users"].write_text("INSERT INTO users (name) VALUES ('carol');")
        after = ScenarioHasher().compute_hashes(sqlite_config)
        assert before.build_hash != after.build_hash
        assert before.snapshot_hash != after.snapshot_hash
        assert before.scenario_hash != after.scenario_hash

    @pytest.mark.unit
    def test_seeders_change_snapshot_hash_only(self, hasher, sqlite_config, workspace):
        """种子列表变化只影响快照哈希和场景哈希"""
        more_seeders = sqlite_config.replace(
            seeders=(str(workspace["seed_users"]), str(workspace["seed_posts"]))
        )
        a = hasher.compute_hashes(sqlite_config)
        b = hasher.compute_hashes(more_seeders)
        assert a.build_hash == b.build_hash
        assert a.snapshot_hash != b.snapshot_hash
        assert a.scenario_hash != b.scenario_hash

    @pytest.mark.unit
    def test_seeders_ignored_when_seeding_disabled(self, hasher, sqlite_config):
        no_seeding = sqlite_config.replace(is_seeding_allowed=False)
        no_seeders = sqlite_config.replace(is_seeding_allowed=False, seeders=())
        assert hasher.compute_hashes(no_seeding) == hasher.compute_hashes(no_seeders)

    @pytest.mark.unit
    def test_scenario_only_fields(self, hasher, sqlite_config):
        """连接名、前缀和事务设置只影响场景哈希"""
        a = hasher.compute_hashes(sqlite_config)
        for changes in (
            {"connection": "other"},
            {"database_prefix": "t_"},
            {"reuse_transaction": False},
            {"project_name": "another"},
        ):
            b = hasher.compute_hashes(sqlite_config.replace(**changes))
            assert a.build_hash == b.build_hash
            assert a.snapshot_hash == b.snapshot_hash
            assert a.scenario_hash != b.scenario_hash

    @pytest.mark.unit
    def test_unhashed_fields(self, hasher, sqlite_config):
        """不影响数据库内容的设置不参与哈希"""
        a = hasher.compute_hashes(sqlite_config)
        b = hasher.compute_hashes(
            sqlite_config.replace(remote_build_timeout=5.0, pg_dump="/opt/pg_dump")
        )
        assert a == b

    @pytest.mark.unit
    def test_missing_hash_path(self, hasher, sqlite_config, temp_dir):
        config = sqlite_config.replace(hash_paths=(str(temp_dir / "missing"),))
        with pytest.raises(HashingError):
            hasher.compute_hashes(config)

    @pytest.mark.unit
    def test_missing_pre_migration_import(self, hasher, sqlite_config, temp_dir):
        config = sqlite_config.replace(pre_migration_imports=(str(temp_dir / "base.sqlite"),))
        with pytest.raises(HashingError, match="pre-migration import"):
            hasher.compute_hashes(config)
