import pytest

from pyTestDB.config import (
    build_configuration,
    load_build_configurations,
    settings,
    validate_settings,
)
from pyTestDB.exceptions import ConfigurationError


@pytest.fixture
def source(workspace):
    return {
        "PROJECT_NAME": "shop",
        "STORAGE_DIR": str(workspace["storage"]),
        "HASH_PATHS": [str(workspace["migrations"])],
        "MIGRATIONS": str(workspace["migrations"]),
        "SEEDERS": [str(workspace["seed_users"])],
        "SNAPSHOT_AFTER_SEEDERS": True,
        "REMOTE_BUILD_TIMEOUT": "30",
        "PRE_MIGRATION_IMPORTS": {"mysql": ["base.sql"], "postgresql": ["base.pgsql"]},
        "CONNECTIONS": {
            "main": "sqlite:///app.sqlite",
            "reporting": {
                "url": "postgresql+psycopg://app:secret@db/reporting",
                "SEEDERS": [],
                "DATABASE_PREFIX": "t_",
            },
        },
    }


class TestBuildConfiguration:
    """测试从配置创建 BuildConfiguration"""

    @pytest.mark.unit
    def test_url_connection(self, source, workspace):
        config = build_configuration(source, "main")
        assert config.project_name == "shop"
        assert config.connection == "main"
        assert config.driver == "sqlite"
        assert config.storage_dir == str(workspace["storage"])
        assert config.hash_paths == (str(workspace["migrations"]),)
        assert config.seeders == (str(workspace["seed_users"]),)
        assert config.snapshot_after_seeders is True
        assert config.remote_build_timeout == 30.0
        assert config.remote_build_url is None
        assert config.pre_migration_imports == ()

    @pytest.mark.unit
    def test_table_connection_overrides(self, source):
        config = build_configuration(source, "reporting")
        assert config.driver == "postgresql"
        assert config.seeders == ()
        assert config.database_prefix == "t_"
        assert config.pre_migration_imports == ("base.pgsql",)

    @pytest.mark.unit
    def test_defaults(self):
        config = build_configuration({"CONNECTIONS": {"main": "sqlite:///x.sqlite"}}, "main")
        assert config.project_name == "pytestdb"
        assert config.storage_dir == ".pytestdb"
        assert config.migrations is True
        assert config.reuse_transaction is True

    @pytest.mark.unit
    def test_pre_migration_imports_list(self, source):
        source["PRE_MIGRATION_IMPORTS"] = ["shared.sql"]
        assert build_configuration(source, "main").pre_migration_imports == ("shared.sql",)

    @pytest.mark.unit
    def test_unknown_connection(self, source):
        with pytest.raises(ConfigurationError, match="billing"):
            build_configuration(source, "billing")

    @pytest.mark.unit
    def test_connection_without_url(self, source):
        source["CONNECTIONS"]["broken"] = {"SEEDERS": []}
        with pytest.raises(ConfigurationError, match="no database url"):
            build_configuration(source, "broken")

    @pytest.mark.unit
    def test_load_all(self, source):
        configs = load_build_configurations(source)
        assert [c.connection for c in configs] == ["main", "reporting"]

    @pytest.mark.unit
    def test_dynaconf_settings(self, monkeypatch):
        """环境变量通过 Dynaconf 读取"""
        monkeypatch.setenv("PYTESTDB_STORAGE_DIR", "/tmp/pytestdb-env")
        settings.reload()
        assert settings.get("STORAGE_DIR") == "/tmp/pytestdb-env"
        assert settings.get("PROJECT_NAME") == "test_project"


class TestValidateSettings:
    """测试配置验证"""

    @pytest.mark.unit
    def test_valid(self, source):
        assert validate_settings(source) == []

    @pytest.mark.unit
    def test_missing_values(self):
        warnings = validate_settings({})
        assert any("PROJECT_NAME" in w for w in warnings)
        assert any("CONNECTIONS" in w for w in warnings)
        assert any("HASH_PATHS" in w for w in warnings)

    @pytest.mark.unit
    def test_command_applier_needs_command(self, source):
        source["SCHEMA_APPLIER"] = "command"
        assert any("MIGRATE_COMMAND" in w for w in validate_settings(source))

    @pytest.mark.unit
    def test_unknown_applier(self, source):
        source["SCHEMA_APPLIER"] = "flyway"
        assert any("SCHEMA_APPLIER" in w for w in validate_settings(source))

    @pytest.mark.unit
    def test_remote_sqlite(self, source):
        source["REMOTE_BUILD_URL"] = "http://builder"
        warnings = validate_settings(source)
        assert any("main" in w and "sqlite" in w for w in warnings)
        assert not any("reporting" in w for w in warnings)

    @pytest.mark.unit
    def test_bad_timeout(self, source):
        source["REMOTE_BUILD_TIMEOUT"] = -1
        assert any("REMOTE_BUILD_TIMEOUT" in w for w in validate_settings(source))
