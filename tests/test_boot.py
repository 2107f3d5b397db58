import pytest

from pyTestDB.boot import BootTest
from pyTestDB.builder import BuildState, DatabaseBuilder
from pyTestDB.purger import FirstTestFlag


class TestBootTest:
    """测试运行协调者测试"""

    @pytest.mark.integration
    @pytest.mark.database
    def test_build_all_connections(self, sqlite_config):
        boot = BootTest(test_name="test_boot")
        boot.add_builder(sqlite_config)
        boot.add_builder(sqlite_config.replace(connection="second"))
        boot.run_build_steps()

        mapping = boot.build_connection_dbs_list()
        assert set(mapping) == {"main", "second"}
        assert all(name.startswith("test_app_") for name in mapping.values())
        assert mapping["main"] != mapping["second"]
        assert all(b.has_executed() for b in boot.builders)
        assert boot.builders[0].test_name == "test_boot"
        assert boot.purge_report is not None

    @pytest.mark.integration
    @pytest.mark.database
    def test_purge_runs_once_per_flag(self, sqlite_config):
        flag = FirstTestFlag()
        first = BootTest(flag=flag)
        first.add_builder(sqlite_config)
        first.run_build_steps()

        second = BootTest(flag=flag)
        second.add_builder(sqlite_config)
        second.run_build_steps()
        assert first.purge_report is not None
        assert second.purge_report is None
        assert second.builders[0].outcome == "reused"

    @pytest.mark.integration
    @pytest.mark.database
    def test_builders_executed_once(self, sqlite_config):
        boot = BootTest(purge=False)
        builder = boot.add_builder(DatabaseBuilder(sqlite_config))
        boot.run_build_steps()
        resolved = builder.resolved_settings
        boot.run_build_steps()
        assert builder.resolved_settings is resolved

    @pytest.mark.integration
    @pytest.mark.database
    def test_test_lifecycle(self, sqlite_config):
        boot = BootTest(purge=False)
        main = boot.add_builder(sqlite_config)
        second = boot.add_builder(sqlite_config.replace(connection="second"))
        boot.run_build_steps()

        boot.run_post_build_steps()
        assert main.state == BuildState.REUSE_TXN_OPEN
        assert second.transaction_connection is not None

        boot.run_post_test_steps()
        assert main.state == BuildState.EXECUTED
        assert second.state == BuildState.FINALIZED

    @pytest.mark.unit
    def test_empty(self):
        boot = BootTest()
        boot.run_build_steps()
        boot.run_post_build_steps()
        boot.run_post_test_steps()
        assert boot.build_connection_dbs_list() == {}
