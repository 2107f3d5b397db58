import argparse
import importlib
import sys

import pytest

cli = importlib.import_module("pyTestDB.main")


@pytest.fixture
def cli_settings(monkeypatch, workspace):
    """让命令行使用测试目录中的配置"""
    source = {
        "PROJECT_NAME": "test_project",
        "STORAGE_DIR": str(workspace["storage"]),
        "HASH_PATHS": [str(workspace["migrations"]), str(workspace["seeds"])],
        "MIGRATIONS": str(workspace["migrations"]),
        "SEEDERS": [str(workspace["seed_users"])],
        "CONNECTIONS": {
            "main": f"sqlite:///{(workspace['root'] / 'app.sqlite').as_posix()}",
            "second": f"sqlite:///{(workspace['root'] / 'other.sqlite').as_posix()}",
        },
    }
    monkeypatch.setattr(cli, "settings", source)
    return source


class TestCommands:
    """测试命令行子命令"""

    @pytest.mark.integration
    @pytest.mark.database
    def test_build(self, cli_settings, capsys):
        mapping = cli.command_build(argparse.Namespace(connection=None, no_purge=False))
        assert set(mapping) == {"main", "second"}
        assert mapping["main"].startswith("test_app_")
        assert mapping["second"].startswith("test_other_")
        out = capsys.readouterr().out
        assert "main:" in out
        assert mapping["second"] in out

    @pytest.mark.integration
    @pytest.mark.database
    def test_build_single_connection(self, cli_settings):
        mapping = cli.command_build(argparse.Namespace(connection=["second"], no_purge=True))
        assert list(mapping) == ["second"]

    @pytest.mark.unit
    def test_unknown_connection_exits(self, cli_settings):
        with pytest.raises(SystemExit):
            cli.command_build(argparse.Namespace(connection=["nope"], no_purge=True))

    @pytest.mark.integration
    @pytest.mark.database
    def test_list(self, cli_settings, capsys):
        cli.command_build(argparse.Namespace(connection=["main"], no_purge=True))
        capsys.readouterr()

        cli.command_list(argparse.Namespace(connection=None))
        out = capsys.readouterr().out
        assert "[valid] main: test_app_" in out
        assert "1 item(s)" in out

    @pytest.mark.integration
    @pytest.mark.database
    def test_purge(self, cli_settings, workspace, capsys):
        cli.command_build(argparse.Namespace(connection=["main"], no_purge=True))
        (workspace["migrations"] / "003_more.sql").write_text("CREATE TABLE more (id INT);")
        capsys.readouterr()

        cli.command_purge(argparse.Namespace(connection=None))
        out = capsys.readouterr().out
        assert "Removed 1 database(s)" in out

    @pytest.mark.integration
    @pytest.mark.database
    def test_main_entry(self, cli_settings, monkeypatch, capsys):
        monkeypatch.setattr(sys, "argv", ["pytestdb", "build", "--connection", "main"])
        cli.main()
        assert "main:" in capsys.readouterr().out

    @pytest.mark.unit
    def test_main_reports_errors(self, cli_settings, monkeypatch, temp_dir):
        cli_settings["HASH_PATHS"] = [str(temp_dir / "missing")]
        monkeypatch.setattr(sys, "argv", ["pytestdb", "build"])
        with pytest.raises(SystemExit) as exc_info:
            cli.main()
        assert exc_info.value.code == 1

    @pytest.mark.unit
    def test_subcommand_required(self, monkeypatch):
        monkeypatch.setattr(sys, "argv", ["pytestdb"])
        with pytest.raises(SystemExit):
            cli.main()
