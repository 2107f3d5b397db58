"""Schema appliers run migrations and seeders against a freshly created
database. pyTestDB treats them as black boxes: it only says *where* to
apply and *what* to apply.
"""

import logging
import os
import shlex
import subprocess
from pathlib import Path
from typing import Optional, Protocol, Sequence, Union

from .database import DatabaseManager, db_manager
from .dto import BuildConfiguration
from .exceptions import BuildFailed, ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_MIGRATIONS_PATH = "database/migrations"


class SchemaApplier(Protocol):
    def migrate(self, db_url: str, migrations: Union[bool, str]) -> None: ...

    def seed(self, db_url: str, seeders: Sequence[str]) -> None: ...


def _migrations_path(migrations: Union[bool, str]) -> Path:
    return Path(DEFAULT_MIGRATIONS_PATH if migrations is True else str(migrations))


class SqlFileSchemaApplier:
    """按文件名顺序执行目录中的 .sql 文件。"""

    def __init__(self, db: Optional[DatabaseManager] = None):
        self.db = db or db_manager

    def _execute_file(self, db_url: str, file: Path) -> None:
        logger.debug(f"Executing {file}")
        try:
            sql = file.read_text(encoding="utf-8")
        except OSError as e:
            raise BuildFailed(f"Could not read \"{file}\": {e}")
        self.db.execute_script(db_url, sql)

    def migrate(self, db_url: str, migrations: Union[bool, str]) -> None:
        if migrations is False:
            return
        path = _migrations_path(migrations)
        if path.is_file():
            files = [path]
        elif path.is_dir():
            files = sorted(path.glob("*.sql"))
        else:
            raise BuildFailed(f"The migrations path \"{path}\" does not exist")
        for file in files:
            self._execute_file(db_url, file)
        logger.info(f"Ran {len(files)} migration file(s) from \"{path}\"")

    def seed(self, db_url: str, seeders: Sequence[str]) -> None:
        for seeder in seeders:
            path = Path(seeder)
            if not path.is_file():
                raise BuildFailed(f"The seeder \"{seeder}\" does not exist")
            self._execute_file(db_url, path)
        if seeders:
            logger.info(f"Ran {len(seeders)} seeder(s)")


class CommandSchemaApplier:
    """运行外部命令（例如 `alembic upgrade head`），通过 DATABASE_URL 环境变量传递目标数据库。

    命令模板中可以使用 `{path}`（迁移路径）和 `{seeder}`（当前 seeder）。
    """

    def __init__(self, migrate_command: Optional[str], seed_command: Optional[str]):
        self.migrate_command = migrate_command
        self.seed_command = seed_command

    def _run(self, command: str, db_url: str) -> None:
        env = {**os.environ, "DATABASE_URL": db_url}
        args = shlex.split(command)
        logger.debug(f"Running: {command}")
        try:
            subprocess.run(args, check=True, capture_output=True, text=True, env=env)
        except FileNotFoundError as e:
            raise BuildFailed(f"Could not run \"{args[0]}\": {e}")
        except subprocess.CalledProcessError as e:
            raise BuildFailed(
                f"\"{command}\" exited with status {e.returncode}: {(e.stderr or '').strip()}"
            )

    def migrate(self, db_url: str, migrations: Union[bool, str]) -> None:
        if migrations is False:
            return
        if not self.migrate_command:
            raise ConfigurationError("MIGRATE_COMMAND must be set to use the command applier")
        path = "" if migrations is True else str(migrations)
        self._run(self.migrate_command.format(path=path), db_url)

    def seed(self, db_url: str, seeders: Sequence[str]) -> None:
        if not seeders:
            return
        if not self.seed_command:
            raise ConfigurationError("SEED_COMMAND must be set to run seeders")
        for seeder in seeders:
            self._run(self.seed_command.format(seeder=seeder), db_url)


def create_schema_applier(
    config: BuildConfiguration, db: Optional[DatabaseManager] = None
) -> SchemaApplier:
    """根据配置创建对应的 SchemaApplier"""
    if config.schema_applier == "sql":
        return SqlFileSchemaApplier(db)
    if config.schema_applier == "command":
        return CommandSchemaApplier(config.migrate_command, config.seed_command)
    raise ConfigurationError(f"Unknown schema applier \"{config.schema_applier}\"")
