import logging
from typing import Optional

from .builder import DatabaseBuilder
from .dto import BuildConfiguration
from .purger import FirstTestFlag, StalePurger, PurgeReport

logger = logging.getLogger(__name__)


class BootTest:
    """测试运行的协调者：持有每个连接的构建器，并在测试生命周期的各个阶段调用它们。

    测试框架的钩子决定何时调用：
    - run_build_steps()：测试开始前（第一次调用时清理过期数据）
    - run_post_build_steps()：每个测试体执行前
    - run_post_test_steps()：每个测试体执行后
    """

    def __init__(
        self,
        flag: Optional[FirstTestFlag] = None,
        purge: bool = True,
        test_name: Optional[str] = None,
    ):
        self.flag = flag or FirstTestFlag()
        self.purger = StalePurger(self.flag, enabled=purge)
        self.test_name = test_name
        self.builders: list[DatabaseBuilder] = []
        self.purge_report: Optional[PurgeReport] = None

    def add_builder(self, builder_or_config) -> DatabaseBuilder:
        if isinstance(builder_or_config, BuildConfiguration):
            builder = DatabaseBuilder(builder_or_config, self.test_name)
        else:
            builder = builder_or_config
        self.builders.append(builder)
        return builder

    def run_build_steps(self) -> None:
        report = self.purger.run(self.builders)
        if report is not None:
            self.purge_report = report

        for builder in self.builders:
            if not builder.has_executed():
                builder.execute()

    def run_post_build_steps(self) -> None:
        for builder in self.builders:
            builder.run_post_build_steps()

    def run_post_test_steps(self) -> None:
        last = len(self.builders) - 1
        for index, builder in enumerate(self.builders):
            builder.run_post_test_steps(is_last=index == last)

    def build_connection_dbs_list(self) -> dict[str, Optional[str]]:
        """连接名 -> 实际使用的数据库名"""
        return {
            builder.get_connection(): builder.get_resolved_database()
            for builder in self.builders
        }
