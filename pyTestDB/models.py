from sqlalchemy import Boolean, Column, DateTime, Integer, String

from .base import Base

# 复用元数据表名，每个由 pyTestDB 构建的数据库都带有这张表
REUSE_TABLE = "____pytestdb__"
# 表结构版本，变更表结构时递增，旧数据库会被视为过期
REUSE_TABLE_VERSION = 2


class ReuseMeta(Base):
    __tablename__ = REUSE_TABLE
    # id 主键，表内只有一行
    id = Column(Integer, primary_key=True, autoincrement=True)
    # 项目名称，用于区分同一数据库服务器上的不同项目
    project_name = Column(String, nullable=True)
    # 连接名称
    connection = Column(String, nullable=False)
    # 原始数据库名（测试数据库由它派生）
    original_database = Column(String, nullable=True)
    reuse_table_version = Column(Integer, nullable=False)
    # 哈希三元组
    build_hash = Column(String(64), nullable=False)
    snapshot_hash = Column(String(64), nullable=False)
    scenario_hash = Column(String(64), nullable=False)
    # 事务复用标记：测试在事务中提交后保持为 True，数据库不再可复用
    inside_transaction = Column(Boolean, nullable=False, default=False)
    # 最后使用时间
    last_used = Column(DateTime, nullable=True)
