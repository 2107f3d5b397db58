"""
pyTestDB - 测试数据库构建与复用

为测试套件准备每个连接的测试数据库，并缓存已经构建好的数据库和快照。
缓存以结构/种子定义的内容指纹和构建配置为键。

主要功能:
- 哈希三元组计算（构建 / 快照 / 场景）
- 复用数据库（事务包裹测试，回滚后可再次使用）
- 快照导入导出（mysqldump / pg_dump / SQLite 文件复制）
- 远程构建服务
- 清理过期的数据库和快照
"""

__version__ = "0.1.0"

# 导出主要接口
from .boot import BootTest
from .builder import DatabaseBuilder
from .config import settings
from .database import db_manager
from .dto import BuildConfiguration, HashTriplet, ResolvedSettingsDTO
from .main import main

__all__ = [
    "main",
    "BootTest",
    "BuildConfiguration",
    "DatabaseBuilder",
    "HashTriplet",
    "ResolvedSettingsDTO",
    "db_manager",
    "settings",
    "__version__",
]
