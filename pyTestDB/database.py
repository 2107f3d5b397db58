import datetime
import logging
import threading
import time
from contextlib import contextmanager
from typing import Any, Iterator, Optional

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker

from .dto import HashTriplet, ReuseMetaDTO
from .models import REUSE_TABLE, REUSE_TABLE_VERSION, ReuseMeta

logger = logging.getLogger(__name__)


def retry_on_db_lock(max_retries: int = 3, retry_delay: float = 0.5):
    """装饰器：在遇到数据库锁定时自动重试"""

    def decorator(func):
        def wrapper(*args, **kwargs):
            last_exception = None
            for attempt in range(max_retries):
                try:
                    return func(*args, **kwargs)
                except OperationalError as e:
                    last_exception = e
                    if "database is locked" in str(e):
                        if attempt < max_retries - 1:
                            logger.warning(
                                f"Database locked, retrying {attempt + 1}/{max_retries}..."
                            )
                            time.sleep(retry_delay * (attempt + 1))  # 指数退避
                            continue
                    raise  # 非锁定错误直接抛出
            raise last_exception  # type: ignore

        return wrapper

    return decorator


class DatabaseManager:
    """数据库引擎管理器单例类，按连接 URL 缓存引擎"""

    _instance = None
    _lock = threading.Lock()

    def __new__(cls):
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    instance = super().__new__(cls)
                    instance._initialized = False
                    cls._instance = instance  # 原子赋值
        return cls._instance

    def __init__(self):
        if hasattr(self, "_initialized") and self._initialized:
            return

        with self.__class__._lock:
            if hasattr(self, "_initialized") and self._initialized:
                return

            self.engines: dict[str, Engine] = {}
            self.sessions: dict[str, sessionmaker] = {}
            self._engines_lock = threading.Lock()
            self._initialized = True

    def _create_engine(self, db_url: str) -> Engine:
        """创建引擎，SQLite 与其他数据库使用不同的参数。"""
        if db_url.startswith("sqlite"):
            return create_engine(
                db_url,
                connect_args={
                    "check_same_thread": False,  # 允许跨线程使用
                    "timeout": 60,
                },
                echo=False,
            )
        return create_engine(
            db_url,
            pool_size=5,
            max_overflow=10,
            pool_pre_ping=True,  # 连接健康检查
            pool_recycle=3600,  # 连接回收时间（1小时）
        )

    def engine_for(self, db_url: str) -> Engine:
        """获取（必要时创建）连接 URL 对应的引擎。"""
        with self._engines_lock:
            engine = self.engines.get(db_url)
            if engine is None:
                engine = self._create_engine(db_url)
                self.engines[db_url] = engine
                self.sessions[db_url] = sessionmaker(bind=engine)
            return engine

    @contextmanager
    def session_scope(self, db_url: str) -> Iterator[Session]:
        """提供事务作用域的会话管理。"""
        self.engine_for(db_url)
        session = self.sessions[db_url]()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    @contextmanager
    def autocommit(self, db_url: str) -> Iterator[Connection]:
        """CREATE/DROP DATABASE 不能在事务中执行，使用 AUTOCOMMIT 连接。"""
        engine = self.engine_for(db_url)
        with engine.connect() as conn:
            yield conn.execution_options(isolation_level="AUTOCOMMIT")

    def dispose(self, db_url: Optional[str] = None) -> None:
        """关闭引擎的连接池。不传 URL 时关闭全部引擎。"""
        with self._engines_lock:
            urls = [db_url] if db_url else list(self.engines)
            for url in urls:
                engine = self.engines.pop(url, None)
                self.sessions.pop(url, None)
                if engine is not None:
                    engine.dispose()

    def has_reuse_table(self, db_url: str) -> bool:
        return inspect(self.engine_for(db_url)).has_table(REUSE_TABLE)

    @retry_on_db_lock(max_retries=5, retry_delay=0.5)
    def read_reuse_meta(self, db_url: str) -> Optional[ReuseMetaDTO]:
        """读取复用元数据表的唯一一行，没有该表时返回 None。"""
        if not self.has_reuse_table(db_url):
            return None
        with self.session_scope(db_url) as session:
            row = session.query(ReuseMeta).order_by(ReuseMeta.id).first()
            if row:
                return ReuseMetaDTO.from_orm(row)
            return None

    @retry_on_db_lock(max_retries=5, retry_delay=0.5)
    def write_reuse_meta(
        self,
        db_url: str,
        project_name: Optional[str],
        connection: str,
        original_database: Optional[str],
        hashes: HashTriplet,
    ) -> None:
        """写入复用元数据。必须是一次成功构建的最后一步。"""
        engine = self.engine_for(db_url)
        ReuseMeta.__table__.create(engine, checkfirst=True)
        with self.session_scope(db_url) as session:
            session.query(ReuseMeta).delete()
            session.add(
                ReuseMeta(
                    project_name=project_name,
                    connection=connection,
                    original_database=original_database,
                    reuse_table_version=REUSE_TABLE_VERSION,
                    build_hash=hashes.build_hash,
                    snapshot_hash=hashes.snapshot_hash,
                    scenario_hash=hashes.scenario_hash,
                    inside_transaction=False,
                    last_used=datetime.datetime.now(),
                )
            )

    @retry_on_db_lock(max_retries=5, retry_delay=0.5)
    def touch_reuse_meta(self, db_url: str) -> None:
        """更新最后使用时间。"""
        with self.session_scope(db_url) as session:
            session.query(ReuseMeta).update(
                {ReuseMeta.last_used: datetime.datetime.now()}
            )

    def mark_inside_transaction(self, conn: Connection) -> None:
        """在复用事务内部把标记置为 True。

        事务正常回滚时标记恢复为 False；如果测试提交了事务，标记会留下，
        下次构建就不会复用这个数据库。
        """
        conn.execute(
            ReuseMeta.__table__.update().values(inside_transaction=True)
        )

    def execute_script(self, db_url: str, sql: str) -> None:
        """执行一段 SQL 脚本（可以包含多条语句）。"""
        engine = self.engine_for(db_url)
        if engine.dialect.name == "sqlite":
            raw = engine.raw_connection()
            try:
                raw.driver_connection.executescript(sql)  # type: ignore[union-attr]
                raw.commit()
            finally:
                raw.close()
            return
        with engine.begin() as conn:
            conn.exec_driver_sql(sql)

    def scalar(self, db_url: str, sql: str, params: Optional[dict[str, Any]] = None) -> Any:
        with self.engine_for(db_url).connect() as conn:
            return conn.execute(text(sql), params or {}).scalar()

    def column(self, db_url: str, sql: str) -> list[Any]:
        with self.engine_for(db_url).connect() as conn:
            return [row[0] for row in conn.execute(text(sql))]


# 全局数据库管理器实例
db_manager = DatabaseManager()
