import logging
import sys
import threading
from contextlib import contextmanager
from typing import Callable, Iterator, Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .builder import DatabaseBuilder
from .config import build_configuration, settings
from .dto import REMOTE_SHARE_VERSION, BuildConfiguration
from .exceptions import ConfigurationError, PyTestDBError
from .metrics import metrics
from .remote import LOCAL_ONLY_FIELDS
from .web_models import (
    ErrorResponse,
    HealthResponse,
    RemoteBuildRequest,
    ResolvedSettingsResponse,
)

logger = logging.getLogger(__name__)

# 错误码 -> HTTP 状态码
STATUS_CODES = {
    "VERSION_MISMATCH": 409,
    "BUILD_HASH_MISMATCH": 409,
    "ConfigurationError": 400,
    "HASHING_ERROR": 422,
}


class KeyedLock:
    """每个键一把锁，同一个数据库的构建请求依次执行。

    没有线程持有或等待时，键对应的锁会被删除。
    """

    def __init__(self):
        # key -> [锁, 持有和等待的线程数]
        self._locks: dict[str, list] = {}
        self._guard = threading.Lock()

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            entry = self._locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]


def error_response(status_code: int, error: str, message: str, **extra) -> JSONResponse:
    body = ErrorResponse(error=error, message=message, **extra)
    return JSONResponse(status_code=status_code, content=body.model_dump(exclude_none=True))


def merge_request_config(
    local: BuildConfiguration, request: RemoteBuildRequest
) -> BuildConfiguration:
    """用请求中的构建设置覆盖本地配置，连接、存储和远程相关设置保持本地值。"""
    shared = {
        k: v
        for k, v in request.config.items()
        if k not in LOCAL_ONLY_FIELDS and k not in ("connection", "driver")
    }
    merged = BuildConfiguration.from_dict({**local.to_dict(), **shared})
    # 服务端总是在本地构建
    return merged.replace(remote_build_url=None)


def create_app(
    config_loader: Optional[Callable[[str], BuildConfiguration]] = None,
) -> FastAPI:
    """创建远程构建服务的 FastAPI 应用"""
    if config_loader is None:

        def config_loader(connection: str) -> BuildConfiguration:
            return build_configuration(settings, connection)

    app = FastAPI(
        title="pyTestDB remote build API",
        description="Builds test databases on behalf of other test runs",
        version=str(REMOTE_SHARE_VERSION),
    )
    build_locks = KeyedLock()

    @app.exception_handler(PyTestDBError)
    async def handle_pytestdb_error(request: Request, exc: PyTestDBError):
        status_code = STATUS_CODES.get(exc.code, 500)
        logger.error(f"Remote build failed ({exc.code}): {exc.message}")
        metrics.inc_remote_request(exc.code)
        return error_response(status_code, exc.code, exc.message)

    @app.get("/health", response_model=HealthResponse)
    async def health():
        return HealthResponse(status="ok", version=REMOTE_SHARE_VERSION)

    # 同步端点：FastAPI 在线程池中执行，阻塞的构建不会卡住事件循环
    @app.post("/api/build", response_model=ResolvedSettingsResponse)
    def build(request: RemoteBuildRequest):
        logger.info(
            f"Build request for connection \"{request.connection}\" "
            f"from project \"{request.project_name}\" (test: {request.test_name})"
        )
        if request.version != REMOTE_SHARE_VERSION:
            metrics.inc_remote_request("VERSION_MISMATCH")
            return error_response(
                409,
                "VERSION_MISMATCH",
                f"Remote share version {request.version} is not supported "
                f"(this server uses {REMOTE_SHARE_VERSION})",
                remote_version=REMOTE_SHARE_VERSION,
            )

        local = config_loader(request.connection)
        if local.driver != request.driver:
            raise ConfigurationError(
                f"Connection \"{request.connection}\" uses driver \"{local.driver}\" "
                f"on this server, not \"{request.driver}\""
            )
        config = merge_request_config(local, request)

        builder = DatabaseBuilder(config, request.test_name)
        hashes = builder.ensure_hashes()
        if hashes.build_hash != request.build_hash:
            metrics.inc_remote_request("BUILD_HASH_MISMATCH")
            return error_response(
                409,
                "BUILD_HASH_MISMATCH",
                f"Build hash {request.build_hash} does not match this server's "
                f"{hashes.build_hash}; are both sides using the same files?",
            )

        with build_locks.hold(f"{config.connection}:{builder.pick_database_name()}"):
            resolved = builder.execute()

        metrics.inc_remote_request("ok")
        return ResolvedSettingsResponse(**resolved.to_dict())

    return app


def start_web_server(host: str, port: int):
    """启动远程构建服务"""
    try:
        app = create_app()

        logger.info("启动远程构建服务...")
        logger.info(f"服务地址: http://{host}:{port}")
        logger.info("按 Ctrl+C 停止服务器")

        uvicorn.run(app, host=host, port=port, log_level="info", access_log=True)

    except Exception as e:
        logger.error(f"启动远程构建服务失败: {e}")
        sys.exit(1)
