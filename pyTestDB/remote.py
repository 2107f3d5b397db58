import logging
import time
from typing import Optional

import httpx

from .dto import REMOTE_SHARE_VERSION, BuildConfiguration, HashTriplet, ResolvedSettingsDTO
from .exceptions import RemoteBuildTimeout, RemoteShareException
from .web_models import RemoteBuildRequest

logger = logging.getLogger(__name__)

# 不发送给远程端的配置项（远程端使用自己的连接和存储设置）
LOCAL_ONLY_FIELDS = (
    "database_url",
    "storage_dir",
    "remote_build_url",
    "remote_build_timeout",
    "remote_build_fallback_local",
    "mysql_client",
    "mysqldump",
    "psql",
    "pg_dump",
)


class RemoteBuildClient:
    """把整个构建流程委托给远程的 pyTestDB 服务。"""

    def __init__(
        self,
        remote_url: str,
        timeout: float = 120.0,
        client: Optional[httpx.Client] = None,
    ):
        self.remote_url = remote_url.rstrip("/")
        self.timeout = timeout
        self.client = client

    def build_request(
        self,
        config: BuildConfiguration,
        hashes: HashTriplet,
        test_name: Optional[str] = None,
    ) -> RemoteBuildRequest:
        shared_config = {
            k: v for k, v in config.to_dict().items() if k not in LOCAL_ONLY_FIELDS
        }
        return RemoteBuildRequest(
            version=REMOTE_SHARE_VERSION,
            project_name=config.project_name,
            test_name=test_name,
            connection=config.connection,
            driver=config.driver,
            build_hash=hashes.build_hash,
            snapshot_hash=hashes.snapshot_hash,
            scenario_hash=hashes.scenario_hash,
            config=shared_config,
        )

    def _post(self, url: str, payload: dict) -> httpx.Response:
        if self.client is not None:
            return self.client.post(url, json=payload, timeout=self.timeout)
        with httpx.Client(timeout=self.timeout) as client:
            return client.post(url, json=payload)

    def build(
        self,
        config: BuildConfiguration,
        hashes: HashTriplet,
        test_name: Optional[str] = None,
    ) -> ResolvedSettingsDTO:
        url = f"{self.remote_url}/api/build"
        request = self.build_request(config, hashes, test_name)
        logger.info(f"Sending build request for connection \"{config.connection}\" to {url}")

        start = time.time()
        try:
            response = self._post(url, request.model_dump())
        except httpx.TimeoutException as e:
            raise RemoteBuildTimeout(
                f"Remote build of connection \"{config.connection}\" at {url} "
                f"timed out after {self.timeout}s: {e}"
            )
        except httpx.HTTPError as e:
            raise RemoteShareException(
                f"Could not reach the remote build server at {url}: {e}",
                code="CONNECTION_ERROR",
            )

        if response.status_code != 200:
            self._raise_for_error(response)

        resolved = ResolvedSettingsDTO.from_payload(response.content)
        logger.info(
            f"Remote build of \"{resolved.database}\" finished ({time.time() - start:.2f}s)"
        )
        return resolved.replace(built_remotely=True, remote_build_url=self.remote_url)

    def _raise_for_error(self, response: httpx.Response) -> None:
        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}
        error = body.get("error")
        message = body.get("message") or response.text
        if error == "VERSION_MISMATCH":
            raise RemoteShareException.version_mismatch(
                str(REMOTE_SHARE_VERSION), body.get("remote_version")
            )
        raise RemoteShareException.remote_error(response.status_code, message)
