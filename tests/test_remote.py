import json

import httpx
import pytest

from pyTestDB.dto import REMOTE_SHARE_VERSION, ResolvedSettingsDTO
from pyTestDB.exceptions import RemoteBuildTimeout, RemoteShareException
from pyTestDB.hasher import ScenarioHasher
from pyTestDB.remote import LOCAL_ONLY_FIELDS, RemoteBuildClient


@pytest.fixture
def remote_config(postgres_config):
    return postgres_config.replace(remote_build_url="http://builder.example/")


@pytest.fixture
def hashes(remote_config):
    return ScenarioHasher().compute_hashes(remote_config)


def make_client(handler, timeout=5.0):
    return RemoteBuildClient(
        "http://builder.example/",
        timeout=timeout,
        client=httpx.Client(transport=httpx.MockTransport(handler)),
    )


def resolved_payload(config, hashes, **changes):
    resolved = ResolvedSettingsDTO.build(config, hashes, "test_reporting_x", "db.example")
    return resolved.replace(**changes).to_dict()


class TestRemoteBuildClient:
    """测试远程构建客户端"""

    @pytest.mark.unit
    @pytest.mark.remote
    def test_request_body(self, remote_config, hashes):
        request = RemoteBuildClient("http://x").build_request(remote_config, hashes, "test_a")
        assert request.version == REMOTE_SHARE_VERSION
        assert request.connection == "reporting"
        assert request.driver == "postgresql"
        assert request.scenario_hash == hashes.scenario_hash
        assert request.test_name == "test_a"
        for field in LOCAL_ONLY_FIELDS:
            assert field not in request.config
        assert request.config["migrations"] == remote_config.migrations

    @pytest.mark.unit
    @pytest.mark.remote
    def test_successful_build(self, remote_config, hashes):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json=resolved_payload(remote_config, hashes))

        resolved = make_client(handler).build(remote_config, hashes, "test_a")

        assert seen["url"] == "http://builder.example/api/build"
        assert seen["body"]["build_hash"] == hashes.build_hash
        assert "database_url" not in seen["body"]["config"]
        assert resolved.database == "test_reporting_x"
        assert resolved.built_remotely is True
        assert resolved.remote_build_url == "http://builder.example"

    @pytest.mark.unit
    @pytest.mark.remote
    def test_timeout(self, remote_config, hashes):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        with pytest.raises(RemoteBuildTimeout) as exc_info:
            make_client(handler, timeout=0.5).build(remote_config, hashes)
        assert "0.5s" in exc_info.value.message

    @pytest.mark.unit
    @pytest.mark.remote
    def test_connection_error(self, remote_config, hashes):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(RemoteShareException) as exc_info:
            make_client(handler).build(remote_config, hashes)
        assert exc_info.value.code == "CONNECTION_ERROR"

    @pytest.mark.unit
    @pytest.mark.remote
    def test_server_error(self, remote_config, hashes):
        def handler(request):
            return httpx.Response(500, json={"error": "BUILD_FAILED", "message": "migration broke"})

        with pytest.raises(RemoteShareException) as exc_info:
            make_client(handler).build(remote_config, hashes)
        assert exc_info.value.code == "REMOTE_ERROR"
        assert "migration broke" in exc_info.value.message
        assert "500" in exc_info.value.message

    @pytest.mark.unit
    @pytest.mark.remote
    def test_non_json_error(self, remote_config, hashes):
        def handler(request):
            return httpx.Response(502, text="Bad Gateway")

        with pytest.raises(RemoteShareException, match="Bad Gateway"):
            make_client(handler).build(remote_config, hashes)

    @pytest.mark.unit
    @pytest.mark.remote
    def test_version_mismatch_reported_by_server(self, remote_config, hashes):
        def handler(request):
            return httpx.Response(
                409,
                json={"error": "VERSION_MISMATCH", "message": "nope", "remote_version": 99},
            )

        with pytest.raises(RemoteShareException) as exc_info:
            make_client(handler).build(remote_config, hashes)
        assert exc_info.value.code == "VERSION_MISMATCH"
        assert "99" in exc_info.value.message

    @pytest.mark.unit
    @pytest.mark.remote
    def test_version_mismatch_in_payload(self, remote_config, hashes):
        def handler(request):
            return httpx.Response(
                200, json=resolved_payload(remote_config, hashes, version=REMOTE_SHARE_VERSION + 1)
            )

        with pytest.raises(RemoteShareException) as exc_info:
            make_client(handler).build(remote_config, hashes)
        assert exc_info.value.code == "VERSION_MISMATCH"

    @pytest.mark.unit
    @pytest.mark.remote
    def test_unreadable_payload(self, remote_config, hashes):
        def handler(request):
            return httpx.Response(200, text="")

        with pytest.raises(RemoteShareException) as exc_info:
            make_client(handler).build(remote_config, hashes)
        assert exc_info.value.code == "UNREADABLE_PAYLOAD"
