"""Tests for the front door HTTP surface."""

import httpx
import pytest
from httpx import ASGITransport

from camrelay.gateway.transcode import TranscodeGateway
from camrelay.server.app import create_app
from camrelay.tunnel.manager import TunnelManager
from tests.helpers import python_command

STREAM_SCRIPT = (
    "import sys\n"
    "sys.stdout.buffer.write(b'\\x00\\x00\\x00\\x18ftypmp42' + b'm' * 4000)\n"
    "sys.stdout.flush()\n"
)


class ScriptBuilder:
    def __init__(self, script: str = STREAM_SCRIPT):
        self.script = script
        self.calls = 0

    def __call__(self, source):
        self.calls += 1
        return python_command(self.script)


@pytest.fixture
def builder() -> ScriptBuilder:
    return ScriptBuilder()


@pytest.fixture
async def gateway(camera_config, fast_settings, builder):
    gateway = TranscodeGateway(
        camera_config.sources(), settings=fast_settings, command_builder=builder
    )
    yield gateway
    await gateway.shutdown()


@pytest.fixture
async def client(camera_config, gateway, fast_settings):
    tunnel = TunnelManager(camera_config, settings=fast_settings)
    app = create_app(camera_config, gateway, tunnel)
    async with httpx.AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test"
    ) as client:
        yield client


class TestPages:
    """Tests for the viewer pages."""

    async def test_main_viewer_lists_cameras(self, client):
        response = await client.get("/")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/html")
        assert response.headers["cache-control"] == "no-cache"
        assert "Front Door" in response.text
        assert 'src="/stream/front"' in response.text
        assert "http://vps.test:18081" in response.text

    async def test_main_viewer_escapes_names(self, client):
        response = await client.get("/")

        assert "Garage &lt;east&gt;" in response.text
        assert "Garage <east>" not in response.text

    async def test_single_camera(self, client):
        response = await client.get("/camera/garage")

        assert response.status_code == 200
        assert 'src="/stream/garage"' in response.text
        assert "Garage &amp; driveway" in response.text

    async def test_single_camera_unknown(self, client):
        response = await client.get("/camera/backyard")

        assert response.status_code == 404
        assert response.json() == {"detail": "Camera 'backyard' not found"}


class TestApi:
    """Tests for the JSON endpoints."""

    async def test_camera_list(self, client):
        response = await client.get("/api/cameras")

        assert response.status_code == 200
        assert response.headers["access-control-allow-origin"] == "*"
        assert response.headers["cache-control"] == "no-cache"
        cameras = {c["id"]: c for c in response.json()}
        assert cameras["front"] == {
            "id": "front",
            "name": "Front Door",
            "description": "Front entrance",
            "stream_url": "/stream/front",
            "viewer_url": "/camera/front",
        }
        assert set(cameras) == {"front", "garage"}

    async def test_camera_list_hides_credentials(self, client):
        response = await client.get("/api/cameras")

        assert "secret" not in response.text

    async def test_status(self, client):
        response = await client.get("/api/status")

        assert response.status_code == 200
        data = response.json()
        assert data["tunnel"]["state"] == "idle"
        assert data["tunnel"]["public_url"] == "http://vps.test:18081"
        assert data["streams"] == {"active": 0, "limit": 0}
        assert data["cameras"] == 2


class TestStream:
    """Tests for GET /stream/{id}."""

    async def test_stream_returns_process_output(self, client, gateway, builder):
        """Should stream the transcoder's stdout and release the process."""
        response = await client.get("/stream/front")

        assert response.status_code == 200
        assert response.headers["content-type"] == "video/mp4"
        assert response.headers["cache-control"] == "no-cache, no-store, must-revalidate"
        assert response.headers["pragma"] == "no-cache"
        assert response.headers["expires"] == "0"
        assert response.content == b"\x00\x00\x00\x18ftypmp42" + b"m" * 4000
        assert builder.calls == 1
        assert gateway.active_count == 0

    async def test_unknown_stream_is_404(self, client, builder):
        response = await client.get("/stream/backyard")

        assert response.status_code == 404
        assert response.json()["detail"] == "Camera 'backyard' not found"
        assert builder.calls == 0

    async def test_start_failure_is_500(self, camera_config, fast_settings):
        gateway = TranscodeGateway(
            camera_config.sources(),
            settings=fast_settings,
            command_builder=lambda source: ["/nonexistent/ffmpeg"],
        )
        app = create_app(camera_config, gateway)
        async with httpx.AsyncClient(
            transport=ASGITransport(app=app), base_url="http://test"
        ) as client:
            response = await client.get("/stream/front")

        assert response.status_code == 500
        assert "front" in response.json()["detail"]

    async def test_over_capacity_is_503(self, client, gateway, fast_settings):
        fast_settings.MAX_CONCURRENT_STREAMS = 1
        held = await gateway.open("garage")

        response = await client.get("/stream/front")

        assert response.status_code == 503
        assert "limit" in response.json()["detail"].lower()
        gateway.release(held)
