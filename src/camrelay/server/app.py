"""
CamRelay front door.

The local HTTP server that the tunnel publishes. It serves the viewer pages,
the camera list, and one transcoded stream per request.

Routes:
    GET /                 Multi-camera viewer
    GET /camera/{id}      Single camera viewer
    GET /api/cameras      Camera list (JSON)
    GET /api/status       Tunnel and gateway status (JSON)
    GET /stream/{id}      Live fragmented MP4 stream
"""

from fastapi import APIRouter, FastAPI, Path, Request
from fastapi.responses import HTMLResponse, JSONResponse

import camrelay
from camrelay.exceptions import (
    GatewayError,
    ProcessStartFailed,
    SourceNotFound,
    StreamCapacityExceeded,
)
from camrelay.gateway.transcode import TranscodeGateway
from camrelay.models.enums import TunnelState
from camrelay.models.sources import CameraConfig
from camrelay.server.pages import render_main_viewer, render_single_camera
from camrelay.tunnel.manager import TunnelManager
from camrelay.utils.logger import get_logger

logger = get_logger(__name__)

router = APIRouter()

PAGE_HEADERS = {"Cache-Control": "no-cache"}

API_HEADERS = {
    "Cache-Control": "no-cache",
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET",
}


# =============================================================================
# Pages
# =============================================================================


@router.get("/", response_class=HTMLResponse)
async def main_viewer(request: Request):
    """Grid of every configured camera."""
    gateway: TranscodeGateway = request.app.state.gateway
    config: CameraConfig = request.app.state.camera_config
    public_url = f"http://{config.vps_host}:{config.vps_http_port}"
    return HTMLResponse(
        render_main_viewer(gateway.sources, public_url), headers=PAGE_HEADERS
    )


@router.get("/camera/{camera_id}", response_class=HTMLResponse)
async def single_camera(request: Request, camera_id: str = Path(...)):
    """Viewer page for one camera."""
    gateway: TranscodeGateway = request.app.state.gateway
    source = gateway.get_source(camera_id)
    return HTMLResponse(render_single_camera(source), headers=PAGE_HEADERS)


# =============================================================================
# API
# =============================================================================


@router.get("/api/cameras")
async def list_cameras(request: Request):
    """List configured cameras with their stream and viewer URLs."""
    gateway: TranscodeGateway = request.app.state.gateway
    cameras = [
        {
            "id": source.id,
            "name": source.name,
            "description": source.description,
            "stream_url": f"/stream/{source.id}",
            "viewer_url": f"/camera/{source.id}",
        }
        for source in gateway.sources.values()
    ]
    return JSONResponse(cameras, headers=API_HEADERS)


@router.get("/api/status")
async def status(request: Request):
    """Tunnel state and active stream count."""
    gateway: TranscodeGateway = request.app.state.gateway
    tunnel: TunnelManager | None = request.app.state.tunnel

    if tunnel is not None:
        tunnel_status = tunnel.session.snapshot()
        tunnel_status["public_url"] = tunnel.public_url()
        tunnel_status["active_relays"] = tunnel.active_relays
    else:
        tunnel_status = {"state": TunnelState.IDLE.value}

    return JSONResponse(
        {
            "version": camrelay.__version__,
            "tunnel": tunnel_status,
            "streams": {
                "active": gateway.active_count,
                "limit": gateway.settings.MAX_CONCURRENT_STREAMS,
            },
            "cameras": len(gateway.sources),
        },
        headers=API_HEADERS,
    )


# =============================================================================
# Stream
# =============================================================================


@router.get("/stream/{camera_id}")
async def stream_camera(request: Request, camera_id: str = Path(...)):
    """
    Transcode one camera to fragmented MP4 for this request only.

    The transcoder is stopped when the client disconnects or the server
    shuts down.
    """
    gateway: TranscodeGateway = request.app.state.gateway
    client = request.client.host if request.client else "unknown"
    logger.info(f"Stream request for camera {camera_id} from {client}")
    return await gateway.handle(camera_id)


# =============================================================================
# Error Handlers
# =============================================================================


async def gateway_error_handler(request: Request, exc: GatewayError):
    """Map gateway errors to HTTP status codes."""
    if isinstance(exc, SourceNotFound):
        status_code = 404
    elif isinstance(exc, StreamCapacityExceeded):
        status_code = 503
    elif isinstance(exc, ProcessStartFailed):
        status_code = 500
    else:
        status_code = 500
        logger.error(f"Unhandled gateway error on {request.url.path}: {exc}")
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


# =============================================================================
# Application Factory
# =============================================================================


def create_app(
    camera_config: CameraConfig,
    gateway: TranscodeGateway,
    tunnel: TunnelManager | None = None,
) -> FastAPI:
    """
    Build the front door application.

    Args:
        camera_config: Loaded configuration document.
        gateway: Transcode gateway over the configured sources.
        tunnel: Tunnel manager, reported by /api/status when present.
    """
    app = FastAPI(
        title="CamRelay",
        description="Camera stream relay",
        version=camrelay.__version__,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    app.state.camera_config = camera_config
    app.state.gateway = gateway
    app.state.tunnel = tunnel

    app.include_router(router)
    app.add_exception_handler(GatewayError, gateway_error_handler)  # type: ignore[arg-type]
    return app
