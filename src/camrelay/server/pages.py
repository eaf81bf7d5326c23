"""
Viewer pages served by the front door.

Pages are plain HTML strings; every value taken from the configuration
document is escaped before it is interpolated.
"""

from html import escape
from typing import Mapping

from camrelay.models.sources import SourceDescriptor

_STYLE = """
        <style>
            body {
                margin: 0;
                padding: 16px;
                background: #111;
                color: #eee;
                font-family: sans-serif;
            }
            h1 { font-size: 1.4em; margin: 0 0 12px; }
            a { color: #8cf; }
            .grid {
                display: grid;
                grid-template-columns: repeat(auto-fill, minmax(420px, 1fr));
                gap: 12px;
            }
            .camera { background: #222; padding: 8px; border-radius: 4px; }
            .camera h2 { font-size: 1em; margin: 0 0 6px; }
            .camera p { font-size: 0.85em; color: #aaa; margin: 4px 0 0; }
            video { width: 100%; background: #000; }
        </style>"""


def _camera_tile(source: SourceDescriptor) -> str:
    source_id = escape(source.id)
    return f"""
            <div class="camera">
                <h2><a href="/camera/{source_id}">{escape(source.name)}</a></h2>
                <video src="/stream/{source_id}" autoplay muted playsinline controls></video>
                <p>{escape(source.description)}</p>
            </div>"""


def render_main_viewer(sources: Mapping[str, SourceDescriptor], public_url: str) -> str:
    """Grid page showing every configured camera."""
    tiles = "".join(_camera_tile(source) for source in sources.values())
    if not tiles:
        tiles = "<p>No cameras configured.</p>"
    return f"""<!DOCTYPE html>
    <html>
    <head>
        <title>Multi-Camera CCTV Viewer</title>
        <meta charset="utf-8"/>
        <meta name="viewport" content="width=device-width, initial-scale=1">{_STYLE}
    </head>
    <body>
        <h1>Multi-Camera CCTV Viewer ({len(sources)} cameras)</h1>
        <p>Public address: {escape(public_url)}</p>
        <div class="grid">{tiles}
        </div>
    </body>
    </html>
    """


def render_single_camera(source: SourceDescriptor) -> str:
    """Full-width page for one camera."""
    return f"""<!DOCTYPE html>
    <html>
    <head>
        <title>{escape(source.name)} - Camera View</title>
        <meta charset="utf-8"/>
        <meta name="viewport" content="width=device-width, initial-scale=1">{_STYLE}
    </head>
    <body>
        <p><a href="/">&larr; All cameras</a></p>
        <h1>{escape(source.name)}</h1>
        <video src="/stream/{escape(source.id)}" autoplay muted playsinline controls></video>
        <p>{escape(source.description)}</p>
    </body>
    </html>
    """
