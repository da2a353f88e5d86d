"""
SOS Web UI

Small HTML interface for browsing the node: a summary page, raw data by
GUID and, when started with a filesystem, a directory browser.
"""

from __future__ import annotations

import html
import logging
import posixpath
from urllib.parse import quote

from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import HTMLResponse, Response
from starlette.routing import Route

from sosnode.exceptions import FileSystemError, NodeUnavailableError, StorageError
from sosnode.frontend import FrontEnd, FrontEndContext

logger = logging.getLogger(__name__)

PAGE_TEMPLATE = '''<!DOCTYPE html>
<html>
<head>
  <meta charset="utf-8">
  <title>{title}</title>
</head>
<body>
  <h1>{title}</h1>
{body}
</body>
</html>
'''


def render_page(title: str, body: str) -> str:
    """Wrap pre-escaped body HTML in the page template."""
    return PAGE_TEMPLATE.format(title=html.escape(title), body=body)


def _error_page(status_code: int, message: str) -> HTMLResponse:
    return HTMLResponse(render_page("Error", f"  <p>{html.escape(message)}</p>"), status_code=status_code)


class WebApp(FrontEnd):
    """Web UI front end, optionally bound to the filesystem bridge."""

    name = "WebApp"

    def create_app(self, context: FrontEndContext) -> Starlette:
        """Create the Starlette ASGI application."""
        node = context.node
        filesystem = context.filesystem

        async def handle_index(request: Request) -> Response:
            try:
                with node.use():
                    info = node.info()
                    stats = node.storage.stats()
                    data = node.storage.list_data()
            except NodeUnavailableError as e:
                return _error_page(503, str(e))

            rows = "\n".join(
                f"    <tr><th>{html.escape(str(k))}</th><td>{html.escape(str(v))}</td></tr>"
                for k, v in {**info, **stats}.items()
            )
            links = "\n".join(
                f'    <li><a href="/data/{quote(g)}">{html.escape(g)}</a></li>' for g in data
            )
            body = f"  <table>\n{rows}\n  </table>\n  <h2>Data</h2>\n  <ul>\n{links}\n  </ul>"
            if filesystem is not None:
                body += f'\n  <p><a href="/fs/">Browse filesystem {html.escape(filesystem.root)}</a></p>'
            return HTMLResponse(render_page(f"SOS node {info['name']}", body))

        async def handle_data(request: Request) -> Response:
            guid = request.path_params["guid"]
            try:
                with node.use():
                    data = node.storage.get(guid)
            except NodeUnavailableError as e:
                return _error_page(503, str(e))
            except StorageError as e:
                return _error_page(404, str(e))
            return Response(content=data, media_type="application/octet-stream")

        async def handle_fs(request: Request) -> Response:
            if filesystem is None:
                return _error_page(404, "No filesystem attached to this web UI")

            path = "/" + request.path_params.get("path", "")
            try:
                with node.use():
                    if not filesystem.is_dir(path):
                        data = filesystem.read(path)
                        return Response(content=data, media_type="application/octet-stream")
                    children = filesystem.list_dir(path)
            except NodeUnavailableError as e:
                return _error_page(503, str(e))
            except (FileSystemError, StorageError) as e:
                return _error_page(404, str(e))

            items = []
            for child, entry in children:
                href = quote(posixpath.join("/fs", path.lstrip("/"), child))
                label = child + "/" if entry["type"] == "directory" else child
                size = f" ({entry['size']} bytes)" if entry["type"] == "file" else ""
                items.append(f'    <li><a href="{href}">{html.escape(label)}</a>{size}</li>')
            body = "  <ul>\n" + "\n".join(items) + "\n  </ul>"
            return HTMLResponse(render_page(f"Index of {path}", body))

        routes = [
            Route("/", handle_index),
            Route("/data/{guid}", handle_data),
            Route("/fs", handle_fs),
            Route("/fs/{path:path}", handle_fs),
        ]

        return Starlette(routes=routes)
