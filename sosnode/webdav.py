"""
SOS WebDAV Bridge

Exposes a NodeFileSystem over a class 1 WebDAV subset: OPTIONS, PROPFIND
(Depth 0 and 1), GET, HEAD, PUT, DELETE and MKCOL. No locking.
"""

from __future__ import annotations

import logging
import posixpath
import xml.etree.ElementTree as ET
from datetime import datetime
from email.utils import format_datetime
from typing import Any
from urllib.parse import quote

from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import Response
from starlette.routing import Route

from sosnode.exceptions import FileSystemError, NodeUnavailableError, StorageError
from sosnode.filesystem import NodeFileSystem, normalize_path
from sosnode.frontend import FrontEnd, FrontEndContext

logger = logging.getLogger(__name__)

DAV_NS = "DAV:"
DAV_METHODS = ["OPTIONS", "PROPFIND", "GET", "HEAD", "PUT", "DELETE", "MKCOL"]
XML_CONTENT_TYPE = 'application/xml; charset="utf-8"'

ET.register_namespace("D", DAV_NS)


def _dav(tag: str) -> str:
    return f"{{{DAV_NS}}}{tag}"


def _http_date(iso_timestamp: str) -> str:
    return format_datetime(datetime.fromisoformat(iso_timestamp), usegmt=True)


def _href(path: str, is_dir: bool) -> str:
    href = quote(path)
    if is_dir and not href.endswith("/"):
        href += "/"
    return href


def build_multistatus(entries: list[tuple[str, dict[str, Any]]]) -> bytes:
    """
    Build a PROPFIND multistatus body.

    Args:
        entries: (path, filesystem entry) pairs.
    """
    multistatus = ET.Element(_dav("multistatus"))

    for path, entry in entries:
        is_dir = entry["type"] == "directory"
        response = ET.SubElement(multistatus, _dav("response"))
        ET.SubElement(response, _dav("href")).text = _href(path, is_dir)

        propstat = ET.SubElement(response, _dav("propstat"))
        prop = ET.SubElement(propstat, _dav("prop"))
        ET.SubElement(prop, _dav("displayname")).text = posixpath.basename(path) or "/"
        resourcetype = ET.SubElement(prop, _dav("resourcetype"))
        if is_dir:
            ET.SubElement(resourcetype, _dav("collection"))
        else:
            ET.SubElement(prop, _dav("getcontentlength")).text = str(entry["size"])
            ET.SubElement(prop, _dav("getetag")).text = f'"{entry["guid"]}"'
            ET.SubElement(prop, _dav("getcontenttype")).text = "application/octet-stream"
        ET.SubElement(prop, _dav("getlastmodified")).text = _http_date(entry["modified"])
        ET.SubElement(propstat, _dav("status")).text = "HTTP/1.1 200 OK"

    return ET.tostring(multistatus, encoding="utf-8", xml_declaration=True)


class WebDAVServer(FrontEnd):
    """WebDAV front end over the node filesystem."""

    name = "WebDAV"

    def create_app(self, context: FrontEndContext) -> Starlette:
        """Create the Starlette ASGI application."""
        if context.filesystem is None:
            raise ValueError("WebDAV requires a filesystem")

        node = context.node
        filesystem = context.filesystem

        async def handle(request: Request) -> Response:
            path = normalize_path(request.path_params.get("path", ""))
            body = await request.body()
            try:
                with node.use():
                    return _dispatch(filesystem, request, path, body)
            except NodeUnavailableError as e:
                return Response(str(e), status_code=503)

        routes = [
            Route("/{path:path}", handle, methods=DAV_METHODS),
        ]

        return Starlette(routes=routes)


def _dispatch(filesystem: NodeFileSystem, request: Request, path: str, body: bytes) -> Response:
    method = request.method

    if method == "OPTIONS":
        return Response(headers={
            "DAV": "1",
            "Allow": ", ".join(DAV_METHODS),
            "MS-Author-Via": "DAV",
        })

    if method == "PROPFIND":
        return _propfind(filesystem, path, request.headers.get("depth", "1"))

    if method in ("GET", "HEAD"):
        if not filesystem.exists(path):
            return Response(status_code=404)
        if filesystem.is_dir(path):
            return Response(status_code=405, headers={"Allow": "OPTIONS, PROPFIND, DELETE"})
        entry = filesystem.stat(path)
        headers = {"ETag": f'"{entry["guid"]}"', "Last-Modified": _http_date(entry["modified"])}
        if method == "HEAD":
            headers["Content-Length"] = str(entry["size"])
            return Response(headers=headers, media_type="application/octet-stream")
        try:
            data = filesystem.read(path)
        except FileSystemError as e:
            logger.warning(f"WebDAV GET {path} rejected: {e}")
            return Response(str(e), status_code=404)
        except StorageError as e:
            logger.error(f"WebDAV GET {path} failed: {e}")
            return Response(str(e), status_code=500)
        return Response(data, headers=headers, media_type="application/octet-stream")

    if method == "PUT":
        created = not filesystem.exists(path)
        try:
            guid = filesystem.write(path, body)
        except FileSystemError as e:
            logger.warning(f"WebDAV PUT {path} rejected: {e}")
            return Response(str(e), status_code=409)
        except StorageError as e:
            logger.error(f"WebDAV PUT {path} failed: {e}")
            return Response(str(e), status_code=507)
        return Response(status_code=201 if created else 204, headers={"ETag": f'"{guid}"'})

    if method == "MKCOL":
        if body:
            return Response(status_code=415)
        if filesystem.exists(path):
            return Response(status_code=405)
        try:
            filesystem.mkdir(path)
        except FileSystemError as e:
            return Response(str(e), status_code=409)
        return Response(status_code=201)

    if method == "DELETE":
        if path == "/":
            return Response(status_code=403)
        if not filesystem.exists(path):
            return Response(status_code=404)
        try:
            filesystem.delete(path)
        except FileSystemError as e:
            logger.warning(f"WebDAV DELETE {path} rejected: {e}")
            return Response(str(e), status_code=404)
        except StorageError as e:
            logger.error(f"WebDAV DELETE {path} failed: {e}")
            return Response(str(e), status_code=507)
        return Response(status_code=204)

    return Response(status_code=405)


def _propfind(filesystem: NodeFileSystem, path: str, depth: str) -> Response:
    if depth not in ("0", "1"):
        return Response("Only Depth 0 and 1 are supported", status_code=403)
    if not filesystem.exists(path):
        return Response(status_code=404)

    entries = [(path, filesystem.stat(path))]
    if depth == "1" and filesystem.is_dir(path):
        entries += [
            (posixpath.join(path, name), entry)
            for name, entry in filesystem.list_dir(path)
        ]

    return Response(build_multistatus(entries), status_code=207, media_type=XML_CONTENT_TYPE)
