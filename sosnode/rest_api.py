"""
SOS REST API

JSON/HTTP interface to the node. Every request reads the node through its
liveness guard, so requests that arrive after teardown began get a 503.
"""

from __future__ import annotations

import logging

from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import Route

from sosnode.exceptions import NodeUnavailableError, StorageError
from sosnode.frontend import FrontEnd, FrontEndContext

logger = logging.getLogger(__name__)

OCTET_STREAM = "application/octet-stream"


def _unavailable(e: NodeUnavailableError) -> JSONResponse:
    return JSONResponse({"error": str(e)}, status_code=503)


class RestAPI(FrontEnd):
    """REST front end bound to the node's own port."""

    name = "REST API"

    def create_app(self, context: FrontEndContext) -> Starlette:
        """Create the Starlette ASGI application."""
        node = context.node

        async def handle_ping(request: Request) -> Response:
            return JSONResponse({"pong": True})

        async def handle_info(request: Request) -> Response:
            try:
                with node.use():
                    return JSONResponse(node.info())
            except NodeUnavailableError as e:
                return _unavailable(e)

        async def handle_stats(request: Request) -> Response:
            try:
                with node.use():
                    return JSONResponse(node.storage.stats())
            except NodeUnavailableError as e:
                return _unavailable(e)

        async def handle_add_data(request: Request) -> Response:
            body = await request.body()
            try:
                with node.use():
                    if node.agent is None:
                        return JSONResponse({"error": "Agent service disabled"}, status_code=403)
                    guid = node.agent.add_data(body)
            except NodeUnavailableError as e:
                return _unavailable(e)
            except StorageError as e:
                logger.error(f"Failed to store {len(body)} bytes: {e}")
                return JSONResponse({"error": str(e)}, status_code=500)

            logger.info(f"Stored {len(body)} bytes as {guid}")
            return JSONResponse({"guid": guid, "size": len(body)}, status_code=201)

        async def handle_get_data(request: Request) -> Response:
            guid = request.path_params["guid"]
            try:
                with node.use():
                    data = node.storage.get(guid)
            except NodeUnavailableError as e:
                return _unavailable(e)
            except StorageError as e:
                return JSONResponse({"error": str(e)}, status_code=404)

            return Response(content=data, media_type=OCTET_STREAM)

        routes = [
            Route("/sos/ping", handle_ping),
            Route("/sos/info", handle_info),
            Route("/sos/storage/stats", handle_stats),
            Route("/sos/storage/data", handle_add_data, methods=["POST"]),
            Route("/sos/storage/data/guid/{guid}", handle_get_data),
        ]

        return Starlette(routes=routes)
