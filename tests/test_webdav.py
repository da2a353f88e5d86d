"""Unit tests for the SOS WebDAV bridge."""

import xml.etree.ElementTree as ET
from unittest.mock import patch

import httpx
import pytest

from sosnode.exceptions import StorageError
from sosnode.filesystem import NodeFileSystem
from sosnode.frontend import FrontEndContext
from sosnode.guid import generate_random_guid
from sosnode.node import NodeHandle
from sosnode.orchestrator import NodeSettings, StoreConfig
from sosnode.storage import MemoryStorage
from sosnode.webdav import DAV_NS, WebDAVServer, build_multistatus

NS = {"D": DAV_NS}


class TestMultistatus:
    """Tests for PROPFIND body construction."""

    def test_collection_and_file(self):
        body = build_multistatus([
            ("/", {"type": "directory", "modified": "2024-01-02T03:04:05+00:00"}),
            ("/a b.txt", {
                "type": "file",
                "guid": "SHA256_16_abc",
                "size": 3,
                "modified": "2024-01-02T03:04:05+00:00",
            }),
        ])
        root = ET.fromstring(body)
        responses = root.findall("D:response", NS)

        assert [r.find("D:href", NS).text for r in responses] == ["/", "/a%20b.txt"]
        assert responses[0].find(".//D:resourcetype/D:collection", NS) is not None
        assert responses[1].find(".//D:getcontentlength", NS).text == "3"
        assert responses[1].find(".//D:getlastmodified", NS).text == "Tue, 02 Jan 2024 03:04:05 GMT"


class TestWebDAVServer:
    """Tests for WebDAV methods over the filesystem."""

    def test_requires_filesystem(self, node):
        with pytest.raises(ValueError):
            WebDAVServer().create_app(FrontEndContext(node=node))

    @pytest.mark.asyncio
    async def test_options(self, client):
        response = await client.request("OPTIONS", "/")
        assert response.status_code == 200
        assert response.headers["DAV"] == "1"
        assert "PROPFIND" in response.headers["Allow"]

    @pytest.mark.asyncio
    async def test_put_then_get(self, client, fs):
        """PUT creates a file that GET and the filesystem both see."""
        response = await client.put("/notes.txt", content=b"remember")
        assert response.status_code == 201

        response = await client.get("/notes.txt")
        assert response.status_code == 200
        assert response.content == b"remember"
        assert fs.read("/notes.txt") == b"remember"

        response = await client.put("/notes.txt", content=b"updated")
        assert response.status_code == 204

    @pytest.mark.asyncio
    async def test_head(self, client, fs):
        fs.write("/f", b"12345")
        response = await client.head("/f")
        assert response.status_code == 200
        assert response.headers["Content-Length"] == "5"

    @pytest.mark.asyncio
    async def test_get_missing(self, client):
        assert (await client.get("/missing")).status_code == 404

    @pytest.mark.asyncio
    async def test_mkcol(self, client, fs):
        assert (await client.request("MKCOL", "/dir")).status_code == 201
        assert fs.is_dir("/dir")
        assert (await client.request("MKCOL", "/dir")).status_code == 405
        assert (await client.request("MKCOL", "/no/parent")).status_code == 409

    @pytest.mark.asyncio
    async def test_put_without_parent(self, client):
        assert (await client.put("/no/parent.txt", content=b"x")).status_code == 409

    @pytest.mark.asyncio
    async def test_propfind_depth_1(self, client, fs):
        """PROPFIND on a collection lists itself and its children."""
        fs.mkdir("/docs")
        fs.write("/docs/a.txt", b"a")

        response = await client.request("PROPFIND", "/docs", headers={"Depth": "1"})
        assert response.status_code == 207

        root = ET.fromstring(response.content)
        hrefs = [h.text for h in root.findall("D:response/D:href", NS)]
        assert hrefs == ["/docs/", "/docs/a.txt"]

    @pytest.mark.asyncio
    async def test_propfind_depth_0(self, client, fs):
        fs.mkdir("/docs")
        fs.write("/docs/a.txt", b"a")

        response = await client.request("PROPFIND", "/docs", headers={"Depth": "0"})
        root = ET.fromstring(response.content)
        assert len(root.findall("D:response", NS)) == 1

    @pytest.mark.asyncio
    async def test_propfind_infinity_rejected(self, client):
        response = await client.request("PROPFIND", "/", headers={"Depth": "infinity"})
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_delete(self, client, fs):
        fs.mkdir("/d")
        fs.write("/d/f", b"x")

        assert (await client.delete("/d")).status_code == 204
        assert not fs.exists("/d/f")
        assert (await client.delete("/d")).status_code == 404
        assert (await client.delete("/")).status_code == 403

    @pytest.mark.asyncio
    async def test_get_storage_failure(self, client, fs, caplog):
        fs.write("/f", b"x")

        with patch.object(fs.agent, "get_data", side_effect=StorageError("No data for GUID")):
            response = await client.get("/f")

        assert response.status_code == 500
        assert "WebDAV GET /f failed" in caplog.text

    @pytest.mark.asyncio
    async def test_failed_put_not_listed(self, client, fs):
        """A PUT whose tree cannot be saved does not show up afterwards."""
        with patch.object(fs.agent, "add_manifest", side_effect=StorageError("disk full")):
            response = await client.put("/lost.txt", content=b"x")
        assert response.status_code == 507

        response = await client.request("PROPFIND", "/", headers={"Depth": "1"})
        hrefs = [h.text for h in ET.fromstring(response.content).findall("D:response/D:href", NS)]
        assert hrefs == ["/"]
        assert (await client.get("/lost.txt")).status_code == 404

    @pytest.mark.asyncio
    async def test_delete_storage_failure(self, client, fs, caplog):
        fs.write("/f", b"x")

        with patch.object(fs.agent, "add_manifest", side_effect=StorageError("disk full")):
            response = await client.delete("/f")

        assert response.status_code == 507
        assert "WebDAV DELETE /f failed" in caplog.text
        assert fs.exists("/f")

    @pytest.mark.asyncio
    async def test_after_kill(self, client, node):
        node.kill()
        assert (await client.get("/")).status_code == 503


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def node():
    settings = NodeSettings(store=StoreConfig(type="memory", location=None))
    return NodeHandle(settings, MemoryStorage())


@pytest.fixture
def fs(node):
    return NodeFileSystem(node.agent, generate_random_guid())


@pytest.fixture
def client(node, fs):
    app = WebDAVServer().create_app(FrontEndContext(node=node, filesystem=fs))
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://webdav")
