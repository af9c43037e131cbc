"""Tests for project file store adapters."""

from __future__ import annotations

import httpx
import pytest
import respx

from preview_gateway.config import Settings
from preview_gateway.file_store import HttpProjectFileStore, NullFileStore, build_file_store

BASE_URL = "http://files.internal/api"


class TestHttpProjectFileStore:
    @pytest.mark.asyncio
    @respx.mock
    async def test_read(self):
        route = respx.get(f"{BASE_URL}/projects/proj-1/files/src/app.tsx").mock(
            return_value=httpx.Response(200, content=b"export default 1")
        )
        async with httpx.AsyncClient() as client:
            store = HttpProjectFileStore(client, f"{BASE_URL}/", service_token="svc")
            content = await store.read("proj-1", "/src/app.tsx")

        assert content == b"export default 1"
        assert route.calls.last.request.headers["x-internal-service-token"] == "svc"

    @pytest.mark.asyncio
    @respx.mock
    async def test_read_missing(self):
        respx.get(f"{BASE_URL}/projects/proj-1/files/missing.css").mock(
            return_value=httpx.Response(404)
        )
        async with httpx.AsyncClient() as client:
            store = HttpProjectFileStore(client, BASE_URL)
            assert await store.read("proj-1", "/missing.css") is None

    @pytest.mark.asyncio
    @respx.mock
    async def test_read_server_error_raises(self):
        respx.get(f"{BASE_URL}/projects/proj-1/files/a.css").mock(return_value=httpx.Response(500))
        async with httpx.AsyncClient() as client:
            with pytest.raises(httpx.HTTPStatusError):
                await HttpProjectFileStore(client, BASE_URL).read("proj-1", "a.css")

    @pytest.mark.asyncio
    @respx.mock
    async def test_list_files_shapes(self):
        respx.get(f"{BASE_URL}/projects/proj-1/files").mock(
            return_value=httpx.Response(
                200, json={"files": ["package.json", {"path": "src/index.ts"}, {"name": "x"}]}
            )
        )
        async with httpx.AsyncClient() as client:
            files = await HttpProjectFileStore(client, BASE_URL).list_files("proj-1")

        assert files == ["package.json", "src/index.ts"]

    @pytest.mark.asyncio
    @respx.mock
    async def test_list_files_plain_list(self):
        respx.get(f"{BASE_URL}/projects/proj-1/files").mock(
            return_value=httpx.Response(200, json=["a.txt"])
        )
        async with httpx.AsyncClient() as client:
            assert await HttpProjectFileStore(client, BASE_URL).list_files("proj-1") == ["a.txt"]


class TestBuildFileStore:
    @pytest.mark.asyncio
    async def test_null_store_without_url(self):
        async with httpx.AsyncClient() as client:
            store = build_file_store(Settings(file_store_url=None), client)

        assert isinstance(store, NullFileStore)
        assert await store.read("proj-1", "/a.css") is None
        assert await store.list_files("proj-1") == []

    @pytest.mark.asyncio
    async def test_http_store_with_url(self):
        async with httpx.AsyncClient() as client:
            store = build_file_store(Settings(file_store_url=BASE_URL), client)

        assert isinstance(store, HttpProjectFileStore)
