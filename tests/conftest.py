"""
Pytest fixtures: in-memory stores and a fake inventory service on httpx.MockTransport.
"""

import asyncio
import copy
import json
from contextlib import asynccontextmanager

import httpx
import pytest
import pytest_asyncio

from bodega.errors import LocalStoreError

API_URL = "https://inventory.test/exec"


class MemoryStore:
    """Same coroutines as PostgresStore, backed by a dict."""

    def __init__(self, data=None):
        self.data = copy.deepcopy(data or {})
        self.writes = 0
        self._locks: dict[str, asyncio.Lock] = {}

    async def get(self, key, default=None):
        return copy.deepcopy(self.data.get(key, default))

    async def set(self, key, value):
        self.writes += 1
        self.data[key] = copy.deepcopy(value)

    async def delete(self, key):
        self.writes += 1
        self.data.pop(key, None)

    async def mutate(self, key, fn, default=None):
        new_value = fn(copy.deepcopy(self.data.get(key, default)))
        self.writes += 1
        self.data[key] = copy.deepcopy(new_value)
        return new_value

    @asynccontextmanager
    async def exclusive(self, name):
        lock = self._locks.setdefault(name, asyncio.Lock())
        if lock.locked():
            yield False
            return
        async with lock:
            yield True


class BrokenStore(MemoryStore):
    """A store whose backing database is gone."""

    async def get(self, key, default=None):
        raise LocalStoreError("database is down")

    async def mutate(self, key, fn, default=None):
        raise LocalStoreError("database is down")


class MemoryCacheStorage:
    def __init__(self):
        self.caches: dict[str, dict[str, dict]] = {}

    async def versions(self):
        return sorted(self.caches)

    async def put_all(self, version, entries):
        self.caches[version] = {e["url"]: dict(e) for e in entries}

    async def match(self, version, url):
        return self.caches.get(version, {}).get(url)

    async def delete(self, version):
        self.caches.pop(version, None)


class FakeInventoryService:
    """Stand-in for the spreadsheet-backed endpoint.

    `online` False makes every request raise ConnectError. `reject` lists
    POST positions (0-based, counted across the service lifetime) that get a 500.
    """

    def __init__(self, products=None):
        self.products = products if products is not None else [
            {"id": 7, "nombre": "Guantes nitrilo", "stock": 10},
            {"id": "A12", "nombre": "Casco blanco", "stock": "3"},
        ]
        self.online = True
        self.reject: set[int] = set()
        self.post_status = "success"
        self.get_status_code = 200
        self.get_body = None
        self.posts: list[dict] = []
        self.attempts = 0
        self.gets = 0
        self.on_request = None # Called before each request is answered
        self.override = None # Callable returning a raw response for every request

    async def handler(self, request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(0) # Yield like a real network call would
        if self.on_request is not None:
            self.on_request(request)
        if self.override is not None:
            return self.override(request)
        if not self.online:
            raise httpx.ConnectError("offline", request=request)
        if request.method == "GET":
            self.gets += 1
            if self.get_body is not None:
                return httpx.Response(self.get_status_code, content=self.get_body)
            return httpx.Response(self.get_status_code, json=self.products)

        position = self.attempts
        self.attempts += 1
        payload = json.loads(request.content)
        if position in self.reject:
            return httpx.Response(500, json={"status": "error", "message": "boom"})
        self.posts.append(payload)
        if self.post_status == "success":
            return httpx.Response(200, json={"status": "success"})
        return httpx.Response(200, json={"status": self.post_status, "message": "ID no existe"})


@pytest.fixture
def store():
    return MemoryStore({"cermaq_inventory_url": API_URL})


@pytest.fixture
def service():
    return FakeInventoryService()


@pytest_asyncio.fixture
async def client(service):
    async with httpx.AsyncClient(transport=httpx.MockTransport(service.handler)) as c:
        yield c
