import asyncio
import httpx
import logging
from enum import Enum

from bodega import config
from bodega.errors import CacheInstallError
from bodega.worker import celery_app

logger = logging.getLogger(__name__)


class CacheState(str, Enum):
    INSTALLING = "installing"
    INSTALLED = "installed"
    ACTIVE = "active"
    SUPERSEDED = "superseded"


def cache_key(url: httpx.URL | str) -> str:
    """Cache lookup key: an empty path is the same resource as "/"."""
    url = httpx.URL(url)
    if url.path in ("", "/"):
        url = url.copy_with(path="/")
    return str(url)


class AssetCache:
    """Versioned offline copy of the app shell.

    Written once per version at install time; fetch() only ever reads it.
    Product data and transactions never go through here.
    """

    def __init__(self, storage, version: str = config.CACHE_NAME,
                 manifest: list[str] | None = None,
                 base_url: str = config.ASSET_BASE_URL,
                 client: httpx.AsyncClient | None = None):
        self.storage = storage
        self.version = version
        self.manifest = list(manifest if manifest is not None else config.ASSET_MANIFEST)
        self.base_url = httpx.URL(base_url)
        self.client = client
        self.state: CacheState | None = None
        self.controls_clients = False

    def resolve(self, locator: str) -> str:
        return str(self.base_url.join(locator))

    async def _fetch_asset(self, client: httpx.AsyncClient, url: str) -> dict:
        response = await client.get(url)
        response.raise_for_status()
        return {
            "url": url,
            "status": response.status_code,
            "headers": {k: v for k, v in response.headers.items()
                        if k.lower() not in ("content-encoding", "content-length", "transfer-encoding")},
            "body": response.content,
        }

    async def install(self):
        """Fetches every manifest asset and stores them under the current version.

        All or nothing: if one asset fails, nothing is written and CacheInstallError is raised.
        """
        previous_state = self.state
        self.state = CacheState.INSTALLING
        logger.info(f"Installing asset cache {self.version} ({len(self.manifest)} assets)")

        urls = []
        failed = []
        for locator in self.manifest:
            try:
                urls.append(cache_key(self.resolve(locator)))
            except httpx.InvalidURL as e:
                logger.error(f"Bad manifest locator {locator!r}: {e}")
                failed.append(locator)
        if failed:
            self.state = previous_state
            raise CacheInstallError(f"Install of {self.version} failed for {len(failed)} assets", failed)

        if self.client is not None:
            results = await asyncio.gather(
                *(self._fetch_asset(self.client, url) for url in urls), return_exceptions=True
            )
        else:
            async with httpx.AsyncClient(timeout=config.HTTP_TIMEOUT, follow_redirects=True) as client:
                results = await asyncio.gather(
                    *(self._fetch_asset(client, url) for url in urls), return_exceptions=True
                )

        for url, result in zip(urls, results):
            if isinstance(result, Exception):
                logger.error(f"Failed to cache {url}: {result!r}")
                failed.append(url)
            elif isinstance(result, BaseException):
                self.state = previous_state
                raise result
        if failed:
            self.state = previous_state
            raise CacheInstallError(f"Install of {self.version} failed for {len(failed)} assets", failed)

        await self.storage.put_all(self.version, list(results))
        self.state = CacheState.INSTALLED
        logger.info(f"Asset cache {self.version} installed.")

    async def activate(self) -> list[str]:
        """Drops every other cache version and takes over open clients. Returns what was deleted."""
        if self.state != CacheState.INSTALLED and self.version not in await self.storage.versions():
            raise CacheInstallError(f"Cannot activate {self.version}: it was never installed")
        deleted = []
        for name in await self.storage.versions():
            if name != self.version:
                await self.storage.delete(name)
                deleted.append(name)
                logger.info(f"Deleted stale asset cache {name}")
        self.state = CacheState.ACTIVE
        self.controls_clients = True
        return deleted

    async def is_current(self) -> bool:
        """False once another version's activation has purged ours."""
        if self.version in await self.storage.versions():
            return True
        if self.state in (CacheState.ACTIVE, CacheState.INSTALLED):
            self.state = CacheState.SUPERSEDED
            self.controls_clients = False
        return False

    async def refresh(self) -> list[str]:
        await self.install()
        return await self.activate()

    async def match(self, request: httpx.Request) -> httpx.Response | None:
        if request.method != "GET":
            return None
        entry = await self.storage.match(self.version, cache_key(request.url))
        if entry is None:
            return None
        return httpx.Response(
            status_code=entry["status"],
            headers=entry["headers"],
            content=entry["body"],
            request=request,
        )

    async def fetch(self, request: httpx.Request) -> httpx.Response:
        """Cache first, then network. Network responses are never stored."""
        cached = await self.match(request)
        if cached is not None:
            return cached
        if self.client is not None:
            return await self.client.send(request)
        async with httpx.AsyncClient(timeout=config.HTTP_TIMEOUT) as client:
            return await client.send(request)


# --- Celery tasks ---

async def _refresh_with_pool() -> list[str]:
    from bodega.db import PostgresCacheStorage, close_db_pool, init_db_pool

    await init_db_pool()
    try:
        return await AssetCache(PostgresCacheStorage()).refresh()
    finally:
        await close_db_pool()


@celery_app.task(name="refresh_asset_cache")
def refresh_asset_cache():
    """Celery task: install and activate the current asset cache version."""
    logger.info(f"Running refresh_asset_cache task for {config.CACHE_NAME}")
    try:
        deleted = asyncio.run(_refresh_with_pool())
    except CacheInstallError as e:
        logger.error(f"Asset cache install failed, previous version stays active: {e} ({e.failed})")
        return {"version": config.CACHE_NAME, "installed": False, "failed": e.failed}
    logger.info(f"Asset cache {config.CACHE_NAME} active, removed {deleted}")
    return {"version": config.CACHE_NAME, "installed": True, "deleted": deleted}
