import asyncio
import httpx
import logging
from enum import Enum
from typing import Callable

from pydantic import BaseModel

from bodega.errors import LocalStoreError, RemoteUnavailableError
from bodega.models import Product, RetryPolicy
from bodega.tasks.transactions import TransactionQueue
from bodega.utils.inventory_api import fetch_products, get_api_url

logger = logging.getLogger(__name__)


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class SyncStatus(BaseModel):
    """What the UI needs to draw the status pill."""

    state: ConnectionState
    pending_count: int
    last_drain_count: int
    product_count: int

    @property
    def queued(self) -> bool:
        return self.pending_count > 0

    @property
    def text(self) -> str:
        if self.queued:
            return f"Cola: {self.pending_count} items"
        if self.state == ConnectionState.CONNECTED:
            return f"Conectado ({self.product_count} productos)"
        if self.state == ConnectionState.CONNECTING:
            return "Conectando..."
        return "Modo Offline"


class SyncLoop:
    """Drains the queue and probes the remote service on start, on a timer and when back online.

    Only one pass runs at a time; a tick that fires while a pass is in flight is dropped.
    """

    def __init__(self, queue: TransactionQueue, policy: RetryPolicy | None = None,
                 client: httpx.AsyncClient | None = None):
        self.queue = queue
        self.policy = policy or queue.policy
        self.client = client if client is not None else queue.client
        self.state = ConnectionState.DISCONNECTED
        self.pending_count = 0
        self.last_drain_count = 0
        self.products: list[Product] = []
        self.consecutive_failures = 0
        self._listeners: list[Callable[[SyncStatus], None]] = []
        self._in_flight = False
        self._wakeup = asyncio.Event()
        self._stopped = False

    # --- Observable state ---

    @property
    def queued(self) -> bool:
        return self.pending_count > 0

    @property
    def status(self) -> SyncStatus:
        return SyncStatus(
            state=self.state,
            pending_count=self.pending_count,
            last_drain_count=self.last_drain_count,
            product_count=len(self.products),
        )

    def subscribe(self, callback: Callable[[SyncStatus], None]) -> Callable[[], None]:
        """Registers a status listener; returns a function that unregisters it."""
        self._listeners.append(callback)
        return lambda: self._listeners.remove(callback)

    def _set_state(self, state: ConnectionState):
        self.state = state
        self._emit()

    def _emit(self):
        status = self.status
        for callback in list(self._listeners):
            try:
                callback(status)
            except Exception:
                logger.exception("Status listener failed")

    # --- Sync pass ---

    async def check_connection(self) -> bool:
        """Probes the service with a product list GET and refreshes the local product cache."""
        self._set_state(ConnectionState.CONNECTING)
        try:
            url = await get_api_url(self.queue.store)
            products = await fetch_products(url, self.client)
        except (RemoteUnavailableError, LocalStoreError) as e:
            logger.warning(f"Connectivity check failed: {e}")
            self._set_state(ConnectionState.DISCONNECTED)
            return False
        self.products = products
        try:
            self.pending_count = await self.queue.pending_count()
        except LocalStoreError as e:
            logger.error(f"Could not read pending count from local store: {e}")
        self._set_state(ConnectionState.CONNECTED)
        return True

    async def sync_once(self) -> bool | None:
        """One drain + probe. Returns the probe outcome, or None if a pass was already running."""
        if self._in_flight:
            logger.info("Sync pass already in flight, skipping tick.")
            return None
        self._in_flight = True
        try:
            self._set_state(ConnectionState.CONNECTING)
            try:
                drained = await self.queue.drain_detailed()
                if not drained.skipped:
                    self.last_drain_count = drained.sent
                    if drained.sent:
                        logger.info(f"Synced {drained.sent} pending transactions")
                self.pending_count = await self.queue.pending_count()
            except LocalStoreError as e:
                logger.error(f"Drain failed on local store: {e}")
            connected = await self.check_connection()
        finally:
            self._in_flight = False
        self.consecutive_failures = 0 if connected else self.consecutive_failures + 1
        return connected

    # --- Loop control ---

    def notify_online(self):
        """Back-online signal from the host; triggers a pass right away."""
        logger.info("Back online, triggering sync.")
        self._wakeup.set()

    def stop(self):
        self._stopped = True
        self._wakeup.set()

    async def run(self):
        """Runs until stop(). Never lets a failed pass end the loop."""
        self._stopped = False
        while not self._stopped:
            try:
                await self.sync_once()
            except Exception:
                logger.exception("Sync pass crashed, will retry on next tick")
                self._set_state(ConnectionState.DISCONNECTED)
            if self._stopped:
                break
            delay = self.policy.delay(self.consecutive_failures)
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass
            self._wakeup.clear()

    # --- Product lookups ---

    def search_products(self, query: str, limit: int = 5) -> list[Product]:
        """Name or id substring search over the last fetched product list."""
        query = (query or "").lower()
        if len(query) < 2:
            return []
        matches = [
            p for p in self.products
            if query in str(p.nombre).lower() or query in str(p.id)
        ]
        return matches[:limit]

    async def find_product(self, product_id: str) -> Product | None:
        """Looks a scanned id up against a fresh product list. None if unknown or offline."""
        try:
            url = await get_api_url(self.queue.store)
            products = await fetch_products(url, self.client)
        except RemoteUnavailableError as e:
            logger.warning(f"Product lookup for {product_id} failed: {e}")
            return None
        self.products = products
        return next((p for p in products if str(p.id) == str(product_id)), None)
