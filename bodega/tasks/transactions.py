import asyncio
import httpx
import logging
from typing import Any

from bodega import config
from bodega.errors import RemoteUnavailableError
from bodega.models import DrainResult, PendingTransaction, RetryPolicy, TransactionResult
from bodega.utils.inventory_api import get_api_url, post_transaction, send_raw
from bodega.worker import celery_app

logger = logging.getLogger(__name__)

DRAIN_LOCK = "bodega:drain"


def _load(raw) -> list[PendingTransaction]:
    return [PendingTransaction.model_validate(item) for item in raw or []]


def _dump(items: list[PendingTransaction]) -> list[dict]:
    return [item.model_dump() for item in items]


class TransactionQueue:
    """Pending transactions waiting for the remote service, persisted under PENDING_KEY.

    Entries are appended by enqueue() and only ever removed by drain(), one
    drain at a time. Both go through store.mutate(), so the persisted list is
    re-read right before every write.
    """

    def __init__(self, store, client: httpx.AsyncClient | None = None, policy: RetryPolicy | None = None):
        self.store = store
        self.client = client
        self.policy = policy or RetryPolicy()
        self._drain_lock = asyncio.Lock()
        self.last_drain: DrainResult | None = None

    async def enqueue(self, payload: dict[str, Any]) -> int:
        """Appends a transaction and returns the new pending count.

        LocalStoreError propagates: if we cannot persist, the caller must know.
        """
        item = PendingTransaction(payload=dict(payload))
        pending = await self.store.mutate(
            config.PENDING_KEY, lambda raw: (raw or []) + [item.model_dump()], []
        )
        logger.info(f"Queued {payload.get('action')} for item {payload.get('id')} ({len(pending)} pending)")
        return len(pending)

    async def pending(self) -> list[PendingTransaction]:
        return _load(await self.store.get(config.PENDING_KEY, []))

    async def pending_count(self) -> int:
        return len(await self.store.get(config.PENDING_KEY, []) or [])

    async def dead_letters(self) -> list[PendingTransaction]:
        return _load(await self.store.get(config.DEAD_LETTER_KEY, []))

    @property
    def draining(self) -> bool:
        return self._drain_lock.locked()

    async def drain(self) -> int:
        """Resends everything queued, oldest first. Returns how many went through."""
        result = await self.drain_detailed()
        return result.sent

    async def drain_detailed(self) -> DrainResult:
        if self._drain_lock.locked():
            logger.info("Drain already in progress, skipping.")
            return DrainResult(skipped=True)

        async with self._drain_lock:
            async with self.store.exclusive(DRAIN_LOCK) as acquired:
                if not acquired:
                    logger.info("Drain is running in another process, skipping.")
                    return DrainResult(skipped=True)
                result = await self._drain()
        self.last_drain = result
        return result

    async def _drain(self) -> DrainResult:
        snapshot = await self.pending()
        if not snapshot:
            return DrainResult()

        url = await get_api_url(self.store)
        logger.info(f"Draining {len(snapshot)} pending transactions to {url}")

        retained: list[PendingTransaction] = []
        dead: list[PendingTransaction] = []
        sent = 0
        # One at a time: the sheet behind the service has no write isolation
        for item in snapshot:
            try:
                await send_raw(url, item.payload, self.client)
                sent += 1
            except RemoteUnavailableError as e:
                failed = item.model_copy(update={"attempts": item.attempts + 1})
                if self.policy.max_attempts and failed.attempts >= self.policy.max_attempts:
                    logger.warning(f"Transaction {item.payload.get('action')} {item.payload.get('id')} "
                                   f"reached max attempts ({self.policy.max_attempts}). Moving to dead letters. Last error: {e}")
                    dead.append(failed)
                else:
                    retained.append(failed)

        def replace(raw):
            latest = raw or []
            if len(latest) < len(snapshot):
                logger.error(f"Pending queue shrank during drain ({len(latest)} < {len(snapshot)}).")
            # Anything past the snapshot was enqueued while we were sending
            return _dump(retained) + latest[len(snapshot):]

        remaining = await self.store.mutate(config.PENDING_KEY, replace, [])
        if dead:
            await self.store.mutate(
                config.DEAD_LETTER_KEY, lambda raw: (raw or []) + _dump(dead), []
            )

        logger.info(f"Drain finished: {sent} sent, {len(retained)} retained, {len(dead)} dead-lettered, "
                    f"{len(remaining)} pending.")
        return DrainResult(sent=sent, retained=len(retained), dead_lettered=len(dead))

    async def submit(self, payload: dict[str, Any]) -> TransactionResult:
        """Sends a transaction now, or queues it if the service cannot be reached.

        A remote rejection (status other than "success") is returned to the
        caller untouched; only transport-level failures are queued.
        """
        url = await get_api_url(self.store)
        try:
            return await post_transaction(url, payload, self.client)
        except RemoteUnavailableError as e:
            logger.warning(f"Could not submit {payload.get('action')} for item {payload.get('id')}: {e}. Saving offline.")
        await self.enqueue(payload)
        return TransactionResult(status="offline", message="Guardado sin conexión")


# --- Celery tasks ---

async def _drain_with_pool() -> int:
    from bodega.db import PostgresStore, close_db_pool, init_db_pool

    await init_db_pool()
    try:
        return await TransactionQueue(PostgresStore()).drain()
    finally:
        await close_db_pool()


@celery_app.task(name="drain_pending_transactions")
def drain_pending_transactions():
    """Celery task: periodic replay of the pending queue."""
    logger.info("Running drain_pending_transactions task")
    try:
        sent = asyncio.run(_drain_with_pool())
    except Exception:
        logger.exception("Drain task failed")
        return 0
    logger.info(f"drain_pending_transactions sent {sent} transactions")
    return sent
