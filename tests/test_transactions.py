"""
Tests for TransactionQueue: enqueue, drain and offline submit.
"""

import asyncio

import httpx
import pytest

from bodega.errors import LocalStoreError
from bodega.models import RetryPolicy
from bodega.tasks.transactions import TransactionQueue

from conftest import BrokenStore


def _ids(items):
    return [item.payload["id"] for item in items]


class TestEnqueue:
    @pytest.mark.asyncio
    async def test_returns_new_pending_count(self, store):
        queue = TransactionQueue(store)
        assert await queue.enqueue({"action": "IN", "id": "1", "quantity": 1}) == 1
        assert await queue.enqueue({"action": "IN", "id": "2", "quantity": 1}) == 2
        assert await queue.pending_count() == 2

    @pytest.mark.asyncio
    async def test_persists_payload_and_timestamp(self, store):
        queue = TransactionQueue(store)
        payload = {"action": "OUT", "id": "7", "quantity": 2}
        await queue.enqueue(payload)

        raw = store.data["pending_txs"]
        assert raw[0]["payload"] == payload
        assert isinstance(raw[0]["timestamp"], int)
        assert raw[0]["timestamp"] > 1_600_000_000_000 # milliseconds

    @pytest.mark.asyncio
    async def test_payload_is_copied(self, store):
        queue = TransactionQueue(store)
        payload = {"action": "IN", "id": "1", "quantity": 1}
        await queue.enqueue(payload)
        payload["quantity"] = 99

        pending = await queue.pending()
        assert pending[0].payload["quantity"] == 1

    @pytest.mark.asyncio
    async def test_store_failure_is_surfaced(self):
        queue = TransactionQueue(BrokenStore())
        with pytest.raises(LocalStoreError):
            await queue.enqueue({"action": "IN", "id": "1"})

    @pytest.mark.asyncio
    async def test_pending_count_has_no_side_effects(self, store):
        queue = TransactionQueue(store)
        await queue.enqueue({"action": "IN", "id": "1"})
        writes = store.writes
        assert await queue.pending_count() == 1
        assert await queue.pending_count() == 1
        assert store.writes == writes


class TestDrain:
    @pytest.mark.asyncio
    async def test_all_accepted(self, store, service, client):
        queue = TransactionQueue(store, client)
        for i in range(5):
            await queue.enqueue({"action": "IN", "id": str(i), "quantity": 1})

        assert await queue.drain() == 5
        assert await queue.pending_count() == 0
        assert [p["id"] for p in service.posts] == ["0", "1", "2", "3", "4"]

    @pytest.mark.asyncio
    async def test_rejected_items_kept_in_order(self, store, service, client):
        queue = TransactionQueue(store, client)
        for i in range(6):
            await queue.enqueue({"action": "IN", "id": str(i), "quantity": 1})
        service.reject = {1, 3, 4}

        assert await queue.drain() == 3
        assert _ids(await queue.pending()) == ["1", "3", "4"]

    @pytest.mark.asyncio
    async def test_empty_queue_is_noop(self, store, service, client):
        queue = TransactionQueue(store, client)
        writes = store.writes

        assert await queue.drain() == 0
        assert service.attempts == 0
        assert service.gets == 0
        assert store.writes == writes

    @pytest.mark.asyncio
    async def test_offline_keeps_order(self, store, service, client):
        queue = TransactionQueue(store, client)
        await queue.enqueue({"action": "IN", "id": "A"})
        await queue.enqueue({"action": "OUT", "id": "B"})
        service.online = False

        assert await queue.drain() == 0
        assert _ids(await queue.pending()) == ["A", "B"]

    @pytest.mark.asyncio
    async def test_retained_payload_unchanged(self, store, service, client):
        queue = TransactionQueue(store, client)
        payload = {"action": "OUT", "id": "7", "quantity": 2, "user": "WebUser"}
        await queue.enqueue(payload)
        before = await queue.pending()
        service.online = False

        await queue.drain()
        after = await queue.pending()
        assert after[0].payload == payload
        assert after[0].timestamp == before[0].timestamp
        assert after[0].attempts == 1

    @pytest.mark.asyncio
    async def test_app_level_error_counts_as_sent(self, store, service, client):
        """Replay only looks at the HTTP status."""
        queue = TransactionQueue(store, client)
        await queue.enqueue({"action": "OUT", "id": "404"})
        service.post_status = "error"

        assert await queue.drain() == 1
        assert await queue.pending_count() == 0

    @pytest.mark.asyncio
    async def test_items_enqueued_during_drain_survive(self, store, service, client):
        queue = TransactionQueue(store, client)
        await queue.enqueue({"action": "IN", "id": "first"})
        await queue.enqueue({"action": "IN", "id": "second"})
        service.reject = {1}

        def enqueue_late(request):
            if service.attempts == 0:
                # A scan that lands while the drain is waiting on the network
                store.data["pending_txs"].append(
                    {"payload": {"action": "IN", "id": "late"}, "timestamp": 1, "attempts": 0}
                )

        service.on_request = enqueue_late

        assert await queue.drain() == 1
        assert _ids(await queue.pending()) == ["second", "late"]

    @pytest.mark.asyncio
    async def test_concurrent_drain_is_skipped(self, store, service, client):
        queue = TransactionQueue(store, client)
        for i in range(3):
            await queue.enqueue({"action": "IN", "id": str(i)})

        first, second = await asyncio.gather(queue.drain_detailed(), queue.drain_detailed())

        assert sorted([first.skipped, second.skipped]) == [False, True]
        assert service.attempts == 3
        assert await queue.pending_count() == 0

    @pytest.mark.asyncio
    async def test_max_attempts_moves_to_dead_letters(self, store, service, client):
        queue = TransactionQueue(store, client, policy=RetryPolicy(max_attempts=2))
        await queue.enqueue({"action": "IN", "id": "stuck"})
        service.online = False

        await queue.drain()
        assert await queue.pending_count() == 1
        result = await queue.drain_detailed()

        assert result.dead_lettered == 1
        assert await queue.pending_count() == 0
        assert _ids(await queue.dead_letters()) == ["stuck"]

    @pytest.mark.asyncio
    async def test_unlimited_retries_by_default(self, store, service, client):
        queue = TransactionQueue(store, client, policy=RetryPolicy(max_attempts=None))
        await queue.enqueue({"action": "IN", "id": "stuck"})
        service.online = False

        for _ in range(10):
            await queue.drain()
        assert await queue.pending_count() == 1
        assert (await queue.pending())[0].attempts == 10


class TestSubmit:
    @pytest.mark.asyncio
    async def test_success_is_not_queued(self, store, service, client):
        queue = TransactionQueue(store, client)
        result = await queue.submit({"action": "IN", "id": "7", "quantity": 1})

        assert result.ok
        assert await queue.pending_count() == 0

    @pytest.mark.asyncio
    async def test_network_error_queues(self, store, service, client):
        queue = TransactionQueue(store, client)
        service.online = False
        result = await queue.submit({"action": "IN", "id": "7", "quantity": 1})

        assert result.status == "offline"
        assert result.message == "Guardado sin conexión"
        assert result.queued
        assert await queue.pending_count() == 1

    @pytest.mark.asyncio
    async def test_server_error_queues(self, store, service, client):
        queue = TransactionQueue(store, client)
        service.reject = {0}
        result = await queue.submit({"action": "IN", "id": "7"})

        assert result.queued
        assert await queue.pending_count() == 1

    @pytest.mark.asyncio
    async def test_malformed_response_queues(self, store, service, client):
        queue = TransactionQueue(store, client)

        service.override = lambda request: httpx.Response(200, text="<html>Sign in</html>")
        result = await queue.submit({"action": "IN", "id": "7"})

        assert result.queued
        assert await queue.pending_count() == 1

    @pytest.mark.asyncio
    async def test_remote_rejection_is_returned(self, store, service, client):
        queue = TransactionQueue(store, client)
        service.post_status = "error"
        result = await queue.submit({"action": "OUT", "id": "999"})

        assert result.status == "error"
        assert result.message == "ID no existe"
        assert await queue.pending_count() == 0


@pytest.mark.asyncio
async def test_offline_then_online_end_to_end(store, service, client):
    queue = TransactionQueue(store, client)
    service.online = False

    await queue.submit({"action": "OUT", "id": "7", "quantity": 2})
    assert await queue.pending_count() == 1

    service.online = True
    assert await queue.drain() == 1
    assert await queue.pending_count() == 0
    assert service.posts == [{"action": "OUT", "id": "7", "quantity": 2}]
