"""
Tests for the sync orchestrator: pagination, batching and failure handling.
"""

from unittest.mock import Mock

import pytest

from ordersync.adapters.marketplace import MarketplaceRetryableError
from ordersync.sync.batch import empty_batch_stats
from ordersync.sync.orchestrator import SyncOrchestrator
from ordersync.utils.rate_limit import RateLimiter


def _orders(prefix, count):
    return [{"id": f"{prefix}{i}", "status": "AWAITING_SHIPMENT"} for i in range(count)]


def _processor():
    processor = Mock()

    def _process(batch):
        stats = empty_batch_stats()
        stats["orders_received"] = len(batch)
        stats["orders_inserted"] = len(batch)
        return stats

    processor.process.side_effect = _process
    return processor


class TestSyncOrchestrator:
    @pytest.fixture
    def sleeps(self):
        return []

    @pytest.fixture
    def limiter(self, sleeps):
        return RateLimiter("test", sleep=sleeps.append)

    def test_batches_of_fixed_size(self, fake_client_factory, limiter, sleeps):
        client = fake_client_factory(pages=[_orders("A", 50), _orders("B", 50), _orders("C", 20)])
        processor = _processor()
        orchestrator = SyncOrchestrator(
            client, processor, rate_limiter=limiter, batch_size=50, batch_delay=0.5
        )

        result = orchestrator.run({"update_time_ge": 1}, page_size=50)

        assert [len(call.args[0]) for call in processor.process.call_args_list] == [50, 50, 20]
        assert result["orders_fetched"] == 120
        assert result["orders_processed"] == 120
        assert result["pages_processed"] == 3
        assert result["batches_processed"] == 3
        assert result["orders_inserted"] == 120
        # Pause between batches only
        assert sleeps == [0.5, 0.5]
        assert [call["page_token"] for call in client.list_calls] == [None, "1", "2"]

    def test_page_failure_keeps_fetched_orders(self, fake_client_factory, limiter):
        client = fake_client_factory(
            pages=[_orders("A", 3), MarketplaceRetryableError("Server error: 503", status_code=503)]
        )
        processor = _processor()

        result = SyncOrchestrator(client, processor, rate_limiter=limiter).run({}, page_size=3)

        assert result["pages_processed"] == 1
        assert result["orders_processed"] == 3
        processor.process.assert_called_once()

    def test_first_page_failure_processes_nothing(self, fake_client_factory, limiter):
        client = fake_client_factory(pages=[MarketplaceRetryableError("Rate limit exceeded")])
        processor = _processor()

        result = SyncOrchestrator(client, processor, rate_limiter=limiter).run({}, page_size=50)

        assert result["pages_processed"] == 0
        assert result["orders_processed"] == 0
        processor.process.assert_not_called()

    def test_batch_failure_propagates(self, fake_client_factory, limiter):
        client = fake_client_factory(pages=[_orders("A", 5)])
        processor = Mock()
        processor.process.side_effect = RuntimeError("database unavailable")

        with pytest.raises(RuntimeError, match="database unavailable"):
            SyncOrchestrator(client, processor, rate_limiter=limiter).run({}, page_size=50)

    def test_client_side_filter_and_skipped_orders(self, fake_client_factory, limiter):
        orders = _orders("A", 4)
        orders[1]["status"] = "CANCELLED"
        client = fake_client_factory(pages=[orders])
        processor = Mock()
        stats = empty_batch_stats()
        stats["orders_skipped"] = 1
        stats["status_changes"] = [{"order_id": "A0", "old_status": "X", "new_status": "Y"}]
        processor.process.return_value = stats

        result = SyncOrchestrator(client, processor, rate_limiter=limiter).run(
            {}, page_size=50, order_filter=lambda o: o["status"] != "CANCELLED"
        )

        assert result["orders_fetched"] == 4
        assert len(processor.process.call_args.args[0]) == 3
        assert result["orders_processed"] == 2
        assert result["orders_skipped"] == 1
        assert result["status_changes"] == stats["status_changes"]

    def test_sync_by_order_ids_fetches_in_chunks(self, fake_client_factory, limiter):
        orders = _orders("A", 120)
        client = fake_client_factory(orders_by_id={order["id"]: order for order in orders})
        processor = _processor()
        order_ids = [order["id"] for order in orders] + ["A0", "MISSING"]

        result = SyncOrchestrator(client, processor, rate_limiter=limiter).run(
            {}, page_size=50, order_ids=order_ids
        )

        assert [len(call) for call in client.get_orders_calls] == [50, 50, 21]
        assert client.list_calls == []
        assert result["orders_fetched"] == 120
        assert result["orders_processed"] == 120
        assert result["pages_processed"] == 3
        assert [len(call.args[0]) for call in processor.process.call_args_list] == [50, 50, 20]

    def test_order_id_chunk_failure_keeps_fetched_orders(self, limiter):
        client = Mock()
        client.get_orders.side_effect = [
            _orders("A", 50),
            MarketplaceRetryableError("Server error: 503", status_code=503),
        ]
        processor = _processor()

        result = SyncOrchestrator(client, processor, rate_limiter=limiter).run(
            {}, page_size=50, order_ids=[f"A{i}" for i in range(80)]
        )

        assert client.get_orders.call_count == 2
        assert result["pages_processed"] == 1
        assert result["orders_processed"] == 50

    def test_invalid_batch_size(self, fake_client_factory):
        with pytest.raises(ValueError):
            SyncOrchestrator(fake_client_factory(), Mock(), batch_size=0)
