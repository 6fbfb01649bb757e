"""
Tests for tracking problem detection and the per-order timeline guard.
"""

from datetime import UTC, datetime
from unittest.mock import Mock

import pytest

from ordersync.adapters.marketplace import MarketplaceRetryableError
from ordersync.db.models import Order, OrderTrackingInfo
from ordersync.sync.tracking import (
    TrackingProblemDetector,
    extract_tracking_description,
    is_negative_tracking_description,
    prepare_tracking_event_records,
    tracking_events_indicate_problem,
)


class TestNegativeSignal:
    """Vocabulary matching."""

    @pytest.mark.parametrize(
        "description",
        [
            "Package RETURNED TO SENDER",
            "Delivery attempt was unsuccessful, will retry",
            "Your parcel couldn't be delivered",
            "Damaged in transit",
        ],
    )
    def test_negative_descriptions(self, description):
        assert is_negative_tracking_description(description) is True

    @pytest.mark.parametrize("description", ["Delivered", "Out for delivery", "", None])
    def test_neutral_descriptions(self, description):
        assert is_negative_tracking_description(description) is False

    def test_extract_description_key_order(self):
        assert extract_tracking_description({"message": "m", "description": "  d  "}) == "d"
        assert extract_tracking_description({"statusDescription": "camel"}) == "camel"
        assert extract_tracking_description({"description": "   ", "detail": "fallback"}) == "fallback"
        assert extract_tracking_description("not an event") == ""

    def test_events_indicate_problem(self):
        assert tracking_events_indicate_problem([{"description": "In transit"}]) is False
        assert tracking_events_indicate_problem([{"message": "Return to sender"}]) is True
        assert tracking_events_indicate_problem(None) is False


class TestPrepareTrackingEventRecords:
    def test_orders_oldest_first_and_numbers_events(self):
        events = [
            {"description": "Delivered", "update_time_millis": 1700000300000},
            {"description": "Picked up", "update_time_millis": 1700000100000},
            {"description": "   "},
            "garbage",
            {"description": "In transit", "update_time": 1700000200},
        ]
        records = prepare_tracking_event_records(5, events, source="marketplace")

        assert [r["description"] for r in records] == ["Picked up", "In transit", "Delivered"]
        assert [r["sequence"] for r in records] == [1, 2, 3]
        assert records[1]["update_time_milli"] == 1700000200000
        assert all(r["order_id"] == 5 and r["source"] == "marketplace" for r in records)
        assert records[0]["occurred_at"] is not None


def _add_order(session, order_id="O1"):
    order = Order(
        order_id=order_id,
        org_id="org-1",
        shop_id="shop-1",
        channel="marketplace",
        status="IN_TRANSIT",
        create_time=datetime(2024, 1, 1, tzinfo=UTC),
    )
    session.add(order)
    session.commit()
    return order


class TestTrackingProblemDetector:
    """Timeline guard state machine."""

    def test_fetches_once_and_flags_problem(self, db_session, store, fake_client_factory):
        order = _add_order(db_session)
        client = fake_client_factory(
            tracking={"O1": [{"description": "Picked up"}, {"description": "Returned to sender"}]}
        )
        detector = TrackingProblemDetector(store, client)

        first = detector.check_order(order.id, "O1")
        second = detector.check_order(order.id, "O1")

        assert first == {"problem": True, "fetched": True, "entries_created": 2}
        assert second["fetched"] is False
        assert second["problem"] is True
        assert client.tracking_calls == ["O1"]
        db_session.refresh(order)
        assert order.is_problem_in_transit is True

    def test_existing_entries_are_scanned_without_refetch(self, db_session, store):
        order = _add_order(db_session)
        db_session.add(OrderTrackingInfo(order_id=order.id, description="Delivery exception", sequence=1))
        db_session.commit()
        client = Mock()
        detector = TrackingProblemDetector(store, client)

        result = detector.check_order(order.id, "O1")

        assert result["problem"] is True
        client.get_order_tracking.assert_not_called()
        db_session.refresh(order)
        assert order.is_problem_in_transit is True

    def test_empty_tracking_is_not_an_error(self, db_session, store, fake_client_factory):
        order = _add_order(db_session)
        client = fake_client_factory()
        detector = TrackingProblemDetector(store, client)

        result = detector.check_order(order.id, "O1")

        assert result == {"problem": False, "fetched": True, "entries_created": 0}
        assert store.get_timeline_entries(order.id) == []

    def test_malformed_response_is_ignored(self, db_session, store):
        order = _add_order(db_session)
        client = Mock()
        client.get_order_tracking.return_value = {"events": "nope"}
        detector = TrackingProblemDetector(store, client)

        assert detector.check_order(order.id, "O1")["entries_created"] == 0

    def test_fetch_error_is_logged_not_raised(self, db_session, store):
        order = _add_order(db_session)
        client = Mock()
        client.get_order_tracking.side_effect = MarketplaceRetryableError("Server error: 502")
        detector = TrackingProblemDetector(store, client)

        result = detector.check_order(order.id, "O1")

        assert result == {"problem": False, "fetched": True, "entries_created": 0}
        db_session.refresh(order)
        assert order.is_problem_in_transit is False

    def test_neutral_events_are_stored_without_flag(self, db_session, store, fake_client_factory):
        order = _add_order(db_session)
        client = fake_client_factory(tracking={"O1": [{"description": "Delivered"}]})
        detector = TrackingProblemDetector(store, client)

        result = detector.check_order(order.id, "O1")

        assert result == {"problem": False, "fetched": True, "entries_created": 1}
        assert [e.description for e in store.get_timeline_entries(order.id)] == ["Delivered"]
