"""
Tests for the batch processor: classification, replace semantics, tracking
state dedup, package fetch tolerance and problem detection.
"""

from unittest.mock import Mock

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from ordersync.db.models import (
    AddressDistrict,
    FulfillmentTrackingState,
    Order,
    OrderLineItem,
    OrderPackage,
    OrderPayment,
    OrderRecipientAddress,
)
from ordersync.sync.batch import BatchProcessor


def _count(session, model):
    return session.scalar(select(func.count()).select_from(model))


def _detail(tracking_number, provider="UPS"):
    return {
        "package_status": "IN_TRANSIT",
        "tracking_number": tracking_number,
        "shipping_provider_id": provider.lower(),
        "shipping_provider_name": provider,
    }


class TestBatchProcessor:
    """Core reconciliation properties."""

    @pytest.fixture
    def trigger(self):
        trigger = Mock()
        trigger.notify.return_value = 1
        return trigger

    def _processor(self, store, client, trigger=None):
        return BatchProcessor(store, client, org_id="org-1", shop_id="shop-1", trigger=trigger)

    def test_new_orders_are_inserted_with_dependents(
        self, db_session, store, fake_client_factory, make_order, trigger
    ):
        client = fake_client_factory(package_details={"P1": _detail("TN-1")})
        stats = self._processor(store, client, trigger).process([make_order("O1", packages=["P1"])])

        assert stats["orders_inserted"] == 1
        assert stats["orders_updated"] == 0
        assert _count(db_session, Order) == 1
        assert _count(db_session, OrderLineItem) == 1
        assert _count(db_session, OrderPayment) == 1
        assert _count(db_session, OrderRecipientAddress) == 1
        assert _count(db_session, AddressDistrict) == 2
        assert _count(db_session, OrderPackage) == 1

        state = db_session.scalars(select(FulfillmentTrackingState)).one()
        package = db_session.scalars(select(OrderPackage)).one()
        assert state.tracking_number == "TN-1"
        assert state.provider_name == "UPS"
        assert state.org_id == "org-1"
        assert state.order_package_id == package.id
        trigger.notify.assert_called_once_with([package.order_id])

    def test_classification_counts(self, db_session, store, fake_client_factory, make_order):
        processor = self._processor(store, fake_client_factory())
        processor.process([make_order("O1"), make_order("O2")])

        stats = processor.process(
            [make_order("O1"), make_order("O2", status="SHIPPED"), make_order("O3"), make_order("O4")]
        )

        assert stats["orders_inserted"] == 2
        assert stats["orders_updated"] == 2
        assert stats["status_changes"] == [
            {"order_id": "O2", "old_status": "AWAITING_SHIPMENT", "new_status": "SHIPPED"}
        ]
        assert _count(db_session, Order) == 4

    def test_idempotent_resync(self, db_session, store, fake_client_factory, make_order, trigger):
        client = fake_client_factory(
            package_details={"P1": _detail("TN-1"), "P2": _detail("TN-2", "FedEx")}
        )
        processor = self._processor(store, client, trigger)
        batch = [make_order("O1", packages=["P1", "P2"]), make_order("O2")]

        first = processor.process(batch)
        second = processor.process(batch)

        assert first["tracking_states_created"] == 2
        assert second["tracking_states_created"] == 0
        assert second["orders_inserted"] == 0
        assert _count(db_session, Order) == 2
        assert _count(db_session, FulfillmentTrackingState) == 2
        assert _count(db_session, OrderLineItem) == 2
        assert _count(db_session, OrderPayment) == 2
        assert _count(db_session, OrderRecipientAddress) == 2
        assert _count(db_session, AddressDistrict) == 4
        assert _count(db_session, OrderPackage) == 2
        # Trigger only fires for the run that created states
        assert trigger.notify.call_count == 1

    def test_duplicate_tracking_number_within_order_creates_one_state(
        self, db_session, store, fake_client_factory, make_order
    ):
        client = fake_client_factory(package_details={"P1": _detail("TN-1"), "P2": _detail(" TN-1 ")})
        processor = self._processor(store, client)

        processor.process([make_order("O1", packages=["P1", "P2"])])
        processor.process([make_order("O1", packages=["P1", "P2"])])

        assert _count(db_session, OrderPackage) == 2
        assert _count(db_session, FulfillmentTrackingState) == 1

    def test_same_tracking_number_on_two_orders_creates_two_states(
        self, db_session, store, fake_client_factory, make_order
    ):
        client = fake_client_factory(package_details={"P1": _detail("TN-1"), "P2": _detail("TN-1")})

        self._processor(store, client).process(
            [make_order("O1", packages=["P1"]), make_order("O2", packages=["P2"])]
        )

        states = db_session.scalars(select(FulfillmentTrackingState)).all()
        assert len(states) == 2
        assert {state.tracking_number for state in states} == {"TN-1"}
        assert len({state.order_id for state in states}) == 2

    def test_replace_not_merge_when_line_items_shrink(
        self, db_session, store, fake_client_factory, make_order
    ):
        processor = self._processor(store, fake_client_factory())
        three_items = [{"id": f"LI{i}", "sale_price": "1.00"} for i in range(3)]

        processor.process([make_order("O1", line_items=three_items)])
        processor.process([make_order("O1", line_items=three_items[:1])])

        assert [row.line_item_id for row in db_session.scalars(select(OrderLineItem))] == ["LI0"]

    def test_partial_package_failure_keeps_all_packages(
        self, db_session, store, fake_client_factory, make_order
    ):
        client = fake_client_factory(
            package_details={"P1": _detail("TN-1"), "P3": _detail("TN-3")},
            failing_packages={"P2"},
        )

        stats = self._processor(store, client).process([make_order("O1", packages=["P1", "P2", "P3"])])

        packages = {p.package_id: p for p in db_session.scalars(select(OrderPackage))}
        assert set(packages) == {"P1", "P2", "P3"}
        assert packages["P1"].channel_data["fetch_success"] is True
        assert packages["P3"].channel_data["fetch_success"] is True
        assert packages["P2"].channel_data["fetch_success"] is False
        assert "503" in packages["P2"].channel_data["fetch_error"]
        assert packages["P1"].tracking_number == "TN-1"
        assert stats["package_fetch_failures"] == 1
        assert client.package_calls == ["P1", "P2", "P3"]

    def test_problem_detection_fetches_tracking_once(
        self, db_session, store, fake_client_factory, make_order
    ):
        client = fake_client_factory(tracking={"O1": [{"description": "Package returned to sender"}]})
        processor = self._processor(store, client)

        first = processor.process([make_order("O1")])
        second = processor.process([make_order("O1")])

        order = db_session.scalars(select(Order)).one()
        db_session.refresh(order)
        assert order.is_problem_in_transit is True
        assert client.tracking_calls == ["O1"]
        assert first["tracking_fetches"] == 1
        assert second["tracking_fetches"] == 0
        assert first["problem_orders"] == 1

    def test_resync_keeps_problem_flag(self, db_session, store, fake_client_factory, make_order):
        client = fake_client_factory(tracking={"O1": [{"description": "Lost in transit"}]})
        processor = self._processor(store, client)

        processor.process([make_order("O1")])
        processor.process([make_order("O1", status="IN_TRANSIT")])

        order = db_session.scalars(select(Order)).one()
        db_session.refresh(order)
        assert order.status == "IN_TRANSIT"
        assert order.is_problem_in_transit is True

    def test_orders_without_id_and_duplicates_are_skipped(
        self, db_session, store, fake_client_factory, make_order
    ):
        stats = self._processor(store, fake_client_factory()).process(
            [make_order("O1"), {"status": "UNPAID"}, make_order("O1")]
        )

        assert stats["orders_received"] == 3
        assert stats["orders_skipped"] == 2
        assert _count(db_session, Order) == 1

    def test_package_without_tracking_creates_no_state(
        self, db_session, store, fake_client_factory, make_order, trigger
    ):
        client = fake_client_factory(package_details={"P1": {"package_status": "PROCESSING"}})

        stats = self._processor(store, client, trigger).process([make_order("O1", packages=["P1"])])

        assert stats["packages"] == 1
        assert stats["tracking_states_created"] == 0
        trigger.notify.assert_not_called()

    def test_store_failure_propagates(self, store, fake_client_factory, make_order):
        store.replace_payments = Mock(side_effect=OperationalError("DELETE", {}, Exception("db down")))

        with pytest.raises(OperationalError):
            self._processor(store, fake_client_factory()).process([make_order("O1")])

    def test_resync_relinks_tracking_state_to_new_package_row(
        self, db_session, store, fake_client_factory, make_order
    ):
        client = fake_client_factory(package_details={"P1": _detail("TN-1")})
        processor = self._processor(store, client)

        processor.process([make_order("O1", packages=["P1"])])
        second = processor.process([make_order("O1", packages=["P1"])])

        package = db_session.scalars(select(OrderPackage)).one()
        state = db_session.scalars(select(FulfillmentTrackingState)).one()
        db_session.refresh(state)
        assert second["tracking_states_created"] == 0
        assert second["tracking_states_linked"] == 1
        assert state.order_package_id == package.id

    def test_state_created_by_another_run_is_not_counted(
        self, db_session, store, fake_client_factory, make_order, trigger
    ):
        client = fake_client_factory(package_details={"P1": _detail("TN-1")})
        self._processor(store, client).process([make_order("O1", packages=["P1"])])

        # Another run inserted the state between the lookup and the insert
        store.find_existing_tracking_keys = Mock(return_value=set())
        stats = self._processor(store, client, trigger).process([make_order("O1", packages=["P1"])])

        assert stats["tracking_states_created"] == 0
        assert _count(db_session, FulfillmentTrackingState) == 1
        trigger.notify.assert_not_called()


class TestPriceDetail:
    def _processor(self, store, client):
        return BatchProcessor(
            store, client, org_id="org-1", shop_id="shop-1", include_price_detail=True
        )

    def test_price_detail_merged_into_payment(self, db_session, store, fake_client_factory, make_order):
        client = fake_client_factory(
            price_details={
                "O1": {
                    "currency": "USD",
                    "price_details": [{"type": "product_price", "amount": "19.99"}],
                }
            }
        )

        stats = self._processor(store, client).process([make_order("O1")])

        payment = db_session.scalars(select(OrderPayment)).one()
        assert stats["price_details_fetched"] == 1
        assert client.price_calls == ["O1"]
        assert payment.channel_data["discounts"] == {"seller_discount": "5.01"}
        assert payment.channel_data["pricing_breakdown"]["product_price"] == "19.99"
        assert payment.channel_data["price_breakdown"] == [{"type": "product_price", "amount": "19.99"}]

    def test_price_detail_failure_still_writes_order(
        self, db_session, store, fake_client_factory, make_order
    ):
        client = fake_client_factory(
            price_details={"O2": {"price_details": []}}, failing_price_details={"O1"}
        )

        stats = self._processor(store, client).process([make_order("O1"), make_order("O2")])

        assert stats["orders_inserted"] == 2
        assert stats["price_detail_fetch_failures"] == 1
        assert stats["price_details_fetched"] == 1
        payments = {
            row.order_id: row.channel_data for row in db_session.scalars(select(OrderPayment))
        }
        order_ids = store.resolve_order_ids(["O1", "O2"])
        assert "pricing_breakdown" not in payments[order_ids["O1"]]
        assert payments[order_ids["O1"]]["discounts"] == {"seller_discount": "5.01"}
        assert "pricing_breakdown" in payments[order_ids["O2"]]

    def test_price_detail_not_fetched_by_default(self, store, fake_client_factory, make_order):
        client = fake_client_factory()

        BatchProcessor(store, client, org_id="org-1", shop_id="shop-1").process([make_order("O1")])

        assert client.price_calls == []
