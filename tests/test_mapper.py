"""
Tests for the marketplace entity mapper.
"""

from datetime import UTC, datetime
from decimal import Decimal

from ordersync.sync.mapper import (
    map_address,
    map_districts,
    map_line_items,
    map_order,
    map_package,
    map_payment,
    map_price_detail,
    map_tracking_state,
    price_breakdown,
)


class TestOrderMapping:
    """Order header mapping."""

    def test_map_order_core_fields(self, make_order):
        raw = make_order("O1", tts_sla_time=1700086400, shipping_provider="UPS")
        row = map_order(raw, org_id="org-1", shop_id="shop-1")

        assert row["order_id"] == "O1"
        assert row["org_id"] == "org-1"
        assert row["shop_id"] == "shop-1"
        assert row["channel"] == "marketplace"
        assert row["status"] == "AWAITING_SHIPMENT"
        assert row["total_amount"] == Decimal("21.59")
        assert row["currency"] == "USD"
        assert row["create_time"] == datetime(2023, 11, 14, 22, 13, 20, tzinfo=UTC)
        assert row["tts_sla_time"] == datetime(2023, 11, 15, 22, 13, 20, tzinfo=UTC)
        assert row["rts_sla_time"] is None
        assert row["channel_data"]["shipping_provider"] == "UPS"
        assert row["channel_data"]["postal_code"] == "62701"

    def test_map_order_defaults_for_sparse_payload(self):
        row = map_order({"id": "O2"}, org_id="org-1", shop_id="shop-1")

        assert row["status"] == "UNKNOWN"
        assert row["total_amount"] is None
        assert row["buyer_email"] is None
        assert isinstance(row["create_time"], datetime)
        assert row["channel_data"] == {}

    def test_map_order_accepts_camel_case_and_millis(self):
        raw = {"id": "O3", "status": "COMPLETED", "createTime": 1700000000000, "buyerEmail": "a@b.c"}
        row = map_order(raw, org_id="org-1", shop_id="shop-1")

        assert row["create_time"] == datetime(2023, 11, 14, 22, 13, 20, tzinfo=UTC)
        assert row["buyer_email"] == "a@b.c"


class TestDependentMapping:
    """Line item, payment, address and district mapping."""

    def test_map_line_items_skips_items_without_id(self, make_order):
        raw = make_order("O1", line_items=[{"id": "LI1", "sale_price": "10"}, {"product_id": "P"}])
        rows = map_line_items(raw, order_db_id=7)

        assert len(rows) == 1
        assert rows[0]["order_id"] == 7
        assert rows[0]["line_item_id"] == "LI1"
        assert rows[0]["sale_price"] == Decimal("10")
        assert rows[0]["channel_data"]["is_gift"] is False

    def test_map_payment_keeps_discounts(self, make_order):
        payment = map_payment(make_order("O1"), order_db_id=7)

        assert payment["total_amount"] == Decimal("21.59")
        assert payment["tax"] == Decimal("1.60")
        assert payment["channel_data"]["discounts"] == {"seller_discount": "5.01"}

    def test_map_payment_missing(self):
        assert map_payment({"id": "O1"}, order_db_id=7) is None

    def test_price_breakdown_buckets(self):
        breakdown = price_breakdown(
            {
                "currency": "USD",
                "price_details": [
                    {"type": "ITEM_PRICE", "amount": "19.99"},
                    {"type": "shipping_fee", "amount": "4.00"},
                    {"type": "tax", "amount": "1.60"},
                    {"type": "seller_discount", "amount": "2.00"},
                    {"type": "coupon", "amount": "1.00"},
                    {"type": "mystery", "amount": "99"},
                    {"type": "vat", "amount": "bad"},
                    "junk",
                ],
            }
        )

        assert breakdown["product_price"] == "19.99"
        assert breakdown["shipping_fee"] == "4.00"
        assert breakdown["taxes"] == "1.60"
        assert breakdown["vouchers"] == "1.00"
        assert Decimal(breakdown["platform_fees"]) == 0
        assert breakdown["final_amount"] == "22.59"
        assert breakdown["currency"] == "USD"

    def test_map_price_detail_keeps_raw_lines(self):
        detail = {"price_details": [{"type": "tax", "amount": "1"}]}

        entries = map_price_detail(detail)

        assert entries["price_details"] is detail
        assert entries["price_breakdown"] == [{"type": "tax", "amount": "1"}]
        assert entries["pricing_breakdown"]["currency"] == "USD"
        assert entries["price_details_fetched_at"] > 0

    def test_map_address_and_districts(self, make_order):
        address = map_address(make_order("O1"), order_db_id=7)

        assert address["postal_code"] == "62701"
        assert len(address["channel_data"]["district_info"]) == 2

        districts = map_districts(42, address["channel_data"])
        assert [d["address_name"] for d in districts] == ["United States", "Illinois"]
        assert all(d["recipient_address_id"] == 42 for d in districts)

    def test_map_districts_malformed_channel_data(self):
        assert map_districts(42, None) == []
        assert map_districts(42, {"district_info": "not a list"}) == []


class TestPackageMapping:
    """Package mapping with and without package detail."""

    line_items = [
        {"id": "LI1", "package_id": "P1", "tracking_number": "TN-FROM-ITEM"},
        {"id": "LI2", "package_id": "P2"},
    ]

    def test_detail_wins_over_order_payload(self):
        detail = {
            "package_status": "IN_TRANSIT",
            "tracking_number": " TN-1 ",
            "shipping_provider_id": "ups",
            "shipping_provider_name": "UPS",
            "order_line_item_ids": ["LI1"],
        }
        row = map_package({"id": "P1"}, 7, self.line_items, detail=detail)

        assert row["status"] == "IN_TRANSIT"
        assert row["tracking_number"] == "TN-1"
        assert row["shipping_provider_name"] == "UPS"
        assert row["order_line_item_ids"] == ["LI1"]
        assert row["channel_data"]["fetch_success"] is True
        assert row["channel_data"]["package_detail"] == detail
        assert "fetch_error" not in row["channel_data"]

    def test_failed_fetch_yields_placeholder(self):
        row = map_package({"id": "P1"}, 7, self.line_items, fetch_error="Server error: 503")

        assert row["package_id"] == "P1"
        assert row["tracking_number"] == "TN-FROM-ITEM"
        assert row["order_line_item_ids"] == ["LI1"]
        assert row["channel_data"]["fetch_success"] is False
        assert row["channel_data"]["fetch_error"] == "Server error: 503"
        assert row["channel_data"]["original_package_data"] == {"id": "P1"}

    def test_unlinked_package_falls_back_to_all_line_items(self):
        row = map_package({"id": "P9"}, 7, self.line_items)

        assert row["order_line_item_ids"] == ["LI1", "LI2"]
        assert row["tracking_number"] is None
        assert row["channel_data"]["fetch_success"] is False

    def test_package_without_id_is_dropped(self):
        assert map_package({}, 7, self.line_items) is None

    def test_map_tracking_state(self):
        package = {
            "order_id": 7,
            "tracking_number": "TN-1",
            "shipping_provider_name": "UPS",
            "shipping_type": "SELLER",
            "delivery_option_name": "Standard",
            "status": "IN_TRANSIT",
        }
        state = map_tracking_state(package, "org-1", "shop-1")

        assert state == {
            "order_id": 7,
            "org_id": "org-1",
            "shop_id": "shop-1",
            "tracking_number": "TN-1",
            "provider_name": "UPS",
            "provider_type": "SELLER",
            "provider_service_level": "Standard",
            "provider_tracking_url": None,
            "status": "IN_TRANSIT",
        }
