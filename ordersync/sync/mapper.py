"""
Entity mapper: marketplace payloads to store rows.

Pure functions, no I/O. Each mapper takes one upstream record and returns a
dict keyed by model attribute names, ready for a bulk insert. Fields that are
not promoted to columns are kept in ``channel_data``. Missing or malformed
fields default to None, False or empty instead of failing.
"""

import logging
import time
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

from ..common.etl import (
    coerce_bool,
    coerce_decimal,
    field,
    nested,
    nested_list,
    normalize_text,
    parse_epoch,
    without_none,
)

logger = logging.getLogger(__name__)

DEFAULT_ORDER_STATUS = "UNKNOWN"

# Upstream field -> Order column
SLA_FIELDS = {
    "tts_sla_time": "tts_sla_time",
    "rts_sla_time": "rts_sla_time",
    "cancel_order_sla_time": "cancel_order_sla_time",
    "delivery_sla_time": "delivery_sla_time",
    "delivery_due_time": "delivery_due_time",
    "collection_due_time": "collection_due_time",
    "shipping_due_time": "shipping_due_time",
    "fast_dispatch_sla_time": "fast_dispatch_sla_time",
    "pick_up_cut_off_time": "pick_up_cut_off_time",
    "delivery_option_required_delivery_time": "delivery_option_required_delivery_time",
}

ORDER_CHANNEL_FIELDS = (
    "order_type",
    "fulfillment_type",
    "delivery_type",
    "payment_method_name",
    "shipping_provider",
    "shipping_provider_id",
    "shipping_type",
    "delivery_option_id",
    "delivery_option_name",
    "collection_time",
    "rts_time",
    "user_id",
    "is_on_hold_order",
    "split_or_combine_tag",
    "tracking_number",
    "warehouse_id",
    "seller_note",
    "is_cod",
    "is_sample_order",
)

LINE_ITEM_CHANNEL_FIELDS = (
    "sku_type",
    "sku_image",
    "seller_discount",
    "platform_discount",
    "display_status",
    "package_id",
    "package_status",
    "shipping_provider_id",
    "shipping_provider_name",
    "tracking_number",
    "rts_time",
    "cancel_reason",
)

PAYMENT_DISCOUNT_FIELDS = (
    "original_total_product_price",
    "original_shipping_fee",
    "shipping_fee",
    "shipping_fee_seller_discount",
    "shipping_fee_platform_discount",
    "retail_delivery_fee",
    "buyer_service_fee",
    "seller_discount",
    "platform_discount",
    "small_order_fee",
)

ADDRESS_CHANNEL_FIELDS = (
    "address_detail",
    "address_line1",
    "address_line2",
    "address_line3",
    "address_line4",
    "first_name",
    "last_name",
    "region_code",
)

# Price detail line type -> pricing breakdown bucket
PRICE_BREAKDOWN_BUCKETS = {
    "product_price": "product_price",
    "item_price": "product_price",
    "shipping_fee": "shipping_fee",
    "delivery_fee": "shipping_fee",
    "tax": "taxes",
    "vat": "taxes",
    "platform_fee": "platform_fees",
    "service_fee": "platform_fees",
    "seller_discount": "seller_discounts",
    "platform_discount": "platform_discounts",
    "voucher": "vouchers",
    "coupon": "vouchers",
}

PRICE_DEDUCTIONS = ("seller_discounts", "platform_discounts", "vouchers")

PACKAGE_DETAIL_FIELDS = (
    "split_and_combine_tag",
    "has_multi_skus",
    "note_tag",
    "handover_method",
    "create_time",
    "update_time",
)


def _channel_fields(data: dict, names: tuple) -> dict:
    return without_none({name: field(data, name) for name in names})


def order_external_id(raw_order: dict) -> str | None:
    """External id of an order payload (``id`` or ``order_id``)."""
    return normalize_text(field(raw_order, "id") or field(raw_order, "order_id"))


def map_order(raw_order: dict, org_id: str, shop_id: str, channel: str = "marketplace") -> dict:
    """
    Map one upstream order to an ``orders`` row.

    Args:
        raw_order: Order payload from the order search API
        org_id: Tenant that owns the order
        shop_id: Shop the order was synced from
        channel: Sales channel tag

    Returns:
        Row dict (without surrogate id)
    """
    payment = nested(raw_order, "payment")

    channel_data = _channel_fields(raw_order, ORDER_CHANNEL_FIELDS)
    postal_code = normalize_text(field(nested(raw_order, "recipient_address"), "postal_code"))
    if postal_code:
        channel_data["postal_code"] = postal_code

    row = {
        "order_id": order_external_id(raw_order),
        "org_id": org_id,
        "shop_id": shop_id,
        "channel": channel,
        "status": normalize_text(field(raw_order, "status")) or DEFAULT_ORDER_STATUS,
        "buyer_email": normalize_text(field(raw_order, "buyer_email")),
        "buyer_message": normalize_text(field(raw_order, "buyer_message")),
        "total_amount": coerce_decimal(field(payment, "total_amount")),
        "currency": normalize_text(field(payment, "currency")),
        "create_time": parse_epoch(field(raw_order, "create_time")) or datetime.now(UTC),
        "update_time": parse_epoch(field(raw_order, "update_time")),
        "paid_time": parse_epoch(field(raw_order, "paid_time")),
        "delivery_time": parse_epoch(field(raw_order, "delivery_time")),
        "channel_data": channel_data,
    }

    for upstream_name, column in SLA_FIELDS.items():
        row[column] = parse_epoch(field(raw_order, upstream_name))

    return row


def map_line_items(raw_order: dict, order_db_id: int) -> list[dict]:
    """Map the order's line items; items without an id are skipped."""
    rows = []
    for item in nested_list(raw_order, "line_items"):
        line_item_id = normalize_text(field(item, "id"))
        if not line_item_id:
            logger.warning(f"Skipping line item without id on order {order_external_id(raw_order)}")
            continue

        channel_data = _channel_fields(item, LINE_ITEM_CHANNEL_FIELDS)
        channel_data["is_gift"] = coerce_bool(field(item, "is_gift"))

        rows.append(
            {
                "order_id": order_db_id,
                "line_item_id": line_item_id,
                "product_id": normalize_text(field(item, "product_id")),
                "product_name": normalize_text(field(item, "product_name")),
                "sku_id": normalize_text(field(item, "sku_id")),
                "sku_name": normalize_text(field(item, "sku_name")),
                "seller_sku": normalize_text(field(item, "seller_sku")),
                "currency": normalize_text(field(item, "currency")),
                "original_price": coerce_decimal(field(item, "original_price")),
                "sale_price": coerce_decimal(field(item, "sale_price")),
                "channel_data": channel_data,
            }
        )
    return rows


def map_payment(raw_order: dict, order_db_id: int) -> dict | None:
    """Map the payment summary; None when the order carries no payment object."""
    payment = nested(raw_order, "payment")
    if not payment:
        return None

    return {
        "order_id": order_db_id,
        "currency": normalize_text(field(payment, "currency")),
        "total_amount": coerce_decimal(field(payment, "total_amount")),
        "sub_total": coerce_decimal(field(payment, "sub_total")),
        "tax": coerce_decimal(field(payment, "tax")),
        "channel_data": {"discounts": _channel_fields(payment, PAYMENT_DISCOUNT_FIELDS)},
    }


def map_address(raw_order: dict, order_db_id: int) -> dict | None:
    """Map the recipient address; districts stay in ``channel_data.district_info``."""
    address = nested(raw_order, "recipient_address")
    if not address:
        return None

    channel_data = _channel_fields(address, ADDRESS_CHANNEL_FIELDS)
    channel_data["district_info"] = [
        district for district in nested_list(address, "district_info") if isinstance(district, dict)
    ]

    return {
        "order_id": order_db_id,
        "full_address": normalize_text(field(address, "full_address")),
        "name": normalize_text(field(address, "name")),
        "phone_number": normalize_text(field(address, "phone_number")),
        "postal_code": normalize_text(field(address, "postal_code")),
        "channel_data": channel_data,
    }


def map_districts(recipient_address_id: int, address_channel_data: Any) -> list[dict]:
    """Build AddressDistrict rows from a stored address's ``channel_data``."""
    return [
        {
            "recipient_address_id": recipient_address_id,
            "address_level": normalize_text(field(district, "address_level")),
            "address_level_name": normalize_text(field(district, "address_level_name")),
            "address_name": normalize_text(field(district, "address_name")),
        }
        for district in nested_list(address_channel_data, "district_info")
        if isinstance(district, dict)
    ]


def price_breakdown(price_detail: dict) -> dict:
    """
    Sum the price detail lines into fixed buckets.

    Unknown line types are ignored. ``final_amount`` is charges minus
    discounts and vouchers. Amounts are decimal strings.
    """
    totals = {bucket: Decimal("0") for bucket in dict.fromkeys(PRICE_BREAKDOWN_BUCKETS.values())}

    for line in nested_list(price_detail, "price_details"):
        if not isinstance(line, dict):
            continue
        bucket = PRICE_BREAKDOWN_BUCKETS.get((normalize_text(field(line, "type")) or "").lower())
        if bucket:
            totals[bucket] += coerce_decimal(field(line, "amount")) or Decimal("0")

    final_amount = sum(
        (amount if bucket not in PRICE_DEDUCTIONS else -amount) for bucket, amount in totals.items()
    )

    breakdown = {bucket: str(amount) for bucket, amount in totals.items()}
    breakdown["final_amount"] = str(final_amount)
    breakdown["currency"] = normalize_text(field(price_detail, "currency")) or "USD"
    return breakdown


def map_price_detail(price_detail: dict) -> dict:
    """Payment ``channel_data`` entries for a fetched order price detail."""
    return {
        "price_details": price_detail,
        "price_breakdown": [
            line for line in nested_list(price_detail, "price_details") if isinstance(line, dict)
        ],
        "price_details_fetched_at": int(time.time() * 1000),
        "pricing_breakdown": price_breakdown(price_detail),
    }


def _line_item_ids_for_package(package_id: str, raw_line_items: list[dict]) -> list[str]:
    """Line items attributed to a package, falling back to all of the order's items."""
    all_ids = [normalize_text(field(item, "id")) for item in raw_line_items]
    all_ids = [item_id for item_id in all_ids if item_id]

    matched = [
        normalize_text(field(item, "id"))
        for item in raw_line_items
        if normalize_text(field(item, "package_id")) == package_id and normalize_text(field(item, "id"))
    ]
    return matched or all_ids


def _tracking_from_line_items(package_id: str, raw_line_items: list[dict]) -> str | None:
    for item in raw_line_items:
        if normalize_text(field(item, "package_id")) == package_id:
            tracking = normalize_text(field(item, "tracking_number"))
            if tracking:
                return tracking
    return None


def map_package(
    raw_package: dict,
    order_db_id: int,
    raw_line_items: list[dict],
    detail: dict | None = None,
    fetch_error: str | None = None,
) -> dict | None:
    """
    Map one package of an order, merging the package detail payload when available.

    Args:
        raw_package: Package stub from the order payload
        order_db_id: Local id of the owning order
        raw_line_items: The order's raw line items (for tracking/line item fallbacks)
        detail: Package detail payload, None when the fetch failed or returned nothing
        fetch_error: Error message of a failed detail fetch

    Returns:
        Row dict, or None if the package has no id
    """
    package_id = normalize_text(field(raw_package, "id") or field(raw_package, "package_id"))
    if not package_id:
        return None

    detail = detail or {}
    fetch_success = bool(detail) and fetch_error is None

    def pick(name: str, detail_name: str | None = None) -> Any:
        value = field(detail, detail_name or name)
        if value is None:
            value = field(raw_package, name)
        return value

    tracking_number = normalize_text(pick("tracking_number")) or _tracking_from_line_items(
        package_id, raw_line_items
    )

    line_item_ids = [
        normalize_text(item_id) for item_id in (field(detail, "order_line_item_ids") or [])
    ]
    line_item_ids = [item_id for item_id in line_item_ids if item_id]
    if not line_item_ids:
        line_item_ids = _line_item_ids_for_package(package_id, raw_line_items)

    channel_data = {
        "original_package_data": raw_package,
        "package_detail": detail or None,
        "fetch_success": fetch_success,
        "fetched_at": int(time.time() * 1000),
    }
    if not fetch_success:
        channel_data["fetch_error"] = fetch_error or "No data returned from API"
    channel_data.update(_channel_fields(detail, PACKAGE_DETAIL_FIELDS))

    return {
        "order_id": order_db_id,
        "package_id": package_id,
        "status": normalize_text(pick("status", "package_status")),
        "tracking_number": tracking_number,
        "shipping_provider_id": normalize_text(pick("shipping_provider_id")),
        "shipping_provider_name": normalize_text(pick("shipping_provider_name")),
        "shipping_type": normalize_text(pick("shipping_type")),
        "delivery_option_id": normalize_text(pick("delivery_option_id")),
        "delivery_option_name": normalize_text(pick("delivery_option_name")),
        "last_mile_tracking_number": normalize_text(pick("last_mile_tracking_number")),
        "order_line_item_ids": line_item_ids,
        "channel_data": channel_data,
    }


def map_tracking_state(package_row: dict, org_id: str, shop_id: str) -> dict:
    """Build a FulfillmentTrackingState row from a mapped package row."""
    return {
        "order_id": package_row["order_id"],
        "org_id": org_id,
        "shop_id": shop_id,
        "tracking_number": normalize_text(package_row.get("tracking_number")),
        "provider_name": package_row.get("shipping_provider_name"),
        "provider_type": package_row.get("shipping_type"),
        "provider_service_level": package_row.get("delivery_option_name"),
        "provider_tracking_url": None,
        "status": package_row.get("status"),
    }
