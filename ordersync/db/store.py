"""
Reconciliation store: the persistence facade used by the batch processor.

All lookups go by natural key (external order id, order + tracking number);
writes are bulk statements. The store is not transactional across
collections: every write commits on its own, so a failure halfway through a
batch leaves the earlier collections applied. Re-running the batch is safe
because dependents are replaced wholesale and tracking states are deduplicated
on (order_id, tracking_number).
"""

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import Any

from sqlalchemy import delete, insert, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from ..observability import record_rows
from .models import (
    AddressDistrict,
    FulfillmentTrackingState,
    Order,
    OrderLineItem,
    OrderPackage,
    OrderPayment,
    OrderRecipientAddress,
    OrderTrackingInfo,
)

logger = logging.getLogger(__name__)

# Fields refreshed on every re-sync of an existing order
UPDATABLE_ORDER_FIELDS = (
    "status",
    "buyer_email",
    "buyer_message",
    "total_amount",
    "currency",
    "update_time",
    "paid_time",
    "delivery_time",
    "tts_sla_time",
    "rts_sla_time",
    "cancel_order_sla_time",
    "delivery_sla_time",
    "delivery_due_time",
    "collection_due_time",
    "shipping_due_time",
    "fast_dispatch_sla_time",
    "pick_up_cut_off_time",
    "delivery_option_required_delivery_time",
    "channel_data",
)

TrackingKey = tuple[int, str]


@dataclass(frozen=True)
class ExistingOrder:
    """Lookup result for an order already present in the store."""

    id: int
    order_id: str
    status: str | None


class ReconciliationStore:
    """Thin persistence facade over a SQLAlchemy session."""

    def __init__(self, session: Session):
        self.session = session

    def _commit(self) -> None:
        self.session.commit()

    # Orders

    def find_existing_orders(self, external_ids: Sequence[str]) -> list[ExistingOrder]:
        """Look up orders by external id in one query."""
        if not external_ids:
            return []
        rows = self.session.execute(
            select(Order.id, Order.order_id, Order.status).where(
                Order.order_id.in_(list(external_ids))
            )
        ).all()
        return [ExistingOrder(id=row.id, order_id=row.order_id, status=row.status) for row in rows]

    def bulk_insert_orders(self, rows: Sequence[dict]) -> int:
        """Insert new order rows in one statement."""
        if not rows:
            return 0
        self.session.execute(insert(Order), list(rows))
        self._commit()
        record_rows("orders", "insert", len(rows))
        return len(rows)

    def update_order(self, order_db_id: int, row: dict) -> None:
        """Update the mutable fields of one existing order."""
        values = {name: row[name] for name in UPDATABLE_ORDER_FIELDS if name in row}
        self.session.execute(update(Order).where(Order.id == order_db_id).values(**values))
        self._commit()
        record_rows("orders", "update", 1)

    def resolve_order_ids(self, external_ids: Sequence[str]) -> dict[str, int]:
        """Map external order ids to local surrogate ids."""
        return {order.order_id: order.id for order in self.find_existing_orders(external_ids)}

    def mark_problem_in_transit(self, order_db_id: int) -> bool:
        """Flag an order as problem in transit. Returns True if the flag changed."""
        result = self.session.execute(
            update(Order)
            .where(
                Order.id == order_db_id,
                or_(Order.is_problem_in_transit.is_(False), Order.is_problem_in_transit.is_(None)),
            )
            .values(is_problem_in_transit=True)
        )
        self._commit()
        return (result.rowcount or 0) > 0

    # Replaced dependents

    def _replace(self, model, order_ids: Sequence[int], rows: Sequence[dict]) -> int:
        """Delete all rows of ``model`` for the given orders, then bulk insert ``rows``."""
        if not rows:
            return 0
        deleted = self.session.execute(delete(model).where(model.order_id.in_(list(order_ids))))
        self._commit()
        record_rows(model.__tablename__, "delete", deleted.rowcount or 0)
        self.session.execute(insert(model), list(rows))
        self._commit()
        record_rows(model.__tablename__, "insert", len(rows))
        return len(rows)

    def replace_line_items(self, order_ids: Sequence[int], rows: Sequence[dict]) -> int:
        return self._replace(OrderLineItem, order_ids, rows)

    def replace_payments(self, order_ids: Sequence[int], rows: Sequence[dict]) -> int:
        return self._replace(OrderPayment, order_ids, rows)

    def replace_packages(self, order_ids: Sequence[int], rows: Sequence[dict]) -> int:
        return self._replace(OrderPackage, order_ids, rows)

    def replace_addresses(self, order_ids: Sequence[int], rows: Sequence[dict]) -> list[Any]:
        """
        Replace recipient addresses and drop their districts.

        Returns the new address rows (id, order_id, channel_data) so districts
        can be recreated as their children.
        """
        if not rows:
            return []
        old_address_ids = select(OrderRecipientAddress.id).where(
            OrderRecipientAddress.order_id.in_(list(order_ids))
        )
        self.session.execute(
            delete(AddressDistrict).where(AddressDistrict.recipient_address_id.in_(old_address_ids))
        )
        self._replace(OrderRecipientAddress, order_ids, rows)
        return self.session.execute(
            select(
                OrderRecipientAddress.id,
                OrderRecipientAddress.order_id,
                OrderRecipientAddress.channel_data,
            ).where(OrderRecipientAddress.order_id.in_(list(order_ids)))
        ).all()

    def insert_districts(self, rows: Sequence[dict]) -> int:
        if not rows:
            return 0
        self.session.execute(insert(AddressDistrict), list(rows))
        self._commit()
        record_rows("address_districts", "insert", len(rows))
        return len(rows)

    # Tracking states

    def find_existing_tracking_keys(self, keys: Iterable[TrackingKey]) -> set[TrackingKey]:
        """Return the subset of (order_id, tracking_number) keys that already have a state."""
        keys = set(keys)
        if not keys:
            return set()
        order_ids = {order_id for order_id, _ in keys}
        tracking_numbers = {tracking for _, tracking in keys}
        rows = self.session.execute(
            select(FulfillmentTrackingState.order_id, FulfillmentTrackingState.tracking_number).where(
                FulfillmentTrackingState.order_id.in_(order_ids),
                FulfillmentTrackingState.tracking_number.in_(tracking_numbers),
            )
        ).all()
        return {(row.order_id, row.tracking_number) for row in rows} & keys

    def insert_tracking_states(self, rows: Sequence[dict]) -> set[TrackingKey]:
        """
        Insert tracking states, skipping rows that hit the (order_id, tracking_number)
        unique constraint where the dialect supports ON CONFLICT DO NOTHING.

        Returns the keys of the rows actually inserted.
        """
        if not rows:
            return set()

        dialect = self.session.get_bind().dialect.name
        table = FulfillmentTrackingState.__table__
        if dialect == "postgresql":
            stmt = pg_insert(table).on_conflict_do_nothing(
                index_elements=["order_id", "tracking_number"]
            )
        elif dialect == "sqlite":
            stmt = sqlite_insert(table).on_conflict_do_nothing(
                index_elements=["order_id", "tracking_number"]
            )
        else:
            stmt = insert(table)

        result = self.session.execute(
            stmt.values(list(rows)).returning(table.c.order_id, table.c.tracking_number)
        )
        inserted = {(row.order_id, row.tracking_number) for row in result}
        self._commit()

        skipped = len(rows) - len(inserted)
        if skipped:
            logger.info(f"Skipped {skipped} tracking states created concurrently")
        record_rows("fulfillment_tracking_states", "insert", len(inserted))
        return inserted

    def link_tracking_states_to_packages(self, keys: Iterable[TrackingKey]) -> int:
        """Backfill order_package_id on tracking states from the current package rows."""
        keys = set(keys)
        if not keys:
            return 0

        order_ids = {order_id for order_id, _ in keys}
        packages = self.session.execute(
            select(OrderPackage.id, OrderPackage.order_id, OrderPackage.tracking_number).where(
                OrderPackage.order_id.in_(order_ids),
                OrderPackage.tracking_number.is_not(None),
            )
        ).all()

        package_by_key: dict[TrackingKey, int] = {}
        for package in packages:
            key = (package.order_id, (package.tracking_number or "").strip())
            if key in keys:
                package_by_key.setdefault(key, package.id)

        for (order_id, tracking_number), package_id in package_by_key.items():
            self.session.execute(
                update(FulfillmentTrackingState)
                .where(
                    FulfillmentTrackingState.order_id == order_id,
                    FulfillmentTrackingState.tracking_number == tracking_number,
                )
                .values(order_package_id=package_id)
            )
        if package_by_key:
            self._commit()
        return len(package_by_key)

    # Tracking timeline

    def get_timeline_entries(self, order_db_id: int) -> list[OrderTrackingInfo]:
        return list(
            self.session.scalars(
                select(OrderTrackingInfo)
                .where(OrderTrackingInfo.order_id == order_db_id)
                .order_by(OrderTrackingInfo.update_time_milli.desc(), OrderTrackingInfo.sequence.desc())
            )
        )

    def insert_timeline_entries(self, rows: Sequence[dict]) -> int:
        if not rows:
            return 0
        self.session.execute(insert(OrderTrackingInfo), list(rows))
        self._commit()
        record_rows("order_tracking_infos", "insert", len(rows))
        return len(rows)

    # Tracking service lookups

    def find_packages_for_orders(self, order_ids: Sequence[int]) -> list[Any]:
        if not order_ids:
            return []
        return self.session.execute(
            select(
                OrderPackage.order_id,
                OrderPackage.tracking_number,
                OrderPackage.shipping_provider_id,
                OrderPackage.shipping_provider_name,
            )
            .where(OrderPackage.order_id.in_(list(order_ids)))
            .order_by(OrderPackage.order_id, OrderPackage.id)
        ).all()

    def find_orders_for_tracking(self, order_ids: Sequence[int]) -> list[Any]:
        """Orders with their recipient postal code (None when no address row exists)."""
        if not order_ids:
            return []
        return self.session.execute(
            select(Order.id, Order.channel_data, OrderRecipientAddress.postal_code)
            .outerjoin(OrderRecipientAddress, OrderRecipientAddress.order_id == Order.id)
            .where(Order.id.in_(list(order_ids)))
            .order_by(Order.id)
        ).all()
