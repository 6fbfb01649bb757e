"""
SQLAlchemy models for the ordersync store.

Defines the normalized schema that marketplace orders are reconciled into:
- orders and their replaced-per-sync dependents (line items, payment,
  recipient address and districts, packages)
- fulfillment tracking states (created once per order + tracking number)
- order tracking timeline entries

Source-specific fields that are not promoted to columns live in the
``channel_data`` JSON map of each entity.
"""

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func

Base = declarative_base()

# SQLite only autoincrements INTEGER primary keys
SurrogateId = BigInteger().with_variant(Integer, "sqlite")
ChannelData = JSON().with_variant(JSONB, "postgresql")


class Order(Base):
    """
    Order header synced from the marketplace.

    Natural key: ``order_id`` (external id). Created on first sight, updated in
    place on every re-sync, never deleted by the sync.
    """

    __tablename__ = "orders"

    id = Column(SurrogateId, primary_key=True, autoincrement=True)
    order_id = Column(Text, nullable=False)
    org_id = Column(Text, nullable=False)
    shop_id = Column(Text, nullable=False)
    channel = Column(Text, nullable=False)
    status = Column(Text, nullable=False, default="UNKNOWN")
    buyer_email = Column(Text)
    buyer_message = Column(Text)
    total_amount = Column(Numeric(12, 2))
    currency = Column(Text)

    create_time = Column(DateTime(timezone=True), nullable=False)
    update_time = Column(DateTime(timezone=True))
    paid_time = Column(DateTime(timezone=True))
    delivery_time = Column(DateTime(timezone=True))

    # SLA deadlines
    tts_sla_time = Column(DateTime(timezone=True))
    rts_sla_time = Column(DateTime(timezone=True))
    cancel_order_sla_time = Column(DateTime(timezone=True))
    delivery_sla_time = Column(DateTime(timezone=True))
    delivery_due_time = Column(DateTime(timezone=True))
    collection_due_time = Column(DateTime(timezone=True))
    shipping_due_time = Column(DateTime(timezone=True))
    fast_dispatch_sla_time = Column(DateTime(timezone=True))
    pick_up_cut_off_time = Column(DateTime(timezone=True))
    delivery_option_required_delivery_time = Column(DateTime(timezone=True))

    is_problem_in_transit = Column(Boolean, nullable=False, default=False)
    channel_data = Column(ChannelData)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    line_items = relationship("OrderLineItem", back_populates="order", passive_deletes=True)
    packages = relationship("OrderPackage", back_populates="order", passive_deletes=True)

    __table_args__ = (
        UniqueConstraint("order_id", name="uq_orders_order_id"),
        Index("ix_orders_org_shop", "org_id", "shop_id"),
        Index("ix_orders_status", "status"),
        Index("ix_orders_update_time", "update_time"),
    )


class OrderLineItem(Base):
    """Line item of an order. Fully replaced on every sync of its order."""

    __tablename__ = "order_line_items"

    id = Column(SurrogateId, primary_key=True, autoincrement=True)
    order_id = Column(SurrogateId, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False)
    line_item_id = Column(Text, nullable=False)
    product_id = Column(Text)
    product_name = Column(Text)
    sku_id = Column(Text)
    sku_name = Column(Text)
    seller_sku = Column(Text)
    currency = Column(Text)
    original_price = Column(Numeric(12, 2))
    sale_price = Column(Numeric(12, 2))
    channel_data = Column(ChannelData)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    order = relationship("Order", back_populates="line_items")

    __table_args__ = (
        Index("ix_order_line_items_order_id", "order_id"),
        Index("ix_order_line_items_line_item_id", "line_item_id"),
    )


class OrderPayment(Base):
    """Payment summary, one per order."""

    __tablename__ = "order_payments"

    id = Column(SurrogateId, primary_key=True, autoincrement=True)
    order_id = Column(SurrogateId, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False)
    currency = Column(Text)
    total_amount = Column(Numeric(12, 2))
    sub_total = Column(Numeric(12, 2))
    tax = Column(Numeric(12, 2))
    channel_data = Column(ChannelData)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (Index("ix_order_payments_order_id", "order_id"),)


class OrderRecipientAddress(Base):
    """Shipping address, one per order. ``channel_data.district_info`` feeds AddressDistrict."""

    __tablename__ = "order_recipient_addresses"

    id = Column(SurrogateId, primary_key=True, autoincrement=True)
    order_id = Column(SurrogateId, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False)
    full_address = Column(Text)
    name = Column(Text)
    phone_number = Column(Text)
    postal_code = Column(Text)
    channel_data = Column(ChannelData)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    districts = relationship("AddressDistrict", back_populates="address", passive_deletes=True)

    __table_args__ = (Index("ix_order_recipient_addresses_order_id", "order_id"),)


class AddressDistrict(Base):
    """One level of the recipient address hierarchy (country, state, city, ...)."""

    __tablename__ = "address_districts"

    id = Column(SurrogateId, primary_key=True, autoincrement=True)
    recipient_address_id = Column(
        SurrogateId,
        ForeignKey("order_recipient_addresses.id", ondelete="CASCADE"),
        nullable=False,
    )
    address_level = Column(Text)
    address_level_name = Column(Text)
    address_name = Column(Text)

    address = relationship("OrderRecipientAddress", back_populates="districts")

    __table_args__ = (Index("ix_address_districts_address_id", "recipient_address_id"),)


class OrderPackage(Base):
    """
    Shipping package of an order, enriched with the package detail call.

    ``channel_data.fetch_success`` is False when the detail call failed and the
    row is a placeholder built from the order payload alone.
    """

    __tablename__ = "order_packages"

    id = Column(SurrogateId, primary_key=True, autoincrement=True)
    order_id = Column(SurrogateId, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False)
    package_id = Column(Text, nullable=False)
    status = Column(Text)
    tracking_number = Column(Text)
    shipping_provider_id = Column(Text)
    shipping_provider_name = Column(Text)
    shipping_type = Column(Text)
    delivery_option_id = Column(Text)
    delivery_option_name = Column(Text)
    last_mile_tracking_number = Column(Text)
    order_line_item_ids = Column(JSON)
    channel_data = Column(ChannelData)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    order = relationship("Order", back_populates="packages")

    __table_args__ = (
        Index("ix_order_packages_order_id", "order_id"),
        Index("ix_order_packages_tracking_number", "tracking_number"),
        UniqueConstraint("order_id", "package_id", name="uq_order_packages_order_package"),
    )


class FulfillmentTrackingState(Base):
    """
    Marker that an (order, tracking number) pair is being tracked.

    Created at most once per pair; it outlives the package rows that are
    replaced on every sync, so ``order_package_id`` is only a best-effort link.
    """

    __tablename__ = "fulfillment_tracking_states"

    id = Column(SurrogateId, primary_key=True, autoincrement=True)
    order_id = Column(SurrogateId, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False)
    order_package_id = Column(
        SurrogateId, ForeignKey("order_packages.id", ondelete="SET NULL"), nullable=True
    )
    org_id = Column(Text, nullable=False)
    shop_id = Column(Text, nullable=False)
    tracking_number = Column(Text, nullable=False)
    provider_name = Column(Text)
    provider_type = Column(Text)
    provider_service_level = Column(Text)
    provider_tracking_url = Column(Text)
    status = Column(Text)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint("order_id", "tracking_number", name="uq_tracking_states_order_tracking"),
        Index("ix_tracking_states_org_id", "org_id"),
        Index("ix_tracking_states_status", "status"),
    )


class OrderTrackingInfo(Base):
    """Tracking timeline entry of an order, stored the first time tracking is fetched."""

    __tablename__ = "order_tracking_infos"

    id = Column(SurrogateId, primary_key=True, autoincrement=True)
    order_id = Column(SurrogateId, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False)
    description = Column(Text, nullable=False)
    sequence = Column(Integer, nullable=False, default=0)
    update_time_milli = Column(BigInteger, nullable=False, default=0)
    occurred_at = Column(DateTime(timezone=True))
    source = Column(Text)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (Index("ix_order_tracking_infos_order_id", "order_id"),)
