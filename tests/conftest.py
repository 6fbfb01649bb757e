"""
Shared fixtures: in-memory SQLite store and a scripted marketplace client.
"""

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from ordersync.adapters.marketplace import MarketplaceRetryableError
from ordersync.db.models import Base
from ordersync.db.store import ReconciliationStore

# Registers the sync_state table on Base.metadata
import ordersync.db.sync_state  # noqa: F401


class FakeMarketplaceClient:
    """Scripted stand-in for MarketplaceClient that records every call."""

    def __init__(
        self,
        pages=None,
        package_details=None,
        tracking=None,
        failing_packages=(),
        orders_by_id=None,
        price_details=None,
        failing_price_details=(),
    ):
        self.pages = list(pages or [])
        self.package_details = package_details or {}
        self.tracking = tracking or {}
        self.failing_packages = set(failing_packages)
        self.orders_by_id = orders_by_id or {}
        self.price_details = price_details or {}
        self.failing_price_details = set(failing_price_details)
        self.list_calls = []
        self.get_orders_calls = []
        self.package_calls = []
        self.price_calls = []
        self.tracking_calls = []

    def list_orders(self, page_size=50, sort_by="update_time", sort_direction="DESC",
                    page_token=None, filters=None):
        index = int(page_token) if page_token else 0
        self.list_calls.append({"page_token": page_token, "page_size": page_size, "filters": filters})
        page = self.pages[index]
        if isinstance(page, Exception):
            raise page
        has_next = index + 1 < len(self.pages)
        return {
            "orders": page,
            "next_page_token": str(index + 1) if has_next else None,
            "raw": {"orders": page, "total_count": len(page)},
        }

    def get_orders(self, order_ids):
        self.get_orders_calls.append(list(order_ids))
        return [self.orders_by_id[order_id] for order_id in order_ids if order_id in self.orders_by_id]

    def get_price_detail(self, order_id):
        self.price_calls.append(order_id)
        if order_id in self.failing_price_details:
            raise MarketplaceRetryableError("Server error: 504", status_code=504)
        return self.price_details.get(order_id)

    def get_package_detail(self, package_id):
        self.package_calls.append(package_id)
        if package_id in self.failing_packages:
            raise MarketplaceRetryableError("Server error: 503", status_code=503)
        return self.package_details.get(package_id)

    def get_order_tracking(self, order_id):
        self.tracking_calls.append(order_id)
        return {"events": self.tracking.get(order_id, [])}


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool
    )

    @event.listens_for(engine, "connect")
    def enable_foreign_keys(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db_session(engine):
    session = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)()
    yield session
    session.close()


@pytest.fixture
def store(db_session) -> ReconciliationStore:
    return ReconciliationStore(db_session)


@pytest.fixture
def fake_client_factory():
    return FakeMarketplaceClient


@pytest.fixture
def make_order():
    """Build a raw marketplace order payload."""

    def _make_order(order_id, status="AWAITING_SHIPMENT", packages=(), line_items=None, **extra):
        if line_items is None:
            line_items = [
                {
                    "id": f"{order_id}-LI1",
                    "product_id": "P-100",
                    "product_name": "Desk Lamp",
                    "sku_id": "SKU-1",
                    "seller_sku": "LAMP-BLK",
                    "currency": "USD",
                    "original_price": "25.00",
                    "sale_price": "19.99",
                }
            ]
        order = {
            "id": order_id,
            "status": status,
            "create_time": 1700000000,
            "update_time": 1700003600,
            "buyer_email": "buyer@example.com",
            "payment": {
                "currency": "USD",
                "total_amount": "21.59",
                "sub_total": "19.99",
                "tax": "1.60",
                "seller_discount": "5.01",
            },
            "recipient_address": {
                "full_address": "1 Main St, Springfield, IL 62701",
                "name": "Sam Buyer",
                "phone_number": "(+1)555-0100",
                "postal_code": "62701",
                "district_info": [
                    {"address_level": "L0", "address_level_name": "Country", "address_name": "United States"},
                    {"address_level": "L1", "address_level_name": "State", "address_name": "Illinois"},
                ],
            },
            "line_items": line_items,
            "packages": [{"id": package_id} for package_id in packages],
        }
        order.update(extra)
        return order

    return _make_order
