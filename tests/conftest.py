"""Shared fixtures: a fresh SQLite database per test and a recording email transport."""
from datetime import datetime
from typing import List, Optional

import pytest

from services.restock_service.app import RestockEngine
from services.restock_service.models import RestockSchedule
from services.restock_service.schemas import (
    BackorderItemRequest,
    BackorderRequest,
    ProductRequest,
    StockKey,
    VariantRequest,
)
from shared.config import Settings
from shared.database import Database

JACKET = StockKey(product_id="jacket")
JACKET_M = StockKey(product_id="jacket", variant_id="jacket-m")
JACKET_L = StockKey(product_id="jacket", variant_id="jacket-l")
SCARF = StockKey(product_id="scarf")
BOOTS_42 = StockKey(product_id="boots", variant_id="boots-42")


class RecordingTransport:
    """Email transport double that remembers every message."""

    def __init__(self, deliver: bool = True):
        self.deliver = deliver
        self.sent: List[dict] = []

    async def send(self, recipient: str, subject: str, html: str, text: str) -> bool:
        self.sent.append({"recipient": recipient, "subject": subject, "html": html, "text": text})
        return self.deliver

    def to(self, recipient: str) -> List[dict]:
        return [message for message in self.sent if message["recipient"] == recipient]


def backorder_request(key: StockKey, quantity: int, user_id: str = "user-1",
                      email: Optional[str] = "buyer@example.com", size: str = "M") -> BackorderRequest:
    return BackorderRequest(
        user_id=user_id,
        customer_email=email,
        items=[BackorderItemRequest(
            product_id=key.product_id,
            variant_id=key.variant_id,
            quantity=quantity,
            size=size,
            price=199.0,
        )],
        total_amount=199.0 * quantity,
    )


async def add_schedule(session_factory, key: StockKey, expected_date: datetime, notes: Optional[str] = None):
    """Insert a schedule directly; the scheduler itself refuses past dates."""
    async with session_factory() as session:
        session.add(RestockSchedule(
            product_id=key.product_id,
            variant_key=key.variant_key,
            expected_date=expected_date,
            notes=notes,
        ))
        await session.commit()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url_override=f"sqlite+aiosqlite:///{tmp_path / 'restock.db'}",
        public_base_url="https://shop.test",
        reservation_secret="test-secret",
        deduct_fulfilled_backorders=True,
    )


@pytest.fixture
async def database(settings):
    database = Database(settings.database_url)
    await database.create_tables()
    yield database
    await database.close()


@pytest.fixture
def session_factory(database):
    return database.session_factory


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
def engine(session_factory, settings, transport):
    return RestockEngine(session_factory, settings, transport)


@pytest.fixture
async def catalog(engine):
    """Jacket (out of stock M, 3 L), scarf (10 in stock), boots (size 42 out of stock)."""
    await engine.stock_ledger.register(ProductRequest(
        id="jacket",
        name="Wool Jacket",
        name_en="Wool Jacket",
        price=199.0,
        variants=[
            VariantRequest(id="jacket-m", sku="JKT-M", quantity=0),
            VariantRequest(id="jacket-l", sku="JKT-L", quantity=3),
        ],
    ))
    await engine.stock_ledger.register(ProductRequest(
        id="scarf", name="Cashmere Scarf", price=39.0, sale_price=29.0, quantity=10,
    ))
    await engine.stock_ledger.register(ProductRequest(
        id="boots",
        name="Leather Boots",
        price=120.0,
        variants=[VariantRequest(id="boots-42", sku="BT-42", price=125.0, quantity=0)],
    ))
    return engine
