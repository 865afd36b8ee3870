"""
Shared fixtures: a throwaway SQLite database per test plus catalog/order
factories.
"""
import uuid
from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from schoolvendor.db.init_db import build_engine, create_tables
from schoolvendor.models.common import Actor
from schoolvendor.models.orders import (
    AddressObject,
    CreateOrderRequest,
    CustomerInfo,
    OrderItemRequest,
    ShippingDetails,
)
from schoolvendor.models.products import CreateProductRequest, DigitalDetails
from schoolvendor.services import catalog_service, order_service


@pytest_asyncio.fixture
async def engine(tmp_path):
    test_engine = build_engine(str(tmp_path / "schoolvendor_test.db"))
    await create_tables(test_engine)
    yield test_engine
    await test_engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def admin():
    return Actor(user_id="admin_1", role="admin")


@pytest.fixture
def customer():
    return Actor(user_id="student_1", role="customer")


@pytest.fixture
def other_customer():
    return Actor(user_id="student_2", role="customer")


def shipping_details(method: str = "standard") -> ShippingDetails:
    return ShippingDetails(
        address=AddressObject(
            street="12 Liberation Road",
            city="Accra",
            state="Greater Accra",
            postal_code="GA-100",
        ),
        contact_phone="0241234567",
        shipping_method=method,
    )


@pytest.fixture
def make_product(db, admin):
    async def _make(**overrides):
        data = {
            "name": "Exercise Book",
            "sku": f"SKU-{uuid.uuid4().hex[:8]}",
            "price": Decimal("100.00"),
            "kind": "physical",
            "stock": 10,
            "low_stock_threshold": 3,
        }
        data.update(overrides)
        return await catalog_service.create_product(db, CreateProductRequest(**data), admin)

    return _make


@pytest.fixture
def make_digital_product(make_product):
    async def _make(**overrides):
        data = {
            "name": "Mathematics E-Book",
            "price": Decimal("50.00"),
            "kind": "digital",
            "stock": 0,
            "digital_details": DigitalDetails(
                file_url="https://files.example.com/maths.pdf",
                download_limit=2,
                access_duration_days=30,
            ),
        }
        data.update(overrides)
        return await make_product(**data)

    return _make


@pytest.fixture
def make_order(db, customer):
    async def _make(lines, payment_method="mobile_money", actor=None, shipping=True):
        request = CreateOrderRequest(
            items=[OrderItemRequest(product_id=p.product_id, quantity=q) for p, q in lines],
            payment_method=payment_method,
            customer_info=CustomerInfo(name="Ama Mensah", email="ama@example.com"),
            shipping=shipping_details() if shipping else None,
        )
        return await order_service.create_order(db, request, actor or customer)

    return _make
