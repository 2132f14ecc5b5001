from decimal import Decimal
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from barpos import realtime
from barpos.db import Base, make_engine
from barpos.main import app, get_db
from barpos.models import Category, Customer, DiningTable, Package, PackageItem, Product


@pytest.fixture
def session_factory():
    engine = make_engine("sqlite:///:memory:", poolclass=StaticPool)
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(bind=engine, autoflush=False, autocommit=False)
    engine.dispose()


@pytest.fixture
def db(session_factory):
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def client(session_factory):
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as client:
        yield client
    app.dependency_overrides.clear()


@pytest.fixture(autouse=True)
def bus(monkeypatch):
    event_bus = realtime.EventBus()
    monkeypatch.setattr(realtime, "bus", event_bus)
    return event_bus


@pytest.fixture
def events(bus):
    """Every event published on the usual channels, as ``(channel, event)`` pairs."""
    captured = []
    for channel in ("orders", "sessions", "tables", "kitchen", "bartender", "notifications"):
        bus.subscribe(channel, lambda channel, event: captured.append((channel, event)))
    return captured


@pytest.fixture
def seed(session_factory):
    def _seed(beer_stock: int = 10, sisig_stock: int = 5) -> SimpleNamespace:
        db = session_factory()
        try:
            beer_category = Category(name="Beer", default_destination="bartender", stock_policy="strict")
            food_category = Category(name="Pulutan", default_destination="kitchen", stock_policy="flexible")
            specials = Category(name="Specials")
            show = Category(name="Bar Show", default_destination="both")

            beer = Product(
                category=beer_category, name="Beer", base_price=Decimal("80.00"),
                current_stock=beer_stock, reorder_point=2,
            )
            sisig = Product(
                category=food_category, name="Sisig", base_price=Decimal("180.00"),
                current_stock=sisig_stock, reorder_point=1,
            )
            shake = Product(
                category=specials, name="Mango Shake", base_price=Decimal("120.00"),
                current_stock=20, reorder_point=5,
            )
            flaming = Product(
                category=show, name="Flaming Platter", base_price=Decimal("350.00"),
                current_stock=10, reorder_point=0,
            )
            bucket = Package(
                name="Party Bucket",
                price=Decimal("1200.00"),
                items=[PackageItem(product=beer, quantity=12), PackageItem(product=sisig, quantity=2)],
            )
            customer = Customer(full_name="Juan Dela Cruz", phone="09170000000")
            t1 = DiningTable(table_number="T1", capacity=4, area="Main")
            t2 = DiningTable(table_number="T2", capacity=2, area="Main")
            patio = DiningTable(table_number="P1", capacity=6, area="Patio", is_active=False)

            db.add_all([beer, sisig, shake, flaming, bucket, customer, t1, t2, patio])
            db.commit()
            return SimpleNamespace(
                beer=beer.id,
                sisig=sisig.id,
                shake=shake.id,
                flaming=flaming.id,
                bucket=bucket.id,
                customer=customer.id,
                t1=t1.id,
                t2=t2.id,
                patio=patio.id,
            )
        finally:
            db.close()

    return _seed
