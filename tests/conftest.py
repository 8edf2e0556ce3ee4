from __future__ import annotations

import uuid
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

import settlement.persistence.pg as pg
from settlement.core.config import get_settings
from settlement.core.security import Actor, create_access_token
from settlement.domain.cart import add_to_cart
from settlement.domain.disputes import DisputeService
from settlement.domain.orders.workflow import OrderSettlementService
from settlement.domain.result import Ok
from settlement.domain.states import PaymentMethod, ProductStatus
from settlement.integrations.jobs import InMemoryJobQueue
from settlement.integrations.tracking import RecordingEventTracker
from settlement.payments.gateway import ActionResult, PaymentIntentResult
from settlement.persistence.models import Base, ProductModel, RetailerModel

ADDRESS = {
    "full_name": "Layla Haddad",
    "phone": "+971500000000",
    "line1": "Villa 12, Street 4",
    "city": "Dubai",
    "country": "AE",
}


class ScriptedGateway:
    """Gateway double whose answers are set per test."""

    backend = "scripted"

    def __init__(self):
        self.calls: list[tuple] = []
        self.authorize_status = "Captured"
        self.authorize_error = None
        self.capture_error = None
        self.refund_error = None
        self.lookup_error = None
        self.lookups: dict[str, PaymentIntentResult] = {}
        self._seq = 0

    def _next(self, prefix: str) -> str:
        self._seq += 1
        return f"{prefix}_test_{self._seq}"

    def authorize(self, amount, token, reference, capture, method, currency=None, description=None, customer=None):
        self.calls.append(("authorize", reference, amount))
        if self.authorize_error is not None:
            raise self.authorize_error
        return PaymentIntentResult(
            external_id=self._next("pay"),
            action_id=self._next("act"),
            approved=True,
            status=self.authorize_status,
            response_code="10000",
        )

    def capture(self, external_id, amount=None):
        self.calls.append(("capture", external_id, amount))
        if self.capture_error is not None:
            raise self.capture_error
        return ActionResult(action_id=self._next("act"))

    def refund(self, external_id, amount=None):
        self.calls.append(("refund", external_id, amount))
        if self.refund_error is not None:
            raise self.refund_error
        return ActionResult(action_id=self._next("act"))

    def find_by_reference(self, reference):
        self.calls.append(("lookup", reference))
        if self.lookup_error is not None:
            raise self.lookup_error
        return self.lookups.get(reference)

    def count(self, name: str) -> int:
        return sum(1 for call in self.calls if call[0] == name)


class Catalog:
    def retailer(self, name: str = "Oak & Co", rate_bps: int | None = None) -> str:
        with pg.session_scope() as session:
            retailer = RetailerModel(name=name, commission_rate_bps=rate_bps)
            session.add(retailer)
            session.flush()
            return retailer.id

    def product(
        self,
        retailer_id: str,
        price_fils: int,
        stock: int = 10,
        status: ProductStatus = ProductStatus.ACTIVE,
        name: str = "Walnut side table",
    ) -> str:
        with pg.session_scope() as session:
            product = ProductModel(
                retailer_id=retailer_id,
                name=name,
                sku=f"SKU-{uuid.uuid4().hex[:8]}",
                price_fils=price_fils,
                stock_quantity=stock,
                validation_status=status.value,
            )
            session.add(product)
            session.flush()
            return product.id

    def stock(self, product_id: str) -> int:
        with pg.session_scope() as session:
            return session.get(ProductModel, product_id).stock_quantity

    def set_status(self, product_id: str, status: ProductStatus) -> None:
        with pg.session_scope() as session:
            session.get(ProductModel, product_id).validation_status = status.value


@pytest.fixture(scope="session")
def test_db_path(tmp_path_factory: pytest.TempPathFactory) -> Path:
    return tmp_path_factory.mktemp("db") / "test.sqlite"


@pytest.fixture(scope="session", autouse=True)
def configure_test_engine(test_db_path: Path):
    settings = get_settings()
    settings.gateway_secret_key = None
    settings.commission_mode = "inline"
    settings.auth_enabled = True

    engine = create_engine(
        f"sqlite+pysqlite:///{test_db_path}",
        future=True,
        connect_args={"check_same_thread": False},
    )
    TestSessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)

    pg.engine = engine
    pg.SessionLocal = TestSessionLocal

    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def session(configure_test_engine):
    with pg.session_scope() as s:
        yield s


@pytest.fixture()
def catalog() -> Catalog:
    return Catalog()


@pytest.fixture()
def gateway() -> ScriptedGateway:
    return ScriptedGateway()


@pytest.fixture()
def tracker() -> RecordingEventTracker:
    return RecordingEventTracker()


@pytest.fixture()
def jobs() -> InMemoryJobQueue:
    return InMemoryJobQueue()


@pytest.fixture()
def service(gateway, jobs, tracker) -> OrderSettlementService:
    return OrderSettlementService(gateway, jobs=jobs, tracker=tracker)


@pytest.fixture()
def disputes(service) -> DisputeService:
    return DisputeService(service.refunds, tracker=service.tracker)


@pytest.fixture()
def customer() -> Actor:
    return Actor(type="customer", id=f"cust-{uuid.uuid4().hex[:10]}")


@pytest.fixture()
def admin() -> Actor:
    return Actor(type="admin", id=get_settings().admin_actor_id)


@pytest.fixture()
def place_order(service):
    def _place(customer: Actor, items: list[tuple[str, int]]) -> dict:
        with pg.session_scope() as s:
            for product_id, quantity in items:
                added = add_to_cart(s, customer.id, product_id, quantity)
                assert isinstance(added, Ok), added
        created = service.create_order(customer.id, ADDRESS)
        assert isinstance(created, Ok), created
        return created.value

    return _place


@pytest.fixture()
def paid_order(service, place_order):
    def _pay(customer: Actor, items: list[tuple[str, int]]) -> dict:
        order = place_order(customer, items)
        paid = service.process_payment(customer, order["id"], PaymentMethod.CARD, "tok_visa")
        assert isinstance(paid, Ok), paid
        assert paid.value.order_status == "PAID"
        return order

    return _pay


@pytest.fixture()
def client(configure_test_engine, gateway, tracker):
    from settlement.api.dependencies import get_gateway, get_tracker
    from settlement.main import app

    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_tracker] = lambda: tracker
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture()
def auth_headers():
    settings = get_settings()
    return {
        "admin": {"X-API-Key": settings.admin_api_key},
        "system": {"X-API-Key": settings.system_api_key},
    }


@pytest.fixture()
def customer_headers(customer):
    token = create_access_token(customer)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture()
def shipping_address() -> dict:
    return dict(ADDRESS)
