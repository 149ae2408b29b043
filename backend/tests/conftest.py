import os

# Settings are read at import time
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("SCHEDULER_ENABLED", "false")

from typing import Any, Dict, List, Optional

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from menu_sync import models  # noqa: F401  registers every table on Base.metadata
from menu_sync.api.deps import get_catalog_source, get_delivery_platform, get_sync_services
from menu_sync.connectors.base import (
    Catalog, CatalogSource, Category, DeliveryPlatform, ModifierGroup, ModifierOption, Product, ScopeKey,
    SubmissionResult,
)
from menu_sync.database import Base, SessionLocal, engine, get_db
from menu_sync.main import app
from menu_sync.services.retry_policy import CircuitBreaker, RetryPolicy, RetryPolicyOptions
from menu_sync.services.sync_orchestrator import build_sync_services


class FakeCatalogSource(CatalogSource):
    def __init__(self, catalog: Optional[Catalog] = None):
        super().__init__({})
        self.catalog = catalog or Catalog()
        self.fetches = 0

    async def fetch_current_catalog(self, scope: ScopeKey) -> Catalog:
        self.fetches += 1
        return self.catalog

    async def validate_connection(self) -> bool:
        return True

    async def close(self):
        pass


class FakeDeliveryPlatform(DeliveryPlatform):
    """Records every call. `error` is raised, `reject` returns an unsuccessful result."""

    def __init__(self):
        super().__init__({})
        self.submissions: List[Dict[str, Any]] = []
        self.deletions: List[List[str]] = []
        self.error: Optional[Exception] = None
        self.reject: Optional[str] = None

    async def submit_delta(self, payload: Dict[str, Any], vendor_code: str) -> SubmissionResult:
        self.submissions.append(payload)
        if self.error is not None:
            raise self.error
        if self.reject is not None:
            return SubmissionResult(success=False, error=self.reject)
        return SubmissionResult(success=True, import_id=f"imp-{len(self.submissions)}")

    async def delete_items(self, entity_ids: List[str], vendor_code: str) -> SubmissionResult:
        self.deletions.append(list(entity_ids))
        if self.error is not None:
            raise self.error
        return SubmissionResult(success=True, import_id=f"del-{len(self.deletions)}")

    async def validate_connection(self) -> bool:
        return True

    async def close(self):
        pass


def make_product(product_id: str, price: float = 10.0, **fields) -> Product:
    values = {"name": f"Product {product_id}", "price": price, "category_id": "cat-1"}
    values.update(fields)
    return Product(id=product_id, **values)


def make_catalog(count: int = 3, **overrides) -> Catalog:
    """`count` products p1..pN in category cat-1; overrides map product id to replacement fields."""
    products = []
    for i in range(1, count + 1):
        product_id = f"p{i}"
        fields = {"price": float(i), **overrides.get(product_id, {})}
        products.append(make_product(product_id, **fields))
    return Catalog(products=products, categories=[Category(id="cat-1", name="Mains")])


def with_modifier(product: Product) -> Product:
    group = ModifierGroup(id=f"mod-{product.id}", name="Size",
                          options=[ModifierOption(id="small", price=0.0), ModifierOption(id="large", price=1.5)])
    return product.model_copy(update={"modifiers": [group]})


def fast_retry_policy(max_attempts: int = 1) -> RetryPolicy:
    options = RetryPolicyOptions(max_attempts=max_attempts, base_delay=0.0, jitter_factor=0.0)
    return RetryPolicy(options, CircuitBreaker(failure_threshold=100))


@pytest.fixture(autouse=True)
def tables():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db() -> Session:
    session = SessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture
def scope() -> ScopeKey:
    return ScopeKey(account_id="acct-1", branch_id="branch-1")


@pytest.fixture
def catalog_source() -> FakeCatalogSource:
    return FakeCatalogSource(make_catalog())


@pytest.fixture
def delivery() -> FakeDeliveryPlatform:
    return FakeDeliveryPlatform()


@pytest.fixture
def services(db, catalog_source, delivery):
    return build_sync_services(db, catalog_source=catalog_source, delivery_platform=delivery,
                               retry_policy=fast_retry_policy())


@pytest.fixture
def client(catalog_source, delivery) -> TestClient:
    def override_get_db() -> Session:
        session = SessionLocal()
        try:
            yield session
        finally:
            session.rollback()
            session.close()

    def override_get_sync_services():
        session = SessionLocal()
        try:
            yield build_sync_services(session, catalog_source=catalog_source, delivery_platform=delivery,
                                      retry_policy=fast_retry_policy())
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_catalog_source] = lambda: catalog_source
    app.dependency_overrides[get_delivery_platform] = lambda: delivery
    app.dependency_overrides[get_sync_services] = override_get_sync_services
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers(client: TestClient) -> Dict[str, str]:
    response = client.post("/api/v1/token", data={"username": "admin", "password": "changeme"})
    token = response.json()["access_token"]
    return {"Authorization": f"Bearer {token}"}
