"""Shared pytest fixtures for test suite"""
import os
import sys
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Generator
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Never point the application engine at a real database from tests
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")

# Add backend directory to Python path
backend_dir = Path(__file__).parent.parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

from shopmeter.core.config import settings
from shopmeter.core.constants import Service
from shopmeter.db.session import ISOLATION_LEVEL, get_db
from shopmeter.main import app
from shopmeter.models import Base
from shopmeter.models.plan import Plan, CreditPackage, ServiceLimit
from shopmeter.services.catalog_service import ensure_default_catalog
from shopmeter.services.shop_service import create_shop


# SQLite in-memory database for testing
TEST_DATABASE_URL = "sqlite:///:memory:"

# Create test engine with StaticPool for in-memory database
test_engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
    isolation_level=ISOLATION_LEVEL,
)

# Create test session factory
TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)

SHOP_NAME = "acme.myshopify.com"
SHOP_EMAIL = "owner@acme.test"


@pytest.fixture(scope="function")
def db_session() -> Generator[Session, None, None]:
    """Create a fresh SQLite in-memory database session for each test"""
    # Create all tables
    Base.metadata.create_all(bind=test_engine)

    # Create session
    session = TestSessionLocal()

    try:
        yield session
    finally:
        session.close()
        # Drop all tables after test
        Base.metadata.drop_all(bind=test_engine)


@pytest.fixture(autouse=True)
def mock_email_service():
    """Mock the Resend client; every test runs with email configured"""
    with patch("shopmeter.services.email_service.resend") as mock_resend:
        mock_resend.Emails.send.return_value = {"id": "email_test_123"}
        with patch.object(settings, "RESEND_API_KEY", "re_test_key"):
            yield mock_resend


@pytest.fixture
def now() -> datetime:
    """A fixed moment all lifecycle tests are anchored on"""
    return datetime(2026, 2, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def catalog(db_session: Session):
    """Default plans and packages, keyed by name"""
    ensure_default_catalog(db_session)
    db_session.commit()
    plans = {plan.name: plan for plan in db_session.query(Plan).all()}
    packages = {package.name: package for package in db_session.query(CreditPackage).all()}
    return {"plans": plans, "packages": packages}


@pytest.fixture
def shop(db_session: Session, catalog):
    """A shop with an owner email, not yet subscribed to anything"""
    created = create_shop(SHOP_NAME, db_session, email=SHOP_EMAIL, owner_name="Acme Owner")
    db_session.commit()
    return created


@pytest.fixture
def make_plan(db_session: Session):
    """Factory for plans with explicit per-service limits

    ``limits`` maps a service to (request_limit, credit_limit, conversion_rate).
    """
    def _make_plan(name, price="0", trial_days=0, limits=None):
        plan = Plan(
            name=name,
            description=f"{name} test plan",
            price=Decimal(price),
            trial_days=trial_days,
            credit_amount=sum((Decimal(str(credits)) for _, credits, _ in (limits or {}).values()), Decimal("0")),
        )
        for service, (requests, credits, rate) in (limits or {}).items():
            plan.limits.append(ServiceLimit(
                service=service,
                request_limit=requests,
                credit_limit=Decimal(str(credits)),
                conversion_rate=Decimal(str(rate)),
            ))
        db_session.add(plan)
        db_session.commit()
        return plan

    return _make_plan


@pytest.fixture
def make_package(db_session: Session):
    """Factory for credit packages with explicit per-service limits"""
    def _make_package(name, price="10", limits=None):
        package = CreditPackage(
            name=name,
            description=f"{name} test package",
            credit_amount=sum((Decimal(str(credits)) for _, credits, _ in (limits or {}).values()), Decimal("0")),
            price=Decimal(price),
        )
        for service, (requests, credits, rate) in (limits or {}).items():
            package.limits.append(ServiceLimit(
                service=service,
                request_limit=requests,
                credit_limit=Decimal(str(credits)),
                conversion_rate=Decimal(str(rate)),
            ))
        db_session.add(package)
        db_session.commit()
        return package

    return _make_package


@pytest.fixture
def pro_plan(make_plan):
    """$20/month plan without a trial: 200 AI requests (20 credits), 100 crawl requests"""
    return make_plan(
        "PRO",
        price="20",
        limits={
            Service.AI_API: (200, "20", "0.1"),
            Service.CRAWL_API: (100, "100", "1"),
        },
    )


@pytest.fixture(scope="function")
def client(db_session: Session, catalog) -> Generator[TestClient, None, None]:
    """FastAPI test client with test database"""

    # Override get_db dependency to use test database
    def override_get_db():
        try:
            yield db_session
        finally:
            pass  # Don't close session here, handled by fixture

    app.dependency_overrides[get_db] = override_get_db

    try:
        with patch("shopmeter.main.init_db"):
            with patch("shopmeter.main.seed_catalog"):
                with TestClient(app) as test_client:
                    yield test_client
    finally:
        # Cleanup - always clear overrides
        app.dependency_overrides.clear()
