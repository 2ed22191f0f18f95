"""
Pytest fixtures for bizledger tests.

Provides test database setup, two-tenant fixtures, and test client.
"""

import pytest
from bizledger import create_app
from bizledger.extensions import db
from bizledger.models import Company, Warehouse, Product, Customer
from bizledger.services.tenant_service import TenantContext


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'LEDGER_DEFAULT_MIN_THRESHOLD': 5,
        'LEDGER_LOYALTY_POINT_UNIT_CENTS': 10000,
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def company_a(db_session):
    """Create Company A (first tenant)."""
    company = Company(name="Company A - Farmacia Central", code="FARMA", business_type="pharmacy", is_active=True)
    db_session.add(company)
    db_session.commit()
    return company


@pytest.fixture(scope='function')
def company_b(db_session):
    """Create Company B (second tenant)."""
    company = Company(name="Company B - Loja Beta", code="BETA", business_type="retail", is_active=True)
    db_session.add(company)
    db_session.commit()
    return company


@pytest.fixture(scope='function')
def ctx_a(company_a):
    return TenantContext(company_id=company_a.id, performed_by="cashier_a")


@pytest.fixture(scope='function')
def ctx_b(company_b):
    return TenantContext(company_id=company_b.id, performed_by="cashier_b")


@pytest.fixture(scope='function')
def warehouse_a(db_session, company_a):
    """Create the main warehouse of Company A."""
    warehouse = Warehouse(company_id=company_a.id, name="Armazem Principal", code="MAIN")
    db_session.add(warehouse)
    db_session.commit()
    return warehouse


@pytest.fixture(scope='function')
def warehouse_a2(db_session, company_a):
    """Create a second warehouse in Company A."""
    warehouse = Warehouse(company_id=company_a.id, name="Loja Baixa", code="SHOP")
    db_session.add(warehouse)
    db_session.commit()
    return warehouse


@pytest.fixture(scope='function')
def warehouse_b(db_session, company_b):
    warehouse = Warehouse(company_id=company_b.id, name="Beta Store", code="MAIN")
    db_session.add(warehouse)
    db_session.commit()
    return warehouse


@pytest.fixture(scope='function')
def product_a(db_session, company_a):
    """Create Product in Company A (no stock, threshold 5)."""
    product = Product(
        company_id=company_a.id,
        sku="PROD-A-001",
        name="Product A",
        price_cents=1000,
        min_threshold=5,
    )
    db_session.add(product)
    db_session.commit()
    return product


@pytest.fixture(scope='function')
def product_a2(db_session, company_a):
    """Second product in Company A."""
    product = Product(
        company_id=company_a.id,
        sku="PROD-A-002",
        name="Product A2",
        price_cents=2500,
        min_threshold=2,
    )
    db_session.add(product)
    db_session.commit()
    return product


@pytest.fixture(scope='function')
def product_b(db_session, company_b):
    """Create Product in Company B."""
    product = Product(
        company_id=company_b.id,
        sku="PROD-B-001",
        name="Product B",
        price_cents=2000,
    )
    db_session.add(product)
    db_session.commit()
    return product


@pytest.fixture(scope='function')
def regulated_product_a(db_session, company_a):
    product = Product(
        company_id=company_a.id,
        sku="MED-A-001",
        name="Amoxicilina 500mg",
        price_cents=1500,
        min_threshold=5,
        is_regulated=True,
    )
    db_session.add(product)
    db_session.commit()
    return product


@pytest.fixture(scope='function')
def customer_a(db_session, company_a):
    customer = Customer(company_id=company_a.id, name="Joao Machava", phone="+258840000001", credit_limit_cents=100000)
    db_session.add(customer)
    db_session.commit()
    return customer


@pytest.fixture(scope='function')
def customer_b(db_session, company_b):
    customer = Customer(company_id=company_b.id, name="Maria Beta")
    db_session.add(customer)
    db_session.commit()
    return customer
