# Overview: Pytest coverage for atomic document numbering, including concurrent writers.

import os
import tempfile
import threading

import pytest

from bizledger import create_app
from bizledger.extensions import db
from bizledger.models import Company, DocumentSequence, Product
from bizledger.services import document_service, sales_service, stock_service
from bizledger.services.concurrency import run_with_retry
from bizledger.services.errors import ConcurrencyConflict, ValidationError
from bizledger.services.tenant_service import TenantContext


class TestAllocateNumber:

    def test_first_allocation_creates_counter(self, db_session, company_a):
        assert document_service.allocate_number(company_a.id, "SALE") == 1
        db_session.commit()

        row = db_session.query(DocumentSequence).filter_by(company_id=company_a.id, document_type="SALE").one()
        assert row.next_number == 2

    def test_counters_are_independent(self, db_session, company_a, company_b):
        assert document_service.allocate_number(company_a.id, "SALE") == 1
        assert document_service.allocate_number(company_a.id, "SALE") == 2
        assert document_service.allocate_number(company_a.id, "TRANSFER") == 1
        assert document_service.allocate_number(company_b.id, "SALE") == 1
        db_session.commit()

    def test_format(self, db_session, company_a):
        number = document_service.next_document_number(
            company_id=company_a.id, document_type="REGULATED_SALE", prefix="PH", pad=6,
        )
        db_session.commit()
        assert number == f"PH-{company_a.id:03d}-000001"

    def test_missing_company_rejected(self, db_session):
        with pytest.raises(ValidationError):
            document_service.allocate_number(None, "SALE")


class TestRunWithRetry:

    def test_retries_conflicts_then_succeeds(self):
        calls = []

        def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise ConcurrencyConflict("busy")
            return "ok"

        assert run_with_retry(flaky, attempts=3, backoff_base=0) == "ok"
        assert len(calls) == 3

    def test_gives_up_after_attempts(self):
        def always_busy():
            raise ConcurrencyConflict("busy")

        with pytest.raises(ConcurrencyConflict):
            run_with_retry(always_busy, attempts=2, backoff_base=0)

    def test_other_errors_not_retried(self):
        calls = []

        def bad_input():
            calls.append(1)
            raise ValidationError("bad")

        with pytest.raises(ValidationError):
            run_with_retry(bad_input, attempts=3, backoff_base=0)
        assert len(calls) == 1


class TestConcurrentSales:
    """Threads share a file-backed SQLite database, one session per thread."""

    @pytest.fixture
    def file_app(self):
        tmpdir = tempfile.TemporaryDirectory()
        db_path = os.path.join(tmpdir.name, "concurrency.db")
        app = create_app({
            'TESTING': True,
            'SQLALCHEMY_DATABASE_URI': f"sqlite:///{db_path}",
        })

        with app.app_context():
            db.create_all()
            company = Company(name="Concurrency Co", code="CONC")
            db.session.add(company)
            db.session.commit()
            product = Product(company_id=company.id, sku="CONCUR-1", name="Concurrent Product", price_cents=1000)
            db.session.add(product)
            db.session.commit()
            ids = (company.id, product.id)
            stock_service.record_movement(
                TenantContext(company_id=company.id, performed_by="seed"),
                product_id=product.id,
                quantity=10,
                movement_type="purchase",
                origin_module="POS",
            )
            db.session.remove()

        yield app, ids

        with app.app_context():
            db.session.remove()
            db.drop_all()
            db.session.remove()
            db.engine.dispose()
        tmpdir.cleanup()

    def test_sale_numbers_unique_under_concurrency(self, file_app):
        app, (company_id, product_id) = file_app
        ctx = TenantContext(company_id=company_id, performed_by="worker")
        created = []
        errors = []
        lock = threading.Lock()

        def worker():
            with app.app_context():
                try:
                    sale = run_with_retry(lambda: sales_service.create_sale(
                        ctx, items=[{"product_id": product_id, "quantity": 1}],
                    ))
                    with lock:
                        created.append(sale.sale_number)
                except Exception as exc:
                    with lock:
                        errors.append(exc)
                finally:
                    db.session.remove()

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert not errors
        assert len(created) == 8
        assert len(set(created)) == 8

        with app.app_context():
            assert db.session.get(Product, product_id).quantity == 2
            report = stock_service.verify_product_balance(ctx, product_id)
            assert report["consistent"] is True
            db.session.remove()

    def test_concurrent_sales_never_oversell(self, file_app):
        app, (company_id, product_id) = file_app
        ctx = TenantContext(company_id=company_id, performed_by="worker")
        results = []
        lock = threading.Lock()

        def worker():
            with app.app_context():
                try:
                    sales_service.create_sale(ctx, items=[{"product_id": product_id, "quantity": 6}])
                    with lock:
                        results.append("sold")
                except Exception as exc:
                    with lock:
                        results.append(exc)
                finally:
                    db.session.remove()

        threads = [threading.Thread(target=worker) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        with app.app_context():
            on_hand = db.session.get(Product, product_id).quantity
            db.session.remove()

        assert sum(1 for r in results if r == "sold") == 1
        assert on_hand == 4
