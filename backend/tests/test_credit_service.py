# Overview: Pytest coverage for credit sale settlement and debt reports.

import pytest

from bizledger.extensions import db
from bizledger.models import CreditPayment, Customer, Sale
from bizledger.services import credit_service, sales_service, stock_service
from bizledger.services.errors import InvalidState, NotFound, PolicyViolation, ValidationError


@pytest.fixture
def stocked_product(db_session, ctx_a, product_a):
    stock_service.record_movement(ctx_a, product_id=product_a.id, quantity=100, movement_type="purchase", origin_module="COMMERCIAL")
    return product_a


def _credit_sale(ctx, product, customer, total_cents):
    return sales_service.create_sale(
        ctx,
        items=[{"product_id": product.id, "quantity": 1, "unit_price_cents": total_cents}],
        payment_method="credit",
        customer_id=customer.id,
    )


class TestRegisterPayment:

    def test_overpayment_rejected_then_full_payment_accepted(self, db_session, ctx_a, stocked_product, customer_a):
        sale = _credit_sale(ctx_a, stocked_product, customer_a, 500)
        assert sale.paid_amount_cents == 0

        with pytest.raises(PolicyViolation) as exc_info:
            credit_service.register_credit_payment(ctx_a, sale.id, 600)
        assert exc_info.value.details["remaining_cents"] == 500
        assert db.session.query(CreditPayment).count() == 0

        payment = credit_service.register_credit_payment(ctx_a, sale.id, 500, "mpesa", reference="MP123")

        sale = db.session.get(Sale, sale.id)
        assert sale.paid_amount_cents == 500
        assert sale.is_paid
        assert payment.received_by == "cashier_a"
        assert payment.customer_id == customer_a.id
        assert payment.payment_method == "mpesa"

    def test_installments_cap_at_total(self, db_session, ctx_a, stocked_product, customer_a):
        sale = _credit_sale(ctx_a, stocked_product, customer_a, 1000)

        credit_service.register_credit_payment(ctx_a, sale.id, 300)
        credit_service.register_credit_payment(ctx_a, sale.id, 300)
        with pytest.raises(PolicyViolation):
            credit_service.register_credit_payment(ctx_a, sale.id, 500)
        credit_service.register_credit_payment(ctx_a, sale.id, 400)

        total_paid = sum(p.amount_cents for p in db.session.query(CreditPayment).filter_by(sale_id=sale.id))
        assert total_paid == 1000
        with pytest.raises(PolicyViolation):
            credit_service.register_credit_payment(ctx_a, sale.id, 1)

    def test_non_credit_sale_invalid_state(self, db_session, ctx_a, stocked_product):
        sale = sales_service.create_sale(ctx_a, items=[{"product_id": stocked_product.id, "quantity": 1}])
        with pytest.raises(InvalidState):
            credit_service.register_credit_payment(ctx_a, sale.id, 100)

    def test_unknown_sale_not_found(self, db_session, ctx_a):
        with pytest.raises(NotFound):
            credit_service.register_credit_payment(ctx_a, 99999, 100)

    def test_other_company_sale_not_found(self, db_session, ctx_a, ctx_b, stocked_product, customer_a):
        sale = _credit_sale(ctx_a, stocked_product, customer_a, 500)
        with pytest.raises(NotFound):
            credit_service.register_credit_payment(ctx_b, sale.id, 100)

    @pytest.mark.parametrize("amount", [0, -50])
    def test_non_positive_amount_rejected(self, db_session, ctx_a, stocked_product, customer_a, amount):
        sale = _credit_sale(ctx_a, stocked_product, customer_a, 500)
        with pytest.raises(ValidationError):
            credit_service.register_credit_payment(ctx_a, sale.id, amount)

    def test_credit_cannot_settle_credit(self, db_session, ctx_a, stocked_product, customer_a):
        sale = _credit_sale(ctx_a, stocked_product, customer_a, 500)
        with pytest.raises(ValidationError):
            credit_service.register_credit_payment(ctx_a, sale.id, 100, "credit")


class TestCreditReports:

    def test_list_by_status(self, db_session, ctx_a, stocked_product, customer_a):
        pending = _credit_sale(ctx_a, stocked_product, customer_a, 500)
        partial = _credit_sale(ctx_a, stocked_product, customer_a, 500)
        paid = _credit_sale(ctx_a, stocked_product, customer_a, 500)
        credit_service.register_credit_payment(ctx_a, partial.id, 200)
        credit_service.register_credit_payment(ctx_a, paid.id, 500)

        assert [s.id for s in credit_service.list_credit_sales(ctx_a, status="pending")] == [pending.id]
        assert [s.id for s in credit_service.list_credit_sales(ctx_a, status="partial")] == [partial.id]
        assert [s.id for s in credit_service.list_credit_sales(ctx_a, status="paid")] == [paid.id]
        assert len(credit_service.list_credit_sales(ctx_a)) == 3

        with pytest.raises(ValidationError):
            credit_service.list_credit_sales(ctx_a, status="overdue")

    def test_payment_history(self, db_session, ctx_a, stocked_product, customer_a):
        sale = _credit_sale(ctx_a, stocked_product, customer_a, 500)
        credit_service.register_credit_payment(ctx_a, sale.id, 100)
        credit_service.register_credit_payment(ctx_a, sale.id, 150)

        history = credit_service.get_payment_history(ctx_a, sale.id)

        assert history["status"] == "partial"
        assert history["remaining_cents"] == 250
        assert [p["amount_cents"] for p in history["payments"]] == [150, 100]

    def test_customer_summary_folds_sales(self, db_session, ctx_a, stocked_product, customer_a):
        s1 = _credit_sale(ctx_a, stocked_product, customer_a, 30000)
        _credit_sale(ctx_a, stocked_product, customer_a, 20000)
        credit_service.register_credit_payment(ctx_a, s1.id, 10000)

        summary = credit_service.get_customer_credit_summary(ctx_a, customer_a.id)

        assert summary["total_credit_cents"] == 50000
        assert summary["total_paid_cents"] == 10000
        assert summary["outstanding_cents"] == 40000
        assert summary["sales_count"] == 2
        assert summary["available_credit_cents"] == 100000 - 40000

    def test_summary_without_limit(self, db_session, ctx_a, company_a):
        customer = Customer(company_id=company_a.id, name="Sem Limite")
        db_session.add(customer)
        db_session.commit()

        summary = credit_service.get_customer_credit_summary(ctx_a, customer.id)
        assert summary["available_credit_cents"] is None
        assert summary["outstanding_cents"] == 0
        assert summary["oldest_debt_at"] is None

    def test_debtors_report_sorted_by_outstanding(self, db_session, ctx_a, company_a, stocked_product, customer_a):
        other = Customer(company_id=company_a.id, name="Ana Bila")
        settled = Customer(company_id=company_a.id, name="Carlos Pago")
        db_session.add_all([other, settled])
        db_session.commit()

        _credit_sale(ctx_a, stocked_product, customer_a, 500)
        _credit_sale(ctx_a, stocked_product, other, 900)
        done = _credit_sale(ctx_a, stocked_product, settled, 400)
        credit_service.register_credit_payment(ctx_a, done.id, 400)

        report = credit_service.get_debtors_report(ctx_a)

        assert [d["customer_id"] for d in report["debtors"]] == [other.id, customer_a.id]
        assert report["total_debtors"] == 2
        assert report["total_outstanding_cents"] == 1400
        assert report["debtors"][0]["oldest_debt_at"] is not None

    def test_debtors_report_is_tenant_scoped(self, db_session, ctx_a, ctx_b, stocked_product, customer_a):
        _credit_sale(ctx_a, stocked_product, customer_a, 500)
        assert credit_service.get_debtors_report(ctx_b)["debtors"] == []
