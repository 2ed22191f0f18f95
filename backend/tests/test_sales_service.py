# Overview: Pytest coverage for retail sales.

import pytest

from bizledger.extensions import db
from bizledger.models import Customer, Product, Sale, StockMovement
from bizledger.services import sales_service, stock_service
from bizledger.services.errors import InsufficientResource, NotFound, ValidationError


@pytest.fixture
def stocked(db_session, ctx_a, product_a, product_a2):
    stock_service.record_movement(ctx_a, product_id=product_a.id, quantity=20, movement_type="purchase", origin_module="COMMERCIAL")
    stock_service.record_movement(ctx_a, product_id=product_a2.id, quantity=3, movement_type="purchase", origin_module="COMMERCIAL")
    return product_a, product_a2


class TestCreateSale:

    def test_cash_sale_consumes_stock(self, db_session, ctx_a, stocked):
        product_a, product_a2 = stocked

        sale = sales_service.create_sale(
            ctx_a,
            items=[
                {"product_id": product_a.id, "quantity": 2},
                {"product_id": product_a2.id, "quantity": 1, "discount_cents": 500},
            ],
        )

        assert sale.sale_number == f"FR-{ctx_a.company_id:03d}-0001"
        assert sale.kind == "retail"
        assert sale.subtotal_cents == 2 * 1000 + 2500 - 500
        assert sale.total_cents == sale.subtotal_cents
        assert sale.paid_amount_cents == sale.total_cents
        assert sale.is_paid
        assert sale.created_by == "cashier_a"

        assert db.session.get(Product, product_a.id).quantity == 18
        assert db.session.get(Product, product_a2.id).quantity == 2

        for line in sale.lines:
            movement = db.session.get(StockMovement, line.stock_movement_id)
            assert movement.movement_type == "sale"
            assert movement.origin_module == "POS"
            assert movement.reference == sale.sale_number
            assert movement.delta == -line.quantity

    def test_sale_numbers_are_sequential_per_company(self, db_session, ctx_a, ctx_b, stocked, product_b):
        stock_service.record_movement(ctx_b, product_id=product_b.id, quantity=5, movement_type="purchase", origin_module="POS")
        product_a, _ = stocked

        first = sales_service.create_sale(ctx_a, items=[{"product_id": product_a.id, "quantity": 1}])
        other = sales_service.create_sale(ctx_b, items=[{"product_id": product_b.id, "quantity": 1}])
        second = sales_service.create_sale(ctx_a, items=[{"product_id": product_a.id, "quantity": 1}])

        assert first.sale_number.endswith("-0001")
        assert second.sale_number.endswith("-0002")
        assert other.sale_number == f"FR-{ctx_b.company_id:03d}-0001"

    def test_insufficient_stock_lists_short_products(self, db_session, ctx_a, stocked):
        product_a, product_a2 = stocked

        with pytest.raises(InsufficientResource) as exc_info:
            sales_service.create_sale(
                ctx_a,
                items=[
                    {"product_id": product_a.id, "quantity": 2},
                    {"product_id": product_a2.id, "quantity": 4},
                ],
            )

        items = exc_info.value.details["items"]
        assert items == [{
            "product_id": product_a2.id,
            "sku": "PROD-A-002",
            "requested_quantity": 4,
            "on_hand": 3,
        }]
        assert db.session.get(Product, product_a.id).quantity == 20
        assert db.session.query(Sale).count() == 0

    def test_repeated_product_lines_are_summed_for_check(self, db_session, ctx_a, stocked):
        _, product_a2 = stocked
        with pytest.raises(InsufficientResource):
            sales_service.create_sale(
                ctx_a,
                items=[
                    {"product_id": product_a2.id, "quantity": 2},
                    {"product_id": product_a2.id, "quantity": 2},
                ],
            )

    def test_sale_level_discount(self, db_session, ctx_a, stocked):
        product_a, _ = stocked
        sale = sales_service.create_sale(
            ctx_a,
            items=[{"product_id": product_a.id, "quantity": 3}],
            discount_cents=500,
            payment_method="mpesa",
        )
        assert sale.subtotal_cents == 3000
        assert sale.total_cents == 2500
        assert sale.payment_method == "mpesa"

    def test_discount_over_subtotal_rejected(self, db_session, ctx_a, stocked):
        product_a, _ = stocked
        with pytest.raises(ValidationError):
            sales_service.create_sale(ctx_a, items=[{"product_id": product_a.id, "quantity": 1}], discount_cents=5000)
        assert db.session.get(Product, product_a.id).quantity == 20

    def test_credit_sale_requires_customer(self, db_session, ctx_a, stocked):
        product_a, _ = stocked
        with pytest.raises(ValidationError):
            sales_service.create_sale(ctx_a, items=[{"product_id": product_a.id, "quantity": 1}], payment_method="credit")

    def test_credit_sale_starts_unpaid(self, db_session, ctx_a, stocked, customer_a):
        product_a, _ = stocked
        sale = sales_service.create_sale(
            ctx_a,
            items=[{"product_id": product_a.id, "quantity": 5}],
            customer_id=customer_a.id,
            is_credit=True,
        )
        assert sale.is_credit is True
        assert sale.paid_amount_cents == 0
        assert sale.remaining_cents == 5000

    def test_invalid_payment_method(self, db_session, ctx_a, stocked):
        product_a, _ = stocked
        with pytest.raises(ValidationError):
            sales_service.create_sale(ctx_a, items=[{"product_id": product_a.id, "quantity": 1}], payment_method="cheque")

    def test_empty_sale_rejected(self, db_session, ctx_a):
        with pytest.raises(ValidationError):
            sales_service.create_sale(ctx_a, items=[])

    @pytest.mark.parametrize("item", [
        {"quantity": 1},
        {"product_id": None, "quantity": 1},
        {"product_id": "1", "quantity": 1},
        {"product_id": True, "quantity": 1},
    ])
    def test_item_without_valid_product_id_rejected(self, db_session, ctx_a, stocked, item):
        with pytest.raises(ValidationError) as exc_info:
            sales_service.create_sale(ctx_a, items=[item])

        assert exc_info.value.details == {"item": item}
        assert db.session.query(Sale).count() == 0

    def test_non_mapping_item_rejected(self, db_session, ctx_a, stocked):
        with pytest.raises(ValidationError):
            sales_service.create_sale(ctx_a, items=[("product_id", 1)])

    @pytest.mark.parametrize("discount", [None, "500", 5.0])
    def test_non_integer_sale_discount_rejected(self, db_session, ctx_a, stocked, discount):
        product_a, _ = stocked
        with pytest.raises(ValidationError):
            sales_service.create_sale(
                ctx_a,
                items=[{"product_id": product_a.id, "quantity": 1}],
                discount_cents=discount,
            )
        assert db.session.get(Product, product_a.id).quantity == 20

    @pytest.mark.parametrize("field,value", [("unit_price_cents", "1000"), ("discount_cents", 1.5)])
    def test_non_integer_line_amount_rejected(self, db_session, ctx_a, stocked, field, value):
        product_a, _ = stocked
        with pytest.raises(ValidationError) as exc_info:
            sales_service.create_sale(ctx_a, items=[{"product_id": product_a.id, "quantity": 1, field: value}])

        assert exc_info.value.details["item"][field] == value
        assert db.session.get(Product, product_a.id).quantity == 20

    def test_explicit_none_line_amounts_use_defaults(self, db_session, ctx_a, stocked):
        product_a, _ = stocked
        sale = sales_service.create_sale(
            ctx_a,
            items=[{"product_id": product_a.id, "quantity": 2, "unit_price_cents": None, "discount_cents": None}],
        )
        assert sale.total_cents == 2000
        assert sale.lines[0].discount_cents == 0

    def test_foreign_customer_not_found(self, db_session, ctx_a, stocked, customer_b):
        product_a, _ = stocked
        with pytest.raises(NotFound):
            sales_service.create_sale(ctx_a, items=[{"product_id": product_a.id, "quantity": 1}], customer_id=customer_b.id)


class TestLoyalty:

    def test_points_and_lifetime_total(self, db_session, ctx_a, stocked, customer_a):
        product_a, _ = stocked
        # 15 x 10.00 = 150.00 -> one point per 100.00
        sales_service.create_sale(ctx_a, items=[{"product_id": product_a.id, "quantity": 15}], customer_id=customer_a.id)

        customer = db.session.get(Customer, customer_a.id)
        assert customer.loyalty_points == 1
        assert customer.total_purchases_cents == 15000

    def test_loyalty_failure_does_not_abort_sale(self, db_session, ctx_a, stocked, customer_a):
        from sqlalchemy import event
        from sqlalchemy.exc import SQLAlchemyError

        product_a, _ = stocked

        def refuse_customer_update(mapper, connection, target):
            raise SQLAlchemyError("loyalty store unavailable")

        event.listen(Customer, "before_update", refuse_customer_update)
        try:
            sale = sales_service.create_sale(ctx_a, items=[{"product_id": product_a.id, "quantity": 15}], customer_id=customer_a.id)
        finally:
            event.remove(Customer, "before_update", refuse_customer_update)

        assert db.session.get(Sale, sale.id) is not None
        assert db.session.get(Product, product_a.id).quantity == 5
        assert db.session.get(Customer, customer_a.id).loyalty_points == 0


class TestGetSale:

    def test_other_company_sale_not_found(self, db_session, ctx_a, ctx_b, stocked):
        product_a, _ = stocked
        sale = sales_service.create_sale(ctx_a, items=[{"product_id": product_a.id, "quantity": 1}])

        assert sales_service.get_sale(ctx_a, sale.id).id == sale.id
        with pytest.raises(NotFound):
            sales_service.get_sale(ctx_b, sale.id)
