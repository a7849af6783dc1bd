import threading

import pytest

from core.errors import InsufficientStockError, NotFoundError, ValidationError
from models.product import Product
from services import inventory


class TestDecrementStock:
    """Single conditional decrements and restores"""

    def test_decrement(self, db, products):
        phone, _ = products
        inventory.decrement_stock(db, phone.id, 3)
        db.refresh(phone)
        assert phone.stock == 7

    def test_decrement_exact_stock(self, db, products):
        _, case = products
        inventory.decrement_stock(db, case.id, 5)
        db.refresh(case)
        assert case.stock == 0

    def test_insufficient_stock_leaves_stock_alone(self, db, products):
        _, case = products
        with pytest.raises(InsufficientStockError) as exc:
            inventory.decrement_stock(db, case.id, 6)

        db.refresh(case)
        assert case.stock == 5
        assert exc.value.available == 5
        assert "Phone Case" in exc.value.message

    def test_unknown_product(self, db):
        with pytest.raises(NotFoundError):
            inventory.decrement_stock(db, 999, 1)

    def test_quantity_must_be_positive(self, db, products):
        phone, _ = products
        with pytest.raises(ValidationError):
            inventory.decrement_stock(db, phone.id, 0)

    def test_restore(self, db, products):
        phone, _ = products
        inventory.restore_stock(db, phone.id, 4)
        db.refresh(phone)
        assert phone.stock == 14


class TestDecrementAll:
    """All-or-nothing decrements across several products"""

    def test_all_lines_applied(self, db, products):
        phone, case = products
        applied = inventory.decrement_all(db, [(phone.id, 2), (case.id, 1)])

        db.refresh(phone)
        db.refresh(case)
        assert applied == [(phone.id, 2), (case.id, 1)]
        assert (phone.stock, case.stock) == (8, 4)

    def test_failure_restores_earlier_lines(self, db, products):
        phone, case = products
        with pytest.raises(InsufficientStockError):
            inventory.decrement_all(db, [(phone.id, 2), (case.id, 6)])

        db.refresh(phone)
        db.refresh(case)
        assert phone.stock == 10
        assert case.stock == 5


class TestConcurrentDecrements:
    """Parallel buyers against one product"""

    def test_no_oversell(self, file_session_factory):
        with file_session_factory() as setup:
            product = Product(name="Limited Edition", price=5000, stock=5)
            setup.add(product)
            setup.commit()
            product_id = product.id

        results = []
        barrier = threading.Barrier(12)

        def buy():
            with file_session_factory() as session:
                barrier.wait()
                try:
                    inventory.decrement_stock(session, product_id, 1)
                    results.append(True)
                except InsufficientStockError:
                    results.append(False)

        threads = [threading.Thread(target=buy) for _ in range(12)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count(True) == 5
        with file_session_factory() as check:
            assert check.get(Product, product_id).stock == 0
