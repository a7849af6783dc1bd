import threading
from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from core.errors import (
    DiscountBelowMinimumError,
    DiscountExhaustedError,
    DiscountExpiredError,
    DiscountInactiveError,
    DiscountNotFoundError,
)
from models.discount import Discount
from services import discounts


class TestQuoteDiscount:
    """Validation without consuming a use"""

    def test_percentage_discount(self, db, make_discount):
        make_discount(code="SAVE10", value=10)
        quote = discounts.quote_discount(db, "save10", Decimal("1000"))

        assert quote.code == "SAVE10"
        assert quote.amount == Decimal("100")

    def test_percentage_capped_by_max_discount(self, db, make_discount):
        make_discount(code="BIG50", value=50, max_discount=200)
        quote = discounts.quote_discount(db, "BIG50", Decimal("1000"))
        assert quote.amount == Decimal("200")

    def test_fixed_discount(self, db, make_discount):
        make_discount(code="FLAT300", type="fixed", value=300)
        assert discounts.quote_discount(db, "FLAT300", Decimal("1000")).amount == Decimal("300")

    def test_fixed_discount_never_exceeds_subtotal(self, db, make_discount):
        make_discount(code="FLAT300", type="fixed", value=300)
        assert discounts.quote_discount(db, "FLAT300", Decimal("120")).amount == Decimal("120")

    def test_quote_does_not_consume(self, db, make_discount):
        discount = make_discount(usage_limit=1)
        discounts.quote_discount(db, "SAVE10", Decimal("1000"))
        db.refresh(discount)
        assert discount.used_count == 0

    def test_unknown_code(self, db):
        with pytest.raises(DiscountNotFoundError):
            discounts.quote_discount(db, "NOPE", Decimal("1000"))

    def test_inactive_code(self, db, make_discount):
        make_discount(is_active=False)
        with pytest.raises(DiscountInactiveError):
            discounts.quote_discount(db, "SAVE10", Decimal("1000"))

    def test_not_started_code(self, db, make_discount):
        make_discount(start_date=datetime.utcnow() + timedelta(days=1))
        with pytest.raises(DiscountInactiveError):
            discounts.quote_discount(db, "SAVE10", Decimal("1000"))

    def test_expired_code(self, db, make_discount):
        make_discount(start_date=datetime.utcnow() - timedelta(days=10), end_date=datetime.utcnow() - timedelta(days=1))
        with pytest.raises(DiscountExpiredError):
            discounts.quote_discount(db, "SAVE10", Decimal("1000"))

    def test_below_minimum(self, db, make_discount):
        make_discount(min_purchase=2000)
        with pytest.raises(DiscountBelowMinimumError) as exc:
            discounts.quote_discount(db, "SAVE10", Decimal("1000"))
        assert "2000" in exc.value.message

    def test_exhausted(self, db, make_discount):
        make_discount(usage_limit=2, used_count=2)
        with pytest.raises(DiscountExhaustedError):
            discounts.quote_discount(db, "SAVE10", Decimal("1000"))


class TestValidateAndReserve:
    """Redemption through the conditional update"""

    def test_no_code_means_no_discount(self, db):
        assert discounts.validate_and_reserve(db, None, Decimal("1000")) is None
        assert discounts.validate_and_reserve(db, "  ", Decimal("1000")) is None

    def test_reserve_increments_used_count(self, db, make_discount):
        discount = make_discount(usage_limit=3)
        quote = discounts.validate_and_reserve(db, "SAVE10", Decimal("1000"))

        db.refresh(discount)
        assert quote.amount == Decimal("100")
        assert discount.used_count == 1
        assert discount.remaining_uses == 2

    def test_unlimited_code_keeps_redeeming(self, db, make_discount):
        discount = make_discount(usage_limit=None)
        for _ in range(5):
            discounts.validate_and_reserve(db, "SAVE10", Decimal("1000"))
        db.refresh(discount)
        assert discount.used_count == 5
        assert discount.remaining_uses is None

    def test_last_use_then_exhausted(self, db, make_discount):
        make_discount(usage_limit=1)
        discounts.validate_and_reserve(db, "SAVE10", Decimal("1000"))
        with pytest.raises(DiscountExhaustedError):
            discounts.validate_and_reserve(db, "SAVE10", Decimal("1000"))

    def test_release_use_gives_it_back(self, db, make_discount):
        discount = make_discount(usage_limit=1)
        quote = discounts.validate_and_reserve(db, "SAVE10", Decimal("1000"))
        discounts.release_use(db, quote.discount_id)

        db.refresh(discount)
        assert discount.used_count == 0
        assert discounts.validate_and_reserve(db, "SAVE10", Decimal("1000")) is not None

    def test_consume_use_refuses_when_used_up(self, db, make_discount):
        discount = make_discount(usage_limit=1, used_count=1)
        assert discounts.consume_use(db, discount.id) is False


class TestConcurrentRedemption:
    """Two checkouts racing for the last use of a code"""

    def test_one_use_code_redeemed_exactly_once(self, file_session_factory):
        now = datetime.utcnow()
        with file_session_factory() as setup:
            setup.add(
                Discount(
                    code="ONCE",
                    type="fixed",
                    value=100,
                    start_date=now - timedelta(days=1),
                    end_date=now + timedelta(days=1),
                    usage_limit=1,
                )
            )
            setup.commit()

        outcomes = []
        barrier = threading.Barrier(4)

        def checkout():
            with file_session_factory() as session:
                barrier.wait()
                try:
                    discounts.validate_and_reserve(session, "ONCE", Decimal("1000"))
                    outcomes.append("ok")
                except DiscountExhaustedError:
                    outcomes.append("exhausted")

        threads = [threading.Thread(target=checkout) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert outcomes.count("ok") == 1
        assert outcomes.count("exhausted") == 3
        with file_session_factory() as check:
            assert check.query(Discount).one().used_count == 1
