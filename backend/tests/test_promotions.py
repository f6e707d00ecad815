from datetime import timedelta
from decimal import Decimal

import pytest

from orderflow.errors import ErrorKind, PromotionException
from orderflow.models.promotion import Promotion
from orderflow.services.promotion_service import (
    PromotionView,
    apply_sequentially,
    single_discount,
    sort_promotions,
    validate_compatibility,
)
from orderflow.utils.clock import utcnow


def view(code, type="PERCENTAGE", tag="STACKABLE", value="10"):
    return PromotionView(id=None, code=code, type=type, tag=tag, value=Decimal(value))


@pytest.fixture
def add_promotion(container):
    def _add(code, type="PERCENTAGE", tag="STACKABLE", value="10", **fields):
        with container.gateway.transaction() as s:
            p = Promotion(code=code, type=type, tag=tag, value=Decimal(value), **fields)
            s.add(p)
            s.flush()
        return p

    return _add


def test_sort_order_is_auto_stackable_exclusive():
    promos = [view("S1"), view("E", tag="EXCLUSIVE"), view("A", tag="AUTO"), view("S2")]
    assert [p.code for p in sort_promotions(promos)] == ["A", "S1", "S2", "E"]


def test_compatibility_rules():
    assert validate_compatibility([view("A", tag="AUTO"), view("S")])
    assert validate_compatibility([view("E", tag="EXCLUSIVE")])
    with pytest.raises(PromotionException) as exc:
        validate_compatibility([view("E1", tag="EXCLUSIVE"), view("E2", tag="EXCLUSIVE")])
    assert exc.value.kind is ErrorKind.INCOMPATIBLE_PROMOTIONS
    with pytest.raises(PromotionException):
        validate_compatibility([view("E", tag="EXCLUSIVE"), view("S")])


def test_single_discount_by_type():
    assert single_discount(Decimal("80.00"), view("P", value="12.5")) == Decimal("10.00")
    assert single_discount(Decimal("80.00"), view("F", type="FIXED_AMOUNT", value="15")) == Decimal("15.00")
    assert single_discount(Decimal("80.00"), view("S", type="FREE_SHIPPING", value="0")) == Decimal("0.00")


def test_discounts_compound_and_never_go_negative():
    res = apply_sequentially("100", [view("P10"), view("F95", type="FIXED_AMOUNT", value="95")])
    assert res.final_amount == Decimal("0.00")
    assert res.total_discount == Decimal("100.00")
    first, second = res.applied_promotions
    assert (first.amount_before, first.amount_after) == (Decimal("100.00"), Decimal("90.00"))
    assert (second.discount_amount, second.amount_after) == (Decimal("95.00"), Decimal("0.00"))


def test_percentage_applies_to_running_amount():
    res = apply_sequentially("200.00", [view("A", value="10"), view("B", value="10")])
    assert res.final_amount == Decimal("162.00")


def test_auto_promotions_apply_without_code(container, make_user, add_promotion):
    add_promotion("WELCOME", type="FIXED_AMOUNT", tag="AUTO", value="5")
    res = container.promotions.apply_promotions(make_user().id, "40.00")
    assert [a.code for a in res.applied_promotions] == ["WELCOME"]
    assert res.final_amount == Decimal("35.00")


def test_invalid_codes_are_reported_not_fatal(container, make_user, add_promotion):
    user = make_user()
    add_promotion("OFF", active=False)
    add_promotion("OLD", expires_at=utcnow() - timedelta(days=1))
    add_promotion("ONCE")
    container.promotions.increment_usage(user.id, [add_promotion("USED").id])

    res = container.promotions.apply_promotions(user.id, "100", ["OFF", "OLD", "USED", "MISSING", "ONCE"])
    assert res.invalid_codes == [
        {"code": "OFF", "reason": "PROMOTION_INACTIVE"},
        {"code": "OLD", "reason": "PROMOTION_EXPIRED"},
        {"code": "USED", "reason": "USAGE_LIMIT_EXCEEDED"},
        {"code": "MISSING", "reason": "PROMOTION_NOT_FOUND"},
    ]
    assert [a.code for a in res.applied_promotions] == ["ONCE"]
    assert res.final_amount == Decimal("90.00")


def test_exclusive_with_auto_is_rejected(container, make_user, add_promotion):
    add_promotion("AUTO5", type="FIXED_AMOUNT", tag="AUTO", value="5")
    add_promotion("VIP", tag="EXCLUSIVE", value="30")
    with pytest.raises(PromotionException) as exc:
        container.promotions.apply_promotions(make_user().id, "100", ["VIP"])
    assert exc.value.kind is ErrorKind.INCOMPATIBLE_PROMOTIONS


def test_subtotal_must_be_positive(container, make_user):
    with pytest.raises(PromotionException) as exc:
        container.promotions.apply_promotions(make_user().id, "0")
    assert exc.value.kind is ErrorKind.INVALID_SUBTOTAL


def test_usage_counter_accumulates(container, make_user, add_promotion):
    user = make_user()
    promo = add_promotion("MULTI", usage_limit_per_user=3)
    container.promotions.increment_usage(user.id, [promo.id])
    container.promotions.increment_usage(user.id, [promo.id])

    [usage] = container.promotions.get_user_usage(user.id)
    assert usage == {"promotion_id": promo.id, "code": "MULTI", "count": 2, "limit": 3, "remaining": 1}


def test_result_serializes_to_plain_json(container, make_user, add_promotion):
    add_promotion("TEN")
    data = container.promotions.apply_promotions(make_user().id, "50", ["TEN"]).to_dict()
    assert data["final_amount"] == "45.00"
    assert data["applied_promotions"][0]["discount_amount"] == "5.00"
    assert data["applied_promotions"][0]["code"] == "TEN"
