from decimal import Decimal

from biteclub.models import CustomerRelationship, PromotionConfig, PromotionType
from biteclub.services.promotions import evaluate_promotions


def make_config(**kwargs):
    values = dict(
        first_time_enabled=False,
        first_time_percent=Decimal("0"),
        loyalty_enabled=False,
        loyalty_spend_threshold=Decimal("0"),
        loyalty_reward_amount=Decimal("0"),
    )
    values.update(kwargs)
    return PromotionConfig(**values)


def make_relationship(is_first_time=False, total_spent="0", loyalty_progress="0"):
    return CustomerRelationship(
        is_first_time=is_first_time,
        total_spent=Decimal(total_spent),
        loyalty_progress=Decimal(loyalty_progress),
    )


def test_no_config_charges_subtotal():
    result = evaluate_promotions("12.00", None, None)

    assert result.discount_amount == Decimal("0.00")
    assert result.final_amount == Decimal("12.00")
    assert result.promotion_applied is None
    assert result.loyalty_reward_earned == Decimal("0.00")
    assert result.updated_total_spent == Decimal("12.00")


def test_first_time_discount():
    config = make_config(first_time_enabled=True, first_time_percent=Decimal("20"))

    result = evaluate_promotions("10.00", config, None)

    assert result.discount_amount == Decimal("2.00")
    assert result.final_amount == Decimal("8.00")
    assert result.promotion_applied == PromotionType.FIRST_TIME


def test_first_time_discount_only_once():
    config = make_config(first_time_enabled=True, first_time_percent=Decimal("20"))

    result = evaluate_promotions("10.00", config, make_relationship(is_first_time=False))

    assert result.discount_amount == Decimal("0.00")
    assert result.promotion_applied is None


def test_discount_rounds_to_cents():
    config = make_config(first_time_enabled=True, first_time_percent=Decimal("15"))

    result = evaluate_promotions("9.99", config, None)

    # 9.99 * 15% = 1.4985
    assert result.discount_amount == Decimal("1.50")
    assert result.final_amount == Decimal("8.49")


def test_loyalty_reward_crosses_threshold():
    config = make_config(
        loyalty_enabled=True,
        loyalty_spend_threshold=Decimal("50"),
        loyalty_reward_amount=Decimal("10"),
    )

    result = evaluate_promotions("10.00", config, make_relationship(loyalty_progress="45"))

    assert result.loyalty_reward_earned == Decimal("10.00")
    assert result.updated_loyalty_progress == Decimal("5.00")
    assert result.loyalty_amount_needed is None


def test_loyalty_progress_below_threshold():
    config = make_config(
        loyalty_enabled=True,
        loyalty_spend_threshold=Decimal("50"),
        loyalty_reward_amount=Decimal("10"),
    )

    result = evaluate_promotions("10.00", config, make_relationship(loyalty_progress="20"))

    assert result.loyalty_reward_earned == Decimal("0.00")
    assert result.updated_loyalty_progress == Decimal("30.00")
    assert result.loyalty_amount_needed == Decimal("20.00")


def test_loyalty_uses_pre_discount_subtotal():
    config = make_config(
        first_time_enabled=True,
        first_time_percent=Decimal("50"),
        loyalty_enabled=True,
        loyalty_spend_threshold=Decimal("100"),
        loyalty_reward_amount=Decimal("5"),
    )

    result = evaluate_promotions("40.00", config, None)

    assert result.final_amount == Decimal("20.00")
    assert result.updated_loyalty_progress == Decimal("40.00")


def test_evaluation_is_repeatable():
    config = make_config(
        first_time_enabled=True,
        first_time_percent=Decimal("10"),
        loyalty_enabled=True,
        loyalty_spend_threshold=Decimal("25"),
        loyalty_reward_amount=Decimal("3"),
    )
    relationship = make_relationship(is_first_time=True, loyalty_progress="20")

    assert evaluate_promotions("8.00", config, relationship) == evaluate_promotions("8.00", config, relationship)
