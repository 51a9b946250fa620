"""Tests for subscription pricing"""
import pytest

from lessonpulse.pricing import apply_discount, calculate_pricing, get_tier


def test_single_teacher_pays_base_price():
    quote = calculate_pricing("teacher", 1)
    assert quote.price_per_teacher == 999
    assert quote.final_price == 999
    assert quote.discount_percent == 0
    assert quote.savings == 0


def test_volume_discount_uses_best_bracket():
    quote = calculate_pricing("teacher", 7)
    assert quote.price_per_teacher == 899
    assert quote.monthly_total == 6293
    assert quote.discount_percent == 10

    quote = calculate_pricing("teacher", 10)
    assert quote.price_per_teacher == 799
    assert quote.discount_percent == 20


def test_annual_billing_is_a_twelfth_of_the_annual_price():
    quote = calculate_pricing("teacher", 3, is_annual=True)
    assert quote.monthly_total == 2997
    assert quote.final_price == 1995
    assert quote.annual_savings == 1002
    assert quote.is_annual


def test_admin_tier_has_no_volume_discount():
    quote = calculate_pricing("admin", 12)
    assert quote.price_per_teacher == 1499
    assert quote.discount_percent == 0
    assert quote.tier.is_popular


def test_invalid_input():
    with pytest.raises(ValueError, match="Invalid tier"):
        get_tier("enterprise")
    with pytest.raises(ValueError, match="at least 1"):
        calculate_pricing("teacher", 0)


def test_apply_discount_rounds_down():
    assert apply_discount(999, 0) == 999
    assert apply_discount(999, 25) == 749
    assert apply_discount(6293, 100) == 0
