"""
Subscription pricing tiers and volume discounts (amounts in cents)
"""
from typing import List, Optional

from pydantic import BaseModel

from lessonpulse.config import TRIAL_DAYS


class PricingTier(BaseModel):
    id: str
    name: str
    description: str
    base_price: int
    annual_price: Optional[int] = None
    features: List[str]
    is_popular: bool = False


class VolumeDiscount(BaseModel):
    min_teachers: int
    price_per_teacher: int
    discount: int


class PriceQuote(BaseModel):
    tier: PricingTier
    teacher_count: int
    price_per_teacher: int
    monthly_total: int
    final_price: int
    discount_percent: int
    annual_savings: int
    is_annual: bool
    savings: int


PRICING_TIERS = [
    PricingTier(
        id="teacher",
        name="Teacher",
        description="Perfect for individual teachers",
        base_price=999,
        annual_price=7990,
        features=[
            "Unlimited class scheduling",
            "Student feedback collection",
            "Basic analytics",
            "Mental health monitoring",
        ],
    ),
    PricingTier(
        id="admin",
        name="School Admin",
        description="For principals and administrators",
        base_price=1499,
        annual_price=11990,
        features=[
            "Everything in Teacher plan",
            "Principal/Admin dashboard",
            "School-wide analytics",
            "Teacher management",
            "Advanced reporting",
            "Mental health articles management",
        ],
        is_popular=True,
    ),
]

VOLUME_DISCOUNTS = [
    VolumeDiscount(min_teachers=5, price_per_teacher=899, discount=10),
    VolumeDiscount(min_teachers=10, price_per_teacher=799, discount=20),
]


def get_tier(tier_id: str) -> PricingTier:
    for tier in PRICING_TIERS:
        if tier.id == tier_id:
            return tier
    raise ValueError(f"Invalid tier type: {tier_id}")


def calculate_pricing(tier_id: str, teacher_count: int, is_annual: bool = False) -> PriceQuote:
    """Monthly price for a number of teachers, with volume and annual discounts applied"""
    if teacher_count < 1:
        raise ValueError("Teacher count must be at least 1")
    tier = get_tier(tier_id)

    price_per_teacher = tier.base_price
    discount_percent = 0

    # Volume discounts only apply to the teacher tier
    if tier.id == "teacher":
        applicable = [d for d in VOLUME_DISCOUNTS if teacher_count >= d.min_teachers]
        if applicable:
            best = max(applicable, key=lambda d: d.min_teachers)
            price_per_teacher = best.price_per_teacher
            discount_percent = best.discount

    monthly_total = price_per_teacher * teacher_count
    final_price = monthly_total
    annual_savings = 0

    if is_annual and tier.annual_price:
        final_price = (tier.annual_price // 12) * teacher_count
        annual_savings = monthly_total - final_price

    return PriceQuote(
        tier=tier,
        teacher_count=teacher_count,
        price_per_teacher=price_per_teacher,
        monthly_total=monthly_total,
        final_price=final_price,
        discount_percent=discount_percent,
        annual_savings=annual_savings,
        is_annual=is_annual,
        savings=monthly_total - final_price,
    )


def apply_discount(amount: int, discount_percent: int) -> int:
    return amount * (100 - discount_percent) // 100


def trial_info() -> dict:
    return {"duration": TRIAL_DAYS, "description": f"{TRIAL_DAYS}-day free trial - no credit card required"}


def summer_pause_info() -> dict:
    return {
        "duration": "2-3 months",
        "description": "Pause subscription during summer break",
        "availability": "June - August",
    }
