from decimal import ROUND_HALF_UP, Decimal

from ondemand.config import settings
from ondemand.errors import ValidationError
from ondemand.models.enums import SubscriptionType
from ondemand.models.mechanic_profile import MechanicProfile

_CENT = Decimal("0.01")


def calculate_travel_fees(distance_km: float, free_zone_km: int | None = None) -> Decimal:
    """Calculate travel fees based on distance beyond the free zone."""
    if free_zone_km is None:
        free_zone_km = settings.FREE_ZONE_KM
    billable_km = max(0, distance_km - free_zone_km)
    return (Decimal(str(billable_km)) * settings.TRAVEL_FEE_PER_KM).quantize(
        _CENT, rounding=ROUND_HALF_UP
    )


def calculate_base_price(
    profile: MechanicProfile, subscription_type: SubscriptionType, estimated_hours: int = 1
) -> Decimal:
    if subscription_type == SubscriptionType.HOURLY:
        if estimated_hours < 1:
            raise ValidationError("estimated_hours must be at least 1 for hourly bookings")
        rate = profile.hourly_rate or settings.DEFAULT_HOURLY_RATE
        return Decimal(rate) * estimated_hours
    if subscription_type == SubscriptionType.MONTHLY:
        return Decimal(profile.monthly_rate or settings.DEFAULT_MONTHLY_RATE)
    if subscription_type == SubscriptionType.YEARLY:
        return Decimal(profile.yearly_rate or settings.DEFAULT_YEARLY_RATE)
    raise ValidationError(f"Unknown subscription type '{subscription_type}'")


def calculate_booking_price(
    profile: MechanicProfile,
    subscription_type: SubscriptionType,
    estimated_hours: int,
    distance_km: float,
) -> Decimal:
    """Price charged for a booking once a mechanic is bound to it.

    Plan price from the mechanic's rates plus the travel fee for the straight
    line distance beyond the free zone, rounded half-up to cents.
    """
    base_price = calculate_base_price(profile, subscription_type, estimated_hours)
    travel_fees = calculate_travel_fees(distance_km)
    return (base_price + travel_fees).quantize(_CENT, rounding=ROUND_HALF_UP)


def pricing_catalogue() -> dict:
    return {
        "currency": settings.CURRENCY,
        "plans": [
            {"subscription_type": SubscriptionType.HOURLY.value, "price": settings.DEFAULT_HOURLY_RATE, "unit": "hour"},
            {"subscription_type": SubscriptionType.MONTHLY.value, "price": settings.DEFAULT_MONTHLY_RATE, "unit": "month"},
            {"subscription_type": SubscriptionType.YEARLY.value, "price": settings.DEFAULT_YEARLY_RATE, "unit": "year"},
        ],
        "travel_fee_per_km": settings.TRAVEL_FEE_PER_KM,
        "free_zone_km": settings.FREE_ZONE_KM,
    }
