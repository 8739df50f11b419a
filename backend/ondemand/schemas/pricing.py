from decimal import Decimal

from pydantic import BaseModel

from ondemand.models.enums import SubscriptionType


class PlanPrice(BaseModel):
    subscription_type: SubscriptionType
    price: Decimal
    unit: str


class PricingCatalogueResponse(BaseModel):
    currency: str
    plans: list[PlanPrice]
    travel_fee_per_km: Decimal
    free_zone_km: int
