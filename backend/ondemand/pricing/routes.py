from fastapi import APIRouter, Request

from ondemand.schemas.pricing import PricingCatalogueResponse
from ondemand.services.pricing import pricing_catalogue
from ondemand.utils.rate_limit import LIST_RATE_LIMIT, limiter

router = APIRouter()


@router.get("", response_model=PricingCatalogueResponse)
@limiter.limit(LIST_RATE_LIMIT)
async def get_pricing(request: Request):
    """Plan catalogue with the default rates and the travel fee policy."""
    return pricing_catalogue()
