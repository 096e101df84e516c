"""
Offer endpoints.

WHAT: Make, answer, withdraw and browse offers; buy a listing outright
WHY: Buyers and sellers drive the offer lifecycle over HTTP
HOW: Thin FastAPI handlers delegating to the offer engine and state machine
"""

from datetime import timedelta
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status

from ..dependencies import current_actor, marketplace
from ....core.models import OfferStatus
from ....models.api_schemas import (
    CreateOfferRequest,
    DirectPurchaseRequest,
    RespondOfferRequest,
    VersionedRequest,
)
from ....models.domain import Actor, OfferResolution, OfferView, TransactionView
from ....services.factory import Marketplace
from ....services.offer_engine import OfferRole

router = APIRouter()


@router.post("/items/{item_id}/offers", response_model=OfferView, status_code=status.HTTP_201_CREATED)
def create_offer(
    item_id: int,
    request: CreateOfferRequest,
    actor: Actor = Depends(current_actor),
    services: Marketplace = Depends(marketplace),
):
    """
    Make an offer on a listing.

    Replaces the caller's previous pending offer on the same item.
    """
    ttl = timedelta(hours=request.ttl_hours) if request.ttl_hours is not None else None
    return services.offers.create_offer(item_id, actor, request.amount, note=request.note, ttl=ttl)


@router.post("/items/{item_id}/purchase", response_model=TransactionView, status_code=status.HTTP_201_CREATED)
def purchase_item(
    item_id: int,
    request: DirectPurchaseRequest = DirectPurchaseRequest(),
    actor: Actor = Depends(current_actor),
    services: Marketplace = Depends(marketplace),
):
    """Buy a listing at its asking price."""
    return services.transactions.create_direct_purchase(
        item_id, actor,
        delivery_method=request.delivery_method,
        delivery_address=request.delivery_address,
    )


@router.get("/offers", response_model=List[OfferView])
def list_offers(
    role: Optional[OfferRole] = None,
    status_filter: Optional[OfferStatus] = Query(default=None, alias="status"),
    item_id: Optional[int] = None,
    actor: Actor = Depends(current_actor),
    services: Marketplace = Depends(marketplace),
):
    """Offers the caller made (role=buyer), received (role=seller) or both."""
    return services.offers.list_offers(actor, role=role, status=status_filter, item_id=item_id)


@router.get("/offers/{offer_id}", response_model=OfferView)
def get_offer(
    offer_id: int,
    actor: Actor = Depends(current_actor),
    services: Marketplace = Depends(marketplace),
):
    return services.offers.get_offer(offer_id, actor)


@router.post("/offers/{offer_id}/respond", response_model=OfferResolution)
def respond_to_offer(
    offer_id: int,
    request: RespondOfferRequest,
    actor: Actor = Depends(current_actor),
    services: Marketplace = Depends(marketplace),
):
    """Seller accepts or rejects; accepting returns the new transaction too."""
    return services.offers.respond_to_offer(
        offer_id, actor, request.action, expected_version=request.expected_version
    )


@router.post("/offers/{offer_id}/cancel", response_model=OfferView)
def cancel_offer(
    offer_id: int,
    request: VersionedRequest = VersionedRequest(),
    actor: Actor = Depends(current_actor),
    services: Marketplace = Depends(marketplace),
):
    return services.offers.cancel_offer(offer_id, actor, expected_version=request.expected_version)
