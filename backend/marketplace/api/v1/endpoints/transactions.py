"""
Transaction endpoints.

WHAT: Read transactions and drive them through payment, delivery and disputes
WHY: Clients render the returned snapshot instead of refetching after a write
HOW: One POST per state machine operation; every body may carry expected_version
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from ..dependencies import current_actor, marketplace
from ....core.models import TransactionStatus
from ....models.api_schemas import (
    CancelTransactionRequest,
    DeliveryAddressRequest,
    DeliveryStatusRequest,
    RefundRequest,
    ReportProblemRequest,
    ResolveDisputeRequest,
    TrackingNumberRequest,
    VersionedRequest,
)
from ....models.domain import Actor, TransactionView
from ....services.factory import Marketplace

router = APIRouter()


@router.get("/transactions", response_model=List[TransactionView])
def list_transactions(
    status_filter: Optional[TransactionStatus] = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    actor: Actor = Depends(current_actor),
    services: Marketplace = Depends(marketplace),
):
    """Caller's purchases and sales, newest first (administrators see all)."""
    return services.transactions.list_transactions(actor, status=status_filter, limit=limit, offset=offset)


@router.get("/transactions/{transaction_id}", response_model=TransactionView)
def get_transaction(
    transaction_id: int,
    actor: Actor = Depends(current_actor),
    services: Marketplace = Depends(marketplace),
):
    return services.transactions.get_transaction(transaction_id, actor)


@router.post("/transactions/{transaction_id}/pay", response_model=TransactionView)
def mark_paid(
    transaction_id: int,
    request: VersionedRequest = VersionedRequest(),
    actor: Actor = Depends(current_actor),
    services: Marketplace = Depends(marketplace),
):
    """Buyer confirms payment."""
    return services.transactions.mark_paid(transaction_id, actor, expected_version=request.expected_version)


@router.post("/transactions/{transaction_id}/delivery-status", response_model=TransactionView)
def set_delivery_status(
    transaction_id: int,
    request: DeliveryStatusRequest,
    actor: Actor = Depends(current_actor),
    services: Marketplace = Depends(marketplace),
):
    return services.transactions.set_delivery_status(
        transaction_id, actor, request.delivery_status, expected_version=request.expected_version
    )


@router.post("/transactions/{transaction_id}/tracking", response_model=TransactionView)
def set_tracking_number(
    transaction_id: int,
    request: TrackingNumberRequest,
    actor: Actor = Depends(current_actor),
    services: Marketplace = Depends(marketplace),
):
    return services.transactions.set_tracking_number(
        transaction_id, actor, request.tracking_number, expected_version=request.expected_version
    )


@router.post("/transactions/{transaction_id}/address", response_model=TransactionView)
def set_delivery_address(
    transaction_id: int,
    request: DeliveryAddressRequest,
    actor: Actor = Depends(current_actor),
    services: Marketplace = Depends(marketplace),
):
    return services.transactions.set_delivery_address(
        transaction_id, actor, request.address, expected_version=request.expected_version
    )


@router.post("/transactions/{transaction_id}/complete", response_model=TransactionView)
def complete_transaction(
    transaction_id: int,
    request: VersionedRequest = VersionedRequest(),
    actor: Actor = Depends(current_actor),
    services: Marketplace = Depends(marketplace),
):
    """Buyer confirms receipt of a delivered item."""
    return services.transactions.complete(transaction_id, actor, expected_version=request.expected_version)


@router.post("/transactions/{transaction_id}/cancel", response_model=TransactionView)
def cancel_transaction(
    transaction_id: int,
    request: CancelTransactionRequest,
    actor: Actor = Depends(current_actor),
    services: Marketplace = Depends(marketplace),
):
    return services.transactions.cancel(
        transaction_id, actor, request.reason, expected_version=request.expected_version
    )


@router.post("/transactions/{transaction_id}/problem", response_model=TransactionView)
def report_problem(
    transaction_id: int,
    request: ReportProblemRequest,
    actor: Actor = Depends(current_actor),
    services: Marketplace = Depends(marketplace),
):
    """Open a dispute; only an administrator can settle it afterwards."""
    return services.transactions.report_problem(
        transaction_id, actor, request.description, expected_version=request.expected_version
    )


@router.post("/transactions/{transaction_id}/refund", response_model=TransactionView)
def refund_transaction(
    transaction_id: int,
    request: RefundRequest = RefundRequest(),
    actor: Actor = Depends(current_actor),
    services: Marketplace = Depends(marketplace),
):
    return services.transactions.refund(
        transaction_id, actor, note=request.note, expected_version=request.expected_version
    )


@router.post("/transactions/{transaction_id}/resolve", response_model=TransactionView)
def resolve_dispute(
    transaction_id: int,
    request: ResolveDisputeRequest,
    actor: Actor = Depends(current_actor),
    services: Marketplace = Depends(marketplace),
):
    return services.transactions.resolve_dispute(
        transaction_id, actor, request.outcome, note=request.note, expected_version=request.expected_version
    )
