"""
Evidence endpoints.

WHAT: List, attach and detach receipts and delivery proof
WHY: Payment and delivery claims are backed by uploaded files
HOW: JSON bodies carry either a storage ref or base64 content
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status

from ..dependencies import current_actor, marketplace
from ....models.api_schemas import AddEvidenceRequest
from ....models.domain import Actor, EvidenceView, TransactionView
from ....services.factory import Marketplace

router = APIRouter()


@router.get("/transactions/{transaction_id}/evidence", response_model=List[EvidenceView])
def list_evidence(
    transaction_id: int,
    actor: Actor = Depends(current_actor),
    services: Marketplace = Depends(marketplace),
):
    return services.evidence.list_evidence(transaction_id, actor)


@router.post(
    "/transactions/{transaction_id}/evidence",
    response_model=TransactionView,
    status_code=status.HTTP_201_CREATED,
)
def add_evidence(
    transaction_id: int,
    request: AddEvidenceRequest,
    actor: Actor = Depends(current_actor),
    services: Marketplace = Depends(marketplace),
):
    """Attach a receipt (buyer) or delivery proof (seller)."""
    if request.content_base64 is not None:
        return services.evidence.upload_evidence(
            transaction_id, request.kind, request.content(), actor,
            expected_version=request.expected_version
        )
    return services.evidence.add_evidence(
        transaction_id, request.kind, request.ref, actor, expected_version=request.expected_version
    )


@router.delete("/transactions/{transaction_id}/evidence", response_model=TransactionView)
def remove_evidence(
    transaction_id: int,
    ref: str = Query(..., min_length=1),
    expected_version: Optional[int] = Query(default=None, ge=1),
    actor: Actor = Depends(current_actor),
    services: Marketplace = Depends(marketplace),
):
    return services.evidence.remove_evidence(transaction_id, ref, actor, expected_version=expected_version)
