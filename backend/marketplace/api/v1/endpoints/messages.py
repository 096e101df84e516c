"""
Transaction message endpoints.

WHAT: Buyer/seller chat on a transaction, interleaved with system annotations
WHY: Parties coordinate handover and payment inside the transaction
HOW: FastAPI handlers over the messaging ledger
"""

from fastapi import APIRouter, Depends, Query, status

from ..dependencies import current_actor, marketplace
from ....models.api_schemas import MarkReadResponse, MessageListResponse, PostMessageRequest
from ....models.domain import Actor, MessageView
from ....services.factory import Marketplace

router = APIRouter()


@router.get("/transactions/{transaction_id}/messages", response_model=MessageListResponse)
def list_messages(
    transaction_id: int,
    after_id: int = Query(default=0, ge=0, description="Only messages with a larger id"),
    actor: Actor = Depends(current_actor),
    services: Marketplace = Depends(marketplace),
):
    """Messages oldest first; after_id lets a client poll for new ones."""
    messages = list(services.messages.list_messages(transaction_id, actor, after_id=after_id))
    return MessageListResponse(transaction_id=transaction_id, messages=messages, total=len(messages))


@router.post(
    "/transactions/{transaction_id}/messages",
    response_model=MessageView,
    status_code=status.HTTP_201_CREATED,
)
def post_message(
    transaction_id: int,
    request: PostMessageRequest,
    actor: Actor = Depends(current_actor),
    services: Marketplace = Depends(marketplace),
):
    return services.messages.post_message(transaction_id, actor, request.message)


@router.post("/transactions/{transaction_id}/messages/read", response_model=MarkReadResponse)
def mark_read(
    transaction_id: int,
    actor: Actor = Depends(current_actor),
    services: Marketplace = Depends(marketplace),
):
    marked = services.messages.mark_read(transaction_id, actor)
    return MarkReadResponse(transaction_id=transaction_id, marked_read=marked)
