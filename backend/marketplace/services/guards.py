"""
Authorization guards shared by the transaction-side services.
"""

from ..core.models import SenderType, Transaction
from ..models.domain import Actor
from ..utils.exceptions import NotAuthorizedError


def require_party(txn: Transaction, actor: Actor) -> SenderType:
    """Buyer or seller of the transaction; returns which one."""
    party = txn.party_of(actor.id)
    if party is None:
        raise NotAuthorizedError(
            f"User {actor.id} is not a party to transaction {txn.id}",
            actor_id=actor.id
        )
    return party


def require_party_or_admin(txn: Transaction, actor: Actor) -> None:
    """Read access: the two parties, administrators and the system."""
    if actor.is_admin or actor.is_system:
        return
    require_party(txn, actor)


def require(condition: bool, message: str, actor: Actor) -> None:
    if not condition:
        raise NotAuthorizedError(message, actor_id=actor.id)
