"""
Shared FastAPI dependencies.

WHAT: Resolve the acting user and the service wiring for each request
WHY: Every operation takes an explicit Actor; nothing reads ambient identity
HOW: Header-based identity (trusted gateway) and the Marketplace singleton
"""

from typing import Optional

from fastapi import Header

from ...models.domain import Actor
from ...services.collaborators import HeaderIdentity
from ...services.factory import Marketplace, get_marketplace


def current_actor(
    x_user_id: Optional[str] = Header(default=None),
    x_user_role: Optional[str] = Header(default=None),
) -> Actor:
    return HeaderIdentity(x_user_id, x_user_role).current_user()


def marketplace() -> Marketplace:
    return get_marketplace()
