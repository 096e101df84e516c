"""
API v1 router aggregation.

WHAT: Mount the status, offer, transaction, evidence and message routers
WHY: Every marketplace route lives under one versioned prefix
HOW: One include per endpoint module, tagged for the OpenAPI docs
"""

from fastapi import APIRouter

from .endpoints import evidence, messages, offers, status, transactions

API_V1_PREFIX = "/api/v1"

# Order matters for the docs only; paths do not overlap
ENDPOINT_ROUTERS = (
    (status.router, "status"),
    (offers.router, "offers"),
    (transactions.router, "transactions"),
    (evidence.router, "evidence"),
    (messages.router, "messages"),
)

api_router = APIRouter(prefix=API_V1_PREFIX)

for endpoint_router, tag in ENDPOINT_ROUTERS:
    api_router.include_router(endpoint_router, tags=[tag])
