"""
Status and health check endpoints.

WHAT: Health monitoring for the entity store and background sweeps
WHY: Quick diagnostics for frontend and ops
HOW: FastAPI endpoint calling the database ping
"""

from fastapi import APIRouter, Depends

from ..dependencies import marketplace
from ....core.database import ping_database
from ....core.config import settings
from ....services.factory import Marketplace
from ....utils.logger import get_logger

logger = get_logger(__name__)

router = APIRouter()


@router.get("/health")
def health_check(services: Marketplace = Depends(marketplace)):
    """
    Overall application health check.

    WHAT: Database status plus app metadata
    WHY: Ops and monitoring tools need simple health endpoint
    HOW: Ping the database the services are bound to

    Returns:
        JSON with overall health status
    """
    db_status = ping_database(services.engine)
    if not db_status["available"]:
        logger.error(f"Health check database failed: {db_status['error']}")

    return {
        "status": "healthy" if db_status["available"] else "degraded",
        "version": settings.APP_VERSION,
        "app_name": settings.APP_NAME,
        "components": {
            "database": {
                "available": db_status["available"]
            },
            "sweeps": {
                "running": services.sweeps.running,
                "interval_seconds": services.sweeps.interval_seconds
            }
        }
    }
