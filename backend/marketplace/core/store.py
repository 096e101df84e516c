"""
Versioned entity store.

WHAT: get/create/update for offers and transactions with version stamps
WHY: First writer wins without global locks; losers get VersionConflictError
HOW: Eager version comparison plus SQLAlchemy's version_id_col compare-and-swap
     at flush (UPDATE ... WHERE id = :id AND version = :expected)
"""

from contextlib import contextmanager
from typing import Callable, Generic, Iterator, Optional, Type, TypeVar

from sqlalchemy import select
from sqlalchemy.exc import DisconnectionError, OperationalError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from .models import Offer, Transaction, utcnow
from ..utils.exceptions import (
    MarketplaceException,
    NotFoundError,
    UnavailableError,
    VersionConflictError,
)
from ..utils.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


@contextmanager
def unit_of_work(session_factory: sessionmaker) -> Iterator[Session]:
    """
    One database transaction covering every write of one operation.

    Commits on success and rolls back on any error, so partial state is never
    persisted. Driver-level failures are translated into the domain taxonomy:
    a lost compare-and-swap becomes VersionConflictError and an unreachable or
    locked database becomes the retryable UnavailableError.
    """
    session = session_factory()
    try:
        yield session
        session.commit()
    except MarketplaceException:
        session.rollback()
        raise
    except StaleDataError as e:
        session.rollback()
        logger.info(f"Concurrent write lost at commit: {e}")
        raise VersionConflictError("entity", None) from e
    except (OperationalError, DisconnectionError) as e:
        session.rollback()
        logger.error(f"Entity store unavailable: {e}")
        raise UnavailableError() from e
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


class EntityStore(Generic[T]):
    """
    Repository for one versioned aggregate type.

    All mutation goes through update(), which refuses to touch a row whose
    version differs from the one the caller based its decision on.
    """

    def __init__(self, model: Type[T], entity_name: str):
        self.model = model
        self.entity_name = entity_name

    def get(self, db: Session, entity_id: int) -> T:
        """Load an entity or raise NotFoundError."""
        entity = db.get(self.model, entity_id, populate_existing=True)
        if entity is None:
            raise NotFoundError(self.entity_name, entity_id)
        return entity

    def create(self, db: Session, entity: T) -> T:
        """Insert an entity; the id is assigned and version set to 1 at flush."""
        db.add(entity)
        db.flush()
        logger.debug(f"Created {self.entity_name} {entity.id} (version {entity.version})")
        return entity

    def update(
        self,
        db: Session,
        entity_id: int,
        expected_version: Optional[int],
        mutator: Callable[[T], None],
    ) -> T:
        """
        Apply mutator to the entity if it is still at expected_version.

        A None expected_version means "the version just read"; the flush-time
        compare-and-swap still protects against writers that commit between
        this read and the flush.

        Raises:
            NotFoundError: no such entity
            VersionConflictError: the entity moved on, or a concurrent writer won
        """
        entity = self.get(db, entity_id)
        base_version = entity.version if expected_version is None else expected_version
        if entity.version != base_version:
            raise VersionConflictError(self.entity_name, entity_id, base_version, entity.version)

        mutator(entity)
        entity.updated_at = utcnow()

        try:
            db.flush()
        except StaleDataError as e:
            raise VersionConflictError(self.entity_name, entity_id, base_version) from e
        return entity

    def find(self, db: Session, *criteria, order_by=None, limit: Optional[int] = None) -> list[T]:
        """Query helper for simple filtered reads."""
        stmt = select(self.model).where(*criteria)
        if order_by is not None:
            stmt = stmt.order_by(order_by)
        if limit is not None:
            stmt = stmt.limit(limit)
        return list(db.scalars(stmt))


offer_store: EntityStore[Offer] = EntityStore(Offer, "Offer")
transaction_store: EntityStore[Transaction] = EntityStore(Transaction, "Transaction")
