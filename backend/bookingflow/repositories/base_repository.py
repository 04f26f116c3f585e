# backend/bookingflow/repositories/base_repository.py
"""
Base Repository Pattern for the booking pipeline

Provides the foundation for all repository classes with:
- Common CRUD operations
- Type safety with generics
- Transaction support (managed by services)
- Query builder helpers

Repositories never commit on their own; the service layer owns the
transaction boundary.
"""

from contextlib import contextmanager
import logging
from typing import Any, Generic, Iterator, List, Optional, Type, TypeVar

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Query, Session

from bookingflow.database.session_utils import get_dialect_name

from ..core.exceptions import RepositoryException

# Type variable for generic model support
T = TypeVar("T")

logger = logging.getLogger(__name__)


class BaseRepository(Generic[T]):
    """
    Concrete base repository implementation with common data access patterns.

    Attributes:
        db: SQLAlchemy session
        model: SQLAlchemy model class
    """

    def __init__(self, db: Session, model: Type[T]):
        """
        Initialize repository with database session and model.

        Args:
            db: SQLAlchemy session (managed by service layer)
            model: SQLAlchemy model class
        """
        self.db = db
        self.model = model
        self.logger = logging.getLogger(f"{__name__}.{model.__name__}")

    @property
    def dialect_name(self) -> str:
        return get_dialect_name(self.db)

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        """Context manager that commits/rolls back the underlying session."""
        try:
            yield self.db
            self.db.commit()
        except SQLAlchemyError as exc:
            self.logger.error("Repository transaction failed: %s", exc)
            self.db.rollback()
            raise
        except Exception:
            self.db.rollback()
            raise

    def get_by_id(self, id: str) -> Optional[T]:
        """Retrieve an entity by its primary key."""
        try:
            return self.db.query(self.model).filter(self.model.id == id).first()
        except SQLAlchemyError as e:
            self.logger.error(f"Error getting {self.model.__name__} by id {id}: {str(e)}")
            raise RepositoryException(f"Failed to retrieve {self.model.__name__}: {str(e)}") from e

    def refresh(self, instance: T) -> None:
        """Refresh an instance from the database."""
        self.db.refresh(instance)

    def create(self, **kwargs: Any) -> T:
        """
        Create a new entity.

        Note: Does NOT commit - transaction management is handled by service layer.
        On an integrity violation the session is rolled back and the
        original ``IntegrityError`` is chained as ``__cause__``.
        """
        try:
            entity = self.model(**kwargs)
            self.db.add(entity)
            self.db.flush()  # Get ID without committing
            return entity
        except IntegrityError as exc:
            self.logger.warning("Integrity error creating %s: %s", self.model.__name__, exc.orig)
            self.db.rollback()
            raise RepositoryException(f"Integrity constraint violated: {exc.orig}") from exc
        except SQLAlchemyError as e:
            self.logger.error(f"Error creating {self.model.__name__}: {str(e)}")
            self.db.rollback()
            raise RepositoryException(f"Failed to create {self.model.__name__}: {str(e)}") from e

    def flush(self) -> None:
        """Flush pending ORM changes."""
        self.db.flush()

    def exists(self, **kwargs: Any) -> bool:
        """Check if an entity exists with given criteria."""
        try:
            return self.db.query(self.model).filter_by(**kwargs).first() is not None
        except SQLAlchemyError as e:
            self.logger.error(f"Error checking existence: {str(e)}")
            raise RepositoryException(f"Failed to check existence: {str(e)}") from e

    def count(self, **kwargs: Any) -> int:
        """Count entities matching given criteria."""
        try:
            return self.db.query(self.model).filter_by(**kwargs).count()
        except SQLAlchemyError as e:
            self.logger.error(f"Error counting records: {str(e)}")
            raise RepositoryException(f"Failed to count records: {str(e)}") from e

    def find_by(self, **kwargs: Any) -> List[T]:
        """
        Find entities by given criteria.

        Args:
            **kwargs: Filter criteria (exact match)

        Returns:
            List of matching entities
        """
        try:
            return self.db.query(self.model).filter_by(**kwargs).all()
        except SQLAlchemyError as e:
            self.logger.error(f"Error finding by criteria: {str(e)}")
            raise RepositoryException(f"Failed to find records: {str(e)}") from e

    def find_one_by(self, **kwargs: Any) -> Optional[T]:
        """
        Find a single entity by given criteria.

        Args:
            **kwargs: Filter criteria (exact match)

        Returns:
            First matching entity or None
        """
        try:
            return self.db.query(self.model).filter_by(**kwargs).first()
        except SQLAlchemyError as e:
            self.logger.error(f"Error finding one by criteria: {str(e)}")
            raise RepositoryException(f"Failed to find record: {str(e)}") from e

    # Protected helper methods for use by subclasses

    def _build_query(self) -> Query:
        """Get base query for the model."""
        return self.db.query(self.model)

    def _execute_query(self, query: Query) -> List[T]:
        """Execute query with error handling."""
        try:
            return query.all()
        except SQLAlchemyError as e:
            self.logger.error(f"Query execution error: {str(e)}")
            raise RepositoryException(f"Query failed: {str(e)}") from e

    def _execute_first(self, query: Query) -> Optional[T]:
        try:
            return query.first()
        except SQLAlchemyError as e:
            self.logger.error(f"Query execution error: {str(e)}")
            raise RepositoryException(f"Query failed: {str(e)}") from e

    def _lock_for_update(self, query: Query) -> Query:
        """Row lock on Postgres; SQLite serialises writers on its own."""
        if self.dialect_name == "postgresql":
            return query.with_for_update()
        return query
