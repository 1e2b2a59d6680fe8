"""Namespaced resource store.

Every emulated entity is one row in the ``resources`` table, keyed by
(identifier, namespace) and scoped by service and type. The store treats the
attribute blob as opaque JSON; per-type shape lives in models.py and
normalizer.py.

Writes replace the full blob (last writer wins). There are no cross-row
transactions and no cascading deletes; handlers keep related rows
consistent themselves.
"""

from __future__ import annotations

import copy
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, TypeVar

from sqlalchemy import JSON, DateTime, String, create_engine, delete, func, select
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from .config import DEFAULT_READ_RETRY_ATTEMPTS, DEFAULT_READ_RETRY_DELAY_MS, RetrySettings
from .errors import InternalFailure, ResourceAlreadyExists, ResourceNotFound

logger = logging.getLogger(__name__)

T = TypeVar("T")

# SQLite waits this long on a locked database file before failing
SQLITE_BUSY_TIMEOUT_SECONDS = 30


class Base(DeclarativeBase):
    """Declarative base for the emulator's tables."""


class ResourceRow(Base):
    """ORM mapping of the ``resources`` table."""

    __tablename__ = "resources"

    identifier: Mapped[str] = mapped_column("id", String(512), primary_key=True)
    namespace: Mapped[str] = mapped_column(String(128), primary_key=True)
    service: Mapped[str] = mapped_column(String(64), index=True)
    type: Mapped[str] = mapped_column(String(64), index=True)
    attributes: Mapped[dict[str, Any]] = mapped_column(
        JSON().with_variant(JSONB(), "postgresql"), default=dict
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


@dataclass
class Resource:
    """A stored entity, detached from any database session.

    Attributes:
        identifier: Unique within (namespace, service, type).
        namespace: Tenant isolation key.
        service: Emulated API family, e.g. "dynamodb".
        type: Entity kind within the service, e.g. "table".
        attributes: Nested JSON-compatible mapping.
        created_at: Set once on creation, never mutated.
    """

    identifier: str
    namespace: str
    service: str
    type: str
    attributes: dict[str, Any] = field(default_factory=dict)
    created_at: datetime | None = None

    @property
    def entity_type(self) -> str:
        """Qualified entity type, e.g. "dynamodb/table"."""
        return f"{self.service}/{self.type}"

    def with_attributes(self, attributes: dict[str, Any]) -> Resource:
        """Copy of this resource carrying a different attribute blob."""
        return Resource(
            identifier=self.identifier,
            namespace=self.namespace,
            service=self.service,
            type=self.type,
            attributes=attributes,
            created_at=self.created_at,
        )

    @classmethod
    def from_row(cls, row: ResourceRow) -> Resource:
        return cls(
            identifier=row.identifier,
            namespace=row.namespace,
            service=row.service,
            type=row.type,
            attributes=copy.deepcopy(row.attributes or {}),
            created_at=row.created_at,
        )


@dataclass(frozen=True)
class ReadRetryPolicy:
    """Bounded, fixed-delay retry for reads that follow a dependent write.

    Attributes:
        max_attempts: Total attempts including the first (>= 1).
        delay_seconds: Sleep between attempts.
    """

    max_attempts: int = DEFAULT_READ_RETRY_ATTEMPTS
    delay_seconds: float = DEFAULT_READ_RETRY_DELAY_MS / 1000.0

    @classmethod
    def from_settings(cls, settings: RetrySettings) -> ReadRetryPolicy:
        return cls(max_attempts=settings.attempts, delay_seconds=settings.delay_seconds)

    def run(self, read: Callable[[], T], description: str = "") -> T:
        """Call ``read`` until it stops raising ResourceNotFound.

        Args:
            read: Zero-argument lookup.
            description: Label used in retry log lines.

        Returns:
            Whatever ``read`` returns on the first successful attempt.

        Raises:
            ResourceNotFound: The last attempt's error once attempts run out.
        """
        attempts = max(1, self.max_attempts)
        for attempt in range(1, attempts + 1):
            try:
                return read()
            except ResourceNotFound:
                if attempt >= attempts:
                    raise
                logger.debug(
                    "Resource not visible yet, retrying read",
                    extra={
                        "resource": description,
                        "attempt": attempt,
                        "max_attempts": attempts,
                        "delay_seconds": self.delay_seconds,
                    },
                )
                time.sleep(self.delay_seconds)
        raise AssertionError("unreachable")  # pragma: no cover


def create_store_engine(url: str, *, echo: bool = False, **kwargs: Any) -> Engine:
    """Create a SQLAlchemy engine suited to the emulator's access pattern.

    ``sqlite://`` (no path) is an in-memory database shared by every thread
    through a single static connection. File-backed SQLite allows use from
    the server's worker threads. Other URLs are passed through unchanged.

    Args:
        url: SQLAlchemy database URL.
        echo: Log every SQL statement.
        **kwargs: Forwarded to ``sqlalchemy.create_engine``.

    Returns:
        Configured engine.
    """
    if url.startswith("sqlite"):
        connect_args = kwargs.setdefault("connect_args", {})
        connect_args.setdefault("check_same_thread", False)
        connect_args.setdefault("timeout", SQLITE_BUSY_TIMEOUT_SECONDS)
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs.setdefault("poolclass", StaticPool)
    return create_engine(url, echo=echo, **kwargs)


class ResourceStore:
    """Persistent map from (identifier, namespace, service, type) to attributes.

    Thread Safety:
        Every call opens its own session, so one store may be shared by all
        request threads.
    """

    def __init__(
        self,
        engine: Engine,
        retry_policy: ReadRetryPolicy | None = None,
    ) -> None:
        """Initialize the store.

        Args:
            engine: SQLAlchemy engine for the backing database.
            retry_policy: Policy used by ``get(..., retry=True)``.
        """
        self._engine = engine
        self._sessions = sessionmaker(bind=engine, expire_on_commit=False)
        self._retry = retry_policy or ReadRetryPolicy()

    @classmethod
    def from_url(cls, url: str, retry_policy: ReadRetryPolicy | None = None) -> ResourceStore:
        """Build a store for a database URL and make sure its schema exists."""
        store = cls(create_store_engine(url), retry_policy)
        store.create_schema()
        return store

    @property
    def engine(self) -> Engine:
        return self._engine

    @property
    def retry_policy(self) -> ReadRetryPolicy:
        return self._retry

    def create_schema(self) -> None:
        """Create the ``resources`` table if it does not exist."""
        try:
            Base.metadata.create_all(self._engine)
        except SQLAlchemyError as e:
            raise InternalFailure(f"Failed to initialize resource store: {e}") from e

    def dispose(self) -> None:
        """Release pooled connections."""
        self._engine.dispose()

    def create(self, resource: Resource) -> Resource:
        """Insert a new resource.

        Args:
            resource: Resource to insert. ``created_at`` is set when missing.

        Returns:
            The stored resource.

        Raises:
            ResourceAlreadyExists: (identifier, namespace) is already taken.
            InternalFailure: Any other database failure.
        """
        created_at = resource.created_at or datetime.now(UTC)
        row = ResourceRow(
            identifier=resource.identifier,
            namespace=resource.namespace,
            service=resource.service,
            type=resource.type,
            attributes=copy.deepcopy(resource.attributes),
            created_at=created_at,
        )
        try:
            with self._sessions() as session, session.begin():
                session.add(row)
        except IntegrityError as e:
            raise ResourceAlreadyExists(
                f"Resource already exists: {resource.entity_type} {resource.identifier}"
            ) from e
        except SQLAlchemyError as e:
            raise InternalFailure(f"Failed to create resource: {e}") from e

        logger.debug(
            "Created resource",
            extra={
                "identifier": resource.identifier,
                "namespace": resource.namespace,
                "entity_type": resource.entity_type,
            },
        )
        return Resource(
            identifier=resource.identifier,
            namespace=resource.namespace,
            service=resource.service,
            type=resource.type,
            attributes=copy.deepcopy(resource.attributes),
            created_at=created_at,
        )

    def get(
        self,
        identifier: str,
        service: str,
        type: str,
        namespace: str,
        *,
        retry: bool = False,
    ) -> Resource:
        """Fetch one resource by its full key.

        Args:
            identifier: Resource identifier.
            service: Service name.
            type: Entity type within the service.
            namespace: Tenant namespace.
            retry: Apply the read-after-write retry policy.

        Returns:
            The stored resource.

        Raises:
            ResourceNotFound: No such row (after retry when requested).
            InternalFailure: Database failure.
        """

        def read() -> Resource:
            row = self._get_row(identifier, service, type, namespace)
            if row is None:
                raise ResourceNotFound(f"Resource not found: {service}/{type} {identifier}")
            return row

        if retry:
            return self._retry.run(read, description=f"{service}/{type} {identifier}")
        return read()

    def find(self, identifier: str, service: str, type: str, namespace: str) -> Resource | None:
        """Like ``get`` but returns None for a missing row."""
        return self._get_row(identifier, service, type, namespace)

    def list(self, service: str, type: str, namespace: str) -> list[Resource]:
        """All resources of one entity type in a namespace, ordered by identifier."""
        stmt = (
            select(ResourceRow)
            .where(
                ResourceRow.namespace == namespace,
                ResourceRow.service == service,
                ResourceRow.type == type,
            )
            .order_by(ResourceRow.identifier)
        )
        try:
            with self._sessions() as session:
                return [Resource.from_row(row) for row in session.scalars(stmt)]
        except SQLAlchemyError as e:
            raise InternalFailure(f"Failed to list resources: {e}") from e

    def update(self, resource: Resource) -> Resource:
        """Replace the attribute blob of an existing resource.

        ``created_at`` is preserved from the stored row.

        Raises:
            ResourceNotFound: No such row.
            InternalFailure: Database failure.
        """
        try:
            with self._sessions() as session, session.begin():
                row = self._select_row(
                    session, resource.identifier, resource.service, resource.type, resource.namespace
                )
                if row is None:
                    raise ResourceNotFound(
                        f"Resource not found: {resource.entity_type} {resource.identifier}"
                    )
                row.attributes = copy.deepcopy(resource.attributes)
                stored = Resource.from_row(row)
        except SQLAlchemyError as e:
            raise InternalFailure(f"Failed to update resource: {e}") from e
        return stored

    def delete(self, identifier: str, service: str, type: str, namespace: str) -> None:
        """Remove one resource.

        Raises:
            ResourceNotFound: No such row.
            InternalFailure: Database failure.
        """
        stmt = delete(ResourceRow).where(
            ResourceRow.identifier == identifier,
            ResourceRow.namespace == namespace,
            ResourceRow.service == service,
            ResourceRow.type == type,
        )
        try:
            with self._sessions() as session, session.begin():
                deleted = session.execute(stmt).rowcount
        except SQLAlchemyError as e:
            raise InternalFailure(f"Failed to delete resource: {e}") from e
        if not deleted:
            raise ResourceNotFound(f"Resource not found: {service}/{type} {identifier}")

    def purge(self, namespace: str | None = None) -> int:
        """Delete every resource, optionally only those of one namespace.

        Returns:
            Number of rows removed.
        """
        stmt = delete(ResourceRow)
        if namespace is not None:
            stmt = stmt.where(ResourceRow.namespace == namespace)
        try:
            with self._sessions() as session, session.begin():
                removed = session.execute(stmt).rowcount or 0
        except SQLAlchemyError as e:
            raise InternalFailure(f"Failed to purge resources: {e}") from e
        logger.info("Purged resources", extra={"namespace": namespace, "removed": removed})
        return removed

    def count(
        self,
        service: str | None = None,
        type: str | None = None,
        namespace: str | None = None,
    ) -> int:
        """Count rows matching the given (optional) key components."""
        stmt = select(func.count()).select_from(ResourceRow)
        if service is not None:
            stmt = stmt.where(ResourceRow.service == service)
        if type is not None:
            stmt = stmt.where(ResourceRow.type == type)
        if namespace is not None:
            stmt = stmt.where(ResourceRow.namespace == namespace)
        try:
            with self._sessions() as session:
                return int(session.scalar(stmt) or 0)
        except SQLAlchemyError as e:
            raise InternalFailure(f"Failed to count resources: {e}") from e

    def all(self, namespace: str | None = None) -> list[Resource]:
        """Every resource, ordered by namespace, service, type and identifier."""
        stmt = select(ResourceRow).order_by(
            ResourceRow.namespace, ResourceRow.service, ResourceRow.type, ResourceRow.identifier
        )
        if namespace is not None:
            stmt = stmt.where(ResourceRow.namespace == namespace)
        try:
            with self._sessions() as session:
                return [Resource.from_row(row) for row in session.scalars(stmt)]
        except SQLAlchemyError as e:
            raise InternalFailure(f"Failed to list resources: {e}") from e

    def _get_row(self, identifier: str, service: str, type: str, namespace: str) -> Resource | None:
        try:
            with self._sessions() as session:
                row = self._select_row(session, identifier, service, type, namespace)
                return Resource.from_row(row) if row is not None else None
        except SQLAlchemyError as e:
            raise InternalFailure(f"Failed to read resource: {e}") from e

    @staticmethod
    def _select_row(
        session: Session, identifier: str, service: str, type: str, namespace: str
    ) -> ResourceRow | None:
        stmt = select(ResourceRow).where(
            ResourceRow.identifier == identifier,
            ResourceRow.namespace == namespace,
            ResourceRow.service == service,
            ResourceRow.type == type,
        )
        return session.scalars(stmt).first()
