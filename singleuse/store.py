"""
Grant persistence with an atomic conditional consume.

The store is the only shared mutable resource in the system. Exactly-once
redemption rests entirely on ``try_consume`` issuing a single conditional
``UPDATE ... WHERE state = ACTIVE`` and reading the affected row count: the
database serialises concurrent writers on the row, so one caller sees a count
of 1 and every other caller sees 0. No in-process lock is involved.

The store works on a plain SQLAlchemy ``Engine`` rather than the Flask session
so that Celery tasks and the edge hook can use it without a request context.
"""
from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from enum import Enum

import structlog
from sqlalchemy import delete, insert, select, text, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError, IntegrityError, InterfaceError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from singleuse.models import Grant, GrantState

logger = structlog.get_logger(__name__)

grants_table = Grant.__table__


class GrantStoreError(Exception):
    """Base class for grant store failures."""


class DuplicateIdError(GrantStoreError):
    """A grant with this id already exists. Never overwritten."""

    def __init__(self, grant_id: str):
        super().__init__(f"grant id already exists: {grant_id}")
        self.grant_id = grant_id


class StoreUnavailable(GrantStoreError):
    """The backing store could not be reached or timed out.

    Callers must not read this as "not found" or "already consumed".
    """


class ConsumeOutcome(Enum):
    CONSUMED = "consumed"
    ALREADY_CONSUMED = "already_consumed"
    NOT_FOUND = "not_found"


_UNAVAILABLE_ERRORS = (OperationalError, InterfaceError, PoolTimeoutError)


def _is_unavailable(exc: BaseException) -> bool:
    if isinstance(exc, _UNAVAILABLE_ERRORS):
        return True
    return isinstance(exc, DBAPIError) and bool(exc.connection_invalidated)


class GrantStore:
    """Durable, concurrency-safe storage for grants."""

    def __init__(self, engine: Engine, statement_timeout_ms: int | None = None):
        self.engine = engine
        self.statement_timeout_ms = statement_timeout_ms

    @contextmanager
    def _transaction(self, operation: str, grant_id: str | None = None):
        try:
            with self.engine.begin() as conn:
                self._apply_timeout(conn)
                yield conn
        except IntegrityError:
            raise
        except (DBAPIError, PoolTimeoutError) as e:
            if not _is_unavailable(e):
                raise
            logger.warning(
                "grant_store_unavailable",
                operation=operation,
                grant_id=grant_id,
                error=str(e),
            )
            raise StoreUnavailable(f"{operation} failed: {e}") from e

    def _apply_timeout(self, conn) -> None:
        if not self.statement_timeout_ms:
            return
        if conn.dialect.name == "postgresql":
            # SET does not take bind parameters
            conn.execute(
                text(f"SET LOCAL statement_timeout = {int(self.statement_timeout_ms)}")
            )

    def create(self, grant: Grant) -> Grant:
        """Insert ``grant`` as ACTIVE. Raises DuplicateIdError on id collision."""
        created_at = grant.created_at or datetime.utcnow()
        try:
            with self._transaction("create", grant.id) as conn:
                conn.execute(
                    insert(grants_table).values(
                        id=grant.id,
                        resource_path=grant.resource_path,
                        expires_at=int(grant.expires_at),
                        state=GrantState.ACTIVE,
                        created_at=created_at,
                        consumed_at=None,
                    )
                )
        except IntegrityError as e:
            raise DuplicateIdError(grant.id) from e
        grant.state = GrantState.ACTIVE
        grant.created_at = created_at
        return grant

    def try_consume(self, grant_id: str) -> ConsumeOutcome:
        """Flip ACTIVE to CONSUMED in one conditional write.

        Safe to call again after an ambiguous timeout: a grant that the first
        call did consume reports ALREADY_CONSUMED.
        """
        with self._transaction("try_consume", grant_id) as conn:
            result = conn.execute(
                update(grants_table)
                .where(grants_table.c.id == grant_id)
                .where(grants_table.c.state == GrantState.ACTIVE)
                .values(state=GrantState.CONSUMED, consumed_at=datetime.utcnow())
            )
            if result.rowcount == 1:
                return ConsumeOutcome.CONSUMED
            # The winner is already decided; this read only labels the loss
            exists = conn.execute(
                select(grants_table.c.id).where(grants_table.c.id == grant_id)
            ).first()
        if exists is None:
            return ConsumeOutcome.NOT_FOUND
        return ConsumeOutcome.ALREADY_CONSUMED

    def get(self, grant_id: str) -> Grant | None:
        """Read-only lookup for diagnostics. Not part of the consume path."""
        with self._transaction("get", grant_id) as conn:
            row = conn.execute(
                select(grants_table).where(grants_table.c.id == grant_id)
            ).first()
        if row is None:
            return None
        return Grant(**row._mapping)

    def sweep_expired(self, before: int) -> int:
        """Delete grants whose expiry is earlier than ``before`` (epoch seconds).

        Any URL for a deleted id carries a signed expiry in the past and is
        rejected before the store is consulted, so deletion cannot resurrect a
        grant.
        """
        with self._transaction("sweep_expired") as conn:
            result = conn.execute(
                delete(grants_table).where(grants_table.c.expires_at < int(before))
            )
        return int(result.rowcount or 0)
