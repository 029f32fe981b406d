"""
Dead Letter Queue (DLQ) for failed outbound operations.

Operations that exhaust their retry budget (SMS sends, inbound webhooks,
subscription updates, payments) are recorded in the tenant's own database
so an operator can inspect and replay them.

Lifecycle::

    PENDING --resolve--> RESOLVED
    PENDING --mark_dead--> DEAD_LETTER
    PENDING --increment_retry--> PENDING (retry_count + 1)

No other transition is allowed. Only RESOLVED entries are ever purged.
"""

from __future__ import annotations

import asyncio
import logging
import math
import traceback
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any, Protocol, runtime_checkable

from sqlalchemy import text

from tenantcore.exceptions import DLQEntryNotFoundError, InvalidDLQTransitionError
from tenantcore.observability import Tracer, create_tracer
from tenantcore.observability.attributes import (
    ATTR_DB_SYSTEM,
    ATTR_DLQ_CATEGORY,
    ATTR_DLQ_ENTRY_ID,
    ATTR_ERROR_TYPE,
)
from tenantcore.repositories._connection import (
    ConnectionSource,
    dialect_name,
    execute_with_connection,
)
from tenantcore.serialization import json_dumps, json_loads

logger = logging.getLogger(__name__)

_TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


class DLQCategory(str, Enum):
    """Kinds of operations that can land in the DLQ."""

    SMS_SEND = "SMS_SEND"
    WEBHOOK_INBOUND = "WEBHOOK_INBOUND"
    SUBSCRIPTION_UPDATE = "SUBSCRIPTION_UPDATE"
    PAYMENT_PROCESS = "PAYMENT_PROCESS"


class DLQStatus(str, Enum):
    PENDING = "PENDING"
    RESOLVED = "RESOLVED"
    DEAD_LETTER = "DEAD_LETTER"


@dataclass
class DLQEntry:
    """
    A failed operation held for inspection and replay.

    Attributes:
        id: Entry id (UUID string)
        category: Operation category
        original_payload: Payload needed to replay the operation
        error_message: Message of the error that exhausted retries
        error_stack: Formatted traceback, when one was available
        metadata: Free-form context; resolution details are merged in
        retry_count: Number of failed replay attempts
        status: Lifecycle status
        first_attempt_at: When the entry was recorded
        last_attempt_at: When a replay was last attempted
        external_id: Provider or domain id (message id, invoice id)
        created_at: Insertion time, used for ordering and retention
        updated_at: Last modification time
    """

    id: str
    category: DLQCategory
    original_payload: dict[str, Any]
    error_message: str
    metadata: dict[str, Any] = field(default_factory=dict)
    retry_count: int = 0
    status: DLQStatus = DLQStatus.PENDING
    first_attempt_at: datetime | None = None
    last_attempt_at: datetime | None = None
    external_id: str | None = None
    error_stack: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "category": self.category.value,
            "external_id": self.external_id,
            "original_payload": self.original_payload,
            "error_message": self.error_message,
            "error_stack": self.error_stack,
            "metadata": self.metadata,
            "retry_count": self.retry_count,
            "status": self.status.value,
            "first_attempt_at": (
                self.first_attempt_at.isoformat() if self.first_attempt_at else None
            ),
            "last_attempt_at": self.last_attempt_at.isoformat() if self.last_attempt_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


@dataclass(frozen=True)
class Pagination:
    total: int
    limit: int
    offset: int
    pages: int


@dataclass(frozen=True)
class DLQPage:
    """One page of DLQ entries plus pagination info."""

    items: list[DLQEntry]
    pagination: Pagination


@dataclass(frozen=True)
class DLQStats:
    """
    Counts of DLQ entries by status and category.

    Attributes:
        total: All entries
        pending: Entries awaiting replay
        resolved: Entries replayed successfully
        dead_letter: Entries given up on by an operator
        by_category: Entry count per category value
    """

    total: int = 0
    pending: int = 0
    resolved: int = 0
    dead_letter: int = 0
    by_category: dict[str, int] = field(default_factory=dict)


_Builder = Callable[[DLQEntry, datetime], DLQEntry]


def _now() -> datetime:
    return datetime.now(UTC)


def _format_ts(value: datetime) -> str:
    return value.astimezone(UTC).strftime(_TIMESTAMP_FORMAT)


def _parse_ts(value: Any) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    return datetime.strptime(value, _TIMESTAMP_FORMAT).replace(tzinfo=UTC)


def _describe_error(error: BaseException | str) -> tuple[str, str | None]:
    if isinstance(error, BaseException):
        stack = None
        if error.__traceback__ is not None:
            stack = "".join(traceback.format_exception(error))
        return str(error) or type(error).__name__, stack
    return error, None


def _pages(total: int, limit: int) -> int:
    return math.ceil(total / limit) if limit > 0 else 0


def _check_transition(entry: DLQEntry, target: DLQStatus) -> None:
    if entry.status is not DLQStatus.PENDING:
        raise InvalidDLQTransitionError(entry.id, entry.status.value, target.value)


def _resolved_metadata(entry: DLQEntry, metadata: dict[str, Any] | None, now: datetime) -> dict:
    return {**entry.metadata, **(metadata or {}), "resolved_at": now.isoformat()}


def _dead_metadata(
    entry: DLQEntry, reason: str, metadata: dict[str, Any] | None, now: datetime
) -> dict:
    return {
        **entry.metadata,
        **(metadata or {}),
        "dead_letter_reason": reason,
        "dead_lettered_at": now.isoformat(),
    }


@runtime_checkable
class DeadLetterQueue(Protocol):
    """Protocol for tenant-scoped dead letter queues."""

    async def add(
        self,
        category: DLQCategory,
        original_payload: dict[str, Any],
        error: BaseException | str,
        external_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> str:
        """
        Record a failed operation as a new PENDING entry.

        Args:
            category: Operation category
            original_payload: Data needed to replay the operation
            error: The exception (or message) that exhausted retries
            external_id: Provider or domain id, if known
            metadata: Additional context

        Returns:
            The new entry id

        Raises:
            Exception: If the entry could not be persisted (logged first)
        """
        ...

    async def get(self, entry_id: str) -> DLQEntry | None:
        """Fetch an entry by id, or None."""
        ...

    async def list(
        self,
        category: DLQCategory | None = None,
        status: DLQStatus | None = DLQStatus.PENDING,
        limit: int = 20,
        offset: int = 0,
    ) -> DLQPage:
        """
        List entries oldest first.

        Args:
            category: Restrict to one category
            status: Restrict to one status (None for all)
            limit: Page size
            offset: Entries to skip
        """
        ...

    async def resolve(self, entry_id: str, metadata: dict[str, Any] | None = None) -> DLQEntry:
        """Mark a PENDING entry RESOLVED after a successful replay."""
        ...

    async def mark_dead(
        self, entry_id: str, reason: str, metadata: dict[str, Any] | None = None
    ) -> DLQEntry:
        """Mark a PENDING entry DEAD_LETTER on operator judgment."""
        ...

    async def increment_retry(
        self, entry_id: str, error: BaseException | str | None = None
    ) -> DLQEntry:
        """Record a failed replay; the entry stays PENDING."""
        ...

    async def delete(self, entry_id: str) -> bool:
        """Delete an entry; returns False if it did not exist."""
        ...

    async def stats(self) -> DLQStats:
        """Counts by status and category."""
        ...

    async def purge_resolved_older_than(self, days: int) -> int:
        """
        Delete RESOLVED entries created more than ``days`` days ago.

        PENDING and DEAD_LETTER entries are never purged.

        Returns:
            Number of entries deleted
        """
        ...


# =============================================================================
# SQL implementation
# =============================================================================


class SQLDeadLetterQueue:
    """
    DLQ stored in the tenant database's ``dead_letter_queue`` table.

    Portable across PostgreSQL and SQLite:
    - ids are UUID strings generated client-side
    - timestamps are stored as fixed-width ISO 8601 UTC text, so text
      ordering is chronological
    - JSON columns are stored as TEXT

    Example:
        >>> async with manager.session("church-42") as handle:
        ...     dlq = SQLDeadLetterQueue(handle)
        ...     await dlq.add(DLQCategory.SMS_SEND, {"to": "+1555..."}, exc)
    """

    _COLUMNS = """
        id, category, external_id, original_payload, error_message, error_stack,
        metadata, retry_count, status, first_attempt_at, last_attempt_at,
        created_at, updated_at
    """

    def __init__(
        self,
        conn: ConnectionSource,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self.conn = conn
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._db_system = dialect_name(conn)

    async def create_table(self) -> None:
        """Create the ``dead_letter_queue`` table and its indexes if missing."""
        async with execute_with_connection(self.conn, transactional=True) as conn:
            await conn.execute(
                text("""
                    CREATE TABLE IF NOT EXISTS dead_letter_queue (
                        id VARCHAR(36) PRIMARY KEY,
                        category VARCHAR(32) NOT NULL,
                        external_id VARCHAR(255),
                        original_payload TEXT NOT NULL,
                        error_message TEXT NOT NULL,
                        error_stack TEXT,
                        metadata TEXT NOT NULL,
                        retry_count INTEGER NOT NULL DEFAULT 0,
                        status VARCHAR(16) NOT NULL,
                        first_attempt_at VARCHAR(32) NOT NULL,
                        last_attempt_at VARCHAR(32) NOT NULL,
                        created_at VARCHAR(32) NOT NULL,
                        updated_at VARCHAR(32) NOT NULL
                    )
                """)
            )
            await conn.execute(
                text(
                    "CREATE INDEX IF NOT EXISTS idx_dlq_status_category "
                    "ON dead_letter_queue (status, category)"
                )
            )
            await conn.execute(
                text(
                    "CREATE INDEX IF NOT EXISTS idx_dlq_created_at "
                    "ON dead_letter_queue (created_at)"
                )
            )

    @staticmethod
    def _row_to_entry(row: Any) -> DLQEntry:
        return DLQEntry(
            id=row[0],
            category=DLQCategory(row[1]),
            external_id=row[2],
            original_payload=json_loads(row[3]),
            error_message=row[4],
            error_stack=row[5],
            metadata=json_loads(row[6]),
            retry_count=row[7],
            status=DLQStatus(row[8]),
            first_attempt_at=_parse_ts(row[9]),
            last_attempt_at=_parse_ts(row[10]),
            created_at=_parse_ts(row[11]),
            updated_at=_parse_ts(row[12]),
        )

    async def add(
        self,
        category: DLQCategory,
        original_payload: dict[str, Any],
        error: BaseException | str,
        external_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> str:
        category = DLQCategory(category)
        message, stack = _describe_error(error)
        entry_id = str(uuid.uuid4())
        now = _format_ts(_now())

        with self._tracer.span(
            "tenantcore.dlq.add",
            {
                ATTR_DLQ_ENTRY_ID: entry_id,
                ATTR_DLQ_CATEGORY: category.value,
                ATTR_ERROR_TYPE: (
                    type(error).__name__ if isinstance(error, BaseException) else "str"
                ),
                ATTR_DB_SYSTEM: self._db_system,
            },
        ):
            try:
                async with execute_with_connection(self.conn, transactional=True) as conn:
                    await conn.execute(
                        text("""
                            INSERT INTO dead_letter_queue
                                (id, category, external_id, original_payload, error_message,
                                 error_stack, metadata, retry_count, status,
                                 first_attempt_at, last_attempt_at, created_at, updated_at)
                            VALUES
                                (:id, :category, :external_id, :payload, :error_message,
                                 :error_stack, :metadata, 0, 'PENDING',
                                 :now, :now, :now, :now)
                        """),
                        {
                            "id": entry_id,
                            "category": category.value,
                            "external_id": external_id,
                            "payload": json_dumps(original_payload),
                            "error_message": message,
                            "error_stack": stack,
                            "metadata": json_dumps(metadata or {}),
                            "now": now,
                        },
                    )
            except Exception:
                logger.error(
                    "Failed to persist DLQ entry for %s",
                    category.value,
                    extra={
                        "category": category.value,
                        "external_id": external_id,
                        "error": message,
                    },
                    exc_info=True,
                )
                raise

        logger.warning(
            "Added %s operation to DLQ: %s",
            category.value,
            message,
            extra={"dlq_id": entry_id, "category": category.value, "external_id": external_id},
        )
        return entry_id

    async def get(self, entry_id: str) -> DLQEntry | None:
        with self._tracer.span(
            "tenantcore.dlq.get",
            {ATTR_DLQ_ENTRY_ID: entry_id, ATTR_DB_SYSTEM: self._db_system},
        ):
            async with execute_with_connection(self.conn, transactional=False) as conn:
                result = await conn.execute(
                    text(f"SELECT {self._COLUMNS} FROM dead_letter_queue WHERE id = :id"),  # nosec
                    {"id": entry_id},
                )
                row = result.fetchone()
            return self._row_to_entry(row) if row is not None else None

    async def list(
        self,
        category: DLQCategory | None = None,
        status: DLQStatus | None = DLQStatus.PENDING,
        limit: int = 20,
        offset: int = 0,
    ) -> DLQPage:
        span_attributes: dict[str, Any] = {
            "limit": limit,
            "offset": offset,
            ATTR_DB_SYSTEM: self._db_system,
        }
        if category is not None:
            span_attributes[ATTR_DLQ_CATEGORY] = DLQCategory(category).value

        with self._tracer.span("tenantcore.dlq.list", span_attributes):
            where_clauses: list[str] = []
            params: dict[str, Any] = {"limit": limit, "offset": offset}
            if status is not None:
                where_clauses.append("status = :status")
                params["status"] = DLQStatus(status).value
            if category is not None:
                where_clauses.append("category = :category")
                params["category"] = DLQCategory(category).value
            where_sql = f"WHERE {' AND '.join(where_clauses)}" if where_clauses else ""

            # where_sql is built from static strings only
            async with execute_with_connection(self.conn, transactional=False) as conn:
                count_result = await conn.execute(
                    text(f"SELECT COUNT(*) FROM dead_letter_queue {where_sql}"),  # nosec B608
                    params,
                )
                total = count_result.scalar_one()
                result = await conn.execute(
                    text(f"""
                        SELECT {self._COLUMNS}
                        FROM dead_letter_queue
                        {where_sql}
                        ORDER BY created_at ASC
                        LIMIT :limit OFFSET :offset
                    """),  # nosec B608
                    params,
                )
                rows = result.fetchall()

            return DLQPage(
                items=[self._row_to_entry(row) for row in rows],
                pagination=Pagination(
                    total=total, limit=limit, offset=offset, pages=_pages(total, limit)
                ),
            )

    async def _transition(
        self,
        entry_id: str,
        target: DLQStatus,
        span_name: str,
        build: _Builder,
    ) -> DLQEntry:
        """Load a PENDING entry, apply ``build(entry, now)`` and write it back."""
        with self._tracer.span(
            span_name,
            {ATTR_DLQ_ENTRY_ID: entry_id, ATTR_DB_SYSTEM: self._db_system},
        ):
            async with execute_with_connection(self.conn, transactional=True) as conn:
                result = await conn.execute(
                    text(f"SELECT {self._COLUMNS} FROM dead_letter_queue WHERE id = :id"),  # nosec
                    {"id": entry_id},
                )
                row = result.fetchone()
                if row is None:
                    raise DLQEntryNotFoundError(entry_id)
                entry = self._row_to_entry(row)
                _check_transition(entry, target)

                now = _now()
                updated: DLQEntry = build(entry, now)
                update = await conn.execute(
                    text("""
                        UPDATE dead_letter_queue
                        SET status = :status,
                            metadata = :metadata,
                            retry_count = :retry_count,
                            error_message = :error_message,
                            error_stack = :error_stack,
                            last_attempt_at = :last_attempt_at,
                            updated_at = :updated_at
                        WHERE id = :id AND status = 'PENDING'
                    """),
                    {
                        "id": entry_id,
                        "status": updated.status.value,
                        "metadata": json_dumps(updated.metadata),
                        "retry_count": updated.retry_count,
                        "error_message": updated.error_message,
                        "error_stack": updated.error_stack,
                        "last_attempt_at": _format_ts(updated.last_attempt_at or now),
                        "updated_at": _format_ts(now),
                    },
                )
                if update.rowcount == 0:
                    # another writer moved it out of PENDING since the SELECT
                    raise InvalidDLQTransitionError(entry_id, "unknown", target.value)
            return updated

    async def resolve(self, entry_id: str, metadata: dict[str, Any] | None = None) -> DLQEntry:
        entry = await self._transition(
            entry_id,
            DLQStatus.RESOLVED,
            "tenantcore.dlq.resolve",
            lambda e, now: replace(
                e,
                status=DLQStatus.RESOLVED,
                metadata=_resolved_metadata(e, metadata, now),
                updated_at=now,
            ),
        )
        logger.info("Resolved DLQ entry %s", entry_id, extra={"dlq_id": entry_id})
        return entry

    async def mark_dead(
        self, entry_id: str, reason: str, metadata: dict[str, Any] | None = None
    ) -> DLQEntry:
        entry = await self._transition(
            entry_id,
            DLQStatus.DEAD_LETTER,
            "tenantcore.dlq.mark_dead",
            lambda e, now: replace(
                e,
                status=DLQStatus.DEAD_LETTER,
                metadata=_dead_metadata(e, reason, metadata, now),
                updated_at=now,
            ),
        )
        logger.warning(
            "DLQ entry %s dead-lettered: %s",
            entry_id,
            reason,
            extra={"dlq_id": entry_id, "reason": reason},
        )
        return entry

    async def increment_retry(
        self, entry_id: str, error: BaseException | str | None = None
    ) -> DLQEntry:
        def build(e: DLQEntry, now: datetime) -> DLQEntry:
            if error is None:
                message, stack = e.error_message, e.error_stack
            else:
                message, stack = _describe_error(error)
            return replace(
                e,
                retry_count=e.retry_count + 1,
                last_attempt_at=now,
                error_message=message,
                error_stack=stack,
                updated_at=now,
            )

        return await self._transition(
            entry_id, DLQStatus.PENDING, "tenantcore.dlq.increment_retry", build
        )

    async def delete(self, entry_id: str) -> bool:
        with self._tracer.span(
            "tenantcore.dlq.delete",
            {ATTR_DLQ_ENTRY_ID: entry_id, ATTR_DB_SYSTEM: self._db_system},
        ):
            async with execute_with_connection(self.conn, transactional=True) as conn:
                result = await conn.execute(
                    text("DELETE FROM dead_letter_queue WHERE id = :id"),
                    {"id": entry_id},
                )
                return bool(result.rowcount)

    async def stats(self) -> DLQStats:
        with self._tracer.span("tenantcore.dlq.stats", {ATTR_DB_SYSTEM: self._db_system}):
            async with execute_with_connection(self.conn, transactional=False) as conn:
                result = await conn.execute(
                    text("""
                        SELECT status, category, COUNT(*)
                        FROM dead_letter_queue
                        GROUP BY status, category
                    """)
                )
                rows = result.fetchall()

            by_status: dict[str, int] = {}
            by_category: dict[str, int] = {}
            for status, category, count in rows:
                by_status[status] = by_status.get(status, 0) + count
                by_category[category] = by_category.get(category, 0) + count

            return DLQStats(
                total=sum(by_status.values()),
                pending=by_status.get(DLQStatus.PENDING.value, 0),
                resolved=by_status.get(DLQStatus.RESOLVED.value, 0),
                dead_letter=by_status.get(DLQStatus.DEAD_LETTER.value, 0),
                by_category=by_category,
            )

    async def purge_resolved_older_than(self, days: int) -> int:
        if days < 0:
            raise ValueError(f"days must be >= 0, got {days}.")

        with self._tracer.span(
            "tenantcore.dlq.purge_resolved",
            {"older_than_days": days, ATTR_DB_SYSTEM: self._db_system},
        ):
            cutoff = _format_ts(_now() - timedelta(days=days))
            async with execute_with_connection(self.conn, transactional=True) as conn:
                result = await conn.execute(
                    text("""
                        DELETE FROM dead_letter_queue
                        WHERE status = 'RESOLVED'
                        AND created_at < :cutoff
                    """),
                    {"cutoff": cutoff},
                )
                deleted = result.rowcount or 0

            logger.info(
                "Purged %d resolved DLQ entries older than %d days",
                deleted,
                days,
                extra={"deleted": deleted, "older_than_days": days},
            )
            return deleted


# =============================================================================
# In-memory implementation
# =============================================================================


class InMemoryDeadLetterQueue:
    """
    In-memory DLQ for tests. All data is lost when the process exits.

    Args:
        clock: Returns the current UTC datetime (injectable for retention tests)
    """

    def __init__(
        self,
        tracer: Tracer | None = None,
        enable_tracing: bool = False,
        clock: Callable[[], datetime] = _now,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._entries: dict[str, DLQEntry] = {}
        self._lock = asyncio.Lock()
        self._clock = clock

    async def add(
        self,
        category: DLQCategory,
        original_payload: dict[str, Any],
        error: BaseException | str,
        external_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> str:
        category = DLQCategory(category)
        message, stack = _describe_error(error)
        entry_id = str(uuid.uuid4())
        now = self._clock()

        with self._tracer.span(
            "tenantcore.dlq.add",
            {ATTR_DLQ_ENTRY_ID: entry_id, ATTR_DLQ_CATEGORY: category.value},
        ):
            async with self._lock:
                self._entries[entry_id] = DLQEntry(
                    id=entry_id,
                    category=category,
                    external_id=external_id,
                    original_payload=dict(original_payload),
                    error_message=message,
                    error_stack=stack,
                    metadata=dict(metadata or {}),
                    first_attempt_at=now,
                    last_attempt_at=now,
                    created_at=now,
                    updated_at=now,
                )

        logger.warning(
            "Added %s operation to DLQ: %s",
            category.value,
            message,
            extra={"dlq_id": entry_id, "category": category.value, "external_id": external_id},
        )
        return entry_id

    async def get(self, entry_id: str) -> DLQEntry | None:
        async with self._lock:
            entry = self._entries.get(entry_id)
            return replace(entry) if entry is not None else None

    async def list(
        self,
        category: DLQCategory | None = None,
        status: DLQStatus | None = DLQStatus.PENDING,
        limit: int = 20,
        offset: int = 0,
    ) -> DLQPage:
        async with self._lock:
            matching = [
                e
                for e in self._entries.values()
                if (status is None or e.status is DLQStatus(status))
                and (category is None or e.category is DLQCategory(category))
            ]
        matching.sort(key=lambda e: e.created_at or datetime.min.replace(tzinfo=UTC))
        return DLQPage(
            items=[replace(e) for e in matching[offset : offset + limit]],
            pagination=Pagination(
                total=len(matching), limit=limit, offset=offset, pages=_pages(len(matching), limit)
            ),
        )

    async def _transition(self, entry_id: str, target: DLQStatus, build: _Builder) -> DLQEntry:
        async with self._lock:
            entry = self._entries.get(entry_id)
            if entry is None:
                raise DLQEntryNotFoundError(entry_id)
            _check_transition(entry, target)
            updated: DLQEntry = build(entry, self._clock())
            self._entries[entry_id] = updated
            return replace(updated)

    async def resolve(self, entry_id: str, metadata: dict[str, Any] | None = None) -> DLQEntry:
        return await self._transition(
            entry_id,
            DLQStatus.RESOLVED,
            lambda e, now: replace(
                e,
                status=DLQStatus.RESOLVED,
                metadata=_resolved_metadata(e, metadata, now),
                updated_at=now,
            ),
        )

    async def mark_dead(
        self, entry_id: str, reason: str, metadata: dict[str, Any] | None = None
    ) -> DLQEntry:
        return await self._transition(
            entry_id,
            DLQStatus.DEAD_LETTER,
            lambda e, now: replace(
                e,
                status=DLQStatus.DEAD_LETTER,
                metadata=_dead_metadata(e, reason, metadata, now),
                updated_at=now,
            ),
        )

    async def increment_retry(
        self, entry_id: str, error: BaseException | str | None = None
    ) -> DLQEntry:
        def build(e: DLQEntry, now: datetime) -> DLQEntry:
            if error is None:
                message, stack = e.error_message, e.error_stack
            else:
                message, stack = _describe_error(error)
            return replace(
                e,
                retry_count=e.retry_count + 1,
                last_attempt_at=now,
                error_message=message,
                error_stack=stack,
                updated_at=now,
            )

        return await self._transition(entry_id, DLQStatus.PENDING, build)

    async def delete(self, entry_id: str) -> bool:
        async with self._lock:
            return self._entries.pop(entry_id, None) is not None

    async def stats(self) -> DLQStats:
        async with self._lock:
            entries = list(self._entries.values())
        by_category: dict[str, int] = {}
        for e in entries:
            by_category[e.category.value] = by_category.get(e.category.value, 0) + 1
        return DLQStats(
            total=len(entries),
            pending=sum(1 for e in entries if e.status is DLQStatus.PENDING),
            resolved=sum(1 for e in entries if e.status is DLQStatus.RESOLVED),
            dead_letter=sum(1 for e in entries if e.status is DLQStatus.DEAD_LETTER),
            by_category=by_category,
        )

    async def purge_resolved_older_than(self, days: int) -> int:
        if days < 0:
            raise ValueError(f"days must be >= 0, got {days}.")
        cutoff = self._clock() - timedelta(days=days)
        async with self._lock:
            doomed = [
                entry_id
                for entry_id, e in self._entries.items()
                if e.status is DLQStatus.RESOLVED
                and e.created_at is not None
                and e.created_at < cutoff
            ]
            for entry_id in doomed:
                del self._entries[entry_id]
        return len(doomed)

    async def clear(self) -> None:
        async with self._lock:
            self._entries.clear()


__all__ = [
    "DLQCategory",
    "DLQStatus",
    "DLQEntry",
    "DLQPage",
    "DLQStats",
    "Pagination",
    "DeadLetterQueue",
    "SQLDeadLetterQueue",
    "InMemoryDeadLetterQueue",
]
