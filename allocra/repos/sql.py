"""SQLAlchemy-backed allocation store (PostgreSQL in production, SQLite in tests)."""

from __future__ import annotations

import time
from datetime import datetime, timezone

from loguru import logger
from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    create_engine,
    delete,
    event,
    func,
    insert,
    literal,
    select,
    update,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import DBAPIError, SQLAlchemyError

from allocra.domain.errors import (
    BookingNotFound,
    RoomNotFound,
    StoreError,
    TransactionTimeout,
)
from allocra.domain.models import (
    Booking,
    BookingStatus,
    Room,
    RoomKind,
    RoomState,
    as_utc,
)
from allocra.repos.base import AllocationStore, Transaction


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


metadata = MetaData()

rooms = Table(
    "rooms",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("name", String(100), nullable=False),
    Column("capacity", Integer, nullable=False),
    Column("kind", String(20), nullable=False, default=RoomKind.SHARED.value),
    Column("state", String(20), nullable=False, default=RoomState.ONLINE.value),
    Column("created_at", DateTime(timezone=True), nullable=False, default=_utcnow),
    CheckConstraint("capacity > 0", name="room_positive_capacity"),
)

bookings = Table(
    "bookings",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("room_id", Integer, ForeignKey("rooms.id", ondelete="CASCADE"), nullable=False),
    Column("user_id", Integer, nullable=False),
    Column("start_time", DateTime(timezone=True), nullable=False),
    Column("end_time", DateTime(timezone=True), nullable=False),
    Column("status", String(20), nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False, default=_utcnow),
    CheckConstraint("start_time < end_time", name="booking_valid_interval"),
    CheckConstraint(
        "status IN ('pending', 'approved', 'rejected')", name="booking_valid_status"
    ),
    Index("idx_bookings_room_time", "room_id", "start_time", "end_time"),
)

# PostgreSQL SQLSTATEs that mean "ran out of time", not "broken"
_TIMEOUT_PGCODES = {"57014", "55P03"}


def _is_timeout(exc: DBAPIError) -> bool:
    orig = getattr(exc, "orig", None)
    pgcode = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    return pgcode in _TIMEOUT_PGCODES


def _wrap(exc: SQLAlchemyError, action: str) -> StoreError:
    if isinstance(exc, DBAPIError) and _is_timeout(exc):
        return TransactionTimeout(f"{action} timed out")
    return StoreError(f"{action} failed: {exc}")


def _to_booking(row) -> Booking:
    return Booking.model_validate(dict(row._mapping))


def _to_room(row) -> Room:
    return Room.model_validate(dict(row._mapping))


def _overlapping(room_id: int, start: datetime, end: datetime):
    return (
        (bookings.c.room_id == room_id)
        & (bookings.c.status == BookingStatus.APPROVED.value)
        & (bookings.c.start_time < as_utc(end))
        & (bookings.c.end_time > as_utc(start))
    )


class SqlTransaction(Transaction):
    def __init__(self, conn: Connection, timeout: float) -> None:
        super().__init__(timeout)
        self._conn = conn
        self._postgres = conn.dialect.name == "postgresql"
        self._done = False

    def _execute(self, stmt, action: str, timeout: float | None = None):
        if self._done:
            raise StoreError("transaction is already closed")
        left = self.remaining(timeout)
        try:
            if self._postgres:
                self._conn.exec_driver_sql(
                    f"SET LOCAL statement_timeout = {max(1, int(left * 1000))}"
                )
            return self._conn.execute(stmt)
        except SQLAlchemyError as exc:
            raise _wrap(exc, action) from exc

    def commit(self) -> None:
        if self._done:
            raise StoreError("transaction is already closed")
        try:
            self.remaining()
            self._conn.commit()
        except SQLAlchemyError as exc:
            self.rollback()
            raise _wrap(exc, "commit") from exc
        except TransactionTimeout:
            self.rollback()
            raise
        self._done = True
        self._conn.close()

    def rollback(self) -> None:
        if self._done:
            return
        self._done = True
        try:
            self._conn.rollback()
        finally:
            self._conn.close()

    def lock_resource_for_update(self, room_id: int) -> None:
        stmt = select(rooms.c.id).where(rooms.c.id == room_id).with_for_update()
        if self._execute(stmt, "lock room").scalar_one_or_none() is None:
            raise RoomNotFound(room_id)

    def find_overlapping_approved(
        self,
        room_id: int,
        start: datetime,
        end: datetime,
        exclude_id: int | None = None,
        timeout: float | None = None,
    ) -> bool:
        stmt = select(literal(1)).select_from(bookings).where(
            _overlapping(room_id, start, end)
        )
        if exclude_id is not None:
            stmt = stmt.where(bookings.c.id != exclude_id)
        row = self._execute(stmt.limit(1), "conflict check", timeout).first()
        return row is not None

    def insert_booking(
        self,
        room_id: int,
        user_id: int,
        start: datetime,
        end: datetime,
        status: BookingStatus,
    ) -> Booking:
        stmt = (
            insert(bookings)
            .values(
                room_id=room_id,
                user_id=user_id,
                start_time=as_utc(start),
                end_time=as_utc(end),
                status=status.value,
            )
            .returning(*bookings.c)
        )
        return _to_booking(self._execute(stmt, "insert booking").one())

    def _fetch(self, booking_id: int, for_update: bool) -> Booking:
        stmt = select(bookings).where(bookings.c.id == booking_id)
        if for_update:
            stmt = stmt.with_for_update()
        row = self._execute(stmt, "fetch booking").first()
        if row is None:
            raise BookingNotFound(booking_id)
        return _to_booking(row)

    def get_booking(self, booking_id: int) -> Booking:
        return self._fetch(booking_id, for_update=False)

    def get_booking_for_update(self, booking_id: int) -> Booking:
        return self._fetch(booking_id, for_update=True)

    def update_status(
        self,
        booking_id: int,
        to_status: BookingStatus,
        from_status: BookingStatus | None = None,
    ) -> int:
        stmt = (
            update(bookings)
            .where(bookings.c.id == booking_id)
            .values(status=to_status.value)
        )
        if from_status is not None:
            stmt = stmt.where(bookings.c.status == from_status.value)
        return self._execute(stmt, "update booking status").rowcount

    def reject_overlapping(
        self, room_id: int, start: datetime, end: datetime, exclude_id: int
    ) -> int:
        stmt = (
            update(bookings)
            .where(_overlapping(room_id, start, end))
            .where(bookings.c.id != exclude_id)
            .values(status=BookingStatus.REJECTED.value)
        )
        return self._execute(stmt, "reject overlapping bookings").rowcount


class SqlAllocationStore(AllocationStore):
    """Allocation store over a SQLAlchemy engine.

    PostgreSQL transactions run at READ COMMITTED; the room row lock
    (``SELECT ... FOR UPDATE``) is what serializes writers. SQLite has no row
    locks, so every SQLite transaction starts with ``BEGIN IMMEDIATE`` and
    writers are serialized database-wide instead.
    """

    def __init__(
        self,
        url: str,
        echo: bool = False,
        connect_retries: int = 10,
        connect_retry_delay: float = 2.0,
        sqlite_busy_timeout: float = 5.0,
    ) -> None:
        self.connect_retries = max(1, connect_retries)
        self.connect_retry_delay = connect_retry_delay
        connect_args = {}
        if url.startswith("sqlite"):
            connect_args = {"check_same_thread": False, "timeout": sqlite_busy_timeout}
        self.engine: Engine = create_engine(
            url, echo=echo, pool_pre_ping=True, connect_args=connect_args
        )
        if self.engine.dialect.name == "sqlite":
            _use_immediate_transactions(self.engine)

    def create_schema(self) -> None:
        try:
            metadata.create_all(self.engine)
        except SQLAlchemyError as exc:
            raise _wrap(exc, "create schema") from exc

    def dispose(self) -> None:
        self.engine.dispose()

    def _connect(self) -> Connection:
        """Open a connection, retrying only the connection attempt itself."""
        last_exc: SQLAlchemyError | None = None
        for attempt in range(1, self.connect_retries + 1):
            try:
                return self.engine.connect()
            except SQLAlchemyError as exc:
                last_exc = exc
                logger.warning(
                    "Attempt {}: failed to connect to database: {}", attempt, exc
                )
                if attempt < self.connect_retries:
                    time.sleep(self.connect_retry_delay)
        raise StoreError(f"failed to connect to database after retries: {last_exc}")

    def begin(self, timeout: float) -> SqlTransaction:
        conn = self._connect()
        try:
            if self.engine.dialect.name == "postgresql":
                conn = conn.execution_options(isolation_level="READ COMMITTED")
            conn.begin()
        except SQLAlchemyError as exc:
            conn.close()
            raise _wrap(exc, "begin transaction") from exc
        return SqlTransaction(conn, timeout)

    def _read(self, stmt, action: str):
        try:
            with self._connect() as conn:
                return conn.execute(stmt).all()
        except SQLAlchemyError as exc:
            raise _wrap(exc, action) from exc

    def _write(self, action: str, *stmts) -> list[list]:
        """Run ``stmts`` in one short transaction; returns the rows of each."""
        try:
            with self._connect() as conn, conn.begin():
                results = [conn.execute(stmt) for stmt in stmts]
                return [r.all() if r.returns_rows else [] for r in results]
        except SQLAlchemyError as exc:
            raise _wrap(exc, action) from exc

    # -- rooms ---------------------------------------------------------

    def add_room(
        self,
        name: str,
        capacity: int,
        kind: RoomKind = RoomKind.SHARED,
        state: RoomState = RoomState.ONLINE,
    ) -> Room:
        stmt = (
            insert(rooms)
            .values(name=name, capacity=capacity, kind=kind.value, state=state.value)
            .returning(*rooms.c)
        )
        (rows,) = self._write("create room", stmt)
        return _to_room(rows[0])

    def get_room(self, room_id: int) -> Room | None:
        rows = self._read(select(rooms).where(rooms.c.id == room_id), "fetch room")
        return _to_room(rows[0]) if rows else None

    def list_rooms(self) -> list[Room]:
        rows = self._read(select(rooms).order_by(rooms.c.name, rooms.c.id), "fetch rooms")
        return [_to_room(row) for row in rows]

    def update_room(
        self, room_id: int, name: str, capacity: int, kind: RoomKind, state: RoomState
    ) -> Room:
        stmt = (
            update(rooms)
            .where(rooms.c.id == room_id)
            .values(name=name, capacity=capacity, kind=kind.value, state=state.value)
            .returning(*rooms.c)
        )
        (rows,) = self._write("update room", stmt)
        if not rows:
            raise RoomNotFound(room_id)
        return _to_room(rows[0])

    def delete_room(self, room_id: int) -> None:
        self._write(
            "delete room",
            delete(bookings).where(bookings.c.room_id == room_id),
            delete(rooms).where(rooms.c.id == room_id),
        )

    def count_rooms(self) -> int:
        return self._read(select(func.count()).select_from(rooms), "count rooms")[0][0]

    # -- committed-state reads -----------------------------------------

    def list_bookings(self, room_id: int | None = None) -> list[Booking]:
        stmt = select(bookings).order_by(bookings.c.start_time.desc(), bookings.c.id.desc())
        if room_id is not None:
            stmt = stmt.where(bookings.c.room_id == room_id)
        return [_to_booking(row) for row in self._read(stmt, "fetch bookings")]

    def approved_between(self, start: datetime, end: datetime) -> list[Booking]:
        stmt = select(bookings).where(
            (bookings.c.status == BookingStatus.APPROVED.value)
            & (bookings.c.start_time >= as_utc(start))
            & (bookings.c.start_time < as_utc(end))
        )
        return [_to_booking(row) for row in self._read(stmt, "fetch monthly usage")]

    def count_bookings(self, status: BookingStatus | None = None) -> int:
        stmt = select(func.count()).select_from(bookings)
        if status is not None:
            stmt = stmt.where(bookings.c.status == status.value)
        return self._read(stmt, "count bookings")[0][0]

    def delete_all_bookings(self) -> None:
        self._write("reset bookings", delete(bookings))


def _use_immediate_transactions(engine: Engine) -> None:
    """Let SQLAlchemy, not pysqlite, emit BEGIN, and make it BEGIN IMMEDIATE."""

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")
