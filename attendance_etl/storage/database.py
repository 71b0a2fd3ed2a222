# attendance_etl/storage/database.py
"""SQLAlchemy schema and session helpers for events, attendees, members and the Loops sync log."""

from __future__ import annotations

import enum
import secrets
import string
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterator, List, Optional, Union

import sqlalchemy as sa
from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

_ALPHABET = string.digits + string.ascii_uppercase + string.ascii_lowercase


def generate_id(length: int = 12) -> str:
    return "".join(secrets.choice(_ALPHABET) for _ in range(length))


def utcnow() -> datetime:
    """Naive UTC, the representation every datetime column uses."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    pass


# ------------------- events -------------------

class EventStatus(str, enum.Enum):
    ACTIVE = "active"
    MERGED = "merged"


@dataclass(frozen=True)
class Active:
    pass


@dataclass(frozen=True)
class MergedInto:
    event_id: str


EventState = Union[Active, MergedInto]


class Event(Base):
    __tablename__ = "events"
    __table_args__ = (
        # a product id maps to at most one *current* event; merged rows keep theirs
        sa.Index(
            "uq_events_active_product",
            "woocommerce_product_id",
            unique=True,
            sqlite_where=sa.text("status = 'active'"),
            postgresql_where=sa.text("status = 'active'"),
        ),
    )

    id: Mapped[str] = mapped_column(sa.String(30), primary_key=True, default=generate_id)
    name: Mapped[str] = mapped_column(sa.String(255))
    event_date: Mapped[datetime] = mapped_column(sa.DateTime)
    woocommerce_product_id: Mapped[Optional[str]] = mapped_column(sa.String(128), nullable=True)
    merged_product_ids: Mapped[list] = mapped_column(sa.JSON, default=list)
    is_members_only_product: Mapped[bool] = mapped_column(sa.Boolean, default=False)
    status: Mapped[str] = mapped_column(sa.String(16), default=EventStatus.ACTIVE.value, index=True)
    merged_into_event_id: Mapped[Optional[str]] = mapped_column(sa.String(30), nullable=True)
    created_at: Mapped[datetime] = mapped_column(sa.DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(sa.DateTime, default=utcnow, onupdate=utcnow)

    @property
    def state(self) -> EventState:
        if self.status == EventStatus.MERGED.value:
            return MergedInto(self.merged_into_event_id or "")
        return Active()

    def mark_merged_into(self, event_id: str) -> None:
        self.status = EventStatus.MERGED.value
        self.merged_into_event_id = event_id

    def mark_active(self) -> None:
        self.status = EventStatus.ACTIVE.value
        self.merged_into_event_id = None

    @property
    def product_ids(self) -> List[str]:
        """Primary product id first, then every absorbed one."""
        out = [self.woocommerce_product_id] if self.woocommerce_product_id else []
        for pid in self.merged_product_ids or []:
            if pid not in out:
                out.append(pid)
        return out

    def __repr__(self) -> str:
        return f"Event(id={self.id!r}, name={self.name!r}, product={self.woocommerce_product_id!r}, state={self.state!r})"


def active_events():
    """SELECT over current (non-merged) events."""
    return sa.select(Event).where(Event.status == EventStatus.ACTIVE.value)


# ------------------- attendees -------------------

class Attendee(Base):
    __tablename__ = "attendees"
    __table_args__ = (
        sa.UniqueConstraint("ticket_id", "event_id", name="unique_ticket_per_event"),
    )

    id: Mapped[str] = mapped_column(sa.String(30), primary_key=True, default=generate_id)
    event_id: Mapped[str] = mapped_column(sa.String(30), sa.ForeignKey("events.id"), index=True)
    email: Mapped[str] = mapped_column(sa.String(255), index=True)
    first_name: Mapped[Optional[str]] = mapped_column(sa.String(128), nullable=True)
    last_name: Mapped[Optional[str]] = mapped_column(sa.String(128), nullable=True)
    ticket_id: Mapped[Optional[str]] = mapped_column(sa.String(128), nullable=True)
    ticket_id_source: Mapped[Optional[str]] = mapped_column(sa.String(20), nullable=True)
    woocommerce_order_id: Mapped[Optional[str]] = mapped_column(sa.String(128), nullable=True)
    woocommerce_order_date: Mapped[Optional[datetime]] = mapped_column(sa.DateTime, nullable=True)
    booker_first_name: Mapped[Optional[str]] = mapped_column(sa.String(128), nullable=True)
    booker_last_name: Mapped[Optional[str]] = mapped_column(sa.String(128), nullable=True)
    booker_email: Mapped[Optional[str]] = mapped_column(sa.String(255), nullable=True)
    checked_in: Mapped[bool] = mapped_column(sa.Boolean, default=False)
    checked_in_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime, nullable=True)
    manually_added: Mapped[bool] = mapped_column(sa.Boolean, default=False)
    locally_modified: Mapped[bool] = mapped_column(sa.Boolean, default=False)
    source_product_id: Mapped[Optional[str]] = mapped_column(sa.String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(sa.DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(sa.DateTime, default=utcnow, onupdate=utcnow)


# ------------------- members -------------------

class Member(Base):
    __tablename__ = "members"

    id: Mapped[str] = mapped_column(sa.String(30), primary_key=True, default=generate_id)
    email: Mapped[str] = mapped_column(sa.String(255), unique=True)
    first_name: Mapped[Optional[str]] = mapped_column(sa.String(128), nullable=True)
    last_name: Mapped[Optional[str]] = mapped_column(sa.String(128), nullable=True)
    is_active_member: Mapped[bool] = mapped_column(sa.Boolean, default=False)
    total_events_attended: Mapped[int] = mapped_column(sa.Integer, default=0)
    last_event_date: Mapped[Optional[datetime]] = mapped_column(sa.DateTime, nullable=True)
    membership_expires_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime, nullable=True)
    manually_added: Mapped[bool] = mapped_column(sa.Boolean, default=False)
    manual_expires_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime, nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(sa.String(1000), nullable=True)
    created_at: Mapped[datetime] = mapped_column(sa.DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(sa.DateTime, default=utcnow, onupdate=utcnow)


# ------------------- Loops sync audit -------------------

class SyncLog(Base):
    """Append-only: one row per mirror attempt."""
    __tablename__ = "loops_sync_log"

    id: Mapped[str] = mapped_column(sa.String(30), primary_key=True, default=generate_id)
    member_id: Mapped[Optional[str]] = mapped_column(sa.String(30), nullable=True)
    email: Mapped[str] = mapped_column(sa.String(255))
    operation: Mapped[str] = mapped_column(sa.String(20))
    status: Mapped[str] = mapped_column(sa.String(20))
    error_message: Mapped[Optional[str]] = mapped_column(sa.String(1000), nullable=True)
    loops_contact_id: Mapped[Optional[str]] = mapped_column(sa.String(128), nullable=True)
    synced_at: Mapped[datetime] = mapped_column(sa.DateTime, default=utcnow)


# ------------------- engine / sessions -------------------

def _sqlite_transactions(engine: Engine) -> Engine:
    """Have SQLAlchemy emit BEGIN itself so SAVEPOINT and rollback behave under pysqlite."""

    @event.listens_for(engine, "connect")
    def _connect(dbapi_conn, _record):
        dbapi_conn.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin(conn):
        conn.exec_driver_sql("BEGIN")

    return engine


def make_engine(url: str, echo: bool = False) -> Engine:
    if url in ("sqlite://", "sqlite:///:memory:"):
        # one shared connection so every session sees the same in-memory db
        return _sqlite_transactions(sa.create_engine(
            url, echo=echo, poolclass=StaticPool, connect_args={"check_same_thread": False}
        ))
    if url.startswith("sqlite"):
        return _sqlite_transactions(sa.create_engine(url, echo=echo))
    return sa.create_engine(url, echo=echo, pool_pre_ping=True)


def init_db(engine: Engine) -> None:
    Base.metadata.create_all(engine)


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, expire_on_commit=False)


@contextmanager
def session_scope(factory: sessionmaker) -> Iterator[Session]:
    """One unit of work: commit on success, roll everything back on error."""
    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
