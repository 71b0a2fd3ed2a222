"""
Shared fixtures: an in-memory database per test, and small factories for
events, attendees, WooCommerce orders and ticket records.
"""

from datetime import datetime
from pathlib import Path
from typing import Callable, Iterator, List, Optional

import pytest
from sqlalchemy.orm import Session, sessionmaker

from attendance_etl.core.config import Settings
from attendance_etl.core.models import TicketRecord, WooOrder
from attendance_etl.storage.database import (
    Attendee,
    Event,
    init_db,
    make_engine,
    make_session_factory,
)


# ============================================================================
# Database
# ============================================================================


@pytest.fixture
def session_factory() -> Iterator[sessionmaker]:
    """Session factory bound to a fresh in-memory SQLite database."""
    engine = make_engine("sqlite://")
    init_db(engine)
    yield make_session_factory(engine)
    engine.dispose()


@pytest.fixture
def session(session_factory: sessionmaker) -> Iterator[Session]:
    s = session_factory()
    yield s
    s.close()


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings pointing state and backups at a temporary directory."""
    return Settings(
        database_url="sqlite://",
        woocommerce_url="https://shop.example.org",
        woocommerce_consumer_key="ck_test",
        woocommerce_consumer_secret="cs_test",
        loops_api_key="",
        loops_active_members_list_id="",
        state_dir=str(tmp_path / "state"),
        backup_dir=str(tmp_path / "backups"),
        request_delay_ms=0,
        max_retries=2,
        checkpoint_every=1,
        never_merge_patterns=(),
        log_level="DEBUG",
        log_json=False,
    )


# ============================================================================
# Factories
# ============================================================================


@pytest.fixture
def make_event(session: Session) -> Callable[..., Event]:
    def _make(name: str = "Talk: Maps and Mapping", when: datetime = datetime(2025, 3, 12, 19, 0),
              product_id: Optional[str] = "100", members_only: bool = False, **kw) -> Event:
        ev = Event(name=name, event_date=when, woocommerce_product_id=product_id,
                   is_members_only_product=members_only, merged_product_ids=kw.pop("merged_product_ids", []),
                   **kw)
        session.add(ev)
        session.flush()
        return ev

    return _make


@pytest.fixture
def make_attendee(session: Session) -> Callable[..., Attendee]:
    counter = {"n": 0}

    def _make(event: Event, email: Optional[str] = None, ticket_id: Optional[str] = None,
              checked_in: bool = False, **kw) -> Attendee:
        counter["n"] += 1
        n = counter["n"]
        att = Attendee(
            event_id=event.id,
            email=email or f"person{n}@example.org",
            first_name=kw.pop("first_name", f"First{n}"),
            last_name=kw.pop("last_name", f"Last{n}"),
            ticket_id=ticket_id if ticket_id is not None else f"T{n}",
            checked_in=checked_in,
            checked_in_at=event.event_date if checked_in else None,
            **kw,
        )
        session.add(att)
        session.flush()
        return att

    return _make


def ticket(tid: str, email: str, product_id: str = "100", **kw) -> TicketRecord:
    return TicketRecord(
        external_ticket_id=tid,
        ticket_id_source=kw.pop("ticket_id_source", "ticket_meta"),
        email=email,
        first_name=kw.pop("first_name", "Ada"),
        last_name=kw.pop("last_name", "Lovelace"),
        order_id=kw.pop("order_id", "5001"),
        source_product_id=product_id,
        **kw,
    )


def woo_order(order_id: int, product_id: int, tickets: List[dict], *, variation_id: int = 0,
              ticket_ids: Optional[dict] = None, date_created: str = "2025-02-01T10:15:00",
              billing: Optional[dict] = None) -> WooOrder:
    """
    Build a WooCommerce order with one line item carrying ``_ticket_data``.
    ``tickets`` are ``{"uid": ..., "fields": {...}}`` entries; ``ticket_ids``
    maps uid to the value of its ``_ticket_id_for_<uid>`` meta.
    """
    meta = [{"key": "_ticket_data", "value": tickets}]
    for uid, tid in (ticket_ids or {}).items():
        meta.append({"key": f"_ticket_id_for_{uid}", "value": tid})
    return WooOrder.model_validate({
        "id": order_id,
        "status": "completed",
        "date_created": date_created,
        "billing": billing or {"first_name": "Bea", "last_name": "Booker", "email": "Bea@Example.org"},
        "line_items": [{
            "id": order_id * 10,
            "name": "Ticket",
            "product_id": product_id,
            "variation_id": variation_id,
            "quantity": len(tickets),
            "meta_data": meta,
        }],
    })


@pytest.fixture
def ticket_factory() -> Callable[..., TicketRecord]:
    return ticket


@pytest.fixture
def order_factory() -> Callable[..., WooOrder]:
    return woo_order
