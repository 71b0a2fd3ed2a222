# attendance_etl/core/reconcile.py
"""
Make the attendee table match the tickets WooCommerce knows about for one event.

Rows already present are never overwritten: names and emails may have been
corrected by staff, so only empty booker/provenance columns get filled in.
"""
from __future__ import annotations

import enum
import logging
from datetime import datetime
from pathlib import Path
from typing import Iterable, List, Optional, Tuple

import sqlalchemy as sa
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from attendance_etl.core.errors import NotFoundError
from attendance_etl.core.models import TicketRecord
from attendance_etl.storage.database import Attendee, Event, Member, utcnow

log = logging.getLogger(__name__)


class ReconcileMode(str, enum.Enum):
    ADDITIVE = "additive"
    CLEAN = "clean"


# ------------------- backups -------------------

class AttendeeSnapshot(BaseModel):
    """Every column of an attendee row, as deleted by a clean rebuild."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    event_id: str
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    ticket_id: Optional[str] = None
    ticket_id_source: Optional[str] = None
    woocommerce_order_id: Optional[str] = None
    woocommerce_order_date: Optional[datetime] = None
    booker_first_name: Optional[str] = None
    booker_last_name: Optional[str] = None
    booker_email: Optional[str] = None
    checked_in: bool = False
    checked_in_at: Optional[datetime] = None
    manually_added: bool = False
    locally_modified: bool = False
    source_product_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class AttendeeBackup(BaseModel):
    event_id: str
    event_name: str = ""
    taken_at: datetime
    attendees: List[AttendeeSnapshot] = Field(default_factory=list)


def write_backup(backup: AttendeeBackup, backup_dir: str) -> Path:
    d = Path(backup_dir)
    d.mkdir(parents=True, exist_ok=True)
    path = d / f"{backup.event_id}-{backup.taken_at:%Y%m%dT%H%M%S%f}.json"
    path.write_text(backup.model_dump_json(indent=2), encoding="utf-8")
    return path


def restore_backup(session: Session, path: str) -> int:
    """Re-insert the rows of a clean-mode backup that are missing again. Returns rows inserted."""
    backup = AttendeeBackup.model_validate_json(Path(path).read_text(encoding="utf-8"))
    if session.get(Event, backup.event_id) is None:
        raise NotFoundError(f"event {backup.event_id} from backup {path} does not exist")

    present_ids = set(session.scalars(sa.select(Attendee.id).where(Attendee.event_id == backup.event_id)))
    present_tickets = set(session.scalars(
        sa.select(Attendee.ticket_id).where(Attendee.event_id == backup.event_id, Attendee.ticket_id.is_not(None))
    ))
    inserted = 0
    for snap in backup.attendees:
        if snap.id in present_ids or (snap.ticket_id and snap.ticket_id in present_tickets):
            continue
        session.add(Attendee(**snap.model_dump()))
        inserted += 1
        if snap.ticket_id:
            present_tickets.add(snap.ticket_id)
    session.flush()
    log.info("restored %d/%d attendee(s) for event %s from %s",
             inserted, len(backup.attendees), backup.event_id, path)
    return inserted


# ------------------- reconciliation -------------------

class ReconcileResult(BaseModel):
    event_id: str
    mode: ReconcileMode
    incoming: int = 0
    inserted: int = 0
    already_present: int = 0
    duplicates_in_input: int = 0
    backfilled: int = 0
    locally_modified_skipped: int = 0
    checked_in: int = 0
    deleted: int = 0
    members_created: int = 0
    backup: Optional[AttendeeBackup] = None
    backup_path: Optional[str] = None
    new_emails: List[str] = Field(default_factory=list)


def _fill_if_empty(att: Attendee, column: str, value) -> bool:
    if value in (None, "") or getattr(att, column) not in (None, ""):
        return False
    setattr(att, column, value)
    return True


def _backfill(att: Attendee, t: TicketRecord) -> bool:
    changed = False
    for column, value in (
        ("booker_first_name", t.booker_first_name),
        ("booker_last_name", t.booker_last_name),
        ("booker_email", t.booker_email),
        ("source_product_id", t.source_product_id),
        ("woocommerce_order_id", t.order_id),
        ("woocommerce_order_date", t.order_date),
        ("ticket_id_source", t.ticket_id_source),
    ):
        changed = _fill_if_empty(att, column, value) or changed
    return changed


def reconcile_event(session: Session, event: Event, tickets: Iterable[TicketRecord],
                    mode: ReconcileMode = ReconcileMode.ADDITIVE,
                    checkin_cutoff: Optional[datetime] = None,
                    backup_dir: Optional[str] = None,
                    create_members: bool = True) -> ReconcileResult:
    """
    Insert the tickets not yet stored for ``event``.

    Clean mode deletes every attendee of the event first; the deleted rows are
    returned in ``result.backup`` and written to ``backup_dir`` when given.
    With ``checkin_cutoff``, new rows are checked in iff the event date is
    strictly before it. Only flushes: the caller owns the transaction.
    """
    mode = ReconcileMode(mode)
    res = ReconcileResult(event_id=event.id, mode=mode)

    unique: List[TicketRecord] = []
    seen = set()
    for t in tickets:
        res.incoming += 1
        if t.external_ticket_id in seen:
            res.duplicates_in_input += 1
            continue
        seen.add(t.external_ticket_id)
        unique.append(t)

    if mode is ReconcileMode.CLEAN:
        rows = list(session.scalars(sa.select(Attendee).where(Attendee.event_id == event.id)))
        res.backup = AttendeeBackup(
            event_id=event.id, event_name=event.name, taken_at=utcnow(),
            attendees=[AttendeeSnapshot.model_validate(a) for a in rows],
        )
        if backup_dir and rows:
            res.backup_path = str(write_backup(res.backup, backup_dir))
        session.execute(sa.delete(Attendee).where(Attendee.event_id == event.id))
        res.deleted = len(rows)
        existing = {}
    else:
        existing = {
            a.ticket_id: a
            for a in session.scalars(
                sa.select(Attendee).where(Attendee.event_id == event.id, Attendee.ticket_id.is_not(None))
            )
        }

    check_in = checkin_cutoff is not None and event.event_date < checkin_cutoff
    new_people: List[Tuple[str, str, str]] = []
    for t in unique:
        att = existing.get(t.external_ticket_id)
        if att is not None:
            res.already_present += 1
            if att.locally_modified:
                res.locally_modified_skipped += 1
            elif _backfill(att, t):
                res.backfilled += 1
            continue

        session.add(Attendee(
            event_id=event.id,
            email=t.email,
            first_name=t.first_name,
            last_name=t.last_name,
            ticket_id=t.external_ticket_id,
            ticket_id_source=t.ticket_id_source,
            woocommerce_order_id=t.order_id,
            woocommerce_order_date=t.order_date,
            booker_first_name=t.booker_first_name or None,
            booker_last_name=t.booker_last_name or None,
            booker_email=t.booker_email or None,
            checked_in=check_in,
            checked_in_at=event.event_date if check_in else None,
            source_product_id=t.source_product_id,
        ))
        res.inserted += 1
        if check_in:
            res.checked_in += 1
        new_people.append((t.email, t.first_name, t.last_name))

    session.flush()

    res.new_emails = sorted({e for e, _, _ in new_people})
    if create_members:
        for email, first, last in new_people:
            _, created = ensure_member(session, email, first, last)
            res.members_created += int(created)
        session.flush()

    log.info("event %s (%s): %d incoming, %d inserted, %d present, %d deleted",
             event.id, mode.value, res.incoming, res.inserted, res.already_present, res.deleted,
             extra={"event_id": event.id, "inserted": res.inserted, "checked_in": res.checked_in})
    return res


def ensure_member(session: Session, email: str, first_name: str = "", last_name: str = "") -> Tuple[Member, bool]:
    """Get or create the member row for ``email``. Existing names are left alone."""
    email = email.strip().lower()
    m = session.scalars(sa.select(Member).where(Member.email == email)).first()
    if m is not None:
        return m, False
    m = Member(email=email, first_name=first_name or None, last_name=last_name or None)
    session.add(m)
    session.flush()
    return m, True


# ------------------- check-ins -------------------

def _attendee(session: Session, attendee_id: str) -> Attendee:
    att = session.get(Attendee, attendee_id)
    if att is None:
        raise NotFoundError(f"attendee {attendee_id} does not exist")
    return att


def check_in_attendee(session: Session, attendee_id: str, at: Optional[datetime] = None) -> Attendee:
    att = _attendee(session, attendee_id)
    att.checked_in = True
    att.checked_in_at = at or utcnow()
    session.flush()
    return att


def undo_check_in(session: Session, attendee_id: str) -> Attendee:
    att = _attendee(session, attendee_id)
    att.checked_in = False
    att.checked_in_at = None
    session.flush()
    return att


def auto_check_in_past_events(session: Session, cutoff: datetime) -> int:
    """Check in every unchecked attendee of an event dated strictly before ``cutoff``."""
    rows = session.execute(
        sa.select(Attendee, Event.event_date)
        .join(Event, Event.id == Attendee.event_id)
        .where(Event.event_date < cutoff, Attendee.checked_in.is_(False))
    ).all()
    for att, when in rows:
        att.checked_in = True
        att.checked_in_at = when
    session.flush()
    log.info("auto checked in %d attendee(s) of events before %s", len(rows), cutoff.isoformat())
    return len(rows)


def clear_future_check_ins(session: Session, cutoff: datetime) -> int:
    """Undo imported check-ins on events dated at or after ``cutoff``; hand-made rows are kept."""
    rows = session.scalars(
        sa.select(Attendee)
        .join(Event, Event.id == Attendee.event_id)
        .where(
            Event.event_date >= cutoff,
            Attendee.checked_in.is_(True),
            Attendee.woocommerce_order_id.is_not(None),
            Attendee.manually_added.is_(False),
        )
    ).all()
    for att in rows:
        att.checked_in = False
        att.checked_in_at = None
    session.flush()
    log.info("cleared %d check-in(s) on events from %s on", len(rows), cutoff.isoformat())
    return len(rows)
