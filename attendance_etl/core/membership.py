# attendance_etl/core/membership.py
"""
Active-member derivation.

A person is an active member after 3 qualifying (non-social) checked-in events,
as long as one of them falls inside the trailing 9 months. Membership expires 9
calendar months after the last qualifying event; a manual expiry can only push
that date later.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional

import sqlalchemy as sa
from dateutil.relativedelta import relativedelta
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from attendance_etl.core.patterns import is_social_event
from attendance_etl.storage.database import Attendee, Event, EventStatus, Member, active_events, utcnow

log = logging.getLogger(__name__)

MIN_QUALIFYING_EVENTS = 3
WINDOW = relativedelta(months=9)


# ------------------- pure calculation -------------------

class AttendanceRecord(BaseModel):
    event_id: str
    event_date: datetime
    event_name: str


class MembershipResult(BaseModel):
    total_qualifying_events: int
    last_qualifying_event_date: Optional[datetime] = None
    is_active: bool = False
    membership_expires_at: Optional[datetime] = None


def calculate_membership(history: Iterable[AttendanceRecord], now: datetime,
                         manual_expires_at: Optional[datetime] = None) -> MembershipResult:
    qualifying: Dict[str, datetime] = {}
    for rec in history:
        if is_social_event(rec.event_name):
            continue
        qualifying[rec.event_id] = rec.event_date

    total = len(qualifying)
    last = max(qualifying.values()) if qualifying else None
    window_start = now - WINDOW
    recent = any(d >= window_start for d in qualifying.values())
    computed = last + WINDOW if last is not None else None

    if computed is not None and manual_expires_at is not None:
        expires = max(computed, manual_expires_at)
    else:
        expires = computed or manual_expires_at

    return MembershipResult(
        total_qualifying_events=total,
        last_qualifying_event_date=last,
        is_active=total >= MIN_QUALIFYING_EVENTS and recent,
        membership_expires_at=expires,
    )


# ------------------- history -------------------

def attendance_history(session: Session, email: str) -> List[AttendanceRecord]:
    """Checked-in attendance of ``email`` at current (non-merged) events."""
    rows = session.execute(
        sa.select(Event.id, Event.event_date, Event.name)
        .join(Attendee, Attendee.event_id == Event.id)
        .where(
            sa.func.lower(Attendee.email) == email.lower(),
            Attendee.checked_in.is_(True),
            Event.status == EventStatus.ACTIVE.value,
        )
    )
    return [AttendanceRecord(event_id=i, event_date=d, event_name=n) for i, d, n in rows]


def _manual_expiry(m: Member) -> Optional[datetime]:
    return m.manual_expires_at if m.manually_added else None


def _apply(m: Member, r: MembershipResult) -> None:
    m.is_active_member = r.is_active
    m.total_events_attended = r.total_qualifying_events
    m.last_event_date = r.last_qualifying_event_date
    m.membership_expires_at = r.membership_expires_at
    m.updated_at = utcnow()


# ------------------- full rebuild -------------------

class RebuildResult(BaseModel):
    members: int = 0
    active: int = 0
    manual_kept: int = 0


def rebuild_members(session: Session, now: datetime) -> RebuildResult:
    """
    Drop and recompute every member from attendee rows. Manual flags, notes and
    ids survive; manually added members with no attendance are kept as they were.
    Never talks to the mirror.
    """
    previous = {m.email.lower(): m for m in session.scalars(sa.select(Member))}
    carried = {
        email: dict(
            id=m.id, first_name=m.first_name, last_name=m.last_name,
            manually_added=m.manually_added, manual_expires_at=m.manual_expires_at,
            notes=m.notes, created_at=m.created_at,
        )
        for email, m in previous.items()
    }
    session.flush()
    for m in previous.values():
        session.expunge(m)
    session.execute(sa.delete(Member))

    names: Dict[str, tuple] = {}
    for email, first, last in session.execute(
        sa.select(sa.func.lower(Attendee.email), Attendee.first_name, Attendee.last_name)
        .order_by(Attendee.created_at.desc())
    ):
        if email and email not in names:
            names[email] = (first, last)

    res = RebuildResult()
    for email in sorted(set(names) | {e for e, c in carried.items() if c["manually_added"]}):
        prev = carried.get(email, {})
        first, last = names.get(email, (None, None))
        m = Member(
            email=email,
            first_name=prev.get("first_name") or first,
            last_name=prev.get("last_name") or last,
            manually_added=bool(prev.get("manually_added")),
            manual_expires_at=prev.get("manual_expires_at"),
            notes=prev.get("notes"),
        )
        if prev.get("id"):
            m.id = prev["id"]
        if prev.get("created_at"):
            m.created_at = prev["created_at"]
        r = calculate_membership(attendance_history(session, email), now, _manual_expiry(m))
        _apply(m, r)
        session.add(m)
        res.members += 1
        res.active += int(r.is_active)
        if email not in names:
            res.manual_kept += 1
    session.flush()
    log.info("rebuilt %d member(s), %d active, %d manual-only kept", res.members, res.active, res.manual_kept)
    return res


# ------------------- incremental -------------------

class MemberChange(BaseModel):
    email: str
    member_id: str
    was_active: bool
    is_active: bool
    created: bool = False
    result: MembershipResult

    @property
    def transitioned(self) -> bool:
        return self.was_active != self.is_active


class SweepResult(BaseModel):
    checked: int = 0
    activated: int = 0
    deactivated: int = 0
    changes: List[MemberChange] = Field(default_factory=list)


def _member_for(session: Session, email: str) -> tuple:
    m = session.scalars(sa.select(Member).where(sa.func.lower(Member.email) == email.lower())).first()
    if m is not None:
        return m, False
    latest = session.execute(
        sa.select(Attendee.first_name, Attendee.last_name)
        .where(sa.func.lower(Attendee.email) == email.lower())
        .order_by(Attendee.created_at.desc())
    ).first()
    m = Member(email=email.lower(), first_name=latest[0] if latest else None,
               last_name=latest[1] if latest else None)
    session.add(m)
    session.flush()
    return m, True


async def _recalculate(session: Session, m: Member, created: bool, now: datetime, mirror) -> MemberChange:
    was = bool(m.is_active_member)
    r = calculate_membership(attendance_history(session, m.email), now, _manual_expiry(m))
    _apply(m, r)
    session.flush()
    change = MemberChange(email=m.email, member_id=m.id, was_active=was, is_active=r.is_active,
                          created=created, result=r)
    if change.transitioned:
        log.info("%s became %s", m.email, "active" if r.is_active else "inactive",
                 extra={"member_id": m.id})
        if mirror is not None:
            if r.is_active:
                await mirror.member_activated(session, m)
            else:
                await mirror.member_deactivated(session, m)
    return change


async def recalculate_for_emails(session: Session, emails: Iterable[str], now: datetime,
                                 mirror=None) -> List[MemberChange]:
    out = []
    for email in sorted({e.strip().lower() for e in emails if e and e.strip()}):
        m, created = _member_for(session, email)
        out.append(await _recalculate(session, m, created, now, mirror))
    return out


async def recalculate_for_event(session: Session, event_id: str, now: datetime,
                                mirror=None) -> List[MemberChange]:
    emails = session.scalars(
        sa.select(Attendee.email).where(Attendee.event_id == event_id, Attendee.checked_in.is_(True))
    ).all()
    log.info("recalculating %d checked-in attendee(s) of event %s", len(emails), event_id)
    return await recalculate_for_emails(session, emails, now, mirror)


def find_events_needing_recalculation(session: Session, now: datetime,
                                      after: timedelta = timedelta(hours=2),
                                      span: timedelta = timedelta(hours=1)) -> List[Event]:
    """Events that ended between ``after + span`` and ``after`` ago."""
    return list(session.scalars(
        active_events()
        .where(Event.event_date > now - after - span, Event.event_date <= now - after)
        .order_by(Event.event_date)
    ))


async def sweep_memberships(session: Session, now: datetime, mirror=None) -> SweepResult:
    """Recompute every member. The only place where membership lapses with no new activity."""
    res = SweepResult()
    for m in session.scalars(sa.select(Member).order_by(Member.email)).all():
        change = await _recalculate(session, m, False, now, mirror)
        res.checked += 1
        if change.transitioned:
            res.changes.append(change)
            if change.is_active:
                res.activated += 1
            else:
                res.deactivated += 1
    log.info("sweep: %d checked, %d activated, %d deactivated", res.checked, res.activated, res.deactivated)
    return res
