# attendance_etl/core/merging.py
"""
Collapse duplicate events into one survivor, and undo bad merges.

A merge never deletes rows: absorbed events stay behind with ``status=merged``
and a pointer to the survivor, and every attendee moved keeps the product id it
was bought under (``source_product_id``) so the merge can be split again.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Dict, List, Mapping, Optional, Pattern, Sequence, Tuple

import sqlalchemy as sa
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from attendance_etl.core.errors import DisentangleDeclined
from attendance_etl.core.matching import MergeCandidate, attendee_counts, find_merge_candidates
from attendance_etl.core.patterns import NameVerdict, clean_event_name, detect_incorrect_merge, format_event_date
from attendance_etl.storage.database import Attendee, Event, EventStatus, active_events, utcnow

log = logging.getLogger(__name__)


# ------------------- results -------------------

class MergeResult(BaseModel):
    survivor_id: str
    survivor_name: str
    absorbed_ids: List[str] = Field(default_factory=list)
    attendees_moved: int = 0
    backfilled_source: int = 0
    conflicts: List[str] = Field(default_factory=list)
    before: Dict[str, int] = Field(default_factory=dict)
    after: Dict[str, int] = Field(default_factory=dict)
    affected_emails: List[str] = Field(default_factory=list)


class MergeDetail(BaseModel):
    day: str
    names: List[str]
    success: bool
    result: Optional[MergeResult] = None
    error: Optional[str] = None


class BatchMergeResult(BaseModel):
    groups_found: int = 0
    groups_merged: int = 0
    groups_failed: int = 0
    events_merged: int = 0
    attendees_moved: int = 0
    details: List[MergeDetail] = Field(default_factory=list)


class SplitEvent(BaseModel):
    event_id: str
    name: str
    product_id: str
    attendees: int


class DisentangleResult(BaseModel):
    event_id: str
    original_name: str
    name: str
    kept_product_id: str
    kept_attendees: int
    created: List[SplitEvent] = Field(default_factory=list)
    redirected_merged_rows: List[str] = Field(default_factory=list)
    name_lookup_failures: List[str] = Field(default_factory=list)
    before: int = 0
    affected_emails: List[str] = Field(default_factory=list)
    # set when the split events still form a merge candidate group
    remerge_prefix: Optional[str] = None


# ------------------- merge -------------------

def _survivor_key(ev: Event, counts: Mapping[str, int]) -> Tuple[int, int, str]:
    return (1 if ev.is_members_only_product else 0, -counts.get(ev.id, 0), ev.woocommerce_product_id or "")


def merge_event_group(session: Session, group: MergeCandidate) -> MergeResult:
    """Fold every event in ``group`` into one survivor. Flushes; the caller commits."""
    ids = [c.id for c in group.events]
    events = list(session.scalars(active_events().where(Event.id.in_(ids))))
    if len(events) < 2:
        raise ValueError(f"merge group on {group.day} has {len(events)} active event(s), need 2")

    counts = attendee_counts(session, ids)
    events.sort(key=lambda e: _survivor_key(e, counts))
    survivor, absorbed = events[0], events[1:]
    absorbed_ids = [e.id for e in absorbed]
    by_id = {e.id: e for e in events}

    res = MergeResult(survivor_id=survivor.id, survivor_name=survivor.name,
                      absorbed_ids=absorbed_ids, before={e.id: counts.get(e.id, 0) for e in events})

    # source product first, so the merge stays reversible
    for att in session.scalars(sa.select(Attendee).where(Attendee.event_id.in_(ids), Attendee.source_product_id.is_(None))).all():
        pid = by_id[att.event_id].woocommerce_product_id
        if pid:
            att.source_product_id = pid
            res.backfilled_source += 1

    taken = set(session.scalars(
        sa.select(Attendee.ticket_id).where(Attendee.event_id == survivor.id, Attendee.ticket_id.is_not(None))
    ))
    for att in session.scalars(sa.select(Attendee).where(Attendee.event_id.in_(absorbed_ids))).all():
        if att.ticket_id is not None and att.ticket_id in taken:
            res.conflicts.append(att.ticket_id)
            log.warning("ticket %s already on survivor %s, left on event %s",
                        att.ticket_id, survivor.id, att.event_id)
            continue
        att.event_id = survivor.id
        if att.ticket_id is not None:
            taken.add(att.ticket_id)
        res.attendees_moved += 1

    merged = list(survivor.merged_product_ids or [])
    for ev in absorbed:
        for pid in ev.product_ids:
            if pid != survivor.woocommerce_product_id and pid not in merged:
                merged.append(pid)
        ev.mark_merged_into(survivor.id)
        ev.updated_at = utcnow()
    survivor.merged_product_ids = merged
    survivor.updated_at = utcnow()

    # anything that pointed at an absorbed event now points at the survivor
    session.execute(
        sa.update(Event)
        .where(Event.merged_into_event_id.in_(absorbed_ids))
        .values(merged_into_event_id=survivor.id)
        .execution_options(synchronize_session="fetch")
    )
    session.flush()

    res.after = attendee_counts(session, ids)
    for eid in ids:
        res.after.setdefault(eid, 0)
    res.affected_emails = sorted(set(session.scalars(
        sa.select(Attendee.email).where(Attendee.event_id == survivor.id)
    )))
    log.info("merged %d event(s) into %s %r: %d attendee(s) moved, %d conflict(s)",
             len(absorbed), survivor.id, survivor.name, res.attendees_moved, len(res.conflicts),
             extra={"survivor_id": survivor.id, "absorbed": absorbed_ids})
    return res


def merge_duplicate_events(session: Session, never_merge: Sequence[Pattern[str]] = ()) -> BatchMergeResult:
    """Merge and commit each candidate group; a failing group is rolled back and reported, the rest proceed."""
    groups = find_merge_candidates(session, never_merge)
    out = BatchMergeResult(groups_found=len(groups))
    for g in groups:
        detail = MergeDetail(day=g.day.isoformat(), names=[e.name for e in g.events], success=False)
        try:
            r = merge_event_group(session, g)
            session.commit()
        except Exception as e:
            session.rollback()
            log.exception("merge of %r on %s failed", g.prefix, g.day.isoformat())
            detail.error = str(e)
            out.groups_failed += 1
        else:
            detail.success = True
            detail.result = r
            out.groups_merged += 1
            out.events_merged += len(r.absorbed_ids)
            out.attendees_moved += r.attendees_moved
        out.details.append(detail)
    return out


# ------------------- disentangle -------------------

def find_suspect_events(session: Session) -> List[Tuple[Event, NameVerdict]]:
    """Active events whose name looks corrupted or like two events glued together."""
    out = []
    for ev in session.scalars(active_events().order_by(Event.event_date)):
        verdict = detect_incorrect_merge(ev.name)
        if verdict.flagged:
            out.append((ev, verdict))
    return out


def source_groups(session: Session, event_id: str) -> Dict[str, List[Attendee]]:
    groups: Dict[str, List[Attendee]] = {}
    for att in session.scalars(
        sa.select(Attendee).where(Attendee.event_id == event_id, Attendee.source_product_id.is_not(None))
    ):
        groups.setdefault(att.source_product_id, []).append(att)
    return groups


def fallback_split_name(product_id: str, when: datetime) -> str:
    return f"Disentangled Event (Product {product_id}) - {format_event_date(when)}"


def disentangle_event(session: Session, event: Event,
                      product_names: Mapping[str, Optional[str]]) -> DisentangleResult:
    """
    Split ``event`` by attendee source product. ``product_names`` maps product id
    to its current name, or None where the lookup failed.
    Raises DisentangleDeclined when fewer than two source groups exist.
    """
    if event.status != EventStatus.ACTIVE.value:
        raise DisentangleDeclined(event.id, "event is merged into another event")

    groups = source_groups(session, event.id)
    if len(groups) < 2:
        raise DisentangleDeclined(event.id, "no source tracking")

    before = session.scalar(sa.select(sa.func.count(Attendee.id)).where(Attendee.event_id == event.id)) or 0
    ordered = sorted(groups.items(), key=lambda kv: (-len(kv[1]), kv[0]))
    (keep_pid, keep_atts), rest = ordered[0], ordered[1:]
    split_pids = [pid for pid, _ in rest]

    res = DisentangleResult(event_id=event.id, original_name=event.name, name=event.name,
                            kept_product_id=keep_pid, kept_attendees=len(keep_atts), before=before)
    for pid, _ in ordered:
        if not product_names.get(pid):
            res.name_lookup_failures.append(pid)

    # the kept product becomes primary before any new event claims the old one
    old_primary = event.woocommerce_product_id
    merged = [p for p in (event.merged_product_ids or []) if p not in split_pids and p != keep_pid]
    if old_primary and old_primary != keep_pid and old_primary not in split_pids and old_primary not in merged:
        merged.insert(0, old_primary)
    event.woocommerce_product_id = keep_pid
    event.merged_product_ids = merged
    kept_name = product_names.get(keep_pid)
    if kept_name:
        event.name = clean_event_name(kept_name, event.event_date)
    else:
        log.warning("no product name for %s, event %s keeps its name", keep_pid, event.id)
    event.updated_at = utcnow()
    res.name = event.name
    session.flush()

    for pid, atts in rest:
        pname = product_names.get(pid)
        name = clean_event_name(pname, event.event_date) if pname else fallback_split_name(pid, event.event_date)
        new_ev = Event(name=name, event_date=event.event_date, woocommerce_product_id=pid,
                       merged_product_ids=[], is_members_only_product=event.is_members_only_product)
        session.add(new_ev)
        session.flush()
        for att in atts:
            att.event_id = new_ev.id

        # merged rows that were this product's own event now belong to the split-off event
        stale = list(session.scalars(sa.select(Event).where(
            Event.status == EventStatus.MERGED.value,
            Event.woocommerce_product_id == pid,
            Event.merged_into_event_id == event.id,
        )))
        for row in stale:
            row.merged_into_event_id = new_ev.id
            res.redirected_merged_rows.append(row.id)

        res.created.append(SplitEvent(event_id=new_ev.id, name=name, product_id=pid, attendees=len(atts)))
        log.info("split %d attendee(s) of product %s out of %s into %s %r",
                 len(atts), pid, event.id, new_ev.id, name,
                 extra={"event_id": event.id, "new_event_id": new_ev.id, "product_id": pid})

    session.flush()
    res.affected_emails = sorted({a.email for _, atts in ordered for a in atts})
    return res


def fix_corrupted_name(session: Session, event: Event, product_name: Optional[str]) -> Optional[str]:
    """Rename ``event`` from its current product name. Returns the new name, or None if left as is."""
    if not product_name:
        log.warning("no product name for event %s, name left as %r", event.id, event.name)
        return None
    new_name = clean_event_name(product_name, event.event_date)
    if new_name == event.name:
        return None
    log.info("renaming %s: %r -> %r", event.id, event.name, new_name)
    event.name = new_name
    event.updated_at = utcnow()
    session.flush()
    return new_name
