# attendance_etl/core/matching.py
from __future__ import annotations

import logging
import re
import unicodedata
from datetime import date, datetime
from typing import Dict, Iterable, List, Optional, Pattern, Sequence, Set, Tuple

import sqlalchemy as sa
from pydantic import BaseModel, Field
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from attendance_etl.core.models import WooProduct
from attendance_etl.core.patterns import (
    extract_event_date,
    is_event_product,
    is_members_only_product,
    should_never_merge,
)
from attendance_etl.storage.database import Attendee, Event, EventStatus, active_events, utcnow

log = logging.getLogger(__name__)

# ------------------- name normalisation -------------------

MIN_PREFIX_LEN = 3


def _norm_name(s: str) -> str:
    s = (s or "").lower()
    s = "".join(c for c in unicodedata.normalize("NFKD", s) if not unicodedata.combining(c))
    s = re.sub(r"[\W_]+", " ", s)
    return " ".join(s.split())


def name_prefix(name: str, words: int = 2) -> str:
    """Normalized first ``words`` words; the grouping key alongside the event day."""
    return " ".join(_norm_name(name).split()[:words])


# ------------------- discovery -------------------

class DiscoveryResult(BaseModel):
    total_products: int = 0
    event_products: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    absorbed: int = 0
    created_ids: List[str] = Field(default_factory=list)


def absorbed_product_ids(session: Session) -> Set[str]:
    """Product ids that now live inside another event and must not come back as their own."""
    out: Set[str] = set()
    merged_primaries = session.scalars(
        sa.select(Event.woocommerce_product_id).where(
            Event.status == EventStatus.MERGED.value,
            Event.woocommerce_product_id.is_not(None),
        )
    )
    out.update(merged_primaries)
    for ids in session.scalars(sa.select(Event.merged_product_ids).where(Event.status == EventStatus.ACTIVE.value)):
        out.update(str(i) for i in (ids or []))
    # a product split back out by disentangle is the primary of an active event again
    out -= set(session.scalars(
        sa.select(Event.woocommerce_product_id).where(
            Event.status == EventStatus.ACTIVE.value,
            Event.woocommerce_product_id.is_not(None),
        )
    ))
    return out


def _apply_product(ev: Event, name: str, when: datetime, members_only: bool) -> bool:
    changed = False
    if ev.name != name:
        ev.name = name
        changed = True
    if ev.event_date != when:
        ev.event_date = when
        changed = True
    if ev.is_members_only_product != members_only:
        ev.is_members_only_product = members_only
        changed = True
    if changed:
        ev.updated_at = utcnow()
    return changed


def upsert_event_for_product(session: Session, product: WooProduct, when: datetime) -> Tuple[Event, bool]:
    """Insert-or-update keyed on the product id among active events. Returns (event, created)."""
    pid = str(product.id)
    members_only = is_members_only_product(product.name)
    existing = session.scalars(active_events().where(Event.woocommerce_product_id == pid)).first()
    if existing is not None:
        _apply_product(existing, product.name, when, members_only)
        return existing, False

    ev = Event(name=product.name, event_date=when, woocommerce_product_id=pid,
               is_members_only_product=members_only, merged_product_ids=[])
    try:
        with session.begin_nested():
            session.add(ev)
            session.flush()
    except IntegrityError:
        # someone else inserted the same product between our select and insert
        log.info("product %s inserted concurrently, updating instead", pid)
        existing = session.scalars(active_events().where(Event.woocommerce_product_id == pid)).one()
        _apply_product(existing, product.name, when, members_only)
        return existing, False
    return ev, True


def discover_events(session: Session, products: Iterable[WooProduct]) -> DiscoveryResult:
    products = list(products)
    res = DiscoveryResult(total_products=len(products))
    absorbed = absorbed_product_ids(session)

    for p in products:
        if not is_event_product(p):
            continue
        res.event_products += 1
        when = extract_event_date(p)
        if when is None:
            log.warning("could not extract a date from product %s %r", p.id, p.name)
            res.skipped += 1
            continue
        if str(p.id) in absorbed:
            res.absorbed += 1
            continue
        ev, created = upsert_event_for_product(session, p, when)
        if created:
            res.created += 1
            res.created_ids.append(ev.id)
            log.info("created event %r on %s", p.name, when.date().isoformat(),
                     extra={"event_id": ev.id, "product_id": p.id})
        else:
            res.updated += 1

    log.info("discovery: %d created, %d updated, %d skipped, %d absorbed",
             res.created, res.updated, res.skipped, res.absorbed)
    return res


# ------------------- merge candidates -------------------

class CandidateEvent(BaseModel):
    id: str
    name: str
    event_date: datetime
    product_id: str
    is_members_only_product: bool = False
    attendee_count: int = 0


class MergeCandidate(BaseModel):
    day: date
    prefix: str
    events: List[CandidateEvent]


def attendee_counts(session: Session, event_ids: Sequence[str]) -> Dict[str, int]:
    if not event_ids:
        return {}
    rows = session.execute(
        sa.select(Attendee.event_id, sa.func.count(Attendee.id))
        .where(Attendee.event_id.in_(event_ids))
        .group_by(Attendee.event_id)
    )
    return {eid: n for eid, n in rows}


def find_merge_candidates(session: Session, never_merge: Sequence[Pattern[str]] = ()) -> List[MergeCandidate]:
    """
    Active events sharing a day and a normalized two-word prefix.
    Groups touching a recurring series (never-merge patterns) are left alone.
    """
    events = list(session.scalars(
        active_events().where(Event.woocommerce_product_id.is_not(None)).order_by(Event.event_date)
    ))
    groups: Dict[Tuple[date, str], List[Event]] = {}
    for ev in events:
        prefix = name_prefix(ev.name)
        if len(prefix) < MIN_PREFIX_LEN:
            continue
        groups.setdefault((ev.event_date.date(), prefix), []).append(ev)

    dup = {k: v for k, v in groups.items() if len(v) >= 2}
    counts = attendee_counts(session, [e.id for evs in dup.values() for e in evs])

    out: List[MergeCandidate] = []
    for (day, prefix), evs in sorted(dup.items(), key=lambda kv: (kv[0][0], kv[0][1])):
        if any(should_never_merge(e.name, never_merge) for e in evs):
            log.info("skipping recurring series %r on %s", prefix, day.isoformat())
            continue
        out.append(MergeCandidate(
            day=day,
            prefix=prefix,
            events=[
                CandidateEvent(
                    id=e.id,
                    name=e.name,
                    event_date=e.event_date,
                    product_id=e.woocommerce_product_id or "",
                    is_members_only_product=bool(e.is_members_only_product),
                    attendee_count=counts.get(e.id, 0),
                )
                for e in evs
            ],
        ))
    log.info("found %d merge candidate group(s)", len(out))
    return out
