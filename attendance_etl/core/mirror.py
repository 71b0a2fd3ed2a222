# attendance_etl/core/mirror.py
from __future__ import annotations

import logging
from datetime import datetime
from typing import List, Optional

import httpx
import sqlalchemy as sa
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from attendance_etl.adapters.loops import LoopsClient, LoopsError
from attendance_etl.core.errors import TransientFetchError
from attendance_etl.storage.database import Member, SyncLog

log = logging.getLogger(__name__)

# every failure mode of one Loops call; none of them may reach the caller
_MIRROR_ERRORS = (LoopsError, TransientFetchError, httpx.HTTPError, ValueError)


class SyncStats(BaseModel):
    total: int = 0
    successful: int = 0
    failed: int = 0
    synced: int = 0
    removed: int = 0


class ListAudit(BaseModel):
    checked: int = 0
    fixed: int = 0
    errors: int = 0
    details: List[str] = Field(default_factory=list)


class MembershipMirror:
    """
    Pushes membership transitions to the Loops active-members list.
    Each attempt leaves one SyncLog row; failures are recorded, never raised.
    """

    def __init__(self, loops: LoopsClient):
        self.loops = loops

    def _log(self, session: Session, operation: str, email: str, ok: bool,
             member_id: Optional[str] = None, error: Optional[str] = None,
             contact_id: Optional[str] = None) -> None:
        session.add(SyncLog(
            member_id=member_id, email=email, operation=operation,
            status="success" if ok else "failed",
            error_message=error[:1000] if error else None,
            loops_contact_id=contact_id,
        ))
        session.flush()

    async def member_activated(self, session: Session, member: Member) -> bool:
        if not member.is_active_member:
            log.info("not syncing inactive member %s", member.email)
            return False
        try:
            contact_id = await self.loops.add_to_active_list(member)
        except _MIRROR_ERRORS as e:
            log.error("Loops sync failed for %s: %s", member.email, e, extra={"member_id": member.id})
            self._log(session, "sync", member.email, False, member.id, str(e))
            return False
        self._log(session, "sync", member.email, True, member.id, contact_id=contact_id)
        return True

    async def member_deactivated(self, session: Session, member: Member) -> bool:
        try:
            await self.loops.remove_from_active_list(member.email)
        except _MIRROR_ERRORS as e:
            log.error("Loops removal failed for %s: %s", member.email, e, extra={"member_id": member.id})
            self._log(session, "remove", member.email, False, member.id, str(e))
            return False
        self._log(session, "remove", member.email, True, member.id)
        return True

    async def audit_list(self, session: Session) -> ListAudit:
        """Compare every member with its Loops contact and fix list membership drift."""
        out = ListAudit()
        for m in session.scalars(sa.select(Member).order_by(Member.email)).all():
            try:
                contact = await self.loops.find_contact(m.email)
            except _MIRROR_ERRORS as e:
                out.errors += 1
                log.error("Loops lookup failed for %s: %s", m.email, e)
                continue
            out.checked += 1
            listed = self.loops.in_active_list(contact)
            if m.is_active_member and (not listed or not (contact or {}).get("subscribed")):
                if await self.member_activated(session, m):
                    out.fixed += 1
                    out.details.append(f"{m.email}: added")
            elif not m.is_active_member and listed:
                if await self.member_deactivated(session, m):
                    out.fixed += 1
                    out.details.append(f"{m.email}: removed")
        return out


def sync_stats(session: Session, since: Optional[datetime] = None) -> SyncStats:
    q = sa.select(SyncLog.operation, SyncLog.status)
    if since is not None:
        q = q.where(SyncLog.synced_at >= since)
    st = SyncStats()
    for op, status in session.execute(q):
        st.total += 1
        if status == "success":
            st.successful += 1
            if op == "sync":
                st.synced += 1
            elif op == "remove":
                st.removed += 1
        else:
            st.failed += 1
    return st
