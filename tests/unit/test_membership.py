"""Tests for membership derivation, rebuilds and the weekly sweep."""

from datetime import datetime, timedelta
from typing import List

import pytest
import sqlalchemy as sa
from dateutil.relativedelta import relativedelta

from attendance_etl.core.membership import (
    AttendanceRecord,
    attendance_history,
    calculate_membership,
    find_events_needing_recalculation,
    rebuild_members,
    recalculate_for_emails,
    recalculate_for_event,
    sweep_memberships,
)
from attendance_etl.storage.database import EventStatus, Member


def rec(event_id: str, when: datetime, name: str = "Talk") -> AttendanceRecord:
    return AttendanceRecord(event_id=event_id, event_date=when, event_name=f"{name} {event_id}")


class FakeMirror:
    """Records the calls a MembershipMirror would receive."""

    def __init__(self):
        self.activated: List[str] = []
        self.deactivated: List[str] = []

    async def member_activated(self, session, member) -> bool:
        self.activated.append(member.email)
        return True

    async def member_deactivated(self, session, member) -> bool:
        self.deactivated.append(member.email)
        return True


class TestCalculateMembership:
    def test_three_events_within_window(self):
        history = [rec("a", datetime(2024, 1, 10)), rec("b", datetime(2024, 3, 10)), rec("c", datetime(2024, 5, 10))]

        r = calculate_membership(history, datetime(2025, 2, 1))

        assert r.is_active is True
        assert r.total_qualifying_events == 3
        assert r.last_qualifying_event_date == datetime(2024, 5, 10)
        assert r.membership_expires_at == datetime(2025, 2, 10)

    def test_two_events_are_not_enough(self):
        r = calculate_membership([rec("a", datetime(2025, 1, 1)), rec("b", datetime(2025, 1, 8))],
                                 datetime(2025, 2, 1))

        assert r.is_active is False
        assert r.membership_expires_at == datetime(2025, 10, 8)

    def test_last_event_just_outside_window(self):
        last = datetime(2024, 5, 10)
        history = [rec("a", datetime(2024, 1, 10)), rec("b", datetime(2024, 3, 10)), rec("c", last)]

        assert calculate_membership(history, last + relativedelta(months=9, days=1)).is_active is False
        assert calculate_membership(history, last + relativedelta(months=8, days=29)).is_active is True

    def test_social_events_do_not_count(self):
        history = [
            rec("a", datetime(2025, 1, 3)),
            rec("p1", datetime(2025, 1, 5), "Summer Party"),
            rec("b", datetime(2025, 1, 10)),
            rec("c", datetime(2025, 1, 17)),
            rec("p2", datetime(2025, 1, 24), "Summer Party"),
        ]

        r = calculate_membership(history, datetime(2025, 2, 1))

        assert r.total_qualifying_events == 3
        assert r.is_active is True
        assert r.last_qualifying_event_date == datetime(2025, 1, 17)
        assert r.membership_expires_at == datetime(2025, 10, 17)

    def test_same_event_counts_once(self):
        history = [rec("a", datetime(2025, 1, 10))] * 3

        assert calculate_membership(history, datetime(2025, 2, 1)).total_qualifying_events == 1

    def test_manual_expiry_never_shortens(self):
        history = [rec("a", datetime(2024, 6, 1)), rec("b", datetime(2024, 7, 1)), rec("c", datetime(2024, 8, 1))]
        computed = datetime(2025, 5, 1)

        earlier = calculate_membership(history, datetime(2025, 2, 1), manual_expires_at=datetime(2025, 1, 1))
        later = calculate_membership(history, datetime(2025, 2, 1), manual_expires_at=datetime(2026, 1, 1))

        assert earlier.membership_expires_at == computed
        assert later.membership_expires_at == datetime(2026, 1, 1)

    def test_no_history(self):
        r = calculate_membership([], datetime(2025, 2, 1))

        assert (r.is_active, r.total_qualifying_events, r.membership_expires_at) == (False, 0, None)


@pytest.fixture
def regular(make_event, make_attendee):
    """ada@example.org checked in at three talks in early 2025."""
    events = [
        make_event(f"Talk {i}", datetime(2025, 1, 7 * i, 19), product_id=str(100 + i))
        for i in (1, 2, 3)
    ]
    for ev in events:
        make_attendee(ev, email="ada@example.org", checked_in=True)
    return events


class TestHistory:
    def test_merged_events_are_ignored(self, session, regular):
        regular[0].mark_merged_into(regular[1].id)
        session.flush()

        history = attendance_history(session, "ADA@example.org")

        assert sorted(h.event_id for h in history) == sorted(e.id for e in regular[1:])

    def test_only_checked_in_rows(self, session, regular, make_event, make_attendee):
        make_attendee(make_event("Talk 4", datetime(2025, 1, 28), "200"), email="ada@example.org")

        assert len(attendance_history(session, "ada@example.org")) == 3


class TestRebuild:
    def test_rebuild_derives_members(self, session, regular, make_attendee):
        make_attendee(regular[0], email="once@example.org", checked_in=True)

        res = rebuild_members(session, datetime(2025, 2, 1))

        assert (res.members, res.active) == (2, 1)
        ada = session.scalars(sa.select(Member).where(Member.email == "ada@example.org")).one()
        assert ada.is_active_member is True
        assert ada.total_events_attended == 3
        assert ada.membership_expires_at == datetime(2025, 10, 21, 19)

    def test_rebuild_keeps_manual_members_and_ids(self, session, regular):
        session.add(Member(id="keepme", email="ada@example.org", notes="board member"))
        session.add(Member(email="honorary@example.org", manually_added=True,
                           manual_expires_at=datetime(2030, 1, 1), notes="life member"))
        session.flush()

        res = rebuild_members(session, datetime(2025, 2, 1))

        assert res.manual_kept == 1
        ada = session.get(Member, "keepme")
        assert ada.email == "ada@example.org"
        assert ada.notes == "board member"
        honorary = session.scalars(sa.select(Member).where(Member.email == "honorary@example.org")).one()
        assert honorary.manually_added is True
        assert honorary.notes == "life member"
        assert honorary.membership_expires_at == datetime(2030, 1, 1)
        assert honorary.is_active_member is False


class TestIncremental:
    @pytest.mark.asyncio
    async def test_mirror_called_on_transition_only(self, session, regular):
        mirror = FakeMirror()

        first = await recalculate_for_emails(session, ["Ada@Example.org"], datetime(2025, 2, 1), mirror)
        second = await recalculate_for_emails(session, ["ada@example.org"], datetime(2025, 2, 2), mirror)

        assert first[0].created is True
        assert first[0].transitioned is True
        assert second[0].transitioned is False
        assert mirror.activated == ["ada@example.org"]

    @pytest.mark.asyncio
    async def test_recalculate_for_event(self, session, regular):
        changes = await recalculate_for_event(session, regular[2].id, datetime(2025, 2, 1))

        assert [c.email for c in changes] == ["ada@example.org"]
        assert changes[0].is_active is True

    def test_events_needing_recalculation(self, session, make_event):
        now = datetime(2025, 3, 12, 22, 0)
        due = make_event("Talk: due", now - timedelta(hours=2, minutes=30), "100")
        make_event("Talk: too fresh", now - timedelta(hours=1), "101")
        make_event("Talk: too old", now - timedelta(hours=4), "102")
        make_event("Talk: merged", now - timedelta(hours=2, minutes=30), "103", status=EventStatus.MERGED.value)

        assert [e.id for e in find_events_needing_recalculation(session, now)] == [due.id]


class TestSweep:
    @pytest.mark.asyncio
    async def test_sweep_deactivates_lapsed_members(self, session, regular):
        mirror = FakeMirror()
        await recalculate_for_emails(session, ["ada@example.org"], datetime(2025, 2, 1))

        res = await sweep_memberships(session, datetime(2025, 12, 1), mirror)

        assert (res.checked, res.activated, res.deactivated) == (1, 0, 1)
        assert mirror.deactivated == ["ada@example.org"]
        assert session.scalars(sa.select(Member)).one().is_active_member is False
