# attendance_etl/pipelines.py
"""
The jobs behind the CLI. Each job fetches what it needs over HTTP outside any
transaction, then opens one session transaction per event.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, List, Optional, Tuple

from sqlalchemy.orm import sessionmaker

from attendance_etl.adapters.woocommerce import WooCommerceClient
from attendance_etl.core.config import Settings
from attendance_etl.core.errors import ConfigurationError, DisentangleDeclined, NotFoundError
from attendance_etl.core.extract import extract_from_orders
from attendance_etl.core.matching import DiscoveryResult, MergeCandidate, discover_events, find_merge_candidates
from attendance_etl.core.membership import (
    MemberChange,
    RebuildResult,
    SweepResult,
    find_events_needing_recalculation,
    rebuild_members,
    recalculate_for_emails,
    recalculate_for_event,
    sweep_memberships,
)
from attendance_etl.core.merging import (
    BatchMergeResult,
    DisentangleResult,
    disentangle_event,
    find_suspect_events,
    fix_corrupted_name,
    merge_duplicate_events,
    source_groups,
)
from attendance_etl.core.mirror import MembershipMirror
from attendance_etl.core.patterns import compile_patterns, is_corrupted_name, never_merge_hint
from attendance_etl.core.reconcile import (
    ReconcileMode,
    ReconcileResult,
    auto_check_in_past_events,
    check_in_attendee,
    clear_future_check_ins,
    reconcile_event,
    restore_backup,
    undo_check_in,
)
from attendance_etl.core.runner import JobRunner, RunSummary
from attendance_etl.core.state import ItemOutcome, StateStore
from attendance_etl.storage.database import Event, active_events, session_scope, utcnow

log = logging.getLogger(__name__)


@dataclass
class JobOptions:
    dry_run: bool = False
    start_at: Optional[int] = None
    event_id: Optional[str] = None


@dataclass
class Jobs:
    settings: Settings
    sessions: sessionmaker
    woo: Optional[WooCommerceClient] = None
    mirror: Optional[MembershipMirror] = None
    limiter: Any = None
    install_signals: bool = False
    # per-item results of the last run, for the CLI report
    reconciled: List[ReconcileResult] = field(default_factory=list)
    disentangled: List[DisentangleResult] = field(default_factory=list)
    declined: List[DisentangleDeclined] = field(default_factory=list)
    renamed: List[Tuple[str, str, str]] = field(default_factory=list)

    # ------------------- plumbing -------------------

    def store(self, job: str) -> StateStore:
        return StateStore(self.settings.state_dir, job)

    def runner(self, job: str, handler, dry_run: bool = False) -> JobRunner:
        return JobRunner(
            job, self.store(job), handler,
            limiter=self.limiter,
            checkpoint_every=self.settings.checkpoint_every,
            install_signals=self.install_signals,
            persist=not dry_run,
        )

    def _woo(self) -> WooCommerceClient:
        if self.woo is None:
            raise ConfigurationError("this job needs a WooCommerce client")
        return self.woo

    async def _recalculate(self, emails, now: datetime) -> List[MemberChange]:
        if not emails:
            return []
        with session_scope(self.sessions) as s:
            return await recalculate_for_emails(s, emails, now, self.mirror)

    # ------------------- discovery & merge -------------------

    async def discover(self, dry_run: bool = False, now: Optional[datetime] = None) -> Tuple[DiscoveryResult, Optional[BatchMergeResult]]:
        products = await self._woo().list_products()
        with session_scope(self.sessions) as s:
            found = discover_events(s, products)
            if dry_run:
                s.rollback()
                return found, None
        return found, await self.merge(now=now)

    def merge_candidates(self) -> List[MergeCandidate]:
        with session_scope(self.sessions) as s:
            return find_merge_candidates(s, compile_patterns(self.settings.never_merge_patterns))

    async def merge(self, now: Optional[datetime] = None) -> BatchMergeResult:
        with session_scope(self.sessions) as s:
            res = merge_duplicate_events(s, compile_patterns(self.settings.never_merge_patterns))
        emails = {e for d in res.details if d.result for e in d.result.affected_emails}
        await self._recalculate(emails, now or utcnow())
        return res

    # ------------------- historical resync -------------------

    def resync_items(self) -> List[str]:
        """Active events with a product, oldest first."""
        with session_scope(self.sessions) as s:
            events = s.scalars(
                active_events().where(Event.woocommerce_product_id.is_not(None)).order_by(Event.event_date, Event.id)
            )
            return [e.id for e in events]

    async def resync(self, opts: JobOptions, clean: bool = False, cutoff: Optional[datetime] = None,
                     rebuild: bool = True) -> RunSummary:
        woo = self._woo()
        cutoff = cutoff or utcnow()
        mode = ReconcileMode.CLEAN if clean else ReconcileMode.ADDITIVE
        self.reconciled = []

        async def handle(event_id: str) -> Optional[ItemOutcome]:
            with session_scope(self.sessions) as s:
                ev = s.get(Event, event_id)
                if ev is None:
                    raise NotFoundError(f"event {event_id} disappeared")
                pids = ev.product_ids
            fetched = await woo.get_orders_for_products(pids)
            report = extract_from_orders(fetched.orders, pids, fetched.variation_ids)
            if opts.dry_run:
                log.info("[dry-run] event %s: %d ticket(s) from %d order(s), %d uid fallback(s)",
                         event_id, len(report.tickets), len(fetched.orders), report.uid_fallbacks)
                return ItemOutcome.SKIPPED
            with session_scope(self.sessions) as s:
                ev = s.get(Event, event_id)
                res = reconcile_event(s, ev, report.tickets, mode, checkin_cutoff=cutoff,
                                      backup_dir=self.settings.backup_dir)
            self.reconciled.append(res)
            return ItemOutcome.SUCCEEDED

        summary = await self.runner("resync", handle, opts.dry_run).run(
            self.resync_items(), start_at=opts.start_at, only=opts.event_id)
        if rebuild and summary.completed and not opts.dry_run:
            self.rebuild_members()
        return summary

    # ------------------- disentangle / names -------------------

    def _remerge_prefix(self, event_id: str) -> Optional[str]:
        for group in self.merge_candidates():
            if any(e.id == event_id for e in group.events):
                return group.prefix
        return None

    def disentangle_items(self) -> List[str]:
        with session_scope(self.sessions) as s:
            return [ev.id for ev, _ in find_suspect_events(s)]

    async def disentangle(self, opts: JobOptions, now: Optional[datetime] = None) -> RunSummary:
        woo = self._woo()
        self.disentangled, self.declined = [], []

        async def handle(event_id: str) -> Optional[ItemOutcome]:
            with session_scope(self.sessions) as s:
                ev = s.get(Event, event_id)
                if ev is None:
                    raise NotFoundError(f"event {event_id} does not exist")
                pids = sorted(source_groups(s, event_id))
            if len(pids) < 2:
                self.declined.append(DisentangleDeclined(event_id, "no source tracking"))
                log.warning("cannot disentangle %s: no source tracking", event_id)
                return ItemOutcome.SKIPPED
            if opts.dry_run:
                log.info("[dry-run] event %s would split over products %s", event_id, ", ".join(pids))
                return ItemOutcome.SKIPPED
            names = await woo.get_product_names(pids)
            try:
                with session_scope(self.sessions) as s:
                    res = disentangle_event(s, s.get(Event, event_id), names)
            except DisentangleDeclined as e:
                self.declined.append(e)
                return ItemOutcome.SKIPPED
            res.remerge_prefix = self._remerge_prefix(event_id)
            if res.remerge_prefix:
                log.warning("event %s and its split-off events are still merge candidates (%r); "
                            "the next discover merges them again unless NEVER_MERGE_PATTERNS includes %r",
                            event_id, res.remerge_prefix, never_merge_hint(res.remerge_prefix),
                            extra={"event_id": event_id})
            self.disentangled.append(res)
            await self._recalculate(res.affected_emails, now or utcnow())
            return ItemOutcome.SUCCEEDED

        items = [opts.event_id] if opts.event_id else self.disentangle_items()
        return await self.runner("disentangle", handle, opts.dry_run).run(
            items, start_at=opts.start_at, only=opts.event_id)

    def corrupted_name_items(self) -> List[str]:
        with session_scope(self.sessions) as s:
            return [ev.id for ev in s.scalars(active_events().order_by(Event.event_date)) if is_corrupted_name(ev.name)]

    async def fix_names(self, opts: JobOptions) -> RunSummary:
        woo = self._woo()
        self.renamed = []

        async def handle(event_id: str) -> Optional[ItemOutcome]:
            with session_scope(self.sessions) as s:
                ev = s.get(Event, event_id)
                if ev is None or not ev.woocommerce_product_id:
                    return ItemOutcome.SKIPPED
                pid, old = ev.woocommerce_product_id, ev.name
            name = await woo.get_product_name(pid)
            if opts.dry_run:
                log.info("[dry-run] %s: %r, product name %r", event_id, old, name)
                return ItemOutcome.SKIPPED
            with session_scope(self.sessions) as s:
                new = fix_corrupted_name(s, s.get(Event, event_id), name)
            if new is None:
                return ItemOutcome.SKIPPED
            self.renamed.append((event_id, old, new))
            return ItemOutcome.SUCCEEDED

        return await self.runner("fix-names", handle, opts.dry_run).run(
            self.corrupted_name_items(), start_at=opts.start_at, only=opts.event_id)

    # ------------------- membership -------------------

    def rebuild_members(self, now: Optional[datetime] = None) -> RebuildResult:
        with session_scope(self.sessions) as s:
            return rebuild_members(s, now or utcnow())

    async def sweep(self, now: Optional[datetime] = None) -> SweepResult:
        with session_scope(self.sessions) as s:
            return await sweep_memberships(s, now or utcnow(), self.mirror)

    async def recalc_event(self, event_id: str, now: Optional[datetime] = None) -> List[MemberChange]:
        with session_scope(self.sessions) as s:
            if s.get(Event, event_id) is None:
                raise NotFoundError(f"event {event_id} does not exist")
            return await recalculate_for_event(s, event_id, now or utcnow(), self.mirror)

    async def recalc_recent(self, now: Optional[datetime] = None) -> List[MemberChange]:
        """Recalculate attendees of events that ended about two hours ago."""
        now = now or utcnow()
        with session_scope(self.sessions) as s:
            ids = [e.id for e in find_events_needing_recalculation(s, now)]
        out: List[MemberChange] = []
        for eid in ids:
            with session_scope(self.sessions) as s:
                out.extend(await recalculate_for_event(s, eid, now, self.mirror))
        return out

    async def check_in(self, attendee_id: str, undo: bool = False,
                       now: Optional[datetime] = None) -> List[MemberChange]:
        now = now or utcnow()
        with session_scope(self.sessions) as s:
            att = undo_check_in(s, attendee_id) if undo else check_in_attendee(s, attendee_id, now)
            return await recalculate_for_emails(s, [att.email], now, self.mirror)

    def auto_check_in(self, cutoff: Optional[datetime] = None, clear_future: bool = False) -> Tuple[int, int]:
        """Check in attendees of past events, optionally undoing imported check-ins on later ones."""
        cutoff = cutoff or utcnow()
        with session_scope(self.sessions) as s:
            cleared = clear_future_check_ins(s, cutoff) if clear_future else 0
            checked = auto_check_in_past_events(s, cutoff)
        self.rebuild_members(cutoff)
        return checked, cleared

    def restore(self, path: str) -> int:
        with session_scope(self.sessions) as s:
            return restore_backup(s, path)
