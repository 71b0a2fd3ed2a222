# attendance_etl/cli.py
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

import click
import dateparser
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.orm import sessionmaker

from attendance_etl import adapters
from attendance_etl.core.config import Settings, settings as default_settings
from attendance_etl.core.errors import ConfigurationError, FatalJobError, NotFoundError
from attendance_etl.core.logging import configure_logging
from attendance_etl.core.mirror import MembershipMirror, sync_stats
from attendance_etl.core.patterns import never_merge_hint
from attendance_etl.core.ratelimit import FixedDelayRateLimiter
from attendance_etl.core.runner import RunSummary
from attendance_etl.core.state import StateStore
from attendance_etl.pipelines import JobOptions, Jobs
from attendance_etl.storage.database import init_db, make_engine, make_session_factory, session_scope

log = logging.getLogger(__name__)

# errors that end the process with exit code 1
_ABORT = (FatalJobError, ConfigurationError, OperationalError, InterfaceError)


class App:
    """Per-invocation wiring: settings, database and the HTTP clients a command asks for."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self._sessions: Optional[sessionmaker] = None

    @property
    def sessions(self) -> sessionmaker:
        # opened lazily so --help and --status never touch the database
        if self._sessions is None:
            engine = make_engine(self.settings.database_url)
            init_db(engine)
            self._sessions = make_session_factory(engine)
        return self._sessions

    def _loops(self):
        s = self.settings
        if not (s.loops_api_key and s.loops_active_members_list_id):
            log.warning("Loops is not configured, membership changes will not be mirrored")
            return None
        return adapters.build("loops", s)

    @asynccontextmanager
    async def jobs(self, woo: bool = False, loops: bool = True) -> AsyncIterator[Jobs]:
        woo_client = adapters.build("woocommerce", self.settings) if woo else None
        loops_client = self._loops() if loops else None
        try:
            yield Jobs(
                settings=self.settings,
                sessions=self.sessions,
                woo=woo_client,
                mirror=MembershipMirror(loops_client) if loops_client else None,
                limiter=FixedDelayRateLimiter(self.settings.request_delay_ms),
                install_signals=True,
            )
        finally:
            for c in (woo_client, loops_client):
                if c is not None:
                    await c.aclose()


# ------------------- helpers -------------------

def _app(ctx: click.Context) -> App:
    return ctx.find_object(App)


def _run(ctx: click.Context, work: Callable[[], Awaitable[Any]], job: Optional[str] = None) -> Any:
    try:
        return asyncio.run(work())
    except NotFoundError as e:
        raise click.ClickException(str(e)) from e
    except _ABORT as e:
        log.error("aborted: %s", e)
        click.echo(f"Error: {e}", err=True)
        if job:
            path = StateStore(_app(ctx).settings.state_dir, job).path
            click.echo(f"Progress saved to {path}; run the same command again to resume.", err=True)
        ctx.exit(1)


def _echo_model(model) -> None:
    click.echo(model.model_dump_json(indent=2))


def _echo_summary(summary: RunSummary) -> None:
    click.echo(
        f"{summary.job}: {summary.succeeded} succeeded, {summary.failed} failed, "
        f"{summary.skipped} skipped, {summary.remaining} remaining of {summary.total}"
        + (" (stopped early)" if summary.stopped else "")
    )
    for item, err in summary.failures.items():
        click.echo(f"  failed {item}: {err}")


def _parse_when(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    dt = dateparser.parse(value, settings={"RETURN_AS_TIMEZONE_AWARE": False})
    if dt is None:
        raise click.BadParameter(f"cannot parse date {value!r}", param_hint="--cutoff")
    return dt


def _handle_state(ctx: click.Context, job: str, reset: bool, show_status: bool) -> bool:
    """Apply --reset/--status; True when the command should stop here."""
    store = StateStore(_app(ctx).settings.state_dir, job)
    if reset:
        if store.clear():
            click.echo(f"Cleared saved progress for {job}.")
        else:
            click.echo(f"No saved progress for {job}.")
    if show_status:
        try:
            state = store.load()
        except FatalJobError as e:
            click.echo(f"Error: {e}", err=True)
            ctx.exit(1)
        if state is None:
            click.echo(f"No saved progress for {job}.")
        else:
            _echo_model(state)
        return True
    return False


_JOB_OPTIONS = [
    click.option("--dry-run", is_flag=True, help="Fetch and report only, write nothing."),
    click.option("--start", "start_at", type=click.IntRange(min=1), default=None,
                 help="1-based position in the work list to start from."),
    click.option("--event-id", default=None, help="Process this event only."),
    click.option("--reset", is_flag=True, help="Clear saved progress and start fresh."),
    click.option("--status", "show_status", is_flag=True, help="Show saved progress and exit."),
]


def job_options(f):
    for opt in reversed(_JOB_OPTIONS):
        f = opt(f)
    return f


# ------------------- commands -------------------

@click.group()
@click.pass_context
def cli(ctx: click.Context) -> None:
    """Events and attendance reconciliation for the WooCommerce ticket shop."""
    if ctx.find_object(App) is None:
        ctx.obj = App(default_settings)


@cli.command()
@click.option("--dry-run", is_flag=True, help="Report what would be created, write nothing.")
@click.pass_context
def discover(ctx: click.Context, dry_run: bool) -> None:
    """Create events for new ticket products, then merge duplicates."""
    async def work():
        async with _app(ctx).jobs(woo=True) as jobs:
            return await jobs.discover(dry_run=dry_run)

    found, merged = _run(ctx, work)
    click.echo(
        f"{found.event_products} event product(s) of {found.total_products}: "
        f"{found.created} created, {found.updated} updated, {found.skipped} skipped, {found.absorbed} absorbed"
    )
    if merged is not None:
        _echo_merge(merged)


def _echo_merge(res) -> None:
    click.echo(f"{res.groups_found} duplicate group(s): {res.groups_merged} merged, {res.groups_failed} failed, "
               f"{res.attendees_moved} attendee(s) moved")
    for d in res.details:
        if not d.success:
            click.echo(f"  {d.day} {' / '.join(d.names)}: FAILED {d.error}")
            continue
        r = d.result
        click.echo(f"  {d.day} -> {r.survivor_name}")
        for eid, n in r.before.items():
            click.echo(f"    {eid}: {n} before, {r.after.get(eid, 0)} after")
        for c in r.conflicts:
            click.echo(f"    conflict: {c}")


@cli.command()
@click.option("--dry-run", is_flag=True, help="List duplicate groups without merging.")
@click.pass_context
def merge(ctx: click.Context, dry_run: bool) -> None:
    """Merge same-day events that share a name prefix."""
    if dry_run:
        async def candidates():
            async with _app(ctx).jobs(loops=False) as jobs:
                return jobs.merge_candidates()

        groups = _run(ctx, candidates)
        click.echo(f"{len(groups)} duplicate group(s)")
        for g in groups:
            click.echo(f"  {g.day} {g.prefix!r}")
            for e in g.events:
                click.echo(f"    {e.id} product {e.product_id}: {e.name} ({e.attendee_count} attendees)")
        return

    async def work():
        async with _app(ctx).jobs() as jobs:
            return await jobs.merge()

    _echo_merge(_run(ctx, work))


@cli.command()
@job_options
@click.option("--clean", is_flag=True, help="Replace each event's attendees with the fetched tickets.")
@click.option("--cutoff", default=None, help="Check in attendees of events before this date (default: now).")
@click.pass_context
def resync(ctx: click.Context, dry_run: bool, start_at: Optional[int], event_id: Optional[str],
           reset: bool, show_status: bool, clean: bool, cutoff: Optional[str]) -> None:
    """Re-import every event's tickets from WooCommerce, oldest first."""
    if _handle_state(ctx, "resync", reset, show_status):
        return
    when = _parse_when(cutoff)
    opts = JobOptions(dry_run=dry_run, start_at=start_at, event_id=event_id)

    async def work():
        async with _app(ctx).jobs(woo=True, loops=False) as jobs:
            summary = await jobs.resync(opts, clean=clean, cutoff=when)
            return summary, jobs.reconciled

    summary, results = _run(ctx, work, job="resync")
    for r in results:
        click.echo(f"  {r.event_id}: {r.inserted} new, {r.already_present} present, "
                   f"{r.checked_in} checked in, {r.deleted} deleted"
                   + (f", backup {r.backup_path}" if r.backup_path else ""))
    _echo_summary(summary)


@cli.command()
@job_options
@click.pass_context
def disentangle(ctx: click.Context, dry_run: bool, start_at: Optional[int], event_id: Optional[str],
                reset: bool, show_status: bool) -> None:
    """Split events that were merged by mistake, using each attendee's source product."""
    if _handle_state(ctx, "disentangle", reset, show_status):
        return
    opts = JobOptions(dry_run=dry_run, start_at=start_at, event_id=event_id)

    async def work():
        async with _app(ctx).jobs(woo=True) as jobs:
            summary = await jobs.disentangle(opts)
            return summary, jobs.disentangled, jobs.declined

    summary, done, declined = _run(ctx, work, job="disentangle")
    for r in done:
        click.echo(f"  {r.original_name!r} ({r.before} attendees)")
        click.echo(f"    kept {r.event_id} {r.name!r}: {r.kept_attendees}")
        for sp in r.created:
            click.echo(f"    new  {sp.event_id} {sp.name!r}: {sp.attendees}")
        if r.remerge_prefix:
            click.echo(f"    warning: the next discover will merge these again; "
                       f"add {never_merge_hint(r.remerge_prefix)!r} to NEVER_MERGE_PATTERNS to keep them apart")
    for d in declined:
        click.echo(f"  declined {d.event_id}: {d.reason}")
    _echo_summary(summary)


@cli.command("fix-names")
@job_options
@click.pass_context
def fix_names(ctx: click.Context, dry_run: bool, start_at: Optional[int], event_id: Optional[str],
              reset: bool, show_status: bool) -> None:
    """Rename events whose names were damaged, from their WooCommerce product."""
    if _handle_state(ctx, "fix-names", reset, show_status):
        return
    opts = JobOptions(dry_run=dry_run, start_at=start_at, event_id=event_id)

    async def work():
        async with _app(ctx).jobs(woo=True, loops=False) as jobs:
            return await jobs.fix_names(opts), jobs.renamed

    summary, renamed = _run(ctx, work, job="fix-names")
    for eid, old, new in renamed:
        click.echo(f"  {eid}: {old!r} -> {new!r}")
    _echo_summary(summary)


@cli.command("rebuild-members")
@click.pass_context
def rebuild_members(ctx: click.Context) -> None:
    """Recompute the whole members table from attendance."""
    async def work():
        async with _app(ctx).jobs(loops=False) as jobs:
            return jobs.rebuild_members()

    _echo_model(_run(ctx, work))


@cli.command()
@click.pass_context
def sweep(ctx: click.Context) -> None:
    """Recalculate every member and mirror status changes to Loops."""
    async def work():
        async with _app(ctx).jobs() as jobs:
            return await jobs.sweep()

    res = _run(ctx, work)
    click.echo(f"{res.checked} member(s) checked: {res.activated} activated, {res.deactivated} deactivated")


@cli.command("recalc-event")
@click.argument("event_id")
@click.pass_context
def recalc_event(ctx: click.Context, event_id: str) -> None:
    """Recalculate membership for the checked-in attendees of one event."""
    async def work():
        async with _app(ctx).jobs() as jobs:
            return await jobs.recalc_event(event_id)

    changes = _run(ctx, work)
    click.echo(f"{len(changes)} member(s) recalculated, {sum(c.transitioned for c in changes)} changed status")


@cli.command("recalc-recent")
@click.pass_context
def recalc_recent(ctx: click.Context) -> None:
    """Recalculate attendees of events that ended two to three hours ago."""
    async def work():
        async with _app(ctx).jobs() as jobs:
            return await jobs.recalc_recent()

    changes = _run(ctx, work)
    click.echo(f"{len(changes)} member(s) recalculated, {sum(c.transitioned for c in changes)} changed status")


@cli.command("check-in")
@click.argument("attendee_id")
@click.option("--undo", is_flag=True, help="Clear the check-in instead.")
@click.pass_context
def check_in(ctx: click.Context, attendee_id: str, undo: bool) -> None:
    """Check an attendee in (or out) and update their membership."""
    async def work():
        async with _app(ctx).jobs() as jobs:
            return await jobs.check_in(attendee_id, undo=undo)

    changes = _run(ctx, work)
    for c in changes:
        click.echo(f"{c.email}: {'active' if c.is_active else 'inactive'} member"
                   + (" (changed)" if c.transitioned else ""))


@cli.command("auto-check-in")
@click.option("--cutoff", default=None, help="Check in attendees of events before this date (default: now).")
@click.option("--clear-future", is_flag=True, help="Also clear imported check-ins on events from the cutoff on.")
@click.pass_context
def auto_check_in(ctx: click.Context, cutoff: Optional[str], clear_future: bool) -> None:
    """Mark attendees of past events as checked in, then rebuild members."""
    when = _parse_when(cutoff)

    async def work():
        async with _app(ctx).jobs(loops=False) as jobs:
            return jobs.auto_check_in(when, clear_future=clear_future)

    checked, cleared = _run(ctx, work)
    click.echo(f"{checked} attendee(s) checked in, {cleared} future check-in(s) cleared")


@cli.command("restore-backup")
@click.argument("path", type=click.Path(exists=True, dir_okay=False))
@click.pass_context
def restore_backup(ctx: click.Context, path: str) -> None:
    """Re-insert the attendees saved before a clean resync."""
    async def work():
        async with _app(ctx).jobs(loops=False) as jobs:
            return jobs.restore(path)

    click.echo(f"{_run(ctx, work)} attendee(s) restored from {path}")


@cli.command("loops-audit")
@click.pass_context
def loops_audit(ctx: click.Context) -> None:
    """Compare members with the Loops list and fix any drift."""
    app = _app(ctx)

    async def work():
        loops = adapters.build("loops", app.settings)
        try:
            with session_scope(app.sessions) as s:
                return await MembershipMirror(loops).audit_list(s)
        finally:
            await loops.aclose()

    _echo_model(_run(ctx, work))


@cli.command("sync-stats")
@click.pass_context
def sync_stats_cmd(ctx: click.Context) -> None:
    """Counts of Loops sync attempts."""
    app = _app(ctx)

    async def work():
        with session_scope(app.sessions) as s:
            return sync_stats(s)

    _echo_model(_run(ctx, work))


def main() -> None:
    configure_logging(
        getattr(logging, default_settings.log_level.upper(), logging.INFO),
        json_output=default_settings.log_json,
    )
    cli()


if __name__ == "__main__":
    main()
