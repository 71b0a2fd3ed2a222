# attendance_etl/core/runner.py
from __future__ import annotations

import asyncio
import logging
import os
import signal
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from pydantic import BaseModel, Field
from sqlalchemy.exc import InterfaceError, OperationalError

from attendance_etl.core.errors import ConfigurationError, FatalJobError
from attendance_etl.core.ratelimit import NoopRateLimiter
from attendance_etl.core.state import ItemOutcome, ProgressState, StateStore
from attendance_etl.storage.database import utcnow

log = logging.getLogger(__name__)

# errors after which no further item can succeed
FATAL_ERRORS = (FatalJobError, ConfigurationError, OperationalError, InterfaceError)

Handler = Callable[[Any], Awaitable[Optional[ItemOutcome]]]


class RunSummary(BaseModel):
    job: str
    total: int = 0
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    remaining: int = 0
    stopped: bool = False
    completed: bool = False
    failures: Dict[str, str] = Field(default_factory=dict)


class JobRunner:
    """
    Runs ``handler`` over items one at a time and remembers what was done.

    Work left = every item minus the ids already in the state file, so a
    restart picks up exactly where the last run stopped even if the item list
    changed in between. A handler exception fails that item only; fatal errors
    save progress and propagate.
    """

    def __init__(self, job: str, store: StateStore, handler: Handler, *,
                 item_id: Callable[[Any], str] = str, limiter=None,
                 checkpoint_every: int = 1, install_signals: bool = False, persist: bool = True):
        self.job = job
        self.store = store
        self.handler = handler
        self.item_id = item_id
        self.limiter = limiter or NoopRateLimiter()
        self.checkpoint_every = max(checkpoint_every, 1)
        self.install_signals = install_signals
        # dry runs leave no state file behind
        self.persist = persist
        self._stop = False
        self._signals = 0
        self._state: Optional[ProgressState] = None

    # ------------------- control -------------------

    def request_stop(self) -> None:
        """Finish the in-flight item, save, and return."""
        self._stop = True

    def _on_signal(self, signame: str) -> None:
        self._signals += 1
        if self._signals > 1 and signame == "SIGINT":
            log.warning("second interrupt, force quitting")
            if self._state is not None and self.persist:
                self.store.save(self._state)
            os._exit(130)
        log.warning("%s received, pausing after the current item (interrupt again to force quit)", signame)
        self.request_stop()

    def _install(self) -> List[int]:
        installed = []
        if not self.install_signals:
            return installed
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self._on_signal, sig.name)
            except (NotImplementedError, RuntimeError):
                log.debug("cannot install a handler for %s here", sig.name)
                continue
            installed.append(sig)
        return installed

    def _uninstall(self, installed: Sequence[int]) -> None:
        loop = asyncio.get_running_loop()
        for sig in installed:
            loop.remove_signal_handler(sig)

    # ------------------- inspection -------------------

    def status(self) -> Optional[ProgressState]:
        return self.store.load()

    def reset(self) -> bool:
        return self.store.clear()

    # ------------------- run -------------------

    def _select(self, items: Sequence[Any], state: ProgressState,
                start_at: Optional[int], only: Optional[str]) -> List[Any]:
        if only is not None:
            picked = [i for i in items if self.item_id(i) == only]
            if not picked:
                log.warning("item %s is not in the work list", only)
            return picked
        pool = list(items[start_at - 1:]) if start_at and start_at > 1 else list(items)
        done = state.done_ids()
        return [i for i in pool if self.item_id(i) not in done]

    async def run(self, items: Sequence[Any], start_at: Optional[int] = None,
                  only: Optional[str] = None) -> RunSummary:
        state = (self.store.load() if self.persist else None) or ProgressState(job=self.job)
        state.total_items = len(items)
        state.completed_at = None
        self._state = state
        todo = self._select(items, state, start_at, only)
        summary = RunSummary(job=self.job, total=len(items))
        log.info("%s: %d item(s), %d already done, %d to process",
                 self.job, len(items), len(state.done_ids()), len(todo))

        installed = self._install()
        since_checkpoint = 0
        try:
            for n, item in enumerate(todo, 1):
                if self._stop:
                    summary.stopped = True
                    log.info("%s: stopped, %d item(s) left", self.job, len(todo) - n + 1)
                    break
                await self.limiter.wait()
                iid = self.item_id(item)
                try:
                    outcome = await self.handler(item) or ItemOutcome.SUCCEEDED
                except FATAL_ERRORS:
                    log.error("%s: fatal error on item %s, saving progress", self.job, iid)
                    raise
                except Exception as e:
                    log.exception("%s: item %s failed", self.job, iid, extra={"item_id": iid})
                    state.record(iid, ItemOutcome.FAILED, f"{type(e).__name__}: {e}")
                    summary.failures[iid] = str(e)
                    summary.failed += 1
                else:
                    state.record(iid, outcome)
                    if outcome is ItemOutcome.SKIPPED:
                        summary.skipped += 1
                    else:
                        summary.succeeded += 1
                summary.attempted += 1
                since_checkpoint += 1
                if self.persist and since_checkpoint >= self.checkpoint_every:
                    self.store.save(state)
                    since_checkpoint = 0
        finally:
            self._uninstall(installed)
            all_ids = {self.item_id(i) for i in items}
            if not summary.stopped and all_ids <= state.done_ids():
                state.completed_at = utcnow()
                summary.completed = True
            if self.persist:
                self.store.save(state)
            self._state = None

        summary.remaining = len({self.item_id(i) for i in items} - state.done_ids())
        log.info("%s: %d succeeded, %d failed, %d skipped, %d remaining",
                 self.job, summary.succeeded, summary.failed, summary.skipped, summary.remaining)
        return summary
