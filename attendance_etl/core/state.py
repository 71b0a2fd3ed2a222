# attendance_etl/core/state.py
"""Durable progress record for resumable jobs, one JSON file per job."""
from __future__ import annotations

import enum
import json
import logging
import os
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional, Set

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from attendance_etl.core.errors import FatalJobError
from attendance_etl.storage.database import utcnow

log = logging.getLogger(__name__)

STATE_VERSION = 1


class ItemOutcome(str, enum.Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


class ProgressState(BaseModel):
    # fields written by a later release are dropped, missing ones take defaults
    model_config = ConfigDict(extra="ignore")

    version: int = STATE_VERSION
    job: str
    started_at: datetime = Field(default_factory=utcnow)
    last_updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    total_items: int = 0
    processed: Dict[str, ItemOutcome] = Field(default_factory=dict)
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    failures: Dict[str, str] = Field(default_factory=dict)

    def record(self, item_id: str, outcome: ItemOutcome, error: Optional[str] = None) -> None:
        previous = self.processed.get(item_id)
        if previous is not None:
            # re-running an item replaces its earlier outcome
            setattr(self, previous.value, getattr(self, previous.value) - 1)
            self.failures.pop(item_id, None)
        self.processed[item_id] = outcome
        setattr(self, outcome.value, getattr(self, outcome.value) + 1)
        if error is not None:
            self.failures[item_id] = error
        self.last_updated_at = utcnow()

    def done_ids(self) -> Set[str]:
        """Ids that need no more work; failed items are retried by the next run."""
        return {k for k, v in self.processed.items() if v is not ItemOutcome.FAILED}


class StateStore:
    def __init__(self, state_dir: str, job: str):
        self.job = job
        self.path = Path(state_dir) / f".{job}-state.json"

    def load(self) -> Optional[ProgressState]:
        if not self.path.exists():
            return None
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise FatalJobError(f"cannot read {self.path}: {e}; inspect it or run with --reset") from e
        version = raw.get("version", 1) if isinstance(raw, dict) else None
        if not isinstance(version, int) or version > STATE_VERSION:
            raise FatalJobError(f"{self.path} has state version {version!r}, this release reads up to {STATE_VERSION}")
        try:
            state = ProgressState.model_validate(raw)
        except ValidationError as e:
            raise FatalJobError(f"invalid state in {self.path}: {e}") from e
        state.version = STATE_VERSION
        return state

    def save(self, state: ProgressState) -> None:
        """Write to a temp file beside the target, then rename over it."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        state.last_updated_at = utcnow()
        fd, tmp = tempfile.mkstemp(dir=self.path.parent, prefix=self.path.name, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(state.model_dump_json(indent=2))
            os.replace(tmp, self.path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

    def clear(self) -> bool:
        if self.path.exists():
            self.path.unlink()
            log.info("cleared %s", self.path)
            return True
        return False
