"""
FinBank Ledger — JSON file store

One JSON document per owner under `<data_dir>/ledgers/`. Writers for the same
owner are serialized by a per-owner lock, and a commit replaces the whole
document in one `os.replace`, so a compound operation either lands entirely
or not at all.
"""

import json
import logging
import os
import tempfile
import threading
from contextlib import contextmanager
from typing import Dict, Iterator

from ledger.models import LedgerState


logger = logging.getLogger(__name__)


class LedgerStore:
    def __init__(self, data_dir: str):
        self.data_dir = data_dir
        self.ledger_dir = os.path.join(data_dir, "ledgers")
        # one lock per owner seen; never evicted, a held lock must stay unique
        self._locks: Dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()
        self._revisions: Dict[str, int] = {}

    # ----------------------------
    # File helpers
    # ----------------------------
    def ensure_data_dir(self) -> None:
        os.makedirs(self.ledger_dir, exist_ok=True)

    def _path(self, user_id: str) -> str:
        safe = "".join(c for c in user_id if c.isalnum() or c in "-_")
        if not safe:
            raise ValueError("user id required")
        return os.path.join(self.ledger_dir, f"{safe}.json")

    def _load(self, user_id: str) -> LedgerState:
        path = self._path(user_id)
        if not os.path.exists(path):
            return LedgerState(user_id=user_id)
        with open(path, "r", encoding="utf-8") as f:
            return LedgerState.model_validate(json.load(f))

    def _write(self, state: LedgerState) -> None:
        self.ensure_data_dir()
        path = self._path(state.user_id)
        fd, tmp_path = tempfile.mkstemp(dir=self.ledger_dir, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(state.model_dump_json(indent=2))
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise

    def lock_for(self, user_id: str) -> threading.RLock:
        with self._locks_guard:
            lock = self._locks.get(user_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[user_id] = lock
            return lock

    # ----------------------------
    # Public API
    # ----------------------------
    def read(self, user_id: str) -> LedgerState:
        """Consistent snapshot; never observes a half-applied commit."""
        with self.lock_for(user_id):
            return self._load(user_id)

    def revision(self, user_id: str) -> int:
        return self._revisions.get(user_id, 0)

    @contextmanager
    def transaction(self, user_id: str) -> Iterator[LedgerState]:
        """Hold the owner's lock and yield a mutable state.

        The state is written back only if the block exits normally. Any
        exception discards every change made inside the block.
        """
        with self.lock_for(user_id):
            state = self._load(user_id)
            yield state
            self._write(state)
            self._revisions[user_id] = self._revisions.get(user_id, 0) + 1
            logger.debug("Committed ledger for %s (revision %s)", user_id, self._revisions[user_id])
