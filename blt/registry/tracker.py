"""Study registry: the single owner of every tracked BLT request."""

from __future__ import annotations

import asyncio
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import AsyncIterator, Callable, Iterator, Optional

from blt.models import BltStudyRequest, StudyRef
from blt.processor.states import BltStudyState, utcnow
from blt.utils.atomic import SnapshotError, read_snapshot, write_snapshot
from blt.utils.logging import get_logger

logger = get_logger("registry.tracker")

STATE_FILE_VERSION = 1


class RegistryTransaction:
    """
    Exclusive access to one registry entry.

    ``state`` is a private working copy. Nothing is visible to readers until
    ``commit()`` publishes it; changes made after the last commit are
    discarded when the transaction ends.
    """

    def __init__(self, registry: StudyRegistry, state: BltStudyState) -> None:
        self._registry = registry
        self.state = state
        self.commits = 0

    @property
    def request_id(self) -> str:
        return self.state.request_id

    def commit(self) -> None:
        """Publish the working copy and persist the registry."""
        self._registry._publish(self.state)
        self.commits += 1


class StudyRegistry:
    """
    Registry of BLT requests keyed by request ID.

    Provides:
    - Creation of exactly one state per accepted request
    - Snapshot reads that never observe half-applied updates
    - Per-entry transactions (one asyncio.Lock per request)
    - Optional JSON persistence so in-flight requests survive a restart
    - Explicit abandonment and age-based pruning of finished entries
    """

    def __init__(self, state_file: Optional[Path] = None) -> None:
        """
        Initialize the registry.

        Args:
            state_file: JSON file to persist entries to; None keeps them in memory only
        """
        self.state_file = Path(state_file) if state_file else None
        self._states: dict[str, BltStudyState] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._load()

    def _load(self) -> None:
        """Load persisted entries from the state file."""
        if self.state_file is None:
            return

        data = read_snapshot(self.state_file)
        if data is None:
            logger.info("registry_state_not_found", path=str(self.state_file))
            return

        skipped = 0
        for entry in data.get("requests", []):
            try:
                state = BltStudyState.from_dict(entry)
            except (KeyError, TypeError, ValueError) as e:
                skipped += 1
                logger.warning(
                    "registry_entry_invalid",
                    request_id=entry.get("request_id"),
                    error=str(e),
                )
                continue
            self._states[state.request_id] = state

        logger.info(
            "registry_loaded",
            requests=len(self._states),
            skipped=skipped,
            path=str(self.state_file),
        )

    def save(self) -> None:
        """Persist all committed entries."""
        if self.state_file is None:
            return

        write_snapshot(self.state_file, {
            "version": STATE_FILE_VERSION,
            "saved_at": utcnow().isoformat(),
            "requests": [state.to_dict() for state in self._states.values()],
        })

    def __len__(self) -> int:
        return len(self._states)

    def __contains__(self, request_id: object) -> bool:
        return request_id in self._states

    def create(
        self,
        request: BltStudyRequest,
        study: StudyRef,
        query_id: str,
    ) -> str:
        """
        Track a newly accepted request.

        Args:
            request: The validated request
            study: Study the query resolved to
            query_id: Archive query ID

        Returns:
            Generated request ID

        Raises:
            SnapshotError: If the state file cannot be written; nothing is
                registered in that case
        """
        request_id = uuid.uuid4().hex
        self._states[request_id] = BltStudyState(
            request_id=request_id,
            info=request,
            study=study,
            query_id=query_id,
        )
        try:
            self.save()
        except SnapshotError:
            # Not persisted means not accepted
            del self._states[request_id]
            raise

        logger.info(
            "request_registered",
            request_id=request_id,
            accession_number=request.search_accession_number,
            query_id=query_id,
        )
        return request_id

    def get(self, request_id: str) -> BltStudyState:
        """
        Get a committed snapshot of one entry.

        Raises:
            KeyError: If the request is unknown
        """
        if request_id not in self._states:
            raise KeyError(f"Request not registered: {request_id}")
        return self._states[request_id].copy()

    def list_all(self) -> Iterator[BltStudyState]:
        """
        Iterate over committed snapshots of every entry.

        The set of entries is fixed when iteration starts; each call starts
        a new iteration. Order is unspecified.
        """
        snapshot = list(self._states.values())
        for state in snapshot:
            yield state.copy()

    def find_by_accession_number(self, accession_number: str) -> list[BltStudyState]:
        """Get snapshots of every entry searching for an accession number."""
        return [
            state for state in self.list_all()
            if state.info.search_accession_number == accession_number
        ]

    def summary(self) -> dict[str, int]:
        """Count entries by stage, plus abandoned entries."""
        counts: dict[str, int] = {}
        for state in self._states.values():
            counts[state.stage.value] = counts.get(state.stage.value, 0) + 1
        counts["Abandoned"] = sum(1 for s in self._states.values() if s.is_abandoned)
        return counts

    def _lock_for(self, request_id: str) -> asyncio.Lock:
        lock = self._locks.get(request_id)
        if lock is None:
            lock = self._locks[request_id] = asyncio.Lock()
        return lock

    def is_locked(self, request_id: str) -> bool:
        """Check if a transaction currently holds the entry."""
        lock = self._locks.get(request_id)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def transaction(self, request_id: str) -> AsyncIterator[RegistryTransaction]:
        """
        Hold exclusive access to one entry.

        Raises:
            KeyError: If the request is unknown
        """
        if request_id not in self._states:
            raise KeyError(f"Request not registered: {request_id}")

        async with self._lock_for(request_id):
            # Pruned while we were waiting for the lock
            if request_id not in self._states:
                raise KeyError(f"Request not registered: {request_id}")
            yield RegistryTransaction(self, self._states[request_id].copy())

    def _publish(self, state: BltStudyState) -> None:
        if state.request_id not in self._states:
            raise KeyError(f"Request not registered: {state.request_id}")
        self._states[state.request_id] = state.copy()
        self.save()

    async def update(
        self,
        request_id: str,
        mutation: Callable[[BltStudyState], None],
    ) -> BltStudyState:
        """
        Apply a mutation to one entry atomically and commit it.

        Returns:
            Snapshot of the committed state
        """
        async with self.transaction(request_id) as txn:
            mutation(txn.state)
            txn.commit()
            return txn.state.copy()

    async def abandon(self, request_id: str, reason: str) -> BltStudyState:
        """
        Stop polling a request.

        The archive cannot cancel its jobs, so abandoning only means the
        pipeline stops caring. The entry and its stage are kept for audit.

        Raises:
            KeyError: If the request is unknown
        """
        async with self.transaction(request_id) as txn:
            state = txn.state
            if state.is_abandoned:
                return state.copy()

            state.abandoned_at = utcnow()
            state.abandon_reason = reason
            state.updated_at = state.abandoned_at
            txn.commit()

        logger.warning(
            "request_abandoned",
            request_id=request_id,
            stage=state.stage.value,
            reason=reason,
            terminal=state.stage.is_terminal(),
        )
        return state.copy()

    def prune(self, max_age: timedelta, now: Optional[datetime] = None) -> list[str]:
        """
        Remove finished entries not updated for longer than max_age.

        Only Done, Failed and abandoned entries are eligible; an entry held
        by a transaction is left alone.

        Returns:
            Request IDs removed
        """
        now = now or utcnow()
        removed = []
        for request_id, state in list(self._states.items()):
            if not (state.stage.is_terminal() or state.is_abandoned):
                continue
            if self.is_locked(request_id):
                continue
            if now - state.updated_at < max_age:
                continue
            del self._states[request_id]
            self._locks.pop(request_id, None)
            removed.append(request_id)

        if removed:
            self.save()
            logger.info("registry_pruned", removed=len(removed), remaining=len(self._states))

        return removed
