"""
Per-owner coordinator sessions for the dashboard.

Each owner gets one MutationCoordinator, loaded from the store on first
use and kept for the life of the process.  Sessions are independent: a
write through one owner's session never touches another's snapshot.
"""
import asyncio
import logging
from typing import Optional

from tracker.blob_store import BlobStore
from tracker.coordinator import MutationCoordinator
from tracker.reconciler import DEFAULT_URGENCY_THRESHOLD_DAYS
from tracker.store import EntityStore

logger = logging.getLogger(__name__)


class SessionRegistry:

    def __init__(
        self,
        store: EntityStore,
        blob_store: Optional[BlobStore] = None,
        urgency_threshold_days: int = DEFAULT_URGENCY_THRESHOLD_DAYS,
    ) -> None:
        self.store = store
        self.blob_store = blob_store
        self.urgency_threshold_days = urgency_threshold_days
        self._sessions: dict[str, MutationCoordinator] = {}
        self._loading: dict[str, asyncio.Lock] = {}

    async def get(self, owner_id: str) -> MutationCoordinator:
        """Return the owner's coordinator, loading it on first use."""
        session = self._sessions.get(owner_id)
        if session is not None:
            return session
        lock = self._loading.setdefault(owner_id, asyncio.Lock())
        async with lock:
            session = self._sessions.get(owner_id)
            if session is None:
                logger.info("Opening session for owner %s", owner_id)
                session = await MutationCoordinator.load(
                    self.store,
                    owner_id,
                    blob_store=self.blob_store,
                    urgency_threshold_days=self.urgency_threshold_days,
                )
                self._sessions[owner_id] = session
        return session

    def active(self) -> list[MutationCoordinator]:
        return list(self._sessions.values())

    def close(self, owner_id: str) -> None:
        self._sessions.pop(owner_id, None)
        self._loading.pop(owner_id, None)
